"""
IVR call flow - pure functions from (digits, CallContext) to (CallState, TwiML).

Nothing is stored between turns: Twilio calls back with the call SID and
the pressed digits, and the endpoint rebuilds the CallContext from the
request, the tenant and the caller's language.

    Ringing/in-progress --greet--> MainMenu
    MainMenu 1 --> OrderRecording  (Record, transcription callback)
    MainMenu 2 --> OrderStatusQuery (Gather until #)
    MainMenu 3 --> restaurant info, back to greeting
    MainMenu 9 --> Transferred (Dial) or "no representative" then Ended
    anything else --> invalid selection, back to greeting
"""
from dataclasses import dataclass
from enum import Enum
from typing import Optional

from twilio.twiml.voice_response import VoiceResponse

from orderhooks.utils.templates import (
    DEFAULT_BUSINESS_NAME,
    DEFAULT_LANGUAGE,
    language_code_for,
    order_status_label,
    render_template,
    restaurant_info,
    voice_for,
)

VOICE_ROUTE = "/webhooks/twilio/voice"
MENU_ROUTE = "/webhooks/twilio/voice/menu"
ORDER_ROUTE = "/webhooks/twilio/voice/order"
ORDER_STATUS_ROUTE = "/webhooks/twilio/voice/order-status"
TRANSCRIPTION_ROUTE = "/webhooks/twilio/voice/transcription"

MENU_TIMEOUT_SECONDS = 5
ORDER_STATUS_TIMEOUT_SECONDS = 10
RECORDING_MAX_SECONDS = 120
RECORDING_SILENCE_TIMEOUT_SECONDS = 3

ANSWERABLE_STATUSES = frozenset({"ringing", "in-progress"})


class CallState(str, Enum):
    RINGING = "ringing"
    MAIN_MENU = "main_menu"
    ORDER_RECORDING = "order_recording"
    ORDER_STATUS_QUERY = "order_status_query"
    TRANSFERRED = "transferred"
    ENDED = "ended"


@dataclass(frozen=True)
class CallContext:
    call_sid: str
    caller: str
    dialed: str = ""
    language: str = DEFAULT_LANGUAGE
    call_status: str = "ringing"
    transfer_phone: Optional[str] = None
    business_name: str = DEFAULT_BUSINESS_NAME
    address: Optional[str] = None
    opening_hours: Optional[str] = None


def _say(node, text: str, language: str) -> None:
    node.say(text, voice=voice_for(language), language=language_code_for(language))


def greet(ctx: CallContext) -> tuple[CallState, VoiceResponse]:
    """Greeting plus one-digit main menu. Calls not ringing / in progress get an empty document."""
    response = VoiceResponse()
    if ctx.call_status not in ANSWERABLE_STATUSES:
        return CallState.ENDED, response

    lang = ctx.language
    _say(response, render_template("greeting", lang, business_name=ctx.business_name), lang)
    gather = response.gather(
        num_digits=1,
        action=MENU_ROUTE,
        method="POST",
        timeout=MENU_TIMEOUT_SECONDS,
        language=language_code_for(lang),
    )
    _say(gather, render_template("main_menu", lang), lang)
    # No input: start over
    response.redirect(VOICE_ROUTE, method="POST")
    return CallState.MAIN_MENU, response


def select_menu(digits: Optional[str], ctx: CallContext) -> tuple[CallState, VoiceResponse]:
    """Route a main-menu keypress."""
    response = VoiceResponse()
    lang = ctx.language
    choice = (digits or "").strip()

    if choice == "1":
        _say(response, render_template("order_instructions", lang), lang)
        response.record(
            action=ORDER_ROUTE,
            method="POST",
            max_length=RECORDING_MAX_SECONDS,
            transcribe=True,
            transcribe_callback=TRANSCRIPTION_ROUTE,
            play_beep=True,
            timeout=RECORDING_SILENCE_TIMEOUT_SECONDS,
        )
        return CallState.ORDER_RECORDING, response

    if choice == "2":
        gather = response.gather(
            action=ORDER_STATUS_ROUTE,
            method="POST",
            finish_on_key="#",
            timeout=ORDER_STATUS_TIMEOUT_SECONDS,
        )
        _say(gather, render_template("order_status_instructions", lang), lang)
        return CallState.ORDER_STATUS_QUERY, response

    if choice == "3":
        _say(response, restaurant_info(lang, ctx.business_name, ctx.address, ctx.opening_hours), lang)
        response.redirect(VOICE_ROUTE, method="POST")
        return CallState.RINGING, response

    if choice == "9":
        if ctx.transfer_phone:
            response.dial(ctx.transfer_phone)
            return CallState.TRANSFERRED, response
        _say(response, render_template("no_representative", lang), lang)
        return CallState.ENDED, response

    _say(response, render_template("invalid_selection", lang), lang)
    response.redirect(VOICE_ROUTE, method="POST")
    return CallState.RINGING, response


def recording_complete(ctx: CallContext) -> tuple[CallState, VoiceResponse]:
    """Recording finished; the order arrives later through the transcription callback."""
    response = VoiceResponse()
    _say(response, render_template("recording_received", ctx.language), ctx.language)
    response.hangup()
    return CallState.ENDED, response


def order_status(
    ctx: CallContext,
    order_number: Optional[str],
    status: Optional[str],
) -> tuple[CallState, VoiceResponse]:
    """Speak an order's status (status None = not found), then back to the greeting."""
    response = VoiceResponse()
    lang = ctx.language
    if status is None:
        _say(response, render_template("order_not_found", lang), lang)
    else:
        _say(
            response,
            render_template(
                "order_status", lang,
                order_number=" ".join(order_number or ""),
                status=order_status_label(status, lang),
            ),
            lang,
        )
    response.redirect(VOICE_ROUTE, method="POST")
    return CallState.RINGING, response


def apology_response(language: str, redirect: bool = False) -> VoiceResponse:
    """
    Always-valid fallback document for errors while building a voice turn:
    apology then hangup, or apology then back to the greeting.
    """
    response = VoiceResponse()
    if redirect:
        _say(response, render_template("voice_redirect", language, category="apology"), language)
        response.redirect(VOICE_ROUTE, method="POST")
    else:
        _say(response, render_template("voice_hangup", language, category="apology"), language)
        response.hangup()
    return response
