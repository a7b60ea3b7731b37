"""
Caller-facing text in the four supported languages (de, fr, it, en).
German is the fallback for any unknown language code.
Templates use {variable} substitution; missing variables are left in place.
"""
import logging
from typing import Optional

logger = logging.getLogger(__name__)

SUPPORTED_LANGUAGES = ("de", "fr", "it", "en")
DEFAULT_LANGUAGE = "de"

# Twilio <Say> voice per language
VOICES = {
    "de": "alice",
    "fr": "alice",
    "it": "alice",
    "en": "Polly.Joanna",
}

# Twilio locale codes for <Say>, <Gather> and <Record>
LANGUAGE_CODES = {
    "de": "de-DE",
    "fr": "fr-FR",
    "it": "it-IT",
    "en": "en-US",
}

# === IVR PROMPTS ===
VOICE_PROMPTS = {
    "greeting": {
        "de": "Willkommen bei {business_name}. Wie können wir Ihnen helfen?",
        "fr": "Bienvenue chez {business_name}. Comment pouvons-nous vous aider?",
        "it": "Benvenuti a {business_name}. Come possiamo aiutarla?",
        "en": "Welcome to {business_name}. How can we help you?",
    },
    "main_menu": {
        "de": (
            "Drücken Sie 1 für eine Bestellung, 2 für den Bestellstatus, "
            "3 für Restaurantinformationen, oder 9 um mit einem Mitarbeiter zu sprechen."
        ),
        "fr": (
            "Appuyez sur 1 pour commander, 2 pour le statut de commande, "
            "3 pour les informations du restaurant, ou 9 pour parler à un agent."
        ),
        "it": (
            "Premi 1 per ordinare, 2 per lo stato dell'ordine, "
            "3 per informazioni sul ristorante, o 9 per parlare con un operatore."
        ),
        "en": (
            "Press 1 to place an order, 2 for order status, "
            "3 for restaurant information, or 9 to speak with a representative."
        ),
    },
    "order_instructions": {
        "de": "Bitte sagen Sie Ihre Bestellung nach dem Signalton. Sie haben 2 Minuten Zeit.",
        "fr": "Veuillez indiquer votre commande après le signal sonore. Vous avez 2 minutes.",
        "it": "Si prega di indicare il suo ordine dopo il segnale acustico. Ha 2 minuti.",
        "en": "Please state your order after the beep. You have 2 minutes.",
    },
    "order_status_instructions": {
        "de": "Bitte geben Sie Ihre Bestellnummer ein, gefolgt von der Raute-Taste.",
        "fr": "Veuillez entrer votre numéro de commande, suivi du dièse.",
        "it": "Inserisca il numero d'ordine, seguito dal cancelletto.",
        "en": "Please enter your order number, followed by the pound key.",
    },
    "order_status": {
        "de": "Ihre Bestellung {order_number} ist {status}.",
        "fr": "Votre commande {order_number} est {status}.",
        "it": "Il suo ordine {order_number} è {status}.",
        "en": "Your order {order_number} is {status}.",
    },
    "order_not_found": {
        "de": "Wir konnten keine Bestellung mit dieser Nummer finden.",
        "fr": "Nous n'avons trouvé aucune commande avec ce numéro.",
        "it": "Non abbiamo trovato nessun ordine con questo numero.",
        "en": "We could not find an order with that number.",
    },
    "recording_received": {
        "de": "Vielen Dank. Wir haben Ihre Bestellung erhalten und senden Ihnen eine Bestätigung per SMS.",
        "fr": "Merci. Nous avons reçu votre commande et vous enverrons une confirmation par SMS.",
        "it": "Grazie. Abbiamo ricevuto il suo ordine e le invieremo una conferma via SMS.",
        "en": "Thank you. We have received your order and will send you a confirmation by text message.",
    },
    "invalid_selection": {
        "de": "Ungültige Auswahl. Bitte versuchen Sie es erneut.",
        "fr": "Sélection invalide. Veuillez réessayer.",
        "it": "Selezione non valida. Si prega di riprovare.",
        "en": "Invalid selection. Please try again.",
    },
    "no_representative": {
        "de": "Leider ist momentan kein Mitarbeiter verfügbar. Bitte versuchen Sie es später erneut.",
        "fr": "Aucun agent n'est disponible pour le moment. Veuillez réessayer plus tard.",
        "it": "Nessun operatore disponibile al momento. Si prega di riprovare più tardi.",
        "en": "No representative is available at the moment. Please try again later.",
    },
    "restaurant_info": {
        "de": "{business_name}, {address}. Öffnungszeiten: {opening_hours}.",
        "fr": "{business_name}, {address}. Heures d'ouverture: {opening_hours}.",
        "it": "{business_name}, {address}. Orari: {opening_hours}.",
        "en": "{business_name}, {address}. Hours: {opening_hours}.",
    },
}

# Used when the tenant has no address / opening hours on file
DEFAULT_RESTAURANT_INFO = {
    "de": "Restaurant EATECH, Bahnhofstrasse 1, 8001 Zürich. Öffnungszeiten: Täglich 11:00 - 22:00 Uhr.",
    "fr": "Restaurant EATECH, Bahnhofstrasse 1, 8001 Zurich. Heures d'ouverture: Tous les jours 11h00 - 22h00.",
    "it": "Ristorante EATECH, Bahnhofstrasse 1, 8001 Zurigo. Orari: Tutti i giorni 11:00 - 22:00.",
    "en": "Restaurant EATECH, Bahnhofstrasse 1, 8001 Zurich. Hours: Daily 11:00 AM - 10:00 PM.",
}

ORDER_STATUS_LABELS = {
    "pending": {"de": "in Bearbeitung", "fr": "en cours de traitement", "it": "in elaborazione", "en": "being processed"},
    "confirmed": {"de": "bestätigt", "fr": "confirmée", "it": "confermato", "en": "confirmed"},
    "preparing": {"de": "in Zubereitung", "fr": "en préparation", "it": "in preparazione", "en": "being prepared"},
    "ready": {"de": "bereit", "fr": "prête", "it": "pronto", "en": "ready"},
    "completed": {"de": "abgeschlossen", "fr": "terminée", "it": "completato", "en": "completed"},
    "cancelled": {"de": "storniert", "fr": "annulée", "it": "annullato", "en": "cancelled"},
    "expired": {"de": "abgelaufen", "fr": "expirée", "it": "scaduto", "en": "expired"},
}

# === APOLOGIES (error fallbacks) ===
APOLOGIES = {
    # Spoken, followed by hangup
    "voice_hangup": {
        "de": "Es tut uns leid, es ist ein Fehler aufgetreten. Bitte versuchen Sie es später erneut.",
        "fr": "Nous sommes désolés, une erreur est survenue. Veuillez réessayer plus tard.",
        "it": "Ci scusiamo, si è verificato un errore. Si prega di riprovare più tardi.",
        "en": "We apologize, but an error has occurred. Please try again later.",
    },
    # Spoken, followed by redirect to the greeting
    "voice_redirect": {
        "de": "Ein Fehler ist aufgetreten. Bitte versuchen Sie es erneut.",
        "fr": "Une erreur est survenue. Veuillez réessayer.",
        "it": "Si è verificato un errore. Si prega di riprovare.",
        "en": "An error occurred. Please try again.",
    },
    "message": {
        "de": "Entschuldigung, es ist ein Fehler aufgetreten. Bitte versuchen Sie es später erneut.",
        "fr": "Désolé, une erreur est survenue. Veuillez réessayer plus tard.",
        "it": "Spiacenti, si è verificato un errore. Si prega di riprovare più tardi.",
        "en": "Sorry, an error occurred. Please try again later.",
    },
}

# === MESSAGING (SMS / WhatsApp) ===
MESSAGE_TEMPLATES = {
    "order_confirmation": {
        "de": "Vielen Dank für Ihre Bestellung! Bestellnummer: {order_number}. Sie erhalten in Kürze eine Bestätigung.",
        "fr": "Merci pour votre commande! Numéro de commande: {order_number}. Vous recevrez bientôt une confirmation.",
        "it": "Grazie per il suo ordine! Numero d'ordine: {order_number}. Riceverà a breve una conferma.",
        "en": "Thank you for your order! Order number: {order_number}. You will receive a confirmation shortly.",
    },
    "whatsapp_order_confirmation": {
        "de": "🎉 *Bestellung bestätigt!*\n\nBestellnummer: {order_number}\nGeschätzte Zeit: 30-45 Minuten\n\nVielen Dank für Ihre Bestellung!",
        "fr": "🎉 *Commande confirmée!*\n\nNuméro de commande: {order_number}\nTemps estimé: 30-45 minutes\n\nMerci pour votre commande!",
        "it": "🎉 *Ordine confermato!*\n\nNumero d'ordine: {order_number}\nTempo stimato: 30-45 minuti\n\nGrazie per il suo ordine!",
        "en": "🎉 *Order confirmed!*\n\nOrder number: {order_number}\nEstimated time: 30-45 minutes\n\nThank you for your order!",
    },
    "whatsapp_menu": {
        "de": "Willkommen bei {business_name}! 🍽️\n\nWie können wir Ihnen helfen?",
        "fr": "Bienvenue chez {business_name}! 🍽️\n\nComment pouvons-nous vous aider?",
        "it": "Benvenuti a {business_name}! 🍽️\n\nCome possiamo aiutarla?",
        "en": "Welcome to {business_name}! 🍽️\n\nHow can we help you?",
    },
    "menu_link": {
        "de": "Unsere aktuelle Speisekarte finden Sie unter: {menu_url}",
        "fr": "Vous trouverez notre carte actuelle ici: {menu_url}",
        "it": "Il nostro menu attuale è disponibile qui: {menu_url}",
        "en": "You can find our current menu at: {menu_url}",
    },
    "inquiry_fallback": {
        "de": 'Vielen Dank für Ihre Nachricht. Für Bestellungen antworten Sie mit "Bestellen" oder rufen Sie uns an.',
        "fr": 'Merci pour votre message. Pour commander, répondez "Commander" ou appelez-nous.',
        "it": 'Grazie per il suo messaggio. Per ordinare, risponda "Ordinare" o ci chiami.',
        "en": 'Thank you for your message. To order, reply "Order" or give us a call.',
    },
}

# WhatsApp quick replies
WHATSAPP_ORDER_ACTIONS = ["track_order", "contact_restaurant"]
WHATSAPP_MENU_ACTIONS = ["view_menu", "place_order", "track_order", "contact_us"]

DEFAULT_BUSINESS_NAME = "EATECH"
DEFAULT_MENU_URL = "https://eatech.ch/menu"


def resolve_language(language: Optional[str]) -> str:
    """Map any language code onto a supported one (German fallback)."""
    if language:
        code = language.lower()[:2]
        if code in SUPPORTED_LANGUAGES:
            return code
    return DEFAULT_LANGUAGE


def voice_for(language: str) -> str:
    return VOICES[resolve_language(language)]


def language_code_for(language: str) -> str:
    return LANGUAGE_CODES[resolve_language(language)]


def _pick(table: dict, key: str, language: str) -> str:
    by_language = table.get(key)
    if by_language is None:
        raise KeyError(f"Unknown template: {key}")
    return by_language[resolve_language(language)]


def render_template(key: str, language: str, category: str = "voice", **kwargs) -> str:
    """
    Render a template in the given language with variable substitution.
    category: "voice", "message" or "apology".
    """
    tables = {
        "voice": VOICE_PROMPTS,
        "message": MESSAGE_TEMPLATES,
        "apology": APOLOGIES,
    }
    text = _pick(tables[category], key, language)
    kwargs.setdefault("business_name", DEFAULT_BUSINESS_NAME)
    try:
        return text.format_map(SafeDict(kwargs))
    except Exception as e:
        logger.debug("Template rendering failed for key substitution: %s", str(e))
        return text


def restaurant_info(language: str, name: Optional[str] = None,
                    address: Optional[str] = None, opening_hours: Optional[str] = None) -> str:
    """Spoken / texted restaurant info, from tenant data when complete."""
    if address and opening_hours:
        return render_template(
            "restaurant_info", language,
            business_name=name or DEFAULT_BUSINESS_NAME,
            address=address,
            opening_hours=opening_hours,
        )
    return DEFAULT_RESTAURANT_INFO[resolve_language(language)]


def order_status_label(status: str, language: str) -> str:
    labels = ORDER_STATUS_LABELS.get(status)
    if labels is None:
        return status
    return labels[resolve_language(language)]


class SafeDict(dict):
    """Dict that returns '{key}' for missing keys instead of raising KeyError."""

    def __missing__(self, key: str) -> str:
        return "{" + key + "}"
