"""
Application configuration using pydantic-settings.
All config is validated at startup - fail fast if anything is missing.
"""
from pydantic_settings import BaseSettings
from functools import lru_cache


class Settings(BaseSettings):
    # Application
    app_env: str = "development"
    log_level: str = "INFO"

    # Database
    database_url: str
    database_pool_size: int = 20
    database_max_overflow: int = 10

    # Stripe
    stripe_webhook_secret: str = ""
    stripe_signature_tolerance_seconds: int = 300
    # When true, handler crashes are acknowledged with 200 instead of 500
    # (rolled back, no audit record) so Stripe stops redelivering.
    stripe_ack_on_handler_error: bool = False

    # Twilio
    twilio_account_sid: str = ""
    twilio_auth_token: str = ""
    twilio_phone_number: str = ""
    twilio_whatsapp_number: str = ""
    # None = enforce only in production
    twilio_validate_signatures: bool | None = None

    # SendGrid
    sendgrid_api_key: str = ""
    sendgrid_from_email: str = "noreply@eatech.ch"
    sendgrid_from_name: str = "EATECH"

    # Sentry
    sentry_dsn: str = ""
    # Discord/Slack webhook for operational alerts
    alert_webhook_url: str = ""

    # Telephony locale
    default_language: str = "de"
    area_code_languages: dict[str, str] = {
        "4121": "fr",  # Lausanne / Vaud
        "4122": "fr",  # Geneva
        "4191": "it",  # Ticino
    }
    default_phone_region: str = "CH"

    class Config:
        env_file = ".env"
        env_file_encoding = "utf-8"

    @property
    def enforce_twilio_signatures(self) -> bool:
        if self.twilio_validate_signatures is not None:
            return self.twilio_validate_signatures
        return self.app_env == "production"


@lru_cache()
def get_settings() -> Settings:
    return Settings()
