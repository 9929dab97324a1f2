"""
Sentry alert message and deep-link keyboard formatting.
"""

from html import escape
from typing import Any, Dict, Optional
from urllib.parse import urlencode

from config import config
from schemas import CanonicalTelemetryRecord, FormattedAlert


SUPPORTED_LOCALES = ("en", "fr")
DEFAULT_LOCALE = "en"
DEFAULT_REDIRECT_BASE_URL = "http://localhost:3000"
REDIRECT_PATH = "/redirect/tesla-app"

TRANSLATIONS: Dict[str, Dict[str, str]] = {
    "en": {
        "sentry_alert.title": "🚨 <b>TESLA SENTRY ALERT</b> 🚨",
        "sentry_alert.vehicle": "🚗 <b>Vehicle:</b> {vehicle}",
        "sentry_alert.call_to_action": "<i>Sentry Mode triggered - check your vehicle!</i>",
        "keyboard.open_app": "Open Tesla App",
    },
    "fr": {
        # Title is not translated
        "sentry_alert.title": "🚨 <b>TESLA SENTRY ALERT</b> 🚨",
        "sentry_alert.vehicle": "🚗 <b>Véhicule :</b> {vehicle}",
        "sentry_alert.call_to_action": "<i>Mode Sentinelle déclenché - vérifiez votre véhicule !</i>",
        "keyboard.open_app": "Ouvrir l'app Tesla",
    },
}


def normalize_locale(locale: Optional[str]) -> str:
    candidate = (locale or "").strip().lower()
    return candidate if candidate in SUPPORTED_LOCALES else DEFAULT_LOCALE


class Localizer:
    """Minimal key -> text lookup for the alert strings."""

    def __init__(self, translations: Optional[Dict[str, Dict[str, str]]] = None):
        self.translations = translations or TRANSLATIONS

    def translate(self, key: str, locale: str, **params: Any) -> str:
        table = self.translations.get(normalize_locale(locale)) or self.translations.get(DEFAULT_LOCALE, {})
        text = table.get(key) or self.translations.get(DEFAULT_LOCALE, {}).get(key) or key
        return text.format(**params) if params else text


class AlertFormatter:
    """Builds the three-line alert text and the optional "open app" keyboard."""

    def __init__(self, localizer: Optional[Localizer] = None, redirect_base_url: Optional[str] = None):
        self.localizer = localizer or Localizer()
        self._redirect_base_url = redirect_base_url

    @property
    def redirect_base_url(self) -> str:
        base = self._redirect_base_url or config.telegram.redirect_base_url or DEFAULT_REDIRECT_BASE_URL
        return base.rstrip("/")

    def build_text(self, record: CanonicalTelemetryRecord, locale: str) -> str:
        vehicle = getattr(record, "display_name", None) or getattr(record, "vin", "") or ""
        lines = [
            self.localizer.translate("sentry_alert.title", locale),
            self.localizer.translate("sentry_alert.vehicle", locale, vehicle=escape(str(vehicle))),
            self.localizer.translate("sentry_alert.call_to_action", locale),
        ]
        return "\n".join(lines)

    def build_keyboard(self, user_id: str, locale: str) -> Dict[str, Any]:
        lang = normalize_locale(locale)
        query = urlencode({"userId": user_id, "lang": lang})
        return {
            "inline_keyboard": [
                [
                    {
                        "text": f"🔍 {self.localizer.translate('keyboard.open_app', lang)}",
                        "url": f"{self.redirect_base_url}{REDIRECT_PATH}?{query}",
                    }
                ]
            ]
        }

    def format(
        self,
        record: CanonicalTelemetryRecord,
        locale: str,
        user_id: Optional[str] = None,
    ) -> FormattedAlert:
        keyboard = self.build_keyboard(user_id, locale) if user_id else None
        return FormattedAlert(text=self.build_text(record, locale), keyboard=keyboard)
