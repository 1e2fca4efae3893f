"""
Localization of customer-facing text

Customers never see registrar messages; every status and notification they receive
comes from the JSON locale files in locales/.
"""

import json
import logging
from pathlib import Path
from typing import Dict, Optional, Any, Tuple

from message_utils import escape_html

logger = logging.getLogger(__name__)


class LanguageConfig:
    """
    Translation loading and lookup

    Features:
    - Language detection from Telegram language_code
    - Fallback to English for missing translations
    - Variable substitution using format()
    """

    _instance = None
    _initialized = False

    SUPPORTED_LANGUAGES = {
        'en': 'English',
        'fr': 'Français',
    }

    DEFAULT_LANGUAGE = 'en'

    def __new__(cls):
        """Singleton pattern to ensure consistent translation loading"""
        if cls._instance is None:
            cls._instance = super(LanguageConfig, cls).__new__(cls)
        return cls._instance

    def __init__(self):
        if LanguageConfig._initialized:
            return
        self.translations: Dict[str, Dict[str, Any]] = {}
        self.locales_path = Path(__file__).parent / 'locales'
        self._load_translations()
        LanguageConfig._initialized = True
        logger.info(f"🌍 Language system initialized - Supported: {list(self.SUPPORTED_LANGUAGES.keys())}")

    def _load_translations(self) -> None:
        for lang_code in self.SUPPORTED_LANGUAGES:
            translation_file = self.locales_path / f"{lang_code}.json"
            if not translation_file.exists():
                logger.warning(f"⚠️ Translation file not found: {translation_file}")
                self.translations[lang_code] = {}
                continue
            with open(translation_file, 'r', encoding='utf-8') as f:
                self.translations[lang_code] = json.load(f)
            logger.debug(f"✅ Loaded translations for {lang_code}")

    def is_language_supported(self, lang_code: Optional[str]) -> bool:
        return lang_code in self.SUPPORTED_LANGUAGES

    def detect_language(self, telegram_lang_code: Optional[str]) -> str:
        """Map a Telegram language_code such as 'fr-CA' to a supported language"""
        if not telegram_lang_code:
            return self.DEFAULT_LANGUAGE
        base_lang = telegram_lang_code.lower().split('-')[0]
        if self.is_language_supported(base_lang):
            return base_lang
        return self.DEFAULT_LANGUAGE

    def _get_nested_translation(self, key: str, lang_code: str) -> Optional[str]:
        current: Any = self.translations.get(lang_code)
        for part in key.split('.'):
            if not isinstance(current, dict) or part not in current:
                return None
            current = current[part]
        return current if isinstance(current, str) else None

    def get_translation(self, key: str, lang_code: str, **kwargs) -> str:
        if not self.is_language_supported(lang_code):
            lang_code = self.DEFAULT_LANGUAGE

        translation = self._get_nested_translation(key, lang_code)
        if translation is None and lang_code != self.DEFAULT_LANGUAGE:
            translation = self._get_nested_translation(key, self.DEFAULT_LANGUAGE)
        if translation is None:
            logger.warning(f"⚠️ No translation found for key '{key}' in any language")
            translation = key

        if not kwargs:
            return translation
        try:
            return translation.format(**kwargs)
        except (KeyError, ValueError) as e:
            logger.warning(f"⚠️ Translation formatting failed for key '{key}': {e}")
            return translation


_language_config = None


def get_language_config() -> LanguageConfig:
    """Get the global LanguageConfig instance"""
    global _language_config
    if _language_config is None:
        _language_config = LanguageConfig()
    return _language_config


def detect_user_language(telegram_lang_code: Optional[str]) -> str:
    return get_language_config().detect_language(telegram_lang_code)


def t(key: str, lang_code: str = 'en', **kwargs) -> str:
    """
    Get a localized string with variable substitution

    Example:
        t('domain_status.registered', 'fr')
        t('notifications.order_completed.title', 'en', order_id='ORD-1')
    """
    return get_language_config().get_translation(key, lang_code, **kwargs)


def t_html(key: str, lang_code: str = 'en', **kwargs) -> Tuple[str, str]:
    """
    HTML-safe translation: every variable is escaped before formatting.

    Returns:
        Tuple of (html_safe_content, parse_mode)
    """
    safe_kwargs = {name: escape_html(str(value)) if value is not None else ""
                   for name, value in kwargs.items()}
    return get_language_config().get_translation(key, lang_code, **safe_kwargs), 'HTML'
