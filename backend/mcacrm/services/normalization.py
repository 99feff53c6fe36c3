"""Lead contact data normalization."""

import re
import logging
from typing import Optional
import phonenumbers

logger = logging.getLogger(__name__)


class NormalizationService:
    """Normalize phone numbers, emails and file names."""

    @staticmethod
    def normalize_email(email: Optional[str]) -> Optional[str]:
        """Lowercase and strip; empty becomes None."""
        if not email:
            return None
        return email.lower().strip() or None

    @staticmethod
    def normalize_phone(phone: Optional[str], default_region: str = "US") -> Optional[str]:
        """
        Normalize phone number to E.164 format.
        Returns the original string if parsing fails.
        """
        if not phone:
            return None

        try:
            cleaned = re.sub(r'[\s\-\(\)\.]', '', phone)
            parsed = phonenumbers.parse(cleaned, default_region)

            if phonenumbers.is_valid_number(parsed):
                return phonenumbers.format_number(
                    parsed,
                    phonenumbers.PhoneNumberFormat.E164
                )
        except phonenumbers.NumberParseException:
            logger.debug(f"Failed to parse phone number: {phone}")

        return phone

    @staticmethod
    def phone_digits(phone: Optional[str]) -> str:
        """Digits only: '(516) 555-0123' -> '5165550123'."""
        return re.sub(r'\D', '', phone or '')

    @staticmethod
    def phone_match_key(phone: Optional[str]) -> str:
        """
        Digits used to suffix-match an inbound sender against stored phones.

        A leading US country code is dropped from 11-digit numbers, so
        '+15165550123' and '5165550123' produce the same key.
        """
        digits = NormalizationService.phone_digits(phone)
        if len(digits) == 11 and digits.startswith('1'):
            digits = digits[1:]
        return digits

    @staticmethod
    def normalize_state(state: Optional[str]) -> Optional[str]:
        """Two-letter states are upper-cased; anything else is kept trimmed."""
        if not state:
            return None
        state = state.strip()
        return state.upper() if len(state) == 2 else state

    @staticmethod
    def sanitize_filename(filename: str) -> str:
        """Keep letters, digits, dot, dash and underscore."""
        return re.sub(r'[^a-zA-Z0-9._-]', '_', filename or 'file')

    @staticmethod
    def header_filename(filename: str) -> str:
        """Strip characters that would break a Content-Disposition header."""
        return re.sub(r'["\r\n]', '', filename or 'download')


# Singleton instance
normalization_service = NormalizationService()
