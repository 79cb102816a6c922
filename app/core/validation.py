"""
Input Validation Utilities

- Recipient phone normalization for the WhatsApp Cloud API
- Phone masking for logs
- Sanitization of free-form error text before it is persisted
"""
import re

_NON_DIGITS = re.compile(r"\D")


class PhoneNumberValidator:
    """Phone number normalization and masking"""

    @staticmethod
    def digits_only(phone: str | None) -> str:
        """Strip everything that is not a digit ("+91 98765-43210" -> "919876543210")."""
        if not phone:
            return ""
        return _NON_DIGITS.sub("", phone)

    @staticmethod
    def normalize_recipient(phone: str | None, country_prefix: str) -> str:
        """
        Normalize a lead's phone number to the Cloud API recipient format.

        Non-digits are stripped and the tenant's default country prefix is
        prepended unless the number already starts with it. Applying the
        function to its own output returns the same value.

        Returns an empty string when the input contains no digits.
        """
        digits = PhoneNumberValidator.digits_only(phone)
        if not digits:
            return ""
        if digits.startswith(country_prefix):
            return digits
        return f"{country_prefix}{digits}"

    @staticmethod
    def mask(phone: str) -> str:
        """
        Mask phone number for logging (privacy).

        Returns:
            Masked phone number (e.g., 91987654****)
        """
        if not phone:
            return ""
        if len(phone) < 4:
            return "****"
        return phone[:-4] + "****"


class TextSanitizer:
    """Text sanitization for safe storage"""

    @staticmethod
    def sanitize(text: str | None, max_length: int = 1000) -> str:
        """
        Trim whitespace, drop null bytes and enforce a maximum length.

        Provider error payloads can be arbitrarily long, the error columns are not.
        """
        if not text:
            return ""

        sanitized = text.strip().replace("\x00", "")
        sanitized = re.sub(r" +", " ", sanitized)
        return sanitized[:max_length]
