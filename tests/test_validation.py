"""
Tests for Input Validation Utilities
"""
import pytest

from app.core.validation import PhoneNumberValidator, TextSanitizer


class TestPhoneNumberValidator:
    """Tests for recipient normalization"""

    @pytest.mark.unit
    @pytest.mark.parametrize("phone,expected", [
        ("9876543210", "919876543210"),
        ("+91 98765-43210", "919876543210"),
        ("919876543210", "919876543210"),
        ("(987) 654-3210", "919876543210"),
        ("", ""),
        (None, ""),
        ("n/a", ""),
    ])
    def test_normalize_recipient(self, phone, expected: str):
        assert PhoneNumberValidator.normalize_recipient(phone, "91") == expected

    @pytest.mark.unit
    @pytest.mark.parametrize("phone", ["9876543210", "+91 98765 43210", "0501234567"])
    def test_normalize_is_idempotent(self, phone: str):
        once = PhoneNumberValidator.normalize_recipient(phone, "91")
        assert PhoneNumberValidator.normalize_recipient(once, "91") == once

    @pytest.mark.unit
    def test_local_number_starting_with_prefix_left_as_is(self):
        """מספר מקומי שמתחיל ב-91 נחשב כבר כבעל קידומת"""
        assert PhoneNumberValidator.normalize_recipient("9123456789", "91") == "9123456789"

    @pytest.mark.unit
    def test_other_country_prefix(self):
        assert PhoneNumberValidator.normalize_recipient("050-123-4567", "972") == "9720501234567"

    @pytest.mark.unit
    def test_mask_phone(self):
        """Test phone number masking for privacy"""
        assert PhoneNumberValidator.mask("919876543210") == "91987654****"
        assert PhoneNumberValidator.mask("123") == "****"
        assert PhoneNumberValidator.mask("") == ""


class TestTextSanitizer:
    """Tests for error text sanitization"""

    @pytest.mark.unit
    def test_strips_and_collapses_spaces(self):
        assert TextSanitizer.sanitize("  send_image   returned status 500  ") == (
            "send_image returned status 500"
        )

    @pytest.mark.unit
    def test_removes_null_bytes(self):
        assert TextSanitizer.sanitize("bad\x00payload") == "badpayload"

    @pytest.mark.unit
    def test_truncates(self):
        assert len(TextSanitizer.sanitize("x" * 2000)) == 1000
        assert TextSanitizer.sanitize("abcdef", max_length=3) == "abc"

    @pytest.mark.unit
    def test_empty(self):
        assert TextSanitizer.sanitize(None) == ""
        assert TextSanitizer.sanitize("") == ""
