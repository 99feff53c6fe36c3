# tests/services/test_normalization.py
"""
Tests for contact-data normalization

Run with: pytest tests/services/test_normalization.py -v
"""

import pytest

from mcacrm.services.normalization import normalization_service


class TestPhoneNormalization:

    def test_formatted_us_number_to_e164(self):
        assert normalization_service.normalize_phone("(212) 736-5000") == "+12127365000"

    def test_unparseable_number_returned_as_is(self):
        assert normalization_service.normalize_phone("ext. 12") == "ext. 12"

    def test_empty_phone(self):
        assert normalization_service.normalize_phone("") is None

    @pytest.mark.parametrize("raw", ["+15165550123", "15165550123", "(516) 555-0123", "516.555.0123"])
    def test_match_key_drops_us_country_code(self, raw):
        assert normalization_service.phone_match_key(raw) == "5165550123"

    def test_match_key_keeps_other_lengths(self):
        assert normalization_service.phone_match_key("+44 20 7946 0958") == "442079460958"


class TestOtherFields:

    def test_email_lowercased(self):
        assert normalization_service.normalize_email("  Owner@Acme.COM ") == "owner@acme.com"
        assert normalization_service.normalize_email(None) is None

    def test_state_uppercased_when_two_letters(self):
        assert normalization_service.normalize_state(" ny ") == "NY"
        assert normalization_service.normalize_state("New York") == "New York"

    def test_filenames(self):
        assert normalization_service.sanitize_filename("bank stmt (1).pdf") == "bank_stmt__1_.pdf"
        assert normalization_service.header_filename('a"b\r\n.pdf') == "ab.pdf"
