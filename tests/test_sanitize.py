"""Tests for PII sanitization utilities."""

from lib.sanitize import mask_destination, mask_email, mask_phone, truncate


class TestMaskPhone:
    def test_full_phone(self):
        assert mask_phone("+15551234567") == "***4567"

    def test_short_phone(self):
        assert mask_phone("123") == "****"

    def test_none_phone(self):
        assert mask_phone(None) == "[no-phone]"

    def test_empty_phone(self):
        assert mask_phone("") == "[no-phone]"

    def test_formatted_phone(self):
        assert mask_phone("+1 (555) 123-4567") == "***4567"


class TestMaskEmail:
    def test_email(self):
        assert mask_email("jane.doe@example.com") == "j***@example.com"

    def test_not_an_email(self):
        assert mask_email("jane") == "[no-email]"

    def test_none(self):
        assert mask_email(None) == "[no-email]"


class TestMaskDestination:
    def test_email_destination(self):
        assert mask_destination("bob@example.com") == "b***@example.com"

    def test_phone_destination(self):
        assert mask_destination("(713) 555-1234") == "***1234"

    def test_user_id_passes_through(self):
        uid = "aaaaaaaa-0000-4000-8000-000000000001"
        assert mask_destination(uid) == uid

    def test_client_address_passes_through(self):
        assert mask_destination("client:t:u") == "client:t:u"

    def test_empty(self):
        assert mask_destination("") == "[none]"


class TestTruncate:
    def test_short_text(self):
        assert truncate("Hello", 30) == "Hello"

    def test_long_text(self):
        result = truncate("A" * 50, 30)
        assert len(result) == 33  # 30 chars + "..."
        assert result.endswith("...")

    def test_exact_length(self):
        text = "A" * 30
        assert truncate(text, 30) == text

    def test_none(self):
        assert truncate(None) == ""
