"""
Unit tests for the redaction codec.
"""

from conftest import FakeClock

from mailtriage.core.redaction import RedactionCodec, detect, find_tokens


class TestDetect:
    """Tests for PII detection."""

    def test_detects_email(self):
        """Email addresses are detected with exact offsets."""
        text = "Contact jane.doe@example.com today"
        matches = detect(text)
        assert len(matches) == 1
        assert matches[0].entity_type == "EMAIL"
        assert text[matches[0].start:matches[0].end] == "jane.doe@example.com"

    def test_detects_common_types(self):
        """Phone, SSN, card, IP, order and account numbers are recognised."""
        text = (
            "Call (555) 123-4567. SSN 123-45-6789, card 4111 1111 1111 1111, "
            "server 192.168.1.10, order #A12345, account number: 12345678"
        )
        types = [m.entity_type for m in detect(text)]
        assert types == ["PHONE", "SSN", "CARD", "IP", "ORDER", "ACCOUNT"]

    def test_account_redacts_only_the_number(self):
        """The account keyword stays readable."""
        matches = detect("acct #: 99887766")
        assert [m.value for m in matches] == ["99887766"]

    def test_account_words_without_digits_untouched(self):
        """Ordinary words after the account keyword are not redacted."""
        assert detect("Please send the account details for accounting.") == []
        codec = RedactionCodec(clock=FakeClock().time)
        assert codec.redact("Update my account settings", "t1") == ("Update my account settings", 0)

    def test_priority_resolves_overlap(self):
        """A sensitive URL wins over the email inside it."""
        text = "Reset via https://example.com/reset?token=abc&user=bob@example.com now"
        matches = detect(text)
        assert len(matches) == 1
        assert matches[0].entity_type == "URL"

    def test_pure_between_calls(self):
        """Repeated calls give identical results."""
        text = "a@example.com and b@example.com"
        assert detect(text) == detect(text)
        assert len(detect(text)) == 2

    def test_empty_text(self):
        """Empty input yields nothing."""
        assert detect("") == []
        assert detect(None) == []


class TestRedactionCodec:
    """Tests for RedactionCodec."""

    def setup_method(self):
        """Create a codec on a fake clock."""
        self.clock = FakeClock()
        self.codec = RedactionCodec(ttl_seconds=60, clock=self.clock.time)

    def test_redact_replaces_values(self):
        """Redacted text keeps no original value."""
        redacted, count = self.codec.redact("Mail me at sam@example.com or 555-123-4567", "t1")
        assert count == 2
        assert "sam@example.com" not in redacted
        assert "555-123-4567" not in redacted
        assert find_tokens(redacted) == ["[[PII_EMAIL_1]]", "[[PII_PHONE_1]]"]

    def test_same_value_same_token(self):
        """Repeated values share one token within an item."""
        redacted, count = self.codec.redact("sam@example.com wrote: reply to sam@example.com", "t1")
        assert count == 2
        assert redacted.count("[[PII_EMAIL_1]]") == 2
        assert self.codec.token_count("t1") == 1

    def test_map_extends_across_calls(self):
        """Subject and body of one item share a map."""
        subject, _ = self.codec.redact("From sam@example.com", "t1")
        body, _ = self.codec.redact("sam@example.com and kim@example.com", "t1")
        assert "[[PII_EMAIL_1]]" in subject
        assert body == "[[PII_EMAIL_1]] and [[PII_EMAIL_2]]"

    def test_restore(self):
        """Tokens in a reply are swapped back."""
        self.codec.redact("Order #B99887 for sam@example.com", "t1")
        restored = self.codec.restore("We shipped [[PII_ORDER_1]] to [[PII_EMAIL_1]].", "t1")
        assert restored == "We shipped #B99887 to sam@example.com."

    def test_unresolved_tokens_reported(self):
        """Tokens the map does not know are left in place and reported."""
        self.codec.redact("sam@example.com", "t1")
        restored, unresolved = self.codec.restore_with_report("Hi [[PII_EMAIL_1]], see [[PII_PHONE_4]]", "t1")
        assert restored == "Hi sam@example.com, see [[PII_PHONE_4]]"
        assert unresolved == ["[[PII_PHONE_4]]"]

    def test_maps_are_per_item(self):
        """One item's tokens never restore in another item."""
        self.codec.redact("sam@example.com", "t1")
        self.codec.redact("kim@example.com", "t2")
        assert self.codec.restore("[[PII_EMAIL_1]]", "t2") == "kim@example.com"
        _, unresolved = self.codec.restore_with_report("[[PII_EMAIL_1]]", "t3")
        assert unresolved == ["[[PII_EMAIL_1]]"]

    def test_text_without_pii_creates_no_map(self):
        """Clean text is returned unchanged."""
        assert self.codec.redact("Hello there", "t1") == ("Hello there", 0)
        assert not self.codec.has_map("t1")

    def test_clear(self):
        """clear drops one map, clear_all drops every map."""
        self.codec.redact("sam@example.com", "t1")
        self.codec.redact("kim@example.com", "t2")
        self.codec.clear("t1")
        assert not self.codec.has_map("t1")
        assert len(self.codec) == 1
        self.codec.clear_all()
        assert len(self.codec) == 0

    def test_ttl_eviction(self):
        """Maps older than the TTL are evicted."""
        self.codec.redact("sam@example.com", "t1")
        self.clock.advance(61)
        assert self.codec.evict_expired() == 1
        assert not self.codec.has_map("t1")

    def test_redact_evicts_before_mapping(self):
        """An expired map is not extended by a later redact."""
        self.codec.redact("sam@example.com", "t1")
        self.clock.advance(61)
        self.codec.redact("kim@example.com", "t1")
        assert self.codec.restore("[[PII_EMAIL_1]]", "t1") == "kim@example.com"
