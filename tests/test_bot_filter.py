"""
Tests for bot and automated-account filtering.
"""
import pytest

from config.bot_patterns import is_bot_domain, matching_email_prefix
from omnicrm.services.bot_filter import detect_bot, filter_real_contacts
from omnicrm.services.platforms import PlatformContact

pytestmark = pytest.mark.unit


class TestEmailRules:
    """Tests for email-based detection."""

    @pytest.mark.parametrize("email", [
        "noreply@github.com",
        "no-reply@accounts.example.com",
        "notifications+abc123@tracker.io",
        "mailer-daemon@googlemail.com",
        "support@vendor.com",
    ])
    def test_automated_local_parts_are_bots(self, email):
        """Automated local parts mark the contact as a bot."""
        result = detect_bot(PlatformContact("x", name="Someone Real", email=email))
        assert result.is_bot
        assert any("Automated email address" in r for r in result.reasons)

    def test_transactional_subdomain_is_bot(self):
        """Subdomains of ESP domains are recognized."""
        assert is_bot_domain("hello@em42.sendgrid.net")
        result = detect_bot(PlatformContact("x", name="Acme News", email="hello@em42.sendgrid.net"))
        assert result.is_bot

    def test_personal_address_not_matched(self):
        """Ordinary addresses match no prefix and no domain."""
        assert matching_email_prefix("jane.doe@acme.io") is None
        assert not is_bot_domain("jane.doe@acme.io")

    def test_prefix_needs_separator(self):
        """A name that merely starts with a keyword is not a match."""
        assert matching_email_prefix("botanist@garden.org") is None
        assert matching_email_prefix("bot.deploy@garden.org") == "bot"


class TestNameAndHandleRules:
    """Tests for display-name and handle detection."""

    def test_camel_case_bot_name(self):
        """'DeployBot' is an integration."""
        assert detect_bot(PlatformContact("B1", name="DeployBot", handle="deploy")).is_bot

    def test_surname_containing_bot_is_real(self):
        """'Talbot' must not trip the bot rule."""
        result = detect_bot(PlatformContact("U1", name="Jane Talbot", email="jane@acme.io"))
        assert not result.is_bot
        assert result.reasons == []

    def test_id_like_name(self):
        """A platform user id used as a display name is filtered."""
        result = detect_bot(PlatformContact("U02ABCDEF12", name="U02ABCDEF12", handle="u02abcdef12"))
        assert result.is_bot
        assert any("identifier" in r for r in result.reasons)

    def test_ordinary_names_not_id_like(self):
        """Capitalized names and short words are not identifiers."""
        for name in ("Elizabeth", "Deadbeef Cafe", "Jo"):
            result = detect_bot(PlatformContact("U1", name=name, email="x@acme.io"))
            assert not result.is_bot, name

    def test_bot_handle(self):
        """Handles ending in -bot are filtered."""
        assert detect_bot(PlatformContact("U9", name="Deploys", handle="deploy-bot")).is_bot

    def test_integration_name_suffix(self):
        """Names ending in 'integration' are filtered."""
        assert detect_bot(PlatformContact("U9", name="Jira Integration", handle="jira")).is_bot


class TestFlagsAndCompleteness:
    """Tests for platform flags and the no-identifier rule."""

    def test_platform_flags(self):
        """is_bot and is_deleted flags are honored on their own."""
        assert detect_bot(PlatformContact("U1", name="Jane Doe", email="jane@acme.io", is_bot=True)).is_bot
        assert detect_bot(PlatformContact("U1", name="Jane Doe", email="jane@acme.io", is_deleted=True)).is_bot

    def test_no_name_no_identifier(self):
        """A contact with nothing usable is filtered."""
        result = detect_bot(PlatformContact("U1"))
        assert result.is_bot
        assert "No usable name and no reachable identifier" in result.reasons

    def test_placeholder_name_counts_as_missing(self):
        """'Unknown' is not a usable name."""
        assert detect_bot(PlatformContact("U1", name="Unknown")).is_bot

    def test_phone_only_contact_is_real(self):
        """A phone number alone is enough to keep a contact."""
        assert not detect_bot(PlatformContact("+14155550134", phone="+14155550134")).is_bot

    def test_multiple_reasons_collected(self):
        """Every rule that fires contributes a reason."""
        result = detect_bot(PlatformContact("U1", name="Alert Bot", email="noreply@em1.sendgrid.net"))
        assert len(result.reasons) >= 3


class TestFilterRealContacts:
    """Tests for batch partitioning."""

    def test_partition_preserves_order_and_totals(self):
        """Every contact lands on exactly one side, in input order."""
        contacts = [
            PlatformContact("U1", name="Jane Doe", email="jane@acme.io"),
            PlatformContact("B1", name="DeployBot", is_bot=True),
            PlatformContact("U2", name="Sam Lee", handle="sam.lee"),
            PlatformContact("U3", email="noreply@service.io"),
        ]
        partition = filter_real_contacts(contacts)

        assert [c.platform_native_id for c in partition.real_contacts] == ["U1", "U2"]
        assert [f.contact.platform_native_id for f in partition.filtered_bots] == ["B1", "U3"]
        assert all(f.reasons for f in partition.filtered_bots)

    def test_empty_batch(self):
        """An empty batch partitions into two empty lists."""
        partition = filter_real_contacts([])
        assert partition.real_contacts == []
        assert partition.filtered_bots == []
