import pytest

from storefront.logging import _scrub, correlation_id_var, mask_contact, set_correlation_id


class TestMaskContact:
    @pytest.mark.parametrize(
        "value,masked",
        [
            ("alice@x.com", "al***@x.com"),
            ("alice", "al***"),
            ("al", "***"),
            ("al***@x.com", "al***@x.com"),
        ],
    )
    def test_masking(self, value, masked):
        assert mask_contact(value) == masked


class TestScrub:
    def test_secrets_replaced(self):
        event = _scrub(
            None,
            "info",
            {
                "event": "login_succeeded",
                "refresh_token": "eyJhbGciOi.abc.def",
                "jwt": "cookie-value",
                "authorization": "Bearer abc",
                "smtp_secret": "hunter2",
                "user_id": "u-1",
            },
        )
        assert event["refresh_token"] == "***"
        assert event["jwt"] == "***"
        assert event["authorization"] == "***"
        assert event["smtp_secret"] == "***"
        assert event["user_id"] == "u-1"
        assert event["event"] == "login_succeeded"

    def test_contacts_masked(self):
        event = _scrub(
            None, "info", {"event": "x", "recipient": "bob@x.com", "identifier": "bobby"}
        )
        assert event["recipient"] == "bo***@x.com"
        assert event["identifier"] == "bo***"

    def test_non_string_values_untouched(self):
        event = _scrub(None, "info", {"event": "x", "token": None, "email": 3})
        assert event["token"] is None
        assert event["email"] == 3

    def test_correlation_id_attached(self):
        token = correlation_id_var.set(None)
        try:
            cid = set_correlation_id("req-42")
            assert _scrub(None, "info", {"event": "x"})["correlation_id"] == cid
        finally:
            correlation_id_var.reset(token)
