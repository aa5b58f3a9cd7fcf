"""Tests for SessionData persistence helpers and path lookup."""

import pytest

from tokengate.logging import _redact_credentials
from tokengate.storage.models import SessionData, value_from_path


class TestSessionData:
    """Tests for SessionData."""

    def test_assigning_access_token_clears_invalidated(self):
        data = SessionData(access_token="A1", invalidated=123)

        # Construction keeps a stored invalidation
        assert data.invalidated == 123
        data.access_token = "A2"
        assert data.invalidated is None

    def test_assigning_other_fields_keeps_invalidated(self):
        data = SessionData(access_token="A1", invalidated=123)

        data.refresh_token = "R2"
        data.access_token = None

        assert data.invalidated == 123

    def test_to_stored_omits_unset_fields(self):
        data = SessionData(access_token="A1", updated=0)

        assert data.to_stored() == {"access_token": "A1", "updated": 0}

    @pytest.mark.parametrize("value", [None, "", b'{"access_token": "A1"}'])
    def test_from_stored_accepts_empty_and_json(self, value):
        data = SessionData.from_stored(value)

        expected = "A1" if value else None
        assert data.access_token == expected

    def test_from_stored_ignores_unknown_keys(self):
        data = SessionData.from_stored({"access_token": "A1", "expires_in": 3600})

        assert data.access_token == "A1"
        assert "expires_in" not in data.to_stored()


class TestValueFromPath:
    """Tests for value_from_path()."""

    def test_nested_mapping_and_list(self):
        info = {"profile": {"emails": ["a@x.test", "b@x.test"]}}

        assert value_from_path(info, "profile.emails.1") == "b@x.test"

    def test_missing_segments_return_none(self):
        info = {"profile": {"emails": []}}

        assert value_from_path(info, "profile.emails.0") is None
        assert value_from_path(info, "profile.name.first") is None
        assert value_from_path(info, "profile.emails.first") is None


class TestCredentialRedaction:
    """Tests for the structlog credential redaction processor."""

    def test_masks_tokens_and_secrets(self):
        event = _redact_credentials(
            None,
            "info",
            {
                "event": "oauth2_token_refreshed",
                "access_token": "abcdef123456",
                "client_secret": "s3cret-value",
                "session_id": "12345",
            },
        )

        assert event["event"] == "oauth2_token_refreshed"
        assert event["access_token"] == "***3456"
        assert event["client_secret"] == "***alue"
        assert event["session_id"] == "12345"

    def test_short_and_non_string_values_untouched(self):
        event = _redact_credentials(
            None, "info", {"event": "x", "token_count": 3, "refresh_token": "abcd"}
        )

        assert event["token_count"] == 3
        assert event["refresh_token"] == "abcd"
