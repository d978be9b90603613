"""Tests for subscription entitlements."""

from boldvpn.config import settings
from boldvpn.models import SIMULTANEOUS_USE, RadReply
from boldvpn.services.entitlements import device_limit
from tests.factories import make_user


class TestDeviceLimit:
    """Tests for device_limit."""

    def test_default_without_reply(self, db_session, subscriber):
        assert device_limit(db_session, "alice") == settings.default_device_limit

    def test_latest_reply_wins(self, db_session):
        make_user(db_session, username="bob", device_limit=3)
        db_session.add(RadReply(username="bob", attribute=SIMULTANEOUS_USE, op=":=", value="5"))
        db_session.commit()

        assert device_limit(db_session, "bob") == 5

    def test_other_attributes_ignored(self, db_session, subscriber):
        db_session.add(RadReply(username="alice", attribute="Session-Timeout", op=":=", value="9"))
        db_session.commit()

        assert device_limit(db_session, "alice") == settings.default_device_limit

    def test_invalid_value_falls_back(self, db_session):
        make_user(db_session, username="carol")
        db_session.add(RadReply(username="carol", attribute=SIMULTANEOUS_USE, op=":=", value="many"))
        db_session.commit()

        assert device_limit(db_session, "carol") == settings.default_device_limit
