import json

import pytest

from stockroom.extensions import db
from stockroom.models import Setting
from stockroom.services import settings_service
from stockroom.services.settings_service import (
    DEFAULTS,
    NOTIFICATION_SETTINGS_KEY,
    SettingsValidationError,
    parse_email_list,
)


class TestParseEmailList:
    def test_trims_and_drops_malformed(self):
        assert parse_email_list(" a@x.com ,b@y.org,, nope, c@z ") == ["a@x.com", "b@y.org"]

    def test_empty(self):
        assert parse_email_list("") == []
        assert parse_email_list(None) == []


class TestNotificationSettings:
    def test_defaults_when_unset(self, db_session):
        assert settings_service.get_notification_settings() == DEFAULTS

    def test_update_merges_and_persists(self, db_session, admin_user):
        settings_service.update_notification_settings({"notify_employee": True}, actor_id=admin_user.id)
        result = settings_service.update_notification_settings({"additional_emails": " owner@shop.com , ops@shop.com"})

        assert result["notify_employee"] is True
        assert result["additional_emails"] == "owner@shop.com, ops@shop.com"
        assert result["notify_low_stock"] is True

        row = db.session.query(Setting).filter_by(key=NOTIFICATION_SETTINGS_KEY).one()
        assert json.loads(row.value)["notify_employee"] is True

    def test_stored_blob_merged_over_defaults(self, db_session):
        db.session.add(Setting(key=NOTIFICATION_SETTINGS_KEY, value=json.dumps({"notify_admin": False, "junk": 1})))
        db.session.commit()

        settings = settings_service.get_notification_settings()
        assert settings["notify_admin"] is False
        assert settings["notify_manager"] is True
        assert "junk" not in settings

    def test_unreadable_blob_falls_back_to_defaults(self, db_session):
        db.session.add(Setting(key=NOTIFICATION_SETTINGS_KEY, value="{not json"))
        db.session.commit()
        assert settings_service.get_notification_settings() == DEFAULTS

    @pytest.mark.parametrize(
        "patch",
        [
            {"notify_admin": "yes"},
            {"additional_emails": "ok@shop.com, broken"},
            {"sms_recipients": "call me"},
            {"unknown_flag": True},
        ],
    )
    def test_invalid_updates_rejected(self, db_session, patch):
        with pytest.raises(SettingsValidationError):
            settings_service.update_notification_settings(patch)
        assert db.session.query(Setting).count() == 0
