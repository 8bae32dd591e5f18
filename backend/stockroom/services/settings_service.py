"""
Notification settings stored as one JSON blob in the settings table.

Stored values are merged over DEFAULTS on read, so keys added later get their
default without a data migration.
"""

from __future__ import annotations

import json
import logging
import re

from ..extensions import db
from ..models import Setting
from .unit_of_work import run_in_unit_of_work

logger = logging.getLogger(__name__)

NOTIFICATION_SETTINGS_KEY = "notification_settings"

DEFAULTS = {
    "notify_low_stock": True,
    "notify_admin": True,
    "notify_manager": True,
    "notify_employee": False,
    "notify_sms": False,
    "additional_emails": "",
    "sms_recipients": "",
}

BOOLEAN_KEYS = ("notify_low_stock", "notify_admin", "notify_manager", "notify_employee", "notify_sms")
LIST_KEYS = ("additional_emails", "sms_recipients")

EMAIL_RE = re.compile(r"^[^@\s,;]+@[^@\s,;]+\.[^@\s,;]+$")
PHONE_RE = re.compile(r"^\+?[0-9][0-9 \-]{5,19}$")


class SettingsValidationError(Exception):
    def __init__(self, message: str, details: dict | None = None):
        super().__init__(message)
        self.details = details or {}


def _split(value) -> list[str]:
    if not value:
        return []
    if isinstance(value, (list, tuple)):
        parts = value
    else:
        parts = str(value).split(",")
    return [p.strip() for p in parts if p and str(p).strip()]


def parse_email_list(value) -> list[str]:
    """Comma-separated addresses -> well-formed addresses, in order. Malformed entries are dropped."""
    return [addr for addr in _split(value) if EMAIL_RE.match(addr)]


def parse_phone_list(value) -> list[str]:
    return [num for num in _split(value) if PHONE_RE.match(num)]


def _load_row() -> Setting | None:
    return db.session.query(Setting).filter_by(key=NOTIFICATION_SETTINGS_KEY).first()


def get_notification_settings() -> dict:
    settings = dict(DEFAULTS)
    row = _load_row()
    if row is None or not row.value:
        return settings

    try:
        stored = json.loads(row.value)
    except ValueError:
        logger.warning("Ignoring unreadable %s value", NOTIFICATION_SETTINGS_KEY)
        return settings

    if isinstance(stored, dict):
        settings.update({k: v for k, v in stored.items() if k in DEFAULTS})
    return settings


def _validate(patch: dict) -> dict:
    if not isinstance(patch, dict):
        raise SettingsValidationError("Invalid payload")

    unknown = sorted(set(patch) - set(DEFAULTS))
    if unknown:
        raise SettingsValidationError(f"Unknown setting(s): {', '.join(unknown)}")

    clean = {}
    for key in BOOLEAN_KEYS:
        if key in patch:
            if not isinstance(patch[key], bool):
                raise SettingsValidationError(f"{key} must be a boolean")
            clean[key] = patch[key]

    if "additional_emails" in patch:
        entries = _split(patch["additional_emails"])
        invalid = [e for e in entries if not EMAIL_RE.match(e)]
        if invalid:
            raise SettingsValidationError("Invalid email address(es)", details={"invalid": invalid})
        clean["additional_emails"] = ", ".join(entries)

    if "sms_recipients" in patch:
        entries = _split(patch["sms_recipients"])
        invalid = [e for e in entries if not PHONE_RE.match(e)]
        if invalid:
            raise SettingsValidationError("Invalid phone number(s)", details={"invalid": invalid})
        clean["sms_recipients"] = ", ".join(entries)

    return clean


def update_notification_settings(patch: dict, actor_id: int | None = None) -> dict:
    """Validate a partial update, merge it over the current values and store the result."""
    clean = _validate(patch)

    def _op():
        merged = get_notification_settings()
        merged.update(clean)

        row = _load_row()
        if row is None:
            row = Setting(key=NOTIFICATION_SETTINGS_KEY)
            db.session.add(row)
        row.value = json.dumps(merged, sort_keys=True)
        row.updated_by_user_id = actor_id
        return merged

    merged = run_in_unit_of_work(_op)
    logger.info("Notification settings updated by user %s: %s", actor_id, sorted(clean))
    return merged
