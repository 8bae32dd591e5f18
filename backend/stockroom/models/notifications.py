from __future__ import annotations

from ..extensions import db
from ..time_utils import to_utc_z

FREQUENCY_DAILY = "daily"
FREQUENCY_WEEKLY = "weekly"
FREQUENCY_MONTHLY = "monthly"
VALID_FREQUENCIES = (FREQUENCY_DAILY, FREQUENCY_WEEKLY, FREQUENCY_MONTHLY)


class SensibleCategory(db.Model):
    """
    Per-category alert rule.

    When any active product of the category is at or below min_quantity (or out
    of stock), one email bundling those products goes to notification_email,
    at most once per notification_frequency window. last_notification_sent is
    only advanced after a successful dispatch; a failed rule is never
    deactivated automatically.
    """
    __tablename__ = "sensible_categories"
    __table_args__ = (
        db.Index("ix_sensible_categories_active", "is_active"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    category_id = db.Column(db.Integer, db.ForeignKey("categories.id"), nullable=False, index=True)

    min_quantity = db.Column(db.Integer, nullable=False, default=0)
    notification_email = db.Column(db.String(255), nullable=False)
    notification_frequency = db.Column(db.String(16), nullable=False, default=FREQUENCY_DAILY)

    is_active = db.Column(db.Boolean, nullable=False, default=True)
    last_notification_sent = db.Column(db.DateTime(timezone=True), nullable=True)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())
    updated_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now(), onupdate=db.func.now())

    category = db.relationship("Category", backref=db.backref("alert_rules", lazy=True))

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "category_id": self.category_id,
            "category_name": self.category.name if self.category else None,
            "min_quantity": self.min_quantity,
            "notification_email": self.notification_email,
            "notification_frequency": self.notification_frequency,
            "is_active": self.is_active,
            "last_notification_sent": to_utc_z(self.last_notification_sent),
            "created_at": to_utc_z(self.created_at),
            "updated_at": to_utc_z(self.updated_at),
        }
