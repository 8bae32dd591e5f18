"""
Notification Scheduler - low-stock alerting

One cycle runs two independent steps:

Step A - category rules (SensibleCategory):
    For every active rule, the candidates are the active products of the rule's
    category with current_stock <= min_quantity or current_stock <= 0. No
    candidates: the rule is left untouched. Otherwise should_send() decides,
    one message bundling all candidates goes to the rule's address, and
    last_notification_sent is advanced only when that dispatch succeeded.

Step B - global low-stock sweep (gated by the notify_low_stock setting):
    Active products with current_stock <= min_stock or <= 0 whose category is
    not covered by an active rule. One message per resolved recipient, with a
    pause between sends. No cooldown state of its own.

Delivery failures never abort a cycle: each rule and each recipient is tried
independently, failures are logged and reported in the CycleReport.
"""

from __future__ import annotations

import logging
import threading
import time
from dataclasses import dataclass, field
from datetime import datetime, timedelta

from flask import current_app
from sqlalchemy import or_, select

from ..extensions import db
from ..models import Product, SensibleCategory, User
from ..models.notifications import (
    FREQUENCY_DAILY,
    FREQUENCY_MONTHLY,
    FREQUENCY_WEEKLY,
)
from ..models.users import ROLE_ADMIN, ROLE_EMPLOYEE, ROLE_MANAGER
from ..time_utils import (
    elapsed_at_least,
    elapsed_days,
    same_calendar_day,
    same_calendar_month,
    to_utc_naive,
    utcnow,
)
from .delivery import (
    CHANNEL_EMAIL,
    CHANNEL_SMS,
    DeliveryError,
    MailAlertSender,
    default_sms_sender,
)
from .settings_service import get_notification_settings, parse_email_list, parse_phone_list
from .unit_of_work import RETRYABLE_ERRORS, PersistenceError, UnitOfWork

logger = logging.getLogger(__name__)

KIND_CATEGORY = "category"
KIND_LOW_STOCK = "low_stock"

HOURLY_FLOOR = timedelta(hours=1)
WEEKLY_DAYS = 7


class CycleAlreadyRunningError(RuntimeError):
    """Another notification cycle holds the single-flight lock."""


@dataclass
class DispatchResult:
    kind: str
    channel: str
    recipient: str
    product_ids: list[int]
    success: bool
    rule_id: int | None = None
    error: str | None = None

    def to_dict(self) -> dict:
        return {
            "kind": self.kind,
            "channel": self.channel,
            "recipient": self.recipient,
            "product_ids": list(self.product_ids),
            "success": self.success,
            "rule_id": self.rule_id,
            "error": self.error,
        }


@dataclass
class CycleReport:
    started_at: datetime
    forced: bool = False
    hourly: bool = False
    dispatched: list[DispatchResult] = field(default_factory=list)
    rules_evaluated: int = 0
    rules_skipped_cooldown: list[int] = field(default_factory=list)
    rules_without_candidates: list[int] = field(default_factory=list)
    low_stock_enabled: bool = True
    low_stock_product_ids: list[int] = field(default_factory=list)

    @property
    def sent_count(self) -> int:
        return sum(1 for d in self.dispatched if d.success)

    @property
    def failed_count(self) -> int:
        return sum(1 for d in self.dispatched if not d.success)

    def to_dict(self) -> dict:
        return {
            "started_at": self.started_at.isoformat(),
            "forced": self.forced,
            "hourly": self.hourly,
            "sent": self.sent_count,
            "failed": self.failed_count,
            "rules_evaluated": self.rules_evaluated,
            "rules_skipped_cooldown": list(self.rules_skipped_cooldown),
            "rules_without_candidates": list(self.rules_without_candidates),
            "low_stock_enabled": self.low_stock_enabled,
            "low_stock_product_ids": list(self.low_stock_product_ids),
            "dispatched": [d.to_dict() for d in self.dispatched],
        }


def should_send(rule, now: datetime, force: bool = False, hourly: bool = False) -> bool:
    """
    Cooldown decision for one category rule.

    - force: always
    - never sent before: always
    - hourly path: at least one hour since the last send
    - otherwise by frequency: daily (different calendar day), weekly (7+ whole
      days), monthly (different month or year); unknown values act as daily
    """
    if force:
        return True

    last = rule.last_notification_sent
    if last is None:
        return True
    last = to_utc_naive(last)

    if hourly:
        return elapsed_at_least(last, now, HOURLY_FLOOR)

    frequency = (rule.notification_frequency or "").lower()
    if frequency == FREQUENCY_WEEKLY:
        return elapsed_days(last, now) >= WEEKLY_DAYS
    if frequency == FREQUENCY_MONTHLY:
        return not same_calendar_month(last, now)
    if frequency != FREQUENCY_DAILY:
        logger.warning("Rule %s has unknown frequency %r; treating as daily", rule.id, rule.notification_frequency)
    return not same_calendar_day(last, now)


def _low_stock_filter(threshold):
    return or_(Product.current_stock <= threshold, Product.current_stock <= 0)


class NotificationScheduler:
    """
    Runs notification cycles against injected collaborators.

    sender:         object with send_category_alert(email, products, category)
                    and send_low_stock_alert(email, products)
    clock:          callable returning the current UTC-naive datetime
    settings_loader: callable returning the notification settings dict
    sms_sender:     optional object with send_low_stock_alert(phone, products)
    sleep:          callable used for the inter-send pause
    """

    def __init__(
        self,
        sender,
        *,
        clock=utcnow,
        settings_loader=get_notification_settings,
        sms_sender=None,
        send_pause_seconds: float = 0.5,
        sleep=time.sleep,
    ):
        self.sender = sender
        self.clock = clock
        self.settings_loader = settings_loader
        self.sms_sender = sms_sender
        self.send_pause_seconds = send_pause_seconds
        self.sleep = sleep

    def should_send(self, rule, now: datetime, force: bool = False, hourly: bool = False) -> bool:
        return should_send(rule, now, force=force, hourly=hourly)

    def run_check_cycle(self, now: datetime | None = None, force: bool = False, hourly: bool = False) -> CycleReport:
        now = to_utc_naive(now or self.clock())
        report = CycleReport(started_at=now, forced=force, hourly=hourly)

        self._run_category_rules(report, now, force, hourly)

        settings = self.settings_loader()
        report.low_stock_enabled = bool(settings.get("notify_low_stock", True))
        if report.low_stock_enabled:
            self._run_low_stock_sweep(report, settings)

        logger.info(
            "Notification cycle finished: %d sent, %d failed, %d rules evaluated, %d low-stock products",
            report.sent_count,
            report.failed_count,
            report.rules_evaluated,
            len(report.low_stock_product_ids),
        )
        return report

    # -------------------------------------------------------------------------
    # Step A
    # -------------------------------------------------------------------------

    def category_candidates(self, rule: SensibleCategory) -> list[Product]:
        return (
            db.session.query(Product)
            .filter(
                Product.category_id == rule.category_id,
                Product.is_active.is_(True),
                _low_stock_filter(rule.min_quantity),
            )
            .order_by(Product.current_stock.asc(), Product.name.asc())
            .all()
        )

    def _run_category_rules(self, report: CycleReport, now: datetime, force: bool, hourly: bool) -> None:
        rules = (
            db.session.query(SensibleCategory)
            .filter(SensibleCategory.is_active.is_(True))
            .order_by(SensibleCategory.id.asc())
            .all()
        )

        for rule in rules:
            report.rules_evaluated += 1
            products = self.category_candidates(rule)
            if not products:
                report.rules_without_candidates.append(rule.id)
                continue

            if not self.should_send(rule, now, force=force, hourly=hourly):
                logger.debug("Rule %s skipped: notified at %s", rule.id, rule.last_notification_sent)
                report.rules_skipped_cooldown.append(rule.id)
                continue

            rule_id = rule.id
            result = DispatchResult(
                kind=KIND_CATEGORY,
                channel=CHANNEL_EMAIL,
                recipient=rule.notification_email,
                product_ids=[p.id for p in products],
                success=False,
                rule_id=rule.id,
            )
            try:
                self.sender.send_category_alert(rule.notification_email, products, rule.category)
            except DeliveryError as e:
                result.error = str(e)
                logger.error(
                    "Category alert failed: rule=%s category=%s recipient=%s error=%s",
                    rule.id, rule.category_id, rule.notification_email, e,
                )
                report.dispatched.append(result)
                continue

            result.success = True
            report.dispatched.append(result)
            logger.info(
                "Category alert sent: rule=%s category=%s recipient=%s products=%d frequency=%s",
                rule.id, rule.category_id, rule.notification_email, len(products), rule.notification_frequency,
            )

            try:
                with UnitOfWork():
                    rule.last_notification_sent = now
            except (PersistenceError, *RETRYABLE_ERRORS):
                # The alert went out; the rule will fire again next cycle
                logger.exception("Could not store last_notification_sent for rule %s", rule_id)

    # -------------------------------------------------------------------------
    # Step B
    # -------------------------------------------------------------------------

    def low_stock_products(self) -> list[Product]:
        covered = select(SensibleCategory.category_id).where(SensibleCategory.is_active.is_(True))
        return (
            db.session.query(Product)
            .filter(
                Product.is_active.is_(True),
                _low_stock_filter(Product.min_stock),
                or_(Product.category_id.is_(None), Product.category_id.notin_(covered)),
            )
            .order_by(Product.current_stock.asc(), Product.name.asc())
            .all()
        )

    def resolve_recipients(self, settings: dict) -> list[str]:
        """Role-flag users plus additional_emails, deduplicated case-insensitively in that order."""
        roles = []
        if settings.get("notify_admin", True):
            roles.append(ROLE_ADMIN)
        if settings.get("notify_manager", True):
            roles.append(ROLE_MANAGER)
        if settings.get("notify_employee", False):
            roles.append(ROLE_EMPLOYEE)

        candidates = []
        if roles:
            users = (
                db.session.query(User)
                .filter(
                    User.role.in_(roles),
                    User.is_active.is_(True),
                    User.email.isnot(None),
                    User.email != "",
                )
                .order_by(User.id.asc())
                .all()
            )
            candidates.extend(u.email.strip() for u in users)
        candidates.extend(parse_email_list(settings.get("additional_emails")))

        seen = set()
        recipients = []
        for email in candidates:
            key = email.lower()
            if email and key not in seen:
                seen.add(key)
                recipients.append(email)
        return recipients

    def _run_low_stock_sweep(self, report: CycleReport, settings: dict) -> None:
        products = self.low_stock_products()
        report.low_stock_product_ids = [p.id for p in products]
        if not products:
            return

        product_ids = [p.id for p in products]
        deliveries = [(CHANNEL_EMAIL, email) for email in self.resolve_recipients(settings)]
        if settings.get("notify_sms") and self.sms_sender is not None:
            deliveries.extend((CHANNEL_SMS, phone) for phone in parse_phone_list(settings.get("sms_recipients")))

        if not deliveries:
            logger.warning("%d low-stock products but no recipients configured", len(products))
            return

        for index, (channel, recipient) in enumerate(deliveries):
            if index and self.send_pause_seconds:
                self.sleep(self.send_pause_seconds)

            channel_sender = self.sender if channel == CHANNEL_EMAIL else self.sms_sender
            result = DispatchResult(
                kind=KIND_LOW_STOCK,
                channel=channel,
                recipient=recipient,
                product_ids=product_ids,
                success=False,
            )
            try:
                channel_sender.send_low_stock_alert(recipient, products)
                result.success = True
                logger.info("Low-stock alert sent via %s to %s (%d products)", channel, recipient, len(products))
            except DeliveryError as e:
                result.error = str(e)
                logger.error("Low-stock alert via %s to %s failed: %s", channel, recipient, e)
            report.dispatched.append(result)


# =============================================================================
# ENTRY POINTS
# =============================================================================

_cycle_lock = threading.Lock()


def build_default_scheduler() -> NotificationScheduler:
    """Scheduler wired to Flask-Mail, Twilio (when configured) and app config."""
    return NotificationScheduler(
        MailAlertSender(),
        sms_sender=default_sms_sender(),
        send_pause_seconds=float(current_app.config.get("NOTIFICATION_SEND_PAUSE_SECONDS", 0.5)),
    )


def run_notification_cycle(
    scheduler: NotificationScheduler | None = None,
    *,
    now: datetime | None = None,
    force: bool = False,
    hourly: bool | None = None,
) -> CycleReport:
    """
    Single-flight wrapper around run_check_cycle.

    Raises CycleAlreadyRunningError instead of waiting when a cycle is already
    running in this process.
    """
    if not _cycle_lock.acquire(blocking=False):
        raise CycleAlreadyRunningError("A notification cycle is already running")
    try:
        if scheduler is None:
            scheduler = build_default_scheduler()
        if hourly is None:
            hourly = bool(current_app.config.get("NOTIFICATION_HOURLY_FLOOR", False))
        return scheduler.run_check_cycle(now=now, force=force, hourly=hourly)
    finally:
        _cycle_lock.release()
