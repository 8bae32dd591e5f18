"""
Alert delivery channels.

Senders raise DeliveryError for any transport failure; the scheduler catches
it per rule / per recipient.
"""

from __future__ import annotations

import logging
from html import escape

import httpx
from flask import current_app
from flask_mail import Message

from ..extensions import mail

logger = logging.getLogger(__name__)

CHANNEL_EMAIL = "email"
CHANNEL_SMS = "sms"

SMS_MAX_LISTED = 5


class DeliveryError(Exception):
    """A message could not be handed to its transport."""
    def __init__(self, message: str, *, recipient: str, channel: str):
        super().__init__(message)
        self.recipient = recipient
        self.channel = channel


def _product_line(product) -> str:
    status = "OUT OF STOCK" if product.current_stock <= 0 else "low stock"
    return (
        f"- {product.name} (SKU {product.sku}): {product.current_stock} in stock, "
        f"minimum {product.min_stock} [{status}]"
    )


def _product_rows(products) -> str:
    rows = []
    for p in products:
        rows.append(
            "<tr>"
            f"<td>{escape(p.sku)}</td>"
            f"<td>{escape(p.name)}</td>"
            f"<td>{escape(p.category.name) if p.category else '-'}</td>"
            f"<td>{p.current_stock}</td>"
            f"<td>{p.min_stock}</td>"
            "</tr>"
        )
    return "\n".join(rows)


def low_stock_subject(count: int) -> str:
    return f"ALERT: Low Stock Products - {count} Products Need Attention"


class MailAlertSender:
    """Email alerts through Flask-Mail. Needs an application context."""

    def _send(self, recipient: str, subject: str, text_body: str, html_body: str) -> None:
        msg = Message(
            subject=subject,
            recipients=[recipient],
            body=text_body,
            html=html_body,
        )
        try:
            mail.send(msg)
        except Exception as e:
            # smtplib / socket errors all end up here
            raise DeliveryError(f"Mail delivery failed: {e}", recipient=recipient, channel=CHANNEL_EMAIL) from e
        logger.info("Email '%s' sent to %s", subject, recipient)

    def send_category_alert(self, email: str, products, category) -> None:
        products = list(products)
        subject = f"ALERT: {category.name} - {len(products)} Products Below Minimum Quantity"

        text_body = "\n".join(
            [
                f"The following products in category '{category.name}' are at or below their alert threshold:",
                "",
                *[_product_line(p) for p in products],
                "",
                "Please review stock levels and reorder where needed.",
            ]
        )
        html_body = f"""
        <h2>Category alert: {escape(category.name)}</h2>
        <p>The following products are at or below their alert threshold:</p>
        <table border="1" cellpadding="4" cellspacing="0">
            <tr><th>SKU</th><th>Product</th><th>Category</th><th>Stock</th><th>Minimum</th></tr>
            {_product_rows(products)}
        </table>
        <p>Please review stock levels and reorder where needed.</p>
        """

        self._send(email, subject, text_body, html_body)

    def send_low_stock_alert(self, email: str, products) -> None:
        products = list(products)
        subject = low_stock_subject(len(products))

        text_body = "\n".join(
            [
                f"{len(products)} products are at or below their minimum stock level:",
                "",
                *[_product_line(p) for p in products],
            ]
        )
        html_body = f"""
        <h2>Low stock report</h2>
        <p>{len(products)} products are at or below their minimum stock level.</p>
        <table border="1" cellpadding="4" cellspacing="0">
            <tr><th>SKU</th><th>Product</th><th>Category</th><th>Stock</th><th>Minimum</th></tr>
            {_product_rows(products)}
        </table>
        """

        self._send(email, subject, text_body, html_body)


class TwilioSmsSender:
    """SMS alerts through the Twilio REST API (Messages resource)."""

    def __init__(
        self,
        account_sid: str,
        auth_token: str,
        from_number: str,
        *,
        api_base: str = "https://api.twilio.com/2010-04-01",
        timeout: float = 10.0,
        client: httpx.Client | None = None,
    ):
        self.account_sid = account_sid
        self.auth_token = auth_token
        self.from_number = from_number
        self.api_base = api_base.rstrip("/")
        self.timeout = timeout
        self._client = client

    @classmethod
    def from_config(cls, config) -> "TwilioSmsSender | None":
        """None when the Twilio credentials are not configured."""
        sid = config.get("TWILIO_ACCOUNT_SID")
        token = config.get("TWILIO_AUTH_TOKEN")
        from_number = config.get("TWILIO_FROM_NUMBER")
        if not (sid and token and from_number):
            return None
        return cls(
            sid,
            token,
            from_number,
            api_base=config.get("TWILIO_API_BASE", "https://api.twilio.com/2010-04-01"),
            timeout=float(config.get("SMS_TIMEOUT_SECONDS", 10)),
        )

    @staticmethod
    def build_low_stock_body(products) -> str:
        products = list(products)
        listed = ", ".join(f"{p.name} ({p.current_stock})" for p in products[:SMS_MAX_LISTED])
        more = len(products) - SMS_MAX_LISTED
        suffix = f" and {more} more" if more > 0 else ""
        return f"Low stock alert: {len(products)} products need attention: {listed}{suffix}"

    def _post(self, url: str, data: dict) -> httpx.Response:
        auth = (self.account_sid, self.auth_token)
        if self._client is not None:
            return self._client.post(url, data=data, auth=auth, timeout=self.timeout)
        return httpx.post(url, data=data, auth=auth, timeout=self.timeout)

    def send_sms(self, phone: str, body: str) -> str | None:
        url = f"{self.api_base}/Accounts/{self.account_sid}/Messages.json"
        try:
            response = self._post(url, {"From": self.from_number, "To": phone, "Body": body})
            response.raise_for_status()
            payload = response.json()
        except (httpx.HTTPError, ValueError) as e:
            # ValueError: 2xx reply without a JSON body (proxy or gateway page)
            raise DeliveryError(f"SMS delivery failed: {e}", recipient=phone, channel=CHANNEL_SMS) from e

        message_sid = payload.get("sid") if isinstance(payload, dict) else None
        logger.info("SMS %s sent to %s", message_sid, phone)
        return message_sid

    def send_low_stock_alert(self, phone: str, products) -> str | None:
        return self.send_sms(phone, self.build_low_stock_body(products))


def default_sms_sender() -> TwilioSmsSender | None:
    sender = TwilioSmsSender.from_config(current_app.config)
    if sender is None:
        logger.debug("Twilio credentials not configured; SMS alerts disabled")
    return sender
