"""
Outbound email for the billing core.

Delivery is best-effort: ``queue`` hands the message to a small worker pool
and returns immediately. A failed send is logged and never reaches the
operation that queued it.
"""
import logging
import smtplib
from concurrent.futures import Future, ThreadPoolExecutor
from email.mime.application import MIMEApplication
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText
from functools import lru_cache
from html import escape
from typing import Any, Dict, List, Optional, Tuple

from config import Settings, get_settings

logger = logging.getLogger(__name__)

Attachment = Tuple[str, bytes]


class Notifier:
    def __init__(self, settings: Optional[Settings] = None):
        self.settings = settings or get_settings()
        self._pool = ThreadPoolExecutor(max_workers=self.settings.NOTIFIER_WORKERS, thread_name_prefix="notifier")

    def send(self, to_address: str, subject: str, body: str, attachments: Optional[List[Attachment]] = None) -> bool:
        msg = MIMEMultipart("mixed")
        msg["Subject"] = subject
        msg["From"] = self.settings.EMAIL_FROM
        msg["To"] = to_address
        msg.attach(MIMEText(body, "html"))
        for filename, payload in attachments or []:
            part = MIMEApplication(payload, Name=filename)
            part["Content-Disposition"] = f'attachment; filename="{filename}"'
            msg.attach(part)

        if not (self.settings.SMTP_USER and self.settings.SMTP_PASS):
            logger.info("DEV MODE - would send email to %s | Subject: %s", to_address, subject)
            return True

        with smtplib.SMTP(self.settings.SMTP_HOST, self.settings.SMTP_PORT,
                          timeout=self.settings.NOTIFIER_TIMEOUT_S) as server:
            server.starttls()
            server.login(self.settings.SMTP_USER, self.settings.SMTP_PASS)
            server.send_message(msg)
        logger.info("Email sent to %s", to_address)
        return True

    def queue(self, to_address: Optional[str], subject: str, body: str,
              attachments: Optional[List[Attachment]] = None) -> Optional[Future]:
        """Queue a message for delivery. Returns the pending future, or None when there is no recipient."""
        if not to_address:
            logger.warning("Skipping email %r: no recipient", subject)
            return None
        future = self._pool.submit(self.send, to_address, subject, body, attachments)
        future.add_done_callback(lambda f: self._log_outcome(f, to_address, subject))
        return future

    @staticmethod
    def _log_outcome(future: Future, to_address: str, subject: str) -> None:
        exc = future.exception()
        if exc is not None:
            logger.error("Email %r to %s failed: %s", subject, to_address, exc)

    def shutdown(self) -> None:
        self._pool.shutdown(wait=True)


@lru_cache()
def get_notifier() -> Notifier:
    return Notifier()


# ----------------------------------------------------------------------------
# Message composition
# ----------------------------------------------------------------------------

def _wrap(title: str, inner: str) -> str:
    return (
        '<div style="font-family: sans-serif; max-width: 600px; margin: auto;">'
        f'<div style="background-color: #4177BC; padding: 20px; color: white; text-align: center;"><h2>{title}</h2></div>'
        f'<div style="padding: 20px;">{inner}</div></div>'
    )


def _button(url: str, label: str) -> str:
    return (f'<p><a href="{escape(url)}" style="background-color: #4177BC; color: white; padding: 12px 25px; '
            f'text-decoration: none; border-radius: 5px;">{label}</a></p>')


def credentials_email(name: str, login_email: str, password: str, frontend_url: str) -> Tuple[str, str]:
    body = _wrap(
        "Your workspace is ready",
        f"<p>Hello {escape(name)},</p>"
        "<p>Log in to your project workspace using the credentials below:</p>"
        f"<p><strong>Email:</strong> {escape(login_email)}<br><strong>Password:</strong> {escape(password)}</p>"
        + _button(f"{frontend_url}/login?email={login_email}", "Login to Dashboard"),
    )
    return f"Login Credentials for {name}", body


def project_started_email(client_name: str, title: str, invoice: Dict[str, Any], frontend_url: str,
                          payment_link: str = "") -> Tuple[str, str]:
    inner = (
        f"<p>Hello <b>{escape(client_name)}</b>,</p>"
        "<p>Your new project has been initiated and the first invoice is ready.</p>"
        f"<p><b>Amount Due:</b> {escape(str(invoice.get('currency') or ''))} {invoice.get('grandTotal', 0):,.2f}<br>"
        f"<b>Invoice ID:</b> {escape(str(invoice.get('invoiceId')))}</p>"
        + _button(f"{frontend_url}/login", "View Dashboard & Pay")
    )
    if payment_link:
        inner += _button(payment_link, "Pay Now")
    return f"New Project & Invoice: {title}", _wrap(f"Project Started: {escape(title)}", inner)


def invoice_email(invoice: Dict[str, Any], payment_link: str = "") -> Tuple[str, str]:
    currency = escape(str(invoice.get("currency") or ""))
    rows = "".join(
        f"<tr><td>{escape(str(item.get('name', '')))}</td><td style=\"text-align: center;\">{item.get('qty', 0)}</td>"
        f"<td style=\"text-align: right;\">{currency} {float(item.get('qty', 0)) * float(item.get('price', 0)):,.2f}</td></tr>"
        for item in invoice.get("items") or []
    )
    inner = (
        f"<p>Hi {escape(str(invoice.get('clientName', '')))}, you have a new invoice for "
        f"<b>{escape(str(invoice.get('projectTitle', '')))}</b>.</p>"
        '<table style="width: 100%;"><thead><tr><th style="text-align: left;">Item</th><th>Qty</th>'
        f'<th style="text-align: right;">Total</th></tr></thead><tbody>{rows}</tbody></table>'
        f"<h3 style=\"text-align: right;\">Total Due: {currency} {float(invoice.get('remainingDue') or invoice.get('grandTotal') or 0):,.2f}</h3>"
    )
    if payment_link:
        inner += _button(payment_link, "Pay Now")
    return f"Action Required: Invoice {invoice.get('invoiceId')}", _wrap(f"INVOICE {escape(str(invoice.get('invoiceId')))}", inner)


def payment_receipt_email(client_name: str, project_name: str, milestone_name: str, amount: float,
                          method: Optional[str], frontend_url: str) -> Tuple[str, str]:
    inner = (
        f"<p>Hi <b>{escape(client_name or 'Valued Client')}</b>,</p>"
        f"<p>Your payment for the milestone <b>{escape(milestone_name)}</b> has been processed.</p>"
        f"<p>Project: <b>{escape(project_name)}</b><br>Amount Paid: <b>{amount:,.2f}</b><br>"
        f"Method: <b>{escape(method or 'N/A')}</b></p>"
        + _button(frontend_url, "View Dashboard")
    )
    return f"Payment Receipt: {milestone_name}", _wrap("Payment Confirmed", inner)
