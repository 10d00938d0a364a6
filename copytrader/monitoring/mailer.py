"""
Invoice email delivery over SMTP.

When SMTP is not configured the email is logged only and the send
reports False, which leaves the invoice in "pending".
"""
import asyncio
import smtplib
import ssl
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText
from typing import Tuple

from copytrader.config.config import BillingConfig
from copytrader.domain.models import Invoice
from copytrader.monitoring.logger import get_logger

logger = get_logger(__name__)


def payment_url(config: BillingConfig, payment_token: str) -> str:
    return f"{config.app_base_url.rstrip('/')}/invoice/{payment_token}"


def render_invoice_email(config: BillingConfig, follower_name: str, invoice: Invoice) -> Tuple[str, str, str]:
    """Returns (subject, text body, html body)."""
    subject = f"Invoice for {invoice.quarter_label}"
    sign = "+" if invoice.quarter_profit >= 0 else ""
    rows = [
        ("Start Equity", f"${invoice.start_equity:.2f}"),
        ("End Equity", f"${invoice.end_equity:.2f}"),
        ("Net Deposits", f"${invoice.net_deposits:.2f}"),
        ("Net Withdrawals", f"${invoice.net_withdrawals:.2f}"),
        ("Quarter Profit", f"{sign}${invoice.quarter_profit:.2f}"),
        ("Bracket", invoice.bracket_label),
        ("Base Fee", f"€{invoice.base_fee:.2f}"),
        ("Bracket Fee", f"€{invoice.bracket_fee:.2f}"),
        ("Days Active", f"{invoice.days_active} / {invoice.days_in_quarter}"),
        ("Amount Due", f"€{invoice.total_amount:.2f}"),
    ]
    url = payment_url(config, invoice.payment_token)

    text_lines = [
        f"Hi {follower_name},",
        "",
        f"Your invoice for {invoice.quarter_label} is ready.",
        "",
    ]
    text_lines += [f"{label}: {value}" for label, value in rows]
    text_lines += ["", f"Pay here: {url}"]

    html_rows = "".join(
        f"<tr><td>{label}</td><td style=\"text-align: right\">{value}</td></tr>" for label, value in rows
    )
    html = (
        f"<p>Hi {follower_name},</p>"
        f"<p>Your invoice for <strong>{invoice.quarter_label}</strong> is ready.</p>"
        f"<table>{html_rows}</table>"
        f"<p><a href=\"{url}\">Pay invoice</a></p>"
    )
    return subject, "\n".join(text_lines), html


def _send_smtp(config: BillingConfig, to: str, subject: str, text: str, html: str) -> None:
    msg = MIMEMultipart("alternative")
    msg["Subject"] = subject
    msg["From"] = config.smtp_sender
    msg["To"] = to
    msg.attach(MIMEText(text, "plain"))
    msg.attach(MIMEText(html, "html"))

    if config.smtp_port == 465:
        with smtplib.SMTP_SSL(config.smtp_host, config.smtp_port, context=ssl.create_default_context()) as server:
            server.login(config.smtp_user, config.smtp_password)
            server.sendmail(config.smtp_sender, [to], msg.as_string())
    else:
        with smtplib.SMTP(config.smtp_host, config.smtp_port) as server:
            server.starttls(context=ssl.create_default_context())
            server.login(config.smtp_user, config.smtp_password)
            server.sendmail(config.smtp_sender, [to], msg.as_string())


async def send_invoice_email(config: BillingConfig, to: str, follower_name: str, invoice: Invoice) -> bool:
    """Send the invoice breakdown. Returns True only if the email went out."""
    subject, text, html = render_invoice_email(config, follower_name, invoice)

    if not (config.smtp_host and config.smtp_user and config.smtp_password):
        logger.info(
            "SMTP not configured, invoice email logged only",
            to=to,
            quarter=invoice.quarter_label,
            amount=str(invoice.total_amount),
        )
        return False

    try:
        await asyncio.to_thread(_send_smtp, config, to, subject, text, html)
    except (smtplib.SMTPException, OSError) as e:
        logger.error("Invoice email failed", to=to, quarter=invoice.quarter_label, error=str(e))
        return False

    logger.info("Invoice email sent", to=to, quarter=invoice.quarter_label)
    return True
