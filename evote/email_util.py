"""
Email delivery for verification codes, over async SMTP (aiosmtplib).

SMTP settings come from ``evote.config.Settings`` (SMTP_HOST, SMTP_PORT,
SMTP_USER, SMTP_PASS, SMTP_USE_TLS, SMTP_FROM).
"""

import logging
from email.message import EmailMessage

import aiosmtplib

from .config import Settings

logger = logging.getLogger(__name__)

OTP_HTML = """\
<div style="font-family: Arial, sans-serif; max-width: 520px; margin: 0 auto;">
  <h2 style="background: #1f6f43; color: #fff; padding: 16px; margin: 0;">{title}</h2>
  <div style="padding: 24px; background: #f4f6f5;">
    <p>Use this code to confirm your identity and open your ballot:</p>
    <p style="font: bold 32px monospace; letter-spacing: 6px; color: #1f6f43;">{code}</p>
    <p style="color: #666; font-size: 13px;">
      Valid for {minutes} minutes, once. Never share it with anyone.
    </p>
  </div>
</div>
"""


def _smtp_options(settings: Settings) -> dict:
    options = {
        "hostname": settings.smtp_host,
        "port": settings.smtp_port,
        "start_tls": settings.smtp_use_tls,
    }
    if settings.smtp_user and settings.smtp_pass:
        options.update(username=settings.smtp_user, password=settings.smtp_pass)
    return options


async def send_email(settings: Settings, to: str, subject: str, body_text: str,
                     body_html: str | None = None):
    """Send one message; delivery errors are logged and re-raised."""
    msg = EmailMessage()
    msg["From"] = settings.smtp_from
    msg["To"] = to
    msg["Subject"] = subject
    msg.set_content(body_text)
    if body_html:
        msg.add_alternative(body_html, subtype="html")

    try:
        await aiosmtplib.send(msg, **_smtp_options(settings))
    except Exception as e:
        logger.error(f"SMTP delivery to {to} failed: {e}")
        raise
    logger.info(f"Email sent to {to}: {subject}")


async def send_otp_email(settings: Settings, to_email: str, otp_code: str):
    title = settings.election_title
    minutes = settings.otp_ttl_minutes
    body_text = (
        f"Your {title} verification code is {otp_code}\n\n"
        f"It is valid for {minutes} minutes and works once.\n"
        "If you did not ask for it, ignore this message.\n\n"
        "Returning Officer"
    )
    await send_email(
        settings, to_email, f"{title} verification code", body_text,
        OTP_HTML.format(title=title, code=otp_code, minutes=minutes),
    )
