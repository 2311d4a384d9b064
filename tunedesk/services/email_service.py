from __future__ import annotations

import asyncio
import smtplib
from collections.abc import Callable
from dataclasses import dataclass
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText
from html import escape

import structlog

from tunedesk.config import Settings, settings as default_settings
from tunedesk.services.delivery import CHANNEL_EMAIL, DeliveryResult


logger = structlog.get_logger(__name__)

NOTIFICATION_PRICE_SET = 'PRICE_SET'
NOTIFICATION_PAYMENT_CONFIRMED = 'PAYMENT_CONFIRMED'
NOTIFICATION_FILE_READY = 'FILE_READY'

EMAIL_WORTHY_TYPES = frozenset({NOTIFICATION_PRICE_SET, NOTIFICATION_PAYMENT_CONFIRMED, NOTIFICATION_FILE_READY})

_SUBJECTS = {
    NOTIFICATION_PRICE_SET: 'Price set for your file',
    NOTIFICATION_PAYMENT_CONFIRMED: 'Payment confirmed',
    NOTIFICATION_FILE_READY: 'Your tuned file is ready',
}

_BUTTONS = {
    NOTIFICATION_PRICE_SET: 'Review and pay',
    NOTIFICATION_PAYMENT_CONFIRMED: 'Track your file',
    NOTIFICATION_FILE_READY: 'Download file',
}


@dataclass(frozen=True)
class EmailMessage:
    to: str
    subject: str
    html_body: str
    text_body: str


def _render_html(subject: str, greeting: str, body: str, button: str, link: str) -> str:
    return f"""<!DOCTYPE html>
<html lang="en">
<head>
  <meta charset="UTF-8" />
  <title>{escape(subject)}</title>
</head>
<body style="margin:0;padding:0;background-color:#f1f5f9;font-family:system-ui,-apple-system,sans-serif;">
  <table role="presentation" width="100%" cellspacing="0" cellpadding="0">
    <tr>
      <td align="center" style="padding:32px 16px;">
        <table role="presentation" width="100%" cellspacing="0" cellpadding="0" style="max-width:480px;background:#ffffff;border-radius:12px;">
          <tr>
            <td style="padding:28px 24px;">
              <p style="margin:0 0 12px;font-size:16px;color:#0f172a;">{escape(greeting)}</p>
              <p style="margin:0 0 24px;font-size:15px;line-height:1.6;color:#334155;">{escape(body)}</p>
              <p style="margin:0;text-align:center;">
                <a href="{escape(link, quote=True)}" style="display:inline-block;padding:12px 24px;background:#0d9488;color:#ffffff;text-decoration:none;border-radius:8px;">{escape(button)}</a>
              </p>
            </td>
          </tr>
        </table>
      </td>
    </tr>
  </table>
</body>
</html>"""


def build_notification_email(
    notification_type: str,
    *,
    to: str,
    recipient_name: str,
    message: str,
    file_id: str | None = None,
    config: Settings | None = None,
) -> EmailMessage | None:
    """Templated email for an email-worthy notification type, ``None`` for the rest."""
    if notification_type not in EMAIL_WORTHY_TYPES or not to:
        return None
    cfg = config or default_settings
    base = cfg.PUBLIC_BASE_URL.rstrip('/')
    link = f'{base}/account/files/{file_id}' if file_id else f'{base}/account/files'

    subject = _SUBJECTS[notification_type]
    greeting = f'Hello {recipient_name},'
    html_body = _render_html(subject, greeting, message, _BUTTONS[notification_type], link)
    text_body = f'{greeting}\n\n{message}\n\n{link}\n'
    return EmailMessage(to=to, subject=subject, html_body=html_body, text_body=text_body)


class EmailSender:
    """SMTP delivery run in a worker thread so the event loop never blocks on the socket."""

    def __init__(self, config: Settings | None = None, smtp_factory: Callable[..., smtplib.SMTP] = smtplib.SMTP):
        self.config = config or default_settings
        self._smtp_factory = smtp_factory

    @property
    def is_configured(self) -> bool:
        return self.config.EMAIL_ENABLED and bool(self.config.SMTP_HOST.strip())

    def _build_mime(self, message: EmailMessage) -> MIMEMultipart:
        mime = MIMEMultipart('alternative')
        mime['Subject'] = message.subject
        mime['From'] = self.config.SMTP_FROM
        mime['To'] = message.to
        mime.attach(MIMEText(message.text_body, 'plain', 'utf-8'))
        mime.attach(MIMEText(message.html_body, 'html', 'utf-8'))
        return mime

    def _send_sync(self, message: EmailMessage) -> None:
        cfg = self.config
        mime = self._build_mime(message)
        with self._smtp_factory(cfg.SMTP_HOST, cfg.SMTP_PORT, timeout=cfg.SMTP_TIMEOUT_SECONDS) as smtp:
            if cfg.SMTP_USE_TLS:
                smtp.starttls()
            if cfg.SMTP_USER and cfg.SMTP_PASSWORD:
                smtp.login(cfg.SMTP_USER, cfg.SMTP_PASSWORD)
            smtp.sendmail(cfg.SMTP_FROM, [message.to], mime.as_string())

    async def send(self, message: EmailMessage) -> DeliveryResult:
        if not self.is_configured:
            return DeliveryResult.skip(CHANNEL_EMAIL, 'email disabled')
        try:
            await asyncio.to_thread(self._send_sync, message)
        except (smtplib.SMTPException, OSError) as exc:
            logger.warning('Email delivery failed', to=message.to, subject=message.subject, exc=exc)
            return DeliveryResult.failed(CHANNEL_EMAIL, exc)
        logger.info('Email sent', to=message.to, subject=message.subject)
        return DeliveryResult.delivered(CHANNEL_EMAIL, detail=message.to)
