from __future__ import annotations

import logging
import smtplib
import ssl
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText
from email.utils import formataddr

from app.core.celery_app import celery
from app.core.config import settings

log = logging.getLogger("notify_tasks")

FOOTER = (
    "<br/><br/><p><small>Please do not reply to this email. "
    "This message was automatically generated.</small></p>"
)


@celery.task(name="app.tasks.notify_tasks.send_owner_notice")
def send_owner_notice(*, to: str, subject: str, html: str) -> dict:
    """Deliver a moderation notice to a project owner.

    MAIL_TRANSPORT=dummy only logs the message.
    """

    transport = (settings.MAIL_TRANSPORT or "dummy").lower()
    body = html + FOOTER

    if transport == "dummy":
        log.info("DUMMY EMAIL (not sent) to=%s subject=%s", to, subject)
        return {"ok": True, "transport": "dummy", "to": to}

    if not settings.MAIL_SMTP_SERVER:
        log.error("MAIL_TRANSPORT=smtp but MAIL_SMTP_SERVER is not set; notice to %s dropped", to)
        return {"ok": False, "transport": "smtp", "reason": "not_configured"}

    msg = MIMEMultipart("alternative")
    msg["Subject"] = subject
    msg["From"] = formataddr((settings.MAIL_FROM_NAME, settings.MAIL_FROM))
    msg["To"] = to
    msg.attach(MIMEText(body, "html", "utf-8"))

    with smtplib.SMTP(settings.MAIL_SMTP_SERVER, settings.MAIL_SMTP_PORT, timeout=15) as smtp:
        smtp.starttls(context=ssl.create_default_context())
        if settings.MAIL_SMTP_USER:
            smtp.login(settings.MAIL_SMTP_USER, settings.MAIL_SMTP_PASSWORD or "")
        smtp.sendmail(settings.MAIL_FROM, [to], msg.as_string())

    log.info("Notice sent to=%s subject=%s", to, subject)
    return {"ok": True, "transport": "smtp", "to": to}
