from __future__ import annotations

import smtplib
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText

from . import db
from .settings import settings


def send_email(subject: str, body: str) -> bool:
    """Send an alarm email if SMTP settings are configured.

    Environment variables:
      - CMM_ENABLE_EMAIL=true
      - CMM_SMTP_HOST / CMM_SMTP_PORT
      - CMM_SMTP_USER / CMM_SMTP_PASSWORD
      - CMM_EMAIL_FROM / CMM_EMAIL_TO
    """
    if not settings.enable_email:
        return False
    if not all(
        [
            settings.smtp_host,
            settings.smtp_port,
            settings.smtp_user,
            settings.smtp_password,
            settings.email_from,
            settings.email_to,
        ]
    ):
        return False

    try:
        msg = MIMEMultipart()
        msg["From"] = settings.email_from
        msg["To"] = settings.email_to
        msg["Subject"] = subject
        msg.attach(MIMEText(body, "plain"))

        server = smtplib.SMTP(settings.smtp_host, settings.smtp_port)
        server.starttls()
        server.login(settings.smtp_user, settings.smtp_password)
        server.sendmail(settings.email_from, [settings.email_to], msg.as_string())
        server.quit()
        return True
    except (OSError, smtplib.SMTPException):
        return False


def send_alarm(worker: str, summary: str, detail: str) -> bool:
    body = (
        f"Worker: {worker}\n"
        f"Problem: {summary}\n"
        f"Detail: {detail}\n"
        "\n"
        "The command stays pending. Fix the cause, then retry it with\n"
        f"  cmm retry {worker}\n"
    )
    return send_email(f"CMM ALARM: {summary}", body)


def raise_alarm(worker: str, summary: str, detail: str) -> None:
    """Operator-visible alarm: journal row plus optional email."""
    db.log_event("ERROR", f"ALARM: {summary}: {detail}", worker=worker)
    send_alarm(worker, summary, detail)
