from __future__ import annotations

import smtplib
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText

from .settings import Settings, settings


def _smtp_configured(cfg: Settings) -> bool:
    return all([cfg.smtp_host, cfg.smtp_port, cfg.smtp_user, cfg.smtp_password, cfg.email_from, cfg.email_to])


def send_email(subject: str, body: str, cfg: Settings = settings) -> bool:
    """Send an email if SMTP settings are configured.

    Environment variables:
      - SCR_ENABLE_EMAIL=true
      - SCR_SMTP_HOST / SCR_SMTP_PORT
      - SCR_SMTP_USER / SCR_SMTP_PASSWORD
      - SCR_EMAIL_FROM / SCR_EMAIL_TO
    """
    if not cfg.enable_email or not _smtp_configured(cfg):
        return False

    msg = MIMEMultipart()
    msg["From"] = cfg.email_from
    msg["To"] = cfg.email_to
    msg["Subject"] = subject
    msg.attach(MIMEText(body, "plain"))
    try:
        with smtplib.SMTP(cfg.smtp_host, cfg.smtp_port, timeout=10) as server:
            server.starttls()
            server.login(cfg.smtp_user, cfg.smtp_password)
            server.sendmail(cfg.email_from, [cfg.email_to], msg.as_string())
        return True
    except (smtplib.SMTPException, OSError):
        return False


def notify_reconcile_failure(cluster: str, err: Exception, cfg: Settings = settings) -> bool:
    """Alert on a failure the controller will not retry on its own (invalid spec and the like)."""
    subject = f"SCR: reconcile failed for {cluster}"
    body = (
        f"Cluster: {cluster}\n"
        f"Error: {type(err).__name__}\n"
        f"Detail: {err}\n\n"
        "Existing resources were left untouched. Fix the cluster spec to resume reconciliation."
    )
    return send_email(subject, body, cfg)
