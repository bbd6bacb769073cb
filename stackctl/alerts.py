from __future__ import annotations

import smtplib
from email.message import EmailMessage

from .runtime import ServiceState, ServiceStatus
from .settings import settings


def _alert_tag(prev: ServiceStatus, cur: ServiceStatus) -> str | None:
    if cur.state == ServiceState.FAILED:
        return "FAILED"
    if cur.state == ServiceState.UNHEALTHY and prev.state == ServiceState.HEALTHY:
        return "DOWN"
    if cur.state == ServiceState.HEALTHY and prev.state in {ServiceState.UNHEALTHY, ServiceState.FAILED}:
        return "RECOVERED"
    return None


def _smtp_configured() -> bool:
    """True when STACKCTL_ENABLE_EMAIL is on and every SMTP setting is present.

    Environment variables:
      - STACKCTL_ENABLE_EMAIL=true
      - STACKCTL_SMTP_HOST / STACKCTL_SMTP_PORT
      - STACKCTL_SMTP_USER / STACKCTL_SMTP_PASSWORD
      - STACKCTL_EMAIL_FROM / STACKCTL_EMAIL_TO
    """
    if not settings.enable_email:
        return False
    return all(
        [
            settings.smtp_host,
            settings.smtp_port,
            settings.smtp_user,
            settings.smtp_password,
            settings.email_from,
            settings.email_to,
        ]
    )


def transition_message(project: str, tag: str, prev: ServiceStatus, cur: ServiceStatus) -> EmailMessage:
    msg = EmailMessage()
    msg["From"] = settings.email_from or ""
    msg["To"] = settings.email_to or ""
    msg["Subject"] = f"[{project}] {tag}: {cur.name}"
    msg.set_content(
        f"Project: {project}\nService: {cur.name}\n"
        f"State: {prev.state.value} -> {cur.state.value}\n"
        f"Restarts: {cur.restart_count}\nDetail: {cur.message}\n"
    )
    return msg


def _deliver(msg: EmailMessage) -> bool:
    try:
        with smtplib.SMTP(settings.smtp_host, settings.smtp_port, timeout=10) as server:
            server.starttls()
            server.login(settings.smtp_user, settings.smtp_password)
            server.send_message(msg)
        return True
    except (smtplib.SMTPException, OSError):
        return False


def alert_for_transition(project: str, prev: ServiceStatus, cur: ServiceStatus) -> bool:
    """Mail on the transitions an operator cares about: failed, down, recovered."""
    tag = _alert_tag(prev, cur)
    if tag is None or not _smtp_configured():
        return False
    return _deliver(transition_message(project, tag, prev, cur))
