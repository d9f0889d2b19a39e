import logging
import smtplib
import time
from email.mime.text import MIMEText
from email.utils import formatdate, make_msgid

SUBJECT_PREFIX = "[slot-advancer]"


def compose_message(cfg, subject: str, body: str) -> MIMEText:
    msg = MIMEText(body, _charset="utf-8")
    msg["Subject"] = f"{SUBJECT_PREFIX} {subject}"
    msg["From"] = cfg.smtp_user
    msg["To"] = cfg.notify_email
    msg["Date"] = formatdate(localtime=True)
    msg["Message-ID"] = make_msgid(domain=cfg.smtp_server or None)
    return msg


def send_notification(cfg, subject: str, message: str) -> bool:
    """Mail ``message`` to ``NOTIFY_EMAIL``; returns False when SMTP is off or delivery fails."""
    if not cfg.is_smtp_configured():
        logging.info("Email notification skipped: SMTP settings incomplete")
        return False

    msg = compose_message(cfg, subject, message)
    try:
        with smtplib.SMTP(cfg.smtp_server, cfg.smtp_port, timeout=30) as server:
            server.starttls()
            server.login(cfg.smtp_user, cfg.smtp_pass)
            server.send_message(msg, from_addr=cfg.smtp_user, to_addrs=[cfg.notify_email])
    except smtplib.SMTPAuthenticationError as exc:
        hint = " (Gmail needs an App Password)" if "gmail" in cfg.smtp_server.lower() else ""
        logging.error("SMTP login refused for %s%s: %s", cfg.smtp_user, hint, exc)
        return False
    except (smtplib.SMTPException, OSError) as exc:
        logging.error("Email to %s not delivered: %s", cfg.notify_email, exc)
        return False

    logging.info("Email notification sent to %s", cfg.notify_email)
    return True


def notify_change_success(cfg, previous_label: str, new_label: str) -> bool:
    body = "\n".join(
        [
            f"Reservation moved: {previous_label} -> {new_label}",
            f"Changed at: {time.strftime('%Y-%m-%d %H:%M:%S')}",
            f"Page: {cfg.target_url}",
            "",
            "Automation has switched itself off.",
        ]
    )
    return send_notification(cfg, f"Reservation moved to {new_label}", body)
