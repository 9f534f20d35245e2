# mineguard/emailer.py
from __future__ import annotations

import smtplib
import ssl
from email.message import EmailMessage
from email.utils import make_msgid, parseaddr
from typing import Iterable, List, Optional

from . import config as cfg
from .errors import TransportError


class EmailSendError(TransportError):
    """Raised when an email can't be delivered; message is safe to show an operator."""


def _recipients(to: Iterable[str]) -> List[str]:
    out: List[str] = []
    for addr in to or []:
        a = (addr or "").strip()
        if a and a not in out:
            out.append(a)
    return out


def _validate_settings() -> None:
    missing = [k for k, v in {
        "SMTP_HOST": cfg.SMTP_HOST,
        "SMTP_PORT": cfg.SMTP_PORT,
        "SMTP_USERNAME": cfg.SMTP_USERNAME,
        "SMTP_PASSWORD": cfg.SMTP_PASSWORD,
        "SMTP_FROM": cfg.SMTP_FROM or cfg.SMTP_USERNAME,
    }.items() if not v]
    if missing:
        raise EmailSendError(
            "Email isn't configured. Missing: " + ", ".join(missing) +
            ". Set them in environment variables or .env."
        )


# ── Core sender ───────────────────────────────────────────────
def send_email(
    to: Iterable[str],
    subject: str,
    html_body: str,
    body_text: Optional[str] = None,
) -> str:
    """
    Send one message to every address in `to` using STARTTLS or SSL per config.
    Returns the Message-ID. Raises EmailSendError on any failure.
    """
    _validate_settings()

    recipients = _recipients(to)
    if not recipients:
        raise EmailSendError("No recipient email address.")
    bad = [a for a in recipients if "@" not in a]
    if bad:
        raise EmailSendError("Invalid recipient email address: " + ", ".join(bad))

    sender = cfg.SMTP_FROM or cfg.SMTP_USERNAME
    msg = EmailMessage()
    msg["From"] = sender
    msg["To"] = ", ".join(recipients)
    msg["Subject"] = subject
    _, from_addr = parseaddr(sender)
    msg_id = make_msgid(domain=from_addr.rsplit("@", 1)[1] if "@" in from_addr else None)
    msg["Message-ID"] = msg_id

    msg.set_content(body_text or "This alert requires an HTML-capable mail client.")
    msg.add_alternative(html_body, subtype="html")

    try:
        context = ssl.create_default_context()
        if cfg.SMTP_USE_SSL:
            # SSL on connect (e.g., port 465)
            with smtplib.SMTP_SSL(cfg.SMTP_HOST, cfg.SMTP_PORT, timeout=cfg.SMTP_CONNECT_TIMEOUT, context=context) as server:
                server.login(cfg.SMTP_USERNAME, cfg.SMTP_PASSWORD)
                server.send_message(msg)
        else:
            # STARTTLS upgrade (e.g., port 587)
            with smtplib.SMTP(cfg.SMTP_HOST, cfg.SMTP_PORT, timeout=cfg.SMTP_CONNECT_TIMEOUT) as server:
                server.ehlo()
                if cfg.SMTP_USE_TLS:
                    server.starttls(context=context)
                    server.ehlo()
                server.login(cfg.SMTP_USERNAME, cfg.SMTP_PASSWORD)
                server.send_message(msg)

    except smtplib.SMTPAuthenticationError as e:
        raise EmailSendError("Email auth failed. Check SMTP_USERNAME/SMTP_PASSWORD (use a Gmail App Password).") from e
    except smtplib.SMTPConnectError as e:
        raise EmailSendError("Couldn't connect to SMTP server. Verify SMTP_HOST/PORT and your network.") from e
    except smtplib.SMTPRecipientsRefused as e:
        raise EmailSendError("The recipient address was rejected by the server.") from e
    except smtplib.SMTPException as e:
        raise EmailSendError(f"SMTP error: {e.__class__.__name__}: {e}") from e
    except OSError as e:
        raise EmailSendError(f"Failed to send email: {e.__class__.__name__}: {e}") from e

    return msg_id
