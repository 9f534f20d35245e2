import smtplib
from unittest.mock import MagicMock, patch

import pytest

from mineguard import config as cfg
from mineguard import emailer
from mineguard.emailer import EmailSendError, send_email
from mineguard.errors import TransportError
from mineguard.mailer import build_alert_payload, send_safety_alert


@pytest.fixture
def smtp_settings(monkeypatch):
    monkeypatch.setattr(cfg, "SMTP_HOST", "smtp.test")
    monkeypatch.setattr(cfg, "SMTP_PORT", 587)
    monkeypatch.setattr(cfg, "SMTP_USERNAME", "alerts@mine.test")
    monkeypatch.setattr(cfg, "SMTP_PASSWORD", "secret")
    monkeypatch.setattr(cfg, "SMTP_FROM", "Mine Safety Alert <alerts@mine.test>")
    monkeypatch.setattr(cfg, "SMTP_USE_TLS", True)
    monkeypatch.setattr(cfg, "SMTP_USE_SSL", False)
    monkeypatch.setattr(cfg, "SAFETY_MANAGER_EMAIL", "manager@mine.test")


@pytest.fixture
def smtp():
    with patch.object(emailer.smtplib, "SMTP") as smtp_cls:
        server = MagicMock()
        smtp_cls.return_value.__enter__.return_value = server
        yield server


def _payload(**overrides):
    p = build_alert_payload(
        alert_id="a1",
        worker_email="crew@mine.test",
        message="SAFETY ALERT: Worker detected without helmet at Gate with 90% confidence",
        severity="critical",
        location="Gate",
        timestamp="2025-08-06T04:41:05+00:00",
    )
    p.update(overrides)
    return p


def test_send_email_starttls_and_returns_message_id(smtp_settings, smtp):
    msg_id = send_email(["a@mine.test", "b@mine.test", "a@mine.test"], "Subj", "<p>hi</p>", body_text="hi")

    smtp.starttls.assert_called_once()
    smtp.login.assert_called_once_with("alerts@mine.test", "secret")
    msg = smtp.send_message.call_args[0][0]
    assert msg["To"] == "a@mine.test, b@mine.test"
    assert msg["Message-ID"] == msg_id
    assert msg_id.endswith("@mine.test>")


def test_send_email_requires_settings(monkeypatch):
    monkeypatch.setattr(cfg, "SMTP_PASSWORD", "")
    with pytest.raises(EmailSendError, match="SMTP_PASSWORD"):
        send_email(["a@mine.test"], "s", "<p/>")


def test_send_email_rejects_bad_recipients(smtp_settings, smtp):
    with pytest.raises(EmailSendError):
        send_email(["not-an-address"], "s", "<p/>")
    with pytest.raises(EmailSendError):
        send_email([], "s", "<p/>")
    smtp.send_message.assert_not_called()


def test_auth_failure_is_transport_error(smtp_settings, smtp):
    smtp.login.side_effect = smtplib.SMTPAuthenticationError(535, b"bad creds")
    with pytest.raises(TransportError, match="auth failed"):
        send_email(["a@mine.test"], "s", "<p/>")


def test_safety_alert_goes_to_worker_and_manager(smtp_settings, smtp):
    result = send_safety_alert(_payload())

    assert result["success"] is True
    assert result["emailId"]
    msg = smtp.send_message.call_args[0][0]
    assert msg["To"] == "crew@mine.test, manager@mine.test"
    assert msg["Subject"] == "🚨 CRITICAL SAFETY ALERT - CRITICAL"
    html = msg.get_body(preferencelist=("html",)).get_content()
    assert "HELMET SAFETY VIOLATION DETECTED" in html
    assert "Gate" in html and "a1" in html
    assert "2025-08-06 04:41:05 UTC" in html


def test_safety_alert_escapes_html(smtp_settings, smtp):
    send_safety_alert(_payload(location="<script>x</script>"))
    html = smtp.send_message.call_args[0][0].get_body(preferencelist=("html",)).get_content()
    assert "<script>" not in html
    assert "&lt;script&gt;" in html


def test_incomplete_payload_rejected(smtp_settings, smtp):
    p = _payload()
    del p["workerEmail"]
    with pytest.raises(EmailSendError, match="workerEmail"):
        send_safety_alert(p)
    smtp.send_message.assert_not_called()
