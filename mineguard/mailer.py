# mineguard/mailer.py
"""
Safety-alert email built on mineguard.emailer.send_email.

send_safety_alert() takes the alert notification payload
    {alertId, workerEmail, alertMessage, severity, location, timestamp}
(field names are a wire contract; keep them camelCase) and mails it to
the worker plus the safety manager.
"""

from __future__ import annotations

import datetime
import html
from typing import Any, Dict, List

from . import config as cfg
from .emailer import EmailSendError, send_email

PAYLOAD_FIELDS = ("alertId", "workerEmail", "alertMessage", "severity", "location", "timestamp")

# ── look & feel ────────────────────────────────────────────────────────────────
_DANGER = "#dc2626"
_DANGER_BG = "#fee2e2"
_PANEL = "#f9fafb"
_FOOTER = "#f3f4f6"
_TEXT = "#333333"


def _s(v: Any) -> str:
    return ("" if v is None else str(v)).strip()


def _fmt_ts_human(ts_any: Any) -> str:
    """Return 'YYYY-MM-DD HH:MM:SS UTC' for ISO strings / datetimes; raw text otherwise."""
    try:
        if isinstance(ts_any, datetime.datetime):
            dt = ts_any
        else:
            text = _s(ts_any)
            if text.endswith("Z"):
                text = text[:-1] + "+00:00"
            dt = datetime.datetime.fromisoformat(text)
        if dt.tzinfo is not None:
            dt = dt.astimezone(datetime.timezone.utc)
        return dt.strftime("%Y-%m-%d %H:%M:%S UTC")
    except ValueError:
        return _s(ts_any)


def _alert_html(alert_id: str, message: str, severity: str, location: str, when: str, title: str) -> str:
    e = html.escape
    return f"""\
<!DOCTYPE html>
<html>
<head>
  <meta charset="utf-8">
  <title>{e(title)}</title>
</head>
<body style="font-family:Arial,sans-serif;line-height:1.6;color:{_TEXT};margin:0;">
  <div style="background:{_DANGER};color:#ffffff;padding:20px;text-align:center;">
    <h1 style="margin:0;">⚠️ MINE SAFETY ALERT ⚠️</h1>
    <p style="margin:6px 0 0 0;">Immediate Attention Required</p>
  </div>
  <div style="padding:20px;">
    <div style="background:{_DANGER_BG};border:1px solid {_DANGER};padding:15px;margin:20px 0;border-radius:5px;">
      <h2 style="color:{_DANGER};margin:0 0 8px 0;">HELMET SAFETY VIOLATION DETECTED</h2>
      <p style="margin:0;"><strong>Alert:</strong> {e(message)}</p>
    </div>
    <div style="background:{_PANEL};padding:15px;margin:10px 0;border-radius:5px;">
      <h3 style="margin:0 0 8px 0;">Incident Details:</h3>
      <ul style="margin:0;">
        <li><strong>Location:</strong> {e(location)}</li>
        <li><strong>Time:</strong> {e(when)}</li>
        <li><strong>Severity:</strong> {e(severity.upper())}</li>
        <li><strong>Alert ID:</strong> {e(alert_id)}</li>
      </ul>
    </div>
    <div style="background:{_DANGER_BG};border:1px solid {_DANGER};padding:15px;margin:20px 0;border-radius:5px;">
      <h3 style="margin:0 0 8px 0;">⚠️ IMMEDIATE ACTION REQUIRED</h3>
      <p style="margin:0;">• Worker must stop current activities immediately</p>
      <p style="margin:0;">• Proper helmet must be worn before continuing</p>
      <p style="margin:0;">• Supervisor must verify compliance</p>
      <p style="margin:0;">• Report to safety officer if helmet is damaged or missing</p>
    </div>
    <p><strong>Safety Reminder:</strong> Hard hats are mandatory in all mine areas.</p>
  </div>
  <div style="background:{_FOOTER};padding:15px;text-align:center;font-size:12px;">
    <p style="margin:0;">{e(cfg.APP_NAME)} - Automated Alert</p>
  </div>
</body>
</html>
"""


def _alert_text(alert_id: str, message: str, severity: str, location: str, when: str) -> str:
    return "\n".join([
        "HELMET SAFETY VIOLATION DETECTED",
        "",
        f"Alert: {message}",
        f"Location: {location}",
        f"Time: {when}",
        f"Severity: {severity.upper()}",
        f"Alert ID: {alert_id}",
        "",
        "Worker must stop and put on a proper helmet before continuing.",
    ])


# ── Public helpers ─────────────────────────────────────────────────────────────
def build_alert_payload(
    *,
    alert_id: str,
    worker_email: str,
    message: str,
    severity: str,
    location: str,
    timestamp: Any,
) -> Dict[str, str]:
    if isinstance(timestamp, datetime.datetime):
        timestamp = timestamp.isoformat()
    return {
        "alertId": _s(alert_id),
        "workerEmail": _s(worker_email),
        "alertMessage": _s(message),
        "severity": _s(severity),
        "location": _s(location),
        "timestamp": _s(timestamp),
    }


def send_safety_alert(payload: Dict[str, Any]) -> Dict[str, Any]:
    """
    Deliver one alert payload. Returns {"success", "emailId", "message"}.
    Raises EmailSendError (a TransportError) when the payload is incomplete
    or SMTP fails.
    """
    missing = [k for k in PAYLOAD_FIELDS if k not in payload]
    if missing:
        raise EmailSendError("Alert payload missing: " + ", ".join(missing))

    alert_id = _s(payload["alertId"])
    severity = _s(payload["severity"]) or "critical"
    message = _s(payload["alertMessage"])
    location = _s(payload["location"])
    when = _fmt_ts_human(payload["timestamp"])

    to: List[str] = [_s(payload["workerEmail"])]
    if cfg.SAFETY_MANAGER_EMAIL:
        to.append(cfg.SAFETY_MANAGER_EMAIL)

    subject = f"🚨 CRITICAL SAFETY ALERT - {severity.upper()}"
    email_id = send_email(
        to,
        subject,
        _alert_html(alert_id, message, severity, location, when, subject),
        body_text=_alert_text(alert_id, message, severity, location, when),
    )
    return {
        "success": True,
        "emailId": email_id,
        "message": "Safety alert email sent successfully",
    }
