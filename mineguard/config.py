# mineguard/config.py
"""
Central service config. Sane defaults with .env / environment overrides.
"""

from __future__ import annotations

import logging
import os

logger = logging.getLogger(__name__)


# ──────────────────────────────────────────────
# Load .env (even if this module is imported early)
# ──────────────────────────────────────────────
def _load_env() -> None:
    from dotenv import load_dotenv, find_dotenv

    # Prefer a .env in the current working dir; never override real env vars
    path = find_dotenv(filename=".env", usecwd=True)
    if path:
        load_dotenv(dotenv_path=path, override=False)

_load_env()


# ──────────────────────────────────────────────
# Helpers
# ──────────────────────────────────────────────
def _strip_quotes(s: str) -> str:
    s = s.strip()
    if (s.startswith('"') and s.endswith('"')) or (s.startswith("'") and s.endswith("'")):
        return s[1:-1].strip()
    return s

def _env_str(key: str, default: str) -> str:
    v = os.getenv(key)
    if v is None:
        return default
    v = _strip_quotes(v)
    return v if v != "" else default

def _env_int(key: str, default: int) -> int:
    raw = _strip_quotes(os.getenv(key, ""))
    try:
        return int(raw) if raw != "" else default
    except ValueError:
        logger.warning("[config] %s=%r is not an integer; using %s", key, raw, default)
        return default

def _env_float(key: str, default: float) -> float:
    raw = _strip_quotes(os.getenv(key, ""))
    try:
        return float(raw) if raw != "" else default
    except ValueError:
        logger.warning("[config] %s=%r is not a number; using %s", key, raw, default)
        return default

def _env_bool(key: str, default: bool) -> bool:
    v = os.getenv(key)
    if v is None:
        return default
    v = _strip_quotes(v).lower()
    return v in ("1", "true", "yes", "on")


# ──────────────────────────────────────────────
# Back-compat aliases (populate canonical keys from alternates)
# ──────────────────────────────────────────────
if os.getenv("SMTP_USERNAME") is None and os.getenv("SMTP_USER"):
    os.environ["SMTP_USERNAME"] = os.getenv("SMTP_USER", "")
if os.getenv("SMTP_PASSWORD") is None and os.getenv("SMTP_PASS"):
    os.environ["SMTP_PASSWORD"] = os.getenv("SMTP_PASS", "")


# ──────────────────────────────────────────────
# App / logging
# ──────────────────────────────────────────────
APP_NAME: str = _env_str("APP_NAME", "MineGuard")
LOG_LEVEL: str = _env_str("LOG_LEVEL", "INFO").upper()


# ──────────────────────────────────────────────
# Store
#   STORE_BACKEND=firestore  → Google Cloud Firestore (needs a service key)
#   STORE_BACKEND=memory     → in-process store (single host, no persistence)
# ──────────────────────────────────────────────
STORE_BACKEND: str = _env_str("STORE_BACKEND", "firestore").lower()
FIREBASE_KEY_PATH: str = _env_str("FIREBASE_KEY_PATH", "")
DETECTIONS_COLLECTION: str = _env_str("DETECTIONS_COLLECTION", "helmet_detections")
ALERTS_COLLECTION: str = _env_str("ALERTS_COLLECTION", "safety_alerts")


# ──────────────────────────────────────────────
# Camera / monitor session
# CAMERA_SOURCE is a device index ("0") or a stream URL / file path.
# ──────────────────────────────────────────────
CAMERA_SOURCE: str = _env_str("CAMERA_SOURCE", "0")
CAMERA_LOCATION: str = _env_str("CAMERA_LOCATION", "Mine Site - Camera 1")
SAMPLE_INTERVAL_S: float = _env_float("SAMPLE_INTERVAL_S", 1.5)
STORE_SNAPSHOTS: bool = _env_bool("STORE_SNAPSHOTS", False)


# ──────────────────────────────────────────────
# Object detector
# ──────────────────────────────────────────────
PERSON_MODEL_PATH: str = _env_str("PERSON_MODEL_PATH", "yolov8n.pt")
PPE_MODEL_PATH: str = _env_str("PPE_MODEL_PATH", "")  # helmet/hardhat weights (optional)
MODEL_DEVICE: str = _env_str("MODEL_DEVICE", "cpu")
MODEL_CONF: float = _env_float("MODEL_CONF", 0.25)
MODEL_IMGSZ: int = _env_int("MODEL_IMGSZ", 640)
CLASSIFIER_TIMEOUT_S: float = _env_float("CLASSIFIER_TIMEOUT_S", 10.0)


# ──────────────────────────────────────────────
# Alert notifications
# ──────────────────────────────────────────────
ALERT_RECIPIENT: str = _env_str("ALERT_RECIPIENT", "")
SAFETY_MANAGER_EMAIL: str = _env_str("SAFETY_MANAGER_EMAIL", "")
ALERT_LOCATION: str = _env_str("ALERT_LOCATION", "Mine Site")
# how long one dispatcher's claim on an alert email blocks the others; keep it above SMTP_CONNECT_TIMEOUT
EMAIL_CLAIM_LEASE_S: float = _env_float("EMAIL_CLAIM_LEASE_S", 120.0)


# ──────────────────────────────────────────────
# SMTP / Email
# For Gmail:
#   SMTP_HOST=smtp.gmail.com
#   SMTP_PORT=587  (STARTTLS) or 465 (SSL)
#   SMTP_USERNAME=your@gmail.com
#   SMTP_PASSWORD=<16-char Google App Password>
#   SMTP_FROM=Mine Safety Alert <your@gmail.com>
# ──────────────────────────────────────────────
SMTP_HOST: str = _env_str("SMTP_HOST", "smtp.gmail.com")
SMTP_PORT: int = _env_int("SMTP_PORT", 587)

SMTP_USERNAME: str = _env_str("SMTP_USERNAME", "")
SMTP_PASSWORD: str = _env_str("SMTP_PASSWORD", "")

SMTP_FROM: str = _env_str("SMTP_FROM", f"Mine Safety Alert <{SMTP_USERNAME}>" if SMTP_USERNAME else "")

# Transport flags. For Gmail: STARTTLS on 587 (TLS=True, SSL=False).
SMTP_USE_TLS: bool = _env_bool("SMTP_USE_TLS", True)
SMTP_USE_SSL: bool = _env_bool("SMTP_USE_SSL", False)

SMTP_CONNECT_TIMEOUT: int = _env_int("SMTP_CONNECT_TIMEOUT", 15)


# ──────────────────────────────────────────────
# Logging + sanity checks (non-fatal)
# ──────────────────────────────────────────────
def setup_logging(level: str | None = None) -> None:
    """Configure root logging once for a host process."""
    logging.basicConfig(
        level=getattr(logging, (level or LOG_LEVEL), logging.INFO),
        format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
    )


def warn_if_misconfigured() -> None:
    if SMTP_USE_TLS and SMTP_USE_SSL:
        logger.warning("[config] Both SMTP_USE_TLS and SMTP_USE_SSL are True. Choose one (TLS on 587 or SSL on 465).")
    if not SMTP_PASSWORD.strip():
        logger.warning("[config] SMTP_PASSWORD is missing. Alert emails will fail until it is set.")
    if SMTP_USE_SSL and SMTP_PORT != 465:
        logger.warning("[config] SMTP_USE_SSL=True but SMTP_PORT != 465.")
    if not ALERT_RECIPIENT:
        logger.warning("[config] ALERT_RECIPIENT is empty. Critical alerts have nobody to notify.")
    if STORE_BACKEND not in ("firestore", "memory"):
        logger.warning("[config] Unknown STORE_BACKEND=%r; expected 'firestore' or 'memory'.", STORE_BACKEND)
    if EMAIL_CLAIM_LEASE_S <= SMTP_CONNECT_TIMEOUT:
        logger.warning("[config] EMAIL_CLAIM_LEASE_S (%s) should exceed SMTP_CONNECT_TIMEOUT (%s).",
                       EMAIL_CLAIM_LEASE_S, SMTP_CONNECT_TIMEOUT)
    if SAMPLE_INTERVAL_S <= 0:
        logger.warning("[config] SAMPLE_INTERVAL_S must be positive (got %s).", SAMPLE_INTERVAL_S)
