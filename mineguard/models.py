# mineguard/models.py
from __future__ import annotations

from dataclasses import dataclass, field, replace
from datetime import datetime, timedelta, timezone
from decimal import ROUND_HALF_UP, Decimal
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple


# ───────────────────────── small utils ─────────────────────────
def _s(v: Any) -> str:
    """stringify + trim, never returns None."""
    return ("" if v is None else str(v)).strip()


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _as_utc(ts: Any) -> Optional[datetime]:
    """Accept datetimes (Firestore returns DatetimeWithNanoseconds), ISO strings or epoch values."""
    if ts is None:
        return None
    if isinstance(ts, datetime):
        return ts if ts.tzinfo else ts.replace(tzinfo=timezone.utc)
    if isinstance(ts, (int, float)):
        val = float(ts)
        if val > 1e12:  # ms -> s
            val = val / 1000.0
        return datetime.fromtimestamp(val, tz=timezone.utc)
    text = _s(ts)
    if not text:
        return None
    if text.endswith("Z"):
        text = text[:-1] + "+00:00"
    return _as_utc(datetime.fromisoformat(text))


def stored_confidence(value: Any) -> float:
    """Confidence as the detections table keeps it: two decimals, half up (DECIMAL(3,2))."""
    return float(Decimal(str(float(value or 0.0))).quantize(Decimal("0.01"), rounding=ROUND_HALF_UP))


class Severity(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


# ───────────────────────── records ─────────────────────────
@dataclass(frozen=True)
class BoundingBox:
    """Top-left corner plus size, in pixel coordinates of the sampled frame."""
    x: float
    y: float
    width: float
    height: float
    confidence: float
    label: str

    def to_dict(self) -> Dict[str, Any]:
        return {
            "x": self.x,
            "y": self.y,
            "width": self.width,
            "height": self.height,
            "confidence": self.confidence,
            "label": self.label,
        }

    @classmethod
    def from_dict(cls, d: Dict[str, Any]) -> "BoundingBox":
        return cls(
            x=float(d.get("x", 0.0)),
            y=float(d.get("y", 0.0)),
            width=float(d.get("width", 0.0)),
            height=float(d.get("height", 0.0)),
            confidence=float(d.get("confidence", 0.0)),
            label=_s(d.get("label")),
        )


@dataclass(frozen=True)
class Detection:
    """
    One classifier invocation turned into a helmet verdict.

    Never mutated after creation. The store hands back a copy carrying
    the id it assigned (see with_id).
    """
    has_helmet: bool
    confidence: float
    timestamp: datetime = field(default_factory=utcnow)
    bounding_boxes: Tuple[BoundingBox, ...] = ()
    location: str = ""
    degraded: bool = False
    alert_sent: bool = False  # an alert exists for this detection
    id: Optional[str] = None

    def with_id(self, detection_id: str) -> "Detection":
        return replace(self, id=detection_id)
    def to_record(self, image_data: Optional[str] = None, worker_id: Optional[str] = None) -> Dict[str, Any]:
        """Stored document shape (snake_case columns of the detections table)."""
        return {
            "has_helmet": self.has_helmet,
            "confidence": stored_confidence(self.confidence),
            "detection_timestamp": self.timestamp,
            "location": self.location,
            "image_data": image_data,
            "bounding_box": [b.to_dict() for b in self.bounding_boxes],
            "worker_id": worker_id,
            "alert_sent": self.alert_sent,
            "created_at": utcnow(),
        }

    @classmethod
    def from_record(cls, detection_id: str, data: Dict[str, Any]) -> "Detection":
        boxes: List[BoundingBox] = [BoundingBox.from_dict(b) for b in (data.get("bounding_box") or [])]
        return cls(
            has_helmet=bool(data.get("has_helmet", False)),
            confidence=float(data.get("confidence", 0.0) or 0.0),
            timestamp=_as_utc(data.get("detection_timestamp")) or utcnow(),
            bounding_boxes=tuple(boxes),
            location=_s(data.get("location")),
            alert_sent=bool(data.get("alert_sent", False)),
            id=detection_id,
        )


@dataclass(frozen=True)
class Alert:
    id: str
    detection_id: str
    message: str
    alert_type: str = "helmet_violation"
    severity: Severity = Severity.HIGH
    email_sent: bool = False
    acknowledged: bool = False
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)
    email_claimed_at: Optional[datetime] = None

    def email_claimable(self, now: datetime, lease_s: float) -> bool:
        """True if nobody has sent the email and no live claim is held on it."""
        if self.email_sent:
            return False
        if self.email_claimed_at is None:
            return True
        return now - self.email_claimed_at >= timedelta(seconds=lease_s)

    def to_record(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "detection_id": self.detection_id,
            "alert_type": self.alert_type,
            "message": self.message,
            "severity": self.severity.value,
            "email_sent": self.email_sent,
            "email_claimed_at": self.email_claimed_at,
            "acknowledged": self.acknowledged,
            "created_at": self.created_at,
            "updated_at": self.updated_at,
        }

    @classmethod
    def from_record(cls, alert_id: str, data: Dict[str, Any]) -> "Alert":
        created = _as_utc(data.get("created_at")) or utcnow()
        try:
            severity = Severity(_s(data.get("severity")).lower() or "high")
        except ValueError:
            severity = Severity.HIGH
        return cls(
            id=alert_id,
            detection_id=_s(data.get("detection_id")),
            message=_s(data.get("message")),
            alert_type=_s(data.get("alert_type")) or "helmet_violation",
            severity=severity,
            email_sent=bool(data.get("email_sent", False)),
            acknowledged=bool(data.get("acknowledged", False)),
            created_at=created,
            updated_at=_as_utc(data.get("updated_at")) or created,
            email_claimed_at=_as_utc(data.get("email_claimed_at")),
        )
