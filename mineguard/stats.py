# mineguard/stats.py
"""Dashboard aggregates over stored detections and alerts."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone
from typing import List, Optional

from .models import Alert, Detection, utcnow
from .store import AlertStore


@dataclass(frozen=True)
class DetectionStats:
    total_detections: int = 0
    helmet_compliance: float = 0.0   # percent of detections with a helmet
    violations_today: int = 0        # no-helmet detections since 00:00 UTC
    avg_confidence: float = 0.0      # percent
    last_detection: Optional[datetime] = None


def compute_stats(detections: List[Detection], now: Optional[datetime] = None) -> DetectionStats:
    total = len(detections)
    if total == 0:
        return DetectionStats()

    now = now or utcnow()
    midnight = now.astimezone(timezone.utc).replace(hour=0, minute=0, second=0, microsecond=0)

    compliant = sum(1 for d in detections if d.has_helmet)
    violations_today = sum(1 for d in detections if not d.has_helmet and d.timestamp >= midnight)
    avg_conf = sum(float(d.confidence) for d in detections) / total

    return DetectionStats(
        total_detections=total,
        helmet_compliance=compliant / total * 100.0,
        violations_today=violations_today,
        avg_confidence=avg_conf * 100.0,
        last_detection=max(d.timestamp for d in detections),
    )


def store_stats(store: AlertStore, now: Optional[datetime] = None) -> DetectionStats:
    return compute_stats(store.list_detections(), now=now)


def unread_count(alerts: List[Alert]) -> int:
    return sum(1 for a in alerts if not a.acknowledged)
