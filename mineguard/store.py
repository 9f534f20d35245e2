# mineguard/store.py
"""
Record store used by the pipeline: detections + alerts, plus an
insert fan-out for subscribers.

Two backends implement AlertStore:
  • MemoryStore (here): single process, used for tests and offline runs.
  • FirestoreStore (mineguard.firestore_store): shared hosted store.

Both enforce one alert per detection id at the store level, so racing
writers always end up with a single surviving alert.
"""

from __future__ import annotations

import logging
import threading
import uuid
from abc import ABC, abstractmethod
from concurrent.futures import Executor
from dataclasses import replace
from typing import Any, Callable, Dict, List, Optional

from . import config as cfg
from .errors import DuplicateAlert, PersistenceError
from .models import Alert, Detection, Severity, stored_confidence, utcnow

logger = logging.getLogger(__name__)

InsertCallback = Callable[[Any], None]


class Subscription:
    """Handle returned by subscribe_inserts(); call unsubscribe() to stop delivery."""

    def __init__(self, cancel: Callable[[], None]):
        self._cancel = cancel
        self._active = True

    @property
    def active(self) -> bool:
        return self._active

    def unsubscribe(self) -> None:
        if self._active:
            self._active = False
            self._cancel()


class AlertStore(ABC):
    """Interface the pipeline consumes. All write failures raise PersistenceError."""

    detections_table: str = cfg.DETECTIONS_COLLECTION
    alerts_table: str = cfg.ALERTS_COLLECTION

    # ---- detections ----
    @abstractmethod
    def insert_detection(self, detection: Detection, image_data: Optional[str] = None) -> str:
        raise NotImplementedError

    @abstractmethod
    def get_detection(self, detection_id: str) -> Optional[Detection]:
        raise NotImplementedError

    @abstractmethod
    def list_detections(self) -> List[Detection]:
        raise NotImplementedError

    @abstractmethod
    def mark_detection_alerted(self, detection_id: str) -> bool:
        """Set alert_sent once. Returns False if it was already set."""
        raise NotImplementedError

    @abstractmethod
    def pending_alert_detections(self, min_confidence: float) -> List[Detection]:
        """No-helmet detections above min_confidence (stored score) with alert_sent still false."""
        raise NotImplementedError

    # ---- alerts ----
    @abstractmethod
    def insert_alert(
        self,
        detection_id: str,
        *,
        message: str,
        alert_type: str = "helmet_violation",
        severity: Severity = Severity.HIGH,
    ) -> Alert:
        """Create the alert for detection_id; raises DuplicateAlert if one exists."""
        raise NotImplementedError

    @abstractmethod
    def get_alert(self, alert_id: str) -> Optional[Alert]:
        raise NotImplementedError

    @abstractmethod
    def recent_alerts(self, limit: int = 10) -> List[Alert]:
        raise NotImplementedError

    @abstractmethod
    def pending_email_alerts(self) -> List[Alert]:
        """Critical alerts whose email has not gone out yet."""
        raise NotImplementedError

    @abstractmethod
    def mark_email_sent(self, alert_id: str) -> bool:
        """Set email_sent once. Returns False if it was already set."""
        raise NotImplementedError

    @abstractmethod
    def claim_email(self, alert_id: str, lease_s: float) -> bool:
        """
        Atomically take the right to send this alert's email. Fails while
        email_sent is set or another claim younger than lease_s is held.
        """
        raise NotImplementedError

    @abstractmethod
    def release_email_claim(self, alert_id: str) -> None:
        """Drop a claim after a failed send so the alert can be retried."""
        raise NotImplementedError

    @abstractmethod
    def acknowledge_alert(self, alert_id: str) -> bool:
        """Set acknowledged once. Returns False if it was already set."""
        raise NotImplementedError

    # ---- fan-out ----
    @abstractmethod
    def subscribe_inserts(self, table: str, callback: InsertCallback) -> Subscription:
        raise NotImplementedError


# ───────────────────────── in-process backend ─────────────────────────
class MemoryStore(AlertStore):
    """
    Thread-safe in-memory store. Subscribers run after the write is
    committed and outside the lock.

    Without a fanout executor they run on the writer's thread, so a slow
    subscriber (an attached dispatcher sending SMTP) holds up the writer.
    Pass a single-worker executor to deliver in insert order off that thread.
    """

    def __init__(self, fanout: Optional[Executor] = None):
        self._fanout = fanout
        self._lock = threading.RLock()
        self._detections: Dict[str, Detection] = {}
        self._snapshots: Dict[str, Optional[str]] = {}
        self._alerts: Dict[str, Alert] = {}
        self._alert_by_detection: Dict[str, str] = {}  # unique index on detection_id
        self._subscribers: Dict[str, List[InsertCallback]] = {}

    # ---- detections ----
    def insert_detection(self, detection: Detection, image_data: Optional[str] = None) -> str:
        detection_id = uuid.uuid4().hex
        record = detection.with_id(detection_id)
        with self._lock:
            self._detections[detection_id] = record
            self._snapshots[detection_id] = image_data
        self._publish(self.detections_table, record)
        return detection_id

    def get_detection(self, detection_id: str) -> Optional[Detection]:
        with self._lock:
            return self._detections.get(detection_id)

    def list_detections(self) -> List[Detection]:
        with self._lock:
            return sorted(self._detections.values(), key=lambda d: d.timestamp)

    def mark_detection_alerted(self, detection_id: str) -> bool:
        with self._lock:
            detection = self._detections.get(detection_id)
            if detection is None:
                raise PersistenceError(f"Detection '{detection_id}' not found.")
            if detection.alert_sent:
                return False
            self._detections[detection_id] = replace(detection, alert_sent=True)
            return True

    def pending_alert_detections(self, min_confidence: float) -> List[Detection]:
        with self._lock:
            rows = [d for d in self._detections.values()
                    if not d.has_helmet and not d.alert_sent
                    and stored_confidence(d.confidence) > min_confidence]
        return sorted(rows, key=lambda d: d.timestamp)

    # ---- alerts ----
    def insert_alert(
        self,
        detection_id: str,
        *,
        message: str,
        alert_type: str = "helmet_violation",
        severity: Severity = Severity.HIGH,
    ) -> Alert:
        if not detection_id:
            raise PersistenceError("insert_alert requires a detection_id.")
        with self._lock:
            existing = self._alert_by_detection.get(detection_id)
            if existing is not None:
                raise DuplicateAlert(detection_id, existing)
            now = utcnow()
            alert = Alert(
                id=uuid.uuid4().hex,
                detection_id=detection_id,
                message=message,
                alert_type=alert_type,
                severity=severity,
                created_at=now,
                updated_at=now,
            )
            self._alerts[alert.id] = alert
            self._alert_by_detection[detection_id] = alert.id
        self._publish(self.alerts_table, alert)
        return alert

    def get_alert(self, alert_id: str) -> Optional[Alert]:
        with self._lock:
            return self._alerts.get(alert_id)

    def recent_alerts(self, limit: int = 10) -> List[Alert]:
        with self._lock:
            rows = sorted(self._alerts.values(), key=lambda a: a.created_at, reverse=True)
        return rows[: max(0, int(limit))]

    def pending_email_alerts(self) -> List[Alert]:
        with self._lock:
            rows = [a for a in self._alerts.values()
                    if a.severity is Severity.CRITICAL and not a.email_sent]
        return sorted(rows, key=lambda a: a.created_at)

    def _set_flag_once(self, alert_id: str, field_name: str) -> bool:
        with self._lock:
            alert = self._alerts.get(alert_id)
            if alert is None:
                raise PersistenceError(f"Alert '{alert_id}' not found.")
            if getattr(alert, field_name):
                return False
            self._alerts[alert_id] = replace(alert, **{field_name: True, "updated_at": utcnow()})
            return True

    def mark_email_sent(self, alert_id: str) -> bool:
        return self._set_flag_once(alert_id, "email_sent")

    def claim_email(self, alert_id: str, lease_s: float) -> bool:
        with self._lock:
            alert = self._alerts.get(alert_id)
            if alert is None:
                raise PersistenceError(f"Alert '{alert_id}' not found.")
            now = utcnow()
            if not alert.email_claimable(now, lease_s):
                return False
            self._alerts[alert_id] = replace(alert, email_claimed_at=now, updated_at=now)
            return True

    def release_email_claim(self, alert_id: str) -> None:
        with self._lock:
            alert = self._alerts.get(alert_id)
            if alert is None:
                raise PersistenceError(f"Alert '{alert_id}' not found.")
            if alert.email_claimed_at is not None and not alert.email_sent:
                self._alerts[alert_id] = replace(alert, email_claimed_at=None, updated_at=utcnow())

    def acknowledge_alert(self, alert_id: str) -> bool:
        return self._set_flag_once(alert_id, "acknowledged")

    # ---- fan-out ----
    def subscribe_inserts(self, table: str, callback: InsertCallback) -> Subscription:
        with self._lock:
            self._subscribers.setdefault(table, []).append(callback)

        def _cancel() -> None:
            with self._lock:
                subs = self._subscribers.get(table, [])
                if callback in subs:
                    subs.remove(callback)

        return Subscription(_cancel)

    def _publish(self, table: str, record: Any) -> None:
        with self._lock:
            subs = list(self._subscribers.get(table, []))
        if not subs:
            return
        if self._fanout is not None:
            self._fanout.submit(self._deliver, table, subs, record)
        else:
            self._deliver(table, subs, record)

    @staticmethod
    def _deliver(table: str, subs: List[InsertCallback], record: Any) -> None:
        for cb in subs:
            try:
                cb(record)
            except Exception:
                # a bad subscriber must not undo a committed write
                logger.exception("Insert subscriber on %s failed", table)
