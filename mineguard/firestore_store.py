# mineguard/firestore_store.py
"""
Firestore backend for the detection/alert store.

Collections mirror the relational schema:
  helmet_detections/{auto id}    one doc per persisted Detection
  safety_alerts/{detection id}   one doc per violating Detection

The alert document key *is* the detection id, so DocumentReference.create()
is the uniqueness constraint: a second writer gets AlreadyExists no matter
which process it runs in.
"""

from __future__ import annotations

import logging
from datetime import datetime
from typing import Any, Callable, List, Optional

from firebase_admin import firestore
from google.api_core.exceptions import AlreadyExists

from . import config as cfg
from .errors import DuplicateAlert, MineGuardError, PersistenceError
from .firebase_client import get_db
from .models import Alert, Detection, Severity, utcnow
from .store import AlertStore, InsertCallback, Subscription

logger = logging.getLogger(__name__)

# Prefer the filter=FieldFilter API; older SDKs only have where(field, op, value)
try:
    from google.cloud.firestore_v1.base_query import FieldFilter  # type: ignore
except ImportError:  # pragma: no cover
    FieldFilter = None  # type: ignore


def _where(q: Any, field: str, op: str, value: Any):
    if FieldFilter is not None:
        return q.where(filter=FieldFilter(field, op, value))
    return q.where(field, op, value)


def _persistence_error(action: str, e: Exception) -> PersistenceError:
    return PersistenceError(f"Failed to {action}: {e.__class__.__name__}: {e}")


# ───────────────────────── transactions ─────────────────────────
# Plain bodies first; firestore.transactional wraps them with begin/commit/retry.
def _set_flag_once(transaction, ref, field_name: str) -> bool:
    snapshot = ref.get(transaction=transaction)
    if not snapshot.exists:
        raise PersistenceError(f"Record '{ref.id}' not found.")
    data = snapshot.to_dict() or {}
    if data.get(field_name):
        return False
    transaction.update(ref, {field_name: True, "updated_at": firestore.SERVER_TIMESTAMP})
    return True


def _claim_email(transaction, ref, lease_s: float, now: datetime) -> bool:
    snapshot = ref.get(transaction=transaction)
    if not snapshot.exists:
        raise PersistenceError(f"Alert '{ref.id}' not found.")
    alert = Alert.from_record(snapshot.id, snapshot.to_dict() or {})
    if not alert.email_claimable(now, lease_s):
        return False
    # client clock: the lease is compared against it on the next claim
    transaction.update(ref, {"email_claimed_at": now, "updated_at": firestore.SERVER_TIMESTAMP})
    return True


_set_flag_once_txn = firestore.transactional(_set_flag_once)
_claim_email_txn = firestore.transactional(_claim_email)


class FirestoreStore(AlertStore):
    def __init__(
        self,
        db=None,
        *,
        detections_collection: Optional[str] = None,
        alerts_collection: Optional[str] = None,
    ):
        self._db = db
        self.detections_table = detections_collection or cfg.DETECTIONS_COLLECTION
        self.alerts_table = alerts_collection or cfg.ALERTS_COLLECTION

    @property
    def db(self):
        if self._db is None:
            self._db = get_db()
        return self._db

    def _run(self, action: str, fn: Callable[[], Any]) -> Any:
        """Call fn, translating SDK/transport failures into PersistenceError."""
        try:
            return fn()
        except MineGuardError:
            raise
        except Exception as e:
            raise _persistence_error(action, e) from e

    # ---- detections ----
    def insert_detection(self, detection: Detection, image_data: Optional[str] = None) -> str:
        record = detection.to_record(image_data=image_data)

        def _add() -> str:
            _, ref = self.db.collection(self.detections_table).add(record)
            return ref.id

        return self._run("insert detection", _add)

    def get_detection(self, detection_id: str) -> Optional[Detection]:
        def _get() -> Optional[Detection]:
            snap = self.db.collection(self.detections_table).document(detection_id).get()
            if not snap.exists:
                return None
            return Detection.from_record(snap.id, snap.to_dict() or {})

        return self._run("read detection", _get)

    def list_detections(self) -> List[Detection]:
        def _list() -> List[Detection]:
            q = self.db.collection(self.detections_table).order_by("detection_timestamp")
            return [Detection.from_record(s.id, s.to_dict() or {}) for s in q.stream()]

        return self._run("list detections", _list)

    def mark_detection_alerted(self, detection_id: str) -> bool:
        return self._set_flag_once(self.detections_table, detection_id, "alert_sent")

    def pending_alert_detections(self, min_confidence: float) -> List[Detection]:
        # needs a composite index on (has_helmet, alert_sent, confidence)
        def _pending() -> List[Detection]:
            q = self.db.collection(self.detections_table)
            q = _where(q, "has_helmet", "==", False)
            q = _where(q, "alert_sent", "==", False)
            q = _where(q, "confidence", ">", float(min_confidence))
            rows = [Detection.from_record(s.id, s.to_dict() or {}) for s in q.stream()]
            rows.sort(key=lambda d: d.timestamp)
            return rows

        return self._run("list detections pending alert", _pending)

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
        now = utcnow()
        alert = Alert(
            id=detection_id,
            detection_id=detection_id,
            message=message,
            alert_type=alert_type,
            severity=severity,
            created_at=now,
            updated_at=now,
        )

        def _create() -> Alert:
            try:
                self.db.collection(self.alerts_table).document(detection_id).create(alert.to_record())
            except AlreadyExists as e:
                raise DuplicateAlert(detection_id, detection_id) from e
            return alert

        return self._run("insert alert", _create)

    def get_alert(self, alert_id: str) -> Optional[Alert]:
        def _get() -> Optional[Alert]:
            snap = self.db.collection(self.alerts_table).document(alert_id).get()
            if not snap.exists:
                return None
            return Alert.from_record(snap.id, snap.to_dict() or {})

        return self._run("read alert", _get)

    def recent_alerts(self, limit: int = 10) -> List[Alert]:
        def _recent() -> List[Alert]:
            q = (
                self.db.collection(self.alerts_table)
                .order_by("created_at", direction=firestore.Query.DESCENDING)
                .limit(max(0, int(limit)))
            )
            return [Alert.from_record(s.id, s.to_dict() or {}) for s in q.stream()]

        return self._run("list alerts", _recent)

    def pending_email_alerts(self) -> List[Alert]:
        def _pending() -> List[Alert]:
            q = self.db.collection(self.alerts_table)
            q = _where(q, "severity", "==", Severity.CRITICAL.value)
            q = _where(q, "email_sent", "==", False)
            rows = [Alert.from_record(s.id, s.to_dict() or {}) for s in q.stream()]
            rows.sort(key=lambda a: a.created_at)
            return rows

        return self._run("list pending alerts", _pending)

    def _set_flag_once(self, collection: str, doc_id: str, field_name: str) -> bool:
        def _txn() -> bool:
            ref = self.db.collection(collection).document(doc_id)
            return _set_flag_once_txn(self.db.transaction(), ref, field_name)

        return self._run(f"set {field_name}", _txn)

    def mark_email_sent(self, alert_id: str) -> bool:
        return self._set_flag_once(self.alerts_table, alert_id, "email_sent")

    def claim_email(self, alert_id: str, lease_s: float) -> bool:
        def _txn() -> bool:
            ref = self.db.collection(self.alerts_table).document(alert_id)
            return _claim_email_txn(self.db.transaction(), ref, lease_s, utcnow())

        return self._run("claim email", _txn)

    def release_email_claim(self, alert_id: str) -> None:
        def _release() -> None:
            self.db.collection(self.alerts_table).document(alert_id).update(
                {"email_claimed_at": None, "updated_at": firestore.SERVER_TIMESTAMP}
            )

        self._run("release email claim", _release)

    def acknowledge_alert(self, alert_id: str) -> bool:
        return self._set_flag_once(self.alerts_table, alert_id, "acknowledged")

    # ---- fan-out ----
    def subscribe_inserts(self, table: str, callback: InsertCallback, since: Optional[datetime] = None) -> Subscription:
        """
        Snapshot listener on `table`, limited to docs created from `since`
        (default: now) so a restart does not replay history. Firestore may
        re-deliver; consumers must be idempotent.
        """
        parse = Alert.from_record if table == self.alerts_table else Detection.from_record
        q = _where(self.db.collection(table), "created_at", ">=", since or utcnow())

        def _on_snapshot(_docs, changes, _read_time) -> None:
            for change in changes:
                if change.type.name != "ADDED":
                    continue
                try:
                    callback(parse(change.document.id, change.document.to_dict() or {}))
                except Exception:
                    logger.exception("Insert subscriber on %s failed for %s", table, change.document.id)

        watch = self._run(f"subscribe to {table}", lambda: q.on_snapshot(_on_snapshot))
        return Subscription(watch.unsubscribe)
