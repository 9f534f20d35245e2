# mineguard/alerts.py
from __future__ import annotations

import logging
from dataclasses import dataclass
from decimal import ROUND_HALF_UP, Decimal
from typing import Any, Callable, Dict, List, Optional

from . import config as cfg
from .errors import DuplicateAlert, MineGuardError, PersistenceError, TransportError
from .models import Alert, Detection, Severity, stored_confidence
from .store import AlertStore, Subscription
from .verdict import CONFIDENCE_THRESHOLD, is_violation

logger = logging.getLogger(__name__)

ALERT_TYPE = "helmet_violation"

# statuses reported by DispatchResult
CREATED = "created"
DUPLICATE = "duplicate"
SKIPPED = "skipped"
EMAILED = "emailed"
ALREADY_SENT = "already_sent"
IN_FLIGHT = "in_flight"
EMAIL_FAILED = "email_failed"

Transport = Callable[[Dict[str, Any]], Dict[str, Any]]


@dataclass(frozen=True)
class DispatchResult:
    status: str
    alert_id: Optional[str] = None
    error: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.error is None


# ───────────────────────── small utils ─────────────────────────
def _percent(confidence: float) -> int:
    """Stored two-decimal score as a percent, rounded half up like SQL ROUND()."""
    pct = Decimal(str(stored_confidence(confidence))) * 100
    return int(pct.quantize(Decimal(1), rounding=ROUND_HALF_UP))


def violation_message(detection: Detection, location: Optional[str] = None) -> str:
    where = location or detection.location or cfg.ALERT_LOCATION
    return (
        f"SAFETY ALERT: Worker detected without helmet at {where} "
        f"with {_percent(detection.confidence)}% confidence"
    )


def _default_transport(payload: Dict[str, Any]) -> Dict[str, Any]:
    # imported late so the dispatcher can be built without SMTP settings
    from .mailer import send_safety_alert
    return send_safety_alert(payload)


# ───────────────────────── dispatcher ─────────────────────────
class AlertDispatcher:
    """
    Turns persisted violations into exactly one alert each, and critical
    alerts into at most one email each.

    Uniqueness lives in the store (one alert per detection id); the
    dispatcher just treats DuplicateAlert as success. Once the alert
    exists the detection's alert_sent flag is set, so reconcile_violations()
    can find violations whose alert was never written.

    Email goes out only under a store-side claim (claim_email), so any
    number of dispatchers sharing one store send each alert once. A failed
    send drops the claim; a crashed sender's claim lapses after the lease.
    """

    def __init__(
        self,
        store: AlertStore,
        *,
        transport: Optional[Transport] = None,
        recipient: Optional[str] = None,
        location: Optional[str] = None,
        claim_lease_s: Optional[float] = None,
    ):
        self.store = store
        self.transport = transport or _default_transport
        self.recipient = cfg.ALERT_RECIPIENT if recipient is None else recipient
        self.location = location
        self.claim_lease_s = cfg.EMAIL_CLAIM_LEASE_S if claim_lease_s is None else float(claim_lease_s)
        self._subscriptions: List[Subscription] = []

    # ---- 1. detection → alert ----
    def on_detection_persisted(self, detection: Detection) -> DispatchResult:
        """
        Create the alert for a stored detection if it is a violation.
        DuplicateAlert → status "duplicate" (not an error).
        PersistenceError propagates: the detection keeps alert_sent=False
        and the next reconcile_violations() run picks it up.
        """
        if not detection.id:
            raise ValueError("Detection has no id; persist it before dispatching.")
        if detection.degraded or not is_violation(detection):
            return DispatchResult(SKIPPED)

        try:
            alert = self.store.insert_alert(
                detection.id,
                message=violation_message(detection, self.location),
                alert_type=ALERT_TYPE,
                severity=Severity.CRITICAL,
            )
        except DuplicateAlert as e:
            logger.debug("Alert for detection %s already exists", detection.id)
            self._mark_alerted(detection.id)
            return DispatchResult(DUPLICATE, alert_id=e.alert_id)

        logger.info("Alert %s created for detection %s", alert.id, detection.id)
        self._mark_alerted(detection.id)
        return DispatchResult(CREATED, alert_id=alert.id)

    def _mark_alerted(self, detection_id: str) -> None:
        try:
            self.store.mark_detection_alerted(detection_id)
        except PersistenceError:
            # the alert exists; a later reconcile run hits DuplicateAlert and retries the flag
            logger.warning("Could not flag detection %s as alerted", detection_id, exc_info=True)

    def reconcile_violations(self) -> List[DispatchResult]:
        """Create alerts for stored violations that never got one (alert_sent still false)."""
        results = []
        for detection in self.store.pending_alert_detections(CONFIDENCE_THRESHOLD):
            results.append(self.on_detection_persisted(detection))
        return results

    # ---- 2. alert → email ----
    def on_alert_created(self, alert: Alert) -> DispatchResult:
        """
        Email a critical alert once.

        1. Skip non-critical alerts.
        2. Re-read the alert; skip if email_sent is already true.
        3. Claim the send in the store; skip if someone else holds it.
        4. Call the transport with the wire payload.
        5. On success set email_sent; on failure drop the claim.
        Transport failures come back as status "email_failed" (no retry);
        store failures raise PersistenceError.
        """
        if alert.severity is not Severity.CRITICAL:
            return DispatchResult(SKIPPED, alert_id=alert.id)

        current = self.store.get_alert(alert.id) or alert
        if current.email_sent:
            return DispatchResult(ALREADY_SENT, alert_id=alert.id)
        payload = self.build_payload(current)

        if not self.store.claim_email(alert.id, self.claim_lease_s):
            latest = self.store.get_alert(alert.id)
            if latest is not None and latest.email_sent:
                return DispatchResult(ALREADY_SENT, alert_id=alert.id)
            return DispatchResult(IN_FLIGHT, alert_id=alert.id)

        try:
            result = self.transport(payload) or {}
        except TransportError as e:
            logger.warning("Email for alert %s failed: %s", alert.id, e)
            self._release_claim(alert.id)
            return DispatchResult(EMAIL_FAILED, alert_id=alert.id, error=str(e))
        except Exception as e:
            logger.warning("Email transport crashed for alert %s: %s", alert.id, e)
            self._release_claim(alert.id)
            return DispatchResult(EMAIL_FAILED, alert_id=alert.id, error=f"{e.__class__.__name__}: {e}")

        if not self.store.mark_email_sent(alert.id):
            logger.info("Alert %s was already marked sent", alert.id)
        logger.info("Alert %s emailed (id=%s)", alert.id, result.get("emailId"))
        return DispatchResult(EMAILED, alert_id=alert.id)

    def _release_claim(self, alert_id: str) -> None:
        try:
            self.store.release_email_claim(alert_id)
        except PersistenceError:
            logger.warning("Claim on alert %s not released; it lapses after %.0fs",
                           alert_id, self.claim_lease_s, exc_info=True)

    def build_payload(self, alert: Alert) -> Dict[str, str]:
        from .mailer import build_alert_payload

        location = self.location
        if not location and alert.detection_id:
            detection = self.store.get_detection(alert.detection_id)
            location = detection.location if detection else None
        return build_alert_payload(
            alert_id=alert.id,
            worker_email=self.recipient,
            message=alert.message,
            severity=alert.severity.value,
            location=location or cfg.ALERT_LOCATION,
            timestamp=alert.created_at,
        )

    # ---- 3. human actions / manual runs ----
    def acknowledge(self, alert_id: str) -> bool:
        """One-way. Returns False (and changes nothing) if already acknowledged."""
        changed = self.store.acknowledge_alert(alert_id)
        if changed:
            logger.info("Alert %s acknowledged", alert_id)
        return changed

    def redeliver_pending(self) -> List[DispatchResult]:
        """Retry email for every critical alert still marked unsent."""
        results = []
        for alert in self.store.pending_email_alerts():
            results.append(self.on_alert_created(alert))
        return results

    # ---- 4. store fan-out ----
    def attach(self) -> None:
        """Subscribe to detection + alert inserts. Safe to receive duplicates."""
        if self._subscriptions:
            return
        self._subscriptions = [
            self.store.subscribe_inserts(self.store.detections_table, self._handle_detection_insert),
            self.store.subscribe_inserts(self.store.alerts_table, self._handle_alert_insert),
        ]

    def detach(self) -> None:
        for sub in self._subscriptions:
            sub.unsubscribe()
        self._subscriptions = []

    def _handle_detection_insert(self, detection: Detection) -> None:
        try:
            self.on_detection_persisted(detection)
        except MineGuardError:
            logger.exception("Alert creation failed for detection %s", detection.id)

    def _handle_alert_insert(self, alert: Alert) -> None:
        try:
            self.on_alert_created(alert)
        except MineGuardError:
            logger.exception("Email dispatch failed for alert %s", alert.id)
