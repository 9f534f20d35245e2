# mineguard/app.py
"""
Wiring for a host process: store + alert dispatcher + verdict engine +
camera session, all built from mineguard.config unless injected.

    app = MineGuardApp()
    app.start()
    ...
    app.stop()
"""

from __future__ import annotations

import logging
from concurrent.futures import ThreadPoolExecutor
from typing import Any, Callable, List, Optional

from . import config as cfg
from .alerts import AlertDispatcher, DispatchResult, Transport
from .compliance import ComplianceStateMachine
from .errors import MineGuardError
from .models import Alert, Detection
from .monitor import MonitorSession
from .stats import DetectionStats, store_stats, unread_count
from .store import AlertStore, MemoryStore
from .verdict import Classifier, VerdictEngine

logger = logging.getLogger(__name__)


def build_store(backend: Optional[str] = None) -> AlertStore:
    backend = (backend or cfg.STORE_BACKEND).lower()
    if backend == "memory":
        # alert handling and SMTP run off the pipeline thread
        return MemoryStore(fanout=ThreadPoolExecutor(max_workers=1, thread_name_prefix="fanout"))
    if backend == "firestore":
        from .firestore_store import FirestoreStore
        return FirestoreStore()
    raise ValueError(f"Unknown store backend: {backend!r}")


class MineGuardApp:
    def __init__(
        self,
        *,
        store: Optional[AlertStore] = None,
        classifier: Optional[Classifier] = None,
        sampler: Any = None,
        transport: Optional[Transport] = None,
        on_access_change: Optional[Callable[[str, Detection], None]] = None,
    ):
        self.store = store or build_store()
        self.dispatcher = AlertDispatcher(self.store, transport=transport)

        if classifier is None:
            from .helmet_infer import HelmetClassifier
            classifier = HelmetClassifier()
        if sampler is None:
            from .camera import FrameSampler
            sampler = FrameSampler()
        self.sampler = sampler

        self.engine = VerdictEngine(classifier)
        self.compliance = ComplianceStateMachine()
        if on_access_change is not None:
            self.compliance.add_listener(on_access_change)
        self.session = MonitorSession(sampler, self.engine, self.store, state_machine=self.compliance)

    def start(self) -> None:
        cfg.warn_if_misconfigured()
        self.dispatcher.attach()
        try:
            self.redeliver_pending()
        except MineGuardError:
            logger.exception("Startup recovery of unsent alerts failed; retry with redeliver_pending()")
        opener = getattr(self.sampler, "open", None)
        if opener is not None and not opener():
            logger.error("Camera did not open; no frames will be sampled and no verdicts produced")
        self.session.start()

    def stop(self) -> None:
        self.session.stop()
        closer = getattr(self.sampler, "close", None)
        if closer is not None:
            closer()
        self.dispatcher.detach()
        self.engine.close()

    # ---- operator actions ----
    def acknowledge(self, alert_id: str) -> bool:
        return self.dispatcher.acknowledge(alert_id)

    def redeliver_pending(self) -> List[DispatchResult]:
        """Alerts for violations that never got one, then email for unsent critical alerts."""
        results = self.dispatcher.reconcile_violations()
        results.extend(self.dispatcher.redeliver_pending())
        return results

    def recent_alerts(self, limit: int = 10) -> List[Alert]:
        return self.store.recent_alerts(limit)

    def unread_alerts(self, limit: int = 10) -> int:
        return unread_count(self.recent_alerts(limit))

    def stats(self) -> DetectionStats:
        return store_stats(self.store)
