# mineguard/compliance.py
from __future__ import annotations

import logging
import threading
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Callable, List, Optional

from .models import Detection
from .verdict import is_compliant

logger = logging.getLogger(__name__)

GRANTED = "granted"
DENIED = "denied"


class AccessState(str, Enum):
    GRANTED = "GRANTED"
    DENIED = "DENIED"


@dataclass
class ComplianceState:
    """Per-session access state. Starts closed."""
    access_granted: bool = False
    last_verdict_at: Optional[datetime] = None

    @property
    def state(self) -> AccessState:
        return AccessState.GRANTED if self.access_granted else AccessState.DENIED


Listener = Callable[[str, Detection], None]


class ComplianceStateMachine:
    """
    Edge-triggered GRANTED/DENIED tracker.

    Every verdict is judged on its own (no smoothing window). Listeners
    hear about an edge exactly once; repeated verdicts that keep the
    current state are silent.
    """

    def __init__(self, state: Optional[ComplianceState] = None):
        self.state = state if state is not None else ComplianceState()
        self._listeners: List[Listener] = []
        self._lock = threading.Lock()

    def add_listener(self, fn: Listener) -> None:
        self._listeners.append(fn)

    @property
    def access_granted(self) -> bool:
        return self.state.access_granted

    def update(self, detection: Detection) -> Optional[str]:
        """Apply one verdict. Returns "granted"/"denied" on an edge, else None."""
        with self._lock:
            grant = is_compliant(detection)
            self.state.last_verdict_at = detection.timestamp
            if grant == self.state.access_granted:
                return None
            self.state.access_granted = grant
            edge = GRANTED if grant else DENIED

        logger.info("Access %s (has_helmet=%s confidence=%.2f)", edge, detection.has_helmet, detection.confidence)
        for fn in list(self._listeners):
            try:
                fn(edge, detection)
            except Exception:
                logger.exception("Access listener failed on %s edge", edge)
        return edge

    def reset(self) -> None:
        with self._lock:
            self.state.access_granted = False
            self.state.last_verdict_at = None
