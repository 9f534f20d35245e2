from __future__ import annotations

import threading
from typing import Any, Dict, List, Optional

import pytest

from mineguard.errors import TransportError
from mineguard.store import MemoryStore


def obj(label: str, score: float, box=(10, 20, 110, 220)) -> Dict[str, Any]:
    x1, y1, x2, y2 = box
    return {"label": label, "score": score, "box": {"xmin": x1, "ymin": y1, "xmax": x2, "ymax": y2}}


class FakeTransport:
    """Records every payload; optionally fails."""

    def __init__(self, fail: bool = False):
        self.fail = fail
        self.payloads: List[Dict[str, Any]] = []
        self._lock = threading.Lock()

    def __call__(self, payload: Dict[str, Any]) -> Dict[str, Any]:
        with self._lock:
            self.payloads.append(dict(payload))
        if self.fail:
            raise TransportError("smtp down")
        return {"success": True, "emailId": f"msg-{len(self.payloads)}", "message": "ok"}


class FakeClassifier:
    """Returns queued outputs in order; repeats the last one when exhausted."""

    def __init__(self, *outputs: List[Dict[str, Any]], error: Optional[Exception] = None):
        self.outputs = list(outputs) or [[]]
        self.error = error
        self.calls = 0

    def __call__(self, image: Any) -> List[Dict[str, Any]]:
        self.calls += 1
        if self.error is not None:
            raise self.error
        idx = min(self.calls - 1, len(self.outputs) - 1)
        return self.outputs[idx]


class StaticSampler:
    def __init__(self, frame: Any = "frame"):
        self.frame = frame

    def latest(self) -> Any:
        return self.frame


@pytest.fixture
def store() -> MemoryStore:
    return MemoryStore()


@pytest.fixture
def transport() -> FakeTransport:
    return FakeTransport()
