# mineguard/verdict.py
"""
Verdict engine: raw object-detector output → helmet compliance Detection.

The detector is a black box that returns a list of
    {"label": str, "score": float, "box": {"xmin", "ymin", "xmax", "ymax"}}
The engine only looks at labels and scores; boxes are carried through
for overlays and for the stored record.
"""

from __future__ import annotations

import logging
from concurrent.futures import Future, ThreadPoolExecutor, TimeoutError as FutureTimeout
from typing import Any, Callable, Dict, List, Mapping, Optional, Sequence

from . import config as cfg
from .errors import ClassifierUnavailable
from .models import BoundingBox, Detection, stored_confidence, utcnow

logger = logging.getLogger(__name__)

# One bar for both decisions: access flips to DENIED and a violation
# becomes alert-worthy at the same confidence.
CONFIDENCE_THRESHOLD = 0.6

# Fallback confidences when no helmet-labelled object is found.
PERSON_ONLY_CONFIDENCE = 0.3
EMPTY_FRAME_CONFIDENCE = 0.1

HELMET_LABEL_PARTS = ("hat", "helmet", "hardhat")

Classifier = Callable[[Any], List[Dict[str, Any]]]


# ───────────────────────── predicates ─────────────────────────
def is_person(label: str) -> bool:
    return label == "person"


def is_helmet(label: str) -> bool:
    # case-sensitive substring match on the label as the detector emits it
    return any(part in label for part in HELMET_LABEL_PARTS)


def is_compliant(detection: Detection) -> bool:
    # access follows the live score
    return detection.has_helmet and detection.confidence > CONFIDENCE_THRESHOLD


def is_violation(detection: Detection) -> bool:
    # alerts are judged on the stored two-decimal score
    return (not detection.has_helmet) and stored_confidence(detection.confidence) > CONFIDENCE_THRESHOLD


# ───────────────────────── geometry ─────────────────────────
def _box_xyxy(box: Any) -> List[float]:
    """Accept {"xmin",...} dicts or [x1, y1, x2, y2] sequences."""
    if box is None:
        return [0.0, 0.0, 0.0, 0.0]
    if isinstance(box, Mapping):
        return [float(box.get(k, 0.0)) for k in ("xmin", "ymin", "xmax", "ymax")]
    x1, y1, x2, y2 = box
    return [float(x1), float(y1), float(x2), float(y2)]


def to_bounding_box(obj: Mapping[str, Any]) -> BoundingBox:
    x1, y1, x2, y2 = _box_xyxy(obj.get("box"))
    return BoundingBox(
        x=x1,
        y=y1,
        width=x2 - x1,
        height=y2 - y1,
        confidence=float(obj.get("score", 0.0)),
        label=str(obj.get("label", "")),
    )


# ───────────────────────── core rule ─────────────────────────
def build_verdict(objects: Sequence[Mapping[str, Any]], location: str = "") -> Detection:
    """
    Partition into persons / helmet-like objects and derive the verdict.

    confidence = best helmet score if any helmet was seen, otherwise a
    fixed weak-evidence value (0.3 with a person in frame, 0.1 for an
    empty frame). An empty frame is never reported as zero confidence.
    """
    boxes = [to_bounding_box(o) for o in objects]
    persons = [b for b in boxes if is_person(b.label)]
    helmets = [b for b in boxes if is_helmet(b.label)]

    has_helmet = len(persons) > 0 and len(helmets) > 0
    if helmets:
        confidence = max(h.confidence for h in helmets)
    elif persons:
        confidence = PERSON_ONLY_CONFIDENCE
    else:
        confidence = EMPTY_FRAME_CONFIDENCE

    return Detection(
        has_helmet=has_helmet,
        confidence=confidence,
        timestamp=utcnow(),
        bounding_boxes=tuple(persons + helmets),
        location=location,
    )


def degraded_verdict(location: str = "") -> Detection:
    """Stand-in when the classifier is unavailable: no helmet, no confidence."""
    return Detection(
        has_helmet=False,
        confidence=0.0,
        timestamp=utcnow(),
        bounding_boxes=(),
        location=location,
        degraded=True,
    )


# ───────────────────────── engine ─────────────────────────
class VerdictEngine:
    """
    Wraps a classifier callable with a timeout and turns its output into
    a Detection. Only one classifier call runs at a time; a call that is
    still running when the next frame arrives makes that frame degraded
    instead of queueing another call behind it.
    """

    def __init__(
        self,
        classifier: Classifier,
        *,
        timeout_s: Optional[float] = None,
        location: Optional[str] = None,
    ):
        self.classifier = classifier
        self.timeout_s = cfg.CLASSIFIER_TIMEOUT_S if timeout_s is None else timeout_s
        self.location = cfg.CAMERA_LOCATION if location is None else location
        self._executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix="classifier")
        self._inflight: Optional[Future] = None

    def classify(self, image: Any) -> List[Dict[str, Any]]:
        """Run the classifier once; raises ClassifierUnavailable on any failure."""
        if self._inflight is not None and not self._inflight.done():
            raise ClassifierUnavailable("Previous classifier call is still running.")
        fut = self._executor.submit(self.classifier, image)
        self._inflight = fut
        try:
            return list(fut.result(timeout=self.timeout_s) or [])
        except FutureTimeout as e:
            # leave the call running; its result is discarded
            raise ClassifierUnavailable(f"Classifier timed out after {self.timeout_s:.1f}s.") from e
        except Exception as e:
            raise ClassifierUnavailable(f"Classifier failed: {e.__class__.__name__}: {e}") from e

    def analyze(self, image: Any) -> Detection:
        try:
            objects = self.classify(image)
        except ClassifierUnavailable as e:
            logger.warning("Classifier unavailable, degraded verdict: %s", e)
            return degraded_verdict(self.location)
        return build_verdict(objects, location=self.location)

    def close(self) -> None:
        self._executor.shutdown(wait=False)
