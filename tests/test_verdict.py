import time

import pytest

from conftest import FakeClassifier, obj
from mineguard.models import Detection
from mineguard.verdict import (
    VerdictEngine,
    build_verdict,
    is_compliant,
    is_helmet,
    is_violation,
)


@pytest.mark.parametrize("objects", [[], [obj("car", 0.99)]])
def test_nothing_relevant_in_frame(objects):
    det = build_verdict(objects)
    assert det.has_helmet is False
    assert det.confidence == pytest.approx(0.1)


def test_empty_frame_is_weak_evidence():
    det = build_verdict([obj("dog", 0.8), obj("chair", 0.7)])
    assert det.has_helmet is False
    assert det.confidence == pytest.approx(0.1)
    assert det.bounding_boxes == ()


def test_person_without_helmet():
    det = build_verdict([obj("person", 0.95), obj("person", 0.5)])
    assert det.has_helmet is False
    assert det.confidence == pytest.approx(0.3)
    assert [b.label for b in det.bounding_boxes] == ["person", "person"]


def test_person_with_helmets_takes_best_helmet_score():
    det = build_verdict([
        obj("person", 0.95),
        obj("hardhat", 0.62),
        obj("helmet", 0.85),
        obj("cup", 0.99),
    ])
    assert det.has_helmet is True
    assert det.confidence == pytest.approx(0.85)
    assert [b.label for b in det.bounding_boxes] == ["person", "hardhat", "helmet"]


def test_helmet_without_person_keeps_helmet_confidence():
    det = build_verdict([obj("helmet", 0.77)])
    assert det.has_helmet is False
    assert det.confidence == pytest.approx(0.77)


@pytest.mark.parametrize("label,expected", [
    ("hat", True),
    ("hardhat", True),
    ("helmet", True),
    ("safety_helmet", True),
    ("NO-Hardhat", True),  # "hat" substring, matched as-is
    ("Helmet", False),     # case-sensitive
    ("HAT", False),
    ("person", False),
])
def test_helmet_label_matching_is_case_sensitive_substring(label, expected):
    assert is_helmet(label) is expected


def test_person_label_must_match_exactly():
    det = build_verdict([obj("Person", 0.9), obj("helmet", 0.9)])
    assert det.has_helmet is False


def test_bounding_box_converted_from_corners():
    det = build_verdict([obj("person", 0.9, box=(10, 20, 110, 220))])
    box = det.bounding_boxes[0]
    assert (box.x, box.y, box.width, box.height) == (10, 20, 100, 200)
    assert box.confidence == pytest.approx(0.9)


def test_predicates_share_threshold():
    ok = build_verdict([obj("person", 0.9), obj("hardhat", 0.61)])
    edge = build_verdict([obj("person", 0.9), obj("hardhat", 0.6)])
    assert is_compliant(ok) and not is_violation(ok)
    assert not is_compliant(edge)
    assert not is_violation(build_verdict([obj("person", 0.9)]))  # 0.3 <= 0.6


def test_engine_uses_location():
    engine = VerdictEngine(FakeClassifier([obj("person", 0.9)]), timeout_s=1.0, location="Shaft 3")
    try:
        det = engine.analyze("img")
    finally:
        engine.close()
    assert det.location == "Shaft 3"
    assert det.degraded is False


def test_engine_degrades_on_classifier_error():
    engine = VerdictEngine(FakeClassifier(error=RuntimeError("gpu lost")), timeout_s=1.0, location="x")
    try:
        det = engine.analyze("img")
    finally:
        engine.close()
    assert det.degraded is True
    assert det.has_helmet is False
    assert det.confidence == 0.0
    assert not is_violation(det)


def test_engine_degrades_on_timeout_and_while_busy():
    def slow(_img):
        time.sleep(0.5)
        return [obj("person", 0.9), obj("helmet", 0.9)]

    engine = VerdictEngine(slow, timeout_s=0.05, location="x")
    try:
        first = engine.analyze("img")
        second = engine.analyze("img")  # previous call still running
    finally:
        engine.close()
    assert first.degraded and second.degraded


def test_violation_uses_stored_score_but_access_uses_live_score():
    assert not is_violation(Detection(has_helmet=False, confidence=0.604))
    assert is_violation(Detection(has_helmet=False, confidence=0.605))
    assert is_compliant(Detection(has_helmet=True, confidence=0.604))
