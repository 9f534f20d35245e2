import threading
import time

import pytest

from conftest import FakeClassifier, StaticSampler, obj
from mineguard.alerts import AlertDispatcher
from mineguard.compliance import ComplianceStateMachine
from mineguard.errors import PersistenceError
from mineguard.monitor import MonitorSession
from mineguard.store import MemoryStore
from mineguard.verdict import VerdictEngine

COMPLIANT = [obj("person", 0.95), obj("hardhat", 0.85)]
PERSON_ONLY = [obj("person", 0.9)]


class BlockingClassifier:
    """Holds every call until release is set."""

    def __init__(self, output):
        self.output = output
        self.entered = threading.Event()
        self.release = threading.Event()
        self.calls = 0

    def __call__(self, image):
        self.calls += 1
        self.entered.set()
        self.release.wait(5)
        return self.output


def make_session(classifier, store=None, **kw):
    engine = VerdictEngine(classifier, timeout_s=5.0, location="Gate")
    machine = ComplianceStateMachine()
    edges = []
    machine.add_listener(lambda edge, det: edges.append(edge))
    session = MonitorSession(
        StaticSampler(), engine, store, interval_s=kw.pop("interval_s", 1.0),
        store_snapshots=False, state_machine=machine, **kw
    )
    return session, edges


@pytest.fixture
def attached(store, transport):
    d = AlertDispatcher(store, transport=transport, recipient="crew@mine.test")
    d.attach()
    yield d
    d.detach()


def test_compliant_worker_is_granted_and_not_alerted(store, transport, attached):
    session, edges = make_session(FakeClassifier(COMPLIANT), store)
    try:
        det = session.process_frame("frame")
    finally:
        session.engine.close()

    assert det.has_helmet is True
    assert det.confidence == pytest.approx(0.85)
    assert det.id is not None
    assert edges == ["granted"]
    assert session.access_granted is True
    assert store.recent_alerts() == []
    assert transport.payloads == []


def test_person_without_helmet_denies_but_does_not_alert(store, transport, attached):
    session, edges = make_session(FakeClassifier(COMPLIANT, PERSON_ONLY), store)
    try:
        session.process_frame("f1")
        det = session.process_frame("f2")
    finally:
        session.engine.close()

    assert (det.has_helmet, det.confidence) == (False, pytest.approx(0.3))
    assert edges == ["granted", "denied"]
    assert store.recent_alerts() == []
    assert len(store.list_detections()) == 2


def test_confident_violation_reaches_email(store, transport, attached):
    # helmet seen but no person: has_helmet=False at the helmet's score
    session, _ = make_session(FakeClassifier([obj("helmet", 0.9)]), store)
    try:
        det = session.process_frame("frame")
    finally:
        session.engine.close()

    (alert,) = store.recent_alerts()
    assert alert.detection_id == det.id
    assert alert.email_sent is True
    assert transport.payloads[0]["location"] == "Gate"


def test_degraded_verdict_moves_state_but_is_not_stored(store):
    session, edges = make_session(FakeClassifier(COMPLIANT), store)
    try:
        session.process_frame("f1")
        session.engine.classifier = FakeClassifier(error=RuntimeError("model crashed"))
        det = session.process_frame("f2")
    finally:
        session.engine.close()

    assert det.degraded is True
    assert det.id is None
    assert edges == ["granted", "denied"]
    assert len(store.list_detections()) == 1


def test_persist_failure_is_counted_not_raised():
    class BrokenStore(MemoryStore):
        def insert_detection(self, detection, image_data=None):
            raise PersistenceError("quota exceeded")

    seen = []
    session, edges = make_session(FakeClassifier(COMPLIANT), BrokenStore(), on_detection=seen.append)
    try:
        det = session.process_frame("frame")
    finally:
        session.engine.close()

    assert det.id is None
    assert session.persist_failures == 1
    assert edges == ["granted"]
    assert seen == [det]


def test_on_detection_gets_stored_id(store):
    seen = []
    session, _ = make_session(FakeClassifier(PERSON_ONLY), store, on_detection=seen.append)
    try:
        session.process_frame("frame")
    finally:
        session.engine.close()
    assert seen[0].id == store.list_detections()[0].id


def test_interval_must_be_positive():
    with pytest.raises(ValueError):
        make_session(FakeClassifier(), interval_s=0)


def test_tick_skipped_while_frame_in_flight(store):
    classifier = BlockingClassifier(COMPLIANT)
    session, _ = make_session(classifier, store, interval_s=0.02)
    session.start()
    try:
        assert classifier.entered.wait(2)
        time.sleep(0.15)
        assert classifier.calls == 1
        assert session.skipped_ticks >= 1
    finally:
        classifier.release.set()
        session.stop()
        session.engine.close()


def test_result_after_stop_is_discarded(store):
    classifier = BlockingClassifier(COMPLIANT)
    session, edges = make_session(classifier, store, interval_s=0.02)
    session.start()
    try:
        assert classifier.entered.wait(2)
        time.sleep(0.05)
        in_flight = session._pending
        session.stop()
        assert session.running is False
        classifier.release.set()
        in_flight.result(timeout=2)
    finally:
        classifier.release.set()
        session.engine.close()

    assert session.processed == 0
    assert edges == []
    assert store.list_detections() == []
