from mineguard.compliance import DENIED, GRANTED, AccessState, ComplianceStateMachine
from mineguard.models import Detection


def verdict(has_helmet: bool, confidence: float) -> Detection:
    return Detection(has_helmet=has_helmet, confidence=confidence)


def test_starts_denied():
    sm = ComplianceStateMachine()
    assert sm.access_granted is False
    assert sm.state.state is AccessState.DENIED


def test_edges_emit_once():
    events = []
    sm = ComplianceStateMachine()
    sm.add_listener(lambda edge, det: events.append(edge))

    results = [sm.update(verdict(True, 0.9)), sm.update(verdict(True, 0.9)), sm.update(verdict(False, 0.9))]

    assert results == [GRANTED, None, DENIED]
    assert events == [GRANTED, DENIED]
    assert sm.access_granted is False


def test_denied_stays_silent_on_more_denials():
    events = []
    sm = ComplianceStateMachine()
    sm.add_listener(lambda edge, det: events.append(edge))
    sm.update(verdict(False, 0.9))
    sm.update(verdict(False, 0.3))
    assert events == []


def test_low_confidence_helmet_denies():
    sm = ComplianceStateMachine()
    sm.update(verdict(True, 0.9))
    assert sm.update(verdict(True, 0.6)) == DENIED


def test_person_only_frame_revokes_access():
    sm = ComplianceStateMachine()
    sm.update(verdict(True, 0.85))
    assert sm.update(verdict(False, 0.3)) == DENIED


def test_last_verdict_time_tracked():
    sm = ComplianceStateMachine()
    det = verdict(False, 0.1)
    sm.update(det)
    assert sm.state.last_verdict_at == det.timestamp


def test_failing_listener_does_not_break_state():
    sm = ComplianceStateMachine()

    def boom(edge, det):
        raise RuntimeError("ui gone")

    sm.add_listener(boom)
    assert sm.update(verdict(True, 0.9)) == GRANTED
    assert sm.access_granted is True


def test_reset_closes_access():
    sm = ComplianceStateMachine()
    sm.update(verdict(True, 0.9))
    sm.reset()
    assert sm.access_granted is False
    assert sm.state.last_verdict_at is None
