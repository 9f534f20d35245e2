# mineguard/errors.py
"""Error taxonomy for the detection-to-alert pipeline."""

from __future__ import annotations


class MineGuardError(RuntimeError):
    """Base class for everything the pipeline raises on purpose."""


class ClassifierUnavailable(MineGuardError):
    """The object detector failed, timed out, or is still busy with a previous frame."""


class PersistenceError(MineGuardError):
    """A store read/write failed; the record must not be treated as committed."""


class DuplicateAlert(MineGuardError):
    """An alert already exists for this detection. Callers treat this as success."""

    def __init__(self, detection_id: str, alert_id: str | None = None):
        super().__init__(f"Alert already exists for detection '{detection_id}'.")
        self.detection_id = detection_id
        self.alert_id = alert_id


class TransportError(MineGuardError):
    """Email delivery failed. The alert stays unsent and can be re-delivered."""
