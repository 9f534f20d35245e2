# mineguard/monitor.py
"""
One camera session: fixed-cadence sampling → verdict → access state →
persisted detection.

Threads:
  • timer thread: wakes every interval_s on absolute deadlines, grabs the
    newest frame and hands it to the pipeline. If the previous frame is
    still being processed the tick is skipped (never more than one frame
    in flight, never more than one classifier call).
  • pipeline worker (single thread): classifier, state machine, store
    write. Being single-threaded keeps verdicts in sampling order.

stop() cancels the timer; whatever the pipeline finishes afterwards is
discarded without touching state or the store.
"""

from __future__ import annotations

import logging
import threading
import time
from concurrent.futures import Future, ThreadPoolExecutor
from typing import Any, Callable, Optional

from . import config as cfg
from .compliance import ComplianceStateMachine
from .errors import PersistenceError
from .models import Detection
from .store import AlertStore
from .verdict import VerdictEngine

logger = logging.getLogger(__name__)


class MonitorSession:
    def __init__(
        self,
        sampler: Any,
        engine: VerdictEngine,
        store: Optional[AlertStore] = None,
        *,
        interval_s: Optional[float] = None,
        store_snapshots: Optional[bool] = None,
        state_machine: Optional[ComplianceStateMachine] = None,
        on_detection: Optional[Callable[[Detection], None]] = None,
    ):
        self.sampler = sampler  # anything with latest() -> frame | None
        self.engine = engine
        self.store = store
        self.interval_s = cfg.SAMPLE_INTERVAL_S if interval_s is None else float(interval_s)
        if self.interval_s <= 0:
            raise ValueError("interval_s must be positive")
        self.store_snapshots = cfg.STORE_SNAPSHOTS if store_snapshots is None else store_snapshots
        self.state_machine = state_machine or ComplianceStateMachine()
        self.on_detection = on_detection

        self.last_detection: Optional[Detection] = None
        self.ticks = 0
        self.skipped_ticks = 0
        self.processed = 0
        self.persist_failures = 0
        self.errors = 0

        self._stop = threading.Event()
        self._lock = threading.Lock()
        self._generation = 0
        self._timer: Optional[threading.Thread] = None
        self._pipeline: Optional[ThreadPoolExecutor] = None
        self._pending: Optional[Future] = None

    # ---- lifecycle ----
    @property
    def running(self) -> bool:
        return self._timer is not None and self._timer.is_alive() and not self._stop.is_set()

    @property
    def access_granted(self) -> bool:
        return self.state_machine.access_granted

    def start(self) -> None:
        with self._lock:
            if self.running:
                return
            self._generation += 1
            generation = self._generation
            self._stop.clear()
            self.state_machine.reset()
            self._pipeline = ThreadPoolExecutor(max_workers=1, thread_name_prefix="pipeline")
            self._pending = None
            self._timer = threading.Thread(
                target=self._timer_loop, args=(generation,), name="monitor-timer", daemon=True
            )
            self._timer.start()
        logger.info("Monitoring started (every %.2fs)", self.interval_s)

    def stop(self) -> None:
        with self._lock:
            self._stop.set()
            self._generation += 1  # anything still in flight is now stale
            timer, pipeline = self._timer, self._pipeline
            self._timer, self._pipeline, self._pending = None, None, None
        if timer is not None and timer is not threading.current_thread():
            timer.join(timeout=max(1.0, self.interval_s * 2))
        if pipeline is not None:
            pipeline.shutdown(wait=False)
        logger.info("Monitoring stopped")

    def _is_current(self, generation: Optional[int]) -> bool:
        if generation is None:
            return True
        return generation == self._generation and not self._stop.is_set()

    # ---- scheduling ----
    def _timer_loop(self, generation: int) -> None:
        next_tick = time.monotonic()
        while self._is_current(generation):
            try:
                self._tick(generation)
            except Exception:
                self.errors += 1
                logger.exception("Monitor tick failed")
            next_tick += self.interval_s
            delay = next_tick - time.monotonic()
            if delay < 0:
                # fell behind; drop the missed ticks instead of bursting
                missed = int(-delay // self.interval_s) + 1
                self.skipped_ticks += missed
                next_tick += missed * self.interval_s
                delay = next_tick - time.monotonic()
            if self._stop.wait(max(0.0, delay)):
                break

    def _tick(self, generation: int) -> None:
        self.ticks += 1
        pending = self._pending
        if pending is not None and not pending.done():
            self.skipped_ticks += 1
            logger.debug("Previous frame still processing; tick skipped")
            return
        frame = self.sampler.latest()
        if frame is None:
            logger.debug("No frame available yet")
            return
        pipeline = self._pipeline
        if pipeline is None or not self._is_current(generation):
            return
        self._pending = pipeline.submit(self._run_pipeline, frame, generation)

    def _run_pipeline(self, frame: Any, generation: int) -> None:
        try:
            self.process_frame(frame, generation=generation)
        except Exception:
            self.errors += 1
            logger.exception("Frame pipeline failed")

    # ---- one frame ----
    def process_frame(self, frame: Any, generation: Optional[int] = None) -> Optional[Detection]:
        """
        Classify one frame, update access state, persist the detection.
        Returns the detection (with its store id when persisted), or None if
        the session was stopped while the frame was in flight.
        Degraded verdicts move access state but are never stored.
        """
        detection = self.engine.analyze(frame)
        if not self._is_current(generation):
            return None

        self.state_machine.update(detection)
        self.last_detection = detection
        self.processed += 1

        if self.store is not None and not detection.degraded:
            image_data = None
            if self.store_snapshots:
                from .camera import jpeg_data_url
                image_data = jpeg_data_url(frame)
            if not self._is_current(generation):
                return None
            try:
                detection = detection.with_id(self.store.insert_detection(detection, image_data=image_data))
                self.last_detection = detection
            except PersistenceError:
                self.persist_failures += 1
                logger.exception("Detection not saved")

        if self.on_detection is not None:
            try:
                self.on_detection(detection)
            except Exception:
                logger.exception("on_detection callback failed")
        return detection
