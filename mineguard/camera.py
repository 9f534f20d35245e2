# mineguard/camera.py
from __future__ import annotations

import base64
import logging
import threading
import time
from typing import Optional, Union

import cv2
import numpy as np

from . import config as cfg

logger = logging.getLogger(__name__)


def _parse_source(src: Union[int, str]) -> Union[int, str]:
    """"0" → device 0; anything else (rtsp://…, file path) passes through."""
    if isinstance(src, int):
        return src
    s = str(src).strip()
    return int(s) if s.isdigit() else s


def jpeg_b64(img_bgr: np.ndarray, max_side: int = 560, quality: int = 82) -> str:
    h, w = img_bgr.shape[:2]
    scale = 1.0
    if max(h, w) > max_side:
        scale = max_side / float(max(h, w))
    if scale != 1.0:
        img_bgr = cv2.resize(img_bgr, (int(w * scale), int(h * scale)))
    ok, buf = cv2.imencode(".jpg", img_bgr, [int(cv2.IMWRITE_JPEG_QUALITY), int(quality)])
    if not ok:
        return ""
    return base64.b64encode(buf.tobytes()).decode("ascii")


def jpeg_data_url(img_bgr: np.ndarray, max_side: int = 560, quality: int = 82) -> Optional[str]:
    """Snapshot for the detection record's image_data field."""
    b64 = jpeg_b64(img_bgr, max_side=max_side, quality=quality)
    return f"data:image/jpeg;base64,{b64}" if b64 else None


class FrameSampler:
    """
    Background reader that keeps only the newest frame.

    The monitor pulls latest() on its own cadence, so a slow pipeline
    never builds a backlog of stale frames.
    """

    def __init__(self, source: Union[int, str, None] = None):
        self.source = _parse_source(cfg.CAMERA_SOURCE if source is None else source)
        self._cap = None
        self._reader_thread: Optional[threading.Thread] = None
        self._stop_reader = threading.Event()
        self._last_frame: Optional[np.ndarray] = None
        self._frame_lock = threading.Lock()
        self._online = False

    @property
    def online(self) -> bool:
        return self._online

    def open(self) -> bool:
        self.close()
        cap = cv2.VideoCapture(self.source)
        if not cap or not cap.isOpened():
            logger.error("Camera offline: cannot open %r", self.source)
            return False
        cap.set(cv2.CAP_PROP_BUFFERSIZE, 1)  # keep queue small
        self._cap, self._online = cap, True
        self._stop_reader.clear()
        self._reader_thread = threading.Thread(target=self._reader_loop, name="camera-reader", daemon=True)
        self._reader_thread.start()
        logger.info("Camera %r streaming", self.source)
        return True

    def _reader_loop(self) -> None:
        while not self._stop_reader.is_set():
            cap = self._cap
            if cap is None:
                self._online = False
                return
            ok, frame = cap.read()
            if not ok:
                self._online = False
                time.sleep(0.01)  # short sleep to recover faster
                continue
            self._online = True
            with self._frame_lock:
                self._last_frame = frame

    def latest(self) -> Optional[np.ndarray]:
        with self._frame_lock:
            return None if self._last_frame is None else self._last_frame.copy()

    def close(self) -> None:
        self._stop_reader.set()
        if self._reader_thread and self._reader_thread.is_alive():
            self._reader_thread.join(timeout=1.0)
        self._reader_thread = None
        if self._cap is not None:
            self._cap.release()
        self._cap = None
        self._online = False
        with self._frame_lock:
            self._last_frame = None
