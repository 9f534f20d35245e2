# mineguard/helmet_infer.py
"""
Object classifier backed by ultralytics YOLO.

Two passes, like a person/PPE split: a COCO person model and an optional
helmet/hardhat model. Both outputs are merged into the detector-neutral
shape the verdict engine consumes:
    {"label": str, "score": float, "box": {"xmin", "ymin", "xmax", "ymax"}}
Labels are passed through exactly as the model names them.
"""

from __future__ import annotations

import logging
from typing import Any, Dict, List, Optional

import numpy as np
from ultralytics import YOLO

from . import config as cfg

# lightweight torch import only for device checks
try:
    import torch
except ImportError:  # pragma: no cover
    torch = None

logger = logging.getLogger(__name__)


# ───────────────────────── parse helpers ─────────────────────────
def _label_for(names: Any, class_id: int) -> str:
    # model.names may be dict or list; both support [] lookup
    try:
        return str(names[class_id])
    except (KeyError, IndexError):
        return str(class_id)


def parse_result(res, conf_thr: float = 0.0, keep_labels: Optional[set] = None) -> List[Dict[str, Any]]:
    """Flatten one ultralytics Result into detector-neutral dicts."""
    boxes = getattr(res, "boxes", None)
    if boxes is None or len(boxes) == 0:
        return []

    cls_ids = boxes.cls.detach().cpu().numpy().astype(int)
    xyxy = boxes.xyxy.detach().cpu().numpy()
    confs = boxes.conf.detach().cpu().numpy()

    out: List[Dict[str, Any]] = []
    for c, b, cf in zip(cls_ids, xyxy, confs):
        if float(cf) < conf_thr:
            continue
        label = _label_for(res.names, int(c))
        if keep_labels is not None and label not in keep_labels:
            continue
        x1, y1, x2, y2 = (float(v) for v in b.tolist())
        out.append({
            "label": label,
            "score": float(cf),
            "box": {"xmin": x1, "ymin": y1, "xmax": x2, "ymax": y2},
        })
    return out


# ───────────────────────── classifier ─────────────────────────
class HelmetClassifier:
    """Callable: classifier(frame_bgr) -> list of detections."""

    def __init__(
        self,
        person_model: Optional[str] = None,
        ppe_model: Optional[str] = None,
        device: Optional[str] = None,
        imgsz: Optional[int] = None,
        conf: Optional[float] = None,
        iou: float = 0.70,
    ):
        self.imgsz = cfg.MODEL_IMGSZ if imgsz is None else imgsz
        self.conf = cfg.MODEL_CONF if conf is None else conf
        self.iou = iou

        person_model = person_model or cfg.PERSON_MODEL_PATH
        ppe_model = cfg.PPE_MODEL_PATH if ppe_model is None else ppe_model

        self.person = YOLO(person_model)
        self.ppe = YOLO(ppe_model) if ppe_model else None
        if self.ppe is None:
            logger.warning("No PPE_MODEL_PATH set; only persons can be detected, helmets never will be.")

        # If caller asked for cuda but it's not available, fall back to cpu.
        want = str(device or cfg.MODEL_DEVICE)
        if want.startswith("cuda") and torch is not None and torch.cuda.is_available():
            self.device = want if ":" in want else "cuda:0"
        else:
            self.device = "cpu"

        for m in (self.person, self.ppe):
            if m is not None:
                m.to(self.device)

    def _predict(self, model, frame: np.ndarray):
        return model.predict(
            source=frame, imgsz=self.imgsz, conf=self.conf, iou=self.iou,
            verbose=False, device=self.device, half=self.device.startswith("cuda"),
        )[0]

    def detect(self, frame_bgr: np.ndarray) -> List[Dict[str, Any]]:
        # PERSON pass (COCO: keep only "person")
        objects = parse_result(self._predict(self.person, frame_bgr), self.conf, keep_labels={"person"})

        # PPE pass (everything the helmet model emits)
        if self.ppe is not None:
            objects.extend(parse_result(self._predict(self.ppe, frame_bgr), self.conf))
        return objects

    __call__ = detect
