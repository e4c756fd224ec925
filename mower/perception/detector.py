"""
Detection record and YOLO detector adapter.

The trained model and its inference runtime are external; this module only
defines the ``Detection`` record consumed by the aggregator and a thin
Ultralytics adapter that converts model output into it.
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field
from typing import Optional

import numpy as np

from .classes import ObjectClass

logger = logging.getLogger(__name__)

# Model class ids of the pylon model
PYLON_MODEL_CLASSES: dict[int, ObjectClass] = {
    0: ObjectClass.PYLON,
    1: ObjectClass.PERSON,
    2: ObjectClass.MOWER,
}

# Model class ids of the animal model
ANIMAL_MODEL_CLASSES: dict[int, ObjectClass] = {
    0: ObjectClass.BEAR,
    1: ObjectClass.DEER,
    2: ObjectClass.MONKEY,
    3: ObjectClass.BOAR,
    4: ObjectClass.BADGER,
    5: ObjectClass.CAT,
    6: ObjectClass.CIVET,
    7: ObjectClass.DOG,
    8: ObjectClass.FOX,
    9: ObjectClass.HARE,
    10: ObjectClass.MICE,
    11: ObjectClass.RACCOON,
    12: ObjectClass.SQUIRREL,
}


@dataclass(frozen=True)
class Detection:
    """Single-frame detection result."""

    label: ObjectClass
    confidence: float
    bbox: tuple[float, float, float, float]  # x, y, w, h (top-left corner + size)
    timestamp: float

    @property
    def center(self) -> tuple[float, float]:
        x, y, w, h = self.bbox
        return (x + w / 2.0, y + h / 2.0)

    @property
    def size(self) -> tuple[float, float]:
        return (self.bbox[2], self.bbox[3])


@dataclass
class DetectorConfig:
    """Configuration for the YOLO detector adapter."""

    model_path: str = "asset/model/pylon_yolov8n_320.onnx"
    confidence_threshold: float = 0.5
    iou_threshold: float = 0.7
    class_map: dict[int, ObjectClass] = field(default_factory=lambda: dict(PYLON_MODEL_CLASSES))
    image_size: int = 320


class YOLODetector:
    """
    Ultralytics YOLO adapter producing ``Detection`` records.

    Usage:
        detector = YOLODetector()
        if detector.initialize():
            detections = detector.detect(image, timestamp)
    """

    def __init__(self, config: Optional[DetectorConfig] = None):
        self.config = config or DetectorConfig()
        self._model = None
        self._initialized = False
        self.last_inference_ms = 0.0

    def initialize(self) -> bool:
        """
        Load the model.

        Returns:
            True if successful, False otherwise.
        """
        try:
            from ultralytics import YOLO
        except ImportError:
            logger.error("ultralytics not installed. Run: pip install 'pylon-mower[detector]'")
            return False

        try:
            logger.info(f"Loading model: {self.config.model_path}")
            self._model = YOLO(self.config.model_path, task="detect")

            # Warmup inference with dummy image
            dummy = np.zeros((self.config.image_size, self.config.image_size, 3), dtype=np.uint8)
            self._model.predict(dummy, imgsz=self.config.image_size, verbose=False)

            self._initialized = True
            logger.info(f"YOLO detector initialized ({len(self.config.class_map)} classes)")
            return True

        except Exception as e:
            logger.error(f"Failed to initialize YOLO: {e}")
            return False

    def detect(self, image: np.ndarray, timestamp: float) -> list[Detection]:
        """
        Run detection on image.

        Args:
            image: BGR image (H, W, 3) numpy array
            timestamp: Capture time of the frame

        Returns:
            List of Detection objects for known classes

        Raises:
            RuntimeError: If detector not initialized
        """
        if not self._initialized or self._model is None:
            raise RuntimeError("Detector not initialized. Call initialize() first.")

        start = time.perf_counter()
        results = self._model.predict(
            image,
            conf=self.config.confidence_threshold,
            iou=self.config.iou_threshold,
            imgsz=self.config.image_size,
            verbose=False,
        )
        self.last_inference_ms = (time.perf_counter() - start) * 1000

        return self.parse_boxes(results, timestamp)

    def parse_boxes(self, results, timestamp: float) -> list[Detection]:
        """Convert Ultralytics results into Detection records."""
        detections: list[Detection] = []
        if len(results) == 0 or results[0].boxes is None:
            return detections

        boxes = results[0].boxes
        for i in range(len(boxes)):
            cls_id = int(boxes.cls[i].item())
            label = self.config.class_map.get(cls_id)
            if label is None:
                logger.debug(f"Ignoring unknown class id {cls_id}")
                continue

            # Convert from xyxy to xywh
            x1, y1, x2, y2 = (float(v) for v in boxes.xyxy[i].cpu().numpy())
            detections.append(
                Detection(
                    label=label,
                    confidence=float(boxes.conf[i].item()),
                    bbox=(x1, y1, x2 - x1, y2 - y1),
                    timestamp=timestamp,
                )
            )
        return detections

    @property
    def is_initialized(self) -> bool:
        """Check if detector is ready."""
        return self._initialized
