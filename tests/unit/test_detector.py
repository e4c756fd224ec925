"""Unit tests for the YOLO adapter's result conversion."""

from types import SimpleNamespace

import numpy as np
import pytest

from mower.perception.classes import ObjectClass
from mower.perception.detector import ANIMAL_MODEL_CLASSES, DetectorConfig, YOLODetector


class FakeTensor:
    """Minimal stand-in for the tensor API used on Ultralytics boxes."""

    def __init__(self, values):
        self._values = np.asarray(values, dtype=float)

    def __getitem__(self, index):
        return FakeTensor(self._values[index])

    def __len__(self):
        return len(self._values)

    def item(self):
        return float(self._values)

    def cpu(self):
        return self

    def numpy(self):
        return self._values


class FakeBoxes:
    def __init__(self, cls, conf, xyxy):
        self.cls = FakeTensor(cls)
        self.conf = FakeTensor(conf)
        self.xyxy = FakeTensor(xyxy)

    def __len__(self):
        return len(self.cls)


class TestParseBoxes:
    """Tests for converting model output to Detection records."""

    def test_known_classes_converted(self):
        detector = YOLODetector()
        boxes = FakeBoxes(cls=[0, 1], conf=[0.8, 0.75], xyxy=[[10, 20, 50, 100], [100, 40, 140, 200]])

        detections = detector.parse_boxes([SimpleNamespace(boxes=boxes)], timestamp=4.2)

        assert [d.label for d in detections] == [ObjectClass.PYLON, ObjectClass.PERSON]
        assert detections[0].bbox == (10.0, 20.0, 40.0, 80.0)
        assert detections[0].confidence == pytest.approx(0.8)
        assert all(d.timestamp == 4.2 for d in detections)

    def test_unknown_class_ignored(self):
        detector = YOLODetector()
        boxes = FakeBoxes(cls=[7], conf=[0.9], xyxy=[[0, 0, 10, 10]])
        assert detector.parse_boxes([SimpleNamespace(boxes=boxes)], 0.0) == []

    def test_animal_class_map(self):
        detector = YOLODetector(DetectorConfig(class_map=dict(ANIMAL_MODEL_CLASSES)))
        boxes = FakeBoxes(cls=[8], conf=[0.9], xyxy=[[0, 0, 10, 10]])

        detections = detector.parse_boxes([SimpleNamespace(boxes=boxes)], 0.0)
        assert detections[0].label == ObjectClass.FOX

    def test_empty_results(self):
        detector = YOLODetector()
        assert detector.parse_boxes([], 0.0) == []
        assert detector.parse_boxes([SimpleNamespace(boxes=None)], 0.0) == []

    def test_detect_requires_initialize(self):
        with pytest.raises(RuntimeError):
            YOLODetector().detect(np.zeros((320, 320, 3), dtype=np.uint8), 0.0)
