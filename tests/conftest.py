"""Shared fixtures: stub networks standing in for the external models."""

from __future__ import annotations

from typing import Callable

import numpy as np
import pytest

from rcnn import AnchorSpec, ClassTable, NetworkOutput


class StubDetectionNetwork:
    """Detection network whose feature map is the image downsampled by ``stride``.

    ``classify_fn(rois)`` receives feature-map-space ROIs and returns
    ``(classification, regression)``. By default every region is scored as
    class 1 with zero regression deltas.
    """

    def __init__(
        self,
        input_size=(32, 32, 3),
        stride: int = 16,
        num_classes: int = 3,
        classify_fn: Callable | None = None,
        grid_size=(1, 1),
    ):
        self.input_size = input_size
        self.stride = stride
        self.grid_size = grid_size
        self.num_classes = num_classes
        self.classify_fn = classify_fn or self._default_classify
        self.feature_map_calls = 0
        self.classify_calls = 0
        self.last_features = None
        self.last_rois = None
        self.last_env = None

    def _default_classify(self, rois):
        scores = np.full((len(rois), self.num_classes), 0.05)
        scores[:, 1] = 0.9
        return scores, np.zeros((len(rois), 4 * self.num_classes))

    def feature_map_size(self, image_size):
        self.feature_map_calls += 1
        return (image_size[0] // self.stride, image_size[1] // self.stride)

    def shared_features(self, image, execution_environment="auto"):
        return image

    def classify(self, features, rois, execution_environment="auto"):
        self.classify_calls += 1
        self.last_features = features
        self.last_rois = np.array(rois)
        self.last_env = execution_environment
        classification, regression = self.classify_fn(rois)
        return NetworkOutput(classification=classification, regression=regression)


class StubRPN:
    """Region proposal network returning fixed maps."""

    def __init__(self, classification, regression=None):
        self.classification = np.asarray(classification, dtype=np.float64)
        if regression is None:
            rows, cols, num_anchors = self.classification.shape[:2] + self.classification.shape[-1:]
            regression = np.zeros((rows, cols, 4 * num_anchors))
        self.regression = np.asarray(regression, dtype=np.float64)
        self.calls = []

    def evaluate(self, features, execution_environment="auto", mini_batch_size=128):
        self.calls.append((execution_environment, mini_batch_size))
        return NetworkOutput(classification=self.classification, regression=self.regression)


def single_object_map(rows=4, cols=4, at=(1, 1), score=0.9, num_anchors=1, anchor=0):
    """Objectness map that is background everywhere except one location."""
    cls = np.zeros((rows, cols, num_anchors))
    cls[at[0], at[1], anchor] = score
    return cls


@pytest.fixture
def class_table():
    return ClassTable(names=("Background", "car", "person"))


@pytest.fixture
def single_anchor():
    return AnchorSpec(base_sizes=((32, 32),), pyramid_scale=2.0, num_levels=1)


@pytest.fixture
def fixed_proposals():
    """Proposal function returning the same two boxes for any image."""

    def propose(image):
        boxes = np.array([[10, 10, 40, 40], [60, 50, 30, 30]], dtype=np.float64)
        scores = np.array([0.9, 0.8])
        return boxes, scores

    return propose


@pytest.fixture
def make_network():
    """Factory for StubDetectionNetwork instances."""
    return StubDetectionNetwork


@pytest.fixture
def make_rpn():
    """Factory for StubRPN instances."""
    return StubRPN


@pytest.fixture
def object_map():
    """Builder for single-object score maps."""
    return single_object_map
