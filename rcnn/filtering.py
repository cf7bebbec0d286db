"""
Geometric filters over parallel box/score arrays.

Each filter is a FilterStep that computes a keep-mask. A FilterChain runs
steps in order and tracks which input indices survive, so callers can
re-index any auxiliary per-box data (labels, deltas) the filters never see.

Usage:
    from rcnn.filtering import FilterChain, SizeFilter, ValidBoxFilter

    chain = FilterChain(steps=[
        ValidBoxFilter(),
        SizeFilter(min_size=(16, 16)),
    ])
    result = chain.run(boxes, scores)
    labels = labels[result.indices]
"""

from __future__ import annotations

import math
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Sequence

import numpy as np

from .bbox import as_boxes, boxes_inside_image, clip_boxes
from .types import ImageSize


def _as_scores(scores, num_boxes: int) -> np.ndarray:
    arr = np.asarray(scores, dtype=np.float64).reshape(-1)
    if len(arr) != num_boxes:
        raise ValueError(f"Expected {num_boxes} scores, got {len(arr)}")
    return arr


class FilterStep(ABC):
    """Base class for box filters.

    A step only decides which boxes to keep; it never reorders or edits them.
    """

    @abstractmethod
    def mask(self, boxes: np.ndarray, scores: np.ndarray) -> np.ndarray:
        """Return a boolean keep-mask with one entry per box."""

    @property
    @abstractmethod
    def name(self) -> str:
        """Human-readable name for logging and debugging."""


@dataclass(frozen=True)
class SizeFilter(FilterStep):
    """Drop boxes smaller than ``min_size`` or larger than ``max_size``.

    Sizes are (height, width); a box fails if either dimension is out of
    range. Either bound may be None.
    """

    min_size: Sequence[float] | None = None
    max_size: Sequence[float] | None = None

    def mask(self, boxes: np.ndarray, scores: np.ndarray) -> np.ndarray:
        keep = np.ones(len(boxes), dtype=bool)
        widths = boxes[:, 2]
        heights = boxes[:, 3]
        if self.min_size is not None:
            keep &= (heights >= self.min_size[0]) & (widths >= self.min_size[1])
        if self.max_size is not None:
            keep &= (heights <= self.max_size[0]) & (widths <= self.max_size[1])
        return keep

    @property
    def name(self) -> str:
        return f"size({self.min_size}, {self.max_size})"


@dataclass(frozen=True)
class ScoreFilter(FilterStep):
    """Drop boxes scoring below ``threshold``. NaN scores are dropped too."""

    threshold: float

    def mask(self, boxes: np.ndarray, scores: np.ndarray) -> np.ndarray:
        return scores >= self.threshold

    @property
    def name(self) -> str:
        return f"score({self.threshold})"


@dataclass(frozen=True)
class ImageBoundsFilter(FilterStep):
    """Drop boxes that extend past the image, even partially."""

    image_size: ImageSize

    def mask(self, boxes: np.ndarray, scores: np.ndarray) -> np.ndarray:
        return boxes_inside_image(boxes, self.image_size)

    @property
    def name(self) -> str:
        return f"image_bounds({self.image_size[0]}x{self.image_size[1]})"


@dataclass(frozen=True)
class ValidBoxFilter(FilterStep):
    """Drop non-finite boxes or scores and boxes narrower or shorter than 1 pixel."""

    def mask(self, boxes: np.ndarray, scores: np.ndarray) -> np.ndarray:
        finite = np.all(np.isfinite(boxes), axis=1) & np.isfinite(scores)
        with np.errstate(invalid="ignore"):
            return finite & (boxes[:, 2] >= 1) & (boxes[:, 3] >= 1)

    @property
    def name(self) -> str:
        return "valid"


@dataclass
class FilterResult:
    """Surviving boxes and scores with their indices into the chain input.

    Attributes:
        boxes: ``[K, 4]`` kept boxes.
        scores: ``[K]`` kept scores.
        indices: ``[K]`` positions of the kept boxes in the original input.
        counts: Number of boxes left after each step, keyed by step name.
    """

    boxes: np.ndarray
    scores: np.ndarray
    indices: np.ndarray
    counts: list[tuple[str, int]] = field(default_factory=list)

    def __len__(self) -> int:
        return len(self.boxes)


@dataclass
class FilterChain:
    """A sequence of filters applied in order.

    Attributes:
        steps: FilterStep instances to apply in order.
    """

    steps: list[FilterStep]

    def run(self, boxes, scores) -> FilterResult:
        """Run every step, preserving the relative order of kept boxes.

        Raises:
            ValueError: If boxes and scores are not aligned.
        """
        boxes = as_boxes(boxes)
        scores = _as_scores(scores, len(boxes))
        indices = np.arange(len(boxes))
        counts = []

        for step in self.steps:
            if len(indices) > 0:
                keep = np.asarray(step.mask(boxes, scores), dtype=bool)
                boxes = boxes[keep]
                scores = scores[keep]
                indices = indices[keep]
            counts.append((step.name, len(indices)))

        return FilterResult(boxes=boxes, scores=scores, indices=indices, counts=counts)

    def __len__(self) -> int:
        return len(self.steps)

    def __iter__(self):
        return iter(self.steps)


def _apply(step: FilterStep, boxes, scores) -> tuple[np.ndarray, np.ndarray]:
    result = FilterChain(steps=[step]).run(boxes, scores)
    return result.boxes, result.scores


def filter_by_size(
    boxes,
    scores,
    min_size: Sequence[float] | None = None,
    max_size: Sequence[float] | None = None,
) -> tuple[np.ndarray, np.ndarray]:
    """Drop boxes whose (height, width) is below ``min_size`` or above ``max_size``."""
    return _apply(SizeFilter(min_size=min_size, max_size=max_size), boxes, scores)


def filter_small_boxes(boxes, scores, min_size: Sequence[float]) -> tuple[np.ndarray, np.ndarray]:
    return filter_by_size(boxes, scores, min_size=min_size)


def filter_large_boxes(boxes, scores, max_size: Sequence[float]) -> tuple[np.ndarray, np.ndarray]:
    return filter_by_size(boxes, scores, max_size=max_size)


def filter_by_score(boxes, scores, threshold: float) -> tuple[np.ndarray, np.ndarray]:
    """Drop boxes with ``score < threshold``."""
    return _apply(ScoreFilter(threshold=threshold), boxes, scores)


def filter_by_image_bounds(boxes, scores, image_size: ImageSize) -> tuple[np.ndarray, np.ndarray]:
    """Drop boxes not fully inside an image of size (height, width)."""
    return _apply(ImageBoundsFilter(image_size=tuple(image_size[:2])), boxes, scores)


def remove_invalid_boxes(boxes, scores) -> tuple[np.ndarray, np.ndarray]:
    """Drop boxes with NaN/Inf values or a width or height below 1."""
    return _apply(ValidBoxFilter(), boxes, scores)


def clip_to_image(boxes, image_size: ImageSize) -> np.ndarray:
    """Clamp boxes to the image instead of dropping them."""
    return clip_boxes(boxes, image_size[:2])


def strongest_indices(scores, num_regions: float) -> np.ndarray:
    """Indices of the ``num_regions`` highest scores, strongest first.

    The sort is stable, so equal scores keep their input order.
    ``math.inf`` selects every index.
    """
    scores = np.asarray(scores, dtype=np.float64).reshape(-1)
    order = np.argsort(-scores, kind="stable")
    if math.isinf(num_regions):
        return order
    return order[: int(num_regions)]


def select_strongest_regions(boxes, scores, num_regions: float) -> tuple[np.ndarray, np.ndarray]:
    """Keep the ``num_regions`` highest-scoring boxes, strongest first."""
    boxes = as_boxes(boxes)
    scores = _as_scores(scores, len(boxes))
    idx = strongest_indices(scores, num_regions)
    return boxes[idx], scores[idx]
