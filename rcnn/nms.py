"""
Greedy non-maximum suppression.

Boxes are visited in descending score order (stable, so the earlier input
index wins ties). Each visited box that is still alive is kept and
suppresses every later box whose overlap with it is strictly greater than
the threshold. Kept indices are returned in ascending input order.
"""

from __future__ import annotations

import logging
import math
from dataclasses import dataclass
from enum import Enum
from typing import Iterator

import numpy as np

from config import DEFAULT_OVERLAP_RATIO_TYPE, DEFAULT_OVERLAP_THRESHOLD

from .bbox import as_boxes, overlap_ratio_min, overlap_ratio_union

logger = logging.getLogger(__name__)


class OverlapMetric(str, Enum):
    """How the intersection area is normalized."""

    UNION = "Union"
    MIN = "Min"


def parse_overlap_metric(metric: str | OverlapMetric) -> OverlapMetric:
    """Resolve a metric name, case-insensitively.

    Raises:
        ValueError: If the name is not a known metric.
    """
    if isinstance(metric, OverlapMetric):
        return metric
    if isinstance(metric, str):
        for candidate in OverlapMetric:
            if candidate.value.lower() == metric.strip().lower():
                return candidate
    raise ValueError(
        f"Unknown overlap ratio type {metric!r}, expected one of "
        f"{', '.join(m.value for m in OverlapMetric)}"
    )


def check_overlap_threshold(threshold: float) -> float:
    """Raises ValueError unless the threshold is a finite number in [0, 1]."""
    if isinstance(threshold, bool) or not isinstance(threshold, (int, float, np.integer, np.floating)):
        raise ValueError(f"Overlap threshold must be a number, got {threshold!r}")
    if not math.isfinite(threshold) or threshold < 0 or threshold > 1:
        raise ValueError(f"Overlap threshold must be in [0, 1], got {threshold}")
    return float(threshold)


@dataclass
class SuppressionResult:
    """Boxes that survived suppression.

    Unpacks as ``(boxes, scores, indices)``.
    """

    boxes: np.ndarray
    scores: np.ndarray
    indices: np.ndarray

    def __len__(self) -> int:
        return len(self.indices)

    def __iter__(self) -> Iterator[np.ndarray]:
        return iter((self.boxes, self.scores, self.indices))


def suppress(
    boxes,
    scores,
    overlap_metric: str | OverlapMetric = DEFAULT_OVERLAP_RATIO_TYPE,
    overlap_threshold: float = DEFAULT_OVERLAP_THRESHOLD,
) -> SuppressionResult:
    """Remove boxes that overlap a higher-scoring box.

    Args:
        boxes: ``[N, 4]`` (x, y, width, height) boxes.
        scores: ``[N]`` scores.
        overlap_metric: ``"Union"`` (intersection over union) or ``"Min"``
            (intersection over the smaller area).
        overlap_threshold: Boxes whose overlap exceeds this are removed.

    Returns:
        SuppressionResult with kept boxes, scores and their input indices,
        in ascending index order.

    Raises:
        ValueError: For an unknown metric, an invalid threshold, or
            misaligned inputs.

    Examples:
        >>> boxes = np.array([[10, 10, 50, 50], [12, 12, 46, 46]])
        >>> suppress(boxes, [0.9, 0.7], "Min", 0.5).indices.tolist()
        [0]
    """
    metric = parse_overlap_metric(overlap_metric)
    threshold = check_overlap_threshold(overlap_threshold)
    boxes = as_boxes(boxes)
    scores = np.asarray(scores, dtype=np.float64).reshape(-1)
    if len(scores) != len(boxes):
        raise ValueError(f"Expected {len(boxes)} scores, got {len(scores)}")

    if len(boxes) == 0:
        return SuppressionResult(boxes=boxes, scores=scores, indices=np.zeros(0, dtype=np.int64))

    ratio_fn = overlap_ratio_union if metric is OverlapMetric.UNION else overlap_ratio_min
    order = np.argsort(-scores, kind="stable")
    suppressed = np.zeros(len(boxes), dtype=bool)

    for pos, idx in enumerate(order):
        if suppressed[idx]:
            continue
        rest = order[pos + 1:]
        rest = rest[~suppressed[rest]]
        if len(rest) == 0:
            break
        ratios = ratio_fn(boxes[idx], boxes[rest])
        suppressed[rest[ratios > threshold]] = True

    kept = np.flatnonzero(~suppressed)
    logger.debug("NMS (%s, %.2f): kept %d of %d boxes", metric.value, threshold, len(kept), len(boxes))
    return SuppressionResult(boxes=boxes[kept], scores=scores[kept], indices=kept)


@dataclass(frozen=True)
class NonMaxSuppressor:
    """Suppression with a fixed metric and threshold.

    Attributes:
        overlap_metric: ``"Union"`` or ``"Min"``.
        overlap_threshold: Overlap above which the weaker box is removed.
    """

    overlap_metric: OverlapMetric = OverlapMetric(DEFAULT_OVERLAP_RATIO_TYPE)
    overlap_threshold: float = DEFAULT_OVERLAP_THRESHOLD

    def __post_init__(self) -> None:
        object.__setattr__(self, "overlap_metric", parse_overlap_metric(self.overlap_metric))
        object.__setattr__(self, "overlap_threshold", check_overlap_threshold(self.overlap_threshold))

    def __call__(self, boxes, scores) -> SuppressionResult:
        return suppress(boxes, scores, self.overlap_metric, self.overlap_threshold)
