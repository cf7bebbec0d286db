"""
Bounding box geometry utilities.

All functions are pure and operate on ``[N, 4]`` arrays of
``(x, y, width, height)`` rows. A box covers ``x .. x + width`` horizontally,
so two boxes that only share an edge do not overlap.
"""

from __future__ import annotations

import numpy as np

from .types import ImageSize


def as_boxes(boxes) -> np.ndarray:
    """Convert input to a float ``[N, 4]`` box array.

    Raises:
        ValueError: If the input is not shaped ``[N, 4]``.
    """
    arr = np.asarray(boxes, dtype=np.float64)
    if arr.ndim == 1 and arr.size == 0:
        return arr.reshape(0, 4)
    if arr.ndim == 1 and arr.size == 4:
        return arr.reshape(1, 4)
    if arr.ndim != 2 or arr.shape[1] != 4:
        raise ValueError(f"Boxes must be an [N, 4] array, got shape {arr.shape}")
    return arr


def box_areas(boxes: np.ndarray) -> np.ndarray:
    """Area of each box."""
    return boxes[:, 2] * boxes[:, 3]


def box_corners(boxes: np.ndarray) -> tuple[np.ndarray, np.ndarray, np.ndarray, np.ndarray]:
    """Split boxes into (x1, y1, x2, y2) columns with ``x2 = x + width``."""
    x1 = boxes[:, 0]
    y1 = boxes[:, 1]
    return x1, y1, x1 + boxes[:, 2], y1 + boxes[:, 3]


def intersection_areas(box: np.ndarray, boxes: np.ndarray) -> np.ndarray:
    """Intersection area between one box and every box in ``boxes``.

    Args:
        box: Single box as a length-4 array.
        boxes: ``[N, 4]`` array.

    Returns:
        ``[N]`` array of intersection areas, 0 where the boxes are disjoint.
    """
    x1, y1, x2, y2 = box_corners(boxes)
    inter_w = np.minimum(box[0] + box[2], x2) - np.maximum(box[0], x1)
    inter_h = np.minimum(box[1] + box[3], y2) - np.maximum(box[1], y1)
    return np.clip(inter_w, 0.0, None) * np.clip(inter_h, 0.0, None)


def overlap_ratio_union(box: np.ndarray, boxes: np.ndarray) -> np.ndarray:
    """Intersection over union of one box against many."""
    inter = intersection_areas(box, boxes)
    union = box[2] * box[3] + box_areas(boxes) - inter
    with np.errstate(divide="ignore", invalid="ignore"):
        ratio = np.where(union > 0, inter / union, 0.0)
    return ratio


def overlap_ratio_min(box: np.ndarray, boxes: np.ndarray) -> np.ndarray:
    """Intersection over the smaller of the two areas.

    This catches a small box entirely inside a larger one, which has a
    low IoU but a ratio of 1.0 here.
    """
    inter = intersection_areas(box, boxes)
    smaller = np.minimum(box[2] * box[3], box_areas(boxes))
    with np.errstate(divide="ignore", invalid="ignore"):
        ratio = np.where(smaller > 0, inter / smaller, 0.0)
    return ratio


def offset_boxes(boxes: np.ndarray, dx: float, dy: float) -> np.ndarray:
    """Translate boxes by (dx, dy)."""
    out = as_boxes(boxes).copy()
    out[:, 0] += dx
    out[:, 1] += dy
    return out


def boxes_inside_image(boxes: np.ndarray, image_size: ImageSize) -> np.ndarray:
    """Mask of boxes lying entirely within an image of size (height, width)."""
    height, width = image_size
    x1, y1, x2, y2 = box_corners(boxes)
    return (x1 >= 0) & (y1 >= 0) & (x2 <= width) & (y2 <= height)


def clip_boxes(boxes: np.ndarray, image_size: ImageSize) -> np.ndarray:
    """Clamp boxes to the image extent.

    Boxes entirely outside the image end up with zero width or height and
    are removed by the next validity filter.
    """
    height, width = image_size
    boxes = as_boxes(boxes)
    x1, y1, x2, y2 = box_corners(boxes)
    x1 = np.clip(x1, 0, width)
    y1 = np.clip(y1, 0, height)
    x2 = np.clip(x2, 0, width)
    y2 = np.clip(y2, 0, height)
    return np.stack([x1, y1, x2 - x1, y2 - y1], axis=1)
