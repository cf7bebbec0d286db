"""
Mapping between image pixel space and feature-map space.

A CoordinateScale always holds ``feature_map_size / image_size`` for one
image size. Multiplying by it moves boxes into feature-map space, dividing
moves them back.
"""

from __future__ import annotations

import logging
import math
from typing import Callable, Sequence

import numpy as np

from .bbox import as_boxes
from .types import BoxSize, CoordinateScale, ImageSize

logger = logging.getLogger(__name__)

# Computes the (height, width) of the feature map for an image size
FeatureMapSizeFn = Callable[[ImageSize], Sequence[int]]


def compute_scale(image_size: ImageSize, feature_map_size: Sequence[int]) -> CoordinateScale:
    """Scale from image space to feature-map space.

    Raises:
        ValueError: If either size is not positive.
    """
    img_h, img_w = (int(v) for v in image_size[:2])
    fm_h, fm_w = (int(v) for v in feature_map_size[:2])
    if img_h <= 0 or img_w <= 0:
        raise ValueError(f"Image size must be positive, got {tuple(image_size)}")
    if fm_h <= 0 or fm_w <= 0:
        raise ValueError(
            f"Feature map size must be positive, got {tuple(feature_map_size)} "
            f"for image size {(img_h, img_w)}"
        )
    return CoordinateScale(sx=fm_w / img_w, sy=fm_h / img_h)


class CoordinateSpaceMapper:
    """Scale factors for one network, cached on the last image size seen.

    Each worker owns its own instance; use ``fork()`` to get an independent
    copy with an empty cache.
    """

    def __init__(self, feature_map_size_fn: FeatureMapSizeFn):
        if not callable(feature_map_size_fn):
            raise TypeError(
                f"feature_map_size_fn must be callable, got {type(feature_map_size_fn).__name__}"
            )
        self._feature_map_size_fn = feature_map_size_fn
        self._cached_image_size: ImageSize | None = None
        self._cached_feature_map_size: tuple[int, int] | None = None
        self._cached_scale: CoordinateScale | None = None

    @property
    def cached_image_size(self) -> ImageSize | None:
        return self._cached_image_size

    @property
    def cached_feature_map_size(self) -> tuple[int, int] | None:
        return self._cached_feature_map_size

    def fork(self) -> CoordinateSpaceMapper:
        return CoordinateSpaceMapper(self._feature_map_size_fn)

    def feature_map_size(self, image_size: ImageSize) -> tuple[int, int]:
        self.scale_factors(image_size)
        return self._cached_feature_map_size

    def scale_factors(self, image_size: ImageSize) -> CoordinateScale:
        """Image-to-feature-map scale for ``image_size`` (height, width).

        The feature-map size function is only called when ``image_size``
        differs from the cached key.
        """
        key = (int(image_size[0]), int(image_size[1]))
        if self._cached_image_size != key:
            fm_size = tuple(int(v) for v in self._feature_map_size_fn(key)[:2])
            self._cached_scale = compute_scale(key, fm_size)
            self._cached_image_size = key
            self._cached_feature_map_size = fm_size
            logger.debug("Feature map size %s for image size %s", fm_size, key)
        return self._cached_scale


def to_feature_map_space(boxes, scale: CoordinateScale) -> np.ndarray:
    """Map image-space boxes to feature-map space."""
    factors = np.array([scale.sx, scale.sy, scale.sx, scale.sy], dtype=np.float64)
    return as_boxes(boxes) * factors


def to_image_space(boxes, scale: CoordinateScale) -> np.ndarray:
    """Map feature-map-space boxes to image space. Inverse of to_feature_map_space."""
    factors = np.array([scale.sx, scale.sy, scale.sx, scale.sy], dtype=np.float64)
    return as_boxes(boxes) / factors


def feature_cell_centers(cols: np.ndarray, rows: np.ndarray, scale: CoordinateScale) -> np.ndarray:
    """Image-space centers of feature-map cells.

    Cell ``(col, row)`` covers ``[col / sx, (col + 1) / sx)`` horizontally.
    The center is ``x1 + floor((x2 - x1) / 2)``, and likewise vertically.

    Returns:
        ``[N, 2]`` array of (cx, cy).
    """
    cols = np.asarray(cols, dtype=np.float64)
    rows = np.asarray(rows, dtype=np.float64)
    x1 = cols / scale.sx
    y1 = rows / scale.sy
    x2 = (cols + 1) / scale.sx
    y2 = (rows + 1) / scale.sy
    cx = x1 + np.floor((x2 - x1) / 2)
    cy = y1 + np.floor((y2 - y1) / 2)
    return np.stack([cx, cy], axis=1)


def min_object_size(
    input_size: Sequence[int],
    feature_map_size: Sequence[int],
    grid_size: Sequence[int] = (1, 1),
) -> BoxSize:
    """Smallest object the network can resolve, as (height, width).

    One feature-map cell spans ``input / feature_map`` pixels; an object
    must cover ``grid_size`` cells.
    """
    return tuple(
        int(math.ceil(inp / fm * grid))
        for inp, fm, grid in zip(input_size[:2], feature_map_size[:2], grid_size[:2])
    )
