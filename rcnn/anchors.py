"""
Anchor box generation.

Anchors are the fixed reference shapes placed at every location of a score
map. Their order is part of the channel layout of the region proposal
network output: anchor ``k = base_idx + level_idx * num_base_sizes``.
"""

from __future__ import annotations

from typing import Sequence

import numpy as np

from .types import AnchorSpec, BoxSize, ImageSize


def generate_anchor_sizes(
    base_sizes: Sequence[BoxSize],
    pyramid_scale: float,
    num_levels: int,
) -> np.ndarray:
    """Build the anchor pyramid.

    Level ``i`` (0-based) scales every base size by ``pyramid_scale ** i``.
    All base sizes of one level come before the next level.

    Args:
        base_sizes: Base (height, width) pairs.
        pyramid_scale: Ratio between consecutive levels.
        num_levels: Number of pyramid levels.

    Returns:
        ``[num_base_sizes * num_levels, 2]`` float array of (height, width).

    Examples:
        >>> generate_anchor_sizes([(32, 16)], 2.0, 2).tolist()
        [[32.0, 16.0], [64.0, 32.0]]
    """
    base = np.asarray(base_sizes, dtype=np.float64).reshape(-1, 2)
    scales = pyramid_scale ** np.arange(num_levels, dtype=np.float64)
    return (scales[:, None, None] * base[None, :, :]).reshape(-1, 2)


def anchor_sizes(spec: AnchorSpec) -> np.ndarray:
    """Anchor pyramid for a validated AnchorSpec."""
    spec.validate()
    return generate_anchor_sizes(spec.base_sizes, spec.pyramid_scale, spec.num_levels)


def anchors_fit_image(sizes: np.ndarray, image_size: ImageSize) -> np.ndarray:
    """Mask of anchor (height, width) sizes no larger than the image."""
    height, width = image_size
    return (sizes[:, 0] <= height) & (sizes[:, 1] <= width)


def center_anchor_boxes(centers: np.ndarray, sizes: np.ndarray) -> np.ndarray:
    """Place anchors on box centers.

    Args:
        centers: ``[N, 2]`` (cx, cy) image-space centers.
        sizes: ``[N, 2]`` (height, width) anchor sizes.

    Returns:
        ``[N, 4]`` (x, y, width, height) boxes whose floor-halved extent is
        centered on each point.
    """
    widths = sizes[:, 1]
    heights = sizes[:, 0]
    x = centers[:, 0] - np.floor(widths / 2)
    y = centers[:, 1] - np.floor(heights / 2)
    return np.stack([x, y, widths, heights], axis=1)
