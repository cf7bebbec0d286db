"""
Box regression: refine reference boxes with learned (dx, dy, dw, dh) deltas.

dx and dy are center offsets in units of the reference box size, dw and dh
are log-space scale factors.
"""

from __future__ import annotations

from typing import Sequence

import numpy as np

from config import BBOX_REGRESSION_LOG_CLIP

from .bbox import as_boxes
from .types import ClassTable


def round_half_away(values: np.ndarray) -> np.ndarray:
    """Round to the nearest integer, halves away from zero."""
    return np.sign(values) * np.floor(np.abs(values) + 0.5)


def apply_box_regression(
    ref_boxes,
    deltas,
    min_size: Sequence[float] | None = None,
    max_size: Sequence[float] | None = None,
) -> np.ndarray:
    """Apply regression deltas to reference boxes.

    Width and height deltas are clipped to ``BBOX_REGRESSION_LOG_CLIP``
    before exponentiation. When both ``min_size`` and ``max_size`` are given
    (as (height, width)), the regressed width and height are clamped into
    that range; the regressed center is left unchanged.

    Rows with non-finite deltas come out non-finite and are expected to be
    dropped by ``remove_invalid_boxes``.

    Args:
        ref_boxes: ``[N, 4]`` reference boxes (x, y, width, height).
        deltas: ``[N, 4]`` (dx, dy, dw, dh) rows.
        min_size: Optional minimum (height, width).
        max_size: Optional maximum (height, width).

    Returns:
        ``[N, 4]`` float array of rounded boxes.

    Raises:
        ValueError: If the arrays are not aligned ``[N, 4]`` arrays.
    """
    ref_boxes = as_boxes(ref_boxes)
    deltas = np.asarray(deltas, dtype=np.float64).reshape(-1, 4)
    if len(deltas) != len(ref_boxes):
        raise ValueError(
            f"Expected one delta row per box, got {len(deltas)} deltas for {len(ref_boxes)} boxes"
        )

    x, y, w, h = ref_boxes.T
    dx, dy, dw, dh = deltas.T

    px = x + np.floor(w / 2)
    py = y + np.floor(h / 2)

    gx = w * dx + px
    gy = h * dy + py

    with np.errstate(over="ignore", invalid="ignore"):
        gw = w * np.exp(np.minimum(dw, BBOX_REGRESSION_LOG_CLIP))
        gh = h * np.exp(np.minimum(dh, BBOX_REGRESSION_LOG_CLIP))

    if min_size is not None and max_size is not None:
        gw = np.maximum(np.minimum(gw, max_size[1]), min_size[1])
        gh = np.maximum(np.minimum(gh, max_size[0]), min_size[0])

    with np.errstate(invalid="ignore"):
        boxes = np.stack(
            [gx - np.floor(gw / 2), gy - np.floor(gh / 2), gw, gh],
            axis=1,
        )
        boxes = round_half_away(boxes)
    return boxes


def select_class_deltas(
    regression: np.ndarray,
    labels: np.ndarray,
    class_table: ClassTable,
) -> np.ndarray:
    """Pick the 4 deltas of each row's assigned class.

    A regression row of width ``4 * num_classes`` is indexed by class id,
    one of width ``4 * (num_classes - 1)`` by foreground position.

    Raises:
        ValueError: If the regression width matches neither layout or a row
            is labeled background in the foreground-only layout.
    """
    regression = np.asarray(regression, dtype=np.float64)
    labels = np.asarray(labels, dtype=np.int64)
    num_classes = len(class_table)

    if regression.ndim != 2 or len(regression) != len(labels):
        raise ValueError(
            f"Regression output must be [{len(labels)}, 4 * num_classes], got shape {regression.shape}"
        )

    width = regression.shape[1]
    if width == 4 * num_classes:
        columns = labels
    elif width == 4 * (num_classes - 1):
        columns = class_table.foreground_positions(labels)
    else:
        raise ValueError(
            f"Regression output has {width} values per region; expected "
            f"{4 * num_classes} or {4 * (num_classes - 1)} for {num_classes} classes"
        )

    per_class = regression.reshape(len(labels), -1, 4)
    return per_class[np.arange(len(labels)), columns]


def apply_class_box_regression(
    boxes,
    regression: np.ndarray,
    labels: np.ndarray,
    class_table: ClassTable,
    min_size: Sequence[float] | None = None,
    max_size: Sequence[float] | None = None,
) -> np.ndarray:
    """Refine labeled boxes with the deltas of their own class."""
    deltas = select_class_deltas(regression, labels, class_table)
    return apply_box_regression(boxes, deltas, min_size=min_size, max_size=max_size)
