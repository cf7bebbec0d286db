"""
Per-call options for detection and proposal, and input checks.

Options are immutable and validated before any image is touched.
"""

from __future__ import annotations

import math
from dataclasses import dataclass
from typing import Optional, Sequence

import numpy as np

from config import (
    DEFAULT_EXECUTION_ENVIRONMENT,
    EXECUTION_ENVIRONMENTS,
    MINI_BATCH_SIZE,
    NUM_STRONGEST_REGIONS,
    RPN_MIN_SCORE,
)

from .types import BoxTuple, ImageSize, as_size_pair


def check_num_strongest_regions(value: float) -> float:
    """Accept a positive integer or ``math.inf``.

    Raises:
        ValueError: Otherwise.
    """
    if isinstance(value, bool) or not isinstance(value, (int, float, np.integer, np.floating)):
        raise ValueError(f"num_strongest_regions must be a positive integer or inf, got {value!r}")
    if math.isinf(value) and value > 0:
        return math.inf
    if not math.isfinite(value) or value < 1 or value != int(value):
        raise ValueError(f"num_strongest_regions must be a positive integer or inf, got {value}")
    return int(value)


def check_execution_environment(value: str) -> str:
    """Normalize an execution environment hint.

    Raises:
        ValueError: If the hint is not one of EXECUTION_ENVIRONMENTS.
    """
    if isinstance(value, str) and value.lower() in EXECUTION_ENVIRONMENTS:
        return value.lower()
    raise ValueError(
        f"execution_environment must be one of {', '.join(EXECUTION_ENVIRONMENTS)}, got {value!r}"
    )


def _check_roi_values(roi) -> np.ndarray:
    arr = np.asarray(roi, dtype=np.float64).reshape(-1)
    if arr.size != 4:
        raise ValueError(f"ROI must be (x, y, width, height), got {roi}")
    if not np.all(np.isfinite(arr)):
        raise ValueError(f"ROI must be finite, got {roi}")
    if arr[2] < 1 or arr[3] < 1:
        raise ValueError(f"ROI width and height must be at least 1, got {roi}")
    return arr


def check_roi(roi, image_size: ImageSize) -> BoxTuple:
    """Validate a detection ROI against an image of size (height, width).

    Returns:
        The ROI as integers.

    Raises:
        ValueError: If the ROI is malformed or not fully inside the image.
    """
    arr = np.round(_check_roi_values(roi))
    x, y, w, h = (int(v) for v in arr)
    height, width = image_size[:2]
    if x < 0 or y < 0 or x + w > width or y + h > height:
        raise ValueError(
            f"ROI {tuple(roi)} must be fully contained in the image of size {width}x{height}"
        )
    return (x, y, w, h)


def check_rois(rois, image_size: ImageSize) -> np.ndarray:
    """Validate regions passed to classify_regions.

    Returns:
        ``[M, 4]`` float array.

    Raises:
        ValueError: If the regions are not a finite ``[M, 4]`` array with
            non-negative sizes, all inside the image.
    """
    arr = np.asarray(rois, dtype=np.float64)
    if arr.size == 0:
        return arr.reshape(0, 4)
    if arr.ndim != 2 or arr.shape[1] != 4:
        raise ValueError(f"ROIs must be an [M, 4] array, got shape {arr.shape}")
    if not np.all(np.isfinite(arr)):
        raise ValueError("ROIs must be finite")
    if np.any(arr[:, 2:] < 0):
        raise ValueError("ROI widths and heights must be non-negative")
    height, width = image_size[:2]
    outside = (
        (arr[:, 0] < 0)
        | (arr[:, 1] < 0)
        | (arr[:, 0] + arr[:, 2] > width)
        | (arr[:, 1] + arr[:, 3] > height)
    )
    if np.any(outside):
        raise ValueError(
            f"{int(np.sum(outside))} ROI(s) are not fully contained in the image of size {width}x{height}"
        )
    return arr


def check_image_size(image_size: ImageSize, input_size: Sequence[int]) -> None:
    """Raises ValueError if the image is smaller than the network input."""
    if image_size[0] < input_size[0] or image_size[1] < input_size[1]:
        raise ValueError(
            f"The image size {image_size[0]}x{image_size[1]} (height x width) is smaller than "
            f"the network input size {input_size[0]}x{input_size[1]}"
        )


def resolve_size_limits(
    min_size: Sequence[float] | None,
    max_size: Sequence[float] | None,
    model_size: Sequence[int],
    image_size: ImageSize,
) -> tuple[tuple[float, float], tuple[float, float]]:
    """Fill in default object size limits and check them against the model.

    ``min_size`` defaults to the model size, ``max_size`` to the image size.

    Raises:
        ValueError: If ``min_size`` is below the model size, ``max_size`` is
            not above it, or the image is smaller than ``min_size``.
    """
    model_h, model_w = (float(v) for v in model_size[:2])

    if min_size is None:
        min_size = (model_h, model_w)
    else:
        min_size = as_size_pair(min_size, "min_size")
        if min_size[0] < model_h or min_size[1] < model_w:
            raise ValueError(
                f"min_size {min_size} must be greater than or equal to the model size {(model_h, model_w)}"
            )

    if max_size is None:
        max_size = (float(image_size[0]), float(image_size[1]))
    else:
        max_size = as_size_pair(max_size, "max_size")
        if max_size[0] <= model_h or max_size[1] <= model_w:
            raise ValueError(
                f"max_size {max_size} must be greater than the model size {(model_h, model_w)}"
            )

    if image_size[0] < min_size[0] or image_size[1] < min_size[1]:
        raise ValueError(
            f"The image size {tuple(image_size[:2])} is smaller than min_size {min_size}"
        )
    return min_size, max_size


@dataclass(frozen=True)
class DetectOptions:
    """Options for DetectionPipeline.detect.

    Attributes:
        roi: Optional (x, y, width, height) region to restrict detection to.
        num_strongest_regions: Raw proposals kept before classification
            (``math.inf`` keeps all).
        select_strongest: Run the final suppression pass.
        min_size: Smallest object to detect, (height, width).
        max_size: Largest object to detect, (height, width).
        execution_environment: Hint forwarded to the network call.
    """

    roi: Optional[BoxTuple] = None
    num_strongest_regions: float = NUM_STRONGEST_REGIONS
    select_strongest: bool = True
    min_size: Optional[tuple[float, float]] = None
    max_size: Optional[tuple[float, float]] = None
    execution_environment: str = DEFAULT_EXECUTION_ENVIRONMENT

    def validate(self) -> None:
        """Validate options that do not depend on the image.

        Raises:
            ValueError: If any option is invalid.
        """
        if self.roi is not None:
            _check_roi_values(self.roi)
        check_num_strongest_regions(self.num_strongest_regions)
        if not isinstance(self.select_strongest, (bool, np.bool_)):
            raise ValueError(f"select_strongest must be a bool, got {self.select_strongest!r}")
        min_size = as_size_pair(self.min_size, "min_size")
        max_size = as_size_pair(self.max_size, "max_size")
        if min_size is not None and max_size is not None:
            if min_size[0] >= max_size[0] or min_size[1] >= max_size[1]:
                raise ValueError(f"min_size {min_size} must be less than max_size {max_size}")
        check_execution_environment(self.execution_environment)


@dataclass(frozen=True)
class ProposeOptions:
    """Options for DetectionPipeline.propose.

    Attributes:
        roi: Optional (x, y, width, height) region to restrict proposals to.
        num_strongest_regions: Proposals kept after suppression.
        mini_batch_size: Images per network batch.
        min_score: Proposals scoring below this are dropped.
        execution_environment: Hint forwarded to the network call.
    """

    roi: Optional[BoxTuple] = None
    num_strongest_regions: float = NUM_STRONGEST_REGIONS
    mini_batch_size: int = MINI_BATCH_SIZE
    min_score: float = RPN_MIN_SCORE
    execution_environment: str = DEFAULT_EXECUTION_ENVIRONMENT

    def validate(self) -> None:
        """Raises ValueError if any option is invalid."""
        if self.roi is not None:
            _check_roi_values(self.roi)
        check_num_strongest_regions(self.num_strongest_regions)
        if isinstance(self.mini_batch_size, bool) or not isinstance(self.mini_batch_size, int) or self.mini_batch_size < 1:
            raise ValueError(f"mini_batch_size must be a positive integer, got {self.mini_batch_size!r}")
        if isinstance(self.min_score, bool) or not isinstance(self.min_score, (int, float)) or not math.isfinite(self.min_score):
            raise ValueError(f"min_score must be a finite number, got {self.min_score!r}")
        check_execution_environment(self.execution_environment)
