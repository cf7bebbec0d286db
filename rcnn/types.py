"""
Type definitions for the detection pipeline.

Boxes travel through the pipeline as ``[N, 4]`` float arrays of
``(x, y, width, height)`` rows in 0-based pixel coordinates, with scores and
labels as parallel ``[N]`` arrays. The dataclasses here wrap those arrays at
the public boundary.
"""

from __future__ import annotations

import math
from dataclasses import dataclass, field
from enum import Enum
from typing import Iterator, Sequence

import numpy as np

from config import BACKGROUND_LABEL

# Image size as (height, width)
ImageSize = tuple[int, int]

# Object size as (height, width)
BoxSize = tuple[int, int]

# A single box as (x, y, width, height)
BoxTuple = tuple[int, int, int, int]


def empty_boxes() -> np.ndarray:
    """Return an empty ``[0, 4]`` box array."""
    return np.zeros((0, 4), dtype=np.float64)


def empty_scores() -> np.ndarray:
    """Return an empty score array."""
    return np.zeros((0,), dtype=np.float64)


def empty_labels() -> np.ndarray:
    """Return an empty label array."""
    return np.zeros((0,), dtype=np.int64)


@dataclass(frozen=True)
class CoordinateScale:
    """Per-axis scale between two coordinate spaces.

    Attributes:
        sx: Horizontal scale (applied to x and width).
        sy: Vertical scale (applied to y and height).
    """

    sx: float
    sy: float


@dataclass(frozen=True)
class AnchorSpec:
    """Anchor box configuration shared by every location of a score map.

    Attributes:
        base_sizes: Base anchor sizes as (height, width) pairs.
        pyramid_scale: Ratio between consecutive pyramid levels.
        num_levels: Number of pyramid levels.
    """

    base_sizes: tuple[BoxSize, ...]
    pyramid_scale: float
    num_levels: int

    def __post_init__(self) -> None:
        sizes = tuple(tuple(size) for size in self.base_sizes)
        object.__setattr__(self, "base_sizes", sizes)

    @property
    def num_base_sizes(self) -> int:
        return len(self.base_sizes)

    @property
    def num_anchors(self) -> int:
        return self.num_base_sizes * self.num_levels

    def validate(self) -> None:
        """Validate the anchor configuration.

        Raises:
            ValueError: If any parameter is invalid.
        """
        if not self.base_sizes:
            raise ValueError("base_sizes must contain at least one (height, width) pair")
        for size in self.base_sizes:
            if len(size) != 2 or any(not math.isfinite(v) or v <= 0 for v in size):
                raise ValueError(
                    f"base_sizes must be positive (height, width) pairs, got {size}"
                )
            if any(v != int(v) for v in size):
                raise ValueError(f"base_sizes must be whole numbers of pixels, got {size}")
        if not math.isfinite(self.pyramid_scale) or self.pyramid_scale <= 0:
            raise ValueError(
                f"pyramid_scale must be positive and finite, got {self.pyramid_scale}"
            )
        if isinstance(self.num_levels, bool) or not isinstance(self.num_levels, int) or self.num_levels < 1:
            raise ValueError(f"num_levels must be a positive integer, got {self.num_levels}")


@dataclass(frozen=True)
class ClassTable:
    """Fixed class list established when a detector is built.

    Labels are integer ids into ``names``. One entry is the reserved
    background class.
    """

    names: tuple[str, ...]
    background: str = BACKGROUND_LABEL

    def __post_init__(self) -> None:
        object.__setattr__(self, "names", tuple(self.names))

    def validate(self) -> None:
        """Raises ValueError if the background class is missing or names repeat."""
        if len(set(self.names)) != len(self.names):
            raise ValueError(f"Class names must be unique, got {list(self.names)}")
        if self.background not in self.names:
            raise ValueError(
                f"The class list must contain the background class {self.background!r}, "
                f"got {list(self.names)}"
            )

    def __len__(self) -> int:
        return len(self.names)

    @property
    def background_id(self) -> int:
        return self.names.index(self.background)

    @property
    def foreground_ids(self) -> tuple[int, ...]:
        return tuple(i for i in range(len(self.names)) if i != self.background_id)

    @property
    def foreground_names(self) -> tuple[str, ...]:
        return tuple(self.names[i] for i in self.foreground_ids)

    def foreground_positions(self, labels: np.ndarray) -> np.ndarray:
        """Map class ids to their position among the foreground classes."""
        labels = np.asarray(labels, dtype=np.int64)
        if np.any(labels == self.background_id):
            raise ValueError("Background labels have no foreground position")
        return labels - (labels > self.background_id).astype(np.int64)

    def name_of(self, label: int) -> str:
        return self.names[int(label)]


@dataclass(frozen=True)
class Proposal:
    """An unlabeled candidate box with its objectness score."""

    box: BoxTuple
    score: float


@dataclass(frozen=True)
class Detection:
    """A final labeled box. ``label`` is a class id into the ClassTable."""

    box: BoxTuple
    score: float
    label: int
    class_name: str


@dataclass
class NetworkOutput:
    """Raw output of an external network evaluation.

    Attributes:
        classification: Score map. For a region proposal network this is
            ``[rows, cols, num_anchors]`` object likelihoods or
            ``[rows, cols, 2, num_anchors]`` (object, background) scores.
            For the detection head it is ``[num_rois, num_classes]``.
        regression: Box deltas. ``[rows, cols, 4 * num_anchors]`` or
            ``[rows, cols, 4, num_anchors]`` for a region proposal network,
            ``[num_rois, 4 * num_classes]`` for the detection head.
    """

    classification: np.ndarray
    regression: np.ndarray


def to_proposals(boxes: np.ndarray, scores: np.ndarray) -> list[Proposal]:
    """Wrap parallel box and score arrays as Proposal objects."""
    return [
        Proposal(box=tuple(int(v) for v in box), score=float(score))
        for box, score in zip(boxes, scores)
    ]


class PipelineStage(str, Enum):
    """States of the detection pipeline, in execution order."""

    IDLE = "Idle"
    REGION_PROPOSED = "RegionProposed"
    FILTERED_PRE = "Filtered(Pre)"
    DEDUPED_RAW = "Deduped(Raw)"
    CLASSIFIED = "Classified"
    BACKGROUND_REMOVED = "BackgroundRemoved"
    REGRESSED = "Regressed"
    FILTERED_POST = "Filtered(Post)"
    DEDUPED_FINAL = "Deduped(Final)"
    DONE = "Done"


@dataclass(frozen=True)
class StageRecord:
    """Number of boxes alive when the pipeline entered a stage."""

    stage: PipelineStage
    count: int


@dataclass
class DetectionResult:
    """Result of running detection on one image.

    Boxes are in full-image coordinates, even when an ROI was used.

    Attributes:
        boxes: ``[N, 4]`` int array of (x, y, width, height).
        scores: ``[N]`` classification scores.
        labels: ``[N]`` class ids into ``class_table``; never background.
        class_table: The detector's class list.
        stages: Box counts per pipeline stage reached, starting with IDLE
            and ending with DONE.
    """

    boxes: np.ndarray
    scores: np.ndarray
    labels: np.ndarray
    class_table: ClassTable
    stages: list[StageRecord] = field(default_factory=list)

    def __len__(self) -> int:
        return len(self.boxes)

    def __iter__(self) -> Iterator[Detection]:
        return iter(self.detections)

    @property
    def label_names(self) -> list[str]:
        return [self.class_table.name_of(label) for label in self.labels]

    @property
    def detections(self) -> list[Detection]:
        return [
            Detection(
                box=tuple(int(v) for v in box),
                score=float(score),
                label=int(label),
                class_name=self.class_table.name_of(label),
            )
            for box, score, label in zip(self.boxes, self.scores, self.labels)
        ]

    def stage_count(self, stage: PipelineStage) -> int | None:
        """Box count recorded for ``stage``, or None if it was never reached."""
        for record in self.stages:
            if record.stage == stage:
                return record.count
        return None

    def to_dict(self) -> dict:
        return {
            "boxes": self.boxes.tolist(),
            "scores": [float(s) for s in self.scores],
            "labels": self.label_names,
        }


@dataclass
class ClassificationResult:
    """Result of classifying caller-supplied regions.

    Attributes:
        labels: ``[M]`` class ids (background included).
        scores: ``[M]`` score of each assigned label.
        all_scores: ``[M, num_classes]`` score matrix.
        class_table: The detector's class list.
    """

    labels: np.ndarray
    scores: np.ndarray
    all_scores: np.ndarray
    class_table: ClassTable

    def __len__(self) -> int:
        return len(self.labels)

    @property
    def label_names(self) -> list[str]:
        return [self.class_table.name_of(label) for label in self.labels]


def as_size_pair(value: Sequence[float] | None, name: str) -> tuple[float, float] | None:
    """Validate an optional (height, width) pair.

    Raises:
        ValueError: If the value is not two positive finite numbers.
    """
    if value is None:
        return None
    pair = tuple(value)
    if len(pair) != 2:
        raise ValueError(f"{name} must be a (height, width) pair, got {value}")
    for v in pair:
        if isinstance(v, bool) or not isinstance(v, (int, float, np.integer, np.floating)):
            raise ValueError(f"{name} must contain numbers, got {value}")
        if not math.isfinite(v) or v <= 0:
            raise ValueError(f"{name} must be positive and finite, got {value}")
    return (float(pair[0]), float(pair[1]))
