"""
Persisted detector configuration.

Everything needed to rebuild the geometric side of a trained detector:
anchor pyramid, minimum object size and class list. Network weights are
stored by whatever owns the network.
"""

from __future__ import annotations

import statistics
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from config import BACKGROUND_LABEL, DEFAULT_BOX_PYRAMID_SCALE, DEFAULT_NUM_BOX_PYRAMID_LEVELS

from .types import AnchorSpec, ClassTable

# Current layout of DetectorState payloads
STATE_VERSION = 2.0

# Payloads at or below this version describe anchors by aspect ratios and scales
LEGACY_STATE_VERSION = 1.0


def _migrate_legacy_anchors(values: dict) -> dict:
    """Convert aspect-ratio/scale anchors to base sizes and a pyramid.

    Ratios below 1 are taller than wide: the width is pinned to the first
    entry of ``min_box_size``. Otherwise the height is pinned to the second.
    """
    values = dict(values)
    ratios = [float(r) for r in values.pop("box_aspect_ratios")]
    scales = sorted(float(s) for s in values.pop("box_scales"))
    min_box_size = [int(v) for v in values.pop("min_box_size")]

    sizes = []
    for ratio in ratios:
        if ratio < 1:
            w = min_box_size[0]
            h = w / ratio
        else:
            h = min_box_size[1]
            w = h * ratio
        sizes.append((int(round(h)), int(round(w))))
    values["min_box_sizes"] = sizes

    if len(scales) > 1:
        values["box_pyramid_scale"] = statistics.median(
            b / a for a, b in zip(scales[:-1], scales[1:])
        )
    else:
        values["box_pyramid_scale"] = DEFAULT_BOX_PYRAMID_SCALE
    values["num_box_pyramid_levels"] = len(scales)
    values["model_size"] = tuple(min_box_size)
    values.setdefault("model_name", "")
    values["version"] = STATE_VERSION
    return values


class DetectorState(BaseModel):
    """Serializable detector configuration.

    Attributes:
        class_names: All classes, including the background class.
        background_label: Name of the background class.
        min_box_sizes: Anchor base sizes as (height, width).
        box_pyramid_scale: Ratio between consecutive anchor pyramid levels.
        num_box_pyramid_levels: Number of anchor pyramid levels.
        model_size: Smallest object the network resolves, (height, width).
        model_name: Free-form name of the trained model.
        version: Payload layout version.
    """

    class_names: list[str]
    background_label: str = BACKGROUND_LABEL
    min_box_sizes: list[tuple[int, int]]
    box_pyramid_scale: float = Field(default=DEFAULT_BOX_PYRAMID_SCALE, gt=0)
    num_box_pyramid_levels: int = Field(default=DEFAULT_NUM_BOX_PYRAMID_LEVELS, ge=1)
    model_size: tuple[int, int]
    model_name: str = ""
    version: float = STATE_VERSION

    model_config = ConfigDict(extra="ignore")

    @model_validator(mode="before")
    @classmethod
    def _migrate_legacy(cls, data: Any) -> Any:
        """Backward compat: version 1.0 stored aspect ratios and scales."""
        if isinstance(data, dict) and "box_aspect_ratios" in data:
            if float(data.get("version", LEGACY_STATE_VERSION)) <= LEGACY_STATE_VERSION:
                return _migrate_legacy_anchors(data)
        return data

    @field_validator("min_box_sizes")
    @classmethod
    def _validate_box_sizes(cls, v: list[tuple[int, int]]) -> list[tuple[int, int]]:
        if not v:
            raise ValueError("min_box_sizes must contain at least one (height, width) pair")
        for size in v:
            if size[0] <= 0 or size[1] <= 0:
                raise ValueError(f"min_box_sizes must be positive, got {size}")
        return v

    @field_validator("model_size")
    @classmethod
    def _validate_model_size(cls, v: tuple[int, int]) -> tuple[int, int]:
        if v[0] <= 0 or v[1] <= 0:
            raise ValueError(f"model_size must be positive, got {v}")
        return v

    @model_validator(mode="after")
    def _check_consistency(self) -> DetectorState:
        if self.background_label not in self.class_names:
            raise ValueError(
                f"background_label {self.background_label!r} is not one of the class names {self.class_names}"
            )
        if len(set(self.class_names)) != len(self.class_names):
            raise ValueError(f"class_names must be unique, got {self.class_names}")
        # Anchors smaller than the model size cannot be resolved
        self.min_box_sizes = [
            (max(h, self.model_size[0]), max(w, self.model_size[1]))
            for h, w in self.min_box_sizes
        ]
        return self

    def anchor_spec(self) -> AnchorSpec:
        return AnchorSpec(
            base_sizes=tuple(self.min_box_sizes),
            pyramid_scale=self.box_pyramid_scale,
            num_levels=self.num_box_pyramid_levels,
        )

    def class_table(self) -> ClassTable:
        return ClassTable(names=tuple(self.class_names), background=self.background_label)
