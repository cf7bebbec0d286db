"""
Interfaces of the external networks the pipeline hands off to.

The networks themselves are out of scope; anything that satisfies these
protocols can be plugged in.
"""

from __future__ import annotations

from typing import Protocol, Sequence

import numpy as np

from config import MINI_BATCH_SIZE

from .types import ImageSize, NetworkOutput


class RegionProposalNetwork(Protocol):
    """Network producing per-location objectness and box deltas."""

    def evaluate(
        self,
        features: np.ndarray,
        execution_environment: str = "auto",
        mini_batch_size: int = MINI_BATCH_SIZE,
    ) -> NetworkOutput:
        """Return ``[rows, cols, K]`` (or ``[rows, cols, 2, K]``) scores and
        ``[rows, cols, 4K]`` (or ``[rows, cols, 4, K]``) deltas."""


class DetectionNetwork(Protocol):
    """Network classifying regions of a shared feature map."""

    @property
    def input_size(self) -> Sequence[int]:
        """Network input as (height, width) or (height, width, channels)."""

    @property
    def grid_size(self) -> Sequence[int]:
        """(height, width) output grid of the ROI pooling layer."""

    def feature_map_size(self, image_size: ImageSize) -> Sequence[int]:
        """(height, width) of the shared feature map for an image size."""

    def shared_features(self, image: np.ndarray, execution_environment: str = "auto") -> np.ndarray:
        """Run the network up to the layer shared by all regions."""

    def classify(
        self,
        features: np.ndarray,
        rois: np.ndarray,
        execution_environment: str = "auto",
    ) -> NetworkOutput:
        """Classify ``[M, 4]`` feature-map-space regions.

        Returns ``[M, num_classes]`` scores and ``[M, 4 * num_classes]`` (or
        ``[M, 4 * (num_classes - 1)]``) deltas.
        """
