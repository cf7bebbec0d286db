"""
Region proposals: decoding network score maps and calling proposal functions.

Two proposal sources feed the detection pipeline:
- RPNProposalSource decodes the output of a region proposal network
- HeuristicProposalSource calls a user-supplied ``(image) -> (boxes, scores)``
  function and validates what it returns
"""

from __future__ import annotations

import logging
from typing import Callable, Protocol

import numpy as np

from .anchors import anchor_sizes, anchors_fit_image, center_anchor_boxes
from .coords import CoordinateSpaceMapper, FeatureMapSizeFn, feature_cell_centers
from .filtering import FilterChain, ImageBoundsFilter, ScoreFilter, ValidBoxFilter
from .network import RegionProposalNetwork
from .regression import apply_box_regression
from .types import AnchorSpec, ImageSize, NetworkOutput, empty_boxes, empty_scores

logger = logging.getLogger(__name__)

# A pluggable proposal function: image -> (boxes [M, 4], scores [M])
ProposalFcn = Callable[[np.ndarray], tuple[np.ndarray, np.ndarray]]


def _split_classification(classification: np.ndarray, num_anchors: int) -> tuple[np.ndarray, np.ndarray]:
    """Return (object, background) score maps, each ``[rows, cols, K]``."""
    if classification.ndim == 3:
        if classification.shape[2] != num_anchors:
            raise ValueError(
                f"Classification map has {classification.shape[2]} channels, "
                f"expected one per anchor ({num_anchors})"
            )
        return classification, 1.0 - classification
    if classification.ndim == 4:
        if classification.shape[2] != 2 or classification.shape[3] != num_anchors:
            raise ValueError(
                f"Classification map has shape {classification.shape}, "
                f"expected [rows, cols, 2, {num_anchors}]"
            )
        return classification[:, :, 0, :], classification[:, :, 1, :]
    raise ValueError(
        f"Classification map must be 3-D or 4-D, got shape {classification.shape}"
    )


def _split_regression(regression: np.ndarray, num_anchors: int) -> np.ndarray:
    """Return deltas as ``[rows, cols, K, 4]``."""
    if regression.ndim == 3:
        if regression.shape[2] != 4 * num_anchors:
            raise ValueError(
                f"Regression map has {regression.shape[2]} channels, "
                f"expected 4 per anchor ({4 * num_anchors})"
            )
        rows, cols = regression.shape[:2]
        return regression.reshape(rows, cols, num_anchors, 4)
    if regression.ndim == 4:
        if regression.shape[2] != 4 or regression.shape[3] != num_anchors:
            raise ValueError(
                f"Regression map has shape {regression.shape}, "
                f"expected [rows, cols, 4, {num_anchors}]"
            )
        return np.transpose(regression, (0, 1, 3, 2))
    raise ValueError(f"Regression map must be 3-D or 4-D, got shape {regression.shape}")


class RegionProposalDecoder:
    """Turns region proposal network output into image-space proposals.

    Each location votes once, with its highest-scoring anchor. A location
    yields a proposal when that anchor says "object", fits inside the image,
    and its regressed box lies fully inside the image. Locations are
    visited in row-major order, so identical inputs give identical output.

    The decoder owns a CoordinateSpaceMapper; use ``fork()`` to get an
    independent decoder for another worker.
    """

    def __init__(
        self,
        anchor_spec: AnchorSpec,
        feature_map_size_fn: FeatureMapSizeFn,
        min_score: float | None = None,
    ):
        self.anchor_spec = anchor_spec
        self.anchor_sizes = anchor_sizes(anchor_spec)
        self.min_score = min_score
        self.mapper = CoordinateSpaceMapper(feature_map_size_fn)

    def fork(self) -> RegionProposalDecoder:
        clone = RegionProposalDecoder.__new__(RegionProposalDecoder)
        clone.anchor_spec = self.anchor_spec
        clone.anchor_sizes = self.anchor_sizes
        clone.min_score = self.min_score
        clone.mapper = self.mapper.fork()
        return clone

    def decode(
        self,
        output: NetworkOutput,
        image_size: ImageSize,
        min_score: float | None = None,
    ) -> tuple[np.ndarray, np.ndarray]:
        """Decode one image's score and regression maps.

        Args:
            output: Region proposal network output for the image.
            image_size: (height, width) of the image the maps were computed on.
            min_score: Overrides the decoder's score threshold for this call.

        Returns:
            Tuple of ``[N, 4]`` boxes and ``[N]`` scores. Empty when the score
            map has no rows or columns.

        Raises:
            ValueError: If the map shapes do not match the anchor spec or the
                feature map size expected for ``image_size``.
        """
        image_size = (int(image_size[0]), int(image_size[1]))
        num_anchors = self.anchor_spec.num_anchors
        obj, bg = _split_classification(np.asarray(output.classification, dtype=np.float64), num_anchors)
        deltas = _split_regression(np.asarray(output.regression, dtype=np.float64), num_anchors)

        rows, cols = obj.shape[:2]
        if deltas.shape[:2] != (rows, cols):
            raise ValueError(
                f"Regression map is {deltas.shape[0]}x{deltas.shape[1]} but the "
                f"classification map is {rows}x{cols}"
            )
        if rows == 0 or cols == 0:
            logger.debug("Decoder: empty %dx%d score map for image size %s", rows, cols, image_size)
            return empty_boxes(), empty_scores()
        scale = self.mapper.scale_factors(image_size)
        if (rows, cols) != self.mapper.cached_feature_map_size:
            raise ValueError(
                f"Score map is {rows}x{cols} but the feature map for image size "
                f"{image_size} is {self.mapper.cached_feature_map_size[0]}x"
                f"{self.mapper.cached_feature_map_size[1]}"
            )

        # Best anchor per location; non-finite scores never win
        ranked = np.where(np.isfinite(obj), obj, -np.inf)
        best = np.argmax(ranked, axis=2)
        best_obj = np.take_along_axis(obj, best[:, :, None], axis=2)[:, :, 0]
        best_bg = np.take_along_axis(bg, best[:, :, None], axis=2)[:, :, 0]

        with np.errstate(invalid="ignore"):
            is_object = np.isfinite(best_obj) & np.isfinite(best_bg) & (best_obj >= best_bg)
        fits = anchors_fit_image(self.anchor_sizes, image_size)
        is_object &= fits[best]

        r, c = np.nonzero(is_object)
        if len(r) == 0:
            logger.debug("Decoder: no object locations in %dx%d score map", rows, cols)
            return empty_boxes(), empty_scores()

        k = best[r, c]
        centers = feature_cell_centers(c, r, scale)
        anchors = center_anchor_boxes(centers, self.anchor_sizes[k])
        boxes = apply_box_regression(anchors, deltas[r, c, k])
        scores = best_obj[r, c]

        threshold = self.min_score if min_score is None else min_score
        steps = [ValidBoxFilter(), ImageBoundsFilter(image_size=image_size)]
        if threshold is not None:
            steps.append(ScoreFilter(threshold=threshold))
        result = FilterChain(steps=steps).run(boxes, scores)

        logger.debug(
            "Decoder: %d object locations, %s",
            len(r),
            ", ".join(f"{name}={count}" for name, count in result.counts),
        )
        return result.boxes, result.scores


class ProposalSource(Protocol):
    """Produces proposals for the detection pipeline."""

    def propose(
        self,
        image: np.ndarray,
        features: np.ndarray | None,
        execution_environment: str = "auto",
    ) -> tuple[np.ndarray, np.ndarray]:
        """Return ``[N, 4]`` image-space boxes and ``[N]`` scores."""

    def fork(self) -> ProposalSource:
        """Return an independent copy that shares no caches."""


class RPNProposalSource:
    """Proposals from a region proposal network run on the shared features."""

    def __init__(self, rpn: RegionProposalNetwork, decoder: RegionProposalDecoder):
        self.rpn = rpn
        self.decoder = decoder

    def propose(
        self,
        image: np.ndarray,
        features: np.ndarray | None,
        execution_environment: str = "auto",
    ) -> tuple[np.ndarray, np.ndarray]:
        output = self.rpn.evaluate(features, execution_environment)
        return self.decoder.decode(output, image.shape[:2])

    def fork(self) -> RPNProposalSource:
        return RPNProposalSource(self.rpn, self.decoder.fork())


class HeuristicProposalSource:
    """Proposals from a user-supplied function of the image.

    Errors raised by the function, or contract violations in what it
    returns, propagate to the caller.
    """

    def __init__(self, proposal_fcn: ProposalFcn):
        if not callable(proposal_fcn):
            raise TypeError(f"proposal_fcn must be callable, got {type(proposal_fcn).__name__}")
        self.proposal_fcn = proposal_fcn

    def propose(
        self,
        image: np.ndarray,
        features: np.ndarray | None,
        execution_environment: str = "auto",
    ) -> tuple[np.ndarray, np.ndarray]:
        boxes, scores = self.proposal_fcn(image)
        return check_region_proposal_outputs(boxes, scores)

    def fork(self) -> HeuristicProposalSource:
        return self


class RPNRegionProposer:
    """Callable ``(image) -> (boxes, scores)`` backed by a region proposal network.

    Used for bulk region mining. Each worker should call ``fork()`` so that
    it owns its scale cache.
    """

    def __init__(
        self,
        rpn: RegionProposalNetwork,
        anchor_spec: AnchorSpec,
        feature_map_size_fn: FeatureMapSizeFn,
        min_score: float | None = None,
        execution_environment: str = "auto",
    ):
        self.rpn = rpn
        self.decoder = RegionProposalDecoder(anchor_spec, feature_map_size_fn, min_score=min_score)
        self.execution_environment = execution_environment

    def __call__(self, image: np.ndarray) -> tuple[np.ndarray, np.ndarray]:
        output = self.rpn.evaluate(image, self.execution_environment)
        return self.decoder.decode(output, image.shape[:2])

    def fork(self) -> RPNRegionProposer:
        clone = RPNRegionProposer.__new__(RPNRegionProposer)
        clone.rpn = self.rpn
        clone.decoder = self.decoder.fork()
        clone.execution_environment = self.execution_environment
        return clone


def check_region_proposal_outputs(boxes, scores) -> tuple[np.ndarray, np.ndarray]:
    """Validate what a proposal function returned.

    Boxes must be a real, finite ``[M, 4]`` array with positive widths and
    heights; scores a real, finite ``[M]`` or ``[M, 1]`` array.

    Returns:
        Tuple of float ``[M, 4]`` boxes and ``[M]`` scores.

    Raises:
        ValueError: On any contract violation.
    """
    boxes = np.asarray(boxes)
    scores = np.asarray(scores)

    for name, arr in (("boxes", boxes), ("scores", scores)):
        if arr.dtype == np.bool_ or not (
            np.issubdtype(arr.dtype, np.integer) or np.issubdtype(arr.dtype, np.floating)
        ):
            raise ValueError(f"Region proposal {name} must be real numeric, got dtype {arr.dtype}")

    if boxes.size == 0 and scores.size == 0:
        return empty_boxes(), empty_scores()

    if boxes.ndim != 2 or boxes.shape[1] != 4:
        raise ValueError(f"Region proposal boxes must be [M, 4], got shape {boxes.shape}")
    if not (scores.ndim == 1 or (scores.ndim == 2 and scores.shape[1] == 1)):
        raise ValueError(f"Region proposal scores must be [M] or [M, 1], got shape {scores.shape}")
    if len(scores) != len(boxes):
        raise ValueError(
            f"Region proposal function returned {len(boxes)} boxes and {len(scores)} scores"
        )

    boxes = boxes.astype(np.float64)
    scores = scores.astype(np.float64).reshape(-1)
    if not np.all(np.isfinite(boxes)):
        raise ValueError("Region proposal boxes must be finite")
    if not np.all(np.isfinite(scores)):
        raise ValueError("Region proposal scores must be finite")
    if np.any(boxes[:, 2] <= 0) or np.any(boxes[:, 3] <= 0):
        raise ValueError("Region proposal box widths and heights must be greater than 0")
    return boxes, scores


def invoke_region_proposal_fcn(
    proposal_fcn: ProposalFcn,
    image: np.ndarray,
    image_name: str | None = None,
) -> tuple[np.ndarray, np.ndarray]:
    """Call a proposal function, converting any failure into no proposals.

    A failing function or invalid output is logged as a warning so that one
    bad image does not stop a bulk job.
    """
    try:
        boxes, scores = proposal_fcn(image)
        return check_region_proposal_outputs(boxes, scores)
    except Exception as exc:
        fcn_name = getattr(proposal_fcn, "__name__", type(proposal_fcn).__name__)
        logger.warning(
            "Region proposal function %s failed on image %s: %s. Using no proposals for this image.",
            fcn_name,
            image_name if image_name is not None else "<unnamed>",
            exc,
        )
        return empty_boxes(), empty_scores()
