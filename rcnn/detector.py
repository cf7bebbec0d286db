"""
Detection orchestration.

DetectionPipeline ties together proposal generation, filtering, suppression,
the external classification call and per-class box regression. The same
pipeline serves both detector variants; they differ only in the injected
proposal source:

- fast_rcnn_pipeline: proposals from a heuristic function of the image
- faster_rcnn_pipeline: proposals from a region proposal network

Stage order for one image:
    propose -> filter (valid, size) -> top-N -> NMS (Union 0.7)
    -> classify -> drop background -> regress -> clip, drop invalid
    -> NMS (Min 0.5) -> add ROI offset
"""

from __future__ import annotations

import logging

import numpy as np

from config import (
    DETECTION_OVERLAP_RATIO_TYPE,
    DETECTION_OVERLAP_THRESHOLD,
    RPN_OVERLAP_RATIO_TYPE,
    RPN_OVERLAP_THRESHOLD,
)
from preprocessing import crop_to_roi, match_network_channels, to_uint8, validate_image

from .bbox import offset_boxes
from .coords import CoordinateSpaceMapper, min_object_size, to_feature_map_space
from .filtering import (
    FilterChain,
    SizeFilter,
    ValidBoxFilter,
    clip_to_image,
    select_strongest_regions,
)
from .network import DetectionNetwork, RegionProposalNetwork
from .nms import NonMaxSuppressor
from .options import (
    DetectOptions,
    ProposeOptions,
    check_execution_environment,
    check_image_size,
    check_roi,
    check_rois,
    resolve_size_limits,
)
from .proposals import (
    HeuristicProposalSource,
    ProposalFcn,
    ProposalSource,
    RegionProposalDecoder,
    RPNProposalSource,
)
from .regression import apply_class_box_regression
from .state import DetectorState
from .types import (
    AnchorSpec,
    BoxSize,
    ClassificationResult,
    ClassTable,
    DetectionResult,
    PipelineStage,
    StageRecord,
    empty_boxes,
    empty_labels,
    empty_scores,
)

logger = logging.getLogger(__name__)


def _label_scores(classification: np.ndarray, num_rois: int, num_classes: int) -> tuple[np.ndarray, np.ndarray, np.ndarray]:
    """Argmax labels (first wins ties) and their scores.

    Returns:
        Tuple of (labels, label_scores, all_scores).

    Raises:
        ValueError: If the score matrix is not ``[num_rois, num_classes]``.
    """
    scores = np.asarray(classification, dtype=np.float64)
    if scores.shape != (num_rois, num_classes):
        raise ValueError(
            f"Classification output has shape {scores.shape}, expected ({num_rois}, {num_classes})"
        )
    ranked = np.where(np.isfinite(scores), scores, -np.inf)
    labels = np.argmax(ranked, axis=1).astype(np.int64)
    return labels, scores[np.arange(num_rois), labels], scores


class DetectionPipeline:
    """Runs region-based detection on single images.

    The pipeline holds no per-image state apart from its scale cache. Give
    each worker its own pipeline via ``fork()``.

    Attributes:
        network: Detection network providing shared features and per-region
            classification and regression.
        proposal_source: Where region proposals come from.
        class_table: Class list, including background.
        model_size: Smallest object the network resolves, (height, width).
            Defaults to the size that covers one ROI pooling grid on the
            feature map.
    """

    def __init__(
        self,
        network: DetectionNetwork,
        proposal_source: ProposalSource,
        class_table: ClassTable,
        model_size: BoxSize | None = None,
        raw_suppressor: NonMaxSuppressor | None = None,
        final_suppressor: NonMaxSuppressor | None = None,
    ):
        class_table.validate()
        self.network = network
        self.proposal_source = proposal_source
        self.class_table = class_table
        self.mapper = CoordinateSpaceMapper(network.feature_map_size)
        if model_size is None:
            input_size = tuple(network.input_size[:2])
            model_size = min_object_size(
                input_size, self.mapper.feature_map_size(input_size), tuple(network.grid_size[:2])
            )
        self.model_size = tuple(int(v) for v in model_size)
        self.raw_suppressor = raw_suppressor or NonMaxSuppressor(RPN_OVERLAP_RATIO_TYPE, RPN_OVERLAP_THRESHOLD)
        self.final_suppressor = final_suppressor or NonMaxSuppressor(
            DETECTION_OVERLAP_RATIO_TYPE, DETECTION_OVERLAP_THRESHOLD
        )

    def fork(self) -> DetectionPipeline:
        return DetectionPipeline(
            self.network,
            self.proposal_source.fork(),
            self.class_table,
            model_size=self.model_size,
            raw_suppressor=self.raw_suppressor,
            final_suppressor=self.final_suppressor,
        )

    @classmethod
    def from_state(
        cls,
        state: DetectorState,
        network: DetectionNetwork,
        rpn: RegionProposalNetwork | None = None,
        proposal_fcn: ProposalFcn | None = None,
    ) -> DetectionPipeline:
        """Rebuild a pipeline from persisted configuration.

        Exactly one of ``rpn`` and ``proposal_fcn`` must be given.
        """
        if (rpn is None) == (proposal_fcn is None):
            raise ValueError("Pass exactly one of rpn or proposal_fcn")
        if rpn is not None:
            return faster_rcnn_pipeline(
                network, rpn, state.anchor_spec(), state.class_table(), model_size=state.model_size
            )
        return fast_rcnn_pipeline(network, proposal_fcn, state.class_table(), model_size=state.model_size)

    def _prepare(self, image: np.ndarray, roi) -> tuple[np.ndarray, tuple[int, int]]:
        """Validate, crop and normalize an image for the network.

        Returns:
            Tuple of (network-ready image, ROI offset).
        """
        validate_image(image)
        offset = (0, 0)
        if roi is not None:
            roi = check_roi(roi, image.shape[:2])
            image = crop_to_roi(image, roi)
            offset = (roi[0], roi[1])
        image = match_network_channels(to_uint8(image), tuple(self.network.input_size))
        check_image_size(image.shape[:2], self.network.input_size)
        return image, offset

    def detect(self, image: np.ndarray, options: DetectOptions | None = None) -> DetectionResult:
        """Detect objects in an image.

        Args:
            image: Grayscale or color image.
            options: Detection options. Defaults to DetectOptions().

        Returns:
            DetectionResult with boxes in full-image coordinates. Empty
            arrays when nothing is found.

        Raises:
            TypeError: If image is not a numpy array.
            ValueError: For invalid options, an ROI outside the image, an
                image smaller than the network input, or network output of
                the wrong shape.
        """
        options = options or DetectOptions()
        options.validate()
        env = options.execution_environment.lower()

        image, offset = self._prepare(image, options.roi)
        image_size = image.shape[:2]
        min_size, max_size = resolve_size_limits(options.min_size, options.max_size, self.model_size, image_size)

        stages: list[StageRecord] = [StageRecord(stage=PipelineStage.IDLE, count=0)]

        def record(stage: PipelineStage, count: int) -> bool:
            stages.append(StageRecord(stage=stage, count=count))
            logger.debug("%s: %d boxes", stage.value, count)
            return count == 0

        def finish(boxes=None, scores=None, labels=None) -> DetectionResult:
            stages.append(StageRecord(stage=PipelineStage.DONE, count=0 if boxes is None else len(boxes)))
            if boxes is None:
                boxes, scores, labels = empty_boxes(), empty_scores(), empty_labels()
            return DetectionResult(
                boxes=boxes.astype(np.int64),
                scores=scores,
                labels=labels,
                class_table=self.class_table,
                stages=stages,
            )

        features = self.network.shared_features(image, env)
        boxes, scores = self.proposal_source.propose(image, features, env)
        if record(PipelineStage.REGION_PROPOSED, len(boxes)):
            return finish()

        pre = FilterChain(steps=[ValidBoxFilter(), SizeFilter(min_size=min_size, max_size=max_size)])
        filtered = pre.run(boxes, scores)
        if record(PipelineStage.FILTERED_PRE, len(filtered)):
            return finish()

        boxes, scores = select_strongest_regions(filtered.boxes, filtered.scores, options.num_strongest_regions)
        boxes, scores, _ = self.raw_suppressor(boxes, scores)
        if record(PipelineStage.DEDUPED_RAW, len(boxes)):
            return finish()

        scale = self.mapper.scale_factors(image_size)
        output = self.network.classify(features, to_feature_map_space(boxes, scale), env)
        labels, label_scores, _ = _label_scores(output.classification, len(boxes), len(self.class_table))
        regression = np.asarray(output.regression, dtype=np.float64)
        if regression.ndim != 2 or regression.shape[0] != len(boxes):
            raise ValueError(
                f"Regression output has shape {regression.shape}, expected {len(boxes)} rows"
            )
        scored = np.isfinite(label_scores)
        boxes, labels, label_scores, regression = (
            boxes[scored], labels[scored], label_scores[scored], regression[scored]
        )
        if record(PipelineStage.CLASSIFIED, len(boxes)):
            return finish()

        foreground = labels != self.class_table.background_id
        boxes, labels, label_scores, regression = (
            boxes[foreground], labels[foreground], label_scores[foreground], regression[foreground]
        )
        if record(PipelineStage.BACKGROUND_REMOVED, len(boxes)):
            return finish()

        boxes = apply_class_box_regression(
            boxes, regression, labels, self.class_table, min_size=min_size, max_size=max_size
        )
        record(PipelineStage.REGRESSED, len(boxes))

        boxes = clip_to_image(boxes, image_size)
        post = FilterChain(steps=[ValidBoxFilter()]).run(boxes, label_scores)
        boxes, label_scores, labels = post.boxes, post.scores, labels[post.indices]
        if record(PipelineStage.FILTERED_POST, len(boxes)):
            return finish()

        if options.select_strongest:
            boxes, label_scores, kept = self.final_suppressor(boxes, label_scores)
            labels = labels[kept]
        record(PipelineStage.DEDUPED_FINAL, len(boxes))

        boxes = offset_boxes(boxes, *offset)
        return finish(boxes, label_scores, labels)

    def classify_regions(
        self,
        image: np.ndarray,
        rois,
        execution_environment: str = "auto",
    ) -> ClassificationResult:
        """Classify caller-supplied regions of an image.

        Args:
            image: Grayscale or color image.
            rois: ``[M, 4]`` regions (x, y, width, height) inside the image.
            execution_environment: Hint forwarded to the network call.

        Returns:
            ClassificationResult with one label per region, background
            included. Zero regions give empty arrays without a network call.

        Raises:
            ValueError: For malformed regions or regions outside the image.
        """
        env = check_execution_environment(execution_environment)
        validate_image(image)
        rois = check_rois(rois, image.shape[:2])
        num_classes = len(self.class_table)
        if len(rois) == 0:
            return ClassificationResult(
                labels=empty_labels(),
                scores=empty_scores(),
                all_scores=np.zeros((0, num_classes), dtype=np.float64),
                class_table=self.class_table,
            )

        image, _ = self._prepare(image, None)
        features = self.network.shared_features(image, env)
        scale = self.mapper.scale_factors(image.shape[:2])
        output = self.network.classify(features, to_feature_map_space(rois, scale), env)
        labels, scores, all_scores = _label_scores(output.classification, len(rois), num_classes)
        return ClassificationResult(
            labels=labels, scores=scores, all_scores=all_scores, class_table=self.class_table
        )

    def propose(
        self,
        image: np.ndarray,
        options: ProposeOptions | None = None,
    ) -> tuple[np.ndarray, np.ndarray]:
        """Region proposals from the region proposal network alone.

        Proposals scoring below ``min_score`` or smaller than the model size
        are dropped, overlaps are suppressed (Union, 0.7) and the strongest
        ``num_strongest_regions`` are returned, strongest first.

        Raises:
            ValueError: If the pipeline has no region proposal network, or
                for invalid options.
        """
        if not isinstance(self.proposal_source, RPNProposalSource):
            raise ValueError("propose() requires a pipeline built with a region proposal network")
        options = options or ProposeOptions()
        options.validate()
        env = options.execution_environment.lower()

        image, offset = self._prepare(image, options.roi)
        source = self.proposal_source
        features = self.network.shared_features(image, env)
        output = source.rpn.evaluate(features, env, options.mini_batch_size)
        boxes, scores = source.decoder.decode(output, image.shape[:2], min_score=options.min_score)
        num_decoded = len(boxes)

        kept = FilterChain(steps=[SizeFilter(min_size=self.model_size)]).run(boxes, scores)
        boxes, scores, _ = self.raw_suppressor(kept.boxes, kept.scores)
        boxes, scores = select_strongest_regions(boxes, scores, options.num_strongest_regions)
        logger.debug(
            "propose: %d decoded, %d after size filter, %d returned", num_decoded, len(kept), len(boxes)
        )
        return offset_boxes(boxes, *offset), scores


def fast_rcnn_pipeline(
    network: DetectionNetwork,
    proposal_fcn: ProposalFcn,
    class_table: ClassTable,
    model_size: BoxSize | None = None,
) -> DetectionPipeline:
    """Pipeline whose proposals come from a heuristic function of the image."""
    return DetectionPipeline(network, HeuristicProposalSource(proposal_fcn), class_table, model_size=model_size)


def faster_rcnn_pipeline(
    network: DetectionNetwork,
    rpn: RegionProposalNetwork,
    anchor_spec: AnchorSpec,
    class_table: ClassTable,
    model_size: BoxSize | None = None,
) -> DetectionPipeline:
    """Pipeline whose proposals come from a region proposal network on the shared features."""
    decoder = RegionProposalDecoder(anchor_spec, network.feature_map_size)
    return DetectionPipeline(network, RPNProposalSource(rpn, decoder), class_table, model_size=model_size)
