"""
Region-based object detection post-processing.

This module turns raw network outputs into final labeled detections. It
follows the same design philosophy as the preprocessing module: pure
functions over numpy arrays, early validation, and clear separation of
concerns.

Key components:
- types: Core data structures (AnchorSpec, ClassTable, DetectionResult, ...)
- bbox: Box geometry and overlap ratios
- anchors: Anchor pyramid generation
- coords: Image <-> feature-map coordinate mapping with a scale cache
- regression: Applying learned box deltas
- filtering: Composable size/score/bounds filters
- nms: Greedy non-maximum suppression (Union or Min overlap)
- proposals: Decoding region proposal network output, proposal functions
- options: Per-call options and input checks
- detector: DetectionPipeline orchestration
- state: Persisted detector configuration
- mining: Bulk region proposal extraction

The main entry point is `DetectionPipeline.detect()`, usually built with
`faster_rcnn_pipeline()` or `fast_rcnn_pipeline()`.
"""

from .types import (
    AnchorSpec,
    ClassTable,
    ClassificationResult,
    CoordinateScale,
    Detection,
    DetectionResult,
    NetworkOutput,
    PipelineStage,
    Proposal,
    StageRecord,
)
from .anchors import generate_anchor_sizes
from .coords import CoordinateSpaceMapper, min_object_size, to_feature_map_space, to_image_space
from .regression import apply_box_regression, apply_class_box_regression
from .filtering import (
    FilterChain,
    ImageBoundsFilter,
    ScoreFilter,
    SizeFilter,
    ValidBoxFilter,
    clip_to_image,
    filter_by_image_bounds,
    filter_by_score,
    filter_by_size,
    remove_invalid_boxes,
    select_strongest_regions,
)
from .nms import NonMaxSuppressor, OverlapMetric, suppress
from .proposals import (
    HeuristicProposalSource,
    RegionProposalDecoder,
    RPNProposalSource,
    RPNRegionProposer,
    check_region_proposal_outputs,
    invoke_region_proposal_fcn,
)
from .options import DetectOptions, ProposeOptions
from .detector import DetectionPipeline, fast_rcnn_pipeline, faster_rcnn_pipeline
from .state import DetectorState
from .mining import MinedRegions, extract_region_proposals

__all__ = [
    "AnchorSpec",
    "ClassTable",
    "ClassificationResult",
    "CoordinateScale",
    "Detection",
    "DetectionResult",
    "NetworkOutput",
    "PipelineStage",
    "Proposal",
    "StageRecord",
    "generate_anchor_sizes",
    "CoordinateSpaceMapper",
    "min_object_size",
    "to_feature_map_space",
    "to_image_space",
    "apply_box_regression",
    "apply_class_box_regression",
    "FilterChain",
    "ImageBoundsFilter",
    "ScoreFilter",
    "SizeFilter",
    "ValidBoxFilter",
    "clip_to_image",
    "filter_by_image_bounds",
    "filter_by_score",
    "filter_by_size",
    "remove_invalid_boxes",
    "select_strongest_regions",
    "NonMaxSuppressor",
    "OverlapMetric",
    "suppress",
    "HeuristicProposalSource",
    "RegionProposalDecoder",
    "RPNProposalSource",
    "RPNRegionProposer",
    "check_region_proposal_outputs",
    "invoke_region_proposal_fcn",
    "DetectOptions",
    "ProposeOptions",
    "DetectionPipeline",
    "fast_rcnn_pipeline",
    "faster_rcnn_pipeline",
    "DetectorState",
    "MinedRegions",
    "extract_region_proposals",
]
