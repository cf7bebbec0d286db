"""Central configuration for region-based object detection.

All tunable parameters are defined here with descriptive names.
These values can be adjusted to fine-tune proposal generation and
detection post-processing.
"""

import math

# =============================================================================
# ANCHOR PYRAMID
# =============================================================================

# Ratio between the sizes of consecutive anchor pyramid levels
DEFAULT_BOX_PYRAMID_SCALE = 2.0

# Number of levels in the anchor pyramid
DEFAULT_NUM_BOX_PYRAMID_LEVELS = 3

# =============================================================================
# REGION PROPOSALS
# =============================================================================

# Maximum number of strongest proposals kept before classification
# (math.inf keeps every proposal)
NUM_STRONGEST_REGIONS = 2000

# Proposals scoring below this are dropped by propose()
RPN_MIN_SCORE = 0.5

# Number of images evaluated together by the region proposal network
MINI_BATCH_SIZE = 128

# =============================================================================
# NON-MAXIMUM SUPPRESSION
# =============================================================================

# Defaults when suppress() is called without explicit settings.
# "Union" divides the intersection by the union area, "Min" divides it by
# the smaller of the two areas
DEFAULT_OVERLAP_RATIO_TYPE = "Union"
DEFAULT_OVERLAP_THRESHOLD = 0.5

# Deduplication of raw proposals
RPN_OVERLAP_RATIO_TYPE = "Union"
RPN_OVERLAP_THRESHOLD = 0.7

# Deduplication of final detections ("Min" removes boxes nested in larger ones)
DETECTION_OVERLAP_RATIO_TYPE = "Min"
DETECTION_OVERLAP_THRESHOLD = 0.5

# =============================================================================
# BOX REGRESSION
# =============================================================================

# Upper bound on the log-space width/height deltas before exponentiation
BBOX_REGRESSION_LOG_CLIP = math.log(1000.0 / 16.0)

# =============================================================================
# CLASSIFICATION
# =============================================================================

# Reserved label for the background class
BACKGROUND_LABEL = "Background"

# =============================================================================
# EXECUTION
# =============================================================================

# Hardware hints forwarded to the external network call
EXECUTION_ENVIRONMENTS = ("auto", "cpu", "gpu")
DEFAULT_EXECUTION_ENVIRONMENT = "auto"
