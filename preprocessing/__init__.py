"""
Image preprocessing applied before images reach the detection network.

This module provides pure, deterministic functions. All functions follow the
pattern: input -> output with no mutation of the original arrays.

Key components:
- normalization: dtype normalization, channel matching, scaling and cropping
"""

from .normalization import (
    validate_image,
    to_uint8,
    to_grayscale,
    match_network_channels,
    scale_shortest_side,
    crop_to_roi,
)

__all__ = [
    "validate_image",
    "to_uint8",
    "to_grayscale",
    "match_network_channels",
    "scale_shortest_side",
    "crop_to_roi",
]
