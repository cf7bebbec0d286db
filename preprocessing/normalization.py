"""
Image normalization functions applied before the network call.

All functions are pure: they take an input and return a new output without
mutating the original array. Networks are trained on uint8 data with a fixed
number of channels, so images are brought to that range and layout first.
"""

import numpy as np
import cv2


def validate_image(img: np.ndarray) -> None:
    """Validate an input image array.

    Raises:
        TypeError: If img is not a numpy array.
        ValueError: If img has invalid dimensions or is empty.
    """
    if not isinstance(img, np.ndarray):
        raise TypeError(f"Expected numpy.ndarray, got {type(img).__name__}")

    if img.ndim < 2 or img.ndim > 3:
        raise ValueError(
            f"Image must be 2D or 3D array, got {img.ndim}D array with shape {img.shape}"
        )

    if img.size == 0:
        raise ValueError("Image array is empty")


def to_uint8(img: np.ndarray) -> np.ndarray:
    """Rescale an image to the uint8 range [0, 255].

    Float images are expected in [0, 1] and are clipped to it. uint16 and
    int16 images are mapped linearly onto [0, 255]. Logical images become
    0/255.

    Raises:
        TypeError: If img is not a numpy array.
        ValueError: If the image is invalid or its dtype is unsupported.

    Examples:
        >>> to_uint8(np.array([[0.0, 0.5, 1.0]]))
        array([[  0, 128, 255]], dtype=uint8)
    """
    validate_image(img)

    if img.dtype == np.uint8:
        return img.copy()

    if img.dtype == np.bool_:
        return img.astype(np.uint8) * 255

    if img.dtype == np.uint16:
        return np.round(img.astype(np.float64) / 257.0).astype(np.uint8)

    if img.dtype == np.int16:
        shifted = img.astype(np.float64) + 32768.0
        return np.round(shifted / 257.0).astype(np.uint8)

    if np.issubdtype(img.dtype, np.floating):
        values = np.nan_to_num(img.astype(np.float64), nan=0.0)
        return np.round(np.clip(values, 0.0, 1.0) * 255.0).astype(np.uint8)

    raise ValueError(
        f"Unsupported image dtype {img.dtype}. "
        "Expected uint8, uint16, int16, bool or floating point."
    )


def to_grayscale(img: np.ndarray) -> np.ndarray:
    """Convert a uint8 image to a 2D grayscale image.

    Handles RGB, RGBA, single-channel and already-grayscale input.

    Raises:
        ValueError: If the channel count is unsupported.
    """
    validate_image(img)

    if img.ndim == 2:
        return img.copy()

    channels = img.shape[2]
    if channels == 1:
        return img[:, :, 0].copy()
    if channels == 3:
        return cv2.cvtColor(img, cv2.COLOR_RGB2GRAY)
    if channels == 4:
        return cv2.cvtColor(img[:, :, :3], cv2.COLOR_RGB2GRAY)

    raise ValueError(
        f"Unsupported number of channels: {channels}. "
        "Expected 1, 3 (RGB), or 4 (RGBA)."
    )


def match_network_channels(
    img: np.ndarray,
    input_size: tuple[int, ...],
) -> np.ndarray:
    """Convert RGB <-> grayscale so the image matches the network input.

    Args:
        img: uint8 image, grayscale (H, W) or color (H, W, C).
        input_size: Network input size as (height, width) or
            (height, width, channels).

    Returns:
        Image with 3 channels when the network expects RGB input, otherwise
        a 2D grayscale image.
    """
    validate_image(img)

    network_is_rgb = len(input_size) == 3 and input_size[-1] == 3
    image_is_rgb = img.ndim == 3 and img.shape[2] != 1

    if image_is_rgb and not network_is_rgb:
        return to_grayscale(img)
    if not image_is_rgb and network_is_rgb:
        return cv2.cvtColor(to_grayscale(img), cv2.COLOR_GRAY2RGB)
    return img.copy()


def scale_shortest_side(
    img: np.ndarray,
    length: int,
) -> tuple[np.ndarray, float]:
    """Resize an image so that its shortest side equals ``length``.

    Used to bring training images to a common scale before region mining.

    Returns:
        Tuple of:
        - Resized image with same dtype as input
        - Scale factor (length / original shortest side)

    Raises:
        TypeError: If length is not an int.
        ValueError: If length is not positive or the image is invalid.
    """
    validate_image(img)

    if not isinstance(length, int):
        raise TypeError(f"length must be int, got {type(length).__name__}")

    if length <= 0:
        raise ValueError(f"length must be positive, got {length}")

    height, width = img.shape[:2]
    scale = length / min(height, width)
    if scale == 1.0:
        return img.copy(), 1.0

    new_height = max(1, int(round(height * scale)))
    new_width = max(1, int(round(width * scale)))
    interpolation = cv2.INTER_LINEAR if scale > 1.0 else cv2.INTER_AREA

    resized = cv2.resize(img, (new_width, new_height), interpolation=interpolation)
    return resized, scale


def crop_to_roi(img: np.ndarray, roi: tuple[int, int, int, int]) -> np.ndarray:
    """Return a copy of the ``(x, y, width, height)`` region of an image.

    The ROI is expected to be validated against the image already.
    """
    x, y, w, h = (int(v) for v in roi)
    return img[y:y + h, x:x + w].copy()
