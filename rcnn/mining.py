"""
Bulk region mining over many images.

Runs a proposal function over a collection of training images, keeping the
strongest proposals per image. A failing proposal function only costs the
image it failed on: the failure is logged and the image gets no regions.
"""

from __future__ import annotations

import logging
import threading
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from typing import Sequence

import numpy as np
from tqdm import tqdm

from config import NUM_STRONGEST_REGIONS
from preprocessing import scale_shortest_side

from .filtering import FilterChain, SizeFilter, select_strongest_regions
from .options import check_num_strongest_regions
from .proposals import ProposalFcn, invoke_region_proposal_fcn
from .types import BoxSize

logger = logging.getLogger(__name__)


@dataclass
class MinedRegions:
    """Proposals mined from one image.

    Attributes:
        name: Image name, used in log messages.
        boxes: ``[N, 4]`` boxes, strongest first.
        scores: ``[N]`` scores.
        scale_factor: Resize factor applied before proposing (1.0 if none).
            Boxes are in the resized image's coordinates.
    """

    name: str
    boxes: np.ndarray
    scores: np.ndarray
    scale_factor: float = 1.0

    def __len__(self) -> int:
        return len(self.boxes)


class _WorkerProposers:
    """One proposal function per worker thread.

    Proposal functions with a ``fork()`` method get an independent copy per
    thread so their scale caches are never shared.
    """

    def __init__(self, proposal_fcn: ProposalFcn):
        self._proposal_fcn = proposal_fcn
        self._local = threading.local()

    def get(self) -> ProposalFcn:
        fcn = getattr(self._local, "fcn", None)
        if fcn is None:
            fork = getattr(self._proposal_fcn, "fork", None)
            fcn = fork() if callable(fork) else self._proposal_fcn
            self._local.fcn = fcn
        return fcn


def extract_region_proposals(
    images: Sequence[np.ndarray],
    proposal_fcn: ProposalFcn,
    *,
    min_object_size: BoxSize | None = None,
    num_strongest_regions: float = NUM_STRONGEST_REGIONS,
    image_length: int | None = None,
    use_parallel: bool = False,
    max_workers: int | None = None,
    names: Sequence[str] | None = None,
    progress: bool = True,
) -> list[MinedRegions]:
    """Mine region proposals from a collection of images.

    For every image: optionally resize so its shortest side is
    ``image_length``, call the proposal function (failures become empty
    results plus a warning), drop boxes smaller than ``min_object_size``
    and keep the ``num_strongest_regions`` strongest.

    Args:
        images: Images to mine.
        proposal_fcn: ``(image) -> (boxes, scores)``.
        min_object_size: Smallest (height, width) to keep.
        num_strongest_regions: Proposals kept per image (``math.inf`` for all).
        image_length: Shortest-side length to resize images to first.
        use_parallel: Mine images on a thread pool.
        max_workers: Thread pool size (default chosen by the executor).
        names: Image names for log messages; defaults to the image index.
        progress: Show a tqdm progress bar.

    Returns:
        One MinedRegions per image, in input order.

    Raises:
        TypeError: If proposal_fcn is not callable.
        ValueError: For an invalid num_strongest_regions or mismatched names.
    """
    if not callable(proposal_fcn):
        raise TypeError(f"proposal_fcn must be callable, got {type(proposal_fcn).__name__}")
    num_strongest_regions = check_num_strongest_regions(num_strongest_regions)
    if names is None:
        names = [str(i) for i in range(len(images))]
    elif len(names) != len(images):
        raise ValueError(f"Got {len(names)} names for {len(images)} images")

    proposers = _WorkerProposers(proposal_fcn)
    size_filter = FilterChain(steps=[SizeFilter(min_size=min_object_size)])

    def mine(item: tuple[np.ndarray, str]) -> MinedRegions:
        image, name = item
        scale_factor = 1.0
        if image_length is not None:
            image, scale_factor = scale_shortest_side(image, image_length)
        boxes, scores = invoke_region_proposal_fcn(proposers.get(), image, name)
        kept = size_filter.run(boxes, scores)
        boxes, scores = select_strongest_regions(kept.boxes, kept.scores, num_strongest_regions)
        return MinedRegions(name=name, boxes=boxes, scores=scores, scale_factor=scale_factor)

    items = list(zip(images, names))
    logger.info("Extracting region proposals from %d images", len(items))

    if use_parallel:
        with ThreadPoolExecutor(max_workers=max_workers) as executor:
            results = list(
                tqdm(executor.map(mine, items), total=len(items), desc="Mining regions", disable=not progress)
            )
    else:
        results = [mine(item) for item in tqdm(items, desc="Mining regions", disable=not progress)]

    empty = sum(1 for r in results if len(r) == 0)
    if empty:
        logger.info("%d of %d images produced no region proposals", empty, len(results))
    return results
