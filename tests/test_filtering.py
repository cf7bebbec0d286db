"""Tests for the geometric filter chain."""

import math

import numpy as np
import pytest

from rcnn import (
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
from rcnn.filtering import filter_large_boxes, filter_small_boxes


@pytest.fixture
def boxes():
    return np.array(
        [
            [0, 0, 10, 10],
            [5, 5, 30, 20],
            [50, 40, 4, 40],
            [90, 90, 20, 20],
        ],
        dtype=float,
    )


@pytest.fixture
def scores():
    return np.array([0.9, 0.4, 0.6, 0.7])


class TestSizeFilter:
    """Tests for size-based filtering."""

    def test_min_size_any_dimension(self, boxes, scores):
        out_boxes, out_scores = filter_small_boxes(boxes, scores, (8, 8))
        # third box is 4 wide
        assert out_scores.tolist() == [0.9, 0.4, 0.7]
        assert len(out_boxes) == len(out_scores)

    def test_max_size_any_dimension(self, boxes, scores):
        out_boxes, out_scores = filter_large_boxes(boxes, scores, (25, 25))
        # second box is 30 wide, third is 40 tall
        assert out_scores.tolist() == [0.9, 0.7]

    def test_bounds_are_inclusive(self, boxes, scores):
        _, out_scores = filter_by_size(boxes, scores, min_size=(10, 10), max_size=(20, 30))
        assert out_scores.tolist() == [0.9, 0.4, 0.7]

    def test_no_limits_keeps_all(self, boxes, scores):
        out_boxes, _ = filter_by_size(boxes, scores)
        assert np.array_equal(out_boxes, boxes)


class TestScoreFilter:
    """Tests for score thresholding."""

    def test_drops_below_threshold(self, boxes, scores):
        out_boxes, out_scores = filter_by_score(boxes, scores, 0.6)
        assert out_scores.tolist() == [0.9, 0.6, 0.7]
        assert out_boxes[:, 0].tolist() == [0, 50, 90]

    def test_nan_score_dropped(self):
        _, out_scores = filter_by_score([[0, 0, 1, 1], [0, 0, 2, 2]], [np.nan, 0.5], 0.0)
        assert out_scores.tolist() == [0.5]


class TestImageBounds:
    """Tests for in-image filtering and clipping."""

    def test_partially_outside_dropped(self, boxes, scores):
        _, out_scores = filter_by_image_bounds(boxes, scores, (100, 100))
        assert out_scores.tolist() == [0.9, 0.4, 0.6]

    def test_touching_edge_kept(self):
        out_boxes, _ = filter_by_image_bounds([[80, 90, 20, 10]], [1.0], (100, 100))
        assert len(out_boxes) == 1

    def test_negative_origin_dropped(self):
        out_boxes, _ = filter_by_image_bounds([[-1, 0, 5, 5]], [1.0], (100, 100))
        assert len(out_boxes) == 0

    def test_clip_to_image(self):
        clipped = clip_to_image(np.array([[-5, 90, 20, 20], [10, 10, 5, 5]], dtype=float), (100, 120))
        assert clipped.tolist() == [[0, 90, 15, 10], [10, 10, 5, 5]]

    def test_clip_fully_outside_becomes_empty(self):
        clipped = clip_to_image(np.array([[200, 10, 5, 5]], dtype=float), (100, 100))
        kept, _ = remove_invalid_boxes(clipped, [1.0])
        assert len(kept) == 0


class TestRemoveInvalidBoxes:
    """Tests for dropping degenerate boxes."""

    def test_drops_zero_negative_and_non_finite(self):
        boxes = np.array(
            [
                [0, 0, 0, 5],
                [0, 0, 5, -1],
                [0, 0, np.inf, 5],
                [np.nan, 0, 5, 5],
                [1, 1, 1, 1],
            ]
        )
        kept, scores = remove_invalid_boxes(boxes, [0.1, 0.2, 0.3, 0.4, 0.5])
        assert kept.tolist() == [[1, 1, 1, 1]]
        assert scores.tolist() == [0.5]

    def test_drops_non_finite_scores(self):
        kept, _ = remove_invalid_boxes([[0, 0, 5, 5]], [np.inf])
        assert len(kept) == 0


class TestFilterChain:
    """Tests for composing filters."""

    def test_indices_track_input_positions(self, boxes, scores):
        chain = FilterChain(steps=[ScoreFilter(0.5), ImageBoundsFilter((100, 100))])
        result = chain.run(boxes, scores)
        assert result.indices.tolist() == [0, 2]
        assert result.counts == [("score(0.5)", 3), ("image_bounds(100x100)", 2)]

    def test_every_stage_keeps_lengths_aligned(self, boxes, scores):
        chain = FilterChain(
            steps=[ValidBoxFilter(), SizeFilter(min_size=(5, 5)), ScoreFilter(0.1), ImageBoundsFilter((100, 100))]
        )
        result = chain.run(boxes, scores)
        assert len(result.boxes) == len(result.scores) == len(result.indices)
        assert np.array_equal(result.boxes, boxes[result.indices])
        assert np.array_equal(result.scores, scores[result.indices])

    def test_empty_input(self):
        result = FilterChain(steps=[ValidBoxFilter()]).run(np.zeros((0, 4)), np.zeros(0))
        assert len(result) == 0
        assert result.boxes.shape == (0, 4)

    def test_misaligned_scores_raise(self, boxes):
        with pytest.raises(ValueError, match="Expected 4 scores"):
            FilterChain(steps=[]).run(boxes, [0.1])


class TestSelectStrongestRegions:
    """Tests for keeping the top-N proposals."""

    def test_keeps_top_n_strongest_first(self, boxes, scores):
        out_boxes, out_scores = select_strongest_regions(boxes, scores, 2)
        assert out_scores.tolist() == [0.9, 0.7]
        assert out_boxes[1].tolist() == [90, 90, 20, 20]

    def test_inf_keeps_all(self, boxes, scores):
        _, out_scores = select_strongest_regions(boxes, scores, math.inf)
        assert out_scores.tolist() == [0.9, 0.7, 0.6, 0.4]

    def test_ties_keep_input_order(self):
        out_boxes, _ = select_strongest_regions([[0, 0, 1, 1], [1, 1, 1, 1], [2, 2, 1, 1]], [0.5, 0.5, 0.5], 2)
        assert out_boxes[:, 0].tolist() == [0, 1]
