"""Tests for region proposal decoding and proposal-function handling."""

import logging

import numpy as np
import pytest

from rcnn import (
    AnchorSpec,
    HeuristicProposalSource,
    NetworkOutput,
    RegionProposalDecoder,
    RPNRegionProposer,
    check_region_proposal_outputs,
    invoke_region_proposal_fcn,
)
from rcnn.types import to_proposals


def stride_16(image_size):
    return (image_size[0] // 16, image_size[1] // 16)


def decoder_for(spec, min_score=None):
    return RegionProposalDecoder(spec, stride_16, min_score=min_score)


class TestRegionProposalDecoder:
    """Tests for turning score/regression maps into proposals."""

    def test_empty_score_map_gives_empty(self, single_anchor):
        output = NetworkOutput(classification=np.zeros((0, 0, 1)), regression=np.zeros((0, 0, 4)))
        boxes, scores = decoder_for(single_anchor).decode(output, (8, 8))
        assert boxes.shape == (0, 4)
        assert scores.shape == (0,)

    def test_empty_score_map_still_checks_channels(self, single_anchor):
        output = NetworkOutput(classification=np.zeros((0, 0, 1)), regression=np.zeros((0, 0, 8)))
        with pytest.raises(ValueError, match="4 per anchor"):
            decoder_for(single_anchor).decode(output, (8, 8))

    def test_single_object_location(self, object_map, single_anchor):
        output = NetworkOutput(classification=object_map(), regression=np.zeros((4, 4, 4)))
        boxes, scores = decoder_for(single_anchor).decode(output, (64, 64))
        assert boxes.tolist() == [[8, 8, 32, 32]]
        assert scores.tolist() == [0.9]

    def test_all_background_gives_empty(self, single_anchor):
        output = NetworkOutput(classification=np.zeros((4, 4, 1)), regression=np.zeros((4, 4, 4)))
        boxes, scores = decoder_for(single_anchor).decode(output, (64, 64))
        assert boxes.shape == (0, 4)
        assert scores.shape == (0,)

    def test_best_anchor_per_location(self):
        spec = AnchorSpec(base_sizes=((16, 16), (32, 32)), pyramid_scale=2.0, num_levels=1)
        cls = np.zeros((4, 4, 2))
        cls[1, 1] = [0.6, 0.8]
        boxes, scores = decoder_for(spec).decode(
            NetworkOutput(classification=cls, regression=np.zeros((4, 4, 8))), (64, 64)
        )
        assert boxes.tolist() == [[8, 8, 32, 32]]
        assert scores.tolist() == [0.8]

    def test_two_channel_scores(self, single_anchor):
        cls = np.zeros((4, 4, 2, 1))
        cls[:, :, 1, 0] = 0.7  # background everywhere
        cls[2, 1] = [[0.6], [0.4]]
        boxes, scores = decoder_for(single_anchor).decode(
            NetworkOutput(classification=cls, regression=np.zeros((4, 4, 4, 1))), (64, 64)
        )
        # row 2, col 1 -> center (24, 40)
        assert boxes.tolist() == [[8, 24, 32, 32]]
        assert scores.tolist() == [0.6]

    def test_regression_channel_layout(self):
        spec = AnchorSpec(base_sizes=((16, 16), (32, 32)), pyramid_scale=2.0, num_levels=1)
        cls = np.zeros((4, 4, 2))
        cls[1, 1, 1] = 0.9
        reg = np.zeros((4, 4, 8))
        reg[1, 1, 4] = 0.25  # dx of anchor 1
        reg[1, 1, 0] = 10.0  # dx of anchor 0, must be ignored
        boxes, _ = decoder_for(spec).decode(NetworkOutput(classification=cls, regression=reg), (64, 64))
        assert boxes.tolist() == [[16, 8, 32, 32]]

    def test_row_major_order(self, single_anchor):
        cls = np.zeros((4, 4, 1))
        cls[2, 1, 0] = 0.7
        cls[1, 2, 0] = 0.6
        cls[1, 1, 0] = 0.8
        boxes, scores = decoder_for(single_anchor).decode(
            NetworkOutput(classification=cls, regression=np.zeros((4, 4, 4))), (64, 64)
        )
        assert scores.tolist() == [0.8, 0.6, 0.7]
        assert boxes[:, :2].tolist() == [[8, 8], [24, 8], [8, 24]]

    def test_anchor_larger_than_image_skipped(self):
        spec = AnchorSpec(base_sizes=((32, 32),), pyramid_scale=4.0, num_levels=2)
        cls = np.zeros((4, 4, 2))
        cls[1, 1, 1] = 0.9  # the 128x128 anchor
        boxes, _ = decoder_for(spec).decode(
            NetworkOutput(classification=cls, regression=np.zeros((4, 4, 8))), (64, 64)
        )
        assert len(boxes) == 0

    def test_box_leaving_image_dropped(self, object_map, single_anchor):
        reg = np.zeros((4, 4, 4))
        reg[1, 1, 0] = -1.0  # shifts the box 32px left
        boxes, _ = decoder_for(single_anchor).decode(
            NetworkOutput(classification=object_map(), regression=reg), (64, 64)
        )
        assert len(boxes) == 0

    def test_min_score(self, object_map, single_anchor):
        output = NetworkOutput(classification=object_map(score=0.55), regression=np.zeros((4, 4, 4)))
        decoder = decoder_for(single_anchor, min_score=0.6)
        assert len(decoder.decode(output, (64, 64))[0]) == 0
        assert len(decoder.decode(output, (64, 64), min_score=0.5)[0]) == 1

    def test_nan_score_and_delta_dropped(self, object_map, single_anchor):
        cls = object_map()
        cls[0, 0, 0] = np.nan
        cls[2, 2, 0] = 0.8
        reg = np.zeros((4, 4, 4))
        reg[2, 2, 0] = np.inf
        boxes, scores = decoder_for(single_anchor).decode(
            NetworkOutput(classification=cls, regression=reg), (64, 64)
        )
        assert scores.tolist() == [0.9]
        assert np.all(np.isfinite(boxes))

    def test_channel_count_mismatch_raises(self, single_anchor):
        output = NetworkOutput(classification=np.zeros((4, 4, 3)), regression=np.zeros((4, 4, 12)))
        with pytest.raises(ValueError, match="one per anchor"):
            decoder_for(single_anchor).decode(output, (64, 64))

    def test_regression_channel_mismatch_raises(self, single_anchor):
        output = NetworkOutput(classification=np.zeros((4, 4, 1)), regression=np.zeros((4, 4, 5)))
        with pytest.raises(ValueError, match="4 per anchor"):
            decoder_for(single_anchor).decode(output, (64, 64))

    def test_feature_map_size_mismatch_raises(self, single_anchor):
        output = NetworkOutput(classification=np.zeros((3, 3, 1)), regression=np.zeros((3, 3, 4)))
        with pytest.raises(ValueError, match="Score map is 3x3"):
            decoder_for(single_anchor).decode(output, (64, 64))

    def test_deterministic(self, single_anchor):
        rng = np.random.default_rng(1)
        output = NetworkOutput(classification=rng.random((4, 4, 1)), regression=rng.normal(0, 0.1, (4, 4, 4)))
        first = decoder_for(single_anchor).decode(output, (64, 64))
        second = decoder_for(single_anchor).decode(output, (64, 64))
        assert np.array_equal(first[0], second[0])
        assert np.array_equal(first[1], second[1])

    def test_fork_owns_scale_cache(self, single_anchor):
        decoder = decoder_for(single_anchor)
        decoder.decode(NetworkOutput(classification=np.zeros((4, 4, 1)), regression=np.zeros((4, 4, 4))), (64, 64))
        forked = decoder.fork()
        assert forked.mapper is not decoder.mapper
        assert forked.mapper.cached_image_size is None


class TestRPNRegionProposer:
    """Tests for the RPN-backed proposal callable."""

    def test_image_smaller_than_stride_gives_no_proposals(self, make_rpn, single_anchor):
        proposer = RPNRegionProposer(make_rpn(np.zeros((0, 0, 1))), single_anchor, stride_16)
        boxes, scores = proposer(np.zeros((8, 8, 3), dtype=np.uint8))
        assert boxes.shape == (0, 4)
        assert scores.shape == (0,)

    def test_call_decodes_network_output(self, make_rpn, object_map, single_anchor):
        rpn = make_rpn(object_map())
        proposer = RPNRegionProposer(rpn, single_anchor, stride_16, execution_environment="cpu")
        boxes, scores = proposer(np.zeros((64, 64, 3), dtype=np.uint8))
        assert boxes.tolist() == [[8, 8, 32, 32]]
        assert rpn.calls[0][0] == "cpu"

    def test_fork_shares_network_not_cache(self, make_rpn, object_map, single_anchor):
        proposer = RPNRegionProposer(make_rpn(object_map()), single_anchor, stride_16)
        forked = proposer.fork()
        assert forked.rpn is proposer.rpn
        assert forked.decoder.mapper is not proposer.decoder.mapper


class TestCheckRegionProposalOutputs:
    """Tests for the proposal-function contract."""

    def test_accepts_column_scores(self):
        boxes, scores = check_region_proposal_outputs(np.array([[0, 0, 5, 5]]), np.array([[0.5]]))
        assert boxes.dtype == np.float64
        assert scores.shape == (1,)

    def test_empty_is_valid(self):
        boxes, scores = check_region_proposal_outputs(np.zeros((0, 4)), np.zeros(0))
        assert boxes.shape == (0, 4)

    @pytest.mark.parametrize(
        "boxes, scores, message",
        [
            (np.zeros((2, 3)), np.zeros(2), r"\[M, 4\]"),
            (np.ones((2, 4)), np.ones((2, 2)), r"\[M\] or \[M, 1\]"),
            (np.ones((2, 4)), np.ones(3), "2 boxes and 3 scores"),
            (np.array([[0, 0, np.nan, 1.0]]), np.ones(1), "boxes must be finite"),
            (np.ones((1, 4)), np.array([np.inf]), "scores must be finite"),
            (np.array([[0, 0, 0, 1.0]]), np.ones(1), "greater than 0"),
            (np.array([["a", "b", "c", "d"]]), np.ones(1), "real numeric"),
            (np.ones((1, 4)) + 1j, np.ones(1), "real numeric"),
        ],
    )
    def test_contract_violations_raise(self, boxes, scores, message):
        with pytest.raises(ValueError, match=message):
            check_region_proposal_outputs(boxes, scores)


class TestInvokeRegionProposalFcn:
    """Tests for the warning-downgrading wrapper."""

    def test_passes_through_valid_output(self, fixed_proposals):
        boxes, scores = invoke_region_proposal_fcn(fixed_proposals, np.zeros((10, 10)))
        assert len(boxes) == 2

    def test_exception_becomes_empty_with_warning(self, caplog):
        def broken(image):
            raise RuntimeError("edge detector exploded")

        with caplog.at_level(logging.WARNING, logger="rcnn.proposals"):
            boxes, scores = invoke_region_proposal_fcn(broken, np.zeros((10, 10)), "img_007.jpg")
        assert boxes.shape == (0, 4)
        assert len(scores) == 0
        assert "broken" in caplog.text
        assert "img_007.jpg" in caplog.text
        assert "edge detector exploded" in caplog.text

    def test_contract_violation_becomes_empty_with_warning(self, caplog):
        with caplog.at_level(logging.WARNING, logger="rcnn.proposals"):
            boxes, _ = invoke_region_proposal_fcn(lambda img: (np.ones((1, 3)), np.ones(1)), np.zeros((4, 4)))
        assert len(boxes) == 0
        assert "[M, 4]" in caplog.text


class TestHeuristicProposalSource:
    """Tests for direct (non-mining) use of a proposal function."""

    def test_errors_propagate(self):
        def broken(image):
            raise RuntimeError("boom")

        with pytest.raises(RuntimeError, match="boom"):
            HeuristicProposalSource(broken).propose(np.zeros((4, 4)), None)

    def test_contract_violation_raises(self):
        source = HeuristicProposalSource(lambda img: (np.ones((1, 4)), np.ones(2)))
        with pytest.raises(ValueError, match="1 boxes and 2 scores"):
            source.propose(np.zeros((4, 4)), None)

    def test_not_callable_raises(self):
        with pytest.raises(TypeError, match="callable"):
            HeuristicProposalSource("selective_search")


class TestToProposals:
    def test_wraps_rows(self):
        proposals = to_proposals(np.array([[1.0, 2.0, 3.0, 4.0]]), np.array([0.5]))
        assert proposals[0].box == (1, 2, 3, 4)
        assert proposals[0].score == 0.5
