"""Tests for DetectorState validation, legacy migration and serialization."""

from __future__ import annotations

import pytest
from pydantic import ValidationError

from rcnn import AnchorSpec, DetectorState
from rcnn.state import STATE_VERSION


def make_state(**overrides) -> DetectorState:
    values = dict(
        class_names=["Background", "car", "person"],
        min_box_sizes=[(32, 32), (32, 64)],
        box_pyramid_scale=2.0,
        num_box_pyramid_levels=3,
        model_size=(16, 16),
        model_name="vehicles",
    )
    values.update(overrides)
    return DetectorState(**values)


# =============================================================================
# Construction and validation
# =============================================================================


class TestDetectorStateValidation:
    """Field and cross-field validation."""

    def test_defaults(self):
        state = DetectorState(class_names=["Background", "car"], min_box_sizes=[(16, 16)], model_size=(16, 16))
        assert state.background_label == "Background"
        assert state.version == STATE_VERSION
        assert state.model_name == ""

    def test_missing_background_rejected(self):
        with pytest.raises(ValidationError, match="background_label"):
            make_state(class_names=["car", "person"])

    def test_custom_background_label(self):
        state = make_state(class_names=["bg", "car"], background_label="bg")
        assert state.class_table().background_id == 0

    def test_duplicate_class_names_rejected(self):
        with pytest.raises(ValidationError, match="unique"):
            make_state(class_names=["Background", "car", "car"])

    def test_empty_box_sizes_rejected(self):
        with pytest.raises(ValidationError, match="at least one"):
            make_state(min_box_sizes=[])

    def test_non_positive_box_size_rejected(self):
        with pytest.raises(ValidationError, match="positive"):
            make_state(min_box_sizes=[(0, 16)])

    def test_non_positive_model_size_rejected(self):
        with pytest.raises(ValidationError, match="model_size"):
            make_state(model_size=(16, 0))

    def test_pyramid_scale_must_be_positive(self):
        with pytest.raises(ValidationError):
            make_state(box_pyramid_scale=0)

    def test_levels_must_be_at_least_one(self):
        with pytest.raises(ValidationError):
            make_state(num_box_pyramid_levels=0)

    def test_box_sizes_clamped_to_model_size(self):
        state = make_state(min_box_sizes=[(8, 32), (12, 12)], model_size=(16, 16))
        assert state.min_box_sizes == [(16, 32), (16, 16)]

    def test_validation_error_is_value_error(self):
        with pytest.raises(ValueError):
            make_state(class_names=["car"])

    def test_unknown_fields_ignored(self):
        state = DetectorState.model_validate(
            {
                "class_names": ["Background", "car"],
                "min_box_sizes": [[16, 16]],
                "model_size": [16, 16],
                "training_options": {"epochs": 10},
            }
        )
        assert not hasattr(state, "training_options")


# =============================================================================
# Derived objects
# =============================================================================


class TestDerivedObjects:
    def test_anchor_spec(self):
        spec = make_state().anchor_spec()
        assert spec == AnchorSpec(base_sizes=((32, 32), (32, 64)), pyramid_scale=2.0, num_levels=3)
        assert spec.num_anchors == 6

    def test_class_table(self):
        table = make_state().class_table()
        assert table.names == ("Background", "car", "person")
        assert table.foreground_names == ("car", "person")


# =============================================================================
# Legacy (version 1.0) payloads
# =============================================================================


class TestLegacyMigration:
    """Version 1.0 stored anchors as aspect ratios and scales."""

    @pytest.fixture
    def legacy(self):
        return {
            "class_names": ["Background", "car"],
            "box_aspect_ratios": [0.5, 1.0, 2.0],
            "box_scales": [1, 2, 4],
            "min_box_size": [16, 16],
            "version": 1.0,
        }

    def test_ratios_become_base_sizes(self, legacy):
        state = DetectorState.model_validate(legacy)
        assert state.min_box_sizes == [(32, 16), (16, 16), (16, 32)]

    def test_scales_become_pyramid(self, legacy):
        state = DetectorState.model_validate(legacy)
        assert state.box_pyramid_scale == 2.0
        assert state.num_box_pyramid_levels == 3

    def test_model_size_and_version(self, legacy):
        state = DetectorState.model_validate(legacy)
        assert state.model_size == (16, 16)
        assert state.version == STATE_VERSION

    def test_uneven_scales_use_median_ratio(self, legacy):
        legacy["box_scales"] = [4, 1, 2, 6]
        state = DetectorState.model_validate(legacy)
        # sorted ratios 2, 2, 1.5
        assert state.box_pyramid_scale == 2.0
        assert state.num_box_pyramid_levels == 4

    def test_single_scale_uses_default_pyramid(self, legacy):
        legacy["box_scales"] = [1]
        state = DetectorState.model_validate(legacy)
        assert state.box_pyramid_scale == 2.0
        assert state.num_box_pyramid_levels == 1

    def test_missing_version_treated_as_legacy(self, legacy):
        del legacy["version"]
        state = DetectorState.model_validate(legacy)
        assert state.min_box_sizes == [(32, 16), (16, 16), (16, 32)]

    def test_current_version_not_migrated(self):
        state = DetectorState.model_validate(
            {
                "class_names": ["Background", "car"],
                "min_box_sizes": [[16, 16]],
                "model_size": [16, 16],
                "box_aspect_ratios": [1.0],
                "version": 2.0,
            }
        )
        assert state.min_box_sizes == [(16, 16)]


# =============================================================================
# Serialization
# =============================================================================


class TestSerialization:
    def test_json_round_trip(self):
        state = make_state()
        restored = DetectorState.model_validate_json(state.model_dump_json())
        assert restored == state

    def test_dump_uses_current_layout(self):
        data = make_state().model_dump()
        assert "box_aspect_ratios" not in data
        assert data["min_box_sizes"] == [(32, 32), (32, 64)]
        assert data["version"] == STATE_VERSION
