"""
Tests for inference models.
"""

import pytest

from src.engine.model_swapper.inference import (
    MODEL_REGISTRY,
    InferenceModel,
    RunningZScoreModel,
    create_model,
)


def make_model(**params):
    model = RunningZScoreModel(params)
    model.enable_learning()
    model.enable_inference()
    return model


class TestRunningZScoreModel:
    """Tests for RunningZScoreModel."""

    def test_inference_must_be_enabled(self):
        """Test running a model without inference enabled fails."""
        model = RunningZScoreModel({})

        with pytest.raises(RuntimeError, match="Inference is not enabled"):
            model.run({"c1": 1.0})

    def test_warm_up_scores_zero(self):
        """Test the first records score zero."""
        model = make_model()

        assert model.run({"c1": 10.0})["anomaly_score"] == 0.0
        assert model.run({"c1": 20.0})["anomaly_score"] == 0.0

    def test_outlier_scores_high(self):
        """Test a value far from the running mean scores high."""
        model = make_model()
        for value in [1.0, 2.0] * 20:
            model.run({"c1": value})

        result = model.run({"c1": 50.0})

        assert result["anomaly_score"] == 1.0
        assert result["z_score"] > 5

    def test_score_scaled(self):
        """Test |z| is scaled into [0, 1]."""
        model = make_model(zScoreScale=10.0)
        model.set_state({"count": 3, "mean": 0.0, "m2": 2.0})

        # stdev 1.0, z = 3.0
        result = model.run({"c1": 3.0})

        assert result["anomaly_score"] == pytest.approx(0.3)

    def test_learning_disabled_keeps_state(self):
        """Test state is frozen while learning is off."""
        model = make_model()
        model.disable_learning()

        model.run({"c1": 5.0})

        assert model.get_state() == {"count": 0, "mean": 0.0, "m2": 0.0}

    def test_predicted_field_from_inference_args(self):
        """Test inference args select the scored field."""
        model = RunningZScoreModel({})
        model.enable_inference({"predictedField": "value"})

        assert model.predicted_field == "value"
        assert model.run({"value": None})["anomaly_score"] == 0.0

    def test_checkpoint_round_trip(self):
        """Test a restored model continues from the saved state."""
        model = make_model()
        for value in [1.0, 3.0, 2.0]:
            model.run({"c1": value})

        restored = InferenceModel.from_dict(model.to_dict())

        assert isinstance(restored, RunningZScoreModel)
        assert restored.get_state() == model.get_state()
        assert restored.learning_enabled and restored.inference_enabled
        assert restored.run({"c1": 9.0}) == model.run({"c1": 9.0})


class TestModelRegistry:
    """Tests for the model factory."""

    def test_default_model(self):
        """Test the running z-score model is the default."""
        assert isinstance(create_model({}), RunningZScoreModel)
        assert MODEL_REGISTRY["running_zscore"] is RunningZScoreModel

    def test_unknown_model(self):
        """Test unknown model names are rejected."""
        with pytest.raises(ValueError, match="Unknown model"):
            create_model({"model": "htm"})
