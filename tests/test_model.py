"""
Tests for the online logistic regression model
"""

import math

import pytest
import torch

from core.annealing import AnnealingSchedule
from core.dataset import create_synthetic_dataset
from core.model import MIN_LOG_LIKELIHOOD, GradientModel, create_model
from core.priors import L1Prior, L2Prior, NoPrior
from core.sample import InvalidSampleError, Sample
from core.snapshot import Snapshot
from coordinator.training_config import TrainingConfig


def constant_rate_model(num_categories=2, num_features=4, prior=None, lambda_=0.0):
    """Model whose global learning rate is exactly 1 at every step."""
    schedule = AnnealingSchedule(
        learning_rate=1.0,
        decay_factor=1.0,
        step_offset=0,
        forgetting_exponent=0.0,
        per_term_annealing_offset=1,
    )
    return GradientModel(
        num_categories, num_features, prior=prior or NoPrior(), schedule=schedule, lambda_=lambda_
    )


class TestGradientModel:
    """Test model construction and scoring"""

    def test_initial_state(self):
        """Test a fresh model has zero coefficients and offset counts"""
        model = GradientModel(3, 5)
        assert model.beta.shape == (2, 5)
        assert model.beta.dtype == torch.float64
        assert bool((model.beta == 0).all())
        assert model.update_counts.tolist() == [20.0] * 5
        assert model.update_steps.tolist() == [0] * 5
        assert model.step == 0

    def test_invalid_shape(self):
        """Test at least two categories and one feature are required"""
        with pytest.raises(ValueError):
            GradientModel(1, 5)
        with pytest.raises(ValueError):
            GradientModel(2, 0)

    def test_predict_uniform_at_start(self):
        """Test zero coefficients give uniform probabilities"""
        model = GradientModel(4, 10)
        p = model.predict(Sample.from_features(0, {1: 1.0, 7: 2.0}))
        assert p.shape == (4,)
        assert p.tolist() == pytest.approx([0.25] * 4)

    def test_predict_sums_to_one(self):
        """Test probabilities are a distribution even for large scores"""
        model = GradientModel(3, 2)
        model.beta = torch.tensor([[800.0, 0.0], [-800.0, 0.0]], dtype=torch.float64)
        p = model.predict(Sample.from_features(0, {0: 1.0}))
        assert bool(torch.isfinite(p).all())
        assert p.sum().item() == pytest.approx(1.0)
        assert model.classify(Sample.from_features(0, {0: 1.0})) == 0

    def test_predict_idempotent(self):
        """Test repeated predict calls without training give identical results"""
        model = constant_rate_model()
        model.train(Sample.from_features(0, {0: 1.0, 2: 0.5}))
        sample = Sample.from_features(1, {0: 1.0, 2: 0.5})
        first = model.predict(sample)
        second = model.predict(sample)
        assert torch.equal(first, second)

    def test_log_likelihood_floor(self):
        """Test log-likelihood is floored at MIN_LOG_LIKELIHOOD"""
        model = GradientModel(2, 1)
        model.beta = torch.tensor([[1000.0]], dtype=torch.float64)
        assert model.log_likelihood(Sample.from_features(1, {0: 1.0})) == MIN_LOG_LIKELIHOOD
        assert model.log_likelihood(Sample.from_features(0, {0: 1.0})) == pytest.approx(0.0)

    def test_log_likelihood_at_start(self):
        """Test log-likelihood of a uniform prediction"""
        model = GradientModel(2, 3)
        assert model.log_likelihood(Sample.from_features(0, {1: 1.0})) == pytest.approx(math.log(0.5))


class TestTraining:
    """Test the SGD step"""

    def test_end_to_end_single_step(self):
        """Test one step from zero coefficients with constant rate 1"""
        model = constant_rate_model()
        model.train(Sample.from_features(1, {0: 1.0}))

        assert model.step == 1
        assert model.update_counts[0].item() == 2.0
        assert model.beta[0, 0].item() == pytest.approx(-0.5 * math.sqrt(0.5))
        assert model.beta[0, 0].item() == pytest.approx(-0.3536, abs=1e-4)
        # Untouched features are unchanged
        assert model.beta[0, 1:].tolist() == [0.0, 0.0, 0.0]
        assert model.update_counts[1:].tolist() == [1.0, 1.0, 1.0]

    def test_positive_label_moves_up(self):
        """Test training on a non-reference label raises its coefficient"""
        model = constant_rate_model()
        model.train(Sample.from_features(0, {2: 1.0}))
        assert model.beta[0, 2].item() == pytest.approx(0.5 * math.sqrt(0.5))
        assert model.update_steps[2].item() == 0

    def test_step_increments_for_empty_sample(self):
        """Test an all-zero sample still advances the step and changes nothing else"""
        model = constant_rate_model()
        model.train(Sample.from_features(1, {}))
        assert model.step == 1
        assert bool((model.beta == 0).all())
        assert model.update_counts.tolist() == [1.0] * 4

    def test_step_increments_by_one(self):
        """Test every sample advances the step by exactly one"""
        model = GradientModel(3, 10)
        for i, sample in enumerate(create_synthetic_dataset(3, 10, 25, seed=0)):
            model.train(sample)
            assert model.step == i + 1

    def test_malformed_label_rejected(self):
        """Test an out-of-range label is rejected without touching state"""
        model = constant_rate_model()
        model.train(Sample.from_features(0, {0: 1.0}))
        beta = model.beta.clone()

        with pytest.raises(InvalidSampleError):
            model.train(Sample.from_features(5, {0: 1.0}))

        assert model.step == 1
        assert torch.equal(model.beta, beta)

    def test_malformed_index_rejected(self):
        """Test an out-of-range feature index is rejected"""
        model = constant_rate_model()
        with pytest.raises(InvalidSampleError):
            model.train(Sample.from_features(0, {9: 1.0}))
        assert model.step == 0

    def test_lazy_regularization_on_touch(self):
        """Test a column is charged for skipped steps when it is next touched"""
        model = constant_rate_model(prior=L1Prior(), lambda_=0.01)
        model.train(Sample.from_features(0, {0: 1.0}))
        after_first = model.beta[0, 0].item()

        # Three steps that do not touch feature 0
        for _ in range(3):
            model.train(Sample.from_features(0, {1: 1.0}))
        assert model.beta[0, 0].item() == after_first

        # Catching up applies 4 - 0 = 4 skipped steps of L1
        # at rate lambda * lr * sqrt(1 / 2)
        expected_catch_up = after_first - 4 * 0.01 * math.sqrt(0.5)
        probe = model.copy()
        probe.regularize_all()
        assert probe.beta[0, 0].item() == pytest.approx(expected_catch_up)
        assert probe.step == model.step

    def test_regularize_all_catches_up_everything(self):
        """Test regularize_all ages every stale column and marks it current"""
        model = constant_rate_model(num_features=3, prior=L2Prior(1.0), lambda_=0.1)
        model.beta = torch.ones((1, 3), dtype=torch.float64)
        model.step = 2

        assert model.regularize_all() == 3
        assert model.beta[0].tolist() == pytest.approx([(1 - 0.1) ** 2] * 3)
        assert model.update_steps.tolist() == [2, 2, 2]
        assert model.regularize_all() == 0

    def test_non_finite_gradient_never_reaches_beta(self):
        """Test NaN probabilities do not poison the coefficients"""
        model = constant_rate_model()
        model.beta[0, 0] = float('nan')
        model.train(Sample.from_features(0, {0: 1.0, 1: 1.0}))
        assert model.beta[0, 1].item() == 0.0
        assert model.step == 1

    def test_deterministic(self):
        """Test two runs over the same data produce bit-identical trajectories"""
        samples = create_synthetic_dataset(3, 30, 100, seed=11)

        def trajectory():
            model = GradientModel(3, 30, prior=L1Prior(), lambda_=1e-3)
            states = []
            for sample in samples:
                model.train(sample)
                states.append(model.beta.clone())
            return states

        for a, b in zip(trajectory(), trajectory()):
            assert torch.equal(a, b)

    def test_learns_separable_data(self):
        """Test training improves accuracy on synthetic data"""
        samples = create_synthetic_dataset(2, 20, 400, nnz=5, seed=5, noise=0.0)
        model = GradientModel(
            2, 20, schedule=AnnealingSchedule(learning_rate=1.0, decay_factor=1.0, forgetting_exponent=0.0)
        )
        for _ in range(3):
            for sample in samples:
                model.train(sample)
        correct = sum(model.classify(s) == s.label for s in samples)
        assert correct / len(samples) > 0.7


class TestSnapshotAndReplace:
    """Test snapshot/replace semantics"""

    def test_snapshot_is_deep_copy(self):
        """Test snapshots do not alias the live matrix"""
        model = constant_rate_model()
        snapshot = model.snapshot(worker_id="w0", round_id=3)
        model.train(Sample.from_features(0, {0: 1.0}))
        assert snapshot.beta[0, 0].item() == 0.0
        assert snapshot.worker_id == "w0"
        assert snapshot.round_id == 3

    def test_replace_then_snapshot_bit_identical(self):
        """Test replace followed by snapshot returns the same matrix bits"""
        model = GradientModel(3, 4)
        beta = torch.randn((2, 4), dtype=torch.float64, generator=torch.Generator().manual_seed(0))
        model.replace(Snapshot(beta=beta))
        assert torch.equal(model.snapshot().beta, beta)

    def test_replace_keeps_annealing_state(self):
        """Test replace overwrites only the coefficients"""
        model = constant_rate_model()
        model.train(Sample.from_features(0, {0: 1.0}))
        counts = model.update_counts.clone()
        steps = model.update_steps.clone()

        model.replace(Snapshot(beta=torch.zeros((1, 4), dtype=torch.float64)))

        assert model.step == 1
        assert torch.equal(model.update_counts, counts)
        assert torch.equal(model.update_steps, steps)
        assert bool((model.beta == 0).all())

    def test_replace_does_not_alias(self):
        """Test the model owns its copy after replace"""
        model = GradientModel(2, 2)
        beta = torch.zeros((1, 2), dtype=torch.float64)
        model.replace(Snapshot(beta=beta))
        model.train(Sample.from_features(0, {0: 1.0}))
        assert beta.tolist() == [[0.0, 0.0]]

    def test_replace_shape_mismatch(self):
        """Test a snapshot of another shape is rejected"""
        model = GradientModel(2, 4)
        with pytest.raises(ValueError):
            model.replace(Snapshot(beta=torch.zeros((1, 5), dtype=torch.float64)))


class TestConfiguration:
    """Test chainable setters and model factory"""

    def test_chainable_setters(self):
        """Test setters return the model and update the schedule"""
        model = GradientModel(2, 3).alpha(0.5).lambda_(0.1).learning_rate(3.0).step_offset(7).decay_exponent(0.25)
        assert model.schedule.decay_factor == 0.5
        assert model.lambda_value == 0.1
        assert model.schedule.learning_rate == 3.0
        assert model.schedule.step_offset == 7
        assert model.schedule.forgetting_exponent == -0.25

    def test_create_model_from_config(self):
        """Test the factory applies every training hyperparameter"""
        config = TrainingConfig(
            num_categories=4,
            num_features=50,
            lambda_=0.5,
            prior="l2",
            prior_params={"scale": 2.0},
            learning_rate=3.0,
            per_term_annealing_offset=5
        )
        model = create_model(config)
        assert model.beta.shape == (3, 50)
        assert model.prior == L2Prior(2.0)
        assert model.lambda_value == 0.5
        assert model.schedule.learning_rate == 3.0
        assert model.schedule.forgetting_exponent == -0.9
        assert model.update_counts[0].item() == 5.0

    def test_copy_is_independent(self):
        """Test copy duplicates all state"""
        model = constant_rate_model()
        model.train(Sample.from_features(0, {0: 1.0}))
        clone = model.copy()
        clone.train(Sample.from_features(0, {0: 1.0}))
        assert model.step == 1
        assert clone.step == 2
        assert not torch.equal(model.beta, clone.beta)
