"""
Unit tests for worker components.

Tests:
- Configuration
- Running metrics
- Worker round state machine
- Round trainer
"""

import math
import os
import tempfile
from unittest.mock import AsyncMock

import pytest
import torch

from coordinator.aggregator import RoundProtocolError
from core.annealing import AnnealingSchedule
from core.dataset import InMemoryRecordSource, RecordSource, RecordSourceError
from core.model import GradientModel
from core.priors import NoPrior
from core.sample import Sample
from worker.config import WorkerConfig
from worker.metrics import RunningMetrics
from worker.round import WorkerRound, WorkerState
from worker.trainer import RoundTrainer


def make_samples(n, num_features=4):
    return [Sample.from_features(i % 2, {i % num_features: 1.0}) for i in range(n)]


def make_round(samples, num_iterations=1, batch_size=None):
    model = GradientModel(2, 4, prior=NoPrior())
    return WorkerRound(
        "w0",
        model,
        InMemoryRecordSource(samples),
        num_iterations=num_iterations,
        batch_size=batch_size
    )


class FailingSource(RecordSource):
    """Source that fails hard after a number of records."""

    def __init__(self, samples, fail_after):
        self.inner = InMemoryRecordSource(samples)
        self.fail_after = fail_after
        self.reads = 0

    def has_more(self):
        return True

    def next(self):
        if self.reads >= self.fail_after:
            raise RecordSourceError("disk went away")
        self.reads += 1
        return self.inner.next()

    def reset(self):
        self.inner.reset()
        self.reads = 0


class TestWorkerConfig:
    """Test worker configuration."""

    def test_default_config(self):
        """Test default configuration values."""
        config = WorkerConfig()

        assert config.worker_id == "worker_0"
        assert config.coordinator_url == "http://localhost:8000"
        assert config.coordinator_retry_attempts == 3
        assert config.rank is None
        assert config.round_wait_timeout is None

    def test_json_serialization(self):
        """Test JSON save/load."""
        config = WorkerConfig(worker_id="test", seed=7, model_path="/tmp/model.polr")

        with tempfile.NamedTemporaryFile(mode='w', suffix='.json', delete=False) as f:
            path = f.name

        try:
            config.to_json_file(path)
            loaded_config = WorkerConfig.from_json_file(path)

            assert loaded_config.worker_id == config.worker_id
            assert loaded_config.seed == 7
            assert loaded_config.model_path == config.model_path
        finally:
            os.unlink(path)


class TestRunningMetrics:
    """Test running averages."""

    def test_plain_mean_before_window(self):
        """Test the first records form a plain mean."""
        metrics = RunningMetrics()
        for ll, correct in ((-1.0, True), (-2.0, False), (-3.0, True)):
            metrics.update(ll, correct)
        assert metrics.avg_log_likelihood == pytest.approx(-2.0)
        assert metrics.percent_correct == pytest.approx(200.0 / 3)
        assert metrics.records_seen == 3

    def test_window_capped_at_200(self):
        """Test later records are weighted 1/200."""
        metrics = RunningMetrics()
        for _ in range(300):
            metrics.update(0.0, False)
        metrics.update(-200.0, True)
        assert metrics.avg_log_likelihood == pytest.approx(-1.0)
        assert metrics.avg_correct == pytest.approx(1.0 / 200)

    def test_nan_contributes_zero(self):
        """Test a NaN log-likelihood does not poison the average."""
        metrics = RunningMetrics()
        metrics.update(-2.0, True)
        metrics.update(float('nan'), True)
        assert not math.isnan(metrics.avg_log_likelihood)
        assert metrics.avg_log_likelihood == pytest.approx(-1.0)


class TestWorkerRound:
    """Test the worker round state machine."""

    def test_full_shard_round(self):
        """Test a round without batch size trains the whole shard."""
        worker_round = make_round(make_samples(6))
        snapshot = worker_round.run_round()

        assert worker_round.state == WorkerState.ROUND_COMPLETE
        assert snapshot.round_records == 6
        assert snapshot.trained_records == 6
        assert snapshot.more_records is False
        assert snapshot.worker_id == "w0"
        assert snapshot.round_id == 0
        assert worker_round.model.step == 6

    def test_snapshot_is_copy(self):
        """Test the emitted snapshot does not alias the model."""
        worker_round = make_round(make_samples(2))
        snapshot = worker_round.run_round()
        assert torch.equal(snapshot.beta, worker_round.model.beta)
        assert snapshot.beta.data_ptr() != worker_round.model.beta.data_ptr()

    def test_micro_batches(self):
        """Test batch_size splits an iteration into several rounds."""
        worker_round = make_round(make_samples(5), batch_size=2)

        first = worker_round.run_round()
        assert first.round_records == 2
        assert first.more_records is True
        worker_round.apply_global(first)

        second = worker_round.run_round()
        assert second.round_records == 2
        worker_round.apply_global(second)

        third = worker_round.run_round()
        assert third.round_records == 1
        assert third.more_records is False
        assert third.round_id == 2

    def test_cursor_not_reset_between_micro_batches(self):
        """Test the shard cursor only rewinds at a new iteration."""
        worker_round = make_round(make_samples(4), num_iterations=2, batch_size=3)
        worker_round.apply_global(worker_round.run_round())
        snapshot = worker_round.run_round()
        assert snapshot.round_records == 1

        worker_round.apply_global(snapshot)
        assert worker_round.advance_iteration() is False
        assert worker_round.run_round().round_records == 3

    def test_apply_global_replaces_coefficients(self):
        """Test the global snapshot overwrites the local matrix."""
        worker_round = make_round(make_samples(3))
        snapshot = worker_round.run_round()
        global_beta = torch.full_like(snapshot.beta, 0.25)
        worker_round.apply_global(type(snapshot)(beta=global_beta))

        assert worker_round.state == WorkerState.IDLE
        assert worker_round.round_id == 1
        assert torch.equal(worker_round.model.beta, global_beta)
        assert worker_round.model.step == 3

    def test_skips_malformed_samples(self):
        """Test invalid samples are skipped and counted, not fatal."""
        samples = make_samples(3) + [Sample.from_features(5, {0: 1.0})]
        worker_round = make_round(samples)
        snapshot = worker_round.run_round()

        assert snapshot.round_records == 3
        assert worker_round.skipped_records == 1
        assert worker_round.model.step == 3

    def test_skips_malformed_tensors(self):
        """Test duplicate indices and float32 values are skipped, not fatal."""
        duplicate = Sample(0, torch.tensor([0, 0]), torch.tensor([1.0, 1.0], dtype=torch.float64))
        float32 = Sample(1, torch.tensor([1]), torch.tensor([1.0]))
        worker_round = make_round([duplicate, float32] + make_samples(2))
        snapshot = worker_round.run_round()

        assert snapshot.round_records == 2
        assert worker_round.skipped_records == 2
        assert worker_round.state == WorkerState.ROUND_COMPLETE

    def test_record_source_error_propagates(self):
        """Test a hard source failure aborts the round."""
        model = GradientModel(2, 4)
        worker_round = WorkerRound("w0", model, FailingSource(make_samples(5), fail_after=2))

        with pytest.raises(RecordSourceError):
            worker_round.run_round()
        assert worker_round.state == WorkerState.IDLE
        assert worker_round.trained_records == 2

    def test_advance_iteration(self):
        """Test iterations count up to the configured total."""
        worker_round = make_round(make_samples(2), num_iterations=2)
        worker_round.apply_global(worker_round.run_round())
        assert worker_round.advance_iteration() is False
        assert worker_round.iteration == 1

        worker_round.apply_global(worker_round.run_round())
        assert worker_round.advance_iteration() is True
        assert worker_round.state == WorkerState.ALL_ITERATIONS_DONE

        with pytest.raises(RuntimeError):
            worker_round.run_round()

    def test_cannot_apply_without_round(self):
        """Test apply_global requires a completed round."""
        worker_round = make_round(make_samples(1))
        with pytest.raises(RuntimeError):
            worker_round.apply_global(worker_round.model.snapshot())

    def test_metrics_from_prediction(self):
        """Test running metrics are computed before each training step."""
        worker_round = make_round([Sample.from_features(0, {0: 1.0})])
        snapshot = worker_round.run_round()
        assert snapshot.avg_log_likelihood == pytest.approx(math.log(0.5))
        assert snapshot.percent_correct == pytest.approx(100.0)


class TestRoundTrainer:
    """Test the round/exchange loop."""

    @pytest.fixture
    def echo_exchange(self):
        """Exchange that hands each worker its own snapshot back."""
        exchange = AsyncMock()
        exchange.exchange = AsyncMock(side_effect=lambda snapshot, timeout=None: snapshot)
        exchange.retire = AsyncMock(return_value=True)
        return exchange

    @pytest.mark.asyncio
    async def test_runs_all_iterations(self, echo_exchange):
        """Test the trainer runs one round per iteration and retires."""
        worker_round = make_round(make_samples(4), num_iterations=3)
        summary = await RoundTrainer(worker_round, echo_exchange).run()

        assert summary["rounds_completed"] == 3
        assert summary["trained_records"] == 12
        assert worker_round.done
        echo_exchange.retire.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_micro_batched_iterations(self, echo_exchange):
        """Test an iteration spans rounds until no records remain."""
        worker_round = make_round(make_samples(5), num_iterations=2, batch_size=2)
        summary = await RoundTrainer(worker_round, echo_exchange).run()

        assert summary["rounds_completed"] == 6
        assert summary["trained_records"] == 10

    @pytest.mark.asyncio
    async def test_failed_round_keeps_local_model(self, echo_exchange):
        """Test a protocol error abandons the round and training continues."""
        calls = []

        async def flaky(snapshot, timeout=None):
            calls.append(snapshot.round_id)
            if len(calls) == 1:
                raise RoundProtocolError("round failed")
            return snapshot

        echo_exchange.exchange = AsyncMock(side_effect=flaky)
        worker_round = make_round(make_samples(4), num_iterations=2)
        summary = await RoundTrainer(worker_round, echo_exchange).run()

        assert summary["rounds_failed"] == 1
        assert summary["rounds_completed"] == 1
        assert calls == [0, 1]
        assert worker_round.model.step == 8

    @pytest.mark.asyncio
    async def test_global_more_records_keeps_iteration_open(self, echo_exchange):
        """Test a worker with an exhausted shard waits for the others."""
        remaining = [True, False]

        def global_snapshot(snapshot, timeout=None):
            return type(snapshot)(beta=snapshot.beta, more_records=remaining.pop(0))

        echo_exchange.exchange = AsyncMock(side_effect=global_snapshot)
        worker_round = make_round(make_samples(2), num_iterations=1)
        summary = await RoundTrainer(worker_round, echo_exchange).run()

        # Second round trains nothing: the shard was exhausted in the first
        assert summary["rounds_completed"] == 2
        assert summary["trained_records"] == 2
