"""
Integration tests for the worker/coordinator HTTP exchange.

Workers talk to the real FastAPI app in-process through httpx's ASGI
transport, so the snapshot codec, the REST endpoints and the aggregator
are all exercised together.
"""

import asyncio

import httpx
import pytest
import torch

from coordinator.aggregator import RoundProtocolError, RoundTimeoutError
from coordinator.server import app
from coordinator.training_config import TrainingConfig
from core.snapshot import Snapshot
from worker.client import WorkerClient
from worker.config import WorkerConfig
from worker.coordinator_client import CoordinatorClient, TransportError
import coordinator.server as server_module


def make_client(worker_id, **kwargs):
    kwargs.setdefault("poll_interval", 0.01)
    return CoordinatorClient(
        "http://coordinator",
        worker_id,
        transport=httpx.ASGITransport(app=app),
        **kwargs
    )


def make_snapshot(value, round_id=0, records=10):
    return Snapshot(
        beta=torch.full((1, 4), float(value), dtype=torch.float64),
        round_id=round_id,
        round_records=records,
    )


@pytest.fixture
def training_config():
    config = TrainingConfig(
        num_categories=2,
        num_features=4,
        num_workers=3,
        combine="mean",
        learning_rate=1.0,
        forgetting_exponent=0.0,
    )
    server_module.configure(config)
    yield config
    server_module.aggregator = None
    server_module.training_config = None


class TestSnapshotExchange:
    """Test exchange() against the coordinator."""

    @pytest.mark.asyncio
    async def test_three_workers_get_same_global(self, training_config):
        """Test concurrent exchanges all return the combined snapshot."""
        clients = [make_client(f"worker_{i}") for i in range(3)]
        try:
            results = await asyncio.gather(*(
                client.exchange(make_snapshot(value), timeout=5.0)
                for client, value in zip(clients, (1.0, 2.0, 6.0))
            ))
        finally:
            for client in clients:
                await client.close()

        for snapshot in results:
            assert snapshot.beta.tolist() == [[3.0, 3.0, 3.0, 3.0]]
            assert snapshot.round_records == 30

    @pytest.mark.asyncio
    async def test_pending_until_last_submission(self, training_config):
        """Test get_global returns None while the round is open."""
        async with make_client("worker_0") as client:
            assert await client.submit_snapshot(make_snapshot(1.0)) is False
            assert await client.get_global(0) is None

            status = await client.get_round_status()
            assert status["waiting_for"] == ["worker_1", "worker_2"]

    @pytest.mark.asyncio
    async def test_wait_times_out(self, training_config):
        """Test a worker's wait deadline raises RoundTimeoutError and aborts the round."""
        async with make_client("worker_0") as client:
            with pytest.raises(RoundTimeoutError):
                await client.exchange(make_snapshot(1.0), timeout=0.05)

            status = await client.get_round_status()
            assert status["current_round"] == 1
            assert status["rounds"]["0"] == "failed"

            # Waiting on the aborted round reports a timeout, not a protocol error
            with pytest.raises(RoundTimeoutError):
                await client.get_global(0)

    @pytest.mark.asyncio
    async def test_workers_realign_after_timeout(self, training_config):
        """Test a late worker is turned away and everyone meets in the next round."""
        async with make_client("worker_0") as w0, make_client("worker_1") as w1, \
                make_client("worker_2") as w2:
            with pytest.raises(RoundTimeoutError):
                await w0.exchange(make_snapshot(1.0, round_id=0), timeout=0.05)

            with pytest.raises(RoundProtocolError, match="already failed"):
                await w1.submit_snapshot(make_snapshot(1.0, round_id=0))

            results = await asyncio.gather(*(
                client.exchange(make_snapshot(value, round_id=1), timeout=5.0)
                for client, value in ((w0, 1.0), (w1, 2.0), (w2, 3.0))
            ))
            for snapshot in results:
                assert snapshot.beta[0, 0].item() == 2.0

    @pytest.mark.asyncio
    async def test_abort_after_completion_returns_global(self, training_config):
        """Test aborting a round that completed hands back its global snapshot."""
        clients = [make_client(f"worker_{i}") for i in range(3)]
        try:
            for client, value in zip(clients, (3.0, 3.0, 3.0)):
                await client.submit_snapshot(make_snapshot(value))
            snapshot = await clients[0].abort_round(0)
        finally:
            for client in clients:
                await client.close()

        assert snapshot.beta[0, 0].item() == 3.0

    @pytest.mark.asyncio
    async def test_round_timeout_maps_to_timeout_error(self):
        """Test a coordinator-side round timeout surfaces as RoundTimeoutError."""
        server_module.configure(TrainingConfig(num_features=4, num_workers=2, round_timeout=0.05))
        try:
            async with make_client("worker_0") as client:
                with pytest.raises(RoundTimeoutError, match="timed out"):
                    await client.exchange(make_snapshot(1.0), timeout=5.0)
        finally:
            server_module.aggregator = None
            server_module.training_config = None

    @pytest.mark.asyncio
    async def test_conflict_maps_to_protocol_error(self, training_config):
        """Test a 409 surfaces as RoundProtocolError, not a transport failure."""
        async with make_client("worker_0") as client:
            await client.submit_snapshot(make_snapshot(1.0))
            with pytest.raises(RoundProtocolError):
                await client.submit_snapshot(make_snapshot(1.0))

            # The round failed; waiting on it reports the failure
            with pytest.raises(RoundProtocolError):
                await client.wait_for_global(0)

    @pytest.mark.asyncio
    async def test_retire_releases_waiters(self, training_config):
        """Test retiring the stragglers completes the open round."""
        async with make_client("worker_0") as w0, make_client("worker_1") as w1, \
                make_client("worker_2") as w2:
            waiter = asyncio.create_task(w0.exchange(make_snapshot(4.0), timeout=5.0))
            await asyncio.sleep(0.05)
            assert await w1.retire() is True
            assert await w2.retire() is True

            snapshot = await waiter
            assert snapshot.beta[0, 0].item() == 4.0


class TestTransportErrors:
    """Test failures that are not round protocol errors."""

    @pytest.mark.asyncio
    async def test_unknown_worker_assignment(self, training_config):
        """Test a 404 becomes TransportError without retries."""
        async with make_client("worker_9") as client:
            with pytest.raises(TransportError):
                await client.get_worker_assignment()

    @pytest.mark.asyncio
    async def test_unreachable_coordinator(self):
        """Test connection failures are retried then reported."""
        client = CoordinatorClient(
            "http://127.0.0.1:9", "worker_0", timeout=0.5, retry_attempts=2, retry_delay=0.01
        )
        try:
            with pytest.raises(TransportError):
                await client.get_training_config()
        finally:
            await client.close()


class TestWorkerClient:
    """Test complete workers training against the coordinator."""

    @pytest.mark.asyncio
    async def test_workers_train_to_common_model(self, training_config):
        """Test all workers finish with identical coefficients."""
        workers = []
        for i in range(3):
            config = WorkerConfig(worker_id=f"worker_{i}", num_samples=60, nnz=2, seed=3)
            workers.append(WorkerClient(config, coordinator_client=make_client(config.worker_id)))

        try:
            summaries = await asyncio.gather(*(w.run_training() for w in workers))
        finally:
            for worker in workers:
                await worker.stop()

        assert [s["worker_id"] for s in summaries] == ["worker_0", "worker_1", "worker_2"]
        assert sum(s["trained_records"] for s in summaries) == 60
        assert all(s["rounds_failed"] == 0 for s in summaries)

        reference = workers[0].worker_round.model.beta
        for worker in workers[1:]:
            assert torch.equal(worker.worker_round.model.beta, reference)

        status = server_module.aggregator.status()
        assert status["active_workers"] == []
        assert status["retired_workers"] == ["worker_0", "worker_1", "worker_2"]

    @pytest.mark.asyncio
    async def test_worker_uses_assigned_rank(self, training_config):
        """Test start() builds the shard for the coordinator-assigned rank."""
        config = WorkerConfig(worker_id="worker_2", num_samples=30, nnz=2)
        worker = WorkerClient(config, coordinator_client=make_client("worker_2"))
        try:
            await worker.start()
        finally:
            await worker.stop()

        assert worker.training_config.num_workers == 3
        assert len(worker.worker_round.source) == 10
