"""
In-process snapshot exchange.

Lets simulated workers talk to an Aggregator in the same process while
still pushing every snapshot through the wire codec, so the simulation
exercises the same bytes the HTTP transport sends.
"""

import asyncio
from typing import Optional

from communication.serialization import deserialize_snapshot, serialize_snapshot
from coordinator.aggregator import Aggregator
from core.snapshot import Snapshot


class LocalExchange:
    """
    One worker's connection to a shared in-process Aggregator.

    Args:
        aggregator: Aggregator shared by all simulated workers
        worker_id: Worker this exchange submits for
        latency_ms: Simulated one-way network latency
    """

    def __init__(self, aggregator: Aggregator, worker_id: str, latency_ms: float = 0.0):
        self.aggregator = aggregator
        self.worker_id = worker_id
        self.latency_ms = latency_ms

        self.bytes_sent = 0
        self.bytes_received = 0

    async def _simulate_latency(self):
        if self.latency_ms > 0:
            await asyncio.sleep(self.latency_ms / 1000.0)

    def _round_trip(self, blob: bytes, timeout: Optional[float]) -> bytes:
        snapshot = deserialize_snapshot(blob)
        global_snapshot = self.aggregator.exchange(snapshot, timeout=timeout)
        return serialize_snapshot(global_snapshot)

    async def exchange(self, snapshot: Snapshot, timeout: Optional[float] = None) -> Snapshot:
        """Submit a snapshot and wait for the round's global snapshot."""
        blob = serialize_snapshot(snapshot)
        self.bytes_sent += len(blob)
        await self._simulate_latency()

        # The aggregator blocks until the barrier completes
        reply = await asyncio.to_thread(self._round_trip, blob, timeout)

        await self._simulate_latency()
        self.bytes_received += len(reply)
        return deserialize_snapshot(reply)

    async def retire(self) -> bool:
        await self._simulate_latency()
        return self.aggregator.retire(self.worker_id)
