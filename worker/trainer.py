"""
Round loop for a worker.

Alternates local training rounds with snapshot exchanges until the worker
has finished all iterations, then retires from the barrier. The exchange is
anything with async exchange(snapshot, timeout) and retire() methods: the
HTTP CoordinatorClient or the in-process sim.exchange.LocalExchange.
"""

import asyncio
import logging
import time
from typing import Any, Dict, Optional

from coordinator.aggregator import RoundProtocolError, RoundTimeoutError
from worker.round import WorkerRound


logger = logging.getLogger(__name__)


class RoundTrainer:
    """
    Runs a WorkerRound against an exchange.

    After each round the global snapshot replaces the local coefficients.
    An iteration ends when the global snapshot reports that no worker has
    records left in its shard, which keeps iterations aligned across workers
    even when shards have different sizes.
    """

    def __init__(
        self,
        worker_round: WorkerRound,
        exchange,
        round_wait_timeout: Optional[float] = None
    ):
        """
        Initialize round trainer.

        Args:
            worker_round: This worker's round state machine
            exchange: Snapshot exchange (CoordinatorClient or LocalExchange)
            round_wait_timeout: Seconds to wait for each global snapshot
                (None waits indefinitely)
        """
        self.worker_round = worker_round
        self.exchange = exchange
        self.round_wait_timeout = round_wait_timeout

        self.rounds_completed = 0
        self.rounds_failed = 0

    @property
    def worker_id(self) -> str:
        return self.worker_round.worker_id

    async def run(self) -> Dict[str, Any]:
        """
        Train until all iterations are done.

        Round failures reported by the aggregator are logged and the
        worker moves on to the next round with its local coefficients.
        Transport and record-source failures propagate.

        Returns:
            Training summary for this worker
        """
        start_time = time.time()
        logger.info(
            f"{self.worker_id}: starting training "
            f"({self.worker_round.num_iterations} iterations)"
        )

        while not self.worker_round.done:
            # Training is CPU-bound; keep the event loop free for other workers
            local = await asyncio.to_thread(self.worker_round.run_round)

            try:
                global_snapshot = await self.exchange.exchange(local, timeout=self.round_wait_timeout)
            except (RoundProtocolError, RoundTimeoutError) as e:
                logger.error(f"{self.worker_id}: round {local.round_id} failed: {e}")
                self.worker_round.abandon_round()
                self.rounds_failed += 1
                more_records = local.more_records
            else:
                self.worker_round.apply_global(global_snapshot)
                self.rounds_completed += 1
                more_records = global_snapshot.more_records

            if not more_records:
                self.worker_round.advance_iteration()

        await self.exchange.retire()

        elapsed = time.time() - start_time
        summary = {
            "worker_id": self.worker_id,
            "iterations": self.worker_round.iteration,
            "rounds_completed": self.rounds_completed,
            "rounds_failed": self.rounds_failed,
            "trained_records": self.worker_round.trained_records,
            "skipped_records": self.worker_round.skipped_records,
            "avg_log_likelihood": self.worker_round.metrics.avg_log_likelihood,
            "percent_correct": self.worker_round.metrics.percent_correct,
            "elapsed_seconds": elapsed,
        }
        logger.info(
            f"{self.worker_id}: training complete in {elapsed:.2f}s "
            f"({self.rounds_completed} rounds, {self.rounds_failed} failed)"
        )
        return summary
