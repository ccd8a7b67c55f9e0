"""
Per-worker round state machine.

    IDLE -> RUNNING -> ROUND_COMPLETE -> IDLE -> ... -> ALL_ITERATIONS_DONE

A round trains the worker's model on its shard (or the next micro-batch of
it) and ends with a snapshot for the aggregator. The global snapshot that
comes back replaces the local coefficients before the next round.
"""

import logging
from enum import Enum
from typing import Optional

from core.dataset import RecordSource
from core.model import GradientModel
from core.sample import InvalidSampleError
from core.snapshot import Snapshot
from worker.metrics import RunningMetrics

logger = logging.getLogger(__name__)


class WorkerState(Enum):
    IDLE = "idle"
    RUNNING = "running"
    ROUND_COMPLETE = "round_complete"
    ALL_ITERATIONS_DONE = "all_iterations_done"


class WorkerRound:
    """
    Drives one worker's model through rounds and iterations.

    An iteration is one full pass over the shard. Without a batch_size each
    round is a full iteration; with one, an iteration spans several rounds.
    """

    def __init__(
        self,
        worker_id: str,
        model: GradientModel,
        source: RecordSource,
        num_iterations: int = 1,
        batch_size: Optional[int] = None
    ):
        """
        Args:
            worker_id: Worker identifier stamped on every snapshot
            model: Model owned exclusively by this worker
            source: The worker's shard
            num_iterations: Passes over the shard before the worker is done
            batch_size: Records per round (None = rest of the shard)
        """
        if num_iterations < 1:
            raise ValueError(f"num_iterations must be >= 1, got {num_iterations}")
        if batch_size is not None and batch_size < 1:
            raise ValueError(f"batch_size must be >= 1, got {batch_size}")

        self.worker_id = worker_id
        self.model = model
        self.source = source
        self.num_iterations = num_iterations
        self.batch_size = batch_size

        self.state = WorkerState.IDLE
        self.iteration = 0
        self.round_id = 0
        self.trained_records = 0
        self.skipped_records = 0
        self.metrics = RunningMetrics()

        self._fresh_iteration = True

    @property
    def done(self) -> bool:
        return self.state == WorkerState.ALL_ITERATIONS_DONE

    def run_round(self) -> Snapshot:
        """
        Train on the next stretch of the shard and snapshot the result.

        Malformed samples are skipped and counted. A hard record-source
        failure aborts the round and propagates.

        Returns:
            Snapshot of the local model for the aggregator

        Raises:
            RuntimeError: Called while running or after all iterations
            RecordSourceError: The shard failed to produce a record
        """
        if self.state in (WorkerState.RUNNING, WorkerState.ALL_ITERATIONS_DONE):
            raise RuntimeError(f"Cannot start a round in state {self.state.value}")

        self.state = WorkerState.RUNNING
        if self._fresh_iteration:
            self.source.reset()
            self._fresh_iteration = False

        round_records = 0
        try:
            while self.source.has_more():
                if self.batch_size is not None and round_records >= self.batch_size:
                    break
                sample = self.source.next()

                try:
                    self.model.validate_sample(sample)
                except InvalidSampleError as e:
                    self.skipped_records += 1
                    logger.warning(f"{self.worker_id}: skipping record: {e}")
                    continue

                probabilities = self.model.predict(sample)
                correct = int(probabilities.argmax()) == sample.label
                self.metrics.update(self.model.log_likelihood(sample), correct)

                self.model.train(sample)
                round_records += 1
                self.trained_records += 1
        except Exception:
            self.state = WorkerState.IDLE
            raise

        self.state = WorkerState.ROUND_COMPLETE
        snapshot = self.model.snapshot(
            worker_id=self.worker_id,
            round_id=self.round_id,
            iteration=self.iteration,
            trained_records=self.trained_records,
            round_records=round_records,
            avg_log_likelihood=self.metrics.avg_log_likelihood,
            percent_correct=self.metrics.percent_correct,
            more_records=self.source.has_more(),
        )

        logger.info(
            f"{self.worker_id}: round {self.round_id} (iteration {self.iteration}) trained "
            f"{round_records} records, avg LL {self.metrics.avg_log_likelihood:.4f}, "
            f"{self.metrics.percent_correct:.1f}% correct"
        )
        return snapshot

    def apply_global(self, snapshot: Snapshot):
        """
        Adopt the round's global snapshot and return to IDLE.

        Only the coefficients are replaced; annealing state stays local.
        """
        if self.state != WorkerState.ROUND_COMPLETE:
            raise RuntimeError(f"No completed round to apply a global snapshot to ({self.state.value})")
        self.model.replace(snapshot)
        self.round_id += 1
        self.state = WorkerState.IDLE

    def abandon_round(self):
        """Move past a failed round, keeping the local coefficients."""
        if self.state != WorkerState.ROUND_COMPLETE:
            raise RuntimeError(f"No completed round to abandon ({self.state.value})")
        logger.warning(f"{self.worker_id}: round {self.round_id} abandoned, keeping local model")
        self.round_id += 1
        self.state = WorkerState.IDLE

    def advance_iteration(self) -> bool:
        """
        Start the next pass over the shard.

        Returns:
            True once the configured number of iterations has been reached
        """
        if self.done:
            return True

        self.iteration += 1
        self.source.reset()
        self._fresh_iteration = False
        if self.iteration >= self.num_iterations:
            self.state = WorkerState.ALL_ITERATIONS_DONE
            logger.info(
                f"{self.worker_id}: all {self.num_iterations} iterations done "
                f"({self.trained_records} records trained, {self.skipped_records} skipped)"
            )
            return True

        logger.info(f"{self.worker_id}: starting iteration {self.iteration}")
        return False
