"""
Round aggregation for synchronous parallel SGD.

Every active worker submits one snapshot per round. When the last expected
snapshot arrives the aggregator combines the coefficient matrices into one
global snapshot, which every worker then adopts wholesale. A round never
completes with partial submissions.
"""

import logging
import threading
import time
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Iterable, List, Optional, Set

import torch

from core.snapshot import Snapshot

logger = logging.getLogger(__name__)


class RoundProtocolError(RuntimeError):
    """A submission broke the round barrier protocol."""


class RoundTimeoutError(TimeoutError):
    """A round did not complete within the allowed time."""


# Combine rules

def mean_combine(snapshots: List[Snapshot]) -> torch.Tensor:
    """Element-wise mean of the submitted matrices."""
    return torch.stack([s.beta for s in snapshots]).mean(dim=0)


def weighted_mean_combine(snapshots: List[Snapshot]) -> torch.Tensor:
    """
    Mean of the submitted matrices weighted by records trained this round.

    Falls back to the plain mean when no worker trained any records.
    """
    weights = torch.tensor([float(s.round_records) for s in snapshots], dtype=torch.float64)
    total = float(weights.sum())
    if total <= 0.0:
        return mean_combine(snapshots)
    stacked = torch.stack([s.beta for s in snapshots])
    return (weights.view(-1, 1, 1) * stacked).sum(dim=0) / total


COMBINE_RULES: Dict[str, Callable[[List[Snapshot]], torch.Tensor]] = {
    'mean': mean_combine,
    'weighted_mean': weighted_mean_combine,
}


@dataclass
class RoundState:
    """Bookkeeping for one round."""
    round_id: int
    expected: Set[str]
    opened_at: float
    submissions: Dict[str, Snapshot] = field(default_factory=dict)
    result: Optional[Snapshot] = None
    error: Optional[Exception] = None

    @property
    def status(self) -> str:
        if self.error is not None:
            return "failed"
        if self.result is not None:
            return "complete"
        return "pending"


class Aggregator:
    """
    Barrier and combine step shared by all workers.

    Thread-safe: submit(), wait_for_global(), abort_round() and retire()
    may be called concurrently from any number of threads.

    Usage:
        aggregator = Aggregator(["w0", "w1", "w2"])
        global_snapshot = aggregator.exchange(local_snapshot)
        model.replace(global_snapshot)
    """

    def __init__(
        self,
        worker_ids: Iterable[str],
        combine: str = "weighted_mean",
        round_timeout: Optional[float] = None,
        max_history: int = 100
    ):
        """
        Args:
            worker_ids: Workers expected to submit each round
            combine: Name of the combine rule (see COMBINE_RULES)
            round_timeout: Seconds a round may stay open before it fails
                (None waits indefinitely)
            max_history: Finished rounds kept for late readers
        """
        if combine not in COMBINE_RULES:
            raise ValueError(
                f"Unknown combine rule '{combine}', expected one of {sorted(COMBINE_RULES)}"
            )
        if round_timeout is not None and round_timeout <= 0:
            raise ValueError(f"round_timeout must be positive, got {round_timeout}")

        self.active: Set[str] = set(worker_ids)
        if not self.active:
            raise ValueError("Aggregator needs at least one worker")

        self.combine_name = combine
        self.combine = COMBINE_RULES[combine]
        self.round_timeout = round_timeout
        self.max_history = max_history
        self.retired: Set[str] = set()

        self._condition = threading.Condition()
        self.rounds: Dict[int, RoundState] = {}
        self.current_round = 0
        self._open_round(0)

        logger.info(
            f"Initialized Aggregator ({len(self.active)} workers, combine={combine}, "
            f"round_timeout={round_timeout})"
        )

    # Internal helpers (caller holds the lock)

    def _open_round(self, round_id: int):
        self.current_round = round_id
        self.rounds[round_id] = RoundState(
            round_id=round_id,
            expected=set(self.active),
            opened_at=time.monotonic()
        )
        # Trim finished rounds
        if len(self.rounds) > self.max_history:
            for old in sorted(self.rounds)[:len(self.rounds) - self.max_history]:
                del self.rounds[old]

    def _fail_round(self, state: RoundState, error: Exception):
        state.error = error
        logger.error(f"Round {state.round_id} failed: {error}")
        if state.round_id == self.current_round:
            self._open_round(state.round_id + 1)
        self._condition.notify_all()

    def _check_timeout(self, state: RoundState):
        if self.round_timeout is None or state.status != "pending":
            return
        waited = time.monotonic() - state.opened_at
        if waited >= self.round_timeout:
            missing = sorted(state.expected - set(state.submissions))
            self._fail_round(
                state,
                RoundTimeoutError(
                    f"Round {state.round_id} timed out after {waited:.1f}s "
                    f"waiting for {missing}"
                )
            )

    def _maybe_complete(self, state: RoundState) -> bool:
        if state.status != "pending" or not state.submissions:
            return False
        if not self.active <= set(state.submissions):
            return False

        snapshots = [state.submissions[w] for w in sorted(state.submissions) if w in self.active]
        state.result = self._build_global(state.round_id, snapshots)
        logger.info(
            f"Round {state.round_id} complete: {len(snapshots)} workers, "
            f"{state.result.round_records} records, "
            f"avg LL {state.result.avg_log_likelihood:.4f}, "
            f"{state.result.percent_correct:.1f}% correct"
        )
        self._open_round(state.round_id + 1)
        self._condition.notify_all()
        return True

    def _build_global(self, round_id: int, snapshots: List[Snapshot]) -> Snapshot:
        beta = self.combine(snapshots)
        round_records = sum(s.round_records for s in snapshots)

        if round_records > 0:
            avg_ll = sum(s.avg_log_likelihood * s.round_records for s in snapshots) / round_records
            correct = sum(s.percent_correct * s.round_records for s in snapshots) / round_records
        else:
            avg_ll = sum(s.avg_log_likelihood for s in snapshots) / len(snapshots)
            correct = sum(s.percent_correct for s in snapshots) / len(snapshots)

        return Snapshot(
            beta=beta.to(torch.float64).clone(),
            worker_id="",
            round_id=round_id,
            iteration=max(s.iteration for s in snapshots),
            trained_records=sum(s.trained_records for s in snapshots),
            round_records=round_records,
            avg_log_likelihood=avg_ll,
            percent_correct=correct,
            more_records=any(s.more_records for s in snapshots),
        )

    # Public API

    def submit(self, snapshot: Snapshot, worker_id: Optional[str] = None) -> bool:
        """
        Record a worker's snapshot for the open round.

        Args:
            snapshot: Worker snapshot; its round_id must be the open round
            worker_id: Submitting worker (defaults to snapshot.worker_id)

        Returns:
            True if this submission completed the round

        Raises:
            RoundProtocolError: Unknown or retired worker, duplicate
                submission, wrong round, or mismatched matrix shape. The
                open round fails with it.
        """
        worker_id = worker_id or snapshot.worker_id
        round_id = snapshot.round_id

        with self._condition:
            target = self.rounds.get(round_id)
            if target is not None and target.error is not None:
                # Late submission to a round that already failed
                raise RoundProtocolError(
                    f"Round {round_id} already failed: {target.error}"
                )

            state = self.rounds[self.current_round]
            self._check_timeout(state)
            if state.error is not None:
                raise RoundProtocolError(f"Round {state.round_id} already failed: {state.error}")

            error = None
            if worker_id not in self.active:
                kind = "retired" if worker_id in self.retired else "unknown"
                error = RoundProtocolError(f"Snapshot from {kind} worker '{worker_id}'")
            elif round_id != state.round_id:
                error = RoundProtocolError(
                    f"Worker '{worker_id}' submitted for round {round_id}, "
                    f"open round is {state.round_id}"
                )
            elif worker_id in state.submissions:
                error = RoundProtocolError(
                    f"Duplicate submission from '{worker_id}' for round {round_id}"
                )
            elif state.submissions:
                expected_shape = next(iter(state.submissions.values())).shape
                if snapshot.shape != expected_shape:
                    error = RoundProtocolError(
                        f"Worker '{worker_id}' matrix shape {snapshot.shape} "
                        f"does not match {expected_shape}"
                    )

            if error is not None:
                self._fail_round(state, error)
                raise error

            state.submissions[worker_id] = snapshot
            logger.debug(
                f"Round {round_id}: received snapshot from {worker_id} "
                f"({len(state.submissions)}/{len(self.active)})"
            )
            return self._maybe_complete(state)

    def get_global(self, round_id: int) -> Optional[Snapshot]:
        """
        Non-blocking read of a round's global snapshot.

        Returns:
            The global snapshot, or None while the round is pending

        Raises:
            KeyError: Round was never opened (or has been trimmed)
            RoundProtocolError: Round failed
            RoundTimeoutError: Round timed out
        """
        with self._condition:
            state = self.rounds.get(round_id)
            if state is None:
                raise KeyError(round_id)
            self._check_timeout(state)
            if state.error is not None:
                raise state.error
            return state.result

    def wait_for_global(self, round_id: int, timeout: Optional[float] = None) -> Snapshot:
        """
        Block until a round's global snapshot is available.

        Args:
            round_id: Round to wait for
            timeout: Maximum seconds this caller waits (None waits for
                round_timeout, or indefinitely)

        Returns:
            Global snapshot for the round

        Raises:
            RoundProtocolError: Round failed
            RoundTimeoutError: Round timed out, or the caller's timeout expired
        """
        deadline = None if timeout is None else time.monotonic() + timeout

        with self._condition:
            while True:
                state = self.rounds.get(round_id)
                if state is None:
                    raise RoundProtocolError(f"Unknown round {round_id}")
                self._check_timeout(state)
                if state.error is not None:
                    raise state.error
                if state.result is not None:
                    return state.result

                waits = []
                if deadline is not None:
                    remaining = deadline - time.monotonic()
                    if remaining <= 0:
                        raise RoundTimeoutError(
                            f"Gave up waiting for round {round_id} after {timeout}s"
                        )
                    waits.append(remaining)
                if self.round_timeout is not None:
                    waits.append(max(0.0, state.opened_at + self.round_timeout - time.monotonic()))
                self._condition.wait(timeout=min(waits) if waits else None)

    def abort_round(self, round_id: int, worker_id: str = "") -> Optional[Snapshot]:
        """
        Give up on a round after a worker stopped waiting for it.

        A pending round fails with RoundTimeoutError for every worker and
        the next round opens. A round that already completed is left alone.

        Returns:
            The round's global snapshot if it completed, otherwise None

        Raises:
            KeyError: Round was never opened (or has been trimmed)
        """
        with self._condition:
            state = self.rounds.get(round_id)
            if state is None:
                raise KeyError(round_id)
            self._check_timeout(state)
            if state.status == "pending":
                by = f" by '{worker_id}'" if worker_id else ""
                self._fail_round(
                    state,
                    RoundTimeoutError(f"Round {round_id} aborted{by} after a wait timeout")
                )
            return state.result

    def exchange(self, snapshot: Snapshot, timeout: Optional[float] = None) -> Snapshot:
        """
        Submit a snapshot and block for the round's global snapshot.

        When this caller's timeout expires first the round is aborted, so
        all workers continue with the same next round.
        """
        self.submit(snapshot)
        try:
            return self.wait_for_global(snapshot.round_id, timeout=timeout)
        except RoundTimeoutError:
            result = self.abort_round(snapshot.round_id, snapshot.worker_id)
            if result is None:
                raise
            return result

    def retire(self, worker_id: str) -> bool:
        """
        Remove a worker from the active set.

        A retired worker's pending submission is dropped. If the remaining
        workers have all submitted, the open round completes.

        Returns:
            True if the worker was active
        """
        with self._condition:
            if worker_id not in self.active:
                return False
            self.active.discard(worker_id)
            self.retired.add(worker_id)

            state = self.rounds[self.current_round]
            state.expected.discard(worker_id)
            state.submissions.pop(worker_id, None)
            logger.info(
                f"Worker {worker_id} retired ({len(self.active)} active workers remain)"
            )
            self._maybe_complete(state)
            self._condition.notify_all()
            return True

    def status(self) -> Dict[str, Any]:
        """Snapshot of aggregator state for monitoring."""
        with self._condition:
            state = self.rounds[self.current_round]
            self._check_timeout(state)
            state = self.rounds[self.current_round]
            return {
                "current_round": state.round_id,
                "active_workers": sorted(self.active),
                "retired_workers": sorted(self.retired),
                "submitted": sorted(state.submissions),
                "waiting_for": sorted(self.active - set(state.submissions)),
                "combine": self.combine_name,
                "round_timeout": self.round_timeout,
                "rounds": {
                    rid: self.rounds[rid].status for rid in sorted(self.rounds)
                },
            }
