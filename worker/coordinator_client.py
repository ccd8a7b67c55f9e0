"""
Coordinator client for worker-coordinator communication.

Handles all HTTP communication with the coordinator server: fetching the
training configuration, exchanging snapshots each round, and retiring.
"""

import asyncio
import logging
from typing import Optional, Dict, Any

import httpx

from communication.serialization import (
    SnapshotFormatError,
    deserialize_snapshot,
    serialize_snapshot,
)
from coordinator.aggregator import RoundProtocolError, RoundTimeoutError
from core.snapshot import Snapshot


logger = logging.getLogger(__name__)


class TransportError(IOError):
    """The coordinator could not be reached or answered unexpectedly."""


class CoordinatorClient:
    """
    Client for communicating with the POLR coordinator.

    Implements the worker side of the round exchange: exchange() submits a
    snapshot and polls until the round's global snapshot is ready.
    """

    def __init__(
        self,
        coordinator_url: str,
        worker_id: str,
        timeout: float = 30.0,
        retry_attempts: int = 3,
        retry_delay: float = 1.0,
        poll_interval: float = 0.5,
        transport: Optional[httpx.AsyncBaseTransport] = None
    ):
        """
        Initialize coordinator client.

        Args:
            coordinator_url: URL of coordinator server
            worker_id: Unique worker identifier
            timeout: Request timeout in seconds
            retry_attempts: Number of retry attempts
            retry_delay: Base delay between retries (exponential backoff)
            poll_interval: Seconds between global snapshot polls
            transport: Optional httpx transport (e.g. ASGITransport in tests)
        """
        self.coordinator_url = coordinator_url.rstrip('/')
        self.worker_id = worker_id
        self.timeout = timeout
        self.retry_attempts = retry_attempts
        self.retry_delay = retry_delay
        self.poll_interval = poll_interval
        self.transport = transport

        # HTTP client (async)
        self._client: Optional[httpx.AsyncClient] = None

    async def _get_client(self) -> httpx.AsyncClient:
        """Get or create HTTP client."""
        if self._client is None:
            self._client = httpx.AsyncClient(timeout=self.timeout, transport=self.transport)
        return self._client

    async def close(self):
        """Close HTTP client."""
        if self._client is not None:
            await self._client.aclose()
            self._client = None

    async def __aenter__(self) -> 'CoordinatorClient':
        return self

    async def __aexit__(self, exc_type, exc, tb):
        await self.close()

    async def _request_with_retry(
        self,
        method: str,
        endpoint: str,
        **kwargs
    ) -> httpx.Response:
        """
        Make HTTP request with retry logic.

        Connection failures and 5xx responses are retried with exponential
        backoff. A 409 is a round protocol error and a 408 a round timeout;
        neither is retried. Other 4xx responses fail immediately.

        Args:
            method: HTTP method (GET, POST, etc.)
            endpoint: API endpoint (e.g., "/rounds/status")
            **kwargs: Additional arguments for httpx request

        Returns:
            HTTP response (2xx)

        Raises:
            RoundProtocolError: The coordinator rejected the request with 409
            RoundTimeoutError: The round timed out on the coordinator (408)
            TransportError: All retry attempts failed or a 4xx response
        """
        client = await self._get_client()
        url = f"{self.coordinator_url}{endpoint}"

        last_exception = None
        for attempt in range(self.retry_attempts):
            try:
                response = await client.request(method, url, **kwargs)
            except httpx.HTTPError as e:
                last_exception = e
            else:
                if response.status_code == 409:
                    raise RoundProtocolError(_detail(response))
                if response.status_code == 408:
                    raise RoundTimeoutError(_detail(response))
                if response.status_code < 400:
                    return response
                if response.status_code < 500:
                    raise TransportError(
                        f"{method} {endpoint} returned {response.status_code}: {_detail(response)}"
                    )
                last_exception = TransportError(
                    f"{method} {endpoint} returned {response.status_code}: {_detail(response)}"
                )

            if attempt < self.retry_attempts - 1:
                delay = self.retry_delay * (2 ** attempt)  # Exponential backoff
                logger.warning(
                    f"Request to {endpoint} failed (attempt {attempt + 1}/{self.retry_attempts}): "
                    f"{last_exception}. Retrying in {delay}s..."
                )
                await asyncio.sleep(delay)
            else:
                logger.error(
                    f"Request to {endpoint} failed after {self.retry_attempts} attempts: {last_exception}"
                )

        raise TransportError(str(last_exception)) from last_exception

    async def get_training_config(self) -> Dict[str, Any]:
        """
        Get global training configuration from coordinator.

        Returns:
            Training configuration dict
        """
        response = await self._request_with_retry("GET", "/training/config")
        return response.json()

    async def get_worker_assignment(self) -> Dict[str, Any]:
        """
        Get this worker's rank and configuration.

        Returns:
            Dict with worker_id, rank, world_size and config
        """
        response = await self._request_with_retry(
            "GET", f"/training/config/worker/{self.worker_id}"
        )
        return response.json()

    async def submit_snapshot(self, snapshot: Snapshot) -> bool:
        """
        Submit a snapshot for its round.

        Returns:
            True if this submission completed the round
        """
        response = await self._request_with_retry(
            "POST",
            f"/rounds/{snapshot.round_id}/snapshots",
            params={"worker_id": self.worker_id},
            content=serialize_snapshot(snapshot),
            headers={"Content-Type": "application/octet-stream"}
        )
        return bool(response.json().get("complete"))

    async def get_global(self, round_id: int) -> Optional[Snapshot]:
        """
        Fetch a round's global snapshot without waiting.

        Returns:
            Global snapshot, or None while the round is pending
        """
        response = await self._request_with_retry("GET", f"/rounds/{round_id}/global")
        if response.status_code == 202:
            return None
        try:
            return deserialize_snapshot(response.content)
        except SnapshotFormatError as e:
            raise TransportError(f"Corrupt global snapshot for round {round_id}: {e}") from e

    async def wait_for_global(self, round_id: int, timeout: Optional[float] = None) -> Snapshot:
        """
        Poll until a round's global snapshot is ready.

        Args:
            round_id: Round to wait for
            timeout: Maximum seconds to wait (None waits indefinitely)

        Returns:
            Global snapshot for the round

        Raises:
            RoundProtocolError: The round failed on the coordinator
            RoundTimeoutError: timeout expired
        """
        loop = asyncio.get_running_loop()
        deadline = None if timeout is None else loop.time() + timeout

        while True:
            snapshot = await self.get_global(round_id)
            if snapshot is not None:
                return snapshot

            if deadline is not None and loop.time() >= deadline:
                logger.error(f"Round {round_id} not complete after {timeout}s")
                raise RoundTimeoutError(f"Gave up waiting for round {round_id} after {timeout}s")

            logger.debug(f"Round {round_id} pending, polling again in {self.poll_interval}s")
            await asyncio.sleep(self.poll_interval)

    async def abort_round(self, round_id: int) -> Optional[Snapshot]:
        """
        Abort a round this worker gave up waiting for.

        Returns:
            Global snapshot if the round completed in the meantime, else None
        """
        response = await self._request_with_retry(
            "POST", f"/rounds/{round_id}/abort", params={"worker_id": self.worker_id}
        )
        if response.status_code == 204:
            return None
        return deserialize_snapshot(response.content)

    async def exchange(self, snapshot: Snapshot, timeout: Optional[float] = None) -> Snapshot:
        """
        Submit a snapshot and wait for the round's global snapshot.

        If the wait times out the round is aborted on the coordinator, so
        every worker moves on to the same next round.
        """
        await self.submit_snapshot(snapshot)
        try:
            return await self.wait_for_global(snapshot.round_id, timeout=timeout)
        except RoundTimeoutError:
            global_snapshot = await self.abort_round(snapshot.round_id)
            if global_snapshot is None:
                raise
            logger.info(f"Round {snapshot.round_id} completed while timing out, using it")
            return global_snapshot

    async def retire(self) -> bool:
        """
        Leave the round barrier after the last iteration.

        Returns:
            True if the coordinator still had this worker as active
        """
        response = await self._request_with_retry("POST", f"/workers/{self.worker_id}/retire")
        retired = bool(response.json().get("retired"))
        logger.info(f"Retired from coordinator (was active: {retired})")
        return retired

    async def get_round_status(self) -> Dict[str, Any]:
        response = await self._request_with_retry("GET", "/rounds/status")
        return response.json()


def _detail(response: httpx.Response) -> str:
    try:
        return str(response.json().get("detail", response.text))
    except ValueError:
        return response.text
