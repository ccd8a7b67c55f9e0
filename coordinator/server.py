"""
Coordinator server for POLR distributed training.

Provides a REST API in front of one Aggregator:
- Snapshot submission per round (raw snapshot blob in the request body)
- Global snapshot polling per round, and aborting a round a worker gave up on
- Worker retirement once a worker has finished all iterations
- Training configuration for workers to fetch on startup
"""

import argparse
import logging
import os
from typing import Optional
from contextlib import asynccontextmanager

from fastapi import FastAPI, HTTPException, Request, Response
from pydantic import BaseModel, Field
import uvicorn

from communication.serialization import (
    SnapshotFormatError,
    deserialize_snapshot,
    serialize_snapshot,
)
from coordinator.aggregator import Aggregator, RoundProtocolError, RoundTimeoutError
from coordinator.training_config import TrainingConfig


logger = logging.getLogger(__name__)

SNAPSHOT_MEDIA_TYPE = "application/octet-stream"


# Pydantic models for API

class SubmissionResponse(BaseModel):
    """Result of a snapshot submission."""
    status: str = "accepted"
    round_id: int
    worker_id: str
    complete: bool = Field(..., description="True if this submission completed the round")


class RetireResponse(BaseModel):
    """Result of a retire request."""
    worker_id: str
    retired: bool


# Global state

training_config: Optional[TrainingConfig] = None
aggregator: Optional[Aggregator] = None


def configure(config: TrainingConfig) -> Aggregator:
    """
    Install a training configuration and a fresh aggregator for it.

    Args:
        config: Training configuration (must validate)

    Returns:
        The new aggregator
    """
    global training_config, aggregator

    errors = config.validate()
    if errors:
        raise ValueError(f"Invalid training configuration: {errors}")

    training_config = config
    aggregator = Aggregator(
        config.expected_worker_ids(),
        combine=config.combine,
        round_timeout=config.round_timeout
    )
    return aggregator


# Lifespan context manager

@asynccontextmanager
async def lifespan(app: FastAPI):
    """Manage application lifespan (startup/shutdown)."""
    # Startup
    logger.info("Starting coordinator server...")
    if aggregator is None:
        config_path = os.environ.get("POLR_TRAINING_CONFIG")
        config = TrainingConfig.from_json_file(config_path) if config_path else TrainingConfig()
        configure(config)

    logger.info(
        f"Coordinator ready: {training_config.num_workers} workers, "
        f"{training_config.num_categories} categories x {training_config.num_features} features"
    )

    yield

    # Shutdown
    logger.info("Coordinator server shutdown complete")


# Create FastAPI app

app = FastAPI(
    title="POLR Coordinator",
    description="Round aggregator for parallel online logistic regression",
    version="0.1.0",
    lifespan=lifespan
)


# API Endpoints

@app.get("/")
async def root():
    """Root endpoint."""
    return {
        "service": "POLR Coordinator",
        "version": "0.1.0",
        "status": "running"
    }


@app.get("/health")
async def health():
    """Health check endpoint."""
    status = aggregator.status()
    return {
        "status": "healthy",
        "current_round": status["current_round"],
        "active_workers": len(status["active_workers"])
    }


@app.post("/rounds/{round_id}/snapshots", response_model=SubmissionResponse)
async def submit_snapshot(round_id: int, worker_id: str, request: Request):
    """
    Submit a worker's snapshot for a round.

    The request body is a serialized snapshot blob. The round id and worker
    id in the URL override the ones stored in the blob.

    Returns:
    - complete: True if this submission completed the round barrier
    """
    body = await request.body()
    try:
        snapshot = deserialize_snapshot(body)
    except SnapshotFormatError as e:
        raise HTTPException(status_code=400, detail=f"Invalid snapshot: {e}")

    snapshot = snapshot.with_round(round_id)
    try:
        complete = aggregator.submit(snapshot, worker_id=worker_id)
    except RoundProtocolError as e:
        raise HTTPException(status_code=409, detail=str(e))

    return SubmissionResponse(round_id=round_id, worker_id=worker_id, complete=complete)


@app.get("/rounds/status")
async def get_round_status():
    """Current round, active workers and per-round status."""
    return aggregator.status()


@app.get("/rounds/{round_id}/global")
async def get_global_snapshot(round_id: int):
    """
    Fetch the global snapshot for a round.

    Returns:
    - 200 with the snapshot blob once the round is complete
    - 202 while the round is still waiting for submissions
    - 409 if the round failed
    - 408 if the round timed out or was aborted
    - 404 for a round that was never opened
    """
    try:
        snapshot = aggregator.get_global(round_id)
    except KeyError:
        raise HTTPException(status_code=404, detail=f"Round {round_id} not found")
    except RoundTimeoutError as e:
        raise HTTPException(status_code=408, detail=str(e))
    except RoundProtocolError as e:
        raise HTTPException(status_code=409, detail=str(e))

    if snapshot is None:
        return Response(status_code=202)

    return Response(content=serialize_snapshot(snapshot), media_type=SNAPSHOT_MEDIA_TYPE)


@app.post("/rounds/{round_id}/abort")
async def abort_round(round_id: int, worker_id: str = ""):
    """
    Abort a round a worker gave up waiting for.

    Returns:
    - 200 with the snapshot blob if the round had already completed
    - 204 once the round has failed (now or earlier)
    - 404 for a round that was never opened
    """
    try:
        snapshot = aggregator.abort_round(round_id, worker_id)
    except KeyError:
        raise HTTPException(status_code=404, detail=f"Round {round_id} not found")

    if snapshot is None:
        return Response(status_code=204)

    return Response(content=serialize_snapshot(snapshot), media_type=SNAPSHOT_MEDIA_TYPE)


@app.post("/workers/{worker_id}/retire", response_model=RetireResponse)
async def retire_worker(worker_id: str):
    """
    Remove a worker from the round barrier.

    Workers call this once they have finished all iterations.
    """
    retired = aggregator.retire(worker_id)
    return RetireResponse(worker_id=worker_id, retired=retired)


@app.get("/training/config")
async def get_training_config():
    """
    Get current global training configuration.

    Returns the training configuration that all workers should follow.
    """
    return training_config.to_dict()


@app.get("/training/config/worker/{worker_id}")
async def get_worker_training_config(worker_id: str):
    """
    Get training configuration assignment for a specific worker.

    The rank is the worker's position in the configured worker list.
    """
    worker_ids = training_config.expected_worker_ids()
    if worker_id not in worker_ids:
        raise HTTPException(status_code=404, detail=f"Worker {worker_id} not found")

    rank = worker_ids.index(worker_id)
    return {
        "worker_id": worker_id,
        "rank": rank,
        "world_size": len(worker_ids),
        "config": training_config.get_worker_config(worker_id, rank)
    }


# Development server

def run_server(host: str = "0.0.0.0", port: int = 8000):
    """
    Run the coordinator server.

    Args:
        host: Host to bind to (default: 0.0.0.0)
        port: Port to bind to (default: 8000)
    """
    uvicorn.run(app, host=host, port=port, log_level="info")


def main():
    parser = argparse.ArgumentParser(description="POLR coordinator")
    parser.add_argument("--host", default="0.0.0.0")
    parser.add_argument("--port", type=int, default=8000)
    parser.add_argument("--config", help="Path to a TrainingConfig JSON file")
    args = parser.parse_args()

    # Configure logging
    logging.basicConfig(
        level=logging.INFO,
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
    )

    config = TrainingConfig.from_json_file(args.config) if args.config else TrainingConfig()
    configure(config)
    run_server(args.host, args.port)


if __name__ == "__main__":
    main()
