"""
Main worker client for POLR distributed training.

Orchestrates a worker's lifecycle: fetch the training configuration from
the coordinator, build the model and shard, run rounds until all
iterations are done, and optionally save the final model.
"""

import argparse
import asyncio
import logging
from typing import Any, Dict, Optional

from coordinator.training_config import TrainingConfig
from core.dataset import InMemoryRecordSource, create_distributed_dataset
from core.model import create_model
from core.persistence import save_model_file
from worker.config import WorkerConfig
from worker.coordinator_client import CoordinatorClient
from worker.round import WorkerRound
from worker.trainer import RoundTrainer


logger = logging.getLogger(__name__)


class WorkerClient:
    """
    Main worker client orchestrating all components.

    Manages worker lifecycle: configuration, training and shutdown.
    """

    def __init__(self, config: WorkerConfig, coordinator_client: Optional[CoordinatorClient] = None):
        """
        Initialize worker client.

        Args:
            config: Worker configuration
            coordinator_client: Optional preconfigured client (for tests)
        """
        self.config = config
        self.coordinator_client = coordinator_client or CoordinatorClient(
            coordinator_url=config.coordinator_url,
            worker_id=config.worker_id,
            timeout=config.coordinator_timeout,
            retry_attempts=config.coordinator_retry_attempts,
            retry_delay=config.coordinator_retry_delay,
            poll_interval=config.poll_interval
        )

        # Components (initialized in start())
        self.training_config: Optional[TrainingConfig] = None
        self.worker_round: Optional[WorkerRound] = None
        self.trainer: Optional[RoundTrainer] = None

        logger.info(f"Worker client initialized: {config.worker_id}")

    async def start(self):
        """
        Fetch configuration and build the model and shard.
        """
        assignment = await self.coordinator_client.get_worker_assignment()
        config = dict(assignment["config"])
        for key in ("worker_id", "rank", "world_size"):
            config.pop(key, None)
        self.training_config = TrainingConfig.from_dict(config)

        rank = self.config.rank if self.config.rank is not None else assignment["rank"]
        world_size = assignment["world_size"]
        logger.info(f"Assigned rank {rank}/{world_size}")

        samples = create_distributed_dataset(
            num_categories=self.training_config.num_categories,
            num_features=self.training_config.num_features,
            num_samples=self.config.num_samples,
            rank=rank,
            world_size=world_size,
            nnz=self.config.nnz,
            seed=self.config.seed
        )
        logger.info(f"Loaded shard with {len(samples)} records")

        model = create_model(self.training_config)
        self.worker_round = WorkerRound(
            self.config.worker_id,
            model,
            InMemoryRecordSource(samples),
            num_iterations=self.training_config.num_iterations,
            batch_size=self.training_config.batch_size
        )
        self.trainer = RoundTrainer(
            self.worker_round,
            self.coordinator_client,
            round_wait_timeout=self.config.round_wait_timeout
        )

    async def run_training(self) -> Dict[str, Any]:
        """
        Run rounds until all iterations are done.

        Returns:
            Training summary
        """
        if self.trainer is None:
            await self.start()

        results = await self.trainer.run()

        if self.config.model_path:
            save_model_file(self.worker_round.model, self.config.model_path)

        logger.info("=" * 60)
        logger.info(f"Trained records: {results['trained_records']}")
        logger.info(f"Average log-likelihood: {results['avg_log_likelihood']:.4f}")
        logger.info(f"Percent correct: {results['percent_correct']:.1f}")
        logger.info("=" * 60)
        return results

    async def stop(self):
        """Close the coordinator connection."""
        await self.coordinator_client.close()
        logger.info("Worker shutdown complete")


# Main entry point

async def main(config: Optional[WorkerConfig] = None) -> Dict[str, Any]:
    """
    Main entry point for worker client.

    Args:
        config: Optional worker configuration (creates default if None)
    """
    if config is None:
        config = WorkerConfig()

    worker = WorkerClient(config)
    try:
        return await worker.run_training()
    finally:
        await worker.stop()


def parse_args() -> WorkerConfig:
    parser = argparse.ArgumentParser(description="POLR worker")
    parser.add_argument("--config", help="Path to a WorkerConfig JSON file")
    parser.add_argument("--worker-id")
    parser.add_argument("--rank", type=int)
    parser.add_argument("--coordinator-url")
    parser.add_argument("--model-path")
    parser.add_argument("--log-level")
    args = parser.parse_args()

    config = WorkerConfig.from_json_file(args.config) if args.config else WorkerConfig()
    overrides = {
        "worker_id": args.worker_id,
        "rank": args.rank,
        "coordinator_url": args.coordinator_url,
        "model_path": args.model_path,
        "log_level": args.log_level,
    }
    for key, value in overrides.items():
        if value is not None:
            setattr(config, key, value)
    return config


if __name__ == "__main__":
    config = parse_args()

    # Configure logging
    logging.basicConfig(
        level=config.log_level,
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
    )
    asyncio.run(main(config))
