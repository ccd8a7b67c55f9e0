"""
Main Training Script for the POLR simulation

Simulates synchronous parallel SGD across multiple workers on a single
machine, and a single-worker baseline for comparison.
"""

import argparse
import asyncio
import logging
import time
from concurrent.futures import ThreadPoolExecutor
from typing import List, Optional

from coordinator.aggregator import Aggregator
from coordinator.training_config import TrainingConfig
from core.dataset import InMemoryRecordSource, create_synthetic_dataset, shard_samples
from core.model import GradientModel, create_model
from core.persistence import save_model_file
from core.sample import Sample
from sim.exchange import LocalExchange
from worker.metrics import RunningMetrics
from worker.round import WorkerRound
from worker.trainer import RoundTrainer

logger = logging.getLogger(__name__)


def evaluate(model: GradientModel, samples: List[Sample]) -> float:
    """Fraction of samples the model classifies correctly."""
    if not samples:
        return 0.0
    correct = sum(1 for s in samples if model.classify(s) == s.label)
    return correct / len(samples)


async def _run_workers(trainers: List[RoundTrainer]) -> List[dict]:
    # Every worker may be blocked in the aggregator barrier at once
    loop = asyncio.get_running_loop()
    with ThreadPoolExecutor(max_workers=len(trainers), thread_name_prefix="polr-worker") as executor:
        loop.set_default_executor(executor)
        return list(await asyncio.gather(*(t.run() for t in trainers)))


def train_distributed(
    config: TrainingConfig,
    num_samples: int = 1000,
    nnz: int = 5,
    seed: int = 42,
    latency_ms: float = 0.0,
    samples: Optional[List[Sample]] = None
) -> dict:
    """
    Run distributed training simulation.

    Args:
        config: Training configuration (num_workers sets the world size)
        num_samples: Synthetic dataset size (ignored when samples is given)
        nnz: Non-zero features per synthetic sample
        seed: Random seed for the synthetic dataset
        latency_ms: Simulated network latency in milliseconds
        samples: Optional dataset to use instead of synthetic data

    Returns:
        Dictionary of training results
    """
    errors = config.validate()
    if errors:
        raise ValueError(f"Invalid training configuration: {errors}")

    world_size = config.num_workers
    print(f"\n{'='*60}")
    print(f"POLR Distributed Training Simulation")
    print(f"{'='*60}")
    print(f"Model: {config.num_categories} categories x {config.num_features} features")
    print(f"Workers: {world_size}")
    print(f"Iterations: {config.num_iterations}")
    print(f"Batch size per round: {config.batch_size or 'full shard'}")
    print(f"Prior: {config.prior} (lambda={config.lambda_})")
    print(f"Combine: {config.combine}")
    print(f"Simulated latency: {latency_ms}ms")
    print(f"{'='*60}\n")

    # 1. Create dataset
    if samples is None:
        print(f"Generating dataset ({num_samples} samples)...")
        samples = create_synthetic_dataset(
            config.num_categories, config.num_features, num_samples, nnz=nnz, seed=seed
        )

    # 2. Create aggregator
    worker_ids = config.expected_worker_ids()
    aggregator = Aggregator(worker_ids, combine=config.combine, round_timeout=config.round_timeout)

    # 3. Create workers
    print(f"Initializing {world_size} workers...")
    rounds = []
    trainers = []
    for rank, worker_id in enumerate(worker_ids):
        shard = shard_samples(samples, rank, world_size)
        worker_round = WorkerRound(
            worker_id,
            create_model(config),
            InMemoryRecordSource(shard),
            num_iterations=config.num_iterations,
            batch_size=config.batch_size
        )
        rounds.append(worker_round)
        trainers.append(RoundTrainer(worker_round, LocalExchange(aggregator, worker_id, latency_ms)))
        print(f"  {worker_id}: {len(shard)} records")

    # 4. Training loop
    print(f"\nStarting training...\n")
    start_time = time.time()
    summaries = asyncio.run(_run_workers(trainers))
    total_time = time.time() - start_time

    # Every worker adopted the same final global snapshot
    model = rounds[0].model
    accuracy = evaluate(model, samples)

    # 5. Print statistics
    print(f"\n{'='*60}")
    print("Training Complete!")
    print(f"{'='*60}")
    print(f"Total time: {total_time:.2f}s")
    print(f"Rounds: {summaries[0]['rounds_completed']}")
    for summary in summaries:
        print(f"  {summary['worker_id']}: {summary['trained_records']} records, "
              f"avg LL {summary['avg_log_likelihood']:.4f}, "
              f"{summary['percent_correct']:.1f}% correct (running)")
    print(f"Training accuracy: {accuracy * 100:.1f}%")
    print(f"\n{'='*60}\n")

    return {
        'model': model,
        'summaries': summaries,
        'accuracy': accuracy,
        'total_time': total_time,
        'rounds': summaries[0]['rounds_completed'],
        'aggregator_status': aggregator.status()
    }


def train_baseline(
    config: TrainingConfig,
    num_samples: int = 1000,
    nnz: int = 5,
    seed: int = 42,
    samples: Optional[List[Sample]] = None
) -> dict:
    """
    Run single-worker training for comparison.

    Args:
        config: Training configuration (num_workers is ignored)
        num_samples: Synthetic dataset size (ignored when samples is given)
        nnz: Non-zero features per synthetic sample
        seed: Random seed for the synthetic dataset
        samples: Optional dataset to use instead of synthetic data

    Returns:
        Dictionary of training results
    """
    print(f"\n{'='*60}")
    print(f"Baseline Single-Worker Training")
    print(f"{'='*60}")
    print(f"Model: {config.num_categories} categories x {config.num_features} features")
    print(f"Iterations: {config.num_iterations}")
    print(f"{'='*60}\n")

    if samples is None:
        samples = create_synthetic_dataset(
            config.num_categories, config.num_features, num_samples, nnz=nnz, seed=seed
        )

    model = create_model(config)
    metrics = RunningMetrics()

    start_time = time.time()
    for iteration in range(config.num_iterations):
        for sample in samples:
            probabilities = model.predict(sample)
            metrics.update(model.log_likelihood(sample), int(probabilities.argmax()) == sample.label)
            model.train(sample)

        print(f"Iteration {iteration + 1}/{config.num_iterations} | "
              f"Avg LL: {metrics.avg_log_likelihood:.4f} | "
              f"Correct: {metrics.percent_correct:.1f}%")

    total_time = time.time() - start_time
    accuracy = evaluate(model, samples)

    print(f"\n{'='*60}")
    print("Training Complete!")
    print(f"{'='*60}")
    print(f"Total time: {total_time:.2f}s")
    print(f"Training accuracy: {accuracy * 100:.1f}%")
    print(f"\n{'='*60}\n")

    return {
        'model': model,
        'accuracy': accuracy,
        'total_time': total_time,
        'avg_log_likelihood': metrics.avg_log_likelihood,
        'percent_correct': metrics.percent_correct
    }


def main():
    parser = argparse.ArgumentParser(description="POLR Distributed Training Simulation")

    parser.add_argument(
        '--mode',
        type=str,
        default='distributed',
        choices=['distributed', 'baseline', 'both'],
        help='Training mode'
    )
    parser.add_argument(
        '--config',
        type=str,
        default=None,
        help='Path to a TrainingConfig JSON file (overrides the flags below)'
    )
    parser.add_argument(
        '--workers',
        type=int,
        default=4,
        help='Number of workers for distributed training'
    )
    parser.add_argument(
        '--categories',
        type=int,
        default=3,
        help='Number of target categories'
    )
    parser.add_argument(
        '--features',
        type=int,
        default=100,
        help='Feature space size'
    )
    parser.add_argument(
        '--samples',
        type=int,
        default=2000,
        help='Synthetic dataset size'
    )
    parser.add_argument(
        '--iterations',
        type=int,
        default=3,
        help='Passes over each shard'
    )
    parser.add_argument(
        '--batch-size',
        type=int,
        default=None,
        help='Records per round (default: whole shard)'
    )
    parser.add_argument(
        '--prior',
        type=str,
        default='l1',
        help='Regularization prior'
    )
    parser.add_argument(
        '--lambda',
        dest='lambda_',
        type=float,
        default=1.0e-4,
        help='Regularization strength'
    )
    parser.add_argument(
        '--lr',
        type=float,
        default=10.0,
        help='Initial learning rate'
    )
    parser.add_argument(
        '--combine',
        type=str,
        default='weighted_mean',
        choices=['weighted_mean', 'mean'],
        help='How worker snapshots are combined'
    )
    parser.add_argument(
        '--latency',
        type=float,
        default=0.0,
        help='Simulated network latency in milliseconds'
    )
    parser.add_argument(
        '--seed',
        type=int,
        default=42,
        help='Random seed'
    )
    parser.add_argument(
        '--save',
        type=str,
        default=None,
        help='Save the trained distributed model to this path'
    )

    args = parser.parse_args()

    logging.basicConfig(
        level=logging.WARNING,
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
    )

    if args.config:
        config = TrainingConfig.from_json_file(args.config)
    else:
        config = TrainingConfig(
            num_categories=args.categories,
            num_features=args.features,
            lambda_=args.lambda_,
            prior=args.prior,
            learning_rate=args.lr,
            num_iterations=args.iterations,
            num_workers=args.workers,
            batch_size=args.batch_size,
            combine=args.combine
        )

    samples = create_synthetic_dataset(
        config.num_categories, config.num_features, args.samples, seed=args.seed
    )

    # Run training
    if args.mode == 'distributed' or args.mode == 'both':
        distributed_results = train_distributed(config, samples=samples, latency_ms=args.latency)
        if args.save:
            save_model_file(distributed_results['model'], args.save)

    if args.mode == 'baseline' or args.mode == 'both':
        baseline_results = train_baseline(config, samples=samples)

    # Compare results if both were run
    if args.mode == 'both':
        print(f"\n{'='*60}")
        print("Comparison: Distributed vs Baseline")
        print(f"{'='*60}")
        print(f"Training accuracy:")
        print(f"  Distributed: {distributed_results['accuracy'] * 100:.1f}%")
        print(f"  Baseline:    {baseline_results['accuracy'] * 100:.1f}%")
        print(f"\nTraining time:")
        print(f"  Distributed: {distributed_results['total_time']:.2f}s")
        print(f"  Baseline:    {baseline_results['total_time']:.2f}s")
        print(f"\n{'='*60}\n")


if __name__ == "__main__":
    main()
