"""
CLI for scoring pending metric data.

Usage:
    python -m src.engine.run [options]
"""

import argparse
import logging
import os
import sys
import time

import structlog

from src.core.logger import setup_logging

from .anomaly.database import MetricDatabase
from .anomaly.estimator import get_estimator
from .anomaly.likelihood import AnomalyLikelihoodHelper
from .anomaly.models import LikelihoodConfig
from .anomaly.service import AnomalyService
from .config import EngineConfig
from .model_swapper.checkpoint import RedisCheckpointStore
from .model_swapper.interface import ModelSwapperInterface

logger = structlog.get_logger(__name__)


def parse_arguments():
    """Parse command-line arguments"""
    parser = argparse.ArgumentParser(
        description="Score pending metric data with anomaly likelihoods",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
        Examples:
        # Single pass over all active metrics
        python -m src.engine.run

        # Custom statistics window
        python -m src.engine.run \\
            --min-sample-size 300 \\
            --max-sample-size 2000

        # Periodic scoring (every 5 minutes)
        python -m src.engine.run --schedule 5
        """,
    )

    # Likelihood statistics
    parser.add_argument(
        "--estimator",
        default="gaussian_tail",
        choices=["gaussian_tail"],
        help="Likelihood estimator to use (default: gaussian_tail)",
    )
    parser.add_argument(
        "--min-sample-size",
        type=int,
        default=200,
        help="Samples required before likelihood statistics are built (default: 200)",
    )
    parser.add_argument(
        "--max-sample-size",
        type=int,
        default=1000,
        help="Max samples used to estimate statistics (default: 1000)",
    )
    parser.add_argument(
        "--min-refresh-interval",
        type=int,
        default=10,
        help="Min rows between statistics refreshes (default: 10)",
    )
    parser.add_argument(
        "--batch-size",
        type=int,
        default=int(os.getenv("ENGINE_BATCH_SIZE", "1000")),
        help="Max pending rows per metric per pass (default: 1000)",
    )

    # PostgreSQL settings
    parser.add_argument(
        "--postgres-host",
        default=os.getenv("POSTGRES_HOST", "localhost"),
        help="PostgreSQL host (default: localhost or POSTGRES_HOST env var)",
    )
    parser.add_argument(
        "--postgres-port",
        type=int,
        default=int(os.getenv("POSTGRES_PORT", "5432")),
        help="PostgreSQL port (default: 5432)",
    )
    parser.add_argument(
        "--postgres-db",
        default=os.getenv("POSTGRES_DB", "engine_db"),
        help="PostgreSQL database (default: engine_db)",
    )
    parser.add_argument(
        "--postgres-user",
        default=os.getenv("POSTGRES_USER", "engine"),
        help="PostgreSQL user (default: engine)",
    )
    parser.add_argument(
        "--postgres-password",
        default=os.getenv("POSTGRES_PASSWORD", "engine_password"),
        help="PostgreSQL password",
    )

    # Redis configuration
    parser.add_argument(
        "--redis-host",
        default=os.getenv("REDIS_HOST", "localhost"),
        help="Redis host for model checkpoints (default: localhost or REDIS_HOST env var)",
    )
    parser.add_argument(
        "--redis-port",
        type=int,
        default=int(os.getenv("REDIS_PORT", "6379")),
        help="Redis port (default: 6379)",
    )

    # Scheduling
    parser.add_argument(
        "--schedule",
        type=int,
        help="Run scoring periodically every N minutes (default: run once)",
    )

    # Logging
    parser.add_argument(
        "--log-level",
        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
        default=os.getenv("LOG_LEVEL", "INFO"),
        help="Logging level (default: INFO)",
    )

    return parser.parse_args()


def build_config(args) -> EngineConfig:
    """Build configuration from arguments"""
    return EngineConfig(
        estimator_name=args.estimator,
        likelihood=LikelihoodConfig(
            min_sample_size=args.min_sample_size,
            max_sample_size=args.max_sample_size,
            min_refresh_interval=args.min_refresh_interval,
        ),
        batch_size=args.batch_size,
        postgres_host=args.postgres_host,
        postgres_port=args.postgres_port,
        postgres_database=args.postgres_db,
        postgres_user=args.postgres_user,
        postgres_password=args.postgres_password,
        redis_host=args.redis_host,
        redis_port=args.redis_port,
    )


def run_once(config: EngineConfig) -> dict:
    """Run one scoring pass"""
    db = MetricDatabase(config)
    if not db.check_health():
        db.close()
        raise RuntimeError("Database health check failed")

    try:
        estimator = get_estimator(
            config.estimator_name, {"averaging_window": config.likelihood.averaging_window}
        )
        helper = AnomalyLikelihoodHelper(db, estimator=estimator, config=config.likelihood)
        swapper = ModelSwapperInterface(RedisCheckpointStore(config))
        service = AnomalyService(db, swapper, helper=helper, batch_size=config.batch_size)
        return service.run_all()
    finally:
        db.close()


def run_scheduled(config: EngineConfig, interval_minutes: int):
    """Run scoring on a schedule"""
    logger.info("Starting scheduled scoring", interval_minutes=interval_minutes)

    iteration = 0
    while True:
        iteration += 1
        logger.info("Starting scoring iteration", iteration=iteration)

        try:
            stats = run_once(config)
            logger.info("Scoring iteration completed", iteration=iteration, stats=stats)
        except Exception as e:
            logger.error("Scoring iteration failed", iteration=iteration, error=str(e))

        sleep_seconds = interval_minutes * 60
        logger.info("Sleeping until next iteration", sleep_seconds=sleep_seconds)
        time.sleep(sleep_seconds)


def main():
    """Main entry point"""
    args = parse_arguments()

    log_level = getattr(logging, args.log_level)
    setup_logging(level=log_level)

    logger.info("Starting anomaly likelihood scoring")

    try:
        config = build_config(args)

        if args.schedule:
            run_scheduled(config, args.schedule)
        else:
            stats = run_once(config)
            logger.info("Scoring completed successfully", stats=stats)

        return 0

    except KeyboardInterrupt:
        logger.info("Interrupted by user")
        return 0

    except Exception as e:
        logger.error("Scoring failed", error=str(e), exc_info=True)
        return 1


if __name__ == "__main__":
    sys.exit(main())
