"""
Configuration for the scoring engine.
"""

from dataclasses import dataclass, field
from typing import Optional

from .anomaly.models import LikelihoodConfig


@dataclass
class EngineConfig:
    """Configuration for the anomaly scoring engine"""

    estimator_name: str = "gaussian_tail"
    likelihood: LikelihoodConfig = field(default_factory=LikelihoodConfig)

    # Max unprocessed rows pulled per metric in one pass
    batch_size: int = 1000

    # PostgreSQL settings (use env/secrets in production)
    postgres_host: str = "localhost"
    postgres_port: int = 5432
    postgres_database: str = "engine_db"
    postgres_user: str = "engine"
    postgres_password: str = "engine_password"

    # Redis settings (model checkpoints)
    redis_host: str = "localhost"
    redis_port: int = 6379
    redis_db: int = 0
    redis_password: Optional[str] = None
    checkpoint_key_prefix: str = "checkpoint"

