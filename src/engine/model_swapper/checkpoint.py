"""
Checkpoint storage for model definitions and running model instances.
"""

import copy
import json
from abc import ABC, abstractmethod
from typing import Optional

import redis
import structlog

from ..errors import ModelNotFound
from .inference import InferenceModel
from .models import ModelDefinition

logger = structlog.get_logger(__name__)


class CheckpointStore(ABC):
    """Keyed store of model definitions and checkpointed model instances"""

    @abstractmethod
    def load(self, model_id: str) -> InferenceModel:
        """Retrieve a model instance; raises ModelNotFound without a checkpoint"""
        pass

    @abstractmethod
    def save(self, model_id: str, model: InferenceModel) -> None:
        pass

    @abstractmethod
    def load_definition(self, model_id: str) -> Optional[ModelDefinition]:
        pass

    @abstractmethod
    def define(self, model_id: str, definition: ModelDefinition) -> None:
        """Store the model definition, replacing any previous one"""
        pass

    @abstractmethod
    def remove(self, model_id: str) -> None:
        """Remove checkpoint and definition; no-op for unknown models"""
        pass


class MemoryCheckpointStore(CheckpointStore):
    """Dict-backed checkpoint store"""

    def __init__(self):
        self._checkpoints: dict[str, dict] = {}
        self._definitions: dict[str, ModelDefinition] = {}

    def load(self, model_id: str) -> InferenceModel:
        if model_id not in self._checkpoints:
            raise ModelNotFound(f"No checkpoint for model {model_id}")
        return InferenceModel.from_dict(copy.deepcopy(self._checkpoints[model_id]))

    def save(self, model_id: str, model: InferenceModel) -> None:
        self._checkpoints[model_id] = copy.deepcopy(model.to_dict())

    def load_definition(self, model_id: str) -> Optional[ModelDefinition]:
        return self._definitions.get(model_id)

    def define(self, model_id: str, definition: ModelDefinition) -> None:
        self._definitions[model_id] = definition

    def remove(self, model_id: str) -> None:
        self._checkpoints.pop(model_id, None)
        self._definitions.pop(model_id, None)


class RedisCheckpointStore(CheckpointStore):
    """Redis-backed checkpoint store (JSON payloads)"""

    def __init__(self, config):
        try:
            self.redis = redis.Redis(
                host=config.redis_host,
                port=config.redis_port,
                db=config.redis_db,
                password=config.redis_password,
                decode_responses=True,
            )
            self.prefix = config.checkpoint_key_prefix
            self.redis.ping()
            logger.info(
                "Redis checkpoint store initialized", host=config.redis_host, port=config.redis_port
            )
        except Exception as e:
            logger.error("Failed to initialize Redis", error=str(e))
            raise

    def load(self, model_id: str) -> InferenceModel:
        key = self._make_key("model", model_id)
        data = self.redis.get(key)
        if data is None:
            raise ModelNotFound(f"No checkpoint for model {model_id}")

        logger.debug("Model checkpoint loaded", key=key)
        return InferenceModel.from_dict(json.loads(data))

    def save(self, model_id: str, model: InferenceModel) -> None:
        key = self._make_key("model", model_id)
        try:
            self.redis.set(key, json.dumps(model.to_dict()))
            logger.debug("Model checkpoint saved", key=key)
        except Exception as e:
            logger.error("Failed to save model checkpoint", key=key, error=str(e))
            raise

    def load_definition(self, model_id: str) -> Optional[ModelDefinition]:
        data = self.redis.get(self._make_key("definition", model_id))
        if data is None:
            return None
        return ModelDefinition.from_dict(json.loads(data))

    def define(self, model_id: str, definition: ModelDefinition) -> None:
        key = self._make_key("definition", model_id)
        self.redis.set(key, json.dumps(definition.to_dict()))
        logger.debug("Model definition saved", key=key)

    def remove(self, model_id: str) -> None:
        removed = self.redis.delete(
            self._make_key("model", model_id), self._make_key("definition", model_id)
        )
        logger.debug("Model checkpoint removed", model_id=model_id, keys_removed=removed)

    def _make_key(self, kind: str, model_id: str) -> str:
        """Generate Redis key"""
        return f"{self.prefix}:{kind}:{model_id}"
