"""
Per-model command processor.

Handles define / run-inference / delete for a single model id. The model
instance is loaded lazily on the first input row: from its checkpoint if one
exists, otherwise built fresh from the stored model definition.
"""

from typing import Optional

import structlog

from ..errors import ModelNotFound
from .checkpoint import CheckpointStore
from .encoder import InputRowEncoder
from .inference import InferenceModel, create_model
from .models import ModelCommand, ModelDefinition, ModelInferenceResult, ModelInputRow

logger = structlog.get_logger(__name__)


class ModelRunner:
    """Runs commands and input rows for one model id

    The loaded model is owned exclusively by this runner; the caller must
    route all rows of a model id to a single runner.
    """

    def __init__(self, model_id: str, checkpoint_store: CheckpointStore):
        self.model_id = model_id
        self.checkpoint_store = checkpoint_store
        self.model: Optional[InferenceModel] = None
        self.has_checkpoint = False
        self._input_row_encoder: Optional[InputRowEncoder] = None
        self._encoder_schema = None

    def define_model(self, command: ModelCommand) -> ModelInferenceResult:
        """Handle the "defineModel" command"""
        definition: ModelDefinition = command.args
        self.checkpoint_store.define(self.model_id, definition)
        logger.info(
            "Model defined",
            model_id=self.model_id,
            model=definition.model_params.get("model", "running_zscore"),
            fields=len(definition.input_schema),
        )
        return ModelInferenceResult(command_id=command.command_id, status=0)

    def process_input_row(self, row: ModelInputRow) -> ModelInferenceResult:
        """Run inference for one input row

        Raises:
            ModelNotFound: if the model has neither a checkpoint nor a definition
        """
        if self.model is None:
            self._load_model()

        self._input_row_encoder.append_record(row.data)
        record = self._input_row_encoder.get_next_record_dict()

        inferences = self.model.run(record)

        return ModelInferenceResult(
            row_id=row.row_id,
            raw_anomaly_score=float(inferences["anomaly_score"]),
            status=0,
        )

    def delete_model(self, command: ModelCommand) -> ModelInferenceResult:
        """Handle the "deleteModel" command"""
        self.checkpoint_store.remove(self.model_id)
        self.model = None
        self.has_checkpoint = False
        self._input_row_encoder = None
        self._encoder_schema = None
        logger.info("Model deleted", model_id=self.model_id)
        return ModelInferenceResult(command_id=command.command_id, status=0)

    def checkpoint(self) -> bool:
        """Save the loaded model; returns False if nothing was loaded"""
        if self.model is None:
            return False
        self.checkpoint_store.save(self.model_id, self.model)
        self.has_checkpoint = True
        logger.debug("Model checkpointed", model_id=self.model_id)
        return True

    def close(self) -> None:
        """Checkpoint and release the model"""
        self.checkpoint()
        self.model = None

    def _load_model(self) -> None:
        """Load the model and construct the input row encoder"""
        definition = None
        try:
            self.model = self.checkpoint_store.load(self.model_id)
            self.has_checkpoint = True
            logger.debug("Model loaded from checkpoint", model_id=self.model_id)
        except ModelNotFound:
            # No checkpoint yet; build the model from its definition
            self.has_checkpoint = False
            definition = self._load_definition()
            model = create_model(definition.model_params)
            model.enable_learning()
            model.enable_inference(definition.inference_args)
            self.model = model
            logger.info("Model created from definition", model_id=self.model_id, model=model.name)

        if definition is None:
            definition = self._load_definition()

        schema = (definition.input_schema, definition.aggregation_period)
        if self._input_row_encoder is None or schema != self._encoder_schema:
            self._input_row_encoder = InputRowEncoder(
                definition.input_schema, aggregation_period=definition.aggregation_period
            )
            self._encoder_schema = schema

    def _load_definition(self) -> ModelDefinition:
        definition = self.checkpoint_store.load_definition(self.model_id)
        if definition is None:
            raise ModelNotFound(f"Model {self.model_id} has no checkpoint and no definition")
        return definition
