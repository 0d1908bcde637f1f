"""
Synchronous command facade in front of ModelRunner.

A message bus would sit between this facade and the runners; here each call
is dispatched directly to a runner for the model id.
"""

from typing import Optional, Sequence

import structlog

from .checkpoint import CheckpointStore
from .models import ModelCommand, ModelDefinition, ModelInferenceResult, ModelInputRow
from .runner import ModelRunner

logger = structlog.get_logger(__name__)


class ModelSwapperInterface:
    """Connects the application layer to model runners"""

    def __init__(self, checkpoint_store: CheckpointStore):
        self.checkpoint_store = checkpoint_store

    def define_model(
        self, model_id: str, definition: ModelDefinition, command_id: Optional[str] = None
    ) -> ModelInferenceResult:
        command = self._make_command("defineModel", model_id, definition, command_id)
        return self._runner(model_id).define_model(command)

    def submit_requests(
        self, model_id: str, rows: Sequence[ModelInputRow]
    ) -> list[ModelInferenceResult]:
        """Run input rows through the model and checkpoint it afterwards"""
        runner = self._runner(model_id)
        results = [runner.process_input_row(row) for row in rows]
        runner.close()

        logger.debug("Processed input rows", model_id=model_id, rows=len(results))
        return results

    def delete_model(self, model_id: str, command_id: Optional[str] = None) -> ModelInferenceResult:
        command = self._make_command("deleteModel", model_id, None, command_id)
        return self._runner(model_id).delete_model(command)

    def _runner(self, model_id: str) -> ModelRunner:
        return ModelRunner(model_id, self.checkpoint_store)

    @staticmethod
    def _make_command(method, model_id, args, command_id) -> ModelCommand:
        if command_id is None:
            return ModelCommand(method=method, model_id=model_id, args=args)
        return ModelCommand(method=method, model_id=model_id, args=args, command_id=command_id)
