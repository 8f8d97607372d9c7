"""
Model registry for the tutor chat service.

Static table of completion models with pricing and context limits.
ModelRegistry.cost is the only place token counts are turned into dollars.
"""
from dataclasses import dataclass
from typing import Dict, List, Optional

from tutor_chat.errors import UnknownModelError
from tutor_chat.logging_config import get_logger

logger = get_logger(__name__)


@dataclass(frozen=True)
class ModelConfig:
    id: str
    name: str
    description: str
    input_cost_per_1m: float  # USD per 1M tokens
    output_cost_per_1m: float  # USD per 1M tokens
    max_output_tokens: int
    context_window: int
    supports_streaming: bool = True


DEFAULT_MODEL_ID = "gpt-4o-mini"

MODELS: Dict[str, ModelConfig] = {
    "gpt-4o-mini": ModelConfig(
        id="gpt-4o-mini",
        name="GPT-4o mini",
        description="Fastest, most cost-effective. Best for high-volume chat.",
        input_cost_per_1m=0.15,
        output_cost_per_1m=0.60,
        max_output_tokens=16384,
        context_window=128000,
    ),
    "gpt-4.1-mini": ModelConfig(
        id="gpt-4.1-mini",
        name="GPT-4.1 mini",
        description="Balanced intelligence, speed, and cost.",
        input_cost_per_1m=0.40,
        output_cost_per_1m=1.60,
        max_output_tokens=32768,
        context_window=1047576,
    ),
    "gpt-4o": ModelConfig(
        id="gpt-4o",
        name="GPT-4o",
        description="Strong general reasoning for harder questions.",
        input_cost_per_1m=2.50,
        output_cost_per_1m=10.00,
        max_output_tokens=16384,
        context_window=128000,
    ),
    "gpt-4.1": ModelConfig(
        id="gpt-4.1",
        name="GPT-4.1",
        description="Most capable for long, complex course material.",
        input_cost_per_1m=2.00,
        output_cost_per_1m=8.00,
        max_output_tokens=32768,
        context_window=1047576,
    ),
}


class ModelRegistry:
    """Lookup over the model table."""

    def __init__(self, models: Optional[Dict[str, ModelConfig]] = None, default_model_id: str = DEFAULT_MODEL_ID):
        self.models = dict(models if models is not None else MODELS)
        if default_model_id not in self.models:
            raise UnknownModelError(default_model_id)
        self.default_model_id = default_model_id

    def get(self, model_id: str) -> ModelConfig:
        """Return the model for an explicit id. Unknown ids are an error."""
        model = self.models.get(model_id)
        if model is None:
            raise UnknownModelError(model_id)
        return model

    def resolve_model(self, configured_id: Optional[str]) -> ModelConfig:
        """
        Resolve the environment-level model selection.

        An unknown or empty id is not fatal: log a warning and use the default.
        """
        if configured_id and configured_id in self.models:
            return self.models[configured_id]

        logger.warning(
            f"Unknown model \"{configured_id}\", falling back to {self.default_model_id}"
        )
        return self.models[self.default_model_id]

    def list_models(self) -> List[ModelConfig]:
        return list(self.models.values())

    def cost(self, input_tokens: int, output_tokens: int, model_id: str) -> float:
        """Cost in USD for a completion on model_id."""
        if input_tokens < 0 or output_tokens < 0:
            raise ValueError(f"Token counts must be non-negative, got {input_tokens}/{output_tokens}")

        model = self.get(model_id)
        input_cost = (input_tokens / 1_000_000) * model.input_cost_per_1m
        output_cost = (output_tokens / 1_000_000) * model.output_cost_per_1m
        return input_cost + output_cost
