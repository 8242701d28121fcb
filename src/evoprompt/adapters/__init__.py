"""
Collaborator implementations backed by hosted models.
"""

from .litellm_adapter import LiteLLMEmbeddingProvider, LiteLLMEvaluator, LiteLLMVariantGenerator, ModelConfig

__all__ = ["LiteLLMEmbeddingProvider", "LiteLLMEvaluator", "LiteLLMVariantGenerator", "ModelConfig"]
