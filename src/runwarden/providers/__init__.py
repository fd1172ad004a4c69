"""Generation and compression capabilities, with LangChain-backed adapters."""

from runwarden.providers.base import (
    CompressionCapability,
    CompressionError,
    GenerationCapability,
    GenerationConnectionError,
    GenerationError,
    GenerationModelError,
    GenerationRateLimitError,
    ManagedMessage,
    ModelOptions,
    StepOutput,
    StepUsage,
    ToolCall,
    ToolResult,
)
from runwarden.providers.factory import create_chat_model, parse_model_string
from runwarden.providers.langchain_wrapper import LangChainCompressor, LangChainStepGenerator

__all__ = [
    "CompressionCapability",
    "CompressionError",
    "GenerationCapability",
    "GenerationConnectionError",
    "GenerationError",
    "GenerationModelError",
    "GenerationRateLimitError",
    "LangChainCompressor",
    "LangChainStepGenerator",
    "ManagedMessage",
    "ModelOptions",
    "StepOutput",
    "StepUsage",
    "ToolCall",
    "ToolResult",
    "create_chat_model",
    "parse_model_string",
]
