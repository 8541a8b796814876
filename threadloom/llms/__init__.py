from .errors import ProviderErrorKind, classify_provider_error, describe_provider_error
from .llm import (
    LangChainProvider,
    ProviderAdapter,
    ToolCall,
    ToolSpec,
    TurnResult,
    TurnUsage,
    to_langchain_messages,
)

__all__ = [
    "LangChainProvider",
    "ProviderAdapter",
    "ProviderErrorKind",
    "ToolCall",
    "ToolSpec",
    "TurnResult",
    "TurnUsage",
    "classify_provider_error",
    "describe_provider_error",
    "to_langchain_messages",
]
