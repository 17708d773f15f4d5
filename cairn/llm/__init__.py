from cairn.llm.base import Provider
from cairn.llm.models import Model, ModelCatalog
from cairn.llm.registry import ProviderRegistry
from cairn.llm.types import ChatEvent, ChatRequest, ErrorEvent, ErrorKind, StopReason, ToolSpec

__all__ = [
    "ChatEvent",
    "ChatRequest",
    "ErrorEvent",
    "ErrorKind",
    "Model",
    "ModelCatalog",
    "Provider",
    "ProviderRegistry",
    "StopReason",
    "ToolSpec",
]
