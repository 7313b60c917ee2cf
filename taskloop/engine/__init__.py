"""TaskLoop: an autonomous coding-assistant task orchestration engine."""
from .models import (
    ApprovalDecision,
    ApprovalPolicy,
    AskResponse,
    ContentBlock,
    HistoryItem,
    HostSettings,
    Message,
    MessageRole,
    Observation,
    TaskPhase,
    TaskState,
    ToolCall,
    ToolName,
)
from .config import EngineConfig, ModelInfo
from .errors import (
    AdapterError,
    CapabilityUnavailableError,
    ConfigError,
    InvalidTransitionError,
    InvariantViolationError,
    TaskAbortedError,
    TaskLoopError,
    ToolCallParseError,
    TransportError,
)

__all__ = [
    # Core session (lazy import to avoid circular deps)
    "TaskSession",
    "Capabilities",
    # Models
    "ApprovalDecision",
    "ApprovalPolicy",
    "AskResponse",
    "ContentBlock",
    "HistoryItem",
    "HostSettings",
    "Message",
    "MessageRole",
    "Observation",
    "TaskPhase",
    "TaskState",
    "ToolCall",
    "ToolName",
    # Config
    "EngineConfig",
    "ModelInfo",
    # YAML config (lazy import)
    "TaskLoopConfig",
    "load_yaml_config",
    # Providers (lazy import)
    "ApiClient",
    "AnthropicProvider",
    # Errors
    "AdapterError",
    "CapabilityUnavailableError",
    "ConfigError",
    "InvalidTransitionError",
    "InvariantViolationError",
    "TaskAbortedError",
    "TaskLoopError",
    "ToolCallParseError",
    "TransportError",
]


def __getattr__(name: str):
    if name == "TaskSession":
        from .task_session import TaskSession
        return TaskSession
    if name == "Capabilities":
        from .capabilities import Capabilities
        return Capabilities
    if name == "TaskLoopConfig":
        from .yaml_config import TaskLoopConfig
        return TaskLoopConfig
    if name == "load_yaml_config":
        from .yaml_config import load_yaml_config
        return load_yaml_config
    if name == "ApiClient":
        from .providers.base import ApiClient
        return ApiClient
    if name == "AnthropicProvider":
        from .providers.anthropic_provider import AnthropicProvider
        return AnthropicProvider
    raise AttributeError(f"module {__name__!r} has no attribute {name!r}")
