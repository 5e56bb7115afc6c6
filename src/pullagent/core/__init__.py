"""Core module - Shared messages, channel abstractions, config and types."""

from pullagent.core.channel import (
    AgentChannel,
    ChannelError,
    CommandChannel,
    InMemoryChannel,
    Subscription,
)
from pullagent.core.config import AgentConfig, OrchestratorConfig
from pullagent.core.messages import (
    CompleteEvent,
    FailedEvent,
    UploadCommand,
    encode_message,
    parse_command,
    parse_event,
)
from pullagent.core.sanitize import build_object_key, is_valid_agent_id, sanitize_filename
from pullagent.core.types import FailureCategory, TransferStatus

__all__ = [
    # Channel
    "AgentChannel",
    "ChannelError",
    "CommandChannel",
    "InMemoryChannel",
    "Subscription",
    # Config
    "AgentConfig",
    "OrchestratorConfig",
    # Messages
    "CompleteEvent",
    "FailedEvent",
    "UploadCommand",
    "encode_message",
    "parse_command",
    "parse_event",
    # Sanitize
    "build_object_key",
    "is_valid_agent_id",
    "sanitize_filename",
    # Types
    "FailureCategory",
    "TransferStatus",
]
