"""Agent module - Receives upload commands and pushes files to object storage."""

from pullagent.agent.connection import AgentConnection
from pullagent.agent.retry import retry_with_backoff
from pullagent.agent.runner import InFlightSet, TransferRunner
from pullagent.agent.uploader import StreamingUploader, UploadError, UploadResult

__all__ = [
    "AgentConnection",
    "InFlightSet",
    "StreamingUploader",
    "TransferRunner",
    "UploadError",
    "UploadResult",
    "retry_with_backoff",
]
