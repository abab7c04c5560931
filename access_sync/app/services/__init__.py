"""Backend I/O and the consumer-facing access service."""
from .access import AccessService
from .approval_polling import ApprovalPoller, ApprovalWatch
from .backend_client import AccessBackendClient
from .exceptions import AccessBackendError
from .live_updates import LiveUpdateChannel, LiveUpdateHub, PushMessage, SSEPushTransport, parse_event_stream

__all__ = [
    "AccessBackendClient",
    "AccessBackendError",
    "AccessService",
    "ApprovalPoller",
    "ApprovalWatch",
    "LiveUpdateChannel",
    "LiveUpdateHub",
    "PushMessage",
    "SSEPushTransport",
    "parse_event_stream",
]
