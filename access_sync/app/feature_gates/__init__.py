"""Lock decisions for content viewers."""
from .context import AccessGate, LockStatus, format_time_left, welcome_message
from .preview import PlaybackGuard, PreviewLockTimer, PreviewPhase, PreviewSession, PreviewTicker

__all__ = [
    "AccessGate",
    "LockStatus",
    "PlaybackGuard",
    "PreviewLockTimer",
    "PreviewPhase",
    "PreviewSession",
    "PreviewTicker",
    "format_time_left",
    "welcome_message",
]
