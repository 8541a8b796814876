from .channel import EventChannel, Subscription
from .manager import Session, SessionManager
from .runner import ConversationRunner
from .transport import SSETransport, Transport, TransportClosedError, format_sse

__all__ = [
    "ConversationRunner",
    "EventChannel",
    "SSETransport",
    "Session",
    "SessionManager",
    "Subscription",
    "Transport",
    "TransportClosedError",
    "format_sse",
]
