from chatsync.realtime.connection_manager import ConnectionContext, ConnectionManager
from chatsync.realtime.protocol import ProtocolError, event_frame, parse_command

__all__ = [
    "ConnectionContext",
    "ConnectionManager",
    "ProtocolError",
    "event_frame",
    "parse_command",
]
