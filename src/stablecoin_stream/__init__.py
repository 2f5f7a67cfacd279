"""
Stablecoin stream package.

Real-time monitor of stablecoin Transfer events with a durable Redis
stream and a WebSocket fanout to live subscribers.
"""

from .config import ServiceConfig
from .fanout import ConnectionFanout
from .models import DecodedTransfer, Token, TransferMessage
from .service import StreamService

__all__ = [
    "ServiceConfig",
    "StreamService",
    "ConnectionFanout",
    "DecodedTransfer",
    "Token",
    "TransferMessage",
]
__version__ = "0.1.0"
