"""
Data models for messages and client options.
"""

from .message import Message, ConsumeResult
from .options import ClientOptions

__all__ = [
    "Message",
    "ConsumeResult",
    "ClientOptions",
]
