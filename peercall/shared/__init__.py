"""Shared exception types used across signaling, negotiation and call layers.

Only lightweight, dependency-free definitions should live here.
"""

from .errors import (
    CallError,
    InvalidInput,
    CallInProgress,
    MediaAccessError,
    SignalingConnectionError,
    NegotiationError,
    ProtocolViolation,
    RemoteSignaled,
)

__all__ = [
    "CallError",
    "InvalidInput",
    "CallInProgress",
    "MediaAccessError",
    "SignalingConnectionError",
    "NegotiationError",
    "ProtocolViolation",
    "RemoteSignaled",
]
