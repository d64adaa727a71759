"""
LAN Chat error types.

Every failure the network core surfaces to the Session Coordinator is one
of these; the presentation bridge maps them onto HTTP status codes.
"""

from typing import Any, Optional


class LanChatError(Exception):
    def __init__(self, code: str, message: str, details: Optional[dict[str, Any]] = None):
        super().__init__(message)
        self.code = code
        self.details = details


class DiscoveryError(LanChatError):
    def __init__(self, message: str):
        super().__init__("discovery_error", message)


class RelayError(LanChatError):
    def __init__(self, message: str):
        super().__init__("relay_error", message)


class ConnectionFailed(LanChatError):
    def __init__(self, message: str, details: Optional[dict[str, Any]] = None):
        super().__init__("connection_failed", message, details)


class DeliveryError(LanChatError):
    def __init__(self, message: str, details: Optional[dict[str, Any]] = None):
        super().__init__("delivery_failed", message, details)


class StateError(LanChatError):
    def __init__(self, message: str):
        super().__init__("invalid_state", message)
