# Fleet Sync Error Types
# File: errors.py

"""
Exception hierarchy for the fleet state synchronization layer.
None of these are meant to escape the session: transport and protocol errors
feed the reconnect backoff, decode errors drop the frame.
"""


class FleetSyncError(Exception):
    """Base class for all fleet sync errors"""


class StompProtocolError(FleetSyncError):
    """Frame could not be parsed, or the broker sent an ERROR frame"""

    def __init__(self, message: str, headers: dict = None, body: str = ""):
        super().__init__(message)
        self.headers = headers or {}
        self.body = body


class HandshakeError(StompProtocolError):
    """CONNECT was rejected or answered with something other than CONNECTED"""


class DecodeError(FleetSyncError):
    """Inbound payload is not valid JSON or misses required fields"""

    def __init__(self, topic: str, reason: str):
        super().__init__(f"{topic}: {reason}")
        self.topic = topic
        self.reason = reason


class ConfigError(FleetSyncError):
    """Invalid configuration value"""
