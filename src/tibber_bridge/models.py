"""Shared enums for the live feed and its consumers."""

from enum import Enum, IntEnum


class ConnectionState(IntEnum):
    """Connection status of the live subscription."""
    UNKNOWN = -1
    DISCONNECTED = 0
    WAITING = 1
    CONNECTING = 2
    CONNECTED = 100


class FeedEvent(Enum):
    """Lifecycle events emitted by the live feed."""
    CONNECTING = "connecting"
    CONNECTION_TIMEOUT = "connection_timeout"
    CONNECTED = "connected"
    CONNECTION_ACK = "connection_ack"
    HEARTBEAT_TIMEOUT = "heartbeat_timeout"
    HEARTBEAT_RECONNECT = "heartbeat_reconnect"
    DISCONNECTED = "disconnected"
    DATA = "data"
    ERROR = "error"


class Notification(Enum):
    """Notifications published by the live ingest connection."""
    STATUS = "status"
    PROCESSED = "data-processed"
    ERROR = "error"
