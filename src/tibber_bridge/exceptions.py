"""Exception hierarchy for the bridge."""


class BridgeError(Exception):
    """Base class for all bridge errors."""


class ConfigurationError(BridgeError):
    """A mandatory setting is missing or invalid."""


class StorageConnectionError(BridgeError):
    """The storage backend could not be reached at startup."""


class TibberQueryError(BridgeError):
    """The Tibber GraphQL API answered with errors."""

    def __init__(self, message: str, errors=None):
        super().__init__(message)
        self.errors = errors or []
