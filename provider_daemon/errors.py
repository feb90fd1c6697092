"""Exception types shared across the daemon."""


class DaemonError(Exception):
    """Base class for daemon errors."""


class ConfigError(DaemonError):
    """Invalid configuration or registration state. Fatal at startup."""


class TransientChainError(DaemonError):
    """Ledger read failed in a way that is expected to clear up on retry."""


class EventApplicationError(DaemonError):
    """A resource backend failed while applying an agreement event."""


class DataIntegrityError(DaemonError):
    """An event references data (offer, provider) unknown to the local store."""


class NotFoundError(DaemonError):
    """Query miss. Also used when the requester does not own the entity."""

    def __init__(self, entity: str):
        super().__init__(f"{entity} not found")
        self.entity = entity


class PipeError(DaemonError):
    """Error response with an explicit pipe status code."""

    def __init__(self, code: int, body=None):
        super().__init__(f"pipe error {code}: {body}")
        self.code = code
        self.body = body if body is not None else {}
