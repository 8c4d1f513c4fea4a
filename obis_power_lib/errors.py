"""Custom exceptions for the OBIS power meter library."""

from typing import Sequence


class ObisPowerError(Exception):
    """Base exception for all OBIS power meter library errors."""

    pass


class InvalidOptionValue(ObisPowerError):
    """Raised when reader options or platform config hold an unsupported value."""

    pass


class TransportOpenError(ObisPowerError):
    """Raised when the reader cannot even begin a cycle (port missing, busy, etc)."""

    pass


class ReadError(ObisPowerError):
    """Raised through the reader callback when a frame cannot be read or decoded."""

    pass


class CycleTimeout(ObisPowerError):
    """Raised when no register data arrived before the cycle deadline."""

    pass


class ResolutionNotFound(ObisPowerError):
    """Raised when no active power strategy found usable registers."""

    def __init__(self, keys: Sequence[str], preview_limit: int = 20) -> None:
        self.keys = list(keys)
        preview = ", ".join(self.keys[:preview_limit])
        if len(self.keys) > preview_limit:
            preview += f", ... (+{len(self.keys) - preview_limit} more)"
        super().__init__(
            f"No active power register found. Present keys ({len(self.keys)}): "
            f"[{preview}]"
        )


class ValidationFailed(ObisPowerError):
    """Raised when the startup validation read never produced registers."""

    pass
