"""Exception taxonomy for the engine.

Per-probe and per-connection problems are recorded as data (a CheckResult or a
cost sync result). Only infrastructure failures, mostly ``StorageError``, are
raised to the invocation boundary.
"""

from __future__ import annotations


class PulseError(Exception):
    """Base class for all engine errors."""


class StorageError(PulseError):
    """The result store could not be read or written."""


class DecryptionError(PulseError):
    """A credential envelope is malformed or failed authentication."""


class ValidationError(PulseError):
    """Input rejected before it reached the store."""


class NotFoundError(PulseError):
    def __init__(self, resource: str, identifier: str) -> None:
        super().__init__(f"{resource} not found: {identifier}")
        self.resource = resource
        self.identifier = identifier
