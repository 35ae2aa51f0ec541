"""
Error kinds raised by the event store.

A correlation miss (no events in the window) is not an error; the correlator
returns an empty list for it.
"""

from dataclasses import dataclass
from typing import Optional


class StoreError(Exception):
    """Base class for event store failures."""


class StoreUnavailable(StoreError):
    """The store is not connected yet, or counters have not been reconciled."""


class TransientWriteFailure(StoreError):
    """A single insert or update failed. The operation is abandoned, not retried."""


@dataclass(frozen=True)
class WriteResult:
    ok: bool
    error: Optional[StoreError] = None

    @classmethod
    def success(cls) -> "WriteResult":
        return cls(ok=True)

    @classmethod
    def failure(cls, error: StoreError) -> "WriteResult":
        return cls(ok=False, error=error)
