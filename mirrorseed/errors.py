"""Exception types raised by the mirror seeding pipeline."""

from __future__ import annotations


class AddressError(ValueError):
    """Raised when an address cannot be canonicalized."""


class SeedSetupError(RuntimeError):
    """Fatal failure before any write happened (e.g. a database is unreachable)."""


class SeedCancelled(Exception):
    """Raised at a batch boundary once cancellation was requested."""


class IndexRestoreError(RuntimeError):
    """Some statements closing the maintenance window failed after all were attempted."""

    def __init__(self, failed: list[str]) -> None:
        super().__init__(f"Could not restore: {', '.join(failed)}")
        self.failed = failed
