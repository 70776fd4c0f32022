"""Concurrency control for read-modify-write of whole blobs.

The backend offers no locks. The default policy keeps the historical
behaviour: whoever writes last wins and the earlier change is lost without
notice. ``VersionCheckedWrites`` hands the loaded version to the store so a
store that supports conditional writes rejects a stale save with
``WriteConflictError``.
"""

from typing import Protocol

from blobtables.models.session import StoreConfig


class WritePolicy(Protocol):
    def expected_version(self, loaded_version: int) -> int | None:
        """Version the store must still hold for a write to succeed, or None for no check."""
        ...


class LastWriterWins:
    def expected_version(self, loaded_version: int) -> int | None:
        return None


class VersionCheckedWrites:
    def expected_version(self, loaded_version: int) -> int | None:
        return loaded_version


def write_policy_from_config(config: StoreConfig) -> WritePolicy:
    return VersionCheckedWrites() if config.conditional_writes else LastWriterWins()


__all__ = ["WritePolicy", "LastWriterWins", "VersionCheckedWrites", "write_policy_from_config"]
