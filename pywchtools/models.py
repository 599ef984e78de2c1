"""Result models for sync operations."""

from dataclasses import dataclass, field
from typing import Any, Optional

from .exceptions import WchSyncError


@dataclass
class ItemFailure:
    """An item that could not be synced."""

    name: str
    error: Exception
    will_retry: bool = False

    def __str__(self) -> str:
        return f"{self.name}: {self.error}"


@dataclass
class SyncResult:
    """Outcome of a bulk push, pull or delete.

    A run succeeds as a whole when at least one item succeeded or there was
    nothing to do.
    """

    succeeded: list[dict[str, Any]] = field(default_factory=list)
    failed: list[ItemFailure] = field(default_factory=list)
    passes: int = 0
    local_only: list[dict[str, Any]] = field(default_factory=list)
    """Local items with no remote counterpart (pull with deletions)"""

    @property
    def ok(self) -> bool:
        return bool(self.succeeded) or not self.failed

    def raise_if_failed(self, operation: str = "sync") -> None:
        """Raise WchSyncError if no item succeeded and some failed."""
        if not self.ok:
            raise WchSyncError(
                f"{operation} failed for all {len(self.failed)} item(s)",
                failures=list(self.failed),
            )


@dataclass
class CompareResult:
    """Differences between two item sets (local folders or services)."""

    added: list[str] = field(default_factory=list)
    """Items only present in the source"""

    removed: list[str] = field(default_factory=list)
    """Items only present in the target"""

    changed: dict[str, list[str]] = field(default_factory=dict)
    """Items present in both but different, with the differing keys"""

    equal: list[str] = field(default_factory=list)

    @property
    def diff_count(self) -> int:
        return len(self.added) + len(self.removed) + len(self.changed)

    @property
    def total_count(self) -> int:
        return self.diff_count + len(self.equal)


@dataclass
class SessionInfo:
    """Authenticated session details returned by the login endpoint."""

    base_url: str
    tenant_id: Optional[str] = None
    username: Optional[str] = None
    raw: dict[str, Any] = field(default_factory=dict)
