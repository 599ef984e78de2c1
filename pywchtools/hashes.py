"""Local change tracking for mirrored artifacts.

The hash tracker remembers, per artifact folder and tenant, the revision and
content digest of every item at the time it was last pulled or pushed. This
allows push/pull of only the items that changed since then, and detection of
renamed items whose file path moved.
"""

import json
import logging
import os
import threading
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Optional

from .utils import calculate_md5, relative_posix

logger = logging.getLogger(__name__)

HASHES_FILE_NAME = ".wchtoolshashes"
LEGACY_HASHES_FILE_NAME = ".dxhashes"

LAST_PULL_KEY = "lastPullTimestamp"
ITEMS_KEY = "items"


@dataclass
class HashEntry:
    """Tracked state of one item."""

    id: str
    path: str
    """File path relative to the artifact folder, forward slashes"""

    md5: Optional[str] = None
    rev: Optional[str] = None
    last_modified: Optional[str] = None
    """Remote lastModified of the item"""

    local_last_modified: Optional[float] = None
    """File mtime when the entry was recorded"""

    def to_dict(self) -> dict:
        """Convert entry to dictionary for JSON serialization."""
        return {
            "id": self.id,
            "path": self.path,
            "md5": self.md5,
            "rev": self.rev,
            "lastModified": self.last_modified,
            "localLastModified": self.local_last_modified,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "HashEntry":
        """Create HashEntry from dictionary."""
        return cls(
            id=data.get("id", ""),
            path=data.get("path", ""),
            md5=data.get("md5"),
            rev=data.get("rev"),
            last_modified=data.get("lastModified"),
            local_last_modified=data.get("localLastModified"),
        )


class HashTracker:
    """Persists item hashes for one artifact folder.

    All mutations are serialized through :attr:`lock`, which callers may also
    hold around a larger critical section (rename handling + file write +
    hash update) so concurrent pushes never lose updates.
    """

    def __init__(self, base_dir: Path, tenant_key: str, enabled: bool = True):
        """Initialize the tracker.

        Args:
            base_dir: Artifact folder the tracked paths are relative to
            tenant_key: Key separating the entries of different tenants
            enabled: When False every operation is a no-op
        """
        self.base_dir = Path(base_dir)
        self.tenant_key = tenant_key
        self.enabled = enabled
        self.lock = threading.RLock()
        self._data: Optional[dict[str, Any]] = None

    @classmethod
    def for_context(cls, context: Any, base_dir: Path, service: str) -> "HashTracker":
        """Get the tracker for an artifact folder, shared within a context.

        Args:
            context: SyncContext owning the tracker cache
            base_dir: Artifact folder
            service: Artifact type name used to resolve the use_hashes option

        Returns:
            HashTracker instance
        """
        key = str(Path(base_dir).resolve())
        with context.lock:
            tracker = context.hash_trackers.get(key)
            if tracker is None:
                tenant_key = context.tenant_id or context.base_url or "default"
                enabled = bool(context.get_option("use_hashes", service))
                tracker = cls(Path(base_dir), tenant_key, enabled)
                context.hash_trackers[key] = tracker
        return tracker

    @property
    def file_path(self) -> Path:
        return self.base_dir / HASHES_FILE_NAME

    def _load_all(self) -> dict[str, Any]:
        path = self.file_path
        legacy = self.base_dir / LEGACY_HASHES_FILE_NAME
        if not path.exists() and legacy.exists():
            try:
                legacy.rename(path)
                logger.debug(f"Renamed legacy hashes file {legacy} to {path}")
            except OSError as e:
                logger.warning(f"Failed to rename legacy hashes file {legacy}: {e}")
                path = legacy
        if not path.exists():
            return {}
        try:
            with open(path, encoding="utf-8") as f:
                data = json.load(f)
        except (OSError, json.JSONDecodeError) as e:
            logger.warning(f"Failed to load hashes from {path}: {e}")
            return {}
        return data if isinstance(data, dict) else {}

    def _tenant(self) -> dict[str, Any]:
        if self._data is None:
            self._data = self._load_all()
        tenant = self._data.setdefault(self.tenant_key, {})
        tenant.setdefault(ITEMS_KEY, {})
        return tenant

    def _save(self) -> None:
        self.base_dir.mkdir(parents=True, exist_ok=True)
        tmp_path = self.file_path.with_name(self.file_path.name + ".tmp")
        try:
            with open(tmp_path, "w", encoding="utf-8") as f:
                json.dump(self._data, f, indent=2)
            os.replace(tmp_path, self.file_path)
        except OSError as e:
            logger.warning(f"Failed to save hashes to {self.file_path}: {e}")

    def _relative(self, file_path: Path) -> str:
        return relative_posix(Path(file_path), self.base_dir)

    def update(self, file_path: Path, item: dict[str, Any]) -> None:
        """Record the current state of an item's file.

        Any other entry pointing at the same path is dropped, so each path
        maps to exactly one item.

        Args:
            file_path: Absolute path of the item file just written or pushed
            item: Item as known remotely
        """
        if not self.enabled or not item.get("id"):
            return
        file_path = Path(file_path)
        relative = self._relative(file_path)
        try:
            md5 = calculate_md5(file_path)
            mtime = file_path.stat().st_mtime
        except OSError as e:
            logger.warning(f"Failed to hash {file_path}: {e}")
            return
        entry = HashEntry(
            id=item["id"],
            path=relative,
            md5=md5,
            rev=item.get("rev"),
            last_modified=item.get("lastModified"),
            local_last_modified=mtime,
        )
        with self.lock:
            items = self._tenant()[ITEMS_KEY]
            for stale_id in [
                key
                for key, value in items.items()
                if value.get("path") == relative and key != entry.id
            ]:
                del items[stale_id]
            items[entry.id] = entry.to_dict()
            self._save()

    def get_entry(self, item_id: str) -> Optional[HashEntry]:
        """Get the tracked entry for an item id."""
        if not self.enabled:
            return None
        with self.lock:
            data = self._tenant()[ITEMS_KEY].get(item_id)
        return HashEntry.from_dict(data) if data else None

    def get_entry_for_path(self, file_path: Path) -> Optional[HashEntry]:
        """Get the tracked entry whose path matches a file."""
        if not self.enabled:
            return None
        relative = self._relative(file_path)
        with self.lock:
            for data in self._tenant()[ITEMS_KEY].values():
                if data.get("path") == relative:
                    return HashEntry.from_dict(data)
        return None

    def get_file_path(self, item_id: str) -> Optional[Path]:
        """Get the absolute file path last recorded for an item."""
        entry = self.get_entry(item_id)
        if entry is None or not entry.path:
            return None
        return self.base_dir / entry.path

    def set_file_path(self, item_id: str, file_path: Path) -> None:
        """Point an existing entry at a new file (after a move)."""
        if not self.enabled:
            return
        with self.lock:
            items = self._tenant()[ITEMS_KEY]
            if item_id in items:
                items[item_id]["path"] = self._relative(file_path)
                self._save()

    def remove(self, item_ids: list[str]) -> None:
        """Forget the given items."""
        if not self.enabled:
            return
        with self.lock:
            items = self._tenant()[ITEMS_KEY]
            removed = [item_id for item_id in item_ids if items.pop(item_id, None)]
            if removed:
                self._save()

    def list_entries(self) -> list[HashEntry]:
        """List all tracked entries for the tenant."""
        if not self.enabled:
            return []
        with self.lock:
            values = list(self._tenant()[ITEMS_KEY].values())
        return [HashEntry.from_dict(data) for data in values]

    def get_last_pull_timestamp(self) -> dict[str, Optional[str]]:
        """Get the last successful pull timestamps as {"ready": ..., "draft": ...}."""
        if not self.enabled:
            return {"ready": None, "draft": None}
        with self.lock:
            value = self._tenant().get(LAST_PULL_KEY)
        if isinstance(value, str):
            # Older files stored a single timestamp for both statuses
            return {"ready": value, "draft": value}
        value = value or {}
        return {"ready": value.get("ready"), "draft": value.get("draft")}

    def set_last_pull_timestamp(self, timestamps: dict[str, Optional[str]]) -> None:
        """Store last pull timestamps; unset statuses keep their old value."""
        if not self.enabled:
            return
        with self.lock:
            tenant = self._tenant()
            current = self.get_last_pull_timestamp()
            current.update({k: v for k, v in timestamps.items() if v})
            tenant[LAST_PULL_KEY] = current
            self._save()

    def is_local_modified(
        self, file_path: Path, new: bool = True, modified: bool = True
    ) -> bool:
        """Check whether a local file changed since it was last synced.

        Args:
            file_path: Absolute path of the item file
            new: Report files that are not tracked at all
            modified: Report tracked files whose content changed

        Returns:
            True if the file matches one of the requested flags
        """
        if not self.enabled:
            return True
        entry = self.get_entry_for_path(file_path)
        if entry is None:
            return new
        if not modified:
            return False
        try:
            mtime = Path(file_path).stat().st_mtime
            if entry.local_last_modified is not None and mtime == entry.local_last_modified:
                return False
            return calculate_md5(Path(file_path)) != entry.md5
        except OSError:
            return False

    def is_remote_modified(
        self, item: dict[str, Any], new: bool = True, modified: bool = True
    ) -> bool:
        """Check whether a remote item changed since it was last synced.

        Args:
            item: Remote item (must carry id and rev)
            new: Report items that are not tracked at all
            modified: Report tracked items whose revision changed

        Returns:
            True if the item matches one of the requested flags
        """
        if not self.enabled:
            return True
        entry = self.get_entry(item.get("id", ""))
        if entry is None:
            return new
        return modified and entry.rev != item.get("rev")
