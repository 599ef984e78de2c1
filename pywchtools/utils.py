"""Utility functions for wchtools."""

import asyncio
import base64
import hashlib
import logging
import os
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Awaitable, Callable, Iterable, Optional, TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")
R = TypeVar("R")

# =============================================================================
# Constants
# =============================================================================

# Replacement for characters that are not valid in file names on all platforms
NAME_SEPARATOR_REPLACEMENT: str = "_sep_"

# Keys that never count as a difference between a local and a remote item
DEFAULT_IGNORE_KEYS: frozenset = frozenset(
    {
        "rev",
        "created",
        "creator",
        "creatorId",
        "lastModified",
        "lastModifier",
        "lastModifierId",
        "systemModified",
        "links",
        "types",
        "categories",
        "publishing",
        "hierarchicalPath",
    }
)


# =============================================================================
# File name utilities
# =============================================================================


def get_valid_file_name(name: str) -> str:
    """Convert an item id or name into a portable file name.

    Args:
        name: Item id or name (e.g., "default:draft")

    Returns:
        File name with separators replaced (e.g., "default_sep_draft")

    Examples:
        >>> get_valid_file_name("default:draft")
        'default_sep_draft'
    """
    return name.replace(":", NAME_SEPARATOR_REPLACEMENT)


def is_valid_file_path(path: Optional[str]) -> bool:
    """Check that a path derived from an item is safe to write locally.

    Args:
        path: Candidate relative path

    Returns:
        False for empty paths, URLs and paths escaping the artifact folder
    """
    if not path:
        return False
    lowered = path.lower()
    if "http:" in lowered or "https:" in lowered:
        return False
    parts = Path(path.lstrip("/")).parts
    return ".." not in parts


def remove_empty_parent_directories(base_dir: Path, path: Path) -> None:
    """Remove empty directories between a removed file and a base directory.

    Args:
        base_dir: Directory that is never removed
        path: File or directory whose parents should be pruned
    """
    base_dir = base_dir.resolve()
    parent = path.parent.resolve()
    while parent != base_dir and base_dir in parent.parents:
        try:
            parent.rmdir()
        except OSError:
            # Not empty (or already gone)
            break
        logger.debug(f"Removed empty directory {parent}")
        parent = parent.parent


def relative_posix(path: Path, base_dir: Path) -> str:
    """Return ``path`` relative to ``base_dir`` with forward slashes."""
    return Path(os.path.relpath(path, base_dir)).as_posix()


# =============================================================================
# Hash and timestamp utilities
# =============================================================================


def calculate_md5(path: Path) -> str:
    """Calculate the base64-encoded MD5 digest of a file.

    Args:
        path: File to hash

    Returns:
        Base64-encoded MD5 digest
    """
    md5 = hashlib.md5()
    with open(path, "rb") as f:
        for chunk in iter(lambda: f.read(65536), b""):
            md5.update(chunk)
    return base64.b64encode(md5.digest()).decode("ascii")


def parse_iso_timestamp(timestamp_str: Optional[str]) -> Optional[datetime]:
    """Parse an ISO timestamp as returned by the authoring API.

    Args:
        timestamp_str: ISO format timestamp (e.g., "2025-01-15T10:30:00.000Z")

    Returns:
        Timezone-aware datetime (UTC assumed if no offset) or None
    """
    if not timestamp_str:
        return None
    try:
        if timestamp_str.endswith("Z"):
            timestamp_str = timestamp_str[:-1] + "+00:00"
        dt = datetime.fromisoformat(timestamp_str)
    except (ValueError, TypeError, AttributeError):
        return None
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt


def format_iso_timestamp(dt: datetime) -> str:
    """Format a datetime the way the authoring API expects in queries."""
    dt = dt.astimezone(timezone.utc)
    return dt.strftime("%Y-%m-%dT%H:%M:%S.") + f"{dt.microsecond // 1000:03d}Z"


def oldest_timestamp(timestamps: Iterable[Optional[str]]) -> Optional[str]:
    """Return the oldest of several ISO timestamps, ignoring unset ones."""
    parsed = [
        (dt, ts)
        for ts in timestamps
        if ts
        for dt in [parse_iso_timestamp(ts)]
        if dt is not None
    ]
    if not parsed:
        return None
    return min(parsed, key=lambda pair: pair[0])[1]


# =============================================================================
# Item utilities
# =============================================================================


def diff_items(
    first: dict[str, Any],
    second: dict[str, Any],
    ignore_keys: Iterable[str] = DEFAULT_IGNORE_KEYS,
) -> list[str]:
    """List the top-level keys whose values differ between two items.

    Args:
        first: First item
        second: Second item
        ignore_keys: Keys excluded from the comparison

    Returns:
        Sorted list of differing keys (empty when the items match)
    """
    ignored = set(ignore_keys)
    keys = (set(first) | set(second)) - ignored
    return sorted(key for key in keys if first.get(key) != second.get(key))


def clone_opts(opts: Optional[dict[str, Any]], **overrides: Any) -> dict[str, Any]:
    """Copy call options, applying overrides without touching the original."""
    cloned = dict(opts or {})
    cloned.update(overrides)
    return cloned


# =============================================================================
# Concurrency utilities
# =============================================================================


async def throttled_map(
    func: Callable[[T], Awaitable[R]],
    items: list[T],
    limit: int,
) -> list[Any]:
    """Run ``func`` over ``items`` with bounded concurrency.

    Items are started strictly in list order. Exceptions are returned in
    place of results instead of being raised.

    Args:
        func: Coroutine function applied to each item
        items: Items to process
        limit: Maximum number of concurrent calls (at least 1)

    Returns:
        Results (or exceptions) in the same order as ``items``
    """
    results: list[Any] = [None] * len(items)
    queue: asyncio.Queue = asyncio.Queue()
    for index, item in enumerate(items):
        queue.put_nowait((index, item))

    async def worker() -> None:
        while True:
            try:
                index, item = queue.get_nowait()
            except asyncio.QueueEmpty:
                return
            try:
                results[index] = await func(item)
            except Exception as e:
                results[index] = e

    workers = max(1, min(limit, len(items)))
    await asyncio.gather(*(worker() for _ in range(workers)))
    return results
