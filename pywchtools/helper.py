"""Push/pull orchestration for one artifact type.

The helper combines the REST accessor and the file system accessor of an
artifact type. Push reads local files and sends them to the service, pull
fetches remote items and mirrors them locally, and both keep the hash
tracker up to date so later runs can restrict themselves to modified items.
"""

from __future__ import annotations

import asyncio
import logging
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Awaitable, Callable, Optional

from .artifacts import ArtifactType, PathLayout
from .context import SyncContext
from .exceptions import (
    WchError,
    WchIOError,
    WchParseError,
    WchRemoteError,
    WchUnsupportedOperationError,
)
from .fs import FileSystemAccessor
from .models import CompareResult, ItemFailure, SyncResult
from .rest import RestAccessor
from .singleton import check_token
from .utils import (
    DEFAULT_IGNORE_KEYS,
    clone_opts,
    diff_items,
    format_iso_timestamp,
    oldest_timestamp,
    throttled_map,
)

logger = logging.getLogger(__name__)

STATUS_READY = "ready"
STATUS_DRAFT = "draft"


class ArtifactHelper:
    """Orchestrates sync operations for one artifact type.

    One instance per artifact type is shared by the whole process; obtain it
    via :func:`pywchtools.registry.get_helper`.
    """

    def __init__(
        self,
        artifact: ArtifactType,
        rest: RestAccessor,
        fs: Optional[FileSystemAccessor],
        _token: object = None,
    ):
        check_token(_token, type(self).__name__)
        self.artifact = artifact
        self.rest = rest
        self._fs = fs

    @property
    def service_name(self) -> str:
        return self.artifact.name

    @property
    def fs(self) -> FileSystemAccessor:
        if self._fs is None:
            raise WchUnsupportedOperationError(
                f"Artifact type '{self.service_name}' has no local files"
            )
        return self._fs

    # =========================
    # Item properties
    # =========================

    def get_name(self, item: dict[str, Any]) -> str:
        """Get a display name for an item."""
        return str(
            item.get(self.artifact.name_field)
            or item.get("id")
            or item.get("path")
            or "<unnamed>"
        )

    def get_status(self, item: dict[str, Any]) -> str:
        return self.artifact.get_status(item)

    def can_push_item(self, item: dict[str, Any]) -> bool:
        return self.artifact.item_filter is None or self.artifact.item_filter(item)

    def can_pull_item(self, item: dict[str, Any]) -> bool:
        return self.artifact.item_filter is None or self.artifact.item_filter(item)

    def is_retry_push_enabled(self) -> bool:
        return self.artifact.is_retry_push_enabled

    def filter_retry_push(self, error: Exception) -> bool:
        """Return True if a failed push may succeed on a later pass."""
        if self.artifact.retry_push_filter is None:
            return False
        return self.artifact.retry_push_filter(error)

    def filter_retry_delete(self, error: Exception) -> bool:
        """Return True if a failed delete may succeed on a later pass."""
        if self.artifact.retry_delete_filter is None:
            return False
        return self.artifact.retry_delete_filter(error)

    def _status_allowed(self, item: dict[str, Any], opts: Optional[dict[str, Any]]) -> bool:
        opts = opts or {}
        status = self.get_status(item)
        if opts.get("filter_ready") and status != STATUS_READY:
            return False
        if opts.get("filter_draft") and status != STATUS_DRAFT:
            return False
        return True

    def _path_allowed(self, item: dict[str, Any], opts: Optional[dict[str, Any]]) -> bool:
        filter_path = ((opts or {}).get("filter_path") or "").strip("/")
        if not filter_path:
            return True
        path = (item.get("hierarchicalPath") or item.get("path") or "").strip("/")
        return path == filter_path or path.startswith(filter_path + "/")

    def _pull_filter(self, item: dict[str, Any], opts: Optional[dict[str, Any]]) -> bool:
        return (
            self.can_pull_item(item)
            and self._status_allowed(item, opts)
            and self._path_allowed(item, opts)
        )

    def _concurrent_limit(self, context: SyncContext, opts: Optional[dict[str, Any]]) -> int:
        if self.artifact.serial_push:
            return 1
        return max(1, int(context.get_option("concurrent_limit", self.service_name, opts)))

    async def _with_local_file_path_map(
        self, context: SyncContext, opts: Optional[dict[str, Any]]
    ) -> dict[str, Any]:
        if self.artifact.layout in (PathLayout.PATH, PathLayout.HIERARCHICAL):
            path_map = await self.fs.create_local_file_path_map(context, opts)
            return clone_opts(opts, local_file_path_map=path_map)
        return clone_opts(opts)

    # =========================
    # Local items
    # =========================

    async def get_local_item(
        self, context: SyncContext, name: str, opts: Optional[dict[str, Any]] = None
    ) -> dict[str, Any]:
        return await self.fs.get_item(context, name, opts)

    async def get_local_items(
        self, context: SyncContext, opts: Optional[dict[str, Any]] = None
    ) -> list[dict[str, Any]]:
        items = await self.fs.get_items(context, opts)
        return [item for item in items if self._status_allowed(item, opts)]

    async def list_local_item_names(
        self, context: SyncContext, opts: Optional[dict[str, Any]] = None
    ) -> list[dict[str, Any]]:
        """List local items as {"id", "name", "path"} proxies."""
        proxies = await self.fs.list_names(context, opts)
        return [proxy for proxy in proxies if self._status_allowed(proxy, opts)]

    async def list_modified_local_item_names(
        self,
        context: SyncContext,
        opts: Optional[dict[str, Any]] = None,
        new: bool = True,
        modified: bool = True,
    ) -> list[dict[str, Any]]:
        """List local items that are new or changed since the last sync."""
        tracker = self.fs.get_hash_tracker(context, opts)
        base_dir = self.fs.get_dir(context, opts)
        proxies = await self.list_local_item_names(context, opts)

        def select() -> list[dict[str, Any]]:
            return [
                proxy
                for proxy in proxies
                if tracker.is_local_modified(base_dir / proxy["path"], new, modified)
            ]

        return await asyncio.to_thread(select)

    async def list_local_deleted_names(
        self, context: SyncContext, opts: Optional[dict[str, Any]] = None
    ) -> list[dict[str, Any]]:
        """List tracked items whose local file no longer exists."""
        tracker = self.fs.get_hash_tracker(context, opts)
        base_dir = self.fs.get_dir(context, opts)

        def select() -> list[dict[str, Any]]:
            return [
                {"id": entry.id, "path": entry.path}
                for entry in tracker.list_entries()
                if not (base_dir / entry.path).exists()
            ]

        return await asyncio.to_thread(select)

    async def delete_local_item(
        self,
        context: SyncContext,
        name: str,
        opts: Optional[dict[str, Any]] = None,
    ) -> Optional[dict[str, Any]]:
        """Delete a local item file, its hash entry and empty parent folders."""
        item = await self.fs.delete_item(context, name, opts)
        if item is not None:
            context.emit("deleted", self.get_name(item))
        return item

    # =========================
    # Remote items
    # =========================

    async def get_remote_item(
        self, context: SyncContext, item_id: str, opts: Optional[dict[str, Any]] = None
    ) -> dict[str, Any]:
        return await self.rest.get_item(context, item_id, opts)

    async def get_remote_item_by_path(
        self, context: SyncContext, path: str, opts: Optional[dict[str, Any]] = None
    ) -> dict[str, Any]:
        return await self.rest.get_item_by_path(context, path, opts)

    async def get_remote_items(
        self, context: SyncContext, opts: Optional[dict[str, Any]] = None
    ) -> list[dict[str, Any]]:
        """Get all remote items, following pages."""
        items = []
        async for chunk in self.rest.iter_item_chunks(context, opts):
            items.extend(item for item in chunk if self._pull_filter(item, opts))
        return items

    async def create_remote_item(
        self,
        context: SyncContext,
        item: dict[str, Any],
        opts: Optional[dict[str, Any]] = None,
    ) -> dict[str, Any]:
        return await self.rest.create_item(context, item, opts)

    def _remote_proxy(self, item: dict[str, Any]) -> dict[str, Any]:
        proxy = {"id": item.get("id"), "name": item.get(self.artifact.name_field)}
        path = item.get("hierarchicalPath") or item.get("path")
        if path:
            proxy["path"] = path
        if "status" in item:
            proxy["status"] = item["status"]
        return proxy

    async def list_remote_item_names(
        self, context: SyncContext, opts: Optional[dict[str, Any]] = None
    ) -> list[dict[str, Any]]:
        """List remote items as {"id", "name", "path"} proxies."""
        return [self._remote_proxy(item) for item in await self.get_remote_items(context, opts)]

    async def list_modified_remote_item_names(
        self,
        context: SyncContext,
        opts: Optional[dict[str, Any]] = None,
        new: bool = True,
        modified: bool = True,
    ) -> list[dict[str, Any]]:
        """List remote items that are new or changed since the last pull."""
        tracker = self.fs.get_hash_tracker(context, opts)
        since = await asyncio.to_thread(self._last_pull_since, tracker, opts)
        proxies = []
        async for chunk in self.rest.iter_item_chunks(context, opts, since=since):
            candidates = [item for item in chunk if self._pull_filter(item, opts)]
            changed = await asyncio.to_thread(
                lambda: [
                    item
                    for item in candidates
                    if tracker.is_remote_modified(item, new, modified)
                ]
            )
            proxies.extend(self._remote_proxy(item) for item in changed)
        return proxies

    async def list_remote_deleted_names(
        self, context: SyncContext, opts: Optional[dict[str, Any]] = None
    ) -> list[dict[str, Any]]:
        """List tracked items that no longer exist remotely."""
        tracker = self.fs.get_hash_tracker(context, opts)
        remote_ids = set()
        async for chunk in self.rest.iter_item_chunks(context, opts):
            remote_ids.update(item.get("id") for item in chunk)
        entries = await asyncio.to_thread(tracker.list_entries)
        return [
            {"id": entry.id, "path": entry.path}
            for entry in entries
            if entry.id not in remote_ids
        ]

    async def delete_remote_item(
        self,
        context: SyncContext,
        item: dict[str, Any],
        opts: Optional[dict[str, Any]] = None,
    ) -> dict[str, Any]:
        """Delete an item remotely.

        Raises:
            WchError: If the delete failed; ``retry`` is set when the type's
                delete filter considers the failure transient
        """
        try:
            deleted = await self.rest.delete_item(context, item, opts)
        except WchError as err:
            err.retry = self.filter_retry_delete(err)
            raise
        context.emit("deleted", self.get_name(item))
        return deleted

    async def delete_remote_items(
        self,
        context: SyncContext,
        items: list[dict[str, Any]],
        opts: Optional[dict[str, Any]] = None,
    ) -> SyncResult:
        """Delete several items remotely, retrying reference failures."""
        result = SyncResult()
        await self._run_passes(
            context,
            items,
            lambda item: self.delete_remote_item(context, item, opts),
            self.get_name,
            self._concurrent_limit(context, opts),
            result,
            "deleted-error",
            opts,
        )
        return result

    # =========================
    # Push
    # =========================

    async def push_item(
        self, context: SyncContext, name: str, opts: Optional[dict[str, Any]] = None
    ) -> Optional[dict[str, Any]]:
        """Push one local item.

        Args:
            context: Sync context
            name: Item file path relative to the artifact folder
            opts: Call options

        Returns:
            The pushed item, or None if the item may not be pushed

        Raises:
            WchError: If the item could not be read or pushed
        """
        cache = (opts or {}).get("local_item_cache")
        item = cache.pop(name, None) if cache is not None else None
        if item is None:
            item = await self.fs.get_item(context, name, opts)
        if not self.can_push_item(item):
            logger.info(f"Skipping {self.service_name} item {self.get_name(item)}")
            return None
        return await self._upload_item(
            context, item, clone_opts(opts, original_push_file_name=name)
        )

    def _apply_tag(self, item: dict[str, Any], opts: Optional[dict[str, Any]]) -> dict[str, Any]:
        tag = (opts or {}).get("set_tag")
        if not tag or not self.artifact.supports_tags:
            return item
        tags = list(item.get("tags") or [])
        if tag not in tags:
            tags.append(tag)
        return dict(item, tags=tags)

    async def _upload_item(
        self,
        context: SyncContext,
        item: dict[str, Any],
        opts: Optional[dict[str, Any]],
    ) -> dict[str, Any]:
        item = self._apply_tag(item, opts)
        name = self.get_name(item)
        is_update = bool(item.get("id") and item.get("rev"))
        try:
            if is_update:
                pushed = await self.rest.update_item(context, item, opts)
            else:
                pushed = await self.rest.create_item(context, item, opts)
        except WchError as err:
            err.retry = self.is_retry_push_enabled() and self.filter_retry_push(err)
            if err.retry:
                raise
            resolved = None
            if is_update and isinstance(err, WchRemoteError) and err.status_code == 409:
                resolved = await self._resolve_conflict(context, item, opts)
            if resolved is None:
                context.emit("pushed-error", {"name": name, "error": err})
                logger.error(f"Failed to push {self.service_name} item {name}: {err}")
                raise
            pushed = resolved

        context.emit("pushed", name)
        if self._fs is not None and context.get_option(
            "rewrite_on_push", self.service_name, opts
        ):
            await self.fs.save_item(context, pushed, opts)
        return pushed

    async def _resolve_conflict(
        self,
        context: SyncContext,
        item: dict[str, Any],
        opts: Optional[dict[str, Any]],
    ) -> Optional[dict[str, Any]]:
        """Handle a 409 on update.

        Returns the remote item when it only differs from the local one in
        ignorable fields, otherwise None (after saving the remote copy as a
        conflict file if requested).
        """
        try:
            remote = await self.rest.get_item(context, item["id"], opts)
        except WchError as e:
            logger.warning(f"Failed to get conflicting {self.service_name} item: {e}")
            return None
        ignore_keys = DEFAULT_IGNORE_KEYS | self.artifact.compare_ignore_keys
        if not diff_items(item, remote, ignore_keys):
            logger.warning(
                f"Ignoring conflict for {self.service_name} item "
                f"{self.get_name(item)}, remote content is identical"
            )
            return remote
        if self._fs is not None and context.get_option(
            "save_file_on_conflict", self.service_name, opts
        ):
            try:
                await self.fs.save_item(context, remote, clone_opts(opts, conflict=True))
            except WchError as e:
                logger.warning(f"Failed to save conflicting item: {e}")
        return None

    async def push_all_items(
        self, context: SyncContext, opts: Optional[dict[str, Any]] = None
    ) -> SyncResult:
        """Push every local item of this type."""
        opts = await self._with_local_file_path_map(context, opts)
        proxies = await self.list_local_item_names(context, opts)
        return await self.push_items(context, [proxy["path"] for proxy in proxies], opts)

    async def push_modified_items(
        self, context: SyncContext, opts: Optional[dict[str, Any]] = None
    ) -> SyncResult:
        """Push the local items that are new or changed since the last sync."""
        opts = await self._with_local_file_path_map(context, opts)
        proxies = await self.list_modified_local_item_names(context, opts)
        return await self.push_items(context, [proxy["path"] for proxy in proxies], opts)

    async def _read_for_ordering(
        self, context: SyncContext, names: list[str], opts: Optional[dict[str, Any]]
    ) -> dict[str, dict[str, Any]]:
        cache: dict[str, dict[str, Any]] = {}
        for name in names:
            try:
                cache[name] = await self.fs.get_item(context, name, opts)
            except (WchIOError, WchParseError):
                # Surfaces again when the item itself is pushed
                continue
        return cache

    async def push_items(
        self,
        context: SyncContext,
        names: list[str],
        opts: Optional[dict[str, Any]] = None,
    ) -> SyncResult:
        """Push the named local items.

        Types with status ordering push all ready items before any draft
        item; categories push parents before children. Items whose push
        fails with a retriable error are pushed again in a later pass.

        Args:
            context: Sync context
            names: Item file paths relative to the artifact folder
            opts: Call options

        Returns:
            SyncResult with the pushed items and the failures
        """
        result = SyncResult()
        if not names:
            return result

        partitions = [list(names)]
        if self.artifact.status_ordering or self.artifact.push_sort_key:
            cache = await self._read_for_ordering(context, names, opts)
            opts = clone_opts(opts, local_item_cache=cache)
            if self.artifact.push_sort_key:
                key = self.artifact.push_sort_key
                partitions = [
                    sorted(names, key=lambda n: key(cache[n]) if n in cache else 0)
                ]
            if self.artifact.status_ordering:
                draft = [
                    n
                    for n in names
                    if n in cache and self.get_status(cache[n]) == STATUS_DRAFT
                ]
                ready = [n for n in names if n not in draft]
                partitions = [ready, draft]

        limit = self._concurrent_limit(context, opts)
        for partition in partitions:
            if partition:
                await self._run_passes(
                    context,
                    partition,
                    lambda name: self.push_item(context, name, opts),
                    str,
                    limit,
                    result,
                    "pushed-error",
                    opts,
                )
        logger.info(
            f"Pushed {len(result.succeeded)} {self.service_name} item(s), "
            f"{len(result.failed)} failed"
        )
        return result

    async def _run_passes(
        self,
        context: SyncContext,
        entries: list[Any],
        operation: Callable[[Any], Awaitable[Optional[dict[str, Any]]]],
        describe: Callable[[Any], str],
        limit: int,
        result: SyncResult,
        error_event: str,
        opts: Optional[dict[str, Any]],
    ) -> None:
        """Run an operation over entries, re-running retriable failures.

        Failures flagged ``retry`` after the first pass are always attempted
        once more. Further passes happen only while passes keep making
        progress: after ``retry_push_max_stalled_passes`` consecutive retry
        passes without a single success the remaining failures are final.
        """
        max_stalled = max(
            1, int(context.get_option("retry_push_max_stalled_passes", self.service_name, opts))
        )
        pending = list(entries)
        stalled = 0
        first_pass = True
        while pending:
            result.passes += 1
            outcomes = await throttled_map(operation, pending, limit)
            retry: list[tuple[Any, Exception]] = []
            succeeded = 0
            for entry, outcome in zip(pending, outcomes):
                if isinstance(outcome, Exception):
                    if getattr(outcome, "retry", False):
                        retry.append((entry, outcome))
                    else:
                        result.failed.append(ItemFailure(describe(entry), outcome))
                elif outcome is not None:
                    result.succeeded.append(outcome)
                    succeeded += 1

            if not retry:
                return
            if not first_pass:
                stalled = 0 if succeeded else stalled + 1
                if stalled >= max_stalled:
                    for entry, error in retry:
                        error.retry = False  # type: ignore[attr-defined]
                        name = describe(entry)
                        context.emit(error_event, {"name": name, "error": error})
                        logger.error(f"Giving up on {self.service_name} item {name}: {error}")
                        result.failed.append(ItemFailure(name, error))
                    return
            for entry, error in retry:
                logger.warning(
                    f"{self.service_name} item {describe(entry)} will be retried: {error}"
                )
            pending = [entry for entry, _ in retry]
            first_pass = False

    # =========================
    # Pull
    # =========================

    async def pull_item(
        self, context: SyncContext, item_id: str, opts: Optional[dict[str, Any]] = None
    ) -> Optional[dict[str, Any]]:
        """Pull one remote item into the local mirror.

        Returns:
            The pulled item, or None if the item may not be pulled
        """
        item = await self.rest.get_item(context, item_id, opts)
        if not self.can_pull_item(item):
            logger.info(f"Skipping {self.service_name} item {self.get_name(item)}")
            return None
        await self.fs.save_item(context, item, opts)
        context.emit("pulled", self.get_name(item))
        return item

    async def _save_pulled(
        self, context: SyncContext, item: dict[str, Any], opts: dict[str, Any]
    ) -> dict[str, Any]:
        try:
            await self.fs.save_item(context, item, opts)
        except WchError as err:
            context.emit("pulled-error", {"name": self.get_name(item), "error": err})
            logger.error(f"Failed to save {self.service_name} item {self.get_name(item)}: {err}")
            raise
        context.emit("pulled", self.get_name(item))
        return item

    def _last_pull_since(self, tracker: Any, opts: Optional[dict[str, Any]]) -> Optional[str]:
        timestamps = tracker.get_last_pull_timestamp()
        opts = opts or {}
        if opts.get("filter_ready"):
            return timestamps.get(STATUS_READY)
        if opts.get("filter_draft"):
            return timestamps.get(STATUS_DRAFT)
        return oldest_timestamp([timestamps.get(STATUS_READY), timestamps.get(STATUS_DRAFT)])

    async def pull_all_items(
        self, context: SyncContext, opts: Optional[dict[str, Any]] = None
    ) -> SyncResult:
        """Pull every remote item of this type."""
        return await self._pull(context, opts, modified=False)

    async def pull_modified_items(
        self, context: SyncContext, opts: Optional[dict[str, Any]] = None
    ) -> SyncResult:
        """Pull the remote items that changed since the last successful pull."""
        return await self._pull(context, opts, modified=True)

    async def _pull(
        self, context: SyncContext, opts: Optional[dict[str, Any]], modified: bool
    ) -> SyncResult:
        result = SyncResult(passes=1)
        started = format_iso_timestamp(datetime.now(timezone.utc))
        opts = await self._with_local_file_path_map(context, opts)
        tracker = self.fs.get_hash_tracker(context, opts)
        since = None
        if modified:
            since = await asyncio.to_thread(self._last_pull_since, tracker, opts)
        limit = self._concurrent_limit(context, opts)
        remote_ids: set[str] = set()

        async for chunk in self.rest.iter_item_chunks(context, opts, since=since):
            remote_ids.update(item.get("id") for item in chunk if item.get("id"))
            candidates = [item for item in chunk if self._pull_filter(item, opts)]
            items = candidates
            if modified:
                items = await asyncio.to_thread(
                    lambda: [item for item in candidates if tracker.is_remote_modified(item)]
                )
            outcomes = await throttled_map(
                lambda item: self._save_pulled(context, item, opts), items, limit
            )
            for item, outcome in zip(items, outcomes):
                if isinstance(outcome, Exception):
                    result.failed.append(ItemFailure(self.get_name(item), outcome))
                else:
                    result.succeeded.append(outcome)

        if not result.failed and not opts.get("filter_path"):
            if opts.get("filter_ready"):
                timestamps = {STATUS_READY: started}
            elif opts.get("filter_draft"):
                timestamps = {STATUS_DRAFT: started}
            else:
                timestamps = {STATUS_READY: started, STATUS_DRAFT: started}
            await asyncio.to_thread(tracker.set_last_pull_timestamp, timestamps)

        if not modified and opts.get("deletions"):
            for proxy in await self.list_local_item_names(context, opts):
                if proxy.get("id") and proxy["id"] not in remote_ids:
                    result.local_only.append(proxy)
                    context.emit("local-only", proxy)

        logger.info(
            f"Pulled {len(result.succeeded)} {self.service_name} item(s), "
            f"{len(result.failed)} failed"
        )
        return result

    # =========================
    # Compare
    # =========================

    async def _compare_side(
        self, context: SyncContext, location: str, opts: Optional[dict[str, Any]]
    ) -> dict[str, dict[str, Any]]:
        if location.startswith("http:") or location.startswith("https:"):
            items = await self.get_remote_items(context, clone_opts(opts, base_url=location))
        else:
            items = await self.get_local_items(
                context, clone_opts(opts, working_dir=str(Path(location)))
            )
        return {str(item.get("id") or self.get_name(item)): item for item in items}

    async def compare(
        self,
        context: SyncContext,
        target: str,
        source: str,
        opts: Optional[dict[str, Any]] = None,
    ) -> CompareResult:
        """Compare the items of two locations.

        Each location is either a local working directory or a service base
        URL. Fields that always differ between copies (revisions, audit
        fields, links) are ignored.

        Args:
            context: Sync context
            target: Location the source is compared against
            source: Location whose items are considered current
            opts: Call options

        Returns:
            CompareResult listing added, removed, changed and equal items
        """
        target_items = await self._compare_side(context, target, opts)
        source_items = await self._compare_side(context, source, opts)
        ignore_keys = DEFAULT_IGNORE_KEYS | self.artifact.compare_ignore_keys
        result = CompareResult()

        for key, item in source_items.items():
            other = target_items.get(key)
            if other is None:
                result.added.append(key)
                context.emit("added", {"type": self.service_name, "id": key})
                continue
            differences = diff_items(other, item, ignore_keys)
            if differences:
                result.changed[key] = differences
                context.emit("diff", {"type": self.service_name, "id": key, "keys": differences})
            else:
                result.equal.append(key)
        for key in target_items:
            if key not in source_items:
                result.removed.append(key)
                context.emit("removed", {"type": self.service_name, "id": key})
        return result
