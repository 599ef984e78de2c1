"""File system accessors for the local artifact mirror.

Each artifact type is mirrored into ``<working dir>/<folder>`` as one JSON
file per item. How the file name is derived from an item depends on the
type's :class:`~pywchtools.artifacts.PathLayout`:

* flat types use the item id (``types/<id>.json``)
* path based types use the item's ``path`` attribute
  (``layouts/<path>``)
* hierarchical types use the ``hierarchicalPath`` of a page; the children
  of a page live in a folder named like the page file
  (``sites/default/home.json`` and ``sites/default/home/about.json``)
* sites use their context root (``sites/<contextRoot>.json``)

All blocking file operations run in worker threads via
:func:`asyncio.to_thread`.
"""

from __future__ import annotations

import asyncio
import json
import logging
import os
from pathlib import Path
from typing import Any, Optional

from .artifacts import ArtifactType, PathLayout
from .context import SyncContext
from .exceptions import WchIOError, WchParseError
from .hashes import HASHES_FILE_NAME, LEGACY_HASHES_FILE_NAME, HashTracker
from .singleton import check_token
from .utils import (
    get_valid_file_name,
    is_valid_file_path,
    relative_posix,
    remove_empty_parent_directories,
)

logger = logging.getLogger(__name__)

CONFLICT_SUFFIX = ".conflict"


def serialize_item(item: dict[str, Any]) -> str:
    """Serialize an item the way it is stored on disk."""
    return json.dumps(item, indent=2, ensure_ascii=False)


def read_item_file(path: Path) -> dict[str, Any]:
    """Read and parse one item file.

    Raises:
        WchIOError: If the file can't be read
        WchParseError: If the file isn't a JSON object
    """
    try:
        text = Path(path).read_text(encoding="utf-8")
    except OSError as e:
        raise WchIOError(f"Failed to read {path}: {e}", path=str(path)) from e
    try:
        item = json.loads(text)
    except json.JSONDecodeError as e:
        raise WchParseError(f"Invalid JSON in {path}: {e}", path=str(path)) from e
    if not isinstance(item, dict):
        raise WchParseError(f"{path} does not contain a JSON object", path=str(path))
    return item


class FileSystemAccessor:
    """Reads and writes the local files of one artifact type.

    One instance per artifact type is shared by the whole process; obtain it
    via :func:`pywchtools.registry.get_fs_accessor`.
    """

    recursive = False

    def __init__(self, artifact: ArtifactType, _token: object = None):
        check_token(_token, type(self).__name__)
        self.artifact = artifact

    @property
    def service_name(self) -> str:
        return self.artifact.name

    @property
    def extension(self) -> str:
        return self.artifact.extension

    # =========================
    # Paths
    # =========================

    def get_dir(self, context: SyncContext, opts: Optional[dict[str, Any]] = None) -> Path:
        """Get the absolute artifact folder for this type."""
        working_dir = Path((opts or {}).get("working_dir") or context.working_dir)
        return working_dir / self.artifact.get_folder(opts)

    def get_file_name(self, item: dict[str, Any]) -> str:
        """Get the file path of an item, relative to the artifact folder."""
        name = item.get(self.artifact.id_field) or item.get(self.artifact.name_field)
        return get_valid_file_name(str(name)) + self.extension

    def get_item_path(
        self,
        context: SyncContext,
        item: dict[str, Any],
        opts: Optional[dict[str, Any]] = None,
    ) -> Path:
        """Get the absolute file path of an item.

        Raises:
            WchIOError: If the derived path is not a valid local path
        """
        relative = self.get_file_name(item)
        if not is_valid_file_path(relative):
            raise WchIOError(f"Invalid file path '{relative}' for {self.service_name} item")
        return self.get_dir(context, opts) / relative.lstrip("/")

    def resolve_name(
        self, context: SyncContext, name: str, opts: Optional[dict[str, Any]] = None
    ) -> Path:
        """Resolve a local item name (relative path, extension optional)."""
        relative = name.lstrip("/")
        if not relative.endswith(self.extension):
            relative += self.extension
        return self.get_dir(context, opts) / relative

    def get_hash_tracker(
        self, context: SyncContext, opts: Optional[dict[str, Any]] = None
    ) -> HashTracker:
        return HashTracker.for_context(context, self.get_dir(context, opts), self.service_name)

    # =========================
    # Items
    # =========================

    def prune_item(self, item: dict[str, Any]) -> dict[str, Any]:
        """Remove fields that are not stored locally."""
        return {k: v for k, v in item.items() if k not in self.artifact.prune_fields}

    def restore_item(self, item: dict[str, Any], relative: str) -> dict[str, Any]:
        """Re-add fields derived from the file location after reading."""
        return item

    async def get_item(
        self, context: SyncContext, name: str, opts: Optional[dict[str, Any]] = None
    ) -> dict[str, Any]:
        """Read one local item.

        Args:
            context: Sync context
            name: Item file path relative to the artifact folder
            opts: Call options

        Returns:
            The item

        Raises:
            WchIOError: If the file can't be read
            WchParseError: If the file isn't valid item JSON
        """
        path = self.resolve_name(context, name, opts)
        item = await asyncio.to_thread(read_item_file, path)
        return self.restore_item(item, relative_posix(path, self.get_dir(context, opts)))

    async def get_items(
        self, context: SyncContext, opts: Optional[dict[str, Any]] = None
    ) -> list[dict[str, Any]]:
        """Read all local items, skipping files that can't be read."""
        items = []
        for proxy in await self.list_names(context, opts):
            try:
                items.append(await self.get_item(context, proxy["path"], opts))
            except (WchIOError, WchParseError) as e:
                logger.warning(f"Skipping {self.service_name} file {proxy['path']}: {e}")
        return items

    async def save_item(
        self,
        context: SyncContext,
        item: dict[str, Any],
        opts: Optional[dict[str, Any]] = None,
    ) -> dict[str, Any]:
        """Write an item to its local file and record its hash.

        Any stale file left by a rename of the item is removed first. With
        the ``conflict`` option the item is written next to its regular file
        with a ``.conflict`` suffix and is not tracked.

        Returns:
            The saved item

        Raises:
            WchIOError: If the item can't be written
        """
        path = self.get_item_path(context, item, opts)
        content = serialize_item(self.prune_item(item))

        if (opts or {}).get("conflict"):
            conflict_path = path.with_name(path.name + CONFLICT_SUFFIX)
            await asyncio.to_thread(self._write, conflict_path, content)
            logger.info(f"Saved conflicting {self.service_name} item to {conflict_path}")
            return item

        tracker = self.get_hash_tracker(context, opts)

        def save() -> None:
            with tracker.lock:
                if item.get("id"):
                    self._handle_rename(context, tracker, item["id"], path, opts)
                self._write(path, content)
                tracker.update(path, item)

        await asyncio.to_thread(save)
        logger.debug(f"Saved {self.service_name} item to {path}")
        return item

    def _write(self, path: Path, content: str) -> None:
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            path.write_text(content, encoding="utf-8")
        except OSError as e:
            raise WchIOError(f"Failed to write {path}: {e}", path=str(path)) from e

    async def delete_item(
        self, context: SyncContext, name: str, opts: Optional[dict[str, Any]] = None
    ) -> Optional[dict[str, Any]]:
        """Delete a local item file and forget its hash.

        Returns:
            The deleted item, or None if the file didn't exist
        """
        base_dir = self.get_dir(context, opts)
        path = self.resolve_name(context, name, opts)
        tracker = self.get_hash_tracker(context, opts)

        def delete() -> Optional[dict[str, Any]]:
            if not path.exists():
                return None
            try:
                item: Optional[dict[str, Any]] = read_item_file(path)
            except WchParseError:
                item = None
            with tracker.lock:
                try:
                    path.unlink()
                except OSError as e:
                    raise WchIOError(f"Failed to delete {path}: {e}", path=str(path)) from e
                entry = tracker.get_entry_for_path(path)
                if entry:
                    tracker.remove([entry.id])
                remove_empty_parent_directories(base_dir, path)
            return item or {"path": relative_posix(path, base_dir)}

        return await asyncio.to_thread(delete)

    # =========================
    # Listing
    # =========================

    def _is_item_file(self, path: Path) -> bool:
        name = path.name
        if name in (HASHES_FILE_NAME, LEGACY_HASHES_FILE_NAME) or name.startswith("."):
            return False
        return path.is_file() and name.endswith(self.extension)

    def _list_files(self, base_dir: Path) -> list[Path]:
        if not base_dir.is_dir():
            return []
        if self.recursive:
            files = [
                Path(root) / name
                for root, _, names in os.walk(base_dir)
                for name in names
            ]
        else:
            files = list(base_dir.iterdir())
        return sorted(path for path in files if self._is_item_file(path))

    def _proxy(
        self, item: dict[str, Any], relative: str, opts: Optional[dict[str, Any]]
    ) -> dict[str, Any]:
        proxy = {
            "id": item.get("id"),
            "name": item.get(self.artifact.name_field),
            "path": relative,
        }
        if "status" in item:
            proxy["status"] = item["status"]
        for key in (opts or {}).get("additional_item_properties") or []:
            if key in item:
                proxy[key] = item[key]
        return proxy

    def _list_names(
        self, context: SyncContext, opts: Optional[dict[str, Any]]
    ) -> list[dict[str, Any]]:
        base_dir = self.get_dir(context, opts)
        filter_path = ((opts or {}).get("filter_path") or "").strip("/")
        proxies = []
        for path in self._list_files(base_dir):
            relative = relative_posix(path, base_dir)
            if filter_path and not (
                relative == filter_path or relative.startswith(filter_path + "/")
                or relative.startswith(filter_path + self.extension)
            ):
                continue
            try:
                item = read_item_file(path)
            except (WchIOError, WchParseError) as e:
                logger.warning(f"Unable to read {self.service_name} file {relative}: {e}")
                proxies.append({"name": Path(relative).name, "path": relative})
                continue
            proxies.append(self._proxy(item, relative, opts))
        return proxies

    async def list_names(
        self, context: SyncContext, opts: Optional[dict[str, Any]] = None
    ) -> list[dict[str, Any]]:
        """List the local items as lightweight proxies.

        Returns:
            List of {"id", "name", "path"} dicts; files that can't be parsed
            only carry "name" and "path"
        """
        return await asyncio.to_thread(self._list_names, context, opts)

    def _create_local_file_path_map(
        self, context: SyncContext, opts: Optional[dict[str, Any]]
    ) -> dict[str, list[str]]:
        base_dir = self.get_dir(context, opts)
        path_map: dict[str, list[str]] = {}
        for path in self._list_files(base_dir):
            try:
                item_id = read_item_file(path).get("id")
            except (WchIOError, WchParseError):
                continue
            if item_id:
                path_map.setdefault(item_id, []).append(relative_posix(path, base_dir))
        return path_map

    async def create_local_file_path_map(
        self, context: SyncContext, opts: Optional[dict[str, Any]] = None
    ) -> dict[str, list[str]]:
        """Map each local item id to the file(s) holding it."""
        return await asyncio.to_thread(self._create_local_file_path_map, context, opts)

    async def get_file_stats(
        self, context: SyncContext, name: str, opts: Optional[dict[str, Any]] = None
    ) -> Optional[os.stat_result]:
        """Get the stat result of an item file, or None if it doesn't exist."""
        path = self.resolve_name(context, name, opts)

        def stat() -> Optional[os.stat_result]:
            try:
                return path.stat()
            except OSError:
                return None

        return await asyncio.to_thread(stat)

    # =========================
    # Renames
    # =========================

    async def handle_rename(
        self,
        context: SyncContext,
        item_id: str,
        file_path: Path,
        opts: Optional[dict[str, Any]] = None,
    ) -> None:
        """Remove local traces of an item that now maps to a new file path.

        Calling this repeatedly for the same item and path is harmless.

        Args:
            context: Sync context
            item_id: Id of the item being saved
            file_path: New absolute file path of the item
            opts: Call options (``local_file_path_map``,
                ``original_push_file_name``)
        """
        tracker = self.get_hash_tracker(context, opts)

        def rename() -> None:
            with tracker.lock:
                self._handle_rename(context, tracker, item_id, Path(file_path), opts)

        await asyncio.to_thread(rename)

    def _handle_rename(
        self,
        context: SyncContext,
        tracker: HashTracker,
        item_id: str,
        new_path: Path,
        opts: Optional[dict[str, Any]],
    ) -> None:
        base_dir = tracker.base_dir
        opts = opts or {}

        # Other files known to hold the same item
        for relative in (opts.get("local_file_path_map") or {}).get(item_id, []):
            self._remove_stale_file(base_dir, base_dir / relative, new_path, item_id)

        old_path = tracker.get_file_path(item_id)
        if old_path is not None and old_path != new_path:
            if old_path.exists() and not new_path.exists():
                self._remove_stale_file(base_dir, old_path, new_path, item_id)
            self.relocate_children(tracker, old_path, new_path)
        elif opts.get("original_push_file_name"):
            original = self.resolve_name(context, opts["original_push_file_name"], opts)
            if original != new_path and original.exists() and not new_path.exists():
                self._remove_stale_file(base_dir, original, new_path, item_id)

    def _remove_stale_file(
        self, base_dir: Path, stale: Path, new_path: Path, item_id: str
    ) -> None:
        if stale == new_path or not stale.exists():
            return
        try:
            if read_item_file(stale).get("id") != item_id:
                return
        except (WchIOError, WchParseError):
            return
        try:
            stale.unlink()
            logger.debug(f"Removed stale file {stale} of renamed item {item_id}")
            remove_empty_parent_directories(base_dir, stale)
        except OSError as e:
            logger.warning(f"Failed to remove stale file {stale}: {e}")

    def relocate_children(self, tracker: HashTracker, old_path: Path, new_path: Path) -> None:
        """Move files that live below a renamed item (no-op for flat types)."""


class PathBasedFileSystemAccessor(FileSystemAccessor):
    """File system accessor for types whose items form a folder tree."""

    recursive = True

    def get_file_name(self, item: dict[str, Any]) -> str:
        if self.artifact.layout is PathLayout.HIERARCHICAL:
            path = item.get("hierarchicalPath")
            if not path:
                return super().get_file_name(item)
            return path.strip("/") + self.extension
        path = item.get("path")
        if not path:
            name = item.get(self.artifact.name_field) or item.get(self.artifact.id_field)
            return f"{name}{self.extension}"
        path = path.lstrip("/")
        if not path.endswith(self.extension):
            path += self.extension
        return path

    def restore_item(self, item: dict[str, Any], relative: str) -> dict[str, Any]:
        if "path" in self.artifact.prune_fields:
            item["path"] = "/" + relative
        return item

    def _child_dir(self, file_path: Path) -> Path:
        name = file_path.name
        if name.endswith(self.extension):
            name = name[: -len(self.extension)]
        return file_path.with_name(name)

    def relocate_children(self, tracker: HashTracker, old_path: Path, new_path: Path) -> None:
        """Move the child folder of a renamed page along with the page.

        If the new child folder already exists, the children are merged into
        it one by one; a child that already exists at the new location wins
        and the old copy is removed. Hash entries follow the moved files.
        Failures are logged as warnings and do not abort the save.
        """
        if self.artifact.layout is not PathLayout.HIERARCHICAL:
            return
        old_dir = self._child_dir(old_path)
        new_dir = self._child_dir(new_path)
        if not old_dir.is_dir() or old_dir == new_dir:
            return
        base_dir = tracker.base_dir
        try:
            if new_dir.exists():
                for root, _, names in os.walk(old_dir, topdown=False):
                    for name in names:
                        child = Path(root) / name
                        target = new_dir / child.relative_to(old_dir)
                        if target.exists():
                            child.unlink()
                            continue
                        target.parent.mkdir(parents=True, exist_ok=True)
                        child.rename(target)
                        self._move_hash(tracker, child, target)
                    Path(root).rmdir()
            else:
                moved = [
                    Path(root) / name
                    for root, _, names in os.walk(old_dir)
                    for name in names
                ]
                new_dir.parent.mkdir(parents=True, exist_ok=True)
                old_dir.rename(new_dir)
                for child in moved:
                    self._move_hash(tracker, child, new_dir / child.relative_to(old_dir))
            logger.debug(f"Moved children of {old_dir} to {new_dir}")
            remove_empty_parent_directories(base_dir, old_dir)
        except OSError as e:
            logger.warning(f"Failed to move {old_dir} to {new_dir}: {e}")

    def _move_hash(self, tracker: HashTracker, old: Path, new: Path) -> None:
        entry = tracker.get_entry_for_path(old)
        if entry is not None:
            tracker.set_file_path(entry.id, new)


class SiteFileSystemAccessor(FileSystemAccessor):
    """File system accessor for sites, named after their context root."""

    def get_file_name(self, item: dict[str, Any]) -> str:
        return get_site_context_name(item) + self.extension

    def _list_names(
        self, context: SyncContext, opts: Optional[dict[str, Any]]
    ) -> list[dict[str, Any]]:
        extra = list((opts or {}).get("additional_item_properties") or [])
        opts = dict(opts or {}, additional_item_properties=extra + ["contextRoot", "status"])
        base_dir = self.get_dir(context, opts)
        proxies = super()._list_names(context, opts)
        for proxy in proxies:
            if not proxy.get("id") or proxy.get("contextRoot") in (None, "/"):
                continue
            expected = self.get_file_name(proxy)
            if proxy["path"] == expected:
                continue
            # The context root changed, so the site file and its pages folder follow it
            old_file = base_dir / proxy["path"]
            new_file = base_dir / expected
            try:
                if old_file.exists() and not new_file.exists():
                    old_file.rename(new_file)
                    proxy["path"] = expected
            except OSError as e:
                logger.warning(f"Failed to rename site {proxy['id']}: {e}")
            self._rename_pages_folder(old_file, new_file)
        return proxies

    def _pages_folder(self, site_file: Path) -> Path:
        return site_file.with_name(site_file.name[: -len(self.extension)])

    def _rename_pages_folder(self, old_file: Path, new_file: Path) -> None:
        old_folder = self._pages_folder(old_file)
        new_folder = self._pages_folder(new_file)
        if old_folder == new_folder or not old_folder.is_dir() or new_folder.exists():
            return
        try:
            old_folder.rename(new_folder)
            logger.debug(f"Moved site pages from {old_folder} to {new_folder}")
        except OSError as e:
            logger.warning(f"Failed to move {old_folder} to {new_folder}: {e}")

    def relocate_children(self, tracker: HashTracker, old_path: Path, new_path: Path) -> None:
        """Move the pages folder of a site whose context root changed."""
        self._rename_pages_folder(old_path, new_path)


def get_site_context_name(site: dict[str, Any]) -> str:
    """Get the local name of a site.

    Sites are named after their context root. A draft site gets a
    ``_wchdraft`` suffix (plus its project id) so it doesn't collide with the
    ready site. Sites without a usable context root fall back to their id.
    """
    context_root = site.get("contextRoot")
    if context_root and context_root != "/":
        name = context_root.strip("/")
        if site.get("status") == "draft":
            project_id = site.get("projectId")
            name += "_wchdraft" + (f"_{project_id}" if project_id else "")
    elif site.get("id") == "default:draft":
        name = "default_wchdraft"
    else:
        name = str(site.get("id"))
    return get_valid_file_name(name)
