"""Artifact type capabilities.

Each artifact kind the service exposes is described by one
:class:`ArtifactType` record. The generic REST accessor, file system accessor
and helper read everything type-specific from it: the URI, the local folder,
how a local path is derived from an item, which optional service features
the endpoint supports and which failures are worth another push pass.
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Iterable, Optional

from .exceptions import WchRemoteError, WchUnsupportedOperationError

ErrorFilter = Callable[[Exception], bool]
ItemPredicate = Callable[[dict[str, Any]], bool]
SortKey = Callable[[dict[str, Any]], Any]


class PathLayout(Enum):
    """How the local file path of an item is derived."""

    FLAT = "flat"
    """<folder>/<id or name><extension>"""

    PATH = "path"
    """<folder>/<item path>, the remote path attribute mirrors the file tree"""

    HIERARCHICAL = "hierarchical"
    """<folder>/<hierarchical path><extension>, children live in a sibling folder"""

    SITE = "site"
    """<folder>/<context root or id><extension>"""

    NONE = "none"
    """Remote only, nothing is stored locally"""


def reference_error_filter(
    codes: Iterable[int] = (),
    ranges: Iterable[tuple[int, int]] = (),
    status_code: int = 400,
) -> ErrorFilter:
    """Build a predicate matching "referenced item not available yet" errors.

    Args:
        codes: Application error codes that match
        ranges: Half-open ``(start, stop)`` code ranges that match
        status_code: HTTP status the error must carry

    Returns:
        Predicate returning True for a matching WchRemoteError
    """
    code_set = frozenset(codes)
    range_list = tuple(ranges)

    def matches(error: Exception) -> bool:
        if not isinstance(error, WchRemoteError):
            return False
        if error.status_code != status_code:
            return False
        return any(
            code in code_set or any(start <= code < stop for start, stop in range_list)
            for code in error.error_codes
        )

    return matches


def is_not_permanent(item: dict[str, Any]) -> bool:
    """Return True unless the item is a permanent system item."""
    return bool(item) and item.get("permanent") is not True


def ancestor_depth(item: dict[str, Any]) -> int:
    """Sort key placing parent categories before their children."""
    return len(item.get("ancestorIds") or [])


@dataclass(frozen=True)
class ArtifactType:
    """Capabilities and configuration of one artifact kind."""

    name: str
    uri_path: str
    folder: Optional[str] = None
    extension: str = ".json"
    layout: PathLayout = PathLayout.FLAT
    id_field: str = "id"
    name_field: str = "name"
    modified_suffix: Optional[str] = None
    supports_force_override: bool = False
    supports_tags: bool = False
    supports_item_by_path: bool = False
    supports_create_only: bool = True
    status_ordering: bool = False
    serial_push: bool = False
    push_sort_key: Optional[SortKey] = None
    retry_push_filter: Optional[ErrorFilter] = None
    retry_delete_filter: Optional[ErrorFilter] = None
    item_filter: Optional[ItemPredicate] = None
    prune_fields: tuple[str, ...] = ()
    compare_ignore_keys: frozenset = field(default_factory=frozenset)
    default_item_ids: tuple[str, ...] = ()

    @property
    def is_retry_push_enabled(self) -> bool:
        return self.retry_push_filter is not None

    @property
    def is_retry_delete_enabled(self) -> bool:
        return self.retry_delete_filter is not None

    @property
    def is_local(self) -> bool:
        return self.layout is not PathLayout.NONE and self.folder is not None

    def resolve(self, template: str, opts: Optional[dict[str, Any]] = None) -> str:
        """Fill in ``{site_id}`` placeholders of a URI or folder template."""
        site_id = (opts or {}).get("site_id") or "default"
        return template.format(site_id=site_id)

    def get_folder(self, opts: Optional[dict[str, Any]] = None) -> str:
        """Get the artifact folder relative to the working directory.

        Raises:
            WchUnsupportedOperationError: If the type has no local mirror
        """
        if not self.is_local:
            raise WchUnsupportedOperationError(
                f"Artifact type '{self.name}' is not stored locally"
            )
        return self.resolve(self.folder, opts)  # type: ignore[arg-type]

    def get_status(self, item: dict[str, Any]) -> str:
        """Get the publishing status of an item ("ready" or "draft")."""
        return "draft" if item.get("status") == "draft" else "ready"


_AUDIT_FIELDS = (
    "created",
    "creator",
    "creatorId",
    "lastModifier",
    "lastModifierId",
    "lastModified",
)

ARTIFACT_TYPES: dict[str, ArtifactType] = {
    artifact.name: artifact
    for artifact in (
        ArtifactType(
            name="types",
            uri_path="/authoring/v1/types",
            folder="types",
            modified_suffix="/views/by-modified",
            supports_force_override=True,
            supports_tags=True,
            retry_push_filter=reference_error_filter(codes=(2504,)),
        ),
        ArtifactType(
            name="content",
            uri_path="/authoring/v1/content",
            folder="content",
            extension="_cmd.json",
            modified_suffix="/views/by-modified",
            supports_force_override=True,
            supports_tags=True,
            retry_push_filter=reference_error_filter(
                codes=(2012,), ranges=((6000, 7000),)
            ),
            retry_delete_filter=reference_error_filter(
                codes=(3004, 3008), ranges=((6000, 7000),)
            ),
        ),
        ArtifactType(
            name="layouts",
            uri_path="/authoring/v1/layouts",
            folder="layouts",
            layout=PathLayout.PATH,
            modified_suffix="/views/by-modified",
            supports_force_override=True,
            supports_item_by_path=True,
            prune_fields=_AUDIT_FIELDS + ("path",),
        ),
        ArtifactType(
            name="layout-mappings",
            uri_path="/authoring/v1/layout-mappings",
            folder="layout-mappings",
            layout=PathLayout.PATH,
            modified_suffix="/views/by-modified",
            supports_force_override=True,
            supports_item_by_path=True,
            retry_push_filter=reference_error_filter(codes=(2504,)),
            prune_fields=_AUDIT_FIELDS + ("path",),
        ),
        ArtifactType(
            name="pages",
            uri_path="/authoring/v1/sites/{site_id}/pages",
            folder="sites/{site_id}",
            layout=PathLayout.HIERARCHICAL,
            modified_suffix="/views/by-modified",
            supports_force_override=True,
            status_ordering=True,
            compare_ignore_keys=frozenset({"parentId", "position"}),
        ),
        ArtifactType(
            name="sites",
            uri_path="/authoring/v1/sites",
            folder="sites",
            layout=PathLayout.SITE,
            supports_force_override=True,
            supports_create_only=False,
            status_ordering=True,
        ),
        ArtifactType(
            name="renditions",
            uri_path="/authoring/v1/renditions",
            folder="renditions",
            modified_suffix="/views/by-created",
        ),
        ArtifactType(
            name="image-profiles",
            uri_path="/authoring/v1/image-profiles",
            folder="image-profiles",
            modified_suffix="/views/by-modified",
            supports_force_override=True,
        ),
        ArtifactType(
            name="libraries",
            uri_path="/authoring/v1/libraries",
            folder="libraries",
            modified_suffix="/views/by-modified",
            supports_force_override=True,
            supports_tags=True,
        ),
        ArtifactType(
            name="categories",
            uri_path="/authoring/v1/categories",
            folder="categories",
            extension="_catmd.json",
            serial_push=True,
            push_sort_key=ancestor_depth,
            item_filter=is_not_permanent,
        ),
        ArtifactType(
            name="publishing-profiles",
            uri_path="/publishing/v1/profiles",
            folder="publishing-profiles",
        ),
        ArtifactType(
            name="publishing-sources",
            uri_path="/publishing/v1/sources",
            folder="publishing-sources",
        ),
        ArtifactType(
            name="publishing-site-revisions",
            uri_path="/publishing/v1/site-revisions",
            folder="publishing-site-revisions",
            default_item_ids=("default",),
        ),
        ArtifactType(
            name="publishing-jobs",
            uri_path="/publishing/v1/jobs",
            layout=PathLayout.NONE,
        ),
    )
}


def get_artifact_type(name: str) -> ArtifactType:
    """Look up a built-in artifact type by name.

    Raises:
        WchUnsupportedOperationError: If no such artifact type exists
    """
    try:
        return ARTIFACT_TYPES[name]
    except KeyError:
        raise WchUnsupportedOperationError(f"Unknown artifact type: {name}") from None
