"""Factories for the per-artifact-type accessors and helpers.

Each factory returns the single shared instance for an artifact type,
creating it on first use.
"""

from typing import Optional

from .artifacts import ARTIFACT_TYPES, ArtifactType, PathLayout, get_artifact_type
from .exceptions import WchUnsupportedOperationError
from .fs import FileSystemAccessor, PathBasedFileSystemAccessor, SiteFileSystemAccessor
from .helper import ArtifactHelper
from .rest import RestAccessor
from .singleton import InstanceCache, construction_token

_rest_accessors = InstanceCache()
_fs_accessors = InstanceCache()
_helpers = InstanceCache()

_FS_CLASSES = {
    PathLayout.FLAT: FileSystemAccessor,
    PathLayout.PATH: PathBasedFileSystemAccessor,
    PathLayout.HIERARCHICAL: PathBasedFileSystemAccessor,
    PathLayout.SITE: SiteFileSystemAccessor,
}


def get_rest_accessor(name: str) -> RestAccessor:
    """Get the REST accessor for an artifact type."""
    artifact = get_artifact_type(name)
    return _rest_accessors.get(
        name, lambda: RestAccessor(artifact, _token=construction_token())
    )


def _create_fs_accessor(artifact: ArtifactType) -> FileSystemAccessor:
    fs_class = _FS_CLASSES.get(artifact.layout)
    if fs_class is None or not artifact.is_local:
        raise WchUnsupportedOperationError(
            f"Artifact type '{artifact.name}' is not stored locally"
        )
    return fs_class(artifact, _token=construction_token())


def get_fs_accessor(name: str) -> FileSystemAccessor:
    """Get the file system accessor for an artifact type.

    Raises:
        WchUnsupportedOperationError: If the type has no local files
    """
    artifact = get_artifact_type(name)
    return _fs_accessors.get(name, lambda: _create_fs_accessor(artifact))


def get_helper(name: str) -> ArtifactHelper:
    """Get the helper for an artifact type."""
    artifact = get_artifact_type(name)

    def create() -> ArtifactHelper:
        fs: Optional[FileSystemAccessor] = (
            get_fs_accessor(name) if artifact.is_local else None
        )
        return ArtifactHelper(
            artifact, get_rest_accessor(name), fs, _token=construction_token()
        )

    return _helpers.get(name, create)


def list_artifact_types(local_only: bool = False) -> list[str]:
    """List the names of the built-in artifact types."""
    return [
        name
        for name, artifact in ARTIFACT_TYPES.items()
        if artifact.is_local or not local_only
    ]
