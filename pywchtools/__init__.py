"""wchtools - sync artifacts between a local folder and an authoring service."""

from .artifacts import ARTIFACT_TYPES, ArtifactType, PathLayout, get_artifact_type
from .config import Config, config
from .context import SyncContext
from .exceptions import (
    WchConfigError,
    WchError,
    WchIOError,
    WchNetworkError,
    WchParseError,
    WchRemoteError,
    WchSingletonViolationError,
    WchSyncError,
    WchUnsupportedOperationError,
)
from .hashes import HashTracker
from .helper import ArtifactHelper
from .models import CompareResult, ItemFailure, SessionInfo, SyncResult
from .registry import get_fs_accessor, get_helper, get_rest_accessor
from .retry import RetryableRequest, RetryPolicy
from .session import LoginSession

__all__ = [
    "ARTIFACT_TYPES",
    "ArtifactHelper",
    "ArtifactType",
    "CompareResult",
    "Config",
    "HashTracker",
    "ItemFailure",
    "LoginSession",
    "PathLayout",
    "RetryPolicy",
    "RetryableRequest",
    "SessionInfo",
    "SyncContext",
    "SyncResult",
    "WchConfigError",
    "WchError",
    "WchIOError",
    "WchNetworkError",
    "WchParseError",
    "WchRemoteError",
    "WchSingletonViolationError",
    "WchSyncError",
    "WchUnsupportedOperationError",
    "config",
    "get_artifact_type",
    "get_fs_accessor",
    "get_helper",
    "get_rest_accessor",
]
