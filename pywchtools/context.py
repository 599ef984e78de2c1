"""Per-call sync context.

A SyncContext carries everything that varies between runs: the tenant, the
service base URL, the local working directory, option overrides, the shared
HTTP client and the per-directory hash trackers. Accessors and helpers are
process-wide singletons and keep no state of their own, so all run state
lives here.
"""

from __future__ import annotations

import asyncio
import itertools
import logging
import threading
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable, Optional

import httpx

from .config import DEFAULT_OPTIONS, Config
from .config import config as default_config
from .exceptions import WchConfigError

logger = logging.getLogger(__name__)

EventCallback = Callable[[str, Any], None]


@dataclass
class SyncContext:
    """State shared by all operations of one sync run."""

    base_url: Optional[str] = None
    """Authoring service base URL, e.g. https://host/api/<tenant>"""

    working_dir: Path = field(default_factory=Path.cwd)
    """Root of the local artifact mirror"""

    tenant_id: Optional[str] = None
    """Tenant identifier, sent as a header and used to key local hashes"""

    options: dict[str, Any] = field(default_factory=dict)
    """Overrides; dict values are per-service sections"""

    config: Config = field(default_factory=lambda: default_config)
    """Lowest-precedence options provider"""

    headers: dict[str, str] = field(default_factory=dict)
    """Extra request headers"""

    request_id_prefix: Optional[str] = None
    """When set, every request carries an incrementing request id"""

    on_event: Optional[EventCallback] = None
    """Callback receiving (event name, payload) notifications"""

    transport: Optional[httpx.AsyncBaseTransport] = None
    """Custom transport for the HTTP client (tests use httpx.MockTransport)"""

    hash_trackers: dict[str, Any] = field(default_factory=dict, repr=False)
    """HashTracker cache keyed by artifact directory"""

    def __post_init__(self) -> None:
        self.working_dir = Path(self.working_dir)
        if self.base_url is None:
            self.base_url = self.config.base_url
        self._client: Optional[httpx.AsyncClient] = None
        self._request_counter = itertools.count(1)
        self.lock = threading.Lock()
        self._background_tasks: list[asyncio.Task] = []

    def get_option(
        self,
        key: str,
        service: Optional[str] = None,
        opts: Optional[dict[str, Any]] = None,
        default: Any = None,
    ) -> Any:
        """Resolve an option value.

        Resolution order: call options, context service section, context
        global value, configuration file, built-in default.

        Args:
            key: Option name
            service: Artifact type name for per-service overrides
            opts: Call options
            default: Value used when nothing else is set

        Returns:
            Resolved option value
        """
        if opts and opts.get(key) is not None:
            return opts[key]
        if service:
            section = self.options.get(service)
            if isinstance(section, dict) and section.get(key) is not None:
                return section[key]
        if self.options.get(key) is not None:
            return self.options[key]
        value = self.config.get_property(service, key)
        if value is not None:
            return value
        return DEFAULT_OPTIONS.get(key, default)

    def get_base_url(
        self, service: Optional[str] = None, opts: Optional[dict[str, Any]] = None
    ) -> str:
        """Get the service base URL without a trailing slash."""
        url = self.get_option("base_url", service, opts) or self.base_url
        if not url:
            raise WchConfigError(
                "Base URL not configured. Please set WCHTOOLS_BASE_URL "
                "or pass base_url to the sync context."
            )
        return str(url).rstrip("/")

    @property
    def client(self) -> httpx.AsyncClient:
        """Get or create the shared HTTP client."""
        if self._client is None or self._client.is_closed:
            timeout = float(self.get_option("request_timeout"))
            self._client = httpx.AsyncClient(
                timeout=httpx.Timeout(timeout),
                follow_redirects=True,
                transport=self.transport,
            )
        return self._client

    def next_request_id(self) -> Optional[str]:
        """Return the next request id, or None when no prefix is configured."""
        if not self.request_id_prefix:
            return None
        with self.lock:
            counter = next(self._request_counter)
        return f"{self.request_id_prefix}-{counter:x}"

    def emit(self, event: str, payload: Any) -> None:
        """Notify the event callback, if any."""
        if self.on_event is None:
            return
        try:
            self.on_event(event, payload)
        except Exception as e:
            logger.warning(f"Event callback failed for '{event}': {e}")

    def add_background_task(self, task: asyncio.Task) -> None:
        """Register a task to be cancelled when the context closes."""
        self._background_tasks.append(task)

    async def aclose(self) -> None:
        """Cancel background tasks and close the HTTP client."""
        tasks, self._background_tasks = self._background_tasks, []
        for task in tasks:
            task.cancel()
        for task in tasks:
            try:
                await task
            except asyncio.CancelledError:
                pass
        if self._client is not None and not self._client.is_closed:
            await self._client.aclose()
        self._client = None

    async def __aenter__(self) -> SyncContext:
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.aclose()
