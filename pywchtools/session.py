"""Authenticated session provider.

Login uses HTTP basic authentication against the login endpoint; the
session cookies it sets are kept by the context's HTTP client and sent with
every later request. Long runs can keep the session alive with a background
relogin task that is cancelled when the context closes.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Optional

from .context import SyncContext
from .exceptions import WchConfigError, WchError, WchRemoteError
from .models import SessionInfo
from .retry import RetryableRequest, RetryPolicy, parse_error_codes

logger = logging.getLogger(__name__)

LOGIN_URI_PATH = "/login/v1/basicauth"
TENANT_ID_HEADER = "x-ibm-dx-tenant-id"
TENANT_BASE_URL_HEADER = "x-ibm-dx-tenant-base-url"


class LoginSession:
    """Logs in to the authoring service and keeps the session alive."""

    def __init__(self, username: Optional[str] = None, password: Optional[str] = None):
        """Initialize the session provider.

        Args:
            username: Login user name (uses context config if not provided)
            password: Login password (uses context config if not provided)
        """
        self.username = username
        self.password = password

    def _credentials(self, context: SyncContext) -> tuple[str, str]:
        username = self.username or context.config.username
        password = self.password or context.config.password
        if not username or not password:
            raise WchConfigError(
                "Credentials not configured. Please set WCHTOOLS_USERNAME and "
                "WCHTOOLS_PASSWORD environment variables."
            )
        return username, password

    async def login(
        self, context: SyncContext, opts: Optional[dict[str, Any]] = None
    ) -> SessionInfo:
        """Authenticate and store the tenant id on the context.

        Returns:
            SessionInfo with the tenant id and base URL

        Raises:
            WchConfigError: If credentials or the base URL are missing
            WchRemoteError: If the service rejected the login
        """
        username, password = self._credentials(context)
        base_url = context.get_base_url("login", opts)
        url = base_url + LOGIN_URI_PATH
        headers = {"User-Agent": str(context.get_option("user_agent", "login", opts))}
        if context.tenant_id:
            headers[TENANT_ID_HEADER] = context.tenant_id

        policy = RetryPolicy.from_options(lambda key: context.get_option(key, "login", opts))
        response = await RetryableRequest(context.client, policy).send(
            "GET",
            url,
            headers=headers,
            auth=(username, password),
            follow_redirects=False,
        )
        if response.status_code not in (200, 302):
            raise WchRemoteError(
                f"Login to {base_url} as {username} failed with status "
                f"{response.status_code}",
                status_code=response.status_code,
                body=response.text,
                error_codes=parse_error_codes(response.content),
                method="GET",
                url=url,
            )

        tenant_id = response.headers.get(TENANT_ID_HEADER)
        if tenant_id:
            context.tenant_id = tenant_id
        tenant_base_url = response.headers.get(TENANT_BASE_URL_HEADER)
        logger.debug(f"Authenticated to {base_url} as {username}")
        try:
            body = response.json() if response.content else {}
        except ValueError:
            body = {}
        return SessionInfo(
            base_url=tenant_base_url or base_url,
            tenant_id=tenant_id or context.tenant_id,
            username=username,
            raw=body if isinstance(body, dict) else {"items": body},
        )

    def start_relogin(
        self, context: SyncContext, interval: Optional[float] = None
    ) -> Optional[asyncio.Task]:
        """Start a background task that logs in again periodically.

        The task belongs to the context and is cancelled by
        ``SyncContext.aclose()``.

        Args:
            context: Sync context
            interval: Seconds between logins (uses the relogin_interval option
                if not provided)

        Returns:
            The started task, or None when no interval is configured
        """
        interval = interval or context.get_option("relogin_interval", "login")
        if not interval:
            return None

        async def relogin() -> None:
            while True:
                await asyncio.sleep(float(interval))
                try:
                    await self.login(context)
                except WchError as e:
                    logger.warning(f"Relogin failed: {e}")

        task = asyncio.create_task(relogin())
        context.add_background_task(task)
        return task
