"""REST accessor for authoring service artifacts."""

from __future__ import annotations

import logging
from typing import Any, AsyncIterator, Optional
from urllib.parse import quote

import httpx

from .artifacts import ArtifactType
from .context import SyncContext
from .exceptions import WchParseError, WchRemoteError, WchUnsupportedOperationError
from .retry import RetryableRequest, RetryPolicy, parse_error_codes
from .singleton import check_token

logger = logging.getLogger(__name__)


def _decode_body(response: httpx.Response) -> Any:
    if not response.content:
        return None
    try:
        return response.json()
    except ValueError:
        return response.text


def _error_message(body: Any) -> Optional[str]:
    if isinstance(body, dict):
        errors = body.get("errors")
        if isinstance(errors, list) and errors and isinstance(errors[0], dict):
            msg = errors[0].get("message") or errors[0].get("description")
            if msg:
                return str(msg)
        msg = body.get("message") or body.get("error")
        if msg:
            return str(msg)
    elif isinstance(body, str) and body.strip():
        return body.strip()[:200]
    return None


class RestAccessor:
    """CRUD access to one artifact type of the authoring service.

    One instance per artifact type is shared by the whole process; obtain it
    via :func:`pywchtools.registry.get_rest_accessor`. All run state comes
    from the SyncContext passed to each call.
    """

    def __init__(self, artifact: ArtifactType, _token: object = None):
        check_token(_token, type(self).__name__)
        self.artifact = artifact

    @property
    def service_name(self) -> str:
        return self.artifact.name

    def get_uri_path(self, opts: Optional[dict[str, Any]] = None) -> str:
        """Get the collection URI path, e.g. /authoring/v1/types."""
        return self.artifact.resolve(self.artifact.uri_path, opts)

    def _url(self, context: SyncContext, path: str, opts: Optional[dict[str, Any]]) -> str:
        if path.startswith("http:") or path.startswith("https:"):
            return path
        return context.get_base_url(self.service_name, opts) + path

    def _headers(
        self, context: SyncContext, opts: Optional[dict[str, Any]]
    ) -> dict[str, str]:
        headers = {
            "Accept": "application/json",
            "User-Agent": str(context.get_option("user_agent", self.service_name, opts)),
        }
        if context.tenant_id:
            headers["x-ibm-dx-tenant-id"] = context.tenant_id
        request_id = context.next_request_id()
        if request_id:
            headers["x-ibm-dx-request-id"] = request_id
        headers.update(context.headers)
        if opts and opts.get("headers"):
            headers.update(opts["headers"])
        return headers

    async def _send(
        self,
        context: SyncContext,
        method: str,
        path: str,
        opts: Optional[dict[str, Any]] = None,
        **kwargs: Any,
    ) -> tuple[httpx.Response, str]:
        url = self._url(context, path, opts)
        policy = RetryPolicy.from_options(
            lambda key: context.get_option(key, self.service_name, opts)
        )
        request = RetryableRequest(context.client, policy)
        logger.debug(f"{method} {url}")
        response = await request.send(
            method, url, headers=self._headers(context, opts), **kwargs
        )
        return response, url

    def _error(self, response: httpx.Response, method: str, url: str) -> WchRemoteError:
        body = _decode_body(response)
        detail = _error_message(body)
        message = f"{method} {url} failed with status {response.status_code}"
        if detail:
            message = f"{message}: {detail}"
        return WchRemoteError(
            message,
            status_code=response.status_code,
            body=body,
            error_codes=parse_error_codes(body),
            method=method,
            url=url,
        )

    def _json(self, response: httpx.Response, url: str) -> Any:
        if not response.content:
            return None
        try:
            return response.json()
        except ValueError as e:
            raise WchParseError(f"Invalid JSON response from {url}") from e

    async def _get_chunk(
        self,
        context: SyncContext,
        path: str,
        params: Optional[dict[str, Any]],
        opts: Optional[dict[str, Any]],
    ) -> tuple[list[dict[str, Any]], Optional[str]]:
        response, url = await self._send(context, "GET", path, opts, params=params)
        if not response.is_success:
            raise self._error(response, "GET", url)
        body = self._json(response, url)
        if isinstance(body, dict) and "items" in body:
            return list(body.get("items") or []), body.get("next")
        if isinstance(body, list):
            return body, None
        return [], None

    def _chunk_params(
        self, context: SyncContext, opts: Optional[dict[str, Any]], offset: int
    ) -> dict[str, Any]:
        return {
            "offset": offset,
            "limit": int(context.get_option("limit", self.service_name, opts)),
        }

    async def get_items(
        self, context: SyncContext, opts: Optional[dict[str, Any]] = None
    ) -> list[dict[str, Any]]:
        """Get one chunk of items, starting at the ``offset`` option.

        Args:
            context: Sync context
            opts: Call options (``offset``, ``limit``)

        Returns:
            List of remote items
        """
        if self.artifact.default_item_ids:
            return [
                await self.get_item(context, item_id, opts)
                for item_id in self.artifact.default_item_ids
            ]
        offset = int((opts or {}).get("offset") or 0)
        items, _ = await self._get_chunk(
            context, self.get_uri_path(opts), self._chunk_params(context, opts, offset), opts
        )
        return items

    async def get_modified_items(
        self,
        context: SyncContext,
        since: Optional[str],
        opts: Optional[dict[str, Any]] = None,
    ) -> list[dict[str, Any]]:
        """Get one chunk of items modified after a timestamp.

        Falls back to :meth:`get_items` when the type has no modified view
        or no timestamp is known.
        """
        if not self.artifact.modified_suffix or not since:
            return await self.get_items(context, opts)
        offset = int((opts or {}).get("offset") or 0)
        params = self._chunk_params(context, opts, offset)
        params["start"] = since
        items, _ = await self._get_chunk(
            context, self.get_uri_path(opts) + self.artifact.modified_suffix, params, opts
        )
        return items

    async def iter_item_chunks(
        self,
        context: SyncContext,
        opts: Optional[dict[str, Any]] = None,
        since: Optional[str] = None,
    ) -> AsyncIterator[list[dict[str, Any]]]:
        """Iterate over all remote items chunk by chunk.

        Follows ``next`` links when the service returns them, otherwise
        advances the offset until a short chunk is returned.

        Args:
            context: Sync context
            opts: Call options
            since: Only items modified after this timestamp, when supported

        Yields:
            Lists of remote items
        """
        if self.artifact.default_item_ids:
            yield await self.get_items(context, opts)
            return
        path = self.get_uri_path(opts)
        limit = int(context.get_option("limit", self.service_name, opts))
        params: Optional[dict[str, Any]] = self._chunk_params(context, opts, 0)
        if since and self.artifact.modified_suffix:
            path += self.artifact.modified_suffix
            params["start"] = since  # type: ignore[index]
        offset = 0
        while True:
            items, next_uri = await self._get_chunk(context, path, params, opts)
            if items:
                yield items
            if next_uri:
                path, params = next_uri, None
            elif len(items) < limit or params is None:
                return
            else:
                offset += limit
                params = dict(params, offset=offset)

    async def get_item(
        self, context: SyncContext, item_id: str, opts: Optional[dict[str, Any]] = None
    ) -> dict[str, Any]:
        """Get a single item by id.

        Raises:
            WchRemoteError: If the item could not be retrieved
        """
        path = f"{self.get_uri_path(opts)}/{quote(str(item_id), safe='')}"
        response, url = await self._send(context, "GET", path, opts)
        if not response.is_success:
            raise self._error(response, "GET", url)
        return self._json(response, url)

    async def get_item_by_path(
        self, context: SyncContext, path: str, opts: Optional[dict[str, Any]] = None
    ) -> dict[str, Any]:
        """Get a single item by its path attribute.

        Raises:
            WchUnsupportedOperationError: If the type has no by-path endpoint
            WchRemoteError: If the item could not be retrieved
        """
        if not self.artifact.supports_item_by_path:
            raise WchUnsupportedOperationError(
                f"Artifact type '{self.service_name}' does not support get by path"
            )
        response, url = await self._send(
            context,
            "GET",
            f"{self.get_uri_path(opts)}/by-path",
            opts,
            params={"path": path},
        )
        if not response.is_success:
            raise self._error(response, "GET", url)
        return self._json(response, url)

    def _is_create_only(self, context: SyncContext, opts: Optional[dict[str, Any]]) -> bool:
        return self.artifact.supports_create_only and bool(
            context.get_option("create_only", self.service_name, opts)
        )

    async def create_item(
        self,
        context: SyncContext,
        item: dict[str, Any],
        opts: Optional[dict[str, Any]] = None,
    ) -> dict[str, Any]:
        """Create an item remotely.

        The ``rev`` field is never sent on create. In create-only mode an
        item that already exists (HTTP 409) is not an error: the existing
        remote item is returned instead.

        Returns:
            The created (or already existing) item
        """
        payload = {key: value for key, value in item.items() if key != "rev"}
        response, url = await self._send(
            context, "POST", self.get_uri_path(opts), opts, json=payload
        )
        if response.is_success:
            return self._json(response, url) or dict(item)
        if response.status_code == 409 and self._is_create_only(context, opts):
            logger.info(
                f"{self.service_name} item {item.get('id') or item.get('name')} "
                f"already exists, keeping the remote copy"
            )
            if item.get("id"):
                return await self.get_item(context, item["id"], opts)
            return dict(item)
        raise self._error(response, "POST", url)

    async def update_item(
        self,
        context: SyncContext,
        item: dict[str, Any],
        opts: Optional[dict[str, Any]] = None,
    ) -> dict[str, Any]:
        """Update an item remotely, creating it if it doesn't exist.

        Returns:
            The updated (or created) item
        """
        if self._is_create_only(context, opts):
            return await self.create_item(context, item, opts)
        path = f"{self.get_uri_path(opts)}/{quote(str(item['id']), safe='')}"
        params = None
        if self.artifact.supports_force_override and context.get_option(
            "force_override", self.service_name, opts
        ):
            params = {"forceOverride": "true"}
        response, url = await self._send(
            context, "PUT", path, opts, json=item, params=params
        )
        if response.is_success:
            return self._json(response, url) or dict(item)
        if response.status_code == 404:
            logger.debug(
                f"{self.service_name} item {item['id']} not found, creating it instead"
            )
            return await self.create_item(context, item, opts)
        raise self._error(response, "PUT", url)

    async def delete_item(
        self,
        context: SyncContext,
        item: dict[str, Any],
        opts: Optional[dict[str, Any]] = None,
    ) -> dict[str, Any]:
        """Delete an item remotely.

        Returns:
            The deleted item
        """
        path = f"{self.get_uri_path(opts)}/{quote(str(item['id']), safe='')}"
        response, url = await self._send(context, "DELETE", path, opts)
        if not response.is_success:
            raise self._error(response, "DELETE", url)
        return item
