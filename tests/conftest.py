"""Shared fixtures: an in-memory authoring service behind httpx.MockTransport."""

import json
from typing import Callable, Optional
from urllib.parse import unquote

import httpx
import pytest

from pywchtools.config import Config
from pywchtools.context import SyncContext

BASE_URL = "https://wch.example.com/api/tenant-1"
API_PREFIX = "/api/tenant-1"

Responder = Callable[[httpx.Request], Optional[httpx.Response]]


class FakeService:
    """Minimal authoring service keeping items per collection URI."""

    def __init__(self):
        self.collections: dict[str, dict[str, dict]] = {}
        self.requests: list[httpx.Request] = []
        self.responders: list[Responder] = []
        self._next_id = 0

    @property
    def transport(self) -> httpx.MockTransport:
        return httpx.MockTransport(self.handler)

    def add(self, uri_path: str, item: dict) -> dict:
        self.collections.setdefault(uri_path, {})[item["id"]] = dict(item)
        return item

    def items(self, uri_path: str) -> dict[str, dict]:
        return self.collections.setdefault(uri_path, {})

    def calls(self, method: str, path: Optional[str] = None) -> list[httpx.Request]:
        return [
            request
            for request in self.requests
            if request.method == method
            and (path is None or request.url.path == API_PREFIX + path)
        ]

    def _split(self, path: str) -> tuple[Optional[str], Optional[str]]:
        path = unquote(path[len(API_PREFIX):])
        for uri_path in sorted(self.collections, key=len, reverse=True):
            if path == uri_path:
                return uri_path, None
            if path.startswith(uri_path + "/"):
                return uri_path, path[len(uri_path) + 1:]
        return None, None

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        for responder in list(self.responders):
            response = responder(request)
            if response is not None:
                return response

        uri_path, item_id = self._split(request.url.path)
        if uri_path is None:
            return httpx.Response(404, json={"errors": [{"code": 404, "message": "no route"}]})
        items = self.collections[uri_path]

        if request.method == "GET" and item_id is None:
            offset = int(request.url.params.get("offset", 0))
            limit = int(request.url.params.get("limit", 100))
            values = list(items.values())
            return httpx.Response(200, json={"items": values[offset:offset + limit]})
        if request.method == "GET":
            if item_id not in items:
                return httpx.Response(404, json={"errors": [{"code": 3000}]})
            return httpx.Response(200, json=items[item_id])
        if request.method == "POST":
            body = json.loads(request.content)
            if not body.get("id"):
                self._next_id += 1
                body["id"] = f"generated-{self._next_id}"
            body["rev"] = "1"
            items[body["id"]] = body
            return httpx.Response(201, json=body)
        if request.method == "PUT":
            if item_id not in items:
                return httpx.Response(404, json={"errors": [{"code": 3000}]})
            body = json.loads(request.content)
            body["rev"] = str(int(items[item_id].get("rev") or 0) + 1)
            items[item_id] = body
            return httpx.Response(200, json=body)
        if request.method == "DELETE":
            if items.pop(item_id, None) is None:
                return httpx.Response(404)
            return httpx.Response(204)
        return httpx.Response(405)


def error_response(status_code: int, *codes: int) -> httpx.Response:
    """Build a remote error response with application error codes."""
    return httpx.Response(
        status_code,
        json={"errors": [{"code": code, "message": f"error {code}"} for code in codes]},
    )


@pytest.fixture
def service():
    """Create an empty fake authoring service."""
    return FakeService()


@pytest.fixture
def make_context(tmp_path, service):
    """Create sync contexts bound to the fake service and a temp working dir."""

    def factory(**options) -> SyncContext:
        merged = {"retry_min_timeout": 0, "retry_max_timeout": 0}
        merged.update(options)
        return SyncContext(
            base_url=BASE_URL,
            working_dir=tmp_path,
            tenant_id="tenant-1",
            config=Config(load_defaults=False),
            options=merged,
            transport=service.transport,
        )

    return factory
