"""Shared fakes: an in-memory provider backend and a fake LLM provider API."""

import asyncio
import itertools
import json
import re
from typing import Any, Callable, Dict, List, Optional, Union

import httpx
import pytest
import pytest_asyncio

from providerhub.services.backend_client import BackendClient
from providerhub.services.key_fetcher import MultiKeyModelFetcher

BACKEND_URL = "http://backend.test"
PROVIDER_URL = "http://provider.test"


class FakeBackend:
    """In-memory platform/key/model store answering the backend REST API."""

    def __init__(self):
        self.platforms: Dict[int, Dict[str, Any]] = {}
        self.keys: Dict[int, Dict[str, Any]] = {}
        self.models: Dict[int, Dict[str, Any]] = {}
        self.calls: List[str] = []
        self.proxy_requests: List[Dict[str, Any]] = []
        self.proxy_handler: Optional[Callable[[Dict[str, Any]], Dict[str, Any]]] = None
        self._ids = itertools.count(1)
        self._failures: List[Dict[str, Any]] = []

    # --- Seeding and inspection ---

    def add_platform(self, name: str, format: str = "OpenAI", base_url: str = PROVIDER_URL) -> int:
        platform_id = next(self._ids)
        self.platforms[platform_id] = {
            "id": platform_id,
            "name": name,
            "format": format,
            "base_url": base_url,
            "rate_limit": {"rpm": 0, "tpm": 0},
        }
        return platform_id

    def add_key(self, platform_id: int, value: str) -> int:
        key_id = next(self._ids)
        self.keys[key_id] = {"id": key_id, "platform_id": platform_id, "value": value}
        return key_id

    def add_model(self, platform_id: int, name: str, key_ids: List[int], alias: str = "") -> int:
        model_id = next(self._ids)
        self.models[model_id] = {
            "id": model_id,
            "platform_id": platform_id,
            "name": name,
            "alias": alias,
            "api_keys": [{"id": k} for k in key_ids],
        }
        return model_id

    def keys_of(self, platform_id: int) -> List[Dict[str, Any]]:
        return [k for k in self.keys.values() if k["platform_id"] == platform_id]

    def models_of(self, platform_id: int) -> Dict[str, List[int]]:
        """Model name -> sorted key ids for one platform."""
        return {
            m["name"]: sorted(k["id"] for k in m["api_keys"])
            for m in self.models.values()
            if m["platform_id"] == platform_id
        }

    def count_calls(self, prefix: str) -> int:
        return sum(1 for call in self.calls if call.startswith(prefix))

    def fail(self, method: str, pattern: str, status: int = 500, times: int = 1, after: int = 0) -> None:
        """Let `after` matching requests through, then fail the next `times` ones."""
        self._failures.append(
            {"method": method, "regex": re.compile(pattern), "status": status, "times": times, "after": after}
        )

    # --- Transport ---

    def _injected_failure(self, method: str, path: str) -> Optional[int]:
        for failure in self._failures:
            if failure["method"] != method or not failure["regex"].fullmatch(path):
                continue
            if failure["after"] > 0:
                failure["after"] -= 1
            elif failure["times"] > 0:
                failure["times"] -= 1
                return failure["status"]
        return None

    def handler(self, request: httpx.Request) -> httpx.Response:
        method = request.method
        path = request.url.path.removeprefix("/api")
        body = json.loads(request.content) if request.content else None
        self.calls.append(f"{method} {path}")

        status = self._injected_failure(method, path)
        if status is not None:
            return httpx.Response(status, json={"detail": "injected failure"})

        if method == "POST" and path == "/proxy":
            self.proxy_requests.append(body)
            if self.proxy_handler is None:
                return httpx.Response(502, json={"detail": "proxy disabled"})
            return httpx.Response(200, json=self.proxy_handler(body))

        if path == "/platforms":
            if method == "GET":
                return httpx.Response(200, json=list(self.platforms.values()))
            platform_id = self.add_platform(body["name"], body["format"], body["base_url"])
            return httpx.Response(201, json=self.platforms[platform_id])

        match = re.fullmatch(r"/platforms/(\d+)(/.*)?", path)
        if not match:
            return httpx.Response(404, json={"detail": "Not found"})
        platform_id, rest = int(match.group(1)), match.group(2) or ""
        if platform_id not in self.platforms:
            return httpx.Response(404, json={"detail": "Platform not found"})

        if rest == "":
            if method == "DELETE":
                del self.platforms[platform_id]
                return httpx.Response(204)
            return httpx.Response(200, json=self.platforms[platform_id])

        if rest == "/keys":
            if method == "GET":
                return httpx.Response(200, json=self.keys_of(platform_id))
            key_id = self.add_key(platform_id, body["value"])
            return httpx.Response(201, json=self.keys[key_id])

        if rest == "/models":
            if method == "GET":
                return httpx.Response(
                    200, json=[m for m in self.models.values() if m["platform_id"] == platform_id]
                )
            model_id = self.add_model(
                platform_id, body["name"], [k["id"] for k in body["api_keys"]], body.get("alias", "")
            )
            return httpx.Response(201, json=self.models[model_id])

        if rest == "/models/batch":
            if method == "POST":
                created = [
                    self.models[self.add_model(platform_id, m["name"], [k["id"] for k in m["api_keys"]], m["alias"])]
                    for m in body["models"]
                ]
                return httpx.Response(
                    201, json={"models": created, "total_count": len(created), "created_count": len(created)}
                )
            deleted = [i for i in body["ids"] if self.models.pop(i, None) is not None]
            return httpx.Response(200, json={"deleted_count": len(deleted)})

        match = re.fullmatch(r"/models/(\d+)", rest)
        if match and int(match.group(1)) in self.models:
            model_id = int(match.group(1))
            if method == "DELETE":
                del self.models[model_id]
                return httpx.Response(204)
            self.models[model_id].update(
                name=body["name"], alias=body["alias"], api_keys=body["api_keys"]
            )
            return httpx.Response(200, json=self.models[model_id])

        return httpx.Response(404, json={"detail": "Not found"})


class FakeProvider:
    """
    Provider API answering model listings per credential.

    Each key maps either to a list of model names or to an HTTP status code.
    The key None stands for requests sent without credentials.
    """

    def __init__(self):
        self.responses: Dict[Optional[str], Union[List[str], int]] = {}
        self.unreachable = False
        self.requests: List[httpx.Request] = []

    def set_models(self, key: Optional[str], names: List[str]) -> None:
        self.responses[key] = names

    def set_status(self, key: Optional[str], status: int) -> None:
        self.responses[key] = status

    @staticmethod
    def credential_of(request: httpx.Request) -> Optional[str]:
        auth = request.headers.get("Authorization")
        if auth and auth.startswith("Bearer "):
            return auth[7:]
        return (
            request.headers.get("x-api-key")
            or request.headers.get("x-goog-api-key")
            or request.headers.get("api-key")
        )

    def body_for(self, path: str, names: List[str]) -> Dict[str, Any]:
        if path == "/api/tags":
            return {"models": [{"name": n} for n in names]}
        if path == "/v1beta/models":
            return {"models": [{"name": f"models/{n}"} for n in names]}
        return {"data": [{"id": n} for n in names]}

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        if self.unreachable:
            raise httpx.ConnectError("connection refused", request=request)

        answer = self.responses.get(self.credential_of(request), 401)
        if isinstance(answer, int):
            return httpx.Response(answer, text="denied")
        return httpx.Response(200, json=self.body_for(request.url.path, answer))


@pytest.fixture
def fake_backend() -> FakeBackend:
    return FakeBackend()


@pytest.fixture
def fake_provider() -> FakeProvider:
    return FakeProvider()


@pytest_asyncio.fixture
async def backend(fake_backend):
    client = BackendClient(
        base_url=BACKEND_URL,
        token="backend-token",
        api_prefix="/api",
        transport=httpx.MockTransport(fake_backend.handler),
    )
    yield client
    await client.cleanup()


@pytest_asyncio.fixture
async def provider_client(fake_provider):
    client = httpx.AsyncClient(transport=httpx.MockTransport(fake_provider.handler))
    yield client
    await client.aclose()


@pytest.fixture
def fetcher(backend, provider_client) -> MultiKeyModelFetcher:
    return MultiKeyModelFetcher(backend=backend, http_client=provider_client, use_proxy_fallback=True)


@pytest.fixture
def wait_until():
    """Poll a predicate from inside the event loop until it holds."""

    async def wait(predicate: Callable[[], bool], timeout: float = 2.0) -> None:
        async def poll():
            while not predicate():
                await asyncio.sleep(0.01)

        await asyncio.wait_for(poll(), timeout)

    return wait
