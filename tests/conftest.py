import json
import re
from urllib.parse import parse_qs, unquote

import httpx
import pytest

from sidecar.models.domain.session_domain import Session
from sidecar.services.credential_provider import CredentialProvider
from sidecar.services.crm.v8_adapter import V8Adapter
from sidecar.services.crm.v8_client import V8Client
from sidecar.services.dedup_store import DedupStore
from sidecar.services.infrastructure.kv_store import MemoryKeyValueStore
from sidecar.services.profile_registry import ProfileRegistry, build_profile
from sidecar.services.runtime_limits import resolve_runtime_limits
from sidecar.services.token_cache import StoreTokenTier, TieredTokenCache

CRM_BASE_URL = "https://crm.test"
TOKEN_PATH = "/legacy/Api/access_token"
SIGNING_SECRET = "test-signing-secret-with-enough-length-1234"

_FILTER_EQ = re.compile(r"^filter\[([A-Za-z0-9_]+)\]\[eq\]$")
_FILTER_PLAIN = re.compile(r"^filter\[([A-Za-z0-9_]+)\]$")


class FakeSuiteCrm:
    """In-memory stand-in for a SuiteCRM V8 instance behind httpx.MockTransport."""

    def __init__(self):
        self.records: dict[str, dict[str, dict]] = {}
        self.relationships: dict[tuple[str, str, str], list[tuple[str, str]]] = {}
        self.requests: list[httpx.Request] = []
        self.token_requests: list[dict] = []
        self.token_status = 200
        self.token_body: dict | str = {"access_token": "service-token", "expires_in": 3600}
        self.rejected_filter_fields: set[str] = set()
        self.reject_operator_filters = False
        self.reject_sort = False
        self.create_failures: dict[str, int] = {}
        self.missing_modules: set[str] = set()
        self._counter = 0

    # -- setup helpers -------------------------------------------------

    def add(self, module: str, attributes: dict, record_id: str | None = None) -> str:
        if record_id is None:
            self._counter += 1
            record_id = f"{module.lower()}-{self._counter}"
        self.records.setdefault(module, {})[record_id] = dict(attributes)
        return record_id

    def link(self, module: str, record_id: str, link: str, target_module: str, target_id: str) -> None:
        self.relationships.setdefault((module, record_id, link), []).append((target_module, target_id))

    def created(self, module: str) -> list[dict]:
        return list(self.records.get(module, {}).values())

    def data_requests(self, method: str | None = None) -> list[httpx.Request]:
        return [
            r
            for r in self.requests
            if r.url.path.startswith("/Api/V8") and (method is None or r.method == method)
        ]

    # -- transport -----------------------------------------------------

    def transport(self) -> httpx.MockTransport:
        return httpx.MockTransport(self.handler)

    def client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(transport=self.transport())

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        path = request.url.path

        if path == TOKEN_PATH and request.method == "POST":
            form = {k: v[0] for k, v in parse_qs(request.content.decode()).items()}
            self.token_requests.append(form)
            if isinstance(self.token_body, dict):
                return httpx.Response(self.token_status, json=self.token_body)
            return httpx.Response(self.token_status, text=self.token_body)

        if not path.startswith("/Api/V8/module"):
            return httpx.Response(404, json={"errors": [{"title": "Not found"}]})

        # Route on the raw path so escaped slashes stay inside one segment.
        raw_path = request.url.raw_path.decode("ascii").split("?", 1)[0]
        parts = [unquote(p) for p in raw_path[len("/Api/V8/module") :].split("/") if p]

        if request.method == "POST" and not parts:
            return self._create(request)
        if request.method == "GET" and len(parts) == 1:
            return self._list(request, parts[0])
        if request.method == "GET" and len(parts) == 2:
            return self._read(parts[0], parts[1])
        if request.method == "GET" and len(parts) == 4 and parts[2] == "relationships":
            return self._related(request, parts[0], parts[1], parts[3])
        return httpx.Response(404, json={"errors": [{"title": "Not found"}]})

    def _resource(self, module: str, record_id: str) -> dict:
        return {"type": module, "id": record_id, "attributes": self.records[module][record_id]}

    def _create(self, request: httpx.Request) -> httpx.Response:
        data = json.loads(request.content)["data"]
        module = data["type"]
        if module in self.create_failures:
            return httpx.Response(self.create_failures[module], json={"errors": [{"title": "Rejected"}]})
        record_id = self.add(module, data.get("attributes") or {})
        return httpx.Response(201, json={"data": self._resource(module, record_id)})

    def _list(self, request: httpx.Request, module: str) -> httpx.Response:
        if module in self.missing_modules:
            return httpx.Response(404, json={"errors": [{"title": "Module not found"}]})

        params = request.url.params
        if self.reject_operator_filters and "filter[operator]" in params:
            return httpx.Response(400, json={"errors": [{"title": "Bad filter"}]})

        conditions = []
        for key, value in params.multi_items():
            match = _FILTER_EQ.match(key) or _FILTER_PLAIN.match(key)
            if not match or match.group(1) == "operator":
                continue
            if match.group(1) in self.rejected_filter_fields:
                return httpx.Response(400, json={"errors": [{"title": "Unknown field"}]})
            conditions.append((match.group(1), value))

        rows = [
            self._resource(module, record_id)
            for record_id, attrs in self.records.get(module, {}).items()
            if all(str(attrs.get(field)) == value for field, value in conditions)
        ]
        size = int(params.get("page[size]", "20"))
        return httpx.Response(200, json={"data": rows[:size]})

    def _read(self, module: str, record_id: str) -> httpx.Response:
        if record_id not in self.records.get(module, {}):
            return httpx.Response(404, json={"errors": [{"title": "Not found"}]})
        return httpx.Response(200, json={"data": self._resource(module, record_id)})

    def _related(self, request: httpx.Request, module: str, record_id: str, link: str) -> httpx.Response:
        if record_id not in self.records.get(module, {}):
            return httpx.Response(404, json={"errors": [{"title": "Not found"}]})
        if self.reject_sort and "sort" in request.url.params:
            return httpx.Response(400, json={"errors": [{"title": "Sort not supported"}]})
        rows = [
            self._resource(target_module, target_id)
            for target_module, target_id in self.relationships.get((module, record_id, link), [])
            if target_id in self.records.get(target_module, {})
        ]
        return httpx.Response(200, json={"data": rows})


class StaticTokenSource:
    def __init__(self, token: str = "user-token"):
        self.token = token

    async def get_access_token(self, profile) -> str:
        return self.token


def _profile_entry(**overrides) -> dict:
    entry = {
        "id": "acme",
        "name": "Acme",
        "suitecrmBaseUrl": CRM_BASE_URL + "/",
        "apiFlavor": "suitecrm_v8_jsonapi",
        "oauth": {"clientId": "client-1", "clientSecret": "secret-1"},
    }
    entry.update(overrides)
    return entry


@pytest.fixture
def make_entry():
    """Raw camelCase profile entry pointing at the fake CRM."""
    return _profile_entry


@pytest.fixture
def signing_secret():
    return SIGNING_SECRET


@pytest.fixture
def fake_crm():
    return FakeSuiteCrm()


@pytest.fixture
def profile():
    return build_profile(_profile_entry(), environ={})


@pytest.fixture
def registry(profile):
    return ProfileRegistry([profile])


@pytest.fixture
def limits():
    return resolve_runtime_limits(10 * 1024 * 1024)


@pytest.fixture
def dedup_store():
    return DedupStore(MemoryKeyValueStore())


@pytest.fixture
def token_cache():
    return TieredTokenCache(
        fast=StoreTokenTier(MemoryKeyValueStore(), "memory"),
        durable=StoreTokenTier(MemoryKeyValueStore(), "durable"),
    )


@pytest.fixture
def credential_provider(fake_crm, token_cache):
    return CredentialProvider(fake_crm.client(), token_cache)


@pytest.fixture
def adapter(fake_crm, profile, dedup_store, limits):
    client = V8Client(profile, StaticTokenSource(), fake_crm.client())
    return V8Adapter(profile, client, dedup_store, limits)


@pytest.fixture
def make_session():
    def _make(profile_id: str = "acme", **overrides) -> Session:
        fields = {
            "subject_id": "a" * 32,
            "profile_id": profile_id,
            "username": "jane@example.com",
            "email": "jane@example.com",
            "access_token": "user-token",
            "refresh_token": "user-refresh",
            "token_expires_at": 0,
            "created_at": "2024-01-01T00:00:00+00:00",
        }
        fields.update(overrides)
        return Session(**fields)

    return _make
