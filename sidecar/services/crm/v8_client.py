"""
Low-level client for the SuiteCRM V8 JSON:API.
"""

from collections.abc import Sequence
from urllib.parse import quote

import httpx

from sidecar.infrastructure.observability.logging import get_logger, redact_secrets
from sidecar.models.domain.profile_domain import Profile
from sidecar.services.credential_provider import AccessTokenSource
from sidecar.services.errors import (
    UpstreamBadResponse,
    UpstreamHttpError,
    UpstreamUnreachable,
    body_snippet,
)

logger = get_logger(__name__)

API_PREFIX = "/Api/V8"
JSON_API_MEDIA_TYPE = "application/vnd.api+json"
USER_AGENT = "crm-sidecar/0.1"

QueryParams = Sequence[tuple[str, str]]


def record_path(module: str, record_id: str, *rest: str) -> str:
    """Path to one record (or one of its relationships), with the id escaped as a single segment."""
    segments = [quote(module, safe=""), quote(record_id, safe=""), *rest]
    return "module/" + "/".join(segments)


class V8Client:
    """Authenticated JSON:API requests for one profile."""

    def __init__(self, profile: Profile, token_source: AccessTokenSource, http_client: httpx.AsyncClient):
        self.profile = profile
        self.token_source = token_source
        self.http_client = http_client

    def url(self, path: str) -> str:
        return f"{self.profile.base_url}{API_PREFIX}/{path.lstrip('/')}"

    async def _headers(self) -> dict[str, str]:
        token = await self.token_source.get_access_token(self.profile)
        return {
            "Authorization": f"Bearer {token}",
            "Accept": JSON_API_MEDIA_TYPE,
            "Content-Type": JSON_API_MEDIA_TYPE,
            "User-Agent": USER_AGENT,
        }

    async def get(self, path: str, params: QueryParams | None = None) -> dict:
        return await self._request("GET", path, params=list(params or []))

    async def post(self, path: str, body: dict) -> dict:
        return await self._request("POST", path, json=body)

    async def _request(self, method: str, path: str, **kwargs) -> dict:
        headers = await self._headers()
        url = self.url(path)
        endpoint = f"{method} {API_PREFIX}/{path.lstrip('/')}"

        try:
            response = await self.http_client.request(method, url, headers=headers, **kwargs)
        except httpx.RequestError as e:
            logger.error(
                "CRM request failed",
                profile_id=self.profile.id,
                endpoint=endpoint,
                error=str(e),
                error_type=type(e).__name__,
            )
            raise UpstreamUnreachable(f"CRM unreachable: {type(e).__name__}") from e

        if not response.is_success:
            error = UpstreamHttpError(response.status_code, endpoint, redact_secrets(response.text))
            log = logger.info if response.status_code in (400, 404) else logger.warning
            log(
                "CRM request rejected",
                profile_id=self.profile.id,
                endpoint=endpoint,
                status_code=response.status_code,
                body=error.body_snippet,
            )
            raise error

        if not response.content:
            return {}

        try:
            payload = response.json()
        except ValueError as e:
            logger.error(
                "CRM returned invalid JSON",
                profile_id=self.profile.id,
                endpoint=endpoint,
                body=body_snippet(response.text),
            )
            raise UpstreamBadResponse(f"CRM returned invalid JSON for {endpoint}") from e

        if not isinstance(payload, dict):
            raise UpstreamBadResponse(f"CRM returned unexpected payload for {endpoint}")
        return payload

    async def create_record(self, module: str, attributes: dict) -> dict:
        """POST a new record and return its resource object."""
        payload = await self.post("module", {"data": {"type": module, "attributes": attributes}})
        data = payload.get("data")
        if not isinstance(data, dict) or not data.get("id"):
            raise UpstreamBadResponse(f"CRM create for {module} returned no record id")
        return data
