# models/domain/profile_domain.py
"""
CRM profile (tenant) domain model and host normalisation helpers.
"""

import ipaddress
import re
from urllib.parse import quote, urlencode

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, field_validator

SUITECRM_V8_FLAVOR = "suitecrm_v8_jsonapi"
DEFAULT_GRANT_TYPE = "client_credentials"

_DNS_LABEL = re.compile(r"^[a-z0-9](?:[a-z0-9-]{0,61}[a-z0-9])?$")


def is_ip_literal(value: str) -> bool:
    try:
        ipaddress.ip_address(value)
        return True
    except ValueError:
        return False


def _is_valid_hostname(host: str) -> bool:
    if host == "localhost" or is_ip_literal(host):
        return True
    if len(host) > 253:
        return False
    return all(_DNS_LABEL.match(label) for label in host.split("."))


def normalize_host_for_match(raw: str | None) -> str:
    """
    Reduce a Host / X-Forwarded-Host value to a bare lower-case hostname.

    Returns '' when the value is empty or not a valid hostname.
    """
    if not raw:
        return ""
    host = raw.split(",")[0].strip().lower()
    if not host:
        return ""

    if host.startswith("["):
        end = host.find("]")
        if end == -1:
            return ""
        host = host[1:end]
    elif host.count(":") == 1:
        host = host.split(":", 1)[0]

    host = host.rstrip(".")
    if not host or not _is_valid_hostname(host):
        return ""
    return host


def normalize_host_pattern(raw: str) -> str:
    """
    Normalise a configured host pattern (exact host or ``*.suffix``).

    Raises:
        ValueError: If the pattern is invalid
    """
    value = (raw or "").strip().lower()
    if value.startswith("*."):
        suffix = normalize_host_for_match(value[2:])
        if not suffix or "." not in suffix or is_ip_literal(suffix) or suffix == "localhost":
            raise ValueError(f"Invalid wildcard host pattern: {raw!r}")
        return f"*.{suffix}"

    host = normalize_host_for_match(value)
    if not host:
        raise ValueError(f"Invalid host pattern: {raw!r}")
    return host


def host_matches(pattern: str, host: str) -> bool:
    """Exact match, or ``*.suffix`` matching a strict subdomain (never the apex)."""
    if not host:
        return False
    if pattern.startswith("*."):
        suffix = pattern[2:]
        return host.endswith("." + suffix) and host != suffix
    return pattern == host


class OAuthSettings(BaseModel):
    model_config = ConfigDict(frozen=True)

    token_url: str
    client_id: str | None = None
    client_secret: str | None = None
    grant_type: str = DEFAULT_GRANT_TYPE

    def has_client_credentials(self) -> bool:
        return bool((self.client_id or "").strip() and (self.client_secret or "").strip())


class Profile(BaseModel):
    """One CRM tenant. Immutable once the registry is loaded."""

    model_config = ConfigDict(frozen=True)

    id: str
    name: str
    base_url: str
    api_flavor: str
    oauth: OAuthSettings
    hosts: tuple[str, ...] = ()
    notes: str | None = None

    @field_validator("id", "name", "api_flavor")
    @classmethod
    def _not_blank(cls, value: str) -> str:
        value = value.strip()
        if not value:
            raise ValueError("must not be blank")
        return value

    @field_validator("base_url")
    @classmethod
    def _strip_trailing_slash(cls, value: str) -> str:
        value = value.strip().rstrip("/")
        if not value:
            raise ValueError("base_url must not be blank")
        return value

    @field_validator("hosts", mode="before")
    @classmethod
    def _normalize_hosts(cls, value):
        if value is None:
            return ()
        if isinstance(value, str):
            value = [value]
        normalized: list[str] = []
        for raw in value:
            pattern = normalize_host_pattern(str(raw))
            if pattern not in normalized:
                normalized.append(pattern)
        return tuple(normalized)

    @property
    def is_v8(self) -> bool:
        return self.api_flavor == SUITECRM_V8_FLAVOR

    @property
    def exact_hosts(self) -> list[str]:
        return [h for h in self.hosts if not h.startswith("*.")]

    @property
    def wildcard_suffixes(self) -> list[str]:
        return [h[2:] for h in self.hosts if h.startswith("*.")]

    def matches_host(self, host: str) -> bool:
        return any(host_matches(pattern, host) for pattern in self.hosts)

    def deep_link(self, module: str, record_id: str) -> str:
        return f"{self.base_url}/#/{module.lower()}/record/{quote(record_id, safe='')}"

    def legacy_action_link(self, module: str, action: str, params: dict | None = None) -> str:
        query = {"module": module, "action": action}
        for key, value in (params or {}).items():
            if value is None or str(value).strip() == "":
                continue
            query[key] = str(value)
        return f"{self.base_url}/legacy/index.php?{urlencode(query)}"

    def to_public_dict(self) -> dict:
        """Profile fields that are safe to show to plugins (no credentials)."""
        return {
            "id": self.id,
            "name": self.name,
            "suitecrmBaseUrl": self.base_url,
            "apiFlavor": self.api_flavor,
            "notes": self.notes,
        }


class ProfileConfigEntry(BaseModel):
    """Raw camelCase profile entry as written in the profiles file."""

    model_config = ConfigDict(extra="ignore")

    id: str
    name: str
    base_url: str = Field(validation_alias=AliasChoices("suitecrmBaseUrl", "baseUrl", "base_url"))
    api_flavor: str = Field(validation_alias=AliasChoices("apiFlavor", "api_flavor"))
    hosts: list[str] = Field(default_factory=list)
    notes: str | None = None
    oauth: dict = Field(default_factory=dict)
