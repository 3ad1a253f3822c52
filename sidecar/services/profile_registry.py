"""
Registry of configured CRM profiles.

Loading fails closed: any malformed entry, duplicate id or ambiguous host
mapping rejects the whole configuration.
"""

import json
import os
import re
from collections.abc import Iterable, Mapping
from pathlib import Path

from pydantic import ValidationError

from sidecar.infrastructure.observability.logging import get_logger
from sidecar.models.domain.profile_domain import (
    DEFAULT_GRANT_TYPE,
    OAuthSettings,
    Profile,
    ProfileConfigEntry,
    host_matches,
)

logger = get_logger(__name__)

ENV_PREFIX = "SIDECAR_"


class ProfileConfigError(Exception):
    """Profile configuration is invalid; the registry cannot be built."""

    pass


def normalize_env_id(profile_id: str) -> str:
    normalized = re.sub(r"[^A-Z0-9]+", "_", profile_id.upper()).strip("_")
    return normalized or "PROFILE"


def _env_override(environ: Mapping[str, str], profile_id: str, suffix: str) -> str | None:
    value = environ.get(f"{ENV_PREFIX}{normalize_env_id(profile_id)}_{suffix}")
    if value is None or not value.strip():
        return None
    return value.strip()


def build_profile(raw: dict, environ: Mapping[str, str] | None = None) -> Profile:
    """
    Build one Profile from a config entry, applying credential overrides from the environment.

    Raises:
        ProfileConfigError: If the entry is malformed
    """
    environ = os.environ if environ is None else environ
    try:
        entry = ProfileConfigEntry.model_validate(raw)
        oauth_raw = entry.oauth or {}
        base_url = entry.base_url.strip().rstrip("/")

        client_id = _env_override(environ, entry.id, "CLIENT_ID") or oauth_raw.get("clientId")
        client_secret = _env_override(environ, entry.id, "CLIENT_SECRET") or oauth_raw.get(
            "clientSecret"
        )

        oauth = OAuthSettings(
            token_url=(oauth_raw.get("tokenUrl") or f"{base_url}/legacy/Api/access_token").strip(),
            client_id=client_id,
            client_secret=client_secret,
            grant_type=(oauth_raw.get("grantType") or DEFAULT_GRANT_TYPE).strip(),
        )

        return Profile(
            id=entry.id,
            name=entry.name,
            base_url=base_url,
            api_flavor=entry.api_flavor,
            oauth=oauth,
            hosts=entry.hosts,
            notes=entry.notes,
        )
    except (ValidationError, ValueError, AttributeError) as e:
        profile_id = raw.get("id") if isinstance(raw, dict) else None
        raise ProfileConfigError(f"Invalid profile entry {profile_id!r}: {e}") from e


class ProfileRegistry:
    def __init__(self, profiles: Iterable[Profile]):
        self._profiles: dict[str, Profile] = {}
        for profile in profiles:
            if profile.id in self._profiles:
                raise ProfileConfigError(f"Duplicate profile id: {profile.id}")
            self._profiles[profile.id] = profile

        self._validate_host_mappings()

    @classmethod
    def from_entries(
        cls, entries: list[dict], environ: Mapping[str, str] | None = None
    ) -> "ProfileRegistry":
        if not isinstance(entries, list):
            raise ProfileConfigError("Profile configuration must be a list of profiles")
        return cls(build_profile(entry, environ) for entry in entries)

    @classmethod
    def from_file(cls, path: str | Path, environ: Mapping[str, str] | None = None) -> "ProfileRegistry":
        path = Path(path)
        try:
            data = json.loads(path.read_text(encoding="utf-8"))
        except FileNotFoundError as e:
            raise ProfileConfigError(f"Profile file not found: {path}") from e
        except (OSError, json.JSONDecodeError) as e:
            raise ProfileConfigError(f"Profile file unreadable: {path}: {e}") from e

        if isinstance(data, dict) and "profiles" in data:
            data = data["profiles"]

        registry = cls.from_entries(data, environ)
        logger.info("Profiles loaded", path=str(path), count=registry.count())
        return registry

    def _validate_host_mappings(self) -> None:
        exact_owner: dict[str, str] = {}
        wildcard_owner: dict[str, str] = {}

        for profile in self._profiles.values():
            for host in profile.exact_hosts:
                owner = exact_owner.get(host)
                if owner and owner != profile.id:
                    raise ProfileConfigError(
                        f"Host {host} is assigned to multiple profiles ({owner}, {profile.id})"
                    )
                exact_owner[host] = profile.id
            for suffix in profile.wildcard_suffixes:
                owner = wildcard_owner.get(suffix)
                if owner and owner != profile.id:
                    raise ProfileConfigError(
                        f"Wildcard *.{suffix} is assigned to multiple profiles ({owner}, {profile.id})"
                    )
                wildcard_owner[suffix] = profile.id

        for host, owner in exact_owner.items():
            for suffix, wildcard_profile in wildcard_owner.items():
                if wildcard_profile != owner and host_matches(f"*.{suffix}", host):
                    raise ProfileConfigError(
                        f"Host {host} ({owner}) overlaps wildcard *.{suffix} ({wildcard_profile})"
                    )

        suffixes = list(wildcard_owner.items())
        for i, (left, left_owner) in enumerate(suffixes):
            for right, right_owner in suffixes[i + 1 :]:
                if left_owner == right_owner:
                    continue
                if left.endswith("." + right) or right.endswith("." + left):
                    raise ProfileConfigError(
                        f"Wildcards *.{left} ({left_owner}) and *.{right} ({right_owner}) overlap"
                    )

    def get(self, profile_id: str) -> Profile | None:
        return self._profiles.get(profile_id)

    def get_by_host(self, host: str) -> Profile | None:
        """
        Return the profile whose host patterns match ``host``.

        Raises:
            ProfileConfigError: If more than one profile matches
        """
        if not host:
            return None
        matches = [p for p in self._profiles.values() if p.matches_host(host)]
        if len(matches) > 1:
            raise ProfileConfigError(f"Host {host} matches multiple profiles")
        return matches[0] if matches else None

    def has_any_host_mappings(self) -> bool:
        return any(p.hosts for p in self._profiles.values())

    def all(self) -> list[Profile]:
        return list(self._profiles.values())

    def only(self) -> Profile | None:
        if len(self._profiles) == 1:
            return next(iter(self._profiles.values()))
        return None

    def count(self) -> int:
        return len(self._profiles)
