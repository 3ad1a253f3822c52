"""
Resolve the CRM profile for an incoming request.

A host mapping is authoritative. Explicit profile ids (query parameter or
header) are only consulted when no host matches and strict host routing is
not in force.
"""

import ipaddress
from collections.abc import Iterable, Mapping

from sidecar.infrastructure.observability.logging import get_logger
from sidecar.models.domain.profile_domain import Profile, normalize_host_for_match
from sidecar.services.errors import ProfileResolutionError
from sidecar.services.profile_registry import ProfileConfigError, ProfileRegistry

logger = get_logger(__name__)

PROFILE_QUERY_PARAM = "profileId"
PROFILE_HEADER = "x-sidecar-profile"

IPNetwork = ipaddress.IPv4Network | ipaddress.IPv6Network


def parse_trusted_proxies(entries: Iterable[str]) -> list[IPNetwork]:
    """Parse IP / CIDR entries; invalid entries are skipped with a warning."""
    networks: list[IPNetwork] = []
    for entry in entries:
        value = (entry or "").strip()
        if not value:
            continue
        try:
            networks.append(ipaddress.ip_network(value, strict=False))
        except ValueError:
            logger.warning("Ignoring invalid trusted proxy entry", entry=value)
    return networks


def is_trusted_peer(peer_address: str | None, networks: list[IPNetwork]) -> bool:
    if not peer_address or not networks:
        return False
    try:
        address = ipaddress.ip_address(peer_address.strip())
    except ValueError:
        return False
    for network in networks:
        if address.version == network.version and address in network:
            return True
    return False


def _header(headers: Mapping[str, str], name: str) -> str | None:
    # Starlette headers are case-insensitive already; plain dicts are not.
    value = headers.get(name)
    if value is None:
        for key, candidate in headers.items():
            if key.lower() == name:
                return candidate
    return value


class ProfileResolver:
    def __init__(
        self,
        registry: ProfileRegistry,
        strict_host_routing: bool = False,
        trust_forwarded_host: bool = False,
        trusted_proxies: Iterable[str] = (),
    ):
        self.registry = registry
        self.strict_host_routing = strict_host_routing
        self.trust_forwarded_host = trust_forwarded_host
        self.trusted_networks = parse_trusted_proxies(trusted_proxies)

    def host_routing_required(self) -> bool:
        return self.strict_host_routing or self.registry.has_any_host_mappings()

    def effective_host(self, headers: Mapping[str, str], peer_address: str | None) -> str:
        host = normalize_host_for_match(_header(headers, "host"))

        forwarded_raw = _header(headers, "x-forwarded-host")
        if not forwarded_raw:
            return host

        if not self.trust_forwarded_host or not is_trusted_peer(peer_address, self.trusted_networks):
            logger.info("Ignoring X-Forwarded-Host from untrusted peer", peer_address=peer_address)
            return host

        forwarded = normalize_host_for_match(forwarded_raw)
        if not forwarded:
            logger.warning("Ignoring invalid X-Forwarded-Host", peer_address=peer_address)
            return host
        return forwarded

    def resolve_host_profile(
        self, headers: Mapping[str, str], peer_address: str | None
    ) -> Profile | None:
        host = self.effective_host(headers, peer_address)
        try:
            return self.registry.get_by_host(host)
        except ProfileConfigError as e:
            raise ProfileResolutionError(str(e), error_code="ambiguous_host") from e

    def assert_host_routing_satisfied(
        self, headers: Mapping[str, str], peer_address: str | None
    ) -> Profile | None:
        """Return the host-mapped profile, or raise if host routing is required and nothing matched."""
        profile = self.resolve_host_profile(headers, peer_address)
        if profile is None and self.host_routing_required():
            raise ProfileResolutionError(
                "Request host is not mapped to a profile", error_code="host_not_mapped"
            )
        return profile

    def resolve(
        self,
        query: Mapping[str, str],
        headers: Mapping[str, str],
        peer_address: str | None,
        explicit_id: str | None = None,
    ) -> Profile:
        """
        Resolve the profile for a request.

        ``explicit_id`` takes the place of the query/header id, e.g. the
        ``profileId`` field of a login body.

        Raises:
            ProfileResolutionError: Ambiguous host, unmapped host under strict
                routing, unknown id, or no id with several profiles
        """
        requested = explicit_id
        if not requested:
            requested = (query.get(PROFILE_QUERY_PARAM) or "").strip() or (
                (_header(headers, PROFILE_HEADER) or "").strip()
            )

        host_profile = self.assert_host_routing_satisfied(headers, peer_address)
        if host_profile is not None:
            if requested and requested != host_profile.id:
                logger.warning(
                    "Requested profile overridden by host mapping",
                    requested_profile=requested,
                    host_profile=host_profile.id,
                )
            return host_profile

        if requested:
            profile = self.registry.get(requested)
            if profile is None:
                raise ProfileResolutionError("Unknown profileId", error_code="unknown_profile")
            return profile

        only = self.registry.only()
        if only is not None:
            return only

        raise ProfileResolutionError("Missing profileId", error_code="missing_profile")
