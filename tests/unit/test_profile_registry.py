import json
from pathlib import Path

import pytest

from sidecar.services.profile_registry import (
    ProfileConfigError,
    ProfileRegistry,
    build_profile,
    normalize_env_id,
)


def _registry(*entries):
    return ProfileRegistry.from_entries(list(entries), environ={})


def test_profile_defaults_and_links(make_entry):
    profile = build_profile(make_entry(), environ={})

    assert profile.base_url == "https://crm.test"
    assert profile.oauth.token_url == "https://crm.test/legacy/Api/access_token"
    assert profile.oauth.grant_type == "client_credentials"
    assert profile.deep_link("Contacts", "a b/c") == "https://crm.test/#/contacts/record/a%20b%2Fc"
    assert profile.legacy_action_link("Calls", "EditView", {"parent_id": "1", "blank": ""}) == (
        "https://crm.test/legacy/index.php?module=Calls&action=EditView&parent_id=1"
    )
    assert "oauth" not in profile.to_public_dict()


def test_hosts_are_normalized_and_deduplicated(make_entry):
    profile = build_profile(
        make_entry(hosts=["Sidecar.Acme.Example:8443", "sidecar.acme.example.", "*.Plugins.Example"]),
        environ={},
    )
    assert profile.hosts == ("sidecar.acme.example", "*.plugins.example")


def test_env_overrides_client_credentials(make_entry):
    environ = {
        "SIDECAR_ACME_PROD_CLIENT_ID": "env-id",
        "SIDECAR_ACME_PROD_CLIENT_SECRET": "  env-secret  ",
    }
    profile = build_profile(make_entry(id="acme-prod"), environ=environ)

    assert profile.oauth.client_id == "env-id"
    assert profile.oauth.client_secret == "env-secret"


def test_blank_env_override_is_ignored(make_entry):
    profile = build_profile(make_entry(), environ={"SIDECAR_ACME_CLIENT_ID": "   "})
    assert profile.oauth.client_id == "client-1"


def test_normalize_env_id():
    assert normalize_env_id("acme.prod-eu") == "ACME_PROD_EU"
    assert normalize_env_id("---") == "PROFILE"


def test_entry_without_id_is_rejected():
    with pytest.raises(ProfileConfigError):
        _registry({"name": "missing id", "suitecrmBaseUrl": "https://x.test", "apiFlavor": "mock"})


@pytest.mark.parametrize(
    "overrides",
    [
        {"name": "   "},
        {"hosts": ["*.com"]},
        {"hosts": ["*.10.0.0.1"]},
        {"hosts": ["*.localhost"]},
        {"hosts": ["bad_host!"]},
    ],
)
def test_malformed_entries_reject_the_registry(make_entry, overrides):
    with pytest.raises(ProfileConfigError):
        _registry(make_entry(**overrides))


def test_duplicate_ids_are_rejected(make_entry):
    with pytest.raises(ProfileConfigError, match="Duplicate"):
        _registry(make_entry(), make_entry())


def test_exact_host_on_two_profiles_is_rejected(make_entry):
    with pytest.raises(ProfileConfigError, match="multiple profiles"):
        _registry(
            make_entry(id="a", hosts=["crm.example.com"]),
            make_entry(id="b", hosts=["crm.example.com"]),
        )


def test_exact_host_covered_by_other_wildcard_is_rejected(make_entry):
    with pytest.raises(ProfileConfigError, match="overlaps"):
        _registry(
            make_entry(id="a", hosts=["eu.example.com"]),
            make_entry(id="b", hosts=["*.example.com"]),
        )


def test_overlapping_wildcards_are_rejected(make_entry):
    with pytest.raises(ProfileConfigError, match="overlap"):
        _registry(
            make_entry(id="a", hosts=["*.example.com"]),
            make_entry(id="b", hosts=["*.eu.example.com"]),
        )


def test_same_profile_may_own_exact_and_wildcard(make_entry):
    registry = _registry(make_entry(hosts=["example.com", "*.example.com"]))
    assert registry.get_by_host("example.com").id == "acme"
    assert registry.get_by_host("eu.example.com").id == "acme"


def test_wildcard_never_matches_apex(make_entry):
    registry = _registry(make_entry(hosts=["*.example.com"]))
    assert registry.get_by_host("example.com") is None
    assert registry.get_by_host("a.b.example.com").id == "acme"
    assert registry.has_any_host_mappings()


def test_from_file(tmp_path, make_entry):
    path = tmp_path / "profiles.json"
    path.write_text(json.dumps({"profiles": [make_entry(), make_entry(id="beta")]}))

    registry = ProfileRegistry.from_file(path, environ={})

    assert registry.count() == 2
    assert registry.get("beta").name == "Acme"
    assert registry.only() is None


def test_from_file_missing_or_corrupt(tmp_path):
    with pytest.raises(ProfileConfigError):
        ProfileRegistry.from_file(tmp_path / "missing.json", environ={})

    corrupt = tmp_path / "corrupt.json"
    corrupt.write_text("{not json")
    with pytest.raises(ProfileConfigError):
        ProfileRegistry.from_file(corrupt, environ={})


def test_example_profiles_file_loads():
    path = Path(__file__).resolve().parents[2] / "config" / "profiles.example.json"

    registry = ProfileRegistry.from_file(path, environ={"SIDECAR_ACME_CLIENT_SECRET": "from-env"})

    assert registry.get("acme").oauth.client_secret == "from-env"
    assert registry.get_by_host("x.acme-plugins.example").id == "acme"
    assert not registry.get("demo").is_v8
