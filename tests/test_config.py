from __future__ import annotations

from pathlib import Path

import pytest
import yaml

from registration_portal.config import (
    ConfigurationError,
    domain_from_dn,
    ensure_default_config,
    load_config,
)


def _write_settings(path: Path, data: dict) -> Path:
    path.write_text(yaml.safe_dump(data), encoding="utf-8")
    return path


@pytest.fixture()
def settings(tmp_path):
    return {
        "ldap": {
            "server_uri": "ldaps://dc01.example.local",
            "user_dn": "CN=svc-portal,DC=example,DC=local",
            "password": "secret",
            "base_dn": "DC=example,DC=local",
            "users_ou": "OU=Portal Users,DC=example,DC=local",
        },
        "storage": {"registrations_file": str(tmp_path / "registrations.json")},
    }


def test_load_config_applies_defaults(tmp_path, settings):
    config = load_config(_write_settings(tmp_path / "settings.yaml", settings))

    assert config.ldap.admin_group == "Portal-Admins"
    assert config.ldap.use_ssl is True
    assert config.ldap.resolved_domain == "example.local"
    assert config.ldap.group_search_base == "DC=example,DC=local"
    assert not config.ldap.is_mock
    assert config.storage.registrations_file == tmp_path / "registrations.json"
    assert config.web.allowed_origins == ()


def test_load_config_reads_optional_values(tmp_path, settings):
    settings["ldap"].update(
        {
            "server_uri": "mock://",
            "domain": "corp.test",
            "groups_ou": "OU=Portal Groups,DC=example,DC=local",
            "use_ssl": "false",
            "mock_data_file": "config/mock.yaml",
        }
    )
    settings["web"] = {"secret_key": "abc", "allowed_origins": ["chrome-extension://one", " "]}

    config = load_config(_write_settings(tmp_path / "settings.yaml", settings))

    assert config.ldap.is_mock
    assert config.ldap.resolved_domain == "corp.test"
    assert config.ldap.group_search_base.startswith("OU=Portal Groups")
    assert config.ldap.use_ssl is False
    assert config.ldap.mock_data_file == Path("config/mock.yaml")
    assert config.web.secret_key == "abc"
    assert config.web.allowed_origins == ("chrome-extension://one",)


def test_environment_overrides(tmp_path, settings, monkeypatch):
    monkeypatch.setenv("PORTAL_LDAP__ADMIN_GROUP", "Help-Desk-Admins")
    monkeypatch.setenv("PORTAL_WEB__ALLOWED_ORIGINS", "chrome-extension://a, chrome-extension://b")
    monkeypatch.setenv("PORTAL_LOG_LEVEL", "DEBUG")

    config = load_config(_write_settings(tmp_path / "settings.yaml", settings))

    assert config.ldap.admin_group == "Help-Desk-Admins"
    assert config.web.allowed_origins == ("chrome-extension://a", "chrome-extension://b")


def test_missing_ldap_section(tmp_path):
    path = _write_settings(tmp_path / "settings.yaml", {"storage": {}})

    with pytest.raises(ConfigurationError, match="ldap"):
        load_config(path)


def test_missing_ldap_key(tmp_path, settings):
    del settings["ldap"]["users_ou"]

    with pytest.raises(ConfigurationError, match="users_ou"):
        load_config(_write_settings(tmp_path / "settings.yaml", settings))


def test_missing_file(tmp_path):
    with pytest.raises(ConfigurationError):
        load_config(tmp_path / "absent.yaml")


def test_ensure_default_config_copies_template(tmp_path, settings):
    template = _write_settings(tmp_path / "settings.example.yaml", settings)
    target = tmp_path / "config" / "settings.yaml"

    assert ensure_default_config(target, template) == target
    assert yaml.safe_load(target.read_text(encoding="utf-8")) == settings


def test_ensure_default_config_without_template(tmp_path):
    with pytest.raises(ConfigurationError):
        ensure_default_config(tmp_path / "settings.yaml", tmp_path / "missing.yaml")


def test_domain_from_dn():
    assert domain_from_dn("OU=Users,DC=corp,DC=example,DC=com") == "corp.example.com"
    assert domain_from_dn("") == ""
