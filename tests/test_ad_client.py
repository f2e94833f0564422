from __future__ import annotations

import pytest
from ldap3.core.exceptions import LDAPSocketOpenError

from registration_portal.ad_client import (
    DIGITS,
    LOWERCASE,
    SYMBOLS,
    UPPERCASE,
    ADClient,
    DirectoryNotFoundError,
    DirectoryOperationError,
    MockDirectory,
    ad_client,
    generate_password,
)

from .conftest import ADMIN_PASSWORD, G1, G2, LEGACY, MISSING_GROUP


def test_generated_passwords_have_every_character_class():
    allowed = set(UPPERCASE + LOWERCASE + DIGITS + SYMBOLS)
    for _ in range(200):
        password = generate_password()
        assert len(password) == 12
        assert set(password) <= allowed
        assert any(ch in UPPERCASE for ch in password)
        assert any(ch in LOWERCASE for ch in password)
        assert any(ch in DIGITS for ch in password)
        assert any(ch in SYMBOLS for ch in password)


def test_generated_passwords_vary():
    assert len({generate_password() for _ in range(50)}) > 45


def test_validate_credentials(ldap_config):
    with ad_client(ldap_config) as client:
        assert client.validate_credentials("admin", ADMIN_PASSWORD)
        assert client.validate_credentials("admin@example.local", ADMIN_PASSWORD)
        assert not client.validate_credentials("admin", "wrong")
        assert not client.validate_credentials("nobody", ADMIN_PASSWORD)
        assert not client.validate_credentials("", ADMIN_PASSWORD)
        assert not client.validate_credentials("admin", "")


def test_is_member(ldap_config):
    with ad_client(ldap_config) as client:
        assert client.is_member("admin", "Portal-Admins")
        assert client.is_member("root", "portal-admins")
        assert not client.is_member("helpdesk", "Portal-Admins")
        assert not client.is_member("admin", "Unknown-Group")
        assert not client.is_member("ghost", "Portal-Admins")


def test_get_user_reads_attributes(ldap_config):
    with ad_client(ldap_config) as client:
        account = client.get_user("jane@example.local")
        disabled = client.get_user("old@example.local")

    assert account is not None
    assert account.display_name == "Jane Doe"
    assert account.sam_account_name == "jane"
    assert account.enabled
    assert account.member_of == [LEGACY]
    assert disabled is not None and not disabled.enabled


def test_get_user_is_scoped_to_users_ou(ldap_config):
    with ad_client(ldap_config) as client:
        assert client.get_user("root@example.local") is None
        assert client.get_user("") is None


def test_list_groups_is_scoped_and_sorted(ldap_config):
    with ad_client(ldap_config) as client:
        groups = client.list_groups()

    assert [group.name for group in groups] == ["Launcher-Beta", "Launcher-Users"]
    assert groups[1].description == "Standard access"
    assert groups[0].description is None


def test_get_user_groups_derives_names_from_dn(ldap_config):
    with ad_client(ldap_config) as client:
        groups = client.get_user_groups("jane@example.local")
        missing = client.get_user_groups("ghost@example.local")

    assert [group.name for group in groups] == ["Legacy-Share"]
    assert missing == []


def test_group_membership_changes_are_idempotent(ldap_config):
    with ad_client(ldap_config) as client:
        client.add_user_to_group("jane@example.local", G1)
        client.add_user_to_group("jane@example.local", G1.upper())
        client.remove_user_from_group("jane@example.local", G2)

    with ad_client(ldap_config) as client:
        account = client.get_user("jane@example.local")
        assert account.member_of == [LEGACY, G1]

        client.remove_user_from_group("jane@example.local", G1)
        client.remove_user_from_group("jane@example.local", G1)
        assert client.get_user("jane@example.local").member_of == [LEGACY]


def test_membership_changes_require_existing_objects(ldap_config):
    with ad_client(ldap_config) as client:
        with pytest.raises(DirectoryNotFoundError):
            client.add_user_to_group("jane@example.local", MISSING_GROUP)
        with pytest.raises(DirectoryNotFoundError):
            client.add_user_to_group("ghost@example.local", G1)
        with pytest.raises(DirectoryNotFoundError):
            client.remove_user_from_group("jane@example.local", MISSING_GROUP)


def test_reset_password_replaces_credentials(ldap_config):
    with ad_client(ldap_config) as client:
        password = client.reset_password("jane@example.local")
        assert client.validate_credentials("jane", password)
        assert not client.validate_credentials("jane", "JanePass1!")
        with pytest.raises(DirectoryNotFoundError):
            client.reset_password("ghost@example.local")


def test_create_user_adds_enabled_account(ldap_config):
    with ad_client(ldap_config) as client:
        account = client.create_user("sam@example.local", "Sam Smith", "sam@example.com")

    assert account.distinguished_name == "CN=Sam Smith,OU=Portal Users,DC=example,DC=local"
    assert account.sam_account_name == "sam"

    with ad_client(ldap_config) as client:
        stored = client.get_user("sam@example.local")
        assert stored is not None and stored.enabled
        assert stored.email == "sam@example.com"
        with pytest.raises(DirectoryOperationError):
            client.create_user("sam@example.local", "Sam Smith", "sam@example.com")


def test_read_helpers_degrade_when_directory_is_unreachable(ldap_config, monkeypatch):
    def unreachable(self, identity, search_base=None):
        raise LDAPSocketOpenError("socket connection error")

    monkeypatch.setattr(MockDirectory, "find_user", unreachable)

    client = ADClient(ldap_config)
    assert client.validate_credentials("admin", ADMIN_PASSWORD) is False
    assert client.is_member("admin", "Portal-Admins") is False
    assert client.get_user("jane@example.local") is None
    assert client.get_user_groups("jane@example.local") == []
    with pytest.raises(DirectoryOperationError):
        client.add_user_to_group("jane@example.local", G1)


def test_qualify_username(ldap_config):
    client = ADClient(ldap_config)
    assert client.qualify_username("jane") == "jane@example.local"
    assert client.qualify_username("jane@corp.test") == "jane@corp.test"
    assert client.qualify_username("EXAMPLE\\jane") == "EXAMPLE\\jane"


def test_group_writes_require_a_distinguished_name(ldap_config):
    with ad_client(ldap_config) as client:
        assert client.is_member("admin", "Portal-Admins")
        with pytest.raises(DirectoryNotFoundError):
            client.add_user_to_group("jane@example.local", "Launcher-Users")
        with pytest.raises(DirectoryNotFoundError):
            client.remove_user_from_group("jane@example.local", "Legacy-Share")
        assert client.get_user("jane@example.local").member_of == [LEGACY]


class _RecordingConnection:
    instances = []

    def __init__(self, server, user=None, password=None, **kwargs):
        self.user = user
        self.unbound = False
        _RecordingConnection.instances.append(self)

    def bind(self):
        return self.user == "admin@example.local"

    def unbind(self):
        self.unbound = True


def test_live_credential_check_always_releases_connection(ldap_config, monkeypatch):
    from dataclasses import replace

    from registration_portal import ad_client as ad_client_module

    _RecordingConnection.instances = []
    monkeypatch.setattr(ad_client_module, "Connection", _RecordingConnection)
    client = ADClient(replace(ldap_config, server_uri="ldaps://dc01.example.local"))

    assert client.validate_credentials("admin", ADMIN_PASSWORD)
    assert not client.validate_credentials("jane", "wrong")
    assert [connection.unbound for connection in _RecordingConnection.instances] == [True, True]
