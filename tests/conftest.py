from __future__ import annotations

from pathlib import Path

import pytest
import yaml

from registration_portal.config import AppConfig, LDAPConfig, StorageConfig, WebConfig
from registration_portal.registration import RegistrationService
from registration_portal.storage import RegistrationStore


BASE_DN = "DC=example,DC=local"
USERS_OU = f"OU=Portal Users,{BASE_DN}"
GROUPS_OU = f"OU=Portal Groups,{BASE_DN}"
ADMINS_DN = f"CN=Portal-Admins,OU=Admins,{BASE_DN}"
G1 = f"CN=Launcher-Users,{GROUPS_OU}"
G2 = f"CN=Launcher-Beta,{GROUPS_OU}"
LEGACY = f"CN=Legacy-Share,OU=Other,{BASE_DN}"
MISSING_GROUP = f"CN=Does-Not-Exist,{GROUPS_OU}"

ADMIN_PASSWORD = "AdminPass1!"
HELPDESK_PASSWORD = "HelpPass1!"


def _user(cn: str, ou: str, sam: str, password: str, member_of=(), control: int = 512) -> dict:
    return {
        "distinguished_name": f"CN={cn},{ou}",
        "password": password,
        "attributes": {
            "userPrincipalName": f"{sam}@example.local",
            "sAMAccountName": sam,
            "displayName": cn,
            "mail": f"{sam}@example.local",
            "userAccountControl": control,
            "memberOf": list(member_of),
        },
    }


def directory_data() -> dict:
    return {
        "users": [
            _user("Portal Admin", USERS_OU, "admin", ADMIN_PASSWORD, [ADMINS_DN]),
            _user("Root Operator", f"OU=Admins,{BASE_DN}", "root", ADMIN_PASSWORD, [ADMINS_DN]),
            _user("Help Desk", USERS_OU, "helpdesk", HELPDESK_PASSWORD),
            _user("Jane Doe", USERS_OU, "jane", "JanePass1!", [LEGACY]),
            _user("Old Account", USERS_OU, "old", "OldPass1!", control=514),
        ],
        "groups": [
            {"distinguished_name": ADMINS_DN, "name": "Portal-Admins", "description": "Administrators"},
            {"distinguished_name": G1, "name": "Launcher-Users", "description": "Standard access"},
            {"distinguished_name": G2, "name": "Launcher-Beta", "description": None},
            {"distinguished_name": LEGACY, "name": "Legacy-Share", "description": "Outside the groups OU"},
        ],
    }


@pytest.fixture()
def directory_file(tmp_path: Path) -> Path:
    path = tmp_path / "directory.yaml"
    with path.open("w", encoding="utf-8") as handle:
        yaml.safe_dump(directory_data(), handle, sort_keys=False)
    return path


@pytest.fixture()
def ldap_config(directory_file: Path) -> LDAPConfig:
    return LDAPConfig(
        server_uri="mock://",
        user_dn=f"CN=svc-portal,{BASE_DN}",
        password="service-secret",
        base_dn=BASE_DN,
        users_ou=USERS_OU,
        groups_ou=GROUPS_OU,
        admin_group="Portal-Admins",
        mock_data_file=directory_file,
    )


@pytest.fixture()
def app_config(tmp_path: Path, ldap_config: LDAPConfig) -> AppConfig:
    return AppConfig(
        ldap=ldap_config,
        storage=StorageConfig(registrations_file=tmp_path / "registrations.json"),
        web=WebConfig(secret_key="tests-secret", allowed_origins=("chrome-extension://abc",)),
    )


@pytest.fixture()
def store(app_config: AppConfig) -> RegistrationStore:
    return RegistrationStore(app_config.storage.registrations_file)


@pytest.fixture()
def service(store: RegistrationStore, ldap_config: LDAPConfig) -> RegistrationService:
    return RegistrationService(store, ldap_config)
