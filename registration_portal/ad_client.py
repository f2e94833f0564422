"""Active Directory helper client based on ldap3."""
from __future__ import annotations

import contextlib
import logging
import secrets
from pathlib import Path
from typing import Any, Dict, Iterator, List, Optional

import yaml
from ldap3 import ALL, MODIFY_REPLACE, SUBTREE, Connection, Server
from ldap3.core.exceptions import LDAPException
from ldap3.utils.conv import escape_filter_chars
from ldap3.utils.dn import escape_rdn

from .config import LDAPConfig
from .models import DirectoryAccount, DirectoryGroup, group_name_from_dn


logger = logging.getLogger(__name__)

ACCOUNTDISABLE = 0x2
NORMAL_ACCOUNT = 512
# Matches nested membership in AD (LDAP_MATCHING_RULE_IN_CHAIN).
_IN_CHAIN_RULE = "1.2.840.113556.1.4.1941"
_USER_ATTRIBUTES = [
    "userPrincipalName",
    "sAMAccountName",
    "displayName",
    "mail",
    "distinguishedName",
    "userAccountControl",
    "memberOf",
]

PASSWORD_LENGTH = 12
UPPERCASE = "ABCDEFGHIJKLMNOPQRSTUVWXYZ"
LOWERCASE = "abcdefghijklmnopqrstuvwxyz"
DIGITS = "0123456789"
SYMBOLS = "!@#$%^&*"


class DirectoryError(RuntimeError):
    """Base exception for directory operations."""


class DirectoryNotFoundError(DirectoryError):
    """Raised when a user or group cannot be resolved in the directory."""


class DirectoryOperationError(DirectoryError):
    """Raised when the directory rejects or fails a write."""


def generate_password() -> str:
    """Return a random 12 character password with every character class present."""

    alphabet = UPPERCASE + LOWERCASE + DIGITS + SYMBOLS
    chars = [
        secrets.choice(UPPERCASE),
        secrets.choice(LOWERCASE),
        secrets.choice(DIGITS),
        secrets.choice(SYMBOLS),
    ]
    chars.extend(secrets.choice(alphabet) for _ in range(PASSWORD_LENGTH - len(chars)))
    secrets.SystemRandom().shuffle(chars)
    return "".join(chars)


def _dn_within(distinguished_name: str, base_dn: Optional[str]) -> bool:
    if not base_dn:
        return True
    return distinguished_name.lower().endswith(base_dn.lower())


class MockDirectory:
    """Lightweight directory emulator used when ldap3 connectivity isn't available."""

    def __init__(self, data_file: Optional[Path]):
        self.data_file = data_file
        self._data: Dict[str, Any] = {"users": [], "groups": []}
        self._load()

    def _load(self) -> None:
        if self.data_file and self.data_file.exists():
            with self.data_file.open("r", encoding="utf-8") as handle:
                self._data = yaml.safe_load(handle) or self._data
        self._data.setdefault("users", [])
        self._data.setdefault("groups", [])

    def _save(self) -> None:
        if not self.data_file:
            return
        self.data_file.parent.mkdir(parents=True, exist_ok=True)
        with self.data_file.open("w", encoding="utf-8") as handle:
            yaml.safe_dump(self._data, handle, sort_keys=False, indent=2)

    def find_user(self, identity: str, search_base: Optional[str] = None) -> Optional[Dict[str, Any]]:
        lowered = (identity or "").strip().lower()
        if not lowered:
            return None
        for user in self._data.get("users", []):
            dn = str(user.get("distinguished_name") or "")
            if not _dn_within(dn, search_base):
                continue
            attrs = user.get("attributes", {})
            candidates = (attrs.get("userPrincipalName"), attrs.get("sAMAccountName"))
            if any(str(value or "").lower() == lowered for value in candidates):
                return user
        return None

    def find_group(self, identity: str) -> Optional[Dict[str, Any]]:
        """Resolve a group by DN or short name, as membership checks do."""

        lowered = (identity or "").strip().lower()
        for group in self._data.get("groups", []):
            dn = str(group.get("distinguished_name") or "")
            name = str(group.get("name") or group_name_from_dn(dn))
            if lowered in (dn.lower(), name.lower()):
                return group
        return None

    def find_group_by_dn(self, distinguished_name: str) -> Optional[Dict[str, Any]]:
        lowered = (distinguished_name or "").strip().lower()
        for group in self._data.get("groups", []):
            if str(group.get("distinguished_name") or "").lower() == lowered:
                return group
        return None

    def check_password(self, identity: str, password: str) -> bool:
        user = self.find_user(identity)
        if not user:
            return False
        expected = user.get("password")
        return bool(expected) and secrets.compare_digest(str(expected), password)

    def list_groups(self, search_base: Optional[str] = None) -> List[Dict[str, Any]]:
        return [
            dict(group)
            for group in self._data.get("groups", [])
            if _dn_within(str(group.get("distinguished_name") or ""), search_base)
        ]

    def add_member(self, user_dn: str, group_dn: str) -> None:
        attrs = self._user_attributes(user_dn)
        members = [str(value) for value in attrs.get("memberOf", []) or []]
        if group_dn.lower() not in (value.lower() for value in members):
            members.append(group_dn)
        attrs["memberOf"] = members
        self._save()

    def remove_member(self, user_dn: str, group_dn: str) -> None:
        attrs = self._user_attributes(user_dn)
        members = [str(value) for value in attrs.get("memberOf", []) or []]
        attrs["memberOf"] = [value for value in members if value.lower() != group_dn.lower()]
        self._save()

    def set_password(self, user_dn: str, password: str) -> None:
        for user in self._data.get("users", []):
            if user.get("distinguished_name") == user_dn:
                user["password"] = password
                self._save()
                return
        raise DirectoryNotFoundError(f"User {user_dn} not found")

    def add_user(self, distinguished_name: str, attributes: Dict[str, Any], password: str) -> None:
        users = self._data.setdefault("users", [])
        if any(user.get("distinguished_name") == distinguished_name for user in users):
            raise DirectoryOperationError(f"Object {distinguished_name} already exists.")
        attrs = dict(attributes)
        attrs.setdefault("memberOf", [])
        users.append({"distinguished_name": distinguished_name, "password": password, "attributes": attrs})
        self._save()

    def _user_attributes(self, user_dn: str) -> Dict[str, Any]:
        for user in self._data.get("users", []):
            if user.get("distinguished_name") == user_dn:
                return user.setdefault("attributes", {})
        raise DirectoryNotFoundError(f"User {user_dn} not found")


class ADClient:
    """Wrapper around ldap3 that exposes the directory operations used by the portal.

    Read helpers never raise: lookup failures are logged and reported as
    ``False``/``None``/``[]``. Mutations raise :class:`DirectoryNotFoundError`
    or :class:`DirectoryOperationError`.
    """

    def __init__(self, config: LDAPConfig):
        self.config = config
        self._mock_directory: Optional[MockDirectory] = None
        self.server: Optional[Server] = None
        self.connection: Optional[Connection] = None

        if config.is_mock:
            self._mock_directory = MockDirectory(config.mock_data_file)
        else:
            self.server = Server(config.server_uri, use_ssl=config.use_ssl, get_info=ALL)

    def close(self) -> None:
        if self.connection and self.connection.bound:
            self.connection.unbind()

    def __enter__(self) -> "ADClient":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:  # type: ignore[override]
        self.close()

    def _connection(self) -> Connection:
        """Service-account connection, bound on first use."""

        if self.connection is None:
            assert self.server is not None
            self.connection = Connection(
                self.server,
                user=self.config.user_dn,
                password=self.config.password,
                auto_bind=True,
            )
        return self.connection

    def qualify_username(self, username: str) -> str:
        cleaned = (username or "").strip()
        if "@" in cleaned or "\\" in cleaned:
            return cleaned
        domain = self.config.resolved_domain
        return f"{cleaned}@{domain}" if domain else cleaned

    # Authentication ------------------------------------------------------
    def validate_credentials(self, username: str, password: str) -> bool:
        if not username or not password:
            return False
        try:
            if self._mock_directory:
                return self._mock_directory.check_password(username, password)

            assert self.server is not None
            connection = Connection(
                self.server,
                user=self.qualify_username(username),
                password=password,
            )
            try:
                return bool(connection.bind())
            finally:
                # Release the socket whether or not the bind succeeded.
                connection.unbind()
        except LDAPException as exc:
            logger.warning("Credential validation for %s failed: %s", username, exc)
            return False

    def is_member(self, username: str, group_name: str) -> bool:
        try:
            if self._mock_directory:
                user = self._mock_directory.find_user(username)
                group = self._mock_directory.find_group(group_name)
                if not user or not group:
                    return False
                group_dn = str(group.get("distinguished_name")).lower()
                member_of = user.get("attributes", {}).get("memberOf", []) or []
                return any(str(dn).lower() == group_dn for dn in member_of)

            connection = self._connection()
            escaped_group = escape_filter_chars(group_name)
            connection.search(
                search_base=self.config.base_dn,
                search_filter=f"(&(objectClass=group)(|(cn={escaped_group})(sAMAccountName={escaped_group})))",
                search_scope=SUBTREE,
                attributes=["distinguishedName"],
                size_limit=1,
            )
            if not connection.entries:
                return False
            group_dn = escape_filter_chars(str(connection.entries[0].entry_dn))

            qualified = escape_filter_chars(self.qualify_username(username))
            sam = escape_filter_chars(username.split("\\")[-1].split("@")[0])
            connection.search(
                search_base=self.config.base_dn,
                search_filter=(
                    f"(&(objectClass=user)"
                    f"(|(userPrincipalName={qualified})(sAMAccountName={sam}))"
                    f"(memberOf:{_IN_CHAIN_RULE}:={group_dn}))"
                ),
                search_scope=SUBTREE,
                attributes=["distinguishedName"],
                size_limit=1,
            )
            return bool(connection.entries)
        except LDAPException as exc:
            logger.warning("Membership check of %s in %s failed: %s", username, group_name, exc)
            return False

    # User lookups --------------------------------------------------------
    def get_user(self, user_principal_name: str) -> Optional[DirectoryAccount]:
        try:
            return self._lookup_account(user_principal_name)
        except LDAPException as exc:
            logger.warning("Directory lookup of %s failed: %s", user_principal_name, exc)
            return None

    def get_user_groups(self, user_principal_name: str) -> List[DirectoryGroup]:
        account = self.get_user(user_principal_name)
        if account is None:
            logger.info("User %s not found in %s", user_principal_name, self.config.users_ou)
            return []
        return [DirectoryGroup.from_dn(dn) for dn in account.member_of if dn]

    def list_groups(self) -> List[DirectoryGroup]:
        base_dn = self.config.group_search_base
        groups: Dict[str, DirectoryGroup] = {}
        try:
            if self._mock_directory:
                for raw in self._mock_directory.list_groups(base_dn):
                    dn = str(raw.get("distinguished_name") or "")
                    group = DirectoryGroup(
                        distinguished_name=dn,
                        name=str(raw.get("name") or group_name_from_dn(dn)),
                        description=raw.get("description") or None,
                    )
                    groups.setdefault(dn.lower(), group)
            else:
                connection = self._connection()
                connection.search(
                    search_base=base_dn,
                    search_filter="(objectClass=group)",
                    search_scope=SUBTREE,
                    attributes=["cn", "description"],
                )
                for entry in connection.entries:
                    dn = str(entry.entry_dn)
                    groups.setdefault(
                        dn.lower(),
                        DirectoryGroup(
                            distinguished_name=dn,
                            name=self._single_value(entry, "cn") or group_name_from_dn(dn),
                            description=self._single_value(entry, "description") or None,
                        ),
                    )
        except LDAPException as exc:
            logger.warning("Unable to list groups under %s: %s", base_dn, exc)
            return []
        return sorted(groups.values(), key=lambda group: group.name.casefold())

    def _lookup_account(self, user_principal_name: str) -> Optional[DirectoryAccount]:
        if not user_principal_name:
            return None
        if self._mock_directory:
            user = self._mock_directory.find_user(user_principal_name, self.config.users_ou)
            if not user:
                return None
            attrs = user.get("attributes", {})
            return self._build_account(
                str(user.get("distinguished_name") or ""),
                {attribute: attrs.get(attribute) for attribute in _USER_ATTRIBUTES},
            )

        connection = self._connection()
        escaped = escape_filter_chars(user_principal_name)
        connection.search(
            search_base=self.config.users_ou,
            search_filter=f"(&(objectClass=user)(userPrincipalName={escaped}))",
            search_scope=SUBTREE,
            attributes=_USER_ATTRIBUTES,
            size_limit=1,
        )
        if not connection.entries:
            return None
        entry = connection.entries[0]
        values = {
            "userPrincipalName": self._single_value(entry, "userPrincipalName"),
            "sAMAccountName": self._single_value(entry, "sAMAccountName"),
            "displayName": self._single_value(entry, "displayName"),
            "mail": self._single_value(entry, "mail"),
            "userAccountControl": entry["userAccountControl"].value if "userAccountControl" in entry else 0,
            "memberOf": entry["memberOf"].values if "memberOf" in entry else [],
        }
        return self._build_account(str(entry.entry_dn), values)

    def _require_account(self, user_principal_name: str) -> DirectoryAccount:
        try:
            account = self._lookup_account(user_principal_name)
        except LDAPException as exc:
            raise DirectoryOperationError(f"Unable to look up {user_principal_name}: {exc}") from exc
        if account is None:
            raise DirectoryNotFoundError(f"User {user_principal_name} not found")
        return account

    def _require_group(self, group_dn: str) -> None:
        try:
            if self._mock_directory:
                found = self._mock_directory.find_group_by_dn(group_dn) is not None
            else:
                connection = self._connection()
                connection.search(
                    search_base=self.config.base_dn,
                    search_filter=f"(&(objectClass=group)(distinguishedName={escape_filter_chars(group_dn)}))",
                    search_scope=SUBTREE,
                    attributes=["distinguishedName"],
                    size_limit=1,
                )
                found = bool(connection.entries)
        except LDAPException as exc:
            raise DirectoryOperationError(f"Unable to look up group {group_dn}: {exc}") from exc
        if not found:
            raise DirectoryNotFoundError(f"Group {group_dn} not found")

    # Group membership ----------------------------------------------------
    def add_user_to_group(self, user_principal_name: str, group_dn: str) -> None:
        account = self._require_account(user_principal_name)
        self._require_group(group_dn)
        if account.is_member_of(group_dn):
            return

        if self._mock_directory:
            self._mock_directory.add_member(account.distinguished_name, group_dn)
            return

        try:
            added = self._connection().extend.microsoft.add_members_to_groups(
                [account.distinguished_name], [group_dn]
            )
        except LDAPException as exc:
            raise DirectoryOperationError(f"Unable to add {user_principal_name} to {group_dn}: {exc}") from exc
        if not added:
            self._raise_rejected(f"add {user_principal_name} to {group_dn}")

    def remove_user_from_group(self, user_principal_name: str, group_dn: str) -> None:
        account = self._require_account(user_principal_name)
        self._require_group(group_dn)
        if not account.is_member_of(group_dn):
            return

        if self._mock_directory:
            self._mock_directory.remove_member(account.distinguished_name, group_dn)
            return

        try:
            removed = self._connection().extend.microsoft.remove_members_from_groups(
                [account.distinguished_name], [group_dn]
            )
        except LDAPException as exc:
            raise DirectoryOperationError(
                f"Unable to remove {user_principal_name} from {group_dn}: {exc}"
            ) from exc
        if not removed:
            self._raise_rejected(f"remove {user_principal_name} from {group_dn}")

    # Provisioning --------------------------------------------------------
    def reset_password(self, user_principal_name: str) -> str:
        account = self._require_account(user_principal_name)
        password = generate_password()

        if self._mock_directory:
            self._mock_directory.set_password(account.distinguished_name, password)
            return password

        try:
            changed = self._connection().extend.microsoft.modify_password(account.distinguished_name, password)
        except LDAPException as exc:
            raise DirectoryOperationError(f"Unable to reset password for {user_principal_name}: {exc}") from exc
        if not changed:
            self._raise_rejected("password reset")
        return password

    def create_user(self, user_principal_name: str, display_name: str, email: str) -> DirectoryAccount:
        sam_account_name = user_principal_name.split("@")[0]
        distinguished_name = f"CN={escape_rdn(display_name)},{self.config.users_ou}"
        password = generate_password()
        attributes: Dict[str, Any] = {
            "userPrincipalName": user_principal_name,
            "sAMAccountName": sam_account_name,
            "displayName": display_name,
            "mail": email,
        }

        if self._mock_directory:
            record_attributes = dict(attributes, userAccountControl=NORMAL_ACCOUNT)
            self._mock_directory.add_user(distinguished_name, record_attributes, password)
        else:
            try:
                connection = self._connection()
                added = connection.add(
                    dn=distinguished_name,
                    object_class=["top", "person", "organizationalPerson", "user"],
                    attributes=attributes,
                )
                if not added:
                    self._raise_rejected("user creation")
                if not connection.extend.microsoft.modify_password(distinguished_name, password):
                    self._raise_rejected("initial password")
                # Enable account by setting userAccountControl to 512 (NORMAL_ACCOUNT)
                enabled = connection.modify(
                    distinguished_name, {"userAccountControl": [(MODIFY_REPLACE, [NORMAL_ACCOUNT])]}
                )
                if not enabled:
                    self._raise_rejected("enable-account")
            except LDAPException as exc:
                raise DirectoryOperationError(f"Unable to create {user_principal_name}: {exc}") from exc

        return DirectoryAccount(
            user_principal_name=user_principal_name,
            sam_account_name=sam_account_name,
            display_name=display_name,
            distinguished_name=distinguished_name,
            email=email or None,
            enabled=True,
            member_of=[],
        )

    # Utilities -----------------------------------------------------------
    def _raise_rejected(self, action: str) -> None:
        result = (self.connection.result if self.connection else None) or {}
        description = result.get("description", "Unknown error")
        message = result.get("message")
        raise DirectoryOperationError(
            f"Active Directory rejected the {action} request ({description})."
            + (f" {message}" if message else "")
        )

    @staticmethod
    def _build_account(distinguished_name: str, values: Dict[str, Any]) -> DirectoryAccount:
        try:
            control = int(values.get("userAccountControl") or 0)
        except (TypeError, ValueError):
            control = 0
        member_of = values.get("memberOf") or []
        if isinstance(member_of, str):
            member_of = [member_of]
        return DirectoryAccount(
            user_principal_name=str(values.get("userPrincipalName") or ""),
            sam_account_name=str(values.get("sAMAccountName") or ""),
            display_name=str(values.get("displayName") or ""),
            distinguished_name=distinguished_name,
            email=str(values["mail"]) if values.get("mail") else None,
            enabled=(control & ACCOUNTDISABLE) == 0,
            member_of=[str(dn) for dn in member_of],
        )

    @staticmethod
    def _single_value(entry: Any, attr: str) -> str:
        if attr not in entry:
            return ""
        value = entry[attr].value
        if isinstance(value, (list, tuple)):
            return str(value[0]) if value else ""
        return str(value) if value is not None else ""


@contextlib.contextmanager
def ad_client(config: LDAPConfig) -> Iterator[ADClient]:
    client = ADClient(config)
    try:
        yield client
    finally:
        client.close()


__all__ = [
    "ADClient",
    "DirectoryError",
    "DirectoryNotFoundError",
    "DirectoryOperationError",
    "MockDirectory",
    "ad_client",
    "generate_password",
]
