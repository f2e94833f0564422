"""Registration workflow: the commands and queries behind the portal."""
from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Callable, ContextManager, Iterable, List, Optional

from .ad_client import ADClient, DirectoryError, DirectoryNotFoundError, ad_client
from .config import LDAPConfig
from .models import (
    AdminPrincipal,
    DirectoryAccount,
    DirectoryGroup,
    RegistrationDetail,
    RegistrationRecord,
    RegistrationStatus,
)
from .storage import DuplicateEmailError, RegistrationStore


logger = logging.getLogger(__name__)

DirectoryFactory = Callable[[LDAPConfig], ContextManager[ADClient]]


class PortalError(RuntimeError):
    """Base exception for failed portal operations; the message is user facing."""

    status_code = 400

    @property
    def message(self) -> str:
        return str(self)


class ValidationError(PortalError):
    """Raised when a request is missing required input."""


class NotFoundError(PortalError):
    """Raised when a record or directory object does not exist."""

    status_code = 404


class ConflictError(PortalError):
    """Raised for duplicate emails and already-registered records."""

    status_code = 409


class UnauthorizedError(PortalError):
    """Raised when credentials are rejected by the directory."""

    status_code = 401


class ForbiddenError(PortalError):
    """Raised when valid credentials lack the admin group."""

    status_code = 403


class PreconditionFailedError(PortalError):
    """Raised when an action is invalid for the record's current status."""

    status_code = 409


class DirectoryOperationFailedError(PortalError):
    """Raised when a directory write fails; carries the underlying reason."""

    status_code = 502


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


def _clean_groups(groups: Optional[Iterable[str]]) -> List[str]:
    return [group for group in dict.fromkeys((group or "").strip() for group in groups or []) if group]


def qualify_principal_name(username: str, default_domain: str) -> str:
    """Return ``local@domain`` for a login name.

    A name that already carries ``@`` keeps its own domain; otherwise
    ``default_domain`` is appended.
    """

    cleaned = (username or "").strip()
    if "@" in cleaned:
        local, domain = cleaned.split("@", 1)
        return f"{local}@{domain}"
    return f"{cleaned}@{default_domain}" if default_domain else cleaned


class RegistrationService:
    """Maps each portal use case onto the registration store and the directory."""

    def __init__(
        self,
        store: RegistrationStore,
        ldap_config: LDAPConfig,
        directory_factory: DirectoryFactory = ad_client,
    ) -> None:
        self.store = store
        self.ldap_config = ldap_config
        self._directory_factory = directory_factory

    def _directory(self) -> ContextManager[ADClient]:
        return self._directory_factory(self.ldap_config)

    def _require_record(self, record_id: int) -> RegistrationRecord:
        record = self.store.get(record_id)
        if record is None:
            raise NotFoundError("User not found")
        return record

    def _save_record(self, record: RegistrationRecord) -> None:
        try:
            self.store.update(record)
        except KeyError as exc:
            # Deleted by another request while the directory was being changed.
            logger.warning("Registration %s disappeared before it could be saved", record.id)
            raise NotFoundError("User not found") from exc

    # Authentication ------------------------------------------------------
    def login(self, username: str, password: str) -> AdminPrincipal:
        username = (username or "").strip()
        if not username or not password:
            raise UnauthorizedError("Invalid username or password")

        admin_group = self.ldap_config.admin_group
        with self._directory() as client:
            if not client.validate_credentials(username, password):
                logger.info("Login rejected for %s: invalid credentials", username)
                raise UnauthorizedError("Invalid username or password")

            if not client.is_member(username, admin_group):
                logger.warning("Login denied for %s: not a member of %s", username, admin_group)
                raise ForbiddenError("Access denied. You must be a member of the admin group.")

            account = client.get_user(qualify_principal_name(username, self.ldap_config.resolved_domain))

        display_name = (account.display_name if account else "") or username
        logger.info("Admin %s signed in", username)
        return AdminPrincipal(username=username, display_name=display_name, is_admin=True)

    # Commands ------------------------------------------------------------
    def create_pending_user(self, google_email: str) -> RegistrationRecord:
        email = (google_email or "").strip()
        if not email:
            raise ValidationError("Email is required")
        try:
            record = self.store.add(email)
        except DuplicateEmailError as exc:
            raise ConflictError("User with this email already exists") from exc
        logger.info("Pending registration %s created for %s", record.id, record.google_email)
        return record

    def register_user(
        self,
        record_id: int,
        user_principal_name: str,
        group_dns: Optional[Iterable[str]] = None,
        actor: Optional[AdminPrincipal] = None,
    ) -> RegistrationRecord:
        """Link a pending record to a directory account.

        Groups are added in order. The first failure stops the batch and the
        record stays pending; groups added before it are left in place.
        """

        record = self._require_record(record_id)
        if not record.is_pending:
            raise ConflictError("User is already registered")

        principal_name = (user_principal_name or "").strip()
        if not principal_name:
            raise ValidationError("AD user principal name is required")

        with self._directory() as client:
            if client.get_user(principal_name) is None:
                raise NotFoundError(f"AD user {principal_name} not found")

            for group_dn in _clean_groups(group_dns):
                try:
                    client.add_user_to_group(principal_name, group_dn)
                except DirectoryError as exc:
                    logger.warning(
                        "Registration %s: adding %s to %s failed: %s", record_id, principal_name, group_dn, exc
                    )
                    raise DirectoryOperationFailedError(f"Failed to add user to group: {exc}") from exc

        record.ad_user_principal_name = principal_name
        record.status = RegistrationStatus.REGISTERED
        record.updated_at = _utc_now()
        self._save_record(record)
        logger.info(
            "Registration %s linked to %s by %s",
            record_id,
            principal_name,
            actor.username if actor else "system",
        )
        return record

    def update_user_groups(
        self,
        record_id: int,
        groups_to_add: Optional[Iterable[str]] = None,
        groups_to_remove: Optional[Iterable[str]] = None,
        actor: Optional[AdminPrincipal] = None,
    ) -> RegistrationRecord:
        """Apply all additions, then all removals, stopping at the first failure."""

        record = self._require_record(record_id)
        if not record.is_registered or not record.ad_user_principal_name:
            raise PreconditionFailedError("User is not registered or has no AD account")

        principal_name = record.ad_user_principal_name
        with self._directory() as client:
            for group_dn in _clean_groups(groups_to_add):
                try:
                    client.add_user_to_group(principal_name, group_dn)
                except DirectoryError as exc:
                    raise DirectoryOperationFailedError(f"Failed to add user to group: {exc}") from exc

            for group_dn in _clean_groups(groups_to_remove):
                try:
                    client.remove_user_from_group(principal_name, group_dn)
                except DirectoryError as exc:
                    raise DirectoryOperationFailedError(f"Failed to remove user from group: {exc}") from exc

        record.updated_at = _utc_now()
        self._save_record(record)
        logger.info(
            "Registration %s groups updated by %s",
            record_id,
            actor.username if actor else "system",
        )
        return record

    def reset_user_password(self, record_id: int, actor: Optional[AdminPrincipal] = None) -> str:
        """Reset the linked account's password and return it once."""

        record = self._require_record(record_id)
        if not record.is_registered or not record.ad_user_principal_name:
            raise PreconditionFailedError("User is not registered or has no AD account")

        with self._directory() as client:
            try:
                password = client.reset_password(record.ad_user_principal_name)
            except DirectoryError as exc:
                raise DirectoryOperationFailedError(f"Failed to reset password: {exc}") from exc

        logger.info(
            "Password reset for %s by %s",
            record.ad_user_principal_name,
            actor.username if actor else "system",
        )
        return password

    def delete_user(self, record_id: int, actor: Optional[AdminPrincipal] = None) -> None:
        self._require_record(record_id)
        if not self.store.delete(record_id):
            raise NotFoundError("User not found")
        logger.info("Registration %s deleted by %s", record_id, actor.username if actor else "system")

    def provision_directory_user(
        self, user_principal_name: str, display_name: str, email: str
    ) -> DirectoryAccount:
        if not user_principal_name or not display_name:
            raise ValidationError("User principal name and display name are required")
        with self._directory() as client:
            try:
                account = client.create_user(user_principal_name, display_name, email)
            except DirectoryNotFoundError as exc:
                raise NotFoundError(str(exc)) from exc
            except DirectoryError as exc:
                raise DirectoryOperationFailedError(f"Failed to create user: {exc}") from exc
        logger.info("Provisioned directory account %s", user_principal_name)
        return account

    # Queries -------------------------------------------------------------
    def list_users(self) -> List[RegistrationRecord]:
        return self.store.list()

    def list_users_by_status(self, status: RegistrationStatus) -> List[RegistrationRecord]:
        return self.store.list(status)

    def list_pending_users(self) -> List[RegistrationRecord]:
        return self.store.list(RegistrationStatus.PENDING)

    def get_user_detail(self, record_id: int) -> RegistrationDetail:
        record = self._require_record(record_id)
        detail = RegistrationDetail(record=record)
        if record.is_registered and record.ad_user_principal_name:
            with self._directory() as client:
                detail.groups = client.get_user_groups(record.ad_user_principal_name)
        return detail

    def list_available_groups(self) -> List[DirectoryGroup]:
        with self._directory() as client:
            return client.list_groups()


__all__ = [
    "ConflictError",
    "DirectoryOperationFailedError",
    "ForbiddenError",
    "NotFoundError",
    "PortalError",
    "PreconditionFailedError",
    "RegistrationService",
    "UnauthorizedError",
    "ValidationError",
    "qualify_principal_name",
]
