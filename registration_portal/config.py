"""Configuration loading utilities for the registration portal."""
from __future__ import annotations

import os
import shutil
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, Iterable, Optional

import yaml


DEFAULT_CONFIG_PATH = Path("config/settings.yaml")
DEFAULT_TEMPLATE_PATH = Path("config/settings.example.yaml")
ENV_CONFIG_PATH = "PORTAL_CONFIG"
ENV_PREFIX = "PORTAL_"


@dataclass
class LDAPConfig:
    """Settings required to reach Active Directory via LDAP."""

    server_uri: str
    user_dn: str
    password: str
    base_dn: str
    users_ou: str
    groups_ou: Optional[str] = None
    domain: Optional[str] = None
    admin_group: str = "Portal-Admins"
    use_ssl: bool = True
    mock_data_file: Optional[Path] = None

    @property
    def is_mock(self) -> bool:
        return self.server_uri.startswith("mock://")

    @property
    def resolved_domain(self) -> str:
        if self.domain:
            return self.domain
        return domain_from_dn(self.base_dn)

    @property
    def group_search_base(self) -> str:
        return self.groups_ou or self.base_dn


@dataclass
class StorageConfig:
    """Filesystem locations used by the application."""

    registrations_file: Path = Path("data/registrations.json")


@dataclass
class WebConfig:
    """Settings for the admin web interface and the extension endpoint."""

    secret_key: str = "registration-portal-secret"
    allowed_origins: tuple[str, ...] = ()


@dataclass
class AppConfig:
    """Aggregate configuration for the application."""

    ldap: LDAPConfig
    storage: StorageConfig = field(default_factory=StorageConfig)
    web: WebConfig = field(default_factory=WebConfig)


class ConfigurationError(RuntimeError):
    """Raised when the configuration file or environment variables are invalid."""


def domain_from_dn(base_dn: str) -> str:
    parts = [
        segment.split("=", 1)[1].strip()
        for segment in (base_dn or "").split(",")
        if segment.strip().upper().startswith("DC=")
    ]
    return ".".join(parts)


def _load_from_file(path: Path) -> Dict[str, Any]:
    if not path.exists():
        raise ConfigurationError(
            f"Configuration file '{path}' does not exist. "
            "Create it from 'config/settings.example.yaml' or set environment variables."
        )
    with path.open("r", encoding="utf-8") as file:
        return yaml.safe_load(file) or {}


def _apply_environment_overrides(config_dict: Dict[str, Any]) -> Dict[str, Any]:
    """Override configuration values with ``PORTAL_<SECTION>__<KEY>`` variables."""

    overrides: Dict[str, Any] = {}
    for key, value in os.environ.items():
        if not key.startswith(ENV_PREFIX):
            continue
        path = key[len(ENV_PREFIX) :].lower().split("__")
        if len(path) < 2:
            continue
        node = overrides
        for part in path[:-1]:
            node = node.setdefault(part, {})
        node[path[-1]] = value

    if overrides:
        config_dict = _deep_merge(config_dict, overrides)
    return config_dict


def _deep_merge(base: Dict[str, Any], overrides: Dict[str, Any]) -> Dict[str, Any]:
    result = dict(base)
    for key, value in overrides.items():
        if isinstance(value, dict) and isinstance(base.get(key), dict):
            result[key] = _deep_merge(base[key], value)
        else:
            result[key] = value
    return result


def _resolve_config_path(path: Optional[Path] = None) -> Path:
    if path is not None:
        return Path(path)
    env_path = os.environ.get(ENV_CONFIG_PATH)
    if env_path:
        return Path(env_path)
    return DEFAULT_CONFIG_PATH


def ensure_default_config(
    path: Optional[Path] = None, template_path: Optional[Path] = None
) -> Path:
    """Ensure a configuration file exists, copying from the example if needed."""

    target_path = _resolve_config_path(path)
    if target_path.exists():
        return target_path

    template = Path(template_path) if template_path is not None else DEFAULT_TEMPLATE_PATH
    if not template.exists():
        raise ConfigurationError(
            "Default configuration template not found. "
            "Ensure 'config/settings.example.yaml' is present or specify a template."
        )

    target_path.parent.mkdir(parents=True, exist_ok=True)
    shutil.copy(template, target_path)
    return target_path


def _load_config_dict(path: Optional[Path] = None) -> Dict[str, Any]:
    resolved_path = _resolve_config_path(path)
    if resolved_path == DEFAULT_CONFIG_PATH:
        ensure_default_config(resolved_path)

    config_dict = _load_from_file(resolved_path)
    return _apply_environment_overrides(config_dict)


def _get_required(config_dict: Dict[str, Any], key: str) -> Dict[str, Any]:
    try:
        return config_dict[key]
    except KeyError as exc:
        raise ConfigurationError(f"Missing required configuration section: '{key}'.") from exc


def _normalize_sequence(value: Any) -> Iterable[Any]:
    if value is None:
        return []
    if isinstance(value, (list, tuple, set)):
        return value
    if isinstance(value, str):
        return value.split(",")
    return [value]


def _to_bool(value: Any) -> bool:
    if isinstance(value, bool):
        return value
    if isinstance(value, str):
        return value.strip().lower() in {"1", "true", "yes", "on"}
    return bool(value)


def _optional_path(raw: Any) -> Optional[Path]:
    """Convert a raw config value to ``Path`` if set, otherwise ``None``."""

    if raw is None:
        return None
    if isinstance(raw, Path):
        return raw
    if isinstance(raw, str):
        stripped = raw.strip()
        if not stripped:
            return None
        return Path(stripped)
    return Path(raw)


def _optional_str(value: Any) -> Optional[str]:
    if value is None:
        return None
    if isinstance(value, str):
        stripped = value.strip()
        return stripped or None
    return str(value)


def load_config(path: Optional[Path] = None) -> AppConfig:
    """Load application configuration from disk and environment variables."""

    config_dict = _load_config_dict(path)
    ldap_section = _get_required(config_dict, "ldap")

    try:
        ldap_config = LDAPConfig(
            server_uri=str(ldap_section["server_uri"]),
            user_dn=str(ldap_section["user_dn"]),
            password=str(ldap_section["password"]),
            base_dn=str(ldap_section["base_dn"]),
            users_ou=str(ldap_section["users_ou"]),
            groups_ou=_optional_str(ldap_section.get("groups_ou")),
            domain=_optional_str(ldap_section.get("domain")),
            admin_group=_optional_str(ldap_section.get("admin_group")) or "Portal-Admins",
            use_ssl=_to_bool(ldap_section.get("use_ssl", True)),
            mock_data_file=_optional_path(ldap_section.get("mock_data_file")),
        )
    except KeyError as exc:
        raise ConfigurationError(f"Missing LDAP configuration key: {exc}.") from exc

    storage_section = config_dict.get("storage") or {}
    storage_config = StorageConfig(
        registrations_file=_optional_path(storage_section.get("registrations_file"))
        or StorageConfig().registrations_file,
    )

    web_section = config_dict.get("web") or {}
    default_web = WebConfig()
    web_config = WebConfig(
        secret_key=_optional_str(web_section.get("secret_key")) or default_web.secret_key,
        allowed_origins=tuple(
            filter(
                None,
                [str(entry).strip() for entry in _normalize_sequence(web_section.get("allowed_origins"))],
            )
        ),
    )

    return AppConfig(ldap=ldap_config, storage=storage_config, web=web_config)


__all__ = [
    "AppConfig",
    "ConfigurationError",
    "LDAPConfig",
    "StorageConfig",
    "WebConfig",
    "domain_from_dn",
    "ensure_default_config",
    "load_config",
]
