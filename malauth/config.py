"""Configuration system for malauth using pydantic-settings.

Supports layered configuration:
1. Built-in defaults (lowest priority)
2. pyproject.toml [tool.malauth] section (project-level)
3. ./malauth.toml (project-level, explicit)
4. ~/.config/malauth/config.toml (user-level, overrides project)
5. The file named by MALAUTH_CONFIG_FILE
6. Environment variables (highest priority)

Environment variables use MALAUTH_ prefix with nested delimiter __.
Example: MALAUTH_OAUTH2__CLIENT_ID, MALAUTH_CACHE__BACKEND
"""

from __future__ import annotations

import json
import logging
import os
import sys

from functools import lru_cache
from pathlib import Path
from typing import Any, Literal

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


if sys.version_info >= (3, 11):
    import tomllib
else:
    import tomli as tomllib


logger = logging.getLogger("malauth.config")

APP_NAME = "malauth"

MAL_AUTHORIZE_URL = "https://myanimelist.net/v1/oauth2/authorize"
MAL_TOKEN_URL = "https://myanimelist.net/v1/oauth2/token"  # noqa: S105


def default_data_dir() -> Path:
    """Return the platform application-data directory for malauth."""
    if sys.platform == "win32":
        base = Path(os.environ.get("APPDATA", "~"))
    elif sys.platform == "darwin":
        base = Path("~/Library/Application Support")
    else:
        base = Path(os.environ.get("XDG_DATA_HOME") or "~/.local/share")
    return (base / APP_NAME).expanduser()


def _user_config_file() -> Path:
    if sys.platform == "win32":
        path = Path(os.environ.get("APPDATA", "~")) / APP_NAME / "config.toml"
    else:
        path = Path(os.environ.get("XDG_CONFIG_HOME") or "~/.config") / APP_NAME / "config.toml"
    return path.expanduser()


def _find_config_files() -> list[Path]:
    """Find all configuration files in order of precedence (lowest first)."""
    files = []

    pyproject = Path("pyproject.toml")
    if pyproject.exists():
        files.append(pyproject)

    project_toml = Path("malauth.toml")
    if project_toml.exists():
        files.append(project_toml)

    user_config = _user_config_file()
    if user_config.exists():
        files.append(user_config)

    env_config = os.environ.get("MALAUTH_CONFIG_FILE")
    if env_config:
        env_path = Path(env_config).expanduser()
        if env_path.exists():
            files.append(env_path)

    return files


def _load_toml_config() -> dict[str, Any]:
    """Load and merge all TOML configuration files."""
    merged: dict[str, Any] = {}

    for config_file in _find_config_files():
        try:
            data = tomllib.loads(config_file.read_text(encoding="utf-8"))
        except (OSError, tomllib.TOMLDecodeError) as exc:
            logger.warning("Ignoring unreadable config file %s: %s", config_file, exc)
            continue

        if config_file.name == "pyproject.toml":
            data = data.get("tool", {}).get(APP_NAME, {})

        merged = _deep_merge(merged, data)

    return merged


def _deep_merge(base: dict[str, Any], override: dict[str, Any]) -> dict[str, Any]:
    """Deep merge two dictionaries."""
    result = base.copy()
    for key, value in override.items():
        if key in result and isinstance(result[key], dict) and isinstance(value, dict):
            result[key] = _deep_merge(result[key], value)
        else:
            result[key] = value
    return result


# Field names that contain sensitive data and must be redacted in output.
_SENSITIVE_FIELDS: set[str] = {
    "client_secret",
    "key",
}

_REDACTED = "********"


class OAuth2Settings(BaseSettings):
    """OAuth2 client registration and handshake settings.

    Environment prefix: MALAUTH_OAUTH2__
    Example: MALAUTH_OAUTH2__CLIENT_ID=your-client-id

    TOML section: [tool.malauth.oauth2]
    """

    model_config = SettingsConfigDict(
        env_prefix="MALAUTH_OAUTH2__",
        extra="ignore",
    )

    client_id: str = Field(
        default="",
        description="Client ID issued by the MyAnimeList API config page",
    )
    client_secret: str = Field(
        default="",
        description="Client secret (only for 'web' app types; empty for PKCE-only apps)",
    )
    redirect_uri: str = Field(
        default="http://localhost:2561/callback",
        description="Redirect URI registered with the provider; the callback listener binds to it",
    )

    authorize_url: str = Field(
        default=MAL_AUTHORIZE_URL,
        description="Authorization endpoint URL",
    )
    token_url: str = Field(
        default=MAL_TOKEN_URL,
        description="Token endpoint URL",
    )

    pkce_method: Literal["plain", "S256"] = Field(
        default="plain",
        description="PKCE code challenge method (MyAnimeList only accepts 'plain')",
    )
    verifier_length: int = Field(
        default=128,
        ge=43,
        le=128,
        description="Length of the PKCE code verifier",
    )

    auth_timeout_seconds: float = Field(
        default=300.0,
        ge=10.0,
        description="Maximum seconds to wait for the OAuth2 callback",
    )
    refresh_margin_seconds: int = Field(
        default=60,
        ge=0,
        description="Treat the access token as expired this many seconds early",
    )
    http_timeout_seconds: float = Field(
        default=30.0,
        gt=0,
        description="Timeout for requests to the token endpoint",
    )


class CacheSettings(BaseSettings):
    """Encrypted token cache settings.

    Environment prefix: MALAUTH_CACHE__
    Example: MALAUTH_CACHE__BACKEND=memory
    """

    model_config = SettingsConfigDict(
        env_prefix="MALAUTH_CACHE__",
        extra="ignore",
    )

    backend: Literal["file", "memory"] = Field(
        default="file",
        description="Token cache backend: file (encrypted, persistent) or memory",
    )
    path: Path | None = Field(
        default=None,
        description="Encrypted token record path (default: <data dir>/tokens)",
    )
    key_source: Literal["file", "keyring", "env"] = Field(
        default="file",
        description="Where the cache master key comes from: file, keyring, or env",
    )
    key_file: Path | None = Field(
        default=None,
        description="Master key file for key_source=file (default: <data dir>/key)",
    )
    key: str = Field(
        default="",
        description="Passphrase for key_source=env",
    )
    keyring_service: str = Field(
        default=APP_NAME,
        description="OS keyring service name for key_source=keyring",
    )

    @field_validator("path", "key_file", mode="after")
    @classmethod
    def _expand_user(cls, v: Path | None) -> Path | None:
        return v.expanduser() if v is not None else None

    def resolved_path(self) -> Path:
        """Return the record path, falling back to the data directory."""
        return self.path or default_data_dir() / "tokens"

    def resolved_key_file(self) -> Path:
        """Return the master key path, falling back to the data directory."""
        return self.key_file or default_data_dir() / "key"


class LogSettings(BaseSettings):
    """Logging settings.

    Environment prefix: MALAUTH_LOG__
    Example: MALAUTH_LOG__LEVEL=DEBUG
    """

    model_config = SettingsConfigDict(
        env_prefix="MALAUTH_LOG__",
        extra="ignore",
    )

    level: Literal["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"] = "WARNING"
    format: str = "%(name)s - %(levelname)s - %(message)s"


_SECTIONS: dict[str, type[BaseSettings]] = {
    "oauth2": OAuth2Settings,
    "cache": CacheSettings,
    "log": LogSettings,
}


def _build_section(cls: type[BaseSettings], file_data: dict[str, Any]) -> BaseSettings:
    """Build a section with environment variables overriding file values."""
    env_values = cls().model_dump(exclude_unset=True)
    return cls(**_deep_merge(file_data, env_values))


class MalAuthSettings(BaseSettings):
    """Main settings aggregating all configuration sections.

    Configuration sources (in order of precedence):
    1. Built-in defaults
    2. pyproject.toml [tool.malauth] section
    3. ./malauth.toml (project-level)
    4. ~/.config/malauth/config.toml (user-level, overrides project)
    5. MALAUTH_CONFIG_FILE
    6. Environment variables (highest priority)
    """

    model_config = SettingsConfigDict(
        env_prefix="MALAUTH_",
        extra="ignore",
    )

    oauth2: OAuth2Settings = Field(default_factory=OAuth2Settings)
    cache: CacheSettings = Field(default_factory=CacheSettings)
    log: LogSettings = Field(default_factory=LogSettings)

    def __init__(self, **data: Any) -> None:
        merged = _deep_merge(_load_toml_config(), data)

        for name, section_cls in _SECTIONS.items():
            value = merged.get(name)
            if value is None or isinstance(value, dict):
                merged[name] = _build_section(section_cls, value or {})

        super().__init__(**merged)

    def to_toml(self) -> str:
        """Export settings as TOML string."""
        lines = ["# malauth configuration", "# Generated by: malauth config --toml", ""]

        all_data = self.model_dump(
            mode="json",
            exclude=dict.fromkeys(_SECTIONS, _SENSITIVE_FIELDS),
        )

        for section_name, section_cls in _SECTIONS.items():
            lines.append(f"[{section_name}]")
            for field_name, field_value in all_data.get(section_name, {}).items():
                if field_value is None:
                    continue
                if isinstance(field_value, bool):
                    value_str = "true" if field_value else "false"
                elif isinstance(field_value, str):
                    value_str = json.dumps(field_value)
                else:
                    value_str = str(field_value)
                lines.append(f"{field_name} = {value_str}")
            # Secrets stay commented out so the file loads back without them.
            lines.extend(
                f'# {rn} = ""  # set MALAUTH_{section_name.upper()}__{rn.upper()}'
                for rn in sorted(_SENSITIVE_FIELDS & section_cls.model_fields.keys())
            )
            lines.append("")

        return "\n".join(lines)

    def to_env(self) -> str:
        """Export settings as shell environment variables."""
        lines = [
            "# malauth environment variables",
            "# Generated by: malauth config --env",
            "",
        ]

        all_data = self.model_dump(
            mode="json",
            exclude=dict.fromkeys(_SECTIONS, _SENSITIVE_FIELDS),
        )

        for section_name, section_cls in _SECTIONS.items():
            prefix = f"MALAUTH_{section_name.upper()}__"
            for field_name, field_value in all_data.get(section_name, {}).items():
                if field_value is None:
                    continue
                if isinstance(field_value, bool):
                    value_str = "true" if field_value else "false"
                else:
                    value_str = str(field_value)
                lines.append(f'export {prefix}{field_name.upper()}="{value_str}"')
            for redacted_name in sorted(_SENSITIVE_FIELDS & section_cls.model_fields.keys()):
                lines.append(f'export {prefix}{redacted_name.upper()}="{_REDACTED}"')

        return "\n".join(lines)

    def show(self) -> str:
        """Format settings as a readable table."""
        lines = ["malauth configuration", "=" * 60]

        for section_name, section_cls in _SECTIONS.items():
            section = getattr(self, section_name)
            lines.append("")
            lines.append(f"[{section_name}]")
            for field_name, value in section.model_dump(exclude=_SENSITIVE_FIELDS).items():
                lines.append(f"  {field_name:<24} = {value!r}")
            lines.extend(
                f"  {rn:<24} = '{_REDACTED}'"
                for rn in sorted(_SENSITIVE_FIELDS & section_cls.model_fields.keys())
            )

        return "\n".join(lines)


@lru_cache(maxsize=1)
def get_settings() -> MalAuthSettings:
    """Get the global settings instance (cached).

    Call clear_settings() to reload configuration.
    """
    return MalAuthSettings()


def clear_settings() -> None:
    """Clear the cached settings to force reload."""
    get_settings.cache_clear()
