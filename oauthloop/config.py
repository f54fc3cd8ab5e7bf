"""Configuration system for oauthloop using pydantic-settings.

Supports layered configuration:
1. Built-in defaults (lowest priority)
2. pyproject.toml [tool.oauthloop] section (project-level)
3. ./oauthloop.toml (project-level, explicit)
4. ~/.config/oauthloop/config.toml (user-level, overrides project)
5. The file named by OAUTHLOOP_CONFIG_FILE
6. Environment variables (highest priority)

Environment variables use the OAUTHLOOP_ prefix with nested delimiter __.
Example: OAUTHLOOP_OAUTH2__CLIENT_ID, OAUTHLOOP_SERVER__AUTH_TIMEOUT_SECONDS
"""

from __future__ import annotations

import json
import logging
import os
import sys

from functools import lru_cache
from pathlib import Path
from typing import Any, Literal

from pydantic import Field
from pydantic.fields import FieldInfo
from pydantic_settings import (
    BaseSettings,
    PydanticBaseSettingsSource,
    SettingsConfigDict,
)


if sys.version_info >= (3, 11):
    import tomllib
else:
    import tomli as tomllib


logger = logging.getLogger("oauthloop")

CONFIG_FILE_ENV = "OAUTHLOOP_CONFIG_FILE"


def user_config_path() -> Path:
    """Location of the user-level configuration file."""
    if sys.platform == "win32":
        base = Path(os.environ.get("APPDATA", "~"))
    else:
        base = Path("~/.config")
    return (base / "oauthloop" / "config.toml").expanduser()


def _find_config_files() -> list[Path]:
    """Find all configuration files in order of precedence (lowest first)."""
    files = []

    pyproject = Path("pyproject.toml")
    if pyproject.exists():
        files.append(pyproject)

    project_toml = Path("oauthloop.toml")
    if project_toml.exists():
        files.append(project_toml)

    user_config = user_config_path()
    if user_config.exists():
        files.append(user_config)

    env_config = os.environ.get(CONFIG_FILE_ENV)
    if env_config:
        env_path = Path(env_config)
        if env_path.exists():
            files.append(env_path)
        else:
            logger.warning("%s points to a missing file: %s", CONFIG_FILE_ENV, env_path)

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
            data = data.get("tool", {}).get("oauthloop", {})

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


class _TomlFilesSource(PydanticBaseSettingsSource):
    """Settings source yielding the merged TOML files, below the environment."""

    def get_field_value(self, field: FieldInfo, field_name: str) -> tuple[Any, str, bool]:
        return None, field_name, False

    def __call__(self) -> dict[str, Any]:
        return _load_toml_config()


# Field names that contain sensitive data and must be redacted in output.
_SENSITIVE_FIELDS: set[str] = {
    "client_secret",
}

_REDACTED = "********"


class OAuth2Settings(BaseSettings):
    """OAuth2 client and provider endpoint configuration.

    Environment prefix: OAUTHLOOP_OAUTH2__
    Example: OAUTHLOOP_OAUTH2__CLIENT_ID=your-client-id

    TOML section: [tool.oauthloop.oauth2]
    """

    model_config = SettingsConfigDict(
        env_prefix="OAUTHLOOP_OAUTH2__",
        extra="ignore",
    )

    client_id: str = Field(
        default="",
        description="OAuth2 client ID from the provider",
    )
    client_secret: str = Field(
        default="",
        description="OAuth2 client secret sent to the token endpoint",
    )
    scopes: str = Field(
        default="https://www.googleapis.com/auth/spreadsheets.readonly",
        description="Space-separated OAuth2 scopes to request",
    )
    authorize_url: str = Field(
        default="https://accounts.google.com/o/oauth2/v2/auth",
        description="Authorization endpoint URL",
    )
    token_url: str = Field(
        default="https://oauth2.googleapis.com/token",
        description="Token endpoint URL",
    )
    verifier_bytes: int = Field(
        default=32,
        ge=32,
        le=96,
        description="Random bytes behind the PKCE code verifier",
    )
    state_bytes: int = Field(
        default=32,
        ge=16,
        description="Random bytes behind the state nonce",
    )
    http_timeout_seconds: float = Field(
        default=30.0,
        gt=0,
        description="Timeout for token endpoint requests",
    )


class ServerSettings(BaseSettings):
    """Loopback redirect server settings.

    Environment prefix: OAUTHLOOP_SERVER__
    Example: OAUTHLOOP_SERVER__AUTH_TIMEOUT_SECONDS=300
    """

    model_config = SettingsConfigDict(
        env_prefix="OAUTHLOOP_SERVER__",
        extra="ignore",
    )

    bind_host: str = Field(
        default="127.0.0.1",
        description="Loopback address the redirect server binds",
    )
    redirect_host: str = Field(
        default="localhost",
        description="Host name used in the redirect URI",
    )
    completion_message: str = Field(
        default="Authorization succeeded.<br>Go back to the application and continue.",
        description="Page body shown after the redirect (HTML allowed)",
    )
    auth_timeout_seconds: float | None = Field(
        default=None,
        gt=0,
        description="Seconds to wait for the redirect (unset waits until canceled)",
    )


class LogSettings(BaseSettings):
    """Logging settings.

    Environment prefix: OAUTHLOOP_LOG__
    Example: OAUTHLOOP_LOG__LEVEL=DEBUG
    """

    model_config = SettingsConfigDict(
        env_prefix="OAUTHLOOP_LOG__",
        extra="ignore",
    )

    level: Literal["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"] = "WARNING"
    format: str = "%(name)s - %(levelname)s - %(message)s"


_SECTIONS: list[tuple[str, str, str]] = [
    # (attribute, env prefix, display name)
    ("oauth2", "OAUTH2", "OAuth2 Client"),
    ("server", "SERVER", "Redirect Server"),
    ("log", "LOG", "Logging"),
]


def _toml_value(value: Any) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, str):
        # JSON string escapes are valid TOML basic-string escapes.
        return json.dumps(value)
    return str(value)


class OAuthLoopSettings(BaseSettings):
    """Main settings aggregating all configuration sections.

    Environment prefix: OAUTHLOOP_

    Configuration sources (in order of precedence):
    1. Built-in defaults
    2. pyproject.toml [tool.oauthloop] section
    3. ./oauthloop.toml (project-level)
    4. ~/.config/oauthloop/config.toml (user-level, overrides project)
    5. OAUTHLOOP_CONFIG_FILE
    6. Environment variables (highest priority)

    Keyword arguments passed to the constructor override all of these.
    """

    model_config = SettingsConfigDict(
        env_prefix="OAUTHLOOP_",
        env_nested_delimiter="__",
        extra="ignore",
    )

    oauth2: OAuth2Settings = Field(default_factory=OAuth2Settings)
    server: ServerSettings = Field(default_factory=ServerSettings)
    log: LogSettings = Field(default_factory=LogSettings)

    @classmethod
    def settings_customise_sources(
        cls,
        settings_cls: type[BaseSettings],
        init_settings: PydanticBaseSettingsSource,
        env_settings: PydanticBaseSettingsSource,
        dotenv_settings: PydanticBaseSettingsSource,
        file_secret_settings: PydanticBaseSettingsSource,
    ) -> tuple[PydanticBaseSettingsSource, ...]:
        return (init_settings, env_settings, _TomlFilesSource(settings_cls))

    def to_toml(self) -> str:
        """Export settings as TOML string."""
        lines = ["# oauthloop Configuration", "# Generated by: oauthloop config --toml", ""]

        all_data = self.model_dump(
            exclude={attr: _SENSITIVE_FIELDS for attr, _, _ in _SECTIONS},
        )

        for attr, _, _ in _SECTIONS:
            lines.append(f"[{attr}]")
            for field_name, field_value in all_data.get(attr, {}).items():
                if field_value is None:
                    # TOML has no null; leave unset values commented out.
                    lines.append(f"# {field_name} =")
                    continue
                lines.append(f"{field_name} = {_toml_value(field_value)}")
            section_cls = type(getattr(self, attr))
            lines.extend(
                f'{rn} = "{_REDACTED}"'
                for rn in sorted(_SENSITIVE_FIELDS & section_cls.model_fields.keys())
            )
            lines.append("")

        return "\n".join(lines)

    def to_env(self) -> str:
        """Export settings as shell environment variables."""
        lines = [
            "# oauthloop Environment Variables",
            "# Generated by: oauthloop config --env",
            "",
        ]

        all_data = self.model_dump(
            exclude={attr: _SENSITIVE_FIELDS for attr, _, _ in _SECTIONS},
        )

        for attr, env_prefix, _ in _SECTIONS:
            for field_name, field_value in all_data.get(attr, {}).items():
                if field_value is None:
                    continue
                env_name = f"OAUTHLOOP_{env_prefix}__{field_name.upper()}"
                if isinstance(field_value, bool):
                    value_str = "true" if field_value else "false"
                else:
                    value_str = str(field_value)
                lines.append(f'export {env_name}="{value_str}"')
            section_cls = type(getattr(self, attr))
            for redacted_name in sorted(_SENSITIVE_FIELDS & section_cls.model_fields.keys()):
                env_name = f"OAUTHLOOP_{env_prefix}__{redacted_name.upper()}"
                lines.append(f'export {env_name}="{_REDACTED}"')

        return "\n".join(lines)

    def show(self) -> str:
        """Format settings as a readable table."""
        lines = ["oauthloop Configuration", "=" * 60, ""]

        all_data = self.model_dump(
            exclude={attr: _SENSITIVE_FIELDS for attr, _, _ in _SECTIONS},
        )

        for attr, _, display_name in _SECTIONS:
            lines.append(f"\n{display_name}")
            lines.append("-" * 40)
            for field_name, field_value in all_data.get(attr, {}).items():
                value_str = str(field_value)
                if len(value_str) > 50:
                    value_str = value_str[:47] + "..."
                lines.append(f"  {field_name:22} = {value_str}")
            section_cls = type(getattr(self, attr))
            lines.extend(
                f"  {rn:22} = {_REDACTED}"
                for rn in sorted(_SENSITIVE_FIELDS & section_cls.model_fields.keys())
            )

        return "\n".join(lines)


@lru_cache(maxsize=1)
def get_settings() -> OAuthLoopSettings:
    """Get the global settings instance (cached).

    Call clear_settings() to reload configuration.
    """
    return OAuthLoopSettings()


def clear_settings() -> None:
    """Clear the cached settings to force reload."""
    get_settings.cache_clear()


def reload_settings() -> OAuthLoopSettings:
    """Reload settings from all sources."""
    clear_settings()
    return get_settings()
