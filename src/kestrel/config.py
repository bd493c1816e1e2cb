# =============================================================================
# Configuration Management
# =============================================================================
# Handles loading, saving, and validating Kestrel configuration.
#
# XDG Base Directory Compliance (https://specifications.freedesktop.org/basedir-spec/):
#   - Config:  $XDG_CONFIG_HOME/kestrel/config.toml  (default: ~/.config/kestrel/)
#
# Every setting has a default, so a missing file means "all defaults".
# Passwords never appear here; they live in the system keyring.
# =============================================================================

import os
import tomllib  # Built into Python 3.11+
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import tomli_w  # For writing TOML (tomllib is read-only)

from kestrel.core import Account, FetchProfile


# =============================================================================
# XDG Directory Management
# =============================================================================

# Application identifier used in all XDG paths
APP_NAME = "kestrel"


def get_xdg_config_home() -> Path:
    """
    Returns the XDG config directory for Kestrel.

    Respects $XDG_CONFIG_HOME if set, otherwise uses ~/.config/kestrel/
    """
    xdg_config = os.environ.get("XDG_CONFIG_HOME")
    if xdg_config:
        base = Path(xdg_config)
    else:
        base = Path.home() / ".config"
    return base / APP_NAME


# =============================================================================
# Configuration Data Structures
# =============================================================================

@dataclass
class ConnectionConfig:
    """
    Configuration for a protocol connection.

    Attributes:
        command_timeout: Seconds to wait for a tagged response. A timeout
                         makes the connection unusable (the stream may be
                         out of sync). 0 disables the timeout.
        greeting_timeout: Seconds to wait for the server greeting.
        tag_prefix: Prefix of command tags ("A" gives A1, A2, ...).
        wire_trace: Log raw protocol bytes at DEBUG. LOGIN is still redacted.
    """
    command_timeout: float = 30.0
    greeting_timeout: float = 30.0
    tag_prefix: str = "A"
    wire_trace: bool = False

    @property
    def timeout(self) -> float | None:
        """command_timeout in the form asyncio expects (None = no timeout)."""
        return self.command_timeout or None


@dataclass
class CodecConfig:
    """
    Framing limits for server responses.

    Attributes:
        max_line_length: Longest response line accepted, in bytes.
        max_literal_size: Largest literal accepted, in bytes.
    """
    max_line_length: int = 64 * 1024
    max_literal_size: int = 64 * 1024 * 1024


@dataclass
class FetchConfig:
    """
    Configuration for message fetching.

    Attributes:
        max_command_length: FETCH commands longer than this are split.
        default_profile: Pre-fetch profile a new folder session starts with,
                         as item names plus "header:<Name>" entries.
    """
    max_command_length: int = 8000
    default_profile: list[str] = field(default_factory=lambda: ["FLAGS", "ENVELOPE"])

    @property
    def profile(self) -> FetchProfile:
        return FetchProfile.from_names(self.default_profile)


@dataclass
class Config:
    """
    Main configuration container for Kestrel.

    Attributes:
        connection: Timeouts, tags and tracing.
        codec: Response framing limits.
        fetch: Fetch planning and the default pre-fetch profile.
        accounts: Login identities keyed by name.

    Usage:
        >>> config = Config.load()
        >>> config.connection.command_timeout
        30.0
    """
    connection: ConnectionConfig = field(default_factory=ConnectionConfig)
    codec: CodecConfig = field(default_factory=CodecConfig)
    fetch: FetchConfig = field(default_factory=FetchConfig)
    accounts: dict[str, Account] = field(default_factory=dict)

    # -------------------------------------------------------------------------
    # File Paths
    # -------------------------------------------------------------------------

    @staticmethod
    def config_file_path() -> Path:
        """Returns the path to the main config file."""
        return get_xdg_config_home() / "config.toml"

    # -------------------------------------------------------------------------
    # Loading and Saving
    # -------------------------------------------------------------------------

    @classmethod
    def load(cls, path: Path | None = None) -> "Config":
        """
        Load configuration from the config file.

        If the config file doesn't exist, returns default configuration.

        Args:
            path: Config file to read (defaults to the XDG location).

        Returns:
            Loaded Config object.

        Raises:
            ConfigError: If the config file exists but is invalid.
        """
        config_path = path or cls.config_file_path()

        if not config_path.exists():
            # No config file yet - return defaults
            return cls()

        # Load and parse the TOML file
        try:
            with open(config_path, "rb") as f:
                data = tomllib.load(f)
        except tomllib.TOMLDecodeError as e:
            raise ConfigError(f"Invalid config file: {e}") from e

        return cls._from_dict(data)

    def save(self, path: Path | None = None) -> None:
        """
        Save configuration to the config file.

        Creates the config directory if it doesn't exist.
        """
        config_path = path or self.config_file_path()
        config_path.parent.mkdir(parents=True, exist_ok=True)

        with open(config_path, "wb") as f:
            tomli_w.dump(self._to_dict(), f)

    @classmethod
    def _from_dict(cls, data: dict[str, Any]) -> "Config":
        """
        Create a Config object from a dictionary (parsed TOML).

        Raises:
            ConfigError: If a value has the wrong type or is out of range.
        """
        config = cls()

        # Connection settings
        connection = data.get("connection", {})
        config.connection = ConnectionConfig(
            command_timeout=_number(connection, "command_timeout", 30.0),
            greeting_timeout=_number(connection, "greeting_timeout", 30.0),
            tag_prefix=connection.get("tag_prefix", "A"),
            wire_trace=connection.get("wire_trace", False),
        )
        prefix = config.connection.tag_prefix
        if not isinstance(prefix, str) or not prefix.isalnum():
            raise ConfigError(f"tag_prefix must be alphanumeric: {prefix!r}")

        # Codec settings
        codec = data.get("codec", {})
        config.codec = CodecConfig(
            max_line_length=_positive_int(codec, "max_line_length", 64 * 1024),
            max_literal_size=_positive_int(codec, "max_literal_size", 64 * 1024 * 1024),
        )

        # Fetch settings
        fetch = data.get("fetch", {})
        config.fetch = FetchConfig(
            max_command_length=_positive_int(fetch, "max_command_length", 8000),
            default_profile=list(fetch.get("default_profile", ["FLAGS", "ENVELOPE"])),
        )
        try:
            config.fetch.profile
        except ValueError as e:
            raise ConfigError(f"Invalid fetch.default_profile: {e}") from e

        # Accounts - each key under [accounts] is an account name
        accounts_data = data.get("accounts", {})
        for name, acct_data in accounts_data.items():
            username = acct_data.get("username", "")
            if not username:
                raise ConfigError(f"Account {name!r} has no username")
            config.accounts[name] = Account(
                name=name,
                username=username,
                service=acct_data.get("keyring_service", ""),
            )

        return config

    def _to_dict(self) -> dict[str, Any]:
        """
        Convert Config to a dictionary for TOML serialization.
        """
        data: dict[str, Any] = {}

        data["connection"] = {
            "command_timeout": self.connection.command_timeout,
            "greeting_timeout": self.connection.greeting_timeout,
            "tag_prefix": self.connection.tag_prefix,
            "wire_trace": self.connection.wire_trace,
        }

        data["codec"] = {
            "max_line_length": self.codec.max_line_length,
            "max_literal_size": self.codec.max_literal_size,
        }

        data["fetch"] = {
            "max_command_length": self.fetch.max_command_length,
            "default_profile": list(self.fetch.default_profile),
        }

        # Accounts
        data["accounts"] = {}
        for name, account in self.accounts.items():
            entry = {"username": account.username}
            if account.service:
                entry["keyring_service"] = account.service
            data["accounts"][name] = entry

        return data


def _number(section: dict[str, Any], key: str, default: float) -> float:
    value = section.get(key, default)
    if isinstance(value, bool) or not isinstance(value, (int, float)) or value < 0:
        raise ConfigError(f"{key} must be a non-negative number, got {value!r}")
    return float(value)


def _positive_int(section: dict[str, Any], key: str, default: int) -> int:
    value = section.get(key, default)
    if isinstance(value, bool) or not isinstance(value, int) or value <= 0:
        raise ConfigError(f"{key} must be a positive integer, got {value!r}")
    return value


# =============================================================================
# Exceptions
# =============================================================================

class ConfigError(Exception):
    """Raised when there's an error loading or parsing configuration."""
    pass


