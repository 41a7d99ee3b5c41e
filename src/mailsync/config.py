# =============================================================================
# Configuration Management
# =============================================================================
# Handles loading, saving, and validating mailsync configuration.
#
# XDG Base Directory Compliance (https://specifications.freedesktop.org/basedir-spec/):
#   - Config:  $XDG_CONFIG_HOME/mailsync/  (default: ~/.config/mailsync/)
#   - Data:    $XDG_DATA_HOME/mailsync/    (default: ~/.local/share/mailsync/)
#   - State:   $XDG_STATE_HOME/mailsync/   (default: ~/.local/state/mailsync/)
#
# Files:
#   - config.toml: User configuration (accounts, sync tuning)
#   - mailsync.db: SQLite message cache (in data directory)
#   - mailsync.log: Optional log file (in state directory)
# =============================================================================

import os
import tomllib  # Built into Python 3.11+
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import tomli_w  # For writing TOML (tomllib is read-only)

from mailsync.core import Account


# =============================================================================
# XDG Directory Management
# =============================================================================

# Application identifier used in all XDG paths
APP_NAME = "mailsync"


def _xdg_home(variable: str, fallback: Path) -> Path:
    """$variable if it is set and non-empty, else `fallback`, plus the app directory."""
    value = os.environ.get(variable)
    return (Path(value) if value else fallback) / APP_NAME


def get_xdg_config_home() -> Path:
    """~/.config/mailsync/ by default; holds config.toml."""
    return _xdg_home("XDG_CONFIG_HOME", Path.home() / ".config")


def get_xdg_data_home() -> Path:
    """~/.local/share/mailsync/ by default; holds the cache database."""
    return _xdg_home("XDG_DATA_HOME", Path.home() / ".local" / "share")


def get_xdg_state_home() -> Path:
    """~/.local/state/mailsync/ by default; holds the optional log file."""
    return _xdg_home("XDG_STATE_HOME", Path.home() / ".local" / "state")


# =============================================================================
# Configuration Data Structures
# =============================================================================

@dataclass
class SyncConfig:
    """
    Configuration for cache freshness and live fetches.

    Attributes:
        fresh_seconds: A cache younger than this is served with no refresh.
        stale_seconds: A cache older than this is served and refreshed in
                       the background.
        default_limit: Messages returned by a list when none is requested.
        connect_timeout: TCP/TLS + greeting bound (seconds).
        auth_timeout: Login bound (seconds).
        fetch_timeout: Bound for every fetch and search (seconds).
        disconnect_timeout: LOGOUT bound before the socket is dropped.
        recent_buffer_max: Upper bound of the list over-fetch.
        recent_buffer_ratio: Over-fetch as a fraction of the limit.
        catch_up_days: SINCE window used by incremental catch-up.
        catch_up_limit: Most messages one catch-up imports.
        cold_start_limit: Messages fetched when the cache is empty.
        search_live_limit: Most server-side search hits merged into results.
    """
    fresh_seconds: float = 30.0
    stale_seconds: float = 30.0
    default_limit: int = 30

    connect_timeout: float = 10.0
    auth_timeout: float = 5.0
    fetch_timeout: float = 15.0
    disconnect_timeout: float = 5.0

    recent_buffer_max: int = 10
    recent_buffer_ratio: float = 0.5

    catch_up_days: int = 1
    catch_up_limit: int = 50
    cold_start_limit: int = 30
    search_live_limit: int = 20


# Hosts known to support IDLE even when their capability list can't be read
DEFAULT_IDLE_HOSTS = ["gmail", "outlook", "office365"]


@dataclass
class IdleConfig:
    """
    Configuration for the IDLE monitor.

    Attributes:
        enabled: Start IDLE monitoring for accounts when asked to watch.
        refresh_minutes: Restart the IDLE session after this long
                         (RFC 2177 asks for less than 29 minutes).
        reconnect_delay: Backoff step; attempt N waits N * this (seconds).
        max_reconnect_attempts: Give up and report a fatal error after this.
        poll_interval: Seconds between checks when IDLE is unsupported.
        resume_delay: Pause before re-entering IDLE after a manual refresh.
        assume_idle_hosts: Host substrings assumed to support IDLE when
                           capability detection is inconclusive. Set to an
                           empty list to disable the heuristic.
    """
    enabled: bool = True
    refresh_minutes: float = 28.0
    reconnect_delay: float = 5.0
    max_reconnect_attempts: int = 5
    poll_interval: float = 60.0
    resume_delay: float = 1.0
    assume_idle_hosts: list[str] = field(default_factory=lambda: list(DEFAULT_IDLE_HOSTS))

    @property
    def refresh_seconds(self) -> float:
        return self.refresh_minutes * 60


@dataclass
class CacheConfig:
    """
    Configuration for the local message cache.

    Attributes:
        retention_days: `clean` removes cached messages older than this.
        max_attachment_mb: Attachments larger than this are refused.
        database: Override for the SQLite path ("" = XDG data directory).
    """
    retention_days: int = 30
    max_attachment_mb: int = 25
    database: str = ""

    @property
    def max_attachment_bytes(self) -> int:
        return self.max_attachment_mb * 1024 * 1024


@dataclass
class LoggingConfig:
    """
    Configuration for logging.

    Attributes:
        level: Root level name ("DEBUG", "INFO", "WARNING"...).
        log_to_file: Also write to mailsync.log in the state directory.
    """
    level: str = "INFO"
    log_to_file: bool = False


@dataclass
class Config:
    """
    Main configuration container for mailsync.

    Attributes:
        accounts: Configured email accounts, keyed by name.
        sync: Freshness thresholds, timeouts and fetch sizing.
        idle: IDLE monitor tuning.
        cache: Cache retention and limits.
        logging: Log level and destination.

    Usage:
        >>> config = Config.load()
        >>> print(config.accounts['personal'].email)
        'user@example.com'
    """
    # Account configurations (name -> Account)
    accounts: dict[str, Account] = field(default_factory=dict)

    # Subsystem configurations
    sync: SyncConfig = field(default_factory=SyncConfig)
    idle: IdleConfig = field(default_factory=IdleConfig)
    cache: CacheConfig = field(default_factory=CacheConfig)
    logging: LoggingConfig = field(default_factory=LoggingConfig)

    # -------------------------------------------------------------------------
    # File Paths
    # -------------------------------------------------------------------------

    @staticmethod
    def config_file_path() -> Path:
        """Returns the path to the main config file."""
        return get_xdg_config_home() / "config.toml"

    def database_path(self) -> Path:
        """Returns the path to the SQLite cache database."""
        if self.cache.database:
            return Path(self.cache.database).expanduser()
        return get_xdg_data_home() / "mailsync.db"

    @staticmethod
    def log_file_path() -> Path:
        """Returns the path to the log file."""
        return get_xdg_state_home() / "mailsync.log"

    # -------------------------------------------------------------------------
    # Loading and Saving
    # -------------------------------------------------------------------------

    @classmethod
    def load(cls, path: Path | None = None) -> "Config":
        """
        Load configuration from the config file.

        If the config file doesn't exist, returns default configuration.

        Args:
            path: Config file to read. Defaults to the XDG location.

        Returns:
            Loaded Config object.

        Raises:
            ConfigError: If the config file exists but is invalid.
        """
        config_path = Path(path) if path else cls.config_file_path()

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

        Creates the parent directory if it doesn't exist.
        """
        config_path = Path(path) if path else self.config_file_path()
        config_path.parent.mkdir(parents=True, exist_ok=True)

        with open(config_path, "wb") as f:
            tomli_w.dump(self._to_dict(), f)

    @classmethod
    def _from_dict(cls, data: dict[str, Any]) -> "Config":
        """
        Create a Config object from a dictionary (parsed TOML).

        This handles the nested structure of the config file and
        converts account entries into Account objects.
        """
        config = cls()
        defaults_sync = SyncConfig()
        defaults_idle = IdleConfig()

        # Sync settings
        sync = data.get("sync", {})
        config.sync = SyncConfig(
            fresh_seconds=sync.get("fresh_seconds", defaults_sync.fresh_seconds),
            stale_seconds=sync.get("stale_seconds", defaults_sync.stale_seconds),
            default_limit=sync.get("default_limit", defaults_sync.default_limit),
            connect_timeout=sync.get("connect_timeout", defaults_sync.connect_timeout),
            auth_timeout=sync.get("auth_timeout", defaults_sync.auth_timeout),
            fetch_timeout=sync.get("fetch_timeout", defaults_sync.fetch_timeout),
            disconnect_timeout=sync.get("disconnect_timeout", defaults_sync.disconnect_timeout),
            recent_buffer_max=sync.get("recent_buffer_max", defaults_sync.recent_buffer_max),
            recent_buffer_ratio=sync.get("recent_buffer_ratio", defaults_sync.recent_buffer_ratio),
            catch_up_days=sync.get("catch_up_days", defaults_sync.catch_up_days),
            catch_up_limit=sync.get("catch_up_limit", defaults_sync.catch_up_limit),
            cold_start_limit=sync.get("cold_start_limit", defaults_sync.cold_start_limit),
            search_live_limit=sync.get("search_live_limit", defaults_sync.search_live_limit),
        )

        if config.sync.stale_seconds < config.sync.fresh_seconds:
            raise ConfigError("sync.stale_seconds must not be lower than sync.fresh_seconds")

        # IDLE settings
        idle = data.get("idle", {})
        config.idle = IdleConfig(
            enabled=idle.get("enabled", defaults_idle.enabled),
            refresh_minutes=idle.get("refresh_minutes", defaults_idle.refresh_minutes),
            reconnect_delay=idle.get("reconnect_delay", defaults_idle.reconnect_delay),
            max_reconnect_attempts=idle.get(
                "max_reconnect_attempts", defaults_idle.max_reconnect_attempts
            ),
            poll_interval=idle.get("poll_interval", defaults_idle.poll_interval),
            resume_delay=idle.get("resume_delay", defaults_idle.resume_delay),
            assume_idle_hosts=list(idle.get("assume_idle_hosts", defaults_idle.assume_idle_hosts)),
        )

        # Cache settings
        cache = data.get("cache", {})
        config.cache = CacheConfig(
            retention_days=cache.get("retention_days", 30),
            max_attachment_mb=cache.get("max_attachment_mb", 25),
            database=cache.get("database", ""),
        )

        # Logging settings
        log = data.get("logging", {})
        config.logging = LoggingConfig(
            level=str(log.get("level", "INFO")).upper(),
            log_to_file=log.get("log_to_file", False),
        )

        # Accounts - each key under [accounts] is an account name
        accounts_data = data.get("accounts", {})
        for name, acct_data in accounts_data.items():
            if not acct_data.get("email"):
                raise ConfigError(f"Account '{name}' has no email address")
            config.accounts[name] = Account(
                name=name,
                email=acct_data["email"],
                username=acct_data.get("username", ""),
                display_name=acct_data.get("display_name", ""),
                imap_host=acct_data.get("imap_host", ""),
                imap_port=acct_data.get("imap_port", 993),
                imap_security=acct_data.get("imap_security", "ssl"),
                mailbox=acct_data.get("mailbox", "INBOX"),
                enabled=acct_data.get("enabled", True),
            )

        return config

    def _to_dict(self) -> dict[str, Any]:
        """
        Convert Config to a dictionary for TOML serialization.
        """
        data: dict[str, Any] = {}

        # Sync settings
        data["sync"] = {
            "fresh_seconds": self.sync.fresh_seconds,
            "stale_seconds": self.sync.stale_seconds,
            "default_limit": self.sync.default_limit,
            "connect_timeout": self.sync.connect_timeout,
            "auth_timeout": self.sync.auth_timeout,
            "fetch_timeout": self.sync.fetch_timeout,
            "disconnect_timeout": self.sync.disconnect_timeout,
            "recent_buffer_max": self.sync.recent_buffer_max,
            "recent_buffer_ratio": self.sync.recent_buffer_ratio,
            "catch_up_days": self.sync.catch_up_days,
            "catch_up_limit": self.sync.catch_up_limit,
            "cold_start_limit": self.sync.cold_start_limit,
            "search_live_limit": self.sync.search_live_limit,
        }

        # IDLE settings
        data["idle"] = {
            "enabled": self.idle.enabled,
            "refresh_minutes": self.idle.refresh_minutes,
            "reconnect_delay": self.idle.reconnect_delay,
            "max_reconnect_attempts": self.idle.max_reconnect_attempts,
            "poll_interval": self.idle.poll_interval,
            "resume_delay": self.idle.resume_delay,
            "assume_idle_hosts": list(self.idle.assume_idle_hosts),
        }

        # Cache settings
        data["cache"] = {
            "retention_days": self.cache.retention_days,
            "max_attachment_mb": self.cache.max_attachment_mb,
            "database": self.cache.database,
        }

        # Logging settings
        data["logging"] = {
            "level": self.logging.level,
            "log_to_file": self.logging.log_to_file,
        }

        # Accounts
        data["accounts"] = {}
        for name, account in self.accounts.items():
            data["accounts"][name] = {
                "email": account.email,
                "username": account.username,
                "display_name": account.display_name,
                "imap_host": account.imap_host,
                "imap_port": account.imap_port,
                "imap_security": account.imap_security,
                "mailbox": account.mailbox,
                "enabled": account.enabled,
            }

        return data


# =============================================================================
# Exceptions
# =============================================================================

class ConfigError(Exception):
    """Raised when there's an error loading or parsing configuration."""
    pass


# =============================================================================
# Utility Functions
# =============================================================================

def print_paths(config: Config | None = None) -> None:
    """
    Print where mailsync reads and writes its files (`mailsync --paths`).
    """
    config = config or Config()
    print(f"Config:  {get_xdg_config_home()}")
    print(f"Data:    {get_xdg_data_home()}")
    print(f"State:   {get_xdg_state_home()}")
    print()
    print(f"Config file:  {Config.config_file_path()}")
    print(f"Database:     {config.database_path()}")
    print(f"Log file:     {Config.log_file_path()}")
