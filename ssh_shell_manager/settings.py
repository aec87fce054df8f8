"""Runtime settings read from SSH_SHELL_* environment variables."""
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Optional


ENV_PREFIX = "SSH_SHELL_"


def _env(name: str) -> Optional[str]:
    return os.environ.get(ENV_PREFIX + name)


def _env_float(name: str, default: float) -> float:
    value = _env(name)
    if value is None:
        return default
    try:
        return float(value)
    except ValueError:
        return default


def _env_int(name: str, default: int) -> int:
    value = _env(name)
    if value is None:
        return default
    try:
        return int(value)
    except ValueError:
        return default


def _env_flag(name: str, default: bool) -> bool:
    value = _env(name)
    if value is None:
        return default
    s = value.strip().lower()
    if s in ("1", "true", "yes", "on"):
        return True
    if s in ("0", "false", "no", "off"):
        return False
    return default


@dataclass
class Settings:
    log_dir: str = "/tmp/ssh_shell_manager_logs"
    log_level: str = "DEBUG"

    # Seconds
    connect_timeout: float = 30.0
    auth_timeout: float = 30.0
    keepalive_interval: int = 30
    idle_timeout: float = 1.0

    # Milliseconds to wait for the login banner and first prompt
    startup_timeout: int = 2000

    max_transient_retries: int = 50
    max_workers: int = 10

    term: str = "xterm"
    pty_width: int = 200
    pty_height: int = 50

    strict_host_keys: bool = False
    known_hosts: str = field(default_factory=lambda: str(Path.home() / ".ssh" / "known_hosts"))

    @classmethod
    def from_env(cls, **overrides: Any) -> "Settings":
        """Build settings from the environment; keyword overrides win."""
        defaults = cls()
        settings = cls(
            log_dir=_env("LOG_DIR") or defaults.log_dir,
            log_level=(_env("LOG_LEVEL") or defaults.log_level).upper(),
            connect_timeout=_env_float("CONNECT_TIMEOUT", defaults.connect_timeout),
            auth_timeout=_env_float("AUTH_TIMEOUT", defaults.auth_timeout),
            keepalive_interval=_env_int("KEEPALIVE_INTERVAL", defaults.keepalive_interval),
            idle_timeout=_env_float("IDLE_TIMEOUT", defaults.idle_timeout),
            startup_timeout=_env_int("STARTUP_TIMEOUT", defaults.startup_timeout),
            max_transient_retries=_env_int("MAX_TRANSIENT_RETRIES", defaults.max_transient_retries),
            max_workers=_env_int("MAX_WORKERS", defaults.max_workers),
            term=_env("TERM") or defaults.term,
            pty_width=_env_int("PTY_WIDTH", defaults.pty_width),
            pty_height=_env_int("PTY_HEIGHT", defaults.pty_height),
            strict_host_keys=_env_flag("STRICT_HOST_KEYS", defaults.strict_host_keys),
            known_hosts=os.path.expanduser(_env("KNOWN_HOSTS") or defaults.known_hosts),
        )
        for key, value in overrides.items():
            if not hasattr(settings, key):
                raise TypeError(f"Unknown setting: {key}")
            setattr(settings, key, value)
        return settings
