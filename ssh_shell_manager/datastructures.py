"""Data structures for SSH session management."""
import threading
import uuid
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, List, Optional

from .errors import ConfigInvalidError


DEFAULT_PROMPT_PATTERNS = ["]# ", "$ ", "> ", "# ", "% "]


class AuthMethod(Enum):
    PASSWORD = "password"
    PRIVATE_KEY = "private_key"
    BOTH = "both"


class ConnectionState(Enum):
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    ERROR = "error"


class TerminationReason(Enum):
    """Why the read loop stopped collecting output."""
    PROMPT = "prompt"
    IDLE = "idle"
    EMPTY_READS = "empty_reads"
    WALL_CLOCK = "wall_clock"
    SINGLE_SHOT = "single_shot"
    CHANNEL_CLOSED = "channel_closed"
    READ_ERROR = "read_error"
    TRANSIENT_RETRIES = "transient_retries"
    CANCELLED = "cancelled"


class CommandStatus(Enum):
    RUNNING = "running"
    COMPLETED = "completed"
    CANCELLED = "cancelled"
    FAILED = "failed"


@dataclass(frozen=True)
class ConnectionStatus:
    state: ConnectionState
    reason: Optional[str] = None

    @classmethod
    def connected(cls) -> "ConnectionStatus":
        return cls(ConnectionState.CONNECTED)

    @classmethod
    def connecting(cls) -> "ConnectionStatus":
        return cls(ConnectionState.CONNECTING)

    @classmethod
    def disconnected(cls) -> "ConnectionStatus":
        return cls(ConnectionState.DISCONNECTED)

    @classmethod
    def error(cls, reason: str) -> "ConnectionStatus":
        return cls(ConnectionState.ERROR, reason)

    @property
    def is_connected(self) -> bool:
        return self.state is ConnectionState.CONNECTED

    def __str__(self) -> str:
        if self.reason:
            return f"{self.state.value}: {self.reason}"
        return self.state.value


@dataclass
class PromptConfig:
    """Prompt detection settings for one connection.

    ``max_wait_time`` is in milliseconds.
    """
    patterns: List[str] = field(default_factory=lambda: list(DEFAULT_PROMPT_PATTERNS))
    smart_detection: bool = True
    max_wait_time: int = 10_000
    max_empty_reads: int = 10


@dataclass
class CommandOptions:
    """Per-call overrides for a single command execution.

    Args:
        custom_prompts: Replace the connection's prompt patterns for this call
        timeout: Wall clock limit in milliseconds (defaults to max_wait_time)
        wait_for_prompt: False performs a single read and returns
        debug_output: Log every read at INFO level
        cancel_event: Set it to stop the read loop at its next iteration
    """
    custom_prompts: Optional[List[str]] = None
    timeout: Optional[int] = None
    wait_for_prompt: bool = True
    debug_output: bool = False
    cancel_event: Optional[threading.Event] = None


@dataclass
class ConnectionConfig:
    host: str
    username: str
    port: int = 22
    password: Optional[str] = None
    private_key_path: Optional[str] = None
    private_key_passphrase: Optional[str] = None
    auth_method: AuthMethod = AuthMethod.PASSWORD
    name: Optional[str] = None
    id: str = field(default_factory=lambda: str(uuid.uuid4()))
    prompt_config: PromptConfig = field(default_factory=PromptConfig)
    created_at: datetime = field(default_factory=datetime.now)
    updated_at: datetime = field(default_factory=datetime.now)

    def __post_init__(self):
        if isinstance(self.auth_method, str):
            self.auth_method = AuthMethod(self.auth_method)
        if self.name is None:
            self.name = f"{self.username}@{self.host}:{self.port}"

    @property
    def address(self) -> str:
        return f"{self.username}@{self.host}:{self.port}"

    def touch(self):
        self.updated_at = datetime.now()

    def validate(self):
        """Raise ConfigInvalidError if the config cannot be used to connect."""
        if not self.id:
            raise ConfigInvalidError("connection id must not be empty")
        if not self.name:
            raise ConfigInvalidError("connection name must not be empty")
        if not self.host:
            raise ConfigInvalidError("host must not be empty")
        if not self.username:
            raise ConfigInvalidError("username must not be empty")
        if not self.port:
            raise ConfigInvalidError("port must not be 0")
        if not 0 < self.port < 65536:
            raise ConfigInvalidError(f"port out of range: {self.port}")

        if self.auth_method is AuthMethod.PASSWORD and self.password is None:
            raise ConfigInvalidError("password authentication requires a password")
        if self.auth_method is AuthMethod.PRIVATE_KEY and not self.private_key_path:
            raise ConfigInvalidError("key authentication requires a private key path")
        if (self.auth_method is AuthMethod.BOTH and self.password is None
                and not self.private_key_path):
            raise ConfigInvalidError("combined authentication requires a password or a private key")


@dataclass
class CommandResult:
    output: str
    reason: TerminationReason
    elapsed: float
    bytes_read: int = 0
    reads: int = 0

    @property
    def prompt_detected(self) -> bool:
        return self.reason is TerminationReason.PROMPT


@dataclass
class RunningCommand:
    command_id: str
    connection_id: str
    command: str
    status: CommandStatus
    start_time: datetime
    cancel_event: threading.Event = field(default_factory=threading.Event)
    future: Any = None
    result: Optional[CommandResult] = None
    error: Optional[str] = None
    end_time: Optional[datetime] = None
