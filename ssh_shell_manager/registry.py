"""Registry of live sessions keyed by connection id."""
import logging
import threading
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Optional, Tuple

from .datastructures import ConnectionConfig, ConnectionState, ConnectionStatus, RunningCommand
from .errors import AlreadyConnectedError
from .shell import ShellChannel


@dataclass
class Session:
    """Runtime state of one connection: transport, its shell and status."""
    config: ConnectionConfig
    status: ConnectionStatus = field(default_factory=ConnectionStatus.connecting)
    transport: Any = None
    shell: Optional[ShellChannel] = None
    banner: str = ""
    created_at: datetime = field(default_factory=datetime.now)
    active_command: Optional[RunningCommand] = None

    @property
    def id(self) -> str:
        return self.config.id


class SessionRegistry:
    """Thread-safe map of connection id to Session.

    At most one Session exists per id. Every operation holds the lock only for
    the dictionary work; network teardown happens in the caller.
    """

    def __init__(self):
        self._sessions: Dict[str, Session] = {}
        self._lock = threading.Lock()
        self.logger = logging.getLogger('ssh_shell_manager.registry')

    def __len__(self) -> int:
        with self._lock:
            return len(self._sessions)

    def __contains__(self, connection_id: str) -> bool:
        with self._lock:
            return connection_id in self._sessions

    def get(self, connection_id: str) -> Optional[Session]:
        with self._lock:
            return self._sessions.get(connection_id)

    def sessions(self) -> List[Session]:
        with self._lock:
            return list(self._sessions.values())

    def reserve(self, config: ConnectionConfig) -> Tuple[Session, Optional[Session]]:
        """Register a CONNECTING placeholder for ``config.id``.

        Returns the placeholder and the stale session it evicted, if any. The
        caller owns tearing down the evicted session. Raises
        AlreadyConnectedError if the id is connected or being connected.
        """
        with self._lock:
            existing = self._sessions.get(config.id)
            if existing is not None:
                if existing.status.state is ConnectionState.CONNECTED:
                    raise AlreadyConnectedError(f"Connection {config.id} is already connected")
                if existing.status.state is ConnectionState.CONNECTING:
                    raise AlreadyConnectedError(f"Connection {config.id} is already being established")
                self.logger.info(f"Evicting stale session {config.id} (status: {existing.status})")
            placeholder = Session(config=config)
            self._sessions[config.id] = placeholder
            return placeholder, existing

    def activate(self, session: Session, transport: Any, shell: ShellChannel, banner: str = "") -> bool:
        """Mark a reserved session CONNECTED. False if it was removed meanwhile."""
        with self._lock:
            if self._sessions.get(session.id) is not session:
                return False
            session.transport = transport
            session.shell = shell
            session.banner = banner
            session.status = ConnectionStatus.connected()
            return True

    def set_status(self, session: Session, status: ConnectionStatus):
        with self._lock:
            session.status = status

    def discard(self, session: Session) -> bool:
        """Remove ``session`` only if it is still the registered one."""
        with self._lock:
            if self._sessions.get(session.id) is session:
                del self._sessions[session.id]
                return True
            return False

    def remove(self, connection_id: str) -> Optional[Session]:
        with self._lock:
            return self._sessions.pop(connection_id, None)

    def remove_all(self) -> List[Session]:
        with self._lock:
            sessions = list(self._sessions.values())
            self._sessions.clear()
            return sessions
