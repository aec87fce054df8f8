"""SSH session manager using Paramiko."""
import copy
import logging
import os
import threading
import uuid
from concurrent.futures import ThreadPoolExecutor
from dataclasses import replace
from datetime import datetime
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional

import paramiko

from .command_executor import CommandExecutor
from .credentials import SecretStore
from .datastructures import (
    AuthMethod,
    CommandOptions,
    CommandResult,
    CommandStatus,
    ConnectionConfig,
    ConnectionStatus,
    RunningCommand,
    TerminationReason,
)
from .errors import (
    ChannelUnavailableError,
    CommandNotFoundError,
    CommandSendError,
    ConnectionNotFoundError,
    NotConnectedError,
    SSHShellError,
    TransportError,
)
from .registry import Session, SessionRegistry
from .settings import Settings
from .shell import ShellChannel
from .transport import TransportFactory, authenticate, load_private_key


LOG_FORMAT = '%(asctime)s - [%(threadName)s] - %(name)s - %(levelname)s - %(message)s'


def configure_logging(settings: Settings) -> logging.Logger:
    """Send package logs to a file only; stdout belongs to the MCP transport."""
    logger = logging.getLogger('ssh_shell_manager')
    logger.setLevel(settings.log_level)
    logger.propagate = False

    log_dir = Path(settings.log_dir)
    log_dir.mkdir(exist_ok=True, parents=True)
    log_file = os.path.abspath(str(log_dir / 'ssh_shell_manager.log'))

    for handler in logger.handlers:
        if isinstance(handler, logging.FileHandler) and handler.baseFilename == log_file:
            return logger

    file_handler = logging.FileHandler(log_file)
    file_handler.setFormatter(logging.Formatter(LOG_FORMAT))
    logger.addHandler(file_handler)
    return logger


class SessionManager:
    """Manages persistent SSH shell sessions keyed by connection id.

    Every collaborator can be injected, so several isolated managers can run
    side by side (tests build them around fake transports).
    """

    # Completed async commands kept for status queries
    MAX_COMPLETED_COMMANDS = 100

    def __init__(self, registry: Optional[SessionRegistry] = None,
                 transport_factory: Optional[TransportFactory] = None,
                 executor: Optional[CommandExecutor] = None,
                 secret_store: Optional[SecretStore] = None,
                 settings: Optional[Settings] = None,
                 key_loader: Callable[..., paramiko.PKey] = load_private_key):
        self.settings = settings or Settings.from_env()
        self.logger = configure_logging(self.settings).getChild('manager')

        self.registry = registry if registry is not None else SessionRegistry()
        self.transport_factory = transport_factory or TransportFactory(
            connect_timeout=self.settings.connect_timeout,
            auth_timeout=self.settings.auth_timeout,
            keepalive_interval=self.settings.keepalive_interval,
            strict_host_keys=self.settings.strict_host_keys,
            known_hosts=self.settings.known_hosts,
        )
        self.executor = executor or CommandExecutor(
            idle_timeout=self.settings.idle_timeout,
            max_transient_retries=self.settings.max_transient_retries,
        )
        self.secret_store = secret_store
        self._key_loader = key_loader

        self._commands: Dict[str, RunningCommand] = {}
        self._commands_lock = threading.Lock()
        self._pool = ThreadPoolExecutor(max_workers=self.settings.max_workers, thread_name_prefix="ssh_cmd")
        self._disconnect_listeners: List[Callable[[str], None]] = []
        self.logger.info("SessionManager initialized")

    # ------------------------------------------------------------------
    # Connection lifecycle
    # ------------------------------------------------------------------

    def connect(self, config: ConnectionConfig) -> str:
        """Open a connection and its shell; return the connection id.

        Raises ConfigInvalidError before any network I/O, AlreadyConnectedError
        if the id is live, TransportError or AuthFailedError when the
        connection cannot be established. A stale session under the same id is
        torn down and replaced.
        """
        logger = self.logger.getChild('connect')
        config = copy.deepcopy(config)
        logger.info(f"[CONNECT] id={config.id} target={config.address} auth={config.auth_method.value}")

        self._fill_secret(config)
        try:
            config.validate()
        except SSHShellError as exc:
            logger.warning(f"[CONNECT_INVALID] id={config.id}: {exc}")
            raise

        placeholder, stale = self.registry.reserve(config)
        if stale is not None:
            logger.info(f"[CONNECT_REPLACE] Tearing down stale session {config.id} ({stale.status})")
            self._teardown(stale)

        transport = None
        shell = None
        connected = False
        try:
            transport = self.transport_factory.open(config)
            authenticate(transport, config, key_loader=self._key_loader)
            shell = ShellChannel.open(
                transport,
                term=self.settings.term,
                width=self.settings.pty_width,
                height=self.settings.pty_height,
                timeout=self.settings.connect_timeout,
            )
            startup = self.executor.read_output(
                shell, config.prompt_config, CommandOptions(timeout=self.settings.startup_timeout)
            )
            logger.debug(f"[SHELL_BANNER] {startup.reason.value}: {startup.output[-200:]!r}")
            if startup.reason is TerminationReason.CHANNEL_CLOSED:
                raise TransportError(f"Shell on {config.address} closed during login: {startup.output[-200:]!r}")
            connected = self.registry.activate(placeholder, transport, shell, startup.output)
        except SSHShellError as exc:
            logger.error(f"[CONNECT_FAILED] {config.address}: {type(exc).__name__}: {exc}")
            raise
        except (paramiko.SSHException, OSError, EOFError) as exc:
            logger.error(f"[CONNECT_FAILED] {config.address}: {type(exc).__name__}: {exc}")
            raise TransportError(f"Unable to open a shell on {config.address}: {exc}") from exc
        finally:
            if not connected:
                self.registry.discard(placeholder)
                self._close_handles(config.id, shell, transport)

        if not connected:
            raise ConnectionNotFoundError(f"Connection {config.id} was removed while connecting")

        logger.info(f"[CONNECT_OK] {config.address} id={config.id}, sessions={len(self.registry)}")
        return config.id

    def disconnect(self, connection_id: str):
        """Remove the session and close its shell and transport.

        Close failures are logged; the session is gone either way.
        """
        logger = self.logger.getChild('disconnect')
        session = self.registry.remove(connection_id)
        if session is None:
            logger.warning(f"[DISCONNECT_UNKNOWN] {connection_id}")
            raise ConnectionNotFoundError(f"Connection {connection_id} does not exist")
        self._teardown(session)
        self._notify_disconnect(connection_id)
        logger.info(f"[DISCONNECT_OK] {connection_id}")

    def disconnect_all(self):
        logger = self.logger.getChild('disconnect_all')
        sessions = self.registry.remove_all()
        logger.info(f"Closing {len(sessions)} sessions")
        for session in sessions:
            try:
                self._teardown(session)
                self._notify_disconnect(session.id)
            except Exception as exc:
                logger.error(f"Error tearing down {session.id}: {exc}", exc_info=True)
        logger.info("All sessions closed.")

    def reconnect(self, config: ConnectionConfig) -> str:
        """Drop any existing session for ``config.id`` and connect again."""
        try:
            self.disconnect(config.id)
        except ConnectionNotFoundError:
            self.logger.getChild('reconnect').debug(f"No existing session for {config.id}")
        return self.connect(config)

    def test_connection(self, config: ConnectionConfig) -> str:
        """Connect with a throwaway id and disconnect again."""
        probe = replace(config, id=str(uuid.uuid4()), prompt_config=copy.deepcopy(config.prompt_config))
        connection_id = self.connect(probe)
        try:
            self.disconnect(connection_id)
        except ConnectionNotFoundError:
            self.logger.getChild('test_connection').warning(f"Probe {connection_id} vanished before disconnect")
        return f"Connection test succeeded: {config.address}"

    def check_health(self, connection_id: str) -> bool:
        """True if the session exists and its transport is still authenticated."""
        session = self.registry.get(connection_id)
        if session is None or session.transport is None:
            return False
        healthy = bool(session.transport.is_authenticated())
        if not healthy:
            self.logger.getChild('health').warning(f"Session {connection_id} is no longer authenticated")
        return healthy

    def get_status(self, connection_id: str) -> ConnectionStatus:
        session = self.registry.get(connection_id)
        if session is None:
            raise ConnectionNotFoundError(f"Connection {connection_id} does not exist")
        return session.status

    def list_connections(self) -> List[ConnectionConfig]:
        return [copy.deepcopy(s.config) for s in self.registry.sessions()]

    def list_connected(self) -> List[ConnectionConfig]:
        return [copy.deepcopy(s.config) for s in self.registry.sessions() if s.status.is_connected]

    def connected_count(self) -> int:
        return sum(1 for s in self.registry.sessions() if s.status.is_connected)

    def add_disconnect_listener(self, callback: Callable[[str], None]):
        """Call ``callback(connection_id)`` after a session is disconnected."""
        self._disconnect_listeners.append(callback)

    def shutdown(self):
        self.disconnect_all()
        self.logger.info("Shutting down command pool")
        self._pool.shutdown(wait=False, cancel_futures=True)

    # ------------------------------------------------------------------
    # Command execution
    # ------------------------------------------------------------------

    def execute_command(self, connection_id: str, command: str,
                        options: Optional[CommandOptions] = None) -> str:
        """Run ``command`` on the connection's shell and return the raw output."""
        return self.execute_command_result(connection_id, command, options).output

    def execute_command_result(self, connection_id: str, command: str,
                               options: Optional[CommandOptions] = None) -> CommandResult:
        running = self._new_running_command(connection_id, command, options)
        return self._run(running, options)

    def execute_command_async(self, connection_id: str, command: str,
                              options: Optional[CommandOptions] = None) -> str:
        """Queue ``command`` on the worker pool and return its command id."""
        logger = self.logger.getChild('execute_async')
        self._require_session(connection_id)
        running = self._new_running_command(connection_id, command, options)
        with self._commands_lock:
            self._commands[running.command_id] = running
        running.future = self._pool.submit(self._async_worker, running, options)
        logger.info(f"[ASYNC_SUBMITTED] command_id={running.command_id} connection={connection_id}")
        return running.command_id

    def get_command_status(self, command_id: str) -> Dict[str, Any]:
        with self._commands_lock:
            cmd = self._commands.get(command_id)
            if cmd is None:
                raise CommandNotFoundError(f"Command {command_id} not found")
            return {
                "command_id": cmd.command_id,
                "connection_id": cmd.connection_id,
                "command": cmd.command,
                "status": cmd.status.value,
                "output": cmd.result.output if cmd.result else "",
                "reason": cmd.result.reason.value if cmd.result else None,
                "error": cmd.error,
                "start_time": cmd.start_time.isoformat(),
                "end_time": cmd.end_time.isoformat() if cmd.end_time else None,
            }

    def cancel_command(self, command_id: str) -> bool:
        """Ask a running async command to stop reading. False if it is not running."""
        with self._commands_lock:
            cmd = self._commands.get(command_id)
            if cmd is None:
                raise CommandNotFoundError(f"Command {command_id} not found")
            if cmd.status is not CommandStatus.RUNNING:
                return False
            cmd.cancel_event.set()
        self.logger.getChild('cancel').info(f"Cancellation requested for {command_id}")
        return True

    def list_running_commands(self) -> List[Dict[str, Any]]:
        with self._commands_lock:
            return [
                {
                    "command_id": cmd.command_id,
                    "connection_id": cmd.connection_id,
                    "command": cmd.command,
                    "start_time": cmd.start_time.isoformat(),
                }
                for cmd in self._commands.values()
                if cmd.status is CommandStatus.RUNNING
            ]

    def _run(self, running: RunningCommand, options: Optional[CommandOptions]) -> CommandResult:
        logger = self.logger.getChild('execute')
        session = self._require_session(running.connection_id)
        options = replace(options or CommandOptions(), cancel_event=running.cancel_event)
        shell = session.shell
        if shell is None:
            raise NotConnectedError(f"Connection {session.id} closed before the command was sent")

        with shell.lock:
            if not session.status.is_connected or session.shell is not shell:
                raise NotConnectedError(f"Connection {session.id} closed while the command was queued")
            session.active_command = running
            try:
                result = self.executor.execute(shell, running.command, session.config.prompt_config, options)
            except CommandSendError as exc:
                self.registry.set_status(session, ConnectionStatus.error(str(exc)))
                raise
            finally:
                session.active_command = None

        if result.reason is TerminationReason.CHANNEL_CLOSED:
            logger.warning(f"[SHELL_LOST] {session.id}: marking session as errored")
            self.registry.set_status(session, ConnectionStatus.error("shell channel closed"))
        logger.info(f"[EXEC_DONE] {session.id} reason={result.reason.value} "
                    f"bytes={result.bytes_read} elapsed={result.elapsed:.2f}s")
        return result

    def _async_worker(self, running: RunningCommand, options: Optional[CommandOptions]):
        logger = self.logger.getChild('async_worker')
        try:
            result = self._run(running, options)
        except SSHShellError as exc:
            logger.error(f"[WORKER_FAILED] {running.command_id}: {exc}")
            with self._commands_lock:
                running.status = CommandStatus.FAILED
                running.error = str(exc)
        except Exception as exc:
            logger.error(f"[WORKER_ERROR] {running.command_id}: {exc}", exc_info=True)
            with self._commands_lock:
                running.status = CommandStatus.FAILED
                running.error = str(exc)
        else:
            with self._commands_lock:
                running.result = result
                if result.reason is TerminationReason.CANCELLED:
                    running.status = CommandStatus.CANCELLED
                else:
                    running.status = CommandStatus.COMPLETED
        finally:
            with self._commands_lock:
                running.end_time = datetime.now()
            self._cleanup_old_commands()

    def _new_running_command(self, connection_id: str, command: str,
                             options: Optional[CommandOptions]) -> RunningCommand:
        cancel_event = options.cancel_event if options and options.cancel_event else threading.Event()
        return RunningCommand(
            command_id=str(uuid.uuid4()),
            connection_id=connection_id,
            command=command,
            status=CommandStatus.RUNNING,
            start_time=datetime.now(),
            cancel_event=cancel_event,
        )

    def _require_session(self, connection_id: str) -> Session:
        session = self.registry.get(connection_id)
        if session is None:
            raise ConnectionNotFoundError(f"Connection {connection_id} does not exist")
        if not session.status.is_connected:
            raise NotConnectedError(f"Connection {connection_id} is not connected ({session.status})")
        if session.shell is None:
            raise ChannelUnavailableError(f"Connection {connection_id} has no shell channel")
        return session

    def _cleanup_old_commands(self):
        """Remove old finished commands, keeping only recent ones."""
        with self._commands_lock:
            finished = [
                (cmd_id, cmd) for cmd_id, cmd in self._commands.items()
                if cmd.status is not CommandStatus.RUNNING
            ]
            if len(finished) <= self.MAX_COMPLETED_COMMANDS:
                return
            finished.sort(key=lambda x: x[1].end_time or datetime.min)
            for cmd_id, _ in finished[:-self.MAX_COMPLETED_COMMANDS]:
                del self._commands[cmd_id]

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _fill_secret(self, config: ConnectionConfig):
        if self.secret_store is None or config.password is not None:
            return
        if config.auth_method is AuthMethod.PRIVATE_KEY:
            return
        try:
            config.password = self.secret_store.load_secret(config.id)
            self.logger.getChild('credentials').debug(f"Loaded stored secret for {config.id}")
        except KeyError:
            self.logger.getChild('credentials').debug(f"No stored secret for {config.id}")

    def _teardown(self, session: Session):
        active = session.active_command
        if active is not None:
            active.cancel_event.set()
        self._close_handles(session.id, session.shell, session.transport)
        session.shell = None
        session.transport = None
        session.status = ConnectionStatus.disconnected()

    def _close_handles(self, connection_id: str, shell: Optional[ShellChannel], transport: Any):
        logger = self.logger.getChild('close')
        if shell is not None:
            try:
                shell.close()
            except Exception as exc:
                logger.warning(f"Error closing shell for {connection_id}: {exc}")
        if transport is not None:
            try:
                transport.close()
            except Exception as exc:
                logger.warning(f"Error closing transport for {connection_id}: {exc}")

    def _notify_disconnect(self, connection_id: str):
        for callback in list(self._disconnect_listeners):
            try:
                callback(connection_id)
            except Exception as exc:
                self.logger.getChild('listeners').warning(f"Disconnect listener failed for {connection_id}: {exc}")
