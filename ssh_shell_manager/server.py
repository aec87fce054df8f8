"""MCP server for persistent SSH shell sessions."""
import json
from typing import Callable, List, Optional

from fastmcp import FastMCP

from .credentials import EnvSecretStore
from .datastructures import CommandOptions, CommandResult, ConnectionConfig, PromptConfig, TerminationReason
from .errors import SSHShellError
from .hardware import HardwareService
from .session_manager import SessionManager


# Initialize the MCP server
mcp = FastMCP("ssh-shell-manager")
session_manager = SessionManager(secret_store=EnvSecretStore())
hardware_service = HardwareService(session_manager)


def build_config(host: str, username: str, port: int = 22, password: Optional[str] = None,
                 private_key_path: Optional[str] = None, private_key_passphrase: Optional[str] = None,
                 auth_method: str = "password", name: Optional[str] = None,
                 connection_id: Optional[str] = None, prompt_patterns: Optional[List[str]] = None,
                 smart_detection: bool = True, max_wait_time: int = 10_000) -> ConnectionConfig:
    """Build a ConnectionConfig from tool arguments.

    Raises ValueError for an unknown ``auth_method``.
    """
    prompt_config = PromptConfig(smart_detection=smart_detection, max_wait_time=max_wait_time)
    if prompt_patterns:
        prompt_config.patterns = list(prompt_patterns)
    config = ConnectionConfig(
        host=host,
        username=username,
        port=port,
        password=password,
        private_key_path=private_key_path,
        private_key_passphrase=private_key_passphrase,
        auth_method=auth_method,
        name=name,
        prompt_config=prompt_config,
    )
    if connection_id:
        config.id = connection_id
    return config


def format_error(exc: Exception) -> str:
    code = getattr(exc, "code", "invalid_argument")
    return f"Error [{code}]: {exc}"


def format_result(result: CommandResult) -> str:
    text = result.output
    if result.reason is not TerminationReason.PROMPT:
        text += f"\n\n[Output ended: {result.reason.value} after {result.elapsed:.1f}s]"
    return text


def _guard(action: Callable[[], str]) -> str:
    try:
        return action()
    except (SSHShellError, ValueError) as exc:
        return format_error(exc)


@mcp.tool()
def connect(
    host: str,
    username: str,
    port: int = 22,
    password: Optional[str] = None,
    private_key_path: Optional[str] = None,
    private_key_passphrase: Optional[str] = None,
    auth_method: str = "password",
    name: Optional[str] = None,
    connection_id: Optional[str] = None,
    prompt_patterns: Optional[List[str]] = None,
    smart_detection: bool = True,
    max_wait_time: int = 10000,
) -> str:
    """Open a persistent SSH shell session.

    When no password is given for password authentication, the server looks
    for it in the OVRD_<connection_id>_PASSWORD environment variable.

    Args:
        host: Hostname or IP address
        username: SSH username
        port: SSH port (default: 22)
        password: Password (optional with key authentication)
        private_key_path: Path to a private key file
        private_key_passphrase: Passphrase of an encrypted private key
        auth_method: "password", "private_key" or "both" (password first, then key)
        name: Display name (default: user@host:port)
        connection_id: Reuse a fixed id instead of a generated one
        prompt_patterns: Prompt suffixes that mark the end of command output
        smart_detection: Only match prompts on the last line of output
        max_wait_time: Per-command wall clock limit in milliseconds
    """
    def action():
        config = build_config(
            host, username, port, password, private_key_path, private_key_passphrase,
            auth_method, name, connection_id, prompt_patterns, smart_detection, max_wait_time,
        )
        cid = session_manager.connect(config)
        return f"Connected: {config.address}\nConnection ID: {cid}"
    return _guard(action)


@mcp.tool()
def disconnect(connection_id: str) -> str:
    """Close a session and its shell."""
    def action():
        session_manager.disconnect(connection_id)
        return f"Disconnected: {connection_id}"
    return _guard(action)


@mcp.tool()
def disconnect_all() -> str:
    """Close every session."""
    session_manager.disconnect_all()
    return "All SSH sessions closed"


@mcp.tool()
def reconnect(
    connection_id: str,
    password: Optional[str] = None,
    private_key_passphrase: Optional[str] = None,
) -> str:
    """Tear down a session and connect again with its stored settings."""
    def action():
        configs = {c.id: c for c in session_manager.list_connections()}
        config = configs.get(connection_id)
        if config is None:
            return format_error(ValueError(f"Connection {connection_id} does not exist"))
        if password is not None:
            config.password = password
        if private_key_passphrase is not None:
            config.private_key_passphrase = private_key_passphrase
        config.touch()
        session_manager.reconnect(config)
        return f"Reconnected: {config.address}\nConnection ID: {connection_id}"
    return _guard(action)


@mcp.tool()
def test_connection(
    host: str,
    username: str,
    port: int = 22,
    password: Optional[str] = None,
    private_key_path: Optional[str] = None,
    private_key_passphrase: Optional[str] = None,
    auth_method: str = "password",
) -> str:
    """Check that a host accepts the credentials, without keeping a session."""
    def action():
        config = build_config(host, username, port, password, private_key_path,
                              private_key_passphrase, auth_method)
        return session_manager.test_connection(config)
    return _guard(action)


@mcp.tool()
def get_status(connection_id: str) -> str:
    """Report the status of one session."""
    return _guard(lambda: f"{connection_id}: {session_manager.get_status(connection_id)}")


@mcp.tool()
def list_connections() -> str:
    """List all sessions with their status."""
    configs = session_manager.list_connections()
    if not configs:
        return "No SSH sessions"
    lines = []
    for config in configs:
        status = _guard(lambda: str(session_manager.get_status(config.id)))
        lines.append(f"- {config.id} {config.name} ({config.address}) [{status}]")
    return "SSH Sessions:\n" + "\n".join(lines)


@mcp.tool()
def list_connected() -> str:
    """List sessions that are currently connected."""
    configs = session_manager.list_connected()
    if not configs:
        return "No connected SSH sessions"
    return "Connected SSH Sessions:\n" + "\n".join(f"- {c.id} {c.name} ({c.address})" for c in configs)


@mcp.tool()
def check_health(connection_id: str) -> str:
    """Check whether a session's transport is still authenticated."""
    healthy = session_manager.check_health(connection_id)
    return f"{connection_id}: {'healthy' if healthy else 'unhealthy'}"


@mcp.tool()
def execute_command(
    connection_id: str,
    command: str,
    timeout: Optional[int] = None,
    custom_prompts: Optional[List[str]] = None,
    wait_for_prompt: bool = True,
) -> str:
    """Run a command in a session's shell and return its output.

    Shell state (working directory, environment) persists between calls.

    Args:
        connection_id: Session to run in
        command: Command line to send
        timeout: Wall clock limit in milliseconds (default: the session's max_wait_time)
        custom_prompts: Prompt suffixes for this call only
        wait_for_prompt: False returns after a single read
    """
    options = CommandOptions(custom_prompts=custom_prompts, timeout=timeout, wait_for_prompt=wait_for_prompt)
    return _guard(lambda: format_result(session_manager.execute_command_result(connection_id, command, options)))


@mcp.tool()
def execute_command_async(connection_id: str, command: str, timeout: Optional[int] = None) -> str:
    """Start a command in the background and return its command id.

    Poll it with get_command_status and stop it with cancel_command.
    """
    options = CommandOptions(timeout=timeout)
    return _guard(lambda: f"Command ID: {session_manager.execute_command_async(connection_id, command, options)}")


@mcp.tool()
def get_command_status(command_id: str) -> str:
    """Report status and output of a background command."""
    return _guard(lambda: json.dumps(session_manager.get_command_status(command_id), indent=2))


@mcp.tool()
def cancel_command(command_id: str) -> str:
    """Stop a background command at its next read."""
    def action():
        if session_manager.cancel_command(command_id):
            return f"Cancellation requested: {command_id}"
        return f"Command {command_id} is not running"
    return _guard(action)


@mcp.tool()
def list_running_commands() -> str:
    """List background commands that are still running."""
    running = session_manager.list_running_commands()
    if not running:
        return "No running commands"
    return json.dumps(running, indent=2)


@mcp.tool()
def get_hardware_info(connection_id: str) -> str:
    """Collect CPU, memory, storage and network information as JSON."""
    return _guard(lambda: json.dumps(hardware_service.get_hardware_info(connection_id).to_dict(), indent=2))


def main():
    try:
        mcp.run()
    finally:
        session_manager.shutdown()


if __name__ == "__main__":
    main()
