"""Exceptions raised by the session manager.

Each error carries a short ``code`` that the tool layer reports back to the
client instead of a traceback.
"""


class SSHShellError(Exception):
    code = "error"


class ConfigInvalidError(SSHShellError):
    """The connection config failed validation. No network I/O was attempted."""
    code = "config_invalid"


class TransportError(SSHShellError):
    """TCP connect, SSH handshake or host key verification failed."""
    code = "transport_error"


class AuthFailedError(SSHShellError):
    """The server rejected the credentials."""
    code = "auth_failed"


class MissingCredentialError(AuthFailedError):
    code = "missing_credential"


class AlreadyConnectedError(SSHShellError):
    code = "already_connected"


class ConnectionNotFoundError(SSHShellError):
    code = "not_found"


class NotConnectedError(SSHShellError):
    """The session exists but is not in the connected state."""
    code = "not_connected"


class ChannelUnavailableError(SSHShellError):
    """A connected session has no shell channel. This is a bug, not a remote failure."""
    code = "channel_unavailable"


class CommandSendError(SSHShellError):
    code = "send_failed"


class CommandNotFoundError(SSHShellError):
    code = "command_not_found"


class ShellClosedError(EOFError):
    """Raised by ShellChannel reads once the remote side closed the channel."""
