"""Persistent PTY shell channel, one per connection."""
import logging
import socket
import threading
from typing import Any, Optional

import paramiko

from .errors import ShellClosedError


logger = logging.getLogger('ssh_shell_manager.shell')


class ShellChannel:
    """Wraps the Paramiko channel running the interactive shell.

    The channel is a raw duplex byte stream shared with the remote shell, so
    callers must hold ``lock`` for the whole write-then-read of one command.
    """

    def __init__(self, channel: Any):
        self._channel = channel
        self.lock = threading.Lock()

    @classmethod
    def open(cls, transport: paramiko.Transport, term: str = "xterm",
             width: int = 200, height: int = 50, timeout: Optional[float] = None) -> "ShellChannel":
        channel = transport.open_session(timeout=timeout)
        try:
            channel.get_pty(term=term, width=width, height=height)
            channel.invoke_shell()
        except Exception:
            channel.close()
            raise
        logger.debug(f"[SHELL_OPEN] term={term} size={width}x{height}")
        return cls(channel)

    @property
    def closed(self) -> bool:
        return bool(self._channel.closed)

    def send(self, data: str):
        self._channel.sendall(data.encode('utf-8'))

    def read(self, size: int) -> bytes:
        """Return whatever is buffered, up to ``size`` bytes, without blocking.

        An empty result means no data yet. Raises ShellClosedError once the
        remote side has closed the channel and nothing is left to read.
        """
        if self._channel.recv_ready():
            data = self._channel.recv(size)
            if not data:
                raise ShellClosedError("shell channel closed")
            return data
        if self._channel.closed or self._channel.eof_received:
            raise ShellClosedError("shell channel closed")
        return b""

    def read_blocking(self, size: int, timeout: float) -> bytes:
        """Block for one read of up to ``size`` bytes; ``b""`` on timeout or EOF."""
        self._channel.settimeout(max(timeout, 0.0))
        try:
            return self._channel.recv(size)
        except socket.timeout:
            return b""
        finally:
            self._channel.settimeout(None)

    def resize(self, width: int, height: int):
        self._channel.resize_pty(width=width, height=height)

    def close(self):
        self._channel.close()
