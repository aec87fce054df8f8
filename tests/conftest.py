import socket
import threading

import paramiko
import pytest

from ssh_shell_manager.settings import Settings


PROMPT = "u@test:~$ "


def echo_responder(outputs=None, prompt=PROMPT):
    """Build a responder that behaves like an interactive shell.

    Each command line is echoed back, followed by its canned output (if any)
    and a fresh prompt.
    """
    outputs = outputs or {}

    def respond(line):
        command = line.rstrip("\n")
        chunks = [f"{command}\r\n"]
        if command.startswith("echo ") and command not in outputs:
            chunks.append(command[len("echo "):] + "\r\n")
        elif command in outputs:
            text = outputs[command].replace("\n", "\r\n")
            chunks.append(text if text.endswith("\r\n") else text + "\r\n")
        chunks.append(prompt)
        return chunks

    return respond


class MockChannel:
    """Stand-in for a paramiko Channel running an interactive shell."""

    def __init__(self, responder=None, banner=PROMPT):
        self.output_queue = []
        self.sent_data = []
        self.closed = False
        self.eof_received = False
        self.close_calls = 0
        self.pty = None
        self.shell_invoked = False
        self.timeout = None
        self.responder = responder
        self.sends_with_pending_output = 0
        self._lock = threading.Lock()
        if banner:
            self.feed(banner)

    def feed(self, data):
        if isinstance(data, str):
            data = data.encode("utf-8")
        with self._lock:
            self.output_queue.append(data)

    def get_pty(self, term="vt100", width=80, height=24):
        self.pty = (term, width, height)

    def invoke_shell(self):
        self.shell_invoked = True

    def sendall(self, data):
        if self.closed:
            raise OSError("Socket is closed")
        with self._lock:
            if self.output_queue:
                self.sends_with_pending_output += 1
        text = data.decode("utf-8")
        self.sent_data.append(text)
        if self.responder:
            for chunk in self.responder(text):
                self.feed(chunk)

    def recv_ready(self):
        with self._lock:
            return bool(self.output_queue)

    def recv(self, n):
        with self._lock:
            if not self.output_queue:
                if self.closed or self.eof_received:
                    return b""
                raise socket.timeout()
            data = self.output_queue.pop(0)
            if len(data) > n:
                self.output_queue.insert(0, data[n:])
                data = data[:n]
            return data

    def settimeout(self, timeout):
        self.timeout = timeout

    def resize_pty(self, width=80, height=24):
        self.pty = (self.pty[0] if self.pty else "vt100", width, height)

    def close(self):
        self.closed = True
        self.close_calls += 1


class MockTransport:
    """Stand-in for an authenticated-ready paramiko Transport."""

    def __init__(self, channel_factory=None, passwords=("p",), accept_key=True):
        self.channel_factory = channel_factory or (lambda: MockChannel(echo_responder()))
        self.passwords = passwords
        self.accept_key = accept_key
        self.active = True
        self.authenticated = False
        self.close_calls = 0
        self.channels = []
        self.password_attempts = []
        self.key_attempts = []

    def auth_password(self, username, password):
        self.password_attempts.append((username, password))
        if password not in self.passwords:
            raise paramiko.AuthenticationException("Authentication failed.")
        self.authenticated = True
        return []

    def auth_publickey(self, username, key):
        self.key_attempts.append((username, key))
        if not self.accept_key:
            raise paramiko.AuthenticationException("Authentication failed.")
        self.authenticated = True
        return []

    def is_authenticated(self):
        return self.active and self.authenticated

    def is_active(self):
        return self.active

    def open_session(self, timeout=None):
        if not self.active:
            raise paramiko.SSHException("SSH session not active")
        channel = self.channel_factory()
        self.channels.append(channel)
        return channel

    def close(self):
        self.active = False
        self.close_calls += 1


class MockTransportFactory:
    """Hands out MockTransports and remembers them for leak checks."""

    def __init__(self, transport_factory=None, error=None):
        self.transport_factory = transport_factory or MockTransport
        self.error = error
        self.transports = []
        self.configs = []

    def open(self, config):
        self.configs.append(config)
        if self.error is not None:
            raise self.error
        transport = self.transport_factory()
        self.transports.append(transport)
        return transport


@pytest.fixture(scope="session")
def log_dir(tmp_path_factory):
    return str(tmp_path_factory.mktemp("logs"))


@pytest.fixture
def settings(log_dir):
    return Settings(log_dir=log_dir, startup_timeout=500, idle_timeout=0.5, max_workers=4)


@pytest.fixture
def transport_factory():
    return MockTransportFactory()
