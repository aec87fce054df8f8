"""TCP connect, SSH handshake and authentication using Paramiko."""
import logging
import os
import socket
from typing import Callable, Optional

import paramiko

from .datastructures import AuthMethod, ConnectionConfig
from .errors import AuthFailedError, MissingCredentialError, TransportError


logger = logging.getLogger('ssh_shell_manager.transport')


def load_private_key(path: str, passphrase: Optional[str] = None) -> paramiko.PKey:
    """Load a private key of any type Paramiko understands."""
    expanded = os.path.expanduser(path)
    try:
        return paramiko.PKey.from_path(expanded, passphrase)
    except paramiko.PasswordRequiredException as exc:
        raise AuthFailedError(f"Private key {expanded} is encrypted and no passphrase was given") from exc
    except (paramiko.SSHException, paramiko.UnknownKeyType, OSError, ValueError, TypeError) as exc:
        raise AuthFailedError(f"Unable to load private key {expanded}: {exc}") from exc


class TransportFactory:
    """Opens authenticated-ready Paramiko transports.

    Args:
        connect_timeout: Seconds allowed for TCP connect and the SSH handshake
        auth_timeout: Seconds allowed for each authentication attempt
        keepalive_interval: Seconds between keepalive packets (0 disables)
        strict_host_keys: Reject hosts missing from or mismatching known_hosts
        known_hosts: Path of the known_hosts file used for strict checking
    """

    def __init__(self, connect_timeout: float = 30.0, auth_timeout: float = 30.0,
                 keepalive_interval: int = 30, strict_host_keys: bool = False,
                 known_hosts: Optional[str] = None):
        self.connect_timeout = connect_timeout
        self.auth_timeout = auth_timeout
        self.keepalive_interval = keepalive_interval
        self.strict_host_keys = strict_host_keys
        self.known_hosts = known_hosts

    def open(self, config: ConnectionConfig) -> paramiko.Transport:
        log = logger.getChild('open')
        log.debug(f"[TCP_CONNECT] {config.host}:{config.port} timeout={self.connect_timeout}")
        try:
            sock = socket.create_connection((config.host, config.port), timeout=self.connect_timeout)
        except OSError as exc:
            log.error(f"[TCP_FAILED] {config.host}:{config.port}: {exc}")
            raise TransportError(f"TCP connection to {config.host}:{config.port} failed: {exc}") from exc

        transport = paramiko.Transport(sock)
        transport.banner_timeout = self.connect_timeout
        transport.auth_timeout = self.auth_timeout
        try:
            transport.start_client(timeout=self.connect_timeout)
            self._verify_host_key(transport, config)
        except TransportError:
            transport.close()
            raise
        except (paramiko.SSHException, OSError, EOFError) as exc:
            log.error(f"[HANDSHAKE_FAILED] {config.host}:{config.port}: {type(exc).__name__}: {exc}")
            transport.close()
            raise TransportError(f"SSH handshake with {config.host}:{config.port} failed: {exc}") from exc

        if self.keepalive_interval:
            transport.set_keepalive(self.keepalive_interval)
        log.debug(f"[HANDSHAKE_OK] {config.host}:{config.port}")
        return transport

    def _verify_host_key(self, transport: paramiko.Transport, config: ConnectionConfig):
        log = logger.getChild('host_key')
        key = transport.get_remote_server_key()
        log.info(f"Host key for {config.host}:{config.port}: {key.get_name()} {key.get_fingerprint().hex()}")

        if not self.strict_host_keys:
            return

        host_keys = paramiko.HostKeys()
        if self.known_hosts and os.path.exists(self.known_hosts):
            host_keys.load(self.known_hosts)

        lookup = config.host if config.port == 22 else f"[{config.host}]:{config.port}"
        if not host_keys.check(lookup, key):
            log.error(f"[HOST_KEY_REJECTED] {lookup} not trusted by {self.known_hosts}")
            raise TransportError(f"Host key for {lookup} is unknown or does not match known_hosts")


def authenticate(transport: paramiko.Transport, config: ConnectionConfig,
                 key_loader: Callable[..., paramiko.PKey] = load_private_key):
    """Authenticate ``transport`` according to ``config.auth_method``.

    PASSWORD and PRIVATE_KEY make a single attempt. BOTH tries the password
    first and falls back to the private key. Credential rejections raise
    AuthFailedError; other SSH failures raise TransportError.
    """
    log = logger.getChild('auth')
    method = config.auth_method
    log.debug(f"[AUTH_START] {config.address} method={method.value}")

    if method is AuthMethod.PASSWORD:
        if config.password is None:
            raise MissingCredentialError("Password authentication requires a password")
        _auth_password(transport, config)
    elif method is AuthMethod.PRIVATE_KEY:
        if not config.private_key_path:
            raise MissingCredentialError("Key authentication requires a private key path")
        _auth_key(transport, config, key_loader)
    else:
        if config.password is None and not config.private_key_path:
            raise MissingCredentialError("Combined authentication requires a password or a private key")
        password_ok = False
        if config.password is not None:
            try:
                _auth_password(transport, config)
                password_ok = True
            except AuthFailedError:
                if not config.private_key_path:
                    raise
                log.info(f"[AUTH_FALLBACK] Password rejected for {config.address}, trying key")
        if not password_ok:
            _auth_key(transport, config, key_loader)

    if not transport.is_authenticated():
        log.error(f"[AUTH_INCOMPLETE] {config.address} reported no error but is not authenticated")
        raise AuthFailedError(f"Authentication for {config.address} did not complete")
    log.info(f"[AUTH_OK] {config.address}")


def _auth_password(transport: paramiko.Transport, config: ConnectionConfig):
    try:
        transport.auth_password(config.username, config.password)
    except paramiko.AuthenticationException as exc:
        raise AuthFailedError(f"Password authentication failed for {config.address}: {exc}") from exc
    except (paramiko.SSHException, OSError, EOFError) as exc:
        raise TransportError(f"Connection lost during authentication: {exc}") from exc


def _auth_key(transport: paramiko.Transport, config: ConnectionConfig, key_loader):
    key = key_loader(config.private_key_path, config.private_key_passphrase)
    try:
        transport.auth_publickey(config.username, key)
    except paramiko.AuthenticationException as exc:
        raise AuthFailedError(f"Key authentication failed for {config.address}: {exc}") from exc
    except (paramiko.SSHException, OSError, EOFError) as exc:
        raise TransportError(f"Connection lost during authentication: {exc}") from exc
