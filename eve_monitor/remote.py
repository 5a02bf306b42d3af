"""SSH access to the sensor host running Suricata.

``RemoteShell`` keeps one lazily opened paramiko connection. Any command
failure drops the connection so the next call reconnects from scratch.
"""

from __future__ import annotations

import logging
import os
import shlex
import socket
from typing import Any, Callable, List, Optional

import paramiko

SSH_HOST = os.environ.get("EVE_MONITOR_SSH_HOST", "127.0.0.1")
SSH_PORT = int(os.environ.get("EVE_MONITOR_SSH_PORT", "22"))
SSH_USER = os.environ.get("EVE_MONITOR_SSH_USER", "suricata")
SSH_PASSWORD = os.environ.get("EVE_MONITOR_SSH_PASSWORD") or None
SSH_KEY_FILE = os.environ.get("EVE_MONITOR_SSH_KEY_FILE") or None
# reject: host must be in known_hosts; warn: log and accept; auto: accept and remember
SSH_HOST_KEY_POLICY = os.environ.get("EVE_MONITOR_SSH_HOST_KEY_POLICY", "reject").lower()

HOST_KEY_POLICIES = {
    "reject": paramiko.RejectPolicy,
    "warn": paramiko.WarningPolicy,
    "auto": paramiko.AutoAddPolicy,
}

EVE_LOG_PATH = os.environ.get("EVE_MONITOR_EVE_LOG", "/var/log/suricata/eve.json")
TAIL_LINES = int(os.environ.get("EVE_MONITOR_TAIL_LINES", "50"))

# Per-operation budgets in seconds.
PROBE_TIMEOUT = float(os.environ.get("EVE_MONITOR_PROBE_TIMEOUT", "5"))
EXISTS_TIMEOUT = float(os.environ.get("EVE_MONITOR_EXISTS_TIMEOUT", "3"))
TAIL_TIMEOUT = float(os.environ.get("EVE_MONITOR_TAIL_TIMEOUT", "8"))

logger = logging.getLogger(__name__)


class RemoteError(Exception):
    """Base class for failures talking to the remote host."""


class CommandTimeout(RemoteError):
    pass


class CommandFailed(RemoteError):
    pass


class ReaderUnavailable(RemoteError):
    """The live log could not be read; callers switch to the fallback source."""


class RemoteShell:
    def __init__(
        self,
        host: str = SSH_HOST,
        port: int = SSH_PORT,
        username: str = SSH_USER,
        password: Optional[str] = SSH_PASSWORD,
        key_filename: Optional[str] = SSH_KEY_FILE,
        connect_timeout: float = PROBE_TIMEOUT,
        host_key_policy: str = SSH_HOST_KEY_POLICY,
        client_factory: Callable[[], Any] = paramiko.SSHClient,
    ) -> None:
        self.host = host
        self.port = port
        self.username = username
        self.password = password
        self.key_filename = key_filename
        self.connect_timeout = connect_timeout
        if host_key_policy not in HOST_KEY_POLICIES:
            raise ValueError(f"unknown host key policy {host_key_policy!r}; expected one of {sorted(HOST_KEY_POLICIES)}")
        self.host_key_policy = host_key_policy
        self._client_factory = client_factory
        self._client: Any = None

    @property
    def is_connected(self) -> bool:
        return self._client is not None

    def connect(self) -> None:
        if self._client is not None:
            return
        client = self._client_factory()
        client.load_system_host_keys()
        client.set_missing_host_key_policy(HOST_KEY_POLICIES[self.host_key_policy]())
        try:
            client.connect(
                self.host,
                port=self.port,
                username=self.username,
                password=self.password,
                key_filename=self.key_filename,
                timeout=self.connect_timeout,
                banner_timeout=self.connect_timeout,
                auth_timeout=self.connect_timeout,
                look_for_keys=self.key_filename is None and self.password is None,
            )
        except (paramiko.SSHException, OSError) as exc:
            client.close()
            logger.error("SSH connection to %s:%s failed: %s", self.host, self.port, exc)
            raise CommandFailed(f"connect to {self.host}:{self.port} failed: {exc}") from exc
        self._client = client
        logger.info("SSH connected to %s:%s", self.host, self.port)

    def disconnect(self) -> None:
        client, self._client = self._client, None
        if client is not None:
            try:
                client.close()
            except Exception:
                logger.debug("ignoring error while closing SSH client", exc_info=True)

    def execute(self, command: str, timeout: float, stdin_data: Optional[str] = None) -> str:
        """Run ``command`` and return its stdout; raise ``RemoteError`` on failure."""
        self.connect()
        try:
            stdin, stdout, stderr = self._client.exec_command(command, timeout=timeout)
            if stdin_data is not None:
                stdin.write(stdin_data)
                stdin.flush()
                stdin.channel.shutdown_write()
            out = stdout.read().decode("utf-8", "replace")
            err = stderr.read().decode("utf-8", "replace")
            status = stdout.channel.recv_exit_status()
        except socket.timeout as exc:
            self.disconnect()
            raise CommandTimeout(f"'{command}' timed out after {timeout}s") from exc
        except (paramiko.SSHException, OSError) as exc:
            self.disconnect()
            raise CommandFailed(f"'{command}' failed: {exc}") from exc

        if status != 0 and err.strip():
            self.disconnect()
            raise CommandFailed(err.strip())
        return out

    def execute_sudo(self, command: str, timeout: float = TAIL_TIMEOUT) -> str:
        # -S reads the password from stdin, -p '' suppresses the prompt
        return self.execute(f"sudo -S -p '' {command}", timeout, stdin_data=(self.password or "") + "\n")

    def probe(self, timeout: float = PROBE_TIMEOUT) -> bool:
        try:
            self.execute("echo 1", timeout)
            return True
        except RemoteError as exc:
            logger.warning("SSH probe failed: %s", exc)
            return False


def read_tail(shell: Any, path: str = EVE_LOG_PATH, lines: int = TAIL_LINES) -> List[str]:
    """Return the last ``lines`` non-blank lines of ``path`` on the remote host.

    Every failure along the way (probe, missing file, timeout) is reported as
    ``ReaderUnavailable``.
    """
    quoted = shlex.quote(path)
    try:
        if not shell.probe(timeout=PROBE_TIMEOUT):
            raise ReaderUnavailable("SSH connection test failed")
        check = shell.execute(f'test -f {quoted} && echo "exists" || echo "not found"', EXISTS_TIMEOUT)
        if "exists" not in str(check or ""):
            raise ReaderUnavailable(f"{path} not found on remote host")
        content = shell.execute(f"tail -n {int(lines)} {quoted}", TAIL_TIMEOUT)
    except ReaderUnavailable:
        raise
    except RemoteError as exc:
        raise ReaderUnavailable(str(exc)) from exc

    tail = [line for line in str(content or "").splitlines() if line.strip()]
    logger.debug("read %d lines from %s", len(tail), path)
    return tail
