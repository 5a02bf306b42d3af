import socket

import paramiko
import pytest

from conftest import FakeShell
from eve_monitor.remote import CommandFailed, CommandTimeout, ReaderUnavailable, RemoteShell, read_tail


class FakeChannel:
    def __init__(self, status):
        self.status = status
        self.write_closed = False

    def recv_exit_status(self):
        return self.status

    def shutdown_write(self):
        self.write_closed = True


class FakeStream:
    def __init__(self, data=b"", channel=None, error=None):
        self.data = data
        self.channel = channel
        self.error = error
        self.written = ""

    def read(self):
        if self.error is not None:
            raise self.error
        return self.data

    def write(self, text):
        self.written += text

    def flush(self):
        pass


class FakeClient:
    """Minimal paramiko.SSHClient double driven by a command -> reply table."""

    instances = []

    def __init__(self, replies=None, connect_error=None):
        self.replies = replies or {}
        self.connect_error = connect_error
        self.closed = False
        self.last_stdin = None
        self.loaded_system_keys = False
        FakeClient.instances.append(self)

    def load_system_host_keys(self):
        self.loaded_system_keys = True

    def set_missing_host_key_policy(self, policy):
        self.policy = policy

    def connect(self, host, **kwargs):
        self.connect_kwargs = kwargs
        if self.connect_error is not None:
            raise self.connect_error

    def exec_command(self, command, timeout=None):
        reply = self.replies.get(command, (0, b"", b""))
        if isinstance(reply, Exception):
            raise reply
        status, out, err = reply
        channel = FakeChannel(status)
        if isinstance(out, Exception):
            stdout = FakeStream(channel=channel, error=out)
        else:
            stdout = FakeStream(out, channel)
        self.last_stdin = FakeStream(channel=channel)
        return self.last_stdin, stdout, FakeStream(err, channel)

    def close(self):
        self.closed = True


def make_shell(host_key_policy="reject", **client_kwargs):
    FakeClient.instances = []
    return RemoteShell(
        host="sensor",
        password="pw",
        host_key_policy=host_key_policy,
        client_factory=lambda: FakeClient(**client_kwargs),
    )


def test_connects_lazily_and_reuses_connection():
    shell = make_shell(replies={"echo 1": (0, b"1\n", b"")})
    assert not shell.is_connected
    assert shell.execute("echo 1", 5) == "1\n"
    assert shell.execute("echo 1", 5) == "1\n"
    assert shell.is_connected
    assert len(FakeClient.instances) == 1


def test_command_failure_forces_reconnect():
    shell = make_shell(replies={"cat /nope": (1, b"", b"cat: /nope: No such file")})
    with pytest.raises(CommandFailed):
        shell.execute("cat /nope", 5)
    assert not shell.is_connected
    assert FakeClient.instances[0].closed

    shell.execute("echo 1", 5)
    assert len(FakeClient.instances) == 2


def test_nonzero_status_without_stderr_is_not_an_error():
    shell = make_shell(replies={"grep x f": (1, b"", b"")})
    assert shell.execute("grep x f", 5) == ""


def test_read_timeout_raises_command_timeout():
    shell = make_shell(replies={"tail -n 50 f": (0, socket.timeout("timed out"), b"")})
    with pytest.raises(CommandTimeout):
        shell.execute("tail -n 50 f", 8)
    assert not shell.is_connected


def test_connect_error_is_command_failed_and_probe_false():
    shell = make_shell(connect_error=paramiko.AuthenticationException("bad password"))
    with pytest.raises(CommandFailed):
        shell.connect()
    assert shell.probe() is False


def test_sudo_feeds_password_on_stdin():
    shell = make_shell(replies={"sudo -S -p '' /x --remove 1.2.3.4": (0, b"[+] done", b"")})
    assert shell.execute_sudo("/x --remove 1.2.3.4", 5) == "[+] done"
    stdin = FakeClient.instances[0].last_stdin
    assert stdin.written == "pw\n"
    assert stdin.channel.write_closed


def test_read_tail_returns_non_blank_lines():
    shell = FakeShell(["{\"a\": 1}", "   ", "{\"b\": 2}"])
    assert read_tail(shell, "/var/log/suricata/eve.json", 50) == ["{\"a\": 1}", "{\"b\": 2}"]
    assert shell.commands[-1] == "tail -n 50 /var/log/suricata/eve.json"


def test_read_tail_quotes_the_path():
    shell = FakeShell([])
    read_tail(shell, "/tmp/eve log.json", 10)
    assert shell.commands[-1] == "tail -n 10 '/tmp/eve log.json'"


@pytest.mark.parametrize(
    "configure",
    [
        lambda s: setattr(s, "reachable", False),
        lambda s: setattr(s, "file_exists", False),
        lambda s: setattr(s, "fail_with", CommandTimeout("slow")),
        lambda s: setattr(s, "fail_with", CommandFailed("broken pipe")),
    ],
)
def test_read_tail_failures_are_reader_unavailable(configure):
    shell = FakeShell(["x"])
    configure(shell)
    with pytest.raises(ReaderUnavailable):
        read_tail(shell)


@pytest.mark.parametrize(
    "name, policy_class",
    [("reject", paramiko.RejectPolicy), ("warn", paramiko.WarningPolicy), ("auto", paramiko.AutoAddPolicy)],
)
def test_connect_loads_known_hosts_and_applies_policy(name, policy_class):
    shell = make_shell(host_key_policy=name)
    shell.connect()
    client = FakeClient.instances[0]
    assert client.loaded_system_keys
    assert isinstance(client.policy, policy_class)


def test_unknown_host_key_policy_is_rejected():
    with pytest.raises(ValueError):
        make_shell(host_key_policy="trust-everyone")
