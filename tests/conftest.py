import json
from datetime import datetime, timedelta, timezone

import pytest

from eve_monitor.remote import CommandTimeout
from eve_monitor.storage import JsonFileStore, StoreUnavailable

BASE_TIME = datetime(2024, 5, 1, 12, 0, 0, tzinfo=timezone.utc)


def eve_line(
    signature="ET SCAN Nmap Scripting Engine",
    severity=2,
    src_ip="1.2.3.4",
    signature_id=2009358,
    timestamp=None,
    event_type="alert",
    dest_port=22,
    proto="TCP",
):
    """Build one Suricata EVE JSON line."""
    if timestamp is None:
        timestamp = BASE_TIME + timedelta(minutes=1)
    if isinstance(timestamp, datetime):
        timestamp = timestamp.strftime("%Y-%m-%dT%H:%M:%S.%f+0000")
    return json.dumps(
        {
            "timestamp": timestamp,
            "event_type": event_type,
            "src_ip": src_ip,
            "src_port": 51544,
            "dest_ip": "10.0.0.5",
            "dest_port": dest_port,
            "proto": proto,
            "alert": {"signature": signature, "severity": severity, "signature_id": signature_id},
        }
    )


class FakeShell:
    """Stands in for RemoteShell: answers commands from a scripted tail."""

    def __init__(self, lines=None):
        self.lines = list(lines or [])
        self.reachable = True
        self.file_exists = True
        self.fail_with = None
        self.sudo_output = "[+] Successfully removed block"
        self.commands = []

    @property
    def is_connected(self):
        return self.reachable

    def probe(self, timeout=5):
        return self.reachable

    def execute(self, command, timeout, stdin_data=None):
        self.commands.append(command)
        if self.fail_with is not None:
            raise self.fail_with
        if command.startswith("test -f"):
            return "exists\n" if self.file_exists else "not found\n"
        if command.startswith("tail"):
            return "\n".join(self.lines) + "\n"
        return ""

    def execute_sudo(self, command, timeout=8):
        self.commands.append(f"sudo {command}")
        if self.fail_with is not None:
            raise self.fail_with
        return self.sudo_output


class BrokenStore:
    """Every call fails as if the database were offline."""

    def _fail(self, *args, **kwargs):
        raise StoreUnavailable("store offline")

    append = read_latest = read_all = update_fields = delete = _fail


class Clock:
    def __init__(self, now=BASE_TIME):
        self.now = now

    def __call__(self):
        return self.now

    def advance(self, **kwargs):
        self.now = self.now + timedelta(**kwargs)


@pytest.fixture()
def store(tmp_path):
    return JsonFileStore(str(tmp_path / "store.json"))


@pytest.fixture()
def shell():
    return FakeShell()


@pytest.fixture()
def clock():
    return Clock()


@pytest.fixture()
def timeout_error():
    return CommandTimeout("'tail -n 50 /var/log/suricata/eve.json' timed out after 8s")
