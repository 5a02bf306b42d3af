from __future__ import annotations

import json
import time
import uuid
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Optional, Tuple

from dateutil import parser as date_parser

CRITICAL = "critical"
HIGH = "high"
MEDIUM = "medium"
LOW = "low"

UNKNOWN_ATTACK = "Unknown Attack"

_SSH_AUTH_WORDS = ("failed", "login", "attempt", "auth", "authentication")


@dataclass
class AlertRecord:
    """One ``event_type == "alert"`` line from a Suricata EVE log."""

    timestamp: str
    src_ip: str
    src_port: Optional[int]
    dest_ip: str
    dest_port: Optional[int]
    proto: str
    signature: str
    severity: Optional[int]
    signature_id: Optional[int]
    event_type: str = "alert"


def _as_int(value: Any) -> Optional[int]:
    if value is None or isinstance(value, bool):
        return None
    try:
        return int(value)
    except (TypeError, ValueError, OverflowError):
        return None


def parse_line(line: str) -> Optional[AlertRecord]:
    """Decode one raw log line; anything that is not an alert yields ``None``."""
    try:
        data = json.loads(line)
    except (TypeError, ValueError, RecursionError):
        return None
    if not isinstance(data, dict) or data.get("event_type") != "alert":
        return None

    alert = data.get("alert")
    if not isinstance(alert, dict):
        alert = {}
    return AlertRecord(
        timestamp=str(data.get("timestamp") or ""),
        src_ip=str(data.get("src_ip") or ""),
        src_port=_as_int(data.get("src_port")),
        dest_ip=str(data.get("dest_ip") or ""),
        dest_port=_as_int(data.get("dest_port")),
        proto=str(data.get("proto") or ""),
        signature=str(alert.get("signature") or ""),
        severity=_as_int(alert.get("severity")),
        signature_id=_as_int(alert.get("signature_id")),
    )


def parse_timestamp(value: str) -> Optional[datetime]:
    """Parse an ISO8601 event time to an aware UTC datetime, or ``None``."""
    if not value:
        return None
    try:
        parsed = date_parser.isoparse(value.strip())
    except (ValueError, OverflowError):
        return None
    if parsed.tzinfo is None:
        return parsed.replace(tzinfo=timezone.utc)
    return parsed.astimezone(timezone.utc)


def severity_tier(severity: Optional[int]) -> str:
    if severity == 1:
        return CRITICAL
    if severity == 2:
        return HIGH
    if severity == 3:
        return MEDIUM
    return LOW


def _contains(*words: str) -> Callable[[str], bool]:
    return lambda sig: any(word in sig for word in words)


def _ssh_auth_failure(sig: str) -> bool:
    return ("ssh" in sig or "sshd" in sig) and any(word in sig for word in _SSH_AUTH_WORDS)


# Evaluated top to bottom against the lower-cased signature; first match wins.
ATTACK_RULES: List[Tuple[Callable[[str], bool], str]] = [
    (_contains("ddos", "flood"), "DDoS"),
    (_contains("brute", "brute-force"), "Brute Force"),
    (_ssh_auth_failure, "Brute Force"),
    (_contains("sql"), "SQL Injection"),
    (_contains("scan"), "Port Scanning"),
    (_contains("xss"), "XSS Attack"),
    (_contains("malware"), "Malware"),
]


def attack_type(signature: str) -> str:
    sig = (signature or "").lower()
    for predicate, tag in ATTACK_RULES:
        if predicate(sig):
            return tag
    return UNKNOWN_ATTACK


def _attack_id() -> str:
    return f"{int(time.time() * 1000)}-{uuid.uuid4().hex[:9]}"


def build_attack(record: AlertRecord, raw: str) -> Dict[str, Any]:
    """Shape a classified record into the JSON object the dashboard consumes."""
    return {
        "id": _attack_id(),
        "timestamp": record.timestamp,
        "source_ip": record.src_ip,
        "type": attack_type(record.signature),
        "severity": severity_tier(record.severity),
        "blocked": False,
        "target_port": record.dest_port,
        "protocol": record.proto.upper() if record.proto else "TCP",
        "signature": record.signature,
        "signature_id": record.signature_id,
        "raw": raw,
    }
