"""Block bookkeeping: overlay recorded blocks onto attacks and manage block records."""

from __future__ import annotations

import ipaddress
import logging
import os
from datetime import datetime, timezone
from typing import Any, Dict, Iterable, List, Tuple

from .alerts import parse_timestamp
from .remote import TAIL_TIMEOUT, RemoteError
from .storage import StoreUnavailable

BLOCK_LIMIT = int(os.environ.get("EVE_MONITOR_BLOCK_LIMIT", "200"))
BLOCK_SCRIPT = os.environ.get("EVE_MONITOR_BLOCK_SCRIPT", "/usr/local/sbin/block_ip.sh")

BLOCKS = "blocks"
ATTACKS = "attacks"

_EPOCH = datetime.min.replace(tzinfo=timezone.utc)

logger = logging.getLogger(__name__)


def is_valid_ip(value: Any) -> bool:
    if not isinstance(value, str) or not value:
        return False
    try:
        ipaddress.IPv4Address(value)
    except ValueError:
        return False
    return True


def latest_blocks(records: Iterable[Dict[str, Any]]) -> Dict[str, Dict[str, Any]]:
    """Reduce block records to the most recent one per address."""
    latest: Dict[str, Dict[str, Any]] = {}
    stamps: Dict[str, datetime] = {}
    for record in records:
        if not isinstance(record, dict) or not record.get("ip"):
            continue
        ip = record["ip"]
        stamp = parse_timestamp(str(record.get("timestamp") or "")) or _EPOCH
        if ip not in latest or stamp > stamps[ip]:
            latest[ip] = record
            stamps[ip] = stamp
    return latest


def apply_block_state(
    attacks: List[Dict[str, Any]], latest: Dict[str, Dict[str, Any]]
) -> Tuple[List[Dict[str, Any]], int]:
    """Return copies of ``attacks`` stamped with block info, plus how many were stamped."""
    stamped = 0
    merged: List[Dict[str, Any]] = []
    for attack in attacks:
        block = latest.get(attack.get("source_ip") or "")
        if block is None:
            merged.append(attack)
            continue
        merged.append(
            {
                **attack,
                "blocked": True,
                "blocked_at": block.get("timestamp"),
                "block_method": block.get("method") or "api",
            }
        )
        stamped += 1
    return merged, stamped


def merge_block_state(
    attacks: List[Dict[str, Any]], store: Any, limit: int = BLOCK_LIMIT
) -> Tuple[List[Dict[str, Any]], int]:
    """Overlay the latest block per address; an unreachable store leaves attacks as they are."""
    try:
        records = [record for _, record in store.read_latest(BLOCKS, limit)]
    except StoreUnavailable as exc:
        logger.warning("block overlay skipped: %s", exc)
        return attacks, 0
    return apply_block_state(attacks, latest_blocks(records))


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat(timespec="milliseconds").replace("+00:00", "Z")


def record_block_request(store: Any, ip: str) -> Dict[str, Any]:
    """Record that a block was requested from the UI. Nothing is executed on the sensor."""
    record = {
        "ip": ip,
        "timestamp": _now_iso(),
        "success": False,
        "method": "manual-request",
        "note": "Request recorded from web UI; no remote blocking executed from server.",
    }
    store.append(BLOCKS, record)
    logger.info("block request recorded for %s", ip)
    return record


def remove_block_records(store: Any, ip: str) -> int:
    removed = 0
    for key, record in store.read_all(BLOCKS).items():
        if isinstance(record, dict) and record.get("ip") == ip:
            store.delete(f"{BLOCKS}/{key}")
            removed += 1
    return removed


def clear_block_state(store: Any, ip: str) -> int:
    """Reset the blocked flag on stored attacks from ``ip`` without touching the firewall."""
    updates: Dict[str, Any] = {}
    for key, attack in store.read_all(ATTACKS).items():
        if isinstance(attack, dict) and attack.get("source_ip") == ip and attack.get("blocked"):
            updates[f"{ATTACKS}/{key}/blocked"] = False
            updates[f"{ATTACKS}/{key}/blocked_at"] = None
            updates[f"{ATTACKS}/{key}/block_method"] = None
    if updates:
        store.update_fields(updates)
    cleared = len(updates) // 3
    logger.info("cleared block state on %d stored attack(s) for %s", cleared, ip)
    return cleared


def unblock_ip(shell: Any, store: Any, ip: str, script: str = BLOCK_SCRIPT) -> Dict[str, Any]:
    """Ask the privileged wrapper script to lift a block, then drop the block records."""
    unblocked = False
    errors: List[str] = []

    try:
        output = str(shell.execute_sudo(f"{script} --remove {ip}", TAIL_TIMEOUT) or "")
        if "[+]" in output or "Successfully" in output:
            unblocked = True
            logger.info("unblocked %s via %s", ip, script)
        else:
            errors.append(output.strip() or "script returned no success marker")
    except RemoteError as exc:
        logger.warning("unblock script failed for %s: %s", ip, exc)
        errors.append(str(exc))

    try:
        removed = remove_block_records(store, ip)
        logger.info("removed %d block record(s) for %s", removed, ip)
    except StoreUnavailable as exc:
        logger.warning("block record cleanup skipped for %s: %s", ip, exc)
        errors.append(f"store: {exc}")

    return {
        "success": unblocked,
        "message": f"IP {ip} unblocked" if unblocked else f"Failed to unblock IP {ip}",
        "error": "; ".join(errors) or None,
    }
