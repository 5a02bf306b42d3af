"""Alert ingestion pipeline.

Each poll reads the tail of the remote EVE log, keeps the lines that look like
real attacks, drops the ones already surfaced, persists what is new and
overlays block state before handing the batch to the dashboard.
"""

from __future__ import annotations

import ipaddress
import logging
import os
import threading
from collections import Counter
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Optional, Tuple

from .alerts import UNKNOWN_ATTACK, AlertRecord, attack_type, build_attack, parse_line, parse_timestamp
from .blocks import ATTACKS, merge_block_state
from .remote import EVE_LOG_PATH, TAIL_LINES, ReaderUnavailable, read_tail
from .storage import StoreUnavailable

DEDUPE_WINDOW_SECONDS = int(os.environ.get("EVE_MONITOR_DEDUPE_WINDOW_SECONDS", str(5 * 60)))
BURST_THRESHOLD = int(os.environ.get("EVE_MONITOR_BURST_THRESHOLD", "3"))
FALLBACK_LIMIT = int(os.environ.get("EVE_MONITOR_FALLBACK_LIMIT", "200"))
IGNORE_PRIVATE_IPS = os.environ.get("EVE_MONITOR_IGNORE_PRIVATE", "0").lower() in ("1", "true", "yes")

logger = logging.getLogger(__name__)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def iso_utc(value: Optional[datetime]) -> Optional[str]:
    if value is None:
        return None
    return value.isoformat(timespec="milliseconds").replace("+00:00", "Z")


def _millis(value: datetime) -> int:
    return int(value.timestamp() * 1000)


class DedupCache:
    """Remembers dedup keys for a fixed window of wall-clock time.

    Entries store the event time they were inserted with and are purged
    against "now" before every lookup, so aging follows processing time.
    """

    def __init__(self, window_seconds: int = DEDUPE_WINDOW_SECONDS) -> None:
        self.window_ms = window_seconds * 1000
        self._store: Dict[str, int] = {}

    def _purge(self, now_ms: int) -> None:
        expired = [key for key, stamp in self._store.items() if now_ms - stamp > self.window_ms]
        for key in expired:
            del self._store[key]

    def seen(self, key: str, stamp_ms: int, now_ms: int) -> bool:
        """Return True for a duplicate; otherwise remember ``key`` and return False."""
        self._purge(now_ms)
        if key in self._store:
            return True
        self._store[key] = stamp_ms
        return False

    def clear(self) -> None:
        self._store.clear()

    def __len__(self) -> int:
        return len(self._store)

    def __contains__(self, key: str) -> bool:
        return key in self._store


def dedup_key(source_ip: str, signature_id: Any, stamp_ms: int, window_ms: int) -> str:
    return f"{source_ip}-{signature_id}-{stamp_ms // window_ms}"


@dataclass
class IngestionState:
    """Dedup cache plus watermark owned by one monitor."""

    cache: DedupCache = field(default_factory=DedupCache)
    watermark: Optional[datetime] = None

    def ensure_watermark(self, now: datetime) -> datetime:
        if self.watermark is None:
            self.watermark = now
            logger.info("monitoring starts from %s", iso_utc(now))
        return self.watermark

    def reset(self, now: datetime) -> None:
        self.cache.clear()
        self.watermark = now


@dataclass
class AttackCandidate:
    record: AlertRecord
    raw: str


def _burst_key(record: AlertRecord) -> Tuple[str, Any]:
    return record.src_ip, record.signature_id


def count_occurrences(records: List[AlertRecord]) -> Counter:
    """Occurrences of each (source, signature id) pair within one batch."""
    return Counter(_burst_key(record) for record in records)


def is_candidate(record: AlertRecord, occurrences: int, threshold: int = BURST_THRESHOLD) -> bool:
    severity = record.severity
    if attack_type(record.signature) != UNKNOWN_ATTACK:
        if severity is not None and severity <= 3:
            return True
        if occurrences >= threshold:
            return True
    return severity == 1


def select_candidates(
    parsed: List[Tuple[AlertRecord, str]], threshold: int = BURST_THRESHOLD
) -> List[AttackCandidate]:
    counts = count_occurrences([record for record, _ in parsed])
    return [
        AttackCandidate(record, raw)
        for record, raw in parsed
        if is_candidate(record, counts[_burst_key(record)], threshold)
    ]


def _is_private(address: str) -> bool:
    try:
        ip = ipaddress.ip_address(address)
    except ValueError:
        return False
    return ip.is_private or ip.is_loopback or ip.is_link_local


def _stats(attacks: List[Dict[str, Any]]) -> Dict[str, int]:
    blocked = sum(1 for attack in attacks if attack.get("blocked"))
    return {"total": len(attacks), "blocked_count": blocked, "active_count": len(attacks) - blocked}


def _sort_key(attack: Dict[str, Any]) -> float:
    stamp = parse_timestamp(str(attack.get("timestamp") or ""))
    return stamp.timestamp() if stamp else 0.0


class AttackMonitor:
    """Polls one remote EVE log and keeps the state needed between polls."""

    def __init__(
        self,
        shell: Any,
        store: Any,
        state: Optional[IngestionState] = None,
        log_path: str = EVE_LOG_PATH,
        tail_lines: int = TAIL_LINES,
        burst_threshold: int = BURST_THRESHOLD,
        fallback_limit: int = FALLBACK_LIMIT,
        ignore_private: bool = IGNORE_PRIVATE_IPS,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self.shell = shell
        self.store = store
        self.state = state or IngestionState()
        self.log_path = log_path
        self.tail_lines = tail_lines
        self.burst_threshold = burst_threshold
        self.fallback_limit = fallback_limit
        self.ignore_private = ignore_private
        self.clock = clock
        # one poll at a time: the cache and watermark have no finer locking
        self._lock = threading.Lock()

    def ingest(self, lines: List[str], now: datetime) -> List[Dict[str, Any]]:
        """Turn raw tail lines into newly emitted attacks and advance the watermark."""
        parsed: List[Tuple[AlertRecord, str]] = []
        for line in lines:
            try:
                record = parse_line(line)
            except Exception:
                # a single unreadable line must not cost the rest of the batch
                logger.debug("skipping unreadable line", exc_info=True)
                continue
            if record is not None:
                parsed.append((record, line))

        candidates = select_candidates(parsed, self.burst_threshold)
        watermark = self.state.ensure_watermark(now)
        now_ms = _millis(now)
        window_ms = self.state.cache.window_ms

        attacks: List[Dict[str, Any]] = []
        newest: Optional[datetime] = None
        for candidate in candidates:
            record = candidate.record
            event_time = parse_timestamp(record.timestamp)
            if event_time is not None and event_time <= watermark:
                continue
            if self.ignore_private and _is_private(record.src_ip):
                continue
            stamp_ms = _millis(event_time) if event_time is not None else now_ms
            key = dedup_key(record.src_ip, record.signature_id, stamp_ms, window_ms)
            if self.state.cache.seen(key, stamp_ms, now_ms):
                continue
            attacks.append(build_attack(record, candidate.raw))
            if event_time is not None and (newest is None or event_time > newest):
                newest = event_time

        if newest is not None:
            self.state.watermark = newest
        logger.debug(
            "%d lines, %d alerts, %d candidates, %d new", len(lines), len(parsed), len(candidates), len(attacks)
        )
        return attacks

    def _best_effort(self, action: str, func: Callable[..., Any], *args: Any) -> bool:
        try:
            func(*args)
        except StoreUnavailable as exc:
            logger.warning("%s skipped: %s", action, exc)
            return False
        return True

    def _persist(self, attacks: List[Dict[str, Any]]) -> None:
        saved = 0
        for attack in attacks:
            if not self._best_effort("attack persist", self.store.append, ATTACKS, attack):
                break
            saved += 1
        if saved:
            logger.info("saved %d attack(s) to the store", saved)

    def _load_fallback(self) -> Tuple[List[Dict[str, Any]], str]:
        try:
            rows = self.store.read_latest(ATTACKS, self.fallback_limit)
        except StoreUnavailable as exc:
            logger.error("fallback store also unavailable: %s", exc)
            return [], "error"
        attacks = []
        for key, record in rows:
            if isinstance(record, dict):
                attack = dict(record)
                attack.setdefault("id", key)
                attacks.append(attack)
        logger.info("loaded %d attack(s) from the fallback store", len(attacks))
        return attacks, "fallback"

    def _result(self, attacks: List[Dict[str, Any]], source: str, now: datetime) -> Dict[str, Any]:
        return {
            "attacks": attacks,
            "stats": _stats(attacks),
            "source": source,
            "last_watermark": iso_utc(self.state.watermark),
            "timestamp": iso_utc(now),
            "processed_count": len(self.state.cache),
        }

    def _poll(self) -> Dict[str, Any]:
        now = self.clock()
        self.state.ensure_watermark(now)
        try:
            lines = read_tail(self.shell, self.log_path, self.tail_lines)
        except ReaderUnavailable as exc:
            logger.warning("live log unavailable, using fallback: %s", exc)
            attacks, source = self._load_fallback()
        else:
            attacks = self.ingest(lines, now)
            source = "live"
            if attacks:
                logger.info("found %d new attack(s), watermark %s", len(attacks), iso_utc(self.state.watermark))
                self._persist(attacks)

        attacks.sort(key=_sort_key, reverse=True)
        attacks, stamped = merge_block_state(attacks, self.store)
        if stamped and source == "live":
            source = "merged"
        return self._result(attacks, source, now)

    def poll(self) -> Dict[str, Any]:
        with self._lock:
            try:
                return self._poll()
            except Exception as exc:
                logger.exception("poll failed")
                now = self.clock()
                return {
                    "attacks": [],
                    "stats": _stats([]),
                    "source": "error",
                    "error": str(exc),
                    "last_watermark": iso_utc(self.state.watermark),
                    "timestamp": iso_utc(now),
                    "processed_count": len(self.state.cache),
                }

    def reset(self) -> Dict[str, Any]:
        with self._lock:
            now = self.clock()
            self.state.reset(now)
            logger.info("reset: starting fresh from %s", iso_utc(now))
            result = self._result([], "live", now)
            result["message"] = "System reset successfully"
            return result
