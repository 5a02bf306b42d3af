"""HTTP API polled by the dashboard.

Exposes the current attack view, the reset switch and the block/unblock
actions. Every handler answers with JSON, including on failure.
"""

from __future__ import annotations

import logging
import os
from logging.handlers import RotatingFileHandler
from typing import Any, Optional

from flask import Flask, jsonify, request
from flask_cors import CORS

from .blocks import clear_block_state, is_valid_ip, record_block_request, unblock_ip
from .engine import AttackMonitor, iso_utc
from .remote import RemoteShell
from .storage import StoreUnavailable, make_store

LOG_PATH = os.environ.get("EVE_MONITOR_LOG", "")
LOG_LEVEL = os.environ.get("EVE_MONITOR_LOG_LEVEL", "INFO").upper()
LOG_MAX_BYTES = int(os.environ.get("EVE_MONITOR_LOG_MAX_BYTES", str(5 * 1024 * 1024)))
LOG_BACKUPS = int(os.environ.get("EVE_MONITOR_LOG_BACKUPS", "1"))

logger = logging.getLogger(__name__)


def configure_logging() -> None:
    """Console logging, plus a size-rotated file when EVE_MONITOR_LOG is set."""
    logging.basicConfig(
        level=getattr(logging, LOG_LEVEL, logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    if LOG_PATH:
        os.makedirs(os.path.dirname(os.path.abspath(LOG_PATH)), exist_ok=True)
        handler = RotatingFileHandler(LOG_PATH, maxBytes=LOG_MAX_BYTES, backupCount=max(LOG_BACKUPS, 0))
        handler.setFormatter(logging.Formatter("%(asctime)s %(levelname)s %(name)s: %(message)s"))
        logging.getLogger().addHandler(handler)


def _no_cache(response: Any) -> Any:
    response.headers["Cache-Control"] = "no-cache, no-store, must-revalidate"
    response.headers["Pragma"] = "no-cache"
    response.headers["Expires"] = "0"
    return response


def _requested_ip() -> Optional[str]:
    payload = request.get_json(silent=True) or {}
    return payload.get("ip") if isinstance(payload, dict) else None


def _invalid_ip() -> Any:
    return jsonify({"success": False, "message": "Invalid IP address"}), 400


def create_app(monitor: Optional[AttackMonitor] = None) -> Flask:
    if monitor is None:
        monitor = AttackMonitor(RemoteShell(), make_store())

    app = Flask(__name__)
    CORS(app)  # the dashboard is served from another origin
    app.config["MONITOR"] = monitor

    @app.route("/health", methods=["GET"])
    def health() -> Any:
        state = monitor.state
        return jsonify(
            {
                "status": "ok",
                "connected": bool(getattr(monitor.shell, "is_connected", False)),
                "processed_count": len(state.cache),
                "last_watermark": iso_utc(state.watermark),
            }
        )

    @app.route("/api/attacks", methods=["GET"])
    def attacks() -> Any:
        if request.args.get("reset") == "true":
            result = monitor.reset()
        else:
            result = monitor.poll()
        status = 500 if "error" in result else 200
        return _no_cache(jsonify(result)), status

    @app.route("/api/block", methods=["POST"])
    def block() -> Any:
        ip = _requested_ip()
        if not is_valid_ip(ip):
            return _invalid_ip()
        try:
            record_block_request(monitor.store, ip)
        except StoreUnavailable as exc:
            logger.error("could not record block request for %s: %s", ip, exc)
            return jsonify({"success": False, "message": "Failed to record block request", "error": str(exc)}), 500
        return jsonify(
            {"success": True, "message": f"Request to block IP {ip} recorded. Execute block manually on server."}
        )

    @app.route("/api/block/unblock", methods=["POST"])
    def unblock() -> Any:
        ip = _requested_ip()
        if not is_valid_ip(ip):
            return _invalid_ip()
        try:
            result = unblock_ip(monitor.shell, monitor.store, ip)
        except Exception as exc:
            logger.exception("unblock failed for %s", ip)
            return jsonify({"success": False, "message": "Unexpected error", "error": str(exc)}), 500
        return jsonify(result), (200 if result["success"] else 500)

    @app.route("/api/clear-block", methods=["DELETE"])
    def clear_block() -> Any:
        ip = request.args.get("ip")
        if not is_valid_ip(ip):
            return _invalid_ip()
        try:
            cleared = clear_block_state(monitor.store, ip)
        except StoreUnavailable as exc:
            logger.error("could not clear block state for %s: %s", ip, exc)
            return jsonify({"success": False, "message": "Failed to clear block state", "error": str(exc)}), 500
        return jsonify({"success": True, "message": f"Block status for IP {ip} cleared", "ip": ip, "cleared": cleared})

    return app


def main() -> None:
    configure_logging()
    port = int(os.environ.get("PORT", "8000"))
    create_app().run(host="0.0.0.0", port=port)


if __name__ == "__main__":
    main()
