from __future__ import annotations

import logging
from datetime import date
from typing import Any

from flask import Flask, jsonify, request

from config import load_settings
from dose_tracker import DoseTracker
from errors import InvalidSampleError, InvalidSlotError
from serial_bridge import SerialPresenceBridge

logger = logging.getLogger(__name__)


def _parse_slot_id(raw: Any) -> int:
    if isinstance(raw, bool):
        raise InvalidSlotError(raw)
    try:
        return int(raw)
    except (TypeError, ValueError):
        raise InvalidSlotError(raw) from None


def _parse_presence(payload: dict[str, Any]) -> Any:
    if "present" in payload:
        return payload.get("present")
    raw_value = payload.get("value", payload.get("a"))
    # Legacy sensor encoding: 0 = container in place, 1 = removed.
    if not isinstance(raw_value, bool) and raw_value in (0, 1):
        return raw_value == 0
    return raw_value


def _parse_date_arg(name: str) -> date | None:
    raw = str(request.args.get(name, "")).strip()
    if not raw:
        return None
    try:
        return date.fromisoformat(raw)
    except ValueError:
        raise InvalidSampleError(f"{name} must be YYYY-MM-DD.") from None


def _json_payload() -> dict[str, Any]:
    payload = request.get_json(silent=True) or {}
    if not isinstance(payload, dict):
        raise InvalidSampleError("Request JSON must be an object.")
    return payload


def create_app(tracker: DoseTracker | None = None) -> Flask:
    app = Flask(__name__)
    tracker = tracker or DoseTracker()
    app.extensions["dose_tracker"] = tracker

    @app.errorhandler(InvalidSlotError)
    def _invalid_slot(exc: InvalidSlotError):
        return jsonify(ok=False, message=str(exc)), 400

    @app.errorhandler(InvalidSampleError)
    def _invalid_sample(exc: InvalidSampleError):
        return jsonify(ok=False, message=str(exc)), 400

    @app.errorhandler(404)
    def _not_found(exc):
        return jsonify(ok=False, message="Not Found", path=request.path, method=request.method), 404

    @app.errorhandler(500)
    def _server_error(exc):
        logger.error("Unhandled error on %s %s: %s", request.method, request.path, exc)
        return jsonify(ok=False, message="Internal Server Error"), 500

    @app.get("/health")
    def health():
        return jsonify(status="ok", slots=tracker.get_all_slots())

    # Sensor endpoints (dispenser board)
    @app.get("/value")
    def get_values():
        return jsonify(slots=tracker.get_all_slots())

    @app.get("/value/<slot_id>")
    def get_value(slot_id: str):
        return jsonify(tracker.get_slot(_parse_slot_id(slot_id)))

    @app.post("/value")
    def post_value():
        payload = _json_payload()
        slot_id = _parse_slot_id(payload.get("sensorId", payload.get("slot_id", 1)))
        snapshot = tracker.report_presence(slot_id, _parse_presence(payload))
        return jsonify(ok=True, slot=snapshot)

    # Slot definitions
    @app.get("/api/slots")
    def api_slots():
        return jsonify(slots=tracker.get_all_slots())

    @app.post("/api/slots/<slot_id>")
    def api_update_slot(slot_id: str):
        payload = _json_payload()
        try:
            snapshot = tracker.update_slot(
                _parse_slot_id(slot_id),
                label=payload.get("label") or payload.get("name"),
                description=payload.get("description"),
                target_time=payload.get("target_time") or payload.get("targetTime"),
            )
        except InvalidSlotError:
            raise
        except ValueError as exc:
            return jsonify(ok=False, message=str(exc)), 400
        return jsonify(ok=True, slot=snapshot)

    # History and stats
    @app.get("/api/history")
    def api_history():
        raw_limit = request.args.get("limit")
        limit = None
        if raw_limit not in (None, ""):
            try:
                limit = max(0, int(raw_limit))
            except (TypeError, ValueError):
                return jsonify(ok=False, message="limit must be an integer."), 400
        return jsonify(history=tracker.get_history(limit))

    @app.delete("/api/history/<int:index>")
    def api_delete_history(index: int):
        try:
            removed = tracker.delete_history_entry(index)
        except IndexError as exc:
            return jsonify(ok=False, message=str(exc)), 404
        return jsonify(ok=True, removed=removed)

    @app.get("/api/daily-stats")
    def api_daily_stats():
        return jsonify(daily_stats=tracker.get_daily_stats(_parse_date_arg("start"), _parse_date_arg("end")))

    @app.get("/api/metrics")
    def api_metrics():
        return jsonify(tracker.get_adherence_metrics())

    @app.get("/api/metrics/weekly")
    def api_weekly():
        return jsonify(weekly=tracker.get_weekly_rollup())

    @app.get("/api/reports/detailed")
    def api_detailed_report():
        return jsonify(tracker.get_detailed_report())

    @app.get("/api/dashboard/stats")
    def api_dashboard():
        return jsonify(tracker.get_dashboard())

    @app.get("/api/notifications/check")
    def api_notifications():
        return jsonify(alerts=tracker.get_notices())

    # Administrative
    @app.get("/api/admin/status")
    def api_admin_status():
        return jsonify(tracker.status())

    @app.post("/api/admin/reset")
    def api_admin_reset():
        payload = _json_payload()
        raw_slot = payload.get("sensorId", payload.get("slot_id"))
        if raw_slot is not None:
            slot = tracker.reset_slot(_parse_slot_id(raw_slot))
            return jsonify(ok=True, message=f"Slot {slot['id']} reset.", slot=slot)
        tracker.reset_all()
        return jsonify(ok=True, message="All slot data reset.")

    return app


def main() -> None:
    settings = load_settings()
    logging.basicConfig(
        level=getattr(logging, settings.log_level, logging.INFO),
        format="[%(levelname)s] %(name)s: %(message)s",
    )
    tracker = DoseTracker.from_settings(settings)
    tracker.start_background(settings.boundary_tick_s, settings.evaluator_tick_s)

    bridge = None
    if settings.serial_enabled:
        bridge = SerialPresenceBridge(tracker, settings.serial_port, settings.serial_baud)
        bridge.start()

    app = create_app(tracker)
    logger.info("Dose tracker listening on %s:%d with %d slots.", settings.host, settings.port, len(tracker.get_all_slots()))
    try:
        app.run(host=settings.host, port=settings.port)
    finally:
        if bridge is not None:
            bridge.stop()
        tracker.stop_background()


if __name__ == "__main__":
    main()
