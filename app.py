# app.py
from __future__ import annotations

import json
import logging
from datetime import datetime, timedelta
from decimal import Decimal
from typing import Any, Callable, Dict, Iterator, Optional

from flask import Flask, Response, jsonify, request
from flask.typing import ResponseReturnValue

from key_values import KeyValueStore
from message_parser import ANNOUNCEMENT_HEADER, ANNOUNCEMENT_TRAILER
from race_data import RaceData, RaceEvent, Racer, sort_racers
from race_state import RaceStateManager, RaceUpdateHub

logger = logging.getLogger(__name__)

TEST_ANNOUNCEMENT_CLIENT = "Test Announcement"
SSE_KEEPALIVE_SECONDS = 15.0


# ---------------------- Serialization ----------------------

def _seconds(value: Optional[timedelta]) -> Optional[float]:
    return value.total_seconds() if value is not None else None


def _number(value: Optional[Decimal]) -> Optional[float]:
    return float(value) if value is not None else None


def _iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value is not None else None


def event_to_dict(event: Optional[RaceEvent]) -> Optional[Dict[str, Any]]:
    if event is None:
        return None
    return {
        "eventName": event.event_name,
        "wind": event.wind,
        "eventNumber": event.event_number,
        "roundNumber": event.round_number,
        "heatNumber": event.heat_number,
        "eeeRHhName": event.eee_r_hh_name,
        "startType": event.start_type.value,
        "isOfficial": event.is_official,
        "numberOfResults": event.number_of_results,
    }


def racer_to_dict(r: Racer, delay_seconds: Optional[float] = None,
                  now: Optional[datetime] = None) -> Dict[str, Any]:
    d = {
        "lane": r.lane,
        "id": r.id,
        "name": r.name,
        "affiliation": r.affiliation,
        "place": r.place.text,
        "hasPlaceData": r.place.has_place_data,
        "reactionTime": _seconds(r.reaction_time),
        "cumulativeSplitTime": _seconds(r.cumulative_split_time),
        "lastSplitTime": _seconds(r.last_split_time),
        "bestSplitTime": _seconds(r.best_split_time),
        "lapsRemaining": _number(r.laps_remaining),
        "lapCountLastChanged": _iso(r.lap_count_last_changed),
        "speed": _number(r.speed),
        "pace": _number(r.pace),
        "finalTime": _seconds(r.final_time),
        "deltaTime": _seconds(r.delta_time),
        "hasFinished": r.has_finished,
        "hasFirstCrossing": r.has_first_crossing,
    }
    if delay_seconds is None:
        d["delayedLapsRemaining"] = _number(r.delayed_laps_remaining)
    else:
        d["delayedLapsRemaining"] = _number(r.get_delayed_laps_remaining(delay_seconds, now))
    return d


def race_to_dict(race: RaceData) -> Dict[str, Any]:
    return {
        "event": event_to_dict(race.event),
        "racers": [racer_to_dict(r) for r in race.racers],
        "currentTime": _seconds(race.current_time),
        "status": race.status.value,
        "lastUpdated": _iso(race.last_updated),
        "announcementMessage": race.announcement_message,
    }


def race_display_payload(race: RaceData, sort_by: str, delay_seconds: float,
                         half_lap_mode: bool, broadcast: Dict[str, str],
                         key_values: Dict[str, str], now: Optional[datetime] = None) -> Dict[str, Any]:
    """What the scoreboard pages render: sorted racers with the delayed lap count applied."""
    return {
        "status": race.status.value,
        "currentTime": _seconds(race.current_time),
        "lastUpdated": _iso(race.last_updated),
        "event": event_to_dict(race.event),
        "announcementMessage": race.announcement_message,
        "sortBy": "lane" if (sort_by or "").lower() == "lane" else "place",
        "racers": [racer_to_dict(r, delay_seconds, now) for r in sort_racers(race.racers, sort_by)],
        "halfLapModeEnabled": half_lap_mode,
        "broadcast": broadcast,
        "keyValues": key_values,
    }


# ---------------------- SSE ----------------------

def stream_race_updates(hub: RaceUpdateHub, current: Optional[Callable[[], RaceData]] = None,
                        keepalive: float = SSE_KEEPALIVE_SECONDS) -> Iterator[str]:
    """One `data:` frame per race update; comment lines keep idle proxies open.

    Subscribes on first iteration and unsubscribes when the consumer stops
    iterating (client gone, generator closed).
    """
    sub = hub.subscribe()
    try:
        if current is not None:
            yield f"data: {json.dumps(race_to_dict(current()))}\n\n"
        while True:
            snapshot = sub.get(timeout=keepalive)
            if snapshot is None:
                yield ": keep-alive\n\n"
                continue
            yield f"data: {json.dumps(race_to_dict(snapshot))}\n\n"
    finally:
        sub.close()


def announcement_bytes(message: str) -> bytes:
    body = f"{ANNOUNCEMENT_HEADER}\r\n{message}\r\n{ANNOUNCEMENT_TRAILER}\r\n"
    return body.encode("utf-16-le")


# ---------------------- App ----------------------

def create_app(state_manager: RaceStateManager, key_values: Optional[KeyValueStore] = None,
               broadcast: Optional[Dict[str, str]] = None) -> Flask:
    app = Flask(__name__)
    kv = key_values if key_values is not None else KeyValueStore()
    titles = dict(broadcast or {})
    app.config["STATE_MANAGER"] = state_manager
    app.config["KEY_VALUES"] = kv

    @app.get("/api/race/current")
    def current_race() -> ResponseReturnValue:
        return jsonify(race_to_dict(state_manager.get_current_race_state()))

    @app.get("/api/race/race-data")
    def race_data() -> ResponseReturnValue:
        settings = state_manager.settings
        payload = race_display_payload(
            state_manager.get_current_race_state(),
            sort_by=request.args.get("sortBy", "place"),
            delay_seconds=settings.delayed_display_seconds,
            half_lap_mode=settings.half_lap_mode_enabled,
            broadcast=titles,
            key_values=kv.all_values(),
        )
        return jsonify(payload)

    @app.get("/api/race/stream")
    def race_stream() -> ResponseReturnValue:
        gen = stream_race_updates(state_manager.hub, state_manager.get_current_race_state)
        return Response(gen, mimetype="text/event-stream",
                        headers={"Cache-Control": "no-cache", "X-Accel-Buffering": "no"})

    @app.post("/api/race/test-announcement")
    def test_announcement() -> ResponseReturnValue:
        payload = request.get_json(silent=True) or {}
        message = payload.get("message")
        if not isinstance(message, str) or not message.strip():
            return jsonify({"ok": False, "error": "message is required"}), 400
        handled = state_manager.process_message(announcement_bytes(message.strip()), TEST_ANNOUNCEMENT_CLIENT)
        return jsonify({"ok": handled, "message": message.strip()})

    @app.post("/api/race/pause")
    def pause_race() -> ResponseReturnValue:
        return jsonify({"ok": True, "status": state_manager.pause_race().value})

    @app.post("/api/race/resume")
    def resume_race() -> ResponseReturnValue:
        return jsonify({"ok": True, "status": state_manager.resume_race().value})

    @app.post("/api/race/reset")
    def reset_race() -> ResponseReturnValue:
        state_manager.reset_race()
        return jsonify({"ok": True, "status": state_manager.get_current_race_state().status.value})

    @app.get("/api/race/buffers")
    def buffers() -> ResponseReturnValue:
        status = state_manager.parser.buffer_status()
        return jsonify({key: {"length": length, "lastUpdated": updated}
                        for key, (length, updated) in status.items()})

    @app.get("/key-values")
    def get_key_values() -> ResponseReturnValue:
        return jsonify(kv.all_values())

    @app.post("/key-values")
    def set_key_values() -> ResponseReturnValue:
        """
        Accepts either:
        - JSON: {"key": "MeetNote", "value": "Final day"} or a plain {"k": "v", ...} map
        - form fields key / value
        A blank value removes the key.
        """
        if request.is_json:
            payload = request.get_json(silent=True)
            if not isinstance(payload, dict):
                return jsonify({"ok": False, "error": "expected a JSON object"}), 400
            if "key" in payload:
                pairs = {payload["key"]: payload.get("value")}
            else:
                pairs = payload
        else:
            key = request.form.get("key", "")
            pairs = {key: request.form.get("value")}

        for key, value in pairs.items():
            if not isinstance(key, str) or not key.strip():
                return jsonify({"ok": False, "error": "key is required"}), 400
            kv.set_value(key.strip(), None if value is None else str(value))
        return jsonify({"ok": True, "values": kv.all_values()})

    return app


def broadcast_titles(cfg) -> Dict[str, str]:
    return {
        "meetTitle": cfg.broadcast.meet_title,
        "eventName": cfg.broadcast.event_name,
        "unofficialResultsText": cfg.broadcast.unofficial_results_text,
    }


def main():
    from lynx_config import CFG
    from socket_listener import build_pipeline
    logging.basicConfig(level=logging.INFO, format="%(asctime)s %(levelname)s %(message)s")
    manager, _ = build_pipeline(capture=False)
    app = create_app(manager, KeyValueStore(), broadcast_titles(CFG))
    app.run(host=CFG.http.host, port=CFG.http.port, debug=False, use_reloader=False, threaded=True)


if __name__ == "__main__":
    main()
