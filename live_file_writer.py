# live_file_writer.py
from __future__ import annotations

import logging
import threading
from datetime import date, datetime
from pathlib import Path
from typing import Optional

from race_data import RaceData, sort_racers
from time_parse import format_duration

logger = logging.getLogger(__name__)


def render_live_race_info(race: RaceData, now: Optional[datetime] = None) -> str:
    stamp = (now or datetime.now()).strftime("%Y-%m-%d %H:%M:%S")
    out = [f"=== Live Race Info - {stamp} ==="]
    out.append(f"Elapsed Time: {format_duration(race.current_time, 1)}")
    out.append(f"Race Status: {race.status.value}")
    if race.event is not None:
        out.append(f"Event: {race.event.event_name}")
    out.append("")

    if race.racers:
        out.append(f"## Number of racers ##: {len(race.racers)}")
        out.append("Current Standings:")
        out.append("Lane | Place | Last Split | Final Time | Laps Remaining | Name")
        out.append("-----|-------|------------|------------|----------------|-----")
        placed = [r for r in sort_racers(race.racers, "place") if r.place.has_place_data]
        unplaced = sorted((r for r in race.racers if not r.place.has_place_data), key=lambda r: r.lane)
        for r in placed:
            out.append(_row(r.lane, r.place.text, r))
        if unplaced:
            out.append("")
            out.append("Unplaced Racers:")
            for r in unplaced:
                out.append(_row(r.lane, "--", r))
    else:
        out.append("No racers in current race")

    out.append("")
    out.append("==========================================")
    out.append("")
    return "\n".join(out) + "\n"


def _row(lane: int, place: str, r) -> str:
    name = r.name.strip() or f"Racer {lane}"
    return (f"{lane:>4} | {place:>5} | {format_duration(r.last_split_time):>10} | "
            f"{format_duration(r.final_time):>10} | {str(r.laps_remaining):>14} | {name}")


class LiveRaceFileWriter:
    """Appends a standings block to live_race_info.<date>.txt every interval."""

    def __init__(self, state_manager, log_dir: Path, interval: float = 5.0, enabled: bool = True):
        self.state_manager = state_manager
        self.log_dir = Path(log_dir)
        self.interval = interval
        self.enabled = enabled
        self._stop = threading.Event()
        self._thread: Optional[threading.Thread] = None

    @property
    def output_path(self) -> Path:
        return self.log_dir / f"live_race_info.{date.today().isoformat()}.txt"

    def write_once(self) -> None:
        if not self.enabled:
            return
        race = self.state_manager.get_current_race_state()
        self.log_dir.mkdir(parents=True, exist_ok=True)
        with open(self.output_path, "a", encoding="utf-8") as f:
            f.write(render_live_race_info(race))

    def start(self) -> None:
        logger.info("Live race file writer started. Writing to: %s", self.output_path)
        self._thread = threading.Thread(target=self._run, name="live-race-writer", daemon=True)
        self._thread.start()

    def _run(self) -> None:
        while not self._stop.is_set():
            try:
                self.write_once()
            except Exception:
                logger.exception("Error writing live race info to file")
            self._stop.wait(self.interval)
        logger.info("Live race file writer stopped")

    def stop(self, timeout: float = 5.0) -> None:
        self._stop.set()
        if self._thread is not None:
            self._thread.join(timeout)
