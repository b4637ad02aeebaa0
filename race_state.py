# race_state.py
from __future__ import annotations

import copy
import enum
import logging
import queue
import threading
from dataclasses import dataclass
from datetime import datetime
from typing import Callable, Dict, List, Optional, Protocol, Tuple

from message_parser import (
    MessageKind, MessageParser, decode_message, detect_sections,
    is_lap_count_only_update, parse_announcement, parse_event_header,
    parse_results_racers, parse_running_time, parse_start_list_racers,
    parse_started_racers,
)
from race_data import DEFAULT_DELAY_SECONDS, RaceData, RaceEvent, RaceStatus, Racer, utcnow

logger = logging.getLogger(__name__)


@dataclass
class LapCounterSettings:
    delayed_display_seconds: int = DEFAULT_DELAY_SECONDS
    half_lap_mode_enabled: bool = False


class CaptureSink(Protocol):
    """Fire-and-forget side channel; must never block or raise."""

    def log_raw_bytes(self, data: bytes, client_info: str) -> None: ...

    def log_start_list_summary(self, event: Optional[RaceEvent], racers: List[Racer], client_info: str) -> None: ...


# ---------------------- Status transitions ----------------------

class Trigger(str, enum.Enum):
    RUNNING_TIME = "running_time"
    STARTED = "started"
    RESULTS = "results"
    START_LIST = "start_list"
    PAUSE = "pause"
    RESUME = "resume"


# (status, trigger) -> (next status, run the race-start lap adjustment)
TRANSITIONS: Dict[Tuple[RaceStatus, Trigger], Tuple[RaceStatus, bool]] = {
    (RaceStatus.NOT_STARTED, Trigger.RUNNING_TIME): (RaceStatus.RUNNING, True),
    (RaceStatus.NOT_STARTED, Trigger.STARTED): (RaceStatus.RUNNING, True),
    (RaceStatus.PAUSED, Trigger.STARTED): (RaceStatus.RUNNING, False),
    (RaceStatus.FINISHED, Trigger.STARTED): (RaceStatus.RUNNING, False),
    (RaceStatus.NOT_STARTED, Trigger.RESULTS): (RaceStatus.FINISHED, False),
    (RaceStatus.RUNNING, Trigger.RESULTS): (RaceStatus.FINISHED, False),
    (RaceStatus.PAUSED, Trigger.RESULTS): (RaceStatus.FINISHED, False),
    (RaceStatus.RUNNING, Trigger.START_LIST): (RaceStatus.NOT_STARTED, False),
    (RaceStatus.PAUSED, Trigger.START_LIST): (RaceStatus.NOT_STARTED, False),
    (RaceStatus.FINISHED, Trigger.START_LIST): (RaceStatus.NOT_STARTED, False),
    (RaceStatus.RUNNING, Trigger.PAUSE): (RaceStatus.PAUSED, False),
    (RaceStatus.PAUSED, Trigger.RESUME): (RaceStatus.RUNNING, False),
}


def next_status(status: RaceStatus, trigger: Trigger) -> Tuple[RaceStatus, bool]:
    return TRANSITIONS.get((status, trigger), (status, False))


# ---------------------- Update hub ----------------------

class Subscription:
    def __init__(self, hub: "RaceUpdateHub", maxsize: int):
        self._hub = hub
        self.queue: "queue.Queue[RaceData]" = queue.Queue(maxsize=maxsize)

    def get(self, timeout: Optional[float] = None) -> Optional[RaceData]:
        try:
            return self.queue.get(timeout=timeout)
        except queue.Empty:
            return None

    def close(self) -> None:
        self._hub.unsubscribe(self)

    def __enter__(self) -> "Subscription":
        return self

    def __exit__(self, *exc) -> None:
        self.close()


class RaceUpdateHub:
    """Broadcasts race snapshots to queue subscribers and plain callbacks."""

    def __init__(self, queue_size: int = 16):
        self.queue_size = queue_size
        self._subs: List[Subscription] = []
        self._listeners: List[Callable[[RaceData], None]] = []
        self._lock = threading.Lock()

    def subscribe(self) -> Subscription:
        sub = Subscription(self, self.queue_size)
        with self._lock:
            self._subs.append(sub)
        return sub

    def unsubscribe(self, sub: Subscription) -> None:
        with self._lock:
            if sub in self._subs:
                self._subs.remove(sub)

    def add_listener(self, fn: Callable[[RaceData], None]) -> None:
        with self._lock:
            self._listeners.append(fn)

    def remove_listener(self, fn: Callable[[RaceData], None]) -> None:
        with self._lock:
            if fn in self._listeners:
                self._listeners.remove(fn)

    @property
    def subscriber_count(self) -> int:
        with self._lock:
            return len(self._subs)

    def publish(self, snapshot: RaceData) -> None:
        with self._lock:
            subs = list(self._subs)
            listeners = list(self._listeners)
        for sub in subs:
            # slow readers lose the oldest frame, never block ingest
            while True:
                try:
                    sub.queue.put_nowait(snapshot)
                    break
                except queue.Full:
                    try:
                        sub.queue.get_nowait()
                    except queue.Empty:
                        pass
        for fn in listeners:
            try:
                fn(snapshot)
            except Exception:
                logger.exception("Race update listener failed")


# ---------------------- State manager ----------------------

class RaceStateManager:
    """Owns the live race and applies every inbound message to it.

    One lock covers each read-modify-write; readers get deep copies.
    """

    def __init__(self, parser: MessageParser, settings: Optional[LapCounterSettings] = None,
                 capture: Optional[CaptureSink] = None, hub: Optional[RaceUpdateHub] = None,
                 clock: Callable[[], datetime] = utcnow):
        self.parser = parser
        self.settings = settings or LapCounterSettings()
        self.capture = capture
        self.hub = hub or RaceUpdateHub()
        self._clock = clock
        self._race = RaceData(last_updated=clock())
        self._lock = threading.Lock()
        self._handlers: Dict[MessageKind, Callable[[str, str], None]] = {
            MessageKind.RUNNING_TIME: self._apply_running_time,
            MessageKind.START_LIST: self._apply_start_list,
            MessageKind.STARTED: self._apply_started,
            MessageKind.RESULTS: self._apply_results,
            MessageKind.ANNOUNCEMENT: self._apply_announcement,
        }

    # ---- readers ----

    def get_current_race_state(self) -> RaceData:
        with self._lock:
            return copy.deepcopy(self._race)

    # ---- ingest ----

    def process_message(self, data: bytes, client_info: str) -> bool:
        """Run one raw chunk through decode -> classify -> merge -> notify.

        Returns True when the chunk changed/notified race state.
        """
        try:
            if self.capture is not None:
                self.capture.log_raw_bytes(data, client_info)

            text = decode_message(data)
            if not text.strip():
                logger.warning("Received empty or undecodable message from %s", client_info)
                return False
            if logger.isEnabledFor(logging.DEBUG):
                logger.debug("Sections from %s: %s", client_info, ", ".join(detect_sections(text)) or "none")

            classified = self.parser.process_message(text, client_info)
            if classified.pending:
                logger.debug("Message from %s buffered, waiting for completion", client_info)
                return False
            handler = self._handlers.get(classified.kind)
            if handler is None:
                logger.warning("Unknown message type from %s: %r", client_info, classified.text[:200])
                return False
            if classified.kind is not MessageKind.RUNNING_TIME:
                logger.info("Processing %s message from %s", classified.kind.value, client_info)

            with self._lock:
                handler(classified.text, client_info)
                snapshot = self._snapshot_locked()
            self.hub.publish(snapshot)
            return True
        except Exception:
            logger.exception("Error processing message from %s", client_info)
            return False

    def pause_race(self) -> RaceStatus:
        return self._manual(Trigger.PAUSE)

    def resume_race(self) -> RaceStatus:
        return self._manual(Trigger.RESUME)

    def reset_race(self) -> None:
        with self._lock:
            self._race = RaceData(last_updated=self._clock())
            logger.info("Race state manually reset - all data cleared")
            snapshot = self._snapshot_locked()
        self.hub.publish(snapshot)

    # ---- internals ----

    def _manual(self, trigger: Trigger) -> RaceStatus:
        with self._lock:
            before = self._race.status
            self._fire(trigger)
            status = self._race.status
            snapshot = self._snapshot_locked() if status is not before else None
        # listeners may read the manager, so they run outside the lock
        if snapshot is not None:
            self.hub.publish(snapshot)
        return status

    def _snapshot_locked(self) -> RaceData:
        self._race.last_updated = self._clock()
        return copy.deepcopy(self._race)

    def _fire(self, trigger: Trigger) -> None:
        status, race_start = next_status(self._race.status, trigger)
        if status is not self._race.status:
            logger.info("Race status %s -> %s (%s)", self._race.status.value, status.value, trigger.value)
            self._race.status = status
        if race_start:
            self._half_lap_race_start()

    def _apply_running_time(self, text: str, client_info: str) -> None:
        running = parse_running_time(text)
        if running is None:
            return
        self._race.current_time = running
        self._fire(Trigger.RUNNING_TIME)

    def _apply_start_list(self, text: str, client_info: str) -> None:
        logger.info("Start list received - clearing existing race state and loading new race")
        self._fire(Trigger.START_LIST)
        now = self._clock()
        race = RaceData(last_updated=now)
        race.event = parse_event_header(text)
        race.racers = parse_start_list_racers(text)
        for racer in race.racers:
            racer.initialize_delayed_lap_count(now)
        self._race = race

        if race.racers:
            logger.info("Loaded new racer list with %d racers", len(race.racers))
        else:
            logger.warning("No racers parsed from start list message")
        if race.event is not None:
            logger.info("Loaded new event: %s (event %s, round %s, heat %s)", race.event.event_name,
                        race.event.event_number, race.event.round_number, race.event.heat_number)
        if self.capture is not None:
            self.capture.log_start_list_summary(race.event, copy.deepcopy(race.racers), client_info)

    def _apply_started(self, text: str, client_info: str) -> None:
        self._fire(Trigger.STARTED)
        event = parse_event_header(text)
        if event is not None:
            self._race.event = event

        racers = parse_started_racers(text)
        if not racers:
            return
        skip_delay = is_lap_count_only_update(racers)
        now = self._clock()
        for incoming in racers:
            existing = self._race.find_racer(incoming.lane)
            if existing is None:
                incoming.initialize_delayed_lap_count(now)
                self._race.racers.append(incoming)
                continue
            existing.place = incoming.place
            existing.reaction_time = incoming.reaction_time
            existing.cumulative_split_time = incoming.cumulative_split_time
            existing.last_split_time = incoming.last_split_time
            existing.best_split_time = incoming.best_split_time
            existing.update_laps_remaining(incoming.laps_remaining, skip_delay=skip_delay, now=now)
            existing.speed = incoming.speed
            existing.pace = incoming.pace
        logger.info("Updated racer progress for %d racers%s", len(racers),
                    " (lap counts only)" if skip_delay else "")

    def _apply_results(self, text: str, client_info: str) -> None:
        event = parse_event_header(text)
        if event is not None:
            self._race.event = event

        racers = parse_results_racers(text)
        logger.info("Parsed %d racers from results message", len(racers))
        if not racers:
            return
        for incoming in racers:
            existing = self._race.find_racer(incoming.lane)
            if existing is None:
                self._race.racers.append(incoming)
                continue
            existing.place = incoming.place
            existing.final_time = incoming.final_time
            existing.delta_time = incoming.delta_time
            existing.reaction_time = incoming.reaction_time
            existing.has_finished = incoming.has_finished
        self._fire(Trigger.RESULTS)

    def _apply_announcement(self, text: str, client_info: str) -> None:
        message = parse_announcement(text)
        self._race.announcement_message = message
        if message:
            logger.info("Updated announcement message: %s", message)
        else:
            logger.info("Cleared announcement message")

    def _half_lap_race_start(self) -> None:
        if not self.settings.half_lap_mode_enabled:
            return
        now = self._clock()
        if self._race.has_half_lap_laps():
            # the timing software manages half-lap counts from here on
            logger.info("Half-lap mode: half-lap race detected, restamping lap counters")
            for racer in self._race.racers:
                racer.lap_count_last_changed = now
        else:
            logger.info("Half-lap mode: whole-lap race, holding pre-start lap count for one delay window")
            for racer in self._race.racers:
                racer.set_delayed_laps_remaining(racer.laps_remaining + 1, now)
