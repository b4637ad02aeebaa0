import threading
from datetime import datetime, timedelta, timezone
from decimal import Decimal

import pytest

from message_parser import MessageParser
from race_data import RaceStatus
from race_state import (
    LapCounterSettings, RaceStateManager, RaceUpdateHub, Trigger, next_status,
)
from tests.lynx_messages import (
    EVENT_500M, TWO_RACERS, results_line, results_message, running_time_message,
    start_list_message, started_line, started_message, wire,
)

T0 = datetime(2025, 2, 1, 10, 0, 0, tzinfo=timezone.utc)


class StepClock:
    def __init__(self, now: datetime = T0):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += timedelta(seconds=seconds)


class RecordingCapture:
    def __init__(self):
        self.chunks = []
        self.summaries = []

    def log_raw_bytes(self, data, client_info):
        self.chunks.append((data, client_info))

    def log_start_list_summary(self, event, racers, client_info):
        self.summaries.append((event, racers, client_info))


@pytest.fixture
def clock():
    return StepClock()


@pytest.fixture
def updates():
    return []


@pytest.fixture
def manager(clock, updates):
    m = RaceStateManager(MessageParser(), LapCounterSettings(), clock=clock)
    m.hub.add_listener(updates.append)
    return m


def feed(manager, text, client="10.0.0.5:5000 (TIMING)"):
    return manager.process_message(wire(text), client)


# ---------------------- Transitions ----------------------

def test_transition_table():
    assert next_status(RaceStatus.NOT_STARTED, Trigger.RUNNING_TIME) == (RaceStatus.RUNNING, True)
    assert next_status(RaceStatus.RUNNING, Trigger.RUNNING_TIME) == (RaceStatus.RUNNING, False)
    assert next_status(RaceStatus.FINISHED, Trigger.RUNNING_TIME) == (RaceStatus.FINISHED, False)
    assert next_status(RaceStatus.FINISHED, Trigger.STARTED) == (RaceStatus.RUNNING, False)
    assert next_status(RaceStatus.RUNNING, Trigger.RESULTS) == (RaceStatus.FINISHED, False)
    assert next_status(RaceStatus.FINISHED, Trigger.START_LIST) == (RaceStatus.NOT_STARTED, False)
    assert next_status(RaceStatus.NOT_STARTED, Trigger.PAUSE) == (RaceStatus.NOT_STARTED, False)


# ---------------------- Ingest ----------------------

def test_start_list_loads_new_race(manager, updates):
    assert feed(manager, start_list_message(TWO_RACERS, EVENT_500M))
    race = manager.get_current_race_state()
    assert race.status is RaceStatus.NOT_STARTED
    assert race.event.event_name == "Women 500m Final"
    assert [r.lane for r in race.racers] == [1, 2]
    assert all(r.delayed_laps_remaining == 9 for r in race.racers)
    assert len(updates) == 1


def test_running_time_starts_race(manager, clock):
    feed(manager, start_list_message(TWO_RACERS))
    clock.advance(1)
    assert feed(manager, running_time_message("1:05.2"))
    race = manager.get_current_race_state()
    assert race.status is RaceStatus.RUNNING
    assert race.current_time == timedelta(seconds=65.2)
    assert race.last_updated == clock.now


def test_end_to_end_race(manager, updates):
    feed(manager, start_list_message(TWO_RACERS, EVENT_500M))
    feed(manager, started_message([
        started_line("1", 1, cumulative="20.1", last="10.0", best="10.0", laps="8"),
        started_line("", 2, cumulative="20.4", last="10.3", best="10.1", laps="8"),
    ]))
    before = manager.get_current_race_state().find_racer(2)

    feed(manager, results_message(
        [results_line("1", 1, 100, "Person mcPersonFace", "Ottawa SSC", "41.20", "41.200")],
        {"OFFICIAL/UNOFFICIAL": "OFFICIAL", "Event name": "Women 500m Final"},
    ), client="10.0.0.5:5001 (RESULTS)")

    race = manager.get_current_race_state()
    assert race.status is RaceStatus.FINISHED
    assert race.event.is_official
    lane1 = race.find_racer(1)
    assert lane1.place.text == "1"
    assert lane1.final_time == timedelta(seconds=41.2)
    assert lane1.has_finished
    lane2 = race.find_racer(2)
    assert lane2 == before
    assert not lane2.has_finished
    assert len(updates) == 3


def test_started_is_idempotent(manager, clock):
    feed(manager, start_list_message(TWO_RACERS))
    msg = started_message([
        started_line("1", 1, cumulative="20.1", last="10.0", laps="8"),
        started_line("2", 2, cumulative="20.4", last="10.3", laps="8"),
    ])
    feed(manager, msg)
    first = manager.get_current_race_state()
    clock.advance(2)
    feed(manager, msg)
    second = manager.get_current_race_state()
    assert second.racers == first.racers
    assert len(second.racers) == 2


def test_lap_change_is_delayed(manager, clock):
    feed(manager, start_list_message(TWO_RACERS))
    feed(manager, started_message([started_line("1", 1, cumulative="20.1", last="10.0", laps="8")]))
    lane1 = manager.get_current_race_state().find_racer(1)
    assert lane1.laps_remaining == 8
    assert lane1.get_delayed_laps_remaining(5, now=clock.now + timedelta(seconds=2)) == 9
    assert lane1.get_delayed_laps_remaining(5, now=clock.now + timedelta(seconds=5)) == 8


def test_lap_count_only_update_skips_delay(manager, clock):
    feed(manager, start_list_message(TWO_RACERS))
    feed(manager, started_message([started_line("", 1, laps="8"), started_line("", 2, laps="7")]))
    race = manager.get_current_race_state()
    assert race.find_racer(1).get_delayed_laps_remaining(5, now=clock.now) == 8
    assert race.find_racer(2).get_delayed_laps_remaining(5, now=clock.now) == 7


def test_started_adds_unknown_lane(manager):
    feed(manager, start_list_message(TWO_RACERS))
    feed(manager, started_message([started_line("3", 5, cumulative="21.0", laps="8")]))
    race = manager.get_current_race_state()
    assert [r.lane for r in race.racers] == [1, 2, 5]


def test_new_start_list_resets_race(manager):
    feed(manager, start_list_message(TWO_RACERS, EVENT_500M))
    feed(manager, running_time_message("30.0"))
    feed(manager, start_list_message([(4, 400, "Next Heat", "Club", "4")]))
    race = manager.get_current_race_state()
    assert race.status is RaceStatus.NOT_STARTED
    assert race.event is None
    assert race.current_time is None
    assert [r.lane for r in race.racers] == [4]


def test_buffered_fragment_does_not_notify(manager, updates):
    msg = start_list_message(TWO_RACERS)
    cut = msg.index("1   100")
    assert feed(manager, msg[:cut]) is False
    assert updates == []
    assert feed(manager, msg[cut:]) is True
    assert len(updates) == 1
    assert len(manager.get_current_race_state().racers) == 2


def test_unknown_and_empty_messages_are_ignored(manager, updates):
    assert manager.process_message(wire("nothing to see here\r\n"), "x") is False
    assert manager.process_message(b"", "x") is False
    assert updates == []


def test_announcement(manager):
    feed(manager, "*** AnnouncementHeader ***\r\nBreak for 10 minutes\r\n*** AnnouncementTrailer ***\r\n")
    assert manager.get_current_race_state().announcement_message == "Break for 10 minutes"


def test_capture_side_channel():
    capture = RecordingCapture()
    m = RaceStateManager(MessageParser(), capture=capture)
    m.process_message(wire(start_list_message(TWO_RACERS)), "c")
    m.process_message(wire(running_time_message("1.0")), "c")
    assert len(capture.chunks) == 2
    assert len(capture.summaries) == 1
    event, racers, client = capture.summaries[0]
    assert event is None
    assert len(racers) == 2
    assert client == "c"


def test_snapshots_are_copies(manager):
    feed(manager, start_list_message(TWO_RACERS))
    snap = manager.get_current_race_state()
    snap.racers.clear()
    assert len(manager.get_current_race_state().racers) == 2


# ---------------------- Half-lap mode ----------------------

def test_half_lap_mode_whole_lap_race(clock):
    m = RaceStateManager(MessageParser(), LapCounterSettings(half_lap_mode_enabled=True), clock=clock)
    feed(m, start_list_message(TWO_RACERS))
    clock.advance(1)
    feed(m, running_time_message("0.1"))
    lane1 = m.get_current_race_state().find_racer(1)
    assert lane1.laps_remaining == 9
    assert lane1.get_delayed_laps_remaining(5, now=clock.now + timedelta(seconds=1)) == 10
    assert lane1.get_delayed_laps_remaining(5, now=clock.now + timedelta(seconds=5)) == 9


def test_half_lap_mode_half_lap_race(clock):
    m = RaceStateManager(MessageParser(), LapCounterSettings(half_lap_mode_enabled=True), clock=clock)
    feed(m, start_list_message([(1, 100, "A", "X", "4 1/2"), (2, 200, "B", "Y", "4 1/2")]))
    clock.advance(3)
    feed(m, running_time_message("0.1"))
    lane1 = m.get_current_race_state().find_racer(1)
    assert lane1.lap_count_last_changed == clock.now
    assert lane1.delayed_laps_remaining == Decimal("4.5")


def test_race_start_adjustment_only_once(clock):
    m = RaceStateManager(MessageParser(), LapCounterSettings(half_lap_mode_enabled=True), clock=clock)
    feed(m, start_list_message(TWO_RACERS))
    feed(m, running_time_message("0.1"))
    clock.advance(10)
    feed(m, running_time_message("10.1"))
    assert m.get_current_race_state().find_racer(1).delayed_laps_remaining == 10
    assert m.get_current_race_state().find_racer(1).lap_count_last_changed == T0


# ---------------------- Manual controls ----------------------

def test_pause_resume_reset(manager, updates):
    assert manager.pause_race() is RaceStatus.NOT_STARTED
    assert updates == []

    feed(manager, start_list_message(TWO_RACERS))
    feed(manager, running_time_message("5.0"))
    assert manager.pause_race() is RaceStatus.PAUSED
    assert manager.resume_race() is RaceStatus.RUNNING

    count = len(updates)
    manager.reset_race()
    race = manager.get_current_race_state()
    assert race.racers == []
    assert race.status is RaceStatus.NOT_STARTED
    assert len(updates) == count + 1


# ---------------------- Hub ----------------------

def test_hub_subscription_lifecycle():
    hub = RaceUpdateHub(queue_size=2)
    with hub.subscribe() as sub:
        assert hub.subscriber_count == 1
        for i in range(3):
            hub.publish(i)
        assert sub.get(timeout=0.1) == 1
        assert sub.get(timeout=0.1) == 2
        assert sub.get(timeout=0.01) is None
    assert hub.subscriber_count == 0


def test_failing_listener_does_not_break_publish():
    hub = RaceUpdateHub()
    seen = []

    def boom(_):
        raise RuntimeError("listener bug")

    hub.add_listener(boom)
    hub.add_listener(seen.append)
    hub.publish("snapshot")
    assert seen == ["snapshot"]
    hub.remove_listener(boom)


# ---------------------- Concurrency ----------------------

def test_concurrent_connections_do_not_lose_updates(clock):
    lanes = list(range(1, 9))
    m = RaceStateManager(MessageParser(), clock=clock)
    feed(m, start_list_message([(lane, lane * 100, f"Racer {lane}", "Club", "20") for lane in lanes]))

    def connection(lane):
        for laps in range(19, 9, -1):
            msg = started_message([started_line("", lane, cumulative=f"{30 - laps}.5", laps=str(laps))])
            m.process_message(wire(msg), f"10.0.0.{lane}:5000 (TIMING)")

    threads = [threading.Thread(target=connection, args=(lane,)) for lane in lanes]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    race = m.get_current_race_state()
    assert len(race.racers) == len(lanes)
    for lane in lanes:
        racer = race.find_racer(lane)
        assert racer.laps_remaining == 10
        assert racer.cumulative_split_time == timedelta(seconds=20.5)


def test_listener_can_read_manager_during_update(clock):
    m = RaceStateManager(MessageParser(), clock=clock)
    seen = []

    def on_update(_):
        seen.append(m.get_current_race_state().status)
        m.pause_race()

    m.hub.add_listener(on_update)
    worker = threading.Thread(target=feed, args=(m, start_list_message(TWO_RACERS)), daemon=True)
    worker.start()
    worker.join(2.0)
    assert not worker.is_alive()
    assert seen == [RaceStatus.NOT_STARTED]

    worker = threading.Thread(target=m.reset_race, daemon=True)
    worker.start()
    worker.join(2.0)
    assert not worker.is_alive()
    assert len(seen) == 2
