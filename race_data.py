# race_data.py
from __future__ import annotations

import enum
import re
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from typing import List, Optional, Tuple

DEFAULT_DELAY_SECONDS = 5
_INT_PAT = re.compile(r"^\+?\d+$")
_INT32_MAX = 2**31 - 1


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class RaceStatus(str, enum.Enum):
    NOT_STARTED = "NotStarted"
    RUNNING = "Running"
    PAUSED = "Paused"
    FINISHED = "Finished"


class StartType(str, enum.Enum):
    AUTO = "Auto"
    MANUAL = "Manual"


# ---------------------- Place ----------------------

class PlaceRank:
    """Place token with scoreboard ordering.

    Positive integers first (by value), then blanks (all equal), then any
    other text such as DNF/DNS/DSQ (ordinal). "0", "-1" and "1.5" are text.
    """

    __slots__ = ("_text",)

    def __init__(self, text: Optional[str] = None):
        self._text = (text or "").strip()

    @property
    def text(self) -> str:
        return self._text

    @property
    def has_place_data(self) -> bool:
        return self._text != ""

    def sort_key(self) -> Tuple[int, object]:
        t = self._text
        if _INT_PAT.match(t):
            value = int(t)
            if 0 < value <= _INT32_MAX:
                return (1, value)
        if t == "":
            return (2, 0)
        return (3, t)

    def compare_to(self, other: Optional["PlaceRank"]) -> int:
        if other is None:
            return 1
        a, b = self.sort_key(), other.sort_key()
        return (a > b) - (a < b)

    def __lt__(self, other: "PlaceRank") -> bool:
        if not isinstance(other, PlaceRank):
            return NotImplemented
        return self.sort_key() < other.sort_key()

    def __le__(self, other: "PlaceRank") -> bool:
        if not isinstance(other, PlaceRank):
            return NotImplemented
        return self.sort_key() <= other.sort_key()

    def __gt__(self, other: "PlaceRank") -> bool:
        if not isinstance(other, PlaceRank):
            return NotImplemented
        return self.sort_key() > other.sort_key()

    def __ge__(self, other: "PlaceRank") -> bool:
        if not isinstance(other, PlaceRank):
            return NotImplemented
        return self.sort_key() >= other.sort_key()

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, PlaceRank):
            return NotImplemented
        return self.sort_key() == other.sort_key()

    def __hash__(self) -> int:
        return hash(self.sort_key())

    def __repr__(self) -> str:
        return f"PlaceRank({self._text!r})"

    def __str__(self) -> str:
        return self._text


# ---------------------- Event / racer ----------------------

@dataclass(frozen=True)
class RaceEvent:
    event_name: str = ""
    wind: str = ""
    event_number: str = ""
    round_number: int = 0
    heat_number: int = 0
    eee_r_hh_name: str = ""
    start_type: StartType = StartType.AUTO
    is_official: bool = False
    number_of_results: int = 0


@dataclass
class Racer:
    lane: int = 0
    id: int = 0
    name: str = ""
    affiliation: str = ""
    place: PlaceRank = field(default_factory=PlaceRank)
    reaction_time: Optional[timedelta] = None
    cumulative_split_time: Optional[timedelta] = None
    last_split_time: Optional[timedelta] = None
    best_split_time: Optional[timedelta] = None
    laps_remaining: Decimal = Decimal(0)
    delayed_laps_remaining: Decimal = Decimal(0)
    lap_count_last_changed: Optional[datetime] = None
    speed: Optional[Decimal] = None
    pace: Optional[Decimal] = None
    final_time: Optional[timedelta] = None
    delta_time: Optional[timedelta] = None
    has_finished: bool = False

    @property
    def has_first_crossing(self) -> bool:
        return self.cumulative_split_time is not None or self.last_split_time is not None

    @property
    def has_half_lap(self) -> bool:
        return self.laps_remaining % 1 == Decimal("0.5")

    def initialize_delayed_lap_count(self, now: Optional[datetime] = None) -> None:
        self.delayed_laps_remaining = self.laps_remaining
        self.lap_count_last_changed = now or utcnow()

    def set_delayed_laps_remaining(self, value: Decimal, now: Optional[datetime] = None) -> None:
        self.delayed_laps_remaining = value
        self.lap_count_last_changed = now or utcnow()

    def update_laps_remaining(self, new_value: Decimal, skip_delay: bool = False,
                              now: Optional[datetime] = None) -> None:
        """Record a new lap count.

        Normal path keeps the previous count visible for the delay window,
        except on the first real sighting (delayed 0 -> positive). The
        skip-delay path shows the new count at once and is a no-op when the
        count is unchanged.
        """
        if self.laps_remaining == new_value:
            return
        stamp = now or utcnow()
        if skip_delay:
            self.laps_remaining = new_value
            self.delayed_laps_remaining = new_value
            self.lap_count_last_changed = stamp
            return

        self.delayed_laps_remaining = self.laps_remaining
        self.lap_count_last_changed = stamp
        self.laps_remaining = new_value
        if self.delayed_laps_remaining == 0 and new_value > 0:
            self.delayed_laps_remaining = new_value

    def get_delayed_laps_remaining(self, delay_seconds: float = DEFAULT_DELAY_SECONDS,
                                   now: Optional[datetime] = None) -> Decimal:
        # 0 means done for this lane; viewers show a dash straight away
        if self.laps_remaining <= 0:
            return Decimal(0)
        if self.lap_count_last_changed is None:
            return self.laps_remaining
        elapsed = ((now or utcnow()) - self.lap_count_last_changed).total_seconds()
        if elapsed >= delay_seconds:
            return self.laps_remaining
        return self.delayed_laps_remaining


@dataclass
class RaceData:
    event: Optional[RaceEvent] = None
    racers: List[Racer] = field(default_factory=list)
    current_time: Optional[timedelta] = None
    status: RaceStatus = RaceStatus.NOT_STARTED
    last_updated: datetime = field(default_factory=utcnow)
    announcement_message: Optional[str] = None

    def find_racer(self, lane: int) -> Optional[Racer]:
        for r in self.racers:
            if r.lane == lane:
                return r
        return None

    def has_half_lap_laps(self) -> bool:
        return any(r.has_half_lap for r in self.racers)


def sort_racers(racers: List[Racer], sort_by: str = "place") -> List[Racer]:
    if (sort_by or "").lower() == "lane":
        return sorted(racers, key=lambda r: r.lane)
    return sorted(racers, key=lambda r: (r.place.sort_key(), r.lane))
