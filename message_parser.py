# message_parser.py
from __future__ import annotations

import enum
import logging
import re
import threading
import time
import unicodedata
from dataclasses import dataclass
from datetime import timedelta
from decimal import Decimal, InvalidOperation
from typing import Callable, Dict, List, NamedTuple, Optional, Tuple

from fixed_width import trim_extract, trim_extract_str
from race_data import PlaceRank, RaceEvent, Racer, StartType
from time_parse import parse_duration, parse_laps

logger = logging.getLogger(__name__)

# ==========================
# Protocol markers
# ==========================
RUNNING_TIME_MARKER = "Running time:"
START_LIST_HEADER = "*** StartListHeader ***"
STARTED_HEADER = "*** StartedHeader ***"
RESULTS_HEADER = "*** ResultsHeader"
ANNOUNCEMENT_HEADER = "*** AnnouncementHeader ***"
ANNOUNCEMENT_TRAILER = "*** AnnouncementTrailer ***"
TRAILER = "*** StartList/Started/ResultsTrailer ***"

BUFFER_TIMEOUT_SECONDS = 5.0

_RACER_LINE_PAT = re.compile(r"^\d+\s+\d+\s+")
_RUNNING_TIME_PAT = re.compile(r"Running time:\s*(?:(\d+):)?(\d+(?:\.\d+)?)")

# label -> section name, for diagnostics only
_SECTION_MARKERS: Tuple[Tuple[str, str], ...] = (
    ("Running time", "TimeRunning"),
    ("Stopped time", "TimeStopped"),
    ("Gun time", "TimeGun"),
    ("Break time", "TimeBreak"),
    ("StartListHeader", "StartListHeader"),
    ("StartedHeader", "StartedHeader"),
    ("ResultsHeader", "ResultsHeader"),
    ("AnnouncementHeader", "Announcement"),
    ("Wind", "Wind"),
)


class MessageKind(str, enum.Enum):
    RUNNING_TIME = "RunningTime"
    START_LIST = "StartListHeader"
    STARTED = "StartedHeader"
    RESULTS = "ResultsHeader"
    ANNOUNCEMENT = "Announcement"
    UNKNOWN = "Unknown"


class Classified(NamedTuple):
    kind: MessageKind
    text: str

    @property
    def pending(self) -> bool:
        """True while a start list is still being reassembled."""
        return self.kind is MessageKind.UNKNOWN and self.text == ""


PENDING = Classified(MessageKind.UNKNOWN, "")

# ---------------------- Decoding ----------------------

def _is_texty(c: str) -> bool:
    return c.isalnum() or c.isspace() or unicodedata.category(c).startswith("P")


def decode_message(data: bytes) -> str:
    """Guess the encoding of one inbound chunk; '' when it looks like noise.

    FinishLynx sends UTF-16LE, so try that first when the byte count allows.
    """
    if not data:
        return ""
    if len(data) % 2 == 0:
        utf16 = data.decode("utf-16-le", errors="replace")
        if utf16 and sum(1 for c in utf16 if _is_texty(c)) / len(utf16) >= 0.7:
            return utf16
    printable = sum(1 for b in data if 32 <= b <= 126)
    if printable / len(data) >= 0.8:
        return data.decode("utf-8", errors="replace")
    return ""


def detect_sections(text: str) -> List[str]:
    return [name for marker, name in _SECTION_MARKERS if marker in text]


def classify(text: str) -> MessageKind:
    if RUNNING_TIME_MARKER in text:
        return MessageKind.RUNNING_TIME
    if START_LIST_HEADER in text:
        return MessageKind.START_LIST
    if STARTED_HEADER in text:
        return MessageKind.STARTED
    if RESULTS_HEADER in text:
        return MessageKind.RESULTS
    if ANNOUNCEMENT_HEADER in text:
        return MessageKind.ANNOUNCEMENT
    return MessageKind.UNKNOWN


def is_start_list_continuation(text: str) -> bool:
    for line in text.split("\n"):
        line = line.strip()
        if not line:
            continue
        if _RACER_LINE_PAT.match(line) or TRAILER in line:
            return True
    return False


def is_complete_start_list(text: str) -> bool:
    return START_LIST_HEADER in text and TRAILER in text


# ---------------------- Reassembly ----------------------

@dataclass
class _Buffer:
    parts: List[str]
    updated: float

    @property
    def text(self) -> str:
        return "".join(self.parts)


class MessageParser:
    """Classifies decoded chunks and reassembles start lists split across reads.

    Buffers are keyed by connection label and shared by every connection
    thread, so all access goes through one lock.
    """

    def __init__(self, buffer_timeout: float = BUFFER_TIMEOUT_SECONDS,
                 clock: Callable[[], float] = time.monotonic):
        self.buffer_timeout = buffer_timeout
        self._clock = clock
        self._buffers: Dict[str, _Buffer] = {}
        self._lock = threading.Lock()

    def process_message(self, text: str, client_info: str) -> Classified:
        with self._lock:
            self._purge_expired()
            now = self._clock()
            starts_new = START_LIST_HEADER in text

            if not starts_new and is_start_list_continuation(text):
                buf = self._buffers.get(client_info)
                if buf is not None:
                    buf.parts.append(text)
                    buf.updated = now
                    whole = buf.text
                    logger.debug("Appended %d chars to start list buffer for %s", len(text), client_info)
                    if is_complete_start_list(whole):
                        del self._buffers[client_info]
                        logger.info("Completed buffered start list from %s (total length: %d)",
                                    client_info, len(whole))
                        return Classified(MessageKind.START_LIST, whole)
                    return PENDING

                kind = classify(text)
                if kind is MessageKind.UNKNOWN:
                    logger.warning("Start list continuation from %s but no buffer exists; dropping %d chars",
                                   client_info, len(text))
                    return PENDING

            if starts_new:
                if client_info in self._buffers:
                    logger.warning("New start list from %s replaces an unfinished one", client_info)
                    del self._buffers[client_info]
                if is_complete_start_list(text):
                    return Classified(MessageKind.START_LIST, text)
                self._buffers[client_info] = _Buffer([text], now)
                logger.info("Buffering incomplete start list from %s (length: %d)", client_info, len(text))
                return PENDING

            return Classified(classify(text), text)

    def buffer_status(self) -> Dict[str, Tuple[int, float]]:
        with self._lock:
            return {k: (len(b.text), b.updated) for k, b in self._buffers.items()}

    def _purge_expired(self) -> None:
        now = self._clock()
        expired = [k for k, b in self._buffers.items() if now - b.updated > self.buffer_timeout]
        for key in expired:
            logger.warning("Discarding expired start list buffer for %s", key)
            del self._buffers[key]


# ---------------------- Field converters ----------------------

def _decimal(s: str) -> Decimal:
    value = Decimal(s)
    if not value.is_finite():
        raise InvalidOperation(s)
    return value


def _affiliation(s: str) -> str:
    return s.rstrip('"').strip()


def _lines(text: str) -> List[str]:
    return [ln for ln in re.split(r"[\r\n]+", text or "") if ln.strip()]


def _extract_value(line: str) -> str:
    _, sep, value = line.partition(":")
    return value.strip() if sep else ""


def _safe_int(s: str) -> int:
    try:
        return int(s.strip())
    except ValueError:
        return 0


# ---------------------- Header / free text ----------------------

def parse_running_time(text: str) -> Optional[timedelta]:
    m = _RUNNING_TIME_PAT.search(text or "")
    if not m:
        return None
    minutes = int(m.group(1)) if m.group(1) else 0
    return timedelta(minutes=minutes, seconds=float(m.group(2)))


def parse_event_header(text: str) -> Optional[RaceEvent]:
    """Event metadata from 'Label: value' lines. None when no label is present."""
    fields: Dict[str, object] = {}
    try:
        for line in _lines(text):
            line = line.strip()
            if line.startswith("OFFICIAL/UNOFFICIAL:"):
                fields["is_official"] = _extract_value(line).upper() == "OFFICIAL"
            elif line.startswith("Event name"):
                fields["event_name"] = _extract_value(line)
            elif line.startswith("Wind"):
                fields["wind"] = _extract_value(line)
            elif line.startswith("Event number"):
                fields["event_number"] = _extract_value(line)
            elif line.startswith("Round number"):
                fields["round_number"] = _safe_int(_extract_value(line))
            elif line.startswith("Heat number"):
                fields["heat_number"] = _safe_int(_extract_value(line))
            elif line.startswith("EEE-R-HH Name"):
                fields["eee_r_hh_name"] = _extract_value(line)
            elif line.startswith("AUTO/MANUAL start"):
                auto = _extract_value(line).upper() == "AUTO"
                fields["start_type"] = StartType.AUTO if auto else StartType.MANUAL
            elif line.startswith("Number of results"):
                fields["number_of_results"] = _safe_int(_extract_value(line))
    except Exception:
        logger.exception("Error parsing event header")
        return None
    if not fields:
        return None
    return RaceEvent(**fields)  # type: ignore[arg-type]


def parse_announcement(text: str) -> Optional[str]:
    inside = False
    parts: List[str] = []
    for line in _lines(text):
        line = line.strip()
        if ANNOUNCEMENT_HEADER in line:
            inside = True
            continue
        if ANNOUNCEMENT_TRAILER in line:
            break
        if inside:
            parts.append(line)
    joined = " ".join(parts)
    return joined or None


# ---------------------- Racer sections ----------------------

def _walk_section(text: str, is_header: Callable[[str], bool],
                  parse_line: Callable[[str], Optional[Racer]], kind: str) -> List[Racer]:
    racers: List[Racer] = []
    inside = False
    try:
        for line in _lines(text):
            stripped = line.strip()
            if not inside and is_header(stripped):
                inside = True
                continue
            if stripped.startswith("---"):
                continue
            if stripped.startswith(TRAILER):
                break
            if not inside:
                continue
            racer = parse_line(line)
            if racer is None:
                logger.debug("Skipping %s line: %r", kind, line)
                continue
            racers.append(racer)
    except Exception:
        logger.exception("Error parsing racers from %s", kind)
        return []
    logger.debug("Parsed %d racers from %s", len(racers), kind)
    return racers


#0         1         2         3         4         5         6         7         8         9
#0123456789012345678901234567890123456789012345678901234567890123456789012345678901234567890123456789
#Ln  Id   Name                                               Affiliation                    Laps
#--- ---- -------------------------------------------------- ------------------------------ -----
#1   100  Person mcPersonFace                                Ottawa SSC"                    5
def parse_start_list_line(line: str) -> Optional[Racer]:
    line = line.strip()
    if len(line) < 9:
        return None
    lane = trim_extract(line, 0, 3, int)
    if lane is None:
        return None
    return Racer(
        lane=lane,
        id=trim_extract(line, 4, 4, int, 0),
        name=trim_extract_str(line, 9, 50, "Unknown"),
        affiliation=trim_extract(line, 60, 30, _affiliation, "Unknown"),
        laps_remaining=trim_extract(line, 91, 6, parse_laps, Decimal(0)),
    )


#0         1         2         3         4         5         6
#0123456789012345678901234567890123456789012345678901234567890123
#Plc Ln  ReacTime Cum ST   Last ST  Best ST  Laps   Speed  Pace
#--- --- -------- -------- -------- -------- ------ ------ ------
#1   3            56.4     12.1     10.2     4 1/2         11.280
def parse_started_line(line: str) -> Optional[Racer]:
    lane = trim_extract(line, 4, 3, int)
    if lane is None:
        return None
    return Racer(
        place=PlaceRank(trim_extract_str(line, 0, 3, "")),
        lane=lane,
        reaction_time=trim_extract(line, 8, 8, parse_duration),
        cumulative_split_time=trim_extract(line, 17, 8, parse_duration),
        last_split_time=trim_extract(line, 26, 8, parse_duration),
        best_split_time=trim_extract(line, 35, 8, parse_duration),
        laps_remaining=trim_extract(line, 44, 6, parse_laps, Decimal(0)),
        speed=trim_extract(line, 51, 6, _decimal),
        pace=trim_extract(line, 58, 6, _decimal),
    )


#0         1         2         3         4         5         6         7         8         9         10        11        12
#0123456789012345678901234567890123456789012345678901234567890123456789012345678901234567890123456789012345678901234567890123
#Plc Ln  Id   Name                                               Affiliation                    Time     Delta    ReacTime
#--- --- ---- -------------------------------------------------- ------------------------------ -------- -------- --------
#1   2   261  Autumn Vandermeer                                  London SSC"                    56.31    56.310
def parse_results_line(line: str) -> Optional[Racer]:
    if len(line) < 60:
        return None
    place = PlaceRank(trim_extract_str(line, 0, 3, ""))
    if not place.has_place_data:
        return None  # unfinished racers are not reported
    lane = trim_extract(line, 4, 3, int)
    if lane is None:
        return None

    tail = (trim_extract_str(line, 95, 26, "") or "").split()
    times = [parse_duration(t) for t in tail[:3]] + [None] * (3 - len(tail[:3]))
    return Racer(
        place=place,
        lane=lane,
        id=trim_extract(line, 8, 4, int, 0),
        name=trim_extract_str(line, 13, 50, "Unknown"),
        affiliation=trim_extract(line, 64, 30, _affiliation, "Unknown"),
        final_time=times[0],
        delta_time=times[1],
        reaction_time=times[2],
        has_finished=True,
    )


def parse_start_list_racers(text: str) -> List[Racer]:
    return _walk_section(
        text,
        lambda s: "Ln" in s and "Id" in s and "Name" in s,
        parse_start_list_line,
        "start list",
    )


def parse_started_racers(text: str) -> List[Racer]:
    return _walk_section(
        text,
        lambda s: s.startswith("Plc Ln") and "ReacTime" in s,
        parse_started_line,
        "started",
    )


def parse_results_racers(text: str) -> List[Racer]:
    return _walk_section(
        text,
        lambda s: s.startswith("Plc Ln  Id") and "Name" in s,
        parse_results_line,
        "results",
    )


def is_lap_count_only_update(racers: List[Racer]) -> bool:
    """A started batch carrying nothing but lap counts (no places, no splits)."""
    if not racers:
        return False
    return all(
        not r.place.has_place_data
        and r.cumulative_split_time is None
        and r.last_split_time is None
        and r.best_split_time is None
        and r.laps_remaining > 0
        for r in racers
    )
