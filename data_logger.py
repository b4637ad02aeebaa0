# data_logger.py
from __future__ import annotations

import logging
import queue
import threading
import time
from datetime import datetime, timezone
from typing import Callable, List, Optional, Union

from sqlalchemy.orm import sessionmaker

from message_parser import decode_message
from models import ReceivedChunk, StartListSummary
from race_data import RaceEvent, Racer

logger = logging.getLogger(__name__)

MAX_RETRIES = 3
RETRY_BACKOFF = 0.2

_STOP = object()


def hex_dump(data: bytes, width: int = 16) -> str:
    """Offset / hex / ASCII dump, 16 bytes a row."""
    rows = []
    for i in range(0, len(data), width):
        chunk = data[i:i + width]
        hexes = " ".join(f"{b:02X}" for b in chunk)
        ascii_ = "".join(chr(b) if 32 <= b <= 126 else "." for b in chunk)
        rows.append(f"{i:04X}: {hexes:<{width * 3}} |{ascii_}|")
    return "\n".join(rows)


def format_racer_table(racers: List[Racer]) -> str:
    def clip(s: str, n: int) -> str:
        return s[:n] + "..." if len(s) > n else s.ljust(n)

    lines = [
        "Lane | ID   | Name                           | Affiliation",
        "-----|------|--------------------------------|----------------------------",
    ]
    for r in sorted(racers, key=lambda r: r.lane):
        lines.append(f"{r.lane:>4} | {r.id:>4} | {clip(r.name, 30)} | {clip(r.affiliation, 25)}")
    return "\n".join(lines)


class DataLogger:
    """Capture side channel for raw chunks and start-list summaries.

    Callers only enqueue; a single worker thread writes rows with a bounded
    retry. Nothing here may block or raise into the ingest path.
    """

    def __init__(self, session_factory: Union[sessionmaker, Callable[[], sessionmaker]],
                 enabled: bool = True, queue_size: int = 1000,
                 max_retries: int = MAX_RETRIES, retry_backoff: float = RETRY_BACKOFF):
        self._session_factory = session_factory
        self.enabled = enabled
        self.max_retries = max_retries
        self.retry_backoff = retry_backoff
        self._queue: "queue.Queue[object]" = queue.Queue(maxsize=queue_size)
        self._thread: Optional[threading.Thread] = None
        self._start_lock = threading.Lock()
        self.dropped = 0

    # ---- producer side ----

    def log_raw_bytes(self, data: bytes, client_info: str) -> None:
        if not self.enabled:
            return
        self._offer(("chunk", datetime.now(timezone.utc), bytes(data), client_info))

    def log_start_list_summary(self, event: Optional[RaceEvent], racers: List[Racer], client_info: str) -> None:
        try:
            logger.info("Start list from %s: %s, %d racers\n%s", client_info,
                        event.event_name if event else "(no event header)", len(racers),
                        format_racer_table(racers))
        except Exception:
            logger.exception("Could not format start list summary")
        self._offer(("summary", event, list(racers), client_info))

    def _offer(self, item: object) -> None:
        try:
            self._ensure_worker()
            self._queue.put_nowait(item)
        except queue.Full:
            self.dropped += 1
            logger.warning("Capture queue full; dropped entry (%d dropped so far)", self.dropped)
        except Exception:
            logger.exception("Capture logger failed to enqueue")

    # ---- worker ----

    def _ensure_worker(self) -> None:
        if self._thread is not None and self._thread.is_alive():
            return
        with self._start_lock:
            if self._thread is None or not self._thread.is_alive():
                self._thread = threading.Thread(target=self._run, name="capture-logger", daemon=True)
                self._thread.start()

    def _run(self) -> None:
        while True:
            item = self._queue.get()
            try:
                if item is _STOP:
                    return
                self._write_with_retry(item)
            finally:
                self._queue.task_done()

    def _write_with_retry(self, item: object) -> None:
        for attempt in range(1, self.max_retries + 1):
            try:
                self._write(item)
                return
            except Exception:
                if attempt == self.max_retries:
                    logger.exception("Giving up on capture entry after %d attempts", attempt)
                    return
                logger.debug("Capture write failed (attempt %d); retrying", attempt)
                time.sleep(self.retry_backoff * attempt)

    def _sessions(self) -> sessionmaker:
        factory = self._session_factory
        if not isinstance(factory, sessionmaker):
            factory = factory()
            self._session_factory = factory
        return factory

    def _write(self, item: object) -> None:
        kind = item[0]  # type: ignore[index]
        with self._sessions()() as db:
            if kind == "chunk":
                _, received_at, data, client_info = item  # type: ignore[misc]
                text = decode_message(data)
                db.add(ReceivedChunk(
                    received_at=received_at,
                    client_info=client_info,
                    byte_count=len(data),
                    raw=data,
                    text=text or None,
                ))
            else:
                _, event, racers, client_info = item  # type: ignore[misc]
                db.add(StartListSummary(
                    client_info=client_info,
                    event_name=event.event_name if event else None,
                    event_number=event.event_number if event else None,
                    round_number=event.round_number if event else None,
                    heat_number=event.heat_number if event else None,
                    wind=event.wind if event else None,
                    start_type=event.start_type.value if event else None,
                    is_official=bool(event and event.is_official),
                    racer_count=len(racers),
                    racer_table=format_racer_table(racers),
                ))
            db.commit()

    def flush(self, timeout: float = 5.0) -> bool:
        """Wait until everything queued so far is written (tests, shutdown)."""
        deadline = time.monotonic() + timeout
        while self._queue.unfinished_tasks:
            if time.monotonic() >= deadline:
                return False
            time.sleep(0.01)
        return True

    def close(self, timeout: float = 5.0) -> None:
        if self._thread is None or not self._thread.is_alive():
            return
        try:
            self._queue.put(_STOP, timeout=timeout)
        except queue.Full:
            logger.warning("Capture queue still full at shutdown; abandoning pending entries")
            return
        self._thread.join(timeout)
