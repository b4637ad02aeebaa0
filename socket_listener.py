# socket_listener.py
from __future__ import annotations

import argparse
import logging
import socket
import threading
import time
from typing import Dict, List, Optional, Set, Tuple

from race_state import RaceStateManager

logger = logging.getLogger(__name__)

# ==========================
# Tunables
# ==========================
ACCEPT_POLL_SECONDS = 0.5       # accept() wakes this often to notice shutdown
SHUTDOWN_TIMEOUT = 5.0          # total budget for stop()
DEFAULT_BUFFER_SIZE = 8192


class LynxTCPListener:
    """Accepts FinishLynx scoreboard connections on the timing and results ports.

    Both ports feed the same pipeline; the name only labels the connection.
    One accept thread per port, one reader thread per connection.
    """

    def __init__(
        self,
        state_manager: RaceStateManager,
        ports: Dict[str, int],
        host: str = "0.0.0.0",
        buffer_size: int = DEFAULT_BUFFER_SIZE,
        shutdown_timeout: float = SHUTDOWN_TIMEOUT,
    ):
        self.state_manager = state_manager
        self.ports = dict(ports)
        self.host = host
        self.buffer_size = buffer_size
        self.shutdown_timeout = shutdown_timeout
        self._stop = threading.Event()
        self._listeners: Dict[str, socket.socket] = {}
        self._threads: List[threading.Thread] = []
        self._conns: Set[socket.socket] = set()
        self._lock = threading.Lock()

    @property
    def bound_ports(self) -> Dict[str, int]:
        return {name: s.getsockname()[1] for name, s in self._listeners.items()}

    def start(self) -> None:
        """Bind every port, then start accepting. Bind errors propagate."""
        try:
            for name, port in self.ports.items():
                srv = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
                srv.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
                try:
                    srv.bind((self.host, port))
                    srv.listen()
                except OSError:
                    srv.close()
                    raise
                srv.settimeout(ACCEPT_POLL_SECONDS)
                self._listeners[name] = srv
        except OSError:
            self._close_listeners()
            raise

        for name, srv in self._listeners.items():
            t = threading.Thread(target=self._accept_loop, args=(name, srv), name=f"accept-{name.lower()}", daemon=True)
            t.start()
            self._threads.append(t)
        logger.info("TCP listeners started: %s",
                    ", ".join(f"{n} on {self.host}:{p}" for n, p in self.bound_ports.items()))

    def _accept_loop(self, name: str, srv: socket.socket) -> None:
        while not self._stop.is_set():
            try:
                conn, addr = srv.accept()
            except socket.timeout:
                continue
            except OSError:
                if self._stop.is_set():
                    break
                logger.exception("Error accepting %s TCP connection", name)
                time.sleep(ACCEPT_POLL_SECONDS)
                continue

            conn.settimeout(None)
            label = f"{addr[0]}:{addr[1]} ({name})"
            logger.info("%s client connected from %s:%s", name, addr[0], addr[1])
            with self._lock:
                if self._stop.is_set():
                    conn.close()
                    break
                self._conns.add(conn)
            t = threading.Thread(target=self._handle_client, args=(conn, label), name=f"conn-{label}", daemon=True)
            t.start()
            with self._lock:
                self._threads = [x for x in self._threads if x.is_alive()]
                self._threads.append(t)

    def _handle_client(self, conn: socket.socket, label: str) -> None:
        try:
            while not self._stop.is_set():
                data = conn.recv(self.buffer_size)
                if not data:
                    logger.info("Client disconnected: %s", label)
                    break
                self.state_manager.process_message(data, label)
        except OSError as e:
            if not self._stop.is_set():
                logger.warning("Connection error from %s: %s", label, e)
        except Exception:
            logger.exception("Error handling client connection from %s", label)
        finally:
            with self._lock:
                self._conns.discard(conn)
            try:
                conn.close()
            except OSError:
                pass

    def _close_listeners(self) -> None:
        for srv in self._listeners.values():
            try:
                srv.close()
            except OSError:
                pass

    def stop(self) -> None:
        logger.info("Stopping TCP listeners")
        self._stop.set()
        self._close_listeners()
        with self._lock:
            conns = list(self._conns)
            threads = list(self._threads)
        for conn in conns:
            # shutdown first so the peer sees FIN rather than a reset
            try:
                conn.shutdown(socket.SHUT_RDWR)
            except OSError:
                pass
            try:
                conn.close()
            except OSError:
                pass
        deadline = time.monotonic() + self.shutdown_timeout
        for t in threads:
            remaining = deadline - time.monotonic()
            if remaining <= 0:
                break
            t.join(remaining)
        logger.info("TCP listeners stopped")

    def serve_forever(self) -> None:
        self.start()
        try:
            while not self._stop.wait(1.0):
                pass
        except KeyboardInterrupt:
            pass
        finally:
            self.stop()


# ---------------------- Main ----------------------

def build_pipeline(capture: bool = True) -> Tuple[RaceStateManager, Optional[object]]:
    from lynx_config import CFG
    from message_parser import MessageParser
    from race_state import LapCounterSettings

    data_logger = None
    if capture:
        from data_logger import DataLogger
        from db import init_db
        data_logger = DataLogger(init_db, enabled=CFG.logging.enable_data_logging)
    manager = RaceStateManager(
        MessageParser(),
        LapCounterSettings(
            delayed_display_seconds=CFG.laps.delayed_display_seconds,
            half_lap_mode_enabled=CFG.laps.half_lap_mode_enabled,
        ),
        capture=data_logger,
    )
    return manager, data_logger


def main():
    from lynx_config import CFG
    logging.basicConfig(level=logging.INFO, format="%(asctime)s %(levelname)s %(message)s")

    ap = argparse.ArgumentParser(description="FinishLynx TCP -> Parser -> live race state")
    ap.add_argument("--host", default=CFG.tcp.listen_host)
    ap.add_argument("--timing-port", type=int, default=CFG.tcp.timing_port)
    ap.add_argument("--results-port", type=int, default=CFG.tcp.results_port)
    args = ap.parse_args()

    manager, data_logger = build_pipeline()
    listener = LynxTCPListener(
        manager,
        {"TIMING": args.timing_port, "RESULTS": args.results_port},
        host=args.host,
        buffer_size=CFG.tcp.buffer_size,
    )
    try:
        listener.serve_forever()
    finally:
        if data_logger is not None:
            data_logger.close()


if __name__ == "__main__":
    main()
