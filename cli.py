from __future__ import annotations
import argparse
import logging
import threading
from pathlib import Path
from typing import Optional

from lynx_config import CFG


def _open_captures(db_path: Optional[str]):
    from db import db_url_for, get_db_path, init_db, make_session_factory
    if db_path:
        return make_session_factory(db_url_for(Path(db_path)))
    print(f"Capture database: {get_db_path()}")
    return init_db()


def run_socket_listener(manager, host: str, timing_port: int, results_port: int):
    from socket_listener import LynxTCPListener
    listener = LynxTCPListener(
        manager,
        {"TIMING": timing_port, "RESULTS": results_port},
        host=host,
        buffer_size=CFG.tcp.buffer_size,
    )
    listener.start()
    return listener


def run_api(manager, host: str, port: int, key_values=None):
    from app import broadcast_titles, create_app
    app = create_app(manager, key_values, broadcast_titles(CFG))
    app.run(host=host, port=port, debug=False, use_reloader=False, threaded=True)


def replay(db_path: Optional[str], client: Optional[str], limit: Optional[int]) -> None:
    """Feed captured chunks, in arrival order, through a fresh pipeline and print the standings."""
    from sqlalchemy import select
    from live_file_writer import render_live_race_info
    from models import ReceivedChunk
    from socket_listener import build_pipeline

    sessions = _open_captures(db_path)
    manager, _ = build_pipeline(capture=False)
    stmt = select(ReceivedChunk).order_by(ReceivedChunk.id)
    if client:
        stmt = stmt.where(ReceivedChunk.client_info == client)
    if limit:
        stmt = stmt.limit(limit)

    count = 0
    with sessions() as db:
        for chunk in db.scalars(stmt):
            manager.process_message(chunk.raw, chunk.client_info)
            count += 1
    logging.info("Replayed %d captured chunks", count)
    print(render_live_race_info(manager.get_current_race_state()))


def list_captures(db_path: Optional[str], limit: int, show_hex: bool) -> None:
    from sqlalchemy import select
    from data_logger import hex_dump
    from models import ReceivedChunk

    sessions = _open_captures(db_path)
    stmt = select(ReceivedChunk).order_by(ReceivedChunk.id.desc()).limit(limit)
    with sessions() as db:
        rows = list(db.scalars(stmt))
    for chunk in reversed(rows):
        print(f"#{chunk.id} {chunk.received_at:%Y-%m-%d %H:%M:%S} {chunk.client_info} {chunk.byte_count} bytes")
        if show_hex:
            print(hex_dump(chunk.raw))
        elif chunk.text:
            print(chunk.text.rstrip())
        print()


def main():
    logging.basicConfig(level=logging.INFO, format="%(asctime)s %(levelname)s %(message)s")
    ap = argparse.ArgumentParser(prog="weblynx", description="FinishLynx scoreboard feed")
    # no subcommand means 'run' with everything on
    sub = ap.add_subparsers(dest="cmd")

    run = sub.add_parser("run", help="Run listeners, API and live race file")
    run.add_argument("--listen-host", default=CFG.tcp.listen_host)
    run.add_argument("--timing-port", type=int, default=CFG.tcp.timing_port)
    run.add_argument("--results-port", type=int, default=CFG.tcp.results_port)
    run.add_argument("--api-host", default=CFG.http.host)
    run.add_argument("--api-port", type=int, default=CFG.http.port)

    listen = sub.add_parser("listen", help="Start the TCP listeners only")
    listen.add_argument("--host", default=CFG.tcp.listen_host)
    listen.add_argument("--timing-port", type=int, default=CFG.tcp.timing_port)
    listen.add_argument("--results-port", type=int, default=CFG.tcp.results_port)

    api = sub.add_parser("api", help="Start the HTTP API only (no timing feed)")
    api.add_argument("--host", default=CFG.http.host)
    api.add_argument("--port", type=int, default=CFG.http.port)

    rp = sub.add_parser("replay", help="Replay captured chunks and print the resulting standings")
    rp.add_argument("--db", help="capture database (default: per-user data dir)")
    rp.add_argument("--client", help="only chunks from this connection label")
    rp.add_argument("--limit", type=int)

    caps = sub.add_parser("captures", help="List recently captured chunks")
    caps.add_argument("--db", help="capture database (default: per-user data dir)")
    caps.add_argument("--limit", type=int, default=20)
    caps.add_argument("--hex", action="store_true", help="hex dump instead of decoded text")

    args = ap.parse_args()

    if not getattr(args, "cmd", None):
        args = run.parse_args([])
        args.cmd = "run"

    if args.cmd == "replay":
        replay(args.db, args.client, args.limit); return

    if args.cmd == "captures":
        list_captures(args.db, args.limit, args.hex); return

    if args.cmd == "api":
        from socket_listener import build_pipeline
        manager, _ = build_pipeline(capture=False)
        run_api(manager, args.host, args.port); return

    from socket_listener import build_pipeline
    manager, data_logger = build_pipeline()

    if args.cmd == "listen":
        listener = run_socket_listener(manager, args.host, args.timing_port, args.results_port)
        try:
            threading.Event().wait()
        except KeyboardInterrupt:
            pass
        finally:
            listener.stop()
            if data_logger is not None:
                data_logger.close()
        return

    if args.cmd == "run":
        from db import log_dir
        from live_file_writer import LiveRaceFileWriter

        listener = run_socket_listener(manager, args.listen_host, args.timing_port, args.results_port)
        writer = LiveRaceFileWriter(
            manager,
            log_dir(),
            interval=CFG.logging.live_race_info_interval,
            enabled=CFG.logging.enable_live_race_info_logging,
        )
        if writer.enabled:
            writer.start()

        t = threading.Thread(target=run_api, args=(manager, args.api_host, args.api_port), daemon=True)
        t.start()
        logging.info("API server starting on http://%s:%s", args.api_host, args.api_port)
        try:
            t.join()
        except KeyboardInterrupt:
            pass
        finally:
            writer.stop()
            listener.stop()
            if data_logger is not None:
                data_logger.close()


if __name__ == "__main__":
    main()
