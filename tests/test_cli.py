import sys
from pathlib import Path

import pytest

import cli
from data_logger import DataLogger
from db import db_url_for, make_session_factory
from tests.lynx_messages import TWO_RACERS, running_time_message, start_list_message, wire


def test_cli_help(monkeypatch, capsys):
    monkeypatch.setattr(sys, "argv", ["weblynx", "--help"])
    with pytest.raises(SystemExit) as exc:
        cli.main()
    assert exc.value.code == 0
    out = capsys.readouterr().out
    for cmd in ("run", "listen", "api", "replay", "captures"):
        assert cmd in out


def _capture(db_path: Path):
    capture = DataLogger(make_session_factory(db_url_for(db_path)))
    msg = start_list_message(TWO_RACERS)
    cut = msg.index("1   100")
    capture.log_raw_bytes(wire(msg[:cut]), "10.0.0.5:5000 (RESULTS)")
    capture.log_raw_bytes(wire(msg[cut:]), "10.0.0.5:5000 (RESULTS)")
    capture.log_raw_bytes(wire(running_time_message("42.0")), "10.0.0.5:5001 (TIMING)")
    assert capture.flush()
    capture.close()


def test_replay_rebuilds_race(tmp_path: Path, capsys):
    db_path = tmp_path / "captures.db"
    _capture(db_path)
    cli.replay(str(db_path), None, None)
    out = capsys.readouterr().out
    assert "Race Status: Running" in out
    assert "Elapsed Time: 42.0" in out
    assert "## Number of racers ##: 2" in out


def test_list_captures(tmp_path: Path, capsys):
    db_path = tmp_path / "captures.db"
    _capture(db_path)
    cli.list_captures(str(db_path), limit=2, show_hex=True)
    out = capsys.readouterr().out
    assert "#1 " not in out
    assert "#2 " in out and "#3 " in out
    assert "0000: " in out


def test_list_captures_default_database(tmp_path: Path, monkeypatch, capsys):
    import db

    monkeypatch.setenv("LYNX_DATA_DIR", str(tmp_path))
    monkeypatch.setattr(db, "_session_factory", None)
    _capture(tmp_path / "captures.db")
    cli.list_captures(None, limit=5, show_hex=False)
    out = capsys.readouterr().out
    assert f"Capture database: {tmp_path / 'captures.db'}" in out
    assert "#3 " in out
    assert "Running time: 42.0" in out
