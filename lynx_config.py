from __future__ import annotations
import os
import sys
from dataclasses import dataclass
from pathlib import Path

from dotenv import load_dotenv

# Determine the directory where the executable/script is located
if getattr(sys, 'frozen', False):
    APP_DIR = Path(sys.executable).parent
else:
    APP_DIR = Path(__file__).parent

# .env next to the executable/script, else the current directory
_env_path = APP_DIR / ".env"
if _env_path.exists():
    load_dotenv(dotenv_path=_env_path)
else:
    load_dotenv()


def _flag(name: str, default: str) -> bool:
    return os.getenv(name, default).strip().lower() in ("1", "true", "yes", "on")


@dataclass
class TcpCfg:
    listen_host: str
    timing_port: int
    results_port: int
    buffer_size: int


@dataclass
class LapCounterCfg:
    delayed_display_seconds: int
    half_lap_mode_enabled: bool


@dataclass
class LoggingCfg:
    enable_data_logging: bool
    enable_live_race_info_logging: bool
    live_race_info_interval: float


@dataclass
class HttpCfg:
    host: str
    port: int


@dataclass
class BroadcastCfg:
    meet_title: str
    event_name: str
    unofficial_results_text: str


@dataclass
class Config:
    tcp: TcpCfg
    laps: LapCounterCfg
    logging: LoggingCfg
    http: HttpCfg
    broadcast: BroadcastCfg


def load_config() -> Config:
    return Config(
        tcp=TcpCfg(
            listen_host=os.getenv("LYNX_LISTEN_HOST", "0.0.0.0"),
            timing_port=int(os.getenv("LYNX_TIMING_PORT", "5055")),
            results_port=int(os.getenv("LYNX_RESULTS_PORT", "5056")),
            buffer_size=int(os.getenv("LYNX_BUFFER_SIZE", "8192")),
        ),
        laps=LapCounterCfg(
            delayed_display_seconds=int(os.getenv("LYNX_DELAYED_DISPLAY_SECONDS", "5")),
            half_lap_mode_enabled=_flag("LYNX_HALF_LAP_MODE", "0"),
        ),
        logging=LoggingCfg(
            enable_data_logging=_flag("LYNX_DATA_LOGGING", "1"),
            enable_live_race_info_logging=_flag("LYNX_LIVE_RACE_INFO", "1"),
            live_race_info_interval=float(os.getenv("LYNX_LIVE_RACE_INFO_INTERVAL", "5")),
        ),
        http=HttpCfg(
            host=os.getenv("API_HOST", "127.0.0.1"),
            port=int(os.getenv("API_PORT", "8080")),
        ),
        broadcast=BroadcastCfg(
            meet_title=os.getenv("LYNX_MEET_TITLE", "Speed Skating Meet"),
            event_name=os.getenv("LYNX_EVENT_NAME", "Race Event"),
            unofficial_results_text=os.getenv("LYNX_UNOFFICIAL_TEXT", "Unofficial Results"),
        ),
    )


CFG = load_config()
