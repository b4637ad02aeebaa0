import logging
import os
from pathlib import Path
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker

logger = logging.getLogger(__name__)


def _data_dir() -> Path:
    r"""Return per-user writable data directory.

    On Windows, use %APPDATA%\WebLynx. Else, ~/.weblynx
    Allow override via LYNX_DATA_DIR env var.
    """
    override = os.getenv("LYNX_DATA_DIR")
    if override:
        p = Path(override)
    else:
        appdata = os.getenv("APPDATA")
        if appdata:
            p = Path(appdata) / "WebLynx"
        else:
            p = Path.home() / ".weblynx"
    return p


def _default_db_path() -> Path:
    return _data_dir() / "captures.db"


def db_url_for(path: Path) -> str:
    return "sqlite:///" + str(path).replace("\\", "/")


def make_session_factory(url: str) -> sessionmaker:
    """Engine + sessionmaker for a capture database, tables created if missing.

    SQLite connections are shared with the capture worker thread.
    """
    from models import Base
    engine = create_engine(url, echo=False, future=True,
                           connect_args={"check_same_thread": False} if url.startswith("sqlite") else {})
    Base.metadata.create_all(bind=engine)
    return sessionmaker(bind=engine, autoflush=False, expire_on_commit=False, future=True)


_session_factory = None


def init_db() -> sessionmaker:
    """Create the capture DB in the per-user data dir (once) and return its sessionmaker."""
    global _session_factory
    if _session_factory is None:
        path = _default_db_path()
        path.parent.mkdir(parents=True, exist_ok=True)
        logger.info("Capture database: %s", path)
        _session_factory = make_session_factory(db_url_for(path))
    return _session_factory


def get_db_path() -> Path:
    """Expose the resolved DB path for diagnostics."""
    return _default_db_path()


def log_dir() -> Path:
    p = _data_dir() / "log"
    p.mkdir(parents=True, exist_ok=True)
    return p
