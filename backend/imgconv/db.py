"""Conversion activity ledger. SQLite by default; set DATABASE_URL or MYSQL_* for MySQL.
Startup ensures the table exists; on connection failure logs verbosely and falls back to SQLite or in-memory so the app can start."""
import logging
from contextlib import contextmanager
from datetime import datetime, timezone
from typing import Optional

from sqlalchemy import create_engine, text
from sqlalchemy.engine import Engine
from sqlalchemy.exc import OperationalError
from sqlalchemy.pool import StaticPool

from imgconv import config as app_config

logger = logging.getLogger("converter.db")

_engine: Optional[Engine] = None

ACTIVITY_TABLE = "conversion_activities"

_ACTIVITY_COLUMNS = (
    "session_id, batch_id, filename, status, error, input_bytes, output_bytes, "
    "target_bytes, met_budget, output_format, final_quality, created_at, duration_seconds"
)


def _is_sqlite() -> bool:
    return "sqlite" in app_config.DATABASE_URL


def _is_mysql() -> bool:
    return "mysql" in app_config.DATABASE_URL


def _db_kind() -> str:
    if _is_mysql():
        return "MySQL"
    if _is_sqlite():
        return "SQLite"
    return "SQL"


def _create_engine(url: str) -> Engine:
    kwargs = {}
    if "sqlite" in url:
        kwargs["connect_args"] = {"check_same_thread": False}
        if ":memory:" in url:
            # one shared connection, otherwise every checkout sees an empty database
            kwargs["poolclass"] = StaticPool
    return create_engine(url, **kwargs)


def get_engine() -> Engine:
    global _engine
    if _engine is None:
        _engine = _create_engine(app_config.DATABASE_URL)
        logger.info("Database engine created (%s)", _db_kind())
    return _engine


def _create_sqlite_tables(conn) -> None:
    conn.execute(text(f"""
        CREATE TABLE IF NOT EXISTS {ACTIVITY_TABLE} (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            session_id TEXT NOT NULL,
            batch_id TEXT,
            filename TEXT,
            status TEXT NOT NULL,
            error TEXT,
            input_bytes INTEGER,
            output_bytes INTEGER,
            target_bytes INTEGER,
            met_budget INTEGER,
            output_format TEXT,
            final_quality INTEGER,
            created_at TEXT NOT NULL,
            duration_seconds REAL
        )
    """))
    conn.commit()


def _create_mysql_tables(conn) -> None:
    conn.execute(text(f"""
        CREATE TABLE IF NOT EXISTS {ACTIVITY_TABLE} (
            id BIGINT AUTO_INCREMENT PRIMARY KEY,
            session_id VARCHAR(255) NOT NULL,
            batch_id VARCHAR(255),
            filename VARCHAR(512),
            status VARCHAR(50) NOT NULL,
            error TEXT,
            input_bytes BIGINT,
            output_bytes BIGINT,
            target_bytes BIGINT,
            met_budget TINYINT,
            output_format VARCHAR(32),
            final_quality INT,
            created_at VARCHAR(50) NOT NULL,
            duration_seconds DOUBLE
        )
    """))
    conn.commit()


def _ensure_tables(engine: Engine) -> None:
    """Create the activity table if it does not exist."""
    with engine.connect() as conn:
        if _is_mysql():
            _create_mysql_tables(conn)
        else:
            _create_sqlite_tables(conn)
    logger.info("Required table ensured: %s", ACTIVITY_TABLE)


def _use_fallback(url: str) -> Engine:
    global _engine
    app_config.DATABASE_URL = url
    _engine = None
    engine = get_engine()
    _ensure_tables(engine)
    return engine


def init_db() -> None:
    """Prepare database at startup. On failure, fall back to SQLite file or in-memory so the app can start."""
    kind = _db_kind()
    logger.info("Database init: preparing %s (table: %s)", kind, ACTIVITY_TABLE)

    try:
        _ensure_tables(get_engine())
        logger.info("Database ready: %s", kind)
        return
    except OperationalError as e:
        logger.warning("Database connection failed (%s): %s. Will try fallback.", kind, e.orig, exc_info=True)
        if _is_mysql():
            try:
                sqlite_path = app_config.BASE_DIR / "data" / "converter.db"
                sqlite_path.parent.mkdir(parents=True, exist_ok=True)
                _use_fallback(f"sqlite:///{sqlite_path}")
                logger.warning("MySQL unavailable. Using SQLite at %s. Fix MYSQL_* in .env to use MySQL.", sqlite_path)
                return
            except Exception as fallback_err:
                logger.exception("SQLite file fallback failed: %s. Trying in-memory SQLite.", fallback_err)
        else:
            logger.exception("Database error (non-MySQL). Trying in-memory SQLite.")
    except Exception as e:
        logger.exception("Database init failed: %s. Trying in-memory SQLite.", e)

    # Last resort: in-memory SQLite so the app can run (activity is lost on restart)
    _use_fallback("sqlite:///:memory:")
    logger.warning("Database unavailable. Using in-memory SQLite. Activity will not persist across restarts.")


@contextmanager
def session():
    with get_engine().connect() as conn:
        try:
            yield conn
            conn.commit()
        except Exception:
            conn.rollback()
            raise


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def record_activity(
    session_id: str,
    filename: str,
    status: str,
    *,
    batch_id: Optional[str] = None,
    error: Optional[str] = None,
    input_bytes: Optional[int] = None,
    output_bytes: Optional[int] = None,
    target_bytes: Optional[int] = None,
    met_budget: Optional[bool] = None,
    output_format: Optional[str] = None,
    final_quality: Optional[int] = None,
    duration_seconds: Optional[float] = None,
) -> None:
    params = {
        "session_id": session_id,
        "batch_id": batch_id,
        "filename": filename,
        "status": status,
        "error": error,
        "input_bytes": input_bytes,
        "output_bytes": output_bytes,
        "target_bytes": target_bytes,
        "met_budget": None if met_budget is None else int(met_budget),
        "output_format": output_format,
        "final_quality": final_quality,
        "created_at": _now_iso(),
        "duration_seconds": duration_seconds,
    }
    placeholders = ", ".join(f":{c.strip()}" for c in _ACTIVITY_COLUMNS.split(","))
    with session() as conn:
        conn.execute(text(f"INSERT INTO {ACTIVITY_TABLE} ({_ACTIVITY_COLUMNS}) VALUES ({placeholders})"), params)


def get_session_stats(session_id: str) -> dict:
    """Aggregate stats for a session: files converted/failed, bytes in/out, compression, budgets met."""
    with get_engine().connect() as conn:
        row = conn.execute(
            text(f"""
                SELECT
                    COUNT(*),
                    COALESCE(SUM(CASE WHEN status = 'completed' THEN 1 ELSE 0 END), 0),
                    COALESCE(SUM(CASE WHEN status = 'completed' THEN input_bytes ELSE 0 END), 0),
                    COALESCE(SUM(output_bytes), 0),
                    COALESCE(SUM(CASE WHEN met_budget = 1 THEN 1 ELSE 0 END), 0),
                    COALESCE(SUM(CASE WHEN met_budget = 0 THEN 1 ELSE 0 END), 0),
                    COALESCE(SUM(duration_seconds), 0)
                FROM {ACTIVITY_TABLE} WHERE session_id = :sid
            """),
            {"sid": session_id},
        ).fetchone()
    total, completed, total_input, total_output, met, missed, time_spent = (
        (int(row[0]), int(row[1]), int(row[2]), int(row[3]), int(row[4]), int(row[5]), float(row[6]))
        if row
        else (0, 0, 0, 0, 0, 0, 0.0)
    )
    compression_percent = 0.0
    if total_input > 0:
        compression_percent = round((1.0 - total_output / total_input) * 100.0, 1)
    return {
        "images_uploaded": total,
        "images_converted": completed,
        "images_failed": total - completed,
        "total_input_bytes": total_input,
        "total_output_bytes": total_output,
        "compression_percent": compression_percent,
        "target_size_met": met,
        "target_size_missed": missed,
        "time_spent_seconds": time_spent,
    }


def get_session_activities(session_id: str, limit: int = 100) -> list[dict]:
    """Recent activities for the session, newest first."""
    with get_engine().connect() as conn:
        rows = conn.execute(
            text(f"""
                SELECT {_ACTIVITY_COLUMNS} FROM {ACTIVITY_TABLE}
                WHERE session_id = :sid ORDER BY id DESC LIMIT :lim
            """),
            {"sid": session_id, "lim": limit},
        ).mappings().all()
    activities = []
    for r in rows:
        item = dict(r)
        item.pop("session_id", None)
        if item.get("met_budget") is not None:
            item["met_budget"] = bool(item["met_budget"])
        activities.append(item)
    return activities


def delete_session_data(session_id: str) -> int:
    """Delete all activities for the session. Returns the number of rows removed."""
    with session() as conn:
        result = conn.execute(text(f"DELETE FROM {ACTIVITY_TABLE} WHERE session_id = :sid"), {"sid": session_id})
        removed = result.rowcount or 0
    return removed
