"""
Reference sync server.

A small FastAPI app that speaks the chatvault sync protocol on top of a
single SQLite file. It only ever sees encrypted blobs: payloads are stored
and returned verbatim, never decrypted.

    POST   /sync/upload       replace one (userId, dataType) row
    GET    /sync/download     rows newer than sinceVersion, ascending
    DELETE /sync/delete       one data type, or every row plus the user
    POST   /sync              store a full snapshot under its sync id
    GET    /sync/{sync_id}    fetch a full snapshot
    DELETE /sync/{sync_id}    drop a full snapshot
    GET    /health

Run with `chatvault serve` or `uvicorn chatvault.server:app`.
"""

import logging
import sqlite3
from contextlib import asynccontextmanager, contextmanager
from pathlib import Path

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from chatvault import __version__
from chatvault.config import get_config
from chatvault.storage.models import now_ms

logger = logging.getLogger(__name__)

VALID_DATA_TYPES = ("config", "conversations", "messages", "deletedRecords")

# Newest sync_history rows kept per user
HISTORY_LIMIT = 100

SERVER_TABLES = """
CREATE TABLE IF NOT EXISTS users (
    id TEXT PRIMARY KEY,
    created_at INTEGER NOT NULL,
    last_sync_at INTEGER
);

CREATE TABLE IF NOT EXISTS sync_data (
    user_id TEXT NOT NULL,
    data_type TEXT NOT NULL,
    data_content TEXT NOT NULL,
    version INTEGER NOT NULL,
    checksum TEXT,
    created_at INTEGER NOT NULL,
    updated_at INTEGER NOT NULL,
    PRIMARY KEY (user_id, data_type)
);

CREATE TABLE IF NOT EXISTS sync_snapshots (
    id TEXT PRIMARY KEY,
    data TEXT NOT NULL,
    timestamp INTEGER NOT NULL,
    updated_at INTEGER NOT NULL
);

CREATE TABLE IF NOT EXISTS sync_history (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    user_id TEXT NOT NULL,
    sync_type TEXT NOT NULL,
    data_types TEXT,
    status TEXT NOT NULL,
    error_message TEXT,
    sync_timestamp INTEGER NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_sync_data_version ON sync_data(user_id, version);
CREATE INDEX IF NOT EXISTS idx_sync_history_user ON sync_history(user_id);
"""


class SyncServerStore:
    """SQLite persistence for the reference sync server."""

    def __init__(self, db_path: str, history_limit: int = HISTORY_LIMIT):
        self.db_path = Path(db_path)
        self.history_limit = history_limit
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        with self._connect() as conn:
            conn.executescript(SERVER_TABLES)
        logger.info("Sync server store initialized at %s", self.db_path)

    @contextmanager
    def _connect(self):
        conn = sqlite3.connect(str(self.db_path))
        conn.row_factory = sqlite3.Row
        try:
            yield conn
            conn.commit()
        except Exception:
            conn.rollback()
            raise
        finally:
            conn.close()

    def _log(self, conn, user_id: str, sync_type: str, data_types: str, status: str, error: str = ""):
        conn.execute(
            """INSERT INTO sync_history (user_id, sync_type, data_types, status, error_message, sync_timestamp)
               VALUES (?, ?, ?, ?, ?, ?)""",
            (user_id, sync_type, data_types, status, error or None, now_ms()),
        )
        conn.execute(
            """DELETE FROM sync_history WHERE user_id = ? AND id NOT IN (
                   SELECT id FROM sync_history WHERE user_id = ? ORDER BY id DESC LIMIT ?)""",
            (user_id, user_id, self.history_limit),
        )

    def user_exists(self, user_id: str) -> bool:
        with self._connect() as conn:
            row = conn.execute("SELECT id FROM users WHERE id = ?", (user_id,)).fetchone()
        return row is not None

    def upload(self, user_id: str, data_type: str, content: str, version: int, checksum: str) -> int:
        """Replace the row for (user_id, data_type). Returns the stored version."""
        now = now_ms()
        with self._connect() as conn:
            conn.execute(
                """INSERT INTO users (id, created_at, last_sync_at) VALUES (?, ?, ?)
                   ON CONFLICT(id) DO UPDATE SET last_sync_at = excluded.last_sync_at""",
                (user_id, now, now),
            )
            conn.execute(
                """INSERT INTO sync_data
                   (user_id, data_type, data_content, version, checksum, created_at, updated_at)
                   VALUES (?, ?, ?, ?, ?, ?, ?)
                   ON CONFLICT(user_id, data_type) DO UPDATE SET
                       data_content = excluded.data_content,
                       version = excluded.version,
                       checksum = excluded.checksum,
                       updated_at = excluded.updated_at""",
                (user_id, data_type, content, version, checksum, now, now),
            )
            self._log(conn, user_id, "upload", data_type, "success")
        return version

    def download(self, user_id: str, data_type: str | None = None, since_version: int | None = None) -> list[dict]:
        sql = "SELECT * FROM sync_data WHERE user_id = ?"
        params: list = [user_id]
        if data_type:
            sql += " AND data_type = ?"
            params.append(data_type)
        if since_version:
            sql += " AND version > ?"
            params.append(since_version)
        sql += " ORDER BY version ASC"

        with self._connect() as conn:
            rows = conn.execute(sql, params).fetchall()
            conn.execute("UPDATE users SET last_sync_at = ? WHERE id = ?", (now_ms(), user_id))
            types = data_type or ",".join(r["data_type"] for r in rows)
            self._log(conn, user_id, "download", types, "success")

        return [
            {
                "dataType": r["data_type"],
                "encryptedData": r["data_content"],
                "version": r["version"],
                "checksum": r["checksum"],
                "timestamp": r["updated_at"],
            }
            for r in rows
        ]

    def delete(self, user_id: str, data_type: str | None = None) -> int:
        """Delete one data type, or everything including the user row."""
        with self._connect() as conn:
            if data_type:
                cur = conn.execute(
                    "DELETE FROM sync_data WHERE user_id = ? AND data_type = ?", (user_id, data_type)
                )
                self._log(conn, user_id, "delete", data_type, "success")
            else:
                cur = conn.execute("DELETE FROM sync_data WHERE user_id = ?", (user_id,))
                conn.execute("DELETE FROM sync_history WHERE user_id = ?", (user_id,))
                conn.execute("DELETE FROM users WHERE id = ?", (user_id,))
            return cur.rowcount

    def put_snapshot(self, sync_id: str, data: str, timestamp: int) -> None:
        with self._connect() as conn:
            conn.execute(
                """INSERT INTO sync_snapshots (id, data, timestamp, updated_at) VALUES (?, ?, ?, ?)
                   ON CONFLICT(id) DO UPDATE SET
                       data = excluded.data,
                       timestamp = excluded.timestamp,
                       updated_at = excluded.updated_at""",
                (sync_id, data, timestamp, now_ms()),
            )

    def get_snapshot(self, sync_id: str) -> dict | None:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT data, timestamp FROM sync_snapshots WHERE id = ?", (sync_id,)
            ).fetchone()
        return {"data": row["data"], "timestamp": row["timestamp"]} if row else None

    def delete_snapshot(self, sync_id: str) -> bool:
        with self._connect() as conn:
            cur = conn.execute("DELETE FROM sync_snapshots WHERE id = ?", (sync_id,))
        return cur.rowcount > 0

    def history(self, user_id: str, limit: int = 50) -> list[dict]:
        with self._connect() as conn:
            rows = conn.execute(
                "SELECT * FROM sync_history WHERE user_id = ? ORDER BY id DESC LIMIT ?",
                (user_id, limit),
            ).fetchall()
        return [dict(r) for r in rows]

    def ping(self) -> bool:
        try:
            with self._connect() as conn:
                conn.execute("SELECT 1")
            return True
        except sqlite3.Error as e:
            logger.warning("Sync server database check failed: %s", e)
            return False


def _setup_logging(cfg: dict):
    log_cfg = cfg.get("logging", {})
    level = getattr(logging, str(log_cfg.get("level", "INFO")).upper(), logging.INFO)
    log_file = log_cfg.get("file")

    handlers: list[logging.Handler] = [logging.StreamHandler()]
    if log_file:
        Path(log_file).parent.mkdir(parents=True, exist_ok=True)
        handlers.append(logging.FileHandler(log_file))

    logging.basicConfig(
        level=level,
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        handlers=handlers,
    )


def _error(message: str, status_code: int, **extra) -> JSONResponse:
    return JSONResponse({"success": False, "error": message, **extra}, status_code=status_code)


async def _json_body(request: Request) -> dict | None:
    try:
        body = await request.json()
    except ValueError:
        return None
    return body if isinstance(body, dict) else None


def create_app(store: SyncServerStore | None = None) -> FastAPI:
    """
    Build the server app. Without a store, one is opened at startup from
    server.sqlite_path in config.yaml.
    """

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        if app.state.store is None:
            cfg = get_config()
            _setup_logging(cfg)
            app.state.store = SyncServerStore(cfg["server"]["sqlite_path"])
        logger.info("chatvault sync server v%s ready", __version__)
        yield
        logger.info("chatvault sync server shutting down")

    app = FastAPI(title="chatvault sync server", version=__version__, lifespan=lifespan)
    app.state.store = store

    def _store() -> SyncServerStore:
        return app.state.store

    @app.get("/health")
    async def health():
        return JSONResponse({
            "success": True,
            "status": "ok",
            "version": __version__,
            "database": "online" if _store().ping() else "offline",
        })

    @app.post("/sync/upload")
    async def upload(request: Request):
        body = await _json_body(request)
        if body is None:
            return _error("invalid JSON", 400)
        user_id = body.get("userId")
        data_type = body.get("dataType")
        encrypted = body.get("encryptedData")
        if not user_id or not data_type or not encrypted:
            return _error("Missing required fields: userId, dataType, encryptedData", 400)
        if data_type not in VALID_DATA_TYPES:
            return _error(f"Invalid dataType. Must be one of: {', '.join(VALID_DATA_TYPES)}", 400)

        version = body.get("version") or now_ms()
        try:
            version = int(version)
        except (TypeError, ValueError):
            return _error("version must be an integer", 400)

        accepted = _store().upload(user_id, data_type, encrypted, version, body.get("checksum") or "")
        logger.debug("upload user=%s type=%s v=%d", user_id, data_type, accepted)
        return JSONResponse({"success": True, "version": accepted, "dataType": data_type})

    @app.get("/sync/download")
    async def download(userId: str = "", dataType: str = "", sinceVersion: int | None = None):
        if not userId:
            return _error("Missing required field: userId", 400)
        if not _store().user_exists(userId):
            return _error("User not found", 404, data=[])
        rows = _store().download(userId, dataType or None, sinceVersion)
        return JSONResponse({"success": True, "data": rows, "count": len(rows)})

    @app.delete("/sync/delete")
    async def delete(request: Request):
        body = await _json_body(request)
        if body is None:
            return _error("invalid JSON", 400)
        user_id = body.get("userId")
        data_type = body.get("dataType")
        if not user_id:
            return _error("Missing required field: userId", 400)
        if data_type and data_type not in VALID_DATA_TYPES:
            return _error(f"Invalid dataType. Must be one of: {', '.join(VALID_DATA_TYPES)}", 400)
        deleted = _store().delete(user_id, data_type)
        logger.info("delete user=%s type=%s rows=%d", user_id, data_type or "*", deleted)
        return JSONResponse({"success": True, "deleted": deleted, "dataType": data_type})

    @app.post("/sync")
    async def put_snapshot(request: Request):
        body = await _json_body(request)
        if body is None:
            return _error("invalid JSON", 400)
        sync_id = body.get("id")
        data = body.get("data")
        if not sync_id or not data:
            return _error("Missing required fields: id, data", 400)
        timestamp = body.get("timestamp") or now_ms()
        _store().put_snapshot(sync_id, data, int(timestamp))
        return JSONResponse({"success": True, "timestamp": int(timestamp)})

    @app.get("/sync/{sync_id}")
    async def get_snapshot(sync_id: str):
        snapshot = _store().get_snapshot(sync_id)
        if snapshot is None:
            return _error("No data found", 404)
        return JSONResponse(snapshot)

    @app.delete("/sync/{sync_id}")
    async def delete_snapshot(sync_id: str):
        if not _store().delete_snapshot(sync_id):
            return _error("No data found", 404)
        return JSONResponse({"success": True})

    return app


app = create_app()
