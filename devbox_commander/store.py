"""
Devbox Commander — Container Store (SQLite)
═══════════════════════════════════════════
Durable state for dev containers:
- containers table: one row per record, unique name, runtime id lookup
- metrics table: append-only samples keyed by (container_id, recorded_at)
- Status transitions stamp started_at / stopped_at
"""

import os
import json
import sqlite3
import logging
from datetime import datetime, timedelta
from typing import Optional, List, Dict, Any

from . import config
from .errors import ConflictError
from .models import ContainerRecord, ContainerStatus, MetricsSample

logger = logging.getLogger(__name__)

_UPDATABLE = {
    "runtime_id", "name", "template", "mode", "status", "cpu_limit", "memory_limit",
    "disk_limit", "repo_type", "repo_url", "config", "volume_name", "started_at", "stopped_at",
}


class ContainerStore:
    """SQLite-backed persistence; one short-lived connection per operation."""

    def __init__(self, db_path: str = config.DB_PATH):
        self.db_path = db_path

    def _get_conn(self) -> sqlite3.Connection:
        directory = os.path.dirname(self.db_path)
        if directory:
            os.makedirs(directory, exist_ok=True)
        conn = sqlite3.connect(self.db_path)
        conn.row_factory = sqlite3.Row
        conn.execute("PRAGMA journal_mode=WAL")
        return conn

    def init_db(self):
        """Create tables and indexes if they don't exist."""
        conn = self._get_conn()
        try:
            conn.execute("""
                CREATE TABLE IF NOT EXISTS containers (
                    id TEXT PRIMARY KEY,
                    runtime_id TEXT NOT NULL,
                    name TEXT NOT NULL,
                    template TEXT NOT NULL,
                    mode TEXT NOT NULL,
                    status TEXT NOT NULL,
                    cpu_limit REAL NOT NULL,
                    memory_limit INTEGER NOT NULL,
                    disk_limit INTEGER NOT NULL,
                    repo_type TEXT DEFAULT 'empty',
                    repo_url TEXT,
                    config_json TEXT DEFAULT '{}',
                    created_at TEXT,
                    updated_at TEXT,
                    started_at TEXT,
                    stopped_at TEXT
                )
            """)
            conn.execute("CREATE UNIQUE INDEX IF NOT EXISTS idx_containers_name ON containers(name)")
            conn.execute("CREATE INDEX IF NOT EXISTS idx_containers_runtime ON containers(runtime_id)")
            conn.execute("CREATE INDEX IF NOT EXISTS idx_containers_status ON containers(status)")
            conn.execute("""
                CREATE TABLE IF NOT EXISTS metrics (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    container_id TEXT NOT NULL,
                    recorded_at TEXT NOT NULL,
                    cpu_percent REAL DEFAULT 0,
                    memory_usage REAL DEFAULT 0,
                    memory_limit REAL DEFAULT 0,
                    disk_usage REAL DEFAULT 0,
                    network_rx_bytes INTEGER DEFAULT 0,
                    network_tx_bytes INTEGER DEFAULT 0
                )
            """)
            conn.execute(
                "CREATE INDEX IF NOT EXISTS idx_metrics_container_time ON metrics(container_id, recorded_at)"
            )
            # Auto-migration: volume_name column added after the first schema
            try:
                conn.execute("ALTER TABLE containers ADD COLUMN volume_name TEXT DEFAULT NULL")
            except sqlite3.OperationalError:
                pass  # Column already exists
            conn.commit()
        finally:
            conn.close()

    # ── Row ↔ Model Conversion ────────────────────────────

    @staticmethod
    def _row_to_record(row: sqlite3.Row) -> ContainerRecord:
        return ContainerRecord(
            id=row["id"],
            runtime_id=row["runtime_id"],
            name=row["name"],
            template=row["template"],
            mode=row["mode"],
            status=row["status"],
            cpu_limit=row["cpu_limit"],
            memory_limit=row["memory_limit"],
            disk_limit=row["disk_limit"],
            repo_type=row["repo_type"] or "empty",
            repo_url=row["repo_url"],
            config=json.loads(row["config_json"] or "{}"),
            volume_name=row["volume_name"],
            created_at=row["created_at"],
            updated_at=row["updated_at"],
            started_at=row["started_at"],
            stopped_at=row["stopped_at"],
        )

    @staticmethod
    def _to_column(key: str, value: Any):
        if key == "config":
            return "config_json", json.dumps(value or {})
        if hasattr(value, "value"):
            return key, value.value
        return key, value

    # ── Containers ────────────────────────────────────────

    def create(self, record: ContainerRecord) -> ContainerRecord:
        """Insert a record. Raises ConflictError if the name is taken."""
        conn = self._get_conn()
        try:
            conn.execute("""
                INSERT INTO containers (id, runtime_id, name, template, mode, status,
                    cpu_limit, memory_limit, disk_limit, repo_type, repo_url, config_json,
                    volume_name, created_at, updated_at, started_at, stopped_at)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """, (
                record.id, record.runtime_id, record.name, record.template.value,
                record.mode.value, record.status.value, record.cpu_limit,
                record.memory_limit, record.disk_limit, record.repo_type.value,
                record.repo_url, json.dumps(record.config), record.volume_name,
                record.created_at, record.updated_at, record.started_at, record.stopped_at,
            ))
            conn.commit()
        except sqlite3.IntegrityError as e:
            raise ConflictError(f"Container name '{record.name}' is already taken") from e
        finally:
            conn.close()
        logger.debug(f"[Store] Inserted {record.name} ({record.id})")
        return record

    def get(self, container_id: str) -> Optional[ContainerRecord]:
        conn = self._get_conn()
        try:
            row = conn.execute("SELECT * FROM containers WHERE id = ?", (container_id,)).fetchone()
            return self._row_to_record(row) if row else None
        finally:
            conn.close()

    def get_by_name(self, name: str) -> Optional[ContainerRecord]:
        conn = self._get_conn()
        try:
            row = conn.execute("SELECT * FROM containers WHERE name = ?", (name,)).fetchone()
            return self._row_to_record(row) if row else None
        finally:
            conn.close()

    def get_by_runtime_id(self, runtime_id: str) -> Optional[ContainerRecord]:
        conn = self._get_conn()
        try:
            row = conn.execute(
                "SELECT * FROM containers WHERE runtime_id = ?", (runtime_id,)
            ).fetchone()
            return self._row_to_record(row) if row else None
        finally:
            conn.close()

    def list_all(self) -> List[ContainerRecord]:
        conn = self._get_conn()
        try:
            rows = conn.execute("SELECT * FROM containers ORDER BY created_at DESC").fetchall()
            return [self._row_to_record(r) for r in rows]
        finally:
            conn.close()

    def update(self, container_id: str, **fields) -> Optional[ContainerRecord]:
        """Apply a partial update and return the fresh record (None if missing)."""
        unknown = set(fields) - _UPDATABLE
        if unknown:
            raise ValueError(f"Unknown container fields: {sorted(unknown)}")
        if fields:
            columns = dict(self._to_column(k, v) for k, v in fields.items())
            columns["updated_at"] = datetime.utcnow().isoformat()
            assignments = ", ".join(f"{col} = ?" for col in columns)
            conn = self._get_conn()
            try:
                conn.execute(
                    f"UPDATE containers SET {assignments} WHERE id = ?",
                    (*columns.values(), container_id),
                )
                conn.commit()
            except sqlite3.IntegrityError as e:
                raise ConflictError(f"Update violates uniqueness: {e}") from e
            finally:
                conn.close()
        return self.get(container_id)

    def update_status(self, container_id: str, status: ContainerStatus) -> Optional[ContainerRecord]:
        """Set status, stamping started_at on running and stopped_at on stopped/exited."""
        fields: Dict[str, Any] = {"status": status}
        now = datetime.utcnow().isoformat()
        if status == ContainerStatus.RUNNING:
            fields["started_at"] = now
        elif status in (ContainerStatus.STOPPED, ContainerStatus.EXITED):
            fields["stopped_at"] = now
        return self.update(container_id, **fields)

    def delete(self, container_id: str) -> bool:
        conn = self._get_conn()
        try:
            cursor = conn.execute("DELETE FROM containers WHERE id = ?", (container_id,))
            conn.commit()
            return cursor.rowcount > 0
        finally:
            conn.close()

    # ── Metrics ───────────────────────────────────────────

    def record_metrics(self, sample: MetricsSample):
        conn = self._get_conn()
        try:
            conn.execute("""
                INSERT INTO metrics (container_id, recorded_at, cpu_percent, memory_usage,
                    memory_limit, disk_usage, network_rx_bytes, network_tx_bytes)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?)
            """, (
                sample.container_id, sample.recorded_at, sample.cpu_percent,
                sample.memory_usage, sample.memory_limit, sample.disk_usage,
                sample.network_rx_bytes, sample.network_tx_bytes,
            ))
            conn.commit()
        finally:
            conn.close()

    def metrics_history(self, container_id: str, limit: int = 100) -> List[MetricsSample]:
        """Most recent samples first."""
        conn = self._get_conn()
        try:
            rows = conn.execute("""
                SELECT * FROM metrics WHERE container_id = ?
                ORDER BY recorded_at DESC LIMIT ?
            """, (container_id, limit)).fetchall()
            return [
                MetricsSample(**{k: r[k] for k in r.keys() if k != "id"})
                for r in rows
            ]
        finally:
            conn.close()

    def prune_metrics(self, older_than: timedelta) -> int:
        cutoff = (datetime.utcnow() - older_than).isoformat()
        conn = self._get_conn()
        try:
            cursor = conn.execute("DELETE FROM metrics WHERE recorded_at < ?", (cutoff,))
            conn.commit()
            return cursor.rowcount
        finally:
            conn.close()

    def delete_metrics(self, container_id: str) -> int:
        conn = self._get_conn()
        try:
            cursor = conn.execute("DELETE FROM metrics WHERE container_id = ?", (container_id,))
            conn.commit()
            return cursor.rowcount
        finally:
            conn.close()
