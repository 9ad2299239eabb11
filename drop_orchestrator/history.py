from __future__ import annotations

import logging
import os
import sqlite3
import threading
from datetime import datetime, timezone

from .config import DB_PATH
from .models import AppendResult, ClaimRecord, DropProgress

SCHEMA = """
	CREATE TABLE IF NOT EXISTS drop_history (
		id INTEGER PRIMARY KEY AUTOINCREMENT,
		dedupe_key TEXT NOT NULL UNIQUE,
		reward_id TEXT,
		campaign_id TEXT NOT NULL,
		campaign_name TEXT NOT NULL,
		game_name TEXT NOT NULL,
		reward_name TEXT NOT NULL,
		reward_image TEXT,
		streamer_name TEXT NOT NULL,
		claimed_at TEXT NOT NULL,
		required_minutes INTEGER NOT NULL DEFAULT 0
	);

	CREATE TABLE IF NOT EXISTS active_progress (
		drop_id TEXT PRIMARY KEY,
		campaign_id TEXT NOT NULL,
		current_minutes INTEGER DEFAULT 0,
		required_minutes INTEGER NOT NULL,
		streamer_name TEXT NOT NULL,
		started_at TEXT NOT NULL,
		last_updated TEXT NOT NULL
	);

	CREATE INDEX IF NOT EXISTS idx_drop_history_claimed_at ON drop_history(claimed_at);
	CREATE INDEX IF NOT EXISTS idx_drop_history_campaign_id ON drop_history(campaign_id);
	CREATE INDEX IF NOT EXISTS idx_drop_history_game_name ON drop_history(game_name);
"""


def _now_iso() -> str:
	return datetime.now(timezone.utc).isoformat()


def _parse_time(value: str | None) -> datetime:
	try:
		dt = datetime.fromisoformat(value)
		return dt if dt.tzinfo else dt.replace(tzinfo=timezone.utc)
	except (TypeError, ValueError):
		return datetime.now(timezone.utc)


class DropHistory:
	"""Append-only claim ledger plus mutable progress rows, backed by sqlite.

	Safe to share between the orchestrator loop and the web server thread.
	"""

	def __init__(self, db_path: str = DB_PATH):
		self._db_path = db_path
		self._lock = threading.Lock()
		self._connection: sqlite3.Connection | None = None

	def _get_connection(self) -> sqlite3.Connection:
		if self._connection is None:
			parent = os.path.dirname(os.path.abspath(self._db_path))
			os.makedirs(parent, exist_ok=True)
			self._connection = sqlite3.connect(self._db_path, check_same_thread=False, isolation_level=None)
			self._connection.row_factory = sqlite3.Row
			self._connection.execute("PRAGMA journal_mode = WAL")
			self._connection.executescript(SCHEMA)
			logging.debug(f"Drop history opened at {self._db_path}")
		return self._connection

	def append(self, record: ClaimRecord) -> AppendResult:
		with self._lock:
			conn = self._get_connection()
			cur = conn.execute(
				"""
				INSERT OR IGNORE INTO drop_history (
					dedupe_key, reward_id, campaign_id, campaign_name, game_name,
					reward_name, reward_image, streamer_name, claimed_at, required_minutes
				) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
				""",
				(
					record.dedupe_key,
					record.reward_id,
					record.campaign_id,
					record.campaign_name,
					record.game_name,
					record.reward_name,
					record.reward_image,
					record.streamer_name,
					record.claimed_at.isoformat(),
					int(record.required_minutes or 0),
				),
			)
			return AppendResult.OK if cur.rowcount == 1 else AppendResult.DUPLICATE

	def contains(self, record: ClaimRecord) -> bool:
		with self._lock:
			row = self._get_connection().execute(
				"SELECT 1 FROM drop_history WHERE dedupe_key = ?", (record.dedupe_key,)
			).fetchone()
			return row is not None

	def list(self, limit: int = 100) -> list[ClaimRecord]:
		with self._lock:
			rows = self._get_connection().execute(
				"SELECT * FROM drop_history ORDER BY claimed_at DESC, id DESC LIMIT ?", (int(limit),)
			).fetchall()
		return [self._row_to_record(r) for r in rows]

	def list_by_game(self, game_name: str) -> list[ClaimRecord]:
		with self._lock:
			rows = self._get_connection().execute(
				"SELECT * FROM drop_history WHERE game_name = ? ORDER BY claimed_at DESC, id DESC", (game_name,)
			).fetchall()
		return [self._row_to_record(r) for r in rows]

	def count(self) -> int:
		with self._lock:
			row = self._get_connection().execute("SELECT COUNT(*) AS n FROM drop_history").fetchone()
			return int(row["n"])

	def start_progress(self, drop_id: str, campaign_id: str, required_minutes: int, streamer_name: str) -> None:
		now = _now_iso()
		with self._lock:
			self._get_connection().execute(
				"""
				INSERT OR REPLACE INTO active_progress
					(drop_id, campaign_id, current_minutes, required_minutes, streamer_name, started_at, last_updated)
				VALUES (?, ?, 0, ?, ?, ?, ?)
				""",
				(drop_id, campaign_id, int(required_minutes or 0), streamer_name, now, now),
			)

	def update_progress(self, drop_id: str, current_minutes: int) -> bool:
		with self._lock:
			cur = self._get_connection().execute(
				"UPDATE active_progress SET current_minutes = ?, last_updated = ? WHERE drop_id = ?",
				(int(current_minutes), _now_iso(), drop_id),
			)
			return cur.rowcount == 1

	def get_active_progress(self) -> list[dict]:
		with self._lock:
			rows = self._get_connection().execute(
				"SELECT * FROM active_progress ORDER BY started_at"
			).fetchall()
		return [dict(r) for r in rows]

	def get_progress(self, drop_id: str) -> DropProgress | None:
		with self._lock:
			row = self._get_connection().execute(
				"SELECT * FROM active_progress WHERE drop_id = ?", (drop_id,)
			).fetchone()
		if row is None:
			return None
		return DropProgress(row["drop_id"], row["campaign_id"], row["current_minutes"], row["required_minutes"])

	def clear_progress(self, drop_id: str) -> None:
		with self._lock:
			self._get_connection().execute("DELETE FROM active_progress WHERE drop_id = ?", (drop_id,))

	def close(self) -> None:
		with self._lock:
			if self._connection is not None:
				self._connection.close()
				self._connection = None

	@staticmethod
	def _row_to_record(row: sqlite3.Row) -> ClaimRecord:
		return ClaimRecord(
			reward_id=row["reward_id"],
			campaign_id=row["campaign_id"],
			campaign_name=row["campaign_name"],
			game_name=row["game_name"],
			reward_name=row["reward_name"],
			streamer_name=row["streamer_name"],
			required_minutes=row["required_minutes"],
			claimed_at=_parse_time(row["claimed_at"]),
			reward_image=row["reward_image"] or "",
		)
