"""
SQLite persistence layer for Ghost Coach.
A single key-value table holds one JSON document per logical namespace.
Every write touches exactly one key; there are no cross-key transactions.
"""
import sqlite3
import json
import logging
import os
from datetime import datetime, timezone

from pydantic import ValidationError

from backend.models.trade import Candle, Lesson, Playbook, PsychologicalProfile, Trade
from config.settings import settings

logger = logging.getLogger("ghostcoach.db")

STORAGE_KEYS = {
    "TRADES": "ghost_archive_v2_trades",
    "PROFILE": "ghost_archive_v2_profile",
    "CANDLES": "ghost_archive_v2_candles",
    "LESSONS": "ghost_archive_v2_lessons",
    "PLAYBOOK": "ghost_archive_v2_playbook",
}

MAX_CANDLES = 200


def _validate_each(model, items: list, label: str) -> list:
    """Validate records one by one, skipping the ones that fail."""
    valid = []
    for i, item in enumerate(items):
        try:
            valid.append(model.model_validate(item))
        except ValidationError as e:
            logger.warning("Skipping stored %s #%d that failed validation: %s", label, i, e)
    return valid


class JournalStore:
    def __init__(self, db_path: str = None):
        self.db_path = db_path or settings.GHOST_DB_PATH
        self._init_db()

    def _get_connection(self) -> sqlite3.Connection:
        os.makedirs(os.path.dirname(os.path.abspath(self.db_path)), exist_ok=True)
        conn = sqlite3.connect(self.db_path)
        conn.row_factory = sqlite3.Row
        conn.execute("PRAGMA journal_mode=WAL")
        return conn

    def _init_db(self):
        conn = self._get_connection()
        conn.executescript("""
            CREATE TABLE IF NOT EXISTS kv_store (
                key         TEXT PRIMARY KEY,
                value       TEXT NOT NULL,
                updated_at  TEXT NOT NULL
            );
        """)
        conn.close()

    # ── Raw key-value access ──────────────────────────────────────

    def _read(self, key: str):
        """Return the decoded JSON stored at `key`, or None when absent or unreadable."""
        conn = self._get_connection()
        row = conn.execute("SELECT value FROM kv_store WHERE key = ?", (key,)).fetchone()
        conn.close()
        if not row:
            return None
        try:
            return json.loads(row["value"])
        except json.JSONDecodeError as e:
            logger.warning("Corrupt value under %s ignored: %s", key, e)
            return None

    def _write(self, key: str, value) -> None:
        now = datetime.now(timezone.utc).isoformat()
        conn = self._get_connection()
        conn.execute(
            """INSERT INTO kv_store (key, value, updated_at) VALUES (?, ?, ?)
               ON CONFLICT(key) DO UPDATE SET value = excluded.value, updated_at = excluded.updated_at""",
            (key, json.dumps(value), now),
        )
        conn.commit()
        conn.close()

    def _delete(self, key: str) -> None:
        conn = self._get_connection()
        conn.execute("DELETE FROM kv_store WHERE key = ?", (key,))
        conn.commit()
        conn.close()

    def clear(self) -> None:
        conn = self._get_connection()
        conn.execute("DELETE FROM kv_store")
        conn.commit()
        conn.close()

    # ── Trades ──────────────────────────────────────────────

    def get_trades(self) -> list[Trade]:
        """All settled trades, most recent first."""
        data = self._read(STORAGE_KEYS["TRADES"])
        if not isinstance(data, list):
            return []
        return _validate_each(Trade, data, "trade")

    def save_trade(self, trade: Trade) -> None:
        trades = self.get_trades()
        updated = [trade, *trades]
        self._write(STORAGE_KEYS["TRADES"], [t.to_json_dict() for t in updated])
        logger.debug("Trade %s archived (%d total)", trade.id, len(updated))

    # ── Profile ──────────────────────────────────────────────

    def get_profile(self) -> PsychologicalProfile | None:
        data = self._read(STORAGE_KEYS["PROFILE"])
        if not isinstance(data, dict):
            return None
        try:
            return PsychologicalProfile.model_validate(data)
        except ValidationError as e:
            logger.warning("Stored profile failed validation: %s", e)
            return None

    def save_profile(self, profile: PsychologicalProfile) -> None:
        self._write(STORAGE_KEYS["PROFILE"], profile.to_json_dict())

    # ── Playbook ──────────────────────────────────────────────

    def get_playbook(self) -> Playbook | None:
        data = self._read(STORAGE_KEYS["PLAYBOOK"])
        if not isinstance(data, dict):
            return None
        try:
            return Playbook.model_validate(data)
        except ValidationError as e:
            logger.warning("Stored playbook failed validation: %s", e)
            return None

    def save_playbook(self, playbook: Playbook) -> None:
        self._write(STORAGE_KEYS["PLAYBOOK"], playbook.to_json_dict())

    def delete_playbook(self) -> None:
        self._delete(STORAGE_KEYS["PLAYBOOK"])

    # ── Lessons ──────────────────────────────────────────────

    def get_lessons(self) -> list[Lesson]:
        data = self._read(STORAGE_KEYS["LESSONS"])
        if not isinstance(data, list):
            return []
        return _validate_each(Lesson, data, "lesson")

    def save_lessons(self, lessons: list[Lesson]) -> None:
        self._write(STORAGE_KEYS["LESSONS"], [lesson.to_json_dict() for lesson in lessons])

    # ── Candles ──────────────────────────────────────────────

    def get_candles(self, timeframe: str) -> list[Candle]:
        data = self._read(f"{STORAGE_KEYS['CANDLES']}_{timeframe}")
        if not isinstance(data, list):
            return []
        return _validate_each(Candle, data, f"{timeframe} candle")

    def save_candles(self, timeframe: str, candles: list[Candle]) -> None:
        kept = candles[-MAX_CANDLES:]
        self._write(
            f"{STORAGE_KEYS['CANDLES']}_{timeframe}",
            [c.to_json_dict() for c in kept],
        )
