"""tests/test_database.py: JournalStore key-value persistence."""
import sqlite3

from backend.database import MAX_CANDLES, STORAGE_KEYS, JournalStore
from backend.models.trade import PsychologicalProfile
from conftest import make_candles, make_lesson, make_playbook, make_trade


def _corrupt(store: JournalStore, key: str, raw: str) -> None:
    conn = sqlite3.connect(store.db_path)
    conn.execute(
        "INSERT OR REPLACE INTO kv_store (key, value, updated_at) VALUES (?, ?, '')", (key, raw)
    )
    conn.commit()
    conn.close()


class TestTrades:
    def test_empty_by_default(self, store):
        assert store.get_trades() == []

    def test_save_trade_prepends(self, store):
        store.save_trade(make_trade(id="first"))
        store.save_trade(make_trade(id="second"))
        assert [t.id for t in store.get_trades()] == ["second", "first"]

    def test_round_trip_keeps_fields(self, store):
        store.save_trade(make_trade(id="x", was_intervened=True, execution_slippage=12.5))
        loaded = store.get_trades()[0]
        assert loaded.was_intervened is True
        assert loaded.execution_slippage == 12.5
        assert loaded.pnl == 20.0

    def test_persisted_with_camel_case_keys(self, store):
        store.save_trade(make_trade())
        raw = store._read(STORAGE_KEYS["TRADES"])
        assert "intentPrice" in raw[0]
        assert "wasIntervened" in raw[0]

    def test_corrupt_json_reads_as_empty(self, store):
        _corrupt(store, STORAGE_KEYS["TRADES"], "{not json")
        assert store.get_trades() == []

    def test_invalid_records_read_as_empty(self, store):
        _corrupt(store, STORAGE_KEYS["TRADES"], '[{"id": "t1"}]')
        assert store.get_trades() == []

    def test_bad_record_skipped_and_rest_survive_next_save(self, store):
        for trade_id in ("t0", "t1", "t2"):
            store.save_trade(make_trade(id=trade_id))
        raw = store._read(STORAGE_KEYS["TRADES"])
        raw[0]["size"] = 0
        store._write(STORAGE_KEYS["TRADES"], raw)

        assert [t.id for t in store.get_trades()] == ["t1", "t0"]

        store.save_trade(make_trade(id="new"))

        assert [t.id for t in store.get_trades()] == ["new", "t1", "t0"]


class TestProfile:
    def test_absent_profile_is_none(self, store):
        assert store.get_profile() is None

    def test_save_replaces(self, store):
        store.save_profile(PsychologicalProfile(capital_preserved=10))
        store.save_profile(PsychologicalProfile(capital_preserved=30, top_bias="FOMO"))
        profile = store.get_profile()
        assert profile.capital_preserved == 30
        assert profile.top_bias == "FOMO"

    def test_corrupt_profile_is_none(self, store):
        _corrupt(store, STORAGE_KEYS["PROFILE"], "[]")
        assert store.get_profile() is None


class TestPlaybook:
    def test_delete_then_read_is_none(self, store):
        store.save_playbook(make_playbook())
        assert store.get_playbook() is not None

        store.delete_playbook()

        assert store.get_playbook() is None

    def test_replaced_wholesale(self, store):
        store.save_playbook(make_playbook(trade_count=1))
        store.save_playbook(make_playbook(trade_count=7))
        assert store.get_playbook().trade_count == 7

    def test_delete_when_absent_is_noop(self, store):
        store.delete_playbook()
        assert store.get_playbook() is None


class TestCandlesAndLessons:
    def test_candles_capped_to_most_recent(self, store):
        store.save_candles("1m", make_candles([float(i) for i in range(250)]))
        candles = store.get_candles("1m")
        assert len(candles) == MAX_CANDLES
        assert candles[0].close == 50.0
        assert candles[-1].close == 249.0

    def test_candles_scoped_per_timeframe(self, store):
        store.save_candles("1m", make_candles([1.0]))
        assert store.get_candles("5m") == []

    def test_lessons_round_trip(self, store):
        store.save_lessons([make_lesson("a"), make_lesson("b")])
        assert [lesson.id for lesson in store.get_lessons()] == ["a", "b"]

    def test_bad_lesson_and_candle_skipped(self, store):
        good_lesson = make_lesson("ok").to_json_dict()
        store._write(STORAGE_KEYS["LESSONS"], [{"id": "broken"}, good_lesson])
        good_candle = make_candles([3.0])[0].to_json_dict()
        store._write(f"{STORAGE_KEYS['CANDLES']}_1m", [good_candle, {"time": "soon"}])

        assert [lesson.id for lesson in store.get_lessons()] == ["ok"]
        assert [c.close for c in store.get_candles("1m")] == [3.0]

    def test_clear_wipes_everything(self, store):
        store.save_trade(make_trade())
        store.save_profile(PsychologicalProfile())
        store.clear()
        assert store.get_trades() == []
        assert store.get_profile() is None


def test_survives_reopen(tmp_path):
    path = str(tmp_path / "nested" / "ghost.db")
    JournalStore(db_path=path).save_trade(make_trade(id="kept"))
    assert [t.id for t in JournalStore(db_path=path).get_trades()] == ["kept"]
