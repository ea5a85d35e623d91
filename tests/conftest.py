import os
import sys

import pytest

ROOT = os.path.abspath(os.path.join(os.path.dirname(__file__), ".."))
if ROOT not in sys.path:
    sys.path.insert(0, ROOT)

from backend.core.controller import TradeLifecycleController  # noqa: E402
from backend.database import JournalStore  # noqa: E402
from backend.models.trade import (  # noqa: E402
    Candle, InterventionVerdict, Lesson, LessonCategory, Playbook, PlaybookModule,
    PlaybookModuleType, Trade, TradeType,
)
from backend.services.market_feed import MarketUpdate  # noqa: E402


class ManualClock:
    def __init__(self, start: float = 0.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class FakeJudgment:
    """Scripted judgment service. Set an attribute to an Exception to make that call fail."""

    def __init__(self):
        self.verdict = InterventionVerdict.fail_open()
        self.narrative = "You chased the candle."
        self.playbook = None
        self.lessons = []
        self.profile = None
        self.calls = []

    async def evaluate(self, intent, recent_candles, losing_trades, profile):
        self.calls.append(("evaluate", intent, losing_trades))
        if isinstance(self.verdict, Exception):
            raise self.verdict
        return self.verdict

    async def narrate(self, closed_trade, market_context):
        self.calls.append(("narrate", closed_trade))
        if isinstance(self.narrative, Exception):
            raise self.narrative
        return self.narrative

    async def synthesize(self, trades, profile):
        self.calls.append(("synthesize", len(trades)))
        if isinstance(self.playbook, Exception):
            raise self.playbook
        return self.playbook

    async def generate_lessons(self, trades):
        return self.lessons

    async def analyze_profile(self, trades, profile):
        if isinstance(self.profile, Exception):
            raise self.profile
        return self.profile


def make_candles(closes, spread: float = 0.5, start: int = 1_700_000_000, step: int = 60):
    return [
        Candle(time=start + i * step, open=c, high=c + spread, low=c - spread, close=c, volume=1.0)
        for i, c in enumerate(closes)
    ]


def price_update(price: float, closed: bool = False, time: int = 1_700_000_000) -> MarketUpdate:
    candle = Candle(time=time, open=price, high=price, low=price, close=price)
    return MarketUpdate(price=price, is_candle_closed=closed, candle=candle)


def make_trade(**kwargs) -> Trade:
    defaults = dict(
        id="t1",
        symbol="BTCUSDT",
        type=TradeType.BUY,
        intent_price=100.0,
        entry_price=100.0,
        exit_price=110.0,
        size=2.0,
        pnl=20.0,
        timestamp=1_700_000_000_000,
        intent_timestamp=1_699_999_999_000,
        exit_timestamp=1_700_000_060_000,
        reasoning="breakout confirmed",
        was_intervened=False,
        execution_slippage=0.0,
    )
    defaults.update(kwargs)
    return Trade(**defaults)


def make_playbook(trade_count: int = 1) -> Playbook:
    return Playbook(
        id="pb1",
        title="Your Edge",
        summary="Stop chasing.",
        modules=[
            PlaybookModule(title=k.value.title(), content="...", type=k)
            for k in PlaybookModuleType
        ],
        generated_at=1_700_000_000_000,
        trade_count=trade_count,
    )


def make_lesson(lesson_id: str = "l1") -> Lesson:
    return Lesson(
        id=lesson_id, title="Wait for the close", content="Symptom...",
        category=LessonCategory.PSYCHOLOGY, relevant_trade_ids=["t1"],
    )


@pytest.fixture
def store(tmp_path):
    return JournalStore(db_path=str(tmp_path / "ghost.db"))


@pytest.fixture
def judgment():
    return FakeJudgment()


@pytest.fixture
def clock():
    return ManualClock()


@pytest.fixture
def controller(store, judgment, clock):
    c = TradeLifecycleController(
        store, judgment, symbol="BTCUSDT", interval="1m", countdown_seconds=10, clock=clock,
    )
    c.load()
    c.on_market_update(price_update(50000.0))
    return c
