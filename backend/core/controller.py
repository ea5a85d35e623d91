"""
Trade lifecycle controller.

Owns the single open position and the in-memory profile, and walks every trade
through intent -> judgment -> (optional) intervention -> open -> closed.
State is loaded from and flushed to the JournalStore at the transitions below only.
"""
import asyncio
import logging
import math
import time
import uuid
from dataclasses import dataclass
from enum import Enum
from typing import Callable, Optional

from backend.core.indicators import classify_market_condition
from backend.core.metrics import (
    bias_breakdown, equity_curve, execution_slippage, position_pnl, session_stats,
)
from backend.database import JournalStore
from backend.models.trade import (
    InterventionVerdict, Lesson, Playbook, PsychologicalProfile, Trade,
    TradeIntent, TradeType, now_ms,
)
from backend.services.ai_service import JudgmentService, MIRROR_FALLBACK, coerce_verdict
from backend.services.market_feed import INTERVALS, CandleBuffer, MarketFeed, MarketUpdate
from config.settings import settings

logger = logging.getLogger("ghostcoach.controller")

RECONNECT_MAX_BACKOFF_SECONDS = 30


def reconnect_backoff_seconds(attempt: int) -> int:
    return min(max(1, 2 ** max(0, attempt - 1)), RECONNECT_MAX_BACKOFF_SECONDS)


class TradeRejected(ValueError):
    """A command was refused before any state changed."""


class PlaybookSynthesisError(RuntimeError):
    pass


class ControllerState(str, Enum):
    IDLE = "idle"
    AWAITING_JUDGMENT = "awaiting_judgment"
    INTERVENTION_PENDING = "intervention_pending"
    OPEN = "open"


@dataclass
class PendingIntervention:
    intent: TradeIntent
    intent_timestamp: int
    verdict: InterventionVerdict
    deadline: float         # clock() value at which proceeding unlocks


class TradeLifecycleController:
    def __init__(
        self,
        store: JournalStore,
        judgment: JudgmentService,
        symbol: str = None,
        interval: str = None,
        countdown_seconds: float = None,
        clock: Callable[[], float] = time.monotonic,
        wall_clock: Callable[[], int] = now_ms,
    ):
        self.store = store
        self.judgment = judgment
        self.symbol = symbol or settings.GHOST_SYMBOL
        self.interval = interval or settings.GHOST_INTERVAL
        self.countdown_seconds = (
            settings.INTERVENTION_COUNTDOWN_SECONDS if countdown_seconds is None else countdown_seconds
        )
        self._clock = clock
        self._now_ms = wall_clock

        self.state = ControllerState.IDLE
        self.buffer = CandleBuffer()
        self.trades: list[Trade] = []
        self.profile = PsychologicalProfile.default()
        self.playbook: Optional[Playbook] = None
        self.lessons: list[Lesson] = []
        self.open_trade: Optional[Trade] = None
        self.pending: Optional[PendingIntervention] = None
        self.reasoning_draft = ""
        self.lot_size = 0.1
        self.last_narrative: Optional[str] = None
        self._streaming = False

    # ── Loading ──────────────────────────────────────────────

    def load(self) -> None:
        self.trades = [t for t in self.store.get_trades() if not t.is_open]
        self.profile = self.store.get_profile() or PsychologicalProfile.default()
        self.playbook = self.store.get_playbook()
        self.lessons = self.store.get_lessons()
        cached = self.store.get_candles(self.interval)
        if cached:
            self.buffer.replace(cached)
        logger.info(
            "Loaded %d trades, capital preserved %.2f", len(self.trades), self.profile.capital_preserved
        )

    # ── Market data ──────────────────────────────────────────────

    @property
    def market_price(self) -> float:
        return self.buffer.latest_price

    def on_market_update(self, update: MarketUpdate) -> None:
        """Accepted in every state. Entry/exit sample the price at their own transition."""
        self.buffer.apply(update)
        if update.is_candle_closed:
            self.store.save_candles(self.interval, self.buffer.candles)

    def set_interval(self, interval: str) -> None:
        """Switch timeframe. A running stream drops the old subscription and resubscribes."""
        if interval not in INTERVALS:
            raise TradeRejected(f"Unsupported interval {interval!r}")
        self.interval = interval
        self.buffer.replace(self.store.get_candles(interval))

    def stop_stream(self) -> None:
        """Stop reconnecting. Takes effect when the current subscription ends."""
        self._streaming = False

    async def _seed_history(self, feed: MarketFeed, interval: str, limit: int) -> None:
        loop = asyncio.get_running_loop()
        try:
            history = await loop.run_in_executor(
                None, feed.fetch_history, self.symbol, interval, limit
            )
        except Exception as e:
            logger.error("History fetch failed, using cached candles: %s", e)
            return
        if history and interval == self.interval:
            self.buffer.replace(history)
            self.store.save_candles(interval, history)

    async def stream(
        self, feed: MarketFeed, history_limit: int = 100, sleep=asyncio.sleep
    ) -> None:
        """
        Seed candles from REST then follow the websocket until stopped or cancelled.
        Dropped connections are retried with capped exponential backoff.
        """
        self._streaming = True
        attempt = 0
        while self._streaming:
            interval = self.interval
            await self._seed_history(feed, interval, history_limit)

            error = None
            updates = feed.subscribe(self.symbol, interval)
            try:
                async for update in updates:
                    attempt = 0
                    if interval != self.interval:
                        break
                    self.on_market_update(update)
            except asyncio.CancelledError:
                raise
            except Exception as e:
                error = e
            finally:
                await updates.aclose()

            if not self._streaming:
                break
            if interval != self.interval:
                logger.info("Interval switched %s -> %s, resubscribing", interval, self.interval)
                continue
            attempt += 1
            delay = reconnect_backoff_seconds(attempt)
            if error is not None:
                logger.error("Market stream failed: %s (retry in %ss)", error, delay)
            else:
                logger.warning("Market stream closed (retry in %ss)", delay)
            await sleep(delay)

    # ── Intent & judgment ──────────────────────────────────────────────

    def losing_trades(self) -> list[Trade]:
        return [t for t in self.trades if (t.pnl or 0) < 0]

    async def propose_trade(
        self, trade_type: TradeType, reasoning: str = None, size: float = None
    ) -> InterventionVerdict:
        """
        Submit an intent. Returns the verdict; when no intervention is needed the
        position is already open on return.
        """
        text = self.reasoning_draft if reasoning is None else reasoning
        size = self.lot_size if size is None else size
        if self.state != ControllerState.IDLE:
            raise TradeRejected(f"Cannot propose a trade while {self.state.value}")
        if not text or not text.strip():
            raise TradeRejected("Ghost requires reasoning to protect you.")
        if size <= 0:
            raise TradeRejected("Size must be positive")
        if self.market_price <= 0:
            raise TradeRejected("No market price yet")

        intent = TradeIntent(
            type=TradeType(trade_type), price=self.market_price, reasoning=text, size=size
        )
        intent_timestamp = self._now_ms()
        self.state = ControllerState.AWAITING_JUDGMENT
        logger.info("Intent %s %.4f @ %.2f submitted for judgment", intent.type.value, size, intent.price)

        try:
            verdict = await self.judgment.evaluate(
                intent, self.buffer.candles, self.losing_trades(), self.profile
            )
            if not isinstance(verdict, InterventionVerdict):
                verdict = coerce_verdict(verdict, {t.id for t in self.trades})
        except asyncio.CancelledError:
            self.state = ControllerState.IDLE
            raise
        except Exception as e:
            logger.error("Judgment failed, failing open: %s", e)
            verdict = InterventionVerdict.fail_open()

        if verdict.intervention_required:
            self.pending = PendingIntervention(
                intent=intent,
                intent_timestamp=intent_timestamp,
                verdict=verdict,
                deadline=self._clock() + self.countdown_seconds,
            )
            self.state = ControllerState.INTERVENTION_PENDING
            logger.info("Intervention required: %s", verdict.reason)
            return verdict

        self._execute(intent, intent_timestamp, was_intervened=False)
        return verdict

    def countdown_remaining(self) -> int:
        if self.pending is None:
            return 0
        return max(0, math.ceil(self.pending.deadline - self._clock()))

    def resolve_intervention(self, proceed: bool) -> Optional[Trade]:
        """
        Decline: cancel and bank the estimated risk as preserved capital.
        Proceed: ignored until the countdown has run out, then opens the trade.
        """
        if self.state != ControllerState.INTERVENTION_PENDING or self.pending is None:
            raise TradeRejected("No intervention is pending")

        if proceed:
            if self.countdown_remaining() > 0:
                logger.info("Proceed ignored, %ds left on countdown", self.countdown_remaining())
                return None
            pending, self.pending = self.pending, None
            return self._execute(pending.intent, pending.intent_timestamp, was_intervened=True)

        risk = self.pending.verdict.estimated_risk_amount
        self.pending = None
        self.state = ControllerState.IDLE
        self.profile = self.profile.model_copy(
            update={"capital_preserved": self.profile.capital_preserved + risk}
        )
        self.store.save_profile(self.profile)
        logger.info("Intervention accepted, %.2f preserved", risk)
        return None

    def _execute(self, intent: TradeIntent, intent_timestamp: int, was_intervened: bool) -> Trade:
        entry_price = self.market_price
        trade = Trade(
            id=str(uuid.uuid4()),
            symbol=self.symbol,
            type=intent.type,
            intent_price=intent.price,
            entry_price=entry_price,
            size=intent.size,
            timestamp=self._now_ms(),
            intent_timestamp=intent_timestamp,
            condition=classify_market_condition(self.buffer.candles),
            reasoning=intent.reasoning,
            was_intervened=was_intervened,
            execution_slippage=execution_slippage(intent.type, intent.price, entry_price),
        )
        self.open_trade = trade
        self.state = ControllerState.OPEN
        self.reasoning_draft = ""
        logger.info("Opened %s %s @ %.2f", trade.type.value, trade.id, entry_price)
        return trade

    # ── Open position ──────────────────────────────────────────────

    def live_unrealized_pnl(self) -> float:
        if self.open_trade is None:
            return 0.0
        t = self.open_trade
        return position_pnl(t.type, t.entry_price, self.market_price, t.size)

    async def close_trade(self) -> tuple[Trade, str]:
        if self.state != ControllerState.OPEN or self.open_trade is None:
            raise TradeRejected("No open position to close")

        exit_price = self.market_price
        t = self.open_trade
        closed = t.model_copy(update={
            "exit_price": exit_price,
            "exit_timestamp": self._now_ms(),
            "pnl": position_pnl(t.type, t.entry_price, exit_price, t.size),
        })
        self.open_trade = None
        self.trades = [closed, *self.trades]
        self.state = ControllerState.IDLE
        self.store.save_trade(closed)
        logger.info("Closed %s @ %.2f, pnl %.2f", closed.id, exit_price, closed.pnl)

        try:
            narrative = await self.judgment.narrate(closed, self.buffer.candles)
        except Exception as e:
            logger.error("Post-trade mirror failed: %s", e)
            narrative = MIRROR_FALLBACK
        self.last_narrative = narrative or MIRROR_FALLBACK
        return closed, self.last_narrative

    # ── Coaching documents ──────────────────────────────────────────────

    async def generate_playbook(self) -> Playbook:
        if not self.trades:
            raise TradeRejected("Execute at least one trade to build your course.")
        try:
            playbook = await self.judgment.synthesize(self.trades, self.profile)
        except Exception as e:
            logger.error("Playbook synthesis failed: %s", e)
            raise PlaybookSynthesisError("Neural synthesis failed.") from e
        self.playbook = playbook
        self.store.save_playbook(playbook)
        return playbook

    def delete_playbook(self) -> None:
        self.playbook = None
        self.store.delete_playbook()

    async def refresh_lessons(self) -> list[Lesson]:
        new_lessons = await self.judgment.generate_lessons(self.trades)
        if new_lessons:
            self.lessons = [*new_lessons, *self.lessons]
            self.store.save_lessons(self.lessons)
        return new_lessons

    async def refresh_profile(self) -> PsychologicalProfile:
        updated = await self.judgment.analyze_profile(self.trades, self.profile)
        # Only declined interventions move preserved capital
        self.profile = updated.model_copy(
            update={"capital_preserved": self.profile.capital_preserved}
        )
        self.store.save_profile(self.profile)
        return self.profile

    # ── Dashboard ──────────────────────────────────────────────

    def dashboard(self) -> dict:
        return {
            "stats": session_stats(self.trades, self.profile),
            "equity_curve": equity_curve(self.trades),
            "biases": bias_breakdown(self.profile),
            "live_pnl": self.live_unrealized_pnl(),
        }
