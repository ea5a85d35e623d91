"""
Trade accounting: slippage, P&L and the derived numbers the dashboard shows.
"""
from backend.models.trade import PsychologicalProfile, Trade, TradeType


def execution_slippage(trade_type: TradeType, intent_price: float, entry_price: float) -> float:
    """Positive means the delay between intent and entry cost the trader money."""
    if trade_type == TradeType.BUY:
        return entry_price - intent_price
    return intent_price - entry_price


def position_pnl(trade_type: TradeType, entry_price: float, price: float, size: float) -> float:
    if trade_type == TradeType.BUY:
        return (price - entry_price) * size
    return (entry_price - price) * size


def equity_curve(trades: list[Trade]) -> list[dict]:
    """Cumulative realized P&L, oldest trade first. `trades` is most-recent-first."""
    curve = []
    running = 0.0
    for idx, t in enumerate(reversed(trades)):
        running += t.pnl or 0.0
        curve.append({"index": idx, "trade_id": t.id, "pnl": round(running, 2)})
    return curve


def session_stats(trades: list[Trade], profile: PsychologicalProfile) -> dict:
    closed = [t for t in trades if t.pnl is not None]
    if not closed:
        return {
            "total_trades": 0, "winning_trades": 0, "losing_trades": 0,
            "win_rate": 0.0, "session_pnl": 0.0, "total_slippage": 0.0,
            "intervened_trades": 0, "capital_preserved": round(profile.capital_preserved, 2),
        }
    wins = [t for t in closed if t.pnl > 0]
    pnls = [t.pnl for t in closed]
    return {
        "total_trades": len(closed),
        "winning_trades": len(wins),
        "losing_trades": len(closed) - len(wins),
        "win_rate": round(len(wins) / len(closed) * 100, 1),
        "session_pnl": round(sum(pnls), 2),
        "total_slippage": round(sum(t.execution_slippage or 0.0 for t in closed), 2),
        "intervened_trades": sum(1 for t in closed if t.was_intervened),
        "capital_preserved": round(profile.capital_preserved, 2),
    }


def bias_breakdown(profile: PsychologicalProfile) -> list[dict]:
    return [
        {"name": "FOMO", "value": profile.fomo_score},
        {"name": "Revenge", "value": profile.revenge_trade_likelihood * 100},
        {"name": "Streak", "value": profile.streak_count * 10},
    ]
