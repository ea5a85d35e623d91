import pytest

from backend.core.metrics import (
    bias_breakdown, equity_curve, execution_slippage, position_pnl, session_stats,
)
from backend.models.trade import PsychologicalProfile, TradeType
from conftest import make_trade


@pytest.mark.parametrize("trade_type,expected", [(TradeType.BUY, 5.0), (TradeType.SELL, -5.0)])
def test_slippage_sign(trade_type, expected):
    # positive always means the delay cost money
    assert execution_slippage(trade_type, intent_price=100.0, entry_price=105.0) == expected


def test_pnl_round_trip():
    assert position_pnl(TradeType.BUY, 100.0, 110.0, 2) == 20.0
    assert position_pnl(TradeType.SELL, 100.0, 110.0, 2) == -20.0


def test_equity_curve_runs_oldest_first():
    trades = [make_trade(id="c", pnl=-4.0), make_trade(id="b", pnl=10.0), make_trade(id="a", pnl=1.5)]
    curve = equity_curve(trades)
    assert [p["trade_id"] for p in curve] == ["a", "b", "c"]
    assert [p["pnl"] for p in curve] == [1.5, 11.5, 7.5]


def test_session_stats():
    trades = [
        make_trade(id="a", pnl=20.0, was_intervened=True, execution_slippage=3.0),
        make_trade(id="b", pnl=-5.0, execution_slippage=-1.0),
    ]
    stats = session_stats(trades, PsychologicalProfile(capital_preserved=25.0))
    assert stats["total_trades"] == 2
    assert stats["win_rate"] == 50.0
    assert stats["session_pnl"] == 15.0
    assert stats["total_slippage"] == 2.0
    assert stats["intervened_trades"] == 1
    assert stats["capital_preserved"] == 25.0


def test_session_stats_empty():
    stats = session_stats([], PsychologicalProfile())
    assert stats["total_trades"] == 0
    assert stats["win_rate"] == 0.0


def test_bias_breakdown_scales():
    profile = PsychologicalProfile(fomo_score=40, revenge_trade_likelihood=0.25, streak_count=3)
    assert [b["value"] for b in bias_breakdown(profile)] == [40, 25.0, 30]
