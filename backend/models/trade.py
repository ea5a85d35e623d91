import time
from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic.alias_generators import to_camel
from typing import Optional
from enum import Enum


def now_ms() -> int:
    return int(time.time() * 1000)


class _Record(BaseModel):
    """Stored and exchanged with camelCase keys; accepts either spelling."""
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    def to_json_dict(self) -> dict:
        return self.model_dump(mode="json", by_alias=True, exclude_none=True)


class TradeType(str, Enum):
    BUY = "BUY"
    SELL = "SELL"


class MarketCondition(str, Enum):
    TRENDING_UP = "Trending Up"
    TRENDING_DOWN = "Trending Down"
    RANGING = "Ranging"
    VOLATILE = "High Volatility"


class RiskTolerance(str, Enum):
    LOW = "Low"
    MEDIUM = "Medium"
    HIGH = "High"


class PlaybookModuleType(str, Enum):
    PRINCIPLE = "principle"
    MISTAKE = "mistake"
    PATTERN = "pattern"
    PROTOCOL = "protocol"


class VisualAidType(str, Enum):
    BAR = "bar"
    LIST = "list"
    WARNING = "warning"


class LessonCategory(str, Enum):
    RISK = "Risk"
    PSYCHOLOGY = "Psychology"
    TECHNICAL = "Technical"


class Candle(_Record):
    time: int               # candle open, epoch seconds
    open: float
    high: float
    low: float
    close: float
    volume: Optional[float] = None


class Trade(_Record):
    id: str
    symbol: str
    type: TradeType
    intent_price: float     # price when the reasoning was submitted
    entry_price: float      # price when execution was confirmed
    exit_price: Optional[float] = None
    size: float = Field(gt=0)
    pnl: Optional[float] = None
    timestamp: int          # entry confirmation, epoch ms
    intent_timestamp: int
    exit_timestamp: Optional[int] = None
    condition: MarketCondition = MarketCondition.RANGING
    reasoning: str
    bias_detected: Optional[list[str]] = None
    was_intervened: bool = False
    capital_saved: Optional[float] = None
    execution_slippage: Optional[float] = None

    @field_validator("reasoning")
    @classmethod
    def _reasoning_not_blank(cls, v: str) -> str:
        if not v.strip():
            raise ValueError("reasoning must not be empty")
        return v

    @property
    def is_open(self) -> bool:
        return self.exit_price is None


class PsychologicalProfile(_Record):
    top_bias: str = "None Detected"
    risk_tolerance: RiskTolerance = RiskTolerance.MEDIUM
    streak_count: int = 0
    fomo_score: float = Field(default=0, ge=0, le=100)
    revenge_trade_likelihood: float = Field(default=0, ge=0, le=1)
    capital_preserved: float = Field(default=0, ge=0)
    last_analysis_timestamp: int = Field(default_factory=now_ms)
    summary: str = "Starting audit..."

    @classmethod
    def default(cls) -> "PsychologicalProfile":
        return cls()


class PlaybookModule(_Record):
    title: str
    content: str
    type: PlaybookModuleType
    visual_aid_type: Optional[VisualAidType] = None  # rendering hint only


class Playbook(_Record):
    id: str
    title: str
    summary: str
    modules: list[PlaybookModule]
    generated_at: int
    trade_count: int


class Lesson(_Record):
    id: str
    title: str
    content: str
    category: LessonCategory
    relevant_trade_ids: list[str] = []


class InterventionEvidence(_Record):
    trade_id: str
    pnl: float
    date: str
    reason: str


class TradeIntent(_Record):
    type: TradeType
    price: float
    reasoning: str
    size: float


class InterventionVerdict(_Record):
    intervention_required: bool
    reason: str = ""
    evidence_summary: Optional[str] = None
    evidence_trades: list[InterventionEvidence] = []
    estimated_risk_amount: float = Field(default=0, ge=0)

    @classmethod
    def fail_open(cls) -> "InterventionVerdict":
        return cls(intervention_required=False, reason="", estimated_risk_amount=0)
