"""
AI Service: handles all LLM interactions for intent judgment,
post-trade mirrors, playbook synthesis and behavioral profiling.
Supports: Groq (free), Google Gemini (free), Anthropic Claude, OpenAI GPT-4.
"""
import asyncio
import functools
import json
import logging
import math
import uuid
from concurrent.futures import ThreadPoolExecutor
from datetime import datetime, timezone
from typing import Protocol

from backend.core.indicators import market_snapshot
from backend.models.trade import (
    Candle, InterventionEvidence, InterventionVerdict, Lesson, LessonCategory,
    Playbook, PlaybookModule, PlaybookModuleType, PsychologicalProfile,
    RiskTolerance, Trade, TradeIntent, VisualAidType, now_ms,
)
from config.settings import settings

logger = logging.getLogger("ghostcoach.ai")

MAX_EVIDENCE_TRADES = 2
MAX_LOSING_TRADES = 5
RECENT_CANDLES = 10
MIRROR_FALLBACK = "Mirror unavailable."
MIRROR_EMPTY = "Analysis complete."
DEFAULT_INTERVENTION_REASON = "This intent matches a pattern from your losing trades."
PLAYBOOK_ORDER = [
    PlaybookModuleType.PRINCIPLE,
    PlaybookModuleType.MISTAKE,
    PlaybookModuleType.PATTERN,
    PlaybookModuleType.PROTOCOL,
]


def _call_llm(system_prompt: str, user_prompt: str, json_mode: bool = False) -> str:
    provider = settings.AI_PROVIDER

    if provider == "groq":
        from groq import Groq
        client = Groq(api_key=settings.GROQ_API_KEY)
        messages = [
            {"role": "system", "content": system_prompt},
            {"role": "user", "content": user_prompt},
        ]
        kwargs = {"model": "llama-3.3-70b-versatile", "messages": messages, "max_tokens": 4096}
        if json_mode:
            kwargs["response_format"] = {"type": "json_object"}
        response = client.chat.completions.create(**kwargs)
        return response.choices[0].message.content

    elif provider == "gemini":
        import google.generativeai as genai
        genai.configure(api_key=settings.GOOGLE_API_KEY)
        model = genai.GenerativeModel(
            "gemini-2.0-flash",
            system_instruction=system_prompt,
        )
        gen_config = {}
        if json_mode:
            gen_config["response_mime_type"] = "application/json"
        response = model.generate_content(user_prompt, generation_config=gen_config or None)
        return response.text

    elif provider == "anthropic":
        from anthropic import Anthropic
        client = Anthropic(api_key=settings.ANTHROPIC_API_KEY)
        response = client.messages.create(
            model="claude-sonnet-4-20250514",
            max_tokens=4096,
            system=system_prompt,
            messages=[{"role": "user", "content": user_prompt}],
        )
        return response.content[0].text

    else:  # openai
        from openai import OpenAI
        client = OpenAI(api_key=settings.OPENAI_API_KEY)
        messages = [
            {"role": "system", "content": system_prompt},
            {"role": "user", "content": user_prompt},
        ]
        kwargs = {"model": "gpt-4o", "messages": messages, "max_tokens": 4096}
        if json_mode:
            kwargs["response_format"] = {"type": "json_object"}
        response = client.chat.completions.create(**kwargs)
        return response.choices[0].message.content


def _parse_json(result: str) -> dict:
    try:
        return json.loads(result)
    except (json.JSONDecodeError, TypeError):
        # Try to extract JSON from the response
        text = result or ""
        start = text.find("{")
        end = text.rfind("}") + 1
        if start != -1 and end > start:
            return json.loads(text[start:end])
        raise ValueError("AI did not return valid JSON")


def _as_bool(value) -> bool:
    if isinstance(value, str):
        return value.strip().lower() in ("true", "yes", "1")
    return bool(value)


def _as_float(value, default: float = 0.0) -> float:
    try:
        number = float(value)
    except (TypeError, ValueError):
        return default
    return default if math.isnan(number) or math.isinf(number) else number


def _clamp(value: float, low: float, high: float) -> float:
    return max(low, min(high, value))


def _trade_date(trade: Trade) -> str:
    return datetime.fromtimestamp(trade.timestamp / 1000, tz=timezone.utc).strftime("%Y-%m-%d")


# ──────────────────────────────────────────────
# 1. INTENT JUDGE: intervene before a bad entry
# ──────────────────────────────────────────────

INTENT_JUDGE_SYSTEM = """You are GHOST, a high-stakes behavioral trading coach. A trader is about to open a position. Decide whether this intent repeats one of their recurring losing patterns (FOMO, revenge trading, ignoring the trend, oversizing).

If the trader's reasoning is weak or contradicts the recent candles, intervention is REQUIRED.

Output ONLY valid JSON with this schema:
{
  "interventionRequired": true,
  "reason": "one or two sentences addressed to the trader",
  "evidenceSummary": "short summary of the matching history",
  "evidenceTrades": [
    {"tradeId": "id from the losing history", "pnl": -42.5, "date": "2024-01-31", "reason": "why this trade matches"}
  ],
  "estimatedRiskAmount": 25.0
}

Rules:
- If interventionRequired is true, pick 1-2 SPECIFIC trade IDs from the losing history that match this behavior. Never invent IDs.
- estimatedRiskAmount is a non-negative dollar amount based on the trade size and recent volatility.
- If interventionRequired is false, evidenceTrades is an empty list."""


def coerce_verdict(data: dict, known_trade_ids: set[str]) -> InterventionVerdict:
    """Validate untrusted verdict JSON into an InterventionVerdict."""
    if not isinstance(data, dict):
        raise ValueError("Verdict must be a JSON object")
    if "interventionRequired" not in data:
        raise ValueError("Verdict is missing interventionRequired")

    required = _as_bool(data["interventionRequired"])
    reason = str(data.get("reason") or "").strip()
    if required and not reason:
        reason = DEFAULT_INTERVENTION_REASON
    risk = max(0.0, _as_float(data.get("estimatedRiskAmount")))

    evidence = []
    for item in data.get("evidenceTrades") or []:
        if not isinstance(item, dict):
            continue
        trade_id = str(item.get("tradeId", ""))
        if trade_id not in known_trade_ids:
            logger.warning("Dropping evidence citing unknown trade %s", trade_id)
            continue
        evidence.append(InterventionEvidence(
            trade_id=trade_id,
            pnl=_as_float(item.get("pnl")),
            date=str(item.get("date", "")),
            reason=str(item.get("reason", "")),
        ))
        if len(evidence) == MAX_EVIDENCE_TRADES:
            break

    summary = data.get("evidenceSummary")
    return InterventionVerdict(
        intervention_required=required,
        reason=reason,
        evidence_summary=str(summary) if summary else None,
        evidence_trades=evidence,
        estimated_risk_amount=risk,
    )


def _intent_prompt(
    intent: TradeIntent,
    recent_candles: list[Candle],
    losing: list[Trade],
    profile: PsychologicalProfile,
) -> str:
    snapshot = market_snapshot(recent_candles)
    return f"""
TRADER INTENT:
- Action: {intent.type.value}
- Size: {intent.size}
- Intent Price: ${intent.price}
- Reasoning: "{intent.reasoning[:1000]}"

MARKET CONTEXT (Recent {RECENT_CANDLES} Candles):
{json.dumps([c.to_json_dict() for c in recent_candles[-RECENT_CANDLES:]])}

Indicators on the latest candle:
{json.dumps(snapshot) if snapshot else 'N/A (not enough history)'}

Losing Trade History:
{json.dumps([{"id": t.id, "pnl": t.pnl, "reasoning": t.reasoning, "date": _trade_date(t)} for t in losing])}

Profile:
- Top bias: {profile.top_bias}
- FOMO score: {profile.fomo_score}
- Revenge trade likelihood: {profile.revenge_trade_likelihood}
"""


def analyze_trade_intent(
    intent: TradeIntent,
    recent_candles: list[Candle],
    trade_history: list[Trade],
    profile: PsychologicalProfile,
) -> InterventionVerdict:
    """Judge an intent against the trader's losing history. Fails open."""
    losing = [t for t in trade_history if (t.pnl or 0) < 0][:MAX_LOSING_TRADES]
    try:
        prompt = _intent_prompt(intent, recent_candles, losing, profile)
        result = _call_llm(INTENT_JUDGE_SYSTEM, prompt, json_mode=True)
        return coerce_verdict(_parse_json(result), {t.id for t in losing})
    except Exception as e:
        logger.error("Intent analysis failed, allowing trade: %s", e)
        return InterventionVerdict.fail_open()


# ──────────────────────────────────────────────
# 2. POST-TRADE MIRROR: expectation vs outcome
# ──────────────────────────────────────────────

MIRROR_SYSTEM = """You perform a "Brutal Mirror" analysis on a completed trade. Explain the gap between the trader's expectation and what actually happened.

If the trader's idea was correct at their intent price, but the analysis delay or intervention caused them to enter at a worse price leading to a loss, ACKNOWLEDGE that this was an "Execution Cost" and defend their logic while explaining why the intervention (if any) was still psychologically valuable.

Limit to 2-3 piercing sentences. Plain text, no markdown."""


def generate_post_trade_mirror(trade: Trade, market_context: list[Candle]) -> str:
    slippage_info = ""
    if trade.execution_slippage:
        slippage_info = (
            f"NOTE: The system caused a slippage of ${trade.execution_slippage:.2f} "
            "between the user's intent and actual entry."
        )
    pnl = trade.pnl or 0.0
    prompt = f"""
Trade Type: {trade.type.value}
Size: {trade.size}
User intent price: ${trade.intent_price:.2f}
Actual entry price: ${trade.entry_price:.2f}
Exit price: ${(trade.exit_price or 0.0):.2f}
Market condition at entry: {trade.condition.value}
Intervened: {trade.was_intervened}
User reasoning was: "{trade.reasoning[:1000]}"
Outcome: {'WIN' if pnl > 0 else 'LOSS'} (${pnl:.2f})
{slippage_info}

Last candles: {json.dumps([c.to_json_dict() for c in market_context[-RECENT_CANDLES:]])}
"""
    try:
        text = _call_llm(MIRROR_SYSTEM, prompt)
    except Exception as e:
        logger.error("Post-trade mirror failed: %s", e)
        return MIRROR_FALLBACK
    text = (text or "").strip()
    return text or MIRROR_EMPTY


# ──────────────────────────────────────────────
# 3. PLAYBOOK: four-module personal course
# ──────────────────────────────────────────────

PLAYBOOK_SYSTEM = """You are GHOST. Synthesize a "Personalized Master Strategy Course" from a trader's complete history.

Focus on their specific strategies, behavioral biases and recurring technical errors.

Output ONLY valid JSON with this schema:
{
  "title": "course title",
  "summary": "two sentence overview",
  "modules": [
    {"title": "...", "content": "...", "type": "principle", "visualAidType": "list"},
    {"title": "...", "content": "...", "type": "mistake", "visualAidType": "warning"},
    {"title": "...", "content": "...", "type": "pattern", "visualAidType": "bar"},
    {"title": "...", "content": "...", "type": "protocol", "visualAidType": "list"}
  ]
}

Exactly 4 modules:
1. principle: a foundational rule they MUST follow.
2. mistake: a deep analysis of their most frequent error.
3. pattern: a behavioral pattern recognition guide.
4. protocol: a step-by-step execution protocol for their edge.
visualAidType is one of bar, list, warning."""


def coerce_playbook(data: dict, trade_count: int) -> Playbook:
    """Validate untrusted playbook JSON. Raises ValueError unless all four module kinds are present."""
    if not isinstance(data, dict):
        raise ValueError("Playbook must be a JSON object")
    title = str(data.get("title") or "").strip()
    if not title:
        raise ValueError("Playbook must have a title")

    by_kind: dict[PlaybookModuleType, PlaybookModule] = {}
    for raw in data.get("modules") or []:
        if not isinstance(raw, dict):
            continue
        try:
            kind = PlaybookModuleType(str(raw.get("type", "")).lower())
        except ValueError:
            continue
        if kind in by_kind:
            continue
        try:
            aid = VisualAidType(raw.get("visualAidType"))
        except ValueError:
            aid = None
        by_kind[kind] = PlaybookModule(
            title=str(raw.get("title", "")),
            content=str(raw.get("content", "")),
            type=kind,
            visual_aid_type=aid,
        )

    missing = [k.value for k in PLAYBOOK_ORDER if k not in by_kind]
    if missing:
        raise ValueError(f"Playbook is missing modules: {', '.join(missing)}")

    return Playbook(
        id=str(uuid.uuid4()),
        title=title,
        summary=str(data.get("summary") or ""),
        modules=[by_kind[k] for k in PLAYBOOK_ORDER],
        generated_at=now_ms(),
        trade_count=trade_count,
    )


def generate_full_playbook(trade_history: list[Trade], profile: PsychologicalProfile) -> Playbook:
    """Synthesize the playbook. Errors propagate to the caller."""
    prompt = f"""
Trade history:
{json.dumps([t.to_json_dict() for t in trade_history])}

Profile:
{json.dumps(profile.to_json_dict())}

FOMO score: {profile.fomo_score}
"""
    result = _call_llm(PLAYBOOK_SYSTEM, prompt, json_mode=True)
    return coerce_playbook(_parse_json(result), len(trade_history))


# ──────────────────────────────────────────────
# 4. LESSONS: one new lesson from recent trades
# ──────────────────────────────────────────────

LESSONS_SYSTEM = """You are a personalized trading tutor. Analyze the trader's recent history and write one high-quality lesson.

Output ONLY valid JSON with this schema:
{
  "lessons": [
    {"id": "short-id", "title": "...", "content": "Symptom, Root Cause, Protocol", "category": "Psychology", "relevantTradeIds": ["..."]}
  ]
}
category is one of Risk, Psychology, Technical."""


def generate_personalized_lessons(trade_history: list[Trade]) -> list[Lesson]:
    if not trade_history:
        return []
    recent = trade_history[:15]
    prompt = f"Recent trades:\n{json.dumps([t.to_json_dict() for t in recent])}"
    try:
        data = _parse_json(_call_llm(LESSONS_SYSTEM, prompt, json_mode=True))
    except Exception as e:
        logger.error("Lesson generation failed: %s", e)
        return []

    items = data.get("lessons", []) if isinstance(data, dict) else data
    known_ids = {t.id for t in trade_history}
    lessons = []
    for raw in items if isinstance(items, list) else []:
        if not isinstance(raw, dict):
            continue
        try:
            category = LessonCategory(raw.get("category"))
        except ValueError:
            continue
        ids = raw.get("relevantTradeIds")
        if not isinstance(ids, list):
            ids = []
        lessons.append(Lesson(
            id=str(raw.get("id") or uuid.uuid4()),
            title=str(raw.get("title", "")),
            content=str(raw.get("content", "")),
            category=category,
            relevant_trade_ids=[i for i in ids if isinstance(i, str) and i in known_ids],
        ))
    return lessons


# ──────────────────────────────────────────────
# 5. PROFILER: recompute the behavioral profile
# ──────────────────────────────────────────────

PROFILER_SYSTEM = """You are a trading psychologist. From the trader's full history, estimate their behavioral profile.

Output ONLY valid JSON with this schema:
{
  "topBias": "FOMO",
  "riskTolerance": "Medium",
  "streakCount": 0,
  "fomoScore": 0,
  "revengeTradeLikelihood": 0.0,
  "summary": "two sentences"
}
riskTolerance is one of Low, Medium, High. fomoScore is 0-100. revengeTradeLikelihood is 0-1. streakCount is the length of the current run of consecutive losing trades."""


def analyze_profile(trade_history: list[Trade], profile: PsychologicalProfile) -> PsychologicalProfile:
    """Recompute the profile. capital_preserved is never touched by the model."""
    prompt = f"""
Trade history:
{json.dumps([t.to_json_dict() for t in trade_history])}

Current profile:
{json.dumps(profile.to_json_dict())}
"""
    data = _parse_json(_call_llm(PROFILER_SYSTEM, prompt, json_mode=True))
    if not isinstance(data, dict):
        raise ValueError("Profile must be a JSON object")
    try:
        tolerance = RiskTolerance(data.get("riskTolerance"))
    except ValueError:
        tolerance = profile.risk_tolerance
    return PsychologicalProfile(
        top_bias=str(data.get("topBias") or profile.top_bias),
        risk_tolerance=tolerance,
        streak_count=max(0, int(_as_float(data.get("streakCount"), profile.streak_count))),
        fomo_score=_clamp(_as_float(data.get("fomoScore"), profile.fomo_score), 0, 100),
        revenge_trade_likelihood=_clamp(
            _as_float(data.get("revengeTradeLikelihood"), profile.revenge_trade_likelihood), 0, 1
        ),
        capital_preserved=profile.capital_preserved,
        last_analysis_timestamp=now_ms(),
        summary=str(data.get("summary") or profile.summary),
    )


# ──────────────────────────────────────────────
# Async facade used by the trade controller
# ──────────────────────────────────────────────


class JudgmentService(Protocol):
    async def evaluate(
        self,
        intent: TradeIntent,
        recent_candles: list[Candle],
        losing_trades: list[Trade],
        profile: PsychologicalProfile,
    ) -> InterventionVerdict: ...

    async def narrate(self, closed_trade: Trade, market_context: list[Candle]) -> str: ...

    async def synthesize(self, trades: list[Trade], profile: PsychologicalProfile) -> Playbook: ...

    async def generate_lessons(self, trades: list[Trade]) -> list[Lesson]: ...

    async def analyze_profile(
        self, trades: list[Trade], profile: PsychologicalProfile
    ) -> PsychologicalProfile: ...


class LLMJudgmentService:
    """Runs the blocking provider SDK calls off the event loop, one at a time."""

    def __init__(self, executor: ThreadPoolExecutor = None):
        self._executor = executor or ThreadPoolExecutor(max_workers=1, thread_name_prefix="llm")

    async def _run(self, func, *args):
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(self._executor, functools.partial(func, *args))

    async def evaluate(self, intent, recent_candles, losing_trades, profile) -> InterventionVerdict:
        return await self._run(analyze_trade_intent, intent, recent_candles, losing_trades, profile)

    async def narrate(self, closed_trade, market_context) -> str:
        return await self._run(generate_post_trade_mirror, closed_trade, market_context)

    async def synthesize(self, trades, profile) -> Playbook:
        return await self._run(generate_full_playbook, trades, profile)

    async def generate_lessons(self, trades) -> list[Lesson]:
        return await self._run(generate_personalized_lessons, trades)

    async def analyze_profile(self, trades, profile) -> PsychologicalProfile:
        return await self._run(analyze_profile, trades, profile)

    def shutdown(self):
        self._executor.shutdown(wait=False)
