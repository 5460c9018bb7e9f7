"""
Insight orchestrator service.

Ties together:
  - Geolocation (free-text place → coordinates + timezone)
  - Chart assembly (immutable snapshot, persisted verbatim)
  - Transit snapshots (global, cached per date and frame)
  - Prompt templates (analysis kind → system prompt + tagged user message)
  - Insight engine (tiered model dispatch, retry, fallback, usage records)
  - Conversations, plan limits and the credit post-condition

The engine reports usage; this layer owns everything with business
meaning: which chart, which conversation, and whether a credit is spent.
"""
import asyncio
import logging
import uuid
from datetime import datetime, timezone
from typing import Dict, List, Optional, Tuple, Union

from app.db import mongodb
from app.models.chart import BirthInput, ChartRecord, GeoTimeContext
from app.models.insight import (
    AnalysisKind,
    ConversationTurn,
    InsightRequest,
    InsightResponse,
    InsightResult,
    PlanTier,
    UsageRecord,
    is_premium,
    tier_label,
)
from app.services import geo_service
from app.services.chart_formatter import chart_to_xml, transit_to_xml
from app.services.errors import ChartAssemblyError, NotFoundError, PlanLimitError
from app.services.insight_engine import InsightEngine
from app.services.llm_client import OpenAIProvider
from app.services.natal_service import (
    assemble_chart,
    cache_chart_record,
    cached_chart_records,
    evict_chart_record,
    get_cached_chart_record,
)
from app.services.transit_service import get_transit
from app.services.usage_ledger import UsageLedger, get_ledger
from config import get_settings
from templates.prompt_templates import (
    SYSTEM_PROMPTS,
    analysis_message,
    follow_up_prompt,
    question_message,
)

logger = logging.getLogger(__name__)

EPHEMERIS_SERVICE = "SwissEphemeris"

# In-memory conversation store (MongoDB is the durable copy)
_conversations: Dict[str, Dict] = {}
_messages: Dict[str, List[Dict]] = {}

_engine: Optional[InsightEngine] = None


def get_engine() -> InsightEngine:
    global _engine
    if _engine is None:
        _engine = InsightEngine(provider=OpenAIProvider(), ledger=get_ledger())
    return _engine


def set_engine(engine: Optional[InsightEngine]) -> None:
    global _engine
    _engine = engine


# ─────────────────────────────────────────────
# Charts
# ─────────────────────────────────────────────

async def create_chart(
    user_id: str,
    birth: BirthInput,
    geo: Optional[GeoTimeContext] = None,
    house_system: Optional[str] = None,
    ayanamsa: Optional[str] = None,
    ledger: Optional[UsageLedger] = None,
) -> ChartRecord:
    """
    Resolve location (unless `geo` is given), assemble and persist a chart.

    `ayanamsa=None` uses DEFAULT_AYANAMSA; "" forces tropical. The ephemeris
    call is recorded in the ledger whether or not it succeeds.

    Raises:
        PlanLimitError: the user's plan allows no more charts.
        GeoLookupError: location could not be resolved.
        ChartAssemblyError: chart could not be built; nothing is stored.
    """
    settings = get_settings()
    ledger = ledger or get_ledger()
    await check_chart_allowed(user_id)
    if geo is None:
        geo = await geo_service.resolve_location(birth.location, birth.birth_date, user_id, ledger=ledger)
    frame = settings.DEFAULT_AYANAMSA if ayanamsa is None else ayanamsa
    system = house_system or settings.DEFAULT_HOUSE_SYSTEM

    request_payload = {
        "birth_date": birth.birth_date,
        "birth_time": birth.birth_time,
        "latitude": geo.latitude,
        "longitude": geo.longitude,
        "timezone": geo.timezone,
        "house_system": system,
        "ayanamsa": frame or None,
    }
    try:
        snapshot = await asyncio.to_thread(assemble_chart, birth, geo, system, frame)
    except ChartAssemblyError as e:
        logger.error(f"Chart assembly failed for user={user_id}: {e}")
        await ledger.record(UsageRecord(
            user_id=user_id, service=EPHEMERIS_SERVICE, endpoint="assemble_chart",
            success=False, error_message=str(e), request_payload=request_payload,
        ))
        raise

    await ledger.record(UsageRecord(
        user_id=user_id, service=EPHEMERIS_SERVICE, endpoint="assemble_chart",
        success=True, request_payload=request_payload,
        response_payload={"instant": snapshot.instant, "bodies": len(snapshot.bodies)},
    ))

    record = ChartRecord(
        chart_id=uuid.uuid4().hex,
        user_id=user_id,
        name=birth.name,
        gender=birth.gender,
        location=birth.location,
        formatted_address=geo.formatted_address,
        snapshot=snapshot,
    )
    cache_chart_record(record)
    await mongodb.save_chart(record.model_dump(mode="json"))
    logger.info(f"Chart {record.chart_id} created for user={user_id}")
    return record


async def get_chart_record(chart_id: str, user_id: Optional[str] = None) -> ChartRecord:
    """
    Cached record, else MongoDB. A chart owned by another user is reported
    as not found.

    Raises:
        NotFoundError
    """
    record = get_cached_chart_record(chart_id)
    if record is None:
        doc = await mongodb.get_chart(chart_id)
        if doc:
            record = ChartRecord.model_validate(doc)
            cache_chart_record(record)
    if record is None or (user_id is not None and record.user_id != user_id):
        raise NotFoundError(f"Birth chart {chart_id} not found")
    return record


# ─────────────────────────────────────────────
# Conversations
# ─────────────────────────────────────────────

async def start_conversation(user_id: str, chart_id: str, title: str) -> str:
    conversation = {
        "conversation_id": uuid.uuid4().hex,
        "user_id": user_id,
        "chart_id": chart_id,
        "title": title,
        "created_at": datetime.now(timezone.utc),
    }
    _conversations[conversation["conversation_id"]] = conversation
    _messages[conversation["conversation_id"]] = []
    await mongodb.save_conversation(conversation)
    return conversation["conversation_id"]


async def _get_conversation(conversation_id: str, user_id: str, chart_id: Optional[str] = None) -> Dict:
    """Conversation owned by `user_id` (and about `chart_id`, when given)."""
    conversation = _conversations.get(conversation_id) or await mongodb.get_conversation(conversation_id)
    if not conversation or conversation.get("user_id") != user_id:
        raise NotFoundError(f"Conversation {conversation_id} not found")
    if chart_id is not None and conversation.get("chart_id") != chart_id:
        raise NotFoundError(f"Conversation {conversation_id} not found for chart {chart_id}")
    return conversation


async def append_message(
    conversation_id: str, role: str, content: str, result: Optional[InsightResult] = None,
) -> None:
    message = {
        "conversation_id": conversation_id,
        "role": role,
        "content": content,
        "created_at": datetime.now(timezone.utc),
    }
    if result is not None:
        message.update({
            "model": result.model,
            "token_count": result.input_tokens + result.output_tokens,
            "cost": result.cost,
        })
    _messages.setdefault(conversation_id, []).append(message)
    await mongodb.save_message(message)


async def _recent_turns(conversation_id: str, limit: int) -> List[ConversationTurn]:
    """Last `limit` turns, oldest first."""
    docs = _messages.get(conversation_id)
    if docs is None:
        docs = await mongodb.get_recent_messages(conversation_id, limit)
    return [ConversationTurn(role=d["role"], content=d["content"]) for d in docs[-limit:]]


# ─────────────────────────────────────────────
# Plan limits
# ─────────────────────────────────────────────

async def _load_user(user_id: str) -> Optional[Dict]:
    """Stored user; None while MongoDB is disabled, in which case limits are not enforced."""
    user = await mongodb.get_user(user_id)
    if user is None and mongodb.is_connected():
        raise NotFoundError(f"User {user_id} not found")
    return user


def _plan_label(plan_tier) -> str:
    return "Basic plan" if plan_tier == PlanTier.BASIC.value else "Free trial"


async def check_chart_allowed(user_id: str) -> None:
    """
    Chart quota: FREE_TRIAL_CHART_LIMIT for free-trial (or plan-less) users,
    BASIC_CHART_LIMIT for basic, none for premium.

    Raises:
        PlanLimitError
        NotFoundError: MongoDB is connected but has no such user.
    """
    user = await _load_user(user_id)
    if user is None or is_premium(user.get("plan_id")):
        return
    settings = get_settings()
    plan = user.get("plan_id")
    limit = settings.BASIC_CHART_LIMIT if plan == PlanTier.BASIC.value else settings.FREE_TRIAL_CHART_LIMIT
    count = await mongodb.count_user_charts(user_id)
    if count >= limit:
        logger.info(f"Chart quota reached for user={user_id}: plan={tier_label(plan)}, charts={count}")
        raise PlanLimitError(
            f"{_plan_label(plan)} limit of {limit} birth chart(s) reached. Please upgrade to create more charts."
        )


async def check_insight_allowed(
    user_id: str, plan_tier: Union[PlanTier, str, None],
) -> Union[PlanTier, str, None]:
    """
    Refuse an insight when a non-premium user has no credits left.

    Returns the tier the call runs and bills under: the stored plan id when
    the user is known, otherwise `plan_tier` as given.
    """
    user = await _load_user(user_id)
    if user is None:
        return plan_tier
    plan = user.get("plan_id")
    if not is_premium(plan) and (user.get("credits") or 0) <= 0:
        logger.info(f"Insight refused for user={user_id}: plan={tier_label(plan)}, no credits left")
        raise PlanLimitError(f"{_plan_label(plan)} AI insight limit reached. Please upgrade for more insights.")
    return plan


# ─────────────────────────────────────────────
# Prompts
# ─────────────────────────────────────────────

def build_prompt(request: InsightRequest) -> Tuple[str, List[ConversationTurn]]:
    """InsightRequest → (system prompt, history + new user turn)."""
    names = request.names + [None] * (len(request.charts) - len(request.names))
    genders = request.genders + [None] * (len(request.charts) - len(request.genders))
    chart_xml = [
        chart_to_xml(chart, name=name, gender=gender)
        for chart, name, gender in zip(request.charts, names, genders)
    ]
    transit_xml = transit_to_xml(request.transit) if request.transit else None
    content = analysis_message(request.kind, chart_xml, transit_xml=transit_xml, query=request.query)
    return SYSTEM_PROMPTS[request.kind], [*request.history, ConversationTurn(role="user", content=content)]


async def apply_credit_post_condition(user_id: str, plan_tier: Union[PlanTier, str, None]) -> bool:
    """One credit per successful call, premium excluded."""
    if is_premium(plan_tier):
        return False
    return await mongodb.decrement_user_credits(user_id)


# ─────────────────────────────────────────────
# Public API
# ─────────────────────────────────────────────

async def generate_report(
    chart_record: ChartRecord,
    kind: AnalysisKind,
    plan_tier: Union[PlanTier, str, None],
    user_id: str,
    transit_date: Optional[str] = None,
    partner_record: Optional[ChartRecord] = None,
    query: Optional[str] = None,
    engine: Optional[InsightEngine] = None,
) -> InsightResponse:
    """
    Generate a full report for one chart (two for compatibility) and store
    it as a new conversation.

    Raises:
        ValueError: chart count or transit requirements of `kind` not met.
        PlanLimitError: no credits left on a non-premium plan.
        InsightGenerationError: every model attempt failed; no credit is spent.
    """
    engine = engine or get_engine()
    plan_tier = await check_insight_allowed(user_id, plan_tier)
    charts = [chart_record] + ([partner_record] if partner_record else [])

    transit = None
    if kind is AnalysisKind.PREDICTIONS_TRANSITS:
        frame = chart_record.snapshot.ayanamsa.name if chart_record.snapshot.ayanamsa else None
        transit = await asyncio.to_thread(get_transit, transit_date, frame)

    request = InsightRequest(
        kind=kind,
        charts=[c.snapshot for c in charts],
        names=[c.name for c in charts],
        genders=[c.gender for c in charts],
        plan_tier=plan_tier,
        transit=transit,
        query=query,
    )
    system_prompt, turns = build_prompt(request)
    result = await engine.generate(system_prompt, turns, request.plan_tier, user_id=user_id)

    title = f"{kind.value.replace('_', ' ')} for {chart_record.name}"
    conversation_id = await start_conversation(user_id, chart_record.chart_id, title)
    await append_message(conversation_id, "assistant", result.text, result)
    decremented = await apply_credit_post_condition(user_id, request.plan_tier)

    logger.info(
        f"Report ({kind.value}) generated for chart {chart_record.chart_id}, user={user_id}, "
        f"model={result.model}, cost=${result.cost:.6f}"
    )
    return InsightResponse(
        text=result.text,
        conversation_id=conversation_id,
        model=result.model,
        input_tokens=result.input_tokens,
        output_tokens=result.output_tokens,
        cost=result.cost,
        credits_decremented=decremented,
    )


async def ask_question(
    chart_record: ChartRecord,
    question: str,
    plan_tier: Union[PlanTier, str, None],
    user_id: str,
    conversation_id: Optional[str] = None,
    kind: Optional[AnalysisKind] = None,
    engine: Optional[InsightEngine] = None,
) -> InsightResponse:
    """
    Answer a free-form question about a chart, continuing a conversation
    when `conversation_id` is given.

    With prior turns and no explicit `kind`, the follow-up prompt is used;
    otherwise the prompt for `kind` (default BIRTH_CHART_ANALYSIS).

    Raises:
        NotFoundError: `conversation_id` does not exist for this user and chart.
        PlanLimitError: no credits left on a non-premium plan.
        InsightGenerationError: every model attempt failed.
    """
    settings = get_settings()
    engine = engine or get_engine()

    if conversation_id:
        await _get_conversation(conversation_id, user_id, chart_id=chart_record.chart_id)
    plan_tier = await check_insight_allowed(user_id, plan_tier)

    if conversation_id:
        history = await _recent_turns(conversation_id, settings.CONVERSATION_HISTORY_LIMIT)
    else:
        title = question[:50] + ("..." if len(question) > 50 else "")
        conversation_id = await start_conversation(user_id, chart_record.chart_id, title)
        history = []

    await append_message(conversation_id, "user", question)

    if kind is None and history:
        system_prompt = follow_up_prompt(question)
    else:
        system_prompt = SYSTEM_PROMPTS[kind or AnalysisKind.BIRTH_CHART_ANALYSIS]

    chart_xml = chart_to_xml(chart_record.snapshot, name=chart_record.name, gender=chart_record.gender)
    turns = [*history, ConversationTurn(role="user", content=question_message(chart_xml, question))]

    result = await engine.generate(system_prompt, turns, plan_tier, user_id=user_id)
    await append_message(conversation_id, "assistant", result.text, result)
    decremented = await apply_credit_post_condition(user_id, plan_tier)

    logger.info(
        f"Question answered for chart {chart_record.chart_id}, user={user_id}, "
        f"conversation={conversation_id}, model={result.model}"
    )
    return InsightResponse(
        text=result.text,
        conversation_id=conversation_id,
        model=result.model,
        input_tokens=result.input_tokens,
        output_tokens=result.output_tokens,
        cost=result.cost,
        credits_decremented=decremented,
    )


# ─────────────────────────────────────────────
# Listing + deletion
# ─────────────────────────────────────────────

def _created(doc: Dict) -> str:
    value = doc.get("created_at")
    return value.isoformat() if isinstance(value, datetime) else str(value or "")


async def list_charts(user_id: str) -> List[ChartRecord]:
    """A user's charts, newest first."""
    records = {r.chart_id: r for r in cached_chart_records(user_id)}
    for doc in await mongodb.list_user_charts(user_id):
        if doc["chart_id"] not in records:
            records[doc["chart_id"]] = ChartRecord.model_validate(doc)
    return sorted(records.values(), key=lambda r: r.created_at, reverse=True)


async def list_conversations(user_id: str, chart_id: Optional[str] = None) -> List[Dict]:
    """A user's conversations, newest first, optionally only those about `chart_id`."""
    found = {
        cid: c for cid, c in _conversations.items()
        if c["user_id"] == user_id and (chart_id is None or c["chart_id"] == chart_id)
    }
    for doc in await mongodb.list_conversations(user_id, chart_id):
        found.setdefault(doc["conversation_id"], doc)
    return sorted(found.values(), key=_created, reverse=True)


async def get_conversation_messages(conversation_id: str, user_id: str) -> List[Dict]:
    """
    Every message of a conversation, oldest first.

    Raises:
        NotFoundError: no such conversation for this user.
    """
    await _get_conversation(conversation_id, user_id)
    docs = _messages.get(conversation_id)
    if docs is None:
        docs = await mongodb.get_conversation_messages(conversation_id)
    return list(docs)


async def delete_chart(chart_id: str, user_id: str) -> None:
    """
    Delete a chart together with its conversations and their messages.

    Raises:
        NotFoundError: no such chart for this user.
    """
    await get_chart_record(chart_id, user_id=user_id)
    conversation_ids = [cid for cid, c in _conversations.items() if c["chart_id"] == chart_id]
    for cid in conversation_ids:
        del _conversations[cid]
        _messages.pop(cid, None)
    evict_chart_record(chart_id)
    await mongodb.delete_chart(chart_id)
    logger.info(f"Chart {chart_id} deleted by user={user_id} ({len(conversation_ids)} conversation(s) in memory)")
