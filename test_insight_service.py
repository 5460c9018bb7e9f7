import asyncio
from datetime import datetime, timedelta, timezone

import pytest
from pydantic import ValidationError

from app.db import mongodb
from app.models.chart import (
    BirthInput,
    BodyPosition,
    ChartRecord,
    ChartSnapshot,
    GeoTimeContext,
    HouseFrame,
    TransitSnapshot,
)
from app.models.insight import AnalysisKind, ConversationTurn, InsightRequest, PlanTier
from app.services import insight_service, natal_service
from app.services.errors import (
    ChartAssemblyError,
    InsightGenerationError,
    NotFoundError,
    PlanLimitError,
    ProviderError,
)
from app.services.insight_engine import DEFAULT_PRICING, InsightEngine
from app.services.llm_client import ProviderResponse
from app.services.usage_ledger import InMemoryUsageLedger
from templates.prompt_templates import SYSTEM_PROMPTS, follow_up_prompt

NEW_YORK = GeoTimeContext(latitude=40.7128, longitude=-74.0060, timezone="America/New_York")


class ScriptedProvider:
    def __init__(self, *outcomes):
        self.outcomes = list(outcomes)
        self.calls = []

    async def complete(self, system_prompt, messages, model, max_tokens):
        self.calls.append({"system": system_prompt, "messages": messages, "model": model})
        outcome = self.outcomes.pop(0)
        if isinstance(outcome, Exception):
            raise outcome
        return outcome


def _ok(text="A detailed reading."):
    return ProviderResponse(text=text, input_tokens=200, output_tokens=100)


def _engine(provider, ledger=None):
    return InsightEngine(
        provider, ledger or InMemoryUsageLedger(),
        premium_model="gpt-4o", basic_model="gpt-4o-mini",
        max_attempts=2, backoff_seconds=0, attempt_timeout=5,
        pricing=DEFAULT_PRICING,
    )


def create_fake_record(chart_id="chart-1", user_id="user-1", name="Ada"):
    snapshot = ChartSnapshot(
        instant=2448094.052083,
        birth_date="1990-07-21",
        birth_time="09:15",
        geo=NEW_YORK,
        house_system="W",
        bodies={
            "Sun": BodyPosition(longitude=118.6, latitude=0.0, distance=1.016, speed_longitude=0.95),
            "Moon": BodyPosition(longitude=200.2, latitude=4.1, distance=0.0025, speed_longitude=13.2),
        },
        houses=HouseFrame(
            cusps=tuple(120.0 + 30 * i for i in range(12)),
            ascendant=125.0, midheaven=30.0, armc=28.0, vertex=300.0,
        ),
    )
    return ChartRecord(
        chart_id=chart_id, user_id=user_id, name=name,
        location="New York, NY", snapshot=snapshot,
    )


def create_fake_transit(date="2024-03-15"):
    return TransitSnapshot(
        date=date,
        instant=2460385.0,
        bodies={"Saturn": BodyPosition(longitude=341.0, latitude=-1.2, distance=10.4, speed_longitude=0.12)},
    )


@pytest.fixture
def credits(monkeypatch):
    """Records credit decrements instead of touching MongoDB."""
    calls = []

    async def fake_decrement(user_id, amount=1):
        calls.append(user_id)
        return True

    monkeypatch.setattr(mongodb, "decrement_user_credits", fake_decrement)
    return calls


@pytest.fixture
def stored_user(monkeypatch):
    """Serves one user document and a chart count the way MongoDB would."""
    state = {"user": {"plan_id": "free_trial", "credits": 3}, "charts": 0}

    async def fake_get_user(user_id):
        return state["user"]

    async def fake_count_user_charts(user_id):
        return state["charts"]

    monkeypatch.setattr(mongodb, "get_user", fake_get_user)
    monkeypatch.setattr(mongodb, "count_user_charts", fake_count_user_charts)
    return state


# ─────────────────────────────────────────────
# Prompt templates
# ─────────────────────────────────────────────

def test_every_analysis_kind_has_a_prompt():
    assert set(SYSTEM_PROMPTS) == set(AnalysisKind)
    assert all(prompt.strip() for prompt in SYSTEM_PROMPTS.values())


def test_prompts_name_the_tags_their_messages_use():
    assert "<birth_chart_data>" in SYSTEM_PROMPTS[AnalysisKind.BIRTH_CHART_ANALYSIS]
    assert "<transit_data>" in SYSTEM_PROMPTS[AnalysisKind.PREDICTIONS_TRANSITS]
    assert "<chart_A_data>" in SYSTEM_PROMPTS[AnalysisKind.COMPATIBILITY_ANALYSIS]
    assert "<user_query>" in SYSTEM_PROMPTS[AnalysisKind.REMEDIAL_MEASURES]


def test_follow_up_prompt_escapes_question():
    prompt = follow_up_prompt("Is <Mars> strong & well placed?")
    assert "<user_query>Is &lt;Mars&gt; strong &amp; well placed?</user_query>" in prompt


def test_build_prompt_birth_chart():
    record = create_fake_record()
    request = InsightRequest(
        kind=AnalysisKind.BIRTH_CHART_ANALYSIS,
        charts=[record.snapshot],
        names=[record.name],
        query="career?",
    )
    system, turns = insight_service.build_prompt(request)

    assert system == SYSTEM_PROMPTS[AnalysisKind.BIRTH_CHART_ANALYSIS]
    assert len(turns) == 1 and turns[0].role == "user"
    content = turns[0].content
    assert content.startswith("<birth_chart_data><birth_chart_details>")
    assert "<name>Ada</name>" in content
    assert "<user_query>career?</user_query>" in content
    assert content.endswith("Please provide a birth chart analysis.")


def test_build_prompt_compatibility_uses_both_charts():
    a, b = create_fake_record(name="Ada"), create_fake_record(chart_id="chart-2", name="Bo")
    request = InsightRequest(
        kind=AnalysisKind.COMPATIBILITY_ANALYSIS,
        charts=[a.snapshot, b.snapshot],
        names=[a.name, b.name],
    )
    _, turns = insight_service.build_prompt(request)
    content = turns[-1].content
    assert "<chart_A_data><birth_chart_details>" in content
    assert "<chart_B_data><birth_chart_details>" in content
    assert content.index("<name>Ada</name>") < content.index("<name>Bo</name>")


def test_build_prompt_transits_and_history():
    record = create_fake_record()
    history = [
        ConversationTurn(role="user", content="earlier"),
        ConversationTurn(role="assistant", content="reply"),
    ]
    request = InsightRequest(
        kind=AnalysisKind.PREDICTIONS_TRANSITS,
        charts=[record.snapshot],
        transit=create_fake_transit(),
        history=history,
    )
    _, turns = insight_service.build_prompt(request)
    assert [t.content for t in turns[:2]] == ["earlier", "reply"]
    assert "<natal_chart_data><birth_chart_details>" in turns[-1].content
    assert "<transit_data><transit_details>" in turns[-1].content


def test_insight_request_validates_chart_count_and_transit():
    record = create_fake_record()
    with pytest.raises(ValidationError):
        InsightRequest(kind=AnalysisKind.COMPATIBILITY_ANALYSIS, charts=[record.snapshot])
    with pytest.raises(ValidationError):
        InsightRequest(kind=AnalysisKind.BIRTH_CHART_ANALYSIS, charts=[record.snapshot, record.snapshot])
    with pytest.raises(ValidationError):
        InsightRequest(kind=AnalysisKind.PREDICTIONS_TRANSITS, charts=[record.snapshot])


# ─────────────────────────────────────────────
# Reports + credit post-condition
# ─────────────────────────────────────────────

def test_report_success_spends_one_credit(credits):
    provider = ScriptedProvider(_ok())
    response = asyncio.run(insight_service.generate_report(
        create_fake_record(), AnalysisKind.BIRTH_CHART_ANALYSIS, PlanTier.BASIC, "user-1",
        engine=_engine(provider),
    ))

    assert response.text == "A detailed reading."
    assert response.model == "gpt-4o-mini"
    assert response.credits_decremented
    assert credits == ["user-1"]

    stored = insight_service._messages[response.conversation_id]
    assert stored[-1]["role"] == "assistant"
    assert stored[-1]["content"] == "A detailed reading."
    assert stored[-1]["token_count"] == 300


def test_premium_report_spends_no_credit(credits):
    provider = ScriptedProvider(_ok())
    response = asyncio.run(insight_service.generate_report(
        create_fake_record(), AnalysisKind.REMEDIAL_MEASURES, PlanTier.PREMIUM, "user-1",
        engine=_engine(provider),
    ))
    assert response.model == "gpt-4o"
    assert not response.credits_decremented
    assert credits == []


def test_failed_report_spends_no_credit(credits):
    provider = ScriptedProvider(ProviderError("down"), ProviderError("still down"))
    ledger = InMemoryUsageLedger()
    with pytest.raises(InsightGenerationError):
        asyncio.run(insight_service.generate_report(
            create_fake_record(), AnalysisKind.BIRTH_CHART_ANALYSIS, PlanTier.FREE_TRIAL, "user-1",
            engine=_engine(provider, ledger),
        ))
    assert credits == []
    assert len(ledger.records) == 2
    assert not any(r.success for r in ledger.records)


def test_transit_report_fetches_transit_in_chart_frame(credits, monkeypatch):
    requested = []

    def fake_get_transit(date=None, ayanamsa=None):
        requested.append((date, ayanamsa))
        return create_fake_transit(date)

    monkeypatch.setattr(insight_service, "get_transit", fake_get_transit)
    provider = ScriptedProvider(_ok())
    asyncio.run(insight_service.generate_report(
        create_fake_record(), AnalysisKind.PREDICTIONS_TRANSITS, PlanTier.PREMIUM, "user-1",
        transit_date="2024-03-15", engine=_engine(provider),
    ))
    assert requested == [("2024-03-15", None)]
    assert "<transit_date>2024-03-15</transit_date>" in provider.calls[0]["messages"][-1]["content"]


def test_compatibility_report_without_partner_is_rejected(credits):
    provider = ScriptedProvider(_ok())
    with pytest.raises(ValueError):
        asyncio.run(insight_service.generate_report(
            create_fake_record(), AnalysisKind.COMPATIBILITY_ANALYSIS, PlanTier.BASIC, "user-1",
            engine=_engine(provider),
        ))
    assert provider.calls == []
    assert credits == []


# ─────────────────────────────────────────────
# Questions + conversations
# ─────────────────────────────────────────────

def test_follow_up_question_replays_history(credits):
    provider = ScriptedProvider(_ok("First answer."), _ok("Second answer."))
    engine = _engine(provider)
    record = create_fake_record()

    first = asyncio.run(insight_service.ask_question(
        record, "What does my Moon mean?", PlanTier.BASIC, "user-1", engine=engine,
    ))
    second = asyncio.run(insight_service.ask_question(
        record, "And my Sun?", PlanTier.BASIC, "user-1",
        conversation_id=first.conversation_id, engine=engine,
    ))

    assert second.conversation_id == first.conversation_id
    assert provider.calls[0]["system"] == SYSTEM_PROMPTS[AnalysisKind.BIRTH_CHART_ANALYSIS]
    assert provider.calls[1]["system"] == follow_up_prompt("And my Sun?")

    replayed = provider.calls[1]["messages"]
    assert [m["role"] for m in replayed] == ["user", "assistant", "user"]
    assert replayed[0]["content"] == "What does my Moon mean?"
    assert replayed[1]["content"] == "First answer."
    assert "<user_query>And my Sun?</user_query>" in replayed[2]["content"]

    assert len(insight_service._messages[first.conversation_id]) == 4
    assert credits == ["user-1", "user-1"]


def test_explicit_kind_overrides_follow_up_prompt(credits):
    provider = ScriptedProvider(_ok(), _ok())
    engine = _engine(provider)
    record = create_fake_record()
    first = asyncio.run(insight_service.ask_question(record, "Hi", PlanTier.BASIC, "user-1", engine=engine))
    asyncio.run(insight_service.ask_question(
        record, "Remedies?", PlanTier.BASIC, "user-1",
        conversation_id=first.conversation_id, kind=AnalysisKind.REMEDIAL_MEASURES, engine=engine,
    ))
    assert provider.calls[1]["system"] == SYSTEM_PROMPTS[AnalysisKind.REMEDIAL_MEASURES]


def test_unknown_conversation_is_not_found(credits):
    provider = ScriptedProvider(_ok())
    with pytest.raises(NotFoundError):
        asyncio.run(insight_service.ask_question(
            create_fake_record(), "Hello?", PlanTier.BASIC, "user-1",
            conversation_id="does-not-exist", engine=_engine(provider),
        ))
    assert provider.calls == []


def test_other_users_conversation_is_not_found(credits):
    provider = ScriptedProvider(_ok())
    engine = _engine(provider)
    first = asyncio.run(insight_service.ask_question(
        create_fake_record(), "Hello?", PlanTier.BASIC, "user-1", engine=engine,
    ))
    with pytest.raises(NotFoundError):
        asyncio.run(insight_service.ask_question(
            create_fake_record(user_id="user-2"), "Mine now?", PlanTier.BASIC, "user-2",
            conversation_id=first.conversation_id, engine=engine,
        ))


# ─────────────────────────────────────────────
# Charts
# ─────────────────────────────────────────────

def test_get_chart_record_checks_owner():
    record = create_fake_record(chart_id="owned-chart", user_id="owner")
    natal_service.cache_chart_record(record)

    assert asyncio.run(insight_service.get_chart_record("owned-chart", user_id="owner")) is record
    assert asyncio.run(insight_service.get_chart_record("owned-chart")) is record
    with pytest.raises(NotFoundError):
        asyncio.run(insight_service.get_chart_record("owned-chart", user_id="someone-else"))
    with pytest.raises(NotFoundError):
        asyncio.run(insight_service.get_chart_record("missing-chart"))


def test_create_chart_records_ephemeris_call():
    ledger = InMemoryUsageLedger()
    birth = BirthInput(name="Ada", birth_date="1990-07-21", birth_time="09:15", location="New York, NY")

    record = asyncio.run(insight_service.create_chart(
        "user-1", birth, geo=NEW_YORK, house_system="W", ayanamsa="", ledger=ledger,
    ))

    assert record.user_id == "user-1"
    assert record.snapshot.house_system == "W"
    assert record.snapshot.ayanamsa is None
    assert natal_service.get_cached_chart_record(record.chart_id) is record
    entries = ledger.for_service("SwissEphemeris")
    assert len(entries) == 1 and entries[0].success


def test_create_chart_failure_stores_nothing():
    ledger = InMemoryUsageLedger()
    birth = BirthInput(name="Ada", birth_date="1990-07-21", birth_time="09:15", location="Atlantis")
    geo = GeoTimeContext(latitude=0.0, longitude=0.0, timezone="Atlantis/Capital")
    cached_before = dict(natal_service._chart_cache)

    with pytest.raises(ChartAssemblyError):
        asyncio.run(insight_service.create_chart("user-1", birth, geo=geo, ledger=ledger))

    assert natal_service._chart_cache == cached_before
    entries = ledger.for_service("SwissEphemeris")
    assert len(entries) == 1 and not entries[0].success


def test_question_cannot_continue_another_charts_conversation(credits):
    provider = ScriptedProvider(_ok(), _ok())
    engine = _engine(provider)
    first = asyncio.run(insight_service.ask_question(
        create_fake_record(chart_id="chart-A"), "About chart A?", PlanTier.BASIC, "user-1", engine=engine,
    ))
    with pytest.raises(NotFoundError):
        asyncio.run(insight_service.ask_question(
            create_fake_record(chart_id="chart-B"), "Now chart B?", PlanTier.BASIC, "user-1",
            conversation_id=first.conversation_id, engine=engine,
        ))
    assert len(provider.calls) == 1
    assert len(insight_service._messages[first.conversation_id]) == 2


# ─────────────────────────────────────────────
# Plan limits
# ─────────────────────────────────────────────

@pytest.mark.parametrize("user", [
    {"plan_id": "basic", "credits": 0},
    {"plan_id": "free_trial", "credits": -2},
    {"credits": None},
])
def test_insight_refused_without_credits(credits, stored_user, user):
    stored_user["user"] = user
    provider = ScriptedProvider(_ok())
    with pytest.raises(PlanLimitError):
        asyncio.run(insight_service.generate_report(
            create_fake_record(), AnalysisKind.BIRTH_CHART_ANALYSIS, PlanTier.BASIC, "user-1",
            engine=_engine(provider),
        ))
    assert provider.calls == []
    assert credits == []


def test_question_refused_without_credits_starts_no_conversation(credits, stored_user):
    stored_user["user"] = {"plan_id": "basic", "credits": 0}
    provider = ScriptedProvider(_ok())
    before = dict(insight_service._conversations)
    with pytest.raises(PlanLimitError):
        asyncio.run(insight_service.ask_question(
            create_fake_record(), "Career?", PlanTier.BASIC, "user-1", engine=_engine(provider),
        ))
    assert insight_service._conversations == before
    assert provider.calls == []


def test_stored_plan_decides_model_and_billing(credits, stored_user):
    # a plan-less user asking for premium runs on the economical model and pays a credit
    stored_user["user"] = {"credits": 2}
    provider = ScriptedProvider(_ok())
    response = asyncio.run(insight_service.generate_report(
        create_fake_record(), AnalysisKind.BIRTH_CHART_ANALYSIS, PlanTier.PREMIUM, "user-1",
        engine=_engine(provider),
    ))
    assert response.model == "gpt-4o-mini"
    assert credits == ["user-1"]


def test_premium_user_needs_no_credits(credits, stored_user):
    stored_user["user"] = {"plan_id": "premium", "credits": 0}
    provider = ScriptedProvider(_ok())
    response = asyncio.run(insight_service.generate_report(
        create_fake_record(), AnalysisKind.BIRTH_CHART_ANALYSIS, PlanTier.FREE_TRIAL, "user-1",
        engine=_engine(provider),
    ))
    assert response.model == "gpt-4o"
    assert not response.credits_decremented
    assert credits == []


@pytest.mark.parametrize("plan_id,charts,allowed", [
    ("free_trial", 0, True),
    ("free_trial", 1, False),
    (None, 1, False),
    ("basic", 2, True),
    ("basic", 3, False),
    ("premium", 50, True),
])
def test_chart_quota(stored_user, plan_id, charts, allowed):
    stored_user["user"] = {"plan_id": plan_id, "credits": 1}
    stored_user["charts"] = charts
    ledger = InMemoryUsageLedger()
    birth = BirthInput(name="Ada", birth_date="1990-07-21", birth_time="09:15", location="New York, NY")

    if allowed:
        record = asyncio.run(insight_service.create_chart("quota-user", birth, geo=NEW_YORK, ledger=ledger))
        assert record.user_id == "quota-user"
    else:
        with pytest.raises(PlanLimitError):
            asyncio.run(insight_service.create_chart("quota-user", birth, geo=NEW_YORK, ledger=ledger))
        assert ledger.records == []


def test_unknown_user_is_not_found_when_mongo_is_connected(stored_user, monkeypatch):
    stored_user["user"] = None
    monkeypatch.setattr(mongodb, "is_connected", lambda: True)
    birth = BirthInput(name="Ada", birth_date="1990-07-21", birth_time="09:15", location="New York, NY")
    with pytest.raises(NotFoundError):
        asyncio.run(insight_service.create_chart("ghost", birth, geo=NEW_YORK, ledger=InMemoryUsageLedger()))


# ─────────────────────────────────────────────
# Listing + deletion
# ─────────────────────────────────────────────

def test_list_charts_newest_first_and_owned_only(monkeypatch):
    now = datetime.now(timezone.utc)
    older = create_fake_record(chart_id="list-old", user_id="lister").model_copy(
        update={"created_at": now - timedelta(days=2)})
    newer = create_fake_record(chart_id="list-new", user_id="lister").model_copy(
        update={"created_at": now - timedelta(days=1)})
    stored = create_fake_record(chart_id="list-db", user_id="lister").model_copy(update={"created_at": now})
    for record in (older, newer, create_fake_record(chart_id="list-other", user_id="someone-else")):
        natal_service.cache_chart_record(record)

    async def fake_list_user_charts(user_id):
        return [stored.model_dump(mode="json"), older.model_dump(mode="json")]

    monkeypatch.setattr(mongodb, "list_user_charts", fake_list_user_charts)
    charts = asyncio.run(insight_service.list_charts("lister"))
    assert [c.chart_id for c in charts] == ["list-db", "list-new", "list-old"]


def test_conversations_and_messages_can_be_read_back(credits):
    provider = ScriptedProvider(_ok("Read me back."))
    record = create_fake_record(chart_id="reader-chart", user_id="reader")
    response = asyncio.run(insight_service.ask_question(
        record, "Moon?", PlanTier.BASIC, "reader", engine=_engine(provider),
    ))

    conversations = asyncio.run(insight_service.list_conversations("reader"))
    assert [c["conversation_id"] for c in conversations] == [response.conversation_id]
    assert conversations[0]["chart_id"] == "reader-chart"
    assert asyncio.run(insight_service.list_conversations("reader", chart_id="another-chart")) == []

    messages = asyncio.run(insight_service.get_conversation_messages(response.conversation_id, "reader"))
    assert [(m["role"], m["content"]) for m in messages] == [("user", "Moon?"), ("assistant", "Read me back.")]

    with pytest.raises(NotFoundError):
        asyncio.run(insight_service.get_conversation_messages(response.conversation_id, "snooper"))


def test_delete_chart_removes_its_conversations(credits, monkeypatch):
    deleted = []

    async def fake_delete_chart(chart_id):
        deleted.append(chart_id)
        return True

    monkeypatch.setattr(mongodb, "delete_chart", fake_delete_chart)
    record = create_fake_record(chart_id="doomed-chart", user_id="deleter")
    natal_service.cache_chart_record(record)
    response = asyncio.run(insight_service.ask_question(
        record, "Anything?", PlanTier.BASIC, "deleter", engine=_engine(ScriptedProvider(_ok())),
    ))

    with pytest.raises(NotFoundError):
        asyncio.run(insight_service.delete_chart("doomed-chart", "someone-else"))
    assert natal_service.get_cached_chart_record("doomed-chart") is record

    asyncio.run(insight_service.delete_chart("doomed-chart", "deleter"))

    assert deleted == ["doomed-chart"]
    assert natal_service.get_cached_chart_record("doomed-chart") is None
    assert response.conversation_id not in insight_service._conversations
    assert response.conversation_id not in insight_service._messages
    with pytest.raises(NotFoundError):
        asyncio.run(insight_service.get_chart_record("doomed-chart", user_id="deleter"))


@pytest.mark.parametrize("tier,spent", [(None, True), ("enterprise", True), ("premium", False), (PlanTier.PREMIUM, False)])
def test_credit_post_condition_accepts_any_stored_plan(credits, tier, spent):
    assert asyncio.run(insight_service.apply_credit_post_condition("user-1", tier)) is spent
    assert credits == (["user-1"] if spent else [])
