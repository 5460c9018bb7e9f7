"""
API routes for the AstroInsight service.

Endpoint groups:

  /health               — Service health
  /charts/*             — Birth chart creation, listing, read + delete
  /transit              — Transit snapshot for a date (pyswisseph, Redis-cached)
  /insights/*           — AI reports and questions over a stored chart
  /conversations/*      — Conversation listing + message history
  /batch/*              — Monthly forecast job status + manual trigger

Handlers only translate errors and delegate to the service layer.
"""
import asyncio
import logging
from datetime import datetime, timezone
from typing import Optional

from fastapi import APIRouter, BackgroundTasks, HTTPException, Query

import app.db.mongodb as db
from app.models.chart import ChartCreateRequest
from app.models.insight import InsightResponse, QuestionRequest, ReportRequest
from app.services import insight_service
from app.services.errors import (
    AstroInsightError,
    ChartAssemblyError,
    EphemerisError,
    InsightGenerationError,
    NotFoundError,
    PlanLimitError,
)
from app.services.natal_service import house_placements
from app.services.transit_service import get_redis, get_transit

logger = logging.getLogger(__name__)

router = APIRouter()


def _http_error(e: Exception) -> HTTPException:
    """Map a service error to an HTTP error."""
    if isinstance(e, NotFoundError):
        return HTTPException(status_code=404, detail=str(e))
    if isinstance(e, PlanLimitError):
        return HTTPException(status_code=403, detail=str(e))
    if isinstance(e, InsightGenerationError):
        return HTTPException(status_code=502, detail=str(e))
    if isinstance(e, ChartAssemblyError):
        status = 400 if isinstance(e.__cause__, ValueError) else 500
        return HTTPException(status_code=status, detail=str(e))
    if isinstance(e, ValueError):
        return HTTPException(status_code=400, detail=str(e))
    if isinstance(e, EphemerisError):
        return HTTPException(status_code=500, detail=str(e))
    return HTTPException(status_code=500, detail=str(e))


# ─────────────────────────────────────────────
# Health
# ─────────────────────────────────────────────

@router.get("/health")
async def health_check():
    redis_ok = False
    try:
        r = get_redis()
        if r:
            r.ping()
            redis_ok = True
    except Exception:
        pass

    return {
        "status": "ok",
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "redis": "connected" if redis_ok else "unavailable",
        "mongodb": "connected" if db.is_connected() else "disabled",
        "ephemeris": "pyswisseph (local)",
    }


# ─────────────────────────────────────────────
# Charts
# ─────────────────────────────────────────────

@router.post("/charts")
async def create_chart(request: ChartCreateRequest):
    """
    Resolve the birth location, compute and store a natal chart.

    The stored snapshot is immutable; a different house system or ayanamsa
    means a new chart.
    """
    try:
        record = await insight_service.create_chart(
            user_id=request.user_id,
            birth=request.birth,
            house_system=request.house_system,
            ayanamsa=request.ayanamsa,
        )
    except (AstroInsightError, ValueError) as e:
        logger.warning(f"Chart creation failed for {request.user_id}: {e}")
        raise _http_error(e)

    return {
        **record.model_dump(mode="json"),
        "house_placements": house_placements(record.snapshot),
    }


@router.get("/charts")
async def list_charts(user_id: str = Query(...)):
    """A user's charts, newest first."""
    records = await insight_service.list_charts(user_id)
    return {
        "user_id": user_id,
        "charts": [r.model_dump(mode="json") for r in records],
    }


@router.get("/charts/{chart_id}")
async def get_chart(chart_id: str, user_id: Optional[str] = Query(None)):
    """Retrieve a stored chart (memory → MongoDB fallback)."""
    try:
        record = await insight_service.get_chart_record(chart_id, user_id=user_id)
    except NotFoundError as e:
        raise _http_error(e)
    return {
        **record.model_dump(mode="json"),
        "house_placements": house_placements(record.snapshot),
    }


@router.delete("/charts/{chart_id}")
async def delete_chart(chart_id: str, user_id: str = Query(...)):
    """Delete a chart with its conversations and messages."""
    try:
        await insight_service.delete_chart(chart_id, user_id)
    except NotFoundError as e:
        raise _http_error(e)
    return {"success": True, "chart_id": chart_id}


# ─────────────────────────────────────────────
# Transit: pyswisseph (local, zero cost)
# ─────────────────────────────────────────────

@router.get("/transit")
async def get_transit_snapshot(
    date: Optional[str] = Query(None, description="Date YYYY-MM-DD (default: today UTC)"),
    ayanamsa: Optional[str] = Query(None, description="LAHIRI, RAMAN, KRISHNAMURTI; omit for tropical"),
):
    """
    Body positions at 12:00 UTC on the date.
    Cached in Redis for REDIS_TRANSIT_TTL — zero API cost.
    """
    try:
        snapshot = await asyncio.to_thread(get_transit, date, ayanamsa)
    except (AstroInsightError, ValueError) as e:
        raise _http_error(e)
    return snapshot.model_dump(mode="json")


# ─────────────────────────────────────────────
# Insights
# ─────────────────────────────────────────────

@router.post("/insights/report", response_model=InsightResponse)
async def create_report(request: ReportRequest):
    """Generate a report of the requested kind; stored as a new conversation."""
    try:
        chart = await insight_service.get_chart_record(request.chart_id, user_id=request.user_id)
        partner = None
        if request.partner_chart_id:
            partner = await insight_service.get_chart_record(request.partner_chart_id, user_id=request.user_id)
        return await insight_service.generate_report(
            chart,
            request.kind,
            request.plan_tier,
            request.user_id,
            transit_date=request.transit_date,
            partner_record=partner,
            query=request.query,
        )
    except (AstroInsightError, ValueError) as e:
        logger.warning(f"Report failed for chart {request.chart_id}: {e}")
        raise _http_error(e)


@router.post("/insights/question", response_model=InsightResponse)
async def ask_question(request: QuestionRequest):
    """Answer a question about a chart, optionally continuing a conversation."""
    try:
        chart = await insight_service.get_chart_record(request.chart_id, user_id=request.user_id)
        return await insight_service.ask_question(
            chart,
            request.question,
            request.plan_tier,
            request.user_id,
            conversation_id=request.conversation_id,
            kind=request.kind,
        )
    except (AstroInsightError, ValueError) as e:
        logger.warning(f"Question failed for chart {request.chart_id}: {e}")
        raise _http_error(e)


# ─────────────────────────────────────────────
# Conversations
# ─────────────────────────────────────────────

@router.get("/conversations")
async def list_conversations(user_id: str = Query(...), chart_id: Optional[str] = Query(None)):
    """A user's conversations, newest first; `chart_id` narrows to one chart."""
    return {
        "user_id": user_id,
        "conversations": await insight_service.list_conversations(user_id, chart_id=chart_id),
    }


@router.get("/conversations/{conversation_id}/messages")
async def get_conversation_messages(conversation_id: str, user_id: str = Query(...)):
    """Every message of a conversation, oldest first."""
    try:
        messages = await insight_service.get_conversation_messages(conversation_id, user_id)
    except NotFoundError as e:
        raise _http_error(e)
    return {"conversation_id": conversation_id, "messages": messages}


# ─────────────────────────────────────────────
# Batch: status and manual trigger
# ─────────────────────────────────────────────

@router.get("/batch/status")
async def get_batch_status():
    """Last monthly forecast run (from MongoDB batch_runs collection)."""
    return {"last_batch_run": await db.get_last_batch_run()}


@router.post("/batch/trigger")
async def trigger_batch(
    background_tasks: BackgroundTasks,
    month: Optional[str] = Query(None, description="Month YYYY-MM (default: current month UTC)"),
):
    """
    Manually trigger the monthly forecast job.

    Runs asynchronously in the background — returns immediately.
    Use GET /batch/status to monitor progress.
    """
    async def _run():
        from app.services.batch_job import run_monthly_forecasts
        await run_monthly_forecasts(month=month)

    background_tasks.add_task(_run)
    return {
        "status": "triggered",
        "month": month or datetime.now(timezone.utc).strftime("%Y-%m"),
        "message": "Batch job started in background. Check /api/v1/batch/status for progress.",
    }
