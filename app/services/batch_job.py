"""
Batch job — monthly personalised forecasts for premium users.

Schedule: MONTHLY_FORECAST_DAY of each month at MONTHLY_FORECAST_HOUR UTC
Trigger:  APScheduler (runs inside the FastAPI process)

Flow:
  1. Compute the month's transit once per frame (15th of the month, 12:00 UTC)
  2. Fetch premium users and their primary chart from MongoDB
  3. For each user:
       a. Serialize natal chart + transit
       b. Request a PREDICTIONS_TRANSITS forecast at the premium tier
       c. Store it as a new conversation
  4. Record per-user failures in the usage ledger and save a run summary

Premium users have unlimited insights, so no credit is decremented.
"""
import asyncio
import logging
from datetime import datetime, timezone
from typing import Dict, List, Optional

import app.db.mongodb as db
from app.models.chart import ChartRecord, TransitSnapshot
from app.models.insight import AnalysisKind, ConversationTurn, PlanTier, UsageRecord
from app.services.chart_formatter import chart_to_xml, transit_to_xml
from app.services.insight_engine import InsightEngine
from app.services.insight_service import append_message, get_engine, start_conversation
from app.services.transit_service import get_transit
from app.services.usage_ledger import UsageLedger, get_ledger
from templates.prompt_templates import SYSTEM_PROMPTS, monthly_forecast_message

logger = logging.getLogger(__name__)

JOB_SERVICE = "MonthlyForecastJob"
TRANSIT_DAY = 15


# ─────────────────────────────────────────────
# Per-user processing
# ─────────────────────────────────────────────

async def _process_user(
    user: Dict,
    transits: Dict[Optional[str], TransitSnapshot],
    month_label: str,
    engine: InsightEngine,
    ledger: UsageLedger,
) -> Dict:
    """
    Generate and store one user's monthly forecast.

    Returns a result dict with status and optional error message.
    """
    user_id = user.get("user_id", "")
    name = user.get("name", "Unknown")
    result = {"user_id": user_id, "name": name, "status": "ok", "error": None}

    try:
        record = user["chart"] if isinstance(user["chart"], ChartRecord) else ChartRecord.model_validate(user["chart"])
        frame = record.snapshot.ayanamsa.name if record.snapshot.ayanamsa else None
        transit = transits[frame]

        content = monthly_forecast_message(
            month_label,
            chart_to_xml(record.snapshot, name=record.name, gender=record.gender),
            transit_to_xml(transit),
        )
        insight = await engine.generate(
            SYSTEM_PROMPTS[AnalysisKind.PREDICTIONS_TRANSITS],
            [ConversationTurn(role="user", content=content)],
            PlanTier.PREMIUM,
            user_id=user_id,
        )

        conversation_id = await start_conversation(
            user_id, record.chart_id, f"Your Monthly Horoscope: {month_label}"
        )
        await append_message(conversation_id, "assistant", insight.text, insight)
        logger.info(f"[Batch] Monthly forecast generated for user {user_id}, chart {record.chart_id}")

    except Exception as e:
        logger.error(f"[Batch] Failed for user {user_id} ({name}): {e}", exc_info=True)
        result.update({"status": "error", "error": str(e)})
        await ledger.record(UsageRecord(
            user_id=user_id or None,
            service=JOB_SERVICE,
            endpoint="MonthlyHoroscope",
            success=False,
            error_message=str(e),
            request_payload={"month": month_label},
        ))

    return result


# ─────────────────────────────────────────────
# Main batch function
# ─────────────────────────────────────────────

async def run_monthly_forecasts(
    month: Optional[str] = None,
    users: Optional[List[Dict]] = None,
    engine: Optional[InsightEngine] = None,
    ledger: Optional[UsageLedger] = None,
    batch_size: int = 5,
) -> Dict:
    """
    Main entry point for the monthly forecast job.

    Args:
        month: YYYY-MM (default: current month, UTC)
        users: [{user_id, name, chart}] (default: premium users from MongoDB)

    Returns:
        Summary dict with counts and timing info.
    """
    engine = engine or get_engine()
    ledger = ledger or get_ledger()
    started_at = datetime.now(timezone.utc)
    month_str = month or started_at.strftime("%Y-%m")
    month_label = datetime.strptime(month_str, "%Y-%m").strftime("%B %Y")

    logger.info(f"[Batch] Starting monthly forecasts for {month_label} at {started_at.isoformat()}")

    if users is None:
        users = await db.get_premium_users_with_charts()

    summary = {
        "month": month_str,
        "started_at": started_at.isoformat(),
        "total_users": len(users),
        "success": 0,
        "errors": 0,
        "source": "monthly_forecast_cron",
        "error_details": [],
    }

    if users:
        # ── 1. One transit per frame used by this month's charts ────
        transit_date = f"{month_str}-{TRANSIT_DAY:02d}"
        frames = {_chart_frame(u["chart"]) for u in users}
        transits = {}
        for frame in frames:
            transits[frame] = await asyncio.to_thread(get_transit, transit_date, frame)
        logger.info(f"[Batch] Transit computed for {transit_date}, frames={sorted(f or 'TROPICAL' for f in frames)}")

        # ── 2. Process users in small concurrent batches ────────────
        results = []
        for i in range(0, len(users), batch_size):
            batch = users[i: i + batch_size]
            results.extend(await asyncio.gather(
                *[_process_user(u, transits, month_label, engine, ledger) for u in batch]
            ))
            logger.info(f"[Batch] Processed {min(i + batch_size, len(users))}/{len(users)} users")

        summary["success"] = sum(1 for r in results if r["status"] == "ok")
        summary["errors"] = sum(1 for r in results if r["status"] == "error")
        summary["error_details"] = [
            {"user_id": r["user_id"], "name": r["name"], "error": r["error"]}
            for r in results if r["status"] == "error"
        ]
    else:
        logger.warning("[Batch] No premium users with a birth chart found")

    finished_at = datetime.now(timezone.utc)
    summary["finished_at"] = finished_at.isoformat()
    summary["duration_seconds"] = round((finished_at - started_at).total_seconds(), 1)

    logger.info(
        f"[Batch] Finished {month_label}: {summary['success']} ok, {summary['errors']} errors "
        f"({summary['duration_seconds']}s for {summary['total_users']} users)"
    )
    await db.save_batch_run_status(summary)
    return summary


def _chart_frame(chart) -> Optional[str]:
    """Ayanamsa name of a chart record (model or dict), None when tropical."""
    if isinstance(chart, ChartRecord):
        return chart.snapshot.ayanamsa.name if chart.snapshot.ayanamsa else None
    ayanamsa = (chart.get("snapshot") or {}).get("ayanamsa")
    return ayanamsa.get("name") if ayanamsa else None
