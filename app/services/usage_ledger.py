"""
Usage ledger — one record per external call (model, geolocation, ephemeris).

Recording is best-effort: a ledger that cannot write logs the problem and
returns False. It never raises into the calling pipeline.
"""
import logging
from typing import List, Protocol

from app.db import mongodb
from app.models.insight import UsageRecord

logger = logging.getLogger(__name__)


class UsageLedger(Protocol):
    async def record(self, entry: UsageRecord) -> bool:
        ...


class InMemoryUsageLedger:
    """Keeps every record in a list. Test use only: the list is never trimmed."""

    def __init__(self):
        self.records: List[UsageRecord] = []

    async def record(self, entry: UsageRecord) -> bool:
        self.records.append(entry)
        return True

    def for_service(self, service: str) -> List[UsageRecord]:
        return [r for r in self.records if r.service == service]


class LoggingUsageLedger:
    """Logs a one-line summary of each record and keeps nothing. Used when MongoDB is disabled."""

    async def record(self, entry: UsageRecord) -> bool:
        logger.info(
            f"Usage: service={entry.service}, endpoint={entry.endpoint}, user={entry.user_id}, "
            f"tokens={entry.input_tokens}/{entry.output_tokens}, cost=${entry.cost:.6f}, "
            f"success={entry.success}"
            + (f", error={entry.error_message}" if entry.error_message else "")
        )
        return True


class MongoUsageLedger:
    """Writes records to the api_logs collection."""

    async def record(self, entry: UsageRecord) -> bool:
        saved = await mongodb.save_api_log(entry.model_dump())
        if not saved:
            logger.debug(f"Usage record not persisted: {entry.service}/{entry.endpoint} success={entry.success}")
        return saved


_default_ledger = None


def get_ledger() -> UsageLedger:
    """Process-wide ledger: MongoDB when connected, log-only otherwise."""
    global _default_ledger
    if _default_ledger is None:
        _default_ledger = MongoUsageLedger() if mongodb.is_connected() else LoggingUsageLedger()
    return _default_ledger


def set_ledger(ledger: UsageLedger) -> None:
    global _default_ledger
    _default_ledger = ledger
