"""
MongoDB client — Motor async driver.

MONGODB_ENABLED=False → all helpers return None/False/[] (safe for dev).
MONGODB_ENABLED=True  → real reads/writes.

Collections:
  users          — existing user collection (READ + credits decrement)
  birth_charts   — one document per chart, snapshot stored verbatim
  conversations  — one document per report or question thread
  messages       — conversation turns, ordered by created_at
  api_logs       — usage ledger, one document per external call
  batch_runs     — monthly forecast job summaries
"""
import logging
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

logger = logging.getLogger(__name__)

_client = None
_db = None


# ─────────────────────────────────────────────
# Lifecycle
# ─────────────────────────────────────────────

async def connect_to_mongo(uri: str, db_name: str) -> None:
    global _client, _db
    try:
        from motor.motor_asyncio import AsyncIOMotorClient
        _client = AsyncIOMotorClient(uri, serverSelectionTimeoutMS=5000)
        _db = _client[db_name]
        await _client.admin.command("ping")
        logger.info(f"MongoDB connected: {db_name}")
    except Exception as e:
        logger.error(f"MongoDB connection failed: {e}")
        _client = None
        _db = None


async def disconnect_from_mongo() -> None:
    global _client, _db
    if _client:
        _client.close()
        logger.info("MongoDB disconnected")
    _client = None
    _db = None


def is_connected() -> bool:
    return _db is not None


# ─────────────────────────────────────────────
# Birth charts collection
# ─────────────────────────────────────────────

async def save_chart(record: Dict[str, Any]) -> bool:
    """Insert a chart record. Snapshots are never updated in place."""
    if not is_connected():
        logger.debug("MongoDB not connected — chart not saved to DB")
        return False
    try:
        await _db.birth_charts.insert_one(_serialise(record))
        logger.debug(f"Chart saved: {record.get('chart_id')}")
        return True
    except Exception as e:
        logger.error(f"save_chart({record.get('chart_id')}): {e}")
        return False


async def get_chart(chart_id: str) -> Optional[Dict]:
    if not is_connected():
        return None
    try:
        return await _db.birth_charts.find_one({"chart_id": chart_id}, {"_id": 0})
    except Exception as e:
        logger.error(f"get_chart({chart_id}): {e}")
        return None


async def count_user_charts(user_id: str) -> int:
    if not is_connected():
        return 0
    try:
        return await _db.birth_charts.count_documents({"user_id": user_id})
    except Exception as e:
        logger.error(f"count_user_charts({user_id}): {e}")
        return 0


async def list_user_charts(user_id: str) -> List[Dict]:
    """A user's charts, newest first."""
    if not is_connected():
        return []
    try:
        cursor = _db.birth_charts.find({"user_id": user_id}, {"_id": 0}).sort("created_at", -1)
        return [doc async for doc in cursor]
    except Exception as e:
        logger.error(f"list_user_charts({user_id}): {e}")
        return []


async def delete_chart(chart_id: str) -> bool:
    """Delete a chart with its conversations and their messages."""
    if not is_connected():
        return False
    try:
        conversation_ids = [
            doc["conversation_id"]
            async for doc in _db.conversations.find({"chart_id": chart_id}, {"conversation_id": 1})
        ]
        if conversation_ids:
            await _db.messages.delete_many({"conversation_id": {"$in": conversation_ids}})
        await _db.conversations.delete_many({"chart_id": chart_id})
        result = await _db.birth_charts.delete_one({"chart_id": chart_id})
        logger.info(f"Chart {chart_id} deleted with {len(conversation_ids)} conversation(s)")
        return result.deleted_count == 1
    except Exception as e:
        logger.error(f"delete_chart({chart_id}): {e}")
        return False


# ─────────────────────────────────────────────
# Conversations + messages
# ─────────────────────────────────────────────

async def save_conversation(conversation: Dict[str, Any]) -> bool:
    if not is_connected():
        return False
    try:
        await _db.conversations.insert_one(_serialise(conversation))
        return True
    except Exception as e:
        logger.error(f"save_conversation({conversation.get('conversation_id')}): {e}")
        return False


async def get_conversation(conversation_id: str) -> Optional[Dict]:
    if not is_connected():
        return None
    try:
        return await _db.conversations.find_one({"conversation_id": conversation_id}, {"_id": 0})
    except Exception as e:
        logger.error(f"get_conversation({conversation_id}): {e}")
        return None


async def save_message(message: Dict[str, Any]) -> bool:
    if not is_connected():
        return False
    try:
        doc = _serialise(message)
        doc.setdefault("created_at", datetime.now(timezone.utc).isoformat())
        await _db.messages.insert_one(doc)
        return True
    except Exception as e:
        logger.error(f"save_message({message.get('conversation_id')}): {e}")
        return False


async def get_recent_messages(conversation_id: str, limit: int) -> List[Dict]:
    """Last `limit` messages of a conversation, oldest first."""
    if not is_connected():
        return []
    try:
        cursor = (
            _db.messages.find({"conversation_id": conversation_id}, {"_id": 0})
            .sort("created_at", -1)
            .limit(limit)
        )
        docs = [doc async for doc in cursor]
        return list(reversed(docs))
    except Exception as e:
        logger.error(f"get_recent_messages({conversation_id}): {e}")
        return []


async def list_conversations(user_id: str, chart_id: Optional[str] = None) -> List[Dict]:
    """A user's conversations, newest first, optionally for one chart."""
    if not is_connected():
        return []
    query = {"user_id": user_id}
    if chart_id:
        query["chart_id"] = chart_id
    try:
        cursor = _db.conversations.find(query, {"_id": 0}).sort("created_at", -1)
        return [doc async for doc in cursor]
    except Exception as e:
        logger.error(f"list_conversations({user_id}): {e}")
        return []


async def get_conversation_messages(conversation_id: str) -> List[Dict]:
    """Every message of a conversation, oldest first."""
    if not is_connected():
        return []
    try:
        cursor = _db.messages.find({"conversation_id": conversation_id}, {"_id": 0}).sort("created_at", 1)
        return [doc async for doc in cursor]
    except Exception as e:
        logger.error(f"get_conversation_messages({conversation_id}): {e}")
        return []


# ─────────────────────────────────────────────
# Users collection
# ─────────────────────────────────────────────

def _user_query(user_id: str) -> Dict:
    from bson import ObjectId
    return {"_id": ObjectId(user_id)} if ObjectId.is_valid(user_id) else {"_id": user_id}


async def get_user(user_id: str) -> Optional[Dict]:
    """Plan id and credit balance of a user."""
    if not is_connected():
        return None
    try:
        return await _db.users.find_one(_user_query(user_id), {"_id": 0, "plan_id": 1, "credits": 1, "name": 1})
    except Exception as e:
        logger.error(f"get_user({user_id}): {e}")
        return None


async def decrement_user_credits(user_id: str, amount: int = 1) -> bool:
    if not is_connected():
        logger.debug(f"MongoDB not connected — credits not decremented for {user_id}")
        return False
    try:
        result = await _db.users.update_one(_user_query(user_id), {"$inc": {"credits": -amount}})
        return result.modified_count == 1
    except Exception as e:
        logger.error(f"decrement_user_credits({user_id}): {e}")
        return False


async def get_premium_users_with_charts() -> List[Dict]:
    """
    Premium users plus their primary (earliest) chart.
    Used by the monthly forecast job.
    """
    if not is_connected():
        logger.warning("MongoDB not connected — cannot fetch premium users")
        return []
    try:
        users = []
        async for user in _db.users.find({"plan_id": "premium"}, {"_id": 1, "name": 1}):
            user_id = str(user["_id"])
            chart = await _db.birth_charts.find_one(
                {"user_id": user_id}, {"_id": 0}, sort=[("created_at", 1)]
            )
            if chart:
                users.append({"user_id": user_id, "name": user.get("name"), "chart": chart})
        logger.info(f"Found {len(users)} premium users with a birth chart")
        return users
    except Exception as e:
        logger.error(f"get_premium_users_with_charts: {e}")
        return []


# ─────────────────────────────────────────────
# API logs (usage ledger)
# ─────────────────────────────────────────────

async def save_api_log(entry: Dict[str, Any]) -> bool:
    if not is_connected():
        return False
    try:
        await _db.api_logs.insert_one(_serialise(entry))
        return True
    except Exception as e:
        logger.error(f"save_api_log({entry.get('service')}/{entry.get('endpoint')}): {e}")
        return False


# ─────────────────────────────────────────────
# Batch job state collection (cron status tracking)
# ─────────────────────────────────────────────

async def save_batch_run_status(status_doc: Dict) -> None:
    """Record the result of a batch run in the batch_runs collection."""
    if not is_connected():
        return
    try:
        await _db.batch_runs.insert_one(_serialise(status_doc))
    except Exception as e:
        logger.error(f"save_batch_run_status: {e}")


async def get_last_batch_run() -> Optional[Dict]:
    """Return the most recent batch run record."""
    if not is_connected():
        return None
    try:
        return await _db.batch_runs.find_one({}, {"_id": 0}, sort=[("started_at", -1)])
    except Exception as e:
        logger.error(f"get_last_batch_run: {e}")
        return None


# ─────────────────────────────────────────────
# Helpers
# ─────────────────────────────────────────────

def _serialise(obj):
    """Recursively convert datetime → ISO string, tuple/set → list for MongoDB."""
    if isinstance(obj, dict):
        return {k: _serialise(v) for k, v in obj.items()}
    if isinstance(obj, (list, tuple, set)):
        return [_serialise(i) for i in obj]
    if isinstance(obj, datetime):
        return obj.isoformat()
    return obj
