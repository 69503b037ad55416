"""
Record storage for reminders and the surrounding care data.

Every record kind lives in its own collection keyed by an integer ``id``
taken from a per-kind counter; ids are never handed out twice, even after
the record is deleted. Two backends share the same domain methods:

- ``MongoCareStore``: MongoDB through motor (used when MONGO_URL is set)
- ``MemoryCareStore``: process memory (local runs and tests)
"""

import copy
import itertools
import logging
from contextlib import contextmanager
from datetime import date, datetime
from typing import Dict, List, Optional

from motor.motor_asyncio import AsyncIOMotorClient
from pymongo import ReturnDocument
from pymongo.errors import PyMongoError

from config import SystemClock
from models import (
    ChatMessage,
    EmergencyContact,
    Medication,
    Memory,
    Reminder,
    UserProfile,
)

logger = logging.getLogger(__name__)

REMINDERS = "reminders"
MEMORIES = "memories"
CHAT_MESSAGES = "chat_messages"
EMERGENCY_CONTACTS = "emergency_contacts"
MEDICATIONS = "medications"
PROFILES = "profiles"

RECORD_KINDS = (REMINDERS, MEMORIES, CHAT_MESSAGES, EMERGENCY_CONTACTS, MEDICATIONS, PROFILES)

DEFAULT_EMERGENCY_CONTACTS = [
    {"name": "Emergency Services", "phone": "911", "relationship": "Emergency"},
    {"name": "Sarah", "phone": "(555) 123-4567", "relationship": "Granddaughter"},
    {"name": "Dr. Smith", "phone": "(555) 456-7890", "relationship": "Doctor"},
]


class StoreError(Exception):
    """Raised when the storage backend cannot complete an operation."""


class NotFoundError(StoreError):
    def __init__(self, kind: str, record_id: int):
        self.kind = kind
        self.record_id = record_id
        super().__init__(f"{kind} record {record_id} not found")


def reminder_eligible_on(reminder: dict, day: date, weekly_weekday: int = 0) -> bool:
    """Day-selection rule for "today's" reminders.

    Weekly reminders fall on a single configured weekday (0 = Monday); the
    reminder itself does not carry a day of week.
    """
    if not reminder.get("is_active", True):
        return False
    frequency = reminder.get("frequency")
    if frequency == "once":
        return reminder.get("date") == day.isoformat()
    if frequency == "daily":
        return True
    if frequency == "weekly":
        return day.weekday() == weekly_weekday
    return False


def reminder_pending(reminder: Optional[dict]) -> bool:
    """Exists, is active and has not been acknowledged."""
    if reminder is None or not reminder.get("is_active", True):
        return False
    return not reminder.get("is_completed", False)


def _stamp(doc: dict) -> dict:
    if isinstance(doc.get("created_at"), datetime):
        doc["created_at"] = doc["created_at"].isoformat()
    return doc


class CareStore:
    """Domain operations built on a handful of per-kind record primitives."""

    def __init__(self, weekly_weekday: int = 0, clock=None):
        self.weekly_weekday = weekly_weekday
        self.clock = clock or SystemClock()

    # ---- primitives (implemented by backends) ----

    async def next_id(self, kind: str) -> int:
        raise NotImplementedError

    async def insert(self, kind: str, doc: dict):
        raise NotImplementedError

    async def find_all(self, kind: str) -> List[dict]:
        raise NotImplementedError

    async def find_one(self, kind: str, record_id: int) -> Optional[dict]:
        raise NotImplementedError

    async def update_fields(self, kind: str, record_id: int, fields: dict) -> Optional[dict]:
        raise NotImplementedError

    async def remove(self, kind: str, record_id: int) -> bool:
        raise NotImplementedError

    async def clear(self, kind: str):
        raise NotImplementedError

    async def close(self):
        pass

    # ---- shared helpers ----

    async def _create(self, kind: str, model_cls, fields: dict) -> dict:
        record_id = await self.next_id(kind)
        doc = _stamp(model_cls(id=record_id, created_at=self.clock.now(), **fields).model_dump())
        await self.insert(kind, doc)
        return doc

    async def _update(self, kind: str, record_id: int, fields: dict) -> dict:
        fields = {k: v for k, v in fields.items() if k not in ("id", "created_at")}
        updated = await self.update_fields(kind, record_id, fields)
        if updated is None:
            raise NotFoundError(kind, record_id)
        return updated

    # ==================== REMINDERS ====================

    async def list_reminders(self) -> List[dict]:
        return await self.find_all(REMINDERS)

    async def list_today_reminders(self, today: date) -> List[dict]:
        reminders = [
            r for r in await self.find_all(REMINDERS)
            if reminder_eligible_on(r, today, self.weekly_weekday)
        ]
        # zero-padded HH:MM sorts correctly as text
        return sorted(reminders, key=lambda r: r["time"])

    async def get_reminder(self, reminder_id: int) -> Optional[dict]:
        return await self.find_one(REMINDERS, reminder_id)

    async def create_reminder(self, fields: dict) -> dict:
        fields = {k: v for k, v in fields.items() if k not in ("is_completed", "is_active")}
        return await self._create(REMINDERS, Reminder, fields)

    async def update_reminder(self, reminder_id: int, partial: dict) -> dict:
        return await self._update(REMINDERS, reminder_id, partial)

    async def delete_reminder(self, reminder_id: int) -> bool:
        return await self.remove(REMINDERS, reminder_id)

    # ==================== MEMORIES ====================

    async def list_memories(self) -> List[dict]:
        memories = await self.find_all(MEMORIES)
        return sorted(memories, key=lambda m: m["id"], reverse=True)

    async def create_memory(self, fields: dict) -> dict:
        return await self._create(MEMORIES, Memory, fields)

    async def delete_memory(self, memory_id: int) -> bool:
        return await self.remove(MEMORIES, memory_id)

    # ==================== CHAT ====================

    async def list_chat_messages(self) -> List[dict]:
        return await self.find_all(CHAT_MESSAGES)

    async def create_chat_message(self, fields: dict) -> dict:
        return await self._create(CHAT_MESSAGES, ChatMessage, fields)

    async def clear_chat_history(self):
        await self.clear(CHAT_MESSAGES)

    # ==================== EMERGENCY CONTACTS ====================

    async def list_emergency_contacts(self) -> List[dict]:
        return await self.find_all(EMERGENCY_CONTACTS)

    async def create_emergency_contact(self, fields: dict) -> dict:
        return await self._create(EMERGENCY_CONTACTS, EmergencyContact, fields)

    async def update_emergency_contact(self, contact_id: int, partial: dict) -> dict:
        return await self._update(EMERGENCY_CONTACTS, contact_id, partial)

    async def delete_emergency_contact(self, contact_id: int) -> bool:
        return await self.remove(EMERGENCY_CONTACTS, contact_id)

    async def seed_defaults(self) -> int:
        """Populate default emergency contacts when none exist."""
        if await self.find_all(EMERGENCY_CONTACTS):
            return 0
        for contact in DEFAULT_EMERGENCY_CONTACTS:
            await self.create_emergency_contact(contact)
        logger.info(f"Seeded {len(DEFAULT_EMERGENCY_CONTACTS)} default emergency contacts")
        return len(DEFAULT_EMERGENCY_CONTACTS)

    # ==================== MEDICATIONS ====================

    async def list_medications(self) -> List[dict]:
        return await self.find_all(MEDICATIONS)

    async def create_medication(self, fields: dict) -> dict:
        return await self._create(MEDICATIONS, Medication, fields)

    async def update_medication(self, medication_id: int, partial: dict) -> dict:
        return await self._update(MEDICATIONS, medication_id, partial)

    async def delete_medication(self, medication_id: int) -> bool:
        return await self.remove(MEDICATIONS, medication_id)

    # ==================== PROFILE ====================

    async def get_profile(self) -> Optional[dict]:
        profiles = await self.find_all(PROFILES)
        return profiles[0] if profiles else None

    async def create_profile(self, fields: dict) -> dict:
        return await self._create(PROFILES, UserProfile, fields)

    async def update_profile(self, profile_id: int, partial: dict) -> dict:
        return await self._update(PROFILES, profile_id, partial)


class MemoryCareStore(CareStore):
    """In-process store; records are copied in and out."""

    def __init__(self, weekly_weekday: int = 0, clock=None):
        super().__init__(weekly_weekday, clock)
        self._records: Dict[str, Dict[int, dict]] = {kind: {} for kind in RECORD_KINDS}
        self._counters = {kind: itertools.count(1) for kind in RECORD_KINDS}

    async def next_id(self, kind: str) -> int:
        return next(self._counters[kind])

    async def insert(self, kind: str, doc: dict):
        self._records[kind][doc["id"]] = copy.deepcopy(doc)

    async def find_all(self, kind: str) -> List[dict]:
        return [copy.deepcopy(doc) for _, doc in sorted(self._records[kind].items())]

    async def find_one(self, kind: str, record_id: int) -> Optional[dict]:
        doc = self._records[kind].get(record_id)
        return copy.deepcopy(doc) if doc is not None else None

    async def update_fields(self, kind: str, record_id: int, fields: dict) -> Optional[dict]:
        doc = self._records[kind].get(record_id)
        if doc is None:
            return None
        doc.update(copy.deepcopy(fields))
        return copy.deepcopy(doc)

    async def remove(self, kind: str, record_id: int) -> bool:
        return self._records[kind].pop(record_id, None) is not None

    async def clear(self, kind: str):
        self._records[kind].clear()


@contextmanager
def _mongo_errors(operation: str, kind: str):
    try:
        yield
    except PyMongoError as e:
        logger.error(f"MongoDB {operation} failed on {kind}: {e}")
        raise StoreError(f"Failed to {operation} {kind}") from e


class MongoCareStore(CareStore):
    """MongoDB-backed store; one collection per record kind plus ``counters``."""

    def __init__(self, mongo_url: Optional[str] = None, db_name: str = "carecompanion",
                 weekly_weekday: int = 0, client: Optional[AsyncIOMotorClient] = None, clock=None):
        super().__init__(weekly_weekday, clock)
        self.client = client or AsyncIOMotorClient(mongo_url)
        self.db = self.client[db_name]

    async def ensure_indexes(self):
        for kind in RECORD_KINDS:
            with _mongo_errors("index", kind):
                await self.db[kind].create_index("id", unique=True)

    async def next_id(self, kind: str) -> int:
        with _mongo_errors("allocate id for", kind):
            counter = await self.db.counters.find_one_and_update(
                {"_id": kind},
                {"$inc": {"seq": 1}},
                upsert=True,
                return_document=ReturnDocument.AFTER
            )
        return int(counter["seq"])

    async def insert(self, kind: str, doc: dict):
        with _mongo_errors("insert", kind):
            # insert_one adds _id to the dict it is given
            await self.db[kind].insert_one(dict(doc))

    async def find_all(self, kind: str) -> List[dict]:
        with _mongo_errors("fetch", kind):
            return await self.db[kind].find({}, {"_id": 0}).sort("id", 1).to_list(1000)

    async def find_one(self, kind: str, record_id: int) -> Optional[dict]:
        with _mongo_errors("fetch", kind):
            return await self.db[kind].find_one({"id": record_id}, {"_id": 0})

    async def update_fields(self, kind: str, record_id: int, fields: dict) -> Optional[dict]:
        with _mongo_errors("update", kind):
            if not fields:
                return await self.db[kind].find_one({"id": record_id}, {"_id": 0})
            return await self.db[kind].find_one_and_update(
                {"id": record_id},
                {"$set": fields},
                projection={"_id": 0},
                return_document=ReturnDocument.AFTER
            )

    async def remove(self, kind: str, record_id: int) -> bool:
        with _mongo_errors("delete", kind):
            result = await self.db[kind].delete_one({"id": record_id})
        return result.deleted_count > 0

    async def clear(self, kind: str):
        with _mongo_errors("clear", kind):
            await self.db[kind].delete_many({})

    async def close(self):
        self.client.close()


def build_store(settings, clock=None) -> CareStore:
    if settings.mongo_url:
        logger.info(f"Using MongoDB store (db={settings.db_name})")
        return MongoCareStore(
            settings.mongo_url,
            settings.db_name,
            weekly_weekday=settings.weekly_weekday_index,
            clock=clock
        )
    logger.info("MONGO_URL not set - using in-memory store")
    return MemoryCareStore(weekly_weekday=settings.weekly_weekday_index, clock=clock)
