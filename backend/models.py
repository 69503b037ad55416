import re
from datetime import datetime, date
from typing import List, Literal, Optional

from pydantic import BaseModel, Field, ConfigDict, field_validator, model_validator

FREQUENCIES = ("once", "daily", "weekly")

Frequency = Literal["once", "daily", "weekly"]

# ==================== HELPERS ====================

def normalize_hhmm(value: str) -> str:
    """Normalize time values into HH:MM."""
    if not value:
        return ""
    value = value.strip()
    match = re.match(r"^(\d{1,2}):(\d{2})$", value)
    if not match:
        return value
    hour = int(match.group(1))
    minute = int(match.group(2))
    if hour < 0 or hour > 23 or minute < 0 or minute > 59:
        return value
    return f"{hour:02d}:{minute:02d}"

def is_valid_hhmm(value: str) -> bool:
    return bool(re.match(r"^([01]\d|2[0-3]):[0-5]\d$", value or ""))

def parse_yyyy_mm_dd(value: Optional[str]) -> Optional[date]:
    if not value:
        return None
    try:
        return datetime.strptime(value.strip(), "%Y-%m-%d").date()
    except ValueError:
        return None

def _checked_time(value: str) -> str:
    normalized = normalize_hhmm(value)
    if not is_valid_hhmm(normalized):
        raise ValueError("time must be HH:MM (24-hour)")
    return normalized

def _checked_date(value: Optional[str]) -> Optional[str]:
    if value is None or value == "":
        return None
    parsed = parse_yyyy_mm_dd(value)
    if parsed is None:
        raise ValueError("date must be YYYY-MM-DD")
    return parsed.isoformat()

# ==================== REMINDERS ====================

class Reminder(BaseModel):
    model_config = ConfigDict(extra="ignore")
    id: int
    title: str
    description: Optional[str] = None
    time: str  # HH:MM, 24-hour
    frequency: Frequency
    date: Optional[str] = None  # YYYY-MM-DD, only for 'once'
    is_completed: bool = False
    is_active: bool = True
    created_at: datetime

class ReminderCreate(BaseModel):
    title: str
    description: Optional[str] = None
    time: str
    frequency: Frequency
    date: Optional[str] = None

    @field_validator("title")
    @classmethod
    def _title_not_blank(cls, value: str) -> str:
        if not value or not value.strip():
            raise ValueError("title must not be empty")
        return value.strip()

    @field_validator("time")
    @classmethod
    def _time_format(cls, value: str) -> str:
        return _checked_time(value)

    @field_validator("date")
    @classmethod
    def _date_format(cls, value: Optional[str]) -> Optional[str]:
        return _checked_date(value)

    @model_validator(mode="after")
    def _once_needs_date(self):
        if self.frequency == "once" and not self.date:
            raise ValueError("date is required for one-time reminders")
        return self

class ReminderUpdate(BaseModel):
    title: Optional[str] = None
    description: Optional[str] = None
    time: Optional[str] = None
    frequency: Optional[Frequency] = None
    date: Optional[str] = None
    is_completed: Optional[bool] = None
    is_active: Optional[bool] = None

    @field_validator("time")
    @classmethod
    def _time_format(cls, value: Optional[str]) -> Optional[str]:
        return None if value is None else _checked_time(value)

    @field_validator("date")
    @classmethod
    def _date_format(cls, value: Optional[str]) -> Optional[str]:
        return _checked_date(value)

# ==================== MEMORIES ====================

class Memory(BaseModel):
    model_config = ConfigDict(extra="ignore")
    id: int
    content: str
    created_at: datetime

class MemoryCreate(BaseModel):
    content: str

    @field_validator("content")
    @classmethod
    def _content_not_blank(cls, value: str) -> str:
        if not value or not value.strip():
            raise ValueError("memory must not be empty")
        return value

# ==================== CHAT ====================

class ChatMessage(BaseModel):
    model_config = ConfigDict(extra="ignore")
    id: int
    content: str
    is_from_user: bool
    created_at: datetime

class ChatMessageCreate(BaseModel):
    content: str
    is_from_user: bool = True

class QuickActionRequest(BaseModel):
    action: str

# ==================== EMERGENCY CONTACTS ====================

class EmergencyContact(BaseModel):
    model_config = ConfigDict(extra="ignore")
    id: int
    name: str
    phone: str
    relationship: str

class EmergencyContactCreate(BaseModel):
    name: str
    phone: str
    relationship: str

class EmergencyContactUpdate(BaseModel):
    name: Optional[str] = None
    phone: Optional[str] = None
    relationship: Optional[str] = None

# ==================== MEDICATIONS ====================

class Medication(BaseModel):
    model_config = ConfigDict(extra="ignore")
    id: int
    name: str
    dosage: str
    frequency: str  # once daily, twice daily, three times daily, four times daily, weekly, as needed
    time_slots: List[str] = []
    instructions: Optional[str] = None
    is_active: bool = True
    created_at: datetime

class MedicationCreate(BaseModel):
    name: str
    dosage: str
    frequency: str
    time_slots: List[str] = []
    instructions: Optional[str] = None

    @field_validator("time_slots")
    @classmethod
    def _slots_format(cls, values: List[str]) -> List[str]:
        return sorted({_checked_time(v) for v in values if v})

class MedicationUpdate(BaseModel):
    name: Optional[str] = None
    dosage: Optional[str] = None
    frequency: Optional[str] = None
    time_slots: Optional[List[str]] = None
    instructions: Optional[str] = None
    is_active: Optional[bool] = None

    @field_validator("time_slots")
    @classmethod
    def _slots_format(cls, values: Optional[List[str]]) -> Optional[List[str]]:
        if values is None:
            return None
        return sorted({_checked_time(v) for v in values if v})

# ==================== PROFILE ====================

class UserProfile(BaseModel):
    model_config = ConfigDict(extra="ignore")
    id: int
    name: str
    age: Optional[int] = None
    photo: Optional[str] = None
    address: Optional[str] = None
    emergency_contact: Optional[str] = None
    emergency_phone: Optional[str] = None
    medical_info: Optional[str] = None
    caregiver_code_hash: Optional[str] = None
    preferences: Optional[str] = None
    created_at: datetime

class UserProfileCreate(BaseModel):
    name: str
    age: Optional[int] = Field(default=None, ge=0, le=130)
    photo: Optional[str] = None
    address: Optional[str] = None
    emergency_contact: Optional[str] = None
    emergency_phone: Optional[str] = None
    medical_info: Optional[str] = None
    caregiver_code: Optional[str] = None
    preferences: Optional[str] = None

class UserProfileUpdate(BaseModel):
    name: Optional[str] = None
    age: Optional[int] = Field(default=None, ge=0, le=130)
    photo: Optional[str] = None
    address: Optional[str] = None
    emergency_contact: Optional[str] = None
    emergency_phone: Optional[str] = None
    medical_info: Optional[str] = None
    caregiver_code: Optional[str] = None
    preferences: Optional[str] = None

# ==================== NOTIFICATIONS / CAREGIVER ====================

class PermissionReport(BaseModel):
    permission: Literal["granted", "denied", "unsupported", "default"]

class CaregiverAccessRequest(BaseModel):
    code: str
