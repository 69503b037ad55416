from fastapi import FastAPI, APIRouter, HTTPException, Depends, UploadFile, File, Request
from fastapi.responses import JSONResponse
from starlette.middleware.cors import CORSMiddleware
from apscheduler.schedulers.asyncio import AsyncIOScheduler
from contextlib import asynccontextmanager
from zoneinfo import ZoneInfo
import logging
import secrets
from pydantic import ValidationError
from typing import List, Optional
from datetime import datetime, timezone, timedelta
from passlib.context import CryptContext
from jose import JWTError, jwt

from config import Settings, SystemClock, load_settings, configure_logging
from models import (
    ReminderCreate, ReminderUpdate,
    MemoryCreate,
    ChatMessageCreate, QuickActionRequest,
    EmergencyContactCreate, EmergencyContactUpdate,
    MedicationCreate, MedicationUpdate,
    UserProfileCreate, UserProfileUpdate,
    PermissionReport, CaregiverAccessRequest,
)
from storage import CareStore, MongoCareStore, NotFoundError, StoreError, build_store
from scheduling import NotificationScheduler, DueReminderEvaluator
from notifications import AlertFeed, NotificationPresenter
from reminders import ReminderService
from companion import ChatCompanion
from voice import (
    VoiceTranscriber, VoiceInputError, VoiceUnsupported,
    NoSpeechDetected, MicrophonePermissionDenied,
)

ALGORITHM = "HS256"
CAREGIVER_SUBJECT = "caregiver"

NOT_FOUND_LABELS = {
    "reminders": "Reminder",
    "memories": "Memory",
    "chat_messages": "Chat message",
    "emergency_contacts": "Emergency contact",
    "medications": "Medication",
    "profiles": "Profile",
}

# Password hashing configuration (caregiver access code)
pwd_context = CryptContext(schemes=["pbkdf2_sha256"], deprecated="auto")

logger = logging.getLogger(__name__)

# Create a router with the /api prefix
api_router = APIRouter(prefix="/api")

# ==================== SERVICES ====================

class CareServices:
    """Everything the routes need, built once per app."""

    def __init__(
        self,
        settings: Settings,
        store: Optional[CareStore] = None,
        clock=None,
        alerts: Optional[AlertFeed] = None,
        transcriber: Optional[VoiceTranscriber] = None,
        companion: Optional[ChatCompanion] = None
    ):
        self.settings = settings
        self.tz = ZoneInfo(settings.app_timezone)
        self.clock = clock or SystemClock(self.tz)
        self.store = store or build_store(settings, self.clock)
        self.scheduler = AsyncIOScheduler(timezone=self.tz)
        self.alerts = alerts or AlertFeed(
            self.clock,
            permission=settings.alert_permission,
            timeout_seconds=settings.alert_timeout_seconds
        )
        self.presenter = NotificationPresenter(
            self.store, self.alerts, self.scheduler, self.clock,
            snooze_minutes=settings.snooze_minutes
        )
        self.timers = NotificationScheduler(self.scheduler, self.clock)
        self.reminders = ReminderService(self.store, self.timers, self.presenter, self.clock)
        self.evaluator = DueReminderEvaluator(self.store, self.presenter, self.clock)
        self.companion = companion or ChatCompanion(self.store)
        self.transcriber = transcriber or VoiceTranscriber(
            settings.openai_api_key,
            settings.transcription_model
        )

    async def start(self):
        if isinstance(self.store, MongoCareStore):
            await self.store.ensure_indexes()
        await self.store.seed_defaults()
        self.scheduler.start()
        await self.reminders.arm_all()
        self.evaluator.start_polling(self.scheduler, self.settings.reminder_poll_seconds)

    async def stop(self):
        cancelled = self.reminders.shutdown()
        logger.info(f"Cancelled {cancelled} reminder timers")
        if self.scheduler.running:
            self.scheduler.shutdown(wait=False)
        await self.store.close()


def get_services(request: Request) -> CareServices:
    return request.app.state.services

# ==================== HELPERS ====================

def verify_password(plain_password, hashed_password):
    return pwd_context.verify(plain_password, hashed_password)

def get_password_hash(password):
    return pwd_context.hash(password)

def create_access_token(data: dict, secret_key: str, expires_delta: Optional[timedelta] = None):
    to_encode = data.copy()
    if expires_delta:
        expire = datetime.now(timezone.utc) + expires_delta
    else:
        expire = datetime.now(timezone.utc) + timedelta(minutes=15)
    to_encode.update({"exp": expire})
    encoded_jwt = jwt.encode(to_encode, secret_key, algorithm=ALGORITHM)
    return encoded_jwt

def public_profile(doc: Optional[dict]) -> Optional[dict]:
    """Profile as returned to clients; the access code hash never leaves."""
    if doc is None:
        return None
    profile = {k: v for k, v in doc.items() if k != "caregiver_code_hash"}
    profile["caregiver_code_set"] = bool(doc.get("caregiver_code_hash"))
    return profile

def profile_fields(payload: dict) -> dict:
    code = payload.pop("caregiver_code", None)
    if code:
        payload["caregiver_code_hash"] = get_password_hash(code)
    return payload

def validation_messages(error: ValidationError) -> List[str]:
    return [err["msg"] for err in error.errors()]

async def check_caregiver_code(services: CareServices, code: str) -> bool:
    profile = await services.store.get_profile()
    if profile and profile.get("caregiver_code_hash"):
        return verify_password(code, profile["caregiver_code_hash"])
    return secrets.compare_digest(code, services.settings.caregiver_access_code)

# ==================== AUTHENTICATION ====================

async def require_caregiver(request: Request, services: CareServices = Depends(get_services)) -> dict:
    """Caregiver token from the Authorization header or cookie"""
    token = request.cookies.get("caregiver_token")

    # Fallback to Authorization header
    auth_header = request.headers.get("Authorization")
    if auth_header and auth_header.startswith("Bearer "):
        token = auth_header.split(" ")[1]

    if not token:
        raise HTTPException(status_code=401, detail="Caregiver access code required")

    try:
        payload = jwt.decode(token, services.settings.jwt_secret_key, algorithms=[ALGORITHM])
    except JWTError:
        raise HTTPException(status_code=401, detail="Invalid caregiver token")

    if payload.get("sub") != CAREGIVER_SUBJECT:
        raise HTTPException(status_code=401, detail="Invalid caregiver token")
    return payload

# ==================== PROFILE ====================

@api_router.get("/profile")
async def get_profile(services: CareServices = Depends(get_services)):
    """Get the user profile (null until created)"""
    return public_profile(await services.store.get_profile())

@api_router.post("/profile", response_model=dict)
async def create_profile(
    profile: UserProfileCreate,
    services: CareServices = Depends(get_services)
):
    """Create the user profile"""
    if await services.store.get_profile() is not None:
        raise HTTPException(status_code=409, detail="Profile already exists")
    doc = await services.store.create_profile(profile_fields(profile.model_dump()))
    return public_profile(doc)

@api_router.patch("/profile/{profile_id}", response_model=dict)
async def update_profile(
    profile_id: int,
    profile: UserProfileUpdate,
    services: CareServices = Depends(get_services)
):
    """Update the user profile"""
    update_data = {k: v for k, v in profile.model_dump().items() if v is not None}
    doc = await services.store.update_profile(profile_id, profile_fields(update_data))
    return public_profile(doc)

# ==================== REMINDERS ====================

@api_router.get("/reminders", response_model=List[dict])
async def get_reminders(services: CareServices = Depends(get_services)):
    """Get all reminders in creation order"""
    return await services.reminders.list()

@api_router.get("/reminders/today", response_model=List[dict])
async def get_today_reminders(services: CareServices = Depends(get_services)):
    """Get reminders that fall on today, ordered by time"""
    return await services.reminders.list_today()

@api_router.post("/reminders", response_model=dict)
async def create_reminder(
    reminder: ReminderCreate,
    services: CareServices = Depends(get_services)
):
    """Create a reminder and arm its notification timer"""
    return await services.reminders.create(reminder)

@api_router.patch("/reminders/{reminder_id}", response_model=dict)
async def update_reminder(
    reminder_id: int,
    reminder: ReminderUpdate,
    services: CareServices = Depends(get_services)
):
    """Partially update a reminder; timers follow the new schedule"""
    try:
        return await services.reminders.update(reminder_id, reminder)
    except ValidationError as e:
        raise HTTPException(status_code=422, detail=validation_messages(e))

@api_router.delete("/reminders/{reminder_id}")
async def delete_reminder(
    reminder_id: int,
    services: CareServices = Depends(get_services)
):
    """Delete a reminder (no-op when it does not exist)"""
    await services.reminders.delete(reminder_id)
    return {"success": True}

@api_router.get("/reminders/{reminder_id}/next-fire")
async def get_reminder_next_fire(
    reminder_id: int,
    services: CareServices = Depends(get_services)
):
    if await services.store.get_reminder(reminder_id) is None:
        raise HTTPException(status_code=404, detail="Reminder not found")
    next_fire = services.reminders.next_fire_time(reminder_id)
    snoozed_until = services.presenter.snoozed_until(reminder_id)
    return {
        "id": reminder_id,
        "next_fire_at": next_fire.isoformat() if next_fire else None,
        "snoozed_until": snoozed_until.isoformat() if snoozed_until else None
    }

# ==================== NOTIFICATIONS ====================

@api_router.get("/notifications/active")
async def get_active_notification(services: CareServices = Depends(get_services)):
    """Reminder currently on the banner plus live alerts"""
    presenter = services.presenter
    return {
        "reminder": presenter.active,
        "since": presenter.active_since.isoformat() if presenter.active_since else None,
        "permission": presenter.permission,
        "alerts": services.alerts.live_alerts()
    }

@api_router.post("/notifications/check")
async def check_due_reminders(services: CareServices = Depends(get_services)):
    """Run one due-reminder evaluation now"""
    surfaced = await services.evaluator.tick()
    return {"surfaced": surfaced, "active": services.presenter.active}

@api_router.post("/notifications/{reminder_id}/acknowledge", response_model=dict)
async def acknowledge_notification(
    reminder_id: int,
    services: CareServices = Depends(get_services)
):
    """Mark the reminder done and dismiss it"""
    return await services.presenter.acknowledge(reminder_id)

@api_router.post("/notifications/{reminder_id}/snooze")
async def snooze_notification(
    reminder_id: int,
    services: CareServices = Depends(get_services)
):
    """Hide the reminder and show it again after the snooze delay"""
    run_at = await services.presenter.snooze(reminder_id)
    return {"id": reminder_id, "snoozed_until": run_at.isoformat()}

@api_router.post("/notifications/dismiss")
async def dismiss_notification(services: CareServices = Depends(get_services)):
    """Close the banner without completing the reminder"""
    return {"dismissed": services.presenter.dismiss()}

@api_router.post("/notifications/permission")
async def report_notification_permission(
    report: PermissionReport,
    services: CareServices = Depends(get_services)
):
    """Browser reports the result of its notification permission prompt"""
    services.alerts.report_permission(report.permission)
    permission = await services.presenter.request_permission(refresh=True)
    return {"permission": permission}

@api_router.get("/alerts", response_model=List[dict])
async def get_alerts(services: CareServices = Depends(get_services)):
    """Alerts that have not auto-dismissed yet"""
    return services.alerts.live_alerts()

@api_router.post("/alerts/{alert_id}/acknowledge")
async def acknowledge_alert(
    alert_id: str,
    services: CareServices = Depends(get_services)
):
    if not await services.alerts.acknowledge(alert_id):
        raise HTTPException(status_code=404, detail="Alert not found or expired")
    return {"success": True}

# ==================== MEMORIES ====================

@api_router.get("/memories", response_model=List[dict])
async def get_memories(services: CareServices = Depends(get_services)):
    """Get all memories, newest first"""
    return await services.store.list_memories()

@api_router.post("/memories", response_model=dict)
async def create_memory(
    memory: MemoryCreate,
    services: CareServices = Depends(get_services)
):
    """Create a new memory"""
    return await services.store.create_memory(memory.model_dump())

@api_router.delete("/memories/{memory_id}")
async def delete_memory(
    memory_id: int,
    services: CareServices = Depends(get_services)
):
    """Delete a memory"""
    await services.store.delete_memory(memory_id)
    return {"success": True}

# ==================== CHAT COMPANION ====================

@api_router.get("/chat", response_model=List[dict])
async def get_chat_messages(services: CareServices = Depends(get_services)):
    """Chat history, oldest first"""
    return await services.store.list_chat_messages()

@api_router.post("/chat", response_model=List[dict])
async def post_chat_message(
    message: ChatMessageCreate,
    services: CareServices = Depends(get_services)
):
    """Store a message; user messages get a companion reply"""
    if not message.content.strip():
        raise HTTPException(status_code=422, detail="Message must not be empty")
    return await services.companion.post(message.content, message.is_from_user)

@api_router.post("/chat/quick-action", response_model=List[dict])
async def post_chat_quick_action(
    request: QuickActionRequest,
    services: CareServices = Depends(get_services)
):
    return await services.companion.quick_action(request.action)

@api_router.delete("/chat")
async def clear_chat_history(services: CareServices = Depends(get_services)):
    await services.store.clear_chat_history()
    return {"success": True}

# ==================== EMERGENCY CONTACTS ====================

@api_router.get("/emergency-contacts", response_model=List[dict])
async def get_emergency_contacts(services: CareServices = Depends(get_services)):
    return await services.store.list_emergency_contacts()

@api_router.post("/emergency-contacts", response_model=dict)
async def create_emergency_contact(
    contact: EmergencyContactCreate,
    services: CareServices = Depends(get_services)
):
    return await services.store.create_emergency_contact(contact.model_dump())

@api_router.patch("/emergency-contacts/{contact_id}", response_model=dict)
async def update_emergency_contact(
    contact_id: int,
    contact: EmergencyContactUpdate,
    services: CareServices = Depends(get_services)
):
    update_data = {k: v for k, v in contact.model_dump().items() if v is not None}
    return await services.store.update_emergency_contact(contact_id, update_data)

@api_router.delete("/emergency-contacts/{contact_id}")
async def delete_emergency_contact(
    contact_id: int,
    services: CareServices = Depends(get_services)
):
    await services.store.delete_emergency_contact(contact_id)
    return {"success": True}

# ==================== MEDICATIONS ====================

@api_router.get("/medications", response_model=List[dict])
async def get_medications(services: CareServices = Depends(get_services)):
    return await services.store.list_medications()

@api_router.post("/medications", response_model=dict)
async def create_medication(
    medication: MedicationCreate,
    services: CareServices = Depends(get_services)
):
    return await services.store.create_medication(medication.model_dump())

@api_router.patch("/medications/{medication_id}", response_model=dict)
async def update_medication(
    medication_id: int,
    medication: MedicationUpdate,
    services: CareServices = Depends(get_services)
):
    update_data = {k: v for k, v in medication.model_dump().items() if v is not None}
    return await services.store.update_medication(medication_id, update_data)

@api_router.delete("/medications/{medication_id}")
async def delete_medication(
    medication_id: int,
    services: CareServices = Depends(get_services)
):
    await services.store.delete_medication(medication_id)
    return {"success": True}

# ==================== CAREGIVER PORTAL ====================

@api_router.post("/caregiver/access")
async def caregiver_access(
    request: CaregiverAccessRequest,
    services: CareServices = Depends(get_services)
):
    """Exchange the caregiver access code for a short-lived token"""
    if not await check_caregiver_code(services, request.code):
        logger.info("Rejected caregiver access attempt")
        raise HTTPException(status_code=401, detail="Invalid access code")
    minutes = services.settings.caregiver_token_minutes
    token = create_access_token(
        {"sub": CAREGIVER_SUBJECT},
        services.settings.jwt_secret_key,
        expires_delta=timedelta(minutes=minutes)
    )
    return {"access_token": token, "token_type": "bearer", "expires_in": minutes * 60}

@api_router.get("/caregiver/dashboard", response_model=dict)
async def caregiver_dashboard(
    caregiver: dict = Depends(require_caregiver),
    services: CareServices = Depends(get_services)
):
    """Reminders, contacts, medications and an activity summary"""
    store = services.store
    reminders = await store.list_reminders()
    today = await services.reminders.list_today()
    chat = await store.list_chat_messages()
    last_user_message = next((m for m in reversed(chat) if m.get("is_from_user")), None)

    return {
        "profile": public_profile(await store.get_profile()),
        "reminders": reminders,
        "emergency_contacts": await store.list_emergency_contacts(),
        "medications": await store.list_medications(),
        "summary": {
            "completed": sum(1 for r in reminders if r.get("is_completed")),
            "total": len(reminders),
            "completed_today": sum(1 for r in today if r.get("is_completed")),
            "total_today": len(today),
            "missed": sum(1 for r in reminders if not r.get("is_completed") and not r.get("is_active", True)),
            "active_medications": sum(1 for m in await store.list_medications() if m.get("is_active", True)),
            "last_chat_at": last_user_message["created_at"] if last_user_message else None
        }
    }

# ==================== VOICE INPUT ====================

@api_router.post("/voice/transcribe")
async def transcribe_voice(
    audio: UploadFile = File(...),
    services: CareServices = Depends(get_services)
):
    """Turn a recorded clip into one text transcript"""
    content = await audio.read()
    try:
        transcript = await services.transcriber.listen(content, audio.filename, audio.content_type)
    except VoiceUnsupported as e:
        raise HTTPException(status_code=501, detail=str(e))
    except NoSpeechDetected as e:
        raise HTTPException(status_code=422, detail=str(e))
    except MicrophonePermissionDenied as e:
        raise HTTPException(status_code=403, detail=str(e))
    except VoiceInputError as e:
        raise HTTPException(status_code=502, detail=str(e))
    return {"transcript": transcript}

# ==================== ROOT ====================

@api_router.get("/")
async def root():
    return {"message": "CareCompanion API"}

# ==================== APP ====================

async def not_found_handler(request: Request, exc: NotFoundError):
    label = NOT_FOUND_LABELS.get(exc.kind, "Record")
    return JSONResponse(status_code=404, content={"detail": f"{label} not found"})

async def store_error_handler(request: Request, exc: StoreError):
    logger.error(f"Store failure on {request.method} {request.url.path}: {exc}")
    return JSONResponse(status_code=500, content={"detail": "Storage is unavailable, please try again"})


def create_app(settings: Optional[Settings] = None, services: Optional[CareServices] = None) -> FastAPI:
    settings = settings or (services.settings if services else load_settings())
    services = services or CareServices(settings)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        await services.start()
        try:
            yield
        finally:
            await services.stop()

    app = FastAPI(title="CareCompanion", lifespan=lifespan)
    app.state.services = services

    # Include the router in the main app
    app.include_router(api_router)
    app.add_exception_handler(NotFoundError, not_found_handler)
    app.add_exception_handler(StoreError, store_error_handler)

    app.add_middleware(
        CORSMiddleware,
        allow_credentials=True,
        allow_origins=settings.cors_origins,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    return app


settings = load_settings()
configure_logging(settings.log_level)
app = create_app(settings)
