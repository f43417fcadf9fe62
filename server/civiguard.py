# CiviGuard: Civic Issue Reporting Portal
# FastAPI + MongoDB + Google sign-in + OpenAI

import os
import re
import csv
import uuid
import asyncio
import logging
from pathlib import Path
from datetime import datetime, timedelta, timezone
from typing import List, Optional, Dict, Any, Tuple
from enum import Enum
from contextlib import asynccontextmanager
from concurrent.futures import ThreadPoolExecutor
from urllib.parse import urlencode

import httpx
import uvicorn
from fastapi import FastAPI, HTTPException, Depends, Query
from fastapi.middleware.cors import CORSMiddleware
from fastapi.security import OAuth2AuthorizationCodeBearer
from fastapi.staticfiles import StaticFiles
from fastapi.templating import Jinja2Templates
from fastapi.responses import HTMLResponse, JSONResponse, RedirectResponse
from starlette.requests import Request
from starlette.middleware.base import BaseHTTPMiddleware
from pydantic import BaseModel, Field, ValidationError, field_validator, model_validator
from pymongo import MongoClient, ReturnDocument
from pymongo.errors import DuplicateKeyError, PyMongoError
from openai import AsyncOpenAI
from jose import JWTError, jwt
from slowapi import Limiter, _rate_limit_exceeded_handler
from slowapi.util import get_remote_address
from slowapi.errors import RateLimitExceeded

# ---------------------------------------------------------------------------
# Configuration
# ---------------------------------------------------------------------------
from dotenv import load_dotenv
# Try multiple .env locations: next to this file, one level up, then cwd
_script_dir = Path(__file__).resolve().parent
_env_candidates = [
    _script_dir / ".env",
    _script_dir.parent / ".env",
    Path.cwd() / ".env",
]
for _env_path in _env_candidates:
    if _env_path.is_file():
        load_dotenv(_env_path)
        break
else:
    load_dotenv()

logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)


def _require_env(name: str, min_length: int = 1) -> str:
    value = os.getenv(name, "")
    if len(value) < min_length:
        hint = f" and be at least {min_length} characters" if min_length > 1 else ""
        raise RuntimeError(f"FATAL: {name} must be set in the environment{hint}.")
    return value


BASE_DIR = Path(__file__).resolve().parent
JWT_SECRET = _require_env("JWT_SECRET", min_length=32)
GOOGLE_CLIENT_ID = _require_env("GOOGLE_CLIENT_ID")
GOOGLE_CLIENT_SECRET = _require_env("GOOGLE_CLIENT_SECRET")
OPENAI_API_KEY = _require_env("OPENAI_API_KEY")

MONGODB_URL = os.getenv("MONGODB_URL", "mongodb://localhost:27017")
MONGODB_DB = os.getenv("MONGODB_DB", "civiguard")
OPENAI_MODEL = os.getenv("OPENAI_MODEL", "gpt-5-mini")
AI_TIMEOUT_SECONDS = float(os.getenv("AI_TIMEOUT_SECONDS", "8"))
PUBLIC_URL = os.getenv("PUBLIC_URL", "http://localhost:8000").rstrip("/")
FRONTEND_URL = os.getenv("FRONTEND_URL", PUBLIC_URL).rstrip("/")
GOOGLE_CALLBACK_URL = os.getenv("GOOGLE_CALLBACK_URL", f"{PUBLIC_URL}/auth/google/callback")
ADMIN_EMAILS = {e.strip().lower() for e in os.getenv("ADMIN_EMAILS", "").split(",") if e.strip()}
OFFICERS_CSV = Path(os.getenv("OFFICERS_CSV", str(BASE_DIR / "data" / "officers.csv")))
DEFAULT_LAT = float(os.getenv("DEFAULT_LAT", "17.385"))
DEFAULT_LNG = float(os.getenv("DEFAULT_LNG", "78.4867"))
PORT = int(os.getenv("PORT", "8000"))

JWT_ALGORITHM = "HS256"
JWT_EXPIRE_DAYS = 7
OAUTH_STATE_EXPIRE_MINUTES = 10
OAUTH_TIMEOUT_SECONDS = 10.0
PAGE_SIZE = 100
BBOX_SCAN_LIMIT = int(os.getenv("BBOX_SCAN_LIMIT", "2000"))
TITLE_MAX_CHARS = 100

GOOGLE_AUTH_URL = "https://accounts.google.com/o/oauth2/v2/auth"
GOOGLE_TOKEN_URL = "https://oauth2.googleapis.com/token"
GOOGLE_USERINFO_URL = "https://openidconnect.googleapis.com/v1/userinfo"

openai_client = AsyncOpenAI(api_key=OPENAI_API_KEY, timeout=AI_TIMEOUT_SECONDS, max_retries=0)
oauth2_scheme = OAuth2AuthorizationCodeBearer(
    authorizationUrl="/auth/google", tokenUrl="/auth/google/callback", auto_error=False)

# ---------------------------------------------------------------------------
# Enums
# ---------------------------------------------------------------------------
class UserRole(str, Enum):
    CITIZEN = "citizen"
    ADMIN = "admin"

class Category(str, Enum):
    POTHOLE = "pothole"
    GARBAGE = "garbage"
    WATER_LEAK = "water_leak"
    STREET_LIGHT = "street_light"
    OTHER = "other"

class Priority(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"

class ComplaintStatus(str, Enum):
    PENDING = "pending"
    IN_PROGRESS = "in-progress"
    RESOLVED = "resolved"

class TextKind(str, Enum):
    TITLE = "title"
    DESCRIPTION = "description"

class ListScope(str, Enum):
    ALL = "all"
    MINE = "mine"
    PUBLIC = "public"

# ---------------------------------------------------------------------------
# Pydantic Models
# ---------------------------------------------------------------------------
class Location(BaseModel):
    """Canonical point shape. Legacy GeoJSON input is migrated on the way in."""
    lat: float = Field(..., ge=-90, le=90)
    lng: float = Field(..., ge=-180, le=180)

    @model_validator(mode='before')
    @classmethod
    def migrate_geojson(cls, values):
        if isinstance(values, dict) and values.get('coordinates') is not None:
            coords = values['coordinates']
            if not isinstance(coords, (list, tuple)) or len(coords) != 2:
                raise ValueError("Coordinates must be [longitude, latitude]")
            return {"lat": coords[1], "lng": coords[0]}
        return values

class UserResponse(BaseModel):
    id: str
    email: str
    name: str
    picture: Optional[str] = None
    role: UserRole
    createdAt: datetime

class UserSummary(BaseModel):
    id: str
    name: Optional[str] = None
    email: Optional[str] = None

class RoleUpdate(BaseModel):
    role: UserRole

class ComplaintCreate(BaseModel):
    title: str = Field(..., max_length=200)
    description: str = Field(..., max_length=5000)
    category: Category
    location: Location
    priority: Priority = Priority.MEDIUM
    address: Optional[str] = Field(None, max_length=500)
    images: List[str] = Field(default_factory=list, max_length=5)
    isPublic: bool = False
    enhancedTitle: Optional[str] = Field(None, max_length=500)
    enhancedDescription: Optional[str] = Field(None, max_length=10000)

    @field_validator('title', 'description')
    @classmethod
    def not_blank(cls, v: str) -> str:
        if not v.strip():
            raise ValueError("must not be blank")
        return v.strip()

class ComplaintUpdate(BaseModel):
    status: Optional[ComplaintStatus] = None
    priority: Optional[Priority] = None
    category: Optional[Category] = None
    title: Optional[str] = Field(None, min_length=1, max_length=200)
    description: Optional[str] = Field(None, min_length=1, max_length=5000)
    isPublic: Optional[bool] = None
    images: Optional[List[str]] = Field(None, max_length=5)

    @field_validator('title', 'description')
    @classmethod
    def not_blank(cls, v: Optional[str]) -> Optional[str]:
        if v is None:
            return v
        if not v.strip():
            raise ValueError("must not be blank")
        return v.strip()

class CommentCreate(BaseModel):
    text: str = Field(..., min_length=1, max_length=2000)

class Comment(BaseModel):
    id: str
    userId: str
    text: str
    createdAt: datetime

class ComplaintResponse(BaseModel):
    id: str
    title: str
    description: str
    enhancedTitle: Optional[str] = None
    enhancedDescription: Optional[str] = None
    category: Category
    priority: Priority
    status: ComplaintStatus
    location: Optional[Location] = None
    address: Optional[str] = None
    userId: str
    images: List[str] = Field(default_factory=list)
    comments: List[Comment] = Field(default_factory=list)
    isPublic: bool = False
    createdAt: datetime
    updatedAt: datetime
    user: Optional[UserSummary] = None

class TextPair(BaseModel):
    title: str = Field(..., min_length=1, max_length=200)
    description: str = Field(..., min_length=1, max_length=5000)

class EnhanceResponse(BaseModel):
    enhancedTitle: str
    enhancedDescription: str

class ComplaintAnalysis(BaseModel):
    category: Category = Category.OTHER
    priority: Priority = Priority.MEDIUM
    explanation: str = ""

    @field_validator('category', mode='before')
    @classmethod
    def coerce_category(cls, v):
        if isinstance(v, str):
            v = v.strip().lower().replace(" ", "_")
        return v if v in [c.value for c in Category] else Category.OTHER

    @field_validator('priority', mode='before')
    @classmethod
    def coerce_priority(cls, v):
        if isinstance(v, str):
            v = v.strip().lower()
        return v if v in [p.value for p in Priority] else Priority.MEDIUM

class ComplaintValidation(BaseModel):
    isValid: bool = True
    reason: str = ""

class AnalyzeResponse(BaseModel):
    category: Category
    priority: Priority
    explanation: str
    isValid: bool
    reason: str

class GeocodeRequest(BaseModel):
    address: str = Field(..., min_length=3, max_length=500)

class GeocodeResponse(BaseModel):
    location: Location
    resolved: bool

class Officer(BaseModel):
    department: str
    officerName: str
    email: str

class NotifyEmailRequest(BaseModel):
    recipientEmail: str = Field(..., max_length=320, pattern=r"^[^@\s]+@[^@\s]+\.[^@\s]+$")
    complaintId: Optional[str] = None
    title: Optional[str] = Field(None, max_length=200)
    description: Optional[str] = Field(None, max_length=5000)
    officerName: Optional[str] = Field(None, max_length=200)
    department: Optional[str] = Field(None, max_length=200)

    @model_validator(mode='after')
    def needs_subject_matter(self):
        if not self.complaintId and not (self.title and self.description):
            raise ValueError("Provide complaintId, or both title and description")
        return self

class EmailDraft(BaseModel):
    subject: str
    body: str
    generated: bool

class NotifyEmailResponse(BaseModel):
    message: str
    recipientEmail: str
    subject: str
    generatedContent: str
    generated: bool

# ---------------------------------------------------------------------------
# App & Globals
# ---------------------------------------------------------------------------
app = FastAPI(title="CiviGuard: Civic Issue Reporting Portal")
limiter = Limiter(key_func=get_remote_address)
app.state.limiter = limiter
app.add_exception_handler(RateLimitExceeded, _rate_limit_exceeded_handler)

# ---------------------------------------------------------------------------
# Security Headers Middleware
# ---------------------------------------------------------------------------
class SecurityHeadersMiddleware(BaseHTTPMiddleware):
    async def dispatch(self, request, call_next):
        response = await call_next(request)
        response.headers["X-Content-Type-Options"] = "nosniff"
        response.headers["X-Frame-Options"] = "DENY"
        response.headers["Referrer-Policy"] = "strict-origin-when-cross-origin"
        response.headers["Permissions-Policy"] = "geolocation=(self), camera=(), microphone=()"
        response.headers["Content-Security-Policy"] = (
            "default-src 'self'; "
            "script-src 'self' 'unsafe-inline' https://unpkg.com; "
            "style-src 'self' 'unsafe-inline' https://unpkg.com; "
            "img-src 'self' data: https:; "
            "connect-src 'self'; "
            "frame-ancestors 'none'"
        )
        return response

app.add_middleware(SecurityHeadersMiddleware)
app.add_middleware(
    CORSMiddleware,
    allow_origins=sorted({PUBLIC_URL, FRONTEND_URL}),
    allow_credentials=True,
    allow_methods=["GET", "POST", "PATCH", "PUT"],
    allow_headers=["Authorization", "Content-Type"],
)
db_client = None
db = None
executor = ThreadPoolExecutor(max_workers=10)

templates = Jinja2Templates(directory=str(BASE_DIR / "templates"))
app.mount("/static", StaticFiles(directory=str(BASE_DIR / "static")), name="static")

# ---------------------------------------------------------------------------
# Startup / Shutdown
# ---------------------------------------------------------------------------
@asynccontextmanager
async def lifespan(app: FastAPI):
    await startup_db()
    logger.info("OpenAI model: %s | timeout: %.1fs", OPENAI_MODEL, AI_TIMEOUT_SECONDS)
    yield
    if db_client:
        db_client.close()

app.router.lifespan_context = lifespan

def ensure_indexes(database) -> None:
    database.complaints.create_index("createdAt")
    database.complaints.create_index("userId")
    database.complaints.create_index("isPublic")
    database.complaints.create_index("status")
    database.complaints.create_index([("location", "2dsphere")])
    database.users.create_index([("googleId", 1)], unique=True)

async def startup_db():
    global db_client, db
    db_client = MongoClient(MONGODB_URL, tz_aware=True)
    db = db_client[MONGODB_DB]
    loop = asyncio.get_event_loop()
    await loop.run_in_executor(executor, ensure_indexes, db)
    logger.info("Database initialized: %s", MONGODB_DB)

# ---------------------------------------------------------------------------
# Error Handling
# ---------------------------------------------------------------------------
@app.exception_handler(Exception)
async def unhandled_exception_handler(request: Request, exc: Exception):
    logger.error("Unhandled error on %s %s: %r", request.method, request.url.path, exc)
    return JSONResponse(status_code=500, content={"detail": "Internal server error"})

# ---------------------------------------------------------------------------
# Dependencies
# ---------------------------------------------------------------------------
async def get_db():
    return db

# ---------------------------------------------------------------------------
# Auth Helpers
# ---------------------------------------------------------------------------
def now_utc() -> datetime:
    return datetime.now(timezone.utc)

def create_access_token(user_id: str) -> str:
    to_encode = {"sub": user_id, "exp": now_utc() + timedelta(days=JWT_EXPIRE_DAYS)}
    return jwt.encode(to_encode, JWT_SECRET, algorithm=JWT_ALGORITHM)

def _credentials_error(detail: str = "Invalid token") -> HTTPException:
    return HTTPException(status_code=401, detail=detail, headers={"WWW-Authenticate": "Bearer"})

def decode_access_token(token: str) -> str:
    try:
        payload = jwt.decode(token, JWT_SECRET, algorithms=[JWT_ALGORITHM])
    except JWTError:
        raise _credentials_error()
    user_id = payload.get("sub")
    if not isinstance(user_id, str):
        raise _credentials_error()
    return user_id

async def get_current_user(token: Optional[str] = Depends(oauth2_scheme), db=Depends(get_db)):
    if token is None:
        raise _credentials_error("Not authenticated")
    user_id = decode_access_token(token)
    loop = asyncio.get_event_loop()
    user = await loop.run_in_executor(executor, db.users.find_one, {"_id": user_id})
    if user is None:
        raise _credentials_error()
    return user

async def get_optional_user(token: Optional[str] = Depends(oauth2_scheme), db=Depends(get_db)):
    if token is None:
        return None
    try:
        user_id = decode_access_token(token)
    except HTTPException:
        return None
    loop = asyncio.get_event_loop()
    return await loop.run_in_executor(executor, db.users.find_one, {"_id": user_id})

async def require_admin(user=Depends(get_current_user)):
    if user.get("role") != UserRole.ADMIN.value:
        raise HTTPException(status_code=403, detail="Insufficient permissions")
    return user

def is_admin(user: Optional[dict]) -> bool:
    return bool(user) and user.get("role") == UserRole.ADMIN.value

def user_to_response(user: dict) -> UserResponse:
    return UserResponse(
        id=str(user["_id"]), email=user["email"], name=user.get("name") or user["email"],
        picture=user.get("picture"), role=user.get("role", UserRole.CITIZEN.value),
        createdAt=user["createdAt"])

# ---------------------------------------------------------------------------
# Google Sign-In
# ---------------------------------------------------------------------------
class OAuthError(Exception):
    pass

class GoogleOAuth:
    @staticmethod
    def create_state() -> str:
        payload = {"purpose": "oauth_state", "nonce": uuid.uuid4().hex,
                   "exp": now_utc() + timedelta(minutes=OAUTH_STATE_EXPIRE_MINUTES)}
        return jwt.encode(payload, JWT_SECRET, algorithm=JWT_ALGORITHM)

    @staticmethod
    def verify_state(state: str) -> bool:
        try:
            payload = jwt.decode(state, JWT_SECRET, algorithms=[JWT_ALGORITHM])
        except JWTError:
            return False
        return payload.get("purpose") == "oauth_state"

    @staticmethod
    def authorization_url(state: str) -> str:
        params = {
            "client_id": GOOGLE_CLIENT_ID, "redirect_uri": GOOGLE_CALLBACK_URL,
            "response_type": "code", "scope": "openid email profile",
            "prompt": "select_account", "state": state,
        }
        return f"{GOOGLE_AUTH_URL}?{urlencode(params)}"

    @staticmethod
    async def fetch_profile(code: str) -> Dict[str, Any]:
        """Exchange an authorization code for the signed-in user's profile."""
        async with httpx.AsyncClient(timeout=OAUTH_TIMEOUT_SECONDS) as client:
            token_resp = await client.post(GOOGLE_TOKEN_URL, data={
                "code": code, "client_id": GOOGLE_CLIENT_ID,
                "client_secret": GOOGLE_CLIENT_SECRET, "redirect_uri": GOOGLE_CALLBACK_URL,
                "grant_type": "authorization_code"})
            token_resp.raise_for_status()
            access_token = token_resp.json().get("access_token")
            if not access_token:
                raise OAuthError("Token response has no access_token")
            info_resp = await client.get(
                GOOGLE_USERINFO_URL, headers={"Authorization": f"Bearer {access_token}"})
            info_resp.raise_for_status()
            info = info_resp.json()
        if not info.get("sub") or not info.get("email"):
            raise OAuthError("Profile is missing sub or email")
        return {"sub": str(info["sub"]), "email": info["email"],
                "name": info.get("name") or info["email"], "picture": info.get("picture")}

async def upsert_oauth_user(db, profile: Dict[str, Any]) -> dict:
    """Find the user for a provider identity, creating it on first login."""
    now = now_utc()
    refresh = {"email": profile["email"], "name": profile["name"],
               "picture": profile.get("picture"), "lastLoginAt": now}

    def upsert():
        user = db.users.find_one({"googleId": profile["sub"]})
        if user is None:
            role = UserRole.ADMIN if profile["email"].lower() in ADMIN_EMAILS else UserRole.CITIZEN
            user = {"_id": str(uuid.uuid4()), "googleId": profile["sub"],
                    "role": role.value, "createdAt": now, **refresh}
            try:
                db.users.insert_one(user)
                logger.info("Created %s user %s", role.value, user["_id"])
                return user
            except DuplicateKeyError:
                # Lost a race with a concurrent first login
                user = db.users.find_one({"googleId": profile["sub"]})
        return db.users.find_one_and_update(
            {"_id": user["_id"]}, {"$set": refresh}, return_document=ReturnDocument.AFTER)

    loop = asyncio.get_event_loop()
    return await loop.run_in_executor(executor, upsert)

# ---------------------------------------------------------------------------
# Text Enhancement Adapter
# ---------------------------------------------------------------------------
def truncate_text(text: str, max_chars: int = 3000) -> str:
    if len(text) <= max_chars:
        return text
    return text[:max_chars] + "..."

async def openai_chat(messages: list, json_mode: bool = False) -> Optional[str]:
    kwargs = {}
    if json_mode:
        kwargs["response_format"] = {"type": "json_object"}
    try:
        resp = await openai_client.chat.completions.create(
            model=OPENAI_MODEL, messages=messages, **kwargs)
        content = resp.choices[0].message.content
        return content.strip() if content else None
    except Exception as e:
        logger.error("OpenAI error: %s", e)
        return None

EMAIL_FALLBACK_TEMPLATE = (
    "Dear {officer},\n\n"
    "A civic complaint has been reported that falls under the {department} department.\n\n"
    "Title: {title}\n"
    "Description: {description}\n"
    "{details}\n"
    "We kindly request you to review this issue and take the necessary action at the earliest. "
    "Please let us know once it has been addressed.\n\n"
    "Best regards,\n"
    "CiviGuard Admin"
)

class TextEnhancer:
    @staticmethod
    async def enhance(text: str, kind: TextKind) -> str:
        if kind == TextKind.TITLE:
            prompt = (
                "Rewrite this civic complaint title so it is clear, specific and professional. "
                f"Keep it under {TITLE_MAX_CHARS} characters. Return only the rewritten title.\n\n"
                f'Title: "{truncate_text(text, 200)}"'
            )
        else:
            prompt = (
                "Rewrite this civic complaint description so it is detailed, factual and professional "
                "while keeping every piece of key information. Do not invent facts. "
                "Return only the rewritten description.\n\n"
                f'Description: "{truncate_text(text)}"'
            )
        result = (await openai_chat([{"role": "user", "content": prompt}]) or "").strip()
        if not result:
            logger.error("Enhancement of %s failed, keeping original text", kind.value)
            return text
        if kind == TextKind.TITLE:
            result = result[:TITLE_MAX_CHARS].strip()
        return result

    @staticmethod
    async def analyze(title: str, description: str) -> ComplaintAnalysis:
        prompt = (
            "Analyze this civic complaint and determine its category and priority level.\n\n"
            f'Title: "{truncate_text(title, 200)}"\nDescription: "{truncate_text(description, 2800)}"\n\n'
            "Return a JSON object with exactly these keys:\n"
            f'- "category": one of [{", ".join(c.value for c in Category)}]\n'
            f'- "priority": one of [{", ".join(p.value for p in Priority)}]\n'
            '- "explanation": one sentence explaining the choice\n\n'
            "Priority guide: critical=immediate danger to life or property, high=blocks traffic or "
            "essential services, medium=standard nuisance, low=cosmetic."
        )
        result = await openai_chat([{"role": "user", "content": prompt}], json_mode=True)
        if result:
            try:
                return ComplaintAnalysis.model_validate_json(result)
            except ValidationError as e:
                logger.error("Complaint analysis parse error: %s", e)
        return ComplaintAnalysis(
            explanation="Unable to analyze the complaint. Please select category and priority manually.")

    @staticmethod
    async def validate(title: str, description: str) -> ComplaintValidation:
        prompt = (
            "Decide whether this is a valid civic complaint: a specific, real issue with public "
            "infrastructure, services or the community, free of spam and inappropriate content.\n\n"
            f'Title: "{truncate_text(title, 200)}"\nDescription: "{truncate_text(description, 2800)}"\n\n'
            'Return a JSON object: {"isValid": true or false, "reason": "brief explanation"}'
        )
        result = await openai_chat([{"role": "user", "content": prompt}], json_mode=True)
        if result:
            try:
                return ComplaintValidation.model_validate_json(result)
            except ValidationError as e:
                logger.error("Complaint validation parse error: %s", e)
        return ComplaintValidation(isValid=True, reason="Unable to validate complaint")

    @staticmethod
    async def geocode(address: str) -> Optional[Location]:
        prompt = (
            f'Given this address: "{truncate_text(address, 500)}", return its coordinates as a JSON '
            'object: {"lat": number, "lng": number}'
        )
        result = await openai_chat([{"role": "user", "content": prompt}], json_mode=True)
        if not result:
            return None
        try:
            return Location.model_validate_json(result)
        except ValidationError as e:
            logger.error("Geocode parse error: %s", e)
            return None

    @staticmethod
    async def draft_notification_email(title: str, description: str, officer_name: Optional[str],
                                       department: Optional[str],
                                       details: Optional[Dict[str, Any]] = None) -> EmailDraft:
        officer = officer_name or "Sir/Madam"
        dept = department or "concerned"
        details = details or {}
        detail_lines = ""
        if details.get("category"):
            detail_lines += f"Category: {details['category']}\n"
        if details.get("priority"):
            detail_lines += f"Priority: {details['priority']}\n"
        if details.get("location"):
            detail_lines += f"Location: {details['location']['lat']}, {details['location']['lng']}\n"
        if details.get("address"):
            detail_lines += f"Address: {details['address']}\n"
        subject = f"Complaint Report: {title}"
        prompt = (
            "Draft a formal, professional email to a municipal officer about a citizen complaint. "
            "Request that the recipient takes the necessary action. Return only the email body, "
            "starting with the salutation and ending with the sign-off 'CiviGuard Admin'.\n\n"
            f"Recipient: {officer} ({dept} department)\n"
            f'Complaint title: "{truncate_text(title, 200)}"\n'
            f'Complaint description: "{truncate_text(description, 2000)}"\n'
            f"{detail_lines}"
        )
        body = await openai_chat([{"role": "user", "content": prompt}])
        if body:
            return EmailDraft(subject=subject, body=body, generated=True)
        logger.error("Email drafting failed, using letter template")
        body = EMAIL_FALLBACK_TEMPLATE.format(
            officer=officer, department=dept, title=title, description=description,
            details=detail_lines)
        return EmailDraft(subject=subject, body=body, generated=False)

# ---------------------------------------------------------------------------
# Utility Helpers
# ---------------------------------------------------------------------------
def location_to_geojson(location: Location) -> dict:
    return {"type": "Point", "coordinates": [location.lng, location.lat]}

def location_from_geojson(point: Optional[dict]) -> Optional[dict]:
    coords = (point or {}).get("coordinates") or []
    if len(coords) != 2:
        return None
    return {"lat": coords[1], "lng": coords[0]}

def parse_bbox(raw: Optional[str]) -> Optional[Tuple[float, float, float, float]]:
    """Parse ``west,south,east,north`` into a tuple of floats."""
    if raw is None:
        return None
    try:
        west, south, east, north = (float(part) for part in raw.split(","))
    except ValueError:
        raise HTTPException(status_code=400, detail="bbox must be west,south,east,north")
    if west > east or south > north:
        raise HTTPException(status_code=400, detail="bbox edges are inverted")
    return west, south, east, north

def within_bbox(point: Optional[dict], bbox: Tuple[float, float, float, float]) -> bool:
    location = location_from_geojson(point)
    if location is None:
        return False
    west, south, east, north = bbox
    return west <= location["lng"] <= east and south <= location["lat"] <= north

_UUID_RE = re.compile(r"^[0-9a-fA-F]{8}-[0-9a-fA-F]{4}-[0-9a-fA-F]{4}-[0-9a-fA-F]{4}-[0-9a-fA-F]{12}$")

def complaint_id_or_404(value: str) -> str:
    if not _UUID_RE.match(value):
        raise HTTPException(status_code=404, detail="Complaint not found")
    return value

def complaint_to_response(doc: dict) -> ComplaintResponse:
    user = doc.get("user")
    return ComplaintResponse(
        id=doc["_id"], title=doc["title"], description=doc["description"],
        enhancedTitle=doc.get("enhancedTitle"), enhancedDescription=doc.get("enhancedDescription"),
        category=doc["category"], priority=doc.get("priority", Priority.MEDIUM.value),
        status=doc.get("status", ComplaintStatus.PENDING.value),
        location=location_from_geojson(doc.get("location")), address=doc.get("address"),
        userId=doc["userId"], images=doc.get("images") or [], comments=doc.get("comments") or [],
        isPublic=doc.get("isPublic", False), createdAt=doc["createdAt"], updatedAt=doc["updatedAt"],
        user=UserSummary(**user) if user else None)

def can_view(doc: dict, user: Optional[dict]) -> bool:
    if doc.get("isPublic"):
        return True
    return bool(user) and (is_admin(user) or doc.get("userId") == user["_id"])

def ensure_owner_or_admin(doc: dict, user: dict) -> None:
    if not is_admin(user) and doc.get("userId") != user["_id"]:
        raise HTTPException(status_code=403, detail="Only the owner or an admin may change this complaint")

def load_officers(path: Path) -> List[Dict[str, str]]:
    with open(path, newline="", encoding="utf-8") as fh:
        rows = list(csv.DictReader(fh))
    officers = []
    for row in rows:
        email = (row.get("Email") or "").strip()
        if not email:
            continue
        officers.append({"department": (row.get("Department") or "").strip(),
                         "officerName": (row.get("Officer Name") or "").strip(),
                         "email": email})
    return officers

# ---------------------------------------------------------------------------
# Core Complaint Processing
# ---------------------------------------------------------------------------
async def submit_complaint(data: ComplaintCreate, db, user: dict) -> ComplaintResponse:
    enhanced_title, enhanced_description = data.enhancedTitle, data.enhancedDescription
    if not enhanced_title or not enhanced_description:
        enhanced_title, enhanced_description = await asyncio.gather(
            TextEnhancer.enhance(data.title, TextKind.TITLE),
            TextEnhancer.enhance(data.description, TextKind.DESCRIPTION))
    now = now_utc()
    doc = {
        "_id": str(uuid.uuid4()),
        "title": data.title, "description": data.description,
        "enhancedTitle": enhanced_title, "enhancedDescription": enhanced_description,
        "category": data.category.value, "priority": data.priority.value,
        "status": ComplaintStatus.PENDING.value,
        "location": location_to_geojson(data.location), "address": data.address,
        "userId": user["_id"], "images": data.images, "comments": [],
        "isPublic": data.isPublic, "createdAt": now, "updatedAt": now,
    }
    loop = asyncio.get_event_loop()
    await loop.run_in_executor(executor, db.complaints.insert_one, doc)
    logger.info("Complaint %s created by %s", doc["_id"], user["_id"])
    return complaint_to_response(doc)

async def list_complaints(db, scope: ListScope, user: Optional[dict] = None,
                          filters: Optional[Dict[str, Any]] = None,
                          bbox: Optional[Tuple[float, float, float, float]] = None) -> List[dict]:
    query = dict(filters or {})
    if scope == ListScope.MINE:
        query["userId"] = user["_id"]
    elif scope == ListScope.PUBLIC:
        query["isPublic"] = True

    def fetch():
        cursor = db.complaints.find(query).sort("createdAt", -1)
        if bbox is None:
            docs = list(cursor.limit(PAGE_SIZE))
        else:
            # bbox is matched in Python, so only the newest BBOX_SCAN_LIMIT rows are examined
            docs = []
            for doc in cursor.limit(BBOX_SCAN_LIMIT):
                if within_bbox(doc.get("location"), bbox):
                    docs.append(doc)
                    if len(docs) >= PAGE_SIZE:
                        break
        if scope != ListScope.MINE and docs:
            owner_ids = list({d["userId"] for d in docs})
            owners = {u["_id"]: u for u in db.users.find(
                {"_id": {"$in": owner_ids}}, {"name": 1, "email": 1})}
            for d in docs:
                owner = owners.get(d["userId"])
                if owner:
                    d["user"] = {"id": owner["_id"], "name": owner.get("name"),
                                 "email": owner.get("email")}
        return docs

    loop = asyncio.get_event_loop()
    return await loop.run_in_executor(executor, fetch)

async def find_complaint(db, complaint_id: str) -> dict:
    complaint_id = complaint_id_or_404(complaint_id)
    loop = asyncio.get_event_loop()
    doc = await loop.run_in_executor(executor, db.complaints.find_one, {"_id": complaint_id})
    if not doc:
        raise HTTPException(status_code=404, detail="Complaint not found")
    return doc

# ---------------------------------------------------------------------------
# AUTH ENDPOINTS
# ---------------------------------------------------------------------------
@app.get("/auth/google")
@limiter.limit("10/minute")
async def google_login(request: Request):
    return RedirectResponse(GoogleOAuth.authorization_url(GoogleOAuth.create_state()), status_code=302)

@app.get("/auth/google/callback")
async def google_callback(code: Optional[str] = None, state: Optional[str] = None,
                          error: Optional[str] = None, db=Depends(get_db)):
    failure = RedirectResponse(f"{FRONTEND_URL}/login?error=auth_failed", status_code=302)
    if error or not code or not state or not GoogleOAuth.verify_state(state):
        logger.warning("Rejected OAuth callback (provider error: %s)", error)
        return failure
    try:
        profile = await GoogleOAuth.fetch_profile(code)
        user = await upsert_oauth_user(db, profile)
    except (httpx.HTTPError, OAuthError, ValueError, PyMongoError) as e:
        logger.error("Google sign-in failed: %s", e)
        return failure
    token = create_access_token(user["_id"])
    return RedirectResponse(f"{FRONTEND_URL}/auth/callback?{urlencode({'token': token})}", status_code=302)

@app.get("/auth/me", response_model=UserResponse)
async def get_me(user=Depends(get_current_user)):
    return user_to_response(user)

# ---------------------------------------------------------------------------
# COMPLAINT ENDPOINTS
# ---------------------------------------------------------------------------
@app.post("/complaints", response_model=ComplaintResponse, status_code=201)
async def create_complaint(data: ComplaintCreate, user=Depends(get_current_user), db=Depends(get_db)):
    return await submit_complaint(data, db, user)

@app.get("/complaints", response_model=List[ComplaintResponse])
async def get_complaints(
    status: Optional[ComplaintStatus] = None, category: Optional[Category] = None,
    priority: Optional[Priority] = None, bbox: Optional[str] = Query(None, max_length=100),
    user=Depends(get_current_user), db=Depends(get_db)):
    fq = {}
    if status: fq["status"] = status.value
    if category: fq["category"] = category.value
    if priority: fq["priority"] = priority.value
    docs = await list_complaints(db, ListScope.ALL, user, fq, parse_bbox(bbox))
    return [complaint_to_response(d) for d in docs]

@app.get("/complaints/my-reports", response_model=List[ComplaintResponse])
async def get_my_complaints(user=Depends(get_current_user), db=Depends(get_db)):
    docs = await list_complaints(db, ListScope.MINE, user)
    return [complaint_to_response(d) for d in docs]

@app.get("/complaints/public", response_model=List[ComplaintResponse])
async def get_public_complaints(bbox: Optional[str] = Query(None, max_length=100), db=Depends(get_db)):
    docs = await list_complaints(db, ListScope.PUBLIC, bbox=parse_bbox(bbox))
    return [complaint_to_response(d) for d in docs]

@app.post("/complaints/analyze", response_model=AnalyzeResponse)
@limiter.limit("20/minute")
async def analyze_complaint(request: Request, data: TextPair, user=Depends(get_current_user)):
    analysis, validation = await asyncio.gather(
        TextEnhancer.analyze(data.title, data.description),
        TextEnhancer.validate(data.title, data.description))
    return AnalyzeResponse(**analysis.model_dump(), **validation.model_dump())

@app.post("/complaints/enhance", response_model=EnhanceResponse)
@limiter.limit("10/minute")
async def enhance_complaint_text(request: Request, data: TextPair, user=Depends(get_current_user)):
    title, description = await asyncio.gather(
        TextEnhancer.enhance(data.title, TextKind.TITLE),
        TextEnhancer.enhance(data.description, TextKind.DESCRIPTION))
    return EnhanceResponse(enhancedTitle=title, enhancedDescription=description)

@app.post("/complaints/geocode", response_model=GeocodeResponse)
@limiter.limit("10/minute")
async def geocode_address(request: Request, data: GeocodeRequest, user=Depends(get_current_user)):
    location = await TextEnhancer.geocode(data.address)
    if location is None:
        return GeocodeResponse(location=Location(lat=DEFAULT_LAT, lng=DEFAULT_LNG), resolved=False)
    return GeocodeResponse(location=location, resolved=True)

@app.get("/complaints/{complaint_id}", response_model=ComplaintResponse)
async def get_complaint(complaint_id: str, user=Depends(get_optional_user), db=Depends(get_db)):
    doc = await find_complaint(db, complaint_id)
    if not can_view(doc, user):
        if user is None:
            raise _credentials_error("Not authenticated")
        raise HTTPException(status_code=403, detail="Access denied")
    return complaint_to_response(doc)

@app.patch("/complaints/{complaint_id}", response_model=ComplaintResponse)
async def update_complaint(complaint_id: str, update: ComplaintUpdate,
                           user=Depends(get_current_user), db=Depends(get_db)):
    set_fields = update.model_dump(exclude_none=True, mode="json")
    if not set_fields:
        raise HTTPException(status_code=400, detail="No fields to update")
    doc = await find_complaint(db, complaint_id)
    ensure_owner_or_admin(doc, user)
    set_fields["updatedAt"] = now_utc()
    loop = asyncio.get_event_loop()
    updated = await loop.run_in_executor(executor, lambda: db.complaints.find_one_and_update(
        {"_id": doc["_id"]}, {"$set": set_fields}, return_document=ReturnDocument.AFTER))
    if updated is None:
        raise HTTPException(status_code=404, detail="Complaint not found")
    if "status" in set_fields:
        logger.info("Complaint %s status -> %s by %s", doc["_id"], set_fields["status"], user["_id"])
    return complaint_to_response(updated)

@app.post("/complaints/{complaint_id}/comments", response_model=ComplaintResponse)
async def add_comment(complaint_id: str, comment: CommentCreate,
                      user=Depends(get_current_user), db=Depends(get_db)):
    doc = await find_complaint(db, complaint_id)
    if not can_view(doc, user):
        raise HTTPException(status_code=403, detail="Access denied")
    now = now_utc()
    new_comment = {"id": str(uuid.uuid4()), "userId": user["_id"], "text": comment.text, "createdAt": now}
    loop = asyncio.get_event_loop()
    updated = await loop.run_in_executor(executor, lambda: db.complaints.find_one_and_update(
        {"_id": doc["_id"]}, {"$push": {"comments": new_comment}, "$set": {"updatedAt": now}},
        return_document=ReturnDocument.AFTER))
    if updated is None:
        raise HTTPException(status_code=404, detail="Complaint not found")
    return complaint_to_response(updated)

# ---------------------------------------------------------------------------
# ADMIN ENDPOINTS
# ---------------------------------------------------------------------------
@app.get("/admin/officers", response_model=List[Officer])
async def list_officers(user=Depends(require_admin)):
    loop = asyncio.get_event_loop()
    try:
        return await loop.run_in_executor(executor, load_officers, OFFICERS_CSV)
    except (OSError, csv.Error, UnicodeDecodeError) as e:
        logger.error("Error reading officers data from %s: %s", OFFICERS_CSV, e)
        raise HTTPException(status_code=500, detail="Failed to load officers data")

@app.post("/admin/notify-email", response_model=NotifyEmailResponse)
async def draft_notify_email(req: NotifyEmailRequest, user=Depends(require_admin), db=Depends(get_db)):
    title, description, details = req.title, req.description, {}
    if req.complaintId:
        doc = await find_complaint(db, req.complaintId)
        title = doc.get("enhancedTitle") or doc["title"]
        description = doc.get("enhancedDescription") or doc["description"]
        details = {"category": doc.get("category"), "priority": doc.get("priority"),
                   "location": location_from_geojson(doc.get("location")),
                   "address": doc.get("address")}
    draft = await TextEnhancer.draft_notification_email(
        title, description, req.officerName, req.department, details)
    return NotifyEmailResponse(
        message="Email content generated and ready to be sent", recipientEmail=req.recipientEmail,
        subject=draft.subject, generatedContent=draft.body, generated=draft.generated)

@app.get("/admin/users", response_model=List[UserResponse])
async def admin_list_users(role: Optional[UserRole] = None,
                           user=Depends(require_admin), db=Depends(get_db)):
    query = {"role": role.value} if role else {}
    loop = asyncio.get_event_loop()
    users = await loop.run_in_executor(executor, lambda: list(db.users.find(query).sort("createdAt", -1)))
    return [user_to_response(u) for u in users]

@app.put("/admin/users/{user_id}/role", response_model=UserResponse)
async def admin_update_role(user_id: str, update: RoleUpdate,
                            user=Depends(require_admin), db=Depends(get_db)):
    if user["_id"] == user_id and update.role != UserRole.ADMIN:
        raise HTTPException(status_code=400, detail="Cannot remove your own admin role")
    loop = asyncio.get_event_loop()
    updated = await loop.run_in_executor(executor, lambda: db.users.find_one_and_update(
        {"_id": user_id}, {"$set": {"role": update.role.value}}, return_document=ReturnDocument.AFTER))
    if updated is None:
        raise HTTPException(status_code=404, detail="User not found")
    logger.info("Admin %s set role of %s to %s", user["_id"], user_id, update.role.value)
    return user_to_response(updated)

# ---------------------------------------------------------------------------
# HEALTH
# ---------------------------------------------------------------------------
@app.get("/health")
async def health():
    return {"status": "healthy", "system": "CiviGuard", "timestamp": now_utc()}

# ---------------------------------------------------------------------------
# PAGE ROUTES (serve Jinja2 templates)
# ---------------------------------------------------------------------------
PAGES = [
    ("", "home.html"), ("login", "login.html"), ("auth/callback", "auth_callback.html"),
    ("map", "map.html"), ("report", "report.html"), ("my-reports", "my_reports.html"),
    ("admin", "admin.html"),
]

for _path, _template in PAGES:
    def _make_handler(tmpl: str):
        async def handler(request: Request):
            response = templates.TemplateResponse(request, tmpl, {
                "default_lat": DEFAULT_LAT, "default_lng": DEFAULT_LNG,
                "categories": [c.value for c in Category],
                "priorities": [p.value for p in Priority],
                "statuses": [s.value for s in ComplaintStatus],
            })
            response.headers["Cache-Control"] = "no-cache, no-store"
            return response
        return handler
    app.add_api_route(f"/{_path}" if _path else "/", _make_handler(_template),
                      methods=["GET"], response_class=HTMLResponse, include_in_schema=False)

if __name__ == "__main__":
    uvicorn.run(app, host="0.0.0.0", port=PORT)
