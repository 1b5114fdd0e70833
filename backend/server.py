from fastapi import FastAPI, APIRouter, HTTPException, Depends, Request, Query, UploadFile, File
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse, FileResponse
from dotenv import load_dotenv
from starlette.exceptions import HTTPException as StarletteHTTPException
from starlette.concurrency import run_in_threadpool
from starlette.middleware.cors import CORSMiddleware
from motor.motor_asyncio import AsyncIOMotorClient
from pymongo import ReturnDocument
from pymongo.errors import DuplicateKeyError
from pydantic import BaseModel, Field, EmailStr
from typing import List, Optional, Literal, Dict, Any
from pathlib import Path as SysPath
from jose import jwt, JWTError
from datetime import datetime, timedelta, timezone
import os
import logging
import uuid
import hashlib
import secrets
import re
from collections import defaultdict, deque
from time import time
from functools import wraps
import base64
import hmac

# -----------------------------------------------------------------------------
# ENV & DB
# -----------------------------------------------------------------------------
ROOT_DIR = SysPath(__file__).parent
load_dotenv(ROOT_DIR / ".env")

mongo_url = os.environ.get("MONGO_URL", "mongodb://localhost:27017")
client = AsyncIOMotorClient(mongo_url)
db = client[os.environ.get("DB_NAME", "skillswap")]

DEFAULT_JWT_SECRET = "dev-secret-change-me"
JWT_SECRET = os.environ.get("JWT_SECRET", DEFAULT_JWT_SECRET)
JWT_EXPIRES_HOURS = int(os.environ.get("JWT_EXPIRES_HOURS", "24"))

UPLOAD_DIR = SysPath(os.environ.get("UPLOAD_DIR", str(ROOT_DIR / "uploads")))
MAX_BODY_BYTES = int(os.environ.get("MAX_BODY_BYTES", str(5 * 1024 * 1024)))

ADMIN_EMAIL = os.environ.get("ADMIN_EMAIL")
ADMIN_PASSWORD = os.environ.get("ADMIN_PASSWORD")

# Policies left open by the original product; defaults keep its behaviour.
SWAP_STATUS_POLICY = os.environ.get("SWAP_STATUS_POLICY", "participants").lower()
DELETE_REQUIRES_PENDING = os.environ.get("DELETE_REQUIRES_PENDING", "false").lower() == "true"
RATING_REQUIRES_ACCEPTED_SWAP = os.environ.get("RATING_REQUIRES_ACCEPTED_SWAP", "false").lower() == "true"
REJECT_SELF_TARGETING = os.environ.get("REJECT_SELF_TARGETING", "false").lower() == "true"
ENFORCE_BAN = os.environ.get("ENFORCE_BAN", "false").lower() == "true"
CLAIMS_FROM_STORE = os.environ.get("CLAIMS_FROM_STORE", "false").lower() == "true"

# PROD flag
IS_PROD = os.environ.get("ENV", "dev").lower() == "prod"

# -----------------------------------------------------------------------------
# APP
# -----------------------------------------------------------------------------
app = FastAPI(title="SkillSwap Exchange API", version="0.2.0")
api = APIRouter(prefix="/api")

logging.basicConfig(level=logging.INFO, format="%(asctime)s - %(name)s - %(levelname)s - %(message)s")
logger = logging.getLogger("skillswap")

# -----------------------------------------------------------------------------
# TINY IN-MEMORY RATE LIMITER (IP + route)
# -----------------------------------------------------------------------------
_RL_STORE: Dict[str, deque] = defaultdict(deque)

def rate_limit(max_calls: int, per_seconds: int, key_func=None):
    def deco(handler):
        @wraps(handler)
        async def wrapper(*args, **kwargs):
            request: Optional[Request] = kwargs.get("request")
            if request is None:
                for a in args:
                    if isinstance(a, Request):
                        request = a
                        break
            if request is None:
                return await handler(*args, **kwargs)

            now = time()
            ip = request.client.host if request.client else "unknown"
            k = key_func(request) if key_func else f"{ip}:{request.url.path}"
            dq = _RL_STORE[k]
            while dq and now - dq[0] > per_seconds:
                dq.popleft()
            if len(dq) >= max_calls:
                raise HTTPException(status_code=429, detail="rate_limited")
            dq.append(now)
            return await handler(*args, **kwargs)
        return wrapper
    return deco

# -----------------------------------------------------------------------------
# SECURITY HEADERS MIDDLEWARE
# -----------------------------------------------------------------------------
@app.middleware("http")
async def security_headers(request: Request, call_next):
    cl = request.headers.get("content-length")
    if cl and cl.isdigit() and int(cl) > MAX_BODY_BYTES:
        return JSONResponse(status_code=413, content={"error": "payload_too_large"})

    resp = await call_next(request)

    resp.headers["X-Frame-Options"] = "DENY"
    resp.headers["X-Content-Type-Options"] = "nosniff"
    resp.headers["Referrer-Policy"] = "strict-origin-when-cross-origin"
    resp.headers["Permissions-Policy"] = "geolocation=(), camera=(), microphone=()"
    if IS_PROD:
        resp.headers["Strict-Transport-Security"] = "max-age=15552000; includeSubDomains; preload"
    return resp

# -----------------------------------------------------------------------------
# ERROR HANDLERS ({"error": ...} everywhere)
# -----------------------------------------------------------------------------
@app.exception_handler(StarletteHTTPException)
async def http_error_handler(request: Request, exc: StarletteHTTPException):
    return JSONResponse(status_code=exc.status_code, content={"error": exc.detail}, headers=getattr(exc, "headers", None))

@app.exception_handler(RequestValidationError)
async def validation_error_handler(request: Request, exc: RequestValidationError):
    fields = [{"loc": list(e.get("loc", ())), "msg": e.get("msg")} for e in exc.errors()]
    return JSONResponse(status_code=422, content={"error": "invalid_input", "fields": fields})

@app.exception_handler(Exception)
async def server_error_handler(request: Request, exc: Exception):
    logger.exception("Unhandled error on %s %s", request.method, request.url.path)
    return JSONResponse(status_code=500, content={"error": "server_error"})

# -----------------------------------------------------------------------------
# MODELS
# -----------------------------------------------------------------------------
class AuthRegister(BaseModel):
    email: EmailStr
    password: str = Field(min_length=8, max_length=128)
    name: str = Field(min_length=1, max_length=80)
    location: Optional[str] = Field(None, max_length=120)

class AuthLogin(BaseModel):
    email: str = Field(max_length=254)
    password: str = Field(max_length=128)

class ProfileUpdate(BaseModel):
    name: Optional[str] = Field(None, min_length=1, max_length=80)
    location: Optional[str] = Field(None, max_length=120)
    skillsOffered: Optional[List[str]] = None
    skillsWanted: Optional[List[str]] = None
    availability: Optional[List[str]] = None
    isPublic: Optional[bool] = None

class SwapRequestCreate(BaseModel):
    targetUserId: str
    offeredSkill: str = Field(min_length=1, max_length=100)
    requestedSkill: str = Field(min_length=1, max_length=100)
    message: Optional[str] = Field(None, max_length=500)

class SwapRequestUpdate(BaseModel):
    status: Literal["pending", "accepted", "rejected"]

class RatingCreate(BaseModel):
    targetUserId: str
    rating: int = Field(ge=1, le=5)
    feedback: Optional[str] = Field(None, max_length=500)
    swapRequestId: Optional[str] = None

class BanUpdate(BaseModel):
    banned: bool

class AdminMessageCreate(BaseModel):
    title: str = Field(min_length=1, max_length=120)
    message: str = Field(min_length=1, max_length=2000)

# -----------------------------------------------------------------------------
# INDEXES
# -----------------------------------------------------------------------------
async def ensure_indexes():
    await db.users.create_index("email", unique=True, name="email_unique_idx")
    await db.users.create_index([("isPublic", 1), ("createdAt", 1)], name="users_public_idx")

    await db.swap_requests.create_index([("fromUserId", 1), ("createdAt", -1)], name="swap_from_idx")
    await db.swap_requests.create_index([("toUserId", 1), ("createdAt", -1)], name="swap_to_idx")
    await db.swap_requests.create_index("status", name="swap_status_idx")

    await db.ratings.create_index([("toUserId", 1), ("createdAt", -1)], name="ratings_target_idx")

    await db.admin_messages.create_index("createdAt", name="admin_messages_ts_idx")

# -----------------------------------------------------------------------------
# UTILS (time, serialization)
# -----------------------------------------------------------------------------
def _now_utc() -> datetime:
    return datetime.now(timezone.utc)

def to_aware_utc(dt: datetime) -> datetime:
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)

def _iso(dt: Optional[datetime]) -> Optional[str]:
    return to_aware_utc(dt).isoformat() if dt else None

def norm_list(xs: Optional[List[str]], cap: int = 20) -> List[str]:
    cleaned = [x.strip() for x in xs or [] if x and x.strip()]
    return list(dict.fromkeys(cleaned))[:cap]

def skill_matches(skills: List[str], needle: str) -> bool:
    return any(needle in s.casefold() for s in skills or [])

# -----------------------------------------------------------------------------
# AUTH HELPERS (JWT + PASSWORD)
# -----------------------------------------------------------------------------
PWD_MIN_LEN = 8

def mask_email(e: str) -> str:
    try:
        name, dom = e.split("@")
        return name[0] + "***@" + dom
    except Exception:
        return e

def create_token(user: dict, exp_hours: Optional[int] = None) -> str:
    if exp_hours is None:
        exp_hours = JWT_EXPIRES_HOURS
    now = _now_utc()
    payload = {
        "sub": user["_id"],
        "userId": user["_id"],
        "email": user.get("email"),
        "isAdmin": bool(user.get("isAdmin", False)),
        "typ": "access",
        "iat": int(now.timestamp()),
        "exp": int((now + timedelta(hours=exp_hours)).timestamp()),
        "jti": secrets.token_hex(12),
    }
    return jwt.encode(payload, JWT_SECRET, algorithm="HS256")

def decode_token(token: str) -> dict:
    try:
        return jwt.decode(token, JWT_SECRET, algorithms=["HS256"])
    except JWTError as e:
        raise HTTPException(status_code=401, detail="invalid_token") from e

# ---- Password hashing with stdlib scrypt ----
def hash_password(password: str) -> Dict[str, str]:
    if not isinstance(password, str) or len(password) < PWD_MIN_LEN:
        raise HTTPException(status_code=400, detail="password_too_short")
    salt = os.urandom(16)
    dk = hashlib.scrypt(password.encode("utf-8"), salt=salt, n=16384, r=8, p=1)
    return {
        "passwordAlgo": "scrypt",
        "passwordSalt": base64.b64encode(salt).decode("ascii"),
        "passwordHash": base64.b64encode(dk).decode("ascii"),
    }

def verify_password(password: str, salt_b64: str, hash_b64: str) -> bool:
    try:
        salt = base64.b64decode(salt_b64.encode("ascii"))
        expected = base64.b64decode(hash_b64.encode("ascii"))
        dk = hashlib.scrypt(password.encode("utf-8"), salt=salt, n=16384, r=8, p=1)
        return hmac.compare_digest(dk, expected)
    except Exception:
        return False

def new_user_doc(email: str, name: str, location: Optional[str], creds: Dict[str, str], is_admin: bool = False) -> dict:
    now = _now_utc()
    return {
        "_id": str(uuid.uuid4()),
        "email": email,
        "name": name,
        "location": location or "",
        "profilePhoto": None,
        "skillsOffered": [],
        "skillsWanted": [],
        "availability": [],
        "isPublic": True,
        "isAdmin": is_admin,
        "banned": False,
        "rating": 0.0,
        "ratingSum": 0,
        "totalRatings": 0,
        "createdAt": now,
        "updatedAt": now,
        **creds,
    }

async def bootstrap_admin(email: str, password: str, name: str = "Admin") -> dict:
    """Create the admin account, or promote the existing user with that email."""
    email = email.lower().strip()
    existing = await db.users.find_one({"email": email})
    if existing:
        await db.users.update_one({"_id": existing["_id"]}, {"$set": {"isAdmin": True, "updatedAt": _now_utc()}})
        logger.info("[ADMIN] Promoted %s", mask_email(email))
        return await db.users.find_one({"_id": existing["_id"]})
    doc = new_user_doc(email, name, None, hash_password(password), is_admin=True)
    await db.users.insert_one(doc)
    logger.info("[ADMIN] Created %s", mask_email(email))
    return doc

# -----------------------------------------------------------------------------
# AUTH DEPENDENCY
# -----------------------------------------------------------------------------
class Claims:
    def __init__(self, user_id: str, email: Optional[str], is_admin: bool):
        self.id = user_id
        self.email = email
        self.isAdmin = is_admin

async def auth_user(request: Request) -> Claims:
    auth = request.headers.get("Authorization", "")
    if not auth.startswith("Bearer "):
        raise HTTPException(status_code=401, detail="missing_bearer")
    payload = decode_token(auth.split(" ", 1)[1].strip())
    if payload.get("typ") != "access":
        raise HTTPException(status_code=401, detail="invalid_token_type")
    uid = payload.get("userId") or payload.get("sub")
    if not uid:
        raise HTTPException(status_code=401, detail="invalid_sub")

    claims = Claims(uid, payload.get("email"), bool(payload.get("isAdmin", False)))
    if ENFORCE_BAN or CLAIMS_FROM_STORE:
        u = await db.users.find_one({"_id": uid}, {"isAdmin": 1, "banned": 1})
        if not u:
            raise HTTPException(status_code=401, detail="user_not_found")
        if ENFORCE_BAN and u.get("banned"):
            raise HTTPException(status_code=403, detail="user_banned")
        if CLAIMS_FROM_STORE:
            claims.isAdmin = bool(u.get("isAdmin", False))
    return claims

async def require_admin(user: Claims = Depends(auth_user)) -> Claims:
    if not user.isAdmin:
        raise HTTPException(status_code=403, detail="admin_required")
    return user

# -----------------------------------------------------------------------------
# SERIALIZERS
# -----------------------------------------------------------------------------
def to_user(u: dict) -> dict:
    if not u:
        return {}
    return {
        "id": u["_id"],
        "email": u.get("email"),
        "name": u.get("name"),
        "location": u.get("location", ""),
        "profilePhoto": u.get("profilePhoto"),
        "skillsOffered": u.get("skillsOffered", []),
        "skillsWanted": u.get("skillsWanted", []),
        "availability": u.get("availability", []),
        "isPublic": bool(u.get("isPublic", True)),
        "isAdmin": bool(u.get("isAdmin", False)),
        "banned": bool(u.get("banned", False)),
        "rating": float(u.get("rating", 0.0)),
        "totalRatings": int(u.get("totalRatings", 0)),
        "createdAt": _iso(u.get("createdAt")),
        "updatedAt": _iso(u.get("updatedAt")),
    }

def to_user_summary(u: Optional[dict], with_email: bool = False) -> Optional[dict]:
    if not u:
        return None
    out = {"id": u["_id"], "name": u.get("name")}
    if with_email:
        out["email"] = u.get("email")
    else:
        out["profilePhoto"] = u.get("profilePhoto")
    return out

def to_swap_request(doc: dict) -> dict:
    return {
        "id": doc["_id"],
        "fromUserId": doc["fromUserId"],
        "toUserId": doc["toUserId"],
        "offeredSkill": doc.get("offeredSkill"),
        "requestedSkill": doc.get("requestedSkill"),
        "message": doc.get("message"),
        "status": doc.get("status"),
        "createdAt": _iso(doc.get("createdAt")),
        "updatedAt": _iso(doc.get("updatedAt")),
    }

def to_rating(doc: dict) -> dict:
    return {
        "id": doc["_id"],
        "fromUserId": doc["fromUserId"],
        "toUserId": doc["toUserId"],
        "rating": int(doc["rating"]),
        "feedback": doc.get("feedback"),
        "swapRequestId": doc.get("swapRequestId"),
        "createdAt": _iso(doc.get("createdAt")),
    }

def to_admin_message(doc: dict) -> dict:
    return {
        "id": doc["_id"],
        "title": doc.get("title"),
        "message": doc.get("message"),
        "fromAdmin": doc.get("fromAdmin"),
        "createdAt": _iso(doc.get("createdAt")),
    }

async def users_by_id(ids) -> Dict[str, dict]:
    ids = list({i for i in ids if i})
    if not ids:
        return {}
    docs = await db.users.find({"_id": {"$in": ids}}, {"name": 1, "email": 1, "profilePhoto": 1}).to_list(length=None)
    return {d["_id"]: d for d in docs}

async def enrich_swap_requests(docs: List[dict], with_email: bool = False) -> List[dict]:
    people = await users_by_id([d["fromUserId"] for d in docs] + [d["toUserId"] for d in docs])
    out = []
    for d in docs:
        item = to_swap_request(d)
        item["fromUser"] = to_user_summary(people.get(d["fromUserId"]), with_email=with_email)
        item["toUser"] = to_user_summary(people.get(d["toUserId"]), with_email=with_email)
        out.append(item)
    return out

# -----------------------------------------------------------------------------
# ROUTES: HEALTH & AUTH
# -----------------------------------------------------------------------------
@api.get("/")
async def root_ping():
    return {"ok": True, "ts": _now_utc().isoformat()}

@api.get("/healthz")
async def health():
    return {"status": "ok", "time": _now_utc().isoformat()}

@api.post("/register", status_code=201)
@rate_limit(10, 300)
async def register(payload: AuthRegister, request: Request):
    email = payload.email.lower().strip()
    existing = await db.users.find_one({"email": email}, {"_id": 1})
    if existing:
        raise HTTPException(status_code=400, detail="email_exists")

    user = new_user_doc(email, payload.name.strip(), payload.location, hash_password(payload.password))
    try:
        await db.users.insert_one(user)
    except DuplicateKeyError:
        raise HTTPException(status_code=400, detail="email_exists")

    logger.info("[AUTH] Registered %s", mask_email(email))
    return {"token": create_token(user), "user": to_user(user)}

@api.post("/login")
@rate_limit(30, 300)
async def login(payload: AuthLogin, request: Request):
    email = payload.email.lower().strip()
    user = await db.users.find_one({"email": email})
    if not user or not user.get("passwordHash") or not user.get("passwordSalt"):
        raise HTTPException(status_code=401, detail="invalid_credentials")
    if not verify_password(payload.password, user["passwordSalt"], user["passwordHash"]):
        raise HTTPException(status_code=401, detail="invalid_credentials")
    if ENFORCE_BAN and user.get("banned"):
        raise HTTPException(status_code=403, detail="user_banned")

    logger.info("[AUTH] Login %s", mask_email(email))
    return {"token": create_token(user), "user": to_user(user)}

# -----------------------------------------------------------------------------
# ROUTES: PROFILE
# -----------------------------------------------------------------------------
@api.get("/profile")
async def get_profile(user: Claims = Depends(auth_user)):
    u = await db.users.find_one({"_id": user.id})
    if not u:
        raise HTTPException(status_code=404, detail="user_not_found")
    return to_user(u)

@api.put("/profile")
async def update_profile(payload: ProfileUpdate, user: Claims = Depends(auth_user)):
    upd = payload.model_dump(exclude_none=True)

    if "name" in upd:
        upd["name"] = upd["name"].strip()
    if "location" in upd:
        upd["location"] = upd["location"].strip()
    for key in ("skillsOffered", "skillsWanted", "availability"):
        if key in upd:
            upd[key] = norm_list(upd[key])
    upd["updatedAt"] = _now_utc()

    res = await db.users.update_one({"_id": user.id}, {"$set": upd})
    if res.matched_count == 0:
        raise HTTPException(status_code=404, detail="user_not_found")
    u = await db.users.find_one({"_id": user.id})
    return to_user(u)

_SAFE_NAME = re.compile(r"[^A-Za-z0-9._-]+")

@api.post("/upload-photo")
async def upload_photo(photo: UploadFile = File(...), user: Claims = Depends(auth_user)):
    if not (photo.content_type or "").startswith("image/"):
        raise HTTPException(status_code=400, detail="not_an_image")

    u = await db.users.find_one({"_id": user.id}, {"_id": 1})
    if not u:
        raise HTTPException(status_code=404, detail="user_not_found")

    original = _SAFE_NAME.sub("_", SysPath(photo.filename or "photo").name) or "photo"
    filename = f"{uuid.uuid4()}-{original}"
    UPLOAD_DIR.mkdir(parents=True, exist_ok=True)
    data = await photo.read()
    await run_in_threadpool((UPLOAD_DIR / filename).write_bytes, data)

    await db.users.update_one({"_id": user.id}, {"$set": {"profilePhoto": filename, "updatedAt": _now_utc()}})
    return {"message": "Photo uploaded successfully", "photoUrl": f"/uploads/{filename}"}

@app.get("/uploads/{filename}")
async def serve_upload(filename: str):
    path = UPLOAD_DIR / filename
    if SysPath(filename).name != filename or not path.is_file():
        raise HTTPException(status_code=404, detail="file_not_found")
    return FileResponse(path)

@api.get("/users/{user_id}")
async def get_public_profile(user_id: str, user: Claims = Depends(auth_user)):
    u = await db.users.find_one({"_id": user_id})
    if not u:
        raise HTTPException(status_code=404, detail="user_not_found")
    if not u.get("isPublic", True) and user.id != user_id and not user.isAdmin:
        raise HTTPException(status_code=404, detail="user_not_found")
    return to_user(u)

# -----------------------------------------------------------------------------
# ROUTES: SEARCH
# -----------------------------------------------------------------------------
@api.get("/search")
async def search_users(
    skill: Optional[str] = Query(None, max_length=100),
    filter_type: Optional[str] = Query(None, alias="type"),
    user: Claims = Depends(auth_user),
):
    """Public users other than the caller, optionally filtered by skill substring."""
    cur = db.users.find({"isPublic": True, "_id": {"$ne": user.id}}).sort("createdAt", 1)
    needle = (skill or "").casefold()

    out = []
    async for u in cur:
        if needle:
            offered = skill_matches(u.get("skillsOffered"), needle)
            wanted = skill_matches(u.get("skillsWanted"), needle)
            if filter_type == "offered":
                hit = offered
            elif filter_type == "wanted":
                hit = wanted
            else:
                hit = offered or wanted
            if not hit:
                continue
        out.append(to_user(u))
    return out

# -----------------------------------------------------------------------------
# ROUTES: SWAP REQUESTS
# -----------------------------------------------------------------------------
@api.post("/swap-request", status_code=201)
@rate_limit(60, 300)
async def create_swap_request(payload: SwapRequestCreate, request: Request, user: Claims = Depends(auth_user)):
    if REJECT_SELF_TARGETING and payload.targetUserId == user.id:
        raise HTTPException(status_code=400, detail="cannot_request_yourself")
    target = await db.users.find_one({"_id": payload.targetUserId}, {"_id": 1})
    if not target:
        raise HTTPException(status_code=404, detail="user_not_found")

    now = _now_utc()
    doc = {
        "_id": str(uuid.uuid4()),
        "fromUserId": user.id,
        "toUserId": payload.targetUserId,
        "offeredSkill": payload.offeredSkill.strip(),
        "requestedSkill": payload.requestedSkill.strip(),
        "message": payload.message,
        "status": "pending",
        "createdAt": now,
        "updatedAt": now,
    }
    await db.swap_requests.insert_one(doc)
    return {"message": "Swap request sent successfully", "swapRequest": to_swap_request(doc)}

@api.get("/swap-requests")
async def list_swap_requests(user: Claims = Depends(auth_user)):
    docs = await db.swap_requests.find(
        {"$or": [{"fromUserId": user.id}, {"toUserId": user.id}]}
    ).sort("createdAt", -1).to_list(length=None)
    return await enrich_swap_requests(docs)

@api.put("/swap-request/{request_id}")
async def update_swap_request(request_id: str, payload: SwapRequestUpdate, user: Claims = Depends(auth_user)):
    doc = await db.swap_requests.find_one({"_id": request_id})
    if not doc:
        raise HTTPException(status_code=404, detail="swap_request_not_found")
    if user.id not in (doc["fromUserId"], doc["toUserId"]):
        raise HTTPException(status_code=403, detail="not_participant")

    flt: Dict[str, Any] = {"_id": request_id}
    if SWAP_STATUS_POLICY == "recipient":
        if user.id != doc["toUserId"]:
            raise HTTPException(status_code=403, detail="recipient_only")
        flt["status"] = "pending"

    res = await db.swap_requests.update_one(flt, {"$set": {"status": payload.status, "updatedAt": _now_utc()}})
    if res.matched_count == 0:
        raise HTTPException(status_code=409, detail="already_updated")
    doc = await db.swap_requests.find_one({"_id": request_id})
    logger.info("Swap request %s -> %s", request_id, payload.status)
    return {"message": "Swap request updated successfully", "swapRequest": to_swap_request(doc)}

@api.delete("/swap-request/{request_id}")
async def delete_swap_request(request_id: str, user: Claims = Depends(auth_user)):
    doc = await db.swap_requests.find_one({"_id": request_id})
    if not doc:
        raise HTTPException(status_code=404, detail="swap_request_not_found")
    if doc["fromUserId"] != user.id:
        raise HTTPException(status_code=403, detail="not_owner")

    flt: Dict[str, Any] = {"_id": request_id, "fromUserId": user.id}
    if DELETE_REQUIRES_PENDING:
        flt["status"] = "pending"
    res = await db.swap_requests.delete_one(flt)
    if res.deleted_count == 0:
        raise HTTPException(status_code=409, detail="not_pending")
    return {"message": "Swap request deleted successfully"}

# -----------------------------------------------------------------------------
# ROUTES: RATINGS
# -----------------------------------------------------------------------------
async def add_to_rating_totals(user_id: str, value: int) -> dict:
    """Atomically bump the target's rating sum and count; returns the totals after the bump."""
    u = await db.users.find_one_and_update(
        {"_id": user_id},
        {"$inc": {"ratingSum": int(value), "totalRatings": 1}},
        projection={"ratingSum": 1, "totalRatings": 1},
        return_document=ReturnDocument.AFTER,
    )
    return {"ratingSum": int(u.get("ratingSum", 0)), "totalRatings": int(u.get("totalRatings", 0))}

async def publish_mean(user_id: str, totals: dict) -> dict:
    """Store sum/count as the user's rating, unless a later bump already moved the count."""
    count = totals["totalRatings"]
    avg = totals["ratingSum"] / count if count else 0.0
    # sum and count only ever move together, so a given count pins its sum
    await db.users.update_one({"_id": user_id, "totalRatings": count}, {"$set": {"rating": avg}})
    return {"rating": avg, "totalRatings": count}

async def record_rating(user_id: str, value: int) -> dict:
    return await publish_mean(user_id, await add_to_rating_totals(user_id, value))

async def check_rating_eligibility(rater_id: str, target_id: str, swap_request_id: Optional[str]):
    if not swap_request_id:
        raise HTTPException(status_code=400, detail="swap_not_eligible")
    sr = await db.swap_requests.find_one({"_id": swap_request_id})
    if not sr or sr.get("status") != "accepted" or {sr["fromUserId"], sr["toUserId"]} != {rater_id, target_id}:
        raise HTTPException(status_code=400, detail="swap_not_eligible")

@api.post("/rating", status_code=201)
@rate_limit(60, 300)
async def create_rating(payload: RatingCreate, request: Request, user: Claims = Depends(auth_user)):
    if REJECT_SELF_TARGETING and payload.targetUserId == user.id:
        raise HTTPException(status_code=400, detail="cannot_rate_yourself")
    target = await db.users.find_one({"_id": payload.targetUserId}, {"_id": 1})
    if not target:
        raise HTTPException(status_code=404, detail="user_not_found")
    if RATING_REQUIRES_ACCEPTED_SWAP:
        await check_rating_eligibility(user.id, payload.targetUserId, payload.swapRequestId)

    doc = {
        "_id": str(uuid.uuid4()),
        "fromUserId": user.id,
        "toUserId": payload.targetUserId,
        "rating": int(payload.rating),
        "feedback": payload.feedback,
        "swapRequestId": payload.swapRequestId,
        "createdAt": _now_utc(),
    }
    await db.ratings.insert_one(doc)
    stats = await record_rating(payload.targetUserId, doc["rating"])
    return {"message": "Rating submitted successfully", "rating": to_rating(doc), "target": stats}

@api.get("/ratings/{user_id}")
async def list_ratings(user_id: str, user: Claims = Depends(auth_user)):
    docs = await db.ratings.find({"toUserId": user_id}).sort("createdAt", -1).to_list(length=None)
    raters = await users_by_id(d["fromUserId"] for d in docs)
    out = []
    for d in docs:
        item = to_rating(d)
        rater = raters.get(d["fromUserId"])
        item["fromUser"] = {"id": rater["_id"], "name": rater.get("name")} if rater else None
        out.append(item)
    return out

# -----------------------------------------------------------------------------
# ROUTES: ADMIN
# -----------------------------------------------------------------------------
@api.get("/admin/users")
async def admin_list_users(admin: Claims = Depends(require_admin)):
    docs = await db.users.find({}).sort("createdAt", 1).to_list(length=None)
    return [to_user(u) for u in docs]

@api.put("/admin/users/{user_id}/ban")
async def admin_set_banned(user_id: str, payload: BanUpdate, admin: Claims = Depends(require_admin)):
    res = await db.users.update_one({"_id": user_id}, {"$set": {"banned": payload.banned, "updatedAt": _now_utc()}})
    if res.matched_count == 0:
        raise HTTPException(status_code=404, detail="user_not_found")
    u = await db.users.find_one({"_id": user_id})
    logger.info("[ADMIN] %s %s", "Banned" if payload.banned else "Unbanned", user_id)
    return {
        "message": f"User {'banned' if payload.banned else 'unbanned'} successfully",
        "user": to_user(u),
    }

@api.get("/admin/swap-requests")
async def admin_list_swap_requests(admin: Claims = Depends(require_admin)):
    docs = await db.swap_requests.find({}).sort("createdAt", -1).to_list(length=None)
    return await enrich_swap_requests(docs, with_email=True)

@api.post("/admin/message", status_code=201)
async def admin_broadcast(payload: AdminMessageCreate, admin: Claims = Depends(require_admin)):
    doc = {
        "_id": str(uuid.uuid4()),
        "title": payload.title.strip(),
        "message": payload.message,
        "fromAdmin": admin.id,
        "createdAt": _now_utc(),
    }
    await db.admin_messages.insert_one(doc)
    return {"message": "Admin message sent successfully", "adminMessage": to_admin_message(doc)}

@api.get("/admin/reports")
async def admin_report(admin: Claims = Depends(require_admin)):
    ratings = await db.ratings.find({}, {"rating": 1}).to_list(length=None)
    total_ratings = len(ratings)
    return {
        "totalUsers": await db.users.count_documents({}),
        "totalSwapRequests": await db.swap_requests.count_documents({}),
        "pendingRequests": await db.swap_requests.count_documents({"status": "pending"}),
        "acceptedRequests": await db.swap_requests.count_documents({"status": "accepted"}),
        "rejectedRequests": await db.swap_requests.count_documents({"status": "rejected"}),
        "totalRatings": total_ratings,
        "averageRating": sum(int(r["rating"]) for r in ratings) / total_ratings if total_ratings else 0,
    }

@api.get("/admin-messages")
async def list_admin_messages(user: Claims = Depends(auth_user)):
    docs = await db.admin_messages.find({}).sort("createdAt", -1).to_list(length=None)
    return [to_admin_message(d) for d in docs]

# -----------------------------------------------------------------------------
# REGISTER ROUTER & MIDDLEWARE
# -----------------------------------------------------------------------------
app.include_router(api)

# CORS strict: no '*' in prod, explicit origins required
raw_origins = [o.strip() for o in os.environ.get("CORS_ORIGINS", "").split(",") if o.strip()]
if IS_PROD:
    if not raw_origins:
        raise RuntimeError("CORS_ORIGINS must be set in prod")
    if "*" in raw_origins:
        raise RuntimeError("CORS_ORIGINS cannot contain '*' in prod")
else:
    raw_origins = raw_origins or ["*"]

app.add_middleware(
    CORSMiddleware,
    allow_credentials=True,
    allow_origins=raw_origins,
    allow_methods=["GET", "POST", "PUT", "DELETE", "OPTIONS"],
    allow_headers=["Authorization", "Content-Type"],
    max_age=3600,
)

# -----------------------------------------------------------------------------
# LIFECYCLE
# -----------------------------------------------------------------------------
@app.on_event("startup")
async def startup_seed():
    if IS_PROD and JWT_SECRET == DEFAULT_JWT_SECRET:
        raise RuntimeError("JWT_SECRET must be set in prod")
    if SWAP_STATUS_POLICY not in ("participants", "recipient"):
        raise RuntimeError(f"unknown SWAP_STATUS_POLICY: {SWAP_STATUS_POLICY}")
    UPLOAD_DIR.mkdir(parents=True, exist_ok=True)
    await ensure_indexes()
    logger.info("Indexes ensured")
    if ADMIN_EMAIL and ADMIN_PASSWORD:
        await bootstrap_admin(ADMIN_EMAIL, ADMIN_PASSWORD)

@app.on_event("shutdown")
async def shutdown_db_client():
    client.close()
    logger.info("Mongo client closed")
