import logging
import os
from contextlib import asynccontextmanager
from datetime import datetime, timedelta, timezone
from typing import Optional

from fastapi import Depends, FastAPI, HTTPException, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from pydantic import BaseModel, EmailStr

from amenities import (
    get_all_amenities,
    get_amenities_by_category,
    get_amenity,
    initialize_restroom_amenities,
    map_legacy_amenity_id,
    normalize_amenities,
)
from amenity_voting import apply_vote, has_user_voted
from database import DATABASE_URL, as_object_id, create_document, ensure_indexes, get_db, get_documents
from exceptions import RestroomError, ValidationError
from ratings import (
    RATING_CATEGORIES,
    delete_review,
    fetch_reviews,
    mark_review_helpful,
    recompute_ratings,
    validate_and_submit_review,
)
from schemas import (
    AmenityVoteRequest,
    AmenityVoteResponse,
    RatingsAggregate,
    Restroom as RestroomSchema,
    RestroomCreate,
    ReviewCreate,
    User as UserSchema,
)

import bcrypt
import jwt

logging.basicConfig(
    level=os.getenv("LOG_LEVEL", "INFO"),
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)

JWT_SECRET = os.getenv("JWT_SECRET", "dev_secret_change_me")
JWT_ALG = "HS256"
TOKEN_EXPIRE_MINUTES = int(os.getenv("TOKEN_EXPIRE_MINUTES", 60 * 24 * 7))


@asynccontextmanager
async def lifespan(app: FastAPI):
    database = get_db()
    if database is not None:
        ensure_indexes(database)
    yield


app = FastAPI(title="Restroom Finder API", lifespan=lifespan)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

security = HTTPBearer()
optional_security = HTTPBearer(auto_error=False)


@app.exception_handler(RestroomError)
async def restroom_error_handler(request: Request, exc: RestroomError):
    return JSONResponse(status_code=exc.status_code, content={"detail": exc.message})


# -------------------- Models --------------------
class SignupRequest(BaseModel):
    username: str
    email: EmailStr
    password: str


class LoginRequest(BaseModel):
    email: EmailStr
    password: str


class TokenResponse(BaseModel):
    access_token: str
    token_type: str = "bearer"


# -------------------- Helpers --------------------

def hash_password(password: str) -> str:
    return bcrypt.hashpw(password.encode(), bcrypt.gensalt()).decode()


def verify_password(password: str, hashed: str) -> bool:
    try:
        return bcrypt.checkpw(password.encode(), hashed.encode())
    except ValueError:
        return False


def create_access_token(sub: str) -> str:
    payload = {
        "sub": sub,
        "exp": datetime.now(timezone.utc) + timedelta(minutes=TOKEN_EXPIRE_MINUTES),
        "iat": datetime.now(timezone.utc),
    }
    return jwt.encode(payload, JWT_SECRET, algorithm=JWT_ALG)


def require_db(db=Depends(get_db)):
    if db is None:
        raise HTTPException(status_code=500, detail="Database not configured")
    return db


def _serialize(doc: dict) -> dict:
    doc["_id"] = str(doc["_id"])
    return doc


def _user_from_token(token: str, db) -> dict:
    try:
        payload = jwt.decode(token, JWT_SECRET, algorithms=[JWT_ALG])
    except jwt.ExpiredSignatureError:
        raise HTTPException(status_code=401, detail="Token expired")
    except jwt.InvalidTokenError:
        raise HTTPException(status_code=401, detail="Invalid token")
    user_id = as_object_id(payload.get("sub"))
    if user_id is None:
        raise HTTPException(status_code=401, detail="Invalid token")
    user_doc = db["user"].find_one({"_id": user_id})
    if not user_doc:
        raise HTTPException(status_code=401, detail="User not found")
    user_doc.pop("password_hash", None)
    return _serialize(user_doc)


def get_current_user(
    credentials: HTTPAuthorizationCredentials = Depends(security),
    db=Depends(require_db),
):
    return _user_from_token(credentials.credentials, db)


def get_optional_user(
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(optional_security),
    db=Depends(require_db),
):
    """The signed-in user, or None for anonymous requests."""
    if credentials is None:
        return None
    return _user_from_token(credentials.credentials, db)


def require_admin(current_user=Depends(get_current_user)):
    if current_user.get("role") != "admin":
        raise HTTPException(status_code=403, detail="Forbidden")
    return current_user


# -------------------- Health --------------------
@app.get("/")
def root():
    return {"name": "Restroom Finder API", "status": "ok"}


@app.get("/test")
def test_database(db=Depends(get_db)):
    response = {
        "backend": "running",
        "database": "not available",
        "database_url": "set" if DATABASE_URL else "not set",
        "database_name": None,
        "connection_status": "Not Connected",
        "collections": [],
    }
    if db is None:
        return response
    response["database_name"] = db.name
    try:
        response["collections"] = db.list_collection_names()[:10]
        response["database"] = "connected"
        response["connection_status"] = "Connected"
    except Exception as e:
        logger.warning("Database check failed: %s", e)
        response["database"] = f"error: {str(e)[:50]}"
    return response


# -------------------- Auth --------------------
@app.post("/api/auth/signup", response_model=TokenResponse)
def signup(payload: SignupRequest, db=Depends(require_db)):
    if db["user"].find_one({"email": payload.email}):
        raise HTTPException(status_code=400, detail="Email already registered")
    user = UserSchema(
        username=payload.username,
        email=payload.email,
        password_hash=hash_password(payload.password),
        role="user",
    )
    user_id = create_document("user", user, database=db)
    return TokenResponse(access_token=create_access_token(user_id))


@app.post("/api/auth/login", response_model=TokenResponse)
def login(payload: LoginRequest, db=Depends(require_db)):
    user_doc = db["user"].find_one({"email": payload.email})
    if not user_doc:
        raise HTTPException(status_code=401, detail="Invalid credentials")
    if not verify_password(payload.password, user_doc.get("password_hash", "")):
        raise HTTPException(status_code=401, detail="Invalid credentials")
    return TokenResponse(access_token=create_access_token(str(user_doc["_id"])))


@app.get("/api/auth/me")
def me(current_user=Depends(get_current_user)):
    return current_user


# -------------------- Catalog --------------------
@app.get("/api/amenities")
def list_amenities(category: Optional[str] = None, top: Optional[int] = None):
    items = get_amenities_by_category(category) if category else get_all_amenities()
    if top:
        items = items[:top]
    return {"items": [vars(a) for a in items]}


@app.get("/api/rating-categories")
def list_rating_categories():
    items = []
    for category in RATING_CATEGORIES:
        item = vars(category).copy()
        item["levels"] = [
            {"value": value, "label": label}
            for value, label in enumerate(category.levels, start=1)
        ]
        items.append(item)
    return {"items": items}


# -------------------- Restrooms --------------------
def _present_restroom(doc: dict) -> dict:
    doc = _serialize(doc)
    doc["amenities"] = normalize_amenities(doc.get("amenities"))
    doc.setdefault("confirmed_amenities", [])
    return doc


@app.get("/api/restrooms")
def list_restrooms(q: Optional[str] = None, db=Depends(require_db)):
    filt = {}
    if q:
        filt["name"] = {"$regex": q, "$options": "i"}
    docs = get_documents("restroom", filt, limit=None, database=db)
    return {"items": [_present_restroom(d) for d in docs]}


@app.get("/api/restrooms/{rid}")
def get_restroom(rid: str, db=Depends(require_db)):
    oid = as_object_id(rid)
    doc = db["restroom"].find_one({"_id": oid}) if oid is not None else None
    if not doc:
        raise HTTPException(status_code=404, detail="Not found")
    return _present_restroom(doc)


@app.post("/api/restrooms")
def create_restroom(payload: RestroomCreate, current_user=Depends(get_current_user), db=Depends(require_db)):
    amenity_ids = []
    for amenity_id in payload.amenities:
        amenity_id = map_legacy_amenity_id(amenity_id)
        if get_amenity(amenity_id) is None:
            raise ValidationError(f"Unknown amenity: {amenity_id}")
        if amenity_id not in amenity_ids:
            amenity_ids.append(amenity_id)
    restroom = RestroomSchema(
        **payload.model_dump(exclude={"amenities"}),
        **initialize_restroom_amenities(amenity_ids),
        submitted_by=current_user["_id"],
    )
    rid = create_document("restroom", restroom, database=db)
    logger.info("Restroom %s created by %s", rid, current_user["_id"])
    return {"id": rid}


# -------------------- Amenity votes --------------------
@app.post("/api/restrooms/{rid}/amenities/{amenity_id}/vote", response_model=AmenityVoteResponse)
def vote_on_amenity(
    rid: str,
    amenity_id: str,
    payload: AmenityVoteRequest,
    current_user=Depends(get_current_user),
    db=Depends(require_db),
):
    entry = apply_vote(db, rid, amenity_id, current_user["_id"], payload.vote)
    return AmenityVoteResponse(amenity_id=amenity_id, entry=entry)


@app.get("/api/restrooms/{rid}/amenities/{amenity_id}/vote")
def get_amenity_vote(rid: str, amenity_id: str, current_user=Depends(get_current_user), db=Depends(require_db)):
    return {"voted": has_user_voted(db, rid, amenity_id, current_user["_id"])}


# -------------------- Reviews --------------------
@app.get("/api/restrooms/{rid}/reviews")
def restroom_reviews(rid: str, limit: int = 10, db=Depends(require_db)):
    return {"items": [_serialize(d) for d in fetch_reviews(db, rid, limit=limit)]}


@app.post("/api/reviews")
def add_review(payload: ReviewCreate, current_user=Depends(get_optional_user), db=Depends(require_db)):
    user_id = current_user["_id"] if current_user else None
    user_name = current_user.get("username") if current_user else None
    result = validate_and_submit_review(db, payload, user_id=user_id, user_name=user_name)
    return {"success": result["success"], "id": result["review_id"]}


@app.delete("/api/reviews/{review_id}")
def remove_review(review_id: str, current_user=Depends(get_current_user), db=Depends(require_db)):
    delete_review(db, review_id, current_user["_id"], is_admin=current_user.get("role") == "admin")
    return {"status": "ok"}


@app.post("/api/reviews/{review_id}/helpful")
def helpful_review(review_id: str, db=Depends(require_db)):
    return {"helpful": mark_review_helpful(db, review_id)}


@app.post("/api/restrooms/{rid}/ratings/recompute", response_model=RatingsAggregate)
def recompute_restroom_ratings(rid: str, current_user=Depends(require_admin), db=Depends(require_db)):
    return recompute_ratings(db, rid)


if __name__ == "__main__":
    import uvicorn
    port = int(os.getenv("PORT", 8000))
    uvicorn.run(app, host="0.0.0.0", port=port)
