import logging
import os
import re
import time
from contextlib import asynccontextmanager
from datetime import datetime, timedelta, timezone
from typing import Callable, Dict, List, Optional

from bson import ObjectId
from bson.errors import InvalidId
from fastapi import Depends, FastAPI, HTTPException, Query, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from fastapi.security import OAuth2PasswordBearer
from jose import JWTError, jwt
from passlib.context import CryptContext
from pydantic import BaseModel, EmailStr, Field, ValidationError, model_validator
from pymongo import ReturnDocument
from pymongo.errors import DuplicateKeyError, PyMongoError
from starlette.exceptions import HTTPException as StarletteHTTPException

from database import db, create_document, utcnow
from schemas import (
    PHONE_PATTERN,
    Cart,
    CartItem,
    Categories,
    CustomerInfo,
    Location,
    MapUrl,
    Order,
    OrderItem,
    OrderStatus,
    OrderTotals,
    PaymentInfo,
    PaymentMethod,
    PaymentStatus,
    Product,
    RecordStatus,
    Role,
    Schedule,
    SocialMedia,
    Store,
    StoreLocation,
    User,
    can_transition,
)

# Security settings
SECRET_KEY = os.getenv("SECRET_KEY")
ALGORITHM = "HS256"
ACCESS_TOKEN_EXPIRE_MINUTES = int(os.getenv("ACCESS_TOKEN_EXPIRE_MINUTES", 60 * 8))

# Checkout settings
SHIPPING_FLAT_RATE = float(os.getenv("SHIPPING_FLAT_RATE", "0"))
CART_SHARED_SESSION = os.getenv("CART_SHARED_SESSION", "").lower() in ("1", "true", "yes")
FALLBACK_SESSION_ID = "default-session"

pwd_context = CryptContext(schemes=["bcrypt"], deprecated="auto")
oauth2_scheme = OAuth2PasswordBearer(tokenUrl="/api/auth/login")
optional_oauth2_scheme = OAuth2PasswordBearer(tokenUrl="/api/auth/login", auto_error=False)

logger = logging.getLogger("marketplace")


@asynccontextmanager
async def lifespan(app: FastAPI):
    logging.basicConfig(
        level=os.getenv("LOG_LEVEL", "INFO").upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    if db is None:
        raise RuntimeError("DATABASE_URL and DATABASE_NAME must be set")
    if not SECRET_KEY:
        raise RuntimeError("SECRET_KEY must be set")

    db["user"].create_index("email", unique=True)
    db["cart"].create_index([("session_id", 1), ("store_id", 1)], unique=True)
    db["order"].create_index("order_number", unique=True)
    logger.info("Marketplace API ready (database=%s, shared cart session=%s)", db.name, CART_SHARED_SESSION)
    yield


app = FastAPI(title="Marketplace API", lifespan=lifespan)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


# Response envelope

def envelope(data=None) -> dict:
    return {"success": True, "data": data}


def _first_error(errors: list) -> str:
    if not errors:
        return "Invalid request"
    err = errors[0]
    loc = ".".join(str(part) for part in err.get("loc", ()) if part not in ("body", "query", "path"))
    return f"{loc}: {err['msg']}" if loc else err["msg"]


@app.exception_handler(StarletteHTTPException)
async def http_exception_handler(request: Request, exc: StarletteHTTPException):
    return JSONResponse(
        status_code=exc.status_code,
        content={"success": False, "error": exc.detail},
        headers=getattr(exc, "headers", None),
    )


@app.exception_handler(RequestValidationError)
async def request_validation_handler(request: Request, exc: RequestValidationError):
    return JSONResponse(status_code=400, content={"success": False, "error": _first_error(exc.errors())})


@app.exception_handler(ValidationError)
async def model_validation_handler(request: Request, exc: ValidationError):
    return JSONResponse(status_code=400, content={"success": False, "error": _first_error(exc.errors())})


@app.exception_handler(Exception)
async def unhandled_exception_handler(request: Request, exc: Exception):
    logger.exception("Unhandled error on %s %s", request.method, request.url.path)
    return JSONResponse(status_code=500, content={"success": False, "error": "Server Error"})


# Request models

class LocationCreate(BaseModel):
    alias: str = Field(..., min_length=1, max_length=100)
    map_url: MapUrl
    is_default: bool = False


class LocationUpdate(BaseModel):
    alias: Optional[str] = Field(None, min_length=1, max_length=100)
    map_url: Optional[MapUrl] = None
    is_default: Optional[bool] = None


class StoreCreate(BaseModel):
    name: str = Field(..., min_length=1, max_length=100)
    responsible_name: Optional[str] = Field(None, max_length=100)
    phone: str = Field(..., pattern=PHONE_PATTERN)
    categories: Categories
    description: Optional[str] = Field(None, max_length=500)
    images: List[str] = Field(default_factory=list)
    schedule: Schedule
    location: StoreLocation
    social_media: SocialMedia = Field(default_factory=SocialMedia)


class StoreUpdate(BaseModel):
    name: Optional[str] = Field(None, min_length=1, max_length=100)
    responsible_name: Optional[str] = Field(None, max_length=100)
    phone: Optional[str] = Field(None, pattern=PHONE_PATTERN)
    categories: Optional[Categories] = None
    description: Optional[str] = Field(None, max_length=500)
    images: Optional[List[str]] = None
    schedule: Optional[Schedule] = None
    location: Optional[StoreLocation] = None
    social_media: Optional[SocialMedia] = None
    status: Optional[RecordStatus] = None


class RegisterRequest(BaseModel):
    name: str = Field(..., min_length=1, max_length=100)
    email: EmailStr
    password: str = Field(..., min_length=6)
    phone: str = Field(..., pattern=PHONE_PATTERN)
    locations: List[LocationCreate] = Field(..., min_length=1)
    role: Role = "client"
    store: Optional[StoreCreate] = None

    @model_validator(mode="after")
    def check_role(self):
        if self.role == "platform_admin":
            raise ValueError("role must be client or admin")
        if self.role == "admin" and self.store is None:
            raise ValueError("store details are required to register an admin")
        return self


class LoginRequest(BaseModel):
    email: EmailStr
    password: str


class ProfileUpdate(BaseModel):
    name: Optional[str] = Field(None, min_length=1, max_length=100)
    email: Optional[EmailStr] = None
    phone: Optional[str] = Field(None, pattern=PHONE_PATTERN)
    profile_image_url: Optional[str] = None


class PasswordChange(BaseModel):
    current_password: str
    new_password: str = Field(..., min_length=6)


class UserCreate(BaseModel):
    name: str = Field(..., min_length=1, max_length=100)
    email: EmailStr
    password: str = Field(..., min_length=6)
    phone: str = Field(..., pattern=PHONE_PATTERN)
    locations: List[LocationCreate] = Field(..., min_length=1)
    role: Role = "client"


class UserUpdate(BaseModel):
    name: Optional[str] = Field(None, min_length=1, max_length=100)
    phone: Optional[str] = Field(None, pattern=PHONE_PATTERN)
    role: Optional[Role] = None


class ProductCreate(BaseModel):
    name: str = Field(..., min_length=1, max_length=100)
    description: str = Field(..., max_length=500)
    price: float = Field(..., ge=0)
    stock: int = Field(0, ge=0)
    images: List[str] = Field(..., min_length=1)
    category: str
    admin_note: Optional[str] = Field(None, max_length=200)
    status: RecordStatus = "active"


class ProductUpdate(BaseModel):
    name: Optional[str] = Field(None, min_length=1, max_length=100)
    description: Optional[str] = Field(None, max_length=500)
    price: Optional[float] = Field(None, ge=0)
    stock: Optional[int] = Field(None, ge=0)
    images: Optional[List[str]] = Field(None, min_length=1)
    category: Optional[str] = None
    admin_note: Optional[str] = Field(None, max_length=200)
    status: Optional[RecordStatus] = None


class CartAddRequest(BaseModel):
    store_id: str
    product_id: str
    quantity: int = Field(1, ge=1)
    note: Optional[str] = Field(None, max_length=200)


class CartUpdateRequest(BaseModel):
    store_id: str
    product_id: str
    quantity: Optional[int] = Field(None, ge=1)
    note: Optional[str] = Field(None, max_length=200)


class OrderLine(BaseModel):
    product_id: str
    quantity: int = Field(..., ge=1)
    note: Optional[str] = Field(None, max_length=200)


class PaymentRequest(BaseModel):
    method: PaymentMethod
    details: str = Field(..., min_length=1)


class OrderCreateRequest(BaseModel):
    store_id: str
    customer: CustomerInfo
    items: List[OrderLine] = Field(..., min_length=1)
    payment: PaymentRequest


class OrderStatusUpdate(BaseModel):
    status: OrderStatus
    notes: Optional[str] = Field(None, max_length=500)


class PaymentStatusUpdate(BaseModel):
    status: PaymentStatus


# Utility helpers

def oid(id_str: str) -> ObjectId:
    try:
        return ObjectId(id_str)
    except (InvalidId, TypeError):
        raise HTTPException(status_code=400, detail="Invalid id")


def serialize(doc: Optional[dict]):
    if not doc:
        return doc
    doc = dict(doc)
    doc["id"] = str(doc.pop("_id"))
    doc.pop("password_hash", None)
    return doc


def paginate(collection: str, query: dict, page: int, limit: int):
    cursor = db[collection].find(query).sort("created_at", -1).skip((page - 1) * limit).limit(limit)
    docs = [serialize(d) for d in cursor]
    total = db[collection].count_documents(query)
    return docs, {"page": page, "limit": limit, "total": total}


def search_filter(text: str, fields: List[str]) -> dict:
    pattern = re.escape(text.strip())
    return {"$or": [{field: {"$regex": pattern, "$options": "i"}} for field in fields]}


# Auth helpers

def verify_password(plain_password, hashed_password):
    return pwd_context.verify(plain_password, hashed_password)


def get_password_hash(password):
    return pwd_context.hash(password)


def create_access_token(data: dict, expires_delta: Optional[timedelta] = None):
    to_encode = data.copy()
    expire = datetime.now(timezone.utc) + (expires_delta or timedelta(minutes=ACCESS_TOKEN_EXPIRE_MINUTES))
    to_encode.update({"exp": expire})
    encoded_jwt = jwt.encode(to_encode, SECRET_KEY, algorithm=ALGORITHM)
    return encoded_jwt


def _user_from_token(token: str) -> dict:
    credentials_exception = HTTPException(
        status_code=401,
        detail="Not authorized to access this route",
        headers={"WWW-Authenticate": "Bearer"},
    )
    try:
        payload = jwt.decode(token, SECRET_KEY, algorithms=[ALGORITHM])
        user_id: str = payload.get("sub")
        if user_id is None or not ObjectId.is_valid(user_id):
            raise credentials_exception
    except JWTError:
        raise credentials_exception

    user = db["user"].find_one({"_id": ObjectId(user_id)})
    if not user:
        raise credentials_exception
    return serialize(user)


def get_current_user(token: str = Depends(oauth2_scheme)) -> dict:
    return _user_from_token(token)


def get_optional_user(token: Optional[str] = Depends(optional_oauth2_scheme)) -> Optional[dict]:
    """Anonymous callers (or ones with a stale token) browse as the public."""
    if not token:
        return None
    try:
        return _user_from_token(token)
    except HTTPException:
        return None


def require_roles(*roles: str):
    def checker(user: dict = Depends(get_current_user)) -> dict:
        if user.get("role") not in roles:
            raise HTTPException(
                status_code=403,
                detail=f"User role {user.get('role')} is not authorized to access this route",
            )
        return user

    return checker


def is_platform_admin(user: Optional[dict]) -> bool:
    return bool(user) and user.get("role") == "platform_admin"


def can_manage_store(user: Optional[dict], store: dict) -> bool:
    if not user:
        return False
    return is_platform_admin(user) or store.get("owner_id") == user["id"]


def owned_store_ids(user: dict) -> List[str]:
    return [str(s["_id"]) for s in db["store"].find({"owner_id": user["id"]}, {"_id": 1})]


def token_response(user_doc: dict, **extra) -> dict:
    token = create_access_token({"sub": str(user_doc["_id"])})
    return envelope({"token": token, "user": serialize(user_doc), **extra})


# Cart session and shipping collaborators

class SessionResolver:
    """
    Resolves the cart session for a request: the x-session-id header, then the
    session_id cookie. Without either, requests are rejected unless the shared
    fallback session is enabled (single-tenant debugging only).
    """

    header_name = "x-session-id"
    cookie_name = "session_id"

    def __init__(self, allow_shared: bool = False, fallback: str = FALLBACK_SESSION_ID):
        self.allow_shared = allow_shared
        self.fallback = fallback

    def __call__(self, request: Request) -> str:
        session_id = request.headers.get(self.header_name) or request.cookies.get(self.cookie_name)
        if session_id and session_id.strip():
            return session_id.strip()
        if self.allow_shared:
            return self.fallback
        raise HTTPException(
            status_code=400,
            detail=f"A session id is required ({self.header_name} header or {self.cookie_name} cookie)",
        )


resolve_session = SessionResolver(allow_shared=CART_SHARED_SESSION)


def get_session_id(request: Request) -> str:
    return resolve_session(request)


class FlatRateShipping:
    def __init__(self, rate: float):
        self.rate = rate

    def __call__(self, store: dict, subtotal: float) -> float:
        return round(self.rate, 2)


def get_shipping_calculator() -> Callable[[dict, float], float]:
    return FlatRateShipping(SHIPPING_FLAT_RATE)


@app.get("/")
def read_root():
    return {"message": "Marketplace API"}


@app.get("/test")
def test_database():
    info = {
        "backend": "✅ Running",
        "database": "❌ Not Available",
        "database_url": "✅ Set" if os.getenv("DATABASE_URL") else "❌ Not Set",
        "database_name": "❌ Not Set",
        "connection_status": "Not Connected",
        "collections": []
    }
    try:
        if db is not None:
            info["database"] = "✅ Connected & Working"
            info["database_name"] = db.name
            info["connection_status"] = "Connected"
            info["collections"] = db.list_collection_names()
    except PyMongoError as e:
        info["database"] = f"⚠️ Error: {str(e)[:80]}"
    return info


# Auth routes

def _build_locations(payload_locations: List[LocationCreate]):
    locations = [Location(**loc.model_dump()) for loc in payload_locations]
    current = next((i for i, loc in enumerate(locations) if loc.is_default), 0)
    for i, loc in enumerate(locations):
        loc.is_default = i == current
    return locations, current


def _insert_user(name: str, email: str, password: str, phone: str, role: str, payload_locations) -> str:
    email = email.lower()
    if db["user"].find_one({"email": email}):
        raise HTTPException(status_code=400, detail="Email already registered")
    locations, current = _build_locations(payload_locations)
    user = User(
        name=name,
        email=email,
        password_hash=get_password_hash(password),
        phone=phone,
        role=role,
        locations=locations,
        current_location_index=current,
    )
    try:
        return create_document("user", user)
    except DuplicateKeyError:
        raise HTTPException(status_code=400, detail="Email already registered")


@app.post("/api/auth/register", status_code=201)
def register(payload: RegisterRequest):
    user_id = _insert_user(payload.name, payload.email, payload.password, payload.phone, payload.role, payload.locations)

    store_id = None
    if payload.role == "admin":
        try:
            store_id = create_document("store", Store(owner_id=user_id, **payload.store.model_dump()))
        except PyMongoError:
            db["user"].delete_one({"_id": ObjectId(user_id)})
            raise

    logger.info("Registered %s user %s", payload.role, user_id)
    user_doc = db["user"].find_one({"_id": ObjectId(user_id)})
    return token_response(user_doc, store_id=store_id)


@app.post("/api/auth/login")
def login(payload: LoginRequest):
    user_doc = db["user"].find_one({"email": payload.email.lower()})
    if not user_doc or not verify_password(payload.password, user_doc.get("password_hash", "")):
        raise HTTPException(status_code=401, detail="Invalid credentials")
    return token_response(user_doc)


@app.post("/api/auth/logout")
def logout(_: dict = Depends(get_current_user)):
    # tokens are stateless; the client discards its copy
    return envelope({})


@app.get("/api/auth/me")
def me(user: dict = Depends(get_current_user)):
    return envelope(user)


@app.put("/api/auth/update-profile")
def update_profile(payload: ProfileUpdate, user: dict = Depends(get_current_user)):
    updates = payload.model_dump(exclude_none=True)
    if "email" in updates:
        updates["email"] = updates["email"].lower()
        taken = db["user"].find_one({"email": updates["email"], "_id": {"$ne": ObjectId(user["id"])}})
        if taken:
            raise HTTPException(status_code=400, detail="Email already registered")
    if updates:
        updates["updated_at"] = utcnow()
        db["user"].update_one({"_id": ObjectId(user["id"])}, {"$set": updates})
    return envelope(serialize(db["user"].find_one({"_id": ObjectId(user["id"])})))


@app.put("/api/auth/change-password")
def change_password(payload: PasswordChange, user: dict = Depends(get_current_user)):
    user_doc = db["user"].find_one({"_id": ObjectId(user["id"])})
    if not verify_password(payload.current_password, user_doc.get("password_hash", "")):
        raise HTTPException(status_code=401, detail="Current password is incorrect")
    db["user"].update_one(
        {"_id": user_doc["_id"]},
        {"$set": {"password_hash": get_password_hash(payload.new_password), "updated_at": utcnow()}},
    )
    return token_response(user_doc)


# Saved locations

def _locations_of(user: dict):
    user_doc = db["user"].find_one({"_id": ObjectId(user["id"])})
    return user_doc.get("locations", []), user_doc.get("current_location_index", 0)


def _location_index(locations: List[dict], location_id: str) -> int:
    for i, loc in enumerate(locations):
        if loc.get("id") == location_id:
            return i
    raise HTTPException(status_code=404, detail="Location not found")


def _make_default(locations: List[dict], index: int) -> None:
    for i, loc in enumerate(locations):
        loc["is_default"] = i == index


def _save_locations(user: dict, locations: List[dict], current: int) -> dict:
    _make_default(locations, current)
    db["user"].update_one(
        {"_id": ObjectId(user["id"])},
        {"$set": {"locations": locations, "current_location_index": current, "updated_at": utcnow()}},
    )
    return envelope({"locations": locations, "current_location_index": current})


@app.post("/api/auth/locations", status_code=201)
def add_location(payload: LocationCreate, user: dict = Depends(get_current_user)):
    locations, current = _locations_of(user)
    locations.append(Location(**payload.model_dump()).model_dump())
    if payload.is_default:
        current = len(locations) - 1
    return _save_locations(user, locations, current)


@app.put("/api/auth/locations/{location_id}")
def update_location(location_id: str, payload: LocationUpdate, user: dict = Depends(get_current_user)):
    locations, current = _locations_of(user)
    index = _location_index(locations, location_id)
    locations[index] = Location(**{**locations[index], **payload.model_dump(exclude_none=True)}).model_dump()
    if payload.is_default:
        current = index
    return _save_locations(user, locations, current)


@app.delete("/api/auth/locations/{location_id}")
def delete_location(location_id: str, user: dict = Depends(get_current_user)):
    locations, current = _locations_of(user)
    index = _location_index(locations, location_id)
    if len(locations) == 1:
        raise HTTPException(status_code=400, detail="Cannot delete the only saved location")
    locations.pop(index)
    if index == current:
        current = 0
    elif index < current:
        current -= 1
    return _save_locations(user, locations, current)


@app.put("/api/auth/locations/{location_id}/set-current")
def set_current_location(location_id: str, user: dict = Depends(get_current_user)):
    locations, _ = _locations_of(user)
    index = _location_index(locations, location_id)
    return _save_locations(user, locations, index)


@app.get("/api/auth/locations/current")
def get_current_location(user: dict = Depends(get_current_user)):
    locations, current = _locations_of(user)
    if not locations:
        raise HTTPException(status_code=404, detail="No saved locations")
    return envelope({"location": locations[current], "current_location_index": current})


# User administration

platform_admin_only = require_roles("platform_admin")


@app.get("/api/users")
def list_users(page: int = Query(1, ge=1), limit: int = Query(10, ge=1, le=100), _: dict = Depends(platform_admin_only)):
    users, pagination = paginate("user", {}, page, limit)
    return envelope({"users": users, "pagination": pagination})


@app.get("/api/users/{user_id}")
def get_user(user_id: str, _: dict = Depends(platform_admin_only)):
    doc = db["user"].find_one({"_id": oid(user_id)})
    if not doc:
        raise HTTPException(status_code=404, detail="User not found")
    return envelope(serialize(doc))


@app.post("/api/users", status_code=201)
def create_user(payload: UserCreate, _: dict = Depends(platform_admin_only)):
    user_id = _insert_user(payload.name, payload.email, payload.password, payload.phone, payload.role, payload.locations)
    return envelope(serialize(db["user"].find_one({"_id": ObjectId(user_id)})))


@app.put("/api/users/{user_id}")
def update_user(user_id: str, payload: UserUpdate, _: dict = Depends(platform_admin_only)):
    updates = payload.model_dump(exclude_none=True)
    updates["updated_at"] = utcnow()
    doc = db["user"].find_one_and_update(
        {"_id": oid(user_id)}, {"$set": updates}, return_document=ReturnDocument.AFTER
    )
    if not doc:
        raise HTTPException(status_code=404, detail="User not found")
    return envelope(serialize(doc))


@app.delete("/api/users/{user_id}")
def delete_user(user_id: str, _: dict = Depends(platform_admin_only)):
    res = db["user"].delete_one({"_id": oid(user_id)})
    if res.deleted_count == 0:
        raise HTTPException(status_code=404, detail="User not found")
    logger.info("Deleted user %s", user_id)
    return envelope({})


# Stores

store_admins = require_roles("admin", "platform_admin")


def get_store_or_404(store_id: str) -> dict:
    store = db["store"].find_one({"_id": oid(store_id)})
    if not store:
        raise HTTPException(status_code=404, detail="Store not found")
    return store


def require_store_manager(user: dict, store: dict, action: str = "manage") -> None:
    if not can_manage_store(user, store):
        raise HTTPException(status_code=403, detail=f"Not authorized to {action} this store")


@app.get("/api/stores")
def list_stores(
    category: Optional[str] = None,
    search: Optional[str] = None,
    status: Optional[RecordStatus] = None,
    page: int = Query(1, ge=1),
    limit: int = Query(10, ge=1, le=100),
):
    query = {}
    if category:
        query["categories"] = category
    if status:
        query["status"] = status
    if search:
        query.update(search_filter(search, ["name", "description"]))
    stores, pagination = paginate("store", query, page, limit)
    return envelope({"stores": stores, "pagination": pagination})


@app.get("/api/stores/{store_id}")
def get_store(store_id: str):
    return envelope(serialize(get_store_or_404(store_id)))


@app.post("/api/stores", status_code=201)
def create_store(payload: StoreCreate, user: dict = Depends(store_admins)):
    store_id = create_document("store", Store(owner_id=user["id"], **payload.model_dump()))
    return envelope(serialize(db["store"].find_one({"_id": ObjectId(store_id)})))


@app.put("/api/stores/{store_id}")
def update_store(store_id: str, payload: StoreUpdate, user: dict = Depends(store_admins)):
    store = get_store_or_404(store_id)
    require_store_manager(user, store, "update")

    updates = payload.model_dump(exclude_none=True)
    if "categories" in updates:
        dropped = set(store.get("categories", [])) - set(updates["categories"])
        for category in dropped:
            if db["product"].find_one({"store_id": store_id, "category": category}):
                raise HTTPException(
                    status_code=400,
                    detail=f"Category {category} is still used by products of this store",
                )
    if not updates:
        return envelope(serialize(store))

    updates["updated_at"] = utcnow()
    doc = db["store"].find_one_and_update(
        {"_id": store["_id"]}, {"$set": updates}, return_document=ReturnDocument.AFTER
    )
    return envelope(serialize(doc))


@app.delete("/api/stores/{store_id}")
def delete_store(store_id: str, user: dict = Depends(store_admins)):
    store = get_store_or_404(store_id)
    require_store_manager(user, store, "delete")

    products = db["product"].delete_many({"store_id": store_id})
    carts = db["cart"].delete_many({"store_id": store_id})
    db["store"].delete_one({"_id": store["_id"]})
    logger.info(
        "Deleted store %s with %s products and %s carts", store_id, products.deleted_count, carts.deleted_count
    )
    return envelope({})


# Products

def _product_filter(store_id: str, product_id: str) -> dict:
    return {"_id": oid(product_id), "store_id": store_id}


def check_category(store: dict, category: str) -> None:
    if category not in store.get("categories", []):
        raise HTTPException(status_code=400, detail="Product category must be one of the store categories")


@app.get("/api/stores/{store_id}/products")
def list_products(
    store_id: str,
    category: Optional[str] = None,
    search: Optional[str] = None,
    page: int = Query(1, ge=1),
    limit: int = Query(10, ge=1, le=100),
    user: Optional[dict] = Depends(get_optional_user),
):
    store = get_store_or_404(store_id)
    query = {"store_id": store_id}
    if not can_manage_store(user, store):
        query["status"] = "active"
    if category:
        query["category"] = category
    if search:
        query.update(search_filter(search, ["name", "description", "category"]))
    products, pagination = paginate("product", query, page, limit)
    return envelope({"products": products, "pagination": pagination})


@app.get("/api/stores/{store_id}/products/{product_id}")
def get_product(store_id: str, product_id: str, user: Optional[dict] = Depends(get_optional_user)):
    store = get_store_or_404(store_id)
    product = db["product"].find_one(_product_filter(store_id, product_id))
    # inactive products look missing to the public
    if not product or (product.get("status") == "inactive" and not can_manage_store(user, store)):
        raise HTTPException(status_code=404, detail="Product not found")
    return envelope(serialize(product))


@app.post("/api/stores/{store_id}/products", status_code=201)
def create_product(store_id: str, payload: ProductCreate, user: dict = Depends(store_admins)):
    store = get_store_or_404(store_id)
    require_store_manager(user, store)
    check_category(store, payload.category)

    product_id = create_document("product", Product(store_id=store_id, **payload.model_dump()))
    return envelope(serialize(db["product"].find_one({"_id": ObjectId(product_id)})))


@app.put("/api/stores/{store_id}/products/{product_id}")
def update_product(store_id: str, product_id: str, payload: ProductUpdate, user: dict = Depends(store_admins)):
    store = get_store_or_404(store_id)
    require_store_manager(user, store)
    product_filter = _product_filter(store_id, product_id)
    if not db["product"].find_one(product_filter):
        raise HTTPException(status_code=404, detail="Product not found")

    updates = payload.model_dump(exclude_none=True)
    if "category" in updates:
        check_category(store, updates["category"])
    updates["updated_at"] = utcnow()
    doc = db["product"].find_one_and_update(product_filter, {"$set": updates}, return_document=ReturnDocument.AFTER)
    return envelope(serialize(doc))


@app.put("/api/stores/{store_id}/products/{product_id}/toggle-status")
def toggle_product_status(store_id: str, product_id: str, user: dict = Depends(store_admins)):
    store = get_store_or_404(store_id)
    require_store_manager(user, store)
    product = db["product"].find_one(_product_filter(store_id, product_id))
    if not product:
        raise HTTPException(status_code=404, detail="Product not found")

    new_status = "inactive" if product.get("status", "active") == "active" else "active"
    doc = db["product"].find_one_and_update(
        {"_id": product["_id"]},
        {"$set": {"status": new_status, "updated_at": utcnow()}},
        return_document=ReturnDocument.AFTER,
    )
    return envelope(serialize(doc))


@app.delete("/api/stores/{store_id}/products/{product_id}")
def delete_product(store_id: str, product_id: str, user: dict = Depends(store_admins)):
    store = get_store_or_404(store_id)
    require_store_manager(user, store)
    res = db["product"].delete_one(_product_filter(store_id, product_id))
    if res.deleted_count == 0:
        raise HTTPException(status_code=404, detail="Product not found")
    return envelope({})


# Cart

def cart_view(cart: dict) -> dict:
    return {
        "store_id": cart.get("store_id"),
        "items": cart.get("items", []),
        "total_items": cart.get("total_items", 0),
        "subtotal": cart.get("subtotal", 0.0),
    }


def get_or_create_cart(session_id: str, store_id: str) -> dict:
    now = utcnow()
    return db["cart"].find_one_and_update(
        {"session_id": session_id, "store_id": store_id},
        {"$setOnInsert": {"items": [], "total_items": 0, "subtotal": 0.0, "created_at": now, "updated_at": now}},
        upsert=True,
        return_document=ReturnDocument.AFTER,
    )


def save_cart(cart_doc: dict, items: List[CartItem]) -> dict:
    cart = Cart(session_id=cart_doc["session_id"], store_id=cart_doc["store_id"], items=items)
    fields = cart.model_dump(include={"items", "total_items", "subtotal"})
    db["cart"].update_one({"_id": cart_doc["_id"]}, {"$set": {**fields, "updated_at": utcnow()}})
    return cart_view(fields | {"store_id": cart.store_id})


def _cart_items(cart_doc: dict) -> List[CartItem]:
    return [CartItem(**item) for item in cart_doc.get("items", [])]


@app.get("/api/cart")
def get_cart(store_id: str, session_id: str = Depends(get_session_id)):
    get_store_or_404(store_id)
    return envelope(cart_view(get_or_create_cart(session_id, store_id)))


@app.post("/api/cart/add")
def add_to_cart(payload: CartAddRequest, session_id: str = Depends(get_session_id)):
    get_store_or_404(payload.store_id)
    product = db["product"].find_one(
        {"_id": oid(payload.product_id), "store_id": payload.store_id, "status": "active"}
    )
    if not product:
        raise HTTPException(status_code=404, detail="Product not found or not available")

    cart_doc = get_or_create_cart(session_id, payload.store_id)
    items = _cart_items(cart_doc)
    line = next((item for item in items if item.product_id == payload.product_id), None)
    wanted = payload.quantity + (line.quantity if line else 0)
    if product.get("stock", 0) < wanted:
        raise HTTPException(status_code=400, detail="Insufficient stock")

    if line:
        line.quantity = wanted
        if payload.note:
            line.note = payload.note
    else:
        images = product.get("images") or [""]
        items.append(CartItem(
            product_id=payload.product_id,
            name=product["name"],
            description=product.get("description", ""),
            price=product["price"],
            image=images[0],
            quantity=payload.quantity,
            note=payload.note,
        ))
    return envelope(save_cart(cart_doc, items))


@app.put("/api/cart/update")
def update_cart_item(payload: CartUpdateRequest, session_id: str = Depends(get_session_id)):
    cart_doc = db["cart"].find_one({"session_id": session_id, "store_id": payload.store_id})
    if not cart_doc:
        raise HTTPException(status_code=404, detail="Cart not found")
    items = _cart_items(cart_doc)
    line = next((item for item in items if item.product_id == payload.product_id), None)
    if not line:
        raise HTTPException(status_code=404, detail="Product not in cart")

    if payload.quantity is not None:
        product = db["product"].find_one(
            {"_id": oid(payload.product_id), "store_id": payload.store_id, "status": "active"}
        )
        if not product:
            raise HTTPException(status_code=404, detail="Product not found or not available")
        if product.get("stock", 0) < payload.quantity:
            raise HTTPException(status_code=400, detail="Insufficient stock")
        line.quantity = payload.quantity
    if payload.note is not None:
        line.note = payload.note
    return envelope(save_cart(cart_doc, items))


@app.delete("/api/cart/remove")
def remove_from_cart(store_id: str, product_id: str, session_id: str = Depends(get_session_id)):
    cart_doc = db["cart"].find_one({"session_id": session_id, "store_id": store_id})
    if not cart_doc:
        return envelope(cart_view({"store_id": store_id}))
    items = [item for item in _cart_items(cart_doc) if item.product_id != product_id]
    return envelope(save_cart(cart_doc, items))


@app.delete("/api/cart/clear")
def clear_cart(store_id: str, session_id: str = Depends(get_session_id)):
    cart_doc = db["cart"].find_one({"session_id": session_id, "store_id": store_id})
    if not cart_doc:
        return envelope(cart_view({"store_id": store_id}))
    return envelope(save_cart(cart_doc, []))


# Orders

def next_order_number() -> str:
    try:
        counter = db["counter"].find_one_and_update(
            {"_id": "order"},
            {"$inc": {"seq": 1}},
            upsert=True,
            return_document=ReturnDocument.AFTER,
        )
        return f"#{counter['seq']:06d}"
    except PyMongoError:
        logger.warning("Order counter unavailable, numbering by timestamp")
        return f"#{int(time.time() * 1000)}"


def release_stock(reserved: List[tuple]) -> None:
    for product_id, quantity in reserved:
        db["product"].update_one({"_id": ObjectId(product_id)}, {"$inc": {"stock": quantity}})
    if reserved:
        logger.warning("Order aborted, restored stock for %s products", len(reserved))


def _merge_lines(lines: List[OrderLine]) -> Dict[str, dict]:
    merged: Dict[str, dict] = {}
    for line in lines:
        entry = merged.setdefault(line.product_id, {"quantity": 0, "note": None})
        entry["quantity"] += line.quantity
        entry["note"] = entry["note"] or line.note
    return merged


@app.post("/api/orders/create", status_code=201)
def create_order(payload: OrderCreateRequest, shipping: Callable = Depends(get_shipping_calculator)):
    """
    Place an order against a store's inventory.

    Every product is validated first, then stock is reserved with one conditional
    decrement per product. If any decrement finds too little stock, the ones
    already taken are put back and nothing is written. Totals come from the live
    product prices plus the shipping calculator.
    """
    store = get_store_or_404(payload.store_id)
    lines = _merge_lines(payload.items)

    products = {}
    for product_id, line in lines.items():
        product = None
        if ObjectId.is_valid(product_id):
            product = db["product"].find_one({"_id": ObjectId(product_id), "store_id": payload.store_id})
        if not product:
            raise HTTPException(status_code=400, detail=f"Product {product_id} not found")
        if product.get("status", "active") != "active":
            raise HTTPException(status_code=400, detail=f"Product {product['name']} is not available")
        if product.get("stock", 0) < line["quantity"]:
            raise HTTPException(status_code=400, detail=f"Insufficient stock for {product['name']}")
        products[product_id] = product

    reserved = []
    try:
        for product_id, line in lines.items():
            res = db["product"].update_one(
                {"_id": ObjectId(product_id), "stock": {"$gte": line["quantity"]}},
                {"$inc": {"stock": -line["quantity"]}, "$set": {"updated_at": utcnow()}},
            )
            if res.modified_count == 0:
                raise HTTPException(status_code=400, detail=f"Insufficient stock for {products[product_id]['name']}")
            reserved.append((product_id, line["quantity"]))

        items = [
            OrderItem(
                product_id=product_id,
                name=products[product_id]["name"],
                quantity=line["quantity"],
                price=products[product_id]["price"],
                note=line["note"],
            )
            for product_id, line in lines.items()
        ]
        subtotal = round(sum(item.price * item.quantity for item in items), 2)
        shipping_cost = shipping(store, subtotal)
        order = Order(
            order_number=next_order_number(),
            customer=payload.customer,
            store_id=payload.store_id,
            items=items,
            totals=OrderTotals(subtotal=subtotal, shipping=shipping_cost, total=round(subtotal + shipping_cost, 2)),
            payment=PaymentInfo(method=payload.payment.method, details=payload.payment.details),
        )
        order_id = create_document("order", order)
    except Exception:
        release_stock(reserved)
        raise

    doc = db["order"].find_one({"_id": ObjectId(order_id)})
    logger.info("Order %s placed at store %s (total %.2f)", order.order_number, payload.store_id, order.totals.total)
    return envelope({
        "order_id": order_id,
        "order_number": doc["order_number"],
        "status": doc["status"],
        "created_at": doc["created_at"],
        "totals": doc["totals"],
    })


def order_scope(user: dict, store_id: Optional[str] = None) -> dict:
    """Orders (and products) an admin may see: platform admins everything, store admins their own stores."""
    if is_platform_admin(user):
        return {"store_id": store_id} if store_id else {}
    own = owned_store_ids(user)
    if store_id:
        if store_id not in own:
            raise HTTPException(status_code=403, detail="Not authorized to view this store")
        return {"store_id": store_id}
    return {"store_id": {"$in": own}}


def get_order_or_404(order_id: str) -> dict:
    order = db["order"].find_one({"_id": oid(order_id)})
    if not order:
        raise HTTPException(status_code=404, detail="Order not found")
    return order


def require_order_access(user: dict, order: dict, action: str = "view") -> None:
    if is_platform_admin(user):
        return
    if order.get("store_id") not in owned_store_ids(user):
        raise HTTPException(status_code=403, detail=f"Not authorized to {action} this order")


def day_range(day: str):
    try:
        start = datetime.strptime(day, "%Y-%m-%d")
    except ValueError:
        raise HTTPException(status_code=400, detail="date must be formatted YYYY-MM-DD")
    return start, start + timedelta(days=1)


@app.get("/api/orders/admin/orders")
def list_orders(
    status: Optional[OrderStatus] = None,
    date: Optional[str] = None,
    store_id: Optional[str] = None,
    page: int = Query(1, ge=1),
    limit: int = Query(10, ge=1, le=100),
    user: dict = Depends(store_admins),
):
    query = order_scope(user, store_id)
    if status:
        query["status"] = status.value
    if date:
        start, end = day_range(date)
        query["created_at"] = {"$gte": start, "$lt": end}
    orders, pagination = paginate("order", query, page, limit)
    return envelope({"orders": orders, "pagination": pagination})


@app.get("/api/orders/admin/orders/{order_id}")
def get_order(order_id: str, user: dict = Depends(store_admins)):
    order = get_order_or_404(order_id)
    require_order_access(user, order)
    return envelope(serialize(order))


@app.put("/api/orders/admin/orders/{order_id}/status")
def update_order_status(order_id: str, payload: OrderStatusUpdate, user: dict = Depends(store_admins)):
    order = get_order_or_404(order_id)
    require_order_access(user, order, "update")

    current = OrderStatus(order.get("status", OrderStatus.PENDING.value))
    # same status with notes only edits the notes
    notes_only = payload.status == current and payload.notes is not None
    if not notes_only and not can_transition(current, payload.status):
        logger.info("Rejected order %s transition %s -> %s", order_id, current.value, payload.status.value)
        raise HTTPException(
            status_code=400,
            detail=f"Cannot change order status from {current.value} to {payload.status.value}",
        )

    updates = {"status": payload.status.value, "updated_at": utcnow()}
    if payload.notes is not None:
        updates["notes"] = payload.notes
    # guard on the status we validated against
    doc = db["order"].find_one_and_update(
        {"_id": order["_id"], "status": current.value},
        {"$set": updates},
        return_document=ReturnDocument.AFTER,
    )
    if not doc:
        raise HTTPException(status_code=400, detail="Order status was changed by another request")
    return envelope(serialize(doc))


@app.put("/api/orders/admin/orders/{order_id}/payment")
def update_payment_status(order_id: str, payload: PaymentStatusUpdate, user: dict = Depends(store_admins)):
    order = get_order_or_404(order_id)
    require_order_access(user, order, "update")

    current = order.get("payment", {}).get("status", "pending")
    if current != "pending" or payload.status == "pending":
        raise HTTPException(status_code=400, detail=f"Cannot change payment status from {current} to {payload.status}")
    doc = db["order"].find_one_and_update(
        {"_id": order["_id"], "payment.status": "pending"},
        {"$set": {"payment.status": payload.status, "updated_at": utcnow()}},
        return_document=ReturnDocument.AFTER,
    )
    if not doc:
        raise HTTPException(status_code=400, detail="Payment status was changed by another request")
    return envelope(serialize(doc))


def _revenue_since(scope: dict, since: datetime) -> float:
    pipeline = [
        {"$match": {**scope, "created_at": {"$gte": since}, "status": {"$ne": OrderStatus.CANCELLED.value}}},
        {"$group": {"_id": None, "total": {"$sum": "$totals.total"}}},
    ]
    res = list(db["order"].aggregate(pipeline))
    return round(res[0]["total"], 2) if res else 0


@app.get("/api/orders/admin/stats")
def admin_stats(user: dict = Depends(store_admins)):
    scope = order_scope(user)
    now = utcnow()
    today = now.replace(hour=0, minute=0, second=0, microsecond=0)

    return envelope({
        "total_products": db["product"].count_documents(scope),
        "active_products": db["product"].count_documents({**scope, "status": "active"}),
        "total_orders": db["order"].count_documents(scope),
        "pending_orders": db["order"].count_documents({**scope, "status": OrderStatus.PENDING.value}),
        "revenue": {
            "today": _revenue_since(scope, today),
            "week": _revenue_since(scope, now - timedelta(days=7)),
            "month": _revenue_since(scope, now - timedelta(days=30)),
        },
    })


@app.get("/api/orders/my-orders")
def my_orders(
    status: Optional[OrderStatus] = None,
    page: int = Query(1, ge=1),
    limit: int = Query(10, ge=1, le=100),
    user: dict = Depends(get_current_user),
):
    query = {"customer.email": user["email"].lower()}
    if status:
        query["status"] = status.value
    orders, pagination = paginate("order", query, page, limit)
    return envelope({"orders": orders, "pagination": pagination})


@app.get("/api/orders/my-orders/{order_id}")
def my_order(order_id: str, user: dict = Depends(get_current_user)):
    order = get_order_or_404(order_id)
    if order.get("customer", {}).get("email") != user["email"].lower():
        raise HTTPException(status_code=403, detail="Not authorized to view this order")
    return envelope(serialize(order))


if __name__ == "__main__":
    import uvicorn
    port = int(os.getenv("PORT", 8000))
    uvicorn.run(app, host="0.0.0.0", port=port)
