import hashlib
import hmac
import logging
import os
import random
import re
import secrets
import string
import time
from contextlib import asynccontextmanager
from datetime import datetime, timedelta, timezone
from typing import Literal, Optional

import jwt
from bson.errors import InvalidId
from bson.objectid import ObjectId
from fastapi import Depends, FastAPI, HTTPException, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from pydantic import BaseModel, EmailStr, Field, ValidationError
from pymongo.errors import DuplicateKeyError, PyMongoError

from database import db, create_document, ensure_indexes, get_documents
from pricing import EMPTY_TOTALS, calculate_cart_total
from schemas import (
    MAX_PRICE,
    MAX_QUANTITY,
    Address,
    AddressFields,
    AddressUpdate,
    CartItem,
    Document,
    Order as OrderSchema,
    Product as ProductSchema,
    User as UserSchema,
    format_errors,
)

logging.basicConfig(
    level=os.getenv("LOG_LEVEL", "INFO").upper(),
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger("pharmasoft.api")

APP_ENV = os.getenv("APP_ENV", "production")
JWT_SECRET = os.getenv("JWT_SECRET", "pharmasoft-secret-key-change-in-production")
JWT_ALGO = "HS256"
TOKEN_TTL = timedelta(days=7)
PASSWORD_ITERATIONS = 100_000
STARTED_AT = time.monotonic()


@asynccontextmanager
async def lifespan(app: FastAPI):
    if db is not None:
        try:
            ensure_indexes()
        except PyMongoError as e:
            logger.warning("Could not create indexes: %s", e)
    yield


app = FastAPI(title="PharmaSoft API", lifespan=lifespan)

app.add_middleware(
    CORSMiddleware,
    allow_origins=os.getenv("CORS_ORIGINS", "*").split(","),
    allow_credentials=True,
    allow_methods=["GET", "POST", "PUT", "DELETE", "OPTIONS"],
    allow_headers=["*"],
)


@app.middleware("http")
async def log_requests(request: Request, call_next):
    response = await call_next(request)
    logger.info("%s %s -> %s", request.method, request.url.path, response.status_code)
    return response


# ----------------------- Errors -----------------------
@app.exception_handler(RequestValidationError)
async def request_validation_handler(request: Request, exc: RequestValidationError):
    return JSONResponse(status_code=400, content={"detail": format_errors(exc.errors())})


@app.exception_handler(ValidationError)
async def model_validation_handler(request: Request, exc: ValidationError):
    return JSONResponse(status_code=400, content={"detail": format_errors(exc.errors())})


@app.exception_handler(Exception)
async def unhandled_error_handler(request: Request, exc: Exception):
    logger.exception("Unhandled error on %s %s", request.method, request.url.path)
    message = str(exc) if APP_ENV == "development" else "Something went wrong"
    return JSONResponse(status_code=500, content={"detail": message})


# ----------------------- Utils -----------------------
security = HTTPBearer(auto_error=False)


def require_db():
    if db is None:
        raise HTTPException(status_code=500, detail="Database not configured")
    return db


def users():
    return require_db()["user"]


def products():
    return require_db()["product"]


def serialize_doc(doc):
    if not doc:
        return doc
    doc = dict(doc)
    _id = doc.get("_id")
    if isinstance(_id, ObjectId):
        doc["id"] = str(_id)
        del doc["_id"]
    # convert datetimes
    for k, v in list(doc.items()):
        if isinstance(v, datetime):
            doc[k] = v.isoformat()
    return doc


def public_user(user: dict) -> dict:
    return {"id": str(user["_id"]), "email": user["email"], "name": user["name"]}


def hash_password(password: str, salt: Optional[str] = None) -> str:
    salt = salt or secrets.token_hex(16)
    digest = hashlib.pbkdf2_hmac("sha256", password.encode(), salt.encode(), PASSWORD_ITERATIONS)
    return f"pbkdf2_sha256${PASSWORD_ITERATIONS}${salt}${digest.hex()}"


def verify_password(password: str, stored: str) -> bool:
    try:
        _, iterations, salt, expected = stored.split("$")
    except (AttributeError, ValueError):
        return False
    digest = hashlib.pbkdf2_hmac("sha256", password.encode(), salt.encode(), int(iterations))
    return hmac.compare_digest(digest.hex(), expected)


def create_token(payload: dict) -> str:
    exp = datetime.now(timezone.utc) + TOKEN_TTL
    to_encode = {**payload, "exp": exp}
    return jwt.encode(to_encode, JWT_SECRET, algorithm=JWT_ALGO)


def decode_token(token: str) -> dict:
    try:
        return jwt.decode(token, JWT_SECRET, algorithms=[JWT_ALGO])
    except jwt.InvalidTokenError:
        # ExpiredSignatureError is a subclass
        raise HTTPException(status_code=403, detail="Invalid or expired token")


def get_current_user(credentials: Optional[HTTPAuthorizationCredentials] = Depends(security)):
    if credentials is None:
        raise HTTPException(status_code=401, detail="Authentication required")
    payload = decode_token(credentials.credentials)
    if not payload.get("userId"):
        raise HTTPException(status_code=403, detail="Invalid or expired token")
    try:
        user_id = ObjectId(payload["userId"])
    except (InvalidId, TypeError):
        raise HTTPException(status_code=403, detail="Invalid or expired token")
    user = users().find_one({"_id": user_id})
    if not user:
        raise HTTPException(status_code=401, detail="User not found")
    return user


def save_user(user: dict, *fields: str):
    """Write back the given embedded lists. Last write wins."""
    update = {f: user[f] for f in fields}
    update["updatedAt"] = datetime.now(timezone.utc)
    users().update_one({"_id": user["_id"]}, {"$set": update})


def cart_response(cart: list) -> dict:
    return {"cart": cart, "calculations": calculate_cart_total(cart)}


def generate_order_id() -> str:
    suffix = "".join(random.choices(string.ascii_uppercase + string.digits, k=6))
    return f"ORD-{int(time.time() * 1000)}-{suffix}"


def find_address_index(addresses: list, address_id: str) -> int:
    """Addresses are addressed by their id or by their position in the list."""
    for idx, addr in enumerate(addresses):
        if str(idx) == address_id or addr.get("id") == address_id:
            return idx
    return -1


# ----------------------- Models -----------------------
class RegisterBody(BaseModel):
    email: EmailStr
    password: str = Field(..., min_length=6)
    name: str


class LoginBody(BaseModel):
    email: EmailStr
    password: str


class CartAddBody(Document):
    name: str = Field(..., min_length=1)
    price: float = Field(..., gt=0, le=MAX_PRICE, allow_inf_nan=False)
    image: Optional[str] = None


class CartUpdateBody(Document):
    name: str
    quantity: int = Field(..., ge=0, le=MAX_QUANTITY)


class CartRemoveBody(Document):
    name: str


PaymentMethod = Literal["cod", "card", "upi", "wallet", "stripe", "razorpay"]


class OrderCreateBody(Document):
    payment_method: Optional[PaymentMethod] = None
    payment_id: Optional[str] = None
    delivery_address: Optional[AddressFields] = None


# ----------------------- Health -----------------------
@app.get("/")
def root():
    return {"message": "PharmaSoft API running"}


@app.get("/api/health")
def health():
    response = {
        "status": "OK",
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "uptime": round(time.monotonic() - STARTED_AT, 3),
        "database": "not configured",
    }
    try:
        if db is not None:
            db.list_collection_names()
            response["database"] = "connected"
    except Exception as e:
        response["database"] = f"error: {str(e)[:80]}"
    return response


# ----------------------- Auth -----------------------
@app.post("/api/auth/register")
def register(body: RegisterBody):
    name = body.name.strip()
    if not name:
        raise HTTPException(status_code=400, detail="All fields required")
    email = body.email.lower()
    if users().find_one({"email": email}):
        raise HTTPException(status_code=400, detail="Email already registered")
    user = UserSchema(email=email, password=hash_password(body.password), name=name)
    try:
        user_id = create_document("user", user)
    except DuplicateKeyError:
        raise HTTPException(status_code=400, detail="Email already registered")
    token = create_token({"userId": user_id})
    logger.info("New user registered: %s", email)
    return {"token": token, "user": {"id": user_id, "email": email, "name": name}}


@app.post("/api/auth/login")
def login(body: LoginBody):
    user = users().find_one({"email": body.email.lower()})
    if not user or not verify_password(body.password, user.get("password")):
        raise HTTPException(status_code=401, detail="Invalid credentials")
    token = create_token({"userId": str(user["_id"])})
    logger.info("User logged in: %s", user["email"])
    return {"token": token, "user": public_user(user)}


# ----------------------- Products -----------------------
@app.get("/api/products")
def list_products(category: Optional[str] = None, search: Optional[str] = None):
    filt = {"isActive": True}
    if category:
        filt["category"] = category
    if search:
        pattern = {"$regex": re.escape(search), "$options": "i"}
        filt["$or"] = [{"name": pattern}, {"description": pattern}, {"keywords": pattern}]
    require_db()
    return {"products": [serialize_doc(p) for p in get_documents("product", filt)]}


# ----------------------- Cart -----------------------
@app.get("/api/cart")
def get_cart(user=Depends(get_current_user)):
    return cart_response(user.get("cart", []))


@app.post("/api/cart/add")
def add_to_cart(body: CartAddBody, user=Depends(get_current_user)):
    cart = user.setdefault("cart", [])
    existing = next((item for item in cart if item["name"] == body.name), None)
    if existing:
        if existing["quantity"] >= MAX_QUANTITY:
            raise HTTPException(status_code=400, detail=f"quantity: cannot exceed {MAX_QUANTITY}")
        existing["quantity"] += 1
    else:
        item = CartItem(name=body.name, price=body.price, image=body.image, quantity=1)
        cart.append(item.model_dump(by_alias=True))
    save_user(user, "cart")
    return cart_response(cart)


@app.put("/api/cart/update")
def update_cart(body: CartUpdateBody, user=Depends(get_current_user)):
    cart = user.get("cart", [])
    if body.quantity == 0:
        cart = [item for item in cart if item["name"] != body.name]
    else:
        for item in cart:
            if item["name"] == body.name:
                item["quantity"] = body.quantity
    user["cart"] = cart
    save_user(user, "cart")
    return cart_response(cart)


@app.delete("/api/cart/remove")
def remove_from_cart(body: CartRemoveBody, user=Depends(get_current_user)):
    user["cart"] = [item for item in user.get("cart", []) if item["name"] != body.name]
    save_user(user, "cart")
    return cart_response(user["cart"])


@app.delete("/api/cart/clear")
def clear_cart(user=Depends(get_current_user)):
    user["cart"] = []
    save_user(user, "cart")
    return {"cart": [], "calculations": dict(EMPTY_TOTALS)}


# ----------------------- Orders -----------------------
@app.post("/api/orders")
def create_order(body: OrderCreateBody, user=Depends(get_current_user)):
    cart = user.get("cart", [])
    if not cart:
        raise HTTPException(status_code=400, detail="Cart is empty")

    if body.delivery_address is not None:
        delivery = body.delivery_address
    else:
        default = next((a for a in user.get("addresses", []) if a.get("isDefault")), None)
        if default is None:
            raise HTTPException(status_code=400, detail="Delivery address required")
        delivery = AddressFields.model_validate(default)

    payment_method = body.payment_method or "cod"
    order = OrderSchema(
        order_id=generate_order_id(),
        items=[CartItem.model_validate(item) for item in cart],
        total=calculate_cart_total(cart)["total"],
        delivery_address=delivery.model_dump(by_alias=True),
        payment_method=payment_method,
        payment_id=body.payment_id,
        payment_status="pending" if payment_method == "cod" else "completed",
        created_at=datetime.now(timezone.utc),
    )
    order_doc = order.model_dump(by_alias=True)
    user.setdefault("orders", []).append(order_doc)
    user["cart"] = []
    save_user(user, "orders", "cart")
    logger.info("Order %s placed by %s", order.order_id, user["email"])
    return {"order": order_doc}


@app.get("/api/orders")
def list_orders(user=Depends(get_current_user)):
    orders = sorted(user.get("orders", []), key=lambda o: o["createdAt"], reverse=True)
    return {"orders": orders}


# ----------------------- Addresses -----------------------
@app.get("/api/addresses")
def list_addresses(user=Depends(get_current_user)):
    return {"addresses": user.get("addresses", [])}


@app.post("/api/addresses")
def add_address(body: AddressFields, user=Depends(get_current_user)):
    addresses = user.setdefault("addresses", [])
    make_default = body.is_default or not addresses
    if make_default:
        for addr in addresses:
            addr["isDefault"] = False
    fields = body.model_dump()
    fields["is_default"] = make_default
    new_address = Address(id=str(ObjectId()), **fields).model_dump(by_alias=True)
    addresses.append(new_address)
    save_user(user, "addresses")
    return {"address": new_address}


@app.put("/api/addresses/{address_id}")
def update_address(address_id: str, body: AddressUpdate, user=Depends(get_current_user)):
    addresses = user.get("addresses", [])
    idx = find_address_index(addresses, address_id)
    if idx == -1:
        raise HTTPException(status_code=404, detail="Address not found")
    updates = body.model_dump(by_alias=True, exclude_unset=True, exclude_none=True)
    if updates.get("isDefault"):
        for addr in addresses:
            addr["isDefault"] = False
    merged = Address.model_validate({**addresses[idx], **updates})
    addresses[idx] = merged.model_dump(by_alias=True)
    save_user(user, "addresses")
    return {"address": addresses[idx]}


@app.delete("/api/addresses/{address_id}")
def delete_address(address_id: str, user=Depends(get_current_user)):
    addresses = user.get("addresses", [])
    idx = find_address_index(addresses, address_id)
    if idx == -1:
        raise HTTPException(status_code=404, detail="Address not found")
    del addresses[idx]
    save_user(user, "addresses")
    return {"success": True}


# ----------------------- Seed Demo Data -----------------------
DEMO_PRODUCTS = [
    {
        "name": "Paracetamol 500mg (15 tablets)",
        "price": 30,
        "oldPrice": 35,
        "discount": "14% OFF",
        "img": "https://images.unsplash.com/photo-1584308666744-24d5c474f2ae",
        "category": "generic",
        "description": "Relief from fever and mild to moderate pain.",
        "rating": 4.5,
        "keywords": ["fever", "pain", "headache"],
    },
    {
        "name": "Cetirizine 10mg (10 tablets)",
        "price": 25,
        "img": "https://images.unsplash.com/photo-1587854692152-cbe660dbde88",
        "category": "generic",
        "description": "Antihistamine for allergy symptoms.",
        "rating": 4.3,
        "keywords": ["allergy", "cold", "sneezing"],
    },
    {
        "name": "Ashwagandha Capsules",
        "price": 299,
        "oldPrice": 399,
        "discount": "25% OFF",
        "img": "https://images.unsplash.com/photo-1611073615830-9f76902c10fe",
        "category": "ayurvedic",
        "description": "Herbal supplement for stress and energy.",
        "rating": 4.6,
        "keywords": ["stress", "immunity", "herbal"],
    },
    {
        "name": "Chyawanprash 500g",
        "price": 210,
        "img": "https://images.unsplash.com/photo-1471864190281-a93a3070b6de",
        "category": "ayurvedic",
        "description": "Traditional immunity booster.",
        "rating": 4.4,
        "keywords": ["immunity", "herbal"],
    },
    {
        "name": "Digital Thermometer",
        "price": 199,
        "oldPrice": 249,
        "discount": "20% OFF",
        "img": "https://images.unsplash.com/photo-1584515933487-779824d29309",
        "category": "general",
        "description": "Fast and accurate temperature readings.",
        "rating": 4.2,
        "keywords": ["fever", "device"],
    },
    {
        "name": "Hand Sanitizer 500ml",
        "price": 150,
        "img": "https://images.unsplash.com/photo-1584483766114-2cea6facdf57",
        "category": "general",
        "description": "Kills 99.9% of germs without water.",
        "rating": 4.1,
        "keywords": ["hygiene", "germs"],
    },
    {
        "name": "Amoxicillin 500mg (10 capsules)",
        "price": 95,
        "img": "https://images.unsplash.com/photo-1550572017-edd951b55104",
        "category": "prescription",
        "description": "Antibiotic. Dispensed against a valid prescription.",
        "rating": 4.0,
        "keywords": ["antibiotic", "infection"],
    },
    {
        "name": "Metformin 500mg (20 tablets)",
        "price": 45,
        "img": "https://images.unsplash.com/photo-1631549916768-4119b2e5f926",
        "category": "prescription",
        "description": "For type 2 diabetes. Prescription required.",
        "rating": 4.2,
        "keywords": ["diabetes", "sugar"],
    },
]


@app.post("/api/products/seed")
def seed_products():
    if products().count_documents({}) > 0:
        return {"seeded": False, "products": products().count_documents({})}
    for p in DEMO_PRODUCTS:
        create_document("product", ProductSchema(**p))
    logger.info("Seeded %d demo products", len(DEMO_PRODUCTS))
    return {"seeded": True, "products": products().count_documents({})}


if __name__ == "__main__":
    import uvicorn
    port = int(os.getenv("PORT", 8000))
    uvicorn.run(app, host="0.0.0.0", port=port)
