"""
Database Schemas for the PharmaSoft storefront

Each top-level Pydantic model corresponds to one MongoDB collection, named
after the lowercase of the class name. Cart items, orders and addresses are
embedded in the user document. Fields are stored and sent over the wire in
camelCase.
"""
import re
from datetime import datetime
from typing import List, Literal, Optional

from pydantic import BaseModel, ConfigDict, EmailStr, Field, field_validator
from pydantic.alias_generators import to_camel

PHONE_LENGTH = 10
PINCODE_LENGTH = 6
MAX_PRICE = 1_000_000
MAX_QUANTITY = 1_000


class Document(BaseModel):
    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        str_strip_whitespace=True,
    )


class CartItem(Document):
    name: str = Field(..., min_length=1)
    price: float = Field(..., gt=0, le=MAX_PRICE, allow_inf_nan=False)
    quantity: int = Field(1, ge=1, le=MAX_QUANTITY)
    image: Optional[str] = None


def _digits(value, length, label):
    if value is None:
        return value
    value = re.sub(r"\s", "", str(value))
    if not (value.isascii() and value.isdigit() and len(value) == length):
        raise ValueError(f"{label} must be {length} digits")
    return value


class AddressFields(Document):
    name: str = Field(..., min_length=1)
    phone: str
    address: str = Field(..., min_length=1)
    city: str = Field(..., min_length=1)
    state: str = Field(..., min_length=1)
    pincode: str
    is_default: bool = False

    @field_validator("phone", mode="before")
    @classmethod
    def check_phone(cls, v):
        return _digits(v, PHONE_LENGTH, "Phone")

    @field_validator("pincode", mode="before")
    @classmethod
    def check_pincode(cls, v):
        return _digits(v, PINCODE_LENGTH, "Pincode")


class Address(AddressFields):
    id: str


class AddressUpdate(Document):
    name: Optional[str] = Field(None, min_length=1)
    phone: Optional[str] = None
    address: Optional[str] = Field(None, min_length=1)
    city: Optional[str] = Field(None, min_length=1)
    state: Optional[str] = Field(None, min_length=1)
    pincode: Optional[str] = None
    is_default: Optional[bool] = None

    @field_validator("phone", mode="before")
    @classmethod
    def check_phone(cls, v):
        return _digits(v, PHONE_LENGTH, "Phone")

    @field_validator("pincode", mode="before")
    @classmethod
    def check_pincode(cls, v):
        return _digits(v, PINCODE_LENGTH, "Pincode")


class Order(Document):
    order_id: str
    items: List[CartItem]
    total: float
    delivery_address: dict
    payment_method: str = "cod"
    payment_id: Optional[str] = None
    payment_status: Literal["pending", "completed"] = "pending"
    status: str = "confirmed"
    created_at: datetime


class User(Document):
    email: EmailStr
    password: str = Field(..., description="Salted password hash")
    name: str = Field(..., min_length=1)
    cart: List[CartItem] = Field(default_factory=list)
    orders: List[Order] = Field(default_factory=list)
    addresses: List[Address] = Field(default_factory=list)


class Product(Document):
    name: str = Field(..., min_length=1)
    price: float = Field(..., ge=0)
    old_price: Optional[float] = Field(None, ge=0)
    discount: Optional[str] = None
    img: Optional[str] = None
    category: Literal["ayurvedic", "generic", "general", "prescription"]
    description: Optional[str] = None
    in_stock: bool = True
    rating: float = Field(0, ge=0, le=5)
    keywords: List[str] = Field(default_factory=list)
    is_active: bool = True


def format_errors(errors) -> str:
    """Turn the first pydantic error into a short 'field: message' string."""
    if not errors:
        return "Invalid request"
    err = errors[0]
    loc = [str(p) for p in err.get("loc", ()) if p not in ("body", "query", "path")]
    msg = err.get("msg", "Invalid value")
    if msg.startswith("Value error, "):
        msg = msg[len("Value error, "):]
    return f"{'.'.join(loc)}: {msg}" if loc else msg
