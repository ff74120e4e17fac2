"""
Database Schemas for the shop API

Each Pydantic collection model represents a MongoDB collection.
Collection name is the snake_case of the class name (CartItem -> cart_item).
Request bodies used by main.py live at the bottom of the module.
"""
from enum import Enum
from typing import Optional
from pydantic import BaseModel, Field, EmailStr
from datetime import datetime


class Role(str, Enum):
    CUSTOMER = "CUSTOMER"
    ADMIN = "ADMIN"


class AddressType(str, Enum):
    SHIPPING = "SHIPPING"
    BILLING = "BILLING"


class OrderStatus(str, Enum):
    PENDING = "PENDING"
    PAID = "PAID"
    SHIPPED = "SHIPPED"


class User(BaseModel):
    email: EmailStr
    first_name: str
    last_name: str
    password_hash: Optional[str] = None
    role: Role = Role.CUSTOMER


class Address(BaseModel):
    user_id: str
    street: str
    city: str
    state: str
    postal_code: str
    country: str
    type: AddressType


class Category(BaseModel):
    name: str
    description: Optional[str] = None


class Product(BaseModel):
    category_id: str
    name: str
    description: Optional[str] = None
    price: float = Field(..., ge=0)
    stock_quantity: int = Field(0, ge=0)
    image_url: Optional[str] = None


class Cart(BaseModel):
    user_id: str
    created_at: Optional[datetime] = None


class CartItem(BaseModel):
    cart_id: str
    product_id: str
    quantity: int = Field(..., ge=1)


class Order(BaseModel):
    user_id: str
    shipping_address_id: str
    billing_address_id: str
    total_amount: float = Field(..., ge=0)
    status: OrderStatus = OrderStatus.PENDING
    created_at: Optional[datetime] = None


class OrderItem(BaseModel):
    order_id: str
    product_id: str
    product_name: str
    quantity: int = Field(..., ge=1)
    price_at_purchase: float = Field(..., ge=0)


# Request bodies

class UserCreate(BaseModel):
    email: EmailStr
    password: str = Field(..., min_length=6)
    first_name: str = Field(..., min_length=1)
    last_name: str = Field(..., min_length=1)


class LoginRequest(BaseModel):
    email: EmailStr
    password: str


class UserUpdate(BaseModel):
    first_name: Optional[str] = None
    last_name: Optional[str] = None
    email: Optional[EmailStr] = None
    role: Optional[Role] = None


class AddressCreate(BaseModel):
    street: str = Field(..., min_length=1)
    city: str = Field(..., min_length=1)
    state: str = Field(..., min_length=1)
    postal_code: str = Field(..., min_length=1)
    country: str = Field(..., min_length=1)
    type: AddressType
    user_id: Optional[str] = None


class AddressUpdate(BaseModel):
    street: Optional[str] = None
    city: Optional[str] = None
    state: Optional[str] = None
    postal_code: Optional[str] = None
    country: Optional[str] = None
    type: Optional[AddressType] = None
    user_id: Optional[str] = None


class CategoryCreate(BaseModel):
    name: str = Field(..., min_length=1)
    description: Optional[str] = None


class CategoryUpdate(BaseModel):
    name: Optional[str] = None
    description: Optional[str] = None


class ProductCreate(BaseModel):
    category_id: str
    name: str = Field(..., min_length=1)
    description: Optional[str] = None
    price: float = Field(..., ge=0)
    stock_quantity: int = Field(0, ge=0)
    image_url: Optional[str] = None


class ProductUpdate(BaseModel):
    # No stock_quantity: stock is written only by order placement.
    category_id: Optional[str] = None
    name: Optional[str] = None
    description: Optional[str] = None
    price: Optional[float] = Field(None, ge=0)
    image_url: Optional[str] = None


class CartItemAdd(BaseModel):
    product_id: str
    quantity: int = Field(..., ge=1)


class CartItemUpdate(BaseModel):
    quantity: int = Field(..., ge=1)


class OrderCreate(BaseModel):
    shipping_address_id: str
    billing_address_id: str


class OrderStatusUpdate(BaseModel):
    # Plain str so unknown values reach the status manager and fail as invalid_status.
    status: str
