"""
Database Schemas

Each Pydantic model represents a collection in MongoDB.
Model name lowercased is the collection name.
"""

from enum import Enum
from typing import List, Optional

from pydantic import BaseModel, EmailStr, Field


class Role(str, Enum):
    admin = "admin"
    vendor = "vendor"
    customer = "customer"


class OrderStatus(str, Enum):
    pending = "pending"
    confirmed = "confirmed"
    shipped = "shipped"
    delivered = "delivered"
    cancelled = "cancelled"


class User(BaseModel):
    name: str = Field(..., description="Full name")
    email: EmailStr = Field(..., description="Email address, stored lowercase")
    password_hash: str = Field(..., description="BCrypt hashed password")
    role: Role = Field(Role.customer, description="Role: admin | vendor | customer")
    profile_image: Optional[str] = Field(None, description="/uploads/... path")


class Category(BaseModel):
    name: str = Field(..., min_length=1)
    description: Optional[str] = None


class Product(BaseModel):
    name: str = Field(..., min_length=1)
    price: float = Field(..., gt=0)
    description: Optional[str] = None
    category_id: str = Field(..., description="Category ObjectId")
    in_stock: bool = True
    quantity: int = Field(0, ge=0, description="Units available")
    images: List[str] = Field(default_factory=list)


class CartItem(BaseModel):
    product_id: str
    quantity: int = Field(1, gt=0)


class OrderItem(BaseModel):
    product_id: str
    name: str
    price: float
    quantity: int = Field(..., ge=1)


class Order(BaseModel):
    user_id: str
    items: List[OrderItem]
    total_amount: float
    status: OrderStatus = OrderStatus.pending
    tracking_number: Optional[str] = None
