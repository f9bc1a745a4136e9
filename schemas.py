"""
Database Schemas for the GST storefront

Each Pydantic model represents a collection in MongoDB.
Class name lowercased = collection name (e.g., Product -> "product").
Sizes and order items are embedded in their parent documents.
"""
from pydantic import BaseModel, Field, EmailStr, model_validator
from typing import Optional, List, Literal
from datetime import datetime

GstType = Literal["inclusive", "exclusive"]


class Address(BaseModel):
    full_name: str
    phone: str
    email: EmailStr
    address_line: str
    city: str
    state: str
    country: str = "India"
    pincode: str = Field(..., pattern=r"^\d{6}$")


class User(BaseModel):
    name: str
    email: EmailStr
    password_hash: str = Field(..., description="bcrypt hash")
    role: Literal["customer", "admin"] = "customer"
    phone: Optional[str] = None
    is_active: bool = True
    addresses: List[Address] = []


class Size(BaseModel):
    size_type: Literal["clothing", "shoes", "weight", "custom"]
    size_value: str = Field(..., description="Label shown to the customer, e.g. M, 42, 2.5kg")
    display_order: int = 0
    is_available: bool = True
    price_modifier_type: Literal["fixed", "percentage", "none"] = "none"
    price_modifier_value: Optional[float] = None
    price: Optional[float] = Field(None, ge=0)
    mrp: Optional[float] = Field(None, ge=0)

    @model_validator(mode="after")
    def check_modifier(self):
        if self.price_modifier_type == "fixed" and self.price is None:
            raise ValueError("a fixed size price needs 'price'")
        if self.price_modifier_type == "percentage" and self.price_modifier_value is None:
            raise ValueError("a percentage size price needs 'price_modifier_value'")
        return self


class Product(BaseModel):
    title: str
    slug: str
    description: Optional[str] = None
    price: float = Field(..., ge=0, description="Base price")
    mrp: Optional[float] = Field(None, ge=0)
    gst_rate: float = Field(0, ge=0, description="GST percentage")
    gst_type: GstType = "exclusive"
    currency: str = "INR"
    category: str
    brand: Optional[str] = None
    stock: int = 0
    images: List[str] = []
    sizes: List[Size] = []
    is_active: bool = True

    @model_validator(mode="after")
    def order_sizes(self):
        self.sizes = sorted(self.sizes, key=lambda s: s.display_order)
        return self


class CartItem(BaseModel):
    product_id: str
    quantity: int = Field(1, ge=1)
    selected_size: Optional[str] = None


class Cart(BaseModel):
    user_id: str
    items: List[CartItem] = []


class OrderItem(BaseModel):
    product_id: str
    title: str
    quantity: int = Field(..., ge=1)
    selected_size: Optional[str] = None
    price_at_purchase: float
    # GST snapshot taken at checkout
    price_before_gst: float
    gst_amount: float
    final_price: float
    gst_rate: float
    gst_type: GstType


class PriceBreakdownTotals(BaseModel):
    subtotal_before_gst: float
    total_gst_amount: float
    shipping_charge: float
    grand_total: float
    total_items: int


class StatusChange(BaseModel):
    status: str
    at: datetime
    by: Optional[str] = None


class Order(BaseModel):
    user_id: str
    items: List[OrderItem]
    status: Literal["pending", "dispatched", "delivered", "cancelled"] = "pending"
    payment_mode: Literal["COD", "Online"] = "COD"
    currency: str = "INR"
    # address is copied, not referenced
    full_name: str
    phone: str
    email: EmailStr
    address_line: str
    city: str
    state: str
    country: str
    pincode: str
    shipping_charge: float = 0
    price_breakdown: PriceBreakdownTotals
    tracking_id: Optional[str] = None
    courier_company: Optional[str] = None
    reject_reason: Optional[str] = None
    status_history: List[StatusChange] = []


class ShippingPincode(BaseModel):
    pincode: str = Field(..., pattern=r"^\d{6}$")
    amount: float = Field(..., ge=0)
    is_active: bool = True


class Review(BaseModel):
    product_id: str
    order_id: str
    user_id: str
    rating: int = Field(..., ge=1, le=5)
    comment: Optional[str] = None

# The database viewer reads these from /schema
