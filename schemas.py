"""
Database Schemas for the Thulodeal storefront

Each Pydantic model correlates to a MongoDB collection. The collection name is the lowercase of the class name.
- User -> "user"
- Product -> "product"
- Bundle -> "bundle"
- Promocode -> "promocode"
- Order -> "order"
- Upload -> "upload"

CartItem lines are not stored in MongoDB; they live in the cart store and are
copied into an Order at checkout.
"""

from datetime import datetime
from typing import List, Literal, Optional

from pydantic import BaseModel, EmailStr, Field, field_validator

Category = Literal["shirts", "jeans", "shoes", "jackets", "accessories", "bundles"]
OrderStatus = Literal["Pending", "Shipped", "Delivered", "Cancelled"]
PaymentMethod = Literal["COD", "eSewa", "Khalti", "Binance"]
PaymentStatus = Literal["Submitted", "Verifying", "Confirmed", "Failed"]

BUNDLE_SIZE = "One Size"


class User(BaseModel):
    name: str = Field(..., description="Full name")
    email: EmailStr = Field(..., description="Email address")
    password_hash: str = Field(..., description="BCrypt password hash")
    is_admin: bool = Field(False, description="Is admin user")


class Product(BaseModel):
    name: str = Field(..., min_length=1, description="Display name")
    price: float = Field(..., ge=0, description="Unit price in whole currency units")
    category: Category = Field(..., description="Product category")
    images: List[str] = Field(..., min_length=1, description="Image URLs, first is the cover")
    sizes: List[str] = Field(..., min_length=1, description="Available size labels")
    description: str = Field("", description="Product description")
    stock: int = Field(0, ge=0, description="Units in stock")
    is_bundle: bool = Field(False, description="Materialized from a Bundle")
    bundle_items: List[str] = Field(default_factory=list, description="Component product ids")


class CatalogProduct(Product):
    """A product as read back from the catalog, carrying its id."""

    id: str
    created_at: Optional[str] = None


class CartItem(CatalogProduct):
    selected_size: str
    quantity: int = Field(1, ge=1)


class Bundle(BaseModel):
    name: str = Field(..., min_length=1)
    price: float = Field(..., ge=0)
    product_ids: List[str] = Field(..., min_length=2, description="Component product ids")
    image: str
    description: str = ""
    active: bool = True


class Promocode(BaseModel):
    code: str = Field(..., min_length=1)
    discount: float = Field(..., gt=0, le=100, description="Percentage off")
    is_active: bool = True
    expiry_date: Optional[str] = Field(None, description="Last valid day, YYYY-MM-DD")

    @field_validator("expiry_date")
    @classmethod
    def check_expiry_date(cls, v):
        if v is None or not v.strip():
            return None
        try:
            return datetime.strptime(v.strip(), "%Y-%m-%d").date().isoformat()
        except ValueError:
            raise ValueError("expiry_date must be YYYY-MM-DD")


class PaymentDetails(BaseModel):
    sender_id: Optional[str] = None
    transaction_id: Optional[str] = None
    screenshot_url: Optional[str] = None
    note: Optional[str] = None


class ShippingAddress(BaseModel):
    full_name: str = Field(..., min_length=1)
    address: str = Field(..., min_length=1)
    city: str = Field(..., min_length=1)
    zip_code: str = Field(..., min_length=1)


class Order(BaseModel):
    user_id: str = Field(..., description="User placing the order")
    user_email: Optional[str] = None
    items: List[CartItem]
    total_price: float = Field(..., ge=0)
    discount_amount: float = Field(0, ge=0)
    promo_code: Optional[str] = None
    status: OrderStatus = "Pending"
    payment_method: PaymentMethod = "COD"
    payment_status: PaymentStatus = "Submitted"
    payment_details: PaymentDetails = Field(default_factory=PaymentDetails)
    shipping_address: ShippingAddress


class Upload(BaseModel):
    filename: str
    content_type: str
    size: int = Field(..., ge=0)
    data_b64: str = Field(..., description="Base64-encoded file contents")
    owner_id: Optional[str] = None


# Lightweight request models
class SignupRequest(BaseModel):
    name: str
    email: EmailStr
    password: str = Field(..., min_length=6)


class LoginRequest(BaseModel):
    email: EmailStr
    password: str


class CheckoutRequest(BaseModel):
    shipping_address: ShippingAddress
    payment_method: PaymentMethod = "COD"
    payment_details: PaymentDetails = Field(default_factory=PaymentDetails)
    promo_code: Optional[str] = None


class ProfileUpdate(BaseModel):
    name: str = Field(..., min_length=1)


class PasswordChange(BaseModel):
    current_password: str
    new_password: str
    confirm_password: str
