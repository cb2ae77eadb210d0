"""
Database Schemas for the Agri Supplies Back Office

Each Pydantic model represents a collection in MongoDB. Collection name is the lowercase of the class name.
References to other documents are stored as ObjectId strings.
"""

from datetime import datetime
from typing import List, Literal, Optional

from pydantic import BaseModel, EmailStr, Field, field_validator

PHONE_PATTERN = r"^[6-9]\d{9}$"
GSTIN_PATTERN = r"^[0-9]{2}[A-Z]{5}[0-9]{4}[A-Z]{1}[1-9A-Z]{1}Z[0-9A-Z]{1}$"
PINCODE_PATTERN = r"^[1-9][0-9]{5}$"

Role = Literal["admin", "staff", "customer"]
Category = Literal["Seeds", "Fertilizers", "Pesticides", "Medicines", "Tools", "Equipment", "Other"]
Unit = Literal["kg", "g", "litre", "ml", "packet", "box", "piece", "meter", "bottle"]
CustomerType = Literal["farmer", "retailer", "wholesaler", "other"]
PaymentStatus = Literal["pending", "partial", "paid"]
InvoiceStatus = Literal["active", "cancelled"]
InvoicePaymentMethod = Literal["cash", "card", "upi", "bank_transfer", "credit"]

PAYMENT_METHODS = ("cash", "card", "bank_transfer", "upi", "other")
OPEN_PAYMENT_STATUSES = ("pending", "partial")


def _lower(value):
    return value.lower() if isinstance(value, str) else value


def _upper(value):
    return value.strip().upper() if isinstance(value, str) else value


class User(BaseModel):
    name: str = Field(..., min_length=1, max_length=100)
    email: EmailStr
    phone: Optional[str] = Field(None, pattern=PHONE_PATTERN)
    password_hash: str
    role: Role = Field("customer", description="user role: admin, staff, customer")
    is_active: bool = True
    photo: Optional[str] = Field(None, description="Stored upload file name")
    created_by: Optional[str] = None

    @field_validator("email", mode="before")
    @classmethod
    def normalize_email(cls, value):
        return _lower(value)


class Product(BaseModel):
    name: str = Field(..., min_length=1, max_length=100)
    description: Optional[str] = Field(None, max_length=500)
    category: Category
    subcategory: Optional[str] = None
    sku: str = Field(..., min_length=1, description="Stock keeping unit, stored upper-case")
    hsn_code: str = Field(..., min_length=1, max_length=10, description="HSN classification code")
    unit: Unit = "piece"
    price: float = Field(..., ge=0)
    cost_price: Optional[float] = Field(None, ge=0)
    mrp: Optional[float] = Field(None, ge=0)
    tax_rate: float = Field(0.0, ge=0, le=100)
    stock: int = Field(0, ge=0)
    min_stock_level: int = Field(10, ge=0)
    max_stock_level: Optional[int] = Field(None, ge=0)
    expiry_date: Optional[datetime] = None
    batch_number: Optional[str] = None
    manufacturer: Optional[str] = None
    barcode: Optional[str] = None
    image: Optional[str] = None
    is_active: bool = True
    created_by: str

    @field_validator("sku", mode="before")
    @classmethod
    def normalize_sku(cls, value):
        return _upper(value)


class Address(BaseModel):
    street: str
    city: str
    state: str
    pincode: str = Field(..., pattern=PINCODE_PATTERN)
    country: str = "India"

    def one_line(self) -> str:
        return f"{self.street}, {self.city}, {self.state} {self.pincode}, {self.country}"


class FarmDetails(BaseModel):
    farm_size: Optional[float] = Field(None, ge=0)
    farm_size_unit: Literal["acres", "hectares", "sq.meter"] = "acres"
    crops: List[str] = Field(default_factory=list)


class Payment(BaseModel):
    """
    Entry of a customer's payment history (embedded in Customer).
    Entries are appended, never edited.
    """
    payment_id: str
    amount: float = Field(..., gt=0)
    payment_method: Literal["cash", "card", "bank_transfer", "upi", "other"]
    payment_date: datetime
    reference_number: Optional[str] = None
    notes: Optional[str] = None
    recorded_by: str


class Customer(BaseModel):
    name: str = Field(..., min_length=1, max_length=100)
    phone: str = Field(..., pattern=PHONE_PATTERN)
    email: Optional[EmailStr] = None
    gstin: Optional[str] = Field(None, pattern=GSTIN_PATTERN)
    address: Address
    customer_type: CustomerType = "farmer"
    farm_details: Optional[FarmDetails] = None
    credit_limit: float = Field(0, ge=0)
    outstanding_balance: float = Field(0, ge=0, description="Projection of open invoice amounts")
    total_purchases: float = Field(0, ge=0)
    last_purchase_date: Optional[datetime] = None
    payment_history: List[Payment] = Field(default_factory=list)
    notes: Optional[str] = Field(None, max_length=500)
    is_active: bool = True
    owner: str

    @field_validator("email", mode="before")
    @classmethod
    def normalize_email(cls, value):
        return _lower(value)

    @field_validator("gstin", mode="before")
    @classmethod
    def normalize_gstin(cls, value):
        return _upper(value)


class CustomerSnapshot(BaseModel):
    """Customer details copied onto an invoice when it is raised"""
    name: str
    phone: str
    email: Optional[str] = None
    address: Optional[str] = None
    gstin: Optional[str] = None


class InvoiceItem(BaseModel):
    product: str = Field(..., description="Mongo ObjectId as string")
    name: str
    hsn_code: str
    unit: str
    quantity: int = Field(..., ge=1)
    price: float = Field(..., ge=0)
    discount: float = Field(0, ge=0)
    tax_rate: float = Field(0, ge=0, le=100)
    total: float = Field(..., ge=0, description="price * quantity - discount, fixed at creation")


class InvoicePayment(BaseModel):
    payment_id: Optional[str] = None
    amount: float = Field(..., gt=0)
    payment_method: str
    payment_date: datetime
    reference_number: Optional[str] = None
    notes: Optional[str] = None
    recorded_by: str


class Invoice(BaseModel):
    invoice_number: str
    customer: str
    customer_details: CustomerSnapshot
    items: List[InvoiceItem] = Field(..., min_length=1)
    subtotal: float = Field(..., ge=0)
    tax_amount: float = Field(0, ge=0)
    total: float = Field(..., ge=0)
    round_off: float = 0
    final_total: float = Field(..., ge=0)
    payment_status: PaymentStatus = "pending"
    payment_method: InvoicePaymentMethod
    paid_amount: float = Field(0, ge=0)
    payments: List[InvoicePayment] = Field(default_factory=list)
    status: InvoiceStatus = "active"
    refunded_amount: Optional[float] = Field(None, ge=0, description="Amount paid before cancellation")
    cancelled_at: Optional[datetime] = None
    due_date: Optional[datetime] = None
    notes: Optional[str] = Field(None, max_length=500)
    created_by: str


# Request bodies

class Token(BaseModel):
    access_token: str
    token_type: str = "bearer"


class AuthRequest(BaseModel):
    email: EmailStr
    password: str


class UserCreate(BaseModel):
    name: str = Field(..., min_length=1)
    email: EmailStr
    password: str = Field(..., min_length=6)
    role: Role = "customer"
    phone: Optional[str] = None


class UserUpdate(BaseModel):
    name: Optional[str] = None
    email: Optional[EmailStr] = None
    role: Optional[Role] = None
    is_active: Optional[bool] = None
    phone: Optional[str] = None


class MeUpdate(BaseModel):
    name: Optional[str] = None
    email: Optional[EmailStr] = None
    phone: Optional[str] = None


class PasswordUpdate(BaseModel):
    current_password: str = Field(..., min_length=1)
    new_password: str = Field(..., min_length=6)


class ProductCreate(BaseModel):
    name: str
    description: Optional[str] = None
    category: Category
    subcategory: Optional[str] = None
    sku: str
    hsn_code: str
    unit: Unit = "piece"
    price: float
    cost_price: Optional[float] = None
    mrp: Optional[float] = None
    tax_rate: float = 0.0
    stock: int = 0
    min_stock_level: int = 10
    max_stock_level: Optional[int] = None
    expiry_date: Optional[datetime] = None
    batch_number: Optional[str] = None
    manufacturer: Optional[str] = None
    barcode: Optional[str] = None
    is_active: bool = True


class ProductUpdate(BaseModel):
    name: Optional[str] = None
    description: Optional[str] = None
    category: Optional[Category] = None
    subcategory: Optional[str] = None
    sku: Optional[str] = None
    hsn_code: Optional[str] = None
    unit: Optional[Unit] = None
    price: Optional[float] = None
    cost_price: Optional[float] = None
    mrp: Optional[float] = None
    tax_rate: Optional[float] = None
    stock: Optional[int] = None
    min_stock_level: Optional[int] = None
    max_stock_level: Optional[int] = None
    expiry_date: Optional[datetime] = None
    batch_number: Optional[str] = None
    manufacturer: Optional[str] = None
    barcode: Optional[str] = None
    is_active: Optional[bool] = None


class CustomerCreate(BaseModel):
    name: str
    phone: str
    email: Optional[EmailStr] = None
    gstin: Optional[str] = None
    address: Address
    customer_type: CustomerType = "farmer"
    farm_details: Optional[FarmDetails] = None
    credit_limit: float = 0
    notes: Optional[str] = None
    is_active: bool = True


class CustomerUpdate(BaseModel):
    name: Optional[str] = None
    phone: Optional[str] = None
    email: Optional[EmailStr] = None
    gstin: Optional[str] = None
    address: Optional[Address] = None
    customer_type: Optional[CustomerType] = None
    farm_details: Optional[FarmDetails] = None
    credit_limit: Optional[float] = None
    notes: Optional[str] = None
    is_active: Optional[bool] = None


class CreditLimitUpdate(BaseModel):
    credit_limit: float = Field(..., ge=0)


class PaymentCreate(BaseModel):
    amount: float
    payment_method: str
    payment_date: Optional[datetime] = None
    reference_number: Optional[str] = None
    notes: Optional[str] = None


class InvoiceLine(BaseModel):
    product: str
    quantity: int = Field(..., ge=1)
    price: Optional[float] = Field(None, ge=0, description="Defaults to the product price")
    discount: float = Field(0, ge=0)
    tax_rate: Optional[float] = Field(None, ge=0, le=100, description="Defaults to the product tax rate")


class InvoiceCreate(BaseModel):
    customer: str
    items: List[InvoiceLine] = Field(..., min_length=1)
    payment_method: InvoicePaymentMethod = "cash"
    paid_amount: float = Field(0, ge=0)
    due_date: Optional[datetime] = None
    notes: Optional[str] = None


class InvoiceStatusUpdate(BaseModel):
    status: Literal["partial", "paid", "cancelled"]
    payment_method: Optional[str] = None
    amount: Optional[float] = Field(None, description="Defaults to the remaining balance")
    payment_date: Optional[datetime] = None
    reference_number: Optional[str] = None
    notes: Optional[str] = None
