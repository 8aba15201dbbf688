from pydantic import BaseModel, Field, EmailStr
from typing import Optional, List
from datetime import datetime
from bson import ObjectId

# ============================================
# TRANSACTION LINE ITEMS
# ============================================
class TransactionItem(BaseModel):
    description: str = ""
    pcs: int = Field(default=0, ge=0)
    net_wt: float = Field(default=0.0, ge=0)
    add_wt: float = Field(default=0.0, ge=0)
    inch_ibr: float = Field(default=0.0, ge=0)
    gold: float = Field(default=0.0, ge=0)

class TransactionTotal(BaseModel):
    pcs: int = Field(default=0, ge=0)
    net_wt: float = Field(default=0.0, ge=0)
    inch_ibr: float = Field(default=0.0, ge=0)
    gold: float = Field(default=0.0, ge=0)

class GoldBar(BaseModel):
    weight: float = Field(default=0.0, ge=0)
    amount: float = Field(default=0.0, ge=0)

class ClosingBalance(BaseModel):
    gold: Optional[float] = None  # Negative = owner owes gold
    cash: Optional[float] = None  # Negative = owner owes cash

# ============================================
# TRANSACTION MODEL
# ============================================
class Transaction(BaseModel):
    id: Optional[str] = Field(default=None, alias="_id")
    transaction_id: str  # Generated: TXN-YYYYMMDD-NNN
    date: str  # YYYY-MM-DD
    time: str  # HH:MM:SS
    owner_id: str
    owner_name: Optional[str] = None
    items: List[TransactionItem]
    total: TransactionTotal
    gold_bar: Optional[GoldBar] = None
    closing_balance: Optional[ClosingBalance] = None
    notes: str = ""
    created_by: Optional[str] = None
    created_by_name: Optional[str] = None
    created_at: datetime = Field(default_factory=lambda: datetime.utcnow())
    updated_at: datetime = Field(default_factory=lambda: datetime.utcnow())

    class Config:
        populate_by_name = True
        json_encoders = {ObjectId: str}

class TransactionCreate(BaseModel):
    # Presence of owner_id/items is checked by the mutation service so that
    # a missing field is reported as invalid input.
    owner_id: Optional[str] = None
    owner_name: Optional[str] = None
    items: Optional[List[TransactionItem]] = None
    total: Optional[TransactionTotal] = None  # Derived from items if omitted
    gold_bar: Optional[GoldBar] = None
    closing_balance: Optional[ClosingBalance] = None
    notes: str = ""
    created_by: Optional[str] = None
    created_by_name: Optional[str] = None

class TransactionUpdate(BaseModel):
    owner_id: Optional[str] = None
    owner_name: Optional[str] = None
    items: Optional[List[TransactionItem]] = None
    total: Optional[TransactionTotal] = None
    gold_bar: Optional[GoldBar] = None
    closing_balance: Optional[ClosingBalance] = None
    notes: Optional[str] = None

# ============================================
# OWNER (CLIENT / EMPLOYEE) MODEL
# ============================================
class OwnerCreate(BaseModel):
    name: str
    phone: str
    email: Optional[EmailStr] = None
    address: Optional[str] = None
    notes: Optional[str] = None
    is_active: bool = True

class OwnerSummaryResponse(BaseModel):
    owner_id: str
    total_pcs: int = 0
    total_net_wt: float = 0.0
    total_inch_ibr: float = 0.0
    total_gold: float = 0.0
    total_gold_bar_weight: float = 0.0
    total_gold_bar_amount: float = 0.0
    closing_gold_balance: float = 0.0
    closing_cash_balance: float = 0.0
    last_transaction_date: Optional[str] = None

# ============================================
# AUDIT LOG MODEL (IMMUTABLE)
# ============================================
class AuditLog(BaseModel):
    audit_id: Optional[str] = Field(default=None, alias="_id")
    module_name: str
    entity_type: str
    entity_id: str
    action_type: str  # CREATE, UPDATE, DELETE
    old_value_json: Optional[dict] = None
    new_value_json: Optional[dict] = None
    user_id: Optional[str] = None
    timestamp: datetime = Field(default_factory=lambda: datetime.utcnow())

    class Config:
        populate_by_name = True
        json_encoders = {ObjectId: str}
