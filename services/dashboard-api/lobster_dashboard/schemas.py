from __future__ import annotations

import datetime as dt
import uuid
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field


def _utcnow() -> dt.datetime:
    return dt.datetime.now(dt.timezone.utc)


class Token(BaseModel):
    access_token: str
    token_type: str = "bearer"


class LoginRequest(BaseModel):
    username: str
    password: str


class UserProfile(BaseModel):
    id: uuid.UUID
    username: str
    role: str
    active: bool
    created_at: dt.datetime


# --- reference data and normalized ledger rows ------------------------------


class LobsterType(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: uuid.UUID
    name: str


class WeightClass(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: uuid.UUID
    weight_range: str


class InventoryRow(BaseModel):
    model_config = ConfigDict(frozen=True)

    type_id: uuid.UUID
    weight_class_id: uuid.UUID
    quantity: int = 0


class TransactionRow(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: uuid.UUID
    type_id: uuid.UUID
    weight_class_id: uuid.UUID
    transaction_type: str
    quantity: int
    transaction_date: dt.datetime
    destination: Optional[str] = None
    notes: Optional[str] = None


# --- aggregates ---------------------------------------------------------------


class WeightClassQuantity(BaseModel):
    weight_range: str
    quantity: int


class TypeTotal(BaseModel):
    lobster_type: str
    total_quantity: int


class AggregatedStock(BaseModel):
    lobster_type: str
    total_quantity: int
    weight_classes: list[WeightClassQuantity] = Field(default_factory=list)


class FlowTotals(BaseModel):
    incoming: int = 0
    outgoing: int = 0


class MonthlyPoint(BaseModel):
    month_label: str
    year: int
    month: int
    incoming: int
    outgoing: int


class DistributionPoint(BaseModel):
    lobster_type: str
    quantity: int


class DashboardSnapshot(BaseModel):
    total_stock: int
    incoming_this_month: int
    outgoing_this_month: int
    stock_by_type: list[AggregatedStock]
    monthly: list[MonthlyPoint]
    distribution: list[DistributionPoint]
    generated_at: dt.datetime


class StockOverview(BaseModel):
    total_stock: int
    stock: list[AggregatedStock]


class AvailableStock(BaseModel):
    lobster_type: str
    weight_class: str
    available: int


# --- transactions ----------------------------------------------------------


class TransactionRequest(BaseModel):
    lobster_type: str = Field(min_length=1, max_length=128)
    weight_class: str = Field(min_length=1, max_length=64)
    quantity: int
    transaction_type: str = Field(default="ADD", max_length=16)
    destination: Optional[str] = Field(default=None, max_length=255)
    note: Optional[str] = None
    transaction_date: dt.datetime = Field(default_factory=_utcnow)


class TransactionReceipt(BaseModel):
    lobster_type: str
    weight_class: str
    quantity: int
    transaction_type: str
    transaction_date: dt.datetime


class TransactionResult(BaseModel):
    receipt: TransactionReceipt
    stock: Optional[StockOverview] = None


class TransactionEntry(BaseModel):
    id: uuid.UUID
    transaction_type: str
    lobster_type: str
    weight_range: str
    quantity: int
    transaction_date: dt.datetime
    destination: Optional[str] = None
    notes: Optional[str] = None


class TransactionPage(BaseModel):
    items: list[TransactionEntry]
    total: int
    page: int
    per_page: int
    incoming: int
    outgoing: int
