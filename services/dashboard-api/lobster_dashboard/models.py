"""SQLAlchemy models mirroring the hosted ledger tables read by the dashboard."""

import uuid

from sqlalchemy import (
    JSON,
    Boolean,
    Column,
    DateTime,
    ForeignKey,
    Integer,
    String,
    UniqueConstraint,
    Uuid,
    func,
)
from sqlalchemy.orm import declarative_base

Base = declarative_base()

TRANSACTION_TYPES = ("ADD", "DISTRIBUTE", "DEATH", "DAMAGED")
OUTGOING_TYPES = ("DISTRIBUTE", "DEATH", "DAMAGED")


class User(Base):
    __tablename__ = "users"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    username = Column(String(64), nullable=False, unique=True)
    password_hash = Column(String(255), nullable=False)
    role = Column(String(32), nullable=False, default="viewer")
    active = Column(Boolean, nullable=False, default=True)
    created_at = Column(DateTime(timezone=True), nullable=False, server_default=func.now())


class LobsterType(Base):
    __tablename__ = "lobster_types"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    name = Column(String(128), nullable=False, unique=True)


class WeightClass(Base):
    __tablename__ = "weight_classes"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    weight_range = Column(String(64), nullable=False, unique=True)


class Inventory(Base):
    """Current on-hand count per (lobster type, weight class); written only by ``manage_inventory``."""

    __tablename__ = "inventory"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    type_id = Column(Uuid, ForeignKey("lobster_types.id"), nullable=False)
    weight_class_id = Column(Uuid, ForeignKey("weight_classes.id"), nullable=False)
    quantity = Column(Integer, nullable=False, default=0)
    updated_at = Column(DateTime(timezone=True), nullable=False, server_default=func.now())

    __table_args__ = (UniqueConstraint("type_id", "weight_class_id", name="inventory_type_weight_uq"),)


class Transaction(Base):
    __tablename__ = "transactions"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    type_id = Column(Uuid, ForeignKey("lobster_types.id"), nullable=False)
    weight_class_id = Column(Uuid, ForeignKey("weight_classes.id"), nullable=False)
    transaction_type = Column(String(16), nullable=False)
    quantity = Column(Integer, nullable=False)
    transaction_date = Column(DateTime(timezone=True), nullable=False, server_default=func.now())
    destination = Column(String(255))
    notes = Column(JSON)
