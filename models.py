from datetime import datetime
from enum import Enum
from typing import Any

from sqlalchemy import JSON, Boolean, DateTime, Index, Integer, String
from sqlalchemy.orm import Mapped, mapped_column

from database import Base


class TransactionKind(str, Enum):
    income = "income"
    expense = "expense"


# Values stored in the ``type`` field of transaction documents.
KIND_WIRE_VALUES = {
    TransactionKind.income: "pemasukan",
    TransactionKind.expense: "pengeluaran",
}
KIND_FROM_WIRE = {value: kind for kind, value in KIND_WIRE_VALUES.items()}


class TimestampMixin:
    created_at: Mapped[datetime] = mapped_column(
        DateTime, default=datetime.utcnow, nullable=False
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime, default=datetime.utcnow, onupdate=datetime.utcnow, nullable=False
    )


class LocalAccount(Base, TimestampMixin):
    __tablename__ = "local_accounts"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    uid: Mapped[str] = mapped_column(String(40), nullable=False, unique=True)
    email: Mapped[str] = mapped_column(String(254), nullable=False, unique=True)
    password_hash: Mapped[str] = mapped_column(String(255), nullable=False)
    disabled: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)


class StoredDocument(Base):
    """A schemaless document of the local development backend.

    Timestamps inside ``data`` are kept as ``{"__timestamp__": <iso>}``.
    """

    __tablename__ = "documents"

    id: Mapped[str] = mapped_column(String(40), primary_key=True)
    collection: Mapped[str] = mapped_column(String(100), nullable=False)
    data: Mapped[dict[str, Any]] = mapped_column(JSON, nullable=False, default=dict)

    __table_args__ = (Index("ix_documents_collection", "collection"),)


# Category labels offered by the entry form; free text is accepted as well.
SUGGESTED_CATEGORIES = {
    TransactionKind.income: ["Gaji", "Freelance", "Bonus", "Investasi"],
    TransactionKind.expense: [
        "Makanan",
        "Transportasi",
        "Utilitas",
        "Hiburan",
        "Belanja",
    ],
}
