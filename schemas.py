import datetime as dt
import math
from datetime import datetime
from typing import Any, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic import ValidationError as PydanticValidationError

from backend import SERVER_TIMESTAMP, Document
from errors import ValidationError
from models import KIND_FROM_WIRE, KIND_WIRE_VALUES, TransactionKind
from periods import local_today

TRANSACTIONS_COLLECTION = "transactions"


class Fields:
    """Field names of a transaction document."""

    owner = "userId"
    amount = "nominal"
    date = "tanggal"
    category = "kategori"
    name = "nama"
    note = "catatan"
    kind = "type"
    created_at = "createdAt"
    updated_at = "updatedAt"


Amount = Union[int, float]


def coerce_amount(value: Any) -> Amount:
    if isinstance(value, bool):
        raise ValueError("Amount must be a number")
    if isinstance(value, str):
        raw = value.strip()
        if not raw:
            raise ValueError("Amount is required")
        try:
            value = int(raw)
        except ValueError:
            try:
                value = float(raw)
            except ValueError as exc:
                raise ValueError("Amount must be a number") from exc
    if isinstance(value, float) and not math.isfinite(value):
        raise ValueError("Amount must be a finite number")
    if not isinstance(value, (int, float)):
        raise ValueError("Amount must be a number")
    if value < 0:
        raise ValueError("Amount must not be negative")
    return value


def coerce_kind(value: Any) -> Any:
    if isinstance(value, str) and value in KIND_FROM_WIRE:
        return KIND_FROM_WIRE[value]
    return value


class Credentials(BaseModel):
    email: str = ""
    password: str = ""


class TransactionIn(BaseModel):
    model_config = ConfigDict(str_strip_whitespace=True)

    amount: Amount
    date: Optional[dt.date] = None
    category: str = Field(..., min_length=1, max_length=100)
    name: str = Field(..., min_length=1, max_length=200)
    note: Optional[str] = Field(default="", max_length=1000)
    kind: TransactionKind

    @field_validator("amount", mode="before")
    @classmethod
    def _amount(cls, value: Any) -> Amount:
        return coerce_amount(value)

    @field_validator("kind", mode="before")
    @classmethod
    def _kind(cls, value: Any) -> Any:
        return coerce_kind(value)

    @field_validator("date", mode="before")
    @classmethod
    def _blank_date(cls, value: Any) -> Any:
        if isinstance(value, str) and not value.strip():
            return None
        return value

    def to_document(self, owner_id: str) -> dict[str, Any]:
        return {
            Fields.owner: owner_id,
            Fields.amount: self.amount,
            Fields.date: (self.date or local_today()).isoformat(),
            Fields.category: self.category,
            Fields.name: self.name,
            Fields.note: self.note or "",
            Fields.kind: KIND_WIRE_VALUES[self.kind],
            Fields.created_at: SERVER_TIMESTAMP,
            Fields.updated_at: SERVER_TIMESTAMP,
        }


class TransactionUpdate(BaseModel):
    # Identity fields (id, owner, creation time) are not part of the model, so
    # ``extra="forbid"`` rejects any attempt to change them.
    model_config = ConfigDict(extra="forbid", str_strip_whitespace=True)

    amount: Optional[Amount] = None
    date: Optional[dt.date] = None
    category: Optional[str] = Field(default=None, min_length=1, max_length=100)
    name: Optional[str] = Field(default=None, min_length=1, max_length=200)
    note: Optional[str] = Field(default=None, max_length=1000)
    kind: Optional[TransactionKind] = None

    @field_validator("amount", mode="before")
    @classmethod
    def _amount(cls, value: Any) -> Optional[Amount]:
        if value is None:
            return None
        return coerce_amount(value)

    @field_validator("kind", mode="before")
    @classmethod
    def _kind(cls, value: Any) -> Any:
        return coerce_kind(value)

    def to_document(self) -> dict[str, Any]:
        changes = self.model_dump(exclude_unset=True)
        data: dict[str, Any] = {}
        for key, value in changes.items():
            if value is None and key != "note":
                continue
            if key == "date":
                data[Fields.date] = value.isoformat()
            elif key == "kind":
                data[Fields.kind] = KIND_WIRE_VALUES[value]
            elif key == "note":
                data[Fields.note] = value or ""
            else:
                data[getattr(Fields, key)] = value
        data[Fields.updated_at] = SERVER_TIMESTAMP
        return data


class Transaction(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: str
    owner_id: str
    amount: Amount = 0
    date: dt.date
    category: str = ""
    name: str = ""
    note: str = ""
    kind: TransactionKind
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    @field_validator("amount", mode="before")
    @classmethod
    def _amount(cls, value: Any) -> Amount:
        return coerce_amount(value)

    @field_validator("kind", mode="before")
    @classmethod
    def _kind(cls, value: Any) -> Any:
        return coerce_kind(value)

    @field_validator("note", mode="before")
    @classmethod
    def _note(cls, value: Any) -> str:
        return value or ""

    @classmethod
    def from_document(cls, document: Document) -> "Transaction":
        data = document.data
        return cls(
            id=document.id,
            owner_id=data.get(Fields.owner) or "",
            amount=data.get(Fields.amount, 0),
            date=data.get(Fields.date),
            category=data.get(Fields.category) or "",
            name=data.get(Fields.name) or "",
            note=data.get(Fields.note),
            kind=data.get(Fields.kind),
            created_at=data.get(Fields.created_at),
            updated_at=data.get(Fields.updated_at),
        )


def parse_payload(model: type[BaseModel], data: Any, *, locale: Optional[str] = None):
    if isinstance(data, model):
        return data
    try:
        return model.model_validate(data)
    except PydanticValidationError as exc:
        fields = [".".join(str(part) for part in err["loc"]) for err in exc.errors()]
        raise ValidationError(fields, locale=locale) from exc


class TransactionOut(BaseModel):
    id: str
    amount: Amount
    date: dt.date
    category: str
    name: str
    note: str
    kind: TransactionKind
    created_at: Optional[datetime]
    updated_at: Optional[datetime]

    @classmethod
    def from_record(cls, txn: Transaction) -> "TransactionOut":
        return cls(**txn.model_dump(exclude={"owner_id"}))
