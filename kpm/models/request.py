from __future__ import annotations
import math
from pydantic import BaseModel, Field, field_validator, model_validator
from typing import Any, Dict, List, Literal, Optional
from datetime import datetime
from .common import gen_id, utcnow
from .money import DEFAULT_CURRENCY, line_total, round_montant

RequestType = Literal["da", "besoin", "note_frais"]
Priority = Literal["basse", "normale", "haute", "urgente"]

DAStatus = Literal[
    "draft", "submitted", "under_review", "revision_requested", "priced",
    "pending_validation", "revision_purchasing", "validated_finance",
    "refused_finance", "paid", "rejected", "rejected_accounting", "cancelled",
]
BesoinStatus = Literal["created", "in_progress", "accepted", "refused", "returned", "converted", "cancelled"]
NoteFraisStatus = Literal["draft", "submitted", "validated_daf", "paid", "rejected", "cancelled"]

STATUSES: Dict[str, tuple] = {
    "da": DAStatus.__args__,
    "besoin": BesoinStatus.__args__,
    "note_frais": NoteFraisStatus.__args__,
}

INITIAL_STATUS = {"da": "draft", "besoin": "created", "note_frais": "draft"}

TERMINAL_STATUSES = {
    "da": frozenset({"paid", "rejected", "rejected_accounting", "refused_finance", "cancelled"}),
    "besoin": frozenset({"refused", "converted", "cancelled"}),
    "note_frais": frozenset({"paid", "rejected", "cancelled"}),
}

# états dans lesquels les lignes peuvent encore être ajoutées
EDITABLE_STATUSES = {
    "da": frozenset({"draft", "submitted", "under_review", "revision_purchasing"}),
    "besoin": frozenset({"created", "returned"}),
    "note_frais": frozenset({"draft"}),
}

PRICEABLE_STATUSES = frozenset({"submitted", "under_review", "revision_purchasing"})

REFERENCE_PREFIX = {"da": "DA", "besoin": "BES", "note_frais": "NDF"}


class LineItem(BaseModel):
    id: str = Field(default_factory=gen_id)
    designation: str
    quantity: float = 1.0
    unit: Optional[str] = None
    unit_price: Optional[float] = None
    supplier: Optional[str] = None
    line_total: int = 0

    @field_validator("designation")
    @classmethod
    def _designation_not_blank(cls, v: str) -> str:
        v = (v or "").strip()
        if not v:
            raise ValueError("designation is required")
        return v

    @field_validator("quantity")
    @classmethod
    def _quantity_positive(cls, v: float) -> float:
        if not math.isfinite(v) or v <= 0:
            raise ValueError("quantity must be > 0")
        return v

    @field_validator("unit_price")
    @classmethod
    def _price_not_negative(cls, v: Optional[float]) -> Optional[float]:
        if v is not None and (not math.isfinite(v) or v < 0):
            raise ValueError("unit_price must be >= 0")
        return v

    @model_validator(mode="after")
    def _compute_total(self) -> "LineItem":
        # la quantité reste intacte, seul le total est arrondi
        object.__setattr__(self, "line_total", line_total(self.quantity, self.unit_price) if self.is_priced() else 0)
        return self

    def is_priced(self) -> bool:
        return self.unit_price is not None


class TransitionRecord(BaseModel):
    action: str
    from_status: str
    to_status: str
    actor_id: str
    role: str
    at: datetime = Field(default_factory=utcnow)
    comment: Optional[str] = None
    idempotency_key: Optional[str] = None


class Request(BaseModel):
    id: str = Field(default_factory=gen_id)
    request_type: RequestType
    reference: Optional[str] = None
    title: str = ""
    requester_id: str
    department: Optional[str] = None
    currency: str = DEFAULT_CURRENCY
    priority: Priority = "normale"
    status: str = ""

    lines: List[LineItem] = Field(default_factory=list)
    total_amount: int = 0

    caisse_id: Optional[str] = None
    payment_transaction_id: Optional[str] = None
    payment_details: Dict[str, Any] = Field(default_factory=dict)

    besoin_id: Optional[str] = None
    da_id: Optional[str] = None

    history: List[TransitionRecord] = Field(default_factory=list)

    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)
    version: int = 0

    model_config = {"extra": "ignore"}  # tolère d'anciennes clés dans les JSON

    @model_validator(mode="after")
    def _check_status_and_total(self) -> "Request":
        if not self.status:
            object.__setattr__(self, "status", INITIAL_STATUS[self.request_type])
        if self.status not in STATUSES[self.request_type]:
            raise ValueError(f"status '{self.status}' invalid for {self.request_type}")
        object.__setattr__(self, "total_amount", self.compute_total())
        return self

    # helpers
    def compute_total(self) -> int:
        return round_montant(sum(ln.line_total for ln in self.lines))

    def recalc_totals(self) -> "Request":
        self.lines = [LineItem.model_validate(ln.model_dump()) for ln in self.lines]
        self.total_amount = self.compute_total()
        return self

    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES[self.request_type]

    def is_editable(self) -> bool:
        return self.status in EDITABLE_STATUSES[self.request_type]

    def priced_lines(self) -> List[LineItem]:
        return [ln for ln in self.lines if ln.is_priced()]

    def find_line(self, line_id: str) -> Optional[LineItem]:
        for ln in self.lines:
            if ln.id == line_id:
                return ln
        return None

    def has_idempotency_key(self, key: Optional[str]) -> bool:
        return bool(key) and any(h.idempotency_key == key for h in self.history)

    def last_transition(self) -> Optional[TransitionRecord]:
        return self.history[-1] if self.history else None
