from __future__ import annotations
from pydantic import BaseModel, Field
from typing import List, Literal, Optional
from datetime import datetime
from .common import gen_id, utcnow
from .money import DEFAULT_CURRENCY

TransactionType = Literal["replenishment", "transfer", "correction", "payment"]
LegDirection = Literal["debit", "credit"]


class Caisse(BaseModel):
    id: str = Field(default_factory=gen_id)
    code: str
    name: str
    type: str = "principale"
    currency: str = DEFAULT_CURRENCY
    initial_balance: int = 0
    balance: int = 0
    is_active: bool = True
    description: Optional[str] = None

    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)
    version: int = 0

    model_config = {"extra": "ignore"}


class LedgerLeg(BaseModel):
    caisse_id: str
    direction: LegDirection
    amount: int
    balance_before: int
    balance_after: int


class LedgerTransaction(BaseModel):
    """Mouvement de caisse : écrit une seule fois, jamais modifié."""
    id: str = Field(default_factory=gen_id)
    reference: Optional[str] = None
    type: TransactionType
    source_id: Optional[str] = None
    destination_id: Optional[str] = None
    amount: int
    justification: str
    observations: Optional[str] = None
    legs: List[LedgerLeg] = Field(default_factory=list)

    request_type: Optional[str] = None
    request_id: Optional[str] = None
    correction_of_id: Optional[str] = None
    idempotency_key: Optional[str] = None

    actor_id: str
    created_at: datetime = Field(default_factory=utcnow)

    model_config = {"frozen": True, "extra": "ignore"}

    def caisse_ids(self) -> List[str]:
        return [leg.caisse_id for leg in self.legs]

    def net_for(self, caisse_id: str) -> int:
        total = 0
        for leg in self.legs:
            if leg.caisse_id == caisse_id:
                total += leg.amount if leg.direction == "credit" else -leg.amount
        return total
