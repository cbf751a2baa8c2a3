from __future__ import annotations
from pydantic import BaseModel, EmailStr
from datetime import datetime, timezone
from typing import FrozenSet, Optional
import uuid

def gen_id() -> str:
    return str(uuid.uuid4())

def utcnow() -> datetime:
    return datetime.now(timezone.utc)

class Actor(BaseModel):
    """Contexte authentifié fourni par l'appelant (non persisté)."""
    id: str
    roles: FrozenSet[str] = frozenset()
    name: Optional[str] = None
    email: Optional[EmailStr] = None
    department: Optional[str] = None

    def has_any_role(self, roles) -> bool:
        return bool(self.roles & set(roles))
