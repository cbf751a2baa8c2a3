from __future__ import annotations
from pydantic import BaseModel, Field
from typing import Any, Dict, Optional
from datetime import datetime
from .common import gen_id, utcnow


class AuditEntry(BaseModel):
    id: str = Field(default_factory=gen_id)
    actor_id: str
    action: str
    entity_type: str
    entity_id: str
    old_value: Optional[Dict[str, Any]] = None
    new_value: Optional[Dict[str, Any]] = None
    metadata: Dict[str, Any] = Field(default_factory=dict)
    created_at: datetime = Field(default_factory=utcnow)

    model_config = {"frozen": True, "extra": "ignore"}
