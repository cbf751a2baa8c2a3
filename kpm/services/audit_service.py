from __future__ import annotations
import logging
from typing import Any, Dict, List, Optional

from kpm.models.audit import AuditEntry
from kpm.storage.store import Store

logger = logging.getLogger(__name__)


class AuditService:
    """Journal d'audit en ajout seul, écrit dans l'unité de travail de l'appelant."""

    def __init__(self, store: Store):
        self.store = store

    def record(
        self,
        *,
        actor_id: str,
        action: str,
        entity_type: str,
        entity_id: str,
        old_value: Optional[Dict[str, Any]] = None,
        new_value: Optional[Dict[str, Any]] = None,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> AuditEntry:
        entry = AuditEntry(
            actor_id=actor_id, action=action, entity_type=entity_type, entity_id=entity_id,
            old_value=old_value, new_value=new_value, metadata=metadata or {},
        )
        # hors unité de travail, on en ouvre une : l'écriture reste atomique
        with self.store.unit_of_work():
            self.store.audit.add(entry)
        logger.debug("audit %s", action, extra={"entity": f"{entity_type}:{entity_id}"})
        return entry

    def list_for(self, entity_type: str, entity_id: str) -> List[AuditEntry]:
        with self.store.reading():
            rows = self.store.audit.find(
                lambda d: d.get("entity_type") == entity_type and str(d.get("entity_id")) == str(entity_id)
            )
        out = [AuditEntry.model_validate(d) for d in rows]
        out.sort(key=lambda e: e.created_at)
        return out

    def list_entries(self) -> List[AuditEntry]:
        with self.store.reading():
            return [AuditEntry.model_validate(d) for d in self.store.audit.list_all()]
