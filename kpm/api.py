from __future__ import annotations
import logging
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional, Tuple, Union

from pydantic import BaseModel, Field

from kpm.config import Settings, load_settings
from kpm.errors import KpmError, NotFound, ValidationFailed
from kpm.log import configure_logging
from kpm.models.audit import AuditEntry
from kpm.models.caisse import LedgerTransaction
from kpm.models.common import Actor
from kpm.models.request import Request
from kpm.services.caisse_service import build_operation
from kpm.services.notification_service import LoggingDispatcher, NotificationDispatcher
from kpm.services.workflow_service import WorkflowService
from kpm.storage.store import Store

logger = logging.getLogger(__name__)

# les paiements passent par le cycle de vie de la demande (action pay)
LEDGER_ENTRY_TYPES = frozenset({"replenishment", "transfer", "correction"})


class ErrorInfo(BaseModel):
    kind: str
    message: str
    category: str
    retryable: bool = False
    details: Dict[str, Any] = Field(default_factory=dict)

    @classmethod
    def from_exc(cls, e: KpmError) -> "ErrorInfo":
        return cls(kind=e.kind, message=e.message, category=e.category, retryable=e.retryable, details=e.details)


class ActionResult(BaseModel):
    status: Optional[str] = None
    request: Optional[Request] = None
    error: Optional[ErrorInfo] = None

    @property
    def ok(self) -> bool:
        return self.error is None


class LedgerResult(BaseModel):
    new_balances: Dict[str, int] = Field(default_factory=dict)
    transaction: Optional[LedgerTransaction] = None
    error: Optional[ErrorInfo] = None

    @property
    def ok(self) -> bool:
        return self.error is None


class Core:
    """
    Point d'entrée unique pour la couche UI / CRUD.
    Chaque instance possède son store ; close() libère les références.
    """

    def __init__(
        self,
        data_dir: Optional[Union[str, Path]] = None,
        *,
        settings: Optional[Settings] = None,
        notifier: Optional[NotificationDispatcher] = None,
    ) -> None:
        self.settings = settings or load_settings(data_dir)
        configure_logging(self.settings.log_level)
        self.store = Store(data_dir or self.settings.data_dir, settings=self.settings)
        self.workflow = WorkflowService(self.store, notifier if notifier is not None else LoggingDispatcher())
        self.requests = self.workflow.requests
        self.caisses = self.workflow.caisses
        self.audit = self.workflow.audit

    def close(self) -> None:
        self.workflow.notifier = None

    def __enter__(self) -> "Core":
        return self

    def __exit__(self, *exc: Any) -> None:
        self.close()

    # ---------- Cycle de vie ---------- #

    def submit_workflow_action(
        self,
        request_type: str,
        request_id: str,
        action: str,
        actor: Actor,
        payload: Optional[Dict[str, Any]] = None,
        idempotency_key: Optional[str] = None,
    ) -> ActionResult:
        try:
            req = self.workflow.transition(
                request_id, action, actor, payload,
                request_type=request_type, idempotency_key=idempotency_key,
            )
        except KpmError as e:
            return ActionResult(error=ErrorInfo.from_exc(e))
        return ActionResult(status=req.status, request=req)

    # ---------- Caisse ---------- #

    def apply_ledger_operation(
        self,
        type: str,
        account_refs: Mapping[str, Optional[str]],
        amount: Any,
        justification: str,
        actor: Actor,
        *,
        request_ref: Optional[Tuple[str, str]] = None,
        observations: Optional[str] = None,
        idempotency_key: Optional[str] = None,
    ) -> LedgerResult:
        """
        account_refs : {"source": ..., "destination": ...}
        request_ref : (type, id) de la demande payée, requis pour une correction.
        """
        try:
            if type not in LEDGER_ENTRY_TYPES:
                raise ValidationFailed(f"Opération de caisse non autorisée ici: {type}")
            if type == "correction" and amount is None:
                if not request_ref:
                    raise NotFound("Demande à corriger non renseignée")
                tx = self.caisses.correct_payment(
                    request_ref[1], account_refs.get("source"), justification, actor,
                    observations=observations, idempotency_key=idempotency_key,
                )
            else:
                op = build_operation(
                    type=type, amount=amount, justification=justification,
                    source_id=account_refs.get("source"), destination_id=account_refs.get("destination"),
                    observations=observations, idempotency_key=idempotency_key,
                    request_type=request_ref[0] if request_ref else None,
                    request_id=request_ref[1] if request_ref else None,
                )
                tx = self.caisses.apply_transaction(op, actor)
        except KpmError as e:
            return LedgerResult(error=ErrorInfo.from_exc(e))
        balances = {leg.caisse_id: self.caisses.get_balance(leg.caisse_id) for leg in tx.legs}
        return LedgerResult(new_balances=balances, transaction=tx)

    # ---------- Lectures ---------- #

    def get_request(self, request_id: str) -> Optional[Request]:
        try:
            return self.requests.get_by_id(request_id)
        except NotFound:
            return None

    def get_account_balance(self, caisse_id: str) -> Optional[int]:
        try:
            return self.caisses.get_balance(caisse_id)
        except NotFound:
            return None

    def get_audit_trail(self, entity_type: str, entity_id: str) -> List[AuditEntry]:
        return self.audit.list_for(entity_type, entity_id)
