from __future__ import annotations
import logging
from typing import Any, Dict, Optional

from kpm.errors import InvalidTransition, KpmError, NotFound, Unauthorized
from kpm.models.common import Actor
from kpm.models.request import Request, TransitionRecord
from kpm.services.audit_service import AuditService
from kpm.services.caisse_service import CaisseService, LedgerOperation
from kpm.services.notification_service import NotificationDispatcher, notify_safely
from kpm.services.request_service import RequestService
from kpm.services.workflow_rules import Transition, get_transition, payload_text
from kpm.storage.store import Store

logger = logging.getLogger(__name__)


class WorkflowService:
    def __init__(self, store: Store, notifier: Optional[NotificationDispatcher] = None):
        self.store = store
        self.settings = store.settings
        self.audit = AuditService(store)
        self.requests = RequestService(store, self.audit)
        self.caisses = CaisseService(store, self.audit)
        self.notifier = notifier

    def transition(
        self,
        request_id: str,
        action: str,
        actor: Actor,
        payload: Optional[Dict[str, Any]] = None,
        *,
        request_type: Optional[str] = None,
        idempotency_key: Optional[str] = None,
    ) -> Request:
        """
        Applique une action du cycle de vie. Contrôles, dans l'ordre :
        état courant (InvalidTransition), rôle (Unauthorized), payload (ValidationFailed).
        Statut, mouvement de caisse éventuel et audit sont validés ensemble.
        """
        payload = dict(payload or {})
        ledger_op: Optional[LedgerOperation] = None
        ledger_error: Optional[KpmError] = None

        try:
            with self.store.unit_of_work():
                req = self.requests.load(request_id)
                if request_type and req.request_type != request_type:
                    raise NotFound(f"Demande {request_type} {request_id} introuvable")

                # rejeu d'un appel déjà appliqué (même clé d'idempotence)
                if req.has_idempotency_key(idempotency_key):
                    logger.info("transition replayed", extra={"reference": req.reference, "action": action})
                    return req

                rule = self._check(req, action)
                role = self._authorize(rule, req, actor)
                rule.validator(req, payload, self.settings)

                from_status = req.status

                # Etape paiement : mouvement de caisse avant le changement de statut
                if rule.payment:
                    caisse_id = payload.get("caisse_id")
                    if caisse_id:
                        ledger_op = LedgerOperation(
                            type="payment", source_id=caisse_id, amount=req.total_amount,
                            justification=f"Paiement {req.reference}",
                            request_type=req.request_type, request_id=req.id,
                            idempotency_key=ledger_key(req, action, idempotency_key), currency=req.currency,
                        )
                        try:
                            tx = self.caisses.apply_in_unit(ledger_op, actor)
                        except KpmError as e:
                            ledger_error = e
                            raise
                        req.caisse_id = caisse_id
                        req.payment_transaction_id = tx.id
                    req.payment_details = dict(payload.get("payment_details") or {})

                # Etape conversion : besoin accepté -> DA brouillon
                if rule.convert:
                    da = self.requests.build_da_from_besoin(req, actor)
                    self.requests.insert(da, actor, origin={"besoin_id": req.id, "besoin_reference": req.reference})
                    req.da_id = da.id

                comment = payload_text(payload, "comment", "reason") or None
                req.status = rule.target
                req.history.append(TransitionRecord(
                    action=action, from_status=from_status, to_status=rule.target,
                    actor_id=actor.id, role=role, comment=comment, idempotency_key=idempotency_key,
                ))
                self.requests.save(req)

                self.audit.record(
                    actor_id=actor.id, action=f"{req.request_type}.{action}",
                    entity_type=req.request_type, entity_id=req.id,
                    old_value={"status": from_status},
                    new_value={
                        "status": req.status, "caisse_id": req.caisse_id,
                        "payment_transaction_id": req.payment_transaction_id, "da_id": req.da_id,
                    },
                    metadata={"role": role, "comment": comment, "reference": req.reference},
                )
        except KpmError as e:
            if ledger_error is not None and ledger_op is not None:
                self.caisses.record_failure(ledger_op, actor, ledger_error)
            logger.warning(
                "transition refused",
                extra={"request": request_id, "action": action, "kind": e.kind, "actor": actor.id},
            )
            raise

        logger.info(
            "transition applied",
            extra={"reference": req.reference, "action": action, "status": req.status},
        )
        # hors unité atomique : un échec de notification n'annule rien
        notify_safely(self.notifier, req, action)
        return req

    # ---------- Contrôles ---------- #

    @staticmethod
    def _check(req: Request, action: str) -> Transition:
        rule = get_transition(req.request_type, action)
        if rule is None:
            raise InvalidTransition(f"Action '{action}' inconnue pour {req.request_type}")
        if req.is_terminal():
            raise InvalidTransition(f"{req.reference} est clôturée (statut {req.status})")
        if req.status not in rule.sources:
            raise InvalidTransition(
                f"Action '{action}' impossible au statut {req.status}",
                details={"status": req.status, "expected": sorted(rule.sources)},
            )
        return rule

    @staticmethod
    def _authorize(rule: Transition, req: Request, actor: Actor) -> str:
        """Retourne le rôle retenu pour tracer la transition."""
        held = sorted(actor.roles & rule.roles)
        if held:
            return held[0]
        if rule.owner_allowed and actor.id == req.requester_id:
            return "demandeur"
        raise Unauthorized(
            f"Action '{rule.action}' réservée aux rôles: {', '.join(sorted(rule.roles))}",
            details={"actor_roles": sorted(actor.roles)},
        )


def ledger_key(req: Request, action: str, idempotency_key: Optional[str]) -> Optional[str]:
    """Clé du mouvement de caisse : demande + action + clé de l'appelant."""
    if not idempotency_key:
        return None
    return f"{req.request_type}:{req.id}:{action}:{idempotency_key}"
