from __future__ import annotations
import logging
from datetime import datetime
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ValidationError

from kpm.errors import (
    InsufficientFunds, KpmError, NotFound, TransientError, Unauthorized, ValidationFailed,
)
from kpm.models.caisse import Caisse, LedgerLeg, LedgerTransaction, TransactionType
from kpm.models.common import Actor, utcnow
from kpm.models.money import format_montant, round_montant
from kpm.models.request import Request
from kpm.services.audit_service import AuditService
from kpm.storage.store import Store

logger = logging.getLogger(__name__)

# Rôles autorisés par opération de caisse
CAISSE_ADMIN_ROLES = frozenset({"admin", "daf"})
LEDGER_ROLES: Dict[str, frozenset] = {
    "replenishment": frozenset({"admin", "daf", "dg", "comptable"}),
    "transfer": frozenset({"admin", "daf", "dg", "comptable"}),
    "payment": frozenset({"admin", "comptable"}),
    "correction": frozenset({"admin", "daf", "comptable"}),
}

# états « payés » autorisant une correction de caisse
PAID_STATUSES = frozenset({"paid"})


class LedgerOperation(BaseModel):
    """Demande de mouvement, avant validation et application."""
    type: TransactionType
    amount: Any
    justification: str = ""
    source_id: Optional[str] = None
    destination_id: Optional[str] = None
    observations: Optional[str] = None
    request_type: Optional[str] = None
    request_id: Optional[str] = None
    idempotency_key: Optional[str] = None
    # devise attendue (celle de la demande payée)
    currency: Optional[str] = None


class CaisseService:
    def __init__(self, store: Store, audit: Optional[AuditService] = None):
        self.store = store
        self.settings = store.settings
        self.audit = audit or AuditService(store)

    # ---------------- Lecture ---------------- #

    def _load(self, caisse_id: Optional[str]) -> Caisse:
        d = self.store.caisses.get_by_id(caisse_id) if caisse_id else None
        if not d:
            raise NotFound(f"Caisse {caisse_id} introuvable")
        return Caisse.model_validate(d)

    def get_caisse(self, caisse_id: str) -> Caisse:
        with self.store.reading():
            return self._load(caisse_id)

    def get_balance(self, caisse_id: str) -> int:
        return self.get_caisse(caisse_id).balance

    def list_caisses(self, active_only: bool = False) -> List[Caisse]:
        with self.store.reading():
            rows = self.store.caisses.list_all()
        out = [Caisse.model_validate(d) for d in rows]
        if active_only:
            out = [c for c in out if c.is_active]
        return sorted(out, key=lambda c: c.name)

    def list_transactions(self, caisse_id: Optional[str] = None) -> List[LedgerTransaction]:
        with self.store.reading():
            rows = self.store.transactions.list_all()
        txs = [LedgerTransaction.model_validate(d) for d in rows]
        if caisse_id:
            txs = [t for t in txs if caisse_id in t.caisse_ids()]
        return txs

    def get_transaction(self, tx_id: str) -> LedgerTransaction:
        with self.store.reading():
            d = self.store.transactions.get_by_id(tx_id)
        if not d:
            raise NotFound(f"Mouvement {tx_id} introuvable")
        return LedgerTransaction.model_validate(d)

    def recalculate_balance(self, caisse_id: str) -> Dict[str, int]:
        """Recalcule le solde depuis le journal (lecture seule) et signale l'écart."""
        with self.store.reading():
            caisse = self._load(caisse_id)
            rows = self.store.transactions.list_all()
        computed = caisse.initial_balance
        for d in rows:
            computed += LedgerTransaction.model_validate(d).net_for(caisse_id)
        drift = caisse.balance - computed
        if drift:
            logger.warning("caisse balance drift", extra={"caisse": caisse.code, "drift": drift})
        return {"stored": caisse.balance, "computed": computed, "drift": drift}

    # ---------------- Administration ---------------- #

    def create_caisse(
        self, *, code: str, name: str, actor: Actor, currency: Optional[str] = None,
        initial_balance: Any = 0, type: str = "principale", description: Optional[str] = None,
    ) -> Caisse:
        if not actor.has_any_role(CAISSE_ADMIN_ROLES):
            raise Unauthorized("Création de caisse réservée au DAF / administrateur")
        code = (code or "").strip().upper()
        if not code or not (name or "").strip():
            raise ValidationFailed("Code et nom de caisse obligatoires")
        initial = round_montant(initial_balance)
        if initial < 0:
            raise ValidationFailed("Le solde initial ne peut pas être négatif")
        caisse = Caisse(
            code=code, name=name.strip(), currency=currency or self.settings.currency,
            initial_balance=initial, balance=initial, type=type, description=description,
        )
        with self.store.unit_of_work():
            if self.store.caisses.find_one(lambda d: d.get("code") == code):
                raise ValidationFailed(f"Une caisse avec le code {code} existe déjà")
            self.store.caisses.add(caisse)
            self.audit.record(
                actor_id=actor.id, action="caisse.create", entity_type="caisse", entity_id=caisse.id,
                new_value=caisse.model_dump(mode="json"),
            )
        logger.info("caisse created", extra={"caisse": code, "balance": initial})
        return caisse

    def set_active(self, caisse_id: str, active: bool, actor: Actor) -> Caisse:
        if not actor.has_any_role(CAISSE_ADMIN_ROLES):
            raise Unauthorized("Modification de caisse réservée au DAF / administrateur")
        with self.store.unit_of_work():
            caisse = self._load(caisse_id)
            if not active and caisse.balance != 0:
                raise ValidationFailed("Impossible de désactiver une caisse dont le solde n'est pas nul")
            old = {"is_active": caisse.is_active}
            caisse.is_active = active
            caisse.updated_at = utcnow()
            caisse = Caisse.model_validate(self.store.caisses.update(caisse, expected_version=caisse.version))
            self.audit.record(
                actor_id=actor.id, action="caisse.set_active", entity_type="caisse", entity_id=caisse.id,
                old_value=old, new_value={"is_active": active},
            )
        return caisse

    # ---------------- Opérations ---------------- #

    def replenish(self, caisse_id: str, amount: Any, motif: str, actor: Actor, **kw: Any) -> LedgerTransaction:
        return self.apply_transaction(
            build_operation(type="replenishment", destination_id=caisse_id, amount=amount, justification=motif, **kw),
            actor,
        )

    def transfer(self, source_id: str, destination_id: str, amount: Any, motif: str, actor: Actor, **kw: Any) -> LedgerTransaction:
        return self.apply_transaction(
            build_operation(
                type="transfer", source_id=source_id, destination_id=destination_id,
                amount=amount, justification=motif, **kw,
            ),
            actor,
        )

    def correct_payment(self, request_id: str, new_caisse_id: str, reason: str, actor: Actor, **kw: Any) -> LedgerTransaction:
        """Réaffecte le paiement d'une demande payée vers la bonne caisse."""
        with self.store.reading():
            d = self.store.requests.get_by_id(request_id)
        if not d:
            raise NotFound(f"Demande {request_id} introuvable")
        req = Request.model_validate(d)
        return self.apply_transaction(
            build_operation(
                type="correction", source_id=new_caisse_id, destination_id=req.caisse_id,
                amount=req.total_amount, justification=reason,
                request_type=req.request_type, request_id=req.id, currency=req.currency, **kw,
            ),
            actor,
        )

    def apply_transaction(self, op: LedgerOperation, actor: Actor) -> LedgerTransaction:
        """
        Applique un mouvement de façon atomique : toutes les jambes, la mise à jour
        éventuelle de la demande et l'audit sont validés ensemble ou pas du tout.
        Un échec est tracé dans l'audit (valeurs tentées) après annulation.
        """
        joined = self.store.in_unit_of_work
        try:
            with self.store.unit_of_work():
                tx = self.apply_in_unit(op, actor)
        except KpmError as e:
            if not joined:
                self.record_failure(op, actor, e)
            logger.warning(
                "ledger operation refused",
                extra={"type": op.type, "kind": e.kind, "actor": actor.id},
            )
            raise
        logger.info(
            "ledger operation applied",
            extra={"type": tx.type, "reference": tx.reference, "amount": tx.amount},
        )
        return tx

    def apply_in_unit(self, op: LedgerOperation, actor: Actor) -> LedgerTransaction:
        """Doit être appelée dans une unité de travail ouverte."""
        if not self.store.in_unit_of_work:
            raise RuntimeError("apply_in_unit requires an open unit of work")

        if not actor.has_any_role(LEDGER_ROLES[op.type]):
            raise Unauthorized(f"Rôle insuffisant pour l'opération {op.type}")

        amount = round_montant(op.amount)
        if op.idempotency_key:
            prev = self.store.transactions.find_one(lambda d: d.get("idempotency_key") == op.idempotency_key)
            if prev:
                return self._replay(LedgerTransaction.model_validate(prev), op, amount)

        if amount <= 0:
            raise ValidationFailed("Le montant doit être supérieur à 0")
        if op.type == "payment" and not op.request_id:
            raise ValidationFailed("Un paiement doit être rattaché à une demande")
        justification = (op.justification or "").strip()
        # un motif vide n'est jamais accepté
        min_len = max(1, self.settings.min_length(op.type))
        if len(justification) < min_len:
            raise ValidationFailed(
                f"Le motif est obligatoire (minimum {min_len} caractères)",
                details={"min_length": min_len, "length": len(justification)},
            )

        request: Optional[Request] = None
        correction_of: Optional[LedgerTransaction] = None

        if op.type == "replenishment":
            if op.source_id:
                raise ValidationFailed("Un approvisionnement n'a pas de caisse source")
            source, destination = None, self._active(op.destination_id)
        elif op.type == "payment":
            if op.destination_id:
                raise ValidationFailed("Un paiement n'a pas de caisse destination")
            source, destination = self._active(op.source_id), None
        else:
            if op.type == "correction":
                request, correction_of = self._correction_context(op)
                destination_id = op.destination_id or request.caisse_id
                if destination_id != request.caisse_id:
                    raise ValidationFailed("La caisse à corriger ne correspond pas au paiement enregistré")
                if amount != round_montant(correction_of.amount):
                    raise ValidationFailed("Le montant corrigé doit être celui du paiement d'origine")
                # la caisse d'origine peut avoir été désactivée depuis
                destination = self._load(destination_id)
            else:
                destination = self._active(op.destination_id)
            source = self._active(op.source_id)
            if source.id == destination.id:
                raise ValidationFailed("Les caisses source et destination doivent être différentes")
            if source.currency != destination.currency:
                raise ValidationFailed("Les deux caisses doivent avoir la même devise")

        if op.currency:
            for c in (source, destination):
                if c is not None and c.currency != op.currency:
                    raise ValidationFailed(f"La caisse {c.name} n'est pas en {op.currency}")

        # invariant vérifié avant toute mutation
        if source is not None and amount > source.balance:
            raise InsufficientFunds(
                f"Solde insuffisant sur {source.name} ({format_montant(source.balance, source.currency)})",
                details={"caisse_id": source.id, "balance": source.balance, "amount": amount},
            )

        now = utcnow()
        legs: List[LedgerLeg] = []
        # correction : jambe d'extourne (crédit caisse d'origine) puis jambe corrective
        if destination is not None:
            legs.append(self._move(destination, "credit", amount))
        if source is not None:
            legs.append(self._move(source, "debit", amount))

        tx = LedgerTransaction(
            reference=self._next_reference(now),
            type=op.type,
            source_id=source.id if source else None,
            destination_id=destination.id if destination else None,
            amount=amount,
            justification=justification,
            observations=op.observations,
            legs=legs,
            request_type=op.request_type,
            request_id=op.request_id,
            correction_of_id=correction_of.id if correction_of else None,
            idempotency_key=op.idempotency_key,
            actor_id=actor.id,
            created_at=now,
        )
        self.store.transactions.add(tx)

        for leg in legs:
            self.audit.record(
                actor_id=actor.id, action=f"caisse.{op.type}", entity_type="caisse", entity_id=leg.caisse_id,
                old_value={"balance": leg.balance_before}, new_value={"balance": leg.balance_after},
                metadata={
                    "transaction_id": tx.id, "reference": tx.reference, "direction": leg.direction,
                    "amount": amount, "justification": justification,
                },
            )

        if request is not None:
            self._repoint_request(request, tx, actor)
        return tx

    def record_failure(self, op: LedgerOperation, actor: Actor, error: KpmError) -> None:
        entity_id = op.source_id or op.destination_id or op.request_id or "-"
        try:
            self.audit.record(
                actor_id=actor.id, action=f"caisse.{op.type}.failed", entity_type="caisse", entity_id=entity_id,
                new_value=None,
                metadata={
                    "error": error.kind, "message": error.message,
                    "attempted": op.model_dump(mode="json"),
                },
            )
        except TransientError:
            logger.warning("could not record failed ledger attempt", extra={"type": op.type})

    # ---------------- Helpers ---------------- #

    @staticmethod
    def _replay(prev: LedgerTransaction, op: LedgerOperation, amount: int) -> LedgerTransaction:
        """Même clé : le mouvement doit être identique, sinon la clé est réutilisée à tort."""
        same = (op.type, op.request_type, op.request_id, op.source_id, amount) == (
            prev.type, prev.request_type, prev.request_id, prev.source_id, prev.amount,
        )
        # correction : la caisse d'origine de la demande a déjà été remplacée
        if op.type != "correction":
            same = same and op.destination_id == prev.destination_id
        if not same:
            raise ValidationFailed(
                f"Clé d'idempotence déjà utilisée par le mouvement {prev.reference}",
                details={"idempotency_key": op.idempotency_key, "transaction_id": prev.id},
            )
        logger.info("ledger operation replayed", extra={"reference": prev.reference})
        return prev

    def _active(self, caisse_id: Optional[str]) -> Caisse:
        if not caisse_id:
            raise ValidationFailed("Caisse non renseignée")
        caisse = self._load(caisse_id)
        if not caisse.is_active:
            raise ValidationFailed(f"La caisse {caisse.name} est inactive")
        return caisse

    def _move(self, caisse: Caisse, direction: str, amount: int) -> LedgerLeg:
        before = caisse.balance
        after = before + amount if direction == "credit" else before - amount
        if after < 0:
            raise InsufficientFunds(f"Solde insuffisant sur {caisse.name}")
        caisse.balance = after
        caisse.updated_at = utcnow()
        saved = self.store.caisses.update(caisse, expected_version=caisse.version)
        caisse.version = saved["version"]
        return LedgerLeg(caisse_id=caisse.id, direction=direction, amount=amount, balance_before=before, balance_after=after)

    def _correction_context(self, op: LedgerOperation):
        if op.request_type not in ("da", "note_frais") or not op.request_id:
            raise ValidationFailed("Une correction doit porter sur une demande payée")
        d = self.store.requests.get_by_id(op.request_id)
        if not d:
            raise NotFound(f"Demande {op.request_id} introuvable")
        request = Request.model_validate(d)
        if request.status not in PAID_STATUSES:
            raise ValidationFailed("Seul un paiement enregistré (demande payée) peut être corrigé")
        if not request.caisse_id or not request.payment_transaction_id:
            raise ValidationFailed("Cette demande n'a pas été payée par caisse")
        orig = self.store.transactions.get_by_id(request.payment_transaction_id)
        if not orig:
            raise NotFound(f"Mouvement {request.payment_transaction_id} introuvable")
        return request, LedgerTransaction.model_validate(orig)

    def _repoint_request(self, request: Request, tx: LedgerTransaction, actor: Actor) -> None:
        old = {"caisse_id": request.caisse_id, "payment_transaction_id": request.payment_transaction_id}
        request.caisse_id = tx.source_id
        request.payment_transaction_id = tx.id
        request.updated_at = tx.created_at
        self.store.requests.update(request, expected_version=request.version)
        self.audit.record(
            actor_id=actor.id, action=f"{request.request_type}.correct_caisse",
            entity_type=request.request_type, entity_id=request.id,
            old_value=old,
            new_value={"caisse_id": request.caisse_id, "payment_transaction_id": tx.id},
            metadata={"reason": tx.justification, "correction_of_id": tx.correction_of_id},
        )

    def _next_reference(self, now: datetime) -> str:
        prefix = f"MVT-{now.year}-"
        max_n = 0
        for d in self.store.transactions.list_all():
            num = d.get("reference") or ""
            if isinstance(num, str) and num.startswith(prefix):
                try:
                    max_n = max(max_n, int(num[len(prefix):]))
                except ValueError:
                    continue
        return f"{prefix}{max_n + 1:05d}"


def build_operation(**data: Any) -> LedgerOperation:
    try:
        return LedgerOperation(**data)
    except ValidationError as e:
        raise ValidationFailed(f"Opération de caisse invalide: {e.errors()[0].get('msg')}") from e
