from __future__ import annotations
import logging
import math
from datetime import datetime
from typing import Any, Dict, Iterable, List, Optional

from pydantic import ValidationError

from kpm.errors import InvalidTransition, NotFound, Unauthorized, ValidationFailed
from kpm.models.common import Actor, utcnow
from kpm.models.request import (
    PRICEABLE_STATUSES, REFERENCE_PREFIX, LineItem, Request,
)
from kpm.services.audit_service import AuditService
from kpm.services.workflow_rules import ADMIN, LOGISTICS, PURCHASING
from kpm.storage.store import Store

logger = logging.getLogger(__name__)

READ_ONLY_ROLES = frozenset({"lecture_seule"})

# qui peut créer quoi ; None = tout utilisateur non lecture seule
CREATE_ROLES = {
    "da": LOGISTICS | ADMIN,
    "besoin": None,
    "note_frais": None,
}

# en plus du demandeur, qui peut ajouter des lignes
LINE_EDITORS = {
    "da": LOGISTICS | PURCHASING | ADMIN,
    "besoin": ADMIN,
    "note_frais": ADMIN,
}


def _validation_message(e: ValidationError) -> str:
    first = e.errors()[0] if e.errors() else {}
    loc = ".".join(str(x) for x in first.get("loc", ()))
    return f"{loc}: {first.get('msg', 'invalid')}" if loc else str(first.get("msg", "invalid"))


def parse_lines(lines: Iterable[Any]) -> List[LineItem]:
    out: List[LineItem] = []
    for ln in lines or []:
        try:
            out.append(ln if isinstance(ln, LineItem) else LineItem.model_validate(ln))
        except ValidationError as e:
            raise ValidationFailed(f"Ligne invalide ({_validation_message(e)})") from e
    return out


class RequestService:
    def __init__(self, store: Store, audit: Optional[AuditService] = None) -> None:
        self.store = store
        self.settings = store.settings
        self.audit = audit or AuditService(store)

    # ----- Numérotation ----- #

    def _next_reference(self, request_type: str, now: Optional[datetime] = None) -> str:
        year = (now or utcnow()).year
        prefix = f"{REFERENCE_PREFIX[request_type]}-{year}-"
        max_n = 0
        for d in self.store.requests.list_all():
            num = d.get("reference") or ""
            if isinstance(num, str) and num.startswith(prefix):
                tail = num.replace(prefix, "")
                try:
                    n = int(tail)
                    if n > max_n:
                        max_n = n
                except ValueError:
                    continue
        return f"{prefix}{max_n + 1:04d}"

    # ----- Lecture ----- #

    def load(self, request_id: str) -> Request:
        """Lecture sans verrou : à utiliser dans une unité de travail."""
        d = self.store.requests.get_by_id(request_id)
        if not d:
            raise NotFound(f"Demande {request_id} introuvable")
        return Request.model_validate(d)

    def get_by_id(self, request_id: str) -> Request:
        with self.store.reading():
            return self.load(request_id)

    def list_requests(self, request_type: Optional[str] = None, status: Optional[str] = None) -> List[Request]:
        with self.store.reading():
            rows = self.store.requests.find(
                lambda d: (request_type is None or d.get("request_type") == request_type)
                and (status is None or d.get("status") == status)
            )
        return [Request.model_validate(d) for d in rows]

    # ----- Création / lignes ----- #

    def create_request(
        self, request_type: str, actor: Actor, *, title: str = "", lines: Iterable[Any] = (),
        department: Optional[str] = None, priority: str = "normale", currency: Optional[str] = None,
    ) -> Request:
        if request_type not in CREATE_ROLES:
            raise ValidationFailed(f"Type de demande inconnu: {request_type}")
        allowed = CREATE_ROLES[request_type]
        if actor.roles and actor.roles <= READ_ONLY_ROLES:
            raise Unauthorized("Profil en lecture seule")
        if allowed is not None and not actor.has_any_role(allowed):
            raise Unauthorized(f"Rôle insuffisant pour créer une demande {request_type}")

        try:
            req = Request(
                request_type=request_type, title=title, requester_id=actor.id,
                department=department or actor.department, priority=priority,
                currency=currency or self.settings.currency, lines=parse_lines(lines),
            )
        except ValidationError as e:
            raise ValidationFailed(f"Demande invalide ({_validation_message(e)})") from e

        with self.store.unit_of_work():
            req = self.insert(req, actor)
        logger.info("request created", extra={"reference": req.reference, "total": req.total_amount})
        return req

    def insert(self, req: Request, actor: Actor, *, origin: Optional[Dict[str, Any]] = None) -> Request:
        """Enregistre une nouvelle demande dans l'unité de travail courante."""
        req.reference = req.reference or self._next_reference(req.request_type, req.created_at)
        self.store.requests.add(req)
        self.audit.record(
            actor_id=actor.id, action=f"{req.request_type}.create", entity_type=req.request_type,
            entity_id=req.id, new_value=req.model_dump(mode="json", exclude={"history"}),
            metadata=origin or {},
        )
        return req

    def save(self, req: Request) -> Request:
        req.updated_at = utcnow()
        saved = self.store.requests.update(req, expected_version=req.version)
        req.version = saved["version"]
        return req

    def _check_line_editor(self, req: Request, actor: Actor) -> None:
        if actor.id == req.requester_id:
            return
        if not actor.has_any_role(LINE_EDITORS[req.request_type]):
            raise Unauthorized("Seul le demandeur peut modifier cette demande")

    def add_line(self, request_id: str, line: Any, actor: Actor) -> Request:
        (item,) = parse_lines([line])
        with self.store.unit_of_work():
            req = self.load(request_id)
            if not req.is_editable():
                raise InvalidTransition(f"Demande {req.reference} non modifiable (statut {req.status})")
            self._check_line_editor(req, actor)
            old_total = req.total_amount
            req.lines.append(item)
            req.recalc_totals()
            self.save(req)
            self.audit.record(
                actor_id=actor.id, action=f"{req.request_type}.add_line", entity_type=req.request_type,
                entity_id=req.id, old_value={"total_amount": old_total},
                new_value={"total_amount": req.total_amount, "line": item.model_dump(mode="json")},
            )
        return req

    def price_line(
        self, request_id: str, line_id: str, unit_price: Any, actor: Actor, *, supplier: Optional[str] = None,
    ) -> Request:
        """Chiffrage d'une ligne de DA par le service Achats."""
        with self.store.unit_of_work():
            req = self.load(request_id)
            if req.request_type != "da" or req.status not in PRICEABLE_STATUSES:
                raise InvalidTransition(f"Chiffrage impossible au statut {req.status}")
            if not actor.has_any_role(PURCHASING | ADMIN):
                raise Unauthorized("Chiffrage réservé au service Achats")
            line = req.find_line(line_id)
            if line is None:
                raise NotFound(f"Ligne {line_id} introuvable")
            old = {"unit_price": line.unit_price, "supplier": line.supplier, "total_amount": req.total_amount}
            try:
                line.unit_price = float(unit_price)
            except (TypeError, ValueError) as e:
                raise ValidationFailed("Prix unitaire invalide") from e
            if not math.isfinite(line.unit_price):
                raise ValidationFailed("Prix unitaire invalide")
            if line.unit_price < 0:
                raise ValidationFailed("Le prix unitaire ne peut pas être négatif")
            if supplier:
                line.supplier = supplier
            req.recalc_totals()
            self.save(req)
            self.audit.record(
                actor_id=actor.id, action="da.price_line", entity_type="da", entity_id=req.id,
                old_value=old,
                new_value={"unit_price": line.unit_price, "supplier": line.supplier, "total_amount": req.total_amount},
                metadata={"line_id": line_id},
            )
        return req

    def build_da_from_besoin(self, besoin: Request, actor: Actor) -> Request:
        """DA brouillon reprenant les lignes du besoin (sans prix)."""
        lines = [
            LineItem(designation=ln.designation, quantity=ln.quantity, unit=ln.unit)
            for ln in besoin.lines
        ]
        return Request(
            request_type="da", title=besoin.title, requester_id=actor.id,
            department=besoin.department, priority=besoin.priority,
            currency=besoin.currency, lines=lines, besoin_id=besoin.id,
        )
