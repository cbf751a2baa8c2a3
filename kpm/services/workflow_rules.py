from __future__ import annotations
from dataclasses import dataclass
from typing import Any, Callable, Dict, FrozenSet, Optional, Tuple

from kpm.config import Settings
from kpm.errors import ValidationFailed
from kpm.models.request import Request

# ---------- Rôles ---------- #

ADMIN = frozenset({"admin"})
LOGISTICS = frozenset({"responsable_logistique", "agent_logistique"})
PURCHASING = frozenset({"responsable_achats", "agent_achats"})
FINANCE_DIRECTION = frozenset({"daf", "dg"})
DAF = frozenset({"daf"})
ACCOUNTING = frozenset({"comptable"})
# Logistique et Achats partagent la gestion des besoins
BESOIN_MANAGERS = LOGISTICS | PURCHASING | ADMIN

Validator = Callable[[Request, Dict[str, Any], Settings], None]


# ---------- Validateurs de payload ---------- #

def payload_text(payload: Dict[str, Any], *keys: str) -> str:
    for k in keys:
        v = payload.get(k)
        if isinstance(v, str) and v.strip():
            return v.strip()
    return ""


def require_reason(request: Request, payload: Dict[str, Any], settings: Settings) -> None:
    min_len = settings.min_length("rejection")
    reason = payload_text(payload, "reason", "comment")
    if len(reason) < min_len:
        raise ValidationFailed(
            f"Un motif d'au moins {min_len} caractères est obligatoire",
            details={"min_length": min_len, "length": len(reason)},
        )


def require_lines(request: Request, payload: Dict[str, Any], settings: Settings) -> None:
    if not request.lines:
        raise ValidationFailed("La demande ne contient aucune ligne")


def require_priced_line(request: Request, payload: Dict[str, Any], settings: Settings) -> None:
    if not request.priced_lines():
        raise ValidationFailed("Aucun prix sélectionné : au moins une ligne chiffrée est requise")


def check_payment(request: Request, payload: Dict[str, Any], settings: Settings) -> None:
    caisse_id = payload.get("caisse_id")
    if caisse_id is not None and not isinstance(caisse_id, str):
        raise ValidationFailed("caisse_id invalide")
    details = payload.get("payment_details")
    if details is not None and not isinstance(details, dict):
        raise ValidationFailed("payment_details doit être un objet")
    if request.total_amount <= 0:
        raise ValidationFailed("Montant nul : rien à payer")


def no_check(request: Request, payload: Dict[str, Any], settings: Settings) -> None:
    return None


# ---------- Table des transitions ---------- #

@dataclass(frozen=True)
class Transition:
    action: str
    sources: FrozenSet[str]
    target: str
    roles: FrozenSet[str]
    validator: Validator = no_check
    # le demandeur peut déclencher l'action quels que soient ses rôles
    owner_allowed: bool = False
    # déclenche un mouvement de caisse de type paiement
    payment: bool = False
    # crée une DA à partir du besoin
    convert: bool = False


def _t(action, sources, target, roles, validator=no_check, **kw) -> Transition:
    return Transition(action, frozenset(sources), target, frozenset(roles), validator, **kw)


_DA_OPEN = ("draft", "submitted", "under_review", "revision_requested", "priced",
            "pending_validation", "revision_purchasing", "validated_finance")

DA_TRANSITIONS = [
    _t("submit", ["draft"], "submitted", LOGISTICS | ADMIN, require_lines),
    _t("take_analysis", ["submitted"], "under_review", PURCHASING | ADMIN),
    _t("return_to_requester", ["under_review"], "revision_requested", PURCHASING | ADMIN, require_reason),
    _t("resubmit", ["revision_requested"], "submitted", LOGISTICS | ADMIN, require_lines, owner_allowed=True),
    _t("price", ["under_review", "revision_purchasing"], "priced", PURCHASING | ADMIN, require_priced_line),
    _t("submit_validation", ["priced", "revision_purchasing"], "pending_validation", PURCHASING | ADMIN, require_priced_line),
    _t("reject", ["submitted", "under_review", "priced"], "rejected", PURCHASING | ADMIN, require_reason),
    _t("validate_finance", ["pending_validation"], "validated_finance", FINANCE_DIRECTION | ADMIN),
    _t("refuse_finance", ["pending_validation"], "refused_finance", FINANCE_DIRECTION | ADMIN, require_reason),
    _t("request_revision", ["pending_validation"], "revision_purchasing", FINANCE_DIRECTION | ADMIN, require_reason),
    _t("pay", ["validated_finance"], "paid", ACCOUNTING | ADMIN, check_payment, payment=True),
    _t("reject_accounting", ["validated_finance"], "rejected_accounting", ACCOUNTING | ADMIN, require_reason),
    _t("cancel", _DA_OPEN, "cancelled", ADMIN, require_reason),
]

BESOIN_TRANSITIONS = [
    _t("take_charge", ["created"], "in_progress", BESOIN_MANAGERS),
    _t("accept", ["in_progress"], "accepted", BESOIN_MANAGERS),
    _t("refuse", ["in_progress"], "refused", BESOIN_MANAGERS, require_reason),
    _t("return", ["in_progress"], "returned", BESOIN_MANAGERS, require_reason),
    _t("resubmit", ["returned"], "created", ADMIN, require_lines, owner_allowed=True),
    _t("convert", ["accepted"], "converted", BESOIN_MANAGERS, require_lines, convert=True),
    _t("cancel", ["in_progress", "accepted"], "cancelled", ADMIN, require_reason),
]

NOTE_FRAIS_TRANSITIONS = [
    _t("submit", ["draft"], "submitted", ADMIN, require_lines, owner_allowed=True),
    _t("validate", ["submitted"], "validated_daf", DAF | ADMIN),
    _t("reject", ["submitted"], "rejected", DAF | ADMIN, require_reason),
    _t("pay", ["validated_daf"], "paid", ACCOUNTING | ADMIN, check_payment, payment=True),
    _t("cancel", ["draft"], "cancelled", ADMIN, require_reason, owner_allowed=True),
]

TRANSITIONS: Dict[Tuple[str, str], Transition] = {}
for _rtype, _rules in (("da", DA_TRANSITIONS), ("besoin", BESOIN_TRANSITIONS), ("note_frais", NOTE_FRAIS_TRANSITIONS)):
    for _rule in _rules:
        TRANSITIONS[(_rtype, _rule.action)] = _rule


def get_transition(request_type: str, action: str) -> Optional[Transition]:
    return TRANSITIONS.get((request_type, action))


def available_actions(request: Request) -> list[str]:
    """Actions dont l'état source correspond (sans contrôle de rôle)."""
    if request.is_terminal():
        return []
    return [a for (rt, a), t in TRANSITIONS.items() if rt == request.request_type and request.status in t.sources]
