from __future__ import annotations
import logging
from typing import Dict, FrozenSet, List, Optional, Protocol, Tuple

from jinja2 import DictLoader, Environment, StrictUndefined
from pydantic import BaseModel, Field

from kpm.models.common import utcnow
from kpm.models.money import format_montant
from kpm.models.request import Request

logger = logging.getLogger(__name__)

# corps des messages ; "default" sert quand aucun gabarit spécifique n'existe
MESSAGE_TEMPLATES = {
    "default": "{{ reference }} ({{ title or 'sans titre' }}) : {{ action }} -> {{ status }}",
    "da.paid": "{{ reference }} payée : {{ total_amount | montant(currency) }}"
               "{% if caisse_id %} depuis la caisse {{ caisse_id }}{% endif %}",
    "da.pending_validation": "{{ reference }} à valider : {{ total_amount | montant(currency) }}",
    "note_frais.paid": "Note de frais {{ reference }} remboursée : {{ total_amount | montant(currency) }}",
    "da.revision_requested": "{{ reference }} renvoyée pour correction{% if comment %} : {{ comment }}{% endif %}",
    "besoin.returned": "Besoin {{ reference }} retourné{% if comment %} : {{ comment }}{% endif %}",
}

_env = Environment(loader=DictLoader(MESSAGE_TEMPLATES), undefined=StrictUndefined, autoescape=False)
_env.filters["montant"] = format_montant


class Notification(BaseModel):
    title: str
    message: str
    type: str
    request_type: str
    request_id: str
    reference: Optional[str] = None
    recipient_roles: List[str] = Field(default_factory=list)
    recipient_ids: List[str] = Field(default_factory=list)
    created_at: str = Field(default_factory=lambda: utcnow().isoformat())


class NotificationDispatcher(Protocol):
    def dispatch(self, notification: Notification) -> None: ...


class LoggingDispatcher:
    """Dispatcher par défaut : se contente de journaliser."""

    def dispatch(self, notification: Notification) -> None:
        logger.info(
            notification.title,
            extra={"reference": notification.reference, "roles": ",".join(notification.recipient_roles)},
        )


# (type de demande, statut atteint) -> (titre, rôles destinataires, prévenir le demandeur)
ROUTING: Dict[Tuple[str, str], Tuple[str, FrozenSet[str], bool]] = {
    ("da", "submitted"): ("DA soumise au Service Achats", frozenset({"responsable_achats", "agent_achats"}), False),
    ("da", "revision_requested"): ("DA renvoyée au demandeur", frozenset(), True),
    ("da", "pending_validation"): ("DA soumise à validation", frozenset({"daf", "dg"}), False),
    ("da", "revision_purchasing"): ("Révision demandée", frozenset({"responsable_achats", "agent_achats"}), False),
    ("da", "validated_finance"): ("DA validée financièrement", frozenset({"comptable"}), True),
    ("da", "refused_finance"): ("DA refusée", frozenset({"responsable_achats"}), True),
    ("da", "paid"): ("DA payée", frozenset(), True),
    ("da", "rejected"): ("DA rejetée", frozenset(), True),
    ("da", "rejected_accounting"): ("DA rejetée par la Comptabilité", frozenset({"daf", "responsable_logistique"}), True),
    ("besoin", "accepted"): ("Besoin accepté", frozenset(), True),
    ("besoin", "refused"): ("Besoin refusé", frozenset(), True),
    ("besoin", "returned"): ("Besoin retourné pour correction", frozenset(), True),
    ("besoin", "created"): ("Besoin resoumis", frozenset({"responsable_logistique", "responsable_achats"}), False),
    ("note_frais", "submitted"): ("Note de frais soumise", frozenset({"daf"}), False),
    ("note_frais", "validated_daf"): ("Note de frais validée", frozenset({"comptable"}), True),
    ("note_frais", "rejected"): ("Note de frais rejetée", frozenset(), True),
    ("note_frais", "paid"): ("Note de frais payée", frozenset(), True),
}


def render_message(request: Request, action: str) -> str:
    key = f"{request.request_type}.{request.status}"
    tpl = _env.get_template(key if key in MESSAGE_TEMPLATES else "default")
    last = request.last_transition()
    return tpl.render(
        reference=request.reference or request.id,
        title=request.title,
        action=action,
        status=request.status,
        total_amount=request.total_amount,
        currency=request.currency,
        caisse_id=request.caisse_id,
        comment=last.comment if last else None,
    )


def build_notification(request: Request, action: str) -> Optional[Notification]:
    route = ROUTING.get((request.request_type, request.status))
    if route is None:
        return None
    title, roles, notify_requester = route
    return Notification(
        title=title,
        message=render_message(request, action),
        type=f"{request.request_type}.{request.status}",
        request_type=request.request_type,
        request_id=request.id,
        reference=request.reference,
        recipient_roles=sorted(roles),
        recipient_ids=[request.requester_id] if notify_requester else [],
    )


def notify_safely(dispatcher: Optional[NotificationDispatcher], request: Request, action: str) -> bool:
    """Envoi après commit ; un échec est journalisé, jamais propagé."""
    if dispatcher is None:
        return False
    try:
        notification = build_notification(request, action)
        if notification is None:
            return False
        dispatcher.dispatch(notification)
    except Exception:
        logger.exception("notification dispatch failed", extra={"reference": request.reference})
        return False
    return True
