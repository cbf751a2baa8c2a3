from __future__ import annotations
from typing import Any, Dict, Optional


class KpmError(Exception):
    kind = "error"
    retryable = False
    # catégorie de message côté interface (une par type d'erreur)
    category = "erreur"

    def __init__(self, message: str, *, details: Optional[Dict[str, Any]] = None) -> None:
        super().__init__(message)
        self.message = message
        self.details = details or {}


class InvalidTransition(KpmError):
    kind = "invalid_transition"
    category = "etat_incompatible"


class Unauthorized(KpmError):
    kind = "unauthorized"
    category = "acces_refuse"


class ValidationFailed(KpmError):
    kind = "validation_failed"
    category = "donnees_invalides"


class NotFound(ValidationFailed):
    kind = "not_found"
    category = "introuvable"


class InsufficientFunds(KpmError):
    kind = "insufficient_funds"
    category = "solde_insuffisant"


class TransientError(KpmError):
    kind = "transient"
    retryable = True
    category = "indisponible"


class ConflictError(KpmError):
    kind = "conflict"
    retryable = True
    category = "modification_concurrente"
