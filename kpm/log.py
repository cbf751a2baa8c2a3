from __future__ import annotations
import logging
from typing import Any, Dict

_RESERVED = set(vars(logging.LogRecord("", 0, "", 0, "", (), None)).keys()) | {"message", "asctime"}


class KeyValueFormatter(logging.Formatter):
    """Ajoute les champs passés via `extra=` sous forme clé=valeur."""

    def format(self, record: logging.LogRecord) -> str:
        base = super().format(record)
        fields: Dict[str, Any] = {k: v for k, v in record.__dict__.items() if k not in _RESERVED}
        if not fields:
            return base
        kv = " ".join(f"{k}={v}" for k, v in sorted(fields.items()))
        return f"{base} | {kv}"


def configure_logging(level: str = "INFO") -> None:
    root = logging.getLogger("kpm")
    root.setLevel(level.upper())
    if any(isinstance(h.formatter, KeyValueFormatter) for h in root.handlers):
        return
    handler = logging.StreamHandler()
    handler.setFormatter(KeyValueFormatter("%(asctime)s %(levelname)s %(name)s: %(message)s"))
    root.addHandler(handler)
