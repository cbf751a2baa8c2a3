from __future__ import annotations
import json
import os
from pathlib import Path
from typing import Any, Dict, Optional, Union

from pydantic import BaseModel, Field, ValidationError

from kpm.models.money import DEFAULT_CURRENCY

ROOT_DIR = Path(__file__).resolve().parents[1]
DATA_DIR = ROOT_DIR / "data"
SETTINGS_FILENAME = "settings.json"


class JustificationRules(BaseModel):
    # longueurs minimales (après strip) du motif / de la raison
    replenishment: int = 5
    transfer: int = 5
    correction: int = 10
    payment: int = 1
    rejection: int = 5


class Settings(BaseModel):
    data_dir: Path = DATA_DIR
    currency: str = DEFAULT_CURRENCY
    log_level: str = "INFO"
    backup_enabled: bool = True
    backup_keep: int = 5
    # attente max (s) du verrou inter-processus sur le dossier de données
    lock_timeout: float = 10.0
    justification: JustificationRules = Field(default_factory=JustificationRules)

    def min_length(self, kind: str) -> int:
        return int(getattr(self.justification, kind, 0) or 0)


def _load_json(path: Path) -> Optional[Dict[str, Any]]:
    if not path.exists():
        return None
    try:
        data = json.loads(path.read_text(encoding="utf-8"))
    except (OSError, json.JSONDecodeError):
        return None
    return data if isinstance(data, dict) else None


def load_settings(data_dir: Optional[Union[str, Path]] = None, **overrides: Any) -> Settings:
    """
    Ordre de priorité :
    - arguments explicites
    - variables d'env (KPM_DATA_DIR, KPM_CURRENCY, KPM_LOG_LEVEL, KPM_BACKUP_KEEP)
    - <data_dir>/settings.json
    - valeurs par défaut
    """
    base = Path(data_dir or os.environ.get("KPM_DATA_DIR") or DATA_DIR)
    raw: Dict[str, Any] = dict(_load_json(base / SETTINGS_FILENAME) or {})
    raw["data_dir"] = base

    env_map = {
        "KPM_CURRENCY": "currency",
        "KPM_LOG_LEVEL": "log_level",
        "KPM_BACKUP_KEEP": "backup_keep",
    }
    for env_key, field in env_map.items():
        val = os.environ.get(env_key)
        if val:
            raw[field] = val

    raw.update(overrides)
    try:
        return Settings.model_validate(raw)
    except ValidationError as e:
        raise ValueError(f"Invalid settings in {base / SETTINGS_FILENAME}: {e}") from e
