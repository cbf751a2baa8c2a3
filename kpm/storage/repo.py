from __future__ import annotations

import glob
import hashlib
import json
import os
import shutil
from datetime import date, datetime
from pathlib import Path
from typing import Any, Callable, Dict, Generic, Iterable, List, Mapping, Optional, TypeVar, Union
from uuid import uuid4

from pydantic import BaseModel

from kpm.errors import ConflictError, TransientError

T = TypeVar("T", bound=Union[BaseModel, Mapping[str, Any]])


def _json_default(o: Any) -> Any:
    if isinstance(o, (date, datetime)):
        return o.isoformat()
    if isinstance(o, (set, frozenset)):
        return sorted(o)
    return str(o)


def _dump(data: Iterable[Mapping[str, Any]]) -> str:
    return json.dumps(list(data), ensure_ascii=False, indent=2, default=_json_default)


class JsonRepository(Generic[T]):
    """
    Repo JSON générique avec clé primaire configurable.
    - Rotation de backups (backup_enabled, backup_keep)
    - N'écrit pas si le contenu ne change pas
    - Écritures mises en attente pendant une unité de travail (begin/prepare/publish/discard)
    - Mise à jour conditionnelle sur le champ `version`
    - append_only : ni update ni delete (journal, audit)
    """

    def __init__(
        self,
        filepath: Union[str, Path],
        entity_name: str = "entity",
        key: str = "id",
        *,
        append_only: bool = False,
        backup_enabled: bool = True,
        backup_keep: int = 5,
    ) -> None:
        self.filepath = Path(filepath)
        self.entity_name = entity_name
        self.key = key
        self.append_only = append_only
        self.backup_enabled = backup_enabled
        self.backup_keep = max(0, int(backup_keep))

        self._staged: Optional[List[Dict[str, Any]]] = None
        self._dirty = False
        self._fingerprint: Optional[str] = None
        # contenu avant publication, pour annuler un commit partiel
        self._previous: Optional[str] = None

        try:
            self.filepath.parent.mkdir(parents=True, exist_ok=True)
            if not self.filepath.exists():
                self.filepath.write_text(_dump([]), encoding="utf-8")
        except OSError as e:
            raise TransientError(f"Cannot initialise {self.entity_name} storage: {e}") from e

    # ---------------- I/O bas niveau ---------------- #

    def _read_file(self) -> str:
        try:
            return self.filepath.read_text(encoding="utf-8")
        except FileNotFoundError:
            return "[]"
        except OSError as e:
            raise TransientError(f"Cannot read {self.entity_name} storage: {e}") from e

    def _read_raw(self) -> List[Dict[str, Any]]:
        if self._staged is not None:
            return self._staged
        return self._parse(self._read_file())

    def _parse(self, text: str) -> List[Dict[str, Any]]:
        try:
            data = json.loads(text)
        except json.JSONDecodeError:
            # Fichier corrompu : on le met de côté mais on ne l'écrase jamais en silence
            backup = self.filepath.with_suffix(".corrupt.json")
            try:
                shutil.copy2(self.filepath, backup)
            except OSError:
                pass
            raise TransientError(f"{self.entity_name} storage is corrupt (copied to {backup.name})")
        return data if isinstance(data, list) else []

    def _rotate_backups(self) -> None:
        if not self.backup_enabled or self.backup_keep <= 0:
            return
        pattern = str(self.filepath.with_suffix(".*.bak.json"))
        files = sorted(glob.glob(pattern))
        # garde les plus récents
        if len(files) > self.backup_keep:
            for old in files[: len(files) - self.backup_keep]:
                try:
                    Path(old).unlink(missing_ok=True)
                except OSError:
                    pass

    def _write_raw(self, data: List[Dict[str, Any]]) -> None:
        if self._staged is not None:
            self._staged = data
            self._dirty = True
            return
        self.prepare(_dump(data))
        self.publish()

    # ---------------- Unité de travail ---------------- #

    @staticmethod
    def _hash(text: str) -> str:
        return hashlib.sha256(text.encode("utf-8")).hexdigest()

    def begin(self) -> None:
        text = self._read_file()
        self._fingerprint = self._hash(text)
        self._staged = [dict(d) for d in self._parse(text)]
        self._dirty = False

    @property
    def dirty(self) -> bool:
        return self._dirty

    def check_unchanged(self) -> None:
        """Lève ConflictError si un autre processus a écrit depuis begin()."""
        if self._fingerprint is not None and self._hash(self._read_file()) != self._fingerprint:
            raise ConflictError(f"{self.entity_name} storage changed concurrently")

    def _tmp_path(self) -> Path:
        return self.filepath.with_suffix(".tmp.json")

    def prepare(self, text: Optional[str] = None) -> bool:
        """Écrit le fichier temporaire. Retourne False si rien à écrire."""
        if text is None:
            if self._staged is None or not self._dirty:
                return False
            text = _dump(self._staged)
        try:
            if self.filepath.exists() and self.filepath.read_text(encoding="utf-8") == text:
                self._tmp_path().unlink(missing_ok=True)
                return False
            self._tmp_path().write_text(text, encoding="utf-8")
        except OSError as e:
            raise TransientError(f"Cannot write {self.entity_name} storage: {e}") from e
        return True

    def publish(self) -> None:
        self._previous = None
        tmp = self._tmp_path()
        if not tmp.exists():
            return
        try:
            if self.backup_enabled and self.filepath.exists():
                ts = datetime.now().strftime("%Y%m%d-%H%M%S-%f")
                shutil.copy2(self.filepath, self.filepath.with_suffix(f".{ts}.bak.json"))
                self._rotate_backups()
            self._previous = self._read_file() if self.filepath.exists() else None
            os.replace(tmp, self.filepath)
        except OSError as e:
            raise TransientError(f"Cannot write {self.entity_name} storage: {e}") from e

    def restore(self) -> None:
        """Remet le contenu d'avant publish() (annulation d'un commit partiel)."""
        if self._previous is None:
            return
        tmp = self._tmp_path()
        try:
            tmp.write_text(self._previous, encoding="utf-8")
            os.replace(tmp, self.filepath)
        except OSError as e:
            raise TransientError(f"Cannot restore {self.entity_name} storage: {e}") from e
        self._previous = None

    def discard(self) -> None:
        self._tmp_path().unlink(missing_ok=True)
        self._staged = None
        self._dirty = False
        self._fingerprint = None
        self._previous = None

    # ---------------- Helpers ---------------- #

    @staticmethod
    def _to_dict(item: T) -> Dict[str, Any]:
        if isinstance(item, BaseModel):
            return json.loads(item.model_dump_json())
        if isinstance(item, Mapping):
            return dict(item)
        return dict(item.__dict__)  # type: ignore[arg-type]

    # ---------------- CRUD ---------------- #

    def list_all(self) -> List[Dict[str, Any]]:
        return list(self._read_raw())

    def get_by_id(self, obj_id: Any) -> Optional[Dict[str, Any]]:
        k = self.key
        for it in self._read_raw():
            if str(it.get(k)) == str(obj_id):
                return it
        return None

    def add(self, item: T) -> Dict[str, Any]:
        record = self._to_dict(item)
        k = self.key
        if not record.get(k):
            record[k] = uuid4().hex
        data = list(self._read_raw())
        if any(str(d.get(k)) == str(record[k]) for d in data):
            raise ValueError(f"{self.entity_name} with {k}={record[k]} already exists")
        data.append(record)
        self._write_raw(data)
        return record

    def update(self, item: T, *, expected_version: Optional[int] = None) -> Dict[str, Any]:
        """
        Mise à jour conditionnelle : si expected_version est fourni, la ligne stockée
        doit porter cette version, sinon ConflictError. La version est incrémentée.
        """
        if self.append_only:
            raise TypeError(f"{self.entity_name} storage is append-only")
        record = self._to_dict(item)
        k = self.key
        obj_id = record.get(k)
        if not obj_id:
            raise ValueError(f"Cannot update {self.entity_name} without '{k}'")
        data = list(self._read_raw())
        for idx, existing in enumerate(data):
            if str(existing.get(k)) == str(obj_id):
                current = int(existing.get("version") or 0)
                if expected_version is not None and current != expected_version:
                    raise ConflictError(
                        f"{self.entity_name} {obj_id} was modified (version {current}, expected {expected_version})"
                    )
                merged = {**existing, **record, "version": current + 1}
                data[idx] = merged
                self._write_raw(data)
                return merged
        raise ValueError(f"{self.entity_name} with {k}={obj_id} not found")

    def delete(self, obj_id: Any) -> bool:
        if self.append_only:
            raise TypeError(f"{self.entity_name} storage is append-only")
        k = self.key
        data = self._read_raw()
        new_data = [d for d in data if str(d.get(k)) != str(obj_id)]
        changed = len(new_data) != len(data)
        if changed:
            self._write_raw(new_data)
        return changed

    # ---------------- Recherches ---------------- #

    def find(self, predicate: Callable[[Dict[str, Any]], bool]) -> List[Dict[str, Any]]:
        return [r for r in self._read_raw() if predicate(r)]

    def find_one(self, predicate: Callable[[Dict[str, Any]], bool]) -> Optional[Dict[str, Any]]:
        for r in self._read_raw():
            if predicate(r):
                return r
        return None
