from __future__ import annotations

import logging
import threading
from contextlib import contextmanager
from pathlib import Path
from typing import Dict, Iterator, List, Optional, Union

from filelock import FileLock, Timeout

from kpm.config import Settings, load_settings
from kpm.errors import KpmError, TransientError
from kpm.storage.repo import JsonRepository

logger = logging.getLogger(__name__)

COLLECTIONS = {
    # nom: (fichier, append_only)
    "requests": ("requests.json", False),
    "caisses": ("caisses.json", False),
    "transactions": ("caisse_transactions.json", True),
    "audit": ("audit_log.json", True),
}
LOCK_FILENAME = ".kpm.lock"


class Store:
    """
    Regroupe les repos JSON et fournit l'unité de travail atomique.

    Toutes les écritures d'une unité sont mises en attente puis publiées ensemble
    au commit ; la moindre exception annule l'ensemble, y compris un remplacement
    de fichiers déjà entamé. Deux verrous, tenus le temps de l'unité : un RLock
    propre à l'instance (threads) et un verrou fichier sur le dossier de données
    (processus).
    """

    def __init__(self, data_dir: Optional[Union[str, Path]] = None, settings: Optional[Settings] = None) -> None:
        self.settings = settings or load_settings(data_dir)
        base = Path(data_dir) if data_dir else Path(self.settings.data_dir)
        self.data_dir = base
        self._lock = threading.RLock()
        self._depth = 0
        self.repos: Dict[str, JsonRepository] = {
            name: JsonRepository(
                base / filename,
                entity_name=name,
                append_only=append_only,
                backup_enabled=self.settings.backup_enabled,
                backup_keep=self.settings.backup_keep,
            )
            for name, (filename, append_only) in COLLECTIONS.items()
        }
        self._file_lock = FileLock(str(base / LOCK_FILENAME))

    @property
    def requests(self) -> JsonRepository:
        return self.repos["requests"]

    @property
    def caisses(self) -> JsonRepository:
        return self.repos["caisses"]

    @property
    def transactions(self) -> JsonRepository:
        return self.repos["transactions"]

    @property
    def audit(self) -> JsonRepository:
        return self.repos["audit"]

    @property
    def in_unit_of_work(self) -> bool:
        return self._depth > 0

    @contextmanager
    def reading(self) -> Iterator["Store"]:
        # une lecture ne doit jamais voir les écritures en attente d'un autre thread
        with self._lock:
            yield self

    @contextmanager
    def unit_of_work(self) -> Iterator["Store"]:
        with self._lock:
            if self._depth:
                # unité imbriquée : rejoint l'unité englobante
                self._depth += 1
                try:
                    yield self
                finally:
                    self._depth -= 1
                return

            try:
                self._file_lock.acquire(timeout=self.settings.lock_timeout)
            except Timeout as e:
                raise TransientError(f"Data directory {self.data_dir} is locked by another process") from e
            self._depth = 1
            try:
                for repo in self.repos.values():
                    repo.begin()
                yield self
                self._commit()
            except BaseException as e:
                if not isinstance(e, KpmError):
                    logger.exception("unit of work aborted")
                raise
            finally:
                for repo in self.repos.values():
                    repo.discard()
                self._depth = 0
                self._file_lock.release()

    def _commit(self) -> None:
        dirty = [r for r in self.repos.values() if r.dirty]
        if not dirty:
            return
        for repo in dirty:
            repo.check_unchanged()
        # 1) tous les fichiers temporaires, 2) remplacement ; un échec en 1) ne touche rien
        prepared = [r for r in dirty if r.prepare()]
        published: List[JsonRepository] = []
        try:
            for repo in prepared:
                repo.publish()
                published.append(repo)
        except TransientError:
            # 2) partiel : on remet les fichiers déjà remplacés
            self._rollback(published)
            raise

    def _rollback(self, published: List[JsonRepository]) -> None:
        failed = []
        for repo in reversed(published):
            try:
                repo.restore()
            except TransientError:
                failed.append(repo.entity_name)
        if failed:
            logger.error("could not roll back unit of work", extra={"repos": ",".join(failed)})
        else:
            logger.warning("partial publish rolled back", extra={"repos": ",".join(r.entity_name for r in published)})
