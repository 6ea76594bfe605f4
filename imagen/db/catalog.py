from typing import Any

from sqlalchemy.orm import sessionmaker

from imagen.db import repository
from imagen.db.database import SessionLocal, session_scope


class MediaCatalog:
    """Catalog access for the generation pipeline, one short session per call."""

    def __init__(self, session_factory: sessionmaker = SessionLocal):
        self._session_factory = session_factory

    def add_entry(self, data: dict[str, Any]) -> dict[str, Any]:
        with session_scope(self._session_factory) as db:
            return repository.add_entry(db, data)

    def find_by_uid(self, uid: int) -> dict[str, Any] | None:
        with session_scope(self._session_factory) as db:
            return repository.find_by_uid(db, uid)

    def update_entry(self, uid: int, data: dict[str, Any]) -> dict[str, Any] | None:
        with session_scope(self._session_factory) as db:
            return repository.update_entry(db, uid, data)

    def list_filtered(self, **filters) -> list[dict[str, Any]]:
        with session_scope(self._session_factory) as db:
            return repository.list_filtered(db, **filters)
