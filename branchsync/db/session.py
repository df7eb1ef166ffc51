"""Database session management.

Every branch owns a physically separate database. Engines are created
lazily, one per branch, and the schema is created on first use so a new
branch can start syncing without a manual migration step.
"""

import logging
import re
import threading
from collections.abc import Generator
from typing import Annotated, Dict

from fastapi import Depends, HTTPException, status
from sqlalchemy import text
from sqlalchemy.engine import Engine
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session, sessionmaker

from branchsync.core.config import settings
from branchsync.core.rbac import CurrentUser
from branchsync.db.base import Base
from branchsync.db.engine import create_store_engine
import branchsync.models  # noqa: F401  (registers tables on Base.metadata)

logger = logging.getLogger(__name__)

_BRANCH_ID_RE = re.compile(r"^[A-Za-z0-9_-]{1,64}$")


class BranchDatabaseRegistry:
    """Lazily created, per-branch engines and session factories."""

    def __init__(self, url_template: str, echo: bool = False):
        self.url_template = url_template
        self.echo = echo
        self._engines: Dict[str, Engine] = {}
        self._factories: Dict[str, sessionmaker] = {}
        self._lock = threading.Lock()

    def url_for(self, branch_id: str) -> str:
        if not _BRANCH_ID_RE.match(branch_id or ""):
            raise ValueError(f"Invalid branch id: {branch_id!r}")
        return self.url_template.format(branch_id=branch_id)

    def session_factory(self, branch_id: str) -> sessionmaker:
        factory = self._factories.get(branch_id)
        if factory is not None:
            return factory

        with self._lock:
            factory = self._factories.get(branch_id)
            if factory is None:
                engine = create_store_engine(self.url_for(branch_id), echo=self.echo)
                Base.metadata.create_all(bind=engine)
                factory = sessionmaker(autocommit=False, autoflush=False, bind=engine)
                self._engines[branch_id] = engine
                self._factories[branch_id] = factory
                logger.info(f"Branch store ready for branch '{branch_id}'")
        return factory

    def session(self, branch_id: str) -> Session:
        return self.session_factory(branch_id)()

    def check(self) -> Dict[str, bool]:
        """Run ``SELECT 1`` against every branch store opened so far."""
        with self._lock:
            engines = dict(self._engines)
        results: Dict[str, bool] = {}
        for branch_id, engine in engines.items():
            try:
                with engine.connect() as conn:
                    conn.execute(text("SELECT 1"))
                results[branch_id] = True
            except SQLAlchemyError as e:
                logger.error(f"Health check failed for branch store '{branch_id}': {e}")
                results[branch_id] = False
        return results

    def dispose(self) -> None:
        with self._lock:
            for engine in self._engines.values():
                engine.dispose()
            self._engines.clear()
            self._factories.clear()


branch_databases = BranchDatabaseRegistry(settings.branch_database_url_template)


def get_branch_id(current_user: CurrentUser) -> str:
    """The branch the authenticated terminal belongs to, from its token."""
    if not current_user.branch_id:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Branch context not found",
        )
    if not _BRANCH_ID_RE.match(current_user.branch_id):
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=f"Invalid branch id: {current_user.branch_id!r}",
        )
    return current_user.branch_id


BranchId = Annotated[str, Depends(get_branch_id)]


def get_branch_db(branch_id: BranchId) -> Generator[Session, None, None]:
    """Get a session on the authenticated user's branch store."""
    db = branch_databases.session(branch_id)
    try:
        yield db
    finally:
        db.close()


# Type alias for dependency injection
BranchDbSession = Annotated[Session, Depends(get_branch_db)]
