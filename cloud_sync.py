"""Per-user cloud backup: one remote document per local entity.

Documents live under ``users/<uid>/<collection>/<doc_id>``. Each carries a
``syncedAt`` stamp taken from the backing database clock at write time, and
all writes of a single push are committed together.
"""

from __future__ import annotations

import logging
import threading
from abc import ABC, abstractmethod
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Iterator, Optional

from sqlalchemy import JSON, DateTime, Integer, String, UniqueConstraint, delete, func, select
from sqlalchemy.engine import Engine
from sqlalchemy.orm import DeclarativeBase, Mapped, Session, mapped_column, sessionmaker

from database import create_db_engine
from schemas import CloudBackup, CloudSnapshot, SyncResult

logger = logging.getLogger(__name__)

CATEGORIES = "categories"
TRANSACTIONS = "transactions"
SAVINGS_GOALS = "savingsGoals"
SETTINGS = "settings"
SETTINGS_DOC_ID = "app"
SYNCED_AT = "syncedAt"


class CloudBase(DeclarativeBase):
    pass


class CloudDocument(CloudBase):
    __tablename__ = "cloud_documents"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    user_id: Mapped[str] = mapped_column(String(128), nullable=False)
    collection: Mapped[str] = mapped_column(String(32), nullable=False)
    doc_id: Mapped[str] = mapped_column(String(64), nullable=False)
    payload: Mapped[dict[str, Any]] = mapped_column(JSON, nullable=False)
    synced_at: Mapped[datetime] = mapped_column(
        DateTime, nullable=False, server_default=func.now()
    )

    __table_args__ = (
        UniqueConstraint("user_id", "collection", "doc_id", name="uq_cloud_doc_path"),
    )


@dataclass(frozen=True)
class DocumentWrite:
    collection: str
    doc_id: str
    payload: dict[str, Any]


class CloudDocumentStore(ABC):
    """Minimal document tree the reconciliation service talks to."""

    @abstractmethod
    def commit_batch(self, user_id: str, writes: list[DocumentWrite]) -> None:
        """Upsert every write atomically; all land or none do."""

    @abstractmethod
    def list_documents(self, user_id: str, collection: str) -> list[dict[str, Any]]:
        """Payloads of a collection, each with its ``syncedAt`` stamp."""

    @abstractmethod
    def get_document(
        self, user_id: str, collection: str, doc_id: str
    ) -> Optional[dict[str, Any]]:
        pass

    @abstractmethod
    def delete_namespace(self, user_id: str) -> int:
        pass


class SQLDocumentStore(CloudDocumentStore):
    def __init__(self, engine: Engine) -> None:
        self.engine = engine
        CloudBase.metadata.create_all(engine)
        self.SessionLocal = sessionmaker(
            bind=engine, autoflush=False, expire_on_commit=False
        )

    @classmethod
    def from_url(cls, url: str) -> "SQLDocumentStore":
        return cls(create_db_engine(url))

    @contextmanager
    def _session_scope(self) -> Iterator[Session]:
        session: Session = self.SessionLocal()
        try:
            yield session
            session.commit()
        except Exception:
            session.rollback()
            raise
        finally:
            session.close()

    @staticmethod
    def _with_stamp(doc: CloudDocument) -> dict[str, Any]:
        data = dict(doc.payload)
        data[SYNCED_AT] = doc.synced_at
        return data

    def commit_batch(self, user_id: str, writes: list[DocumentWrite]) -> None:
        if not writes:
            return
        with self._session_scope() as session:
            existing = {
                (doc.collection, doc.doc_id): doc
                for doc in session.scalars(
                    select(CloudDocument).where(CloudDocument.user_id == user_id)
                )
            }
            for write in writes:
                doc = existing.get((write.collection, write.doc_id))
                if doc is None:
                    doc = CloudDocument(
                        user_id=user_id,
                        collection=write.collection,
                        doc_id=write.doc_id,
                        payload=write.payload,
                    )
                    session.add(doc)
                    existing[(write.collection, write.doc_id)] = doc
                else:
                    doc.payload = write.payload
                    doc.synced_at = func.now()

    def list_documents(self, user_id: str, collection: str) -> list[dict[str, Any]]:
        with self._session_scope() as session:
            docs = session.scalars(
                select(CloudDocument)
                .where(
                    CloudDocument.user_id == user_id,
                    CloudDocument.collection == collection,
                )
                .order_by(CloudDocument.id)
            ).all()
            return [self._with_stamp(doc) for doc in docs]

    def get_document(
        self, user_id: str, collection: str, doc_id: str
    ) -> Optional[dict[str, Any]]:
        with self._session_scope() as session:
            doc = session.scalar(
                select(CloudDocument).where(
                    CloudDocument.user_id == user_id,
                    CloudDocument.collection == collection,
                    CloudDocument.doc_id == doc_id,
                )
            )
            return self._with_stamp(doc) if doc else None

    def delete_namespace(self, user_id: str) -> int:
        with self._session_scope() as session:
            result = session.execute(
                delete(CloudDocument).where(CloudDocument.user_id == user_id)
            )
            return result.rowcount or 0


def _strip(doc: dict[str, Any]) -> dict[str, Any]:
    return {key: value for key, value in doc.items() if key != SYNCED_AT}


class CloudSyncService:
    def __init__(self, store: CloudDocumentStore) -> None:
        self.store = store
        self._push_lock = threading.Lock()
        self.last_pushed_at: Optional[datetime] = None

    @property
    def in_progress(self) -> bool:
        return self._push_lock.locked()

    @staticmethod
    def _writes(snapshot: CloudSnapshot) -> list[DocumentWrite]:
        writes: list[DocumentWrite] = []
        for category in snapshot.categories:
            writes.append(
                DocumentWrite(CATEGORIES, str(category.id), category.model_dump(mode="json"))
            )
        for txn in snapshot.transactions:
            writes.append(
                DocumentWrite(TRANSACTIONS, str(txn.id), txn.model_dump(mode="json"))
            )
        for goal in snapshot.savings_goals:
            writes.append(
                DocumentWrite(SAVINGS_GOALS, str(goal.id), goal.model_dump(mode="json"))
            )
        if snapshot.settings is not None:
            writes.append(
                DocumentWrite(
                    SETTINGS,
                    SETTINGS_DOC_ID,
                    snapshot.settings.model_dump(mode="json", by_alias=True),
                )
            )
        return writes

    def push(self, user_id: str, snapshot: CloudSnapshot) -> SyncResult:
        if not self._push_lock.acquire(blocking=False):
            logger.info(f"cloud_push_skipped: user={user_id} reason=in_progress")
            return SyncResult(success=False, message="Sync already in progress")
        try:
            writes = self._writes(snapshot)
            self.store.commit_batch(user_id, writes)
            self.last_pushed_at = datetime.now(timezone.utc)
        finally:
            self._push_lock.release()
        logger.info(f"cloud_push: user={user_id} documents={len(writes)}")
        return SyncResult(
            success=True,
            message="Data synced successfully",
            timestamp=self.last_pushed_at,
        )

    def pull(self, user_id: str) -> CloudBackup:
        settings = self.store.get_document(user_id, SETTINGS, SETTINGS_DOC_ID)
        backup = CloudBackup(
            categories=[_strip(d) for d in self.store.list_documents(user_id, CATEGORIES)],
            transactions=[
                _strip(d) for d in self.store.list_documents(user_id, TRANSACTIONS)
            ],
            savings_goals=[
                _strip(d) for d in self.store.list_documents(user_id, SAVINGS_GOALS)
            ],
            settings=_strip(settings) if settings else None,
        )
        logger.info(
            f"cloud_pull: user={user_id} categories={len(backup.categories)} "
            f"transactions={len(backup.transactions)} goals={len(backup.savings_goals)}"
        )
        return backup

    def last_sync_time(self, user_id: str) -> Optional[datetime]:
        doc = self.store.get_document(user_id, SETTINGS, SETTINGS_DOC_ID)
        if not doc:
            return None
        return doc.get(SYNCED_AT)

    def has_backup(self, user_id: str) -> bool:
        return self.store.get_document(user_id, SETTINGS, SETTINGS_DOC_ID) is not None

    def delete_all(self, user_id: str) -> SyncResult:
        removed = self.store.delete_namespace(user_id)
        logger.info(f"cloud_delete: user={user_id} documents={removed}")
        return SyncResult(success=True, message="Cloud data deleted successfully")
