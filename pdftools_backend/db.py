"""
Document store abstraction for MongoDB, SQL databases and an in-memory test
implementation.
"""

from __future__ import annotations

import logging
import threading
import time
import uuid
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Dict, Iterator, Optional, Protocol

from bson import ObjectId
from bson.errors import InvalidId
from pymongo import DESCENDING, MongoClient, ReturnDocument
from pymongo import timeout as mongo_timeout
from pymongo.errors import DuplicateKeyError, PyMongoError
from sqlalchemy import Column, Float, Integer, String, create_engine, select, text, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session, declarative_base, sessionmaker

from pdftools_backend.config import Settings
from pdftools_backend.errors import DuplicateUserError, StoreError

logger = logging.getLogger(__name__)


class DbClient(Protocol):
    """Interface for document store access."""

    def create_user(
        self, name: str, email: str, password_hash: str
    ) -> "UserRecord":
        ...

    def find_user_by_email(self, email: str) -> Optional["UserRecord"]:
        ...

    def get_user(self, user_id: str) -> Optional["UserRecord"]:
        ...

    def record_visit(
        self, page: str, user_agent: str | None = None, ip: str | None = None
    ) -> "VisitRecord":
        ...

    def increment_tool_usage(
        self, tool_name: str, user_id: str | None = None
    ) -> "ToolUsageRecord":
        ...

    def list_tool_usage(self) -> list["ToolUsageRecord"]:
        ...

    def ping(self) -> bool:
        ...

    def close(self) -> None:
        ...


@dataclass
class UserRecord:
    user_id: str
    name: str
    email: str
    password_hash: str
    created_at: float = field(default_factory=lambda: time.time())

    def as_dict(self) -> dict:
        # password_hash is deliberately left out
        return {
            "id": self.user_id,
            "name": self.name,
            "email": self.email,
            "created_at": self.created_at,
        }


@dataclass
class VisitRecord:
    visit_id: str
    page: str
    user_agent: Optional[str] = None
    ip: Optional[str] = None
    timestamp: float = field(default_factory=lambda: time.time())

    def as_dict(self) -> dict:
        return {
            "id": self.visit_id,
            "page": self.page,
            "user_agent": self.user_agent,
            "ip": self.ip,
            "timestamp": self.timestamp,
        }


@dataclass
class ToolUsageRecord:
    tool_name: str
    count: int
    last_used_at: Optional[float] = None
    last_user_id: Optional[str] = None

    def as_dict(self) -> dict:
        return {
            "tool_name": self.tool_name,
            "count": self.count,
            "last_used_at": self.last_used_at,
            "last_user_id": self.last_user_id,
        }


class InMemoryDbClient:
    """Simple in-memory store for development and tests."""

    def __init__(self):
        self.users: Dict[str, UserRecord] = {}
        self.visits: list[VisitRecord] = []
        self.tool_usage: Dict[str, ToolUsageRecord] = {}
        self._lock = threading.Lock()

    def create_user(self, name: str, email: str, password_hash: str) -> UserRecord:
        with self._lock:
            if any(user.email == email for user in self.users.values()):
                raise DuplicateUserError(email)
            record = UserRecord(
                user_id=uuid.uuid4().hex,
                name=name,
                email=email,
                password_hash=password_hash,
            )
            self.users[record.user_id] = record
            return record

    def find_user_by_email(self, email: str) -> Optional[UserRecord]:
        with self._lock:
            for user in self.users.values():
                if user.email == email:
                    return user
        return None

    def get_user(self, user_id: str) -> Optional[UserRecord]:
        return self.users.get(user_id)

    def record_visit(
        self, page: str, user_agent: str | None = None, ip: str | None = None
    ) -> VisitRecord:
        record = VisitRecord(
            visit_id=uuid.uuid4().hex, page=page, user_agent=user_agent, ip=ip
        )
        with self._lock:
            self.visits.append(record)
        return record

    def increment_tool_usage(
        self, tool_name: str, user_id: str | None = None
    ) -> ToolUsageRecord:
        with self._lock:
            record = self.tool_usage.get(tool_name)
            if record is None:
                record = ToolUsageRecord(tool_name=tool_name, count=0)
                self.tool_usage[tool_name] = record
            record.count += 1
            record.last_used_at = time.time()
            record.last_user_id = user_id
            return ToolUsageRecord(**record.as_dict())

    def list_tool_usage(self) -> list[ToolUsageRecord]:
        with self._lock:
            items = [ToolUsageRecord(**r.as_dict()) for r in self.tool_usage.values()]
        return sorted(items, key=lambda r: r.count, reverse=True)

    def ping(self) -> bool:
        return True

    def close(self) -> None:
        pass

    def reset(self) -> None:
        """Clear all stored data (useful in tests)."""
        with self._lock:
            self.users.clear()
            self.visits.clear()
            self.tool_usage.clear()


class UnavailableDbClient:
    """
    Stand-in used when no store is configured. The service keeps running and
    every store-dependent operation fails with StoreError.
    """

    def __init__(self, reason: str = "document store is not configured"):
        self.reason = reason

    def _fail(self, *args, **kwargs):
        raise StoreError(self.reason)

    create_user = _fail
    find_user_by_email = _fail
    get_user = _fail
    record_visit = _fail
    increment_tool_usage = _fail
    list_tool_usage = _fail

    def ping(self) -> bool:
        return False

    def close(self) -> None:
        pass


@contextmanager
def _mongo_errors(operation: str) -> Iterator[None]:
    try:
        yield
    except PyMongoError as exc:
        logger.exception("MongoDB %s failed", operation)
        raise StoreError(f"{operation} failed") from exc


class MongoDbClient:
    """
    pymongo-backed implementation. Accounts and visits live in the "users" and
    "visits" collections shared with the earlier Node deployment. Counters use
    their own "toolusage" collection because the old "toolusages" holds
    per-event documents that a unique tool_name index cannot cover.
    """

    def __init__(
        self,
        database_url: str,
        database_name: str = "pdftools",
        *,
        connect_timeout_ms: int = 30000,
        socket_timeout_ms: int = 45000,
        probe_timeout_ms: int = 2000,
    ):
        if not database_url:
            raise ValueError("DATABASE_URL is required for MongoDbClient")
        self.probe_timeout_ms = probe_timeout_ms
        self.client = MongoClient(
            database_url,
            serverSelectionTimeoutMS=connect_timeout_ms,
            connectTimeoutMS=connect_timeout_ms,
            socketTimeoutMS=socket_timeout_ms,
        )
        self.db = self.client[database_name]
        self.users = self.db["users"]
        self.visits = self.db["visits"]
        self.tool_usage = self.db["toolusage"]
        self._indexes_ready = False

    def _ensure_indexes(self) -> None:
        if self._indexes_ready:
            return
        self.users.create_index("email", unique=True)
        self.tool_usage.create_index("tool_name", unique=True)
        self._indexes_ready = True

    def _to_user_record(self, doc: dict) -> UserRecord:
        # Accounts written by the earlier Node service use "password" and a
        # "createdAt" datetime.
        created_at = doc.get("created_at", doc.get("createdAt", 0.0))
        if isinstance(created_at, datetime):
            # pymongo decodes BSON dates as naive UTC.
            if created_at.tzinfo is None:
                created_at = created_at.replace(tzinfo=timezone.utc)
            created_at = created_at.timestamp()
        return UserRecord(
            user_id=str(doc["_id"]),
            name=doc.get("name", ""),
            email=doc["email"],
            password_hash=doc.get("password_hash") or doc.get("password", ""),
            created_at=float(created_at),
        )

    def _to_tool_usage_record(self, doc: dict) -> ToolUsageRecord:
        return ToolUsageRecord(
            tool_name=doc["tool_name"],
            count=int(doc.get("count", 0)),
            last_used_at=doc.get("last_used_at"),
            last_user_id=doc.get("last_user_id"),
        )

    def create_user(self, name: str, email: str, password_hash: str) -> UserRecord:
        with _mongo_errors("create_user"):
            self._ensure_indexes()
            if self.users.find_one({"email": email}):
                raise DuplicateUserError(email)
            doc = {
                "name": name,
                "email": email,
                "password_hash": password_hash,
                "created_at": time.time(),
            }
            try:
                result = self.users.insert_one(doc)
            except DuplicateKeyError:
                raise DuplicateUserError(email)
            doc["_id"] = result.inserted_id
            return self._to_user_record(doc)

    def find_user_by_email(self, email: str) -> Optional[UserRecord]:
        with _mongo_errors("find_user_by_email"):
            doc = self.users.find_one({"email": email})
        return self._to_user_record(doc) if doc else None

    def get_user(self, user_id: str) -> Optional[UserRecord]:
        try:
            oid = ObjectId(user_id)
        except (InvalidId, TypeError):
            return None
        with _mongo_errors("get_user"):
            doc = self.users.find_one({"_id": oid})
        return self._to_user_record(doc) if doc else None

    def record_visit(
        self, page: str, user_agent: str | None = None, ip: str | None = None
    ) -> VisitRecord:
        doc = {
            "page": page,
            "user_agent": user_agent,
            "ip": ip,
            "timestamp": time.time(),
        }
        with _mongo_errors("record_visit"):
            result = self.visits.insert_one(doc)
        return VisitRecord(
            visit_id=str(result.inserted_id),
            page=page,
            user_agent=user_agent,
            ip=ip,
            timestamp=doc["timestamp"],
        )

    def increment_tool_usage(
        self, tool_name: str, user_id: str | None = None
    ) -> ToolUsageRecord:
        change = {
            "$inc": {"count": 1},
            "$set": {"last_used_at": time.time(), "last_user_id": user_id},
        }
        with _mongo_errors("increment_tool_usage"):
            self._ensure_indexes()
            try:
                doc = self.tool_usage.find_one_and_update(
                    {"tool_name": tool_name},
                    change,
                    upsert=True,
                    return_document=ReturnDocument.AFTER,
                )
            except DuplicateKeyError:
                # Two upserts raced on the unique index; the loser now matches.
                doc = self.tool_usage.find_one_and_update(
                    {"tool_name": tool_name},
                    change,
                    return_document=ReturnDocument.AFTER,
                )
        return self._to_tool_usage_record(doc)

    def list_tool_usage(self) -> list[ToolUsageRecord]:
        with _mongo_errors("list_tool_usage"):
            docs = list(self.tool_usage.find({}).sort("count", DESCENDING))
        return [self._to_tool_usage_record(doc) for doc in docs]

    def ping(self) -> bool:
        try:
            # Health checks must not wait out the full server selection timeout.
            with mongo_timeout(self.probe_timeout_ms / 1000):
                self.client.admin.command("ping")
                self._ensure_indexes()
        except PyMongoError as exc:
            logger.warning("MongoDB ping failed: %s", exc)
            return False
        return True

    def close(self) -> None:
        self.client.close()


class SqlDbClient:
    """
    SQLAlchemy-backed implementation. Accepts any SQLAlchemy URL (e.g., Postgres or SQLite for tests).
    """

    def __init__(self, database_url: str):
        if not database_url:
            raise ValueError("DATABASE_URL is required for SqlDbClient")
        self.engine = create_engine(
            database_url,
            future=True,
            pool_pre_ping=True,
            pool_recycle=1800,
        )
        self.Session = sessionmaker(
            bind=self.engine, class_=Session, expire_on_commit=False, future=True
        )
        self._schema_ready = False
        self._schema_lock = threading.Lock()

    def _ensure_schema(self) -> None:
        if self._schema_ready:
            return
        with self._schema_lock:
            if not self._schema_ready:
                Base.metadata.create_all(self.engine)
                self._schema_ready = True

    @contextmanager
    def _session(self, operation: str) -> Iterator[Session]:
        try:
            self._ensure_schema()
            with self.Session() as session:
                yield session
        except SQLAlchemyError as exc:
            logger.exception("SQL %s failed", operation)
            raise StoreError(f"{operation} failed") from exc

    def _to_user_record(self, row: "UserRow") -> UserRecord:
        return UserRecord(
            user_id=row.id,
            name=row.name,
            email=row.email,
            password_hash=row.password_hash,
            created_at=row.created_at,
        )

    def _to_tool_usage_record(self, row) -> ToolUsageRecord:
        # Accepts a ToolUsageRow or a RETURNING row with the same column names.
        return ToolUsageRecord(
            tool_name=row.tool_name,
            count=row.count,
            last_used_at=row.last_used_at,
            last_user_id=row.last_user_id,
        )

    def create_user(self, name: str, email: str, password_hash: str) -> UserRecord:
        with self._session("create_user") as session:
            existing = session.execute(
                select(UserRow).where(UserRow.email == email)
            ).scalar_one_or_none()
            if existing:
                raise DuplicateUserError(email)
            row = UserRow(
                id=uuid.uuid4().hex,
                name=name,
                email=email,
                password_hash=password_hash,
                created_at=time.time(),
            )
            session.add(row)
            try:
                session.commit()
            except IntegrityError:
                session.rollback()
                raise DuplicateUserError(email)
            return self._to_user_record(row)

    def find_user_by_email(self, email: str) -> Optional[UserRecord]:
        with self._session("find_user_by_email") as session:
            row = session.execute(
                select(UserRow).where(UserRow.email == email)
            ).scalar_one_or_none()
            return self._to_user_record(row) if row else None

    def get_user(self, user_id: str) -> Optional[UserRecord]:
        with self._session("get_user") as session:
            row = session.get(UserRow, user_id)
            return self._to_user_record(row) if row else None

    def record_visit(
        self, page: str, user_agent: str | None = None, ip: str | None = None
    ) -> VisitRecord:
        with self._session("record_visit") as session:
            row = VisitRow(
                id=uuid.uuid4().hex,
                page=page,
                user_agent=user_agent,
                ip=ip,
                timestamp=time.time(),
            )
            session.add(row)
            session.commit()
            return VisitRecord(
                visit_id=row.id,
                page=row.page,
                user_agent=row.user_agent,
                ip=row.ip,
                timestamp=row.timestamp,
            )

    def increment_tool_usage(
        self, tool_name: str, user_id: str | None = None
    ) -> ToolUsageRecord:
        now = time.time()
        # RETURNING hands back the count this statement produced, not a later read.
        stmt = (
            update(ToolUsageRow)
            .where(ToolUsageRow.tool_name == tool_name)
            .values(
                count=ToolUsageRow.count + 1,
                last_used_at=now,
                last_user_id=user_id,
            )
            .returning(
                ToolUsageRow.tool_name,
                ToolUsageRow.count,
                ToolUsageRow.last_used_at,
                ToolUsageRow.last_user_id,
            )
            .execution_options(synchronize_session=False)
        )
        with self._session("increment_tool_usage") as session:
            row = session.execute(stmt).first()
            if row is not None:
                session.commit()
                return self._to_tool_usage_record(row)

            created = ToolUsageRow(
                tool_name=tool_name,
                count=1,
                last_used_at=now,
                last_user_id=user_id,
            )
            session.add(created)
            try:
                session.commit()
            except IntegrityError:
                # Another writer created the row first; count on top of it.
                session.rollback()
                row = session.execute(stmt).first()
                session.commit()
                return self._to_tool_usage_record(row)
            return self._to_tool_usage_record(created)

    def list_tool_usage(self) -> list[ToolUsageRecord]:
        with self._session("list_tool_usage") as session:
            rows = session.execute(
                select(ToolUsageRow).order_by(ToolUsageRow.count.desc())
            ).scalars().all()
            return [self._to_tool_usage_record(row) for row in rows]

    def ping(self) -> bool:
        try:
            with self._session("ping") as session:
                session.execute(text("SELECT 1"))
        except StoreError:
            return False
        return True

    def close(self) -> None:
        self.engine.dispose()


Base = declarative_base()


class UserRow(Base):
    __tablename__ = "users"

    id = Column(String, primary_key=True)
    name = Column(String, nullable=False)
    email = Column(String, nullable=False, unique=True, index=True)
    password_hash = Column(String, nullable=False)
    created_at = Column(Float, nullable=False)


class VisitRow(Base):
    __tablename__ = "visits"

    id = Column(String, primary_key=True)
    page = Column(String, nullable=False)
    user_agent = Column(String, nullable=True)
    ip = Column(String, nullable=True)
    timestamp = Column(Float, nullable=False)


class ToolUsageRow(Base):
    __tablename__ = "tool_usage"

    tool_name = Column(String, primary_key=True)
    count = Column(Integer, nullable=False, default=1)
    last_used_at = Column(Float, nullable=True)
    last_user_id = Column(String, nullable=True)


def open_db_client(settings: Settings) -> DbClient:
    """
    Build the store client for the configured URL. An unreachable or
    unconfigured store is logged and tolerated so the process still serves
    requests.
    """
    if settings.use_in_memory_backends:
        return InMemoryDbClient()

    url = settings.database_url
    if not url:
        logger.warning("DATABASE_URL is not set; running without a document store")
        return UnavailableDbClient("DATABASE_URL is not set")

    try:
        if url.startswith(("mongodb://", "mongodb+srv://")):
            client: DbClient = MongoDbClient(
                url,
                settings.database_name,
                connect_timeout_ms=settings.db_connect_timeout_ms,
                socket_timeout_ms=settings.db_socket_timeout_ms,
                probe_timeout_ms=settings.db_probe_timeout_ms,
            )
        else:
            client = SqlDbClient(url)
    except (PyMongoError, SQLAlchemyError, ValueError) as exc:
        logger.error("Could not set up document store client: %s", exc)
        return UnavailableDbClient("document store client could not be created")

    if client.ping():
        logger.info("Document store connected (%s)", type(client).__name__)
    else:
        logger.warning(
            "Document store unreachable at startup; running without it. "
            "Some features may be limited."
        )
    return client
