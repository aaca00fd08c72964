"""
SQLite Client for the personalization memory engine

This module implements the storage interface with:
- Artifacts with owner/scope access metadata and soft delete
- Artifact edges and per-(artifact, model) embedding rows
- Signal counters with an atomic sighting upsert and promotion hand-off
- Durable user memories, memory-state notes and session notes
"""

import os
import json
import sqlite3
import uuid
from datetime import datetime, timedelta, timezone
from typing import Optional, Dict, Any, List, Sequence, Tuple
from contextlib import asynccontextmanager

from sqlalchemy import (
    Column,
    Integer,
    Float,
    Index,
    String,
    Text,
    Boolean,
    DateTime,
    LargeBinary,
    UniqueConstraint,
    select,
    update,
    delete,
    func,
    and_,
    or_,
    case,
)
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.ext.asyncio import create_async_engine, AsyncSession, async_sessionmaker
from sqlalchemy.orm import declarative_base
from dotenv import load_dotenv, find_dotenv

from memory_engine.vocabularies import (
    MEMORY_STRENGTH_SCORES,
    STRENGTH_MODERATE_AT,
    STRENGTH_STRONG_AT,
    compute_strength,
)

# Load environment variables
_dotenv_path = find_dotenv(usecwd=True)
if _dotenv_path:
    load_dotenv(_dotenv_path)

Base = declarative_base()

_SQLITE_ADAPTERS_REGISTERED = False


def _register_sqlite_adapters() -> None:
    """
    Register explicit sqlite adapters for Python datetime objects.

    Python 3.12+ deprecates sqlite3's implicit default datetime adapter.
    """
    global _SQLITE_ADAPTERS_REGISTERED
    if _SQLITE_ADAPTERS_REGISTERED:
        return
    sqlite3.register_adapter(datetime, lambda value: value.isoformat(sep=" "))
    _SQLITE_ADAPTERS_REGISTERED = True


_register_sqlite_adapters()


def _utc_now() -> datetime:
    """Timezone-aware UTC now."""
    return datetime.now(timezone.utc)


def _utc_now_naive() -> datetime:
    """Naive UTC datetime; all DateTime columns store naive UTC."""
    return _utc_now().replace(tzinfo=None)


def _naive_utc(value: Optional[datetime]) -> Optional[datetime]:
    if value is None or value.tzinfo is None:
        return value
    return value.astimezone(timezone.utc).replace(tzinfo=None)


def _new_id() -> str:
    return uuid.uuid4().hex


def _iso(value: Optional[datetime]) -> Optional[str]:
    if value is None:
        return None
    if value.tzinfo is not None:
        value = value.astimezone(timezone.utc).replace(tzinfo=None)
    return value.isoformat() + "Z"


def _load_json(raw: Optional[str], default: Any) -> Any:
    if raw is None or raw == "":
        return default
    try:
        return json.loads(raw)
    except (TypeError, ValueError):
        return default


def _dump_json(value: Any) -> Optional[str]:
    if value is None:
        return None
    return json.dumps(value, ensure_ascii=False, separators=(",", ":"))


# =============================================================================
# ORM Models
# =============================================================================


class Artifact(Base):
    """Structured user content eligible for retrieval."""

    __tablename__ = "artifacts"
    __table_args__ = (
        Index("idx_artifacts_user_created", "user_id", "created_at"),
        Index("idx_artifacts_session", "session_id"),
        Index("idx_artifacts_conversation", "conversation_id"),
        Index("idx_artifacts_type_status", "type", "status"),
    )

    id = Column(String(32), primary_key=True, default=_new_id)
    user_id = Column(String(128), nullable=True)
    conversation_id = Column(String(128), nullable=True)
    session_id = Column(String(128), nullable=True)
    group_id = Column(String(128), nullable=True)

    type = Column(String(64), nullable=False)
    scope = Column(String(16), nullable=False, default="private")
    title = Column(Text, nullable=True)
    content = Column(Text, nullable=False)

    scripture_refs = Column(Text, nullable=True)  # JSON list
    tags = Column(Text, nullable=True)  # JSON list
    metadata_json = Column("metadata", Text, nullable=True)  # JSON object

    status = Column(String(16), nullable=False, default="active")
    embedding_status = Column(String(16), nullable=False, default="none")
    embedding_error = Column(Text, nullable=True)
    deleted_at = Column(DateTime, nullable=True)

    created_at = Column(DateTime, default=_utc_now_naive, nullable=False)
    updated_at = Column(DateTime, default=_utc_now_naive, onupdate=_utc_now_naive)


class ArtifactEdge(Base):
    """Directed relation between two artifacts."""

    __tablename__ = "artifact_edges"
    __table_args__ = (
        Index("idx_artifact_edges_from", "from_id"),
        Index("idx_artifact_edges_to", "to_id"),
    )

    id = Column(String(32), primary_key=True, default=_new_id)
    from_id = Column(String(32), nullable=False)
    to_id = Column(String(32), nullable=False)
    relation = Column(String(32), nullable=False)
    created_at = Column(DateTime, default=_utc_now_naive, nullable=False)


class ArtifactEmbedding(Base):
    """Raw float32 little-endian vector, one row per (artifact, model)."""

    __tablename__ = "artifact_embeddings"
    __table_args__ = (
        UniqueConstraint("artifact_id", "model", name="uq_artifact_embeddings_artifact_model"),
    )

    id = Column(Integer, primary_key=True, autoincrement=True)
    artifact_id = Column(String(32), nullable=False, index=True)
    model = Column(String(64), nullable=False)
    dimension = Column(Integer, nullable=False)
    vector = Column(LargeBinary, nullable=False)
    created_at = Column(DateTime, default=_utc_now_naive, nullable=False)


class EmbeddingCache(Base):
    """Cache query embeddings by deterministic text hash."""

    __tablename__ = "embedding_cache"

    cache_key = Column(String(160), primary_key=True)
    text_hash = Column(String(128), nullable=False, index=True)
    model = Column(String(64), nullable=False)
    embedding = Column(Text, nullable=False)
    updated_at = Column(DateTime, default=_utc_now_naive, onupdate=_utc_now_naive)


class UserSignal(Base):
    """Short-lived counter for repeated sightings of a candidate fact."""

    __tablename__ = "user_signals"
    __table_args__ = (
        UniqueConstraint(
            "user_id", "signal_type", "value_key", name="uq_user_signals_user_type_value"
        ),
        Index("idx_user_signals_expires_at", "expires_at"),
    )

    id = Column(String(32), primary_key=True, default=_new_id)
    user_id = Column(String(128), nullable=False)
    signal_type = Column(String(64), nullable=False)
    value_key = Column(String(255), nullable=False)  # canonical JSON of value
    value = Column(Text, nullable=False)
    count = Column(Integer, nullable=False, default=1)
    expires_at = Column(DateTime, nullable=False)
    last_counted_conversation_id = Column(String(128), nullable=True)
    created_at = Column(DateTime, default=_utc_now_naive, nullable=False)
    updated_at = Column(DateTime, default=_utc_now_naive, onupdate=_utc_now_naive)


class UserMemory(Base):
    """Durable, reinforced fact about a user."""

    __tablename__ = "user_memories"
    __table_args__ = (
        UniqueConstraint(
            "user_id", "memory_type", "value_key", name="uq_user_memories_user_type_value"
        ),
    )

    id = Column(String(32), primary_key=True, default=_new_id)
    user_id = Column(String(128), nullable=False, index=True)
    memory_type = Column(String(64), nullable=False)
    value_key = Column(String(255), nullable=False)
    value = Column(Text, nullable=False)
    strength = Column(String(16), nullable=False, default="light")
    strength_score = Column(Float, nullable=False, default=0.4)
    occurrences = Column(Integer, nullable=False, default=1)
    source = Column(String(32), nullable=False, default="signal_promotion")
    is_active = Column(Boolean, nullable=False, default=True)
    first_seen_at = Column(DateTime, default=_utc_now_naive, nullable=False)
    last_seen_at = Column(DateTime, default=_utc_now_naive, nullable=False)


class UserMemoryState(Base):
    """One row per user holding consolidated global notes."""

    __tablename__ = "user_memory_states"

    user_id = Column(String(128), primary_key=True)
    schema_version = Column(String(64), nullable=False)
    global_notes = Column(Text, nullable=False, default="[]")
    updated_at = Column(DateTime, default=_utc_now_naive, onupdate=_utc_now_naive)


class ChatConversation(Base):
    """Conversation ownership record."""

    __tablename__ = "chat_conversations"

    conversation_id = Column(String(128), primary_key=True)
    user_id = Column(String(128), nullable=False, index=True)
    created_at = Column(DateTime, default=_utc_now_naive, nullable=False)


class SessionMemoryNote(Base):
    """Conversation-scoped note awaiting end-of-session consolidation."""

    __tablename__ = "session_memory_notes"
    __table_args__ = (
        Index("idx_session_notes_user_conversation", "user_id", "conversation_id"),
    )

    id = Column(Integer, primary_key=True, autoincrement=True)
    user_id = Column(String(128), nullable=False)
    conversation_id = Column(String(128), nullable=False)
    text = Column(Text, nullable=False)
    keywords = Column(Text, nullable=False, default="[]")
    category = Column(String(32), nullable=True)
    confidence = Column(String(16), nullable=True)
    source = Column(String(32), nullable=True)
    created_at = Column(DateTime, default=_utc_now_naive, nullable=False)
    expires_at = Column(DateTime, nullable=True)


# =============================================================================
# SQLite Client
# =============================================================================


class SQLiteClient:
    """
    Async SQLite client for the memory engine storage interface.

    Core operations:
    - artifacts: create / get / list / update / soft delete / count
    - embeddings: upsert, remove, capped search candidates, stats
    - signals: atomic sighting upsert, promotion, reinforcement, expiry sweep
    - notes: session note capture, memory-state read/write, consolidation commit
    """

    def __init__(self, database_url: str):
        """
        Initialize the SQLite client.

        Args:
            database_url: SQLAlchemy async URL, e.g.
                         "sqlite+aiosqlite:///memory_engine.db"
        """
        self.database_url = database_url
        self.engine = create_async_engine(database_url, echo=False)
        self.async_session = async_sessionmaker(
            self.engine, class_=AsyncSession, expire_on_commit=False
        )
        self._search_candidate_cap = max(1, self._env_int("EMBEDDING_SEARCH_CANDIDATE_CAP", 500))

    @staticmethod
    def _env_int(name: str, default: int) -> int:
        raw = os.getenv(name)
        if raw is None:
            return default
        try:
            return int(raw)
        except (TypeError, ValueError):
            return default

    @staticmethod
    def _escape_like_pattern(value: str) -> str:
        return value.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")

    @property
    def search_candidate_cap(self) -> int:
        return self._search_candidate_cap

    async def init_db(self):
        """Create tables if they don't exist."""
        async with self.engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)

    async def close(self):
        """Close the database connection."""
        await self.engine.dispose()

    @asynccontextmanager
    async def session(self):
        """Get an async session context manager."""
        async with self.async_session() as session:
            try:
                yield session
                await session.commit()
            except Exception:
                await session.rollback()
                raise

    # -------------------------------------------------------------------------
    # Artifacts
    # -------------------------------------------------------------------------

    @staticmethod
    def _artifact_to_dict(row: Artifact) -> Dict[str, Any]:
        return {
            "id": row.id,
            "user_id": row.user_id,
            "conversation_id": row.conversation_id,
            "session_id": row.session_id,
            "group_id": row.group_id,
            "type": row.type,
            "scope": row.scope,
            "title": row.title,
            "content": row.content,
            "scripture_refs": _load_json(row.scripture_refs, None),
            "tags": _load_json(row.tags, None),
            "metadata": _load_json(row.metadata_json, None),
            "status": row.status,
            "embedding_status": row.embedding_status,
            "embedding_error": row.embedding_error,
            "deleted_at": _iso(row.deleted_at),
            "created_at": _iso(row.created_at),
            "updated_at": _iso(row.updated_at),
        }

    async def create_artifact(
        self,
        *,
        type: str,
        scope: str,
        content: str,
        user_id: Optional[str] = None,
        conversation_id: Optional[str] = None,
        session_id: Optional[str] = None,
        group_id: Optional[str] = None,
        title: Optional[str] = None,
        scripture_refs: Optional[List[str]] = None,
        tags: Optional[List[str]] = None,
        metadata: Optional[Dict[str, Any]] = None,
        embedding_status: str = "none",
        created_at: Optional[datetime] = None,
    ) -> Dict[str, Any]:
        now = _utc_now_naive()
        row = Artifact(
            id=_new_id(),
            user_id=user_id,
            conversation_id=conversation_id,
            session_id=session_id,
            group_id=group_id,
            type=type,
            scope=scope,
            title=title,
            content=content,
            scripture_refs=_dump_json(scripture_refs),
            tags=_dump_json(tags),
            metadata_json=_dump_json(metadata),
            status="active",
            embedding_status=embedding_status,
            created_at=_naive_utc(created_at) or now,
            updated_at=now,
        )
        async with self.session() as session:
            session.add(row)
        return self._artifact_to_dict(row)

    async def get_artifact(self, artifact_id: str) -> Optional[Dict[str, Any]]:
        async with self.session() as session:
            row = await session.get(Artifact, artifact_id)
            return self._artifact_to_dict(row) if row else None

    async def get_artifacts_by_ids(self, artifact_ids: Sequence[str]) -> List[Dict[str, Any]]:
        ids = [item for item in dict.fromkeys(artifact_ids) if item]
        if not ids:
            return []
        async with self.session() as session:
            result = await session.execute(
                select(Artifact)
                .where(Artifact.id.in_(ids))
                .where(Artifact.status == "active")
                .order_by(Artifact.created_at.asc())
            )
            return [self._artifact_to_dict(row) for row in result.scalars().all()]

    def _artifact_conditions(
        self,
        *,
        user_id: Optional[str] = None,
        session_id: Optional[str] = None,
        conversation_id: Optional[str] = None,
        types: Optional[Sequence[str]] = None,
        scopes: Optional[Sequence[str]] = None,
        status: Optional[str] = "active",
        created_after: Optional[datetime] = None,
        created_before: Optional[datetime] = None,
        scripture_ref: Optional[str] = None,
        tag: Optional[str] = None,
    ) -> List[Any]:
        conditions: List[Any] = []
        if user_id:
            conditions.append(Artifact.user_id == user_id)
        if session_id:
            conditions.append(Artifact.session_id == session_id)
        if conversation_id:
            conditions.append(Artifact.conversation_id == conversation_id)
        if types:
            conditions.append(Artifact.type.in_(list(types)))
        if scopes:
            conditions.append(Artifact.scope.in_(list(scopes)))
        if status:
            conditions.append(Artifact.status == status)
        if created_after is not None:
            conditions.append(Artifact.created_at >= _naive_utc(created_after))
        if created_before is not None:
            conditions.append(Artifact.created_at <= _naive_utc(created_before))
        if scripture_ref:
            pattern = f'%"{self._escape_like_pattern(scripture_ref)}"%'
            conditions.append(Artifact.scripture_refs.like(pattern, escape="\\"))
        if tag:
            pattern = f'%"{self._escape_like_pattern(tag)}"%'
            conditions.append(Artifact.tags.like(pattern, escape="\\"))
        return conditions

    async def list_artifacts(
        self,
        *,
        limit: int = 50,
        offset: int = 0,
        ascending: bool = False,
        **filters: Any,
    ) -> List[Dict[str, Any]]:
        """List artifacts matching filters, newest first unless ``ascending``."""
        conditions = self._artifact_conditions(**filters)
        order = Artifact.created_at.asc() if ascending else Artifact.created_at.desc()
        query = select(Artifact).where(and_(*conditions)).order_by(order)
        query = query.offset(max(0, int(offset))).limit(max(1, int(limit)))
        async with self.session() as session:
            result = await session.execute(query)
            return [self._artifact_to_dict(row) for row in result.scalars().all()]

    async def count_artifacts(self, **filters: Any) -> int:
        conditions = self._artifact_conditions(**filters)
        async with self.session() as session:
            value = (
                await session.execute(
                    select(func.count(Artifact.id)).where(and_(*conditions))
                )
            ).scalar()
            return int(value or 0)

    async def update_artifact(
        self, artifact_id: str, changes: Dict[str, Any]
    ) -> Optional[Dict[str, Any]]:
        """Apply title/content/scripture_refs/tags/metadata/embedding_status changes."""
        async with self.session() as session:
            row = await session.get(Artifact, artifact_id)
            if row is None:
                return None
            if "title" in changes:
                row.title = changes["title"]
            if "content" in changes:
                row.content = changes["content"]
            if "scripture_refs" in changes:
                row.scripture_refs = _dump_json(changes["scripture_refs"])
            if "tags" in changes:
                row.tags = _dump_json(changes["tags"])
            if "metadata" in changes:
                row.metadata_json = _dump_json(changes["metadata"])
            if "embedding_status" in changes:
                row.embedding_status = changes["embedding_status"]
                row.embedding_error = None
            row.updated_at = _utc_now_naive()
            return self._artifact_to_dict(row)

    async def soft_delete_artifact(self, artifact_id: str) -> bool:
        """Flip status to deleted and remove every embedding in one transaction."""
        async with self.session() as session:
            row = await session.get(Artifact, artifact_id)
            if row is None:
                return False
            now = _utc_now_naive()
            row.status = "deleted"
            row.deleted_at = now
            row.updated_at = now
            row.embedding_status = "none"
            row.embedding_error = None
            await session.execute(
                delete(ArtifactEmbedding).where(ArtifactEmbedding.artifact_id == artifact_id)
            )
            return True

    async def set_embedding_status(
        self, artifact_id: str, status: str, error: Optional[str] = None
    ) -> None:
        async with self.session() as session:
            await session.execute(
                update(Artifact)
                .where(Artifact.id == artifact_id)
                .where(Artifact.status == "active")
                .values(embedding_status=status, embedding_error=(error or None))
                .execution_options(synchronize_session=False)
            )

    # -------------------------------------------------------------------------
    # Embeddings
    # -------------------------------------------------------------------------

    async def upsert_artifact_embedding(
        self, artifact_id: str, model: str, vector: bytes, dimension: int
    ) -> bool:
        """
        Store a vector for an active artifact.

        Returns False without writing when the artifact is missing or was
        soft-deleted while the embedding was being computed.
        """
        async with self.session() as session:
            row = await session.get(Artifact, artifact_id)
            if row is None or row.status != "active":
                return False
            stmt = sqlite_insert(ArtifactEmbedding).values(
                artifact_id=artifact_id,
                model=model,
                dimension=int(dimension),
                vector=vector,
                created_at=_utc_now_naive(),
            )
            stmt = stmt.on_conflict_do_update(
                index_elements=[ArtifactEmbedding.artifact_id, ArtifactEmbedding.model],
                set_={
                    "dimension": stmt.excluded.dimension,
                    "vector": stmt.excluded.vector,
                    "created_at": stmt.excluded.created_at,
                },
            )
            await session.execute(stmt)
            row.embedding_status = "ready"
            row.embedding_error = None
            return True

    async def delete_artifact_embeddings(self, artifact_id: str) -> int:
        async with self.session() as session:
            result = await session.execute(
                delete(ArtifactEmbedding).where(ArtifactEmbedding.artifact_id == artifact_id)
            )
            return int(result.rowcount or 0)

    async def has_embedding(self, artifact_id: str, model: str) -> bool:
        async with self.session() as session:
            value = (
                await session.execute(
                    select(func.count(ArtifactEmbedding.id))
                    .where(ArtifactEmbedding.artifact_id == artifact_id)
                    .where(ArtifactEmbedding.model == model)
                )
            ).scalar()
            return int(value or 0) > 0

    async def get_embedding_stats(
        self, model: str, user_id: Optional[str] = None
    ) -> Dict[str, Any]:
        async with self.session() as session:
            base = select(func.count(Artifact.id)).where(Artifact.status == "active")
            if user_id:
                base = base.where(Artifact.user_id == user_id)
            total = int((await session.execute(base)).scalar() or 0)

            embedded_query = (
                select(func.count(func.distinct(ArtifactEmbedding.artifact_id)))
                .join(Artifact, Artifact.id == ArtifactEmbedding.artifact_id)
                .where(Artifact.status == "active")
                .where(ArtifactEmbedding.model == model)
            )
            if user_id:
                embedded_query = embedded_query.where(Artifact.user_id == user_id)
            embedded = int((await session.execute(embedded_query)).scalar() or 0)

            status_query = select(Artifact.embedding_status, func.count(Artifact.id)).where(
                Artifact.status == "active"
            )
            if user_id:
                status_query = status_query.where(Artifact.user_id == user_id)
            status_rows = (
                await session.execute(status_query.group_by(Artifact.embedding_status))
            ).all()

        return {
            "model": model,
            "total": total,
            "embedded": embedded,
            "by_status": {str(name or "none"): int(count or 0) for name, count in status_rows},
        }

    async def get_search_candidates(
        self,
        *,
        model: str,
        visible_to_user_id: Optional[str] = None,
        group_ids: Optional[Sequence[str]] = None,
        limit: Optional[int] = None,
        **filters: Any,
    ) -> Tuple[List[Tuple[Dict[str, Any], bytes, int]], bool]:
        """
        Return up to ``limit`` (default: the search candidate cap) embedded
        artifacts, newest first, plus a flag telling whether the cap cut the
        candidate set short.
        """
        cap = max(1, int(limit or self._search_candidate_cap))
        conditions = self._artifact_conditions(**filters)
        if visible_to_user_id is not None:
            visibility = [
                and_(Artifact.scope == "private", Artifact.user_id == visible_to_user_id),
                Artifact.scope == "global",
            ]
            if group_ids:
                visibility.append(
                    and_(Artifact.scope == "group", Artifact.group_id.in_(list(group_ids)))
                )
            conditions.append(or_(*visibility))

        query = (
            select(Artifact, ArtifactEmbedding.vector, ArtifactEmbedding.dimension)
            .join(
                ArtifactEmbedding,
                and_(
                    ArtifactEmbedding.artifact_id == Artifact.id,
                    ArtifactEmbedding.model == model,
                ),
            )
            .where(and_(*conditions))
            .order_by(Artifact.created_at.desc())
            .limit(cap + 1)
        )
        async with self.session() as session:
            rows = (await session.execute(query)).all()
        truncated = len(rows) > cap
        return (
            [(self._artifact_to_dict(row[0]), row[1], int(row[2])) for row in rows[:cap]],
            truncated,
        )

    async def get_cached_embedding(self, cache_key: str) -> Optional[List[float]]:
        async with self.session() as session:
            row = await session.get(EmbeddingCache, cache_key)
            if row is None:
                return None
            embedding = _load_json(row.embedding, None)
            if not isinstance(embedding, list):
                return None
            try:
                return [float(v) for v in embedding]
            except (TypeError, ValueError):
                return None

    async def put_cached_embedding(
        self, cache_key: str, text_hash: str, model: str, embedding: List[float]
    ) -> None:
        payload = json.dumps(embedding, separators=(",", ":"))
        async with self.session() as session:
            stmt = sqlite_insert(EmbeddingCache).values(
                cache_key=cache_key,
                text_hash=text_hash,
                model=model,
                embedding=payload,
                updated_at=_utc_now_naive(),
            )
            stmt = stmt.on_conflict_do_update(
                index_elements=[EmbeddingCache.cache_key],
                set_={
                    "embedding": stmt.excluded.embedding,
                    "updated_at": stmt.excluded.updated_at,
                },
            )
            await session.execute(stmt)

    # -------------------------------------------------------------------------
    # Edges
    # -------------------------------------------------------------------------

    @staticmethod
    def _edge_to_dict(row: ArtifactEdge) -> Dict[str, Any]:
        return {
            "id": row.id,
            "from_id": row.from_id,
            "to_id": row.to_id,
            "relation": row.relation,
            "created_at": _iso(row.created_at),
        }

    async def create_edge(self, from_id: str, to_id: str, relation: str) -> Dict[str, Any]:
        async with self.session() as session:
            if await session.get(Artifact, from_id) is None:
                raise ValueError(f"From artifact not found: {from_id}")
            if await session.get(Artifact, to_id) is None:
                raise ValueError(f"To artifact not found: {to_id}")
            row = ArtifactEdge(
                id=_new_id(),
                from_id=from_id,
                to_id=to_id,
                relation=relation,
                created_at=_utc_now_naive(),
            )
            session.add(row)
            await session.flush()
            return self._edge_to_dict(row)

    async def get_edge(self, edge_id: str) -> Optional[Dict[str, Any]]:
        async with self.session() as session:
            row = await session.get(ArtifactEdge, edge_id)
            return self._edge_to_dict(row) if row else None

    async def list_edges(
        self,
        *,
        from_id: Optional[str] = None,
        to_id: Optional[str] = None,
        relation: Optional[str] = None,
    ) -> List[Dict[str, Any]]:
        query = select(ArtifactEdge)
        if from_id:
            query = query.where(ArtifactEdge.from_id == from_id)
        if to_id:
            query = query.where(ArtifactEdge.to_id == to_id)
        if relation:
            query = query.where(ArtifactEdge.relation == relation)
        query = query.order_by(ArtifactEdge.created_at.asc(), ArtifactEdge.id.asc())
        async with self.session() as session:
            result = await session.execute(query)
            return [self._edge_to_dict(row) for row in result.scalars().all()]

    async def delete_edge(self, edge_id: str) -> bool:
        async with self.session() as session:
            result = await session.execute(delete(ArtifactEdge).where(ArtifactEdge.id == edge_id))
            return bool(result.rowcount)

    async def delete_edges_for_artifact(self, artifact_id: str) -> int:
        async with self.session() as session:
            result = await session.execute(
                delete(ArtifactEdge).where(
                    or_(ArtifactEdge.from_id == artifact_id, ArtifactEdge.to_id == artifact_id)
                )
            )
            return int(result.rowcount or 0)

    # -------------------------------------------------------------------------
    # Signals / Memories
    # -------------------------------------------------------------------------

    @staticmethod
    def _signal_to_dict(row: UserSignal) -> Dict[str, Any]:
        return {
            "id": row.id,
            "user_id": row.user_id,
            "signal_type": row.signal_type,
            "value": _load_json(row.value, {}),
            "count": row.count,
            "expires_at": _iso(row.expires_at),
            "last_counted_conversation_id": row.last_counted_conversation_id,
        }

    @staticmethod
    def _memory_to_dict(row: UserMemory) -> Dict[str, Any]:
        return {
            "id": row.id,
            "user_id": row.user_id,
            "memory_type": row.memory_type,
            "value": _load_json(row.value, {}),
            "strength": row.strength,
            "strength_score": row.strength_score,
            "occurrences": row.occurrences,
            "source": row.source,
            "is_active": bool(row.is_active),
            "first_seen_at": _iso(row.first_seen_at),
            "last_seen_at": _iso(row.last_seen_at),
        }

    @staticmethod
    def _strength_case(occurrences_expr: Any) -> Tuple[Any, Any]:
        label = case(
            (occurrences_expr >= STRENGTH_STRONG_AT, "strong"),
            (occurrences_expr >= STRENGTH_MODERATE_AT, "moderate"),
            else_="light",
        )
        score = case(
            (occurrences_expr >= STRENGTH_STRONG_AT, MEMORY_STRENGTH_SCORES["strong"]),
            (occurrences_expr >= STRENGTH_MODERATE_AT, MEMORY_STRENGTH_SCORES["moderate"]),
            else_=MEMORY_STRENGTH_SCORES["light"],
        )
        return label, score

    @staticmethod
    def _strength_for(occurrences: int) -> Tuple[str, float]:
        label = compute_strength(occurrences)
        return label, MEMORY_STRENGTH_SCORES[label]

    async def get_signal(
        self, user_id: str, signal_type: str, value_key: str
    ) -> Optional[Dict[str, Any]]:
        async with self.session() as session:
            row = (
                await session.execute(
                    select(UserSignal)
                    .where(UserSignal.user_id == user_id)
                    .where(UserSignal.signal_type == signal_type)
                    .where(UserSignal.value_key == value_key)
                )
            ).scalar_one_or_none()
            return self._signal_to_dict(row) if row else None

    async def find_active_memory(
        self, user_id: str, memory_type: str, value_key: str
    ) -> Optional[Dict[str, Any]]:
        async with self.session() as session:
            row = (
                await session.execute(
                    select(UserMemory)
                    .where(UserMemory.user_id == user_id)
                    .where(UserMemory.memory_type == memory_type)
                    .where(UserMemory.value_key == value_key)
                    .where(UserMemory.is_active == True)  # noqa: E712
                )
            ).scalar_one_or_none()
            return self._memory_to_dict(row) if row else None

    async def list_signals(self, user_id: str) -> List[Dict[str, Any]]:
        async with self.session() as session:
            result = await session.execute(
                select(UserSignal)
                .where(UserSignal.user_id == user_id)
                .order_by(UserSignal.created_at.asc())
            )
            return [self._signal_to_dict(row) for row in result.scalars().all()]

    async def list_memories(
        self,
        user_id: str,
        *,
        active_only: bool = True,
        min_strength: float = 0.0,
        limit: int = 50,
    ) -> List[Dict[str, Any]]:
        query = select(UserMemory).where(UserMemory.user_id == user_id)
        if active_only:
            query = query.where(UserMemory.is_active == True)  # noqa: E712
        if min_strength > 0:
            query = query.where(UserMemory.strength_score >= float(min_strength))
        query = query.order_by(
            UserMemory.strength_score.desc(), UserMemory.last_seen_at.desc()
        ).limit(max(1, int(limit)))
        async with self.session() as session:
            result = await session.execute(query)
            return [self._memory_to_dict(row) for row in result.scalars().all()]

    async def apply_signal_sighting(
        self,
        *,
        user_id: str,
        conversation_id: str,
        memory_type: str,
        signal_type: str,
        value_key: str,
        value_json: str,
        ttl: timedelta,
        threshold: int,
    ) -> Dict[str, Any]:
        """
        Atomically record one sighting of a candidate fact.

        Sequence inside a single transaction:
        1. reinforce an active memory for the value if one exists
        2. otherwise insert-or-increment the signal (ON CONFLICT ... WHERE
           last_counted_conversation_id differs, or the signal has expired)
        3. promote when the returned count reaches ``threshold``: upsert the
           memory and delete the signal

        Returns ``{"action", "count", "memory"}`` with action one of
        reinforced_memory, skipped_double_count, created_signal,
        incremented_signal, promoted_to_memory.
        """
        now = _utc_now_naive()
        expires_at = now + ttl

        async with self.session() as session:
            next_occurrences = UserMemory.occurrences + 1
            label, score = self._strength_case(next_occurrences)
            reinforced = (
                await session.execute(
                    update(UserMemory)
                    .where(UserMemory.user_id == user_id)
                    .where(UserMemory.memory_type == memory_type)
                    .where(UserMemory.value_key == value_key)
                    .where(UserMemory.is_active == True)  # noqa: E712
                    .values(
                        occurrences=next_occurrences,
                        strength=label,
                        strength_score=score,
                        last_seen_at=now,
                    )
                    .returning(UserMemory.id)
                    .execution_options(synchronize_session=False)
                )
            ).first()
            if reinforced is not None:
                await session.execute(
                    delete(UserSignal)
                    .where(UserSignal.user_id == user_id)
                    .where(UserSignal.signal_type == signal_type)
                    .where(UserSignal.value_key == value_key)
                )
                memory_row = await session.get(UserMemory, reinforced[0])
                await session.refresh(memory_row)
                return {
                    "action": "reinforced_memory",
                    "count": None,
                    "memory": self._memory_to_dict(memory_row),
                }

            stmt = sqlite_insert(UserSignal).values(
                id=_new_id(),
                user_id=user_id,
                signal_type=signal_type,
                value_key=value_key,
                value=value_json,
                count=1,
                expires_at=expires_at,
                last_counted_conversation_id=conversation_id,
                created_at=now,
                updated_at=now,
            )
            stmt = stmt.on_conflict_do_update(
                index_elements=[UserSignal.user_id, UserSignal.signal_type, UserSignal.value_key],
                set_={
                    "count": case((UserSignal.expires_at < now, 1), else_=UserSignal.count + 1),
                    "expires_at": stmt.excluded.expires_at,
                    "last_counted_conversation_id": stmt.excluded.last_counted_conversation_id,
                    "updated_at": stmt.excluded.updated_at,
                },
                where=or_(
                    UserSignal.last_counted_conversation_id.is_(None),
                    UserSignal.last_counted_conversation_id != conversation_id,
                    UserSignal.expires_at < now,
                ),
            ).returning(UserSignal.id, UserSignal.count)
            counted = (await session.execute(stmt)).first()
            if counted is None:
                return {"action": "skipped_double_count", "count": None, "memory": None}

            signal_id, new_count = counted[0], int(counted[1])
            if new_count < threshold:
                action = "created_signal" if new_count == 1 else "incremented_signal"
                return {"action": action, "count": new_count, "memory": None}

            promoted_label, promoted_score = self._strength_for(new_count)
            memory_stmt = sqlite_insert(UserMemory).values(
                id=_new_id(),
                user_id=user_id,
                memory_type=memory_type,
                value_key=value_key,
                value=value_json,
                strength=promoted_label,
                strength_score=promoted_score,
                occurrences=new_count,
                source="signal_promotion",
                is_active=True,
                first_seen_at=now,
                last_seen_at=now,
            )
            memory_stmt = memory_stmt.on_conflict_do_update(
                index_elements=[UserMemory.user_id, UserMemory.memory_type, UserMemory.value_key],
                set_={
                    "strength": memory_stmt.excluded.strength,
                    "strength_score": memory_stmt.excluded.strength_score,
                    "occurrences": memory_stmt.excluded.occurrences,
                    "source": memory_stmt.excluded.source,
                    "is_active": True,
                    "first_seen_at": memory_stmt.excluded.first_seen_at,
                    "last_seen_at": memory_stmt.excluded.last_seen_at,
                },
            ).returning(UserMemory.id)
            memory_id = (await session.execute(memory_stmt)).scalar_one()
            await session.execute(delete(UserSignal).where(UserSignal.id == signal_id))
            memory_row = await session.get(UserMemory, memory_id)
            await session.refresh(memory_row)
            return {
                "action": "promoted_to_memory",
                "count": new_count,
                "memory": self._memory_to_dict(memory_row),
            }

    async def _upsert_memory_row(
        self,
        session: AsyncSession,
        *,
        user_id: str,
        memory_type: str,
        value_key: str,
        value_json: str,
        source: str,
        occurrences: int,
        now: datetime,
    ) -> UserMemory:
        row = (
            await session.execute(
                select(UserMemory)
                .where(UserMemory.user_id == user_id)
                .where(UserMemory.memory_type == memory_type)
                .where(UserMemory.value_key == value_key)
            )
        ).scalar_one_or_none()
        if row is None:
            label, score = self._strength_for(occurrences)
            row = UserMemory(
                id=_new_id(),
                user_id=user_id,
                memory_type=memory_type,
                value_key=value_key,
                value=value_json,
                strength=label,
                strength_score=score,
                occurrences=occurrences,
                source=source,
                is_active=True,
                first_seen_at=now,
                last_seen_at=now,
            )
            session.add(row)
            return row
        # An inactive memory restarts its count.
        total = int(row.occurrences or 0) + occurrences if row.is_active else occurrences
        if not row.is_active:
            row.first_seen_at = now
            row.source = source
        row.occurrences = total
        row.strength, row.strength_score = self._strength_for(total)
        row.is_active = True
        row.last_seen_at = now
        return row

    async def upsert_explicit_memory(
        self,
        *,
        user_id: str,
        memory_type: str,
        value_key: str,
        value_json: str,
        source: str,
        signal_type: Optional[str] = None,
    ) -> Dict[str, Any]:
        """Create (or reactivate and reinforce) a memory outside the promotion path."""
        now = _utc_now_naive()
        async with self.session() as session:
            row = await self._upsert_memory_row(
                session,
                user_id=user_id,
                memory_type=memory_type,
                value_key=value_key,
                value_json=value_json,
                source=source,
                occurrences=1,
                now=now,
            )
            if signal_type:
                await session.execute(
                    delete(UserSignal)
                    .where(UserSignal.user_id == user_id)
                    .where(UserSignal.signal_type == signal_type)
                    .where(UserSignal.value_key == value_key)
                )
            await session.flush()
            return self._memory_to_dict(row)

    async def get_signal_by_id(self, signal_id: str) -> Optional[Dict[str, Any]]:
        async with self.session() as session:
            row = await session.get(UserSignal, signal_id)
            return self._signal_to_dict(row) if row else None

    async def promote_signal_by_id(
        self, signal_id: str, *, memory_type: str, source: str
    ) -> Optional[Dict[str, Any]]:
        """
        Turn one pending signal into a memory regardless of its count.

        The memory carries the signal's count as its occurrences and the
        signal is deleted in the same transaction. Returns None when the
        signal no longer exists.
        """
        now = _utc_now_naive()
        async with self.session() as session:
            signal = await session.get(UserSignal, signal_id)
            if signal is None:
                return None
            row = await self._upsert_memory_row(
                session,
                user_id=signal.user_id,
                memory_type=memory_type,
                value_key=signal.value_key,
                value_json=signal.value,
                source=source,
                occurrences=max(1, int(signal.count or 0)),
                now=now,
            )
            await session.delete(signal)
            await session.flush()
            return self._memory_to_dict(row)

    async def deactivate_memory(self, user_id: str, memory_id: str) -> bool:
        async with self.session() as session:
            result = await session.execute(
                update(UserMemory)
                .where(UserMemory.id == memory_id)
                .where(UserMemory.user_id == user_id)
                .where(UserMemory.is_active == True)  # noqa: E712
                .values(is_active=False)
                .execution_options(synchronize_session=False)
            )
            return bool(result.rowcount)

    async def delete_expired_signals(self, now: Optional[datetime] = None) -> int:
        cutoff = now or _utc_now_naive()
        if cutoff.tzinfo is not None:
            cutoff = cutoff.astimezone(timezone.utc).replace(tzinfo=None)
        async with self.session() as session:
            result = await session.execute(
                delete(UserSignal).where(UserSignal.expires_at < cutoff)
            )
            return int(result.rowcount or 0)

    # -------------------------------------------------------------------------
    # Conversations / Notes / Memory state
    # -------------------------------------------------------------------------

    async def claim_conversation(self, conversation_id: str, user_id: str) -> bool:
        """Create the conversation for ``user_id`` or confirm ownership; False on mismatch."""
        async with self.session() as session:
            stmt = (
                sqlite_insert(ChatConversation)
                .values(
                    conversation_id=conversation_id,
                    user_id=user_id,
                    created_at=_utc_now_naive(),
                )
                .on_conflict_do_nothing(index_elements=[ChatConversation.conversation_id])
            )
            await session.execute(stmt)
            owner = (
                await session.execute(
                    select(ChatConversation.user_id).where(
                        ChatConversation.conversation_id == conversation_id
                    )
                )
            ).scalar_one()
            return owner == user_id

    @staticmethod
    def _session_note_to_dict(row: SessionMemoryNote) -> Dict[str, Any]:
        return {
            "id": row.id,
            "user_id": row.user_id,
            "conversation_id": row.conversation_id,
            "text": row.text,
            "keywords": _load_json(row.keywords, []),
            "category": row.category,
            "confidence": row.confidence,
            "source": row.source,
            "created_at": _iso(row.created_at),
            "expires_at": _iso(row.expires_at),
        }

    async def add_session_note(
        self,
        *,
        user_id: str,
        conversation_id: str,
        text: str,
        keywords: List[str],
        category: Optional[str] = None,
        confidence: Optional[str] = None,
        source: Optional[str] = None,
        expires_at: Optional[datetime] = None,
    ) -> Dict[str, Any]:
        row = SessionMemoryNote(
            user_id=user_id,
            conversation_id=conversation_id,
            text=text,
            keywords=_dump_json(list(keywords)) or "[]",
            category=category,
            confidence=confidence,
            source=source,
            created_at=_utc_now_naive(),
            expires_at=expires_at,
        )
        async with self.session() as session:
            session.add(row)
            await session.flush()
            return self._session_note_to_dict(row)

    async def list_session_notes(
        self,
        user_id: str,
        conversation_id: str,
        *,
        limit: int = 200,
        newest_first: bool = False,
    ) -> List[Dict[str, Any]]:
        order = (
            SessionMemoryNote.created_at.desc()
            if newest_first
            else SessionMemoryNote.created_at.asc()
        )
        async with self.session() as session:
            result = await session.execute(
                select(SessionMemoryNote)
                .where(SessionMemoryNote.user_id == user_id)
                .where(SessionMemoryNote.conversation_id == conversation_id)
                .order_by(order, SessionMemoryNote.id.asc())
                .limit(max(1, int(limit)))
            )
            return [self._session_note_to_dict(row) for row in result.scalars().all()]

    async def count_session_notes(self, user_id: str, conversation_id: str) -> int:
        async with self.session() as session:
            value = (
                await session.execute(
                    select(func.count(SessionMemoryNote.id))
                    .where(SessionMemoryNote.user_id == user_id)
                    .where(SessionMemoryNote.conversation_id == conversation_id)
                )
            ).scalar()
            return int(value or 0)

    async def get_memory_state(self, user_id: str) -> Optional[Dict[str, Any]]:
        async with self.session() as session:
            row = await session.get(UserMemoryState, user_id)
            if row is None:
                return None
            return {
                "user_id": row.user_id,
                "schema_version": row.schema_version,
                "global_notes": _load_json(row.global_notes, []),
                "updated_at": _iso(row.updated_at),
            }

    async def _write_memory_state(
        self,
        session: AsyncSession,
        user_id: str,
        schema_version: str,
        notes: List[Dict[str, Any]],
    ) -> None:
        stmt = sqlite_insert(UserMemoryState).values(
            user_id=user_id,
            schema_version=schema_version,
            global_notes=json.dumps(notes, ensure_ascii=False),
            updated_at=_utc_now_naive(),
        )
        stmt = stmt.on_conflict_do_update(
            index_elements=[UserMemoryState.user_id],
            set_={
                "schema_version": stmt.excluded.schema_version,
                "global_notes": stmt.excluded.global_notes,
                "updated_at": stmt.excluded.updated_at,
            },
        )
        await session.execute(stmt)

    async def put_memory_state(
        self, user_id: str, schema_version: str, notes: List[Dict[str, Any]]
    ) -> None:
        async with self.session() as session:
            await self._write_memory_state(session, user_id, schema_version, notes)

    async def commit_consolidation(
        self,
        *,
        user_id: str,
        schema_version: str,
        notes: List[Dict[str, Any]],
        consumed_note_ids: Sequence[int],
    ) -> int:
        """Write the merged state and delete consumed session notes atomically."""
        async with self.session() as session:
            await self._write_memory_state(session, user_id, schema_version, notes)
            ids = [int(item) for item in consumed_note_ids]
            if not ids:
                return 0
            result = await session.execute(
                delete(SessionMemoryNote)
                .where(SessionMemoryNote.user_id == user_id)
                .where(SessionMemoryNote.id.in_(ids))
            )
            return int(result.rowcount or 0)


# =============================================================================
# Global Singleton
# =============================================================================

_sqlite_client: Optional[SQLiteClient] = None


def get_sqlite_client() -> SQLiteClient:
    """Get the global SQLiteClient instance."""
    global _sqlite_client
    if _sqlite_client is None:
        database_url = os.getenv("DATABASE_URL")
        if not database_url:
            raise ValueError(
                "DATABASE_URL environment variable is not set. Please check your .env file."
            )
        _sqlite_client = SQLiteClient(database_url)
    return _sqlite_client


async def close_sqlite_client():
    """Close the global SQLiteClient connection."""
    global _sqlite_client
    if _sqlite_client:
        await _sqlite_client.close()
        _sqlite_client = None
