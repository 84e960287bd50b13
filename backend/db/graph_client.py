"""
SQLite Client for the knowledge graph memory.

This module implements the graph storage with:
- Entities (named, typed nodes with aliases and a cached observation count)
- Observations (timestamped facts owned by exactly one entity)
- Relations (directed, typed edges; one row per (from, to, type) triple)

`part_of` / `depends_on` relations are read child -> parent and give the
graph its tree shape for export, import and clean-up.
"""

import json
import logging
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Any, Dict, Iterable, List, Optional

from sqlalchemy import (
    Column,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
    delete,
    event,
    func,
    or_,
    select,
)
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.orm import declarative_base

from config import database_url as configured_database_url
from engine.errors import NotFoundError, ValidationFailedError

from .embedding import EmbeddingService
from .migration_runner import apply_pending_migrations

logger = logging.getLogger(__name__)

Base = declarative_base()

PARENT_CHILD_RELATION_TYPES = ("part_of", "depends_on")
DEFAULT_RELATION_TYPE = "part_of"
PROJECT_ENTITY_TYPE = "Project"


def _utc_now_naive() -> datetime:
    """Naive UTC datetime for DB storage."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def iso_utc(value: Optional[datetime]) -> Optional[str]:
    if value is None:
        return None
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).isoformat().replace("+00:00", "Z")


def parse_iso_datetime(value: Any) -> Optional[datetime]:
    """Parse an ISO timestamp into naive UTC, or None when unusable."""
    if not isinstance(value, str) or not value.strip():
        return None
    raw = value.strip()
    if raw.endswith("Z"):
        raw = raw[:-1] + "+00:00"
    try:
        parsed = datetime.fromisoformat(raw)
    except ValueError:
        return None
    if parsed.tzinfo is not None:
        parsed = parsed.astimezone(timezone.utc).replace(tzinfo=None)
    return parsed


def load_vector(raw: Optional[str]) -> Optional[List[float]]:
    if not raw:
        return None
    try:
        payload = json.loads(raw)
    except (TypeError, ValueError):
        return None
    if not isinstance(payload, list):
        return None
    try:
        return [float(v) for v in payload]
    except (TypeError, ValueError):
        return None


def dump_vector(vector: List[float]) -> str:
    return json.dumps(vector, separators=(",", ":"))


# =============================================================================
# ORM Models
# =============================================================================


class Entity(Base):
    """A named, typed node in the knowledge graph.

    `aliases` is a single string delimited by `,`, `|` or `;`.
    `observations_count` is a denormalized cache refreshed by every write
    path that adds, moves or deletes observations.
    """

    __tablename__ = "memory_entities"

    id = Column(Integer, primary_key=True, autoincrement=True)
    name = Column(String(255), nullable=False, index=True)
    entity_type = Column(String(255), nullable=False)
    aliases = Column(Text, nullable=True)
    description = Column(Text, nullable=True)
    observations_count = Column(Integer, nullable=False, default=0)
    embedding = Column(Text, nullable=True)
    created_at = Column(DateTime, default=_utc_now_naive)
    updated_at = Column(DateTime, default=_utc_now_naive, onupdate=_utc_now_naive)


class Observation(Base):
    """A timestamped free-text fact owned by one entity."""

    __tablename__ = "memory_observations"

    id = Column(Integer, primary_key=True, autoincrement=True)
    entity_id = Column(
        Integer,
        ForeignKey("memory_entities.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    content = Column(Text, nullable=False)
    embedding = Column(Text, nullable=True)
    created_at = Column(DateTime, default=_utc_now_naive)


class Relation(Base):
    """A directed, typed edge between two entities."""

    __tablename__ = "memory_relations"
    __table_args__ = (
        UniqueConstraint(
            "from_entity_id",
            "to_entity_id",
            "relation_type",
            name="uq_memory_relations_triple",
        ),
        Index("idx_memory_relations_to_type", "to_entity_id", "relation_type"),
        Index("idx_memory_relations_from_type", "from_entity_id", "relation_type"),
    )

    id = Column(Integer, primary_key=True, autoincrement=True)
    from_entity_id = Column(
        Integer, ForeignKey("memory_entities.id", ondelete="CASCADE"), nullable=False
    )
    to_entity_id = Column(
        Integer, ForeignKey("memory_entities.id", ondelete="CASCADE"), nullable=False
    )
    relation_type = Column(String(255), nullable=False)
    created_at = Column(DateTime, default=_utc_now_naive)


def entity_to_dict(entity: Entity) -> Dict[str, Any]:
    return {
        "entity_id": entity.id,
        "name": entity.name,
        "entity_type": entity.entity_type,
        "aliases": entity.aliases,
        "description": entity.description,
        "observations_count": int(entity.observations_count or 0),
        "created_at": iso_utc(entity.created_at),
        "updated_at": iso_utc(entity.updated_at),
    }


def observation_to_dict(observation: Observation) -> Dict[str, Any]:
    return {
        "observation_id": observation.id,
        "entity_id": observation.entity_id,
        "content": observation.content,
        "created_at": iso_utc(observation.created_at),
    }


def relation_to_dict(relation: Relation) -> Dict[str, Any]:
    return {
        "relation_id": relation.id,
        "from_entity_id": relation.from_entity_id,
        "to_entity_id": relation.to_entity_id,
        "relation_type": relation.relation_type,
        "created_at": iso_utc(relation.created_at),
    }


def _install_sqlite_hooks(engine) -> None:
    """Enforce foreign keys and let SQLAlchemy own BEGIN so SAVEPOINTs work."""
    if engine.dialect.name != "sqlite":
        return

    @event.listens_for(engine.sync_engine, "connect")
    def _on_connect(dbapi_connection, _connection_record):
        dbapi_connection.isolation_level = None
        cursor = dbapi_connection.cursor()
        cursor.execute("PRAGMA foreign_keys=ON")
        cursor.close()

    @event.listens_for(engine.sync_engine, "begin")
    def _on_begin(connection):
        connection.exec_driver_sql("BEGIN")


# =============================================================================
# Graph Client
# =============================================================================


class GraphClient:
    """
    Async client for knowledge graph storage.

    Core operations:
    - entity CRUD with name uniqueness checked at creation time
    - observation add/remove with observation-count cache upkeep
    - relation add/remove/find with triple uniqueness
    - embedding upkeep for semantic search
    """

    def __init__(
        self,
        database_url: str,
        embedding_service: Optional[EmbeddingService] = None,
    ):
        """
        Args:
            database_url: SQLAlchemy async URL, e.g.
                         "sqlite+aiosqlite:///graph_memory.db"
            embedding_service: optional collaborator; built from env when omitted
        """
        self.database_url = database_url
        self.engine = create_async_engine(database_url, echo=False)
        _install_sqlite_hooks(self.engine)
        self.async_session = async_sessionmaker(
            self.engine, class_=AsyncSession, expire_on_commit=False
        )
        self.embedding = embedding_service or EmbeddingService()

    async def init_db(self):
        """Create tables if they don't exist, then apply SQL migrations."""
        async with self.engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)
        await apply_pending_migrations(self.database_url)

    async def close(self):
        """Close the database connection."""
        await self.engine.dispose()

    @asynccontextmanager
    async def session(self):
        """One transaction: commit on success, rollback on any exception."""
        async with self.async_session() as session:
            try:
                yield session
                await session.commit()
            except Exception:
                await session.rollback()
                raise

    def vector_enabled(self) -> bool:
        return self.embedding.vector_enabled()

    # -------------------------------------------------------------------------
    # Shared session helpers
    # -------------------------------------------------------------------------

    @staticmethod
    async def require_entity(
        session: AsyncSession, entity_id: Any, label: str = "Entity"
    ) -> Entity:
        entity = None
        if entity_id is not None:
            try:
                entity = await session.get(Entity, int(entity_id))
            except (TypeError, ValueError):
                entity = None
        if entity is None:
            raise NotFoundError(f"{label} with ID {entity_id} not found.")
        return entity

    @staticmethod
    async def refresh_observation_count(session: AsyncSession, entity_id: int) -> int:
        count = int(
            await session.scalar(
                select(func.count(Observation.id)).where(
                    Observation.entity_id == entity_id
                )
            )
            or 0
        )
        entity = await session.get(Entity, entity_id)
        if entity is not None:
            entity.observations_count = count
            await session.flush()
        return count

    @staticmethod
    async def purge_entity(session: AsyncSession, entity_id: int) -> int:
        """Delete an entity with its observations and every touching relation."""
        await session.execute(
            delete(Observation).where(Observation.entity_id == entity_id)
        )
        await session.execute(
            delete(Relation).where(
                or_(
                    Relation.from_entity_id == entity_id,
                    Relation.to_entity_id == entity_id,
                )
            )
        )
        result = await session.execute(
            delete(Entity)
            .where(Entity.id == entity_id)
            .execution_options(synchronize_session="fetch")
        )
        return int(result.rowcount or 0)

    # -------------------------------------------------------------------------
    # Entities
    # -------------------------------------------------------------------------

    async def create_entity(
        self,
        name: str,
        entity_type: str,
        aliases: Optional[str] = None,
        description: Optional[str] = None,
        observations: Optional[Iterable[str]] = None,
    ) -> Dict[str, Any]:
        name_value = (name or "").strip()
        type_value = (entity_type or "").strip()
        if not name_value:
            raise ValidationFailedError("Validation Failed: Name can't be blank")
        if not type_value:
            raise ValidationFailedError("Validation Failed: Entity type can't be blank")

        async with self.session() as session:
            taken = await session.scalar(
                select(Entity.id).where(Entity.name == name_value)
            )
            if taken is not None:
                raise ValidationFailedError(
                    f"Validation Failed: Name '{name_value}' has already been taken"
                )
            entity = Entity(
                name=name_value,
                entity_type=type_value,
                aliases=aliases,
                description=description,
                observations_count=0,
            )
            session.add(entity)
            await session.flush()
            for content in observations or []:
                if content and str(content).strip():
                    session.add(Observation(entity_id=entity.id, content=str(content)))
            await session.flush()
            await self.refresh_observation_count(session, entity.id)
            payload = entity_to_dict(entity)

        await self.refresh_embeddings([payload["entity_id"]])
        logger.info("Created entity %s (%s)", payload["entity_id"], name_value)
        return payload

    async def get_entity(self, entity_id: int) -> Dict[str, Any]:
        async with self.session() as session:
            entity = await self.require_entity(session, entity_id)
            observations = (
                await session.execute(
                    select(Observation)
                    .where(Observation.entity_id == entity.id)
                    .order_by(Observation.created_at, Observation.id)
                )
            ).scalars().all()
            relations = await self._relations_with_names(
                session,
                or_(
                    Relation.from_entity_id == entity.id,
                    Relation.to_entity_id == entity.id,
                ),
            )
        payload = entity_to_dict(entity)
        payload["observations"] = [observation_to_dict(o) for o in observations]
        payload["relations"] = relations
        return payload

    async def list_entities(
        self,
        entity_type: Optional[str] = None,
        limit: int = 50,
        offset: int = 0,
    ) -> List[Dict[str, Any]]:
        query = select(Entity).order_by(Entity.name, Entity.id)
        if entity_type:
            query = query.where(Entity.entity_type == entity_type)
        query = query.limit(max(1, int(limit))).offset(max(0, int(offset)))
        async with self.session() as session:
            rows = (await session.execute(query)).scalars().all()
        return [entity_to_dict(row) for row in rows]

    async def update_entity(
        self,
        entity_id: int,
        name: Optional[str] = None,
        entity_type: Optional[str] = None,
        aliases: Optional[str] = None,
        description: Optional[str] = None,
    ) -> Dict[str, Any]:
        name_value = (name or "").strip()
        type_value = (entity_type or "").strip()
        if not name_value and not type_value and aliases is None and description is None:
            raise ValidationFailedError(
                "At least one attribute (name, entity_type, aliases or description) "
                "must be provided for update."
            )

        async with self.session() as session:
            entity = await self.require_entity(session, entity_id)
            if name_value and name_value != entity.name:
                taken = await session.scalar(
                    select(Entity.id).where(
                        Entity.name == name_value, Entity.id != entity.id
                    )
                )
                if taken is not None:
                    raise ValidationFailedError(
                        f"Validation Failed: Name '{name_value}' has already been taken"
                    )
                entity.name = name_value
            if type_value:
                entity.entity_type = type_value
            if aliases is not None:
                entity.aliases = aliases
            if description is not None:
                entity.description = description
            entity.updated_at = _utc_now_naive()
            await session.flush()
            payload = entity_to_dict(entity)

        await self.refresh_embeddings([payload["entity_id"]])
        return payload

    async def delete_entity(self, entity_id: int) -> Dict[str, Any]:
        async with self.session() as session:
            entity = await self.require_entity(session, entity_id)
            payload = entity_to_dict(entity)
            await self.purge_entity(session, entity.id)
        logger.info("Deleted entity %s (%s)", payload["entity_id"], payload["name"])
        return payload

    # -------------------------------------------------------------------------
    # Observations
    # -------------------------------------------------------------------------

    async def create_observation(self, entity_id: int, content: str) -> Dict[str, Any]:
        if not content or not str(content).strip():
            raise ValidationFailedError("Validation Failed: Content can't be blank")
        async with self.session() as session:
            entity = await self.require_entity(session, entity_id)
            observation = Observation(entity_id=entity.id, content=str(content))
            session.add(observation)
            await session.flush()
            await self.refresh_observation_count(session, entity.id)
            payload = observation_to_dict(observation)

        if self.vector_enabled():
            try:
                await self.embed_observation(payload["observation_id"])
            except Exception as exc:
                logger.warning(
                    "Embedding refresh failed for observation %s: %s",
                    payload["observation_id"],
                    exc,
                )
        return payload

    async def delete_observation(self, observation_id: int) -> Dict[str, Any]:
        async with self.session() as session:
            observation = await session.get(Observation, observation_id)
            if observation is None:
                raise NotFoundError(f"Observation with ID {observation_id} not found.")
            payload = observation_to_dict(observation)
            await session.delete(observation)
            await session.flush()
            await self.refresh_observation_count(session, payload["entity_id"])
        return payload

    # -------------------------------------------------------------------------
    # Relations
    # -------------------------------------------------------------------------

    async def create_relation(
        self, from_entity_id: int, to_entity_id: int, relation_type: str
    ) -> Dict[str, Any]:
        type_value = (relation_type or "").strip()
        if not type_value:
            raise ValidationFailedError("Relation type cannot be blank")

        async with self.session() as session:
            from_entity = await self.require_entity(session, from_entity_id, "From entity")
            to_entity = await self.require_entity(session, to_entity_id, "To entity")
            if from_entity.id == to_entity.id:
                raise ValidationFailedError("A relation cannot point an entity at itself")
            existing = await session.scalar(
                select(Relation.id).where(
                    Relation.from_entity_id == from_entity.id,
                    Relation.to_entity_id == to_entity.id,
                    Relation.relation_type == type_value,
                )
            )
            if existing is not None:
                raise ValidationFailedError(
                    f"Relation {from_entity.id} -[{type_value}]-> {to_entity.id} already exists"
                )
            relation = Relation(
                from_entity_id=from_entity.id,
                to_entity_id=to_entity.id,
                relation_type=type_value,
            )
            session.add(relation)
            await session.flush()
            payload = relation_to_dict(relation)
            payload["from_entity_name"] = from_entity.name
            payload["to_entity_name"] = to_entity.name
        return payload

    async def delete_relation(self, relation_id: int) -> Dict[str, Any]:
        async with self.session() as session:
            relation = await session.get(Relation, relation_id)
            if relation is None:
                raise NotFoundError(f"Relation with ID {relation_id} not found.")
            payload = relation_to_dict(relation)
            await session.delete(relation)
        return payload

    async def find_relations(
        self,
        entity_id: Optional[int] = None,
        relation_type: Optional[str] = None,
        direction: str = "both",
    ) -> List[Dict[str, Any]]:
        conditions = []
        if entity_id is not None:
            if direction == "outgoing":
                conditions.append(Relation.from_entity_id == entity_id)
            elif direction == "incoming":
                conditions.append(Relation.to_entity_id == entity_id)
            else:
                conditions.append(
                    or_(
                        Relation.from_entity_id == entity_id,
                        Relation.to_entity_id == entity_id,
                    )
                )
        if relation_type:
            conditions.append(Relation.relation_type == relation_type)
        async with self.session() as session:
            return await self._relations_with_names(session, *conditions)

    @staticmethod
    async def _relations_with_names(
        session: AsyncSession, *conditions: Any
    ) -> List[Dict[str, Any]]:
        query = select(Relation).order_by(Relation.id)
        if conditions:
            query = query.where(*conditions)
        relations = (await session.execute(query)).scalars().all()
        entity_ids = {r.from_entity_id for r in relations} | {
            r.to_entity_id for r in relations
        }
        names: Dict[int, str] = {}
        if entity_ids:
            rows = await session.execute(
                select(Entity.id, Entity.name).where(Entity.id.in_(entity_ids))
            )
            names = {row[0]: row[1] for row in rows.all()}
        payload = []
        for relation in relations:
            item = relation_to_dict(relation)
            item["from_entity_name"] = names.get(relation.from_entity_id)
            item["to_entity_name"] = names.get(relation.to_entity_id)
            payload.append(item)
        return payload

    async def graph_stats(self) -> Dict[str, Any]:
        async with self.session() as session:
            entity_total = await session.scalar(select(func.count(Entity.id)))
            observation_total = await session.scalar(select(func.count(Observation.id)))
            relation_total = await session.scalar(select(func.count(Relation.id)))
            type_rows = await session.execute(
                select(Entity.entity_type, func.count(Entity.id))
                .group_by(Entity.entity_type)
                .order_by(func.count(Entity.id).desc(), Entity.entity_type)
            )
            relation_rows = await session.execute(
                select(Relation.relation_type, func.count(Relation.id))
                .group_by(Relation.relation_type)
                .order_by(func.count(Relation.id).desc(), Relation.relation_type)
            )
        return {
            "total_entities": int(entity_total or 0),
            "total_observations": int(observation_total or 0),
            "total_relations": int(relation_total or 0),
            "entity_types": {row[0]: int(row[1]) for row in type_rows.all()},
            "relation_types": {row[0]: int(row[1]) for row in relation_rows.all()},
        }

    # -------------------------------------------------------------------------
    # Embeddings
    # -------------------------------------------------------------------------

    async def embed_entity(self, entity_id: int) -> bool:
        """Recompute one entity's vector. Returns False when nothing was stored."""
        if not self.vector_enabled():
            return False
        async with self.session() as session:
            entity = await session.get(Entity, entity_id)
            if entity is None:
                return False
            text_value = self.embedding.compose_entity_text(entity)
        vector = await self.embedding.embed(text_value)
        if vector is None:
            return False
        async with self.session() as session:
            entity = await session.get(Entity, entity_id)
            if entity is None:
                return False
            entity.embedding = dump_vector(vector)
        return True

    async def embed_observation(self, observation_id: int) -> bool:
        if not self.vector_enabled():
            return False
        async with self.session() as session:
            observation = await session.get(Observation, observation_id)
            if observation is None:
                return False
            content = observation.content
        vector = await self.embedding.embed(content)
        if vector is None:
            return False
        async with self.session() as session:
            observation = await session.get(Observation, observation_id)
            if observation is None:
                return False
            observation.embedding = dump_vector(vector)
        return True

    async def refresh_embeddings(self, entity_ids: Iterable[int]) -> int:
        """Best-effort re-embed after a committed write; never raises."""
        if not self.vector_enabled():
            return 0
        refreshed = 0
        for entity_id in entity_ids:
            try:
                if await self.embed_entity(entity_id):
                    refreshed += 1
            except Exception as exc:
                logger.warning("Embedding refresh failed for entity %s: %s", entity_id, exc)
        return refreshed

    async def backfill_embeddings(self, batch_size: int = 100) -> Dict[str, int]:
        """Embed every entity and observation that has no vector yet."""
        if not self.vector_enabled():
            logger.warning("Vector search disabled, skipping embedding backfill")
            return {"entities": 0, "observations": 0}

        totals = {"entities": 0, "observations": 0}
        for model, key, embed_one in (
            (Entity, "entities", self.embed_entity),
            (Observation, "observations", self.embed_observation),
        ):
            last_id = 0
            while True:
                async with self.session() as session:
                    ids = (
                        await session.execute(
                            select(model.id)
                            .where(model.embedding.is_(None), model.id > last_id)
                            .order_by(model.id)
                            .limit(max(1, batch_size))
                        )
                    ).scalars().all()
                if not ids:
                    break
                for row_id in ids:
                    if await embed_one(row_id):
                        totals[key] += 1
                last_id = ids[-1]

        logger.info(
            "Backfilled %d entities, %d observations",
            totals["entities"],
            totals["observations"],
        )
        return totals


# =============================================================================
# Global Singleton
# =============================================================================

_graph_client: Optional[GraphClient] = None


def get_graph_client() -> GraphClient:
    """Get the global GraphClient instance."""
    global _graph_client
    if _graph_client is None:
        _graph_client = GraphClient(configured_database_url())
    return _graph_client


async def close_graph_client():
    """Close the global GraphClient connection."""
    global _graph_client
    if _graph_client:
        await _graph_client.close()
        _graph_client = None
