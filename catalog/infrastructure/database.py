import logging
import re
import uuid
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, List, Optional, TypeVar

from sqlalchemy import (
    Column, DateTime, Index, Integer, MetaData, String, Table, Text,
    delete, func, insert, select, update,
)
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncConnection, create_async_engine

from catalog.domain.exceptions import ConflictException, InvalidInputException, NotFoundException
from catalog.domain.models import (
    AddLocation,
    EntityMeta,
    EntityRequest,
    EntityResponse,
    Location,
    LocationUpdateLogEvent,
    LocationUpdateStatus,
)
from catalog.infrastructure.row_codec import EntityRowTranslator

logger = logging.getLogger(__name__)

T = TypeVar('T')

# SQLAlchemy core Table definitions
metadata = MetaData()
entities_table = Table(
    'entities', metadata,
    Column('id', String, primary_key=True),
    Column('location_id', String, nullable=True),
    Column('etag', String, nullable=False),
    Column('generation', Integer, nullable=False),
    Column('api_version', String, nullable=False),
    Column('kind', String, nullable=False),
    Column('name', String, nullable=False),
    Column('namespace', String, nullable=True),
    Column('metadata', Text, nullable=True),
    Column('spec', Text, nullable=True),
)
# A plain UNIQUE treats NULL namespaces as distinct; coalesce makes null a real partition key
Index(
    'entities_unique_name_namespace',
    entities_table.c.name,
    func.coalesce(entities_table.c.namespace, ''),
    unique=True,
)

locations_table = Table(
    'locations', metadata,
    Column('id', String, primary_key=True),
    Column('type', String, nullable=False),
    Column('target', String, nullable=False, unique=True),
)

location_update_log_table = Table(
    'location_update_log', metadata,
    Column('id', String, primary_key=True),
    Column('status', String, nullable=False),
    Column('location_id', String, nullable=False, index=True),
    Column('entity_name', String, nullable=True),
    Column('message', Text, nullable=True),
    Column(
        'created_at', DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc), server_default=func.now(),
    ),
)

# SQLSTATE for unique_violation (postgres drivers)
UNIQUE_VIOLATION_SQLSTATE = '23505'
# sqlite reports no SQLSTATE, only "UNIQUE constraint failed: ..."
_SQLITE_UNIQUE_VIOLATION = re.compile(r'UNIQUE constraint failed')


def is_unique_violation(error: IntegrityError) -> bool:
    """Tells unique constraint violations apart from other integrity errors."""
    sqlstate = getattr(error.orig, 'sqlstate', None) or getattr(error.orig, 'pgcode', None)
    if sqlstate is not None:
        return sqlstate == UNIQUE_VIOLATION_SQLSTATE
    return bool(_SQLITE_UNIQUE_VIOLATION.search(str(error.orig)))


def _describe(name: Optional[str], namespace: Optional[str]) -> str:
    return f'name="{name}" namespace=' + (f'"{namespace}"' if namespace else 'null')


def _namespace_matches(namespace: Optional[str]):
    if namespace is None:
        return entities_table.c.namespace.is_(None)
    return entities_table.c.namespace == namespace


class EntityStore:
    """
    Repository class for the catalog tables.
    Implements entity CRUD with optimistic concurrency on the generation counter,
    plus location bookkeeping and the location update log.

    Entity operations take an open transaction (see `transaction`); location and
    log operations manage their own connections.
    """

    def __init__(self, db_url: str, **engine_options: Any):
        self.engine = create_async_engine(db_url, echo=False, **engine_options)

    async def init_schema(self) -> None:
        """Creates any missing tables. Meant for local development and tests."""
        async with self.engine.begin() as conn:
            await conn.run_sync(metadata.create_all)

    async def dispose(self) -> None:
        await self.engine.dispose()

    async def transaction(self, fn: Callable[[AsyncConnection], Awaitable[T]]) -> T:
        """
        Runs `fn` inside a single transaction, committing if it returns normally.

        Unique constraint violations escaping `fn` are reported as ConflictException;
        every other error propagates unchanged.
        """
        try:
            async with self.engine.begin() as tx:
                return await fn(tx)
        except IntegrityError as e:
            if is_unique_violation(e):
                raise ConflictException('Rejected due to a conflicting entity') from e
            raise

    async def add_entity(self, tx: AsyncConnection, request: EntityRequest) -> EntityResponse:
        """
        Inserts a brand new entity with a fresh uid and generation 1.

        Raises:
            InvalidInputException: If the entity has no name.
            ConflictException: If an entity with the same name and namespace exists.
        """
        row = EntityRowTranslator.to_row(request.entity, request.location_id)
        if not row['name']:
            raise InvalidInputException('Cannot add entity that has no name')

        row['id'] = str(uuid.uuid4())
        row['generation'] = 1

        try:
            await tx.execute(insert(entities_table).values(**row))
        except IntegrityError as e:
            if is_unique_violation(e):
                raise ConflictException(
                    f'Entity {_describe(row["name"], row["namespace"])} already exists'
                ) from e
            raise

        return await self._read_back(tx, entities_table.c.id == row['id'])

    async def update_entity(self, tx: AsyncConnection, request: EntityRequest) -> EntityResponse:
        """
        Updates an existing entity, picking the target row by whichever identity
        fields the request carries, in this order:

        1. uid and generation: conditional on the stored generation.
        2. uid only: unconditional.
        3. name (and namespace) and generation: conditional on the stored generation.
        4. name (and namespace) only: reads the current generation, then writes
           conditionally on it. A writer slipping in between the read and the
           write makes this fail with a conflict rather than being overwritten.

        Every successful path bumps the generation by exactly one.

        Raises:
            ConflictException: If no row matched, or the written row cannot be read back.
            InvalidInputException: If the entity has neither uid nor name, or a uid without a name.
        """
        row = EntityRowTranslator.to_row(request.entity, request.location_id)
        values = {key: value for key, value in row.items() if key != 'generation'}
        renameless = {key: value for key, value in values.items() if key not in ('name', 'namespace')}

        entity_metadata = request.entity.metadata or EntityMeta()
        uid = entity_metadata.uid
        generation = entity_metadata.generation
        name = entity_metadata.name
        namespace = entity_metadata.namespace or None

        if uid and not row['name']:
            raise InvalidInputException(f'Cannot update entity uid="{uid}" without a name')

        # Update by uid, with generation check
        if uid and generation is not None:
            result = await tx.execute(
                update(entities_table)
                .where(entities_table.c.id == uid, entities_table.c.generation == generation)
                .values(**values, generation=generation + 1)
            )
            if not result.rowcount:
                raise ConflictException(f'No entity matching uid="{uid}", generation={generation}')

            return await self._read_back(
                tx, entities_table.c.id == uid, entities_table.c.generation == generation + 1,
            )

        # Update by uid, unconditionally
        if uid:
            result = await tx.execute(
                update(entities_table)
                .where(entities_table.c.id == uid)
                .values(**values, generation=entities_table.c.generation + 1)
            )
            if not result.rowcount:
                raise ConflictException(f'No entity matching uid="{uid}"')

            return await self._read_back(tx, entities_table.c.id == uid)

        # Update by name, with generation check
        if name and generation is not None:
            result = await tx.execute(
                update(entities_table)
                .where(
                    entities_table.c.name == name,
                    _namespace_matches(namespace),
                    entities_table.c.generation == generation,
                )
                .values(**renameless, generation=generation + 1)
            )
            if not result.rowcount:
                raise ConflictException(
                    f'No entity matching {_describe(name, namespace)} generation={generation}'
                )

            return await self._read_back(
                tx,
                entities_table.c.name == name,
                _namespace_matches(namespace),
                entities_table.c.generation == generation + 1,
            )

        # Update by name, conditional on the generation read just before
        if name:
            result = await tx.execute(
                select(entities_table.c.id, entities_table.c.generation)
                .where(entities_table.c.name == name, _namespace_matches(namespace))
            )
            old = result.mappings().first()
            if old is None:
                raise ConflictException(f'No entity matching {_describe(name, namespace)}')

            result = await tx.execute(
                update(entities_table)
                .where(entities_table.c.id == old['id'], entities_table.c.generation == old['generation'])
                .values(**renameless, generation=old['generation'] + 1)
            )
            if not result.rowcount:
                raise ConflictException(f'Failed to update {_describe(name, namespace)}')

            return await self._read_back(
                tx,
                entities_table.c.id == old['id'],
                entities_table.c.generation == old['generation'] + 1,
            )

        raise InvalidInputException('Cannot update entity that has neither uid nor name')

    async def entity(
        self, tx: AsyncConnection, name: str, namespace: Optional[str] = None,
    ) -> Optional[EntityResponse]:
        """Looks up a single entity; returns None unless exactly one row matches."""
        result = await tx.execute(
            select(entities_table)
            .where(entities_table.c.name == name, _namespace_matches(namespace or None))
        )
        rows = result.mappings().all()
        if len(rows) != 1:
            return None
        return EntityRowTranslator.from_row(rows[0])

    async def entities(self, tx: AsyncConnection) -> List[EntityResponse]:
        result = await tx.execute(
            select(entities_table).order_by(
                entities_table.c.namespace.asc().nulls_first(),
                entities_table.c.name.asc(),
            )
        )
        return [EntityRowTranslator.from_row(row) for row in result.mappings().all()]

    async def add_location(self, location: AddLocation) -> Location:
        """
        Adds a location, or returns the existing one if its target is already known.
        """
        try:
            async with self.engine.begin() as tx:
                existing = await self._location_by_target(tx, location.target)
                if existing is not None:
                    return existing

                location_id = str(uuid.uuid4())
                await tx.execute(
                    insert(locations_table).values(id=location_id, type=location.type, target=location.target)
                )
                result = await tx.execute(select(locations_table).where(locations_table.c.id == location_id))
                return Location.model_validate(dict(result.mappings().one()))
        except IntegrityError as e:
            if not is_unique_violation(e):
                raise
            # Another writer added the same target concurrently
            logger.debug(f"Location target '{location.target}' was added concurrently, reusing it.")
            async with self.engine.connect() as conn:
                existing = await self._location_by_target(conn, location.target)
            if existing is None:
                raise ConflictException(f"Rejected location with target '{location.target}'") from e
            return existing

    async def remove_location(self, id: str) -> None:
        async with self.engine.begin() as conn:
            result = await conn.execute(delete(locations_table).where(locations_table.c.id == id))
            if not result.rowcount:
                raise NotFoundException(f'Found no location with ID {id}')

    async def location(self, id: str) -> Location:
        async with self.engine.connect() as conn:
            result = await conn.execute(select(locations_table).where(locations_table.c.id == id))
            row = result.mappings().first()
        if row is None:
            raise NotFoundException(f'Found no location with ID {id}')
        return Location.model_validate(dict(row))

    async def locations(self) -> List[Location]:
        async with self.engine.connect() as conn:
            result = await conn.execute(select(locations_table))
            return [Location.model_validate(dict(row)) for row in result.mappings().all()]

    async def add_location_update_log_event(
        self,
        location_id: str,
        status: LocationUpdateStatus,
        entity_name: Optional[str] = None,
        message: Optional[str] = None,
    ) -> None:
        async with self.engine.begin() as conn:
            await conn.execute(
                insert(location_update_log_table).values(
                    id=str(uuid.uuid4()),
                    status=status.value,
                    location_id=location_id,
                    entity_name=entity_name,
                    message=message,
                )
            )

    async def location_history(self, location_id: str) -> List[LocationUpdateLogEvent]:
        """
        Returns the update log of one location, oldest first.

        Ordering follows the microsecond write timestamp; events stamped with the
        same instant (e.g. by writers with skewed clocks) have no defined order.
        """
        async with self.engine.connect() as conn:
            result = await conn.execute(
                select(location_update_log_table)
                .where(location_update_log_table.c.location_id == location_id)
                .order_by(location_update_log_table.c.created_at.asc())
            )
            return [LocationUpdateLogEvent.model_validate(dict(row)) for row in result.mappings().all()]

    @staticmethod
    async def _location_by_target(conn: AsyncConnection, target: str) -> Optional[Location]:
        result = await conn.execute(select(locations_table).where(locations_table.c.target == target))
        row = result.mappings().first()
        return Location.model_validate(dict(row)) if row is not None else None

    @staticmethod
    async def _read_back(tx: AsyncConnection, *criteria) -> EntityResponse:
        result = await tx.execute(select(entities_table).where(*criteria))
        rows = result.mappings().all()
        if not rows:
            raise ConflictException('Failed to read the generated entity')
        return EntityRowTranslator.from_row(rows[0])
