import asyncio
import logging
from collections import deque
from typing import Optional

from sqlalchemy.ext.asyncio import AsyncConnection

from catalog.domain.exceptions import InvalidInputException, ParserException
from catalog.domain.merge import merge_entities
from catalog.domain.models import (
    Entity,
    EntityMeta,
    EntityRequest,
    EntityResponse,
    Location,
    LocationUpdateStatus,
)
from catalog.infrastructure.database import EntityStore
from catalog.infrastructure.descriptor_parser import DescriptorParser
from catalog.infrastructure.location_reader import LocationReader

logger = logging.getLogger(__name__)


class RefreshService:
    """
    Service responsible for refreshing all known locations: reading them,
    parsing what was read, and merging the results into the entity store.

    Every item is persisted in its own transaction, and every outcome is
    written to the location update log. A failing item never stops its
    siblings, and a failing location never stops the others. Only failures of
    the store itself (e.g. the log cannot be written) escape `refresh_locations`.
    """

    def __init__(
            self,
            store: EntityStore,
            reader: LocationReader,
            parser: DescriptorParser,
            max_concurrent_locations: int = 1,
    ):
        self.store = store
        self.reader = reader
        self.parser = parser
        self.max_concurrent_locations = max(1, max_concurrent_locations)

    async def refresh_locations(self) -> None:
        locations = deque(await self.store.locations())
        logger.info(f"Refreshing {len(locations)} locations.")

        while locations:
            batch = []
            while locations and len(batch) < self.max_concurrent_locations:
                batch.append(locations.popleft())
            # Let the whole batch settle before surfacing a store failure
            results = await asyncio.gather(
                *(self._refresh_location(location) for location in batch),
                return_exceptions=True,
            )
            failures = [result for result in results if isinstance(result, BaseException)]
            for failure in failures[1:]:
                logger.error(f"Another location in the batch also failed: {failure}")
            if failures:
                raise failures[0]

        logger.info("Refresh completed.")

    async def refresh_single_entity(self, location_id: Optional[str], entity: Entity) -> EntityResponse:
        """
        Adds the entity, or merges it into the stored entity of the same name
        and namespace, within a single transaction.
        """
        metadata = entity.metadata or EntityMeta()
        if not metadata.name:
            raise InvalidInputException('Entities without names are not yet supported')

        async def persist(tx: AsyncConnection) -> EntityResponse:
            previous = await self.store.entity(tx, metadata.name, metadata.namespace)
            if previous is not None:
                merged = merge_entities(previous.entity, entity)
                return await self.store.update_entity(tx, EntityRequest(location_id=location_id, entity=merged))
            return await self.store.add_entity(tx, EntityRequest(location_id=location_id, entity=entity))

        return await self.store.transaction(persist)

    async def _refresh_location(self, location: Location) -> None:
        try:
            logger.debug(
                f'Refreshing location id="{location.id}" type="{location.type}" target="{location.target}"'
            )

            async for item in self.reader.read(location.type, location.target):
                if item.kind == "error":
                    logger.debug(f"Skipping unreadable item in location {location.id}: {item.error}")
                    continue
                await self._refresh_item(location, item.data)

            await self._log_success(location.id)
        except Exception as e:
            logger.warning(f"Failed to refresh location {location.id}: {e}")
            await self._log_failure(location.id, e)

    async def _refresh_item(self, location: Location, data: bytes) -> None:
        entity_name = None
        try:
            entity = self.parser.parse(data)
            if entity.metadata is not None:
                entity_name = entity.metadata.name
            await self.refresh_single_entity(location.id, entity)
        except Exception as e:
            if isinstance(e, ParserException):
                entity_name = e.entity_name
            logger.debug(f"Failed to refresh entity {entity_name!r} in location {location.id}: {e}")
            await self._log_failure(location.id, e, entity_name)
            return

        await self._log_success(location.id, entity_name)

    async def _log_success(self, location_id: str, entity_name: Optional[str] = None) -> None:
        await self.store.add_location_update_log_event(
            location_id, LocationUpdateStatus.SUCCESS, entity_name,
        )

    async def _log_failure(
            self, location_id: str, error: Exception, entity_name: Optional[str] = None,
    ) -> None:
        await self.store.add_location_update_log_event(
            location_id, LocationUpdateStatus.FAIL, entity_name, str(error),
        )
