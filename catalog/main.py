import asyncio
import logging
import os
import sys
from typing import List

import aiohttp
from dotenv import load_dotenv

from catalog.application.refresh_service import RefreshService
from catalog.domain.models import AddLocation
from catalog.infrastructure.database import EntityStore
from catalog.infrastructure.descriptor_parser import DescriptorParser
from catalog.infrastructure.location_reader import LocationReader

logger = logging.getLogger(__name__)

DEFAULT_REFRESH_INTERVAL = 60


def configure_logging(level: str) -> None:
    logging.basicConfig(
        level=level.upper(),
        format="%(asctime)s [%(levelname)s] %(message)s",
        handlers=[
            logging.StreamHandler(sys.stdout)
        ]
    )


def parse_locations(raw: str) -> List[AddLocation]:
    """
    Parses a comma-separated list of "type:target" entries,
    e.g. "file:catalog/*.yaml,url:https://example.com/catalog-info.yaml".
    """
    locations = []
    for entry in raw.split(","):
        entry = entry.strip()
        if not entry:
            continue
        type, sep, target = entry.partition(":")
        if not sep or not type or not target:
            raise ValueError(f"Invalid location '{entry}', expected 'type:target'.")
        locations.append(AddLocation(type=type, target=target))
    return locations


async def main():
    # Load environment variables from .env file
    load_dotenv()
    configure_logging(os.getenv("LOG_LEVEL", "INFO"))

    db_url = os.getenv("DATABASE_URL")
    if not db_url:
        logger.error("DATABASE_URL is not set in the environment.")
        sys.exit(1)

    try:
        interval = float(os.getenv("REFRESH_INTERVAL_SECONDS", DEFAULT_REFRESH_INTERVAL))
        seed_locations = parse_locations(os.getenv("CATALOG_LOCATIONS", ""))
    except ValueError as e:
        logger.error(f"Invalid configuration: {e}")
        sys.exit(1)

    store = EntityStore(db_url=db_url)
    await store.init_schema()

    for location in seed_locations:
        added = await store.add_location(location)
        logger.info(f"Registered location {added.id} ({added.type}:{added.target}).")

    try:
        async with aiohttp.ClientSession() as session:
            refresh_service = RefreshService(
                store=store,
                reader=LocationReader(session=session),
                parser=DescriptorParser(),
            )
            while True:
                await refresh_service.refresh_locations()
                await asyncio.sleep(interval)
    except KeyboardInterrupt:
        logger.info("Refresh interrupted by user. Exiting gracefully.")
    except Exception as e:
        logger.exception(f"An unexpected error occurred: {e}")
        sys.exit(1)
    finally:
        await store.dispose()

def run():
    asyncio.run(main())

if __name__ == "__main__":
    run()
