import asyncio
import glob
import logging
import random
from pathlib import Path
from typing import AsyncIterator, Optional

import aiohttp

from catalog.domain.exceptions import LocationReadException
from catalog.domain.models import ReadItem

logger = logging.getLogger(__name__)

REQUEST_TIMEOUT = aiohttp.ClientTimeout(total=60, connect=10)
MAX_RETRIES = 5
RETRYABLE_STATUSES = {429, 500, 502, 503, 504}


class LocationReader:
    """
    Reads raw descriptor bytes from locations.

    Supported location types:
      - "file": target is a path or glob pattern; one item per matching file.
      - "url": target is fetched with an HTTP GET; one item per location.

    Problems with a single item are yielded as error items. Only failures of the
    location as a whole (unsupported type, nothing to read, unreachable host)
    are raised.
    """

    def __init__(self, session: Optional[aiohttp.ClientSession] = None):
        self.session = session
        self.headers = {
            "Accept": "application/yaml, application/json, text/plain",
            "User-Agent": "catalog-refresher",
        }

    async def read(self, type: str, target: str) -> AsyncIterator[ReadItem]:
        if type == "file":
            async for item in self._read_files(target):
                yield item
        elif type == "url":
            yield await self._read_url(target)
        else:
            raise LocationReadException(f"Unsupported location type '{type}' for target '{target}'")

    async def _read_files(self, target: str) -> AsyncIterator[ReadItem]:
        paths = sorted(glob.glob(target))
        if not paths:
            raise LocationReadException(f"No files matching '{target}'")

        for path in paths:
            try:
                data = await asyncio.to_thread(Path(path).read_bytes)
            except OSError as e:
                logger.warning(f"Unable to read '{path}': {e}")
                yield ReadItem.of_error(e)
                continue
            yield ReadItem.of_data(data)

    async def _read_url(self, target: str) -> ReadItem:
        if self.session is not None:
            return await self._fetch(self.session, target)
        async with aiohttp.ClientSession() as session:
            return await self._fetch(session, target)

    async def _fetch(self, session: aiohttp.ClientSession, target: str) -> ReadItem:
        """
        Fetches a single URL, retrying transient failures with exponential backoff.

        Returns:
            ReadItem: A data item on success, an error item on a non-retryable HTTP error.
        """
        for attempt in range(MAX_RETRIES):
            try:
                async with session.get(target, headers=self.headers, timeout=REQUEST_TIMEOUT) as response:
                    if response.status in RETRYABLE_STATUSES:
                        retry_after = response.headers.get('Retry-After')
                        sleep_time = int(retry_after) if retry_after and retry_after.isdigit() \
                            else (2 ** attempt) + random.uniform(0, 1)
                        logger.warning(
                            f"Got {response.status} from '{target}', "
                            f"retrying in {sleep_time:.1f}s (attempt {attempt + 1}/{MAX_RETRIES})..."
                        )
                        await asyncio.sleep(sleep_time)
                        continue

                    if response.status >= 400:
                        return ReadItem.of_error(
                            LocationReadException(f"Got {response.status} from '{target}'")
                        )

                    return ReadItem.of_data(await response.read())

            except (aiohttp.ClientError, asyncio.TimeoutError) as e:
                sleep_time = (2 ** attempt) + random.uniform(0, 1)
                logger.warning(
                    f"Request to '{target}' failed (attempt {attempt + 1}/{MAX_RETRIES}): {e}. "
                    f"Retrying in {sleep_time:.1f}s..."
                )
                await asyncio.sleep(sleep_time)

        raise LocationReadException(f"Failed to read '{target}' after {MAX_RETRIES} attempts.")
