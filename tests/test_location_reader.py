import os
import tempfile
import unittest
from unittest.mock import AsyncMock, MagicMock, patch

from catalog.domain.exceptions import LocationReadException
from catalog.infrastructure.location_reader import MAX_RETRIES, LocationReader


async def _collect(reader, type, target):
    return [item async for item in reader.read(type, target)]


def _response(status, body=b"", headers=None):
    response = AsyncMock()
    response.status = status
    response.headers = headers or {}
    response.read = AsyncMock(return_value=body)
    response.__aenter__ = AsyncMock(return_value=response)
    response.__aexit__ = AsyncMock(return_value=False)
    return response


class TestFileLocations(unittest.IsolatedAsyncioTestCase):
    async def asyncSetUp(self) -> None:
        self.tmp = tempfile.TemporaryDirectory()
        self.addCleanup(self.tmp.cleanup)

    async def test_reads_every_matching_file(self) -> None:
        for name, body in (("a.yaml", b"first"), ("b.yaml", b"second"), ("c.txt", b"skip")):
            with open(os.path.join(self.tmp.name, name), "wb") as f:
                f.write(body)

        items = await _collect(LocationReader(), "file", os.path.join(self.tmp.name, "*.yaml"))

        self.assertEqual([item.kind for item in items], ["data", "data"])
        self.assertEqual([item.data for item in items], [b"first", b"second"])

    async def test_unreadable_match_becomes_error_item(self) -> None:
        os.mkdir(os.path.join(self.tmp.name, "a.yaml"))
        with open(os.path.join(self.tmp.name, "b.yaml"), "wb") as f:
            f.write(b"ok")

        items = await _collect(LocationReader(), "file", os.path.join(self.tmp.name, "*.yaml"))

        self.assertEqual([item.kind for item in items], ["error", "data"])
        self.assertIsInstance(items[0].error, OSError)

    async def test_no_match_raises(self) -> None:
        with self.assertRaises(LocationReadException):
            await _collect(LocationReader(), "file", os.path.join(self.tmp.name, "missing.yaml"))


class TestUrlLocations(unittest.IsolatedAsyncioTestCase):
    async def test_retries_server_errors_then_returns_data(self) -> None:
        session = MagicMock()
        session.get = MagicMock(side_effect=[
            _response(503, headers={"Retry-After": "1"}),
            _response(200, body=b"kind: Component"),
        ])
        reader = LocationReader(session=session)

        with patch("catalog.infrastructure.location_reader.asyncio.sleep", new_callable=AsyncMock) as mock_sleep:
            items = await _collect(reader, "url", "https://example.com/catalog-info.yaml")

        mock_sleep.assert_any_call(1)
        self.assertEqual(len(items), 1)
        self.assertEqual(items[0].data, b"kind: Component")
        self.assertEqual(session.get.call_count, 2)

    async def test_client_error_becomes_error_item(self) -> None:
        session = MagicMock()
        session.get = MagicMock(return_value=_response(404))
        reader = LocationReader(session=session)

        items = await _collect(reader, "url", "https://example.com/missing.yaml")

        self.assertEqual(items[0].kind, "error")
        self.assertIn("404", str(items[0].error))

    async def test_gives_up_after_max_retries(self) -> None:
        session = MagicMock()
        session.get = MagicMock(side_effect=[_response(500) for _ in range(MAX_RETRIES)])
        reader = LocationReader(session=session)

        with patch("catalog.infrastructure.location_reader.asyncio.sleep", new_callable=AsyncMock):
            with self.assertRaises(LocationReadException):
                await _collect(reader, "url", "https://example.com/flaky.yaml")

        self.assertEqual(session.get.call_count, MAX_RETRIES)


class TestUnsupportedLocations(unittest.IsolatedAsyncioTestCase):
    async def test_unknown_type_raises(self) -> None:
        with self.assertRaisesRegex(LocationReadException, "Unsupported location type"):
            await _collect(LocationReader(), "ftp", "ftp://example.com")


if __name__ == "__main__":
    unittest.main()
