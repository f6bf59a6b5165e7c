import unittest

from catalog.main import parse_locations


class TestParseLocations(unittest.TestCase):
    def test_parses_type_and_target(self) -> None:
        locations = parse_locations("file:catalog/*.yaml, url:https://example.com/catalog-info.yaml")

        self.assertEqual(
            [(location.type, location.target) for location in locations],
            [("file", "catalog/*.yaml"), ("url", "https://example.com/catalog-info.yaml")],
        )

    def test_empty_value_yields_nothing(self) -> None:
        self.assertEqual(parse_locations(""), [])

    def test_entry_without_type_is_rejected(self) -> None:
        with self.assertRaises(ValueError):
            parse_locations("catalog.yaml")


if __name__ == "__main__":
    unittest.main()
