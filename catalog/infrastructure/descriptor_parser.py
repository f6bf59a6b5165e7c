from typing import Any, Optional

import yaml
from pydantic import ValidationError

from catalog.domain.exceptions import ParserException
from catalog.domain.models import Entity


def _entity_name(document: Any) -> Optional[str]:
    if not isinstance(document, dict):
        return None
    metadata = document.get('metadata')
    if not isinstance(metadata, dict):
        return None
    name = metadata.get('name')
    return name if isinstance(name, str) else None


class DescriptorParser:
    """
    Anti-corruption layer that turns raw descriptor bytes (YAML or JSON) into Entity instances.
    """

    @staticmethod
    def parse(data: bytes) -> Entity:
        """
        Parses a single descriptor document.

        Args:
            data (bytes): Raw descriptor as read from a location.

        Returns:
            Entity: The parsed entity envelope.

        Raises:
            ParserException: If the data is not a valid entity envelope. The
                entity name is attached when the document got far enough to have one.
        """
        try:
            document = yaml.safe_load(data)
        except yaml.YAMLError as e:
            raise ParserException(f"Malformed descriptor: {e}") from e

        if not isinstance(document, dict):
            raise ParserException("Descriptor is not a mapping")

        try:
            return Entity.model_validate(document)
        except ValidationError as e:
            raise ParserException(f"Invalid descriptor: {e}", entity_name=_entity_name(document)) from e
