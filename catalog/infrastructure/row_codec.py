import base64
import json
import re
import uuid
from typing import Any, Dict, Mapping, Optional

from catalog.domain.models import Entity, EntityMeta, EntityResponse

# Store-managed fields; these are kept in their own columns, never in the blob
STORE_MANAGED_FIELDS = {'uid', 'etag', 'generation'}


def generate_etag() -> str:
    # Not yet validated on update; audit-only
    encoded = base64.b64encode(str(uuid.uuid4()).encode('ascii')).decode('ascii')
    return re.sub(r'[^\w]', '', encoded)


class EntityRowTranslator:
    """
    Translates between Entity envelopes and flat rows of the entities table.
    """

    @staticmethod
    def serialize_metadata(metadata: Optional[EntityMeta]) -> Optional[str]:
        if metadata is None:
            return None
        return json.dumps(
            metadata.model_dump(exclude=STORE_MANAGED_FIELDS, exclude_none=True), default=str,
        )

    @staticmethod
    def serialize_spec(spec: Optional[Dict[str, Any]]) -> Optional[str]:
        if spec is None:
            return None
        return json.dumps(spec, default=str)

    @staticmethod
    def to_row(entity: Entity, location_id: Optional[str] = None) -> Dict[str, Any]:
        """
        Builds the column values for writing an entity.

        The row carries no id; the store assigns one on insert. The generation
        is a placeholder which the store replaces according to the write path.

        Args:
            entity (Entity): The entity to persist.
            location_id (Optional[str]): The location the entity was read from, if any.

        Returns:
            Dict[str, Any]: Column name to value mapping for the entities table.
        """
        metadata = entity.metadata
        return {
            'location_id': location_id or None,
            'etag': generate_etag(),
            'generation': 1,
            'api_version': entity.api_version,
            'kind': entity.kind,
            'name': (metadata.name if metadata else None) or None,
            'namespace': (metadata.namespace if metadata else None) or None,
            'metadata': EntityRowTranslator.serialize_metadata(metadata),
            'spec': EntityRowTranslator.serialize_spec(entity.spec),
        }

    @staticmethod
    def from_row(row: Mapping[str, Any]) -> EntityResponse:
        """
        Rebuilds an entity from a stored row.

        The row's id, etag and generation columns always take precedence over
        anything found in the stored metadata blob.
        """
        metadata: Dict[str, Any] = {}
        if row['metadata']:
            metadata.update(json.loads(row['metadata']))
        metadata.update({
            'uid': row['id'],
            'etag': row['etag'],
            'generation': row['generation'],
        })

        spec = json.loads(row['spec']) if row['spec'] else None

        entity = Entity(
            api_version=row['api_version'],
            kind=row['kind'],
            metadata=EntityMeta.model_validate(metadata),
            spec=spec,
        )
        return EntityResponse(location_id=row['location_id'] or None, entity=entity)
