import unittest

from catalog.domain.merge import merge_entities
from catalog.domain.models import Entity, EntityMeta


class TestMergeEntities(unittest.TestCase):
    def setUp(self) -> None:
        self.base = Entity(
            api_version='v1',
            kind='Component',
            metadata=EntityMeta(
                uid='stored-uid',
                etag='stored-etag',
                generation=4,
                name='service',
                labels={'old': 'label'},
                annotations={'shared': 'base', 'base-only': 'kept'},
            ),
            spec={'old': True},
        )
        self.added = Entity(
            api_version='v2',
            kind='API',
            metadata=EntityMeta(
                uid='untrusted',
                generation=1,
                name='service',
                labels={'new': 'label'},
                annotations={'shared': 'added', 'added-only': 'new'},
            ),
            spec={'new': True},
        )

    def test_keeps_identity_from_base(self) -> None:
        merged = merge_entities(self.base, self.added)

        self.assertEqual(merged.metadata.uid, 'stored-uid')
        self.assertEqual(merged.metadata.generation, 4)

    def test_added_wins_for_everything_else(self) -> None:
        merged = merge_entities(self.base, self.added)

        self.assertEqual(merged.api_version, 'v2')
        self.assertEqual(merged.kind, 'API')
        self.assertEqual(merged.spec, {'new': True})
        self.assertEqual(merged.metadata.labels, {'new': 'label'})

    def test_annotations_are_combined_with_added_taking_precedence(self) -> None:
        merged = merge_entities(self.base, self.added)

        self.assertEqual(
            merged.metadata.annotations,
            {'shared': 'added', 'base-only': 'kept', 'added-only': 'new'},
        )

    def test_base_annotations_survive_when_added_has_none(self) -> None:
        added = self.added.model_copy(
            update={'metadata': self.added.metadata.model_copy(update={'annotations': None})}
        )

        merged = merge_entities(self.base, added)

        self.assertEqual(merged.metadata.annotations, {'shared': 'base', 'base-only': 'kept'})

    def test_inputs_are_not_modified(self) -> None:
        merge_entities(self.base, self.added)

        self.assertEqual(self.added.metadata.uid, 'untrusted')
        self.assertEqual(self.added.metadata.annotations, {'shared': 'added', 'added-only': 'new'})
        self.assertEqual(self.base.metadata.annotations, {'shared': 'base', 'base-only': 'kept'})

    def test_added_without_metadata(self) -> None:
        merged = merge_entities(self.base, self.added.model_copy(update={'metadata': None}))

        self.assertEqual(merged.metadata.uid, 'stored-uid')
        self.assertEqual(merged.metadata.annotations, {'shared': 'base', 'base-only': 'kept'})


if __name__ == '__main__':
    unittest.main()
