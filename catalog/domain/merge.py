from catalog.domain.models import Entity, EntityMeta


def merge_entities(base: Entity, added: Entity) -> Entity:
    """
    Reconciles a freshly read entity with its previously stored counterpart.

    The added entity wins for everything except the store-managed uid and
    generation, which always come from the base. Annotations are combined,
    with keys from the added entity taking precedence over the base's.

    Args:
        base (Entity): The entity as currently stored.
        added (Entity): The entity as just read from its location.

    Returns:
        Entity: A new entity; neither input is modified.
    """
    result = added.model_copy(deep=True)
    base_metadata = base.metadata or EntityMeta()
    metadata = result.metadata or EntityMeta()

    # The added entity is not supposed to carry a uid or generation
    metadata = metadata.model_copy(update={
        'uid': base_metadata.uid,
        'generation': base_metadata.generation,
    })

    if base_metadata.annotations is not None:
        annotations = dict(base_metadata.annotations)
        annotations.update(metadata.annotations or {})
        metadata = metadata.model_copy(update={'annotations': annotations})

    return result.model_copy(update={'metadata': metadata})
