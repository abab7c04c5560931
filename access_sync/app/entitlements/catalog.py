"""Catalog of gated feature instances and loose-reference resolution."""
from __future__ import annotations

from dataclasses import dataclass, field
from typing import Dict, Iterable, Optional, Sequence, Tuple, Union

from .models import FeatureInstance, FeatureKind, ReferenceKind, feature_value

# Order in which reference kinds are tried; the first match wins.
RESOLUTION_ORDER: Tuple[ReferenceKind, ...] = (ReferenceKind.ID, ReferenceKind.NAME, ReferenceKind.SLUG)


def _matches(kind: ReferenceKind, instance: FeatureInstance, reference: str) -> bool:
    if kind is ReferenceKind.ID:
        return instance.id == reference
    candidate = instance.name if kind is ReferenceKind.NAME else instance.slug
    if not candidate:
        return False
    return candidate.strip().casefold() == reference.casefold()


@dataclass(frozen=True)
class FeatureCatalog:
    """The loaded instances of one feature kind."""

    feature: str
    instances: Tuple[FeatureInstance, ...] = field(default_factory=tuple)

    @classmethod
    def of(
        cls,
        feature: Union[FeatureKind, str],
        instances: Iterable[Union[FeatureInstance, Dict[str, object]]],
    ) -> "FeatureCatalog":
        parsed = tuple(
            item if isinstance(item, FeatureInstance) else FeatureInstance.model_validate(item)
            for item in instances
        )
        return cls(feature=feature_value(feature), instances=parsed)

    def get(self, canonical_id: str) -> Optional[FeatureInstance]:
        for instance in self.instances:
            if instance.id == canonical_id:
                return instance
        return None

    def __len__(self) -> int:
        return len(self.instances)


def resolve(reference: object, catalog: Optional[Union[FeatureCatalog, Sequence[FeatureInstance]]]) -> Optional[str]:
    """Map an id, name or slug to the canonical id of a catalog instance.

    Ids compare exactly; names and slugs compare case-insensitively. Returns
    ``None`` when the catalog is missing or nothing matches.
    """

    if catalog is None or reference is None:
        return None
    text = str(reference).strip()
    if not text:
        return None
    instances = catalog.instances if isinstance(catalog, FeatureCatalog) else tuple(catalog)
    for kind in RESOLUTION_ORDER:
        for instance in instances:
            if _matches(kind, instance, text):
                return instance.id
    return None
