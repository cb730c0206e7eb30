"""
TTL presets and per-entity cache policies.
"""

from dataclasses import dataclass
from typing import Dict, Mapping, Optional

from shop_shared.config import BaseConfig
from shop_shared.errors import ConfigurationError
from .keys import EntityClass, EntityRef, KeyRegistry
from .store import validate_ttl


class TTL:
    """Default TTL presets in milliseconds."""

    SHORT = 2 * 60 * 1000
    MEDIUM = 5 * 60 * 1000
    LONG = 15 * 60 * 1000
    REFERENCE = 30 * 60 * 1000


# Reference data changes rarely; transactional data is kept short.
DEFAULT_TTL_CLASSES: Dict[EntityClass, str] = {
    EntityClass.PRODUCTS: "medium",
    EntityClass.BRANDS: "reference",
    EntityClass.PAINT_TYPES: "reference",
    EntityClass.COLORS: "reference",
    EntityClass.UNITS: "reference",
    EntityClass.REFERENCE_DATA: "reference",
    EntityClass.CUSTOMERS: "medium",
    EntityClass.SUPPLIERS: "long",
    EntityClass.REGULAR_CUSTOMERS: "medium",
    EntityClass.REGULAR_CUSTOMER_PRODUCTS: "medium",
    EntityClass.INVOICES: "short",
    EntityClass.INVOICE_ITEMS: "short",
    EntityClass.PAYMENTS: "short",
    EntityClass.PROJECTS: "medium",
    EntityClass.CUSTOMER_INVOICES: "short",
    EntityClass.CUSTOMER_PAYMENTS: "short",
    EntityClass.CUSTOMER_PROJECTS: "medium",
    EntityClass.INVENTORY_RECEIPTS: "short",
    EntityClass.INVENTORY_MOVEMENTS: "short",
    EntityClass.DASHBOARD: "short",
}


@dataclass(frozen=True)
class CachePolicy:
    """Cache settings for one entity class."""

    entity: EntityClass
    ttl_ms: int

    def __post_init__(self):
        validate_ttl(self.ttl_ms)


class PolicyTable:
    """Per-entity policies with a lookup that rejects unknown classes."""

    def __init__(self, policies: Mapping[EntityClass, CachePolicy]):
        self._policies = dict(policies)

    def get(self, entity: EntityRef) -> CachePolicy:
        entity_cls = KeyRegistry.coerce(entity)
        policy = self._policies.get(entity_cls)
        if policy is None:
            raise ConfigurationError(
                f"No cache policy for entity class {entity_cls.value!r}",
                details={"entity": entity_cls.value},
            )
        return policy

    def ttl_ms(self, entity: EntityRef) -> int:
        return self.get(entity).ttl_ms

    def override(self, entity: EntityRef, ttl_ms: int) -> CachePolicy:
        entity_cls = KeyRegistry.coerce(entity)
        policy = CachePolicy(entity=entity_cls, ttl_ms=ttl_ms)
        self._policies[entity_cls] = policy
        return policy

    def to_dict(self) -> Dict[str, int]:
        return {entity.value: policy.ttl_ms for entity, policy in self._policies.items()}


def build_policy_table(
    settings: Optional[BaseConfig] = None,
    ttl_classes: Optional[Mapping[EntityClass, str]] = None,
) -> PolicyTable:
    """Resolve each entity's TTL class against the configured presets."""
    presets = {
        "short": settings.ttl_short_ms if settings else TTL.SHORT,
        "medium": settings.ttl_medium_ms if settings else TTL.MEDIUM,
        "long": settings.ttl_long_ms if settings else TTL.LONG,
        "reference": settings.ttl_reference_ms if settings else TTL.REFERENCE,
    }
    classes = dict(DEFAULT_TTL_CLASSES)
    if ttl_classes:
        classes.update(ttl_classes)

    policies: Dict[EntityClass, CachePolicy] = {}
    for entity, ttl_class in classes.items():
        if ttl_class not in presets:
            raise ConfigurationError(
                f"Unknown TTL class {ttl_class!r}",
                details={"entity": entity.value, "known": sorted(presets)},
            )
        policies[entity] = CachePolicy(entity=entity, ttl_ms=presets[ttl_class])
    return PolicyTable(policies)
