"""
Typed cache keys and the entity dependency map.

Every cache key is built from an ``EntityClass`` so the set of keys a change
to one table affects can be enumerated without parsing strings.
"""

from dataclasses import dataclass
from enum import Enum
from typing import Dict, FrozenSet, Iterable, Mapping, Optional, Tuple, Union

from shop_shared.errors import ConfigurationError


class EntityClass(str, Enum):
    """Entity classes the paint-shop tool caches."""

    PRODUCTS = "products"
    BRANDS = "brands"
    PAINT_TYPES = "paint_types"
    COLORS = "colors"
    UNITS = "units"
    REFERENCE_DATA = "reference_data"

    CUSTOMERS = "customers"
    SUPPLIERS = "suppliers"
    REGULAR_CUSTOMERS = "regular_customers"
    REGULAR_CUSTOMER_PRODUCTS = "regular_customer_products"

    INVOICES = "invoices"
    INVOICE_ITEMS = "invoice_items"
    PAYMENTS = "payments"
    PROJECTS = "projects"
    CUSTOMER_INVOICES = "customer_invoices"
    CUSTOMER_PAYMENTS = "customer_payments"
    CUSTOMER_PROJECTS = "customer_projects"

    INVENTORY_RECEIPTS = "inventory_receipts"
    INVENTORY_MOVEMENTS = "inventory_movements"

    DASHBOARD = "dashboard"

    def key(self, **params) -> "CacheKey":
        """Build a key for this entity class, optionally narrowed by params."""
        return CacheKey.build(self, **params)


@dataclass(frozen=True)
class CacheKey:
    """Hashable cache key: an entity class plus sorted string parameters."""

    entity: EntityClass
    params: Tuple[Tuple[str, str], ...] = ()

    @classmethod
    def build(cls, entity: EntityClass, **params) -> "CacheKey":
        for name, value in params.items():
            if value is None:
                raise ConfigurationError(
                    "Cache key parameters must not be None",
                    details={"entity": entity.value, "param": name},
                )
        normalized = tuple(sorted((name, str(value)) for name, value in params.items()))
        return cls(entity=entity, params=normalized)

    def param(self, name: str) -> Optional[str]:
        for param_name, value in self.params:
            if param_name == name:
                return value
        return None

    def __str__(self) -> str:
        if not self.params:
            return self.entity.value
        rendered = ",".join(f"{name}={value}" for name, value in self.params)
        return f"{self.entity.value}:{rendered}"


# source entity -> entity classes whose keys are computed from it
DEFAULT_DERIVATIONS: Dict[EntityClass, FrozenSet[EntityClass]] = {
    EntityClass.PRODUCTS: frozenset({
        EntityClass.BRANDS,
        EntityClass.PAINT_TYPES,
        EntityClass.COLORS,
        EntityClass.REFERENCE_DATA,
        EntityClass.REGULAR_CUSTOMER_PRODUCTS,
        EntityClass.DASHBOARD,
    }),
    EntityClass.INVOICES: frozenset({EntityClass.CUSTOMER_INVOICES, EntityClass.DASHBOARD}),
    EntityClass.INVOICE_ITEMS: frozenset({EntityClass.DASHBOARD}),
    EntityClass.INVENTORY_RECEIPTS: frozenset({EntityClass.DASHBOARD}),
    EntityClass.INVENTORY_MOVEMENTS: frozenset({EntityClass.DASHBOARD}),
    EntityClass.CUSTOMERS: frozenset({EntityClass.DASHBOARD}),
    EntityClass.PAYMENTS: frozenset({EntityClass.CUSTOMER_PAYMENTS}),
    EntityClass.PROJECTS: frozenset({EntityClass.CUSTOMER_PROJECTS}),
}

# entity class -> table its rows are read from; classes missing here are computed
BACKING_TABLES: Dict[EntityClass, str] = {
    EntityClass.PRODUCTS: "products",
    EntityClass.SUPPLIERS: "suppliers",
    EntityClass.CUSTOMERS: "customers",
    EntityClass.REGULAR_CUSTOMERS: "regular_customers",
    EntityClass.REGULAR_CUSTOMER_PRODUCTS: "regular_customer_products",
    EntityClass.INVOICES: "invoices",
    EntityClass.INVOICE_ITEMS: "invoice_items",
    EntityClass.PAYMENTS: "customer_payments",
    EntityClass.PROJECTS: "customer_projects",
    EntityClass.CUSTOMER_INVOICES: "regular_customer_invoices",
    EntityClass.CUSTOMER_PAYMENTS: "customer_payments",
    EntityClass.CUSTOMER_PROJECTS: "customer_projects",
    EntityClass.INVENTORY_RECEIPTS: "inventory_receipts",
    EntityClass.INVENTORY_MOVEMENTS: "inventory_movements",
}

EntityRef = Union[EntityClass, str]


class KeyRegistry:
    """Answers "which key classes does a change to entity class X affect".

    Two classes read from the same table are stale together: a write or a
    change notification for either evicts both, plus what derives from them.
    """

    def __init__(
        self,
        derivations: Optional[Mapping[EntityClass, Iterable[EntityClass]]] = None,
        tables: Optional[Mapping[EntityClass, str]] = None,
    ):
        source = DEFAULT_DERIVATIONS if derivations is None else derivations
        self._derived: Dict[EntityClass, FrozenSet[EntityClass]] = {
            self.coerce(entity): frozenset(self.coerce(target) for target in targets)
            for entity, targets in source.items()
        }
        backing = BACKING_TABLES if tables is None else tables
        self._tables: Dict[EntityClass, str] = {
            self.coerce(entity): table for entity, table in backing.items()
        }

    @staticmethod
    def coerce(entity: EntityRef) -> EntityClass:
        """Resolve an entity class name, rejecting names nothing caches."""
        if isinstance(entity, EntityClass):
            return entity
        try:
            return EntityClass(entity)
        except ValueError:
            raise ConfigurationError(
                f"Unknown entity class: {entity!r}",
                details={"entity": entity, "known": sorted(e.value for e in EntityClass)},
            ) from None

    def derive(self, source: EntityRef, *targets: EntityRef) -> None:
        """Declare that keys of ``targets`` are computed from ``source``."""
        source_cls = self.coerce(source)
        extra = frozenset(self.coerce(target) for target in targets)
        self._derived[source_cls] = self._derived.get(source_cls, frozenset()) | extra

    def affected_by(self, entity: EntityRef) -> FrozenSet[EntityClass]:
        """Entity classes to evict after a change to ``entity``, itself included."""
        entity_cls = self.coerce(entity)
        return frozenset({entity_cls}) | self._derived.get(entity_cls, frozenset())

    def derivations(self) -> Dict[EntityClass, FrozenSet[EntityClass]]:
        return dict(self._derived)

    def table_for(self, entity: EntityRef) -> Optional[str]:
        return self._tables.get(self.coerce(entity))

    def sharing_table(self, entity: EntityRef) -> FrozenSet[EntityClass]:
        """Entity classes read from the same table as ``entity``, itself included."""
        entity_cls = self.coerce(entity)
        table = self._tables.get(entity_cls)
        if table is None:
            return frozenset({entity_cls})
        return frozenset(e for e, t in self._tables.items() if t == table) | {entity_cls}

    def resolve_change(self, name: str) -> FrozenSet[EntityClass]:
        """Entity classes touched by a change naming ``name``.

        ``name`` may be an entity class value or a backing table name, as
        realtime notifications carry the table. Unknown names touch nothing.
        """
        touched = {entity for entity, table in self._tables.items() if table == name}
        try:
            touched |= self.sharing_table(EntityClass(name))
        except ValueError:
            pass
        return frozenset(touched)

    def affected_by_write(self, entity: EntityRef) -> FrozenSet[EntityClass]:
        """Entity classes to evict after a write to ``entity``'s table."""
        affected: FrozenSet[EntityClass] = frozenset()
        for sibling in self.sharing_table(entity):
            affected |= self.affected_by(sibling)
        return affected
