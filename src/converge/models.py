"""Pydantic models for declared resources with schema validation.

These models provide:
1. Typed resource declarations keyed by (kind, logical name)
2. Validation against the schema registered for each kind (fail fast, fail loudly)
3. Lazy references to other resources' attributes, resolved only at diff/apply time
"""

from __future__ import annotations

from collections.abc import Callable, Iterator, Mapping
from dataclasses import dataclass
from enum import Enum
from typing import TYPE_CHECKING, Annotated, Any

from pydantic import BaseModel, Field, ValidationError, ValidationInfo, model_validator

if TYPE_CHECKING:
    from .provider import ProviderRegistry

NAME_PATTERN = r"^[A-Za-z_][A-Za-z0-9_-]{0,127}$"
KIND_PATTERN = r"^[a-z][a-z0-9_]{0,63}$"

# Attribute every resource exposes once applied
ID_ATTRIBUTE = "id"
TAGS_ATTRIBUTE = "tags"


class SchemaViolation(Exception):
    """Raised when a resource declaration does not match its kind's schema."""

    pass


# =============================================================================
# Addresses and References
# =============================================================================


@dataclass(frozen=True, order=True)
class ResourceAddress:
    """Identity of a resource: (kind, logical name).

    Ordering is by (kind, name), which is the deterministic tie-break used
    everywhere a stable order among independent resources is needed.
    """

    kind: str
    name: str

    def __str__(self) -> str:
        return f"{self.kind}.{self.name}"

    @classmethod
    def parse(cls, value: str) -> ResourceAddress:
        """Parse "kind.name" into an address."""
        kind, sep, name = value.partition(".")
        if not sep or not kind or not name:
            raise SchemaViolation(f"Invalid resource address '{value}', expected 'kind.name'")
        return cls(kind=kind, name=name)


class Reference(BaseModel):
    """Placeholder for another resource's attribute value.

    The attribute may be a dotted path into a nested output map
    (e.g. "endpoints.private").
    """

    model_config = {"frozen": True}

    kind: str
    name: str
    attribute: str

    @property
    def address(self) -> ResourceAddress:
        return ResourceAddress(self.kind, self.name)

    def __str__(self) -> str:
        return f"{self.kind}.{self.name}.{self.attribute}"

    @classmethod
    def parse(cls, value: str) -> Reference:
        """Parse "kind.name.attribute" into a reference."""
        parts = value.strip().split(".", 2)
        if len(parts) != 3 or not all(parts):
            raise SchemaViolation(
                f"Invalid reference '{value}', expected 'kind.name.attribute'"
            )
        return cls(kind=parts[0], name=parts[1], attribute=parts[2])

    def lookup(self, values: Mapping[str, Any]) -> Any:
        """Follow the (possibly dotted) attribute path through a mapping.

        Raises:
            KeyError: If any segment of the path is missing.
        """
        current: Any = values
        for segment in self.attribute.split("."):
            if not isinstance(current, Mapping) or segment not in current:
                raise KeyError(self.attribute)
            current = current[segment]
        return current


def iter_references(value: Any) -> Iterator[Reference]:
    """Yield every Reference found in a value, recursing through maps and lists."""
    if isinstance(value, Reference):
        yield value
    elif isinstance(value, Mapping):
        for item in value.values():
            yield from iter_references(item)
    elif isinstance(value, (list, tuple)):
        for item in value:
            yield from iter_references(item)


def map_references(value: Any, resolve: Callable[[Reference], Any]) -> Any:
    """Return a copy of value with every Reference replaced by resolve(ref)."""
    if isinstance(value, Reference):
        return resolve(value)
    if isinstance(value, Mapping):
        return {key: map_references(item, resolve) for key, item in value.items()}
    if isinstance(value, (list, tuple)):
        return [map_references(item, resolve) for item in value]
    return value


# =============================================================================
# Schemas
# =============================================================================


class AttributeType(str, Enum):
    """Value types an attribute may declare."""

    STRING = "string"
    INTEGER = "integer"
    NUMBER = "number"
    BOOLEAN = "boolean"
    LIST = "list"
    MAP = "map"
    ANY = "any"

    def accepts(self, value: Any) -> bool:
        """Check a literal value against this type. References are always accepted."""
        if isinstance(value, Reference):
            return True
        match self:
            case AttributeType.STRING:
                return isinstance(value, str)
            case AttributeType.INTEGER:
                return isinstance(value, int) and not isinstance(value, bool)
            case AttributeType.NUMBER:
                return isinstance(value, (int, float)) and not isinstance(value, bool)
            case AttributeType.BOOLEAN:
                return isinstance(value, bool)
            case AttributeType.LIST:
                return isinstance(value, (list, tuple))
            case AttributeType.MAP:
                return isinstance(value, Mapping)
            case AttributeType.ANY:
                return True
        return False


class AttributeSpec(BaseModel):
    """Schema entry for a single attribute."""

    model_config = {"frozen": True}

    type: AttributeType = AttributeType.ANY
    required: bool = False
    sensitive: bool = False


class ResourceSchema(BaseModel):
    """Schema of a resource kind, supplied by its provider adapter.

    Attributes:
        attributes: Input attributes accepted in declarations.
        outputs: Attributes the provider computes on create/update. Together
            with the inputs and "id" these are the valid reference targets.
    """

    model_config = {"frozen": True}

    attributes: dict[str, AttributeSpec] = Field(default_factory=dict)
    outputs: list[str] = Field(default_factory=list)

    def referenceable(self) -> set[str]:
        """Top-level attribute names another resource may reference."""
        return {ID_ATTRIBUTE, *self.attributes, *self.outputs}

    def sensitive_attributes(self) -> set[str]:
        return {name for name, spec in self.attributes.items() if spec.sensitive}

    def validate_attributes(self, address: ResourceAddress, attributes: Mapping[str, Any]) -> None:
        """Check attributes against this schema.

        Raises:
            SchemaViolation: On unknown, missing or mistyped attributes.
        """
        errors: list[str] = []

        for name in attributes:
            if name not in self.attributes:
                errors.append(f"unknown attribute '{name}'")

        for name, spec in self.attributes.items():
            if name not in attributes:
                if spec.required:
                    errors.append(f"missing required attribute '{name}'")
                continue
            value = attributes[name]
            if not spec.type.accepts(value):
                errors.append(
                    f"attribute '{name}' must be {spec.type.value}, got {type(value).__name__}"
                )

        if errors:
            raise SchemaViolation(f"Resource '{address}' is invalid: " + "; ".join(errors))


# =============================================================================
# Resources
# =============================================================================


class Lifecycle(BaseModel):
    """Per-resource lifecycle options."""

    model_config = {"extra": "forbid", "frozen": True, "populate_by_name": True}

    # Dotted attribute paths excluded from update detection
    ignore_changes: list[str] = Field(default_factory=list, alias="ignoreChanges")
    # Planning a delete for this resource is an error
    prevent_destroy: bool = Field(False, alias="preventDestroy")


class Resource(BaseModel):
    """A single declared infrastructure unit.

    Validated against the kind's schema when constructed with a provider
    registry in the validation context (see declare()). References inside
    attributes stay unresolved placeholders.
    """

    model_config = {"extra": "forbid", "frozen": True, "populate_by_name": True}

    kind: Annotated[str, Field(pattern=KIND_PATTERN)]
    name: Annotated[str, Field(pattern=NAME_PATTERN)]
    attributes: dict[str, Any] = Field(default_factory=dict)
    tags: dict[str, str] = Field(default_factory=dict)
    depends_on: list[ResourceAddress] = Field(default_factory=list, alias="dependsOn")
    lifecycle: Lifecycle = Field(default_factory=Lifecycle)

    @property
    def address(self) -> ResourceAddress:
        return ResourceAddress(self.kind, self.name)

    def desired_attributes(self) -> dict[str, Any]:
        """Attributes as sent to the provider, with tags merged in."""
        attributes = dict(self.attributes)
        if self.tags:
            merged = dict(attributes.get(TAGS_ATTRIBUTE) or {})
            merged.update(self.tags)
            attributes[TAGS_ATTRIBUTE] = merged
        return attributes

    def references(self) -> list[Reference]:
        """All references in this resource's attributes, in declaration order."""
        return list(iter_references(self.attributes))

    @model_validator(mode="after")
    def _check_schema(self, info: ValidationInfo) -> Resource:
        registry: ProviderRegistry | None = (info.context or {}).get("registry")
        if registry is None:
            return self
        if not registry.has_kind(self.kind):
            raise SchemaViolation(
                f"Resource '{self.address}' has unregistered kind '{self.kind}'. "
                f"Registered kinds: {sorted(registry.kinds())}"
            )
        schema = registry.schema_for(self.kind)
        if self.tags and TAGS_ATTRIBUTE not in schema.attributes:
            raise SchemaViolation(
                f"Resource '{self.address}' sets tags, but kind '{self.kind}' "
                f"has no '{TAGS_ATTRIBUTE}' attribute"
            )
        schema.validate_attributes(self.address, self.desired_attributes())
        if self.address in self.depends_on:
            raise SchemaViolation(f"Resource '{self.address}' cannot depend on itself")
        return self


def declare(registry: ProviderRegistry, data: Mapping[str, Any]) -> Resource:
    """Construct and validate a Resource against the registered schemas.

    Args:
        registry: Provider registry holding the schema for every known kind.
        data: Declaration fields (kind, name, attributes, tags, dependsOn, lifecycle).

    Returns:
        Validated resource.

    Raises:
        SchemaViolation: If the declaration is malformed or violates its schema.
    """
    try:
        return Resource.model_validate(data, context={"registry": registry})
    except ValidationError as e:
        errors = []
        for error in e.errors():
            loc = ".".join(str(x) for x in error["loc"])
            errors.append(f"{loc}: {error['msg']}")
        label = f"{data.get('kind', '?')}.{data.get('name', '?')}"
        raise SchemaViolation(f"Resource '{label}' is invalid: " + "; ".join(errors)) from e
