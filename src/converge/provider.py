"""Provider adapter interface and registry.

A provider adapter implements create/read/update/delete for exactly one
resource kind against some backend API. The engine dispatches by kind and
never assumes anything about the backend behind an adapter.

IDEMPOTENCY: The executor retries transient failures, so adapters must make
create() idempotent keyed by the resource's logical name, and update()/delete()
idempotent keyed by the provider-assigned id.
"""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from collections.abc import Iterable, Mapping
from dataclasses import dataclass, field
from importlib.metadata import entry_points
from typing import Any

from .models import ResourceSchema

logger = logging.getLogger(__name__)

PROVIDER_ENTRY_POINT_GROUP = "converge.providers"


class ProviderError(Exception):
    """Wraps a backend-specific failure.

    Attributes:
        transient: True if the operation may succeed when retried.
    """

    def __init__(self, message: str, *, transient: bool = False) -> None:
        super().__init__(message)
        self.transient = transient


class ResourceNotFound(Exception):
    """Raised by read()/delete() when the backend has no such resource."""

    pass


class ProviderRegistrationError(Exception):
    """Raised when adapters cannot be registered or discovered."""

    pass


@dataclass
class ProviderResult:
    """Outcome of a successful create or update."""

    id: str
    outputs: dict[str, Any] = field(default_factory=dict)


class ProviderAdapter(ABC):
    """Capability set for one resource kind.

    Subclasses set `kind` and `schema` and implement the four operations.
    """

    kind: str = ""
    schema: ResourceSchema = ResourceSchema()

    @abstractmethod
    async def create(self, name: str, attributes: dict[str, Any]) -> ProviderResult:
        """Create the resource and return its id and computed outputs."""

    @abstractmethod
    async def read(self, resource_id: str) -> dict[str, Any]:
        """Return the current outputs of the resource.

        Raises:
            ResourceNotFound: If the resource no longer exists.
        """

    @abstractmethod
    async def update(
        self, resource_id: str, changes: dict[str, Any]
    ) -> dict[str, Any]:
        """Apply changed attributes (name -> new value) and return current outputs."""

    @abstractmethod
    async def delete(self, resource_id: str) -> None:
        """Delete the resource.

        Raises:
            ResourceNotFound: If the resource is already gone.
        """


class ProviderRegistry:
    """Maps resource kinds to their adapters."""

    def __init__(self, adapters: Iterable[ProviderAdapter] = ()) -> None:
        self._adapters: dict[str, ProviderAdapter] = {}
        for adapter in adapters:
            self.register(adapter)

    def register(self, adapter: ProviderAdapter) -> None:
        """Register an adapter for its kind.

        Raises:
            ProviderRegistrationError: If the kind is empty or already registered.
        """
        if not adapter.kind:
            raise ProviderRegistrationError(
                f"Adapter {type(adapter).__name__} does not declare a kind"
            )
        if adapter.kind in self._adapters:
            existing = type(self._adapters[adapter.kind]).__name__
            raise ProviderRegistrationError(
                f"Kind '{adapter.kind}' is already registered by {existing}"
            )
        self._adapters[adapter.kind] = adapter
        logger.debug(
            "Registered provider adapter",
            extra={"kind": adapter.kind, "adapter": type(adapter).__name__},
        )

    def has_kind(self, kind: str) -> bool:
        return kind in self._adapters

    def kinds(self) -> list[str]:
        return sorted(self._adapters)

    def adapter_for(self, kind: str) -> ProviderAdapter:
        try:
            return self._adapters[kind]
        except KeyError:
            raise ProviderRegistrationError(f"No provider adapter registered for kind '{kind}'") from None

    def schema_for(self, kind: str) -> ResourceSchema:
        return self.adapter_for(kind).schema

    @classmethod
    def from_entry_points(cls, group: str = PROVIDER_ENTRY_POINT_GROUP) -> ProviderRegistry:
        """Discover adapters published by installed distributions.

        Each entry point may load an adapter instance, an adapter class, or a
        callable returning one adapter or an iterable of adapters.
        """
        registry = cls()
        for entry_point in entry_points(group=group):
            try:
                loaded = entry_point.load()
            except Exception as e:
                raise ProviderRegistrationError(
                    f"Failed to load provider entry point '{entry_point.name}': {e}"
                ) from e

            for adapter in _instantiate(loaded):
                registry.register(adapter)

            logger.info(
                "Loaded provider entry point",
                extra={"entry_point": entry_point.name, "value": entry_point.value},
            )
        return registry


def _instantiate(loaded: Any) -> list[ProviderAdapter]:
    if isinstance(loaded, ProviderAdapter):
        return [loaded]
    if not callable(loaded):
        raise ProviderRegistrationError(f"Provider entry point resolved to {loaded!r}")
    produced = loaded()
    if isinstance(produced, ProviderAdapter):
        return [produced]
    if isinstance(produced, Iterable) and not isinstance(produced, (str, Mapping)):
        adapters = list(produced)
        if all(isinstance(a, ProviderAdapter) for a in adapters):
            return adapters
    raise ProviderRegistrationError(f"Provider factory {loaded!r} did not return adapters")
