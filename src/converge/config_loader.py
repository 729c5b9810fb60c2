"""Resource declaration loading with validation.

SECURITY: All file operations enforce size limits to prevent DoS via large
files. Input validation is performed at the boundary.

FILE FORMAT:
```yaml
apiVersion: converge/v1
kind: Configuration
metadata:
  name: web-stack
spec:
  variables:
    environment: dev
    instance_type: t3.micro
  resources:
    - kind: network
      name: main
      attributes:
        cidr_block: 10.0.0.0/16
      tags:
        Environment: !var environment
    - kind: instance
      name: web
      attributes:
        instance_type: !var instance_type
        subnet_id: !ref subnet.public.id
      dependsOn: [security_group.web]
      lifecycle:
        ignoreChanges: [tags.LastPatched]
        preventDestroy: true
```

The flat format (just the `spec` content) is accepted too. References may
also be written as `{"$ref": "kind.name.attribute"}` for JSON producers.
Duplicate mapping keys and duplicate (kind, name) declarations are rejected,
never merged.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import yaml

from .config import MAX_CONFIG_FILE_SIZE_BYTES, MAX_RESOURCES_PER_CONFIGURATION
from .models import Reference, Resource, ResourceAddress, SchemaViolation, declare
from .provider import ProviderRegistry

logger = logging.getLogger(__name__)

REF_TAG = "!ref"
VAR_TAG = "!var"
REF_KEY = "$ref"


class ConfigLoadError(Exception):
    """Raised when declarations cannot be read or parsed."""

    pass


@dataclass(frozen=True)
class _VariableUse:
    """Placeholder for a variable, substituted once all values are known."""

    name: str


class _DeclarationLoader(yaml.SafeLoader):
    """Safe loader with !ref/!var tags that rejects duplicate mapping keys."""

    def construct_mapping(self, node: yaml.MappingNode, deep: bool = False) -> dict[Any, Any]:
        seen: set[Any] = set()
        for key_node, _ in node.value:
            key = self.construct_object(key_node, deep=deep)
            try:
                duplicate = key in seen
                seen.add(key)
            except TypeError:
                continue  # Unhashable keys are reported by the base constructor
            if duplicate:
                mark = key_node.start_mark
                raise SchemaViolation(
                    f"Duplicate key '{key}' at line {mark.line + 1}, column {mark.column + 1}"
                )
        return super().construct_mapping(node, deep=deep)


def _construct_ref(loader: yaml.SafeLoader, node: yaml.Node) -> Reference:
    return Reference.parse(loader.construct_scalar(node))


def _construct_var(loader: yaml.SafeLoader, node: yaml.Node) -> _VariableUse:
    return _VariableUse(loader.construct_scalar(node).strip())


_DeclarationLoader.add_constructor(REF_TAG, _construct_ref)
_DeclarationLoader.add_constructor(VAR_TAG, _construct_var)


@dataclass
class LoadedConfiguration:
    """Validated declarations ready for graph building."""

    name: str
    resources: list[Resource] = field(default_factory=list)
    variables: dict[str, Any] = field(default_factory=dict)
    source: Path | None = None


def _read_yaml(path: Path, description: str) -> Any:
    if not path.exists():
        raise ConfigLoadError(f"{description} not found: {path}")

    # SECURITY: Check file size before reading to prevent DoS
    try:
        file_size = path.stat().st_size
    except OSError as e:
        raise ConfigLoadError(f"Failed to stat {description.lower()} {path}: {e}") from e

    if file_size > MAX_CONFIG_FILE_SIZE_BYTES:
        raise ConfigLoadError(
            f"{description} exceeds maximum size of {MAX_CONFIG_FILE_SIZE_BYTES} bytes: {path}"
        )

    try:
        content = path.read_text(encoding="utf-8")
    except OSError as e:
        raise ConfigLoadError(f"Failed to read {description.lower()} {path}: {e}") from e

    return parse_yaml(content, str(path))


def parse_yaml(content: str, source: str = "<string>") -> Any:
    """Parse YAML with reference and variable tags.

    Raises:
        SchemaViolation: On duplicate mapping keys or malformed references.
        ConfigLoadError: On invalid YAML.
    """
    try:
        return yaml.load(content, Loader=_DeclarationLoader)  # noqa: S506 - SafeLoader subclass
    except SchemaViolation as e:
        raise SchemaViolation(f"{source}: {e}") from e
    except yaml.YAMLError as e:
        raise ConfigLoadError(f"Invalid YAML in {source}: {e}") from e


def _substitute(value: Any, variables: dict[str, Any], source: str) -> Any:
    """Replace !var placeholders and {"$ref": ...} mappings."""
    if isinstance(value, _VariableUse):
        if value.name not in variables:
            raise ConfigLoadError(f"{source}: undefined variable '{value.name}'")
        return variables[value.name]
    if isinstance(value, dict):
        if set(value) == {REF_KEY} and isinstance(value[REF_KEY], str):
            return Reference.parse(value[REF_KEY])
        return {k: _substitute(v, variables, source) for k, v in value.items()}
    if isinstance(value, list):
        return [_substitute(v, variables, source) for v in value]
    return value


def _resolve_variables(
    declared: Any, overrides: dict[str, Any] | None, source: str
) -> dict[str, Any]:
    if declared is None:
        declared = {}
    if not isinstance(declared, dict):
        raise ConfigLoadError(f"{source}: 'variables' must be a mapping")

    overrides = overrides or {}
    undeclared = sorted(set(overrides) - set(declared))
    if undeclared:
        raise ConfigLoadError(f"{source}: values given for undeclared variables {undeclared}")

    variables: dict[str, Any] = {}
    missing: list[str] = []
    for name, default in declared.items():
        value = overrides.get(name, default)
        if value is None:
            missing.append(name)
        variables[name] = value
    if missing:
        raise ConfigLoadError(f"{source}: no value for required variables {sorted(missing)}")
    return variables


def load_declarations(
    data: Any,
    registry: ProviderRegistry,
    variable_overrides: dict[str, Any] | None = None,
    source: str = "<data>",
) -> LoadedConfiguration:
    """Validate parsed declaration data.

    Args:
        data: Parsed YAML/JSON document.
        registry: Provider registry used for schema validation.
        variable_overrides: Per-environment variable values.
        source: Label for error messages.

    Raises:
        ConfigLoadError: If the document is structurally invalid.
        SchemaViolation: If a declaration violates its schema or is duplicated.
    """
    if not isinstance(data, dict):
        raise ConfigLoadError(f"{source}: configuration must be a YAML mapping")

    name = source
    # Support both flat format and Kubernetes-style wrapper
    if "apiVersion" in data and "spec" in data:
        metadata = data.get("metadata") or {}
        if isinstance(metadata, dict) and metadata.get("name"):
            name = str(metadata["name"])
        spec = data.get("spec") or {}
        if not isinstance(spec, dict):
            raise ConfigLoadError(f"{source}: 'spec' section must be a mapping")
    else:
        spec = data

    variables = _resolve_variables(spec.get("variables"), variable_overrides, source)
    raw_resources = spec.get("resources") or []
    if not isinstance(raw_resources, list):
        raise ConfigLoadError(f"{source}: 'resources' must be a list")
    if len(raw_resources) > MAX_RESOURCES_PER_CONFIGURATION:
        raise ConfigLoadError(
            f"{source}: {len(raw_resources)} resources exceed the limit of "
            f"{MAX_RESOURCES_PER_CONFIGURATION}"
        )

    resources: list[Resource] = []
    seen: dict[ResourceAddress, int] = {}
    for index, raw in enumerate(raw_resources):
        if not isinstance(raw, dict):
            raise ConfigLoadError(f"{source}: resources[{index}] must be a mapping")
        declaration = _substitute(raw, variables, source)

        depends_on = declaration.get("dependsOn", declaration.get("depends_on"))
        if depends_on is not None:
            if not isinstance(depends_on, list):
                raise ConfigLoadError(f"{source}: resources[{index}].dependsOn must be a list")
            declaration.pop("depends_on", None)
            declaration["dependsOn"] = [
                ResourceAddress.parse(d) if isinstance(d, str) else d for d in depends_on
            ]

        resource = declare(registry, declaration)
        if resource.address in seen:
            raise SchemaViolation(
                f"{source}: resource '{resource.address}' declared twice "
                f"(resources[{seen[resource.address]}] and resources[{index}])"
            )
        seen[resource.address] = index
        resources.append(resource)

    return LoadedConfiguration(name=name, resources=resources, variables=variables)


def load_configuration(
    path: Path,
    registry: ProviderRegistry,
    var_file: Path | None = None,
) -> LoadedConfiguration:
    """Load and validate declarations from a YAML file.

    Args:
        path: Declaration file.
        registry: Provider registry used for schema validation.
        var_file: Optional YAML mapping of per-environment variable values.

    Returns:
        Validated configuration.

    Raises:
        ConfigLoadError: If a file cannot be read or parsed.
        SchemaViolation: If a declaration is invalid or duplicated.
    """
    data = _read_yaml(path, "Configuration file")

    overrides: dict[str, Any] | None = None
    if var_file is not None:
        overrides = _read_yaml(var_file, "Variable file")
        if overrides is None:
            overrides = {}
        if not isinstance(overrides, dict):
            raise ConfigLoadError(f"Variable file must contain a YAML mapping: {var_file}")

    loaded = load_declarations(data, registry, overrides, source=str(path))
    loaded.source = path

    logger.info(
        "Loaded configuration '%s' from %s",
        loaded.name,
        path,
        extra={"resource_count": len(loaded.resources), "var_file": str(var_file or "")},
    )
    return loaded
