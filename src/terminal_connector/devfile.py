"""DevWorkspace descriptor models.

Only the parts needed to find terminal targets are modelled: the component
list, and for each component its name and kind.
"""

from __future__ import annotations

from pathlib import Path
from typing import Any

import yaml
from pydantic import BaseModel, ConfigDict, Field, ValidationError

from .errors import ConfigurationError

COMPONENT_KINDS = ("container", "kubernetes", "openshift", "volume", "image", "plugin", "custom")


class Component(BaseModel):
    """A DevWorkspace component. Exactly one kind key is normally set."""

    model_config = ConfigDict(extra="allow")

    name: str
    container: dict[str, Any] | None = None
    volume: dict[str, Any] | None = None
    plugin: dict[str, Any] | None = None

    @property
    def is_container(self) -> bool:
        return self.container is not None

    @property
    def kind(self) -> str | None:
        extra = self.model_extra or {}
        for kind in COMPONENT_KINDS:
            if getattr(self, kind, None) is not None or extra.get(kind) is not None:
                return kind
        return None


class Descriptor(BaseModel):
    """A flattened DevWorkspace template."""

    model_config = ConfigDict(extra="ignore")

    components: list[Component] = Field(default_factory=list)

    def container_names(self) -> list[str]:
        """Names of container components, in document order."""
        return [c.name for c in self.components if c.is_container]


def parse_descriptor(text: str) -> Descriptor:
    """Parse a descriptor document.

    Both a bare template (top-level ``components``) and a full DevWorkspace
    resource (``spec.template.components``) are accepted.

    Raises:
        ConfigurationError: If the document is not valid YAML or not a
            DevWorkspace template.
    """
    try:
        document = yaml.safe_load(text)
    except yaml.YAMLError as e:
        raise ConfigurationError(f"Descriptor is not valid YAML: {e}") from e

    if document is None:
        return Descriptor()
    if not isinstance(document, dict):
        raise ConfigurationError("Descriptor must be a mapping")

    spec = document.get("spec")
    if "components" not in document and isinstance(spec, dict):
        template = spec.get("template")
        if isinstance(template, dict):
            document = template

    try:
        return Descriptor.model_validate({"components": document.get("components") or []})
    except ValidationError as e:
        raise ConfigurationError(f"Invalid descriptor components: {e}") from e


def load_descriptor(path: str | Path) -> Descriptor:
    """Read and parse the descriptor at ``path``.

    Raises:
        ConfigurationError: If the file is missing, unreadable or invalid.
    """
    descriptor_path = Path(path)
    try:
        text = descriptor_path.read_text(encoding="utf-8")
    except FileNotFoundError:
        raise ConfigurationError(f"Descriptor not found: {descriptor_path}") from None
    except OSError as e:
        raise ConfigurationError(f"Cannot read descriptor {descriptor_path}: {e}") from e
    return parse_descriptor(text)
