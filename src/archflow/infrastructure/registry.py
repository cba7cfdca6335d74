"""
Capability Registry with Entry Points Discovery.

Provides dynamic capability loading via Python entry points
(archflow.capabilities group). External packages can register adapters in
their pyproject.toml:

    [project.entry-points."archflow.capabilities"]
    MyRenderer = "mypackage.render:MyRenderer"
"""

import warnings
from importlib.metadata import entry_points
from typing import Any

from archflow.domain.interfaces import CapabilityInterface


class CapabilityRegistry:
    """
    Registry for CapabilityInterface implementations.

    Discovers adapters via the 'archflow.capabilities' entry point group.
    Uses lazy loading - entry points are only loaded on first access.

    Example usage:
        registry = CapabilityRegistry()
        capability = registry.create("OpenAIComplianceCapability", model="gpt-4o-mini")
    """

    _capabilities: dict[str, type[CapabilityInterface]] = {}
    _loaded: bool = False

    @classmethod
    def _load_entry_points(cls) -> None:
        """Load capabilities from entry points (lazy, called once)."""
        if cls._loaded:
            return

        for ep in entry_points(group="archflow.capabilities"):
            try:
                cls._capabilities[ep.name] = ep.load()
            except (ImportError, AttributeError) as e:
                warnings.warn(
                    f"Failed to load capability '{ep.name}' from entry point: {e}",
                    stacklevel=2,
                )

        cls._loaded = True

    @classmethod
    def register(cls, name: str, capability_class: type[CapabilityInterface]) -> None:
        """Manually register a capability class."""
        cls._capabilities[name] = capability_class

    @classmethod
    def get(cls, name: str) -> type[CapabilityInterface]:
        """
        Get a capability class by name.

        Raises:
            KeyError: If capability not found
        """
        cls._load_entry_points()
        if name not in cls._capabilities:
            available = ", ".join(cls._capabilities.keys()) or "(none)"
            raise KeyError(
                f"Capability '{name}' not found. Available capabilities: {available}"
            )
        return cls._capabilities[name]

    @classmethod
    def create(cls, name: str, **config: Any) -> CapabilityInterface:
        """
        Create a capability instance by name.

        Raises:
            KeyError: If capability not found
            TypeError: If config doesn't match constructor signature
        """
        return cls.get(name)(**config)

    @classmethod
    def available(cls) -> list[str]:
        """List available capability names."""
        cls._load_entry_points()
        return list(cls._capabilities.keys())

    @classmethod
    def clear(cls) -> None:
        """Clear all registered capabilities (useful for testing)."""
        cls._capabilities.clear()
        cls._loaded = False
