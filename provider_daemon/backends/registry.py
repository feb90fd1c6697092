"""
registry.py - Maps product categories to resource backends.
"""

import importlib
import logging
from typing import Dict, List, Optional, Tuple

from provider_daemon.backends.base import ResourceBackend
from provider_daemon.errors import ConfigError

logger = logging.getLogger("backends")


def load_backend_class(spec: str) -> type:
    """Resolve a ``package.module:ClassName`` reference."""
    module_name, sep, class_name = spec.partition(":")
    if not sep or not module_name or not class_name:
        raise ConfigError(f"Invalid backend reference {spec!r} (expected 'module:Class')")
    try:
        module = importlib.import_module(module_name)
    except ImportError as e:
        raise ConfigError(f"Cannot import backend module {module_name!r}: {e}") from e
    cls = getattr(module, class_name, None)
    if cls is None:
        raise ConfigError(f"Backend class {class_name!r} not found in {module_name!r}")
    if not (isinstance(cls, type) and issubclass(cls, ResourceBackend)):
        raise ConfigError(f"{spec!r} is not a ResourceBackend subclass")
    return cls


class BackendRegistry:
    """Backend lookup by category address, optionally narrowed to a provider owner."""

    def __init__(self):
        self._backends: Dict[Tuple[str, Optional[str]], ResourceBackend] = {}

    def register(
        self, category_address: str, backend: ResourceBackend, provider_owner: Optional[str] = None,
    ):
        key = (category_address.lower(), provider_owner.lower() if provider_owner else None)
        self._backends[key] = backend
        logger.info(
            "Backend %s registered for category %s%s",
            type(backend).__name__, key[0],
            f" (provider {key[1]})" if key[1] else "",
        )

    def resolve(self, category_address: str, provider_owner: Optional[str] = None) -> Optional[ResourceBackend]:
        category = category_address.lower()
        if provider_owner:
            backend = self._backends.get((category, provider_owner.lower()))
            if backend is not None:
                return backend
        return self._backends.get((category, None))

    def categories(self) -> List[str]:
        return sorted({category for category, _ in self._backends})

    def backends(self) -> List[ResourceBackend]:
        unique = []
        for backend in self._backends.values():
            if all(backend is not b for b in unique):
                unique.append(backend)
        return unique

    async def init_all(self):
        for backend in self.backends():
            await backend.init()

    async def close_all(self):
        for backend in self.backends():
            try:
                await backend.close()
            except Exception:
                logger.exception("Error closing backend %s", type(backend).__name__)
