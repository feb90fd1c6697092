from .base import ResourceBackend
from .registry import BackendRegistry, load_backend_class

__all__ = [
    "ResourceBackend",
    "BackendRegistry",
    "load_backend_class",
]
