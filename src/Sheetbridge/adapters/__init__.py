"""Adapter services: the registry plus the clients that reach them."""  # noqa: N999

from .http_client import HTTPAdapterClient
from .interfaces import AdapterClient
from .registry import AdapterRegistry

__all__ = ["AdapterClient", "AdapterRegistry", "HTTPAdapterClient"]
