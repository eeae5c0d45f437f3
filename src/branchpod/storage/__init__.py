"""Durable state storage."""

from branchpod.storage.registry_store import Registry, RegistryStore

__all__ = ["Registry", "RegistryStore"]
