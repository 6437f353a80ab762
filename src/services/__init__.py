"""Service layer for Stockbridge.

Provides the provider integration subsystem: credential lifecycle, sync
passes, conflict and webhook queues, the retry scheduler, and the offline
inventory ledger, all behind the IntegrationPlatform facade.
"""

from src.services.integration_types import (
    ConflictResolution,
    IntegrationProvider,
    InventoryEventType,
)
from src.services.item_catalog import InMemoryItemCatalog, InventoryItem
from src.services.platform_service import IntegrationPlatform, build_platform

__all__ = [
    "IntegrationPlatform",
    "build_platform",
    "IntegrationProvider",
    "ConflictResolution",
    "InventoryEventType",
    "InventoryItem",
    "InMemoryItemCatalog",
]
