"""Inventory item catalog collaborator.

The integration layer reads workspace-scoped items and mutates them through
one primitive, ``apply_total_units``; creating an item is only needed when an
operator accepts a remote record that has no local counterpart. The catalog
screens and item persistence proper live elsewhere; InMemoryItemCatalog is the
reference implementation used by the CLI (backed by a JSON file) and tests.
"""

import json
import logging
import re
from dataclasses import asdict, dataclass
from pathlib import Path
from typing import Protocol
from uuid import uuid4

from src.services.integration_types import WORKSPACE_ALL

logger = logging.getLogger(__name__)


@dataclass
class InventoryItem:
    """Catalog item as seen by the integration layer."""

    id: str
    name: str
    on_hand_units: int = 0
    category: str = ""
    location: str = ""
    barcode: str = ""
    workspace_id: str = ""
    notes: str = ""

    def is_in_workspace(self, workspace_id: str | None) -> bool:
        """Unscoped views see everything; unassigned items belong to every workspace."""
        if workspace_id is None or workspace_id == WORKSPACE_ALL:
            return True
        trimmed = self.workspace_id.strip()
        if not trimmed:
            return True
        return trimmed == workspace_id

    @property
    def total_units(self) -> int:
        return max(0, self.on_hand_units)


class ItemCatalog(Protocol):
    """Read access plus the mutation primitives the integration layer uses."""

    def items(self) -> list[InventoryItem]: ...

    def apply_total_units(
        self, item: InventoryItem, new_total: int, workspace_id: str | None = None,
    ) -> None: ...

    def create_item(
        self,
        name: str,
        units: int,
        category: str = "",
        workspace_id: str = "",
        notes: str = "",
    ) -> InventoryItem: ...


def scope_items(items: list[InventoryItem], workspace_id: str | None) -> list[InventoryItem]:
    """Filter items down to those visible in a workspace."""
    return [item for item in items if item.is_in_workspace(workspace_id)]


def normalized_barcode(value: str) -> str:
    """Lowercase and strip everything but letters and digits."""
    return re.sub(r"[^0-9a-z]+", "", value.lower())


class InMemoryItemCatalog:
    """List-backed catalog, optionally persisted to a JSON file.

    Args:
        items: Initial items.
        path: Optional JSON file; ``save()`` writes the catalog there.
    """

    def __init__(self, items: list[InventoryItem] | None = None, path: Path | None = None) -> None:
        self._items: list[InventoryItem] = list(items or [])
        self._path = path

    @classmethod
    def from_json_file(cls, path: Path) -> "InMemoryItemCatalog":
        """Load a catalog from a JSON array of item objects.

        A missing file yields an empty catalog bound to that path.
        """
        if not path.exists():
            return cls([], path=path)
        with open(path, encoding="utf-8") as f:
            raw = json.load(f)
        items = [
            InventoryItem(
                id=str(entry.get("id") or uuid4()),
                name=str(entry.get("name", "")),
                on_hand_units=int(entry.get("on_hand_units", 0)),
                category=str(entry.get("category", "")),
                location=str(entry.get("location", "")),
                barcode=str(entry.get("barcode", "")),
                workspace_id=str(entry.get("workspace_id", "")),
                notes=str(entry.get("notes", "")),
            )
            for entry in raw
        ]
        return cls(items, path=path)

    def save(self) -> None:
        if self._path is None:
            return
        self._path.parent.mkdir(parents=True, exist_ok=True)
        with open(self._path, "w", encoding="utf-8") as f:
            json.dump([asdict(item) for item in self._items], f, indent=2)

    def items(self) -> list[InventoryItem]:
        return list(self._items)

    def apply_total_units(
        self, item: InventoryItem, new_total: int, workspace_id: str | None = None,
    ) -> None:
        item.on_hand_units = max(0, new_total)
        if workspace_id and workspace_id != WORKSPACE_ALL and not item.workspace_id.strip():
            item.workspace_id = workspace_id
        self.save()

    def create_item(
        self,
        name: str,
        units: int,
        category: str = "",
        workspace_id: str = "",
        notes: str = "",
    ) -> InventoryItem:
        item = InventoryItem(
            id=str(uuid4()),
            name=name,
            on_hand_units=max(0, units),
            category=category,
            workspace_id=workspace_id,
            notes=notes,
        )
        self._items.append(item)
        self.save()
        logger.info("Created catalog item %s (%s) with %d unit(s)", item.id, name, item.on_hand_units)
        return item

