from __future__ import annotations

from collections.abc import Iterable, Mapping
from dataclasses import dataclass
from types import MappingProxyType
from typing import Any


@dataclass(frozen=True, slots=True)
class CatalogEntry:
    model_id: str
    source_key: str
    upstream_model_id: str
    object: str = "model"
    owned_by: str = ""

    def to_list_item(self) -> dict[str, Any]:
        return {"id": self.model_id, "object": self.object, "owned_by": self.owned_by}


class ModelCatalog:
    """Client-visible model id -> upstream source, frozen after bootstrap.

    Model ids are unique across all sources. ``list_models`` is always sorted
    by id.
    """

    def __init__(self, entries: Iterable[CatalogEntry] = ()) -> None:
        by_id: dict[str, CatalogEntry] = {}
        for entry in entries:
            by_id.setdefault(entry.model_id, entry)
        self._entries: Mapping[str, CatalogEntry] = MappingProxyType(by_id)
        self._listing: tuple[CatalogEntry, ...] = tuple(
            sorted(by_id.values(), key=lambda item: item.model_id)
        )

    def resolve(self, model_id: str) -> CatalogEntry | None:
        return self._entries.get(model_id)

    def list_models(self) -> list[dict[str, Any]]:
        return [entry.to_list_item() for entry in self._listing]

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, model_id: object) -> bool:
        return model_id in self._entries


class CatalogBuilder:
    def __init__(self) -> None:
        self._entries: dict[str, CatalogEntry] = {}

    def register(self, entry: CatalogEntry) -> bool:
        """Add ``entry`` unless its id is already claimed. First wins."""
        if entry.model_id in self._entries:
            return False
        self._entries[entry.model_id] = entry
        return True

    def __contains__(self, model_id: object) -> bool:
        return model_id in self._entries

    def __len__(self) -> int:
        return len(self._entries)

    def build(self) -> ModelCatalog:
        return ModelCatalog(self._entries.values())
