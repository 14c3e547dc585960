# Collaborator contracts for the workspace watcher
from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Iterable, List, Protocol, runtime_checkable


@dataclass
class FileRecord:
    """A file known to the index."""

    path: str  # absolute path as stored by the indexer
    last_modified: str | None = None  # ISO timestamp, informational only


@dataclass
class ModuleRecord:
    """A module node in the knowledge graph."""

    id: str
    path: str


@dataclass
class GraphEdgeRecord:
    """Directed edge between two graph nodes (from depends on to)."""

    from_id: str
    to_id: str
    edge_type: str | None = None


class WatchStorageProtocol(Protocol):
    """Storage methods the watcher cannot work without."""

    async def get_file_checksum(self, path: str) -> str | None: ...

    async def get_state(self, key: str) -> str | None: ...

    async def set_state(self, key: str, value: str) -> None: ...


@runtime_checkable
class FileListingStorage(Protocol):
    """Optional: enumerate every indexed file (enables reconciliation)."""

    async def get_files(self) -> List[FileRecord]: ...


@runtime_checkable
class ModuleLookupStorage(Protocol):
    """Optional: module identity by file path."""

    async def get_module_by_path(self, path: str) -> ModuleRecord | None: ...


@runtime_checkable
class GraphEdgeStorage(Protocol):
    """Optional: edge queries over the knowledge graph."""

    async def get_graph_edges(
        self,
        *,
        edge_types: Iterable[str],
        to_ids: Iterable[str],
        from_types: Iterable[str] | None = None,
    ) -> List[GraphEdgeRecord]: ...


@runtime_checkable
class ModuleByIdStorage(Protocol):
    """Optional: module lookup by id."""

    async def get_module(self, module_id: str) -> ModuleRecord | None: ...


class ReindexProtocol(Protocol):
    """The Librarian entry point that rebuilds graph entries for files."""

    async def reindex_files(self, paths: List[str]) -> None: ...


@dataclass(frozen=True)
class CapabilityDescriptor:
    """Optional storage capabilities, detected once when storage is attached."""

    get_files: bool = False
    get_module_by_path: bool = False
    get_graph_edges: bool = False
    get_module: bool = False

    @classmethod
    def detect(cls, storage: Any) -> "CapabilityDescriptor":
        if storage is None:
            return cls()
        return cls(
            get_files=isinstance(storage, FileListingStorage),
            get_module_by_path=isinstance(storage, ModuleLookupStorage),
            get_graph_edges=isinstance(storage, GraphEdgeStorage),
            get_module=isinstance(storage, ModuleByIdStorage),
        )

    @property
    def supports_reconcile(self) -> bool:
        return self.get_files

    @property
    def supports_cascade(self) -> bool:
        return self.get_module_by_path and self.get_graph_edges and self.get_module

    def missing_for_cascade(self) -> List[str]:
        return [
            name
            for name, present in (
                ("get_module_by_path", self.get_module_by_path),
                ("get_graph_edges", self.get_graph_edges),
                ("get_module", self.get_module),
            )
            if not present
        ]
