# notebook.py
from __future__ import annotations

import asyncio
import copy
from pathlib import Path
from typing import Any, Dict, List, Optional, Sequence

import nbformat
from nbformat import NotebookNode

from .tags import decode, StepTags


CODE_CELL = "code"

_NEW_CELL = {
    "code": nbformat.v4.new_code_cell,
    "markdown": nbformat.v4.new_markdown_cell,
    "raw": nbformat.v4.new_raw_cell,
}


def new_cell(cell_type: str, source: str = "", tags: Optional[Sequence[str]] = None) -> NotebookNode:
    """Build an nbformat v4 cell, optionally carrying tags."""
    if cell_type not in _NEW_CELL:
        raise ValueError(f"Unknown cell type: {cell_type!r}")
    cell = _NEW_CELL[cell_type](source)
    if tags is not None:
        cell.metadata["tags"] = list(tags)
    return cell


class Notebook:
    """
    In-process model of the host notebook document, backed by an nbformat node.

    Only cell tags and notebook-level metadata are ever modified; outputs,
    execution counts, ids and attachments pass through untouched. Tag and
    metadata writes only touch memory; ``save()`` is the single persistence
    point (written to ``path`` when there is one).
    """

    def __init__(
        self,
        cells: Optional[List[NotebookNode]] = None,
        metadata: Optional[Dict[str, Any]] = None,
        path: str | Path | None = None,
        node: Optional[NotebookNode] = None,
    ):
        if node is None:
            node = nbformat.v4.new_notebook(
                cells=list(cells or []),
                metadata=nbformat.from_dict(copy.deepcopy(metadata or {})),
            )
        self.node = node
        self.path = Path(path) if path is not None else None
        self.save_count = 0

    @property
    def cells(self) -> List[NotebookNode]:
        return self.node.cells

    @property
    def metadata(self) -> NotebookNode:
        return self.node.metadata

    # ------------------------------------------------------------------
    # Loading / persistence
    # ------------------------------------------------------------------

    @classmethod
    def load(cls, path: str | Path) -> Notebook:
        """
        Read an .ipynb file as-is (no version conversion).

        Raises:
            FileNotFoundError: no file at ``path``
            ValueError: not JSON, or not an nbformat 4 notebook
        """
        nb_path = Path(path).expanduser()
        if not nb_path.exists():
            raise FileNotFoundError(f"Notebook not found: {nb_path}")
        node = nbformat.read(str(nb_path), as_version=nbformat.NO_CONVERT)
        if node.get("nbformat") != 4 or "cells" not in node:
            raise ValueError(f"Unsupported notebook format: {node.get('nbformat')}")
        return cls(node=node, path=nb_path)

    def writes(self) -> str:
        return nbformat.writes(self.node, version=nbformat.NO_CONVERT)

    async def save(self) -> None:
        self.save_count += 1
        if self.path is None:
            return
        # snapshot the document so later in-memory edits don't race the write
        node = copy.deepcopy(self.node)
        await asyncio.to_thread(nbformat.write, node, str(self.path), nbformat.NO_CONVERT)

    # ------------------------------------------------------------------
    # Cells
    # ------------------------------------------------------------------

    def cell_count(self) -> int:
        return len(self.cells)

    def is_code_cell(self, index: int) -> bool:
        return self.cells[index].cell_type == CODE_CELL

    def get_cell_tags(self, index: int) -> Optional[List[str]]:
        tags = self.cells[index].metadata.get("tags")
        return list(tags) if tags is not None else None

    def get_step_tags(self, index: int) -> Optional[StepTags]:
        """Decoded step tags of a code cell, None for non-code or untagged cells."""
        if not self.is_code_cell(index):
            return None
        return decode(self.get_cell_tags(index))

    def put_cell_tags(self, index: int, tags: Sequence[str]) -> None:
        """Replace a cell's tags in memory, without suspending."""
        self.cells[index].metadata["tags"] = list(tags)

    async def set_cell_tags(self, index: int, tags: Sequence[str], save: bool = False) -> None:
        self.put_cell_tags(index, tags)
        if save:
            await self.save()

    def insert_cell(self, index: int, cell: NotebookNode) -> None:
        self.cells.insert(index, cell)

    def delete_cell(self, index: int) -> NotebookNode:
        return self.cells.pop(index)

    def move_cell(self, from_index: int, to_index: int) -> None:
        cell = self.cells.pop(from_index)
        self.cells.insert(to_index, cell)

    def change_cell_type(self, index: int, cell_type: str) -> str:
        """
        Change a cell's type and return the old type.

        Source, metadata and id are kept; fields the new type does not
        allow (outputs, execution count) are dropped.
        """
        old = self.cells[index]
        if old.cell_type == cell_type:
            return cell_type
        cell = new_cell(cell_type, old.source)
        cell.metadata = copy.deepcopy(old.metadata)
        if "id" in old:
            cell["id"] = old["id"]
        self.cells[index] = cell
        return old.cell_type

    # ------------------------------------------------------------------
    # Notebook-level metadata
    # ------------------------------------------------------------------

    def get_metadata(self, key: str) -> Optional[Any]:
        value = self.metadata.get(key)
        return copy.deepcopy(value) if value is not None else None

    async def set_metadata(self, key: str, value: Any, save: bool = False) -> None:
        self.metadata[key] = nbformat.from_dict(copy.deepcopy(value))
        if save:
            await self.save()
