# rename.py
from __future__ import annotations

from typing import Dict, List, Sequence

from .dag import all_steps
from .notebook import Notebook
from .tags import (
    BLOCK_PREFIX,
    DUPLICATE_NAME_MSG,
    PREV_PREFIX,
    RESERVED_NAMES,
    StepNameError,
    decode,
    encode,
    validate_step_name,
)


def _check_new_name(notebook: Notebook, old_name: str, new_name: str) -> None:
    validate_step_name(new_name)
    if new_name and new_name not in RESERVED_NAMES and new_name != old_name:
        if new_name in all_steps(notebook):
            raise StepNameError(kind="duplicate", name=new_name, message=DUPLICATE_NAME_MSG)


def _rewrite_tags(tags: Sequence[str], old_name: str, new_name: str) -> List[str]:
    drop = new_name == "" or new_name in RESERVED_NAMES
    old_edge = PREV_PREFIX + old_name
    out: List[str] = []
    for t in tags:
        if t == old_edge:
            if drop:
                continue
            t = PREV_PREFIX + new_name
        if t == PREV_PREFIX:
            continue
        out.append(t)
    return out


def plan_rename(notebook: Notebook, old_name: str, new_name: str) -> Dict[int, List[str]]:
    """
    Compute the tag lists that change when ``old_name`` becomes ``new_name``.

    Dependency edges on the old name are rewritten (or dropped when the new
    name is empty or reserved). Cells declaring the old name take the new
    identity; a cell turning into a reserved role loses its own edges.

    Returns:
        cell index -> new tag list, only for cells that change
    """
    updates: Dict[int, List[str]] = {}
    rename_identity = bool(old_name) and old_name not in RESERVED_NAMES

    for idx in range(notebook.cell_count()):
        if not notebook.is_code_cell(idx):
            continue
        tags = notebook.get_cell_tags(idx)
        if not tags:
            continue
        new_tags = _rewrite_tags(tags, old_name, new_name)

        if rename_identity:
            mt = decode(new_tags)
            if mt is not None and mt.name == old_name:
                deps = [] if new_name in RESERVED_NAMES else mt.dependencies
                new_tags = encode(new_name, deps)

        if new_tags != tags:
            updates[idx] = new_tags
    return updates


async def _apply(notebook: Notebook, updates: Dict[int, List[str]]) -> None:
    # check, plan and writes all happen before the first suspension point
    for idx, tags in updates.items():
        notebook.put_cell_tags(idx, tags)
    await notebook.save()


async def rename_step(notebook: Notebook, old_name: str, new_name: str) -> None:
    """
    Rename a step everywhere in the notebook and persist once.

    Raises:
        StepNameError: new name is malformed or already declared; nothing
            is written in that case.
    """
    if old_name == new_name:
        return
    _check_new_name(notebook, old_name, new_name)
    await _apply(notebook, plan_rename(notebook, old_name, new_name))


async def set_step_name(notebook: Notebook, index: int, new_name: str) -> None:
    """Set the step name of one cell and propagate the change to dependents."""
    if not notebook.is_code_cell(index):
        raise StepNameError(
            kind="not_code_cell",
            name=new_name,
            message=f"Cell {index} is not a code cell",
        )
    current = notebook.get_step_tags(index)
    old_name = current.name if current else ""
    old_deps = current.dependencies if current else []
    if current is not None and old_name == new_name:
        return
    _check_new_name(notebook, old_name, new_name)

    updates: Dict[int, List[str]] = {}
    if old_name and old_name not in RESERVED_NAMES:
        updates = plan_rename(notebook, old_name, new_name)
    deps = [] if new_name in RESERVED_NAMES else [d for d in old_deps if d != old_name]
    updates[index] = encode(new_name, deps)
    await _apply(notebook, updates)


async def set_step_dependencies(notebook: Notebook, index: int, dependencies: Sequence[str]) -> None:
    current = notebook.get_step_tags(index)
    name = current.name if current else ""
    if not name:
        raise StepNameError(
            kind="invalid",
            name=name,
            message="Set a step name before selecting its dependencies",
        )
    unknown = [d for d in dependencies if d not in all_steps(notebook) or d == name]
    if unknown:
        raise StepNameError(
            kind="invalid",
            name=name,
            message=f"Unknown or invalid dependencies: {unknown}",
        )
    await notebook.set_cell_tags(index, encode(name, dependencies), save=True)


async def reset_cell(notebook: Notebook, index: int) -> None:
    """Clear a cell's step (empty name, no dependencies) and drop edges to it."""
    if not notebook.is_code_cell(index):
        return
    current = notebook.get_step_tags(index)
    old_name = current.name if current else ""
    updates: Dict[int, List[str]] = {}
    if old_name and old_name not in RESERVED_NAMES:
        updates = plan_rename(notebook, old_name, "")
    updates[index] = [BLOCK_PREFIX]
    await _apply(notebook, updates)


async def handle_cell_type_change(notebook: Notebook, index: int, old_type: str) -> bool:
    """
    A code cell changed to another type: its tags are cleared and saved.

    Returns:
        True when tags were cleared.
    """
    if old_type != "code" or notebook.is_code_cell(index):
        return False
    await notebook.set_cell_tags(index, [], save=True)
    return True
