import asyncio
import json

import nbformat
import pytest

from conftest import code, markdown
from nbdeploy.notebook import Notebook
from nbdeploy.rename import (
    handle_cell_type_change,
    plan_rename,
    rename_step,
    reset_cell,
    set_step_dependencies,
    set_step_name,
)
from nbdeploy.tags import StepNameError


def tags_of(nb):
    return [nb.get_cell_tags(i) for i in range(nb.cell_count())]


def test_rename_rewrites_every_reference_and_saves_once(notebook):
    asyncio.run(rename_step(notebook, "load", "ingest"))

    assert notebook.get_cell_tags(1) == ["block:ingest"]
    assert notebook.get_cell_tags(4) == ["block:train", "prev:ingest"]
    assert notebook.get_cell_tags(6) == ["block:evaluate", "prev:train", "prev:ingest"]
    assert notebook.save_count == 1


def test_rename_to_empty_drops_edges(notebook):
    asyncio.run(rename_step(notebook, "load", ""))

    assert notebook.get_cell_tags(4) == ["block:train"]
    assert notebook.get_cell_tags(6) == ["block:evaluate", "prev:train"]
    assert not any("prev:load" in (t or []) for t in tags_of(notebook))


def test_rename_to_reserved_drops_edges(notebook):
    asyncio.run(rename_step(notebook, "train", "skip"))

    assert notebook.get_cell_tags(4) == ["skip"]
    assert notebook.get_cell_tags(6) == ["block:evaluate", "prev:load"]


def test_rename_drops_bare_prev_tags():
    nb = Notebook(cells=[code("block:a"), code("block:b", "prev:", "prev:a")])
    asyncio.run(rename_step(nb, "a", "c"))
    assert nb.get_cell_tags(1) == ["block:b", "prev:c"]


def test_rename_to_duplicate_is_rejected_without_writes(notebook):
    before = tags_of(notebook)
    with pytest.raises(StepNameError) as exc:
        asyncio.run(rename_step(notebook, "load", "train"))
    assert exc.value.kind == "duplicate"
    assert exc.value.message == "This name already exists."
    assert tags_of(notebook) == before
    assert notebook.save_count == 0


def test_rename_to_invalid_name_is_rejected(notebook):
    with pytest.raises(StepNameError) as exc:
        asyncio.run(rename_step(notebook, "load", "Bad-Name"))
    assert exc.value.kind == "invalid"
    assert notebook.save_count == 0


def test_rename_same_name_is_noop(notebook):
    asyncio.run(rename_step(notebook, "load", "load"))
    assert notebook.save_count == 0


def test_plan_rename_only_lists_changed_cells(notebook):
    updates = plan_rename(notebook, "train", "fit")
    assert set(updates) == {4, 6}


def test_set_step_name_propagates_to_dependents(notebook):
    asyncio.run(set_step_name(notebook, 4, "fit"))

    assert notebook.get_cell_tags(4) == ["block:fit", "prev:load"]
    assert notebook.get_cell_tags(6) == ["block:evaluate", "prev:fit", "prev:load"]
    assert notebook.save_count == 1


def test_set_step_name_on_untagged_cell():
    nb = Notebook(cells=[code("block:a"), code()])
    asyncio.run(set_step_name(nb, 1, "b"))
    assert nb.get_cell_tags(1) == ["block:b"]


def test_set_step_name_to_reserved_clears_own_dependencies(notebook):
    asyncio.run(set_step_name(notebook, 4, "functions"))
    assert notebook.get_cell_tags(4) == ["functions"]
    assert notebook.get_cell_tags(6) == ["block:evaluate", "prev:load"]


def test_set_step_name_rejects_non_code_cell(notebook):
    with pytest.raises(StepNameError) as exc:
        asyncio.run(set_step_name(notebook, 3, "notes"))
    assert exc.value.kind == "not_code_cell"


def test_set_step_name_duplicate(notebook):
    with pytest.raises(StepNameError):
        asyncio.run(set_step_name(notebook, 4, "evaluate"))
    assert notebook.get_cell_tags(4) == ["block:train", "prev:load"]


def test_set_step_dependencies(notebook):
    asyncio.run(set_step_dependencies(notebook, 6, ["load"]))
    assert notebook.get_cell_tags(6) == ["block:evaluate", "prev:load"]
    assert notebook.save_count == 1


def test_set_step_dependencies_rejects_unknown_and_self(notebook):
    with pytest.raises(StepNameError):
        asyncio.run(set_step_dependencies(notebook, 6, ["ghost"]))
    with pytest.raises(StepNameError):
        asyncio.run(set_step_dependencies(notebook, 6, ["evaluate"]))
    with pytest.raises(StepNameError):
        asyncio.run(set_step_dependencies(notebook, 2, ["load"]))


def test_reset_cell_clears_step_and_edges(notebook):
    asyncio.run(reset_cell(notebook, 4))

    assert notebook.get_cell_tags(4) == ["block:"]
    assert notebook.get_cell_tags(6) == ["block:evaluate", "prev:load"]
    assert notebook.save_count == 1


def test_reset_cell_ignores_markdown(notebook):
    asyncio.run(reset_cell(notebook, 3))
    assert notebook.save_count == 0


def test_cell_type_change_clears_tags(notebook):
    old = notebook.change_cell_type(4, "markdown")
    assert asyncio.run(handle_cell_type_change(notebook, 4, old)) is True
    assert notebook.get_cell_tags(4) == []
    assert notebook.save_count == 1


def test_cell_type_change_to_code_keeps_tags():
    nb = Notebook(cells=[markdown()])
    old = nb.change_cell_type(0, "code")
    assert asyncio.run(handle_cell_type_change(nb, 0, old)) is False
    assert nb.save_count == 0


def test_rename_persists_to_disk(tmp_path, notebook):
    path = tmp_path / "pipeline.ipynb"
    nb = Notebook(cells=notebook.cells, path=path)
    asyncio.run(rename_step(nb, "train", "fit"))

    data = json.loads(path.read_text(encoding="utf-8"))
    assert data["cells"][4]["metadata"]["tags"] == ["block:fit", "prev:load"]
    assert Notebook.load(path).get_cell_tags(6) == ["block:evaluate", "prev:fit", "prev:load"]


def _names(nb):
    return [nb.get_step_tags(i).name for i in range(nb.cell_count())]


def test_concurrent_renames_to_same_name_keep_names_unique(tmp_path):
    nb = Notebook(cells=[code("block:a"), code("block:b")], path=tmp_path / "nb.ipynb")

    async def scenario():
        return await asyncio.gather(
            rename_step(nb, "a", "c"),
            rename_step(nb, "b", "c"),
            return_exceptions=True,
        )

    results = asyncio.run(scenario())

    errors = [r for r in results if isinstance(r, StepNameError)]
    assert len(errors) == 1
    assert errors[0].kind == "duplicate"
    assert len(set(_names(nb))) == 2
    assert "c" in _names(nb)


def test_concurrent_set_step_name_keeps_names_unique(tmp_path):
    nb = Notebook(cells=[code("block:x"), code("block:y")], path=tmp_path / "nb.ipynb")

    async def scenario():
        return await asyncio.gather(
            set_step_name(nb, 0, "z"),
            set_step_name(nb, 1, "z"),
            return_exceptions=True,
        )

    results = asyncio.run(scenario())

    assert sum(isinstance(r, StepNameError) for r in results) == 1
    assert _names(nb).count("z") == 1


def test_rename_keeps_outputs_execution_counts_and_ids(tmp_path):
    path = tmp_path / "executed.ipynb"
    source = nbformat.v4.new_notebook(
        cells=[
            nbformat.v4.new_code_cell(
                "x = 1\nprint(x)",
                id="c1",
                execution_count=3,
                metadata={"tags": ["block:a"], "collapsed": True},
                outputs=[nbformat.v4.new_output("stream", name="stdout", text="1\n")],
            ),
            nbformat.v4.new_markdown_cell("# notes", id="m1"),
            nbformat.v4.new_code_cell("y = x", id="c2", metadata={"tags": ["block:b", "prev:a"]}),
        ],
        metadata={"kernelspec": {"name": "python3", "display_name": "Python 3", "language": "python"}},
    )
    nbformat.write(source, str(path))

    nb = Notebook.load(path)
    asyncio.run(rename_step(nb, "a", "c"))

    saved = json.loads(path.read_text(encoding="utf-8"))
    first = saved["cells"][0]
    assert first["id"] == "c1"
    assert first["execution_count"] == 3
    assert first["outputs"][0]["text"] == "1\n"
    assert first["metadata"] == {"tags": ["block:c"], "collapsed": True}
    assert saved["cells"][1]["id"] == "m1"
    assert saved["cells"][2]["metadata"]["tags"] == ["block:b", "prev:c"]
    assert saved["metadata"]["kernelspec"]["name"] == "python3"
    assert (saved["nbformat"], saved["nbformat_minor"]) == (source.nbformat, source.nbformat_minor)
    nbformat.validate(nbformat.read(str(path), as_version=nbformat.NO_CONVERT))


def test_change_cell_type_keeps_id_and_drops_outputs():
    nb = Notebook(cells=[nbformat.v4.new_code_cell("x", id="c1", execution_count=1, metadata={"tags": ["block:a"]})])

    assert nb.change_cell_type(0, "markdown") == "code"
    cell = nb.cells[0]
    assert cell.cell_type == "markdown"
    assert cell["id"] == "c1"
    assert "outputs" not in cell
    assert "execution_count" not in cell
