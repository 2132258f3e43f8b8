import json

import pytest
from click.testing import CliRunner

import nbdeploy.cli as cli_module
from conftest import ScriptedKernel
from nbdeploy.cli import cli
from nbdeploy.metadata import NOTEBOOK_METADATA_KEY
from nbdeploy.notebook import Notebook


@pytest.fixture
def notebook_file(tmp_path, notebook):
    path = tmp_path / "demo.ipynb"
    nb = Notebook(cells=notebook.cells, metadata={NOTEBOOK_METADATA_KEY: {"pipeline_name": "demo"}})
    path.write_text(nb.writes(), encoding="utf-8")
    return path


def saved_tags(path, index):
    return json.loads(path.read_text(encoding="utf-8"))["cells"][index]["metadata"].get("tags")


def test_steps_lists_cells_and_stages(notebook_file):
    result = CliRunner().invoke(cli, ["steps", str(notebook_file)])

    assert result.exit_code == 0
    assert "needs: load" in result.output
    assert "Leave step name empty to merge code to block load" in result.output
    assert "1: load" in result.output
    assert "3: evaluate" in result.output


def test_steps_missing_notebook(tmp_path):
    result = CliRunner().invoke(cli, ["steps", str(tmp_path / "nope.ipynb")])
    assert result.exit_code == 1


def test_tag_sets_name_and_dependencies(notebook_file):
    result = CliRunner().invoke(cli, ["tag", str(notebook_file), "2", "clean", "--dep", "load"])

    assert result.exit_code == 0
    assert saved_tags(notebook_file, 2) == ["block:clean", "prev:load"]


def test_rename_updates_file(notebook_file):
    result = CliRunner().invoke(cli, ["rename", str(notebook_file), "load", "ingest"])

    assert result.exit_code == 0
    assert saved_tags(notebook_file, 1) == ["block:ingest"]
    assert saved_tags(notebook_file, 4) == ["block:train", "prev:ingest"]


def test_rename_to_existing_name_fails(notebook_file):
    before = notebook_file.read_text(encoding="utf-8")
    result = CliRunner().invoke(cli, ["rename", str(notebook_file), "load", "train"])

    assert result.exit_code == 1
    assert notebook_file.read_text(encoding="utf-8") == before


def test_reset_clears_cell(notebook_file):
    result = CliRunner().invoke(cli, ["reset", str(notebook_file), "4"])

    assert result.exit_code == 0
    assert saved_tags(notebook_file, 4) == ["block:"]
    assert saved_tags(notebook_file, 6) == ["block:evaluate", "prev:load"]


def test_deploy_compile(notebook_file, monkeypatch, fast_settings):
    kernel = ScriptedKernel({
        "rok.snapshot_notebook": [{"id": "t1", "progress": 0, "status": "running"}],
        "rok.get_task": [{"id": "t1", "progress": 100, "status": "success", "bucket": "b", "result": {}}],
        "nb.compile_notebook": [{"pipeline_package_path": "/x.yaml", "pipeline_metadata": {}}],
    })
    monkeypatch.setattr(cli_module, "HttpKernelTransport", lambda url: kernel.transport)
    monkeypatch.setattr(cli_module, "DeploySettings", lambda: fast_settings)

    result = CliRunner().invoke(cli, ["deploy", str(notebook_file), "--kernel-url", "http://kernel"])

    assert result.exit_code == 0
    assert "Pipeline saved successfully at /x.yaml" in result.output
    assert "[deploy #1] snapshot: Done" in result.output
    assert kernel.called("nb.compile_notebook")[0]["source_notebook_path"] == str(notebook_file)


def test_deploy_failure_exits_non_zero(notebook_file, monkeypatch, fast_settings):
    kernel = ScriptedKernel({
        "rok.snapshot_notebook": [{"id": "t1", "progress": 0, "status": "running"}],
        "rok.get_task": [{"id": "t1", "progress": 20, "status": "error"}],
    })
    monkeypatch.setattr(cli_module, "HttpKernelTransport", lambda url: kernel.transport)
    monkeypatch.setattr(cli_module, "DeploySettings", lambda: fast_settings)

    result = CliRunner().invoke(cli, ["deploy", str(notebook_file), "--kernel-url", "http://kernel"])

    assert result.exit_code == 1
    assert kernel.called("nb.compile_notebook") == []


def test_deploy_canceled_snapshot_exits_non_zero(notebook_file, monkeypatch, fast_settings):
    kernel = ScriptedKernel({
        "rok.snapshot_notebook": [{"id": "t1", "progress": 0, "status": "running"}],
        "rok.get_task": [{"id": "t1", "progress": 40, "status": "canceled"}],
    })
    monkeypatch.setattr(cli_module, "HttpKernelTransport", lambda url: kernel.transport)
    monkeypatch.setattr(cli_module, "DeploySettings", lambda: fast_settings)

    result = CliRunner().invoke(cli, ["deploy", str(notebook_file), "--kernel-url", "http://kernel"])

    assert result.exit_code == 1
    assert kernel.called("nb.compile_notebook") == []


def test_deploy_declined_overwrite_exits_zero(notebook_file, monkeypatch, fast_settings):
    kernel = ScriptedKernel({
        "rok.snapshot_notebook": [{"id": "t1", "progress": 0, "status": "running"}],
        "rok.get_task": [{"id": "t1", "progress": 100, "status": "success", "bucket": "b", "result": {}}],
        "nb.compile_notebook": [{"pipeline_package_path": "/x.yaml", "pipeline_metadata": {"pipeline_name": "demo"}}],
        "kfp.upload_pipeline": [{"already_exists": True}],
    })
    monkeypatch.setattr(cli_module, "HttpKernelTransport", lambda url: kernel.transport)
    monkeypatch.setattr(cli_module, "DeploySettings", lambda: fast_settings)

    result = CliRunner().invoke(
        cli, ["deploy", str(notebook_file), "--kernel-url", "http://kernel", "--type", "upload"], input="n\n"
    )

    assert result.exit_code == 0
    assert "Would you like to overwrite it?" in result.output
    assert len(kernel.called("kfp.upload_pipeline")) == 1
