# cli.py
from __future__ import annotations

import asyncio
import sys
from pathlib import Path

import click

from nbdeploy.dag import build_dag, build_graph, merge_notice, topo_levels
from nbdeploy.deploy.orchestrator import DeploymentOrchestrator, DeployRequest
from nbdeploy.deploy.registry import DeployProgress
from nbdeploy.kernel.gateway import RpcGateway
from nbdeploy.kernel.transport import HttpKernelTransport
from nbdeploy.metadata import (
    MetadataError,
    display_volume_type,
    fetch_experiments,
    fetch_notebook_volumes,
    fetch_resume_path,
    load_notebook_metadata,
)
from nbdeploy.notebook import Notebook
from nbdeploy.rename import rename_step, reset_cell, set_step_dependencies, set_step_name
from nbdeploy.settings import KERNEL_URL, DeploySettings
from nbdeploy.tags import StepNameError, TagError
from nbdeploy.ui.console import Console, set_console, get_console


def load_notebook(path: str) -> Notebook:
    """
    Load a notebook or exit with a readable error.

    Raises:
        SystemExit: If the file is missing or not a notebook
    """
    console = get_console()
    try:
        return Notebook.load(path)
    except FileNotFoundError:
        console.print_error(
            "Notebook not found",
            f"Could not find notebook: {path}",
        )
        sys.exit(1)
    except ValueError as e:
        console.print_error(
            "Invalid notebook",
            f"Could not parse {path} as a notebook.",
            details=[str(e)],
        )
        sys.exit(1)


def _edit(coro) -> None:
    """Run a tag edit, turning validation failures into inline errors."""
    console = get_console()
    try:
        asyncio.run(coro)
    except (StepNameError, TagError) as e:
        console.print_error("Invalid step", str(e))
        sys.exit(1)
    except Exception as e:
        console.print_exception(e)
        sys.exit(1)


@click.group()
@click.option(
    "--debug",
    is_flag=True,
    default=False,
    help="Enable debug mode (show stack traces and detailed output)",
)
@click.pass_context
def cli(ctx, debug):
    """nbdeploy - tag notebook cells as pipeline steps and deploy them."""
    # Initialize console with debug flag
    console = Console(debug=debug)
    set_console(console)
    ctx.ensure_object(dict)
    ctx.obj["debug"] = debug


@cli.command()
@click.argument("notebook")
def steps(notebook):
    """List the step tags of every cell and the resulting step graph."""
    console = get_console()
    nb = load_notebook(notebook)

    console.print_header(f"Cells of {Path(notebook).name}")
    for idx in range(nb.cell_count()):
        mt = nb.get_step_tags(idx)
        if mt is None:
            continue
        console.print_step_row(idx, mt.name, mt.dependencies, nb.cells[idx].cell_type)
        notice = merge_notice(nb, idx)
        if notice:
            console.print_info(f"        {notice}")

    graph = build_graph(nb)
    for dep, step in sorted(graph.dangling):
        console.print_warning(f"step '{step}' needs unknown step '{dep}'")

    try:
        levels = topo_levels(*build_dag(graph))
    except ValueError as e:
        console.print_error("Invalid step graph", str(e))
        sys.exit(1)

    console.print_header("Stages")
    for i, level in enumerate(levels):
        console.print_info(f"  {i + 1}: {', '.join(level)}")


@cli.command()
@click.argument("notebook")
@click.argument("index", type=int)
@click.argument("name")
@click.option("--dep", "deps", multiple=True, help="Step this cell depends on (repeatable)")
def tag(notebook, index, name, deps):
    """Set the step NAME of cell INDEX (empty string merges into the previous step)."""
    nb = load_notebook(notebook)

    async def _run():
        await set_step_name(nb, index, name)
        if deps:
            await set_step_dependencies(nb, index, list(deps))

    _edit(_run())
    get_console().print_info(f"Cell {index} tags: {nb.get_cell_tags(index)}")


@cli.command()
@click.argument("notebook")
@click.argument("old")
@click.argument("new")
def rename(notebook, old, new):
    """Rename step OLD to NEW and rewrite every dependency on it."""
    nb = load_notebook(notebook)
    _edit(rename_step(nb, old, new))
    get_console().print_info(f"Renamed step '{old}' to '{new}'")


@cli.command()
@click.argument("notebook")
@click.argument("index", type=int)
def reset(notebook, index):
    """Clear the step of cell INDEX."""
    nb = load_notebook(notebook)
    _edit(reset_cell(nb, index))
    get_console().print_info(f"Cell {index} reset")


@cli.command()
@click.argument("notebook")
@click.option("--kernel-url", default=KERNEL_URL, help="Kernel bridge base URL (or NBDEPLOY_KERNEL_URL)")
def inspect(notebook, kernel_url):
    """Show the pipeline settings of NOTEBOOK next to what the cluster offers."""
    console = get_console()
    nb = load_notebook(notebook)
    try:
        metadata = load_notebook_metadata(nb)
    except MetadataError as e:
        console.print_error("Invalid notebook metadata", e.message, details=e.details)
        sys.exit(1)

    console.print_header(f"Pipeline settings of {Path(notebook).name}")
    console.print_info(f"  name:        {metadata.pipeline_name or '-'}")
    console.print_info(f"  image:       {metadata.docker_image or '-'}")
    for v in metadata.volumes:
        console.print_info(f"  volume:      {display_volume_type(v)} {v.name} -> {v.mount_point}")

    if not kernel_url:
        return

    async def _run():
        gateway = RpcGateway(HttpKernelTransport(kernel_url))
        experiments, selected = await fetch_experiments(gateway, metadata)
        volumes = await fetch_notebook_volumes(gateway)
        resume = await fetch_resume_path(gateway)
        return experiments, selected, volumes, resume

    experiments, selected, volumes, resume = asyncio.run(_run())

    console.print_header("Cluster")
    console.print_info(f"  experiment:  {selected.name or '-'}")
    for e in experiments:
        console.print_info(f"    - {e.name}")
    for v in volumes:
        console.print_info(f"  mounted:     {v.name} at {v.mount_point} ({v.size:g}{v.size_type})")
    if resume:
        console.print_info(f"  resume:      {resume}")


def _print_progress(record: DeployProgress) -> None:
    console = get_console()
    if record.stage == "snapshot" and record.task:
        console.print_deploy_progress(record.handle, "snapshot", record.snapshot_text())
    elif record.stage == "done" and record.run_pipeline:
        console.print_deploy_progress(
            record.handle, "run", f"{record.run_text()} {record.run_pipeline.get('status') or ''}".strip()
        )
    elif record.stage == "done" and record.pipeline is not None:
        console.print_deploy_progress(record.handle, "upload", record.upload_text())
    elif record.stage:
        console.print_deploy_progress(record.handle, record.stage, record.status)


@cli.command()
@click.argument("notebook")
@click.option("--kernel-url", default=KERNEL_URL, help="Kernel bridge base URL (or NBDEPLOY_KERNEL_URL)")
@click.option(
    "--type",
    "deploy_type",
    type=click.Choice(["compile", "upload", "run"]),
    default="compile",
    show_default=True,
    help="Last stage of the deployment",
)
@click.option("--yes", is_flag=True, default=False, help="Overwrite an existing pipeline without asking")
@click.option("--wait/--no-wait", default=False, help="Keep tracking the run until it finishes")
@click.pass_context
def deploy(ctx, notebook, kernel_url, deploy_type, yes, wait):
    """Snapshot, compile and upload or run the pipeline of NOTEBOOK."""
    console = get_console()
    if not kernel_url:
        console.print_error(
            "No kernel URL",
            "A kernel bridge URL is required to deploy.",
            suggestion="Pass --kernel-url or set NBDEPLOY_KERNEL_URL.",
        )
        sys.exit(1)

    nb = load_notebook(notebook)
    try:
        metadata = load_notebook_metadata(nb)
    except MetadataError as e:
        console.print_error("Invalid notebook metadata", e.message, details=e.details)
        sys.exit(1)

    async def confirm(title: str, message: str) -> bool:
        if yes:
            return True
        console.print_info(title)
        return await asyncio.to_thread(click.confirm, message, default=False)

    async def _run():
        orchestrator = DeploymentOrchestrator(
            RpcGateway(HttpKernelTransport(kernel_url)),
            settings=DeploySettings(),
            confirm=confirm,
        )
        orchestrator.registry.subscribe(_print_progress)
        request = DeployRequest(
            notebook_path=str(nb.path),
            metadata=metadata,
            deploy_type=deploy_type,
            debug=ctx.obj.get("debug", False),
        )
        try:
            handle = await orchestrator.deploy(request)
            if wait:
                await orchestrator.wait_for_pollers()
        finally:
            await orchestrator.shutdown()
        return orchestrator.registry.get(handle)

    try:
        record = asyncio.run(_run())
    except MetadataError as e:
        console.print_error("Invalid notebook metadata", e.message, details=e.details)
        sys.exit(1)
    except KeyboardInterrupt:
        console.print_info("\nInterrupted by user")
        sys.exit(130)
    except Exception as e:
        console.print_exception(e)
        sys.exit(1)

    if record is None or record.status == "failed":
        sys.exit(1)
    # a declined overwrite is the only cancellation the user asked for
    if record.status == "canceled" and record.pipeline is not False:
        sys.exit(1)


if __name__ == "__main__":
    cli()
