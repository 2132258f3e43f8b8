# deploy/orchestrator.py
from __future__ import annotations

import asyncio
import inspect
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, List, Optional, Union

from ..kernel.gateway import Notifier, RpcGateway
from ..metadata import ROK_ORIGIN_KEY, Annotation, NotebookMetadata, require_pipeline_name
from ..settings import DeploySettings
from ..ui.console import get_console
from .registry import CANCELED, FAILED, SUCCESS, DeployProgress, DeployRegistry


DEPLOY_TYPES = ("compile", "upload", "run")
SNAPSHOT_TERMINAL = ("success", "error", "canceled")
RUN_ACTIVE = (None, "Running")

Confirm = Callable[[str, str], Union[bool, Awaitable[bool]]]


def box_title(error: bool) -> str:
    return "Operation Failed" if error else "Operation Successful"


@dataclass(frozen=True)
class DeployRequest:
    """What to deploy: the notebook, its pipeline metadata and the final stage."""
    notebook_path: str
    metadata: NotebookMetadata
    deploy_type: str = "compile"
    debug: bool = False

    def __post_init__(self):
        if self.deploy_type not in DEPLOY_TYPES:
            raise ValueError(f"deploy_type must be one of {DEPLOY_TYPES}, got {self.deploy_type!r}")


def snapshot_origin(task: Dict[str, Any], volume_name: str, rok_url: str = "") -> str:
    """Resolvable reference to one volume inside a finished notebook snapshot."""
    event = (task.get("result") or {}).get("event") or {}
    return (
        f"{rok_url}/rok/buckets/{task.get('bucket')}/files/{event.get('object')}"
        f"/versions/{event.get('version')}/members/{volume_name}"
    )


def substitute_cloned_volumes(
    metadata: NotebookMetadata,
    task: Dict[str, Any],
    rok_url: str = "",
) -> NotebookMetadata:
    """
    Replace "clone" volumes with new claims restored from the snapshot.

    Returns a new metadata object; the input is left untouched.
    """
    volumes = []
    for v in metadata.volumes:
        if v.type == "clone":
            origin = Annotation(key=ROK_ORIGIN_KEY, value=snapshot_origin(task, v.name, rok_url))
            v = v.model_copy(update={"type": "new_pvc", "annotations": [origin]})
        volumes.append(v)
    return metadata.model_copy(update={"volumes": volumes})


class DeploymentOrchestrator:
    """
    Drives snapshot -> compile -> upload/run for each deploy trigger.

    One deployment initiates at a time (``deploying``); re-entrant triggers
    are ignored. Run-status polling outlives the deployment as a background
    task keyed by deploy handle.
    """

    def __init__(
        self,
        gateway: RpcGateway,
        registry: Optional[DeployRegistry] = None,
        settings: Optional[DeploySettings] = None,
        notify: Optional[Notifier] = None,
        confirm: Optional[Confirm] = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ):
        self.gateway = gateway
        self.registry = registry or DeployRegistry()
        self.settings = settings or DeploySettings()
        self.notify = notify
        self.confirm = confirm
        self.sleep = sleep
        self.deploying = False
        self._pollers: Dict[int, asyncio.Task] = {}

    # ------------------------------------------------------------------
    # User interaction
    # ------------------------------------------------------------------

    async def _message(self, title: str, lines: List[str], error: bool = False) -> None:
        if self.notify is None:
            get_console().report(title, lines, error=error)
            return
        out = self.notify(title, lines)
        if inspect.isawaitable(out):
            await out

    async def _confirm(self, title: str, message: str) -> bool:
        if self.confirm is None:
            get_console().print_warning(f"{title}: {message} (no prompt available, declining)")
            return False
        out = self.confirm(title, message)
        if inspect.isawaitable(out):
            out = await out
        return bool(out)

    def _fail(self, handle: int, stage: str, status: str = FAILED) -> None:
        self.registry.upsert(handle, status=status, failed_stage=stage)
        get_console().print_debug(f"deploy #{handle} stopped at {stage} ({status})")

    # ------------------------------------------------------------------
    # Deployment
    # ------------------------------------------------------------------

    async def deploy(self, request: DeployRequest) -> Optional[int]:
        """
        Run one deployment to completion (run polling excluded).

        Returns:
            The deploy handle, or None when a deployment is already initiating

        Raises:
            MetadataError: pipeline metadata is not deployable (before any RPC)
        """
        console = get_console()
        if self.deploying:
            console.print_debug("Deployment already in progress, ignoring trigger")
            return None
        require_pipeline_name(request.metadata)

        self.deploying = True
        handle = self.registry.new_handle()
        self.registry.upsert(handle, deploy_type=request.deploy_type, stage="snapshot")
        try:
            await self._run(handle, request)
        except Exception:
            self._fail(handle, self.registry.get(handle).stage or "unknown")
            raise
        finally:
            self.deploying = False
        return handle

    async def _run(self, handle: int, request: DeployRequest) -> None:
        task = await self._snapshot(handle)
        if task is None:
            return

        metadata = substitute_cloned_volumes(request.metadata, task, self.settings.rok_url)

        self.registry.upsert(handle, stage="compile")
        compiled = await self.gateway.call(
            "nb.compile_notebook",
            {
                "source_notebook_path": request.notebook_path,
                "notebook_metadata_overrides": metadata.to_dict(),
                "debug": request.debug,
            },
        )
        if compiled is None:
            self._fail(handle, "compile")
            return
        package_path = compiled["pipeline_package_path"]
        pipeline_metadata = compiled["pipeline_metadata"]
        messages = [f"Pipeline saved successfully at {package_path}"]

        if request.deploy_type == "compile":
            self.registry.upsert(handle, stage="done", status=SUCCESS)
            await self._message(box_title(False), messages)
        elif request.deploy_type == "upload":
            await self._upload(handle, package_path, pipeline_metadata, messages)
        else:
            await self._run_pipeline(handle, package_path, pipeline_metadata, messages)

    async def _snapshot(self, handle: int) -> Optional[Dict[str, Any]]:
        """Take a notebook snapshot and poll it to a terminal status."""
        task = await self.gateway.call("rok.snapshot_notebook", {})
        if task is None:
            self._fail(handle, "snapshot")
            return None
        self.registry.upsert(handle, task=task)

        max_polls = self.settings.snapshot_max_polls
        polls = 0
        while True:
            task = await self.gateway.call("rok.get_task", {"task_id": task["id"]})
            if task is None:
                self._fail(handle, "snapshot")
                return None
            self.registry.upsert(handle, task=task)
            polls += 1
            if task.get("status") in SNAPSHOT_TERMINAL:
                break
            if max_polls and polls >= max_polls:
                await self._message(
                    box_title(True),
                    [f"Snapshot timed out after {polls} status checks"],
                    error=True,
                )
                self._fail(handle, "snapshot")
                return None
            await self.sleep(self.settings.snapshot_poll_interval)

        status = task.get("status")
        if status != "success":
            await self._message(
                box_title(True),
                [f"Snapshot task {task['id']} finished with status '{status}'"],
                error=True,
            )
            self._fail(handle, "snapshot", CANCELED if status == "canceled" else FAILED)
            return None
        return task

    async def _upload(
        self,
        handle: int,
        package_path: str,
        pipeline_metadata: Dict[str, Any],
        messages: List[str],
    ) -> None:
        self.registry.upsert(handle, stage="upload", show_upload_progress=True)
        kwargs = {"pipeline_package_path": package_path, "pipeline_metadata": pipeline_metadata}

        result = await self.gateway.call("kfp.upload_pipeline", {**kwargs, "overwrite": False})
        if result is None:
            self._fail(handle, "upload")
            return

        name = pipeline_metadata.get("pipeline_name")
        if result.get("already_exists"):
            overwrite = await self._confirm(
                "Pipeline Upload Failed",
                f"Pipeline with name {name} already exists. Would you like to overwrite it?",
            )
            if not overwrite:
                self.registry.upsert(handle, pipeline=False, stage="done", status=CANCELED)
                return
            result = await self.gateway.call("kfp.upload_pipeline", {**kwargs, "overwrite": True})
            if result is None:
                self._fail(handle, "upload")
                return

        self.registry.upsert(handle, pipeline=result, stage="done", status=SUCCESS)
        await self._message(
            box_title(False),
            messages + [f"Pipeline with name {name} uploaded successfully."],
        )

    async def _run_pipeline(
        self,
        handle: int,
        package_path: str,
        pipeline_metadata: Dict[str, Any],
        messages: List[str],
    ) -> None:
        self.registry.upsert(handle, stage="run", show_run_progress=True)
        run = await self.gateway.call(
            "kfp.run_pipeline",
            {"pipeline_package_path": package_path, "pipeline_metadata": pipeline_metadata},
        )
        if run is None:
            self._fail(handle, "run")
            return

        self.registry.upsert(handle, run_pipeline=run, stage="done", status=SUCCESS)
        self.start_polling(handle, run)
        await self._message(box_title(False), messages + ["Pipeline run created successfully"])

    # ------------------------------------------------------------------
    # Run-status polling
    # ------------------------------------------------------------------

    def start_polling(self, handle: int, run: Dict[str, Any]) -> asyncio.Task:
        """Track a created run in the background until it reaches a terminal status."""
        self.cancel_polling(handle)
        task = asyncio.get_running_loop().create_task(self.poll_run(handle, run))
        self._pollers[handle] = task
        task.add_done_callback(lambda t, h=handle: self._forget(h, t))
        return task

    def _forget(self, handle: int, task: asyncio.Task) -> None:
        if self._pollers.get(handle) is task:
            del self._pollers[handle]

    async def poll_run(self, handle: int, run: Dict[str, Any]) -> None:
        """
        Re-query the run status every interval while it is running or unknown.

        Per-tick failures are logged and the loop carries on. Updates keep
        flowing into the record even after it was dismissed; the registry
        keeps it hidden.
        """
        console = get_console()
        run_id = run["id"]
        max_polls = self.settings.run_max_polls
        polls = 0
        while True:
            latest = await self.gateway.call("kfp.get_run", {"run_id": run_id}, report=False)
            polls += 1
            if latest is None:
                failure = self.gateway.last_failure
                console.print_debug(f"deploy #{handle}: run status check failed: {failure}")
            else:
                run = latest
                self.registry.upsert(handle, run_pipeline=run)
                if run.get("status") not in RUN_ACTIVE:
                    break
            if max_polls and polls >= max_polls:
                console.print_debug(f"deploy #{handle}: stopped tracking run {run_id} after {polls} checks")
                break
            await self.sleep(self.settings.run_poll_interval)

    def cancel_polling(self, handle: int) -> None:
        task = self._pollers.pop(handle, None)
        if task is not None and not task.done():
            task.cancel()

    def polling(self, handle: int) -> bool:
        task = self._pollers.get(handle)
        return task is not None and not task.done()

    async def wait_for_pollers(self) -> None:
        """Wait until every run being tracked reaches a terminal status."""
        while True:
            pending = [t for t in self._pollers.values() if not t.done()]
            if not pending:
                return
            await asyncio.gather(*pending, return_exceptions=True)

    async def shutdown(self) -> None:
        tasks = list(self._pollers.values())
        for handle in list(self._pollers):
            self.cancel_polling(handle)
        await asyncio.gather(*tasks, return_exceptions=True)

    def remove(self, handle: int) -> Optional[DeployProgress]:
        """Dismiss a deployment from the visible registry (polling is not stopped)."""
        self.registry.mark_deleted(handle)
        return self.registry.get(handle)
