# deploy/registry.py
from __future__ import annotations

from dataclasses import dataclass, fields, replace
from typing import Any, Callable, Dict, List, Optional, Union


# Terminal/overall states of a deployment
PENDING = "pending"
SUCCESS = "success"
FAILED = "failed"
CANCELED = "canceled"


@dataclass(frozen=True)
class DeployProgress:
    """
    Immutable snapshot of one deployment attempt.

    pipeline is the upload result, False when the user declined to
    overwrite, None while the upload has not happened.
    """
    handle: int
    deploy_type: str = "compile"
    task: Optional[Dict[str, Any]] = None
    pipeline: Union[Dict[str, Any], bool, None] = None
    run_pipeline: Optional[Dict[str, Any]] = None
    show_upload_progress: bool = False
    show_run_progress: bool = False
    status: str = PENDING
    stage: Optional[str] = None
    failed_stage: Optional[str] = None
    deleted: bool = False

    @property
    def snapshot_done(self) -> bool:
        return bool(self.task) and self.task.get("progress") == 100

    def snapshot_text(self) -> str:
        if not self.task:
            return ""
        if self.snapshot_done:
            return "Done"
        status = self.task.get("status")
        if status in ("error", "canceled"):
            return status.capitalize()
        return f"{self.task.get('progress') or 0}%"

    def task_link(self, base_url: str = "") -> str:
        task = self.task or {}
        event = (task.get("result") or {}).get("event")
        if not event:
            return "#"
        return f"{base_url}/rok/buckets/{task.get('bucket')}/files/{event.get('object')}/versions/{event.get('version')}"

    def upload_text(self) -> str:
        if self.pipeline is False:
            return "Canceled"
        return "Done" if self.pipeline else ""

    def upload_link(self, base_url: str = "") -> str:
        pipeline = self.pipeline if isinstance(self.pipeline, dict) else {}
        pid = (pipeline.get("pipeline") or {}).get("id")
        if not pid:
            return "#"
        return f"{base_url}/_/pipeline/#/pipelines/details/{pid}"

    def run_text(self) -> str:
        if not self.run_pipeline:
            return ""
        status = self.run_pipeline.get("status")
        if status in (None, "Running"):
            return "View"
        if status in ("Terminating", "Failed"):
            return status
        return "Done"

    def run_link(self, base_url: str = "") -> str:
        rid = (self.run_pipeline or {}).get("id")
        if not rid:
            return "#"
        return f"{base_url}/_/pipeline/#/runs/details/{rid}"


_FIELD_NAMES = {f.name for f in fields(DeployProgress)} - {"handle"}

Listener = Callable[[DeployProgress], None]


class DeployRegistry:
    """
    Indexed collection of deployment records.

    Handles come from a counter owned by the registry and are never reused.
    Removal is a tombstone: late updates still merge into the record but it
    stays hidden.
    """

    def __init__(self):
        self._records: Dict[int, DeployProgress] = {}
        self._last_handle = 0
        self._listeners: List[Listener] = []

    def new_handle(self) -> int:
        self._last_handle += 1
        return self._last_handle

    def subscribe(self, listener: Listener) -> None:
        self._listeners.append(listener)

    def _notify(self, record: DeployProgress) -> None:
        if record.deleted:
            return
        for listener in list(self._listeners):
            listener(record)

    def upsert(self, handle: int, **progress: Any) -> DeployProgress:
        """Merge fields into the record for ``handle`` (creating it) and return the new snapshot."""
        unknown = set(progress) - _FIELD_NAMES
        if unknown:
            raise TypeError(f"Unknown deploy progress fields: {sorted(unknown)}")
        # a tombstone stays a tombstone
        progress.pop("deleted", None)

        current = self._records.get(handle)
        if current is None:
            record = DeployProgress(handle=handle, **progress)
            self._last_handle = max(self._last_handle, handle)
        else:
            record = replace(current, **progress)
        self._records[handle] = record
        self._notify(record)
        return record

    def mark_deleted(self, handle: int) -> None:
        current = self._records.get(handle) or DeployProgress(handle=handle)
        self._records[handle] = replace(current, deleted=True)
        self._last_handle = max(self._last_handle, handle)

    def get(self, handle: int) -> Optional[DeployProgress]:
        return self._records.get(handle)

    def is_deleted(self, handle: int) -> bool:
        record = self._records.get(handle)
        return record is not None and record.deleted

    def visible(self) -> List[DeployProgress]:
        return [r for _, r in sorted(self._records.items()) if not r.deleted]

    def __contains__(self, handle: object) -> bool:
        return handle in self._records

    def __len__(self) -> int:
        return len(self._records)
