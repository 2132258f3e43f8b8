# metadata.py
from __future__ import annotations

import math
import re
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any, Dict, List, Literal, Optional

from pydantic import BaseModel, Field, ValidationError, field_validator

from .notebook import Notebook

if TYPE_CHECKING:
    from .kernel.gateway import RpcGateway


NOTEBOOK_METADATA_KEY = "kubeflow_notebook"

PIPELINE_NAME_RE = re.compile(r"^[a-z0-9]([-a-z0-9]*[a-z0-9])?$")
PIPELINE_NAME_ERROR_MSG = (
    "Pipeline name must consist of lower case alphanumeric characters or '-', "
    "and must start and end with an alphanumeric character."
)

ROK_ORIGIN_KEY = "rok/origin"

VolumeType = Literal["new_pvc", "clone", "snap", "pvc"]

VOLUME_TYPES = [
    {"label": "Create Empty Volume", "value": "new_pvc"},
    {"label": "Clone Notebook Volume", "value": "clone"},
    {"label": "Clone Existing Snapshot", "value": "snap"},
    {"label": "Use Existing Volume", "value": "pvc"},
]

# largest unit first
VOLUME_SIZE_TYPES = [
    ("Gi", 1024 ** 3),
    ("Mi", 1024 ** 2),
    ("Ki", 1024 ** 1),
    ("", 1024 ** 0),
]


@dataclass
class MetadataError(ValueError):
    """Notebook metadata failed local validation; nothing was persisted."""
    message: str
    details: List[str]

    def __str__(self) -> str:
        return "\n".join([self.message] + self.details)


class Annotation(BaseModel):
    key: str = ""
    value: str = ""


class VolumeSpec(BaseModel):
    """
    A storage resource attached to the pipeline steps.

    name depends on type: pvc -> existing claim, new_pvc -> claim to
    provision, clone -> notebook volume to clone, snap -> new_pvc restored
    from a snapshot (stored as new_pvc + rok/origin annotation).
    """
    type: VolumeType = "new_pvc"
    name: str = ""
    mount_point: str = ""
    size: Optional[float] = 1
    size_type: Optional[str] = "Gi"
    annotations: List[Annotation] = Field(default_factory=list)
    snapshot: bool = False
    snapshot_name: Optional[str] = ""


class Experiment(BaseModel):
    id: str = ""
    name: str = ""


NEW_EXPERIMENT = Experiment(id="new", name="+ New Experiment")


class NotebookMetadata(BaseModel):
    """Pipeline settings persisted at notebook level, field names as read by the kernel."""
    experiment: Experiment = Field(default_factory=Experiment)
    experiment_name: str = ""  # kept for older notebooks
    pipeline_name: str = ""
    pipeline_description: str = ""
    docker_image: str = ""
    volumes: List[VolumeSpec] = Field(default_factory=list)

    @field_validator("pipeline_name")
    @classmethod
    def _check_pipeline_name(cls, v: str) -> str:
        if v and not PIPELINE_NAME_RE.match(v):
            raise ValueError(PIPELINE_NAME_ERROR_MSG)
        return v

    def to_dict(self) -> Dict[str, Any]:
        return self.model_dump(mode="json")


def parse_metadata(data: Optional[Dict[str, Any]]) -> NotebookMetadata:
    """Validate raw metadata, turning pydantic errors into a MetadataError."""
    try:
        return NotebookMetadata.model_validate(data or {})
    except ValidationError as e:
        details = [
            f"{'.'.join(str(p) for p in err['loc'])}: {err['msg']}"
            for err in e.errors()
        ]
        raise MetadataError("Invalid notebook metadata", details) from e


def load_notebook_metadata(notebook: Notebook) -> NotebookMetadata:
    return parse_metadata(notebook.get_metadata(NOTEBOOK_METADATA_KEY))


async def save_notebook_metadata(notebook: Notebook, metadata: NotebookMetadata) -> None:
    # round-trip through validation so a malformed model is never persisted
    checked = parse_metadata(metadata.model_dump(mode="json"))
    await notebook.set_metadata(NOTEBOOK_METADATA_KEY, checked.to_dict(), save=True)


def require_pipeline_name(metadata: NotebookMetadata) -> None:
    if not metadata.pipeline_name:
        raise MetadataError("Invalid notebook metadata", ["pipeline_name: " + PIPELINE_NAME_ERROR_MSG])


# ----------------------------------------------------------------------
# Volumes
# ----------------------------------------------------------------------

def is_snapshot_volume(volume: VolumeSpec) -> bool:
    return (
        volume.type == "new_pvc"
        and len(volume.annotations) > 0
        and volume.annotations[0].key == ROK_ORIGIN_KEY
    )


def display_volume_type(volume: VolumeSpec) -> str:
    """Type shown in the volumes panel ("snap" for snapshot-backed claims)."""
    return "snap" if is_snapshot_volume(volume) else volume.type


def with_volume_type(volume: VolumeSpec, type_: str) -> VolumeSpec:
    """Return the stored form of ``volume`` after picking ``type_`` in the panel."""
    if type_ == "snap":
        return volume.model_copy(
            update={"type": "new_pvc", "annotations": [Annotation(key=ROK_ORIGIN_KEY, value="")]}
        )
    return volume.model_copy(update={"type": type_, "annotations": []})


def normalize_volume_size(size_bytes: float) -> tuple[int, str]:
    """Express a byte count in the largest unit it reaches, rounded up."""
    for size_type, base in VOLUME_SIZE_TYPES:
        if size_bytes >= base:
            return int(math.ceil(size_bytes / base)), size_type
    return int(math.ceil(size_bytes)), ""


def normalize_mounted_volumes(volumes: List[Dict[str, Any]]) -> List[VolumeSpec]:
    """Turn the kernel's mounted-volume listing (sizes in bytes) into volume specs."""
    out: List[VolumeSpec] = []
    for v in volumes:
        size, size_type = normalize_volume_size(float(v.get("size") or 0))
        out.append(
            VolumeSpec.model_validate({**v, "size": size, "size_type": size_type, "annotations": []})
        )
    return out


def volume_type_choices(notebook_volumes: List[VolumeSpec]) -> List[Dict[str, str]]:
    """Volume types offered in the panel; "pvc" is hidden when the notebook mounts no volumes."""
    if notebook_volumes:
        return list(VOLUME_TYPES)
    return VOLUME_TYPES[:-1]


# ----------------------------------------------------------------------
# Experiments
# ----------------------------------------------------------------------

def resolve_experiment(experiments: List[Experiment], metadata: NotebookMetadata) -> Experiment:
    """
    Pick the experiment the notebook refers to.

    Matches by id or name (including the legacy experiment_name). Without a
    match the first listed experiment is used; when that is the
    "new experiment" entry the name already typed in the notebook is kept.
    """
    choices = list(experiments) + [NEW_EXPERIMENT]
    for e in choices:
        if (
            (metadata.experiment.id and e.id == metadata.experiment.id)
            or (metadata.experiment.name and e.name == metadata.experiment.name)
            or (metadata.experiment_name and e.name == metadata.experiment_name)
        ):
            if e.id != NEW_EXPERIMENT.id:
                return e
            break

    first = choices[0]
    if first.id != NEW_EXPERIMENT.id:
        return first
    name = metadata.experiment.name or metadata.experiment_name
    return Experiment(id=NEW_EXPERIMENT.id, name=name)


def with_experiment(metadata: NotebookMetadata, experiment: Experiment) -> NotebookMetadata:
    return metadata.model_copy(update={"experiment": experiment, "experiment_name": experiment.name})


# ----------------------------------------------------------------------
# Kernel-backed lookups
# ----------------------------------------------------------------------

async def fetch_experiments(gateway: RpcGateway, metadata: NotebookMetadata) -> tuple[List[Experiment], Experiment]:
    """
    List the cluster's experiments and pick the one the notebook refers to.

    A failed listing degrades to the "new experiment" entry only.
    """
    listed = await gateway.call("kfp.list_experiments") or []
    experiments = [Experiment.model_validate(e) for e in listed]
    return experiments + [NEW_EXPERIMENT], resolve_experiment(experiments, metadata)


async def fetch_notebook_volumes(gateway: RpcGateway) -> List[VolumeSpec]:
    """Volumes mounted in the notebook server, sizes normalised for display."""
    listed = await gateway.call("nb.list_volumes")
    if listed is None:
        return []
    return normalize_mounted_volumes(listed)


async def fetch_resume_path(gateway: RpcGateway) -> Optional[str]:
    """Notebook the kernel asks to reopen, if any."""
    return await gateway.call("nb.resume_notebook_path", report=False)
