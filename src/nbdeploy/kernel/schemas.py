# kernel/schemas.py
from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Type

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter, ValidationError


# -------------------- Requests --------------------

class _Request(BaseModel):
    model_config = ConfigDict(extra="forbid")


class NoArgs(_Request):
    pass


class GetTaskRequest(_Request):
    task_id: str


class CompileRequest(_Request):
    source_notebook_path: str
    notebook_metadata_overrides: Dict[str, Any] = Field(default_factory=dict)
    debug: bool = False


class UploadRequest(_Request):
    pipeline_package_path: str
    pipeline_metadata: Dict[str, Any]
    overwrite: bool = False


class RunRequest(_Request):
    pipeline_package_path: str
    pipeline_metadata: Dict[str, Any]


class GetRunRequest(_Request):
    run_id: str


# -------------------- Responses --------------------

class Task(BaseModel):
    """A long-running remote task (snapshot)."""
    id: str
    status: Optional[str] = None
    progress: int = 0
    bucket: Optional[str] = None
    result: Optional[Dict[str, Any]] = None


class CompileResult(BaseModel):
    pipeline_package_path: str
    pipeline_metadata: Dict[str, Any]


class UploadResult(BaseModel):
    already_exists: bool = False
    pipeline: Optional[Dict[str, Any]] = None


class Run(BaseModel):
    id: str
    name: Optional[str] = None
    status: Optional[str] = None


class ExperimentItem(BaseModel):
    id: str
    name: str


class VolumeItem(BaseModel):
    type: str = "pvc"
    name: str = ""
    mount_point: str = ""
    size: Optional[float] = None


@dataclass(frozen=True)
class RemoteFunction:
    name: str
    request: Type[BaseModel]
    response: Any  # model, list of model, or plain type


RPC_FUNCTIONS: Dict[str, RemoteFunction] = {
    f.name: f
    for f in [
        RemoteFunction("rok.snapshot_notebook", NoArgs, Task),
        RemoteFunction("rok.get_task", GetTaskRequest, Task),
        RemoteFunction("nb.compile_notebook", CompileRequest, CompileResult),
        RemoteFunction("kfp.upload_pipeline", UploadRequest, UploadResult),
        RemoteFunction("kfp.run_pipeline", RunRequest, Run),
        RemoteFunction("kfp.get_run", GetRunRequest, Run),
        RemoteFunction("kfp.list_experiments", NoArgs, List[ExperimentItem]),
        RemoteFunction("nb.list_volumes", NoArgs, List[VolumeItem]),
        RemoteFunction("nb.resume_notebook_path", NoArgs, Optional[str]),
    ]
}


@dataclass
class SchemaError(Exception):
    """A request does not match the schema of the remote function."""
    function: str
    message: str

    def __str__(self) -> str:
        return f"{self.function}: {self.message}"


def validate_request(function: str, kwargs: Optional[Dict[str, Any]]) -> Dict[str, Any]:
    """
    Validate keyword arguments against the function's request model.

    Returns:
        The JSON-ready kwargs (defaults filled in).

    Raises:
        SchemaError: unknown function or invalid arguments
    """
    spec = RPC_FUNCTIONS.get(function)
    if spec is None:
        raise SchemaError(function, f"Unknown remote function. Known: {sorted(RPC_FUNCTIONS)}")
    try:
        return spec.request.model_validate(kwargs or {}).model_dump(mode="json")
    except ValidationError as e:
        raise SchemaError(function, str(e)) from e


def validate_response(function: str, result: Any) -> Any:
    """
    Check a decoded result against the function's response type.

    Returns the parsed value (models for object responses).

    Raises:
        ValidationError: result does not match the response type
    """
    return TypeAdapter(RPC_FUNCTIONS[function].response).validate_python(result)
