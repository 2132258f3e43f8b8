from .tags import decode, encode, RESERVED_NAMES, StepTags, StepNameError, TagError
from .notebook import Notebook, new_cell
from .dag import all_steps, previous_visible_step, build_graph
from .rename import rename_step, set_step_name, set_step_dependencies, reset_cell
from .deploy.registry import DeployProgress, DeployRegistry
from .deploy.orchestrator import DeploymentOrchestrator, DeployRequest

__all__ = [
    "decode", "encode", "RESERVED_NAMES", "StepTags", "StepNameError", "TagError",
    "Notebook", "new_cell",
    "all_steps", "previous_visible_step", "build_graph",
    "rename_step", "set_step_name", "set_step_dependencies", "reset_cell",
    "DeployProgress", "DeployRegistry", "DeploymentOrchestrator", "DeployRequest",
]
