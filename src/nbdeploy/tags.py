# tags.py
from __future__ import annotations

import re
from dataclasses import dataclass, field
from typing import List, Optional, Sequence


RESERVED_NAMES = (
    "imports",
    "functions",
    "pipeline-parameters",
    "pipeline-metrics",
    "skip",
)

RESERVED_NAMES_HELP_TEXT = {
    "imports": "The code in this cell will be pre-pended to every step of the pipeline.",
    "functions": (
        "The code in this cell will be pre-pended to every step of the pipeline,"
        " after `imports`."
    ),
    "pipeline-parameters": (
        "The variables in this cell will be transformed into pipeline parameters,"
        " preserving the current values as defaults."
    ),
    "pipeline-metrics": "The variables in this cell will be transformed into pipeline metrics.",
    "skip": "This cell will be skipped and excluded from pipeline steps",
}

BLOCK_PREFIX = "block:"
PREV_PREFIX = "prev:"

STEP_NAME_RE = re.compile(r"^([_a-z][_a-z0-9]*)?$")
STEP_NAME_ERROR_MSG = (
    "Step name must consist of lower case alphanumeric characters or '_', "
    "and can not start with a digit."
)
DUPLICATE_NAME_MSG = "This name already exists."


@dataclass
class TagError(ValueError):
    """Raised when a tag list cannot be produced for the given step."""
    message: str

    def __str__(self) -> str:
        return self.message


@dataclass
class StepNameError(ValueError):
    """
    Local validation failure on a step name.

    kind is one of "invalid", "duplicate" or "not_code_cell".
    """
    kind: str
    name: str
    message: str

    def __str__(self) -> str:
        return f"{self.message} (step={self.name!r})"


@dataclass(frozen=True)
class StepTags:
    """Decoded cell tags: the step identity and the steps it depends on."""
    name: str
    dependencies: List[str] = field(default_factory=list)

    @property
    def is_reserved(self) -> bool:
        return self.name in RESERVED_NAMES

    @property
    def is_merge(self) -> bool:
        return self.name == ""


def is_reserved(name: Optional[str]) -> bool:
    return name in RESERVED_NAMES


def decode(tags: Optional[Sequence[str]]) -> Optional[StepTags]:
    """
    Decode a cell tag list.

    The first tag that is either a reserved role or ``block:<name>`` gives the
    step name; every ``prev:<name>`` tag gives a dependency, in order.

    Returns:
        StepTags, or None when the cell carries no recognised tag.
    """
    if not tags:
        return None

    name: Optional[str] = None
    dependencies: List[str] = []
    for tag in tags:
        if name is None:
            if tag in RESERVED_NAMES:
                name = tag
                continue
            if tag.startswith(BLOCK_PREFIX):
                name = tag[len(BLOCK_PREFIX):]
                continue
        if tag.startswith(PREV_PREFIX):
            dependencies.append(tag[len(PREV_PREFIX):])

    if name is None and not dependencies:
        return None
    return StepTags(name=name or "", dependencies=dependencies)


def encode(name: str, dependencies: Optional[Sequence[str]] = None) -> List[str]:
    """
    Encode a step identity and its dependencies as a flat tag list.

    Reserved roles are emitted unprefixed and may not carry dependencies.
    """
    dependencies = list(dependencies or [])
    if name in RESERVED_NAMES:
        if dependencies:
            raise TagError(f"Reserved cell '{name}' can not declare dependencies: {dependencies}")
        return [name]
    return [BLOCK_PREFIX + name] + [PREV_PREFIX + dep for dep in dependencies]


def validate_step_name(name: str) -> None:
    """Raise StepNameError unless name is empty, reserved or matches the step grammar."""
    if name in RESERVED_NAMES:
        return
    if not STEP_NAME_RE.match(name):
        raise StepNameError(kind="invalid", name=name, message=STEP_NAME_ERROR_MSG)


def _hash_code(s: str) -> int:
    # 32-bit signed string hash, same values a JS/Java hashCode produces
    h = 0
    for ch in s:
        h = (h * 31 + ord(ch)) & 0xFFFFFFFF
    if h & 0x80000000:
        h -= 0x100000000
    return h


def step_color(name: str) -> str:
    """Six hex digits used to colour a step's chips and cell border."""
    c = format(_hash_code(name) & 0x00FFFFFF, "X")
    return c.rjust(6, "0")
