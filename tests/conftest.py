# tests/conftest.py
"""Shared fixtures: notebooks built in memory and a scripted in-process kernel."""

from __future__ import annotations

from typing import Any, Dict, List, Tuple

import pytest
from nbformat import NotebookNode

from nbdeploy.kernel.gateway import RpcGateway
from nbdeploy.kernel.schemas import RPC_FUNCTIONS
from nbdeploy.kernel.transport import LocalKernelTransport
from nbdeploy.notebook import Notebook, new_cell
from nbdeploy.settings import DeploySettings


def code(*tags: str, source: str = "") -> NotebookNode:
    return new_cell("code", source, tags=list(tags) if tags else None)


def markdown(text: str = "# notes") -> NotebookNode:
    return new_cell("markdown", text)


class ScriptedKernel:
    """
    Answers RPC calls from a per-function script.

    Each script entry is returned in turn (the last one repeats). An
    Exception entry is raised inside the "kernel" and comes back as a
    classified error; a callable entry is called with the request kwargs.
    Unscripted functions fail with RuntimeError.
    """

    def __init__(self, script: Dict[str, List[Any]]):
        self.script = {k: list(v) for k, v in script.items()}
        self.calls: List[Tuple[str, Dict[str, Any]]] = []
        self.transport = LocalKernelTransport()
        for name in RPC_FUNCTIONS:
            self.transport.register(name, self._handler(name))

    def _handler(self, name: str):
        def handler(**kwargs):
            self.calls.append((name, kwargs))
            entries = self.script.get(name)
            if not entries:
                raise RuntimeError(f"unscripted call to {name}")
            item = entries.pop(0) if len(entries) > 1 else entries[0]
            if isinstance(item, BaseException):
                raise item
            if callable(item):
                return item(**kwargs)
            return item
        return handler

    def called(self, name: str) -> List[Dict[str, Any]]:
        return [kwargs for fn, kwargs in self.calls if fn == name]


class Messages:
    def __init__(self):
        self.boxes: List[Tuple[str, List[str]]] = []

    def __call__(self, title: str, lines: List[str]) -> None:
        self.boxes.append((title, list(lines)))

    @property
    def titles(self) -> List[str]:
        return [t for t, _ in self.boxes]


@pytest.fixture
def notebook() -> Notebook:
    """
    imports | load | (merge into load) | markdown | train(needs load) | skip | evaluate(needs train, load)
    """
    return Notebook(
        cells=[
            code("imports", source="import os"),
            code("block:load", source="x = 1"),
            code("block:", source="y = 2"),
            markdown(),
            code("block:train", "prev:load", source="z = x + y"),
            code("skip", source="print(z)"),
            code("block:evaluate", "prev:train", "prev:load", source="print(z)"),
        ]
    )


@pytest.fixture
def messages() -> Messages:
    return Messages()


@pytest.fixture
def fast_settings() -> DeploySettings:
    return DeploySettings(
        snapshot_poll_interval=0,
        run_poll_interval=0,
        snapshot_max_polls=50,
        run_max_polls=50,
        rok_url="https://rok.example",
        kfp_url="https://kfp.example",
    )


@pytest.fixture
def make_kernel():
    def _make(script: Dict[str, List[Any]], notify=None):
        kernel = ScriptedKernel(script)
        return kernel, RpcGateway(kernel.transport, notify=notify)
    return _make
