# kernel/gateway.py
from __future__ import annotations

import inspect
import json
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, List, Optional, Union

from pydantic import ValidationError

from ..ui.console import get_console
from .schemas import validate_request, validate_response
from .transport import (
    STATUS_EXECUTION_ERROR,
    STATUS_IMPORT_ERROR,
    STATUS_OK,
    KernelTransport,
    encode_kwargs,
)

Notifier = Callable[[str, List[str]], Union[None, Awaitable[None]]]


def rpc_status_name(code: Any) -> str:
    if code == STATUS_OK:
        return "OK"
    if code == STATUS_IMPORT_ERROR:
        return "ImportError"
    if code == STATUS_EXECUTION_ERROR:
        return "ExecutionError"
    return "UnknownError"


@dataclass
class RpcFailure:
    """
    Classified failure of one RPC call.

    kind: TransportFailure | DecodeFailure | RemoteImportError |
          RemoteExecutionError | UnknownError
    """
    kind: str
    function: str
    title: str
    lines: List[str] = field(default_factory=list)
    err_cls: Optional[str] = None
    err_message: Optional[str] = None

    def __str__(self) -> str:
        return "\n".join([f"{self.kind}: {self.title}"] + self.lines)


_KIND_BY_STATUS = {
    STATUS_IMPORT_ERROR: "RemoteImportError",
    STATUS_EXECUTION_ERROR: "RemoteExecutionError",
}


class RpcGateway:
    """
    Calls remote functions in the kernel.

    ``call`` never raises for transport, decode or remote failures: it
    reports them and resolves to None, keeping the failure on
    ``last_failure`` for the caller to branch on.
    """

    def __init__(self, transport: KernelTransport, notify: Optional[Notifier] = None):
        self.transport = transport
        self.notify = notify
        self.last_failure: Optional[RpcFailure] = None

    async def _report(self, failure: RpcFailure) -> None:
        console = get_console()
        console.print_debug(str(failure))
        if self.notify is None:
            console.report(failure.title, failure.lines, error=True)
            return
        out = self.notify(failure.title, failure.lines)
        if inspect.isawaitable(out):
            await out

    async def _fail(self, failure: RpcFailure, report: bool) -> None:
        self.last_failure = failure
        if report:
            await self._report(failure)
        else:
            get_console().print_debug(str(failure))

    async def call(
        self,
        function: str,
        kwargs: Optional[Dict[str, Any]] = None,
        report: bool = True,
    ) -> Optional[Any]:
        """
        Execute ``function`` in the kernel with keyword arguments.

        Args:
            function: Remote function name (e.g., "kfp.get_run")
            kwargs: Keyword arguments, validated against the request schema
            report: If False, failures are only logged in debug mode

        Returns:
            The remote result, or None on any failure

        Raises:
            SchemaError: unknown function or arguments not matching its schema
        """
        console = get_console()
        payload = validate_request(function, kwargs)
        args_str = ", ".join(f"{k}={v}" for k, v in payload.items())
        msg = [f"Function Call: {function}({args_str})"]
        self.last_failure = None

        reply = await self.transport.execute(function, encode_kwargs(payload))

        if reply.status != "ok":
            await self._fail(
                RpcFailure(
                    kind="TransportFailure",
                    function=function,
                    title="Kernel failed during code execution",
                    lines=msg + [f"Status: {reply.status}", f"Output: {reply.data}"],
                ),
                report,
            )
            return None

        try:
            parsed = json.loads(reply.data)
            if not isinstance(parsed, dict):
                raise ValueError("reply payload is not a JSON object")
        except ValueError as e:
            await self._fail(
                RpcFailure(
                    kind="DecodeFailure",
                    function=function,
                    title="Failed to parse response as JSON",
                    lines=msg + [f"Error: {e}", f"Response data: {reply.data}"],
                ),
                report,
            )
            return None

        status = parsed.get("status")
        if status != STATUS_OK:
            await self._fail(
                RpcFailure(
                    kind=_KIND_BY_STATUS.get(status, "UnknownError"),
                    function=function,
                    title="An error has occurred",
                    lines=msg + [
                        f"Status: {status} ({rpc_status_name(status)})",
                        f"Type: {parsed.get('err_cls')}",
                        f"Message: {parsed.get('err_message')}",
                    ],
                    err_cls=parsed.get("err_cls"),
                    err_message=parsed.get("err_message"),
                ),
                report,
            )
            return None

        result = parsed.get("result")
        try:
            validate_response(function, result)
        except ValidationError as e:
            await self._fail(
                RpcFailure(
                    kind="DecodeFailure",
                    function=function,
                    title="Unexpected response from kernel",
                    lines=msg + [f"Error: {e}", f"Response data: {reply.data}"],
                ),
                report,
            )
            return None

        console.print_debug("\n".join(msg + [f"Result: {result}"]))
        return result
