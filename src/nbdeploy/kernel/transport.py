# kernel/transport.py
from __future__ import annotations

import asyncio
import base64
import inspect
import json
import urllib.error
import urllib.request
from dataclasses import dataclass
from typing import Any, Callable, Dict, Optional, Protocol
from urllib.parse import urljoin


# Application-level status codes carried inside the reply payload
STATUS_OK = 0
STATUS_IMPORT_ERROR = 1
STATUS_EXECUTION_ERROR = 2


def encode_kwargs(kwargs: Dict[str, Any]) -> str:
    """JSON-serialize kwargs and base64 them so they travel as an opaque string."""
    raw = json.dumps(kwargs, separators=(",", ":")).encode("utf-8")
    return base64.b64encode(raw).decode("ascii")


def decode_kwargs(kwargs_encoded: str) -> Dict[str, Any]:
    if not kwargs_encoded:
        return {}
    return json.loads(base64.b64decode(kwargs_encoded).decode("utf-8"))


@dataclass
class KernelReply:
    """
    Transport-level reply.

    status: "ok" when the kernel executed the call, anything else otherwise
    data: the JSON-encoded application payload (on "ok")
    """
    status: str
    data: str = ""

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> KernelReply:
        payload = data.get("data", "")
        if not isinstance(payload, str):
            payload = json.dumps(payload)
        return cls(status=str(data.get("status", "error")), data=payload)


class KernelTransport(Protocol):
    async def execute(self, function: str, kwargs_encoded: str) -> KernelReply:
        ...


class HttpKernelTransport:
    """Sends RPC requests to a kernel bridge over HTTP."""

    def __init__(self, base_url: str, timeout: Optional[float] = None):
        """
        Initialize transport.

        Args:
            base_url: Base URL of the kernel bridge (e.g., "http://localhost:8888/nbdeploy")
            timeout: Optional socket timeout in seconds
        """
        # Ensure base_url doesn't end with /
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout

    def _post(self, function: str, kwargs_encoded: str) -> KernelReply:
        url = urljoin(self.base_url + "/", "rpc")
        body = json.dumps({"function": function, "kwargsEncoded": kwargs_encoded}).encode("utf-8")
        req = urllib.request.Request(
            url,
            data=body,
            headers={"Content-Type": "application/json"},
            method="POST",
        )
        try:
            with urllib.request.urlopen(req, timeout=self.timeout) as response:
                response_data = response.read().decode("utf-8")
        except urllib.error.HTTPError as e:
            error_body = e.read().decode("utf-8") if e.fp else ""
            return KernelReply(status=f"http {e.code} {e.reason}", data=error_body)
        except urllib.error.URLError as e:
            return KernelReply(status="network error", data=str(e.reason))
        except OSError as e:
            return KernelReply(status="network error", data=str(e))

        try:
            return KernelReply.from_dict(json.loads(response_data))
        except (json.JSONDecodeError, AttributeError):
            return KernelReply(status="invalid reply", data=response_data)

    async def execute(self, function: str, kwargs_encoded: str) -> KernelReply:
        return await asyncio.to_thread(self._post, function, kwargs_encoded)


class LocalKernelTransport:
    """
    Runs RPC functions in-process from a dispatch table.

    Produces the same envelope a kernel would: exceptions become status 1
    (ImportError) or 2 (anything else) with their class name and message.
    """

    def __init__(self, handlers: Optional[Dict[str, Callable[..., Any]]] = None):
        self.handlers: Dict[str, Callable[..., Any]] = dict(handlers or {})

    def register(self, function: str, handler: Callable[..., Any]) -> None:
        self.handlers[function] = handler

    async def execute(self, function: str, kwargs_encoded: str) -> KernelReply:
        handler = self.handlers.get(function)
        if handler is None:
            return KernelReply(status="error", data=f"No handler for {function}")

        try:
            result = handler(**decode_kwargs(kwargs_encoded))
            if inspect.isawaitable(result):
                result = await result
            data = json.dumps({"status": STATUS_OK, "result": result})
        except ImportError as e:
            data = json.dumps({
                "status": STATUS_IMPORT_ERROR,
                "err_cls": type(e).__name__,
                "err_message": str(e),
            })
        except Exception as e:
            data = json.dumps({
                "status": STATUS_EXECUTION_ERROR,
                "err_cls": type(e).__name__,
                "err_message": str(e),
            })
        return KernelReply(status="ok", data=data)
