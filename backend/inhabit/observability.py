import json
import time
from contextvars import ContextVar
from typing import Any, Optional

from fastapi import Request


REQUEST_ID_HEADER = "X-Request-Id"
REQUEST_ID_MAX_LEN = 128

_request_id_var: ContextVar[str] = ContextVar("inhabit_request_id", default="")
_request_path_var: ContextVar[str] = ContextVar("inhabit_request_path", default="")


def is_valid_request_id(value: str) -> bool:
    candidate = value.strip()
    return 0 < len(candidate) <= REQUEST_ID_MAX_LEN


def get_request_id(request: Request) -> str:
    request_id = getattr(request.state, "request_id", None)
    return request_id if isinstance(request_id, str) else ""


def bind_request_context(request_id: str, path: str) -> tuple[Any, Any]:
    return _request_id_var.set(request_id), _request_path_var.set(path)


def unbind_request_context(tokens: tuple[Any, Any]) -> None:
    request_id_token, path_token = tokens
    _request_id_var.reset(request_id_token)
    _request_path_var.reset(path_token)


def current_request_context() -> dict[str, str]:
    return {"request_id": _request_id_var.get(), "path": _request_path_var.get()}


def log_ctx(
    request: Optional[Request] = None,
    user_id: Optional[Any] = None,
    habit_id: Optional[Any] = None,
    extra: Optional[dict[str, Any]] = None,
) -> dict[str, Any]:
    """Build the structured context attached to log events.

    Outside a request (scripts, service calls in tests) the ambient
    request id and path from the context variables are used instead.
    """
    if request is not None:
        context: dict[str, Any] = {
            "request_id": get_request_id(request),
            "path": request.url.path,
            "method": request.method,
        }
    else:
        context = dict(current_request_context())

    if user_id is not None:
        context["user_id"] = str(user_id)
    if habit_id is not None:
        context["habit_id"] = str(habit_id)
    for key, value in (extra or {}).items():
        if value is not None:
            context[key] = value
    return context


def log_ctx_json(context: dict[str, Any]) -> str:
    return json.dumps(context, separators=(",", ":"), ensure_ascii=False, default=str)


def duration_ms(started_at: float) -> int:
    return int((time.monotonic() - started_at) * 1000)
