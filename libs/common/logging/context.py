"""Resolution pass ID generation and context propagation.

Every resolution pass gets a short unique id stored in a context variable.
asyncio tasks and ``asyncio.to_thread`` workers copy the current context,
so every log line emitted during a pass (including provider SDK calls in
worker threads) carries the same ``pass_id``.

Example:
    >>> with ResolutionPassContext() as pass_id:
    ...     get_pass_id() == pass_id
    True
    >>> get_pass_id() is None
    True
"""

import contextvars
import uuid
from types import TracebackType

_pass_id_var: contextvars.ContextVar[str | None] = contextvars.ContextVar("pass_id", default=None)


def generate_pass_id() -> str:
    """Generate a new pass id (first 12 hex chars of a UUID4)."""
    return uuid.uuid4().hex[:12]


def get_pass_id() -> str | None:
    return _pass_id_var.get()


def set_pass_id(pass_id: str) -> None:
    """Set the pass id for the current context.

    Raises:
        ValueError: If pass_id is empty
    """
    if not pass_id:
        raise ValueError("Pass ID cannot be empty")
    _pass_id_var.set(pass_id)


def clear_pass_id() -> None:
    _pass_id_var.set(None)


class ResolutionPassContext:
    """Context manager for scoped pass ID management.

    Sets a pass id for a block of code and restores the previous value when
    done, so nested passes (resolve_documents -> resolve_all) stay correct.

    Args:
        pass_id: The pass id to use. If None, generates a new one.
    """

    def __init__(self, pass_id: str | None = None) -> None:
        self.pass_id = pass_id or generate_pass_id()
        self._token: contextvars.Token[str | None] | None = None

    def __enter__(self) -> str:
        self._token = _pass_id_var.set(self.pass_id)
        return self.pass_id

    def __exit__(
        self,
        exc_type: type[BaseException] | None,
        exc_val: BaseException | None,
        exc_tb: TracebackType | None,
    ) -> None:
        if self._token is not None:
            _pass_id_var.reset(self._token)
            self._token = None
