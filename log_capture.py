import contextvars
import logging
import threading
from typing import Dict, List, Optional

_current_workflow: contextvars.ContextVar[Optional[str]] = contextvars.ContextVar(
    "practice_pipeline_workflow", default=None
)


class _WorkflowRouter(logging.Handler):
    """Root handler that files each record under the workflow active in its context."""

    def __init__(self) -> None:
        super().__init__(level=logging.DEBUG)
        self.setFormatter(logging.Formatter("%(asctime)s | %(levelname)s | %(message)s"))
        self._buffers: Dict[str, List[str]] = {}
        self._limits: Dict[str, int] = {}
        self._buffer_lock = threading.Lock()

    def open(self, key: str, limit: int) -> None:
        with self._buffer_lock:
            self._buffers[key] = []
            self._limits[key] = limit

    def close_buffer(self, key: str) -> List[str]:
        with self._buffer_lock:
            self._limits.pop(key, None)
            return self._buffers.pop(key, [])

    def emit(self, record: logging.LogRecord) -> None:
        key = _current_workflow.get()
        if key is None:
            return
        try:
            line = self.format(record)
        except Exception:  # noqa: BLE001
            self.handleError(record)
            return
        with self._buffer_lock:
            buffer = self._buffers.get(key)
            if buffer is None:
                return
            buffer.append(line)
            overflow = len(buffer) - self._limits.get(key, 0)
            if overflow > 0:
                del buffer[:overflow]


_router: Optional[_WorkflowRouter] = None
_router_lock = threading.Lock()


def _get_router() -> _WorkflowRouter:
    global _router
    with _router_lock:
        if _router is None:
            _router = _WorkflowRouter()
            logging.getLogger().addHandler(_router)
        return _router


class WorkflowLogCapture:
    """Collect the log lines emitted while one workflow runs.

    Attribution follows the ``contextvars`` context, so concurrent asyncio
    tasks (and the worker threads they hand off to via ``asyncio.to_thread``)
    each see only their own lines. Only the newest ``max_lines`` are kept.
    """

    def __init__(self, key: str, max_lines: int = 200):
        self.key = key
        self.max_lines = max(0, max_lines)
        self.lines: List[str] = []
        self._token: Optional[contextvars.Token] = None

    def __enter__(self):
        if self.max_lines:
            _get_router().open(self.key, self.max_lines)
            self._token = _current_workflow.set(self.key)
        return self

    def __exit__(self, exc_type, exc, tb):
        if self._token is not None:
            _current_workflow.reset(self._token)
            self._token = None
            self.lines = _get_router().close_buffer(self.key)
        if exc:
            logging.debug("Workflow %s exited with exception: %s", self.key, exc)
        return False
