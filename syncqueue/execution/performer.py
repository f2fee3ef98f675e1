# syncqueue/execution/performer.py
import importlib
from typing import Any, Callable, Dict, Optional

from syncqueue.common.exceptions import HandlerNotFoundError, JobLoadError

Handler = Callable[[Any], Any]


def load_handler(path: str) -> Handler:
    """Imports ``"package.module:function"`` (or ``package.module.function``)."""
    if ":" in path:
        module_name, _, func_name = path.partition(":")
    else:
        module_name, _, func_name = path.rpartition(".")
    if not module_name or not func_name:
        raise JobLoadError(f"Invalid handler path: {path!r}")
    try:
        module = importlib.import_module(module_name)
        target_func = getattr(module, func_name)
    except (ImportError, AttributeError) as e:
        raise JobLoadError(f"Could not load job handler: {module_name}.{func_name}") from e
    if not callable(target_func):
        raise JobLoadError(f"Job handler is not callable: {module_name}.{func_name}")
    return target_func


class HandlerRegistry:
    """Maps a job type to the callable that performs it."""

    def __init__(self, handlers: Optional[Dict[str, Handler]] = None):
        self._handlers: Dict[str, Handler] = dict(handlers or {})

    def register(self, job_type: str, handler: Optional[Handler] = None):
        """Registers ``handler`` for ``job_type``; without a handler, acts as a decorator."""
        if handler is None:
            def decorator(func: Handler) -> Handler:
                self._handlers[job_type] = func
                return func

            return decorator
        self._handlers[job_type] = handler
        return handler

    def register_path(self, job_type: str, path: str) -> Handler:
        return self.register(job_type, load_handler(path))

    def resolve(self, job_type: str) -> Handler:
        try:
            return self._handlers[job_type]
        except KeyError:
            raise HandlerNotFoundError(f"No handler registered for job type '{job_type}'") from None

    def __contains__(self, job_type: str) -> bool:
        return job_type in self._handlers

    @property
    def job_types(self):
        return sorted(self._handlers)


def perform_job(registry: HandlerRegistry, job_type: str, options: Any) -> Any:
    """Looks up the handler for ``job_type`` and runs it on the job's options."""
    handler = registry.resolve(job_type)
    return handler(options)
