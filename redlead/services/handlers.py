"""Registry of the worker functions behind each recurring job.

The worker functions themselves (lead discovery, subreddit analysis, ...)
live with the persistence and Reddit code. They are plugged in either
programmatically or through a module named by JOB_HANDLERS_MODULE that
exposes ``register_handlers(registry)``::

    # myapp/jobs.py
    def register_handlers(registry):
        registry.register("lead-discovery", run_lead_discovery_worker)
        ...
"""

import importlib
from typing import Awaitable, Callable, Dict, List, Optional

from redlead.constants import ALL_QUEUES
from redlead.core.logging import get_logger

logger = get_logger(__name__)

WorkerFunction = Callable[[], Awaitable[object]]


class HandlerNotRegisteredError(LookupError):
    """No worker function is registered for a job."""

    def __init__(self, job: str):
        self.job = job
        super().__init__(f"No handler registered for job '{job}'")


class JobHandlerRegistry:
    """Maps a queue name to the zero-argument coroutine function it runs."""

    def __init__(self):
        self._handlers: Dict[str, WorkerFunction] = {}

    def register(self, job: str, fn: WorkerFunction) -> WorkerFunction:
        if job not in ALL_QUEUES:
            logger.warning("Registering handler for unknown job", job=job)
        if job in self._handlers:
            logger.info("Replacing job handler", job=job)
        self._handlers[job] = fn
        return fn

    def handler(self, job: str) -> Callable[[WorkerFunction], WorkerFunction]:
        """Decorator form of ``register``."""
        def decorator(fn: WorkerFunction) -> WorkerFunction:
            return self.register(job, fn)
        return decorator

    def get(self, job: str) -> WorkerFunction:
        try:
            return self._handlers[job]
        except KeyError:
            raise HandlerNotRegisteredError(job) from None

    def has(self, job: str) -> bool:
        return job in self._handlers

    def missing(self) -> List[str]:
        return [job for job in ALL_QUEUES if job not in self._handlers]

    def load_module(self, module_path: Optional[str]) -> None:
        """Import ``module_path`` and let it register its handlers.

        Import errors and a missing ``register_handlers`` propagate: a
        misconfigured handlers module is a startup error.
        """
        if not module_path:
            logger.debug("No job handlers module configured")
            return
        module = importlib.import_module(module_path)
        register = getattr(module, "register_handlers", None)
        if register is None:
            raise AttributeError(f"{module_path} does not define register_handlers(registry)")
        register(self)
        logger.info("Job handlers loaded", module=module_path,
                    registered=sorted(self._handlers), missing=self.missing())
