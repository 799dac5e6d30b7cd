"""Asynchronous resolution on a worker thread.

The expensive part of a resolution (:meth:`Engine.resolve_system_network`)
runs in a :class:`~concurrent.futures.ThreadPoolExecutor`; only the final
commit (:meth:`AsyncResolution.apply`) happens on the caller's thread.
Every resolution gets its own :class:`Engine` and works on its own
transaction, so the real graph is not touched until ``apply``.

Usage::

    resolver = AsyncResolution(graph, registry)
    resolver.start(requirements)
    ...
    if resolver.finished() and resolver.valid(requirements):
        result = resolver.apply()
"""

from __future__ import annotations

import logging
import threading
from concurrent.futures import CancelledError, Executor, Future, ThreadPoolExecutor
from typing import Any, Iterable, Optional

from netresolve.config import ResolutionConfig
from netresolve.exceptions import AsyncResolutionError
from netresolve.models.component import ModelRegistry
from netresolve.models.requirements import InstanceRequirement
from netresolve.network.engine import Engine, ResolutionResult
from netresolve.network.hooks import ResolutionHooks
from netresolve.plan.graph import TaskGraph

logger = logging.getLogger(__name__)


class Resolution:
    """One asynchronous resolution of a fixed set of requirements."""

    def __init__(
        self,
        engine: Engine,
        requirements: Iterable[InstanceRequirement],
        overrides: Optional[dict[str, Any]] = None,
    ) -> None:
        self.engine = engine
        self.requirements = list(requirements)
        self.requirement_keys = frozenset(r.key() for r in self.requirements)
        self.overrides = dict(overrides or {})
        self.future: Optional[Future] = None
        self._cancelled = threading.Event()
        self._lock = threading.Lock()
        self._finalized = False

    def _run(self) -> dict[str, int]:
        return self.engine.resolve_system_network(self.requirements, **self.overrides)

    def execute(self, executor: Executor) -> None:
        if self.future is not None:
            raise AsyncResolutionError("resolution already started")
        self.future = executor.submit(self._run)
        self.future.add_done_callback(self._on_done)

    def _on_done(self, future: Future) -> None:
        if self._cancelled.is_set():
            logger.debug("discarding the network of a cancelled resolution")
            self.finalize()

    def finalize(self) -> None:
        """Finalize the engine, once, from whichever thread gets here first."""
        with self._lock:
            if self._finalized:
                return
            self._finalized = True
            self.engine.finalize()

    def cancel(self) -> None:
        """Mark the resolution as cancelled; its result will be discarded."""
        self._cancelled.set()
        if self.future is None:
            return
        if self.future.cancel() or self.future.done():
            self.finalize()

    @property
    def cancelled(self) -> bool:
        return self._cancelled.is_set()

    @property
    def started(self) -> bool:
        return self.future is not None

    def finished(self) -> bool:
        return self.future is not None and self.future.done()

    def failure(self) -> Optional[BaseException]:
        if not self.finished() or self.future.cancelled():
            return None
        return self.future.exception()


class AsyncResolution:
    """Runs resolutions in the background and applies them on demand."""

    def __init__(
        self,
        graph: TaskGraph,
        registry: ModelRegistry,
        config: Optional[ResolutionConfig] = None,
        hooks: Optional[ResolutionHooks] = None,
        executor: Optional[Executor] = None,
    ) -> None:
        self.graph = graph
        self.registry = registry
        self.config = config or ResolutionConfig()
        self.hooks = hooks or ResolutionHooks()
        self._owns_executor = executor is None
        self.executor = executor or ThreadPoolExecutor(
            max_workers=1, thread_name_prefix="netresolve-async"
        )
        self.resolution: Optional[Resolution] = None

    def _current(self) -> Resolution:
        if self.resolution is None:
            raise AsyncResolutionError("no resolution has been prepared")
        return self.resolution

    def _started(self) -> Resolution:
        resolution = self._current()
        if not resolution.started:
            raise AsyncResolutionError("the resolution has not been started")
        return resolution

    def prepare(
        self, requirements: Iterable[InstanceRequirement], **overrides: Any
    ) -> Resolution:
        """Create (without starting) a resolution, cancelling the current one."""
        if self.resolution is not None and not self.resolution.cancelled:
            self.resolution.cancel()
        engine = Engine(self.graph, self.registry, self.config, self.hooks)
        self.resolution = Resolution(engine, requirements, overrides)
        return self.resolution

    def start(self, requirements: Iterable[InstanceRequirement], **overrides: Any) -> Resolution:
        """Prepare a resolution and submit it to the executor."""
        resolution = self.prepare(requirements, **overrides)
        resolution.execute(self.executor)
        logger.debug(
            "started asynchronous resolution of %d requirement(s)", len(resolution.requirements)
        )
        return resolution

    def valid(self, current: Iterable[InstanceRequirement]) -> bool:
        """Whether the resolution was computed for *current* requirements."""
        return frozenset(r.key() for r in current) == self._current().requirement_keys

    def cancel(self) -> None:
        self._current().cancel()

    def cancelled(self) -> bool:
        return self._current().cancelled

    def finished(self) -> bool:
        return self._current().finished()

    def complete(self) -> bool:
        """Finished without failure and without being cancelled."""
        resolution = self._current()
        return resolution.finished() and not resolution.cancelled and resolution.failure() is None

    def join(self, timeout: Optional[float] = None) -> dict[str, int]:
        """Wait for the resolution and return the required task ids.

        Raises:
            AsyncResolutionError: If the resolution was cancelled, whether
                or not its worker already finished.
            Exception: The resolution's failure, if it failed.
        """
        resolution = self._started()
        if resolution.cancelled:
            raise AsyncResolutionError("the resolution was cancelled")
        try:
            return resolution.future.result(timeout)
        except CancelledError:
            raise AsyncResolutionError("the resolution was cancelled") from None

    def apply(self) -> Optional[ResolutionResult]:
        """Commit a finished resolution to the graph.

        A cancelled resolution is discarded and None is returned. A failed
        one goes through the engine's error policy and its failure is
        raised.

        Raises:
            AsyncResolutionError: If the resolution is not finished.
        """
        resolution = self._started()
        if not resolution.finished():
            raise AsyncResolutionError("the resolution is still running")
        engine = resolution.engine
        try:
            if resolution.cancelled:
                logger.info("discarding the result of a cancelled resolution")
                return None
            failure = resolution.failure()
            if failure is not None:
                engine.handle_resolution_exception(failure)
                raise failure
            try:
                return engine.apply_system_network_to_plan()
            except Exception as exc:
                engine.handle_resolution_exception(exc)
                raise
        finally:
            resolution.finalize()

    def shutdown(self, wait: bool = True) -> None:
        """Shut down the executor if it was created by this object."""
        if self._owns_executor:
            self.executor.shutdown(wait=wait)
