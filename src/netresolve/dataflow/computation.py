"""Generic fixed-point propagation of per-port information.

A :class:`DataflowAlgorithm` describes what is computed for each port
(and for each task, using the port name ``None``) and when it can be
computed. :class:`FixedPointPropagator` drives the algorithm over a set of
tasks until every required port has final information or nothing changes
anymore. Information for a port is final ("done") once the algorithm says
so; it can never be modified afterwards.
"""

from __future__ import annotations

import copy
import logging
from abc import ABC, abstractmethod
from collections import defaultdict
from dataclasses import dataclass
from enum import Enum
from typing import Generic, Iterable, Optional, Protocol, TypeVar

from netresolve.exceptions import (
    DataflowPropagationError,
    InternalError,
    ModifyingFinalizedPortInfo,
)
from netresolve.plan.graph import TaskGraph

logger = logging.getLogger(__name__)

PortKey = Optional[str]
PortRef = tuple[int, PortKey]


class PortInfo(Protocol):
    """Information attached to a port by a dataflow algorithm."""

    def is_empty(self) -> bool: ...

    def merge(self, other: "PortInfo") -> bool: ...


InfoT = TypeVar("InfoT", bound=PortInfo)


# ---------------------------------------------------------------------------
# Triggers
# ---------------------------------------------------------------------------


class TriggerMode(str, Enum):
    """How the ports of a trigger gate propagation."""

    ALL = "ALL"
    ANY = "ANY"
    PARTIAL = "PARTIAL"


@dataclass(frozen=True)
class Trigger:
    """A set of ports whose information is needed to compute another port.

    ``ALL`` waits until every port is final, ``ANY`` fires as soon as one
    port has final information and ``PARTIAL`` propagates whatever is
    available, completing once every port is final.
    """

    ports: frozenset[PortRef]
    mode: TriggerMode = TriggerMode.ALL

    def ports_to_propagate(self, state: PropagationState) -> tuple[list[PortRef], bool]:
        """Return the ports whose information should be propagated now.

        Returns:
            ``(ports, complete)`` where *complete* tells whether the target
            of this trigger can be finalized after propagation.
        """
        ordered = sorted(self.ports, key=_port_ref_key)
        final = [p for p in ordered if state.has_final_information_for_port(*p)]
        if self.mode is TriggerMode.ALL:
            if len(final) == len(ordered):
                return final, True
            return [], False
        if self.mode is TriggerMode.ANY:
            return final[:1], bool(final)
        available = [p for p in ordered if state.has_information_for_port(*p)]
        return available, len(final) == len(ordered)


def _port_ref_key(ref: PortRef) -> tuple[int, str]:
    return (ref[0], "" if ref[1] is None else ref[1])


# ---------------------------------------------------------------------------
# Algorithm interface
# ---------------------------------------------------------------------------


class DataflowAlgorithm(ABC, Generic[InfoT]):
    """Per-task hooks called by :class:`FixedPointPropagator`."""

    @abstractmethod
    def required(self, tasks: Iterable[int]) -> dict[int, set[PortKey]]:
        """Ports (``None`` for the task itself) that must become final."""

    @abstractmethod
    def seed(self, state: PropagationState[InfoT], task_id: int) -> None:
        """Store the initial information of a task."""

    def triggering_ports(
        self, state: PropagationState[InfoT], task_id: int
    ) -> dict[PortKey, Trigger]:
        """Map each port of *task_id* to the trigger feeding it.

        The default feeds every input port with a concrete connection from
        the connected output ports, waiting for all of them.
        """
        sources: dict[PortKey, set[PortRef]] = defaultdict(set)
        for conn in state.graph.concrete_input_connections(task_id):
            sources[conn.sink_port].add((conn.source, conn.source_port))
        return {port: Trigger(frozenset(refs)) for port, refs in sources.items()}

    @abstractmethod
    def step(self, state: PropagationState[InfoT], task_id: int) -> bool:
        """Compute what can be computed for *task_id*.

        Returns:
            True when the task does not need to be visited anymore.
        """


# ---------------------------------------------------------------------------
# Propagation state and driver
# ---------------------------------------------------------------------------


class PropagationState(Generic[InfoT]):
    """Results and bookkeeping of one propagation run."""

    def __init__(self, graph: TaskGraph) -> None:
        self.graph = graph
        self.result: dict[int, dict[PortKey, InfoT]] = defaultdict(dict)
        self.done_ports: dict[int, set[PortKey]] = defaultdict(set)
        self.missing_ports: dict[int, set[PortKey]] = {}
        self.changed = False

    # -- queries -------------------------------------------------------------

    def has_information_for_task(self, task_id: int) -> bool:
        return self.has_information_for_port(task_id, None)

    def has_information_for_port(self, task_id: int, port: PortKey) -> bool:
        return port in self.result.get(task_id, {})

    def has_final_information_for_task(self, task_id: int) -> bool:
        return self.has_final_information_for_port(task_id, None)

    def has_final_information_for_port(self, task_id: int, port: PortKey) -> bool:
        return port in self.done_ports.get(task_id, set()) and self.has_information_for_port(
            task_id, port
        )

    def port_info(self, task_id: int, port: PortKey) -> InfoT:
        try:
            return self.result[task_id][port]
        except KeyError:
            where = "task" if port is None else f"port '{port}' of task"
            raise InternalError(f"no information for {where} #{task_id}") from None

    def task_info(self, task_id: int) -> InfoT:
        return self.port_info(task_id, None)

    def is_done(self, task_id: int, port: PortKey) -> bool:
        return port in self.done_ports.get(task_id, set())

    # -- updates -------------------------------------------------------------

    def set_port_info(self, task_id: int, port: PortKey, info: InfoT) -> None:
        if self.is_done(task_id, port):
            raise ModifyingFinalizedPortInfo(task_id, port)
        self.result[task_id][port] = info
        self.changed = True

    def add_port_info(self, task_id: int, port: PortKey, info: InfoT) -> None:
        """Merge *info* into the port's information.

        Raises:
            ModifyingFinalizedPortInfo: If the port is done.
            DataflowPropagationError: If merging fails.
        """
        if self.is_done(task_id, port):
            raise ModifyingFinalizedPortInfo(task_id, port)
        current = self.result[task_id].get(port)
        if current is None:
            self.result[task_id][port] = copy.deepcopy(info)
            self.changed = True
            return
        try:
            changed = current.merge(info)
        except InternalError:
            raise
        except Exception as exc:
            raise DataflowPropagationError(task_id, port, exc) from exc
        self.changed = self.changed or bool(changed)

    def add_task_info(self, task_id: int, info: InfoT) -> None:
        self.add_port_info(task_id, None, info)

    def remove_port_info(self, task_id: int, port: PortKey) -> None:
        self.result.get(task_id, {}).pop(port, None)

    def done_port_info(self, task_id: int, port: PortKey) -> None:
        """Mark the port's information final.

        Empty information is dropped rather than finalized.
        """
        if self.is_done(task_id, port):
            return
        info = self.result.get(task_id, {}).get(port)
        if info is not None and info.is_empty():
            self.remove_port_info(task_id, port)
        logger.debug("done computing information for %s", _describe(task_id, port))
        self.done_ports[task_id].add(port)
        missing = self.missing_ports.get(task_id)
        if missing is not None:
            missing.discard(port)
            if not missing:
                del self.missing_ports[task_id]
        self.changed = True

    def done_task_info(self, task_id: int) -> None:
        self.done_port_info(task_id, None)

    def prune(self) -> None:
        """Drop empty and non-final information."""
        for task_id in list(self.result):
            ports = self.result[task_id]
            for port in list(ports):
                if ports[port].is_empty() or not self.is_done(task_id, port):
                    del ports[port]
            if not ports:
                del self.result[task_id]


class FixedPointPropagator(Generic[InfoT]):
    """Runs a :class:`DataflowAlgorithm` to its fixed point."""

    def __init__(self, algorithm: DataflowAlgorithm[InfoT], graph: TaskGraph) -> None:
        self.algorithm = algorithm
        self.graph = graph

    def propagate(self, tasks: Iterable[int]) -> PropagationState[InfoT]:
        """Propagate information over *tasks* until nothing changes.

        Tasks are visited in order of increasing number of pending
        triggering connections, so that the ones waiting on the fewest
        inputs make progress first. Iteration stops when no required port
        is missing or when a full pass produced no change.

        Returns:
            The propagation state, pruned of empty and non-final entries.
        """
        task_ids = sorted(set(tasks))
        state: PropagationState[InfoT] = PropagationState(self.graph)
        required = self.algorithm.required(task_ids)
        state.missing_ports = {
            task_id: set(ports) for task_id, ports in required.items() if ports
        }

        for task_id in task_ids:
            self.algorithm.seed(state, task_id)

        triggering: dict[int, dict[PortKey, Trigger]] = {}
        for task_id in task_ids:
            triggers = self.algorithm.triggering_ports(state, task_id)
            if triggers:
                triggering[task_id] = dict(triggers)

        remaining = list(task_ids)
        iteration = 0
        while state.missing_ports:
            iteration += 1
            state.changed = False
            self._propagate_connections(state, triggering)
            remaining.sort(key=lambda t: (len(triggering.get(t, ())), t))
            remaining = [t for t in remaining if not self.algorithm.step(state, t)]
            logger.debug(
                "propagation pass %d: %d task(s) with missing ports, changed=%s",
                iteration,
                len(state.missing_ports),
                state.changed,
            )
            if not state.changed:
                break

        if state.missing_ports:
            logger.debug(
                "fixed point reached with missing information on %s",
                ", ".join(
                    _describe(t, p)
                    for t in sorted(state.missing_ports)
                    for p in sorted(state.missing_ports[t], key=lambda x: x or "")
                ),
            )
        state.prune()
        return state

    @staticmethod
    def _propagate_connections(
        state: PropagationState[InfoT], triggering: dict[int, dict[PortKey, Trigger]]
    ) -> None:
        for task_id in list(triggering):
            triggers = triggering[task_id]
            for port in list(triggers):
                if state.is_done(task_id, port):
                    del triggers[port]
                    continue
                ports, complete = triggers[port].ports_to_propagate(state)
                for source in ports:
                    state.add_port_info(task_id, port, state.port_info(*source))
                if complete:
                    state.done_port_info(task_id, port)
                    del triggers[port]
            if not triggers:
                del triggering[task_id]


def _describe(task_id: int, port: PortKey) -> str:
    return f"#{task_id}" if port is None else f"#{task_id}.{port}"
