"""Port dynamics propagation and connection policy computation.

:class:`DataflowDynamics` is a :class:`DataflowAlgorithm` computing, for
every output port of the deployed tasks, the set of triggers that cause
samples to be written on it. Once these are final, the buffer size a
reliable connection needs is derived from the number of samples the
source can write while the sink is not reading.
"""

from __future__ import annotations

import logging
import math
from collections import defaultdict
from dataclasses import dataclass
from typing import TYPE_CHECKING, Iterable, Optional

from netresolve.dataflow.computation import (
    DataflowAlgorithm,
    FixedPointPropagator,
    PortKey,
    PortRef,
    PropagationState,
    Trigger,
)
from netresolve.exceptions import InternalError, SpecError
from netresolve.models.component import ModelRegistry, PortModel
from netresolve.models.enums import ActivityType, ComponentKind, PolicyType, PortDirection
from netresolve.models.policy import ConnectionPolicy
from netresolve.models.task import Task
from netresolve.plan.graph import TaskGraph

if TYPE_CHECKING:
    from netresolve.network.replacement import ReplacementGraph

logger = logging.getLogger(__name__)

PolicyMap = dict[tuple[int, int], dict[tuple[str, str], ConnectionPolicy]]

DEFAULT_BUFFER_SIZE_MARGIN = 0.1


# ---------------------------------------------------------------------------
# Dynamics model
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class DynamicsTrigger:
    """``sample_count`` samples are written every ``period`` seconds.

    A period of 0 means the samples are written once in a while with no
    known rate (e.g. bursts).
    """

    name: str
    period: float
    sample_count: int


class PortDynamics:
    """Triggers known to cause writes on a port.

    Attributes:
        name:        Human-readable origin of the dynamics.
        sample_size: Number of samples written per trigger occurrence.
        triggers:    Unique triggers, in insertion order.
    """

    def __init__(self, name: str, sample_size: int = 1) -> None:
        self.name = name
        self.sample_size = sample_size
        self.triggers: list[DynamicsTrigger] = []

    def __repr__(self) -> str:
        triggers = ", ".join(
            f"({t.name}): {t.period} {t.sample_count}" for t in self.triggers
        )
        return f"PortDynamics({self.name!r}, sample_size={self.sample_size}, [{triggers}])"

    def is_empty(self) -> bool:
        return not self.triggers

    def add_trigger(self, name: str, period: float, sample_count: int) -> bool:
        """Add a trigger. Triggers writing no samples are ignored.

        Returns:
            True if the trigger set changed.
        """
        if sample_count == 0:
            return False
        trigger = DynamicsTrigger(name, period, sample_count)
        if trigger in self.triggers:
            return False
        self.triggers.append(trigger)
        return True

    def merge(self, other: PortDynamics) -> bool:
        """Union the triggers of *other* into this one."""
        changed = False
        for trigger in other.triggers:
            changed = self.add_trigger(trigger.name, trigger.period, trigger.sample_count) or changed
        return changed

    def minimal_period(self) -> Optional[float]:
        """Smallest non-zero trigger period, or None if there is none."""
        periods = [t.period for t in self.triggers if t.period > 0]
        return min(periods) if periods else None

    def sample_count(self, duration: float) -> int:
        """Worst-case number of trigger occurrences within *duration*."""
        total = 0
        for trigger in self.triggers:
            if trigger.period == 0:
                total += trigger.sample_count
            else:
                total += math.ceil(round(duration / trigger.period, 9)) * trigger.sample_count
        return total

    def queue_size(self, duration: float) -> int:
        """Samples to store so that none is lost if read every *duration*."""
        return (1 + self.sample_count(duration)) * self.sample_size

    def sampled_at(self, duration: float) -> PortDynamics:
        """The dynamics seen by a reader polling every *duration* seconds."""
        result = PortDynamics(self.name, self.sample_size)
        if self.triggers:
            names = ",".join(t.name for t in self.triggers)
            result.add_trigger(
                f"{self.name}.resample({names},{duration})", duration, self.sample_count(duration)
            )
        return result


def compute_buffer_policy(
    dynamics: PortDynamics, latency: float, margin: float = DEFAULT_BUFFER_SIZE_MARGIN
) -> ConnectionPolicy:
    """Buffer policy for a reader with the given reading *latency*.

    The size is the source's queue size over the latency, grown by the
    safety *margin* and rounded up.
    """
    if margin < 0:
        raise ValueError(f"buffer size margin must be non-negative, got {margin}")
    size = math.ceil(round((1 + margin) * dynamics.queue_size(latency), 9))
    return ConnectionPolicy.buffer(max(size, 1))


# ---------------------------------------------------------------------------
# Propagation
# ---------------------------------------------------------------------------


class DataflowDynamics(DataflowAlgorithm[PortDynamics]):
    """Computes port dynamics and the connection policies derived from them."""

    def __init__(
        self,
        graph: TaskGraph,
        registry: ModelRegistry,
        buffer_size_margin: float = DEFAULT_BUFFER_SIZE_MARGIN,
    ) -> None:
        if buffer_size_margin < 0:
            raise ValueError(
                f"buffer size margin must be non-negative, got {buffer_size_margin}"
            )
        self.graph = graph
        self.registry = registry
        self.buffer_size_margin = buffer_size_margin
        self.state: Optional[PropagationState[PortDynamics]] = None
        self._triggers: dict[PortRef, set[PortRef]] = defaultdict(set)

    # -- model queries -------------------------------------------------------

    def activity(self, task: Task) -> ActivityType:
        return task.activity or self.registry.component(task.model).activity

    def period(self, task: Task) -> Optional[float]:
        return task.period or self.registry.component(task.model).period

    def ports(self, task: Task) -> list[PortModel]:
        ports = self.registry.ports(task.model)
        known = {p.name for p in ports}
        for name, sample_size in sorted(task.extra_ports.items()):
            if name not in known:
                ports.append(
                    PortModel(
                        name=name,
                        direction=PortDirection.OUTPUT,
                        sample_size=sample_size,
                        triggered_on_update=False,
                    )
                )
        return ports

    def port(self, task: Task, name: str) -> Optional[PortModel]:
        return next((p for p in self.ports(task) if p.name == name), None)

    def output_ports(self, task: Task) -> list[PortModel]:
        return [p for p in self.ports(task) if p.is_output]

    def trigger_ports(self, task: Task) -> list[PortModel]:
        return [p for p in self.ports(task) if p.is_input and p.trigger_port]

    def master_of(self, task: Task) -> Optional[int]:
        """Id of the task whose activity drives a SLAVE task."""
        if self.activity(task) is not ActivityType.SLAVE or task.execution_agent is None:
            return None
        for other in self.graph.executed_tasks(task.execution_agent):
            if other.orocos_name == task.master and other.id != task.id:
                return other.id
        return None

    # -- propagation ---------------------------------------------------------

    def propagate(self, tasks: Iterable[int]) -> PropagationState[PortDynamics]:
        self._triggers = defaultdict(set)
        self.state = FixedPointPropagator(self, self.graph).propagate(tasks)
        return self.state

    def required(self, tasks: Iterable[int]) -> dict[int, set[PortKey]]:
        result: dict[int, set[PortKey]] = {}
        for task_id in tasks:
            outputs = self.output_ports(self.graph[task_id])
            if outputs:
                result[task_id] = {p.name for p in outputs} | {None}
        return result

    def seed(self, state: PropagationState[PortDynamics], task_id: int) -> None:
        task = self.graph[task_id]
        label = task.orocos_name or task.label()
        state.set_port_info(task_id, None, PortDynamics(f"{label}.main"))
        for port in self.output_ports(task):
            dynamics = PortDynamics(f"{label}.{port.name}", port.sample_size)
            if port.burst_size:
                dynamics.add_trigger("burst", port.burst_period, port.burst_size)
            state.set_port_info(task_id, port.name, dynamics)

        for port_name, period in sorted(task.port_periods.items()):
            port = self.port(task, port_name)
            if port is None or not port.is_output:
                raise SpecError(
                    f"{port_name} is not an output port of {task.label()}, "
                    f"cannot request a period for it"
                )
            dynamics = PortDynamics(f"{label}.{port_name}", port.sample_size)
            dynamics.add_trigger("period", period, 1)
            state.set_port_info(task_id, port_name, dynamics)
            state.done_port_info(task_id, port_name)

        if task.bus_clients:
            self._seed_com_bus(state, task)
        if task.device is not None and task.device in self.registry.devices:
            self._seed_device(state, task)

        activity = self.activity(task)
        if activity is ActivityType.PERIODIC:
            period = self.period(task)
            if period is not None:
                main = PortDynamics(f"{label}.main")
                main.add_trigger(f"{label}.main-period", period, 1)
                state.add_task_info(task_id, main)
            state.done_task_info(task_id)
        elif activity is not ActivityType.SLAVE and not self.trigger_ports(task):
            state.done_task_info(task_id)

    def _device_dynamics(self, device_name: str) -> PortDynamics:
        device = self.registry.device(device_name)
        dynamics = PortDynamics(device.name, device.sample_size)
        if device.period is not None:
            dynamics.add_trigger(device.name, device.period, 1)
        dynamics.add_trigger(f"{device.name}-burst", 0, device.burst)
        return dynamics

    def _seed_device(self, state: PropagationState[PortDynamics], task: Task) -> None:
        dynamics = self._device_dynamics(task.device)
        outputs = [p for p in self.output_ports(task) if not state.is_done(task.id, p.name)]
        period = self.period(task)
        if self.activity(task) is ActivityType.PERIODIC and period is not None:
            for port in outputs:
                sampled = PortDynamics(f"{task.device}.{port.name}", port.sample_size)
                sampled.add_trigger(task.device, period, dynamics.queue_size(period))
                state.add_port_info(task.id, port.name, sampled)
                state.done_port_info(task.id, port.name)
            return
        state.add_task_info(task.id, dynamics)
        for port in outputs:
            state.add_port_info(task.id, port.name, dynamics)
            state.done_port_info(task.id, port.name)

    def _seed_com_bus(self, state: PropagationState[PortDynamics], task: Task) -> None:
        for client in task.bus_clients:
            if state.is_done(task.id, client):
                continue
            state.set_port_info(task.id, client, self._device_dynamics(client))
            state.done_port_info(task.id, client)

    def triggering_ports(
        self, state: PropagationState[PortDynamics], task_id: int
    ) -> dict[PortKey, Trigger]:
        task = self.graph[task_id]
        connected = {c.sink_port for c in self.graph.concrete_input_connections(task_id)}

        main = self._triggers[(task_id, None)]
        for port in self.trigger_ports(task):
            if port.name in connected:
                main.add((task_id, port.name))
        master = self.master_of(task)
        if master is not None:
            main.add((master, None))

        for port in self.output_ports(task):
            if state.is_done(task_id, port.name):
                continue
            triggers = self._triggers[(task_id, port.name)]
            if port.triggered_on_update:
                triggers.add((task_id, None))
            for input_name in port.port_triggers:
                if input_name in connected:
                    triggers.add((task_id, input_name))
            if not triggers:
                state.done_port_info(task_id, port.name)
        return super().triggering_ports(state, task_id)

    def step(self, state: PropagationState[PortDynamics], task_id: int) -> bool:
        missing = state.missing_ports.get(task_id)
        if missing is None:
            return True
        for port in sorted(missing, key=lambda p: "" if p is None else f"~{p}"):
            self.compute_info_for(state, task_id, port)
        return task_id not in state.missing_ports

    def compute_info_for(
        self, state: PropagationState[PortDynamics], task_id: int, port: PortKey
    ) -> bool:
        """Finalize *port* once every port triggering it is final."""
        if state.is_done(task_id, port):
            return True
        triggers = sorted(
            self._triggers.get((task_id, port), set()), key=lambda r: (r[0], r[1] or "")
        )
        if not all(state.is_done(*ref) for ref in triggers):
            return False
        task = self.graph[task_id]
        period = self.period(task)
        periodic = self.activity(task) is ActivityType.PERIODIC and period is not None
        for ref in triggers:
            if not state.has_information_for_port(*ref):
                continue
            info = state.port_info(*ref)
            state.add_port_info(task_id, port, info.sampled_at(period) if periodic else info)
        state.done_port_info(task_id, port)
        return True

    def apply_merges(self, replacement: ReplacementGraph) -> None:
        """Re-key the computed dynamics onto the merged tasks."""
        if self.state is None:
            return
        result: dict[int, dict[PortKey, PortDynamics]] = defaultdict(dict)
        done: dict[int, set[PortKey]] = defaultdict(set)
        for task_id, ports in self.state.result.items():
            result[replacement.replacement_for(task_id)].update(ports)
        for task_id, ports in self.state.done_ports.items():
            done[replacement.replacement_for(task_id)].update(ports)
        self.state.result = result
        self.state.done_ports = done

    def port_dynamics(self) -> dict[tuple[int, PortKey], PortDynamics]:
        if self.state is None:
            return {}
        return {
            (task_id, port): info
            for task_id, ports in self.state.result.items()
            for port, info in ports.items()
        }

    # -- policies ------------------------------------------------------------

    def compute_reading_latency(self, sink_id: int, sink_port: str) -> Optional[float]:
        """Worst-case delay between two reads of *sink_port*, if known."""
        sink = self.graph[sink_id]
        model = self.registry.component(sink.model)
        port = self.port(sink, sink_port)
        if port is not None and port.trigger_port:
            return model.trigger_latency
        if self.state is not None and self.state.has_final_information_for_task(sink_id):
            period = self.state.task_info(sink_id).minimal_period()
            if period is not None:
                return period + model.trigger_latency
        return None

    def policy_for(
        self,
        source_id: int,
        source_port: str,
        sink_port: str,
        sink_id: int,
        policy: Optional[ConnectionPolicy] = None,
        fallback: Optional[ConnectionPolicy] = None,
    ) -> ConnectionPolicy:
        """Compute the policy of the connection ``source_port -> sink_port``.

        A complete *policy* is returned unchanged. A partial one is merged
        with the computed policy.

        Raises:
            InternalError: If a port does not exist or has the wrong direction.
            SpecError: If a reliable connection's policy cannot be computed
                and no *fallback* is given.
        """
        source, sink = self.graph[source_id], self.graph[sink_id]
        out_port = self.port(source, source_port)
        if out_port is None or not out_port.is_output:
            raise InternalError(f"{source_port} is not an output port of {source.label()}")
        in_port = self.port(sink, sink_port)
        if in_port is None or not in_port.is_input:
            raise InternalError(f"{sink_port} is not an input port of {sink.label()}")

        if policy is not None and policy.is_complete():
            return policy

        if not in_port.needs_reliable_connection:
            if in_port.required_connection_type is PolicyType.BUFFER:
                computed = ConnectionPolicy.buffer(1)
            else:
                computed = ConnectionPolicy.data()
        else:
            computed = self.compute_reliable_connection_policy(
                source_id, source_port, sink_id, sink_port, fallback
            )

        if policy is None or policy.is_empty():
            return computed
        if policy.type is PolicyType.BUFFER and computed.type is PolicyType.DATA:
            computed = ConnectionPolicy.buffer(1)
        return policy.merge(computed)

    def compute_reliable_connection_policy(
        self,
        source_id: int,
        source_port: str,
        sink_id: int,
        sink_port: str,
        fallback: Optional[ConnectionPolicy] = None,
    ) -> ConnectionPolicy:
        source, sink = self.graph[source_id], self.graph[sink_id]
        unresolved = None
        latency = None
        if self.state is None or not self.state.has_final_information_for_port(
            source_id, source_port
        ):
            unresolved = f"the dynamics of output port '{source_port}' of {source.label()}"
        else:
            latency = self.compute_reading_latency(sink_id, sink_port)
            if latency is None:
                unresolved = f"the reading latency of input port '{sink_port}' of {sink.label()}"

        connection = f"{source.label()}.{source_port} -> {sink.label()}.{sink_port}"
        if unresolved is not None:
            if fallback is not None:
                logger.warning(
                    "cannot compute the policy of %s: %s is unknown, using fallback %s",
                    connection,
                    unresolved,
                    fallback.describe(),
                )
                return fallback
            raise SpecError(f"cannot compute the policy of {connection}: {unresolved} is unknown")

        dynamics = self.state.port_info(source_id, source_port)
        policy = compute_buffer_policy(dynamics, latency, self.buffer_size_margin)
        logger.debug(
            "%s: reading latency %.3fs, %r, policy %s",
            connection,
            latency,
            dynamics,
            policy.describe(),
        )
        return policy

    def compute_connection_policies(self) -> PolicyMap:
        """Propagate over the deployed tasks and compute every policy.

        Returns:
            ``{(source_id, sink_id): {(source_port, sink_port): policy}}``
            for the concrete connections between deployed tasks.
        """
        deployed = [
            t.id
            for t in self.graph.find_tasks(kind=ComponentKind.TASK_CONTEXT)
            if t.execution_agent is not None and not t.abstract
        ]
        self.propagate(deployed)
        deployed_set = set(deployed)
        policies: PolicyMap = defaultdict(dict)
        for source_id in deployed:
            for conn in self.graph.concrete_output_connections(source_id):
                if conn.sink not in deployed_set:
                    continue
                policies[(conn.source, conn.sink)][conn.ports] = self.policy_for(
                    conn.source,
                    conn.source_port,
                    conn.sink_port,
                    conn.sink,
                    policy=conn.policy,
                    fallback=conn.fallback_policy,
                )
        return dict(policies)
