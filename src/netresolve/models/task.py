"""Task nodes and connection views of the task graph."""

from __future__ import annotations

import copy
from dataclasses import dataclass, field
from typing import Any, Iterable, Optional

from netresolve.models.enums import ActivityType, ComponentKind, TaskState
from netresolve.models.policy import ConnectionPolicy

FINISHED_STATES = frozenset({TaskState.FINISHING, TaskState.FINISHED})


@dataclass
class Task:
    """A component instance in the task graph.

    Tasks are addressed by ``id`` everywhere; the graph owns the objects
    and the relations between them.

    Attributes:
        id:                 Stable integer id, unique across a graph and its
                            transactions.
        model:              Component model (or data service) name.
        kind:               Kind of the model.
        abstract:           Placeholder that still needs a concrete model.
        arguments:          Instance arguments. ``conf`` holds the
                            configuration sections, ``device`` the attached
                            device name for drivers.
        orocos_name:        Requested or bound process-local task name.
        deployment_hints:   Regular expressions preferring deployed task
                            names when several deployments match.
        deployment_request: Name of a deployment this task must run in.
        execution_agent:    Id of the deployment task running this task.
        deployment:         For deployment tasks, the deployment model name.
        host:               For deployment tasks, the host name.
        activity:           Activity of the bound deployment slot.
        period:             Period of the bound deployment slot.
        master:             Process-local name of the master slot (slaves).
        port_periods:       Requested output port periods from requirements.
        bus_clients:        For bus drivers, names of the attached devices.
        extra_ports:        Dynamic output ports, by name, with sample sizes.
        state:              Runtime state, owned by the process launcher.
        reusable:           Whether new networks may reuse this task.
        proxy:              Transaction placeholder for a base graph task.
        needs_reconfiguration: Reused with a different configuration.
        allow_automatic_setup: Whether the launcher may configure it now.
        start_after:        Ids of tasks that must stop before this starts.
        configure_after:    Ids of tasks to configure before this one.
    """

    id: int
    model: str
    kind: ComponentKind = ComponentKind.TASK_CONTEXT
    abstract: bool = False
    arguments: dict[str, Any] = field(default_factory=dict)
    orocos_name: Optional[str] = None
    deployment_hints: list[str] = field(default_factory=list)
    deployment_request: Optional[str] = None
    execution_agent: Optional[int] = None
    deployment: Optional[str] = None
    host: Optional[str] = None
    activity: Optional[ActivityType] = None
    period: Optional[float] = None
    master: Optional[str] = None
    port_periods: dict[str, float] = field(default_factory=dict)
    bus_clients: list[str] = field(default_factory=list)
    extra_ports: dict[str, int] = field(default_factory=dict)
    state: TaskState = TaskState.PENDING
    reusable: bool = True
    proxy: bool = False
    needs_reconfiguration: bool = False
    allow_automatic_setup: bool = True
    start_after: set[int] = field(default_factory=set)
    configure_after: set[int] = field(default_factory=set)

    # -- classification ------------------------------------------------------

    @property
    def is_task_context(self) -> bool:
        return self.kind is ComponentKind.TASK_CONTEXT

    @property
    def is_composition(self) -> bool:
        return self.kind is ComponentKind.COMPOSITION

    @property
    def is_deployment(self) -> bool:
        return self.kind is ComponentKind.DEPLOYMENT

    @property
    def is_placeholder(self) -> bool:
        """Abstract data-service placeholder with no model of its own."""
        return self.kind is ComponentKind.DATA_SERVICE

    @property
    def finished(self) -> bool:
        return self.state in FINISHED_STATES

    @property
    def running(self) -> bool:
        return self.state in (TaskState.STARTING, TaskState.RUNNING)

    @property
    def conf(self) -> Optional[list[str]]:
        return self.arguments.get("conf")

    @property
    def device(self) -> Optional[str]:
        return self.arguments.get("device")

    def label(self) -> str:
        name = f"[{self.orocos_name}]" if self.orocos_name else ""
        return f"{self.model}{name}#{self.id}"

    # -- merging -------------------------------------------------------------

    def can_merge(self, other: Task, ignored_arguments: Iterable[str] = ()) -> bool:
        """Intrinsic merge check: *other* could be replaced by this task.

        Arguments named in *ignored_arguments* are allowed to differ.
        """
        if other.model != self.model or other.kind is not self.kind:
            return False
        if self.abstract != other.abstract:
            return False
        for key in (self.arguments.keys() & other.arguments.keys()) - set(ignored_arguments):
            if self.arguments[key] != other.arguments[key]:
                return False
        if self.orocos_name and other.orocos_name and self.orocos_name != other.orocos_name:
            return False
        if (
            self.deployment_request
            and other.deployment_request
            and self.deployment_request != other.deployment_request
        ):
            return False
        if self.is_deployment and (self.deployment, self.host) != (other.deployment, other.host):
            return False
        for port, period in other.port_periods.items():
            if port in self.port_periods and self.port_periods[port] != period:
                return False
        return True

    def merge(self, other: Task) -> None:
        """Absorb the instance-level information of *other*."""
        for key, value in other.arguments.items():
            self.arguments.setdefault(key, copy.deepcopy(value))
        self.orocos_name = self.orocos_name or other.orocos_name
        self.deployment_request = self.deployment_request or other.deployment_request
        for hint in other.deployment_hints:
            if hint not in self.deployment_hints:
                self.deployment_hints.append(hint)
        for port, period in other.port_periods.items():
            self.port_periods.setdefault(port, period)
        for client in other.bus_clients:
            if client not in self.bus_clients:
                self.bus_clients.append(client)
        for port, size in other.extra_ports.items():
            self.extra_ports.setdefault(port, size)
        self.configure_after |= other.configure_after
        self.start_after |= other.start_after
        self.configure_after.discard(self.id)
        self.start_after.discard(self.id)
        if self.execution_agent is None:
            self.execution_agent = other.execution_agent
            self.activity = other.activity
            self.period = other.period
            self.master = other.master

    def copy(self) -> Task:
        return copy.deepcopy(self)


@dataclass(frozen=True)
class Connection:
    """A dataflow edge from an output port to an input port."""

    source: int
    source_port: str
    sink: int
    sink_port: str
    policy: ConnectionPolicy = field(default_factory=ConnectionPolicy)
    fallback_policy: Optional[ConnectionPolicy] = None

    @property
    def ports(self) -> tuple[str, str]:
        return (self.source_port, self.sink_port)
