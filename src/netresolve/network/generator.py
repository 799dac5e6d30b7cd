"""Generation of the system network from requirements.

The system network is the deduplicated, device-complete task network the
requirements need, before it is bound to deployments.
"""

from __future__ import annotations

import logging
from collections import defaultdict
from typing import Iterable, Optional

from netresolve.exceptions import (
    ConflictingDeviceAllocation,
    DeviceAllocationFailed,
    SpecError,
    TaskAllocationFailed,
)
from netresolve.models.component import ModelRegistry
from netresolve.models.enums import ComponentKind
from netresolve.models.requirements import InstanceRequirement
from netresolve.models.task import Task
from netresolve.network.hooks import ResolutionHooks
from netresolve.network.instantiation import Instantiator, allocation_candidates
from netresolve.network.merge_solver import MergeSolver
from netresolve.plan.graph import TaskGraph
from netresolve.timing import Timepoints

logger = logging.getLogger(__name__)

DEFAULT_CONF = ["default"]


def garbage_collect_task(graph: TaskGraph, task: Task) -> None:
    """Static garbage collection policy for the working graph.

    Tasks created during the resolution are removed. Placeholders for
    tasks that already exist outside of it are left to the runtime, only
    losing their dependencies once they are finished.
    """
    if task.proxy:
        if task.finished:
            graph.clear_dependencies(task.id)
        return
    logger.debug("garbage collecting %s", task.label())
    graph.remove_task(task.id)


class SystemNetworkGenerator:
    """Instantiates, merges and validates the system network."""

    def __init__(
        self,
        graph: TaskGraph,
        registry: ModelRegistry,
        merge_solver: Optional[MergeSolver] = None,
        hooks: Optional[ResolutionHooks] = None,
    ) -> None:
        self.graph = graph
        self.registry = registry
        self.merge_solver = merge_solver or MergeSolver(graph, registry)
        self.hooks = hooks or ResolutionHooks()
        self.timepoints = Timepoints()

    # ------------------------------------------------------------------
    # Steps
    # ------------------------------------------------------------------

    def instantiate(
        self,
        requirements: Iterable[InstanceRequirement],
        automatic_selections: Optional[dict[str, str]] = None,
    ) -> dict[str, int]:
        """Instantiate each requirement.

        Returns:
            Requirement name to root task id.
        """
        instantiator = Instantiator(self.graph, self.registry, automatic_selections)
        toplevel = {}
        for requirement in requirements:
            if requirement.name in toplevel:
                raise SpecError(f"duplicate requirement name '{requirement.name}'")
            task = instantiator.instantiate(requirement)
            toplevel[requirement.name] = task.id
        return toplevel

    def allocate_devices(self) -> None:
        """Attach the only matching device to drivers that have none."""
        for task in self.graph.find_tasks(kind=ComponentKind.TASK_CONTEXT, local_only=True):
            model = self.registry.component(task.model)
            if not model.driver_for or task.device is not None:
                continue
            candidates = [
                d
                for d in self.registry.devices_driven_by(task.model)
                if d.model in model.driver_for
            ]
            if len(candidates) == 1:
                logger.debug("allocating device %s to %s", candidates[0].name, task.label())
                task.arguments["device"] = candidates[0].name

    def link_to_busses(self) -> None:
        """Create bus driver tasks and connect the drivers of bus devices."""
        bus_tasks: dict[str, Task] = {}
        for task in self.graph.find_tasks(kind=ComponentKind.TASK_CONTEXT, local_only=True):
            if task.device is None or task.device not in self.registry.devices:
                continue
            device = self.registry.device(task.device)
            if device.com_bus is None:
                continue
            bus = self.registry.device(device.com_bus)
            bus_task = bus_tasks.get(bus.name)
            if bus_task is None:
                bus_task = self.graph.add_task(bus.driver, arguments={"device": bus.name})
                bus_tasks[bus.name] = bus_task
            if device.name not in bus_task.bus_clients:
                bus_task.bus_clients.append(device.name)
                bus_task.extra_ports[device.name] = device.sample_size
            self.graph.add_dependency(task.id, bus_task.id, f"{bus.name}_bus")
            bus_port = self.registry.component(task.model).bus_port
            if bus_port is not None:
                self.graph.connect(bus_task.id, device.name, task.id, bus_port)
            task.configure_after.add(bus_task.id)

    def remove_abstract_composition_optional_children(self) -> None:
        """Detach abstract children used only in optional roles."""
        for composition in self.graph.find_tasks(kind=ComponentKind.COMPOSITION, local_only=True):
            if composition.abstract:
                continue
            model = self.registry.component(composition.model)
            for child_id, roles in self.graph.children(composition.id).items():
                if not self.graph[child_id].abstract:
                    continue
                optional = set()
                for role in roles:
                    child_model = model.child(role)
                    if child_model is not None and child_model.optional:
                        optional.add(role)
                if optional and optional == roles:
                    logger.debug(
                        "removing optional abstract child %s of %s",
                        self.graph[child_id].label(),
                        composition.label(),
                    )
                    self.graph.remove_dependency(composition.id, child_id)
                    for conn in self.graph.output_connections(child_id):
                        if conn.sink == composition.id:
                            self.graph.disconnect(
                                child_id, conn.source_port, conn.sink, conn.sink_port
                            )
                    for conn in self.graph.input_connections(child_id):
                        if conn.source == composition.id:
                            self.graph.disconnect(
                                conn.source, conn.source_port, child_id, conn.sink_port
                            )

    def apply_default_configuration(self) -> None:
        for task in self.graph.find_tasks(kind=ComponentKind.TASK_CONTEXT, local_only=True):
            if "conf" not in task.arguments:
                task.arguments["conf"] = list(DEFAULT_CONF)

    # ------------------------------------------------------------------
    # Validation
    # ------------------------------------------------------------------

    def verify_no_multiplexing_connections(self) -> None:
        """No input port may have several sources unless it multiplexes."""
        for task in self.graph.find_tasks(kind=ComponentKind.TASK_CONTEXT, local_only=True):
            sources: dict[str, set[tuple[int, str]]] = defaultdict(set)
            for conn in self.graph.concrete_input_connections(task.id):
                sources[conn.sink_port].add((conn.source, conn.source_port))
            for port_name, port_sources in sorted(sources.items()):
                if len(port_sources) < 2:
                    continue
                port = self.registry.port(task.model, port_name)
                if port is not None and port.multiplexes:
                    continue
                described = ", ".join(
                    f"{self.graph[s].label()}.{p}" for s, p in sorted(port_sources)
                )
                raise SpecError(
                    f"input port '{port_name}' of {self.graph.describe(task.id)} "
                    f"is connected to several sources ({described}) but does not multiplex"
                )

    def verify_task_allocation(self) -> None:
        """No abstract task may remain."""
        missing = {}
        for task in self.graph.find_tasks(local_only=True):
            if task.abstract:
                missing[self.graph.describe(task.id)] = allocation_candidates(
                    self.registry, task.model
                )
        if missing:
            raise TaskAllocationFailed(missing)

    def verify_device_allocation(self) -> None:
        """Every driver has a device and no device is used twice."""
        missing = {}
        owners: dict[str, int] = {}
        for task in self.graph.find_tasks(kind=ComponentKind.TASK_CONTEXT, local_only=True):
            model = self.registry.component(task.model)
            if task.device is None:
                if model.driver_for:
                    missing[self.graph.describe(task.id)] = list(model.driver_for)
                continue
            if task.device in owners:
                raise ConflictingDeviceAllocation(
                    task.device,
                    self.graph.describe(owners[task.device]),
                    self.graph.describe(task.id),
                )
            owners[task.device] = task.id
        if missing:
            raise DeviceAllocationFailed(missing)

    # ------------------------------------------------------------------
    # Entry point
    # ------------------------------------------------------------------

    def generate(
        self,
        requirements: Iterable[InstanceRequirement],
        automatic_selections: Optional[dict[str, str]] = None,
        garbage_collect: bool = True,
        validate_abstract_network: bool = True,
        validate_generated_network: bool = True,
    ) -> dict[str, int]:
        """Compute the system network of *requirements*.

        Returns:
            Requirement name to the id of the task finally representing it.
        """
        solver = self.merge_solver
        with self.timepoints.group("compute_system_network"):
            toplevel = self.instantiate(requirements, automatic_selections)
            previously_permanent = set(self.graph.permanent)
            self.graph.permanent |= set(toplevel.values())
            self.timepoints.add("instantiate")
            self.hooks.run("instantiation", self.graph)

            self.allocate_devices()
            solver.merge_identical_tasks()
            self.timepoints.add("merge")
            self.hooks.run("instantiated_network", self.graph)

            self.link_to_busses()
            solver.merge_identical_tasks()
            self.timepoints.add("link_to_busses")

            self.remove_abstract_composition_optional_children()
            self.apply_default_configuration()
            if garbage_collect:
                roots = {solver.replacement_for(t) for t in toplevel.values()}
                self.graph.static_garbage_collect(roots, garbage_collect_task)
                self.timepoints.add("garbage_collect")

            representatives = {
                name: solver.replacement_for(task_id) for name, task_id in toplevel.items()
            }
            self.graph.permanent &= previously_permanent
            self.hooks.run("system_network", self.graph)

            if validate_abstract_network:
                self.verify_no_multiplexing_connections()
            if validate_generated_network:
                self.verify_task_allocation()
                self.verify_device_allocation()
            self.timepoints.add("validate")
        return representatives
