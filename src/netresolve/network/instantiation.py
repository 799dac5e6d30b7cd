"""Instantiation of abstract requirements into a naive task network.

Every requirement is expanded recursively: compositions create their
children, connect them and export their ports. Which model is used for a
child is decided by :class:`DependencyInjection`, in this order:

1. an explicit selection by child role path or by required model;
2. the automatic selection, when exactly one concrete model provides a
   required service;
3. the required model itself (which leaves an abstract placeholder when
   it is a data service).
"""

from __future__ import annotations

import copy
import logging
from typing import Any, Optional

from netresolve.exceptions import SpecError
from netresolve.models.component import ComponentModel, ModelRegistry
from netresolve.models.enums import ComponentKind
from netresolve.models.policy import ConnectionPolicy
from netresolve.models.requirements import InstanceRequirement
from netresolve.models.task import Task
from netresolve.plan.graph import TaskGraph

logger = logging.getLogger(__name__)


def compute_automatic_selections(registry: ModelRegistry) -> dict[str, str]:
    """Select the only concrete provider of each service that has one."""
    selections = {}
    for model in registry.components.values():
        if model.kind is not ComponentKind.DATA_SERVICE:
            continue
        providers = registry.providers_of(model.name)
        if len(providers) == 1:
            selections[model.name] = providers[0].name
    return selections


def allocation_candidates(registry: ModelRegistry, model_name: str) -> list[str]:
    """Names of the concrete models that could replace *model_name*."""
    return sorted(p.name for p in registry.providers_of(model_name))


class DependencyInjection:
    """Layered model selection for requirement instantiation."""

    def __init__(
        self,
        explicit: Optional[dict[str, str]] = None,
        automatic: Optional[dict[str, str]] = None,
    ) -> None:
        self.explicit = dict(explicit or {})
        self.automatic = dict(automatic or {})

    def select(self, role_path: str, required: str) -> str:
        if role_path and role_path in self.explicit:
            return self.explicit[role_path]
        if required in self.explicit:
            return self.explicit[required]
        if required in self.automatic:
            return self.automatic[required]
        return required

    def __repr__(self) -> str:
        return f"DependencyInjection(explicit={self.explicit!r}, automatic={self.automatic!r})"


class Instantiator:
    """Creates the tasks of requirements in a task graph."""

    def __init__(
        self,
        graph: TaskGraph,
        registry: ModelRegistry,
        automatic_selections: Optional[dict[str, str]] = None,
    ) -> None:
        self.graph = graph
        self.registry = registry
        self.automatic_selections = dict(automatic_selections or {})

    def instantiate(self, requirement: InstanceRequirement) -> Task:
        """Create the task tree of *requirement* and return its root."""
        di = DependencyInjection(requirement.selections, self.automatic_selections)
        selected = di.select("", requirement.model)
        task = self._instantiate(selected, "", di, dict(requirement.arguments), set())
        task.orocos_name = requirement.orocos_name
        task.deployment_request = requirement.deployment
        for port, period in requirement.port_periods.items():
            task.port_periods[port] = period
        if requirement.deployment_hints:
            self._add_hints(task, list(requirement.deployment_hints), set())
        logger.debug("instantiated requirement %s as %s", requirement.name, task.label())
        return task

    def _add_hints(self, task: Task, hints: list[str], seen: set[int]) -> None:
        if task.id in seen:
            return
        seen.add(task.id)
        for hint in hints:
            if hint not in task.deployment_hints:
                task.deployment_hints.append(hint)
        for child in self.graph.children(task.id):
            self._add_hints(self.graph[child], hints, seen)

    def _resolve_device(self, name: str, arguments: dict[str, Any]) -> str:
        if name in self.registry.devices and name not in self.registry.components:
            device = self.registry.device(name)
            arguments.setdefault("device", device.name)
            return device.driver
        return name

    def _instantiate(
        self,
        model_name: str,
        role_path: str,
        di: DependencyInjection,
        arguments: dict[str, Any],
        stack: set[str],
    ) -> Task:
        model_name = self._resolve_device(model_name, arguments)
        model = self.registry.component(model_name)
        if model.name in stack:
            raise SpecError(
                f"composition '{model.name}' contains itself (through {role_path or 'its root'})"
            )

        if model.kind is ComponentKind.DATA_SERVICE:
            return self.graph.add_task(
                model.name,
                kind=ComponentKind.DATA_SERVICE,
                abstract=True,
                arguments=copy.deepcopy(arguments),
            )

        task = self.graph.add_task(
            model.name,
            kind=model.kind,
            abstract=model.abstract,
            arguments=copy.deepcopy(arguments),
        )
        if model.is_composition:
            self._instantiate_children(task, model, role_path, di, stack | {model.name})
        return task

    def _instantiate_children(
        self,
        task: Task,
        model: ComponentModel,
        role_path: str,
        di: DependencyInjection,
        stack: set[str],
    ) -> None:
        children: dict[str, Task] = {}
        for child in model.children:
            path = f"{role_path}.{child.role}" if role_path else child.role
            selected = di.select(path, child.model)
            child_task = self._instantiate(selected, path, di, dict(child.arguments), stack)
            if not self._fullfills(child_task, child.model):
                raise SpecError(
                    f"'{selected}' was selected for {model.name}.{child.role} "
                    f"but does not provide '{child.model}'"
                )
            self.graph.add_dependency(task.id, child_task.id, child.role)
            children[child.role] = child_task

        for conn in model.connections:
            self.graph.connect(
                children[conn.source_role].id,
                conn.source_port,
                children[conn.sink_role].id,
                conn.sink_port,
                ConnectionPolicy(**conn.policy),
                None
                if conn.fallback_policy is None
                else ConnectionPolicy(**conn.fallback_policy),
            )

        for export in model.exports:
            child_task = children[export.role]
            port = self.registry.port(child_task.model, export.port)
            if port is None:
                raise SpecError(
                    f"{model.name} exports {export.role}.{export.port}, "
                    f"which is not a port of '{child_task.model}'"
                )
            if port.is_output:
                self.graph.connect(child_task.id, export.port, task.id, export.exported_name)
            else:
                self.graph.connect(task.id, export.exported_name, child_task.id, export.port)

    def _fullfills(self, task: Task, required: str) -> bool:
        if task.model == required:
            return True
        if required in self.registry.devices:
            return task.device == required
        return self.registry.component(task.model).fullfills(required)
