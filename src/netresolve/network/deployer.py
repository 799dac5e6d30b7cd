"""Binding of system network tasks to deployments."""

from __future__ import annotations

import logging
import re
from typing import Iterable, Optional

from netresolve.exceptions import MissingDeployments
from netresolve.models.component import DeployedTaskModel, DeploymentModel, ModelRegistry
from netresolve.models.enums import ComponentKind
from netresolve.models.task import Task
from netresolve.network.merge_solver import MergeSolver
from netresolve.plan.graph import TaskGraph
from netresolve.timing import Timepoints

logger = logging.getLogger(__name__)

Slot = tuple[DeploymentModel, DeployedTaskModel]


def slot_name(slot: Slot) -> str:
    deployment, deployed_task = slot
    return f"{deployment.name}.{deployed_task.name}"


class SystemNetworkDeployer:
    """Selects a deployment slot for each concrete task and binds it."""

    def __init__(
        self,
        graph: TaskGraph,
        registry: ModelRegistry,
        merge_solver: Optional[MergeSolver] = None,
    ) -> None:
        self.graph = graph
        self.registry = registry
        self.merge_solver = merge_solver or MergeSolver(graph, registry)
        self.timepoints = Timepoints()

    # ------------------------------------------------------------------
    # Selection
    # ------------------------------------------------------------------

    def candidates_for(self, task: Task) -> list[Slot]:
        candidates = self.registry.deployments_hosting(task.model)
        if task.deployment_request is not None:
            candidates = [c for c in candidates if c[0].name == task.deployment_request]
        return candidates

    def resolve_deployment_ambiguity(self, candidates: list[Slot], task: Task) -> Optional[Slot]:
        """Pick one of several deployment slots for *task*.

        A requested process-local name must match exactly. Otherwise the
        task's deployment hints must select exactly one slot name.
        """
        if task.orocos_name:
            matching = [c for c in candidates if c[1].name == task.orocos_name]
            if len(matching) == 1:
                return matching[0]
            logger.info(
                "%s requests the name %s, which matches %d of the candidate slots",
                task.label(),
                task.orocos_name,
                len(matching),
            )
            return None

        if task.deployment_hints:
            patterns = [re.compile(hint) for hint in task.deployment_hints]
            matching = [
                c for c in candidates if any(p.search(c[1].name) for p in patterns)
            ]
            if len(matching) == 1:
                return matching[0]
            logger.info(
                "deployment hints of %s select %d slots out of %s",
                task.label(),
                len(matching),
                ", ".join(slot_name(c) for c in candidates),
            )
            return None

        logger.info(
            "ambiguous deployment for %s: %s",
            task.label(),
            ", ".join(slot_name(c) for c in candidates),
        )
        return None

    def find_suitable_deployment_for(self, task: Task) -> Optional[Slot]:
        candidates = self.candidates_for(task)
        if len(candidates) == 1:
            slot = candidates[0]
            if task.orocos_name and task.orocos_name != slot[1].name:
                return None
            return slot
        if not candidates:
            return None
        return self.resolve_deployment_ambiguity(candidates, task)

    def deployable_tasks(self) -> list[Task]:
        return [
            t
            for t in self.graph.find_tasks(kind=ComponentKind.TASK_CONTEXT, local_only=True)
            if not t.abstract and t.execution_agent is None
        ]

    def select_deployments(self, tasks: Iterable[Task]) -> tuple[dict[int, Slot], set[int]]:
        """Choose a slot for each task lacking an execution binding.

        A slot is never given to two tasks. Ambiguities are resolved
        independently for each task, without regard to the slots already
        allocated.

        Returns:
            ``(selected, missing)``: task id to slot, and the ids of the
            tasks for which no slot could be selected.
        """
        selected: dict[int, Slot] = {}
        missing: set[int] = set()
        used: dict[tuple[str, str], int] = {}
        for task in tasks:
            if task.execution_agent is not None:
                continue
            slot = self.find_suitable_deployment_for(task)
            if slot is None:
                missing.add(task.id)
                continue
            key = (slot[0].name, slot[1].name)
            if key in used:
                logger.info(
                    "%s is already used by %s, cannot use it for %s",
                    slot_name(slot),
                    self.graph[used[key]].label(),
                    task.label(),
                )
                missing.add(task.id)
                continue
            used[key] = task.id
            selected[task.id] = slot
        return selected, missing

    # ------------------------------------------------------------------
    # Application
    # ------------------------------------------------------------------

    def deployment_task(self, deployment: DeploymentModel, cache: dict[tuple[str, str], Task]) -> Task:
        key = (deployment.host, deployment.name)
        task = cache.get(key)
        if task is None:
            task = self.graph.add_task(
                deployment.name,
                kind=ComponentKind.DEPLOYMENT,
                deployment=deployment.name,
                host=deployment.host,
            )
            cache[key] = task
        return task

    def apply_selected_deployments(self, selected: dict[int, Slot]) -> dict[int, int]:
        """Bind each task to its slot by merging it into a deployed task.

        Returns:
            Task id to the id of the deployed task it was merged into.
        """
        deployments: dict[tuple[str, str], Task] = {}
        result = {}
        for task_id, (deployment, slot) in sorted(selected.items()):
            task = self.graph[task_id]
            agent = self.deployment_task(deployment, deployments)
            deployed = self.graph.add_task(
                slot.model,
                orocos_name=slot.name,
                execution_agent=agent.id,
                activity=slot.activity,
                period=slot.period,
                master=slot.master,
            )
            logger.debug("deploying %s as %s", task.label(), slot_name((deployment, slot)))
            self.merge_solver.apply_merge_group({task_id: deployed.id})
            result[task_id] = deployed.id
        return result

    def deploy(self, validate: bool = True) -> set[int]:
        """Bind every deployable task to a deployment.

        Returns:
            Ids of the tasks that could not be deployed.

        Raises:
            MissingDeployments: If *validate* is set and some tasks are left
                without a deployment.
        """
        with self.timepoints.group("deploy"):
            selected, missing = self.select_deployments(self.deployable_tasks())
            self.timepoints.add("select_deployments")
            self.apply_selected_deployments(selected)
            self.timepoints.add("apply_selected_deployments")
            if validate:
                self.validate_deployed_network()
        return missing

    def validate_deployed_network(self) -> None:
        """Every concrete task context must be bound to a deployment."""
        missing = {}
        for task in self.deployable_tasks():
            if task.finished:
                continue
            missing[self.graph.describe(task.id)] = [
                slot_name(c) for c in self.candidates_for(task)
            ]
        if missing:
            raise MissingDeployments(missing)
