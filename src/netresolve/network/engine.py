"""Resolution engine: turns requirements into a deployed, committed network.

A resolution runs the following pipeline on a transaction opened on the
real task graph:

1. ``prepare``: snapshot the selections and open the working graph;
2. ``compute_system_network``: instantiate, merge, link busses,
   garbage collect and validate (see :mod:`netresolve.network.generator`);
3. ``deploy_system_network``: bind every concrete task to a deployment;
4. ``compute_connection_policies``: dataflow dynamics and buffer sizes;
5. ``finalize_deployed_tasks``: reuse what already runs;
6. final merge, mission/permanent reassignment, garbage collection and
   validation, then ``commit``.

Any failure routes through :meth:`Engine.handle_resolution_exception`,
which applies the configured :class:`OnErrorPolicy`; the real graph is
only ever modified by the commit.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Iterable, Optional

from netresolve.config import ResolutionConfig
from netresolve.dataflow.dynamics import DataflowDynamics, PolicyMap, PortDynamics
from netresolve.exceptions import (
    EngineStateError,
    InternalError,
    MissingDeployments,
    TaskAllocationFailed,
    TransactionError,
)
from netresolve.models.component import ModelRegistry
from netresolve.models.enums import ComponentKind, OnErrorPolicy
from netresolve.models.requirements import InstanceRequirement
from netresolve.models.task import Task
from netresolve.network.deployer import SystemNetworkDeployer, slot_name
from netresolve.network.diagnostics import save_snapshot
from netresolve.network.generator import SystemNetworkGenerator, garbage_collect_task
from netresolve.network.hooks import ResolutionHooks
from netresolve.network.instantiation import allocation_candidates, compute_automatic_selections
from netresolve.network.merge_solver import MergeSolver
from netresolve.plan.graph import TaskGraph
from netresolve.plan.transaction import Transaction
from netresolve.timing import Timepoints

logger = logging.getLogger(__name__)


class EngineState(str, Enum):
    """Phase of the current resolution."""

    IDLE = "idle"
    PREPARED = "prepared"
    NETWORK_COMPUTED = "network-computed"
    DEPLOYED = "deployed"
    COMMITTED = "committed"
    ROLLED_BACK = "rolled-back"


FINAL_STATES = (EngineState.IDLE, EngineState.COMMITTED, EngineState.ROLLED_BACK)


@dataclass
class ResolutionResult:
    """What a committed resolution hands to the process launcher.

    Attributes:
        required_tasks: Requirement name to the id of the task representing it.
        deployments:    Ids of the deployment tasks the network runs on.
        bindings:       Task id to ``(deployment task id, process-local name)``.
        policies:       Connection policies between deployed tasks.
        port_dynamics:  Final dynamics of each ``(task id, port)``.
    """

    required_tasks: dict[str, int] = field(default_factory=dict)
    deployments: list[int] = field(default_factory=list)
    bindings: dict[int, tuple[int, str]] = field(default_factory=dict)
    policies: PolicyMap = field(default_factory=dict)
    port_dynamics: dict[tuple[int, Optional[str]], PortDynamics] = field(default_factory=dict)

    def policy(self, source: int, source_port: str, sink: int, sink_port: str):
        return self.policies.get((source, sink), {}).get((source_port, sink_port))


class Engine:
    """Computes and applies the network that fulfills a set of requirements."""

    def __init__(
        self,
        graph: TaskGraph,
        registry: ModelRegistry,
        config: Optional[ResolutionConfig] = None,
        hooks: Optional[ResolutionHooks] = None,
    ) -> None:
        self.graph = graph
        self.registry = registry
        self.config = config or ResolutionConfig()
        self.hooks = hooks or ResolutionHooks()
        self.state = EngineState.IDLE
        self.options = self.config.effective()
        self.requirements: list[InstanceRequirement] = []
        self.required_instances: dict[str, int] = {}
        self.automatic_selections: dict[str, str] = {}
        self.work_plan: Optional[Transaction] = None
        self.merge_solver: Optional[MergeSolver] = None
        self.dataflow_dynamics: Optional[DataflowDynamics] = None
        self.policies: PolicyMap = {}
        self.deployment_tasks: list[int] = []
        self.timepoints = Timepoints()

    # ------------------------------------------------------------------
    # State machine helpers
    # ------------------------------------------------------------------

    def _expect(self, operation: str, *states: EngineState) -> None:
        if self.state not in states:
            raise EngineStateError(operation, self.state, states)

    def _work(self) -> Transaction:
        if self.work_plan is None:
            raise InternalError("no working graph, call prepare() first")
        return self.work_plan

    def _solver(self) -> MergeSolver:
        if self.merge_solver is None:
            raise InternalError("no merge solver, call prepare() first")
        return self.merge_solver

    # ------------------------------------------------------------------
    # Pipeline phases
    # ------------------------------------------------------------------

    def prepare(self, requirements: Iterable[InstanceRequirement], **overrides: Any) -> None:
        """Open the working graph for a new resolution of *requirements*."""
        self._expect("prepare", *FINAL_STATES)
        config = self.config.with_overrides(**overrides) if overrides else self.config
        self.options = config.effective()
        self.requirements = list(requirements)
        self.required_instances = {}
        self.automatic_selections = compute_automatic_selections(self.registry)
        self.work_plan = Transaction(self.graph)
        self.merge_solver = MergeSolver(self.work_plan, self.registry)
        self.dataflow_dynamics = None
        self.policies = {}
        self.deployment_tasks = []
        self.timepoints.add("prepare")
        self.state = EngineState.PREPARED
        logger.debug(
            "prepared resolution of %d requirement(s), automatic selections: %s",
            len(self.requirements),
            self.automatic_selections,
        )

    def compute_system_network(self) -> dict[str, int]:
        """Generate and validate the system network in the working graph."""
        self._expect("compute_system_network", EngineState.PREPARED)
        generator = SystemNetworkGenerator(
            self._work(), self.registry, self._solver(), self.hooks
        )
        try:
            self.required_instances = generator.generate(
                self.requirements,
                self.automatic_selections,
                garbage_collect=self.options.garbage_collect,
                validate_abstract_network=self.options.validate_abstract_network,
                validate_generated_network=self.options.validate_generated_network,
            )
        finally:
            self.timepoints.merge(generator.timepoints)
        self.state = EngineState.NETWORK_COMPUTED
        return self.required_instances

    def deploy_system_network(self) -> set[int]:
        """Bind the system network to deployments.

        Returns:
            Ids of the tasks left without a deployment (only possible when
            the deployed network validation is disabled).
        """
        self._expect("deploy_system_network", EngineState.NETWORK_COMPUTED)
        missing: set[int] = set()
        if self.options.compute_deployments:
            deployer = SystemNetworkDeployer(self._work(), self.registry, self._solver())
            try:
                missing = deployer.deploy(validate=self.options.validate_deployed_network)
            finally:
                self.timepoints.merge(deployer.timepoints)
            self.deployment_tasks = [
                t.id
                for t in self._work().find_tasks(kind=ComponentKind.DEPLOYMENT, local_only=True)
            ]
        self.state = EngineState.DEPLOYED
        return missing

    def compute_connection_policies(self) -> PolicyMap:
        """Run the dataflow dynamics and compute the connection policies."""
        self._expect("compute_connection_policies", EngineState.DEPLOYED)
        with self.timepoints.group("compute_connection_policies"):
            self.dataflow_dynamics = DataflowDynamics(
                self._work(), self.registry, self.options.buffer_size_margin
            )
            self.policies = self.dataflow_dynamics.compute_connection_policies()
        return self.policies

    def finalize_deployed_tasks(self) -> list[int]:
        """Reconcile the new deployments with the ones already running.

        A deployment already present (and not finishing) in the real graph
        is reused: each new deployed task is merged into the existing task
        of the same name when that one is reusable and compatible, or into
        a new task of the existing deployment that starts once the old one
        has stopped.

        Returns:
            Ids of the deployment tasks the network uses.
        """
        self._expect("finalize_deployed_tasks", EngineState.DEPLOYED)
        work, solver = self._work(), self._solver()
        with self.timepoints.group("finalize_deployed_tasks"):
            for task in work.find_tasks():
                if task.finished:
                    logger.debug("clearing the relations of the finished task %s", task.label())
                    work.clear_dataflow(task.id)
                    work.clear_dependencies(task.id)
                elif task.proxy:
                    work.clear_dataflow(task.id)

            result = []
            for deployment_id in self.deployment_tasks:
                if deployment_id not in work:
                    continue
                existing = self._existing_deployment(work[deployment_id])
                if existing is None:
                    result.append(deployment_id)
                    continue
                self._reuse_deployment(work[deployment_id], existing, solver)
                result.append(existing.id)
            self.deployment_tasks = result
        return result

    def _existing_deployment(self, deployment: Task) -> Optional[Task]:
        candidates = [
            t
            for t in self._work().find_tasks(kind=ComponentKind.DEPLOYMENT)
            if t.proxy
            and not t.finished
            and (t.deployment, t.host) == (deployment.deployment, deployment.host)
        ]
        if len(candidates) > 1:
            raise InternalError(
                f"more than one task for deployment {deployment.deployment} on {deployment.host}"
            )
        return candidates[0] if candidates else None

    def _reuse_deployment(self, deployment: Task, existing: Task, solver: MergeSolver) -> None:
        work = self._work()
        existing_tasks: dict[str, Task] = {}
        for task in work.executed_tasks(existing.id):
            if task.finished or task.orocos_name is None:
                continue
            current = existing_tasks.get(task.orocos_name)
            if current is None or (task.running and not current.running):
                existing_tasks[task.orocos_name] = task

        for task in work.executed_tasks(deployment.id):
            current = existing_tasks.get(task.orocos_name)
            if current is None or not current.reusable or not current.can_merge(
                task, ignored_arguments=("conf",)
            ):
                replacement = work.add_task(
                    task.model,
                    orocos_name=task.orocos_name,
                    execution_agent=existing.id,
                    activity=task.activity,
                    period=task.period,
                    master=task.master,
                )
                if current is not None:
                    logger.info(
                        "%s cannot be reused, %s will start once it stopped",
                        current.label(),
                        replacement.label(),
                    )
                    replacement.start_after.add(current.id)
                    replacement.allow_automatic_setup = False
                current = replacement
                existing_tasks[task.orocos_name] = replacement
            conf = task.conf
            solver.apply_merge_group({task.id: current.id})
            if conf is not None and current.conf != conf:
                if current.proxy:
                    current.needs_reconfiguration = True
                current.arguments["conf"] = list(conf)
            logger.debug("using %s for %s", current.label(), task.orocos_name)

        work.remove_task(deployment.id)
        solver.register_replacement(deployment.id, existing.id)

    # ------------------------------------------------------------------
    # Whole-resolution entry points
    # ------------------------------------------------------------------

    def resolve_system_network(
        self, requirements: Iterable[InstanceRequirement], **overrides: Any
    ) -> dict[str, int]:
        """Compute the final network in the working graph, without applying it.

        Returns:
            Requirement name to the id of the task representing it.
        """
        self.prepare(requirements, **overrides)
        self.compute_system_network()
        self.deploy_system_network()
        if self.options.compute_policies:
            self.compute_connection_policies()
        self.hooks.run("deployment", self._work())
        if self.options.compute_deployments:
            self.finalize_deployed_tasks()
        with self.timepoints.group("final_merge"):
            self._solver().merge_identical_tasks()
        return self.required_tasks()

    def required_tasks(self) -> dict[str, int]:
        solver = self._solver()
        return {
            name: solver.replacement_for(task_id)
            for name, task_id in self.required_instances.items()
        }

    def apply_system_network_to_plan(self) -> ResolutionResult:
        """Finish the working graph and commit it to the real graph."""
        self._expect("apply_system_network_to_plan", EngineState.DEPLOYED)
        work, solver = self._work(), self._solver()
        required = self.required_tasks()
        requirements = {r.name: r for r in self.requirements}

        work.mission.clear()
        work.permanent.clear()
        for name, task_id in required.items():
            if requirements[name].mission:
                work.mission.add(task_id)
            if requirements[name].permanent:
                work.permanent.add(task_id)

        if self.options.garbage_collect:
            work.static_garbage_collect(required.values(), garbage_collect_task)

        if self.dataflow_dynamics is not None:
            self.dataflow_dynamics.apply_merges(solver.replacement)
        self.policies = self._remap_policies(self.policies)

        self.hooks.run("final_network", work)
        if self.options.validate_final_network:
            self.validate_final_network()

        result = ResolutionResult(
            required_tasks=required,
            deployments=sorted(
                solver.replacement_for(t) for t in self.deployment_tasks
                if solver.replacement_for(t) in work
            ),
            bindings={
                t.id: (t.execution_agent, t.orocos_name)
                for t in work.find_tasks(kind=ComponentKind.TASK_CONTEXT)
                if t.execution_agent is not None and not t.finished
            },
            policies=self.policies,
            port_dynamics=(
                self.dataflow_dynamics.port_dynamics() if self.dataflow_dynamics else {}
            ),
        )
        self.commit()
        return result

    def _remap_policies(self, policies: PolicyMap) -> PolicyMap:
        solver = self._solver()
        remapped: PolicyMap = {}
        for (source, sink), ports in policies.items():
            key = (solver.replacement_for(source), solver.replacement_for(sink))
            remapped.setdefault(key, {}).update(ports)
        return remapped

    def validate_final_network(self) -> None:
        """No abstract task and no undeployed task context may be committed."""
        work = self._work()
        abstract = {
            work.describe(t.id): allocation_candidates(self.registry, t.model)
            for t in work.find_tasks(local_only=True)
            if t.abstract
        }
        if abstract:
            raise TaskAllocationFailed(abstract)
        undeployed = {}
        for task in work.find_tasks(kind=ComponentKind.TASK_CONTEXT, local_only=True):
            if task.execution_agent is None and not task.finished:
                undeployed[work.describe(task.id)] = [
                    slot_name(slot) for slot in self.registry.deployments_hosting(task.model)
                ]
        if undeployed:
            raise MissingDeployments(undeployed)

    def commit(self) -> None:
        """Commit the working graph to the real graph."""
        self._work().commit()
        self.state = EngineState.COMMITTED
        logger.info("committed the resolved network (%d tasks)", len(self.graph))

    def discard(self) -> None:
        """Drop the working graph; the real graph is left untouched."""
        work = self.work_plan
        if work is not None and not work.finalized:
            work.discard()
        if self.state is not EngineState.COMMITTED:
            self.state = EngineState.ROLLED_BACK

    def handle_resolution_exception(
        self, error: BaseException, on_error: Optional[OnErrorPolicy] = None
    ) -> None:
        """Apply the error policy to the working graph after a failure."""
        policy = OnErrorPolicy(on_error or self.options.on_error)
        work = self.work_plan
        if work is None or work.finalized:
            if self.state is not EngineState.COMMITTED:
                self.state = EngineState.ROLLED_BACK
            return

        if policy is OnErrorPolicy.COMMIT:
            logger.warning("resolution failed (%s), committing the partial network", error)
            try:
                self.commit()
                return
            except TransactionError as exc:
                logger.error("could not commit the partial network: %s", exc)
        elif policy is OnErrorPolicy.DISCARD:
            logger.error("resolution failed: %s", error)
            if self.options.diagnostics_dir is not None:
                save_snapshot(work, self.options.diagnostics_dir)
        self.discard()

    def finalize(self) -> None:
        """End the current resolution, whatever its outcome."""
        if self.work_plan is not None and not self.work_plan.finalized:
            self.discard()
        if self.merge_solver is not None:
            self.timepoints.merge(self.merge_solver.timepoints)
            if not self.options.keep_replacement_graph:
                self.merge_solver.clear()
        if self.state not in FINAL_STATES:
            self.state = EngineState.ROLLED_BACK
        logger.debug("resolution timing:\n%s", self.timepoints.format())

    def resolve(
        self, requirements: Iterable[InstanceRequirement], **overrides: Any
    ) -> ResolutionResult:
        """Resolve *requirements* and commit the result to the real graph.

        Keyword arguments override fields of the engine's configuration for
        this call only.

        Raises:
            NetResolveError: Whatever made the resolution fail, after the
                error policy was applied.
        """
        try:
            self.resolve_system_network(requirements, **overrides)
            return self.apply_system_network_to_plan()
        except Exception as exc:
            self.handle_resolution_exception(exc)
            raise
        finally:
            self.finalize()
