"""Merge solver: fold interchangeable tasks of a task graph together.

Naive instantiation creates one task per use of a component. The merge
solver finds tasks that are interchangeable (same concrete model,
compatible arguments, same inputs) and replaces all of them by a single
representative, recording each replacement in a :class:`ReplacementGraph`.

Inputs are compared on *concrete* connections. Two tasks whose inputs
come from different but themselves mergeable tasks are merged together
with their sources as a group, which is how dataflow cycles are handled.
"""

from __future__ import annotations

import logging
from collections import deque
from typing import Iterator, Optional

from netresolve.exceptions import InvalidReplacement
from netresolve.models.component import ModelRegistry
from netresolve.models.enums import ComponentKind, PortDirection
from netresolve.models.policy import ConnectionPolicy
from netresolve.models.task import Task
from netresolve.network.replacement import ReplacementGraph
from netresolve.plan.graph import TaskGraph
from netresolve.timing import Timepoints

logger = logging.getLogger(__name__)

Mismatch = tuple[str, int, int]


class MergeSolver:
    """Reduces a task graph by merging equivalent tasks.

    Attributes:
        graph:         The graph being reduced, usually a transaction.
        registry:      Model registry, used to classify composition ports
                       and roles.
        replacement:   Replacement graph of the merges applied so far.
        invalid_merges: ``(merged, target)`` pairs known not to be mergeable
                       in the current state of the graph.
    """

    def __init__(self, graph: TaskGraph, registry: Optional[ModelRegistry] = None) -> None:
        self.graph = graph
        self.registry = registry
        self.replacement = ReplacementGraph()
        self.invalid_merges: set[tuple[int, int]] = set()
        self.timepoints = Timepoints()

    # ------------------------------------------------------------------
    # Replacement tracking
    # ------------------------------------------------------------------

    def replacement_for(self, task_id: int) -> int:
        return self.replacement.replacement_for(task_id)

    def register_replacement(self, old: int, new: int) -> None:
        self.replacement.register_replacement(old, new)

    def clear(self) -> None:
        self.replacement.clear()
        self.invalid_merges.clear()

    # ------------------------------------------------------------------
    # Applying merges
    # ------------------------------------------------------------------

    def apply_merge_group(self, mappings: dict[int, int]) -> None:
        """Replace each key of *mappings* by its value.

        The surviving task absorbs the merged task's arguments and takes
        over all its relations. Merged tasks are removed from the graph,
        except transaction placeholders which are only unlinked.

        Chained mappings (``{c: b, b: a}``) are applied as ``{c: a, b: a}``.

        Raises:
            InvalidReplacement: If a task would be merged onto itself, or
                the mappings form a cycle.
        """
        for merged_id, task_id in mappings.items():
            if merged_id == task_id:
                raise InvalidReplacement(
                    f"trying to merge a task onto itself: {self.graph[merged_id].label()}"
                )
        mappings = {
            merged_id: self._merge_target(mappings, merged_id) for merged_id in mappings
        }
        for merged_id, task_id in mappings.items():
            logger.debug(
                "merging %s into %s", self.graph[merged_id].label(), self.graph[task_id].label()
            )
            self.graph[task_id].merge(self.graph[merged_id])
        for merged_id, task_id in mappings.items():
            self.graph.replace_task(merged_id, task_id)
        for merged_id, task_id in mappings.items():
            if not self.graph[merged_id].proxy:
                self.graph.remove_task(merged_id)
            self.register_replacement(merged_id, task_id)

        touched = set(mappings.values())
        for task_id in mappings.values():
            if task_id in self.graph:
                touched.update(self.graph.dataflow.successors(task_id))
        self.invalid_merges = {
            pair for pair in self.invalid_merges if not (set(pair) & touched)
        }

    def _merge_target(self, mappings: dict[int, int], task_id: int) -> int:
        """Follow *mappings* from *task_id* to a task that is not merged away."""
        seen = {task_id}
        while task_id in mappings:
            task_id = mappings[task_id]
            if task_id in seen:
                raise InvalidReplacement(
                    f"merge mappings form a cycle through {self.graph[task_id].label()}"
                )
            seen.add(task_id)
        return task_id

    # ------------------------------------------------------------------
    # Merge criteria
    # ------------------------------------------------------------------

    def may_merge_task_contexts(self, merged: Task, task: Task) -> bool:
        """Whether *merged* may be replaced by *task*, ignoring inputs."""
        if not task.can_merge(merged):
            logger.info("rejected %s -> %s: intrinsic merge check failed", merged.label(), task.label())
            return False
        if merged.proxy:
            logger.info(
                "rejected %s -> %s: the merged task exists outside the transaction",
                merged.label(),
                task.label(),
            )
            return False
        dataflow = self.graph.dataflow
        if dataflow.has_edge(merged.id, task.id) or dataflow.has_edge(task.id, merged.id):
            logger.info(
                "rejected %s -> %s: the tasks are connected to each other",
                merged.label(),
                task.label(),
            )
            return False
        if merged.execution_agent is not None and task.execution_agent is not None:
            if (merged.execution_agent, merged.orocos_name) != (
                task.execution_agent,
                task.orocos_name,
            ):
                logger.info(
                    "rejected %s -> %s: bound to different deployments",
                    merged.label(),
                    task.label(),
                )
                return False
        return True

    def each_component_merge_candidate(self, task: Task) -> Iterator[Task]:
        """Local tasks of the same concrete model that *task* could replace."""
        for candidate in self.graph.find_tasks(model=task.model, local_only=True):
            if candidate.id == task.id or candidate.is_placeholder:
                continue
            if candidate.id not in self.graph:
                continue
            if (candidate.id, task.id) in self.invalid_merges:
                continue
            yield candidate

    def resolve_input_matching(self, merged: Task, task: Task) -> Optional[list[Mismatch]]:
        """Compare the concrete inputs of two tasks.

        Returns:
            None if the inputs can never match, otherwise the list of
            ``(sink_port, merged_source, task_source)`` pairs that match only
            if the two sources are merged as well.
        """
        m_inputs: dict[str, dict[tuple[int, str], ConnectionPolicy]] = {}
        for conn in self.graph.concrete_input_connections(merged.id):
            m_inputs.setdefault(conn.sink_port, {})[(conn.source, conn.source_port)] = conn.policy

        mismatches: list[Mismatch] = []
        for conn in self.graph.concrete_input_connections(task.id):
            sources = m_inputs.get(conn.sink_port)
            if sources is None:
                continue
            m_policy = sources.get((conn.source, conn.source_port))
            if m_policy is not None:
                if not conn.policy.compatible_with(m_policy):
                    logger.debug("incompatible policies on %s", conn.sink_port)
                    return None
                continue

            if self._multiplexes(merged, conn.sink_port):
                continue

            (m_source, m_source_port), m_policy = next(iter(sources.items()))
            if m_source_port != conn.source_port:
                logger.debug(
                    "sink %s is connected to a port named %s resp. %s",
                    conn.sink_port,
                    m_source_port,
                    conn.source_port,
                )
                return None
            if not conn.policy.compatible_with(m_policy):
                logger.debug("incompatible policies on %s", conn.sink_port)
                return None
            mismatches.append((conn.sink_port, m_source, conn.source))
        return mismatches

    def _multiplexes(self, task: Task, port_name: str) -> bool:
        if self.registry is None or task.model not in self.registry.components:
            return False
        port = self.registry.port(task.model, port_name)
        return port is not None and port.multiplexes

    def resolve_merge(
        self, merged: Task, task: Task, mappings: dict[int, int]
    ) -> tuple[bool, dict[int, int]]:
        """Check whether *merged* can become *task*, pairing sources as needed.

        Returns:
            ``(possible, mappings)`` where *mappings* is the full group of
            merges needed (or tried, when not possible).
        """
        mismatches = self.resolve_input_matching(merged, task)
        if mismatches is None:
            return False, mappings

        for sink_port, merged_source_id, source_id in mismatches:
            # sources already paired in this group are compared by their survivors
            merged_source_id = self._merge_target(mappings, merged_source_id)
            source_id = self._merge_target(mappings, source_id)
            if merged_source_id == source_id:
                continue
            merged_source = self.graph[merged_source_id]
            source = self.graph[source_id]
            logger.debug(
                "pairing the inputs of %s: %s and %s",
                sink_port,
                merged_source.label(),
                source.label(),
            )
            if not self.may_merge_task_contexts(merged_source, source):
                return False, mappings
            possible, mappings = self.resolve_merge(
                merged_source, source, {**mappings, merged_source_id: source_id}
            )
            if not possible:
                return False, mappings
        return True, mappings

    # ------------------------------------------------------------------
    # Task contexts
    # ------------------------------------------------------------------

    def merge_task_contexts(self) -> None:
        """Merge all mergeable task contexts, most-connected sinks first."""
        self.invalid_merges.clear()
        tasks = self.graph.find_tasks(kind=ComponentKind.TASK_CONTEXT, local_only=True)
        tasks.sort(key=lambda t: (-self.graph.dataflow.in_degree(t.id), t.id))
        queue: deque[int] = deque(t.id for t in tasks)
        queued = set(queue)

        while queue:
            task_id = queue.popleft()
            queued.discard(task_id)
            if task_id not in self.graph:
                continue
            task = self.graph[task_id]
            for merged in list(self.each_component_merge_candidate(task)):
                if merged.id not in self.graph or task_id not in self.graph:
                    continue
                if not self.may_merge_task_contexts(merged, task):
                    self.invalid_merges.add((merged.id, task.id))
                    continue
                possible, mappings = self.resolve_merge(merged, task, {merged.id: task.id})
                if not possible:
                    self.invalid_merges.update(mappings.items())
                    continue
                self.apply_merge_group(mappings)
                survivors = {self._merge_target(mappings, t) for t in mappings.values()}
                for survivor in survivors:
                    for downstream in self.graph.dataflow.successors(survivor):
                        if downstream not in queued and self.graph[downstream].is_task_context:
                            queue.append(downstream)
                            queued.add(downstream)

    # ------------------------------------------------------------------
    # Compositions
    # ------------------------------------------------------------------

    def composition_children_by_role(self, task: Task) -> dict[str, int]:
        roles = None
        if self.registry is not None and task.model in self.registry.components:
            roles = {c.role for c in self.registry.component(task.model).children}
        result = {}
        for child, child_roles in self.graph.children(task.id).items():
            for role in child_roles:
                if roles is None or role in roles:
                    result[role] = child
        return result

    def _port_direction(self, task: Task, port_name: str) -> Optional[PortDirection]:
        if self.registry is None or task.model not in self.registry.components:
            return None
        port = self.registry.port(task.model, port_name)
        return port.direction if port is not None else None

    def enumerate_composition_exports(self, task: Task) -> set[tuple]:
        exports: set[tuple] = set()
        for conn in self.graph.input_connections(task.id):
            if self._port_direction(task, conn.sink_port) is PortDirection.OUTPUT:
                exports.add((conn.source, conn.source_port, conn.sink_port))
        for conn in self.graph.output_connections(task.id):
            if self._port_direction(task, conn.source_port) is PortDirection.INPUT:
                exports.add((conn.source_port, conn.sink, conn.sink_port))
        return exports

    def may_merge_compositions(self, merged: Task, task: Task) -> bool:
        if not self.may_merge_task_contexts(merged, task):
            return False
        merged_children = self.composition_children_by_role(merged)
        task_children = self.composition_children_by_role(task)
        for role in merged_children.keys() & task_children.keys():
            if merged_children[role] != task_children[role]:
                logger.info(
                    "rejected %s -> %s: different children in role %s",
                    merged.label(),
                    task.label(),
                    role,
                )
                return False
        children = {**merged_children, **task_children}
        if any(self.graph[c].is_placeholder for c in children.values()):
            logger.info(
                "rejected %s -> %s: unresolved children", merged.label(), task.label()
            )
            return False
        if self.enumerate_composition_exports(merged) != self.enumerate_composition_exports(task):
            logger.info("rejected %s -> %s: different exports", merged.label(), task.label())
            return False
        return True

    def _compositions_leaves_first(self) -> list[int]:
        degrees = {n: self.graph.dependency.out_degree(n) for n in self.graph.dependency}
        queue = deque(sorted(n for n, d in degrees.items() if d == 0))
        order = []
        while queue:
            current = queue.popleft()
            if self.graph[current].is_composition:
                order.append(current)
            for parent in sorted(self.graph.dependency.predecessors(current)):
                degrees[parent] -= 1
                if degrees[parent] == 0:
                    queue.append(parent)
        return order

    def merge_compositions(self) -> None:
        """Merge compositions with identical children and exports."""
        for composition_id in self._compositions_leaves_first():
            if composition_id not in self.graph:
                continue
            composition = self.graph[composition_id]
            for merged in list(self.each_component_merge_candidate(composition)):
                if merged.id not in self.graph:
                    continue
                if self.may_merge_compositions(merged, composition):
                    self.apply_merge_group({merged.id: composition.id})
                else:
                    self.invalid_merges.add((merged.id, composition.id))

    # ------------------------------------------------------------------
    # Entry point
    # ------------------------------------------------------------------

    def merge_identical_tasks(self) -> None:
        """Merge task contexts, then compositions."""
        with self.timepoints.group("merge_solver"):
            before = len(self.graph)
            with self.timepoints.group("merge_task_contexts"):
                self.merge_task_contexts()
            with self.timepoints.group("merge_compositions"):
                self.merge_compositions()
            logger.debug("merge pass: %d -> %d tasks", before, len(self.graph))
