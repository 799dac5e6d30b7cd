"""Task graph: the arena of tasks and their dataflow/dependency relations.

Tasks are stored in a dict keyed by stable integer ids. Relations live in
two networkx graphs over those ids:

* ``dataflow`` - a ``MultiDiGraph`` whose edges are keyed by
  ``(source_port, sink_port)`` and carry ``policy`` and
  ``fallback_policy`` attributes;
* ``dependency`` - a ``DiGraph`` from parent to child whose edges carry
  the set of ``roles`` under which the child is used.

Structural mutations bump :attr:`TaskGraph.revision`, which transactions
use to detect concurrent modification of their base.
"""

from __future__ import annotations

import itertools
import logging
import threading
from collections import deque
from typing import Any, Callable, Iterable, Iterator, Optional

import networkx as nx

from netresolve.exceptions import InternalError
from netresolve.models.enums import ComponentKind
from netresolve.models.policy import ConnectionPolicy
from netresolve.models.task import Connection, Task

logger = logging.getLogger(__name__)

GCCallback = Callable[["TaskGraph", Task], None]


class TaskGraph:
    """Container for tasks, their connections and their dependencies."""

    def __init__(self) -> None:
        self.tasks: dict[int, Task] = {}
        self.dataflow: nx.MultiDiGraph = nx.MultiDiGraph()
        self.dependency: nx.DiGraph = nx.DiGraph()
        self.mission: set[int] = set()
        self.permanent: set[int] = set()
        self.metadata: dict[str, Any] = {}
        self.revision = 0
        self.lock = threading.RLock()
        self._ids = itertools.count(1)

    # ------------------------------------------------------------------
    # Mutation bookkeeping
    # ------------------------------------------------------------------

    def _mutated(self) -> None:
        self.revision += 1

    def allocate_id(self) -> int:
        with self.lock:
            return next(self._ids)

    # ------------------------------------------------------------------
    # Tasks
    # ------------------------------------------------------------------

    def add_task(self, model: str, **attributes: Any) -> Task:
        """Create a task with a fresh id and insert it."""
        task = Task(id=self.allocate_id(), model=model, **attributes)
        self.insert(task)
        return task

    def insert(self, task: Task) -> Task:
        if task.id in self.tasks:
            raise InternalError(f"task #{task.id} is already in the graph")
        self._mutated()
        self.tasks[task.id] = task
        self.dataflow.add_node(task.id)
        self.dependency.add_node(task.id)
        return task

    def remove_task(self, task_id: int) -> Task:
        task = self[task_id]
        self._mutated()
        del self.tasks[task_id]
        self.dataflow.remove_node(task_id)
        self.dependency.remove_node(task_id)
        self.mission.discard(task_id)
        self.permanent.discard(task_id)
        for other in self.tasks.values():
            if other.execution_agent == task_id:
                other.execution_agent = None
            other.start_after.discard(task_id)
            other.configure_after.discard(task_id)
        return task

    def __getitem__(self, task_id: int) -> Task:
        try:
            return self.tasks[task_id]
        except KeyError:
            raise InternalError(f"task #{task_id} is not in the graph") from None

    def __contains__(self, task_id: object) -> bool:
        return task_id in self.tasks

    def __iter__(self) -> Iterator[Task]:
        return iter(list(self.tasks.values()))

    def __len__(self) -> int:
        return len(self.tasks)

    def find_tasks(
        self,
        model: Optional[str] = None,
        kind: Optional[ComponentKind] = None,
        local_only: bool = False,
    ) -> list[Task]:
        """Return tasks matching all given filters, sorted by id.

        ``local_only`` skips transaction placeholders for base graph tasks.
        """
        result = []
        for task in self.tasks.values():
            if model is not None and task.model != model:
                continue
            if kind is not None and task.kind is not kind:
                continue
            if local_only and task.proxy:
                continue
            result.append(task)
        return sorted(result, key=lambda t: t.id)

    def executed_tasks(self, deployment_id: int) -> list[Task]:
        return sorted(
            (t for t in self.tasks.values() if t.execution_agent == deployment_id),
            key=lambda t: t.id,
        )

    # ------------------------------------------------------------------
    # Dataflow
    # ------------------------------------------------------------------

    def connect(
        self,
        source: int,
        source_port: str,
        sink: int,
        sink_port: str,
        policy: Optional[ConnectionPolicy] = None,
        fallback_policy: Optional[ConnectionPolicy] = None,
    ) -> None:
        """Add (or merge into) the connection between two ports."""
        self[source]
        self[sink]
        key = (source_port, sink_port)
        policy = policy or ConnectionPolicy()
        self._mutated()
        if self.dataflow.has_edge(source, sink, key):
            data = self.dataflow.edges[source, sink, key]
            data["policy"] = data["policy"].merge(policy)
            if fallback_policy is not None:
                current = data.get("fallback_policy")
                data["fallback_policy"] = (
                    fallback_policy if current is None else current.merge(fallback_policy)
                )
            return
        self.dataflow.add_edge(
            source, sink, key=key, policy=policy, fallback_policy=fallback_policy
        )

    def disconnect(self, source: int, source_port: str, sink: int, sink_port: str) -> None:
        key = (source_port, sink_port)
        if self.dataflow.has_edge(source, sink, key):
            self._mutated()
            self.dataflow.remove_edge(source, sink, key)

    def set_policy(
        self, source: int, source_port: str, sink: int, sink_port: str, policy: ConnectionPolicy
    ) -> None:
        self._mutated()
        self.dataflow.edges[source, sink, (source_port, sink_port)]["policy"] = policy

    def clear_dataflow(self, task_id: int) -> None:
        """Remove every connection to or from *task_id*."""
        edges = list(self.dataflow.in_edges(task_id, keys=True)) + list(
            self.dataflow.out_edges(task_id, keys=True)
        )
        if edges:
            self._mutated()
            self.dataflow.remove_edges_from(edges)

    @staticmethod
    def _connection(source: int, sink: int, key: tuple[str, str], data: dict) -> Connection:
        return Connection(
            source=source,
            source_port=key[0],
            sink=sink,
            sink_port=key[1],
            policy=data.get("policy") or ConnectionPolicy(),
            fallback_policy=data.get("fallback_policy"),
        )

    def connections(self) -> list[Connection]:
        return [
            self._connection(s, t, k, d)
            for s, t, k, d in self.dataflow.edges(keys=True, data=True)
        ]

    def input_connections(self, task_id: int) -> list[Connection]:
        return [
            self._connection(s, t, k, d)
            for s, t, k, d in self.dataflow.in_edges(task_id, keys=True, data=True)
        ]

    def output_connections(self, task_id: int) -> list[Connection]:
        return [
            self._connection(s, t, k, d)
            for s, t, k, d in self.dataflow.out_edges(task_id, keys=True, data=True)
        ]

    def concrete_input_connections(self, task_id: int) -> list[Connection]:
        """Input connections of a task, with composition ports resolved.

        A source that is a composition is followed through its exported
        output port to the child actually producing the data. Policies
        found along the way are merged.
        """
        result = []
        for conn in self.input_connections(task_id):
            for source, source_port, policy, fallback in self._concrete_sources(
                conn.source, conn.source_port, conn.policy, conn.fallback_policy, set()
            ):
                result.append(
                    Connection(source, source_port, task_id, conn.sink_port, policy, fallback)
                )
        return result

    def concrete_output_connections(self, task_id: int) -> list[Connection]:
        """Output connections of a task, with composition ports resolved."""
        result = []
        for conn in self.output_connections(task_id):
            for sink, sink_port, policy, fallback in self._concrete_sinks(
                conn.sink, conn.sink_port, conn.policy, conn.fallback_policy, set()
            ):
                result.append(
                    Connection(task_id, conn.source_port, sink, sink_port, policy, fallback)
                )
        return result

    def has_concrete_input_connection(self, task_id: int, port: str) -> bool:
        return any(c.sink_port == port for c in self.concrete_input_connections(task_id))

    def _concrete_sources(self, source, port, policy, fallback, seen):
        if not self[source].is_composition:
            yield source, port, policy, fallback
            return
        if (source, port) in seen:
            return
        seen.add((source, port))
        for conn in self.input_connections(source):
            if conn.sink_port == port:
                yield from self._concrete_sources(
                    conn.source,
                    conn.source_port,
                    policy.merge(conn.policy),
                    _merge_fallback(fallback, conn.fallback_policy),
                    seen,
                )

    def _concrete_sinks(self, sink, port, policy, fallback, seen):
        if not self[sink].is_composition:
            yield sink, port, policy, fallback
            return
        if (sink, port) in seen:
            return
        seen.add((sink, port))
        for conn in self.output_connections(sink):
            if conn.source_port == port:
                yield from self._concrete_sinks(
                    conn.sink,
                    conn.sink_port,
                    policy.merge(conn.policy),
                    _merge_fallback(fallback, conn.fallback_policy),
                    seen,
                )

    # ------------------------------------------------------------------
    # Dependencies
    # ------------------------------------------------------------------

    def add_dependency(self, parent: int, child: int, role: str) -> None:
        self[parent]
        self[child]
        if parent == child:
            raise InternalError(f"task #{parent} cannot depend on itself")
        self._mutated()
        if self.dependency.has_edge(parent, child):
            self.dependency.edges[parent, child]["roles"].add(role)
        else:
            self.dependency.add_edge(parent, child, roles={role})

    def remove_dependency(self, parent: int, child: int) -> None:
        if self.dependency.has_edge(parent, child):
            self._mutated()
            self.dependency.remove_edge(parent, child)

    def clear_dependencies(self, task_id: int) -> None:
        edges = list(self.dependency.in_edges(task_id)) + list(
            self.dependency.out_edges(task_id)
        )
        if edges:
            self._mutated()
            self.dependency.remove_edges_from(edges)

    def children(self, parent: int) -> dict[int, set[str]]:
        return {
            child: set(data["roles"])
            for _, child, data in self.dependency.out_edges(parent, data=True)
        }

    def parents(self, child: int) -> dict[int, set[str]]:
        return {
            parent: set(data["roles"])
            for parent, _, data in self.dependency.in_edges(child, data=True)
        }

    def child_from_role(self, parent: int, role: str) -> Optional[int]:
        for child, roles in self.children(parent).items():
            if role in roles:
                return child
        return None

    def describe(self, task_id: int) -> str:
        """Task label followed by the roles it plays in its parents."""
        task = self[task_id]
        uses = [
            f"{self[p].model}.{role}"
            for p, roles in sorted(self.parents(task_id).items())
            for role in sorted(roles)
        ]
        if not uses:
            return task.label()
        return f"{task.label()} (child {', '.join(uses)})"

    # ------------------------------------------------------------------
    # Replacement
    # ------------------------------------------------------------------

    def replace_task(self, old: int, new: int) -> None:
        """Move every relation of *old* onto *new*.

        Dataflow edges, dependency edges, execution bindings, ordering
        constraints and mission/permanent flags are transferred. Relations
        that would make *new* depend on itself are dropped. *old* stays in
        the graph, unlinked.
        """
        if old == new:
            raise InternalError(f"cannot replace task #{old} by itself")
        self[old]
        self[new]
        self._mutated()
        for source, _, key, data in list(self.dataflow.in_edges(old, keys=True, data=True)):
            source = new if source == old else source
            self.connect(source, key[0], new, key[1], data.get("policy"), data.get("fallback_policy"))
        for _, sink, key, data in list(self.dataflow.out_edges(old, keys=True, data=True)):
            sink = new if sink == old else sink
            self.connect(new, key[0], sink, key[1], data.get("policy"), data.get("fallback_policy"))
        for parent, _, data in list(self.dependency.in_edges(old, data=True)):
            if parent in (new, old):
                continue
            for role in data["roles"]:
                self.add_dependency(parent, new, role)
        for _, child, data in list(self.dependency.out_edges(old, data=True)):
            if child in (new, old):
                continue
            for role in data["roles"]:
                self.add_dependency(new, child, role)
        self.clear_dataflow(old)
        self.clear_dependencies(old)
        for task in self.tasks.values():
            if task.execution_agent == old:
                task.execution_agent = new
            for constraint in (task.start_after, task.configure_after):
                if old in constraint:
                    constraint.discard(old)
                    if task.id != new:
                        constraint.add(new)
        for flags in (self.mission, self.permanent):
            if old in flags:
                flags.discard(old)
                flags.add(new)

    # ------------------------------------------------------------------
    # Garbage collection
    # ------------------------------------------------------------------

    def useful_tasks(self, roots: Iterable[int] = ()) -> set[int]:
        """Ids reachable from *roots* and the mission/permanent sets.

        Reachability follows dependency edges from parent to child and
        execution bindings from a task to its deployment.
        """
        seeds = (set(roots) | self.mission | self.permanent) & self.tasks.keys()
        useful: set[int] = set()
        queue: deque[int] = deque(seeds)
        while queue:
            current = queue.popleft()
            if current in useful:
                continue
            useful.add(current)
            queue.extend(self.dependency.successors(current))
            agent = self.tasks[current].execution_agent
            if agent is not None and agent in self.tasks:
                queue.append(agent)
        return useful

    def static_garbage_collect(
        self, roots: Iterable[int] = (), callback: Optional[GCCallback] = None
    ) -> list[int]:
        """Remove every task unreachable from *roots*.

        When *callback* is given it is called for each unreachable task
        instead of removing it, and decides what to do with it.

        Returns:
            The ids of the unreachable tasks, sorted.
        """
        useful = self.useful_tasks(roots)
        unreachable = sorted(self.tasks.keys() - useful)
        for task_id in unreachable:
            if task_id not in self.tasks:
                continue
            if callback is None:
                logger.debug("garbage collecting %s", self[task_id].label())
                self.remove_task(task_id)
            else:
                callback(self, self[task_id])
        return unreachable


def _merge_fallback(
    left: Optional[ConnectionPolicy], right: Optional[ConnectionPolicy]
) -> Optional[ConnectionPolicy]:
    if left is None:
        return right
    return left.merge(right)
