"""Replacement graph: which task ended up standing in for which."""

from __future__ import annotations

import logging

import networkx as nx

from netresolve.exceptions import InvalidReplacement

logger = logging.getLogger(__name__)


class ReplacementGraph:
    """Directed acyclic graph of ``replaced -> replacement`` edges.

    Every task has at most one replacement. Following the edges from any
    task leads to the task that finally represents it. Lookups are cached
    and the cache is revalidated lazily: a cached representative that has
    since been replaced is used as the new starting point of the walk.
    """

    def __init__(self) -> None:
        self.graph: nx.DiGraph = nx.DiGraph()
        self._resolved: dict[int, int] = {}

    def __len__(self) -> int:
        return self.graph.number_of_edges()

    def __contains__(self, task_id: object) -> bool:
        return task_id in self.graph

    def clear(self) -> None:
        self.graph.clear()
        self._resolved.clear()

    def register_replacement(self, old: int, new: int) -> None:
        """Record that *old* is now represented by *new*.

        Raises:
            InvalidReplacement: If *old* and *new* are the same task, if *old*
                already has a replacement, or if the edge would create a
                cycle.
        """
        if old == new:
            raise InvalidReplacement(f"cannot replace task #{old} by itself")
        if old in self.graph and self.graph.out_degree(old) > 0:
            current = next(iter(self.graph.successors(old)))
            raise InvalidReplacement(
                f"task #{old} is already replaced by #{current}, cannot replace it by #{new}"
            )
        if new in self.graph and old in self.graph and nx.has_path(self.graph, new, old):
            raise InvalidReplacement(
                f"replacing #{old} by #{new} would create a replacement cycle"
            )
        self.graph.add_edge(old, new)
        logger.debug("registered replacement #%d -> #%d", old, new)

    def replacement_for(self, task_id: int) -> int:
        """The task currently representing *task_id* (itself if never replaced)."""
        start = self._resolved.get(task_id, task_id)
        if start not in self.graph or self.graph.out_degree(start) == 0:
            return start
        path = [task_id]
        current = start
        while self.graph.out_degree(current) > 0:
            path.append(current)
            current = next(iter(self.graph.successors(current)))
        for visited in path:
            self._resolved[visited] = current
        return current

    def replaced_tasks(self) -> list[int]:
        return sorted(n for n in self.graph if self.graph.out_degree(n) > 0)
