"""DOT rendering of task graphs for post-mortem diagnostics."""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from pathlib import Path
from typing import Optional

from netresolve.plan.graph import TaskGraph

logger = logging.getLogger(__name__)

_KIND_SHAPES = {
    "TASK_CONTEXT": "box",
    "COMPOSITION": "folder",
    "DATA_SERVICE": "ellipse",
    "DEPLOYMENT": "component",
}


def _escape(text: str) -> str:
    return text.replace("\\", "\\\\").replace('"', '\\"')


def render_dot(graph: TaskGraph, title: str = "TaskGraph") -> str:
    """Render tasks, dependencies and connections as a DOT digraph."""
    lines = [f'digraph "{_escape(title)}" {{']
    lines.append("    rankdir=LR;")
    lines.append("    node [style=filled, fillcolor=white];")
    lines.append("")

    for task in graph.find_tasks():
        label = _escape(task.label())
        if task.execution_agent is not None and task.execution_agent in graph:
            label += "\\non " + _escape(graph[task.execution_agent].model)
        attrs = [f'label="{label}"', f"shape={_KIND_SHAPES[task.kind.value]}"]
        if task.abstract:
            attrs.append("fillcolor=lightgrey")
        if task.id in graph.mission or task.id in graph.permanent:
            attrs.append("penwidth=2")
        lines.append(f"    t{task.id} [{', '.join(attrs)}];")

    lines.append("")
    for parent, child, data in sorted(graph.dependency.edges(data=True)):
        roles = ",".join(sorted(data["roles"]))
        lines.append(f'    t{parent} -> t{child} [style=dashed, label="{_escape(roles)}"];')
    for conn in sorted(graph.connections(), key=lambda c: (c.source, c.sink, c.ports)):
        label = _escape(f"{conn.source_port} -> {conn.sink_port}")
        if not conn.policy.is_empty():
            label += "\\n" + conn.policy.describe()
        lines.append(f'    t{conn.source} -> t{conn.sink} [label="{label}"];')
    lines.append("}")
    return "\n".join(lines) + "\n"


def save_snapshot(graph: TaskGraph, directory: Path, prefix: str = "resolution-failure") -> Optional[Path]:
    """Write a DOT snapshot of *graph* into *directory*.

    Failures to write are logged, not raised.

    Returns:
        The path written, or None if writing failed.
    """
    stamp = datetime.now(timezone.utc).strftime("%Y%m%d-%H%M%S-%f")
    path = Path(directory) / f"{prefix}-{stamp}.dot"
    try:
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(render_dot(graph, prefix), encoding="utf-8")
    except OSError as exc:
        logger.error("could not save the network snapshot to %s: %s", path, exc)
        return None
    logger.info("saved the failed network to %s", path)
    return path
