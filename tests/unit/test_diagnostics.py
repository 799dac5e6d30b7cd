"""Unit tests for netresolve.network.diagnostics."""

from __future__ import annotations

from pathlib import Path

from netresolve.models.enums import ComponentKind
from netresolve.models.policy import ConnectionPolicy
from netresolve.network.diagnostics import render_dot, save_snapshot
from netresolve.plan.graph import TaskGraph


def _small_graph(graph: TaskGraph) -> TaskGraph:
    process = graph.add_task("camera_deployment", kind=ComponentKind.DEPLOYMENT)
    camera = graph.add_task("Camera", orocos_name="camera", execution_agent=process.id)
    detector = graph.add_task("Detector")
    perception = graph.add_task("Perception", kind=ComponentKind.COMPOSITION)
    service = graph.add_task("ImageProvider", kind=ComponentKind.DATA_SERVICE, abstract=True)
    graph.add_dependency(perception.id, detector.id, "detector")
    graph.connect(camera.id, "images", detector.id, "images", ConnectionPolicy.buffer(4))
    graph.mission.add(perception.id)
    graph.metadata["ids"] = (camera.id, detector.id, perception.id, service.id)
    return graph


class TestRenderDot:
    def test_nodes_and_edges(self, graph: TaskGraph) -> None:
        dot = render_dot(_small_graph(graph))
        camera, detector, perception, service = graph.metadata["ids"]
        assert dot.startswith('digraph "TaskGraph" {')
        assert dot.rstrip().endswith("}")
        assert f't{camera} [label="Camera[camera]#{camera}\\non camera_deployment", shape=box]' in dot
        assert f"t{perception} [" in dot and "shape=folder, penwidth=2" in dot
        assert "shape=ellipse, fillcolor=lightgrey" in dot
        assert f't{perception} -> t{detector} [style=dashed, label="detector"];' in dot
        assert f't{camera} -> t{detector} [label="images -> images\\nbuffer:4"];' in dot
        assert service in graph

    def test_quotes_are_escaped(self, graph: TaskGraph) -> None:
        graph.add_task('Weird"Model')
        dot = render_dot(graph, title='say "hi"')
        assert 'digraph "say \\"hi\\"" {' in dot
        assert 'Weird\\"Model' in dot


class TestSaveSnapshot:
    def test_snapshot_is_written(self, graph: TaskGraph, tmp_path: Path) -> None:
        path = save_snapshot(_small_graph(graph), tmp_path / "failures")
        assert path is not None
        assert path.parent == tmp_path / "failures"
        assert path.name.startswith("resolution-failure-")
        assert path.read_text(encoding="utf-8") == render_dot(graph, "resolution-failure")

    def test_write_errors_are_logged(self, graph: TaskGraph, tmp_path: Path, caplog) -> None:
        blocker = tmp_path / "file"
        blocker.write_text("")
        assert save_snapshot(graph, blocker) is None
        assert "could not save the network snapshot" in caplog.text
