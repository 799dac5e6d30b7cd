"""Unit tests for netresolve.network.engine."""

from __future__ import annotations

from pathlib import Path

import pytest

from netresolve.config import ResolutionConfig
from netresolve.exceptions import (
    ConfigError,
    EngineStateError,
    MissingDeployments,
    TaskAllocationFailed,
)
from netresolve.models.component import ComponentModel, ModelRegistry, PortModel
from netresolve.models.enums import ComponentKind, OnErrorPolicy, PortDirection
from netresolve.models.policy import ConnectionPolicy
from netresolve.models.requirements import InstanceRequirement
from netresolve.network.engine import Engine, EngineState
from netresolve.network.hooks import ResolutionHooks
from netresolve.plan.graph import TaskGraph


def _perception() -> list[InstanceRequirement]:
    return [InstanceRequirement(name="perception", model="Perception")]


# ---------------------------------------------------------------------------
# State machine
# ---------------------------------------------------------------------------


class TestStateMachine:
    def test_phases_require_prepare(self, graph: TaskGraph, registry: ModelRegistry) -> None:
        engine = Engine(graph, registry)
        with pytest.raises(EngineStateError) as exc_info:
            engine.compute_system_network()
        assert exc_info.value.state is EngineState.IDLE
        assert exc_info.value.expected == [EngineState.PREPARED]

    def test_prepare_twice_is_rejected(self, graph: TaskGraph, registry: ModelRegistry) -> None:
        engine = Engine(graph, registry)
        engine.prepare(_perception())
        with pytest.raises(EngineStateError, match="cannot call prepare in state 'prepared'"):
            engine.prepare(_perception())

    def test_apply_requires_a_deployed_network(
        self, graph: TaskGraph, registry: ModelRegistry
    ) -> None:
        engine = Engine(graph, registry)
        engine.prepare(_perception())
        engine.compute_system_network()
        with pytest.raises(EngineStateError):
            engine.apply_system_network_to_plan()

    def test_phases_in_order(self, graph: TaskGraph, registry: ModelRegistry) -> None:
        engine = Engine(graph, registry)
        engine.prepare(_perception())
        assert engine.state is EngineState.PREPARED
        engine.compute_system_network()
        assert engine.state is EngineState.NETWORK_COMPUTED
        engine.deploy_system_network()
        assert engine.state is EngineState.DEPLOYED
        engine.compute_connection_policies()
        engine.finalize_deployed_tasks()
        engine.apply_system_network_to_plan()
        assert engine.state is EngineState.COMMITTED

    def test_discard_rolls_back(self, graph: TaskGraph, registry: ModelRegistry) -> None:
        engine = Engine(graph, registry)
        engine.prepare(_perception())
        engine.compute_system_network()
        engine.discard()
        assert engine.state is EngineState.ROLLED_BACK
        assert len(graph) == 0
        engine.prepare(_perception())
        assert engine.state is EngineState.PREPARED

    def test_unknown_override(self, graph: TaskGraph, registry: ModelRegistry) -> None:
        with pytest.raises(ConfigError, match="no_such_option"):
            Engine(graph, registry).prepare(_perception(), no_such_option=True)


# ---------------------------------------------------------------------------
# Whole resolution
# ---------------------------------------------------------------------------


class TestResolve:
    def test_perception_network(self, graph: TaskGraph, registry: ModelRegistry) -> None:
        result = Engine(graph, registry).resolve(_perception())

        (perception,) = graph.find_tasks(model="Perception")
        (camera,) = graph.find_tasks(model="Camera")
        (detector,) = graph.find_tasks(model="Detector")
        assert result.required_tasks == {"perception": perception.id}
        assert graph.mission == {perception.id}
        assert len(graph.find_tasks(kind=ComponentKind.DEPLOYMENT)) == 2
        assert result.deployments == sorted([camera.execution_agent, detector.execution_agent])
        assert result.bindings[camera.id] == (camera.execution_agent, "camera")
        assert result.bindings[detector.id] == (detector.execution_agent, "detector")
        assert camera.device == "front_camera"
        assert camera.conf == ["default"]
        assert result.policy(camera.id, "images", detector.id, "images") == (
            ConnectionPolicy.buffer(4)
        )
        assert not any(task.proxy for task in graph)

    def test_port_dynamics_are_reported(self, graph: TaskGraph, registry: ModelRegistry) -> None:
        result = Engine(graph, registry).resolve(_perception())
        (camera,) = graph.find_tasks(model="Camera")
        dynamics = result.port_dynamics[(camera.id, "images")]
        assert dynamics.minimal_period() == pytest.approx(0.1)

    def test_buffer_margin_override(self, graph: TaskGraph, registry: ModelRegistry) -> None:
        result = Engine(graph, registry).resolve(_perception(), buffer_size_margin=0.0)
        (camera,) = graph.find_tasks(model="Camera")
        (detector,) = graph.find_tasks(model="Detector")
        assert result.policy(camera.id, "images", detector.id, "images") == (
            ConnectionPolicy.buffer(3)
        )

    def test_without_deployments(self, graph: TaskGraph, undeployable_registry) -> None:
        result = Engine(graph, undeployable_registry).resolve(
            _perception(), compute_deployments=False
        )
        assert result.deployments == []
        assert result.policies == {}
        assert len(graph.find_tasks(model="Detector")) == 1

    def test_permanent_requirements(self, graph: TaskGraph, registry: ModelRegistry) -> None:
        result = Engine(graph, registry).resolve(
            [
                InstanceRequirement(
                    name="logger", model="Logger", mission=False, permanent=True
                )
            ]
        )
        assert graph.mission == set()
        assert graph.permanent == {result.required_tasks["logger"]}

    def test_plain_requirements_survive_the_commit(
        self, graph: TaskGraph, registry: ModelRegistry
    ) -> None:
        result = Engine(graph, registry).resolve(
            [
                InstanceRequirement(
                    name="logger", model="Logger", mission=False, permanent=False
                )
            ]
        )
        logger_id = result.required_tasks["logger"]
        assert logger_id in graph
        assert graph.mission == set() and graph.permanent == set()
        deployment = graph[logger_id].execution_agent
        assert deployment is not None and deployment in graph
        assert result.deployments == [deployment]

    def test_hooks_are_called_in_order(self, graph: TaskGraph, registry: ModelRegistry) -> None:
        stages = []

        def recorder(stage):
            return lambda g: stages.append(stage)

        names = [
            "instantiation",
            "instantiated_network",
            "system_network",
            "deployment",
            "final_network",
        ]
        hooks = ResolutionHooks(**{name: [recorder(name)] for name in names})
        Engine(graph, registry, hooks=hooks).resolve(_perception())
        assert stages == names

    def test_engine_can_resolve_again(self, graph: TaskGraph, registry: ModelRegistry) -> None:
        engine = Engine(graph, registry)
        engine.resolve(_perception())
        engine.resolve(_perception())
        assert engine.state is EngineState.COMMITTED


# ---------------------------------------------------------------------------
# Error handling
# ---------------------------------------------------------------------------


class TestErrorPolicy:
    def test_discard_leaves_the_graph_unchanged(
        self, graph: TaskGraph, undeployable_registry
    ) -> None:
        engine = Engine(graph, undeployable_registry)
        with pytest.raises(MissingDeployments):
            engine.resolve(_perception())
        assert len(graph) == 0
        assert engine.state is EngineState.ROLLED_BACK
        assert engine.work_plan.finalized

    def test_commit_keeps_the_partial_network(
        self, graph: TaskGraph, undeployable_registry
    ) -> None:
        engine = Engine(graph, undeployable_registry)
        with pytest.raises(MissingDeployments):
            engine.resolve(_perception(), on_error=OnErrorPolicy.COMMIT)
        assert engine.state is EngineState.COMMITTED
        assert len(graph.find_tasks(model="Detector")) == 1

    def test_none_policy_discards(self, graph: TaskGraph, undeployable_registry) -> None:
        engine = Engine(
            graph, undeployable_registry, ResolutionConfig(on_error=OnErrorPolicy.NONE)
        )
        with pytest.raises(MissingDeployments):
            engine.resolve(_perception())
        assert len(graph) == 0

    def test_failed_network_snapshot(
        self, graph: TaskGraph, undeployable_registry, tmp_path: Path
    ) -> None:
        engine = Engine(graph, undeployable_registry)
        with pytest.raises(MissingDeployments):
            engine.resolve(_perception(), diagnostics_dir=tmp_path)
        (snapshot,) = tmp_path.glob("resolution-failure-*.dot")
        text = snapshot.read_text(encoding="utf-8")
        assert text.startswith('digraph "resolution-failure"')
        assert "Detector#" in text

    def test_allocation_failure_names_the_role(
        self, graph: TaskGraph, registry: ModelRegistry
    ) -> None:
        stereo = ComponentModel(
            name="StereoCamera",
            provides=("ImageProvider",),
            ports=(PortModel(name="images", direction=PortDirection.OUTPUT),),
        )
        ambiguous = ModelRegistry.build(
            [*registry.components.values(), stereo],
            registry.deployments.values(),
            registry.devices.values(),
        )
        with pytest.raises(TaskAllocationFailed, match="Perception.camera") as exc_info:
            Engine(graph, ambiguous).resolve(_perception())
        assert list(exc_info.value.tasks.values()) == [["Camera", "StereoCamera"]]
        assert len(graph) == 0

    def test_error_in_hook_is_propagated(self, graph: TaskGraph, registry: ModelRegistry) -> None:
        def broken(g: TaskGraph) -> None:
            raise RuntimeError("hook failed")

        engine = Engine(graph, registry, hooks=ResolutionHooks(deployment=[broken]))
        with pytest.raises(RuntimeError, match="hook failed"):
            engine.resolve(_perception())
        assert len(graph) == 0
        assert engine.state is EngineState.ROLLED_BACK
