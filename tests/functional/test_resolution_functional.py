"""Functional tests for whole resolutions on a persistent task graph.

Each scenario resolves requirements with :class:`Engine` and checks the
committed graph, the way a supervisor calling the resolver repeatedly
would see it: deduplication of requirements, reuse of running
deployments, reconfiguration, replacement of non-reusable tasks, bus
device wiring and atomic rollback on failure.
"""

from __future__ import annotations

import logging

import pytest

from netresolve.exceptions import MissingDeployments, SpecError, TaskAllocationFailed
from netresolve.models.component import (
    ChildModel,
    ComponentModel,
    CompositionConnection,
    DeployedTaskModel,
    DeploymentModel,
    DeviceModel,
    ModelRegistry,
    PortModel,
)
from netresolve.models.enums import ActivityType, ComponentKind, PortDirection
from netresolve.models.policy import ConnectionPolicy
from netresolve.models.requirements import InstanceRequirement
from netresolve.network.engine import Engine
from netresolve.plan.graph import TaskGraph

pytestmark = pytest.mark.functional


def _only(graph: TaskGraph, model: str):
    (task,) = graph.find_tasks(model=model)
    return task


# ---------------------------------------------------------------------------
# Perception pipeline
# ---------------------------------------------------------------------------


class TestPerceptionPipeline:
    def test_duplicate_requirements_share_one_network(
        self, graph: TaskGraph, registry: ModelRegistry
    ) -> None:
        result = Engine(graph, registry).resolve(
            [
                InstanceRequirement(name="front", model="Perception"),
                InstanceRequirement(name="obstacles", model="Perception"),
            ]
        )
        assert result.required_tasks["front"] == result.required_tasks["obstacles"]
        assert len(graph.find_tasks(model="Camera")) == 1
        assert len(graph.find_tasks(model="Detector")) == 1
        assert len(graph.find_tasks(kind=ComponentKind.DEPLOYMENT)) == 2

    def test_children_are_deployed_with_buffered_connection(
        self, graph: TaskGraph, registry: ModelRegistry
    ) -> None:
        result = Engine(graph, registry).resolve(
            [InstanceRequirement(name="perception", model="Perception")]
        )
        perception = graph[result.required_tasks["perception"]]
        camera, detector = _only(graph, "Camera"), _only(graph, "Detector")

        assert graph.children(perception.id) == {
            camera.id: {"camera"},
            detector.id: {"detector"},
        }
        assert graph[camera.execution_agent].deployment == "camera_deployment"
        assert graph[detector.execution_agent].deployment == "perception_deployment"
        assert result.policy(camera.id, "images", detector.id, "images") == (
            ConnectionPolicy.buffer(4)
        )
        assert [(c.source, c.sink_port) for c in graph.concrete_input_connections(detector.id)] == [
            (camera.id, "images")
        ]

    def test_second_resolution_reuses_running_tasks(
        self, graph: TaskGraph, registry: ModelRegistry
    ) -> None:
        engine = Engine(graph, registry)
        requirements = [InstanceRequirement(name="perception", model="Perception")]
        first = engine.resolve(requirements)
        camera, detector = _only(graph, "Camera"), _only(graph, "Detector")

        second = engine.resolve(requirements)

        assert _only(graph, "Camera").id == camera.id
        assert _only(graph, "Detector").id == detector.id
        assert second.deployments == first.deployments
        assert len(graph.find_tasks(kind=ComponentKind.DEPLOYMENT)) == 2
        assert not graph[camera.id].needs_reconfiguration
        assert second.policy(camera.id, "images", detector.id, "images") == (
            ConnectionPolicy.buffer(4)
        )
        perception = second.required_tasks["perception"]
        assert graph.mission == {perception}
        assert set(graph.children(perception)) == {camera.id, detector.id}

    def test_failed_resolution_leaves_the_graph_untouched(
        self, graph: TaskGraph, registry: ModelRegistry
    ) -> None:
        engine = Engine(graph, registry)
        engine.resolve([InstanceRequirement(name="perception", model="Perception")])
        revision, tasks = graph.revision, sorted(graph.tasks)

        with pytest.raises(MissingDeployments):
            engine.resolve(
                [
                    InstanceRequirement(name="perception", model="Perception"),
                    InstanceRequirement(name="log", model="Logger", deployment="nowhere"),
                ]
            )

        assert graph.revision == revision
        assert sorted(graph.tasks) == tasks
        assert graph.find_tasks(model="Logger") == []

    def test_commit_on_error_keeps_the_partial_network(
        self, graph: TaskGraph, registry: ModelRegistry
    ) -> None:
        with pytest.raises(MissingDeployments):
            Engine(graph, registry).resolve(
                [InstanceRequirement(name="log", model="Logger", deployment="nowhere")],
                on_error="commit",
            )
        (logger_task,) = graph.find_tasks(model="Logger")
        assert logger_task.execution_agent is None


# ---------------------------------------------------------------------------
# Reconfiguration and replacement of running tasks
# ---------------------------------------------------------------------------


class TestRunningTasks:
    def test_changed_configuration_is_applied_to_the_running_task(
        self, graph: TaskGraph, registry: ModelRegistry
    ) -> None:
        engine = Engine(graph, registry)
        engine.resolve([InstanceRequirement(name="camera", model="Camera")])
        camera = _only(graph, "Camera")
        assert camera.conf == ["default"]

        result = engine.resolve(
            [InstanceRequirement(name="camera", model="Camera", arguments={"conf": ["outdoor"]})]
        )

        reconfigured = _only(graph, "Camera")
        assert reconfigured.id == camera.id == result.required_tasks["camera"]
        assert reconfigured.conf == ["outdoor"]
        assert reconfigured.needs_reconfiguration

    def test_non_reusable_task_is_replaced(
        self, graph: TaskGraph, registry: ModelRegistry
    ) -> None:
        engine = Engine(graph, registry)
        engine.resolve([InstanceRequirement(name="camera", model="Camera")])
        old = _only(graph, "Camera")
        graph[old.id].reusable = False

        result = engine.resolve([InstanceRequirement(name="camera", model="Camera")])

        new = graph[result.required_tasks["camera"]]
        assert new.id != old.id
        assert new.model == "Camera"
        assert new.orocos_name == "camera"
        assert new.execution_agent == old.execution_agent
        assert new.start_after == {old.id}
        assert not new.allow_automatic_setup
        assert len(graph.find_tasks(kind=ComponentKind.DEPLOYMENT)) == 1


# ---------------------------------------------------------------------------
# Service selection
# ---------------------------------------------------------------------------


def _two_camera_registry(registry: ModelRegistry) -> ModelRegistry:
    stereo = ComponentModel(
        name="StereoCamera",
        provides=("ImageProvider",),
        activity=ActivityType.PERIODIC,
        ports=(
            PortModel(
                name="images", direction=PortDirection.OUTPUT, triggered_on_update=True
            ),
        ),
    )
    stereo_deployment = DeploymentModel(
        name="stereo_deployment",
        tasks=(
            DeployedTaskModel(
                name="stereo", model="StereoCamera", activity=ActivityType.PERIODIC, period=0.05
            ),
        ),
    )
    return ModelRegistry.build(
        [*registry.components.values(), stereo],
        [*registry.deployments.values(), stereo_deployment],
        registry.devices.values(),
    )


class TestServiceSelection:
    def test_ambiguous_service_is_reported(
        self, graph: TaskGraph, registry: ModelRegistry
    ) -> None:
        with pytest.raises(TaskAllocationFailed, match="Perception.camera"):
            Engine(graph, _two_camera_registry(registry)).resolve(
                [InstanceRequirement(name="perception", model="Perception")]
            )
        assert len(graph) == 0

    def test_selection_resolves_the_ambiguity(
        self, graph: TaskGraph, registry: ModelRegistry
    ) -> None:
        Engine(graph, _two_camera_registry(registry)).resolve(
            [
                InstanceRequirement(
                    name="perception",
                    model="Perception",
                    selections={"camera": "StereoCamera"},
                )
            ]
        )
        stereo, detector = _only(graph, "StereoCamera"), _only(graph, "Detector")
        assert graph.find_tasks(model="Camera") == []
        assert graph[stereo.execution_agent].deployment == "stereo_deployment"
        assert [c.source for c in graph.input_connections(detector.id)] == [stereo.id]


# ---------------------------------------------------------------------------
# Communication busses
# ---------------------------------------------------------------------------


@pytest.fixture
def bus_registry() -> ModelRegistry:
    return ModelRegistry.build(
        [
            ComponentModel(name="CanDriver", driver_for=("can_bus",)),
            ComponentModel(
                name="ImuDriver",
                driver_for=("imu_dev",),
                bus_port="can_in",
                trigger_latency=0.02,
                ports=(
                    PortModel(
                        name="can_in",
                        direction=PortDirection.INPUT,
                        trigger_port=True,
                        needs_reliable_connection=True,
                    ),
                    PortModel(name="imu_samples", direction=PortDirection.OUTPUT),
                ),
            ),
        ],
        [
            DeploymentModel(
                name="can_deployment",
                tasks=(
                    DeployedTaskModel(name="can0", model="CanDriver"),
                    DeployedTaskModel(name="imu", model="ImuDriver"),
                ),
            ),
        ],
        [
            DeviceModel(name="can0", model="can_bus", driver="CanDriver", is_com_bus=True),
            DeviceModel(
                name="imu", model="imu_dev", driver="ImuDriver", com_bus="can0", period=0.01
            ),
        ],
    )


class TestComBus:
    def test_bus_driver_feeds_the_device_driver(
        self, graph: TaskGraph, bus_registry: ModelRegistry
    ) -> None:
        result = Engine(graph, bus_registry).resolve(
            [InstanceRequirement(name="imu", model="imu")]
        )
        bus, imu = _only(graph, "CanDriver"), _only(graph, "ImuDriver")

        assert imu.id == result.required_tasks["imu"]
        assert bus.device == "can0" and imu.device == "imu"
        assert bus.bus_clients == ["imu"]
        assert imu.configure_after == {bus.id}
        assert bus.execution_agent == imu.execution_agent
        assert result.policy(bus.id, "imu", imu.id, "can_in") == ConnectionPolicy.buffer(4)
        dynamics = result.port_dynamics[(bus.id, "imu")]
        assert dynamics.minimal_period() == pytest.approx(0.01)


# ---------------------------------------------------------------------------
# Fallback policies
# ---------------------------------------------------------------------------


def _tracking_registry(registry: ModelRegistry, **connection) -> ModelRegistry:
    """An event-driven grabber whose output rate nothing can predict."""
    grabber = ComponentModel(
        name="Grabber",
        ports=(PortModel(name="images", direction=PortDirection.OUTPUT),),
    )
    tracking = ComponentModel(
        name="Tracking",
        kind=ComponentKind.COMPOSITION,
        children=(
            ChildModel(role="grabber", model="Grabber"),
            ChildModel(role="detector", model="Detector"),
        ),
        connections=(
            CompositionConnection(
                source_role="grabber",
                source_port="images",
                sink_role="detector",
                sink_port="images",
                **connection,
            ),
        ),
    )
    grabber_deployment = DeploymentModel(
        name="grabber_deployment",
        tasks=(DeployedTaskModel(name="grabber", model="Grabber"),),
    )
    return ModelRegistry.build(
        [*registry.components.values(), grabber, tracking],
        [*registry.deployments.values(), grabber_deployment],
        registry.devices.values(),
    )


class TestFallbackPolicies:
    def test_fallback_is_used_for_unknown_dynamics(
        self, graph: TaskGraph, registry: ModelRegistry, caplog: pytest.LogCaptureFixture
    ) -> None:
        tracking = _tracking_registry(
            registry, fallback_policy={"type": "BUFFER", "size": 1}
        )
        with caplog.at_level(logging.WARNING, logger="netresolve"):
            result = Engine(graph, tracking).resolve(
                [InstanceRequirement(name="tracking", model="Tracking")]
            )
        grabber, detector = _only(graph, "Grabber"), _only(graph, "Detector")
        assert result.policy(grabber.id, "images", detector.id, "images") == (
            ConnectionPolicy.buffer(1)
        )
        assert "using fallback" in caplog.text

    def test_unknown_dynamics_without_fallback_fail(
        self, graph: TaskGraph, registry: ModelRegistry
    ) -> None:
        with pytest.raises(SpecError, match="Grabber"):
            Engine(graph, _tracking_registry(registry)).resolve(
                [InstanceRequirement(name="tracking", model="Tracking")]
            )
        assert len(graph) == 0
