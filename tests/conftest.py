"""Shared fixtures: small component registries and task graphs."""

from __future__ import annotations

import pytest

from netresolve.models.component import (
    ChildModel,
    ComponentModel,
    CompositionConnection,
    CompositionExport,
    DeployedTaskModel,
    DeploymentModel,
    DeviceModel,
    ModelRegistry,
    PortModel,
)
from netresolve.models.enums import ActivityType, ComponentKind, PortDirection
from netresolve.plan.graph import TaskGraph

IN = PortDirection.INPUT
OUT = PortDirection.OUTPUT


def perception_components() -> list[ComponentModel]:
    """Camera -> Detector pipeline wrapped in a composition, plus a logger."""
    return [
        ComponentModel(
            name="ImageProvider",
            kind=ComponentKind.DATA_SERVICE,
            ports=(PortModel(name="images", direction=OUT),),
        ),
        ComponentModel(
            name="Camera",
            provides=("ImageProvider",),
            driver_for=("camera_dev",),
            activity=ActivityType.PERIODIC,
            ports=(PortModel(name="images", direction=OUT),),
        ),
        ComponentModel(
            name="Detector",
            trigger_latency=0.01,
            ports=(
                PortModel(
                    name="images",
                    direction=IN,
                    trigger_port=True,
                    needs_reliable_connection=True,
                ),
                PortModel(name="detections", direction=OUT),
            ),
        ),
        ComponentModel(
            name="Perception",
            kind=ComponentKind.COMPOSITION,
            children=(
                ChildModel(role="camera", model="ImageProvider"),
                ChildModel(role="detector", model="Detector"),
            ),
            connections=(
                CompositionConnection(
                    source_role="camera",
                    source_port="images",
                    sink_role="detector",
                    sink_port="images",
                ),
            ),
            exports=(CompositionExport(role="detector", port="detections"),),
        ),
        ComponentModel(
            name="Logger",
            ports=(PortModel(name="data", direction=IN, multiplexes=True),),
        ),
    ]


def perception_deployments() -> list[DeploymentModel]:
    return [
        DeploymentModel(
            name="camera_deployment",
            tasks=(
                DeployedTaskModel(
                    name="camera", model="Camera", activity=ActivityType.PERIODIC, period=0.1
                ),
            ),
        ),
        DeploymentModel(
            name="perception_deployment",
            tasks=(DeployedTaskModel(name="detector", model="Detector"),),
        ),
        DeploymentModel(
            name="logger_deployment",
            tasks=(DeployedTaskModel(name="logger", model="Logger"),),
        ),
    ]


def perception_devices() -> list[DeviceModel]:
    return [
        DeviceModel(name="front_camera", model="camera_dev", driver="Camera", period=0.1),
    ]


@pytest.fixture
def registry() -> ModelRegistry:
    return ModelRegistry.build(
        perception_components(), perception_deployments(), perception_devices()
    )


@pytest.fixture
def graph() -> TaskGraph:
    return TaskGraph()


@pytest.fixture
def undeployable_registry() -> ModelRegistry:
    """The perception models without any deployment."""
    return ModelRegistry.build(perception_components(), devices=perception_devices())
