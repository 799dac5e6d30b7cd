"""Data models: registry metadata, tasks, policies and requirements."""

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
from netresolve.models.enums import (
    ActivityType,
    ComponentKind,
    OnErrorPolicy,
    PolicyType,
    PortDirection,
    TaskState,
)
from netresolve.models.policy import ConnectionPolicy
from netresolve.models.requirements import InstanceRequirement
from netresolve.models.task import Connection, Task

__all__ = [
    "ActivityType",
    "ChildModel",
    "ComponentKind",
    "ComponentModel",
    "CompositionConnection",
    "CompositionExport",
    "Connection",
    "ConnectionPolicy",
    "DeployedTaskModel",
    "DeploymentModel",
    "DeviceModel",
    "InstanceRequirement",
    "ModelRegistry",
    "OnErrorPolicy",
    "PolicyType",
    "PortDirection",
    "PortModel",
    "Task",
    "TaskState",
]
