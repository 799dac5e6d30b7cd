"""Enumerations for the component and task graph data model."""

from enum import Enum


class ComponentKind(str, Enum):
    """Kind of a component model or task."""

    TASK_CONTEXT = "TASK_CONTEXT"
    COMPOSITION = "COMPOSITION"
    DATA_SERVICE = "DATA_SERVICE"
    DEPLOYMENT = "DEPLOYMENT"


class ActivityType(str, Enum):
    """How a deployed task is triggered."""

    PERIODIC = "PERIODIC"
    TRIGGERED = "TRIGGERED"
    SLAVE = "SLAVE"
    FD_DRIVEN = "FD_DRIVEN"


class PortDirection(str, Enum):
    """Direction of a component port."""

    INPUT = "INPUT"
    OUTPUT = "OUTPUT"


class PolicyType(str, Enum):
    """Transport type of a connection."""

    DATA = "DATA"
    BUFFER = "BUFFER"


class TaskState(str, Enum):
    """Runtime state of a task, owned by the process launcher."""

    PENDING = "PENDING"
    STARTING = "STARTING"
    RUNNING = "RUNNING"
    FINISHING = "FINISHING"
    FINISHED = "FINISHED"


class OnErrorPolicy(str, Enum):
    """What the engine does with its working graph when resolution fails."""

    DISCARD = "discard"
    COMMIT = "commit"
    NONE = "none"
