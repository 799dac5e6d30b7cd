"""Exception hierarchy for network generation and resolution.

All exceptions raised by the resolver are subclasses of ``NetResolveError``.
Callers can catch any resolution failure with a single except clause and
still discriminate between the specific error types.

Error taxonomy:

Internal (invariant violated, always a bug in the resolver or a hook):
    InternalError              - generic invariant violation
    ModifyingFinalizedPortInfo - update of a port whose info is final
    DataflowPropagationError   - merge failure while propagating port info
    InvalidReplacement         - self-merge or cycle in the replacement graph

Requirements (cannot be satisfied as written):
    SpecError                  - generic requirement or model problem
    TaskAllocationFailed       - abstract tasks left in the generated network
    DeviceAllocationFailed     - device drivers without a device
    ConflictingDeviceAllocation - one device claimed by two drivers
    MissingDeployments         - concrete tasks without a deployment
    IncompatiblePolicies       - two connection policies disagree
    UnknownModelError          - a model name is not in the registry

Usage:
    TransactionStateError      - transaction used after commit/discard
    TransactionConflictError   - base graph changed under a transaction
    EngineStateError           - engine phase called out of order
    AsyncResolutionError       - asynchronous resolution misused
    ConfigError                - configuration file could not be loaded
"""
from __future__ import annotations

from typing import Any, Iterable, Mapping, Optional


class NetResolveError(Exception):
    """Base class for all resolution exceptions."""


# ---------------------------------------------------------------------------
# Internal errors
# ---------------------------------------------------------------------------

class InternalError(NetResolveError):
    """An invariant of the resolver was violated."""


class ModifyingFinalizedPortInfo(InternalError):
    """Information was added to a port whose information is already final.

    Attributes:
        task_id: Id of the task owning the port.
        port:    Port name, or ``None`` for the task-level information.
    """

    def __init__(self, task_id: int, port: Optional[str], detail: str = "") -> None:
        self.task_id = task_id
        self.port = port
        where = f"task #{task_id}" if port is None else f"port '{port}' of task #{task_id}"
        suffix = f": {detail}" if detail else ""
        super().__init__(f"trying to modify finalized information of {where}{suffix}")


class DataflowPropagationError(InternalError):
    """Merging port information failed during dataflow propagation.

    Attributes:
        task_id: Id of the task whose port was being updated.
        port:    Port name, or ``None`` for the task-level information.
        cause:   The original merge exception.
    """

    def __init__(self, task_id: int, port: Optional[str], cause: BaseException) -> None:
        self.task_id = task_id
        self.port = port
        self.cause = cause
        where = f"task #{task_id}" if port is None else f"port '{port}' of task #{task_id}"
        super().__init__(f"error while merging information on {where}: {cause}")


class InvalidReplacement(InternalError):
    """A replacement would merge a task with itself or create a cycle."""


# ---------------------------------------------------------------------------
# Requirement and model errors
# ---------------------------------------------------------------------------

class SpecError(NetResolveError):
    """The requirements or the models cannot be resolved as written."""


class UnknownModelError(SpecError):
    """A model, deployment or device name is not known to the registry."""

    def __init__(self, kind: str, name: str) -> None:
        self.kind = kind
        self.name = name
        super().__init__(f"unknown {kind} '{name}'")


class IncompatiblePolicies(SpecError):
    """Two connection policies set the same field to different values."""

    def __init__(self, field: str, left: Any, right: Any) -> None:
        self.field = field
        self.left = left
        self.right = right
        super().__init__(
            f"incompatible connection policies: {field}={left!r} and {field}={right!r}"
        )


def _describe_tasks(tasks: Mapping[str, Iterable[str]], what: str) -> str:
    lines = []
    for label, candidates in tasks.items():
        candidates = list(candidates)
        if candidates:
            lines.append(f"  {label}: {what} {', '.join(candidates)}")
        else:
            lines.append(f"  {label}: no {what.rstrip(':')}")
    return "\n".join(lines)


class TaskAllocationFailed(SpecError):
    """Abstract tasks remain in the generated network.

    Attributes:
        tasks: Mapping of task label (with parent roles) to the concrete
               models that could have been selected for it.
    """

    def __init__(self, tasks: Mapping[str, Iterable[str]]) -> None:
        self.tasks = {label: list(c) for label, c in tasks.items()}
        super().__init__(
            f"cannot find a concrete implementation for {len(self.tasks)} task(s)\n"
            + _describe_tasks(self.tasks, "candidates:")
        )


class DeviceAllocationFailed(SpecError):
    """Device drivers remain without an attached device.

    Attributes:
        tasks: Mapping of task label to the device models it drives.
    """

    def __init__(self, tasks: Mapping[str, Iterable[str]]) -> None:
        self.tasks = {label: list(c) for label, c in tasks.items()}
        super().__init__(
            f"cannot find a device for {len(self.tasks)} driver task(s)\n"
            + _describe_tasks(self.tasks, "drives:")
        )


class ConflictingDeviceAllocation(SpecError):
    """The same device is attached to two different driver tasks."""

    def __init__(self, device: str, task: str, other: str) -> None:
        self.device = device
        self.task = task
        self.other = other
        super().__init__(
            f"device '{device}' is attached to both {task} and {other}; "
            f"these tasks could not be merged"
        )


class MissingDeployments(SpecError):
    """Concrete tasks could not be bound to any deployment.

    Attributes:
        tasks: Mapping of task label (with parent roles) to the deployed
               task slots that were considered for it.
    """

    def __init__(self, tasks: Mapping[str, Iterable[str]]) -> None:
        self.tasks = {label: list(c) for label, c in tasks.items()}
        super().__init__(
            f"cannot deploy the following {len(self.tasks)} task(s)\n"
            + _describe_tasks(self.tasks, "candidates:")
        )


# ---------------------------------------------------------------------------
# Usage errors
# ---------------------------------------------------------------------------

class TransactionError(NetResolveError):
    """Base class for transaction misuse."""


class TransactionStateError(TransactionError):
    """A finalized (committed or discarded) transaction was used."""


class TransactionConflictError(TransactionError):
    """The base graph changed structurally since the transaction was opened."""


class EngineStateError(NetResolveError):
    """An engine phase was called in the wrong state."""

    def __init__(self, operation: str, state: Any, expected: Iterable[Any]) -> None:
        self.operation = operation
        self.state = state
        self.expected = list(expected)
        names = ", ".join(str(getattr(s, "value", s)) for s in self.expected)
        super().__init__(
            f"cannot call {operation} in state '{getattr(state, 'value', state)}' "
            f"(expected one of: {names})"
        )


class AsyncResolutionError(NetResolveError):
    """The asynchronous resolution wrapper was used out of order."""


class ConfigError(NetResolveError):
    """The resolver configuration could not be loaded or is invalid."""
