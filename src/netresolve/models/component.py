"""Read-only component metadata consumed by the resolver.

The registry describes what can be instantiated (task contexts,
compositions and the data services they provide), where it can run
(deployments and their task slots) and which hardware devices exist.
All models are frozen pydantic models; the resolver never mutates them.
"""

from __future__ import annotations

from typing import Any, Iterable, Optional

from pydantic import BaseModel, ConfigDict, Field, model_validator

from netresolve.exceptions import UnknownModelError
from netresolve.models.enums import (
    ActivityType,
    ComponentKind,
    PolicyType,
    PortDirection,
)

_FROZEN = ConfigDict(frozen=True, str_strip_whitespace=True)


# ---------------------------------------------------------------------------
# Ports and compositions
# ---------------------------------------------------------------------------


class PortModel(BaseModel):
    """A typed input or output port of a component model."""

    model_config = _FROZEN

    name: str = Field(..., min_length=1, description="Port name, unique per model")
    direction: PortDirection = Field(..., description="Input or output")
    sample_size: int = Field(
        default=1, ge=1, description="Samples written per port activation"
    )
    burst_size: int = Field(default=0, ge=0, description="Samples in a burst")
    burst_period: float = Field(
        default=0.0, ge=0.0, description="Period of bursts in seconds, 0 if aperiodic"
    )
    trigger_port: bool = Field(
        default=False, description="Input port whose samples trigger the task"
    )
    multiplexes: bool = Field(
        default=False, description="Input port accepting several sources"
    )
    needs_reliable_connection: bool = Field(
        default=False, description="Input port that must not lose samples"
    )
    required_connection_type: PolicyType = Field(
        default=PolicyType.DATA,
        description="Connection type used when the port does not need reliability",
    )
    triggered_on_update: bool = Field(
        default=True, description="Output port written on every task update"
    )
    port_triggers: tuple[str, ...] = Field(
        default=(), description="Input ports whose samples cause writes on this port"
    )

    @property
    def is_input(self) -> bool:
        return self.direction is PortDirection.INPUT

    @property
    def is_output(self) -> bool:
        return self.direction is PortDirection.OUTPUT


class ChildModel(BaseModel):
    """A child role of a composition."""

    model_config = _FROZEN

    role: str = Field(..., min_length=1)
    model: str = Field(..., min_length=1, description="Required model or service")
    optional: bool = False
    arguments: dict[str, Any] = Field(default_factory=dict)


class CompositionConnection(BaseModel):
    """Connection between two children of a composition."""

    model_config = _FROZEN

    source_role: str
    source_port: str
    sink_role: str
    sink_port: str
    policy: dict[str, Any] = Field(default_factory=dict)
    # used when the policy cannot be computed from the dataflow dynamics
    fallback_policy: Optional[dict[str, Any]] = None


class CompositionExport(BaseModel):
    """Port of a child re-exported on the composition itself."""

    model_config = _FROZEN

    role: str
    port: str
    name: Optional[str] = Field(default=None, description="Exported name, defaults to port")

    @property
    def exported_name(self) -> str:
        return self.name or self.port


class ComponentModel(BaseModel):
    """A task context, composition or data service model.

    Compositions get their ports from their exports; the direction of an
    exported port is the direction of the child port it exports.
    """

    model_config = _FROZEN

    name: str = Field(..., min_length=1)
    kind: ComponentKind = ComponentKind.TASK_CONTEXT
    abstract: bool = False
    ports: tuple[PortModel, ...] = ()
    provides: tuple[str, ...] = Field(default=(), description="Data services provided")
    activity: ActivityType = ActivityType.TRIGGERED
    period: Optional[float] = Field(default=None, gt=0.0)
    trigger_latency: float = Field(
        default=0.0, ge=0.0, description="Worst-case delay between trigger and read"
    )
    driver_for: tuple[str, ...] = Field(
        default=(), description="Device models this component drives"
    )
    bus_port: Optional[str] = Field(
        default=None, description="Input port receiving samples from a communication bus"
    )
    children: tuple[ChildModel, ...] = ()
    connections: tuple[CompositionConnection, ...] = ()
    exports: tuple[CompositionExport, ...] = ()

    @model_validator(mode="after")
    def _check_structure(self) -> ComponentModel:
        names = [p.name for p in self.ports]
        if len(names) != len(set(names)):
            raise ValueError(f"duplicate port names on model '{self.name}'")
        if self.kind is not ComponentKind.COMPOSITION and self.children:
            raise ValueError(f"only compositions can have children ('{self.name}')")
        roles = {c.role for c in self.children}
        for conn in self.connections:
            if conn.source_role not in roles or conn.sink_role not in roles:
                raise ValueError(
                    f"connection of '{self.name}' refers to an unknown child role"
                )
        for export in self.exports:
            if export.role not in roles:
                raise ValueError(f"export of '{self.name}' refers to unknown role '{export.role}'")
        return self

    @property
    def is_abstract(self) -> bool:
        return self.abstract or self.kind is ComponentKind.DATA_SERVICE

    @property
    def is_composition(self) -> bool:
        return self.kind is ComponentKind.COMPOSITION

    def child(self, role: str) -> Optional[ChildModel]:
        return next((c for c in self.children if c.role == role), None)

    def own_port(self, name: str) -> Optional[PortModel]:
        return next((p for p in self.ports if p.name == name), None)

    def fullfills(self, model_name: str) -> bool:
        return model_name == self.name or model_name in self.provides


# ---------------------------------------------------------------------------
# Deployments and devices
# ---------------------------------------------------------------------------


class DeployedTaskModel(BaseModel):
    """A named task slot inside a deployment."""

    model_config = _FROZEN

    name: str = Field(..., min_length=1, description="Process-local task name")
    model: str = Field(..., min_length=1)
    activity: Optional[ActivityType] = None
    period: Optional[float] = Field(default=None, gt=0.0)
    master: Optional[str] = Field(
        default=None, description="Name of the master slot for SLAVE activities"
    )


class DeploymentModel(BaseModel):
    """A process able to host a fixed set of named task slots."""

    model_config = _FROZEN

    name: str = Field(..., min_length=1)
    host: str = "localhost"
    tasks: tuple[DeployedTaskModel, ...] = ()

    @model_validator(mode="after")
    def _check_slots(self) -> DeploymentModel:
        names = {t.name for t in self.tasks}
        if len(names) != len(self.tasks):
            raise ValueError(f"duplicate task names in deployment '{self.name}'")
        for slot in self.tasks:
            if slot.activity is ActivityType.SLAVE and slot.master not in names:
                raise ValueError(
                    f"slave task '{slot.name}' of '{self.name}' has no master in the deployment"
                )
        return self

    def slot(self, name: str) -> Optional[DeployedTaskModel]:
        return next((t for t in self.tasks if t.name == name), None)


class DeviceModel(BaseModel):
    """A hardware device, or a communication bus when ``is_com_bus`` is set."""

    model_config = _FROZEN

    name: str = Field(..., min_length=1)
    model: str = Field(..., min_length=1, description="Device model (type)")
    driver: str = Field(..., min_length=1, description="Component model driving it")
    period: Optional[float] = Field(default=None, gt=0.0)
    burst: int = Field(default=0, ge=0)
    sample_size: int = Field(default=1, ge=1)
    com_bus: Optional[str] = Field(default=None, description="Bus device it is attached to")
    is_com_bus: bool = False


# ---------------------------------------------------------------------------
# Registry
# ---------------------------------------------------------------------------


class ModelRegistry(BaseModel):
    """Lookup tables over the models, deployments and devices."""

    model_config = ConfigDict(frozen=True)

    components: dict[str, ComponentModel] = Field(default_factory=dict)
    deployments: dict[str, DeploymentModel] = Field(default_factory=dict)
    devices: dict[str, DeviceModel] = Field(default_factory=dict)

    @classmethod
    def build(
        cls,
        components: Iterable[ComponentModel] = (),
        deployments: Iterable[DeploymentModel] = (),
        devices: Iterable[DeviceModel] = (),
    ) -> ModelRegistry:
        """Build a registry from lists, keying every entry by its name."""
        return cls(
            components={c.name: c for c in components},
            deployments={d.name: d for d in deployments},
            devices={d.name: d for d in devices},
        )

    @model_validator(mode="after")
    def _check_references(self) -> ModelRegistry:
        for comp in self.components.values():
            for child in comp.children:
                if child.model not in self.components and child.model not in self.devices:
                    raise ValueError(
                        f"child '{child.role}' of '{comp.name}' requires unknown model '{child.model}'"
                    )
        for dev in self.devices.values():
            if dev.driver not in self.components:
                raise ValueError(f"device '{dev.name}' uses unknown driver '{dev.driver}'")
            if dev.com_bus is not None and dev.com_bus not in self.devices:
                raise ValueError(f"device '{dev.name}' is attached to unknown bus '{dev.com_bus}'")
        return self

    def component(self, name: str) -> ComponentModel:
        try:
            return self.components[name]
        except KeyError:
            raise UnknownModelError("component model", name) from None

    def device(self, name: str) -> DeviceModel:
        try:
            return self.devices[name]
        except KeyError:
            raise UnknownModelError("device", name) from None

    def deployment(self, name: str) -> DeploymentModel:
        try:
            return self.deployments[name]
        except KeyError:
            raise UnknownModelError("deployment", name) from None

    def port(self, model_name: str, port_name: str) -> Optional[PortModel]:
        """Resolve a port, following composition exports to the child model."""
        return self._port(model_name, port_name, set())

    def _port(self, model_name: str, port_name: str, seen: set[str]) -> Optional[PortModel]:
        if model_name in seen:
            return None
        seen.add(model_name)
        model = self.component(model_name)
        own = model.own_port(port_name)
        if own is not None or not model.is_composition:
            return own
        for export in model.exports:
            if export.exported_name != port_name:
                continue
            child = model.child(export.role)
            child_model = child.model
            if child_model in self.devices:
                child_model = self.devices[child_model].driver
            child_port = self._port(child_model, export.port, seen)
            if child_port is not None:
                return child_port.model_copy(update={"name": port_name})
        return None

    def ports(self, model_name: str) -> list[PortModel]:
        model = self.component(model_name)
        if not model.is_composition:
            return list(model.ports)
        result = list(model.ports)
        for export in model.exports:
            port = self.port(model_name, export.exported_name)
            if port is not None:
                result.append(port)
        return result

    def providers_of(self, service: str) -> list[ComponentModel]:
        """Concrete task contexts and compositions fullfilling *service*."""
        return [
            comp
            for comp in self.components.values()
            if not comp.is_abstract
            and comp.kind in (ComponentKind.TASK_CONTEXT, ComponentKind.COMPOSITION)
            and comp.fullfills(service)
        ]

    def deployments_hosting(self, model_name: str) -> list[tuple[DeploymentModel, DeployedTaskModel]]:
        """All ``(deployment, slot)`` pairs able to run *model_name*, sorted by name."""
        result = []
        for deployment in sorted(self.deployments.values(), key=lambda d: d.name):
            for slot in deployment.tasks:
                if slot.model == model_name:
                    result.append((deployment, slot))
        return result

    def devices_driven_by(self, model_name: str) -> list[DeviceModel]:
        return [d for d in self.devices.values() if d.driver == model_name]
