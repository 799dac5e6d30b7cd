"""Unit tests for netresolve.models."""

from __future__ import annotations

import pytest
from pydantic import ValidationError

from netresolve.exceptions import IncompatiblePolicies, UnknownModelError
from netresolve.models.component import (
    ChildModel,
    ComponentModel,
    CompositionExport,
    DeployedTaskModel,
    DeploymentModel,
    DeviceModel,
    ModelRegistry,
    PortModel,
)
from netresolve.models.enums import ActivityType, ComponentKind, PolicyType, PortDirection
from netresolve.models.policy import ConnectionPolicy
from netresolve.models.requirements import InstanceRequirement
from netresolve.models.task import Task


# ---------------------------------------------------------------------------
# ConnectionPolicy
# ---------------------------------------------------------------------------


class TestConnectionPolicy:
    def test_empty_policy(self) -> None:
        policy = ConnectionPolicy()
        assert policy.is_empty()
        assert not policy.is_complete()
        assert policy.describe() == "{}"

    def test_data_is_complete(self) -> None:
        assert ConnectionPolicy.data().is_complete()

    def test_buffer_without_size_is_incomplete(self) -> None:
        assert not ConnectionPolicy(type=PolicyType.BUFFER).is_complete()
        assert ConnectionPolicy.buffer(3).is_complete()

    def test_size_must_be_positive(self) -> None:
        with pytest.raises(ValidationError):
            ConnectionPolicy.buffer(0)

    def test_merge_with_empty_returns_other(self) -> None:
        buffer = ConnectionPolicy.buffer(2)
        assert ConnectionPolicy().merge(buffer) == buffer
        assert buffer.merge(ConnectionPolicy()) == buffer
        assert buffer.merge(None) == buffer

    def test_merge_fills_missing_fields(self) -> None:
        merged = ConnectionPolicy(type=PolicyType.BUFFER).merge(ConnectionPolicy(size=5))
        assert merged == ConnectionPolicy.buffer(5)

    def test_merge_conflict_raises(self) -> None:
        with pytest.raises(IncompatiblePolicies) as exc_info:
            ConnectionPolicy.buffer(2).merge(ConnectionPolicy.buffer(3))
        assert exc_info.value.field == "size"

    def test_compatible_with(self) -> None:
        buffer = ConnectionPolicy.buffer(2)
        assert buffer.compatible_with(ConnectionPolicy(type=PolicyType.BUFFER))
        assert buffer.compatible_with(ConnectionPolicy())
        assert not buffer.compatible_with(ConnectionPolicy.data())

    def test_describe(self) -> None:
        assert ConnectionPolicy.buffer(4).describe() == "buffer:4"
        assert ConnectionPolicy.data().describe() == "data"


# ---------------------------------------------------------------------------
# Component models and registry
# ---------------------------------------------------------------------------


def _relay(name: str = "Relay") -> ComponentModel:
    return ComponentModel(
        name=name,
        ports=(
            PortModel(name="in", direction=PortDirection.INPUT),
            PortModel(name="out", direction=PortDirection.OUTPUT, sample_size=2),
        ),
    )


class TestComponentModel:
    def test_duplicate_ports_rejected(self) -> None:
        with pytest.raises(ValidationError):
            ComponentModel(
                name="Bad",
                ports=(
                    PortModel(name="x", direction=PortDirection.INPUT),
                    PortModel(name="x", direction=PortDirection.OUTPUT),
                ),
            )

    def test_children_only_on_compositions(self) -> None:
        with pytest.raises(ValidationError):
            ComponentModel(name="Bad", children=(ChildModel(role="a", model="Relay"),))

    def test_export_of_unknown_role_rejected(self) -> None:
        with pytest.raises(ValidationError):
            ComponentModel(
                name="Bad",
                kind=ComponentKind.COMPOSITION,
                exports=(CompositionExport(role="missing", port="out"),),
            )

    def test_data_service_is_abstract(self) -> None:
        service = ComponentModel(name="Service", kind=ComponentKind.DATA_SERVICE)
        assert service.is_abstract
        assert not _relay().is_abstract

    def test_fullfills(self) -> None:
        model = ComponentModel(name="Camera", provides=("ImageProvider",))
        assert model.fullfills("Camera")
        assert model.fullfills("ImageProvider")
        assert not model.fullfills("Detector")

    def test_models_are_frozen(self) -> None:
        model = _relay()
        with pytest.raises(ValidationError):
            model.name = "Other"


class TestDeploymentModel:
    def test_slave_needs_master_in_deployment(self) -> None:
        with pytest.raises(ValidationError):
            DeploymentModel(
                name="d",
                tasks=(
                    DeployedTaskModel(
                        name="slave", model="Relay", activity=ActivityType.SLAVE, master="nope"
                    ),
                ),
            )

    def test_slot_lookup(self) -> None:
        deployment = DeploymentModel(
            name="d", tasks=(DeployedTaskModel(name="relay", model="Relay"),)
        )
        assert deployment.slot("relay").model == "Relay"
        assert deployment.slot("other") is None


class TestModelRegistry:
    def test_unknown_lookups_raise(self) -> None:
        registry = ModelRegistry.build([_relay()])
        with pytest.raises(UnknownModelError, match="unknown component model 'Nope'"):
            registry.component("Nope")
        with pytest.raises(UnknownModelError):
            registry.device("nope")
        with pytest.raises(UnknownModelError):
            registry.deployment("nope")

    def test_unknown_child_model_rejected(self) -> None:
        with pytest.raises(ValidationError):
            ModelRegistry.build(
                [
                    ComponentModel(
                        name="Comp",
                        kind=ComponentKind.COMPOSITION,
                        children=(ChildModel(role="a", model="Missing"),),
                    )
                ]
            )

    def test_unknown_driver_rejected(self) -> None:
        with pytest.raises(ValidationError):
            ModelRegistry.build(
                [_relay()], devices=[DeviceModel(name="dev", model="m", driver="Nope")]
            )

    def test_port_follows_exports(self) -> None:
        composition = ComponentModel(
            name="Wrapper",
            kind=ComponentKind.COMPOSITION,
            children=(ChildModel(role="relay", model="Relay"),),
            exports=(CompositionExport(role="relay", port="out", name="wrapped_out"),),
        )
        registry = ModelRegistry.build([_relay(), composition])
        port = registry.port("Wrapper", "wrapped_out")
        assert port is not None
        assert port.name == "wrapped_out"
        assert port.is_output
        assert port.sample_size == 2
        assert [p.name for p in registry.ports("Wrapper")] == ["wrapped_out"]
        assert registry.port("Wrapper", "out") is None

    def test_providers_of(self) -> None:
        registry = ModelRegistry.build(
            [
                ComponentModel(name="Service", kind=ComponentKind.DATA_SERVICE),
                ComponentModel(name="A", provides=("Service",)),
                ComponentModel(name="B", provides=("Service",)),
                ComponentModel(name="Abstract", abstract=True, provides=("Service",)),
            ]
        )
        assert sorted(m.name for m in registry.providers_of("Service")) == ["A", "B"]

    def test_deployments_hosting_sorted_by_name(self) -> None:
        registry = ModelRegistry.build(
            [_relay()],
            deployments=[
                DeploymentModel(name="z", tasks=(DeployedTaskModel(name="r", model="Relay"),)),
                DeploymentModel(name="a", tasks=(DeployedTaskModel(name="r", model="Relay"),)),
            ],
        )
        assert [d.name for d, _ in registry.deployments_hosting("Relay")] == ["a", "z"]


# ---------------------------------------------------------------------------
# Tasks and requirements
# ---------------------------------------------------------------------------


class TestTask:
    def test_label(self) -> None:
        assert Task(id=3, model="Relay").label() == "Relay#3"
        assert Task(id=3, model="Relay", orocos_name="r").label() == "Relay[r]#3"

    def test_can_merge_same_model(self) -> None:
        assert Task(id=1, model="Relay").can_merge(Task(id=2, model="Relay"))

    def test_cannot_merge_other_model(self) -> None:
        assert not Task(id=1, model="Relay").can_merge(Task(id=2, model="Other"))

    def test_conflicting_arguments(self) -> None:
        a = Task(id=1, model="Relay", arguments={"x": 1})
        b = Task(id=2, model="Relay", arguments={"x": 2})
        assert not a.can_merge(b)
        assert a.can_merge(b, ignored_arguments=("x",))

    def test_conflicting_names(self) -> None:
        a = Task(id=1, model="Relay", orocos_name="a")
        assert not a.can_merge(Task(id=2, model="Relay", orocos_name="b"))
        assert a.can_merge(Task(id=2, model="Relay"))

    def test_merge_absorbs_information(self) -> None:
        a = Task(id=1, model="Relay", arguments={"x": 1})
        b = Task(
            id=2,
            model="Relay",
            arguments={"y": 2},
            orocos_name="relay",
            deployment_hints=["rel"],
            configure_after={1, 5},
        )
        a.merge(b)
        assert a.arguments == {"x": 1, "y": 2}
        assert a.orocos_name == "relay"
        assert a.deployment_hints == ["rel"]
        assert a.configure_after == {5}


class TestInstanceRequirement:
    def test_periods_must_be_positive(self) -> None:
        with pytest.raises(ValidationError):
            InstanceRequirement(name="r", model="Relay", port_periods={"out": 0})

    def test_key_identifies_content(self) -> None:
        a = InstanceRequirement(name="r", model="Relay")
        assert a.key() == InstanceRequirement(name="r", model="Relay").key()
        assert a.key() != InstanceRequirement(name="r", model="Relay", mission=False).key()
