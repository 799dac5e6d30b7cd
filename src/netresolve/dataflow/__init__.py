"""Dataflow fixed-point framework and port dynamics."""

from netresolve.dataflow.computation import (
    DataflowAlgorithm,
    FixedPointPropagator,
    PropagationState,
    Trigger,
    TriggerMode,
)
from netresolve.dataflow.dynamics import (
    DataflowDynamics,
    DynamicsTrigger,
    PortDynamics,
    compute_buffer_policy,
)

__all__ = [
    "DataflowAlgorithm",
    "DataflowDynamics",
    "DynamicsTrigger",
    "FixedPointPropagator",
    "PortDynamics",
    "PropagationState",
    "Trigger",
    "TriggerMode",
    "compute_buffer_policy",
]
