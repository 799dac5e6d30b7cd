"""Abstract requirements handed to the resolution engine."""

from __future__ import annotations

from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator


class InstanceRequirement(BaseModel):
    """One requested component, by model or service, with its selections.

    ``selections`` maps either a child role path (``"nav.estimator"``) or a
    required model/service name to the model or device that should be
    used for it. Explicit selections win over the automatic
    single-candidate selection, which wins over the default (the required
    model itself).
    """

    model_config = ConfigDict(frozen=True, str_strip_whitespace=True)

    name: str = Field(..., min_length=1, description="Unique requirement name")
    model: str = Field(..., min_length=1, description="Model, service or device name")
    arguments: dict[str, Any] = Field(default_factory=dict)
    selections: dict[str, str] = Field(default_factory=dict)
    orocos_name: Optional[str] = Field(
        default=None, description="Exact process-local task name to deploy on"
    )
    deployment: Optional[str] = Field(
        default=None, description="Deployment the task must run in"
    )
    deployment_hints: tuple[str, ...] = Field(
        default=(), description="Regexes preferring matching deployed task names"
    )
    port_periods: dict[str, float] = Field(
        default_factory=dict, description="Requested output port periods in seconds"
    )
    mission: bool = True
    permanent: bool = False

    @field_validator("port_periods")
    @classmethod
    def _positive_periods(cls, value: dict[str, float]) -> dict[str, float]:
        for port, period in value.items():
            if period <= 0:
                raise ValueError(f"period of port '{port}' must be positive")
        return value

    def key(self) -> str:
        """Stable identity used to compare requirement sets."""
        return self.model_dump_json()
