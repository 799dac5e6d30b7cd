"""Connection policies carried by dataflow edges."""

from __future__ import annotations

from typing import Optional

from pydantic import BaseModel, ConfigDict, Field

from netresolve.exceptions import IncompatiblePolicies
from netresolve.models.enums import PolicyType


class ConnectionPolicy(BaseModel):
    """Transport policy of a single connection.

    An empty policy (no field set) means "not decided yet". A policy is
    complete when its type is set and, for buffers, its size is known.
    """

    model_config = ConfigDict(frozen=True)

    type: Optional[PolicyType] = Field(default=None, description="Transport type")
    size: Optional[int] = Field(
        default=None, ge=1, description="Buffer size (BUFFER policies only)"
    )

    @classmethod
    def data(cls) -> ConnectionPolicy:
        return cls(type=PolicyType.DATA)

    @classmethod
    def buffer(cls, size: int) -> ConnectionPolicy:
        return cls(type=PolicyType.BUFFER, size=size)

    def is_empty(self) -> bool:
        return self.type is None and self.size is None

    def is_complete(self) -> bool:
        if self.type is PolicyType.DATA:
            return True
        return self.type is PolicyType.BUFFER and self.size is not None

    def merge(self, other: Optional[ConnectionPolicy]) -> ConnectionPolicy:
        """Return the union of two policies.

        An empty side yields the other one. Fields set on both sides must
        agree.

        Raises:
            IncompatiblePolicies: If a field is set to different values.
        """
        if other is None or other.is_empty():
            return self
        if self.is_empty():
            return other
        merged = {}
        for field in ("type", "size"):
            mine, theirs = getattr(self, field), getattr(other, field)
            if mine is not None and theirs is not None and mine != theirs:
                raise IncompatiblePolicies(field, mine, theirs)
            merged[field] = mine if mine is not None else theirs
        return ConnectionPolicy(**merged)

    def compatible_with(self, other: Optional[ConnectionPolicy]) -> bool:
        """Whether merging *other* into this policy leaves it unchanged."""
        if other is None or other.is_empty() or self.is_empty():
            return True
        try:
            return self.merge(other) == self
        except IncompatiblePolicies:
            return False

    def describe(self) -> str:
        if self.is_empty():
            return "{}"
        if self.type is PolicyType.BUFFER:
            return f"buffer:{self.size}"
        return "data"
