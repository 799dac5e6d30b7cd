"""Caller-supplied hooks run at fixed points of a resolution."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Callable

from netresolve.plan.graph import TaskGraph

logger = logging.getLogger(__name__)

NetworkHook = Callable[[TaskGraph], None]


@dataclass
class ResolutionHooks:
    """Ordered hook lists, each called with the working task graph.

    Attributes:
        instantiation:        After the requirements are instantiated,
                              before the first merge pass.
        instantiated_network: After the first merge pass. Hooks may add
                              tasks; they are merged in the next pass.
        system_network:       After the system network is generated, before
                              it is validated.
        deployment:           After deployment and policy computation.
        final_network:        Right before the final validation and commit.
    """

    instantiation: list[NetworkHook] = field(default_factory=list)
    instantiated_network: list[NetworkHook] = field(default_factory=list)
    system_network: list[NetworkHook] = field(default_factory=list)
    deployment: list[NetworkHook] = field(default_factory=list)
    final_network: list[NetworkHook] = field(default_factory=list)

    def run(self, stage: str, graph: TaskGraph) -> None:
        hooks: list[NetworkHook] = getattr(self, stage)
        for hook in hooks:
            logger.debug("running %s hook %s", stage, getattr(hook, "__name__", hook))
            hook(graph)
