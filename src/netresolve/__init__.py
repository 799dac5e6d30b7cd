"""netresolve: component network generation and resolution.

Turns abstract component requirements into a concrete, deduplicated and
deployed task network, computes connection buffer policies from dataflow
dynamics and commits the result atomically to a task graph.
"""

from netresolve.config import ResolutionConfig, load_config
from netresolve.exceptions import NetResolveError
from netresolve.logging_setup import setup_logging, setup_logging_from_config
from netresolve.models import InstanceRequirement, ModelRegistry
from netresolve.network import AsyncResolution, Engine, ResolutionHooks, ResolutionResult
from netresolve.plan import TaskGraph

__version__ = "0.1.0"

__all__ = [
    "AsyncResolution",
    "Engine",
    "InstanceRequirement",
    "ModelRegistry",
    "NetResolveError",
    "ResolutionConfig",
    "ResolutionHooks",
    "ResolutionResult",
    "TaskGraph",
    "load_config",
    "setup_logging",
    "setup_logging_from_config",
]
