"""Network generation: merging, deployment and the resolution engine."""

from netresolve.network.async_resolution import AsyncResolution, Resolution
from netresolve.network.deployer import SystemNetworkDeployer
from netresolve.network.engine import Engine, EngineState, ResolutionResult
from netresolve.network.generator import SystemNetworkGenerator
from netresolve.network.hooks import ResolutionHooks
from netresolve.network.instantiation import DependencyInjection, Instantiator
from netresolve.network.merge_solver import MergeSolver
from netresolve.network.replacement import ReplacementGraph

__all__ = [
    "AsyncResolution",
    "DependencyInjection",
    "Engine",
    "EngineState",
    "Instantiator",
    "MergeSolver",
    "ReplacementGraph",
    "Resolution",
    "ResolutionHooks",
    "ResolutionResult",
    "SystemNetworkDeployer",
    "SystemNetworkGenerator",
]
