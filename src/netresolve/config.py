"""Resolution configuration.

Loads configuration from TOML files with environment variable overrides
(``NETRESOLVE_`` prefix).  Uses :mod:`tomllib` on Python 3.11+.
"""

from __future__ import annotations

import os
import tomllib
from pathlib import Path
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field, ValidationError

from netresolve.exceptions import ConfigError
from netresolve.models.enums import OnErrorPolicy

# ---------------------------------------------------------------------------
# Default paths
# ---------------------------------------------------------------------------

DEFAULT_CONFIG_DIR = ".netresolve"
DEFAULT_CONFIG_FILE = "config.toml"
ENV_PREFIX = "NETRESOLVE_"

# ---------------------------------------------------------------------------
# Configuration model
# ---------------------------------------------------------------------------


class ResolutionConfig(BaseModel):
    """Options of a resolution, passed explicitly to the engine.

    All fields can be overridden via environment variables with the
    ``NETRESOLVE_`` prefix, e.g. ``NETRESOLVE_BUFFER_SIZE_MARGIN=0.2``.
    """

    model_config = ConfigDict(extra="ignore", validate_assignment=True)

    buffer_size_margin: float = Field(
        default=0.1, ge=0.0, description="Safety margin applied to computed buffer sizes"
    )
    compute_policies: bool = Field(default=True, description="Compute connection policies")
    compute_deployments: bool = Field(default=True, description="Bind tasks to deployments")
    garbage_collect: bool = Field(default=True, description="Run static garbage collection")
    validate_abstract_network: bool = True
    validate_generated_network: bool = True
    validate_deployed_network: bool = True
    validate_final_network: bool = True
    on_error: OnErrorPolicy = Field(
        default=OnErrorPolicy.DISCARD,
        description="What to do with the working graph when resolution fails",
    )
    diagnostics_dir: Optional[Path] = Field(
        default=None, description="Where failed networks are saved as DOT files"
    )
    keep_replacement_graph: bool = Field(
        default=False, description="Keep the replacement graph after finalization"
    )
    log_level: str = "INFO"
    log_file: Optional[Path] = None
    log_levels: dict[str, str] = Field(
        default_factory=dict,
        description="Per-module log levels, e.g. {\"dataflow\": \"DEBUG\"}",
    )

    def effective(self) -> ResolutionConfig:
        """Copy with the options implied by disabled phases turned off."""
        if self.compute_deployments:
            return self.model_copy()
        return self.model_copy(
            update={
                "compute_policies": False,
                "validate_deployed_network": False,
                "validate_final_network": False,
            }
        )

    def with_overrides(self, **overrides: Any) -> ResolutionConfig:
        """Validated copy with *overrides* applied."""
        unknown = set(overrides) - set(type(self).model_fields)
        if unknown:
            raise ConfigError(f"unknown resolution option(s): {', '.join(sorted(unknown))}")
        try:
            return type(self).model_validate({**self.model_dump(), **overrides})
        except ValidationError as exc:
            raise ConfigError(str(exc)) from exc


# ---------------------------------------------------------------------------
# Loader helpers
# ---------------------------------------------------------------------------


def _apply_env_overrides(data: dict) -> dict:
    """Apply NETRESOLVE_ environment variable overrides to *data*."""
    field_names = set(ResolutionConfig.model_fields.keys())
    for key, value in os.environ.items():
        if key.startswith(ENV_PREFIX):
            field = key[len(ENV_PREFIX):].lower()
            if field in field_names:
                data[field] = value
    return data


def load_config(
    config_path: Path | None = None, project_dir: Path | None = None
) -> ResolutionConfig:
    """Load configuration from a TOML file with env-var overrides.

    Parameters
    ----------
    config_path:
        Explicit path to a TOML file.  When *None*, looks for
        ``<project_dir>/.netresolve/config.toml``.
    project_dir:
        Project root directory.  Defaults to :func:`Path.cwd`.

    Returns
    -------
    ResolutionConfig
        Parsed and validated configuration.

    Raises
    ------
    ConfigError
        If the file cannot be parsed or a value is invalid.
    """
    project = project_dir or Path.cwd()
    path = config_path or (project / DEFAULT_CONFIG_DIR / DEFAULT_CONFIG_FILE)

    data: dict = {}
    if path.exists():
        try:
            with open(path, "rb") as fh:
                data = tomllib.load(fh)
        except tomllib.TOMLDecodeError as exc:
            raise ConfigError(f"cannot parse {path}: {exc}") from exc

    # Flatten nested TOML sections if present
    flat: dict = {}
    for k, v in data.items():
        if isinstance(v, dict):
            flat.update(v)
        else:
            flat[k] = v

    flat = _apply_env_overrides(flat)
    try:
        return ResolutionConfig(**flat)
    except ValidationError as exc:
        raise ConfigError(f"invalid configuration in {path}: {exc}") from exc


def default_config_toml() -> str:
    """Return default configuration as a TOML string."""
    return """\
# netresolve configuration

[resolution]
buffer_size_margin = 0.1
compute_policies = true
compute_deployments = true
garbage_collect = true
on_error = "discard"

[validation]
validate_abstract_network = true
validate_generated_network = true
validate_deployed_network = true
validate_final_network = true

[logging]
log_level = "INFO"
"""
