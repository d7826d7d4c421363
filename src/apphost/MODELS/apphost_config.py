"""
Models for environment-conditional definition blocks and orchestrator settings.
"""
from typing import Optional, Tuple
from pydantic import BaseModel, ConfigDict, Field, model_validator
from .service_definition import ServiceDefinition


class EnvironmentBlock(BaseModel):
    """
    A set of service definitions that applies to one or more environments.
    Environment labels are matched case-insensitively.
    """
    model_config = ConfigDict(frozen=True)

    environments: Tuple[str, ...]
    services: Tuple[ServiceDefinition, ...] = ()

    def matches(self, environment: str) -> bool:
        wanted = environment.casefold()
        return any(label.casefold() == wanted for label in self.environments)


class OrchestratorSettings(BaseModel):
    """
    Tunables for a run. All durations are in seconds.
    """
    model_config = ConfigDict(frozen=True)

    host: str = "localhost"
    dependency_timeout: float = Field(default=300.0, gt=0)
    health_timeout: float = Field(default=120.0, gt=0)
    health_interval: float = Field(default=1.0, gt=0)
    port_range_start: int = Field(default=49152, ge=1, le=65535)
    port_range_end: int = Field(default=65535, ge=1, le=65535)
    skip_busy_ports: bool = False
    stop_on_failure: bool = False
    stop_timeout: float = Field(default=10.0, gt=0)
    inherit_environment: bool = True
    log_dir: Optional[str] = ".apphost/logs"

    @model_validator(mode='after')
    def _check_port_range(self) -> 'OrchestratorSettings':
        if self.port_range_start > self.port_range_end:
            raise ValueError("port_range_start must not exceed port_range_end")
        return self


class AppHostConfig(BaseModel):
    """
    Complete declaration of a composition: every environment block plus settings.
    Equivalent to a parsed apphost.yaml file.
    """
    blocks: Tuple[EnvironmentBlock, ...] = ()
    settings: OrchestratorSettings = Field(default_factory=OrchestratorSettings)
