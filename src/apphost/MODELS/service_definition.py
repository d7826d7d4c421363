"""
Models for defining services, including launch descriptors, environment bindings,
health checks and dependency edges.
"""
from typing import Any, Dict, Iterator, List, Optional, Tuple, Union
from enum import Enum
from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from .endpoint import EndpointDefinition, EndpointReference
from ..UTILS.reference_template import ReferenceTemplate


def _scalar(value: Any) -> Any:
    """YAML scalars become strings; reference mappings pass through."""
    if value is None:
        return ""
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, (int, float)):
        return str(value)
    return value


class LaunchKind(str, Enum):
    """
    How a service is started by the runtime.
    """
    COMMAND = "command"
    PROJECT = "project"
    JAVASCRIPT = "javascript"


class PackageManager(str, Enum):
    """
    Tooling used to run a JavaScript application.
    """
    NPM = "npm"
    PNPM = "pnpm"
    YARN = "yarn"


class LaunchDescriptor(BaseModel):
    """
    Opaque description of how to start a service. Only the runtime interprets it.
    """
    model_config = ConfigDict(frozen=True)

    kind: LaunchKind = LaunchKind.COMMAND
    command: Tuple[str, ...] = ()
    path: Optional[str] = None
    package_manager: PackageManager = PackageManager.NPM
    run_script: str = "start"
    args: Tuple[str, ...] = ()
    working_dir: Optional[str] = None


class HealthCheckDescriptor(BaseModel):
    """
    Defines how readiness of a service is probed.

    Either an HTTP GET against ``path`` on one of the service's endpoints, or a
    command run to completion, where exit code 0 means healthy.
    """
    model_config = ConfigDict(frozen=True)

    endpoint: Optional[str] = None
    path: str = "/health"
    command: Tuple[str, ...] = ()
    expected_status: Tuple[int, ...] = (200,)
    interval: Optional[float] = Field(default=None, gt=0)
    timeout: Optional[float] = Field(default=None, gt=0)
    request_timeout: float = Field(default=5.0, gt=0)

    @field_validator('expected_status', mode='before')
    @classmethod
    def _single_status(cls, value: Any) -> Any:
        if isinstance(value, int):
            return (value,)
        return value

    @field_validator('command', mode='before')
    @classmethod
    def _split_command(cls, value: Any) -> Any:
        if isinstance(value, str):
            return value.split()
        return value

    @property
    def is_http(self) -> bool:
        return not self.command


class DependencyKind(str, Enum):
    """
    Kind of edge between two services.
    """
    REFERENCE = "reference"
    WAIT_FOR = "wait-for"


class DependencyEdge(BaseModel):
    """
    Relates a dependent service (source) to the service it depends on (target).
    """
    model_config = ConfigDict(frozen=True)

    source: str
    target: str
    kind: DependencyKind


class EnvBinding(BaseModel):
    """
    An environment variable of a service. The value is a literal, a template
    with ``{{ service.endpoint }}`` placeholders, or an explicit reference.
    """
    model_config = ConfigDict(frozen=True)

    name: str
    value: Union[EndpointReference, str]

    @field_validator('value')
    @classmethod
    def _check_template(cls, value):
        if isinstance(value, str):
            # Raises ValueError on malformed placeholders
            ReferenceTemplate.placeholders(value)
        return value

    def references(self) -> List[EndpointReference]:
        """
        Returns the endpoint references contained in the value-expression.
        """
        if isinstance(self.value, EndpointReference):
            return [self.value]
        return [
            EndpointReference(service=p.service, endpoint=p.endpoint, property=p.property)
            for p in ReferenceTemplate.placeholders(self.value)
        ]


class ServiceDefinition(BaseModel):
    """
    The full, immutable definition of a single deployable unit.
    """
    model_config = ConfigDict(frozen=True)

    name: str
    launch: LaunchDescriptor = Field(default_factory=LaunchDescriptor)

    # Networking
    endpoints: Tuple[EndpointDefinition, ...] = ()

    # Environment
    environment: Tuple[EnvBinding, ...] = ()
    environment_files: Tuple[str, ...] = ()

    # Dependencies
    references: Tuple[str, ...] = ()
    wait_for: Tuple[str, ...] = ()

    # Lifecycle
    health_check: Optional[HealthCheckDescriptor] = None
    critical: bool = False

    @field_validator('name')
    @classmethod
    def _check_name(cls, value: str) -> str:
        if not value or '.' in value or any(c.isspace() for c in value):
            raise ValueError(f"invalid service name '{value}'")
        return value

    @field_validator('environment', mode='before')
    @classmethod
    def _environment_from_mapping(cls, value: Any) -> Any:
        if isinstance(value, dict):
            return [{'name': k, 'value': _scalar(v)} for k, v in value.items()]
        return value

    @model_validator(mode='after')
    def _check_endpoints(self) -> 'ServiceDefinition':
        seen = set()
        for endpoint in self.endpoints:
            if endpoint.name in seen:
                raise ValueError(f"endpoint '{endpoint.name}' declared twice on service '{self.name}'")
            seen.add(endpoint.name)

        hc = self.health_check
        if hc is not None and hc.is_http:
            if not self.endpoints:
                raise ValueError(f"service '{self.name}' has an HTTP health check but no endpoints")
            if hc.endpoint is not None and hc.endpoint not in seen:
                raise ValueError(f"health check of '{self.name}' names unknown endpoint '{hc.endpoint}'")
        return self

    def endpoint(self, name: str) -> Optional[EndpointDefinition]:
        """
        Returns the declared endpoint with the given name, if any.
        """
        for endpoint in self.endpoints:
            if endpoint.name == name:
                return endpoint
        return None

    def health_endpoint(self) -> Optional[EndpointDefinition]:
        """
        Returns the endpoint probed by the HTTP health check.
        """
        hc = self.health_check
        if hc is None or not hc.is_http:
            return None
        if hc.endpoint is not None:
            return self.endpoint(hc.endpoint)
        return self.endpoints[0]

    def endpoint_references(self) -> List[EndpointReference]:
        """
        All endpoint references made by this service's environment bindings.
        """
        refs: List[EndpointReference] = []
        for binding in self.environment:
            refs.extend(binding.references())
        return refs

    def dependency_edges(self) -> Iterator[DependencyEdge]:
        """
        Yields the outgoing edges of this service in declaration order.
        Services named only by a value-expression get an implicit reference edge.
        """
        emitted: Dict[Tuple[str, DependencyKind], bool] = {}

        def edge(target: str, kind: DependencyKind) -> Optional[DependencyEdge]:
            if (target, kind) in emitted:
                return None
            emitted[(target, kind)] = True
            return DependencyEdge(source=self.name, target=target, kind=kind)

        candidates = [(t, DependencyKind.WAIT_FOR) for t in self.wait_for]
        candidates += [(t, DependencyKind.REFERENCE) for t in self.references]
        candidates += [(r.service, DependencyKind.REFERENCE) for r in self.endpoint_references()]
        for target, kind in candidates:
            result = edge(target, kind)
            if result is not None:
                yield result
