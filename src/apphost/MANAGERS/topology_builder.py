# Copyright 2024 Michael Maillet, Damien Davison, Sacha Davison
#
# Licensed under the Apache License, Version 2.0 (the "License");
# you may not use this file except in compliance with the License.
# You may obtain a copy of the License at
#
#     http://www.apache.org/licenses/LICENSE-2.0
#
# Unless required by applicable law or agreed to in writing, software
# distributed under the License is distributed on an "AS IS" BASIS,
# WITHOUT WARRANTIES OR CONDITIONS OF ANY KIND, either express or implied.
# See the License for the specific language governing permissions and
# limitations under the License.

"""
Selection of the environment-specific service set and construction of the
validated, resolved topology for one run.
"""
import logging
from dataclasses import dataclass, field
from types import MappingProxyType
from typing import Dict, List, Mapping, Optional, Sequence

from ..MODELS.apphost_config import EnvironmentBlock, OrchestratorSettings
from ..MODELS.endpoint import ResolvedEndpoint
from ..MODELS.service_definition import ServiceDefinition
from ..RUNNERS.dependency_graph import DependencyGraph
from ..errors import DuplicateServiceError, UnresolvedReferenceError
from .endpoint_resolver import EndpointKey, EndpointResolver

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Topology:
    """
    The active, fully validated set of services for one run.
    """
    environment: str
    services: Mapping[str, ServiceDefinition]
    graph: DependencyGraph
    endpoints: Mapping[EndpointKey, ResolvedEndpoint] = field(default_factory=lambda: MappingProxyType({}))

    def __len__(self) -> int:
        return len(self.services)

    @property
    def is_empty(self) -> bool:
        return not self.services

    def endpoints_of(self, service: str) -> List[ResolvedEndpoint]:
        """Resolved endpoints of one service in declaration order."""
        svc = self.services[service]
        return [self.endpoints[(service, ep.name)] for ep in svc.endpoints]


class TopologyBuilder:
    """
    Builds the topology for an environment from environment-conditional blocks.
    """
    def __init__(self, resolver: Optional[EndpointResolver] = None):
        """
        :param resolver: Endpoint resolver; a default one is created if omitted.
        """
        self.resolver = resolver or EndpointResolver()

    @classmethod
    def from_settings(cls, settings: OrchestratorSettings) -> 'TopologyBuilder':
        return cls(EndpointResolver(
            host=settings.host,
            port_range=(settings.port_range_start, settings.port_range_end),
            skip_busy_ports=settings.skip_busy_ports,
        ))

    @staticmethod
    def select(blocks: Sequence[EnvironmentBlock], environment: str) -> List[ServiceDefinition]:
        """
        Picks the definition set for an environment.

        When several blocks target the same environment, the last declared one
        wins. When none do, the result is empty and the run becomes a no-op.

        :param blocks: Blocks in declaration order.
        :param environment: Active environment label (case-insensitive).
        :return: The selected service definitions in declaration order.
        """
        selected: Optional[EnvironmentBlock] = None
        for block in blocks:
            if block.matches(environment):
                selected = block
        if selected is None:
            logger.info("No definition block matches environment '%s'", environment)
            return []
        return list(selected.services)

    def build(self, blocks: Sequence[EnvironmentBlock], environment: str) -> Topology:
        """
        Selects, validates and resolves the topology for an environment.

        :raises TopologyError: On duplicate names, unknown services, wait-for
            cycles, port conflicts or references to undeclared endpoints.
        """
        return self.build_from_services(self.select(blocks, environment), environment)

    def build_from_services(self, definitions: Sequence[ServiceDefinition], environment: str) -> Topology:
        """
        Validates and resolves an already selected list of definitions.
        """
        services: Dict[str, ServiceDefinition] = {}
        graph = DependencyGraph()
        for svc in definitions:
            if svc.name in services:
                raise DuplicateServiceError(svc.name)
            services[svc.name] = svc
            graph.add_service(svc.name)

        for svc in definitions:
            for edge in svc.dependency_edges():
                graph.add_edge(edge.source, edge.target, edge.kind)
        graph.validate()

        endpoints = self.resolver.resolve(definitions)
        for svc in definitions:
            for ref in svc.endpoint_references():
                if (ref.service, ref.endpoint) not in endpoints:
                    raise UnresolvedReferenceError(ref.service, ref.endpoint, referenced_by=svc.name)

        logger.info("Built topology for '%s' with %d service(s)", environment, len(services))
        return Topology(
            environment=environment,
            services=MappingProxyType(services),
            graph=graph,
            endpoints=endpoints,
        )
