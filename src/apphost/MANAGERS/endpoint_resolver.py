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
Endpoint resolution: binds every declared endpoint to a concrete address.
"""
import logging
from types import MappingProxyType
from typing import Dict, Iterator, List, Mapping, Optional, Sequence, Set, Tuple

from ..MODELS.endpoint import ResolvedEndpoint
from ..MODELS.service_definition import ServiceDefinition
from ..UTILS.port_finder import is_port_free
from ..errors import PortConflictError, PortExhaustedError

logger = logging.getLogger(__name__)

EndpointKey = Tuple[str, str]  # (service name, endpoint name)


class EndpointResolver:
    """
    Assigns ports to declared endpoints.

    Explicit ports are used unchanged. Endpoints without one get the next port
    of the ephemeral range, walking services and their endpoints in
    declaration order, so identical topologies always resolve identically.
    """
    def __init__(self,
                 host: str = "localhost",
                 port_range: Tuple[int, int] = (49152, 65535),
                 skip_busy_ports: bool = False):
        """
        :param host: Host name used in every resolved address.
        :param port_range: Inclusive range for automatically assigned ports.
        :param skip_busy_ports: Also skip ports that are bound on this host.
        """
        self.host = host
        self.port_range = port_range
        self.skip_busy_ports = skip_busy_ports

    def resolve(self, services: Sequence[ServiceDefinition]) -> Mapping[EndpointKey, ResolvedEndpoint]:
        """
        Resolves every endpoint of the given services.

        :param services: Definitions in declaration order.
        :return: Read-only mapping from (service, endpoint) to address.
        :raises PortConflictError: If two external endpoints claim one port.
        :raises PortExhaustedError: If the ephemeral range runs out.
        """
        self._check_conflicts(services)

        claimed: Set[int] = set()
        for svc in services:
            for ep in svc.endpoints:
                if ep.port is not None:
                    claimed.add(ep.port)
                if ep.target_port is not None:
                    claimed.add(ep.target_port)

        ports = self._ephemeral_ports(claimed)
        resolved: Dict[EndpointKey, ResolvedEndpoint] = {}
        for svc in services:
            for ep in svc.endpoints:
                port = ep.port if ep.port is not None else next(ports)
                if not ep.proxied:
                    target_port = port
                elif ep.target_port is not None:
                    target_port = ep.target_port
                else:
                    target_port = next(ports)

                resolved[(svc.name, ep.name)] = ResolvedEndpoint(
                    service=svc.name,
                    name=ep.name,
                    scheme=ep.scheme,
                    host=self.host,
                    port=port,
                    target_port=target_port,
                    external=ep.external,
                    proxied=ep.proxied,
                )
                logger.debug("Resolved %s.%s to %s (bound port %d)",
                             svc.name, ep.name, resolved[(svc.name, ep.name)].url, target_port)

        return MappingProxyType(resolved)

    def _check_conflicts(self, services: Sequence[ServiceDefinition]):
        owners: Dict[int, List[str]] = {}
        for svc in services:
            for ep in svc.endpoints:
                if ep.external and ep.port is not None:
                    owners.setdefault(ep.port, []).append(f"{svc.name}.{ep.name}")
        for port, claimants in owners.items():
            if len(claimants) > 1:
                raise PortConflictError(port, claimants)

    def _ephemeral_ports(self, claimed: Set[int]) -> Iterator[int]:
        start, end = self.port_range
        for port in range(start, end + 1):
            if port in claimed:
                continue
            if self.skip_busy_ports and not is_port_free(port):
                logger.debug("Skipping port %d, already bound on this host", port)
                continue
            yield port
        raise PortExhaustedError(f"No free port left in range {start}-{end}")


def lookup(endpoints: Mapping[EndpointKey, ResolvedEndpoint],
           service: str, endpoint: str) -> Optional[ResolvedEndpoint]:
    """
    Returns the resolved address of an endpoint, or None if it was never resolved.
    """
    return endpoints.get((service, endpoint))
