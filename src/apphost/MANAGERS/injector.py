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
Materializes the launch environment of a service, substituting resolved
endpoint addresses into its environment bindings.
"""
import logging
import os
from typing import Dict, List, Mapping

from dotenv import dotenv_values

from ..MODELS.endpoint import EndpointReference, ResolvedEndpoint
from ..MODELS.service_definition import ServiceDefinition
from ..UTILS.reference_template import ReferenceTemplate
from ..errors import UnresolvedReferenceError
from .endpoint_resolver import EndpointKey, lookup

logger = logging.getLogger(__name__)


def discovery_variable(service: str, endpoint: str) -> str:
    """
    Name of the service-discovery variable for one endpoint of a referenced
    service, e.g. ``services__web-api__https__0``.
    """
    return f"services__{service}__{endpoint}__0"


class EnvironmentInjector:
    """
    Builds the environment-variable map handed to the runtime for a service.

    Later sources override earlier ones: the inherited process environment,
    then environment files, then service-discovery variables for referenced
    services, then the service's own port variables, then explicit bindings.
    """
    def __init__(self, base_dir: str = ".", inherit_environment: bool = True):
        """
        :param base_dir: Base directory for resolving relative environment files.
        :param inherit_environment: Start from a copy of ``os.environ``.
        """
        self.base_dir = base_dir
        self.inherit_environment = inherit_environment

    def materialize(self,
                    service: ServiceDefinition,
                    endpoints: Mapping[EndpointKey, ResolvedEndpoint]) -> Dict[str, str]:
        """
        Computes the environment for ``service`` from the endpoints resolved so far.
        Call this right before launching so late assignments are observed.

        :raises UnresolvedReferenceError: If a binding references an endpoint
            missing from ``endpoints``.
        """
        env: Dict[str, str] = os.environ.copy() if self.inherit_environment else {}

        for env_file in service.environment_files:
            file_path = os.path.join(self.base_dir, env_file)
            if os.path.exists(file_path):
                env.update({k: v for k, v in dotenv_values(file_path).items() if v is not None})
            else:
                logger.warning("[%s] Environment file %s not found", service.name, file_path)

        for target in self._referenced_services(service):
            for (owner, name), resolved in endpoints.items():
                if owner == target:
                    env[discovery_variable(owner, name)] = resolved.url

        for ep in service.endpoints:
            if ep.env:
                resolved = lookup(endpoints, service.name, ep.name)
                if resolved is None:
                    raise UnresolvedReferenceError(service.name, ep.name, referenced_by=service.name)
                env[ep.env] = str(resolved.target_port)

        for binding in service.environment:
            env[binding.name] = self._render(service.name, binding.value, endpoints)

        return env

    def _referenced_services(self, service: ServiceDefinition) -> List[str]:
        targets: List[str] = []
        for name in list(service.references) + [r.service for r in service.endpoint_references()]:
            if name not in targets:
                targets.append(name)
        return targets

    def _render(self, owner: str, value, endpoints: Mapping[EndpointKey, ResolvedEndpoint]) -> str:
        def resolve(ref) -> str:
            resolved = lookup(endpoints, ref.service, ref.endpoint)
            if resolved is None:
                raise UnresolvedReferenceError(ref.service, ref.endpoint, referenced_by=owner)
            return resolved.value(ref.property)

        if isinstance(value, EndpointReference):
            return resolve(value)
        return ReferenceTemplate.render(value, resolve)
