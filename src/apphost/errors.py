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
Error taxonomy for topology building and service startup.

Build-time errors derive from TopologyError and are always raised before any
service is launched. Runtime failures are not exceptions at the orchestrator
level; they are recorded as Failed transitions in the readiness gate.
"""
from typing import Iterable, List, Optional


class AppHostError(Exception):
    """Base class for all apphost errors."""


class DefinitionError(AppHostError):
    """
    Raised when a definition source is malformed or fails validation.
    """
    def __init__(self, message: str, source: Optional[str] = None):
        super().__init__(f"{source}: {message}" if source else message)
        self.source = source


class TopologyError(AppHostError):
    """Base class for fatal build-time topology errors."""


class CycleError(TopologyError):
    """
    Raised when the wait-for subgraph contains a cycle.

    :param cycle: Service names along the cycle, in edge order.
    """
    def __init__(self, cycle: List[str]):
        self.cycle = list(cycle)
        path = " -> ".join(self.cycle + self.cycle[:1])
        super().__init__(f"Wait-for cycle detected: {path}")


class UnknownServiceError(TopologyError):
    """
    Raised when an edge names a service that is not part of the topology.
    """
    def __init__(self, name: str, referenced_by: Optional[str] = None):
        self.name = name
        self.referenced_by = referenced_by
        if referenced_by:
            message = f"Service '{referenced_by}' depends on unknown service '{name}'"
        else:
            message = f"Unknown service '{name}'"
        super().__init__(message)


class DuplicateServiceError(TopologyError):
    """Raised when two definitions in one topology share a name."""
    def __init__(self, name: str):
        self.name = name
        super().__init__(f"Service '{name}' is defined more than once")


class PortConflictError(TopologyError):
    """
    Raised when two externally visible endpoints claim the same port.
    """
    def __init__(self, port: int, claimants: Iterable[str]):
        self.port = port
        self.claimants = list(claimants)
        super().__init__(
            f"Port {port} is claimed by more than one external endpoint: "
            f"{', '.join(self.claimants)}"
        )


class PortExhaustedError(TopologyError):
    """Raised when the ephemeral port range has no ports left."""


class UnresolvedReferenceError(TopologyError):
    """
    Raised when a value-expression references an endpoint that was never resolved.
    """
    def __init__(self, service: str, endpoint: str, referenced_by: Optional[str] = None):
        self.service = service
        self.endpoint = endpoint
        self.referenced_by = referenced_by
        message = f"Endpoint '{service}.{endpoint}' is not resolved"
        if referenced_by:
            message += f" (referenced by '{referenced_by}')"
        super().__init__(message)


class InvalidTransitionError(AppHostError):
    """Raised when a readiness state transition is not allowed."""
    def __init__(self, name: str, current, target):
        self.name = name
        self.current = current
        self.target = target
        super().__init__(f"Service '{name}' cannot move from {current.value} to {target.value}")


class ServiceExitedError(AppHostError):
    """
    Raised by a runtime when a launched process exits before it became healthy.
    """
    def __init__(self, name: str, exit_code: Optional[int] = None):
        self.name = name
        self.exit_code = exit_code
        super().__init__(f"Service '{name}' exited with code {exit_code}")
