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
Shared fixtures: an in-memory runtime and fast orchestrator settings.
"""
import threading
from collections import defaultdict
from typing import Dict, List, Set

import pytest

from apphost.MANAGERS.topology_builder import TopologyBuilder
from apphost.MODELS.apphost_config import OrchestratorSettings
from apphost.errors import ServiceExitedError


class FakeHandle:
    def __init__(self, name: str):
        self.name = name


class FakeRuntime:
    """
    Runtime double that records launches and answers health checks from
    per-service configuration instead of running processes.
    """
    def __init__(self):
        self._lock = threading.Lock()
        self.events: List[tuple] = []
        self.launched: List[str] = []
        self.stopped: List[str] = []
        self.envs: Dict[str, Dict[str, str]] = {}
        self.probes: Dict[str, object] = {}
        self.checks: Dict[str, int] = defaultdict(int)

        self.fail_launch: Set[str] = set()
        self.unhealthy: Set[str] = set()
        self.exits: Set[str] = set()
        self.checks_until_healthy: Dict[str, int] = {}
        self.exit_codes: Dict[str, int] = {}

    def launch(self, name, descriptor, env, endpoints=()):
        with self._lock:
            self.events.append(("launch", name))
            self.launched.append(name)
            self.envs[name] = dict(env)
        if name in self.fail_launch:
            raise RuntimeError(f"cannot start {name}")
        return FakeHandle(name)

    def health_check(self, handle, probe):
        with self._lock:
            self.checks[handle.name] += 1
            count = self.checks[handle.name]
            self.probes[handle.name] = probe
        if handle.name in self.exits:
            raise ServiceExitedError(handle.name, 1)
        if handle.name in self.unhealthy:
            return False
        return count >= self.checks_until_healthy.get(handle.name, 1)

    def poll(self, handle):
        return self.exit_codes.get(handle.name)

    def stop(self, handle):
        with self._lock:
            self.events.append(("stop", handle.name))
            self.stopped.append(handle.name)


@pytest.fixture
def runtime():
    return FakeRuntime()


@pytest.fixture
def settings():
    return OrchestratorSettings(
        dependency_timeout=5,
        health_timeout=2,
        health_interval=0.01,
        inherit_environment=False,
        log_dir=None,
    )


@pytest.fixture
def build():
    """Builds a topology from service definitions."""
    def _build(*services, environment="Test"):
        return TopologyBuilder().build_from_services(list(services), environment)
    return _build
