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
Orchestration for multiple services, managing dependencies and health.
"""
import logging
import threading
from concurrent.futures import Future, ThreadPoolExecutor, wait
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Set, Tuple

from tenacity import (
    Retrying,
    retry_if_not_exception_type,
    retry_if_result,
    stop_after_delay,
    stop_when_event_set,
    wait_fixed,
)

from ..MODELS.apphost_config import AppHostConfig, OrchestratorSettings
from ..MODELS.service_definition import ServiceDefinition
from ..RUNNERS.process_runner import HealthProbe, ProcessRuntime, ServiceRuntime
from ..errors import ServiceExitedError
from .injector import EnvironmentInjector
from .readiness_gate import FailureReason, ReadinessGate, ReadinessState, ServiceStatus, WaitOutcome
from .topology_builder import Topology, TopologyBuilder

logger = logging.getLogger(__name__)

EXIT_OK = 0
EXIT_RUNTIME_FAILURE = 1
EXIT_TOPOLOGY_ERROR = 2
EXIT_DEFINITION_ERROR = 3


@dataclass(frozen=True)
class RunReport:
    """
    Outcome of a run: exit code plus the final status of every service.
    ``unsettled`` names every service that is neither Healthy nor Stopped.
    """
    exit_code: int
    services: Dict[str, ServiceStatus]
    unsettled: Tuple[str, ...] = ()

    def format(self) -> str:
        lines = [f"{'SERVICE':20} {'STATE':10} {'REASON':22} DETAIL"]
        for name, status in self.services.items():
            reason = status.reason.value if status.reason else "-"
            lines.append(f"{name:20} {status.state.value:10} {reason:22} {status.detail}".rstrip())
        return "\n".join(lines)


class ServiceOrchestrator:
    """
    Starts the services of a topology in dependency order and stops them in
    reverse order.

    Every service gets its own bring-up routine on a worker thread: it waits
    for its wait-for predecessors, materializes its environment, launches it
    and polls its health check. Routines are submitted in topological order;
    services without a wait-for relationship may start concurrently.
    """
    def __init__(self,
                 topology: Topology,
                 runtime: Optional[ServiceRuntime] = None,
                 settings: Optional[OrchestratorSettings] = None,
                 base_dir: str = "."):
        """
        Initializes the orchestrator.

        :param topology: The validated topology to run.
        :param runtime: Process or container runtime; local processes by default.
        :param settings: Timeouts and policies for this run.
        :param base_dir: Working directory for the services.
        """
        self.topology = topology
        self.settings = settings or OrchestratorSettings()
        self.base_dir = base_dir
        self.runtime = runtime or ProcessRuntime(
            base_dir, log_dir=self.settings.log_dir, stop_timeout=self.settings.stop_timeout,
        )
        self.injector = EnvironmentInjector(base_dir, inherit_environment=self.settings.inherit_environment)
        self.gate = ReadinessGate(topology.services, on_change=self._on_state_change)

        self._shutdown_event = threading.Event()
        self._lock = threading.Lock()
        self._handles: Dict[str, Any] = {}
        self._started: List[str] = []
        self._released: Set[str] = set()
        self._futures: Dict[str, Future] = {}
        self._executor: Optional[ThreadPoolExecutor] = None
        self._stopped = False

    @classmethod
    def from_config(cls,
                    config: AppHostConfig,
                    environment: str,
                    runtime: Optional[ServiceRuntime] = None,
                    base_dir: str = ".") -> 'ServiceOrchestrator':
        """
        Builds the topology for ``environment`` and wraps it in an orchestrator.

        :raises TopologyError: If the selected definitions are invalid.
        """
        topology = TopologyBuilder.from_settings(config.settings).build(config.blocks, environment)
        return cls(topology, runtime=runtime, settings=config.settings, base_dir=base_dir)

    @property
    def shutdown_requested(self) -> bool:
        return self._shutdown_event.is_set()

    def up(self):
        """
        Submits a bring-up routine for every service, in topological order.
        Returns immediately; use ``wait_until_started`` or ``run`` to block.
        """
        if self._executor is not None:
            raise RuntimeError("Services were already started")
        if self.topology.is_empty:
            logger.info("No services to start for environment '%s'", self.topology.environment)
            return

        order = list(self.topology.graph.topological_order())
        logger.info("Starting services in order: %s", ", ".join(order))
        self._executor = ThreadPoolExecutor(max_workers=len(order), thread_name_prefix="apphost")
        for name in order:
            self._futures[name] = self._executor.submit(self._bring_up, name)

    def wait_until_started(self, timeout: Optional[float] = None) -> bool:
        """
        Blocks until every bring-up routine has finished.

        :return: True if all routines finished within the timeout.
        """
        _, pending = wait(list(self._futures.values()), timeout=timeout)
        return not pending

    def run(self) -> RunReport:
        """
        Starts all services and blocks until shutdown is requested, a fatal
        failure happens or no service is left running. Then stops everything.

        While waiting, processes of Healthy services are polled: one that
        exited with code 0 becomes Stopped, any other exit makes it Failed.
        """
        if self.topology.is_empty:
            logger.info("Nothing to run for environment '%s'", self.topology.environment)
            return self.report()

        self.up()
        try:
            while not self._shutdown_event.wait(0.5):
                self._reap_exited()
                if self.wait_until_started(timeout=0) and not self._any_alive():
                    logger.warning("No service is running any more")
                    break
        except KeyboardInterrupt:
            logger.info("Interrupted, shutting down")
        finally:
            self.down()
        return self.report()

    def request_shutdown(self):
        """
        Cancels every pending wait and health poll. Safe to call from signal
        handlers and from any thread; ``run`` performs the actual shutdown.
        """
        if not self._shutdown_event.is_set():
            logger.info("Shutdown requested")
        self._shutdown_event.set()
        self.gate.wake()

    def down(self):
        """
        Stops all launched services in reverse startup order.
        """
        if self._stopped:
            return
        self._stopped = True
        self.request_shutdown()

        if self._executor is not None:
            self._executor.shutdown(wait=True)
            for name, future in self._futures.items():
                error = future.exception()
                if error is None:
                    continue
                logger.error("Bring-up of %s crashed", name, exc_info=error)
                if self.gate.state(name) in (ReadinessState.PENDING, ReadinessState.STARTING):
                    self.gate.mark_failed(name, FailureReason.LAUNCH_ERROR, str(error))

        with self._lock:
            started = list(self._started)
        for name in reversed(started):
            self._release(name)
            if self.gate.state(name) == ReadinessState.HEALTHY:
                self.gate.mark_stopped(name)

    def snapshot(self) -> Dict[str, ServiceStatus]:
        """
        Current status of every service. Never blocks on startup.
        """
        return self.gate.snapshot()

    def ps(self) -> Dict[str, str]:
        """
        Returns the state of all services.

        :return: Service names and their states.
        """
        return {name: status.state.value for name, status in self.snapshot().items()}

    def report(self) -> RunReport:
        services = self.snapshot()
        unsettled = tuple(self.gate.unsettled())
        return RunReport(
            exit_code=EXIT_RUNTIME_FAILURE if unsettled else EXIT_OK,
            services=services,
            unsettled=unsettled,
        )

    def _release(self, name: str):
        """Stops a launched service once; later calls do nothing."""
        with self._lock:
            if name in self._released or name not in self._handles:
                return
            self._released.add(name)
            handle = self._handles[name]

        logger.info("Stopping service: %s...", name)
        try:
            self.runtime.stop(handle)
        except Exception as e:
            logger.error("Failed to stop %s: %s", name, e)

    def _reap_exited(self):
        """
        Settles Healthy services whose process is gone. Bring-up routines no
        longer write a service's state once it is Healthy.
        """
        with self._lock:
            candidates = [n for n in self._started if n not in self._released]
        for name in candidates:
            if self.gate.state(name) != ReadinessState.HEALTHY:
                continue
            code = self.runtime.poll(self._handles[name])
            if code is None:
                continue
            self._release(name)
            if code == 0:
                self.gate.mark_stopped(name, "exited with code 0")
            else:
                self.gate.mark_failed(name, FailureReason.EXITED, f"exited with code {code}")

    def _any_alive(self) -> bool:
        return any(
            status.state in (ReadinessState.STARTING, ReadinessState.HEALTHY)
            for status in self.gate.snapshot().values()
        )

    def _bring_up(self, name: str):
        """
        Runs the whole startup of one service. This routine is the only writer
        of the service's state until it returns.

        Reference-only targets are checked once, before launch: a target that
        fails after this service started does not stop it.
        """
        svc = self.topology.services[name]
        graph = self.topology.graph

        predecessors = graph.wait_for_targets(name)
        if predecessors:
            logger.info("%s waiting for %s", name, ", ".join(predecessors))
            result = self.gate.wait_until_ready(
                predecessors, self.settings.dependency_timeout, self._shutdown_event,
            )
            if result.outcome == WaitOutcome.CANCELLED:
                self.gate.mark_stopped(name, "shutdown before launch")
                return
            if result.outcome == WaitOutcome.BLOCKED:
                self.gate.mark_failed(
                    name, FailureReason.BLOCKED_BY_DEPENDENCY,
                    f"dependency {', '.join(result.names)} did not become healthy",
                    blocked_by=result.names,
                )
                return
            if result.outcome == WaitOutcome.TIMEOUT:
                self.gate.mark_failed(
                    name, FailureReason.DEPENDENCY_TIMEOUT,
                    f"timed out after {self.settings.dependency_timeout:g}s waiting for "
                    f"{', '.join(result.names)}",
                    blocked_by=result.names,
                )
                return

        failed_refs = [t for t in graph.reference_targets(name)
                       if self.gate.state(t) == ReadinessState.FAILED]
        if failed_refs:
            self.gate.mark_failed(
                name, FailureReason.BLOCKED_BY_DEPENDENCY,
                f"referenced service {', '.join(failed_refs)} failed",
                blocked_by=failed_refs,
            )
            return

        if self._shutdown_event.is_set():
            self.gate.mark_stopped(name, "shutdown before launch")
            return

        self.gate.mark_starting(name)
        try:
            env = self.injector.materialize(svc, self.topology.endpoints)
            handle = self.runtime.launch(name, svc.launch, env, self.topology.endpoints_of(name))
        except Exception as e:
            self.gate.mark_failed(name, FailureReason.LAUNCH_ERROR, str(e))
            return

        with self._lock:
            self._handles[name] = handle
            self._started.append(name)

        self._await_health(svc, handle, env)

    def _await_health(self, svc: ServiceDefinition, handle: Any, env: Dict[str, str]):
        name = svc.name
        hc = svc.health_check
        if hc is None:
            self.gate.mark_healthy(name)
            return

        timeout = hc.timeout or self.settings.health_timeout
        interval = hc.interval or self.settings.health_interval
        retrying = Retrying(
            stop=stop_after_delay(timeout) | stop_when_event_set(self._shutdown_event),
            wait=wait_fixed(interval),
            retry=retry_if_result(lambda healthy: not healthy)
            | retry_if_not_exception_type(ServiceExitedError),
            sleep=self._shutdown_event.wait,
            retry_error_callback=lambda retry_state: False,
        )

        logger.info("Waiting for %s to become healthy...", name)
        try:
            healthy = retrying(self.runtime.health_check, handle, self._probe_for(svc, env))
        except ServiceExitedError as e:
            self._release(name)
            self.gate.mark_failed(name, FailureReason.EXITED, str(e))
            return

        if healthy:
            self.gate.mark_healthy(name)
        elif self._shutdown_event.is_set():
            self.gate.mark_stopped(name, "shutdown during health check")
        else:
            self._release(name)
            self.gate.mark_failed(
                name, FailureReason.HEALTH_TIMEOUT, f"not healthy after {timeout:g}s",
            )

    def _probe_for(self, svc: ServiceDefinition, env: Dict[str, str]) -> HealthProbe:
        hc = svc.health_check
        if not hc.is_http:
            return HealthProbe(command=hc.command, request_timeout=hc.request_timeout, env=env)

        ep = self.topology.endpoints[(svc.name, svc.health_endpoint().name)]
        path = hc.path if hc.path.startswith("/") else "/" + hc.path
        # Probe the bound port directly, bypassing any intermediary
        return HealthProbe(
            url=f"{ep.scheme}://{ep.host}:{ep.target_port}{path}",
            expected_status=hc.expected_status,
            request_timeout=hc.request_timeout,
        )

    def _on_state_change(self, name: str, status: ServiceStatus):
        if status.state != ReadinessState.FAILED:
            logger.info("Service %s is %s", name, status.state.value)
            return

        logger.error("Service %s failed (%s): %s", name, status.reason.value, status.detail)
        if status.reason != FailureReason.BLOCKED_BY_DEPENDENCY:
            affected = self.topology.graph.transitive_dependents(name)
            if affected:
                logger.warning("Services depending on %s are affected: %s", name, ", ".join(affected))
        if self.settings.stop_on_failure or self.topology.services[name].critical:
            logger.error("Failure of %s is fatal, stopping the composition", name)
            self.request_shutdown()
