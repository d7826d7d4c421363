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
Execution of service processes with log redirection, health probing and
lifecycle management.
"""
import logging
import os
import ssl
import subprocess
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Protocol, Sequence, Tuple
from urllib.error import HTTPError, URLError
from urllib.request import Request, urlopen

from ..MODELS.endpoint import ResolvedEndpoint
from ..MODELS.service_definition import LaunchDescriptor
from ..errors import ServiceExitedError
from .entrypoint_executor import EntrypointExecutor
from .port_forwarder import PortForwarder

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class HealthProbe:
    """
    A health check bound to a concrete address (or command) for one run.
    """
    url: Optional[str] = None
    command: Tuple[str, ...] = ()
    expected_status: Tuple[int, ...] = (200,)
    request_timeout: float = 5.0
    env: Dict[str, str] = field(default_factory=dict)


class ServiceRuntime(Protocol):
    """
    What the orchestrator needs from a process or container runtime.
    """
    def launch(self, name: str, descriptor: LaunchDescriptor, env: Dict[str, str],
               endpoints: Sequence[ResolvedEndpoint] = ()) -> Any:
        ...

    def health_check(self, handle: Any, probe: HealthProbe) -> bool:
        ...

    def poll(self, handle: Any) -> Optional[int]:
        ...

    def stop(self, handle: Any) -> None:
        ...


class ProcessRunner:
    """
    Manages the execution of a single system process.
    """
    def __init__(self, name: str, log_file: Optional[str] = None):
        """
        Initializes the process runner.

        Args:
            name (str): Identifier for the process.
            log_file (Optional[str]): Path to a file where stdout/stderr will be redirected.
        """
        self.name = name
        self.log_file = log_file
        self.process: Optional[subprocess.Popen] = None
        self.log_handle = None

    def start(self,
              command: List[str],
              env: Dict[str, str],
              working_dir: Optional[str] = None):
        """
        Starts the process.

        Args:
            command (List[str]): Command and arguments to execute.
            env (Dict[str, str]): Environment variables for the process.
            working_dir (Optional[str]): Directory to start the process in.

        Raises:
            OSError: If the executable cannot be started.
        """
        stdout = None
        if self.log_file:
            log_dir = os.path.dirname(self.log_file)
            if log_dir:
                os.makedirs(log_dir, exist_ok=True)
            self.log_handle = open(self.log_file, 'a')
            stdout = self.log_handle

        logger.info("[%s] Starting command: %s", self.name, ' '.join(command))
        try:
            self.process = subprocess.Popen(
                command,
                env=env,
                cwd=working_dir,
                stdin=subprocess.DEVNULL,
                stdout=stdout,
                stderr=subprocess.STDOUT if stdout else None,
                text=True,
                shell=False,
            )
        except OSError:
            self._close_log()
            raise

    def stop(self, timeout: float = 10):
        """
        Stops the process by sending SIGTERM, followed by SIGKILL if it doesn't stop.

        Args:
            timeout (float): Seconds to wait for termination before killing.
        """
        if self.process and self.process.poll() is None:
            logger.info("[%s] Stopping process...", self.name)
            self.process.terminate()
            try:
                self.process.wait(timeout=timeout)
            except subprocess.TimeoutExpired:
                logger.warning("[%s] Process did not terminate, killing...", self.name)
                self.process.kill()
                self.process.wait()
        self._close_log()

    def _close_log(self):
        if self.log_handle:
            self.log_handle.close()
            self.log_handle = None

    def is_running(self) -> bool:
        """
        Checks if the process is currently running.
        """
        return self.process is not None and self.process.poll() is None

    def get_exit_code(self) -> Optional[int]:
        """
        Gets the exit code of the process, None while it is running.
        """
        if self.process:
            return self.process.poll()
        return None


@dataclass
class ProcessHandle:
    """A launched service process and the forwarders for its proxied endpoints."""
    name: str
    runner: ProcessRunner
    forwarders: List[PortForwarder] = field(default_factory=list)


class ProcessRuntime:
    """
    Default runtime: runs each service as a local child process.

    Proxied endpoints get a TCP forwarder from their stable port to the port
    the process binds.
    """
    def __init__(self, base_dir: str = ".", log_dir: Optional[str] = ".apphost/logs",
                 stop_timeout: float = 10, forward_proxied: bool = True):
        """
        :param base_dir: Directory that relative paths are resolved against.
        :param log_dir: Directory for per-service log files, relative to base_dir.
            None sends output to the console.
        :param stop_timeout: Seconds to wait after SIGTERM before SIGKILL.
        :param forward_proxied: Start forwarders for proxied endpoints.
        """
        self.base_dir = base_dir
        self.log_dir = log_dir
        self.stop_timeout = stop_timeout
        self.forward_proxied = forward_proxied
        self.executor = EntrypointExecutor()

    def launch(self, name: str, descriptor: LaunchDescriptor, env: Dict[str, str],
               endpoints: Sequence[ResolvedEndpoint] = ()) -> ProcessHandle:
        """
        Starts the process for a service.

        :raises ValueError: If the descriptor resolves to no command.
        :raises OSError: If the process or a forwarder cannot be started.
        """
        command = self.executor.get_full_command(descriptor)
        if not command:
            raise ValueError(f"No command specified for service '{name}'")

        log_file = None
        if self.log_dir:
            log_file = os.path.join(self.base_dir, self.log_dir, f"{name}.log")

        handle = ProcessHandle(name, ProcessRunner(name, log_file=log_file))
        handle.runner.start(
            command,
            env=env,
            working_dir=self.executor.get_working_dir(descriptor, self.base_dir),
        )

        if self.forward_proxied:
            try:
                for ep in endpoints:
                    if ep.proxied and ep.port != ep.target_port:
                        forwarder = PortForwarder(ep.host, ep.port, ep.host, ep.target_port)
                        forwarder.start()
                        handle.forwarders.append(forwarder)
            except OSError:
                self.stop(handle)
                raise
        return handle

    def health_check(self, handle: ProcessHandle, probe: HealthProbe) -> bool:
        """
        Runs one health probe against a launched service.

        :raises ServiceExitedError: If the process is no longer running.
        """
        if not handle.runner.is_running():
            raise ServiceExitedError(handle.name, handle.runner.get_exit_code())
        if probe.command:
            return self._run_command_check(handle, probe)
        return self._run_http_check(handle, probe)

    def _run_command_check(self, handle: ProcessHandle, probe: HealthProbe) -> bool:
        try:
            result = subprocess.run(
                list(probe.command),
                env=probe.env or None,
                capture_output=True,
                timeout=probe.request_timeout,
                text=True,
            )
        except subprocess.TimeoutExpired:
            logger.debug("[%s] Health check timed out", handle.name)
            return False
        except OSError as e:
            logger.debug("[%s] Health check could not run: %s", handle.name, e)
            return False
        return result.returncode == 0

    def _run_http_check(self, handle: ProcessHandle, probe: HealthProbe) -> bool:
        # Local development certificates are usually self-signed
        context = ssl.create_default_context()
        context.check_hostname = False
        context.verify_mode = ssl.CERT_NONE

        request = Request(probe.url, method="GET")
        try:
            with urlopen(request, timeout=probe.request_timeout, context=context) as response:
                status = response.status
        except HTTPError as e:
            status = e.code
        except (URLError, OSError) as e:
            logger.debug("[%s] Health check %s failed: %s", handle.name, probe.url, e)
            return False
        return status in probe.expected_status

    def poll(self, handle: ProcessHandle) -> Optional[int]:
        """
        Exit code of the service's process, None while it is running.
        """
        return handle.runner.get_exit_code()

    def stop(self, handle: ProcessHandle) -> None:
        """
        Stops the process and its forwarders.
        """
        for forwarder in handle.forwarders:
            forwarder.stop()
        handle.forwarders.clear()
        handle.runner.stop(timeout=self.stop_timeout)
