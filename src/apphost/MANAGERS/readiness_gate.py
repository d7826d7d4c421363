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
Readiness tracking for services: a per-service state machine that gates the
startup of dependents on the health of their predecessors.
"""
import logging
import threading
import time
from dataclasses import dataclass, replace
from datetime import datetime, timezone
from enum import Enum
from typing import Callable, Dict, Iterable, List, Optional, Tuple

from ..errors import InvalidTransitionError

logger = logging.getLogger(__name__)


class ReadinessState(str, Enum):
    """Lifecycle state of a service."""

    PENDING = "pending"
    STARTING = "starting"
    HEALTHY = "healthy"
    FAILED = "failed"
    STOPPED = "stopped"


class FailureReason(str, Enum):
    """Why a service ended up Failed."""

    LAUNCH_ERROR = "launch-error"
    EXITED = "exited"  # process died with a non-zero code
    HEALTH_TIMEOUT = "health-timeout"  # never became healthy
    DEPENDENCY_TIMEOUT = "dependency-timeout"
    BLOCKED_BY_DEPENDENCY = "blocked-by-dependency"


ALLOWED_TRANSITIONS = {
    ReadinessState.PENDING: {ReadinessState.STARTING, ReadinessState.FAILED, ReadinessState.STOPPED},
    ReadinessState.STARTING: {ReadinessState.HEALTHY, ReadinessState.FAILED, ReadinessState.STOPPED},
    ReadinessState.HEALTHY: {ReadinessState.STOPPED, ReadinessState.FAILED},
    ReadinessState.FAILED: set(),
    ReadinessState.STOPPED: set(),
}

TERMINAL_STATES = (ReadinessState.FAILED, ReadinessState.STOPPED)


@dataclass(frozen=True)
class ServiceStatus:
    """Readiness information for a service at one point in time."""

    state: ReadinessState = ReadinessState.PENDING
    reason: Optional[FailureReason] = None
    detail: str = ""
    blocked_by: Tuple[str, ...] = ()
    updated_at: Optional[str] = None


class WaitOutcome(str, Enum):
    READY = "ready"
    BLOCKED = "blocked"
    TIMEOUT = "timeout"
    CANCELLED = "cancelled"


@dataclass(frozen=True)
class WaitResult:
    """
    Outcome of waiting on predecessors. ``names`` holds the failed or stopped
    predecessors when blocked, and the ones not yet healthy on timeout.
    """
    outcome: WaitOutcome
    names: Tuple[str, ...] = ()


class ReadinessGate:
    """
    Thread-safe state table for all services of a topology.

    Each service's state is written by one routine at a time and read by any
    number of waiters. Every update is atomic and wakes all waiters.
    """

    def __init__(self,
                 names: Iterable[str],
                 on_change: Optional[Callable[[str, ServiceStatus], None]] = None):
        """
        :param names: Services to track; all start Pending.
        :param on_change: Called after every transition, outside the lock.
        """
        self._cond = threading.Condition()
        self._status: Dict[str, ServiceStatus] = {name: ServiceStatus() for name in names}
        self.on_change = on_change

    def __contains__(self, name: str) -> bool:
        return name in self._status

    def get(self, name: str) -> ServiceStatus:
        with self._cond:
            return self._status[name]

    def state(self, name: str) -> ReadinessState:
        return self.get(name).state

    def snapshot(self) -> Dict[str, ServiceStatus]:
        """Consistent copy of every service's status."""
        with self._cond:
            return dict(self._status)

    def transition(self,
                   name: str,
                   target: ReadinessState,
                   reason: Optional[FailureReason] = None,
                   detail: str = "",
                   blocked_by: Iterable[str] = ()) -> ServiceStatus:
        """
        Moves a service to a new state.

        :raises InvalidTransitionError: If the state machine forbids the move.
        """
        with self._cond:
            current = self._status[name]
            if target not in ALLOWED_TRANSITIONS[current.state]:
                raise InvalidTransitionError(name, current.state, target)
            status = replace(
                current,
                state=target,
                reason=reason,
                detail=detail,
                blocked_by=tuple(blocked_by),
                updated_at=datetime.now(timezone.utc).isoformat().replace("+00:00", "Z"),
            )
            self._status[name] = status
            self._cond.notify_all()

        logger.debug("%s: %s -> %s", name, current.state.value, target.value)
        if self.on_change:
            self.on_change(name, status)
        return status

    def mark_starting(self, name: str) -> ServiceStatus:
        return self.transition(name, ReadinessState.STARTING)

    def mark_healthy(self, name: str) -> ServiceStatus:
        return self.transition(name, ReadinessState.HEALTHY)

    def mark_failed(self, name: str, reason: FailureReason, detail: str = "",
                    blocked_by: Iterable[str] = ()) -> ServiceStatus:
        return self.transition(name, ReadinessState.FAILED, reason, detail, blocked_by)

    def mark_stopped(self, name: str, detail: str = "") -> ServiceStatus:
        return self.transition(name, ReadinessState.STOPPED, detail=detail)

    def wake(self):
        """Wakes every waiter so it re-checks its cancellation event."""
        with self._cond:
            self._cond.notify_all()

    def wait_until_ready(self,
                         names: Iterable[str],
                         timeout: float,
                         cancel_event: Optional[threading.Event] = None,
                         poll_interval: float = 0.1) -> WaitResult:
        """
        Blocks until every named service is Healthy.

        Returns early when any of them fails or stops (BLOCKED), when the
        timeout elapses (TIMEOUT) or when ``cancel_event`` is set (CANCELLED).
        """
        names = list(names)
        deadline = time.monotonic() + timeout
        with self._cond:
            while True:
                if cancel_event is not None and cancel_event.is_set():
                    return WaitResult(WaitOutcome.CANCELLED)

                blocked = [n for n in names if self._status[n].state in TERMINAL_STATES]
                if blocked:
                    return WaitResult(WaitOutcome.BLOCKED, tuple(blocked))

                not_ready = [n for n in names if self._status[n].state != ReadinessState.HEALTHY]
                if not not_ready:
                    return WaitResult(WaitOutcome.READY)

                remaining = deadline - time.monotonic()
                if remaining <= 0:
                    return WaitResult(WaitOutcome.TIMEOUT, tuple(not_ready))
                self._cond.wait(min(remaining, poll_interval))

    def unsettled(self) -> List[str]:
        """Services that are neither Healthy nor Stopped."""
        with self._cond:
            return [
                name for name, status in self._status.items()
                if status.state not in (ReadinessState.HEALTHY, ReadinessState.STOPPED)
            ]
