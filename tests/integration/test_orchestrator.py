"""
Integration tests for the orchestrator against an in-memory runtime.
"""
import logging
import threading

import pytest

from apphost.MANAGERS.readiness_gate import FailureReason, ReadinessState
from apphost.MANAGERS.service_orchestrator import (
    EXIT_OK,
    EXIT_RUNTIME_FAILURE,
    ServiceOrchestrator,
)
from apphost.MODELS.apphost_config import AppHostConfig, EnvironmentBlock
from apphost.MODELS.endpoint import EndpointDefinition
from apphost.MODELS.service_definition import HealthCheckDescriptor, ServiceDefinition


def api_service(**kwargs):
    return ServiceDefinition(
        name="api",
        endpoints=(
            EndpointDefinition(name="http"),
            EndpointDefinition(name="https", scheme="https"),
        ),
        health_check=HealthCheckDescriptor(endpoint="https", path="/health"),
        **kwargs,
    )


def web_service(**kwargs):
    return ServiceDefinition(
        name="web",
        references=("api",),
        wait_for=("api",),
        environment={"API_BASE_URL": "{{ api.https }}"},
        **kwargs,
    )


def started(topology, runtime, settings):
    orchestrator = ServiceOrchestrator(topology, runtime=runtime, settings=settings)
    orchestrator.up()
    assert orchestrator.wait_until_started(timeout=10)
    return orchestrator


def states(orchestrator):
    return {name: status.state for name, status in orchestrator.snapshot().items()}


def run_with_timeout(orchestrator, timeout=10):
    result = {}
    worker = threading.Thread(target=lambda: result.update(report=orchestrator.run()), daemon=True)
    worker.start()
    worker.join(timeout)
    if worker.is_alive():
        orchestrator.request_shutdown()
        worker.join(timeout)
        pytest.fail("run did not return after every service exited")
    return result["report"]


class TestStartup:
    """Tests for dependency-ordered startup."""

    def test_api_healthy_before_web_launch(self, build, runtime, settings):
        runtime.checks_until_healthy["api"] = 3
        topology = build(api_service(), web_service())
        orchestrator = ServiceOrchestrator(topology, runtime=runtime, settings=settings)

        transitions = runtime.events
        record = orchestrator.gate.on_change

        def on_change(name, status):
            transitions.append(("state", name, status.state))
            record(name, status)

        orchestrator.gate.on_change = on_change
        orchestrator.up()
        assert orchestrator.wait_until_started(timeout=10)

        api_states = [e[2] for e in transitions if e[0] == "state" and e[1] == "api"]
        assert api_states == [ReadinessState.STARTING, ReadinessState.HEALTHY]
        assert transitions.index(("state", "api", ReadinessState.HEALTHY)) < transitions.index(("launch", "web"))

        api_https = topology.endpoints[("api", "https")]
        assert runtime.envs["web"]["API_BASE_URL"] == api_https.url
        assert runtime.probes["api"].url == f"https://localhost:{api_https.target_port}/health"
        assert states(orchestrator) == {"api": ReadinessState.HEALTHY, "web": ReadinessState.HEALTHY}

        orchestrator.down()
        assert runtime.stopped == ["web", "api"]
        assert states(orchestrator) == {"api": ReadinessState.STOPPED, "web": ReadinessState.STOPPED}
        assert orchestrator.report().exit_code == EXIT_OK

    def test_ps(self, build, runtime, settings):
        orchestrator = started(build(api_service()), runtime, settings)
        assert orchestrator.ps() == {"api": "healthy"}
        orchestrator.down()
        assert orchestrator.ps() == {"api": "stopped"}

    def test_unrelated_services_start(self, build, runtime, settings):
        runtime.fail_launch.add("api")
        topology = build(api_service(), web_service(), ServiceDefinition(name="worker"))
        orchestrator = started(topology, runtime, settings)
        assert orchestrator.snapshot()["worker"].state == ReadinessState.HEALTHY
        orchestrator.down()


class TestFailures:
    """Tests for failure handling and fail-fast propagation."""

    def test_blocked_by_dependency(self, build, runtime, settings):
        runtime.fail_launch.add("api")
        topology = build(
            api_service(),
            web_service(),
            ServiceDefinition(name="e2e", wait_for=("web",)),
        )
        orchestrator = started(topology, runtime, settings)
        snapshot = orchestrator.snapshot()

        assert snapshot["api"].state == ReadinessState.FAILED
        assert snapshot["api"].reason == FailureReason.LAUNCH_ERROR
        assert snapshot["web"].state == ReadinessState.FAILED
        assert snapshot["web"].reason == FailureReason.BLOCKED_BY_DEPENDENCY
        assert snapshot["web"].blocked_by == ("api",)
        assert snapshot["e2e"].reason == FailureReason.BLOCKED_BY_DEPENDENCY
        assert runtime.launched == ["api"]

        orchestrator.down()
        report = orchestrator.report()
        assert report.exit_code == EXIT_RUNTIME_FAILURE
        assert report.unsettled == ("api", "web", "e2e")

    def test_health_timeout(self, build, runtime, settings):
        runtime.unhealthy.add("api")
        settings = settings.model_copy(update={"health_timeout": 0.2})
        orchestrator = started(build(api_service(), web_service()), runtime, settings)
        snapshot = orchestrator.snapshot()
        assert snapshot["api"].reason == FailureReason.HEALTH_TIMEOUT
        assert snapshot["web"].reason == FailureReason.BLOCKED_BY_DEPENDENCY
        assert runtime.stopped == ["api"]
        orchestrator.down()
        assert runtime.stopped == ["api"]

    def test_process_exit_during_health_check(self, build, runtime, settings):
        runtime.exits.add("api")
        orchestrator = started(build(api_service()), runtime, settings)
        assert orchestrator.snapshot()["api"].reason == FailureReason.EXITED
        assert runtime.checks["api"] == 1
        assert runtime.stopped == ["api"]
        orchestrator.down()
        assert runtime.stopped == ["api"]

    def test_failed_reference_blocks_launch(self, build, runtime, settings):
        topology = build(ServiceDefinition(name="a"), ServiceDefinition(name="b", references=("a",)))
        assert topology.graph.wait_for_targets("b") == []
        orchestrator = ServiceOrchestrator(topology, runtime=runtime, settings=settings)
        orchestrator.gate.mark_failed("a", FailureReason.LAUNCH_ERROR, "boom")

        orchestrator._bring_up("b")

        b = orchestrator.snapshot()["b"]
        assert b.state == ReadinessState.FAILED
        assert b.reason == FailureReason.BLOCKED_BY_DEPENDENCY
        assert b.blocked_by == ("a",)
        assert "b" not in runtime.launched

    def test_dependency_timeout(self, build, runtime, settings):
        runtime.checks_until_healthy["api"] = 10 ** 6
        settings = settings.model_copy(update={"dependency_timeout": 0.2, "health_timeout": 30})
        orchestrator = ServiceOrchestrator(build(api_service(), web_service()), runtime=runtime, settings=settings)
        orchestrator.up()
        assert not orchestrator.wait_until_started(timeout=1)

        web = orchestrator.snapshot()["web"]
        assert web.reason == FailureReason.DEPENDENCY_TIMEOUT
        assert web.blocked_by == ("api",)
        assert orchestrator.snapshot()["api"].state == ReadinessState.STARTING

        orchestrator.down()
        assert orchestrator.snapshot()["api"].state == ReadinessState.STOPPED

    def test_critical_failure_stops_everything(self, build, runtime, settings):
        runtime.fail_launch.add("api")
        topology = build(api_service(critical=True), ServiceDefinition(name="worker"))
        orchestrator = ServiceOrchestrator(topology, runtime=runtime, settings=settings)
        report = orchestrator.run()

        assert orchestrator.shutdown_requested
        assert report.exit_code == EXIT_RUNTIME_FAILURE
        assert report.unsettled == ("api",)
        assert report.services["worker"].state == ReadinessState.STOPPED

    def test_stop_on_failure(self, build, runtime, settings):
        runtime.unhealthy.add("api")
        settings = settings.model_copy(update={"health_timeout": 0.1, "stop_on_failure": True})
        topology = build(api_service(), ServiceDefinition(name="worker"))
        report = ServiceOrchestrator(topology, runtime=runtime, settings=settings).run()
        assert report.unsettled == ("api",)
        assert sorted(runtime.stopped) == ["api", "worker"]

    def test_run_returns_when_nothing_is_alive(self, build, runtime, settings):
        runtime.fail_launch.add("api")
        report = ServiceOrchestrator(build(api_service()), runtime=runtime, settings=settings).run()
        assert report.exit_code == EXIT_RUNTIME_FAILURE


class TestRun:
    """Tests for the blocking run entry point."""

    def test_empty_topology(self, runtime, settings):
        config = AppHostConfig(blocks=(
            EnvironmentBlock(environments=("Production",), services=(ServiceDefinition(name="api"),)),
        ), settings=settings)
        orchestrator = ServiceOrchestrator.from_config(config, "Development", runtime=runtime)
        report = orchestrator.run()
        assert report.exit_code == EXIT_OK
        assert report.services == {}
        assert runtime.launched == []

    def test_shutdown_request(self, build, runtime, settings):
        orchestrator = ServiceOrchestrator(build(api_service(), web_service()), runtime=runtime, settings=settings)
        timer = threading.Timer(0.3, orchestrator.request_shutdown)
        timer.start()
        report = orchestrator.run()
        timer.join()

        assert report.exit_code == EXIT_OK
        assert report.unsettled == ()
        assert runtime.stopped == ["web", "api"]
        assert "api" in report.format()

    def test_run_returns_when_healthy_services_exit(self, build, runtime, settings):
        runtime.exit_codes.update({"api": 0, "worker": 0})
        topology = build(api_service(), ServiceDefinition(name="worker"))
        report = run_with_timeout(ServiceOrchestrator(topology, runtime=runtime, settings=settings))

        assert report.exit_code == EXIT_OK
        assert report.services["api"].state == ReadinessState.STOPPED
        assert report.services["api"].detail == "exited with code 0"
        assert sorted(runtime.stopped) == ["api", "worker"]

    def test_healthy_service_crash_fails_run(self, build, runtime, settings):
        runtime.exit_codes["api"] = 3
        report = run_with_timeout(ServiceOrchestrator(build(api_service()), runtime=runtime, settings=settings))

        api = report.services["api"]
        assert api.state == ReadinessState.FAILED
        assert api.reason == FailureReason.EXITED
        assert "3" in api.detail
        assert report.exit_code == EXIT_RUNTIME_FAILURE
        assert runtime.stopped == ["api"]

    def test_failure_names_affected_dependents(self, build, runtime, settings, caplog):
        runtime.fail_launch.add("api")
        topology = build(
            api_service(),
            web_service(),
            ServiceDefinition(name="e2e", wait_for=("web",)),
        )
        with caplog.at_level(logging.WARNING, logger="apphost.MANAGERS.service_orchestrator"):
            orchestrator = started(topology, runtime, settings)
            orchestrator.down()
        assert "Services depending on api are affected: web, e2e" in caplog.text

    def test_cannot_start_twice(self, build, runtime, settings):
        orchestrator = started(build(api_service()), runtime, settings)
        with pytest.raises(RuntimeError):
            orchestrator.up()
        orchestrator.down()
