"""
Unit tests for launch environment materialization.
"""
import pytest

from apphost.MANAGERS.injector import EnvironmentInjector, discovery_variable
from apphost.MODELS.endpoint import EndpointDefinition, EndpointReference, ResolvedEndpoint
from apphost.MODELS.service_definition import EnvBinding, ServiceDefinition
from apphost.errors import UnresolvedReferenceError


def address(service, name, port, scheme="https", target_port=None):
    return ResolvedEndpoint(
        service=service, name=name, scheme=scheme, host="localhost",
        port=port, target_port=target_port or port,
    )


@pytest.fixture
def endpoints():
    return {
        ("api", "http"): address("api", "http", 5230, scheme="http"),
        ("api", "https"): address("api", "https", 7230),
        ("web", "http"): address("web", "http", 4000, scheme="http", target_port=49152),
    }


@pytest.fixture
def injector():
    return EnvironmentInjector(inherit_environment=False)


class TestEnvironmentInjector:
    """Tests for EnvironmentInjector."""

    def test_literal_binding(self, injector, endpoints):
        svc = ServiceDefinition(name="web", environment={"NODE_ENV": "production"})
        assert injector.materialize(svc, endpoints) == {"NODE_ENV": "production"}

    def test_endpoint_reference_rendered(self, injector, endpoints):
        svc = ServiceDefinition(
            name="web", wait_for=("api",), environment={"API_BASE_URL": "{{ api.https }}"},
        )
        env = injector.materialize(svc, endpoints)
        assert env["API_BASE_URL"] == "https://localhost:7230"

    def test_template_with_properties(self, injector, endpoints):
        svc = ServiceDefinition(
            name="web",
            environment={"API": "{{ api.http.host }}:{{ api.http.port }}/v1"},
        )
        assert injector.materialize(svc, endpoints)["API"] == "localhost:5230/v1"

    def test_explicit_reference(self, injector, endpoints):
        svc = ServiceDefinition(
            name="web",
            environment=(EnvBinding(
                name="API_PORT",
                value=EndpointReference(service="api", endpoint="https", property="port"),
            ),),
        )
        assert injector.materialize(svc, endpoints)["API_PORT"] == "7230"

    def test_discovery_variables_for_references(self, injector, endpoints):
        svc = ServiceDefinition(name="web", references=("api",))
        env = injector.materialize(svc, endpoints)
        assert env[discovery_variable("api", "http")] == "http://localhost:5230"
        assert env["services__api__https__0"] == "https://localhost:7230"

    def test_own_port_variable_uses_bound_port(self, injector, endpoints):
        svc = ServiceDefinition(
            name="web", endpoints=(EndpointDefinition(name="http", port=4000, env="PORT"),),
        )
        assert injector.materialize(svc, endpoints)["PORT"] == "49152"

    def test_unresolved_reference(self, injector, endpoints):
        svc = ServiceDefinition(name="web", environment={"DB": "{{ db.tcp }}"})
        with pytest.raises(UnresolvedReferenceError) as exc:
            injector.materialize(svc, endpoints)
        assert exc.value.service == "db"
        assert exc.value.referenced_by == "web"

    def test_uses_addresses_known_at_launch(self, injector, endpoints):
        svc = ServiceDefinition(name="web", environment={"API": "{{ api.https }}"})
        assert injector.materialize(svc, endpoints)["API"] == "https://localhost:7230"
        endpoints[("api", "https")] = address("api", "https", 7443)
        assert injector.materialize(svc, endpoints)["API"] == "https://localhost:7443"

    def test_environment_files(self, tmp_path, endpoints):
        (tmp_path / "web.env").write_text("FROM_FILE=1\nNODE_ENV=development\n")
        svc = ServiceDefinition(
            name="web",
            environment_files=("web.env", "missing.env"),
            environment={"NODE_ENV": "production"},
        )
        env = EnvironmentInjector(base_dir=str(tmp_path), inherit_environment=False).materialize(svc, endpoints)
        assert env["FROM_FILE"] == "1"
        assert env["NODE_ENV"] == "production"

    def test_inherits_process_environment(self, monkeypatch, endpoints):
        monkeypatch.setenv("APPHOST_TEST_VAR", "inherited")
        svc = ServiceDefinition(name="web")
        env = EnvironmentInjector().materialize(svc, endpoints)
        assert env["APPHOST_TEST_VAR"] == "inherited"
