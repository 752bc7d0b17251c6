from unittest.mock import MagicMock, Mock, patch

import pytest
from docker.errors import APIError, DockerException, NotFound

from certrotate.errors import (
    DependencyMissingError,
    ExitCode,
    SecretStoreError,
    TargetUnavailableError,
    WorkerFailedError,
)
from certrotate.swarm import TASK_FAILED, TASK_PENDING, TASK_RUNNING, TASK_SUCCEEDED, Swarm, secret_reference


def conflict():
    response = Mock(status_code=409)
    return APIError("secret exists", response=response)


def named(name, secret_id):
    secret = Mock(id=secret_id)
    secret.name = name
    return secret


class TestSwarmSecrets:
    @pytest.fixture
    def client(self):
        return MagicMock()

    @pytest.fixture
    def swarm(self, client):
        return Swarm(client=client)

    def test_create_secret(self, swarm, client):
        client.secrets.create.return_value = Mock(id="s1")
        assert swarm.create_secret("a-com-cert.pem-r1", b"pem", labels={"x": "y"}) == ("s1", True)

    def test_existing_secret_is_reused(self, swarm, client):
        client.secrets.create.side_effect = conflict()
        client.secrets.list.return_value = [named("a-com-cert.pem-r10", "other"), named("a-com-cert.pem-r1", "s1")]
        assert swarm.create_secret("a-com-cert.pem-r1", b"pem") == ("s1", False)

    def test_create_failure(self, swarm, client):
        client.secrets.create.side_effect = APIError("boom", response=Mock(status_code=500))
        with pytest.raises(SecretStoreError):
            swarm.create_secret("name", b"x")

    def test_find_secret_is_exact(self, swarm, client):
        client.secrets.list.return_value = [named("abc-r10", "other")]
        assert swarm.find_secret("abc-r1") is None

    def test_remove_missing_secret(self, swarm, client):
        client.secrets.get.side_effect = NotFound("gone")
        swarm.remove_secret("name")

    def test_list_secrets_by_label(self, swarm, client):
        swarm.list_secrets({"certrotate.domain": "a.com", "certrotate.run-id": None})
        filters = client.secrets.list.call_args.kwargs["filters"]
        assert filters == {"label": ["certrotate.domain=a.com", "certrotate.run-id"]}


class TestSwarmReadiness:
    def test_unreachable_engine_is_a_missing_dependency(self):
        error = DockerException("Error while fetching server API version")
        with patch("certrotate.swarm.docker.from_env", side_effect=error):
            with pytest.raises(DependencyMissingError) as excinfo:
                Swarm()
        assert excinfo.value.exit_code == ExitCode.DEPENDENCY_MISSING

    def test_ready(self):
        client = MagicMock()
        client.info.return_value = {"Swarm": {"LocalNodeState": "active", "ControlAvailable": True}}
        assert Swarm(client=client).is_ready() is True

    def test_worker_node_is_not_ready(self):
        client = MagicMock()
        client.info.return_value = {"Swarm": {"LocalNodeState": "active", "ControlAvailable": False}}
        assert Swarm(client=client).is_ready() is False

    def test_wait_until_ready_times_out(self):
        client = MagicMock()
        client.info.return_value = {"Swarm": {"LocalNodeState": "inactive"}}
        ticks = iter(range(0, 100, 5))
        sleep = Mock()
        with pytest.raises(TargetUnavailableError):
            Swarm(client=client).wait_until_ready(12, poll_interval=5, clock=lambda: next(ticks), sleep=sleep)
        assert sleep.call_count == 2


class TestOneShotService:
    @pytest.fixture
    def client(self):
        return MagicMock()

    def test_launch_never_restarts(self, client):
        client.services.create.return_value = Mock(id="svc1")
        service_id = Swarm(client=client).launch_one_shot(
            "cert-renew-r1", "lingo/certbot:latest", "node.role==worker", {"RUN_ID": "r1"},
            [("/etc/letsencrypt", "/etc/letsencrypt")], [], stop_grace_period=300,
        )
        assert service_id == "svc1"
        kwargs = client.services.create.call_args.kwargs
        assert kwargs["restart_policy"]["Condition"] == "none"
        assert kwargs["constraints"] == ["node.role==worker"]
        assert kwargs["env"] == ["RUN_ID=r1"]
        assert kwargs["stop_grace_period"] == 300 * 10 ** 9

    def test_launch_failure(self, client):
        client.services.create.side_effect = APIError("no image")
        with pytest.raises(WorkerFailedError):
            Swarm(client=client).launch_one_shot("n", "img", None, {}, [], [])

    @pytest.mark.parametrize("task_state,expected", [
        ("new", TASK_PENDING),
        ("running", TASK_RUNNING),
        ("complete", TASK_SUCCEEDED),
        ("failed", TASK_FAILED),
        ("rejected", TASK_FAILED),
    ])
    def test_poll_state(self, client, task_state, expected):
        client.services.get.return_value.tasks.return_value = [
            {"CreatedAt": "2025-01-01T00:00:00Z", "Status": {"State": "failed"}},
            {"CreatedAt": "2025-01-01T00:01:00Z", "Status": {"State": task_state}},
        ]
        assert Swarm(client=client).poll_state("svc1").state == expected

    def test_poll_without_tasks(self, client):
        client.services.get.return_value.tasks.return_value = []
        assert Swarm(client=client).poll_state("svc1").state == TASK_PENDING

    def test_poll_vanished_service(self, client):
        client.services.get.side_effect = NotFound("gone")
        with pytest.raises(WorkerFailedError):
            Swarm(client=client).poll_state("svc1")


class TestSecretAttachments:
    def test_swap_in_single_update(self):
        client = MagicMock()
        service = client.services.get.return_value
        service.attrs = {"Spec": {"TaskTemplate": {"ContainerSpec": {"Secrets": [
            {"SecretID": "old1", "SecretName": "a-com-cert.pem-r0", "File": {"Name": "a.com-cert.pem"}},
            {"SecretID": "db", "SecretName": "db-password", "File": {"Name": "db-password"}},
        ]}}}}
        new = secret_reference("new1", "a-com-cert.pem-r1", "a.com-cert.pem")

        removed = Swarm(client=client).update_secret_attachments("web", ["a.com-cert.pem"], [new])

        assert removed == ["a-com-cert.pem-r0"]
        service.update.assert_called_once()
        secrets = service.update.call_args.kwargs["secrets"]
        assert [s["SecretName"] for s in secrets] == ["db-password", "a-com-cert.pem-r1"]

    def test_secrets_in_use(self):
        client = MagicMock()
        service = Mock()
        service.attrs = {"Spec": {"TaskTemplate": {"ContainerSpec": {"Secrets": [{"SecretID": "s1"}]}}}}
        client.services.list.return_value = [service]
        assert Swarm(client=client).secrets_in_use() == {"s1"}
