"""Docker Swarm access: secrets, one-shot services and service updates."""

import logging
import time
from collections import namedtuple

import docker
from docker.errors import APIError, DockerException, NotFound
from docker.types import Mount, RestartPolicy, SecretReference

from certrotate.errors import DependencyMissingError, SecretStoreError, TargetUnavailableError, WorkerFailedError

logger = logging.getLogger(__name__)

TASK_PENDING = "pending"
TASK_RUNNING = "running"
TASK_SUCCEEDED = "succeeded"
TASK_FAILED = "failed"

_FAILED_TASK_STATES = {"failed", "rejected", "orphaned", "shutdown", "remove"}

LABEL_MANAGED = "certrotate.managed"
LABEL_DOMAIN = "certrotate.domain"
LABEL_ROLE = "certrotate.role"
LABEL_RUN_ID = "certrotate.run-id"

NANOSECONDS = 10 ** 9

TaskStatus = namedtuple("TaskStatus", ["state", "detail"])


def secret_reference(secret_id, secret_name, target):
    return SecretReference(secret_id, secret_name, filename=target)


def _reference_from_spec(spec):
    file_spec = spec.get("File") or {}
    return SecretReference(
        spec["SecretID"],
        spec["SecretName"],
        filename=file_spec.get("Name"),
        uid=file_spec.get("UID"),
        gid=file_spec.get("GID"),
        mode=file_spec.get("Mode", 0o444),
    )


class Swarm:
    """Swarm manager operations used by the orchestrator."""

    def __init__(self, client=None):
        """Connect to the local engine unless a ``client`` is given.

        An engine that cannot be reached raises DependencyMissingError.
        """
        if client is None:
            try:
                client = docker.from_env()
            except DockerException as e:
                raise DependencyMissingError(f"Docker engine not available: {e}") from e
        self.client = client

    # ------------------ control plane ------------------

    def is_ready(self):
        """True once this node is an active manager with a reachable control plane."""
        try:
            swarm = self.client.info().get("Swarm") or {}
        except DockerException as e:
            logger.debug("Docker engine not reachable: %s", str(e))
            return False
        return swarm.get("LocalNodeState") == "active" and bool(swarm.get("ControlAvailable"))

    def wait_until_ready(self, timeout, poll_interval=3, clock=time.monotonic, sleep=time.sleep):
        """Block until is_ready, raising TargetUnavailableError after ``timeout`` seconds."""
        deadline = clock() + timeout
        while not self.is_ready():
            if clock() >= deadline:
                raise TargetUnavailableError(f"Swarm control plane not ready after {timeout}s")
            logger.info("Waiting for Swarm control plane")
            sleep(poll_interval)
        logger.debug("Swarm control plane ready")

    # ------------------ secrets ------------------

    def find_secret(self, name):
        """Exact-name lookup; Docker's name filter matches prefixes."""
        for secret in self.client.secrets.list(filters={"name": name}):
            if secret.name == name:
                return secret
        return None

    def create_secret(self, name, data, labels=None):
        """Create a secret and return ``(secret_id, created)``.

        An existing secret with the same name is reused, which makes
        re-publishing the same run idempotent.
        """
        try:
            secret = self.client.secrets.create(name=name, data=data, labels=labels or {})
            logger.debug("Created secret %s", name)
            return secret.id, True
        except APIError as e:
            if e.status_code == 409:
                existing = self.find_secret(name)
                if existing is not None:
                    logger.info("Secret %s already exists, reusing it", name)
                    return existing.id, False
            logger.error("Unable to create secret %s: %s", name, str(e))
            raise SecretStoreError(f"Unable to create secret {name}: {e}") from e
        except DockerException as e:
            raise SecretStoreError(f"Unable to create secret {name}: {e}") from e

    def remove_secret(self, name_or_id):
        """Remove a secret; one that is already gone is not an error."""
        try:
            self.client.secrets.get(name_or_id).remove()
        except NotFound:
            logger.debug("Secret %s already gone", name_or_id)

    def list_secrets(self, labels):
        """Secrets carrying every label in ``labels`` (value None matches any value)."""
        filters = [key if value is None else f"{key}={value}" for key, value in labels.items()]
        return self.client.secrets.list(filters={"label": filters})

    # ------------------ one-shot services ------------------

    def launch_one_shot(self, name, image, constraint, env, mounts, secrets, stop_grace_period=300, labels=None):
        """Start a service that runs once and is never restarted."""
        try:
            service = self.client.services.create(
                image,
                name=name,
                constraints=[constraint] if constraint else None,
                restart_policy=RestartPolicy(condition="none"),
                env=[f"{key}={value}" for key, value in env.items()],
                mounts=[Mount(target, source, type="bind") for source, target in mounts],
                secrets=secrets,
                stop_grace_period=stop_grace_period * NANOSECONDS,
                labels=labels or {},
            )
        except DockerException as e:
            logger.error("Unable to create service %s: %s", name, str(e))
            raise WorkerFailedError(f"Unable to create service {name}: {e}") from e
        logger.info("Launched service %s (%s)", name, service.id)
        return service.id

    def poll_state(self, service_id):
        """Reduce the service's newest task to pending/running/succeeded/failed."""
        try:
            tasks = self.client.services.get(service_id).tasks()
        except NotFound as e:
            raise WorkerFailedError(f"Service {service_id} disappeared") from e
        if not tasks:
            return TaskStatus(TASK_PENDING, "no task scheduled yet")

        task = max(tasks, key=lambda t: t.get("CreatedAt", ""))
        status = task.get("Status") or {}
        state = status.get("State", "")
        detail = status.get("Err") or status.get("Message") or state

        if state == "complete":
            return TaskStatus(TASK_SUCCEEDED, detail)
        if state in _FAILED_TASK_STATES:
            exit_code = (status.get("ContainerStatus") or {}).get("ExitCode")
            if exit_code is not None:
                detail = f"{detail} (exit code {exit_code})"
            return TaskStatus(TASK_FAILED, detail)
        if state == "running":
            return TaskStatus(TASK_RUNNING, detail)
        return TaskStatus(TASK_PENDING, detail)

    def service_logs(self, service_id, tail=200):
        """Last ``tail`` log lines of the service, for failure reports."""
        try:
            chunks = self.client.services.get(service_id).logs(stdout=True, stderr=True, tail=tail)
            return b"".join(chunks).decode("utf-8", errors="replace")
        except DockerException as e:
            return f"<logs unavailable: {e}>"

    def remove_service(self, service_id):
        """Remove a service; one that is already gone is not an error."""
        try:
            self.client.services.get(service_id).remove()
        except NotFound:
            logger.debug("Service %s already gone", service_id)

    # ------------------ consuming services ------------------

    def attached_secrets(self, service_name):
        """Secret specs (SecretName, File.Name, ...) currently attached to a service."""
        service = self.client.services.get(service_name)
        spec = service.attrs["Spec"]["TaskTemplate"].get("ContainerSpec") or {}
        return list(spec.get("Secrets") or [])

    def update_secret_attachments(self, service_name, remove_targets, additions):
        """Swap attachments in a single service update.

        Attachments whose target is in ``remove_targets`` are dropped and
        ``additions`` are added in the same spec change, so the service never
        runs without a secret for those targets. Returns the removed names.
        """
        service = self.client.services.get(service_name)
        current = (service.attrs["Spec"]["TaskTemplate"].get("ContainerSpec") or {}).get("Secrets") or []
        targets = set(remove_targets)

        kept = [_reference_from_spec(s) for s in current if (s.get("File") or {}).get("Name") not in targets]
        removed = [s["SecretName"] for s in current if (s.get("File") or {}).get("Name") in targets]

        service.update(secrets=kept + list(additions))
        logger.info(
            "Service %s now uses %s (replaced %s)",
            service_name,
            ", ".join(ref["SecretName"] for ref in additions),
            ", ".join(removed) or "nothing",
        )
        return removed

    def secrets_in_use(self):
        """IDs of every secret referenced by any service."""
        in_use = set()
        for service in self.client.services.list():
            spec = service.attrs["Spec"]["TaskTemplate"].get("ContainerSpec") or {}
            for secret in spec.get("Secrets") or []:
                in_use.add(secret["SecretID"])
        return in_use
