"""Rotation orchestrator: one renewal cycle against the Swarm.

The cycle launches the renewal worker as a one-shot service, waits for it,
reads its renewal record and, only when there is new material, republishes
the bundles as Swarm secrets and cuts consuming services over to them.
Transient resources are removed whatever the outcome.
"""

import logging
import time
from collections import OrderedDict
from dataclasses import dataclass, field
from enum import Enum
from typing import List

from docker.errors import DockerException

from certrotate.config import resolve_run_config
from certrotate.errors import (
    ConfigurationError,
    DownloadError,
    PartialCutoverError,
    WorkerFailedError,
    WorkerTimeoutError,
)
from certrotate.naming import (
    BUNDLE_ROLES,
    PEM_ROLES,
    ROLE_ARCHIVE,
    ROLE_CERT,
    bundle_key,
    credential_secret_name,
    last_run_key,
    new_run_id,
    record_key,
    secret_name,
    secret_target,
    worker_service_name,
)
from certrotate.records import CertificateBundle, SecretHandle, parse_record
from certrotate.retention import prune_superseded_secrets
from certrotate.storage import ObjectStore, SharedSecretStore
from certrotate.swarm import (
    LABEL_DOMAIN,
    LABEL_MANAGED,
    LABEL_ROLE,
    LABEL_RUN_ID,
    TASK_FAILED,
    TASK_SUCCEEDED,
    Swarm,
    secret_reference,
)

logger = logging.getLogger(__name__)

OUTCOME_RENEWED = "renewed"
OUTCOME_FORCED = "forced"
OUTCOME_NOOP = "noop"


class CycleState(Enum):
    IDLE = "idle"
    AWAITING_TARGET = "awaiting_target"
    LAUNCHING = "launching"
    POLLING = "polling"
    FETCHING = "fetching"
    DOWNLOADING = "downloading"
    PUBLISHING = "publishing"
    CUTTING_OVER = "cutting_over"
    DONE = "done"
    FAILED = "failed"
    CLEANUP = "cleanup"


@dataclass
class CycleResult:
    run_id: str
    outcome: str
    published: List[SecretHandle] = field(default_factory=list)
    updated_services: List[str] = field(default_factory=list)
    final_state: CycleState = CycleState.DONE


@dataclass
class Publication:
    """What the fetched record says should be republished."""

    domains: List[str]
    outcome: str
    source_run_id: str
    allow_fallback: bool = False


@dataclass
class _CycleContext:
    run_id: str
    service_id: str = None
    credential_secrets: List[str] = field(default_factory=list)
    created_secrets: List[SecretHandle] = field(default_factory=list)
    attached: set = field(default_factory=set)
    failed: bool = False


class RotationOrchestrator:
    def __init__(self, settings, swarm=None, secret_store=None, store_factory=ObjectStore,
                 clock=time.monotonic, sleep=time.sleep):
        self.settings = settings
        self.swarm = swarm or Swarm()
        self.secret_store = secret_store or SharedSecretStore()
        self.store_factory = store_factory
        self.clock = clock
        self.sleep = sleep
        self.run_id = None
        self.state = CycleState.IDLE
        self.history = [CycleState.IDLE]

    def _transition(self, state):
        logger.debug("Cycle state %s -> %s", self.state.value, state.value)
        self.state = state
        self.history.append(state)

    # ------------------ cycle ------------------

    def run_cycle(self):
        """Run one cycle. Raises a CertRotateError subclass on failure."""
        ctx = _CycleContext(run_id=self.settings.run_id or new_run_id())
        self.run_id = ctx.run_id
        self.state = CycleState.IDLE
        self.history = [CycleState.IDLE]
        logger.info("===== Renewal cycle %s start =====", ctx.run_id)

        try:
            result = self._run(ctx)
        except Exception:
            ctx.failed = True
            self._transition(CycleState.FAILED)
            self._cleanup(ctx)
            self.state = CycleState.FAILED
            raise

        self._cleanup(ctx)
        self.state = result.final_state
        logger.info("===== Renewal cycle %s end: %s =====", ctx.run_id, result.outcome)
        return result

    def _run(self, ctx):
        self._transition(CycleState.AWAITING_TARGET)
        self.swarm.wait_until_ready(
            self.settings.target_timeout, self.settings.poll_interval, clock=self.clock, sleep=self.sleep
        )

        self._transition(CycleState.LAUNCHING)
        run_config = self.load_run_config()
        store = self.store_factory(run_config.certificate_store)
        self.launch_worker(ctx, run_config)

        self._transition(CycleState.POLLING)
        self.wait_for_worker(ctx)

        self._transition(CycleState.FETCHING)
        if self.settings.dry_run:
            logger.info("Dry-run: worker finished, nothing is published")
            self._transition(CycleState.DONE)
            return CycleResult(run_id=ctx.run_id, outcome=OUTCOME_NOOP)

        publication = self.plan_publication(ctx, run_config, store)
        if not publication.domains:
            logger.info("No new certificates in run %s", ctx.run_id)
            self._transition(CycleState.DONE)
            return CycleResult(run_id=ctx.run_id, outcome=OUTCOME_NOOP)

        self._transition(CycleState.DOWNLOADING)
        bundles = self.download_bundles(store, run_config, publication)

        self._transition(CycleState.PUBLISHING)
        handles = self.publish_secrets(ctx, bundles)

        self._transition(CycleState.CUTTING_OVER)
        updated = self.cut_over(ctx, handles)

        self._transition(CycleState.DONE)
        logger.info("Certificates rotated successfully for %s", ", ".join(publication.domains))
        if self.settings.secret_retention_runs > 0:
            self._prune(run_config)

        return CycleResult(
            run_id=ctx.run_id,
            outcome=publication.outcome,
            published=list(handles.values()),
            updated_services=updated,
        )

    # ------------------ launching ------------------

    def load_run_config(self):
        """Resolve the run configuration, reading the configuration secret if one is set."""
        document = {}
        name = self.settings.aws_secret_name
        if name:
            logger.info("Fetching run configuration from secret %s", name)
            document = self.secret_store.get_document(name)
            if document is None:
                raise ConfigurationError(f"Configuration secret {name} does not exist")
        return resolve_run_config(self.settings, document)

    def worker_environment(self, ctx, run_config):
        """Environment handed to the renewal worker service."""
        settings = self.settings
        env = {
            "RUN_ID": ctx.run_id,
            "CERT_PREFIX": run_config.cert_prefix,
            "RENEWAL_THRESHOLD_DAYS": str(settings.renewal_threshold_days),
            "RENEWAL_CHECK_MODE": settings.check_mode,
            "LETSENCRYPT_DIR": settings.letsencrypt_dir,
            "LOG_DIR": settings.log_dir,
            "FORCE": str(settings.force).lower(),
            "FORCE_UPLOAD": str(settings.force_upload).lower(),
            "STAGING": str(settings.staging).lower(),
            "DRY_RUN": str(settings.dry_run).lower(),
        }
        if settings.aws_secret_name:
            env["AWS_SECRET_NAME"] = settings.aws_secret_name
        env.update(settings.worker_env)
        return env

    def launch_worker(self, ctx, run_config):
        """Create the run-scoped credential secrets and start the one-shot worker."""
        logger.info("Creating runtime secrets for run %s", ctx.run_id)
        values = OrderedDict([
            ("AWS_ROLE_NAME", run_config.aws_role_name),
            ("CERTIFICATE_STORE", run_config.certificate_store),
            ("ACME_EMAIL", run_config.acme_email),
            ("DOMAINS", ",".join(run_config.domains)),
        ])
        references = []
        for key, value in values.items():
            name = credential_secret_name(key, ctx.run_id)
            secret_id, _ = self.swarm.create_secret(
                name, value.encode("utf-8"), labels={LABEL_MANAGED: "credential", LABEL_RUN_ID: ctx.run_id}
            )
            ctx.credential_secrets.append(name)
            references.append(secret_reference(secret_id, name, key))

        settings = self.settings
        mounts = [
            (settings.log_dir, settings.log_dir),
            (settings.letsencrypt_dir, settings.letsencrypt_dir),
            (settings.letsencrypt_log_dir, settings.letsencrypt_log_dir),
        ]
        logger.info("Launching renewal service: %s", worker_service_name(ctx.run_id))
        ctx.service_id = self.swarm.launch_one_shot(
            worker_service_name(ctx.run_id),
            run_config.renewal_image,
            settings.worker_constraint,
            self.worker_environment(ctx, run_config),
            mounts,
            references,
            stop_grace_period=settings.stop_grace_period,
            labels={LABEL_MANAGED: "worker", LABEL_RUN_ID: ctx.run_id},
        )

    def wait_for_worker(self, ctx):
        """Poll the worker task until it succeeds, fails or times out."""
        timeout = self.settings.timeout_seconds
        logger.info("Waiting for completion (timeout %ss)", timeout)
        deadline = self.clock() + timeout

        while True:
            try:
                status = self.swarm.poll_state(ctx.service_id)
            except DockerException as e:
                logger.warning("Could not read task state of %s: %s", ctx.service_id, str(e))
                status = None

            if status is not None and status.state == TASK_SUCCEEDED:
                logger.info("Renewal task completed")
                return
            if status is not None and status.state == TASK_FAILED:
                logger.error("Renewal task failed: %s\n%s", status.detail, self.swarm.service_logs(ctx.service_id))
                raise WorkerFailedError(f"Renewal task failed: {status.detail}")
            if self.clock() >= deadline:
                logger.error("Timeout waiting for renewal task after %ss", timeout)
                raise WorkerTimeoutError(f"Renewal task did not finish within {timeout}s")
            self.sleep(self.settings.poll_interval)

    # ------------------ fetching ------------------

    def plan_publication(self, ctx, run_config, store):
        """Turn the renewal record (or its absence) into a publication plan."""
        key = record_key(run_config.cert_prefix, ctx.run_id)
        try:
            record = parse_record(store.get_text(key))
        except DownloadError as e:
            logger.warning("Could not read renewal record %s: %s", key, str(e))
            record = None

        if self.settings.force_upload:
            domains = (record.published_domains if record else None) or list(run_config.domains)
            logger.info("FORCE_UPLOAD set, publishing %s", ", ".join(domains))
            return Publication(domains, OUTCOME_FORCED, ctx.run_id, allow_fallback=True)

        if record is None:
            logger.warning("No usable renewal record for run %s", ctx.run_id)
            source_run = self.latest_uploaded_run(store, run_config, ctx.run_id)
            if source_run is None:
                logger.warning("No uploaded certificates found, nothing to publish")
                return Publication([], OUTCOME_NOOP, ctx.run_id)
            missing = self.missing_secret_handles(run_config.domains, source_run)
            if not missing:
                logger.info("Secrets of run %s are already in place", source_run)
                return Publication([], OUTCOME_NOOP, source_run)
            logger.warning(
                "Secrets of run %s not in place (%s); publishing the full domain set",
                source_run, ", ".join(f"{d}/{r}" for d, r in missing),
            )
            return Publication(list(run_config.domains), OUTCOME_FORCED, source_run)

        logger.info(
            "Renewal record: renewal_occurred=%s renewed=%s",
            record.renewal_occurred, ", ".join(record.renewed_domains) or "none",
        )
        domains = []
        for domain in record.affected_domains(run_config.domains):
            if domain in run_config.domains:
                domains.append(domain)
            else:
                logger.warning("Ignoring unconfigured domain %s in renewal record", domain)
        outcome = OUTCOME_RENEWED if record.renewal_occurred else OUTCOME_FORCED
        return Publication(domains, outcome if domains else OUTCOME_NOOP, ctx.run_id)

    def missing_secret_handles(self, domains, run_id):
        """``(domain, role)`` pairs whose secret of ``run_id`` is not in place.

        For a mapped domain the secret must be attached to every consuming
        service; for an unmapped one it only has to exist.
        """
        missing = []
        for domain in domains:
            services = self.settings.services_for(domain)
            for role in PEM_ROLES:
                expected = secret_name(domain, role, run_id)
                if services:
                    present = all(expected in self._attached_names(service) for service in services)
                else:
                    try:
                        present = bool(self.swarm.list_secrets(
                            {LABEL_DOMAIN: domain, LABEL_ROLE: role, LABEL_RUN_ID: run_id}
                        ))
                    except DockerException as e:
                        logger.warning("Could not list secrets for %s: %s", domain, str(e))
                        present = False
                if not present:
                    missing.append((domain, role))
        return missing

    def _attached_names(self, service):
        """Names of the secrets attached to ``service``."""
        try:
            return {s.get("SecretName") for s in self.swarm.attached_secrets(service)}
        except DockerException as e:
            logger.warning("Could not inspect service %s: %s", service, str(e))
            return set()

    # ------------------ downloading ------------------

    def latest_uploaded_run(self, store, run_config, run_id):
        """``run_id`` if it uploaded certificates, else the last recorded run."""
        for domain in run_config.domains:
            if store.exists(bundle_key(run_config.cert_prefix, run_id, domain, ROLE_CERT)):
                return run_id
        latest = (store.get_text(last_run_key(run_config.cert_prefix)) or "").strip()
        if latest:
            logger.info("Run %s uploaded nothing, latest uploaded run is %s", run_id, latest)
        return latest or None

    def resolve_source_run(self, store, run_config, publication):
        """Run whose artefacts to publish; falls back to the latest recorded run."""
        run_id = publication.source_run_id
        if not publication.allow_fallback:
            return run_id
        latest = self.latest_uploaded_run(store, run_config, run_id)
        if latest is None:
            raise DownloadError(f"No artefacts for run {run_id} and no previous run recorded")
        return latest

    def download_bundles(self, store, run_config, publication):
        """Fetch the bundles to publish into memory, checking their run id."""
        source_run = self.resolve_source_run(store, run_config, publication)
        logger.info("Downloading certificates of run %s", source_run)
        bundles = []
        for domain in publication.domains:
            files = {}
            for role in BUNDLE_ROLES:
                key = bundle_key(run_config.cert_prefix, source_run, domain, role)
                found = store.get(key)
                if found is None:
                    if role == ROLE_ARCHIVE:
                        continue
                    raise DownloadError(f"Missing artefact: {key}")
                body, metadata = found
                object_run = metadata.get("run-id")
                if object_run and object_run != source_run:
                    raise DownloadError(f"{key} belongs to run {object_run}, expected {source_run}")
                files[role] = body

            bundle = CertificateBundle(domain=domain, run_id=source_run, files=files)
            if bundle.partial:
                logger.warning("Bundle for %s is partial, missing: %s", domain, ", ".join(bundle.missing_roles))
            bundles.append(bundle)
        return bundles

    # ------------------ publishing ------------------

    def publish_secrets(self, ctx, bundles):
        """Create one labelled secret per bundle file, keyed by ``(domain, role)``."""
        logger.info("Generating Swarm secrets for fresh certificates")
        handles = OrderedDict()
        for bundle in bundles:
            for role, content in bundle.files.items():
                name = secret_name(bundle.domain, role, bundle.run_id)
                secret_id, created = self.swarm.create_secret(
                    name,
                    content,
                    labels={
                        LABEL_MANAGED: "certificate",
                        LABEL_DOMAIN: bundle.domain,
                        LABEL_ROLE: role,
                        LABEL_RUN_ID: bundle.run_id,
                    },
                )
                handle = SecretHandle(bundle.domain, role, bundle.run_id, name, secret_id)
                if created:
                    ctx.created_secrets.append(handle)
                handles[(bundle.domain, role)] = handle
        return handles

    # ------------------ cutting over ------------------

    def cut_over(self, ctx, handles):
        """Swap secrets into every consuming service, one update per service.

        A failing service does not stop the others; failures are reported
        together afterwards and successful updates are kept.
        """
        template = self.settings.secret_target_template
        by_service = OrderedDict()
        for (domain, _), handle in handles.items():
            services = self.settings.services_for(domain)
            if not services:
                logger.info("No services configured for %s", domain)
            for service in services:
                by_service.setdefault(service, []).append(handle)

        succeeded = []
        failures = {}
        for service, service_handles in by_service.items():
            references = [
                secret_reference(h.secret_id, h.name, secret_target(template, h.domain, h.role))
                for h in service_handles
            ]
            targets = [ref["File"]["Name"] for ref in references]
            logger.info("Updating certificates in %s", service)
            try:
                self.swarm.update_secret_attachments(service, targets, references)
            except DockerException as e:
                logger.error("Failed to update certificates in service %s: %s", service, str(e))
                failures[service] = str(e)
                continue
            succeeded.append(service)
            ctx.attached.update(h.name for h in service_handles)

        if failures:
            raise PartialCutoverError(failures, succeeded)
        return succeeded

    # ------------------ cleanup ------------------

    def _prune(self, run_config):
        try:
            prune_superseded_secrets(self.swarm, run_config.domains, self.settings.secret_retention_runs)
        except DockerException as e:
            logger.warning("Secret retention pass failed: %s", str(e))

    def _cleanup(self, ctx):
        """Best effort: errors are logged and never replace the cycle result."""
        self._transition(CycleState.CLEANUP)
        logger.info("Cleaning up run %s", ctx.run_id)

        if ctx.service_id:
            try:
                self.swarm.remove_service(ctx.service_id)
            except DockerException as e:
                logger.warning("Could not remove service %s: %s", ctx.service_id, str(e))

        for name in ctx.credential_secrets:
            try:
                self.swarm.remove_secret(name)
            except DockerException as e:
                logger.warning("Could not remove secret %s: %s", name, str(e))

        if ctx.failed:
            for handle in ctx.created_secrets:
                if handle.name in ctx.attached:
                    continue
                try:
                    self.swarm.remove_secret(handle.name)
                except DockerException as e:
                    logger.warning("Could not remove secret %s: %s", handle.name, str(e))
