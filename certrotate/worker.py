"""Renewal worker: runs inside the transient Swarm service.

Decides whether renewal is needed, drives certbot, packages the bundles,
rotates the archive password and publishes everything to S3 together with a
renewal record. Each external call is attempted once; retrying is left to
the next scheduled cycle.
"""

import logging
import os
import secrets
from dataclasses import dataclass, field
from typing import List, Optional

from cryptography import x509
from cryptography.hazmat.primitives.serialization import BestAvailableEncryption, load_pem_private_key, pkcs12

from certrotate.acme import Certbot, certificate_path, certificate_serial, days_until_expiry, require_binary
from certrotate.config import CHECK_MODE_FIRST_DOMAIN
from certrotate.credentials import fetch_temporary_credentials
from certrotate.errors import CertRotateError, ExitCode, IssuanceError
from certrotate.naming import (
    PEM_ROLES,
    ROLE_ARCHIVE,
    ROLE_CERT,
    ROLE_FULLCHAIN,
    ROLE_KEY,
    bundle_key,
    last_run_key,
    record_key,
)
from certrotate.records import CertificateBundle, RenewalRecord
from certrotate.status import STATE_FAILED, STATE_IN_PROGRESS, STATE_SUCCESS, write_status
from certrotate.storage import ObjectStore, SharedSecretStore

logger = logging.getLogger(__name__)


@dataclass
class RenewalDecision:
    renew: bool
    reason: str
    days_left: Optional[int] = None
    domains_due: List[str] = field(default_factory=list)


def assess_renewal_need(domains, threshold_days, force=False, mode=CHECK_MODE_FIRST_DOMAIN,
                        letsencrypt_dir="/etc/letsencrypt", now=None):
    """Decide whether the domain set needs (re)issuance.

    In ``first-domain`` mode the first domain's certificate stands in for the
    whole set. In ``per-domain`` mode every certificate is checked and the
    set renews when any of them is due. The threshold is inclusive.
    """
    if force:
        return RenewalDecision(True, "renewal forced", domains_due=list(domains))

    checked = list(domains[:1]) if mode == CHECK_MODE_FIRST_DOMAIN else list(domains)
    due = []
    reasons = []
    days_left = None

    for domain in checked:
        pem = certificate_path(letsencrypt_dir, domain)
        if not os.path.isfile(pem):
            logger.info("No certificate on disk for %s", domain)
            due.append(domain)
            reasons.append(f"no certificate for {domain}")
            continue
        try:
            days = days_until_expiry(pem, now=now)
        except (OSError, ValueError) as e:
            logger.warning("Unreadable certificate for %s, treating as missing: %s", domain, str(e))
            due.append(domain)
            reasons.append(f"unreadable certificate for {domain}")
            continue

        days_left = days if days_left is None else min(days_left, days)
        logger.info("Certificate for %s expires in %d day(s) (threshold %d)", domain, days, threshold_days)
        if days <= threshold_days:
            due.append(domain)
            reasons.append(f"{domain} expires in {days} day(s)")

    if not due:
        return RenewalDecision(False, f"certificates healthy (> {threshold_days} days)", days_left=days_left)

    if mode == CHECK_MODE_FIRST_DOMAIN:
        due = list(domains)
    return RenewalDecision(True, "; ".join(reasons), days_left=days_left, domains_due=due)


def issue(certbot, domains):
    """Issue missing certificates, then renew the tracked ones among ``domains``.

    ``domains`` are the ones already judged due, so each tracked lineage is
    renewed with ``--force-renewal`` and certbot's own renewal window does
    not apply. Returns the domains whose certificate changed.
    """
    before = {d: certificate_serial(certificate_path(certbot.letsencrypt_dir, d)) for d in domains}
    new_domains = [d for d in domains if not certbot.has_certificate(d)]
    existing = [d for d in domains if d not in new_domains]

    for domain in new_domains:
        logger.info("Issuing new certificate for %s", domain)
        certbot.issue(domain)

    for domain in existing:
        logger.info("Renewing certificate for %s with --force-renewal", domain)
        certbot.renew(force=True, cert_name=domain)

    renewed = []
    for domain in domains:
        serial = certificate_serial(certificate_path(certbot.letsencrypt_dir, domain))
        if serial is not None and serial != before[domain]:
            renewed.append(domain)
    logger.info("Certificates changed by this run: %s", ", ".join(renewed) or "none")
    return renewed


def generate_password():
    """36 character URL-safe password for the PKCS#12 archives."""
    return secrets.token_urlsafe(27)


def read_certificate_files(letsencrypt_dir, domain):
    """Read the PEM roles of one domain from certbot's live directory."""
    files = {}
    for role in PEM_ROLES:
        path = certificate_path(letsencrypt_dir, domain, role)
        try:
            with open(path, "rb") as f:
                files[role] = f.read()
        except OSError as e:
            logger.error("Cannot read %s for %s: %s", role, domain, str(e))
            raise IssuanceError(f"Certificate material missing for {domain}: {role}") from e
    return files


def build_archive(domain, cert_pem, key_pem, fullchain_pem, password):
    """Password-protected PKCS#12 archive holding key, leaf and intermediates."""
    cert = x509.load_pem_x509_certificate(cert_pem)
    key = load_pem_private_key(key_pem, password=None)
    chain = x509.load_pem_x509_certificates(fullchain_pem)
    intermediates = [c for c in chain if c != cert]
    return pkcs12.serialize_key_and_certificates(
        name=domain.encode("utf-8"),
        key=key,
        cert=cert,
        cas=intermediates or None,
        encryption_algorithm=BestAvailableEncryption(password.encode("utf-8")),
    )


def package(domains, password, letsencrypt_dir, run_id):
    """Build one bundle per domain. Archive failures only make the bundle partial."""
    bundles = []
    for domain in domains:
        files = read_certificate_files(letsencrypt_dir, domain)
        try:
            files[ROLE_ARCHIVE] = build_archive(
                domain, files[ROLE_CERT], files[ROLE_KEY], files[ROLE_FULLCHAIN], password
            )
            logger.info("Created pfx archive for %s", domain)
        except (ValueError, TypeError) as e:
            logger.warning("Could not create pfx archive for %s, continuing without it: %s", domain, str(e))

        bundle = CertificateBundle(domain=domain, run_id=run_id, files=files)
        if bundle.partial:
            logger.warning("Bundle for %s is partial, missing: %s", domain, ", ".join(bundle.missing_roles))
        bundles.append(bundle)
    return bundles


def publish(store, prefix, bundles, record):
    """Upload bundles, the latest-run pointer and, last, the renewal record."""
    for bundle in bundles:
        for role, content in bundle.files.items():
            store.put(
                bundle_key(prefix, bundle.run_id, bundle.domain, role),
                content,
                metadata={"run-id": bundle.run_id, "domain": bundle.domain, "role": role},
            )
        logger.info("Uploaded %d file(s) for %s", len(bundle.files), bundle.domain)

    store.put(last_run_key(prefix), f"{record.run_id}\n".encode("utf-8"), content_type="text/plain")
    write_record(store, prefix, record)


def write_record(store, prefix, record):
    key = record_key(prefix, record.run_id)
    store.put(key, record.to_json().encode("utf-8"), content_type="application/json")
    logger.info("Renewal record stored at s3://%s/%s", store.bucket, key)


def rotate_shared_secret(secret_store, secret_id, keys, password):
    """Set the archive password under every key in ``keys`` as a new version."""
    return secret_store.merge(secret_id, {key: password for key in keys})


def renew(settings, certbot=None, object_store=None, secret_store=None,
          credential_fetcher=fetch_temporary_credentials, now=None):
    """One full worker run. Returns the RenewalRecord (None on dry runs)."""
    logger.info("Starting renewal run %s for %s", settings.run_id, ", ".join(settings.domains))

    if certbot is None:
        require_binary()
        certbot = Certbot(settings.acme_email, settings.letsencrypt_dir, staging=settings.staging, dry_run=settings.dry_run)

    if object_store is None or secret_store is None:
        session = credential_fetcher(settings.aws_role_name).session()
        object_store = object_store or ObjectStore(settings.certificate_store, session=session)
        secret_store = secret_store or SharedSecretStore(session=session)

    decision = assess_renewal_need(
        settings.domains,
        settings.renewal_threshold_days,
        force=settings.force,
        mode=settings.check_mode,
        letsencrypt_dir=settings.letsencrypt_dir,
        now=now,
    )
    logger.info("Renewal decision: %s (%s)", "renew" if decision.renew else "skip", decision.reason)

    renewed = []
    if decision.renew:
        renewed = issue(certbot, decision.domains_due)
        if not renewed and not settings.dry_run:
            logger.warning("certbot succeeded but no certificate changed")

    if settings.dry_run:
        logger.info("Dry-run: skipping packaging, Secrets Manager and S3 writes")
        return None

    if not renewed and not settings.force_upload:
        record = RenewalRecord(run_id=settings.run_id, renewal_occurred=False)
        write_record(object_store, settings.cert_prefix, record)
        return record

    if not renewed:
        logger.info("FORCE_UPLOAD set, uploading without renewal")

    password = generate_password()
    bundles = package(settings.domains, password, settings.letsencrypt_dir, settings.run_id)
    rotated = any(bundle.has_archive for bundle in bundles)
    if rotated:
        rotate_shared_secret(secret_store, settings.aws_secret_name, settings.password_secret_keys, password)

    record = RenewalRecord(
        run_id=settings.run_id,
        renewal_occurred=bool(renewed),
        renewed_domains=renewed,
        published_domains=[bundle.domain for bundle in bundles],
        forced_upload=settings.force_upload,
        archive_password_rotated=rotated,
    )
    publish(object_store, settings.cert_prefix, bundles, record)
    logger.info("Uploaded artefacts to S3: Run ID %s", settings.run_id)
    return record


def run_worker(settings, **kwargs):
    """Run the worker and translate the outcome into an exit code and status."""
    write_status(settings.status_file, STATE_IN_PROGRESS, "started", run_id=settings.run_id)
    try:
        record = renew(settings, **kwargs)
    except CertRotateError as e:
        logger.error("Renewal run %s failed: %s", settings.run_id, str(e))
        write_status(settings.status_file, STATE_FAILED, str(e), run_id=settings.run_id)
        return e.exit_code
    except Exception as e:
        logger.error("Unexpected error during renewal run %s: %s", settings.run_id, str(e), exc_info=True)
        write_status(settings.status_file, STATE_FAILED, str(e), run_id=settings.run_id)
        return ExitCode.CONFIGURATION

    if record is None:
        message = "dry run"
    elif record.renewal_occurred:
        message = "renewed"
    elif record.forced_upload:
        message = "forced upload"
    else:
        message = "no renewal needed"
    write_status(settings.status_file, STATE_SUCCESS, message, run_id=settings.run_id)
    return ExitCode.SUCCESS
