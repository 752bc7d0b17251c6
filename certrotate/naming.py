"""Run identifiers, secret names and object-store keys.

Everything here is a pure function so names can be derived identically by
the worker (which writes objects) and the orchestrator (which reads them and
creates secrets).
"""

import hashlib
import re
from datetime import datetime, timezone

RUN_ID_FORMAT = "%Y%m%d%H%M%S"
MAX_SECRET_NAME_LENGTH = 64
RECORD_FILENAME = "renewal-status.json"
LAST_RUN_POINTER = "last-renewal-run-id"
WORKER_SERVICE_PREFIX = "cert-renew-"

ROLE_CERT = "cert.pem"
ROLE_KEY = "privkey.pem"
ROLE_FULLCHAIN = "fullchain.pem"
ROLE_ARCHIVE = "cert.pfx"
BUNDLE_ROLES = (ROLE_CERT, ROLE_KEY, ROLE_FULLCHAIN, ROLE_ARCHIVE)
PEM_ROLES = (ROLE_CERT, ROLE_KEY, ROLE_FULLCHAIN)

_UNSAFE = re.compile(r"[^a-zA-Z0-9_.-]")


def new_run_id(now=None):
    """Return a timestamp-based run identifier in UTC."""
    now = now or datetime.now(timezone.utc)
    return now.strftime(RUN_ID_FORMAT)


def domain_slug(domain):
    """Lowercase the domain and make it safe for a Swarm object name."""
    slug = domain.strip().lower()
    if slug.startswith("*."):
        slug = "wildcard." + slug[2:]
    slug = slug.replace(".", "-")
    return _UNSAFE.sub("-", slug)


def secret_name(domain, role, run_id):
    """Deterministic Swarm secret name for one bundle file.

    ``example.com``, ``cert.pem``, ``20250101000000`` gives
    ``example-com-cert.pem-20250101000000``. The run id makes names unique
    across non-overlapping runs. Dots in the domain become dashes, so two
    domains differing only by ``.`` versus ``-`` in the same position would
    share a slug; such pairs are not valid together in one deployment.

    Docker limits names to 64 characters. Longer names keep the role and run
    id, truncate the slug and embed a digest of the full name.
    """
    name = f"{domain_slug(domain)}-{role}-{run_id}"
    if len(name) <= MAX_SECRET_NAME_LENGTH:
        return name

    digest = hashlib.sha256(name.encode("utf-8")).hexdigest()[:8]
    suffix = f"-{digest}-{role}-{run_id}"
    head = domain_slug(domain)[: MAX_SECRET_NAME_LENGTH - len(suffix)].rstrip("-")
    return f"{head}{suffix}"


def credential_secret_name(key, run_id):
    """Name of a run-scoped configuration secret handed to the worker."""
    return f"{key.lower()}_{run_id}"


def worker_service_name(run_id):
    """Name of the one-shot renewal service of a run."""
    return f"{WORKER_SERVICE_PREFIX}{run_id}"


def run_prefix(prefix, run_id):
    """S3 prefix holding every artefact of a run."""
    return f"{prefix.strip('/')}/{run_id}"


def bundle_key(prefix, run_id, domain, role):
    """S3 key of one bundle file."""
    return f"{run_prefix(prefix, run_id)}/{domain}/{role}"


def record_key(prefix, run_id):
    """S3 key of the renewal record of a run."""
    return f"{run_prefix(prefix, run_id)}/{RECORD_FILENAME}"


def last_run_key(prefix):
    """S3 key of the pointer to the last run that uploaded certificates."""
    return f"{prefix.strip('/')}/{LAST_RUN_POINTER}"


def secret_target(template, domain, role):
    """File name a consuming service sees under /run/secrets."""
    return template.format(domain=domain, role=role, slug=domain_slug(domain))
