"""Settings for the worker, the orchestrator and the scheduler.

All environment access happens here. Components receive the resulting
dataclasses and never read ``os.environ`` themselves.
"""

import os
import re
from dataclasses import dataclass, field
from typing import Dict, List, Optional

from certrotate.errors import ConfigurationError
from certrotate.naming import new_run_id

DEFAULT_LETSENCRYPT_DIR = "/etc/letsencrypt"
DEFAULT_LETSENCRYPT_LOG_DIR = "/var/log/letsencrypt"
DEFAULT_LOG_DIR = "/var/log/certificate-manager"
DEFAULT_SECRETS_DIR = "/run/secrets"
DEFAULT_THRESHOLD_DAYS = 10
DEFAULT_CHECK_INTERVAL = 86400
DEFAULT_TIMEOUT_SECONDS = 900
DEFAULT_POLL_INTERVAL = 3
DEFAULT_TARGET_TIMEOUT = 120
DEFAULT_CERT_PREFIX = "certificates"
DEFAULT_AWS_SECRET_NAME = "certificate-secrets"
DEFAULT_PASSWORD_KEYS = ("CERTIFICATE_PASSWORD",)
DEFAULT_WORKER_CONSTRAINT = "node.role==worker"
DEFAULT_TARGET_TEMPLATE = "{domain}-{role}"
ALL_DOMAINS = "*"
WORKER_PASSTHROUGH = ("PASSWORD_SECRET_KEYS", "LOG_LEVEL")

CHECK_MODE_FIRST_DOMAIN = "first-domain"
CHECK_MODE_PER_DOMAIN = "per-domain"
CHECK_MODES = (CHECK_MODE_FIRST_DOMAIN, CHECK_MODE_PER_DOMAIN)

_TRUE = {"1", "true", "yes", "on"}
_FALSE = {"", "0", "false", "no", "off"}
_SUBDOMAIN_KEY = re.compile(r"^SUBDOMAIN_NAME_(\d+)$")


def parse_bool(name, value, default=False):
    if value is None:
        return default
    normalized = str(value).strip().lower()
    if normalized in _TRUE:
        return True
    if normalized in _FALSE:
        return False
    raise ConfigurationError(f"{name} must be a boolean, got {value!r}")


def parse_int(name, value, default, minimum=0):
    if value is None or str(value).strip() == "":
        return default
    try:
        number = int(str(value).strip())
    except ValueError:
        raise ConfigurationError(f"{name} must be an integer, got {value!r}") from None
    if number < minimum:
        raise ConfigurationError(f"{name} must be >= {minimum}, got {number}")
    return number


def parse_list(value):
    """Split a comma separated list, dropping blanks and duplicates."""
    items = []
    for item in (value or "").split(","):
        item = item.strip()
        if item and item not in items:
            items.append(item)
    return items


def parse_service_map(value):
    """Parse ``domain=svc1,svc2;other=svc3`` into a dict.

    The domain ``*`` maps services to every domain.
    """
    mapping = {}
    for entry in (value or "").split(";"):
        entry = entry.strip()
        if not entry:
            continue
        domain, sep, services = entry.partition("=")
        if not sep or not domain.strip():
            raise ConfigurationError(f"SERVICE_MAP entry must look like domain=svc1,svc2: {entry!r}")
        mapping.setdefault(domain.strip(), [])
        for service in parse_list(services):
            if service not in mapping[domain.strip()]:
                mapping[domain.strip()].append(service)
    return mapping


def read_setting(environ, key, secrets_dir=DEFAULT_SECRETS_DIR):
    """Environment value, else the content of a Swarm secret file of that name."""
    value = environ.get(key)
    if value not in (None, ""):
        return value
    path = os.path.join(secrets_dir, key)
    if os.path.isfile(path) and os.access(path, os.R_OK):
        with open(path, "r") as f:
            return f.read().strip()
    return None


def require(values):
    missing = [key for key, value in values.items() if not value]
    if missing:
        raise ConfigurationError(f"Required variable(s) not set: {', '.join(missing)}")


def check_mode(environ):
    mode = (environ.get("RENEWAL_CHECK_MODE") or CHECK_MODE_FIRST_DOMAIN).strip().lower()
    if mode not in CHECK_MODES:
        raise ConfigurationError(f"RENEWAL_CHECK_MODE must be one of {', '.join(CHECK_MODES)}")
    return mode


@dataclass
class WorkerSettings:
    domains: List[str]
    certificate_store: str
    acme_email: str
    aws_role_name: str
    run_id: str
    renewal_threshold_days: int = DEFAULT_THRESHOLD_DAYS
    cert_prefix: str = DEFAULT_CERT_PREFIX
    aws_secret_name: str = DEFAULT_AWS_SECRET_NAME
    password_secret_keys: List[str] = field(default_factory=lambda: list(DEFAULT_PASSWORD_KEYS))
    letsencrypt_dir: str = DEFAULT_LETSENCRYPT_DIR
    log_dir: str = DEFAULT_LOG_DIR
    status_file: str = os.path.join(DEFAULT_LOG_DIR, "certificate-renewal.status")
    check_mode: str = CHECK_MODE_FIRST_DOMAIN
    force: bool = False
    dry_run: bool = False
    staging: bool = False
    force_upload: bool = False

    @classmethod
    def from_env(cls, environ=None, force=None, dry_run=None, staging=None):
        environ = os.environ if environ is None else environ
        secrets_dir = environ.get("SECRETS_DIR", DEFAULT_SECRETS_DIR)

        required = {
            key: read_setting(environ, key, secrets_dir)
            for key in ("AWS_ROLE_NAME", "CERTIFICATE_STORE", "ACME_EMAIL", "DOMAINS")
        }
        require(required)
        domains = parse_list(required["DOMAINS"])
        if not domains:
            raise ConfigurationError("DOMAINS must list at least one domain")

        log_dir = environ.get("LOG_DIR") or DEFAULT_LOG_DIR
        return cls(
            domains=domains,
            certificate_store=required["CERTIFICATE_STORE"],
            acme_email=required["ACME_EMAIL"],
            aws_role_name=required["AWS_ROLE_NAME"],
            run_id=environ.get("RUN_ID") or new_run_id(),
            renewal_threshold_days=parse_int(
                "RENEWAL_THRESHOLD_DAYS", environ.get("RENEWAL_THRESHOLD_DAYS"), DEFAULT_THRESHOLD_DAYS
            ),
            cert_prefix=environ.get("CERT_PREFIX") or DEFAULT_CERT_PREFIX,
            aws_secret_name=environ.get("AWS_SECRET_NAME") or DEFAULT_AWS_SECRET_NAME,
            password_secret_keys=parse_list(environ.get("PASSWORD_SECRET_KEYS")) or list(DEFAULT_PASSWORD_KEYS),
            letsencrypt_dir=environ.get("LETSENCRYPT_DIR") or DEFAULT_LETSENCRYPT_DIR,
            log_dir=log_dir,
            status_file=environ.get("STATUS_FILE") or os.path.join(log_dir, "certificate-renewal.status"),
            check_mode=check_mode(environ),
            force=parse_bool("FORCE", environ.get("FORCE")) if force is None else force,
            dry_run=parse_bool("DRY_RUN", environ.get("DRY_RUN")) if dry_run is None else dry_run,
            staging=parse_bool("STAGING", environ.get("STAGING")) if staging is None else staging,
            force_upload=parse_bool("FORCE_UPLOAD", environ.get("FORCE_UPLOAD")),
        )


@dataclass
class OrchestratorSettings:
    """Static settings of the control node. Run specifics come from RunConfig."""

    aws_secret_name: Optional[str] = DEFAULT_AWS_SECRET_NAME
    overrides: Dict[str, str] = field(default_factory=dict)
    run_id: Optional[str] = None
    renewal_threshold_days: int = DEFAULT_THRESHOLD_DAYS
    renewal_image: Optional[str] = None
    worker_constraint: str = DEFAULT_WORKER_CONSTRAINT
    timeout_seconds: int = DEFAULT_TIMEOUT_SECONDS
    poll_interval: int = DEFAULT_POLL_INTERVAL
    target_timeout: int = DEFAULT_TARGET_TIMEOUT
    stop_grace_period: int = 300
    service_map: Dict[str, List[str]] = field(default_factory=dict)
    secret_target_template: str = DEFAULT_TARGET_TEMPLATE
    letsencrypt_dir: str = DEFAULT_LETSENCRYPT_DIR
    letsencrypt_log_dir: str = DEFAULT_LETSENCRYPT_LOG_DIR
    log_dir: str = DEFAULT_LOG_DIR
    secret_retention_runs: int = 0
    check_mode: str = CHECK_MODE_FIRST_DOMAIN
    force: bool = False
    force_upload: bool = False
    staging: bool = False
    dry_run: bool = False
    worker_env: Dict[str, str] = field(default_factory=dict)

    @classmethod
    def from_env(cls, environ=None):
        environ = os.environ if environ is None else environ
        overrides = {
            key: environ[key]
            for key in ("APP_NAME", "CERTIFICATE_STORE", "DOMAINS", "ACME_EMAIL", "AWS_ROLE_NAME", "CERT_PREFIX")
            if environ.get(key)
        }
        template = environ.get("SECRET_TARGET_TEMPLATE") or DEFAULT_TARGET_TEMPLATE
        if "{domain}" not in template and "{slug}" not in template:
            raise ConfigurationError("SECRET_TARGET_TEMPLATE must contain {domain} or {slug}")
        if "{role}" not in template:
            raise ConfigurationError("SECRET_TARGET_TEMPLATE must contain {role}")

        return cls(
            aws_secret_name=environ.get("AWS_SECRET_NAME") or None,
            overrides=overrides,
            run_id=environ.get("RUN_ID") or None,
            renewal_threshold_days=parse_int(
                "RENEWAL_THRESHOLD_DAYS", environ.get("RENEWAL_THRESHOLD_DAYS"), DEFAULT_THRESHOLD_DAYS
            ),
            renewal_image=environ.get("RENEWAL_IMAGE") or None,
            worker_constraint=environ.get("WORKER_CONSTRAINT") or DEFAULT_WORKER_CONSTRAINT,
            timeout_seconds=parse_int(
                "TIMEOUT_SECONDS", environ.get("TIMEOUT_SECONDS"), DEFAULT_TIMEOUT_SECONDS, minimum=1
            ),
            poll_interval=parse_int("POLL_INTERVAL", environ.get("POLL_INTERVAL"), DEFAULT_POLL_INTERVAL, minimum=1),
            target_timeout=parse_int("TARGET_TIMEOUT", environ.get("TARGET_TIMEOUT"), DEFAULT_TARGET_TIMEOUT),
            service_map=parse_service_map(environ.get("SERVICE_MAP")),
            secret_target_template=template,
            letsencrypt_dir=environ.get("LETSENCRYPT_DIR") or DEFAULT_LETSENCRYPT_DIR,
            letsencrypt_log_dir=environ.get("LETSENCRYPT_LOG_DIR") or DEFAULT_LETSENCRYPT_LOG_DIR,
            log_dir=environ.get("LOG_DIR") or DEFAULT_LOG_DIR,
            secret_retention_runs=parse_int("SECRET_RETENTION_RUNS", environ.get("SECRET_RETENTION_RUNS"), 0),
            check_mode=check_mode(environ),
            force=parse_bool("FORCE", environ.get("FORCE")),
            force_upload=parse_bool("FORCE_UPLOAD", environ.get("FORCE_UPLOAD")),
            staging=parse_bool("STAGING", environ.get("STAGING")),
            dry_run=parse_bool("DRY_RUN", environ.get("DRY_RUN")),
            worker_env={key: environ[key] for key in WORKER_PASSTHROUGH if environ.get(key)},
        )

    def services_for(self, domain):
        """Consuming services of ``domain``; zero services is valid."""
        services = list(self.service_map.get(domain, []))
        for service in self.service_map.get(ALL_DOMAINS, []):
            if service not in services:
                services.append(service)
        return services


@dataclass
class RunConfig:
    """Per-cycle configuration fetched from the configuration store."""

    app_name: str
    certificate_store: str
    domains: List[str]
    acme_email: str
    aws_role_name: str
    cert_prefix: str
    renewal_image: str


def subdomains_from_document(document):
    """``SUBDOMAIN_NAME_<n>`` values ordered by ``n``."""
    numbered = []
    for key, value in document.items():
        match = _SUBDOMAIN_KEY.match(key)
        if match and value:
            numbered.append((int(match.group(1)), str(value).strip()))
    return [value for _, value in sorted(numbered)]


def resolve_run_config(settings, document):
    """Merge the configuration document with environment overrides."""
    document = document or {}
    overrides = settings.overrides

    def pick(key, *doc_keys):
        if overrides.get(key):
            return overrides[key]
        for doc_key in (key,) + doc_keys:
            value = document.get(doc_key)
            if value not in (None, "", "null"):
                return str(value)
        return None

    app_name = pick("APP_NAME")
    if overrides.get("DOMAINS"):
        domains = parse_list(overrides["DOMAINS"])
    else:
        domains = parse_list(document.get("DOMAINS"))
        for domain in [document.get("DOMAIN_NAME")] + subdomains_from_document(document):
            if domain and domain not in domains:
                domains.append(domain)

    values = {
        "APP_NAME": app_name,
        "CERTIFICATE_STORE": pick("CERTIFICATE_STORE"),
        "ACME_EMAIL": pick("ACME_EMAIL", "EMAIL"),
        "DOMAINS": ",".join(domains),
    }
    require(values)

    return RunConfig(
        app_name=app_name,
        certificate_store=values["CERTIFICATE_STORE"],
        domains=domains,
        acme_email=values["ACME_EMAIL"],
        aws_role_name=pick("AWS_ROLE_NAME") or f"{app_name}-public-instance-role",
        cert_prefix=pick("CERT_PREFIX") or app_name,
        renewal_image=settings.renewal_image or f"{app_name}/certbot:latest",
    )


@dataclass
class SchedulerSettings:
    check_interval: int = DEFAULT_CHECK_INTERVAL
    lock_file: str = "/tmp/certificate-manager.lock"
    status_file: str = os.path.join(DEFAULT_LOG_DIR, "certificate-manager.status")
    log_dir: str = DEFAULT_LOG_DIR

    @classmethod
    def from_env(cls, environ=None, interval=None):
        environ = os.environ if environ is None else environ
        log_dir = environ.get("LOG_DIR") or DEFAULT_LOG_DIR
        check_interval = parse_int(
            "CHECK_INTERVAL", environ.get("CHECK_INTERVAL") if interval is None else interval,
            DEFAULT_CHECK_INTERVAL, minimum=1,
        )
        return cls(
            check_interval=check_interval,
            lock_file=environ.get("LOCK_FILE") or "/tmp/certificate-manager.lock",
            status_file=environ.get("STATUS_FILE") or os.path.join(log_dir, "certificate-manager.status"),
            log_dir=log_dir,
        )
