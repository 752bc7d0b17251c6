"""certbot invocation and certificate inspection."""

import logging
import os
import shutil
import subprocess
from datetime import datetime, timedelta, timezone

from cryptography import x509

from certrotate.errors import DependencyMissingError, IssuanceError

logger = logging.getLogger(__name__)

CERTBOT_BINARY = "certbot"


def live_dir(letsencrypt_dir, domain):
    return os.path.join(letsencrypt_dir, "live", domain)


def certificate_path(letsencrypt_dir, domain, filename="cert.pem"):
    return os.path.join(live_dir(letsencrypt_dir, domain), filename)


def load_certificate(pem_path):
    with open(pem_path, "rb") as f:
        return x509.load_pem_x509_certificate(f.read())


def days_until_expiry(pem_path, now=None):
    """Whole days until ``notAfter``, floored and never negative.

    Both instants are timezone-aware UTC, so DST changes on the host do not
    shift the count.
    """
    cert = load_certificate(pem_path)
    now = now or datetime.now(timezone.utc)
    remaining = cert.not_valid_after_utc - now
    days = remaining // timedelta(days=1)
    logger.debug("Certificate %s expires %s (%d days)", pem_path, cert.not_valid_after_utc.isoformat(), days)
    return max(days, 0)


def certificate_serial(pem_path):
    """Serial number of the certificate at ``pem_path``, or None if unreadable."""
    try:
        return load_certificate(pem_path).serial_number
    except (OSError, ValueError):
        return None


def require_binary(name=CERTBOT_BINARY):
    if shutil.which(name) is None:
        logger.error("Missing dependency: %s", name)
        raise DependencyMissingError(f"Required binary not found: {name}")


class Certbot:
    """Thin wrapper around the certbot CLI using the Route 53 DNS plugin."""

    def __init__(self, email, letsencrypt_dir, staging=False, dry_run=False, binary=CERTBOT_BINARY):
        self.email = email
        self.letsencrypt_dir = letsencrypt_dir
        self.staging = staging
        self.dry_run = dry_run
        self.binary = binary

    def _common_args(self):
        args = [
            "--dns-route53",
            "-m", self.email,
            "--agree-tos",
            "--non-interactive",
            "--quiet",
            "--config-dir", self.letsencrypt_dir,
        ]
        if self.staging:
            args.append("--test-cert")
        if self.dry_run:
            args.append("--dry-run")
        return args

    def _run(self, args):
        command = [self.binary] + args
        logger.info("Running %s", " ".join(command))
        try:
            return subprocess.run(command, check=True, capture_output=True, text=True)
        except FileNotFoundError as e:
            raise DependencyMissingError(f"Required binary not found: {self.binary}") from e
        except subprocess.CalledProcessError as e:
            logger.error("certbot %s failed (exit %s): %s", args[0], e.returncode, (e.stderr or "").strip())
            raise IssuanceError(f"certbot {args[0]} failed: {(e.stderr or '').strip()}") from e

    def issue(self, domain):
        """Initial issuance for a domain certbot does not track yet."""
        return self._run(["certonly"] + self._common_args() + ["--cert-name", domain, "-d", domain])

    def renew(self, force=False, cert_name=None):
        """Renew tracked lineages, or only ``cert_name``; existing lineages are never deleted."""
        args = ["renew"] + self._common_args()
        if cert_name:
            args += ["--cert-name", cert_name]
        if force:
            args.append("--force-renewal")
        return self._run(args)

    def has_certificate(self, domain):
        return os.path.isfile(certificate_path(self.letsencrypt_dir, domain))
