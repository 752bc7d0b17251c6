"""Renewal records, certificate bundles and secret handles."""

import json
import logging
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from typing import Dict, List, Optional

from certrotate.naming import BUNDLE_ROLES, ROLE_ARCHIVE

logger = logging.getLogger(__name__)


def get_current_timestamp():
    """Get current UTC timestamp in ISO format."""
    return datetime.now(timezone.utc).isoformat()


@dataclass
class RenewalRecord:
    """Completion record written by the worker, read by the orchestrator."""

    run_id: str
    renewal_occurred: bool
    renewed_domains: List[str] = field(default_factory=list)
    published_domains: List[str] = field(default_factory=list)
    forced_upload: bool = False
    archive_password_rotated: bool = False
    timestamp: str = field(default_factory=get_current_timestamp)

    def __post_init__(self):
        if not self.renewal_occurred and self.renewed_domains:
            raise ValueError("renewed_domains must be empty when renewal_occurred is false")

    def to_json(self):
        return json.dumps(asdict(self), indent=2)

    @classmethod
    def from_json(cls, payload):
        """Parse a record, raising ValueError on anything malformed."""
        data = json.loads(payload)
        if not isinstance(data, dict):
            raise ValueError("record must be a JSON object")
        if not isinstance(data.get("renewal_occurred"), bool):
            raise ValueError("renewal_occurred must be a boolean")

        domains = {}
        for key in ("renewed_domains", "published_domains"):
            value = data.get(key, [])
            if not isinstance(value, list) or not all(isinstance(d, str) for d in value):
                raise ValueError(f"{key} must be a list of domain names")
            domains[key] = [d for d in value if d]

        return cls(
            run_id=str(data.get("run_id", "")),
            renewal_occurred=data["renewal_occurred"],
            renewed_domains=domains["renewed_domains"],
            published_domains=domains["published_domains"],
            forced_upload=bool(data.get("forced_upload", False)),
            archive_password_rotated=bool(data.get("archive_password_rotated", False)),
            timestamp=str(data.get("timestamp", "")),
        )

    def affected_domains(self, configured_domains):
        """Domains whose bundles must be republished."""
        published = self.published_domains or list(configured_domains)
        if self.renewal_occurred and self.renewed_domains:
            affected = list(self.renewed_domains)
            if self.archive_password_rotated:
                # every archive was re-encrypted with the new password
                affected += [d for d in published if d not in affected]
            return affected
        if self.forced_upload:
            return list(published)
        return []


def parse_record(payload):
    """Return a RenewalRecord, or None when the payload is unusable."""
    if payload is None:
        return None
    try:
        return RenewalRecord.from_json(payload)
    except (ValueError, TypeError) as e:
        logger.warning("Ignoring malformed renewal record: %s", str(e))
        return None


@dataclass
class CertificateBundle:
    """Artefacts for one domain from one issuance event."""

    domain: str
    run_id: str
    files: Dict[str, bytes] = field(default_factory=dict)

    @property
    def partial(self):
        return any(role not in self.files for role in BUNDLE_ROLES)

    @property
    def missing_roles(self):
        return [role for role in BUNDLE_ROLES if role not in self.files]

    @property
    def has_archive(self):
        return ROLE_ARCHIVE in self.files


@dataclass(frozen=True)
class SecretHandle:
    domain: str
    role: str
    run_id: str
    name: str
    secret_id: Optional[str] = None
