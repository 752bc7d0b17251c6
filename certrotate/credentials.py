"""Temporary AWS credentials from the EC2 instance metadata service (IMDSv2)."""

import logging
from dataclasses import dataclass

import boto3
import requests

from certrotate.errors import CredentialError

logger = logging.getLogger(__name__)

IMDS_ENDPOINT = "http://169.254.169.254"
TOKEN_TTL_SECONDS = 300
REQUEST_TIMEOUT = 5


@dataclass(frozen=True)
class TemporaryCredentials:
    access_key: str
    secret_key: str
    session_token: str
    region: str

    def session(self):
        """A boto3 session bound to these credentials."""
        return boto3.session.Session(
            aws_access_key_id=self.access_key,
            aws_secret_access_key=self.secret_key,
            aws_session_token=self.session_token,
            region_name=self.region,
        )


class InstanceMetadata:
    """Two-step IMDSv2 client: obtain a session token, then query with it."""

    def __init__(self, endpoint=IMDS_ENDPOINT, session=None):
        self.endpoint = endpoint.rstrip("/")
        self.sess = session or requests.Session()
        self._token = None

    def _fetch_token(self):
        r = self.sess.put(
            f"{self.endpoint}/latest/api/token",
            headers={"X-aws-ec2-metadata-token-ttl-seconds": str(TOKEN_TTL_SECONDS)},
            timeout=REQUEST_TIMEOUT,
        )
        r.raise_for_status()
        return r.text

    def get(self, path):
        if self._token is None:
            self._token = self._fetch_token()
        r = self.sess.get(
            f"{self.endpoint}{path}",
            headers={"X-aws-ec2-metadata-token": self._token},
            timeout=REQUEST_TIMEOUT,
        )
        r.raise_for_status()
        return r


def fetch_temporary_credentials(role_name, metadata=None):
    """Return credentials for ``role_name``; any failure is a CredentialError."""
    logger.info("Fetching AWS credentials for role: %s", role_name)
    metadata = metadata or InstanceMetadata()

    try:
        creds = metadata.get(f"/latest/meta-data/iam/security-credentials/{role_name}").json()
        region = metadata.get("/latest/meta-data/placement/region").text.strip()
    except requests.exceptions.RequestException as e:
        logger.error("Instance metadata request failed for role %s: %s", role_name, str(e))
        raise CredentialError(f"Instance metadata request failed: {e}") from e
    except ValueError as e:
        logger.error("Instance metadata returned invalid JSON for role %s", role_name)
        raise CredentialError(f"Invalid credential document: {e}") from e

    if creds.get("Code") != "Success":
        logger.error("Credential document for role %s reports code %s", role_name, creds.get("Code"))
        raise CredentialError(f"Credential fetch for {role_name} returned {creds.get('Code')!r}")

    try:
        credentials = TemporaryCredentials(
            access_key=creds["AccessKeyId"],
            secret_key=creds["SecretAccessKey"],
            session_token=creds["Token"],
            region=region,
        )
    except KeyError as e:
        raise CredentialError(f"Credential document is missing {e}") from e

    logger.debug("Temporary credentials obtained for region %s", region)
    return credentials
