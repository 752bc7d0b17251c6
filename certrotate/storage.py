"""S3 object store and Secrets Manager document store."""

import json
import logging

import boto3
from botocore.config import Config
from botocore.exceptions import BotoCoreError, ClientError

from certrotate.errors import DownloadError, SecretStoreError, UploadError

logger = logging.getLogger(__name__)

S3_CONFIG = Config(
    connect_timeout=30,
    read_timeout=60,
    retries={"max_attempts": 3, "mode": "standard"},
)
SERVER_SIDE_ENCRYPTION = "aws:kms"
NOT_FOUND_CODES = {"NoSuchKey", "404", "NotFound"}


def _error_code(error):
    return error.response.get("Error", {}).get("Code", "")


class ObjectStore:
    """Bucket-scoped S3 access. Writes are idempotent overwrites."""

    def __init__(self, bucket, client=None, session=None):
        self.bucket = bucket
        if client is None:
            session = session or boto3.session.Session()
            client = session.client("s3", config=S3_CONFIG)
        self.s3 = client

    def put(self, key, body, metadata=None, content_type=None):
        logger.debug("Uploading s3://%s/%s", self.bucket, key)
        kwargs = {
            "Bucket": self.bucket,
            "Key": key,
            "Body": body,
            "ServerSideEncryption": SERVER_SIDE_ENCRYPTION,
        }
        if metadata:
            kwargs["Metadata"] = metadata
        if content_type:
            kwargs["ContentType"] = content_type
        try:
            self.s3.put_object(**kwargs)
        except (ClientError, BotoCoreError) as e:
            logger.error("Failed to upload s3://%s/%s: %s", self.bucket, key, str(e))
            raise UploadError(f"Failed to upload {key}: {e}") from e

    def get(self, key):
        """Return ``(body, metadata)``, or None when the key does not exist."""
        try:
            response = self.s3.get_object(Bucket=self.bucket, Key=key)
            body = response["Body"].read()
        except ClientError as e:
            if _error_code(e) in NOT_FOUND_CODES:
                logger.debug("No object at s3://%s/%s", self.bucket, key)
                return None
            logger.error("Failed to download s3://%s/%s: %s", self.bucket, key, str(e))
            raise DownloadError(f"Failed to download {key}: {e}") from e
        except BotoCoreError as e:
            logger.error("Failed to download s3://%s/%s: %s", self.bucket, key, str(e))
            raise DownloadError(f"Failed to download {key}: {e}") from e
        return body, response.get("Metadata", {})

    def get_text(self, key):
        found = self.get(key)
        if found is None:
            return None
        return found[0].decode("utf-8")

    def exists(self, key):
        try:
            self.s3.head_object(Bucket=self.bucket, Key=key)
            return True
        except ClientError as e:
            if _error_code(e) in NOT_FOUND_CODES:
                return False
            raise DownloadError(f"Failed to inspect {key}: {e}") from e


class SharedSecretStore:
    """JSON documents in AWS Secrets Manager."""

    def __init__(self, client=None, session=None):
        if client is None:
            session = session or boto3.session.Session()
            client = session.client("secretsmanager")
        self.secretsmanager = client

    def get_document(self, secret_id):
        """Return the parsed document, or None if the secret does not exist."""
        try:
            response = self.secretsmanager.get_secret_value(SecretId=secret_id)
        except ClientError as e:
            if _error_code(e) == "ResourceNotFoundException":
                return None
            logger.error("Failed to read secret %s: %s", secret_id, str(e))
            raise SecretStoreError(f"Failed to read secret {secret_id}: {e}") from e
        except BotoCoreError as e:
            raise SecretStoreError(f"Failed to read secret {secret_id}: {e}") from e

        try:
            document = json.loads(response.get("SecretString") or "{}")
        except ValueError as e:
            raise SecretStoreError(f"Secret {secret_id} is not a JSON document") from e
        if not isinstance(document, dict):
            raise SecretStoreError(f"Secret {secret_id} is not a JSON object")
        return document

    def put_version(self, secret_id, document):
        """Store ``document`` as a new version, creating the secret if needed."""
        payload = json.dumps(document)
        try:
            response = self.secretsmanager.put_secret_value(SecretId=secret_id, SecretString=payload)
        except ClientError as e:
            if _error_code(e) != "ResourceNotFoundException":
                logger.error("Failed to write secret %s: %s", secret_id, str(e))
                raise SecretStoreError(f"Failed to write secret {secret_id}: {e}") from e
            logger.info("Secret %s does not exist yet, creating it", secret_id)
            try:
                response = self.secretsmanager.create_secret(Name=secret_id, SecretString=payload)
            except (ClientError, BotoCoreError) as create_error:
                raise SecretStoreError(f"Failed to create secret {secret_id}: {create_error}") from create_error
        except BotoCoreError as e:
            raise SecretStoreError(f"Failed to write secret {secret_id}: {e}") from e
        return response.get("VersionId")

    def merge(self, secret_id, updates):
        """Read-modify-write: set ``updates`` and keep every other field."""
        document = self.get_document(secret_id) or {}
        document.update(updates)
        version = self.put_version(secret_id, document)
        logger.info("Secret %s updated (version %s, fields: %s)", secret_id, version, ", ".join(sorted(updates)))
        return version
