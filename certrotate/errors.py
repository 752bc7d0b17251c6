"""Exception taxonomy and process exit codes."""

from enum import IntEnum


class ExitCode(IntEnum):
    SUCCESS = 0
    CONFIGURATION = 1
    DEPENDENCY_MISSING = 2
    CREDENTIAL = 3
    ISSUANCE = 4
    UPLOAD = 5
    SECRET_STORE = 6
    WORKER = 7
    PARTIAL_CUTOVER = 8
    TARGET_UNAVAILABLE = 9
    ALREADY_RUNNING = 75


class CertRotateError(Exception):
    """Base class for every failure that ends a run or a cycle."""

    exit_code = ExitCode.CONFIGURATION


class ConfigurationError(CertRotateError):
    exit_code = ExitCode.CONFIGURATION


class DependencyMissingError(CertRotateError):
    exit_code = ExitCode.DEPENDENCY_MISSING


class CredentialError(CertRotateError):
    exit_code = ExitCode.CREDENTIAL


class IssuanceError(CertRotateError):
    exit_code = ExitCode.ISSUANCE


class UploadError(CertRotateError):
    exit_code = ExitCode.UPLOAD


class SecretStoreError(CertRotateError):
    exit_code = ExitCode.SECRET_STORE


class TargetUnavailableError(CertRotateError):
    exit_code = ExitCode.TARGET_UNAVAILABLE


class WorkerFailedError(CertRotateError):
    exit_code = ExitCode.WORKER


class WorkerTimeoutError(WorkerFailedError, TimeoutError):
    exit_code = ExitCode.WORKER


class DownloadError(CertRotateError):
    exit_code = ExitCode.WORKER


class PartialCutoverError(CertRotateError):
    """One or more consuming services could not be cut over.

    Services listed in ``succeeded`` keep their new secrets; nothing is
    rolled back.
    """

    exit_code = ExitCode.PARTIAL_CUTOVER

    def __init__(self, failures, succeeded=None):
        self.failures = dict(failures)
        self.succeeded = list(succeeded or [])
        names = ", ".join(sorted(self.failures))
        super().__init__(f"Failed to update service(s): {names}")


class AlreadyRunningError(CertRotateError):
    exit_code = ExitCode.ALREADY_RUNNING
