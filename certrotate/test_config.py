import os
from unittest.mock import patch

import pytest

from certrotate.config import (
    CHECK_MODE_PER_DOMAIN,
    OrchestratorSettings,
    SchedulerSettings,
    WorkerSettings,
    parse_bool,
    parse_service_map,
    resolve_run_config,
)
from certrotate.errors import ConfigurationError


class TestParsers:
    def test_parse_bool(self):
        assert parse_bool("FORCE", "true") is True
        assert parse_bool("FORCE", "0") is False
        assert parse_bool("FORCE", None, default=True) is True
        with pytest.raises(ConfigurationError):
            parse_bool("FORCE", "maybe")

    def test_parse_service_map(self):
        mapping = parse_service_map("a.com=web,api; b.com=admin ;*=proxy")
        assert mapping == {"a.com": ["web", "api"], "b.com": ["admin"], "*": ["proxy"]}

    def test_parse_service_map_rejects_garbage(self):
        with pytest.raises(ConfigurationError):
            parse_service_map("web,api")


class TestWorkerSettings:
    @pytest.fixture
    def worker_env(self):
        return {
            "AWS_ROLE_NAME": "app-role",
            "CERTIFICATE_STORE": "bucket",
            "ACME_EMAIL": "ops@example.com",
            "DOMAINS": "a.com, b.com,a.com",
            "RUN_ID": "20250101000000",
            "SECRETS_DIR": "/nonexistent",
        }

    def test_from_env(self, worker_env):
        settings = WorkerSettings.from_env(worker_env)
        assert settings.domains == ["a.com", "b.com"]
        assert settings.renewal_threshold_days == 10
        assert settings.run_id == "20250101000000"
        assert settings.force is False

    def test_missing_required_values(self, worker_env):
        del worker_env["ACME_EMAIL"]
        with pytest.raises(ConfigurationError, match="ACME_EMAIL"):
            WorkerSettings.from_env(worker_env)

    def test_required_values_from_secret_files(self, worker_env, tmp_path):
        del worker_env["DOMAINS"]
        (tmp_path / "DOMAINS").write_text("c.com\n")
        worker_env["SECRETS_DIR"] = str(tmp_path)
        assert WorkerSettings.from_env(worker_env).domains == ["c.com"]

    def test_flags_override_environment(self, worker_env):
        worker_env["FORCE"] = "false"
        assert WorkerSettings.from_env(worker_env, force=True).force is True

    def test_invalid_threshold(self, worker_env):
        worker_env["RENEWAL_THRESHOLD_DAYS"] = "-1"
        with pytest.raises(ConfigurationError):
            WorkerSettings.from_env(worker_env)

    def test_check_mode(self, worker_env):
        worker_env["RENEWAL_CHECK_MODE"] = "per-domain"
        assert WorkerSettings.from_env(worker_env).check_mode == CHECK_MODE_PER_DOMAIN
        worker_env["RENEWAL_CHECK_MODE"] = "sometimes"
        with pytest.raises(ConfigurationError):
            WorkerSettings.from_env(worker_env)


class TestOrchestratorSettings:
    def test_defaults(self):
        with patch.dict(os.environ, {}, clear=True):
            settings = OrchestratorSettings.from_env()
        assert settings.timeout_seconds == 900
        assert settings.poll_interval == 3
        assert settings.worker_constraint == "node.role==worker"
        assert settings.aws_secret_name is None

    def test_services_for_includes_wildcard(self):
        settings = OrchestratorSettings.from_env({"SERVICE_MAP": "a.com=web;*=proxy"})
        assert settings.services_for("a.com") == ["web", "proxy"]
        assert settings.services_for("b.com") == ["proxy"]

    def test_template_must_name_role(self):
        with pytest.raises(ConfigurationError):
            OrchestratorSettings.from_env({"SECRET_TARGET_TEMPLATE": "{domain}"})

    def test_worker_passthrough(self):
        settings = OrchestratorSettings.from_env({"PASSWORD_SECRET_KEYS": "A,B", "LOG_LEVEL": "DEBUG"})
        assert settings.worker_env == {"PASSWORD_SECRET_KEYS": "A,B", "LOG_LEVEL": "DEBUG"}


class TestResolveRunConfig:
    def test_document_keys(self):
        document = {
            "APP_NAME": "lingo",
            "CERTIFICATE_STORE": "lingo-certs",
            "DOMAIN_NAME": "lingo.com",
            "SUBDOMAIN_NAME_2": "admin.lingo.com",
            "SUBDOMAIN_NAME_1": "api.lingo.com",
            "EMAIL": "ops@lingo.com",
        }
        config = resolve_run_config(OrchestratorSettings(), document)
        assert config.domains == ["lingo.com", "api.lingo.com", "admin.lingo.com"]
        assert config.acme_email == "ops@lingo.com"
        assert config.aws_role_name == "lingo-public-instance-role"
        assert config.cert_prefix == "lingo"
        assert config.renewal_image == "lingo/certbot:latest"

    def test_environment_overrides_document(self):
        settings = OrchestratorSettings(overrides={"DOMAINS": "x.com", "CERTIFICATE_STORE": "other"})
        document = {"APP_NAME": "lingo", "CERTIFICATE_STORE": "lingo-certs", "DOMAIN_NAME": "lingo.com",
                    "EMAIL": "ops@lingo.com"}
        config = resolve_run_config(settings, document)
        assert config.domains == ["x.com"]
        assert config.certificate_store == "other"

    def test_incomplete_configuration(self):
        with pytest.raises(ConfigurationError):
            resolve_run_config(OrchestratorSettings(), {"APP_NAME": "lingo"})


class TestSchedulerSettings:
    def test_interval_argument_wins(self):
        settings = SchedulerSettings.from_env({"CHECK_INTERVAL": "60"}, interval=30)
        assert settings.check_interval == 30

    def test_defaults(self):
        settings = SchedulerSettings.from_env({})
        assert settings.check_interval == 86400
        assert settings.lock_file == "/tmp/certificate-manager.lock"
