"""
Tests for pydantic settings and conversion into runtime configs.
"""

import pytest
from pydantic import ValidationError as PydanticValidationError

from faultguard.exceptions import ErrorKind
from faultguard.reliability import RetryPolicy
from faultguard.reporting import LogLevel
from faultguard.settings import FaultguardSettings


class TestFaultguardSettings:
    """Test settings loading and validation"""

    def test_defaults(self):
        settings = FaultguardSettings()

        assert settings.manager.max_errors_per_session == 100
        assert settings.manager.reporting_throttle_ms == 1000
        assert settings.circuit_breaker.failure_threshold == 0.5
        assert settings.reporting.log_level == "info"

    def test_from_yaml(self, config_file):
        """Test nested YAML sections are loaded"""
        path = config_file(
            "manager:\n"
            "  max_errors_per_session: 25\n"
            "  throttle_by_category: true\n"
            "retry:\n"
            "  max_attempts: 5\n"
            "  base_delay: 0.25\n"
            "  retryable_errors: [network, timeout]\n"
            "circuit_breaker:\n"
            "  minimum_throughput: 4\n"
            "reporting:\n"
            "  log_level: warn\n"
        )

        settings = FaultguardSettings.from_yaml(path)

        assert settings.manager.max_errors_per_session == 25
        assert settings.manager.throttle_by_category is True
        assert settings.retry.max_attempts == 5
        assert settings.circuit_breaker.minimum_throughput == 4

    def test_missing_yaml(self, tmp_path):
        with pytest.raises(FileNotFoundError):
            FaultguardSettings.from_yaml(tmp_path / "missing.yaml")

    def test_empty_yaml(self, config_file):
        assert FaultguardSettings.from_yaml(config_file("")).retry.max_attempts == 3

    def test_env_overrides(self, monkeypatch):
        """Test FAULTGUARD_ prefixed nested environment variables"""
        monkeypatch.setenv("FAULTGUARD_RETRY__MAX_ATTEMPTS", "7")
        monkeypatch.setenv("FAULTGUARD_MANAGER__ENABLED", "false")

        settings = FaultguardSettings()

        assert settings.retry.max_attempts == 7
        assert settings.manager.enabled is False

    def test_validation(self):
        with pytest.raises(PydanticValidationError):
            FaultguardSettings(circuit_breaker={'failure_threshold': 2})
        with pytest.raises(PydanticValidationError):
            FaultguardSettings(retry={'base_delay': 5, 'max_delay': 1})

    def test_to_dict(self):
        data = FaultguardSettings().to_dict()

        assert data['retry']['max_attempts'] == 3
        assert 'max_delay' not in data['retry']


class TestConversions:
    """Test conversion into runtime configs"""

    def test_runtime_configs(self):
        settings = FaultguardSettings(
            manager={'max_errors_per_session': 10},
            retry={'max_attempts': 4, 'retryable_errors': ['network']},
            circuit_breaker={'reset_timeout': 30},
            reporting={'log_level': 'error', 'batch_size': 5},
        )

        assert settings.to_manager_config().max_errors_per_session == 10

        retry = settings.to_retry_config()
        assert retry.max_attempts == 4
        assert retry.retryable_errors == ('network',)

        assert settings.to_circuit_breaker_config().reset_timeout == 30.0

        reporting = settings.to_reporting_config()
        assert reporting.log_level == LogLevel.ERROR
        assert reporting.batch_size == 5

    def test_retry_strings_match_kinds(self):
        policy = RetryPolicy(FaultguardSettings(retry={'retryable_errors': ['timeout']}).to_retry_config())

        assert policy.is_retryable(TimeoutError())
        assert not policy.is_retryable(KeyError())
        assert ErrorKind.TIMEOUT.value == "timeout"
