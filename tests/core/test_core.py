"""
Tests for the core module.

Tests cover:
- Settings loading from an environment mapping
- Error taxonomy and HTTP status mapping
- Operation context cancellation and deadlines
- Logging setup
"""

import json
import logging
from datetime import timedelta
from decimal import Decimal

import pytest
from pydantic import BaseModel, ValidationError as PydanticValidationError

from core.clock import MockClock
from core.config import DEFAULT_SUPPORTED_EXCHANGES, load_settings
from core.context import OperationContext
from core.exceptions import (
    ConfigurationError,
    ErrorCode,
    OperationCancelledError,
    ValidationError,
    error_code_for,
    http_status_for,
)
from core.logging_setup import JsonLineFormatter, setup_logging
from storage.repositories.exceptions import (
    BalanceArithmeticMismatchError,
    HasBalanceError,
    ReferenceNotFoundError,
    TransientError,
    UserNotFoundError,
)


@pytest.fixture
def environ():
    return {
        "DATABASE_URL": "postgresql://store:hunter2@db:5432/accounts",
        "ENCRYPTION_MASTER_KEY": "m" * 32,
        "HASH_SIGNING_KEY": "sig-secret-value",
        "EVENT_BUS_SERVERS": "nats://bus-1:4222, nats://bus-2:4222",
    }


# =============================================================
# SETTINGS
# =============================================================

class TestLoadSettings:
    """Tests for load_settings()."""

    def test_defaults(self, environ):
        settings = load_settings(environ)

        assert settings.database.url.startswith("postgresql://")
        assert settings.event_bus_servers == ["nats://bus-1:4222", "nats://bus-2:4222"]
        assert settings.event_retention == timedelta(hours=168)
        assert settings.event_max_retries == 3
        assert settings.binding_max_failures == 10
        assert settings.binding_failure_window == timedelta(hours=1)
        assert settings.supported_exchanges == DEFAULT_SUPPORTED_EXCHANGES

    def test_overrides(self, environ):
        environ.update({
            "EVENT_RETENTION_HOURS": "24",
            "EVENT_MAX_RETRIES": "5",
            "BINDING_FAILURE_WINDOW_SECONDS": "60",
            "SUPPORTED_EXCHANGES": "Binance,OKX",
            "DB_POOL_SIZE": "3",
        })
        settings = load_settings(environ)

        assert settings.event_retention == timedelta(hours=24)
        assert settings.event_max_retries == 5
        assert settings.binding_failure_window == timedelta(seconds=60)
        assert settings.supported_exchanges == ("binance", "okx")
        assert settings.database.pool_size == 3

    @pytest.mark.parametrize(
        "missing",
        ["DATABASE_URL", "ENCRYPTION_MASTER_KEY", "HASH_SIGNING_KEY", "EVENT_BUS_SERVERS"],
    )
    def test_required_values(self, environ, missing):
        del environ[missing]
        with pytest.raises(ConfigurationError) as exc_info:
            load_settings(environ)
        assert exc_info.value.config_key == missing

    def test_short_master_key(self, environ):
        environ["ENCRYPTION_MASTER_KEY"] = "short"
        with pytest.raises(ConfigurationError):
            load_settings(environ)

    def test_malformed_integer(self, environ):
        environ["EVENT_MAX_RETRIES"] = "three"
        with pytest.raises(ConfigurationError):
            load_settings(environ)

    def test_repr_hides_secrets(self, environ):
        text = repr(load_settings(environ))
        assert "hunter2" not in text
        assert "m" * 32 not in text
        assert "sig-secret-value" not in text


# =============================================================
# ERROR TAXONOMY
# =============================================================

class TestHttpMapping:
    """Tests for http_status_for() and error_code_for()."""

    def test_validation_is_400(self):
        assert http_status_for(ValidationError("bad", field="x")) == 400

    def test_not_found_is_404(self):
        assert http_status_for(UserNotFoundError("UserRepository", "abc")) == 404

    def test_reference_not_found_is_404(self):
        error = ReferenceNotFoundError("TradingRepository", "create", "user", "abc")
        assert http_status_for(error) == 404

    def test_balance_conflicts_are_409(self):
        mismatch = BalanceArithmeticMismatchError(
            "BalanceMutator", Decimal("1"), Decimal("1"), "credit", Decimal("3"), Decimal("2")
        )
        assert http_status_for(mismatch) == 409
        assert http_status_for(HasBalanceError("SubAccountRepository", "abc", Decimal("1"))) == 409

    def test_transient_is_503_and_retryable(self):
        error = TransientError("UserRepository", "get", "connection reset")
        assert http_status_for(error) == 503
        assert error.retryable

    def test_pydantic_error_is_422(self):
        class Model(BaseModel):
            value: int

        with pytest.raises(PydanticValidationError) as exc_info:
            Model(value="nope")
        assert http_status_for(exc_info.value) == 422
        assert error_code_for(exc_info.value) == ErrorCode.VALIDATION.value

    def test_unknown_exception_is_500(self):
        assert http_status_for(RuntimeError("boom")) == 500
        assert error_code_for(RuntimeError("boom")) == ErrorCode.INTERNAL.value

    def test_to_dict(self):
        error = UserNotFoundError("UserRepository", "abc")
        payload = error.to_dict()

        assert payload["type"] == "UserNotFoundError"
        assert payload["code"] == "not_found"
        assert payload["context"] == {"id": "abc"}
        assert "UserRepository" in payload["message"]


# =============================================================
# OPERATION CONTEXT
# =============================================================

class TestOperationContext:
    """Tests for cancellation and deadlines."""

    def test_background_never_cancelled(self):
        context = OperationContext.background()
        assert not context.cancelled
        assert context.remaining() is None
        context.raise_if_cancelled("noop")

    def test_explicit_cancel(self):
        context = OperationContext.background()
        context.cancel("client went away")

        assert context.cancelled
        with pytest.raises(OperationCancelledError) as exc_info:
            context.raise_if_cancelled("UserRepository.get")
        assert exc_info.value.code == ErrorCode.CANCELLED
        assert http_status_for(exc_info.value) == 499

    def test_deadline(self):
        clock = MockClock()
        context = OperationContext.with_timeout(timedelta(seconds=5), clock=clock)
        assert context.remaining() == timedelta(seconds=5)

        clock.advance(seconds=6)
        assert context.expired
        assert context.remaining() == timedelta(0)
        with pytest.raises(OperationCancelledError):
            context.raise_if_cancelled("slow")


# =============================================================
# LOGGING
# =============================================================

class TestLogging:

    @pytest.fixture(autouse=True)
    def restore_root_logger(self):
        root = logging.getLogger()
        handlers, level = root.handlers[:], root.level
        yield
        root.handlers = handlers
        root.setLevel(level)

    def test_text_setup(self):
        logger = setup_logging("DEBUG", "text")
        assert logger.name == "account_store"
        assert logging.getLogger().level == logging.DEBUG

    def test_json_formatter(self):
        formatter = JsonLineFormatter("corr-1")
        record = logging.LogRecord("repository.UserRepository", logging.INFO, __file__, 1, "hello", (), None)

        payload = json.loads(formatter.format(record))
        assert payload["message"] == "hello"
        assert payload["logger"] == "repository.UserRepository"
        assert payload["correlation_id"] == "corr-1"
