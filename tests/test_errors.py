"""Tests for the error taxonomy and exception mapping."""

import pytest
import requests
from botocore.exceptions import ClientError, NoCredentialsError

from fleetstage.utils.errors import (
    DnsConvergenceError,
    ErrorCategory,
    ErrorContext,
    FleetError,
    InvalidSpecError,
    ProviderUnavailableError,
    QuotaExceededError,
    error_handler,
)


def aws_error(code, message="details"):
    return ClientError(
        {"Error": {"Code": code, "Message": message}, "ResponseMetadata": {"RequestId": "req-1"}},
        "RunInstances",
    )


class TestFleetError:
    """Tests for error rendering."""

    def test_str_carries_resource_key(self):
        error = DnsConvergenceError(
            "zone is locked", context=ErrorContext(resource_key="cloudflare:dns:web.example.com")
        )

        assert str(error) == "cloudflare:dns:web.example.com: zone is locked"
        assert error.resource_key == "cloudflare:dns:web.example.com"

    def test_str_without_key(self):
        assert str(FleetError("something failed")) == "something failed"

    def test_to_dict(self):
        error = QuotaExceededError("core limit", context=ErrorContext(provider="sakura"),
                                   suggestions=["Ask for more cores"])

        data = error.to_dict()

        assert data["type"] == "QuotaExceededError"
        assert data["category"] == "quota"
        assert data["context"]["provider"] == "sakura"
        assert data["suggestions"] == ["Ask for more cores"]

    def test_user_message(self):
        error = InvalidSpecError(
            "plan 9core-1gb is not offered",
            context=ErrorContext(resource_key="sakura:server:web", stage="prod", operation="create"),
            suggestions=["Pick a listed plan"],
        )

        message = error.to_user_message()

        assert message.startswith("CRITICAL: plan 9core-1gb is not offered")
        assert "Resource: sakura:server:web" in message
        assert "Stage: prod" in message
        assert "1. Pick a listed plan" in message


class TestHandleException:
    """Tests for mapping backend exceptions onto error kinds."""

    def test_known_aws_code(self):
        context = ErrorContext(resource_key="aws:server:web")

        error = error_handler.handle_exception(aws_error("InstanceLimitExceeded", "too many"), context)

        assert isinstance(error, QuotaExceededError)
        assert str(error) == "aws:server:web: InstanceLimitExceeded: too many"
        assert error.context.additional_info["request_id"] == "req-1"
        assert error.suggestions

    @pytest.mark.parametrize("code,kind", [
        ("InvalidAMIID.NotFound", InvalidSpecError),
        ("AuthFailure", ProviderUnavailableError),
        ("VcpuLimitExceeded", QuotaExceededError),
    ])
    def test_aws_code_kinds(self, code, kind):
        assert isinstance(error_handler.handle_exception(aws_error(code)), kind)

    def test_unknown_aws_code(self):
        error = error_handler.handle_exception(aws_error("WeirdThing", "odd"))

        assert type(error) is FleetError
        assert error.category == ErrorCategory.UNKNOWN
        assert "WeirdThing" in error.message

    def test_missing_credentials(self):
        error = error_handler.handle_exception(NoCredentialsError())

        assert isinstance(error, ProviderUnavailableError)
        assert error.retryable

    def test_network_errors(self):
        error = error_handler.handle_exception(requests.ConnectionError("refused"))

        assert isinstance(error, ProviderUnavailableError)
        assert "refused" in error.message

    def test_fleet_error_context_is_filled(self):
        """An already-classified error keeps its kind and gains missing context."""
        original = DnsConvergenceError("rejected", context=ErrorContext(provider="cloudflare"))

        error = error_handler.handle_exception(
            original, ErrorContext(resource_key="cloudflare:dns:web.example.com", stage="prod")
        )

        assert error is original
        assert error.context.provider == "cloudflare"
        assert error.context.stage == "prod"
        assert str(error) == "cloudflare:dns:web.example.com: rejected"
        assert error.args == ("cloudflare:dns:web.example.com: rejected",)

    def test_generic_exception(self):
        cause = RuntimeError("disk full")

        error = error_handler.handle_exception(cause)

        assert type(error) is FleetError
        assert error.message == "disk full"
        assert error.cause is cause
