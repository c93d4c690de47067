"""
Exception taxonomy for the server lifecycle and the client channel factory.

Build and start errors propagate to the caller; shutdown-path errors are
logged where they happen and never raised.
"""
from __future__ import annotations

from typing import Iterable, Optional

from pydantic import BaseModel, ValidationError

from shared.codes import ErrorCode


class GrpcRuntimeException(Exception):
    """Base class for every error raised by this package."""

    def __init__(
        self,
        code: int,
        message: str,
        error_type: str = "GrpcRuntimeError",
        details: Optional[dict] = None,
    ) -> None:
        self.code = code
        self.message = message
        self.error_type = error_type
        self.details = details
        super().__init__(self.message)


class ConfigurationException(GrpcRuntimeException):
    """Invalid server or channel configuration."""

    def __init__(
        self,
        message: str,
        *,
        code: int = ErrorCode.CONFIGURATION_ERROR,
        errors: Optional[list[str]] = None,
    ) -> None:
        self.errors = list(errors or [])
        super().__init__(
            code=code,
            message=message,
            error_type="ConfigurationError",
            details={"errors": self.errors} if self.errors else None,
        )


class DiscoveryException(GrpcRuntimeException):
    """One or more exported candidates cannot be bound to a server."""

    def __init__(self, invalid: Iterable[str] = (), duplicates: Iterable[str] = ()) -> None:
        self.invalid = list(invalid)
        self.duplicates = list(duplicates)
        parts = []
        if self.invalid:
            parts.append(
                "The following candidates are exported, but are not bindable services: "
                + ", ".join(self.invalid)
            )
        if self.duplicates:
            parts.append("Duplicate service names: " + ", ".join(self.duplicates))
        super().__init__(
            code=ErrorCode.DISCOVERY_ERROR,
            message="; ".join(parts) or "Service discovery failed",
            error_type="DiscoveryError",
            details={"invalid": self.invalid, "duplicates": self.duplicates},
        )


class ServerStateException(GrpcRuntimeException):
    def __init__(self, current: str, requested: str) -> None:
        self.current = current
        self.requested = requested
        super().__init__(
            code=ErrorCode.SERVER_STATE_ERROR,
            message=f"Cannot move server from {current} to {requested}",
            error_type="ServerStateError",
            details={"current": current, "requested": requested},
        )


class ServerStartException(GrpcRuntimeException):
    def __init__(self, address: str, reason: str) -> None:
        self.address = address
        super().__init__(
            code=ErrorCode.SERVER_START_ERROR,
            message=f"gRPC server failed to start on {address}: {reason}",
            error_type="ServerStartError",
            details={"address": address},
        )


class ChannelBuildException(GrpcRuntimeException):
    def __init__(self, target: str, reason: str) -> None:
        self.target = target
        super().__init__(
            code=ErrorCode.CHANNEL_BUILD_ERROR,
            message=f"Failed to build channel for '{target}': {reason}",
            error_type="ChannelBuildError",
            details={"target": target},
        )


def _format_validation_error(exc: ValidationError) -> list[str]:
    errors = []
    for err in exc.errors():
        loc = ".".join(str(part) for part in err.get("loc", ()))
        errors.append(f"{loc}: {err.get('msg', 'invalid value')}" if loc else err.get("msg", "invalid value"))
    return errors


def validate_settings(model: BaseModel) -> BaseModel:
    """Re-validate a settings model, reporting every bad field at once.

    Models built with ``model_construct`` or mutated without assignment
    validation skip pydantic's checks, so builders call this before use.
    """
    try:
        return type(model).model_validate(model.model_dump())
    except ValidationError as exc:
        errors = _format_validation_error(exc)
        raise ConfigurationException(
            f"Invalid {type(model).__name__}: " + "; ".join(errors),
            errors=errors,
        ) from exc
