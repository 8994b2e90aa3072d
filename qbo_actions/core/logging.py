from __future__ import annotations

import logging
import logging.config
from contextvars import ContextVar
from typing import Any, Optional

from pythonjsonlogger import jsonlogger


request_id_ctx: ContextVar[Optional[str]] = ContextVar("request_id", default=None)
realm_id_ctx: ContextVar[Optional[str]] = ContextVar("realm_id", default=None)
resource_ctx: ContextVar[Optional[str]] = ContextVar("resource", default=None)
operation_ctx: ContextVar[Optional[str]] = ContextVar("operation", default=None)


class RequestContextFilter(logging.Filter):
    """Injects request scoped context variables into each log record."""

    def filter(self, record: logging.LogRecord) -> bool:
        record.request_id = request_id_ctx.get()
        record.realm_id = realm_id_ctx.get()
        record.resource = resource_ctx.get()
        record.operation = operation_ctx.get()
        return True


def configure_logging(level: int = logging.INFO) -> None:
    """Configure JSON structured logging."""
    logging.config.dictConfig(
        {
            "version": 1,
            "disable_existing_loggers": False,
            "filters": {
                "request_context": {
                    "()": RequestContextFilter,
                }
            },
            "formatters": {
                "json": {
                    "()": jsonlogger.JsonFormatter,
                    "fmt": "%(asctime)s %(levelname)s %(name)s %(message)s",
                }
            },
            "handlers": {
                "default": {
                    "class": "logging.StreamHandler",
                    "stream": "ext://sys.stdout",
                    "level": level,
                    "formatter": "json",
                    "filters": ["request_context"],
                }
            },
            "loggers": {
                "": {
                    "handlers": ["default"],
                    "level": level,
                }
            },
        }
    )


def set_request_context(
    request_id: Optional[str] = None,
    realm_id: Optional[str] = None,
    resource: Optional[str] = None,
    operation: Optional[str] = None,
) -> None:
    if request_id is not None:
        request_id_ctx.set(request_id)
    if realm_id is not None:
        realm_id_ctx.set(realm_id)
    if resource is not None:
        resource_ctx.set(resource)
    if operation is not None:
        operation_ctx.set(operation)


def clear_request_context() -> None:
    request_id_ctx.set(None)
    realm_id_ctx.set(None)
    resource_ctx.set(None)
    operation_ctx.set(None)


def _redact_value(value: Any) -> str:
    if value is None:
        return ""
    return "***redacted***"


def sanitize_payload(payload: Any) -> Any:
    """Remove obvious secrets from a payload while keeping business fields."""

    sensitive_keys = {
        "authorization",
        "access_token",
        "accesstoken",
        "refresh_token",
        "secret",
        "password",
    }

    def _sanitize(value: Any) -> Any:
        if isinstance(value, dict):
            sanitized: dict[str, Any] = {}
            for key, val in value.items():
                key_lower = str(key).lower()
                if any(token in key_lower for token in sensitive_keys):
                    sanitized[key] = _redact_value(val)
                else:
                    sanitized[key] = _sanitize(val)
            return sanitized
        if isinstance(value, list):
            return [_sanitize(item) for item in value]
        return value

    return _sanitize(payload)


def _base_action_log_extra(
    *,
    event: str,
    realm_id: Optional[str],
    resource: str,
    operation: str,
    item_index: int,
) -> dict[str, Any]:
    return {
        "event": event,
        "request_id": request_id_ctx.get(),
        "realm_id": realm_id,
        "resource": resource,
        "operation": operation,
        "item_index": item_index,
    }


def log_action_started(
    *,
    realm_id: Optional[str],
    resource: str,
    operation: str,
    item_index: int,
    parameters: Any,
) -> None:
    logger = logging.getLogger("qbo_actions.action")
    logger.info(
        "qbo_action_started",
        extra={
            **_base_action_log_extra(
                event="qbo_action_started",
                realm_id=realm_id,
                resource=resource,
                operation=operation,
                item_index=item_index,
            ),
            "parameters": sanitize_payload(parameters),
        },
    )


def log_action_finished(
    *,
    realm_id: Optional[str],
    resource: str,
    operation: str,
    item_index: int,
    latency_ms: Optional[float],
    result: str,
    output_kind: Optional[str] = None,
    record_count: Optional[int] = None,
    error_code: Optional[str] = None,
    error_message: Optional[str] = None,
    qbo_status_code: Optional[int] = None,
) -> None:
    logger = logging.getLogger("qbo_actions.action")
    logger.info(
        "qbo_action_finished",
        extra={
            **_base_action_log_extra(
                event="qbo_action_finished",
                realm_id=realm_id,
                resource=resource,
                operation=operation,
                item_index=item_index,
            ),
            "latency_ms": None if latency_ms is None else round(latency_ms, 2),
            "result": result,
            "output_kind": output_kind,
            "record_count": record_count,
            "error_code": error_code,
            "error_message": error_message,
            "qbo_status_code": qbo_status_code,
        },
    )
