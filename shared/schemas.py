"""Pydantic schemas for per-service node configuration."""

from typing import Dict, Any, Literal, Optional, Tuple, Type
from pydantic import BaseModel, ConfigDict, Field, ValidationError
from shared.constants import (
    DEFAULT_HTTP_RETRIES,
    DEFAULT_OPENAI_MODEL,
    DEFAULT_SYSTEM_PROMPT,
    MAX_RETRY_ATTEMPTS,
)
from shared.exceptions import InvalidNodeConfigError


class ServiceConfig(BaseModel):
    """Base for all service configs"""
    model_config = ConfigDict(extra="forbid")


class ManualTriggerConfig(ServiceConfig):
    """Config schema for trigger:manual"""
    input_data: Optional[Dict[str, Any]] = None


class WebhookTriggerConfig(ServiceConfig):
    """Config schema for trigger:webhook"""
    test_data: Optional[Dict[str, Any]] = None


class OpenAIConfig(ServiceConfig):
    """Config schema for action:openai"""
    prompt: str = Field(min_length=1, max_length=10000)
    model: str = DEFAULT_OPENAI_MODEL
    system_prompt: str = DEFAULT_SYSTEM_PROMPT
    max_tokens: int = Field(default=500, ge=1, le=4096)
    temperature: float = Field(default=0.7, ge=0, le=2)
    timeout: int = Field(default=60, ge=1, le=300)


class HttpConfig(ServiceConfig):
    """Config schema for action:http"""
    url: str = Field(min_length=1)
    method: Literal["GET", "POST", "PUT", "DELETE", "PATCH"] = "GET"
    headers: Optional[Dict[str, str]] = None
    body: Optional[Any] = None
    timeout: int = Field(default=30, ge=1, le=300)
    max_retries: int = Field(default=DEFAULT_HTTP_RETRIES, ge=0, le=MAX_RETRY_ATTEMPTS)


class CodeConfig(ServiceConfig):
    """Config schema for action:code"""
    transform: Literal[
        "passthrough", "stringify", "extract-response", "uppercase", "lowercase", "json_parse"
    ] = "passthrough"


class IfElseConfig(ServiceConfig):
    """Config schema for logic:if-else"""
    condition: str = Field(default="hasResponse", min_length=1)


class DisplayConfig(ServiceConfig):
    """Config schema for output:display"""
    field: Optional[str] = None


class OpenConfig(BaseModel):
    """Fallback for services without a schema; keys pass through untouched"""
    model_config = ConfigDict(extra="allow")


# Service schema registry, keyed by (kind, service)
SERVICE_SCHEMAS: Dict[Tuple[str, str], Type[BaseModel]] = {
    ("trigger", "manual"): ManualTriggerConfig,
    ("trigger", "webhook"): WebhookTriggerConfig,
    ("action", "openai"): OpenAIConfig,
    ("action", "http"): HttpConfig,
    ("action", "code"): CodeConfig,
    ("logic", "if-else"): IfElseConfig,
    ("output", "display"): DisplayConfig,
}


def schema_for(kind: str, service: str) -> Type[BaseModel]:
    return SERVICE_SCHEMAS.get((kind, service), OpenConfig)


def parse_service_config(kind: str, service: str, config: Optional[Dict[str, Any]]) -> BaseModel:
    """Validates a node config against its service schema"""
    schema = schema_for(kind, service)
    try:
        return schema(**(config or {}))
    except ValidationError as e:
        raise InvalidNodeConfigError(
            f"Invalid configuration for {kind}:{service}: {e}",
            kind=kind,
            service=service,
        )


def normalize_service_config(kind: str, service: str, config: Optional[Dict[str, Any]]) -> Dict[str, Any]:
    """Validated config as a plain dict with defaults filled in"""
    return parse_service_config(kind, service, config).model_dump(mode="json")
