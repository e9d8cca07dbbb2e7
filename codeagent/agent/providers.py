"""Provider registry: base URLs, auth header kinds and tool support.

The registry is a module-level constant that is only read at runtime, so it
can be shared by concurrent agent runs without locking.
"""

from __future__ import annotations

import os
from dataclasses import dataclass

from codeagent.agent.state import ProtocolKind

BEARER = "bearer"
API_KEY = "api-key"


@dataclass(frozen=True)
class ProtocolEndpoint:
    base_url: str
    auth_header: str  # bearer | api-key
    supports_native_tools: bool | None = None  # None means "assume yes"


@dataclass(frozen=True)
class ProviderConfig:
    name: str
    description: str
    protocols: dict[ProtocolKind, ProtocolEndpoint]
    default_model: str = ""
    default_protocol: ProtocolKind = ProtocolKind.OPENAI
    env_key: str | None = None


PROVIDERS: dict[str, ProviderConfig] = {
    "z.ai": ProviderConfig(
        name="Z.AI (ZhipuAI)",
        description="GLM Coding Plan",
        protocols={
            ProtocolKind.OPENAI: ProtocolEndpoint(
                base_url="https://api.z.ai/api/coding/paas/v4",
                auth_header=BEARER,
                supports_native_tools=True,
            ),
            ProtocolKind.ANTHROPIC: ProtocolEndpoint(
                base_url="https://api.z.ai/api/anthropic",
                auth_header=API_KEY,
                supports_native_tools=True,
            ),
        },
        default_model="glm-4.7",
        default_protocol=ProtocolKind.OPENAI,
        env_key="ZAI_API_KEY",
    ),
    "minimax": ProviderConfig(
        name="MiniMax",
        description="MiniMax Coding Plan",
        protocols={
            ProtocolKind.OPENAI: ProtocolEndpoint(
                base_url="https://api.minimax.io/v1",
                auth_header=BEARER,
                supports_native_tools=True,
            ),
            # Accepts the tools field but ignores it
            ProtocolKind.ANTHROPIC: ProtocolEndpoint(
                base_url="https://api.minimax.io/anthropic",
                auth_header=API_KEY,
                supports_native_tools=False,
            ),
        },
        default_model="MiniMax-M2.1",
        default_protocol=ProtocolKind.ANTHROPIC,
        env_key="MINIMAX_API_KEY",
    ),
}


def get_provider(provider_id: str) -> ProviderConfig | None:
    return PROVIDERS.get(provider_id)


def list_providers() -> list[dict]:
    return [
        {"id": pid, "name": p.name, "description": p.description}
        for pid, p in PROVIDERS.items()
    ]


def _endpoint(provider_id: str, protocol: ProtocolKind | str) -> ProtocolEndpoint | None:
    provider = PROVIDERS.get(provider_id)
    if provider is None:
        return None
    return provider.protocols.get(ProtocolKind(protocol))


def provider_base_url(provider_id: str, protocol: ProtocolKind | str) -> str | None:
    endpoint = _endpoint(provider_id, protocol)
    return endpoint.base_url if endpoint else None


def provider_auth_header(provider_id: str, protocol: ProtocolKind | str) -> str:
    endpoint = _endpoint(provider_id, protocol)
    return endpoint.auth_header if endpoint else BEARER


def supports_native_tools(provider_id: str, protocol: ProtocolKind | str) -> bool:
    if provider_id not in PROVIDERS:
        return False
    endpoint = _endpoint(provider_id, protocol)
    if endpoint is None or endpoint.supports_native_tools is None:
        return True
    return endpoint.supports_native_tools


def resolve_api_key(provider_id: str, configured: str = "") -> str:
    """Explicit key first, then the provider's own environment variable."""
    if configured:
        return configured
    provider = PROVIDERS.get(provider_id)
    if provider and provider.env_key:
        return os.environ.get(provider.env_key, "")
    return ""


def resolve_protocol(provider_id: str, configured: str = "") -> ProtocolKind:
    if configured:
        return ProtocolKind(configured)
    provider = PROVIDERS.get(provider_id)
    return provider.default_protocol if provider else ProtocolKind.OPENAI


def resolve_model(provider_id: str, configured: str = "") -> str:
    if configured:
        return configured
    provider = PROVIDERS.get(provider_id)
    return provider.default_model if provider else ""
