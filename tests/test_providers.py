"""Tests for the provider registry."""

from __future__ import annotations

from codeagent.agent.providers import (
    API_KEY,
    BEARER,
    get_provider,
    list_providers,
    provider_auth_header,
    provider_base_url,
    resolve_api_key,
    resolve_model,
    resolve_protocol,
    supports_native_tools,
)
from codeagent.agent.state import ProtocolKind


def test_base_urls_per_protocol():
    assert provider_base_url("z.ai", "openai") == "https://api.z.ai/api/coding/paas/v4"
    assert provider_base_url("minimax", ProtocolKind.ANTHROPIC) == "https://api.minimax.io/anthropic"
    assert provider_base_url("nobody", "openai") is None


def test_auth_header_kinds():
    assert provider_auth_header("z.ai", "openai") == BEARER
    assert provider_auth_header("z.ai", "anthropic") == API_KEY
    assert provider_auth_header("nobody", "openai") == BEARER


def test_native_tool_support():
    assert supports_native_tools("z.ai", "openai")
    assert not supports_native_tools("minimax", "anthropic")
    assert not supports_native_tools("nobody", "openai")


def test_listing_and_lookup():
    ids = {p["id"] for p in list_providers()}
    assert ids == {"z.ai", "minimax"}
    assert get_provider("minimax").default_protocol is ProtocolKind.ANTHROPIC
    assert get_provider("nobody") is None


def test_resolve_api_key(monkeypatch):
    monkeypatch.setenv("ZAI_API_KEY", "from-env")
    assert resolve_api_key("z.ai", "explicit") == "explicit"
    assert resolve_api_key("z.ai") == "from-env"
    assert resolve_api_key("nobody") == ""


def test_protocol_and_model_fall_back_to_provider_defaults():
    assert resolve_protocol("minimax") is ProtocolKind.ANTHROPIC
    assert resolve_protocol("minimax", "openai") is ProtocolKind.OPENAI
    assert resolve_protocol("nobody") is ProtocolKind.OPENAI
    assert resolve_model("z.ai") == "glm-4.7"
    assert resolve_model("minimax") == "MiniMax-M2.1"
    assert resolve_model("z.ai", "glm-4.7-flash") == "glm-4.7-flash"
