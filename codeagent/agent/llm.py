"""Protocol adapter: one ``send`` over two wire formats and two calling modes.

Format A (OpenAI-style) goes through the OpenAI SDK pointed at the
provider's base URL; Format B (Anthropic-style) is posted with httpx. Both
are read as raw server-sent-event lines so the two streams are assembled the
same way. The four (protocol, calling mode) variants share one request path
and differ only in the body builder picked from ``_BODY_BUILDERS``.

The adapter never retries. It raises ``UserCancelled`` when the caller's
token fires and ``RequestTimeout`` when only its own deadline fired.
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from typing import Callable

import httpx
from openai import APIConnectionError, APIStatusError, APITimeoutError, AsyncOpenAI, Omit

from codeagent.agent import constants
from codeagent.agent.cancellation import CancellationToken, run_with_deadline
from codeagent.agent.errors import (
    ClientError,
    NetworkError,
    ProviderConfigError,
    ToolsUnsupported,
    classify_status,
    mentions_tools,
)
from codeagent.agent.providers import (
    API_KEY,
    provider_auth_header,
    provider_base_url,
    supports_native_tools,
)
from codeagent.agent.state import (
    CallingMode,
    ChatResponse,
    Message,
    ProtocolKind,
)
from codeagent.agent.streaming import (
    Assembled,
    assemble_anthropic_stream,
    assemble_openai_stream,
    iter_sse_events,
    parse_anthropic_body,
    parse_openai_body,
)
from codeagent.agent.tool_parsing import from_native, from_text
from codeagent.agent.tool_registry import ToolRegistry
from codeagent.agent.usage import UsageTracker

logger = logging.getLogger(__name__)

ChunkCallback = Callable[[str], None]


def calculate_dynamic_timeout(iteration: int, base: float, retry_count: int = 0) -> float:
    """Per-request budget in seconds.

    Later iterations carry larger contexts, so the base grows by 1.2x after
    the third iteration and 1.5x after the eighth, clamped to 120-300s. Each
    in-round retry then widens the clamped budget by half again.
    """
    if iteration <= 3:
        multiplier = 1.0
    elif iteration <= 8:
        multiplier = constants.TIMEOUT_MULTIPLIER_MID
    else:
        multiplier = constants.TIMEOUT_MULTIPLIER_LATE
    budget = min(
        max(base * multiplier, constants.MIN_REQUEST_TIMEOUT_SECONDS),
        constants.MAX_REQUEST_TIMEOUT_SECONDS,
    )
    return budget * (1 + retry_count * constants.TIMEOUT_RETRY_GROWTH)


def should_rescue_text_calls(response: ChatResponse, iteration: int) -> bool:
    """Some backends accept native tools but still answer with tagged text.

    Only the first round is re-parsed; later rounds trust the native result.
    """
    return (
        iteration == 1
        and response.used_native_tools
        and not response.tool_calls
        and bool(response.content)
    )


# ── Request bodies ──────────────────────────────────────────────


@dataclass(frozen=True)
class RequestSpec:
    model: str
    messages: list[dict]
    system_prompt: str
    stream: bool
    temperature: float
    max_tokens: int
    registry: ToolRegistry


def _fallback_prompt(spec: RequestSpec) -> str:
    if "## Available Tools" in spec.system_prompt:
        return spec.system_prompt
    return spec.system_prompt + "\n\n" + spec.registry.format_tool_definitions()


def _common(spec: RequestSpec) -> dict:
    return {
        "model": spec.model,
        "stream": spec.stream,
        "temperature": spec.temperature,
        "max_tokens": spec.max_tokens,
    }


def _anthropic_messages(messages: list[dict]) -> list[dict]:
    # System text travels in its own field; stray system turns become user turns
    return [
        {"role": "user" if m["role"] == "system" else m["role"], "content": m["content"]}
        for m in messages
    ]


def _openai_native_body(spec: RequestSpec) -> dict:
    return {
        **_common(spec),
        "messages": [{"role": "system", "content": spec.system_prompt}, *spec.messages],
        "tools": spec.registry.get_openai_schema(),
        "tool_choice": "auto",
    }


def _openai_text_body(spec: RequestSpec) -> dict:
    return {
        **_common(spec),
        "messages": [{"role": "system", "content": _fallback_prompt(spec)}, *spec.messages],
    }


def _anthropic_native_body(spec: RequestSpec) -> dict:
    return {
        **_common(spec),
        "system": spec.system_prompt,
        "messages": _anthropic_messages(spec.messages),
        "tools": spec.registry.get_anthropic_schema(),
    }


def _anthropic_text_body(spec: RequestSpec) -> dict:
    return {
        **_common(spec),
        "messages": [
            {"role": "user", "content": _fallback_prompt(spec)},
            {"role": "assistant", "content": constants.FALLBACK_ACK},
            *_anthropic_messages(spec.messages),
        ],
    }


_BODY_BUILDERS: dict[tuple[ProtocolKind, CallingMode], Callable[[RequestSpec], dict]] = {
    (ProtocolKind.OPENAI, CallingMode.NATIVE): _openai_native_body,
    (ProtocolKind.OPENAI, CallingMode.TEXT): _openai_text_body,
    (ProtocolKind.ANTHROPIC, CallingMode.NATIVE): _anthropic_native_body,
    (ProtocolKind.ANTHROPIC, CallingMode.TEXT): _anthropic_text_body,
}


def build_request_body(kind: ProtocolKind, mode: CallingMode, spec: RequestSpec) -> dict:
    return _BODY_BUILDERS[(kind, mode)](spec)


# ── Adapter ─────────────────────────────────────────────────────


class ChatAdapter:
    def __init__(
        self,
        provider_id: str,
        protocol: ProtocolKind | str,
        model: str,
        api_key: str,
        *,
        registry: ToolRegistry,
        temperature: float = 0.7,
        max_tokens: int = 8192,
        base_timeout: float = 180.0,
        http_client: httpx.AsyncClient | None = None,
        usage_tracker: UsageTracker | None = None,
    ) -> None:
        self.provider_id = provider_id
        self.protocol = ProtocolKind(protocol)
        self.model = model
        self.api_key = api_key
        self.registry = registry
        self.temperature = temperature
        self.max_tokens = max(max_tokens, constants.MIN_MAX_TOKENS)
        self.base_timeout = base_timeout
        self.usage = usage_tracker or UsageTracker()
        self._owns_http = http_client is None
        self._http = http_client or httpx.AsyncClient(
            timeout=httpx.Timeout(600.0, connect=10.0)
        )
        self._openai: AsyncOpenAI | None = None
        self._native_rejected = False

    async def __aenter__(self) -> ChatAdapter:
        return self

    async def __aexit__(self, *exc) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        if self._owns_http:
            await self._http.aclose()

    @property
    def calling_mode(self) -> CallingMode:
        if self._native_rejected or not supports_native_tools(self.provider_id, self.protocol):
            return CallingMode.TEXT
        return CallingMode.NATIVE

    def _base_url(self) -> str:
        base_url = provider_base_url(self.provider_id, self.protocol)
        if not base_url:
            raise ProviderConfigError(
                f"Provider {self.provider_id} does not support {self.protocol.value} protocol"
            )
        return base_url.rstrip("/")

    def _auth_headers(self) -> dict[str, str]:
        if provider_auth_header(self.provider_id, self.protocol) == API_KEY:
            return {"x-api-key": self.api_key}
        return {"Authorization": f"Bearer {self.api_key}"}

    async def send(
        self,
        messages: list[Message],
        system_prompt: str,
        *,
        cancel_token: CancellationToken | None = None,
        timeout: float | None = None,
        on_chunk: ChunkCallback | None = None,
        iteration: int = 1,
    ) -> ChatResponse:
        """Send one chat round and return text plus normalized tool calls."""
        budget = timeout or calculate_dynamic_timeout(iteration, self.base_timeout)
        return await run_with_deadline(
            self._send([m.to_dict() for m in messages], system_prompt, on_chunk, iteration),
            cancel_token,
            budget,
        )

    async def _send(
        self,
        messages: list[dict],
        system_prompt: str,
        on_chunk: ChunkCallback | None,
        iteration: int,
    ) -> ChatResponse:
        spec = RequestSpec(
            model=self.model,
            messages=messages,
            system_prompt=system_prompt,
            stream=on_chunk is not None,
            temperature=self.temperature,
            max_tokens=self.max_tokens,
            registry=self.registry,
        )

        if self.calling_mode is CallingMode.TEXT:
            return await self._round(CallingMode.TEXT, spec, on_chunk)

        try:
            response = await self._round(CallingMode.NATIVE, spec, on_chunk)
        except ToolsUnsupported as exc:
            logger.info(
                "%s rejected native tool calling (%s), switching to text protocol",
                self.provider_id,
                exc,
            )
            self._native_rejected = True
            return await self._round(CallingMode.TEXT, spec, on_chunk)

        if should_rescue_text_calls(response, iteration):
            rescued = from_text(response.content)
            if rescued:
                logger.debug("Recovered %d tagged tool call(s) from native reply", len(rescued))
                return ChatResponse(
                    content=response.content,
                    tool_calls=rescued,
                    used_native_tools=False,
                    usage=response.usage,
                )
        return response

    async def _round(
        self, mode: CallingMode, spec: RequestSpec, on_chunk: ChunkCallback | None
    ) -> ChatResponse:
        body = build_request_body(self.protocol, mode, spec)
        if self.protocol is ProtocolKind.OPENAI:
            content, raw_calls, usage = await self._post_openai(body, mode, on_chunk)
        else:
            content, raw_calls, usage = await self._post_anthropic(body, mode, on_chunk)

        if usage is not None:
            self.usage.record(usage, self.model, self.provider_id)

        if mode is CallingMode.NATIVE:
            calls = from_native(self.protocol, raw_calls)
        else:
            calls = from_text(content)
        return ChatResponse(
            content=content,
            tool_calls=calls,
            used_native_tools=mode is CallingMode.NATIVE,
            usage=usage,
        )

    def _raise_for_status(self, status: int, body: str, mode: CallingMode) -> None:
        error = classify_status(status, body)
        if mode is CallingMode.NATIVE and isinstance(error, ClientError) and mentions_tools(body):
            raise ToolsUnsupported(str(error))
        raise error

    # ------------------------------------------------------------------
    # Format A
    # ------------------------------------------------------------------

    def _openai_client(self) -> AsyncOpenAI:
        if self._openai is None:
            extra = None
            if provider_auth_header(self.provider_id, self.protocol) == API_KEY:
                extra = {"Authorization": Omit(), **self._auth_headers()}
            self._openai = AsyncOpenAI(
                api_key=self.api_key or "unset",
                base_url=self._base_url(),
                max_retries=0,
                http_client=self._http,
                default_headers=extra,
            )
        return self._openai

    async def _post_openai(
        self, body: dict, mode: CallingMode, on_chunk: ChunkCallback | None
    ) -> Assembled:
        client = self._openai_client()
        try:
            async with client.chat.completions.with_streaming_response.create(**body) as response:
                if body["stream"]:
                    events = iter_sse_events(response.iter_lines())
                    return await assemble_openai_stream(events, on_chunk)
                return parse_openai_body(json.loads(await response.read()))
        except APIStatusError as exc:
            self._raise_for_status(exc.status_code, _status_body(exc), mode)
            raise
        except (APIConnectionError, APITimeoutError) as exc:
            raise NetworkError(str(exc)) from exc
        except httpx.TransportError as exc:
            # body reads after the SDK returned raise raw httpx errors
            raise NetworkError(str(exc)) from exc

    # ------------------------------------------------------------------
    # Format B
    # ------------------------------------------------------------------

    async def _post_anthropic(
        self, body: dict, mode: CallingMode, on_chunk: ChunkCallback | None
    ) -> Assembled:
        url = f"{self._base_url()}/v1/messages"
        headers = {
            "Content-Type": "application/json",
            "anthropic-version": constants.ANTHROPIC_VERSION,
            **self._auth_headers(),
        }
        try:
            async with self._http.stream("POST", url, headers=headers, json=body) as response:
                if response.status_code >= 400:
                    error_body = (await response.aread()).decode(errors="replace")
                    self._raise_for_status(response.status_code, error_body, mode)
                if body["stream"]:
                    events = iter_sse_events(response.aiter_lines(), done_sentinel=None)
                    return await assemble_anthropic_stream(events, on_chunk)
                return parse_anthropic_body(json.loads(await response.aread()))
        except httpx.TransportError as exc:
            raise NetworkError(str(exc)) from exc


def _status_body(exc: APIStatusError) -> str:
    try:
        return exc.response.text
    except httpx.ResponseNotRead:
        return exc.message
