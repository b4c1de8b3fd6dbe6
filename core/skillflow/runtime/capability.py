"""
Capability providers - the seam between the engine and whatever actually
answers a skill or agent invocation (an LLM backend, a skill service, ...).

The engine only needs one call::

    await provider.invoke(capability_ref, payload) -> CapabilityResponse

Providers may either return ``CapabilityResponse(success=False, ...)`` or
raise; the invoker classifies raised exceptions into the error taxonomy.
"""

import inspect
import logging
from abc import ABC, abstractmethod
from collections.abc import Callable
from typing import Any
from urllib.parse import quote

import httpx
from pydantic import AliasChoices, BaseModel, Field

from skillflow.errors import CapabilityError

logger = logging.getLogger(__name__)


class TokenUsage(BaseModel):
    prompt: int = 0
    completion: int = 0

    @property
    def total(self) -> int:
        return self.prompt + self.completion


class CapabilityResponse(BaseModel):
    """What a capability returns."""

    success: bool
    output: Any = None
    error: str | None = None
    tokens_used: TokenUsage | None = Field(
        default=None, validation_alias=AliasChoices("tokens_used", "tokensUsed")
    )
    retryable: bool = Field(
        default=False, description="Whether a failure is transient and worth retrying"
    )

    model_config = {"extra": "allow", "populate_by_name": True}

    @classmethod
    def coerce(cls, value: Any) -> "CapabilityResponse":
        """Wrap a handler's return value. Dicts carrying ``success`` are parsed as responses."""
        if isinstance(value, CapabilityResponse):
            return value
        if isinstance(value, dict) and isinstance(value.get("success"), bool):
            return cls.model_validate(value)
        return cls(success=True, output=value)


class CapabilityProvider(ABC):
    """Invokes named units of work."""

    @abstractmethod
    async def invoke(self, capability_ref: str, payload: dict[str, Any]) -> CapabilityResponse:
        """Invoke ``capability_ref`` with ``payload``."""
        ...

    async def close(self) -> None:
        """Release any resources held by the provider."""


CapabilityHandler = Callable[[dict[str, Any]], Any]


class CallableCapabilityProvider(CapabilityProvider):
    """
    In-process registry of capability handlers.

    Handlers take the payload dict and may be sync or async. A plain return
    value becomes the output of a successful response.
    """

    def __init__(self, handlers: dict[str, CapabilityHandler] | None = None):
        self._handlers: dict[str, CapabilityHandler] = dict(handlers or {})

    def register(self, capability_ref: str, handler: CapabilityHandler) -> None:
        self._handlers[capability_ref] = handler

    def has(self, capability_ref: str) -> bool:
        return capability_ref in self._handlers

    async def invoke(self, capability_ref: str, payload: dict[str, Any]) -> CapabilityResponse:
        handler = self._handlers.get(capability_ref)
        if handler is None:
            return CapabilityResponse(
                success=False, error=f"Unknown capability '{capability_ref}'"
            )
        result = handler(payload)
        if inspect.isawaitable(result):
            result = await result
        return CapabilityResponse.coerce(result)


class HttpCapabilityProvider(CapabilityProvider):
    """
    Invokes capabilities over HTTP.

    ``POST {base_url}/capabilities/{ref}/invoke`` with ``{"input": payload}``.
    429 and 5xx responses and transport errors are retryable; other 4xx
    responses are not.
    """

    def __init__(
        self,
        base_url: str,
        headers: dict[str, str] | None = None,
        timeout: float = 30.0,
        client: httpx.AsyncClient | None = None,
    ):
        self.base_url = base_url.rstrip("/")
        self._owns_client = client is None
        self._client = client or httpx.AsyncClient(
            base_url=self.base_url, headers=headers or {}, timeout=timeout
        )

    async def invoke(self, capability_ref: str, payload: dict[str, Any]) -> CapabilityResponse:
        path = f"/capabilities/{quote(capability_ref, safe='')}/invoke"
        try:
            response = await self._client.post(path, json={"input": payload})
        except httpx.TransportError as e:
            raise CapabilityError(
                f"Request to capability '{capability_ref}' failed: {e}", retryable=True
            ) from e

        if response.status_code == 429 or response.status_code >= 500:
            return CapabilityResponse(
                success=False,
                error=f"HTTP {response.status_code}: {response.text[:200]}",
                retryable=True,
            )
        if response.status_code >= 400:
            return CapabilityResponse(
                success=False,
                error=f"HTTP {response.status_code}: {response.text[:200]}",
            )

        try:
            body = response.json()
        except ValueError as e:
            raise CapabilityError(
                f"Capability '{capability_ref}' returned invalid JSON: {e}"
            ) from e
        return CapabilityResponse.coerce(body)

    async def close(self) -> None:
        if self._owns_client:
            await self._client.aclose()

    async def __aenter__(self) -> "HttpCapabilityProvider":
        return self

    async def __aexit__(self, *exc: Any) -> None:
        await self.close()
