"""ProviderGateway: one entry point for every vendor call.

Resolves the vendor client from the request's provider tag, applies the
single opt-in fallback hop on 429, honours the caller's abort signal and
records usage. There is no retry loop here beyond that one hop.
"""

import asyncio
import contextlib
import dataclasses
import time
from collections.abc import AsyncIterator, Awaitable
from typing import Protocol, TypeVar

from opsagent.infrastructure.ai.cost_tracker import CostTracker
from opsagent.infrastructure.ai.types import AIRequest, AIResult, ProviderTag
from opsagent.observability.metrics import AI_CALL_LATENCY, AI_CALLS, AI_FALLBACKS
from opsagent.shared.exceptions import AIRateLimitError, AIRequestAbortedError, AIServiceError
from opsagent.shared.logging import get_logger

logger = get_logger(__name__)

T = TypeVar("T")


class ProviderClient(Protocol):
    """What the gateway needs from a vendor client."""

    async def complete(self, request: AIRequest) -> AIResult: ...

    def stream(self, request: AIRequest) -> AsyncIterator[bytes]: ...


class ProviderClientSource(Protocol):
    def get(self, tag: ProviderTag) -> ProviderClient: ...


async def _abortable(awaitable: Awaitable[T], abort: asyncio.Event | None) -> T:
    """Await ``awaitable`` unless ``abort`` fires first, in which case cancel it."""
    if abort is None:
        return await awaitable
    call = asyncio.ensure_future(awaitable)
    if abort.is_set():
        call.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await call
        raise AIRequestAbortedError("Request aborted by caller")

    waiter = asyncio.ensure_future(abort.wait())
    try:
        await asyncio.wait({call, waiter}, return_when=asyncio.FIRST_COMPLETED)
    finally:
        waiter.cancel()

    if not call.done():
        call.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await call
        raise AIRequestAbortedError("Request aborted by caller")
    return call.result()


class ProviderGateway:
    """Normalized, vendor-agnostic chat-completion calls."""

    def __init__(self, clients: ProviderClientSource, cost_tracker: CostTracker | None = None) -> None:
        self._clients = clients
        self._cost_tracker = cost_tracker

    def _fallback_request(self, request: AIRequest) -> AIRequest:
        assert request.fallback is not None
        return dataclasses.replace(
            request,
            provider=request.fallback.provider,
            model=request.fallback.model,
            fallback=None,
        )

    async def _call_once(self, request: AIRequest) -> AIResult:
        provider = request.provider.value
        client = self._clients.get(request.provider)
        start = time.perf_counter()
        try:
            result = await _abortable(client.complete(request), request.abort)
        except AIRequestAbortedError:
            AI_CALLS.labels(provider=provider, model=request.model, outcome="aborted").inc()
            logger.info("ai_call_aborted", provider=provider, model=request.model)
            raise
        except AIServiceError as e:
            outcome = "rate_limited" if isinstance(e, AIRateLimitError) else "error"
            AI_CALLS.labels(provider=provider, model=request.model, outcome=outcome).inc()
            logger.warning(
                "ai_call_failed",
                provider=provider,
                model=request.model,
                status_code=e.status_code,
                error=e.message,
            )
            raise
        finally:
            AI_CALL_LATENCY.labels(provider=provider).observe(time.perf_counter() - start)

        AI_CALLS.labels(provider=provider, model=result.model, outcome="ok").inc()
        if self._cost_tracker is not None:
            self._cost_tracker.record(
                provider=provider,
                model=result.model,
                input_tokens=result.input_tokens,
                output_tokens=result.output_tokens,
                action=request.action,
            )
        logger.debug(
            "ai_call_completed",
            provider=provider,
            model=result.model,
            tool_calls=len(result.tool_calls),
            latency_ms=round(result.latency_ms, 1),
        )
        return result

    async def call(self, request: AIRequest) -> AIResult:
        """Run one completion, falling back once on 429 if the request allows it.

        Args:
            request: The normalized request, including the optional fallback spec

        Returns:
            AIResult from the primary vendor, or from the fallback with
            ``fell_back`` set

        Raises:
            AIRateLimitError: 429 with no fallback configured, or from the fallback
            AIServiceError: Any other vendor failure (terminal)
            AIRequestAbortedError: The abort signal fired
        """
        try:
            return await self._call_once(request)
        except AIRateLimitError:
            if request.fallback is None:
                raise
            self._log_fallback(request)

        result = await self._call_once(self._fallback_request(request))
        result.fell_back = True
        return result

    async def stream(self, request: AIRequest) -> AsyncIterator[bytes]:
        """Stream raw SSE bytes; the fallback applies only before the first byte."""
        chunks = self._clients.get(request.provider).stream(request)
        try:
            first = await _abortable(anext(chunks), request.abort)
        except StopAsyncIteration:
            return
        except AIRequestAbortedError:
            await chunks.aclose()
            raise
        except AIRateLimitError:
            if request.fallback is None:
                raise
            self._log_fallback(request)
            fallback = self._fallback_request(request)
            chunks = self._clients.get(fallback.provider).stream(fallback)
            try:
                first = await _abortable(anext(chunks), request.abort)
            except StopAsyncIteration:
                return
            except AIRequestAbortedError:
                await chunks.aclose()
                raise

        AI_CALLS.labels(provider=request.provider.value, model=request.model, outcome="stream").inc()
        try:
            yield first
            async for chunk in chunks:
                if request.abort is not None and request.abort.is_set():
                    raise AIRequestAbortedError("Stream aborted by caller")
                yield chunk
        finally:
            await chunks.aclose()

    def _log_fallback(self, request: AIRequest) -> None:
        assert request.fallback is not None
        AI_FALLBACKS.labels(
            from_provider=request.provider.value,
            to_provider=request.fallback.provider.value,
        ).inc()
        logger.warning(
            "ai_fallback_triggered",
            from_provider=request.provider.value,
            from_model=request.model,
            to_provider=request.fallback.provider.value,
            to_model=request.fallback.model,
        )
