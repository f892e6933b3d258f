import json
import logging
from typing import AsyncIterator, Awaitable, Callable, List, Optional

from schemas import StreamIncrement

logger = logging.getLogger("translator.gateway.stream")


# =========================
# Serialization
# =========================

def encode_increment(increment: StreamIncrement) -> bytes:
    """One NDJSON line; non-ASCII (Greek) text is kept as-is."""
    return (json.dumps(increment.to_record(), ensure_ascii=False) + "\n").encode("utf-8")


# =========================
# Normalizer
# =========================

class StreamNormalizer:
    """
    Re-emits one provider's text increments as uniform StreamIncrements.

    Guarantees:
    - one content increment per upstream increment, in upstream order
    - exactly one terminal increment, nothing after it
    - a failure after streaming started becomes an error increment
      followed by the terminal increment (the HTTP status is already sent)
    - closing or cancelling iteration closes the increment source and
      releases the upstream connection
    """

    def __init__(
        self,
        source: AsyncIterator[str],
        *,
        on_close: Optional[Callable[[], Awaitable[None]]] = None,
        label: str = "",
    ):
        self._source = source
        self._on_close: List[Callable[[], Awaitable[None]]] = [on_close] if on_close else []
        self.label = label
        self._iterator: Optional[AsyncIterator[StreamIncrement]] = None
        self._terminated = False
        self._released = False
        self.emitted = 0

    @property
    def terminated(self) -> bool:
        return self._terminated

    @property
    def released(self) -> bool:
        return self._released

    def add_close_callback(self, callback: Callable[[], Awaitable[None]]) -> None:
        self._on_close.append(callback)

    def __aiter__(self) -> AsyncIterator[StreamIncrement]:
        if self._iterator is None:
            self._iterator = self._run()
        return self._iterator

    async def _run(self) -> AsyncIterator[StreamIncrement]:
        try:
            try:
                async for text in self._source:
                    self.emitted += 1
                    yield StreamIncrement.content(text)
            except Exception as e:
                logger.exception(f"[{self.label}] Upstream stream failed after {self.emitted} increments")
                yield StreamIncrement.error(f"Upstream stream interrupted: {type(e).__name__}")

            if not self._terminated:
                self._terminated = True
                yield StreamIncrement.terminal()
        finally:
            await self._release()

    async def ndjson(self) -> AsyncIterator[bytes]:
        """Outbound body for StreamingResponse."""
        try:
            async for increment in self:
                yield encode_increment(increment)
        finally:
            await self.aclose()

    async def aclose(self) -> None:
        """
        Explicit cancel from the consumer side.

        Stops further emission and aborts the in-flight provider request.
        Safe to call more than once, and before iteration started.
        """
        self._terminated = True
        if self._iterator is not None:
            await self._iterator.aclose()
        await self._release()

    async def _release(self) -> None:
        if self._released:
            return
        self._released = True

        close_source = getattr(self._source, "aclose", None)
        if close_source is not None:
            await close_source()

        for callback in self._on_close:
            try:
                await callback()
            except Exception as e:
                logger.warning(f"[{self.label}] Upstream release failed: {e}")

        logger.debug(f"[{self.label}] Upstream released after {self.emitted} increments")
