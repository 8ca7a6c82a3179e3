from __future__ import annotations

import asyncio


class WakeSignal:
    """In-process wake-up channel from the admin surface to the dispatcher."""

    def __init__(self) -> None:
        self._event = asyncio.Event()

    def post(self) -> None:
        self._event.set()

    def is_set(self) -> bool:
        return self._event.is_set()

    async def wait(self, timeout: float | None) -> bool:
        """Wait up to ``timeout`` seconds; True when woken. Clears the signal either way."""
        try:
            if timeout is None:
                await self._event.wait()
            else:
                await asyncio.wait_for(self._event.wait(), timeout=max(0.0, float(timeout)))
            return True
        except asyncio.TimeoutError:
            return False
        finally:
            self._event.clear()
