"""Clock abstraction so polling and settle delays can be tested without real time."""

import asyncio
import time


class Clock:
    """Monotonic clock with a cooperative sleep."""

    def monotonic(self) -> float:
        return time.monotonic()

    async def sleep(self, seconds: float) -> None:
        await asyncio.sleep(seconds)


system_clock = Clock()
