import asyncio
from typing import Dict, List


class EventStream:
    """
    Async queue of sample/alert records between the engine and its consumers
    (demo printers, broadcasters).
    """
    def __init__(self, maxsize: int = 1000):
        self.queue: asyncio.Queue = asyncio.Queue(maxsize=maxsize)
        self.published = 0

    @property
    def pending(self) -> int:
        return self.queue.qsize()

    async def publish(self, record: Dict) -> None:
        await self.queue.put(record)
        self.published += 1

    def publish_nowait(self, record: Dict) -> None:
        # ticks are synchronous, so sinks publish without awaiting; raises QueueFull
        self.queue.put_nowait(record)
        self.published += 1

    async def consume(self) -> Dict:
        return await self.queue.get()

    def drain(self) -> List[Dict]:
        out = []
        while not self.queue.empty():
            out.append(self.queue.get_nowait())
        return out
