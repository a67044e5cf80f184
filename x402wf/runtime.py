"""
Long-lived event loop for facilitator work.

Django's sync handler serves every async view on its own short-lived loop and
cancels whatever is left on it when the response returns. Pollers, the engine
client and the chain readers therefore live on this loop, which runs on a
daemon thread for the life of the process.
"""
import asyncio
import threading
from typing import Awaitable, Optional, TypeVar

from loguru import logger

T = TypeVar('T')


class BackgroundLoop:
    def __init__(self, name: str = 'x402-workflows'):
        self.name = name
        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self._thread: Optional[threading.Thread] = None
        self._lock = threading.Lock()

    def start(self) -> asyncio.AbstractEventLoop:
        """Start the loop thread on first use and return the loop."""
        with self._lock:
            if self._loop is not None:
                return self._loop
            loop = asyncio.new_event_loop()
            ready = threading.Event()

            def run() -> None:
                asyncio.set_event_loop(loop)
                loop.call_soon(ready.set)
                try:
                    loop.run_forever()
                finally:
                    loop.close()

            thread = threading.Thread(target=run, name=self.name, daemon=True)
            thread.start()
            ready.wait()
            self._loop, self._thread = loop, thread
            logger.info('Started background loop {}', self.name)
            return loop

    async def run(self, coro: Awaitable[T]) -> T:
        """Await ``coro`` on the background loop from any other loop."""
        loop = self.start()
        if asyncio.get_running_loop() is loop:
            return await coro
        return await asyncio.wrap_future(asyncio.run_coroutine_threadsafe(coro, loop))

    def run_sync(self, coro: Awaitable[T], timeout: Optional[float] = None) -> T:
        """Blocking variant of ``run`` for threads without a running loop."""
        return asyncio.run_coroutine_threadsafe(coro, self.start()).result(timeout)

    def stop(self, timeout: float = 5) -> None:
        with self._lock:
            loop, thread = self._loop, self._thread
            self._loop = self._thread = None
        if loop is None:
            return
        loop.call_soon_threadsafe(loop.stop)
        thread.join(timeout)
        logger.info('Stopped background loop {}', self.name)
