"""Client-side cart sync coalescing.

Cart edits arrive in bursts (quantity taps); only the state at the end of a
quiet window is pushed to `POST /cart/sync`.
"""

import asyncio

import httpx

from storepay.common.logging import logger

DEFAULT_DEBOUNCE_SECONDS = 1.5


class CartSyncClient:
    """Pushes cart snapshots to the storefront API on behalf of one Mini App user."""

    def __init__(self, base_url: str, init_data: str, timeout: float = 10.0, transport=None) -> None:
        self.base_url = base_url.rstrip("/")
        self.init_data = init_data
        self.timeout = timeout
        self.transport = transport

    async def push(self, items: list[dict], total) -> dict:
        async with httpx.AsyncClient(timeout=self.timeout, transport=self.transport) as client:
            resp = await client.post(
                f"{self.base_url}/cart/sync",
                json={"initData": self.init_data, "items": items, "total": total},
            )
        resp.raise_for_status()
        return resp.json()


class DebouncedCartSync:
    """Coalesces `schedule()` calls; `push` runs once per quiet window with the latest cart."""

    def __init__(self, push, delay_seconds: float = DEFAULT_DEBOUNCE_SECONDS) -> None:
        self.push = push
        self.delay_seconds = delay_seconds
        self._latest: tuple[list[dict], object] | None = None
        self._timer: asyncio.Task | None = None

    def schedule(self, items: list[dict], total) -> None:
        self._latest = (list(items), total)
        if self._timer is not None and not self._timer.done():
            self._timer.cancel()
        self._timer = asyncio.get_running_loop().create_task(self._fire_later())

    @property
    def pending(self) -> bool:
        return self._latest is not None

    async def flush(self) -> None:
        """Push the pending snapshot now (e.g. before the app closes)."""

        if self._timer is not None and not self._timer.done():
            self._timer.cancel()
        await self._push_latest()

    async def _fire_later(self) -> None:
        await asyncio.sleep(self.delay_seconds)
        await self._push_latest()

    async def _push_latest(self) -> None:
        if self._latest is None:
            return
        items, total = self._latest
        self._latest = None
        try:
            await self.push(items, total)
        except httpx.HTTPError as exc:
            if self._latest is None:
                self._latest = (items, total)
            logger.warning("cart sync push failed items=%s error=%s", len(items), exc)
