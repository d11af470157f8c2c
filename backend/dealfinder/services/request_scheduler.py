"""
Rate-limited dispatcher for upstream price-search calls.

Every upstream call goes through one FIFO queue drained by a single worker
task: one request in flight, and a fixed gap of 1/requests_per_second seconds
after each dispatch. Rate-limit (429) and server (5xx) failures are re-queued
at the tail after an exponential backoff; anything else fails the caller
immediately. One caller failing never stops the queue.
"""
import asyncio
import logging
from collections import OrderedDict, deque
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Deque, Dict, Iterable, List, Optional

import httpx

from dealfinder.config import get_settings
from dealfinder.exceptions import UpstreamError, UpstreamServerError, UpstreamUnavailableError, error_for_status

logger = logging.getLogger(__name__)

Transport = Callable[[Dict[str, Any]], Awaitable[Any]]


@dataclass
class UpstreamRequest:
    config: Dict[str, Any]
    future: asyncio.Future
    retries: int = 0


@dataclass
class SearchBatch:
    """Requests sharing an origin, served by a single upstream search."""
    origin: str
    items: List[Any] = field(default_factory=list)


def normalize_origin(origin: str) -> str:
    return (origin or "").strip().lower()


def group_by_origin(items: Iterable[Any], key: Callable[[Any], str] = lambda item: item.origin) -> List[SearchBatch]:
    """Group items by normalized origin, keeping first-seen order."""
    batches: "OrderedDict[str, SearchBatch]" = OrderedDict()
    for item in items:
        origin = normalize_origin(key(item))
        if not origin:
            continue
        batch = batches.get(origin)
        if batch is None:
            batch = batches[origin] = SearchBatch(origin=origin)
        batch.items.append(item)
    return list(batches.values())


class RequestScheduler:
    def __init__(
        self,
        transport: Transport,
        requests_per_second: Optional[float] = None,
        max_retries: Optional[int] = None,
        base_delay: Optional[float] = None,
    ):
        settings = get_settings()
        rps = requests_per_second or settings.requests_per_second
        if rps <= 0:
            raise ValueError("requests_per_second must be greater than 0")

        self.transport = transport
        self.interval = 1.0 / rps
        self.max_retries = settings.max_retries if max_retries is None else max_retries
        self.base_delay = settings.retry_base_delay_seconds if base_delay is None else base_delay

        self._queue: Deque[UpstreamRequest] = deque()
        self._wakeup = asyncio.Event()
        self._worker: Optional[asyncio.Task] = None
        self._current: Optional[UpstreamRequest] = None
        self._retry_timers: Dict[asyncio.TimerHandle, UpstreamRequest] = {}
        self._closed = False

    @property
    def pending(self) -> int:
        """Queued requests plus requests waiting out a retry backoff."""
        return len(self._queue) + len(self._retry_timers)

    @property
    def running(self) -> bool:
        return self._worker is not None and not self._worker.done()

    def start(self) -> None:
        if self._closed:
            raise UpstreamUnavailableError("Request scheduler is closed")
        if not self.running:
            self._worker = asyncio.get_running_loop().create_task(self._run())

    async def enqueue(self, config: Dict[str, Any]) -> Any:
        """Queue an upstream call and wait for its result."""
        if self._closed:
            raise UpstreamUnavailableError("Request scheduler is closed")
        loop = asyncio.get_running_loop()
        request = UpstreamRequest(config=config, future=loop.create_future())
        self._queue.append(request)
        self._wakeup.set()
        self.start()
        return await request.future

    async def close(self) -> None:
        """Stop the worker and fail everything still waiting."""
        self._closed = True
        for timer, request in self._retry_timers.items():
            timer.cancel()
            self._reject(request, UpstreamUnavailableError("Request scheduler closed"))
        self._retry_timers.clear()

        if self._worker is not None:
            self._worker.cancel()
            try:
                await self._worker
            except asyncio.CancelledError:
                pass
            self._worker = None

        if self._current is not None:
            self._reject(self._current, UpstreamUnavailableError("Request scheduler closed"))
            self._current = None
        while self._queue:
            request = self._queue.popleft()
            if not request.future.done():
                request.future.set_exception(UpstreamUnavailableError("Request scheduler closed"))

        close = getattr(self.transport, "close", None)
        if close is not None:
            await close()

    async def _run(self) -> None:
        while True:
            if not self._queue:
                self._wakeup.clear()
                await self._wakeup.wait()
                continue

            request = self._queue.popleft()
            if request.future.done():
                # Caller went away while queued
                continue

            self._current = request
            await self._dispatch(request)
            self._current = None
            await asyncio.sleep(self.interval)

    async def _dispatch(self, request: UpstreamRequest) -> None:
        try:
            result = await self.transport(request.config)
        except UpstreamError as e:
            if e.retryable and request.retries < self.max_retries:
                delay = self.base_delay * (2 ** request.retries)
                request.retries += 1
                logger.warning(
                    f"Upstream request failed ({e.status_code}), retry {request.retries}/{self.max_retries} in {delay}s"
                )
                self._schedule_retry(request, delay)
            else:
                logger.error(f"Upstream request failed permanently: {e}")
                self._reject(request, e)
            return
        except Exception as e:
            logger.error(f"Upstream transport error: {e}")
            self._reject(request, e)
            return

        if not request.future.done():
            request.future.set_result(result)

    def _schedule_retry(self, request: UpstreamRequest, delay: float) -> None:
        loop = asyncio.get_running_loop()
        timer: Optional[asyncio.TimerHandle] = None

        def requeue():
            self._retry_timers.pop(timer, None)
            if self._closed:
                self._reject(request, UpstreamUnavailableError("Request scheduler closed"))
                return
            self._queue.append(request)
            self._wakeup.set()

        timer = loop.call_later(delay, requeue)
        self._retry_timers[timer] = request

    @staticmethod
    def _reject(request: UpstreamRequest, error: BaseException) -> None:
        if not request.future.done():
            request.future.set_exception(error)


class HttpxTransport:
    """
    Default transport: one shared httpx.AsyncClient, status codes mapped to
    the upstream error taxonomy, JSON body returned on success.

    A request config holds method, url and optional params/json/headers.
    """

    def __init__(self, base_url: str = "", api_key: str = "", timeout: Optional[float] = None):
        settings = get_settings()
        self.base_url = base_url
        self.api_key = api_key
        self.timeout = timeout or settings.upstream_timeout_seconds
        self._client: Optional[httpx.AsyncClient] = None

    async def _get_client(self) -> httpx.AsyncClient:
        if self._client is None or self._client.is_closed:
            headers = {"Accept": "application/json"}
            if self.api_key:
                headers["x-api-key"] = self.api_key
            self._client = httpx.AsyncClient(
                base_url=self.base_url,
                headers=headers,
                timeout=self.timeout,
            )
        return self._client

    async def close(self):
        if self._client and not self._client.is_closed:
            await self._client.aclose()

    async def __call__(self, config: Dict[str, Any]) -> Any:
        client = await self._get_client()
        try:
            response = await client.request(
                config.get("method", "GET"),
                config["url"],
                params=config.get("params"),
                json=config.get("json"),
                headers=config.get("headers"),
            )
            response.raise_for_status()
        except httpx.HTTPStatusError as e:
            raise error_for_status(e.response.status_code, e.response.text[:200]) from e
        except httpx.RequestError as e:
            raise UpstreamUnavailableError(f"Upstream request failed: {e}") from e

        if not response.content:
            return {}
        try:
            return response.json()
        except ValueError as e:
            # Maintenance pages and proxies answer 200 with HTML
            raise UpstreamServerError(
                f"Upstream returned a non-JSON body ({response.status_code})", response.status_code
            ) from e
