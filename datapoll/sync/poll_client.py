"""HTTP client for the data poll endpoints."""

import inspect
import logging
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Iterable, Mapping

import httpx

from .envelope import ChangeEnvelope, RecordChange
from .scheduler import DEFAULT_INTERVAL_SECONDS, PollRequest

logger = logging.getLogger(__name__)

ChangesHandler = Callable[[list[ChangeEnvelope]], Awaitable[Any] | Any]
RefreshHandler = Callable[[], Awaitable[Any] | Any]


@dataclass
class LongPollResult:
    """Response of one long poll."""

    incrementals: list[ChangeEnvelope] = field(default_factory=list)
    refresh: bool = False  # session was stale; reload everything instead


class PollClient:
    """Client for one browser-like session talking to a data poll server."""

    def __init__(
        self,
        base_url: str,
        session_id: str,
        timeout: float = 60 * 5,
    ):
        """Initialize the poll client.

        Args:
            base_url: Base URL of the server (e.g., "http://localhost:8080").
            session_id: Session this client polls for.
            timeout: Request timeout in seconds; must exceed the server's
                long poll window.
        """
        self.base_url = base_url.rstrip("/")
        self.session_id = session_id
        self.timeout = timeout
        self._client: httpx.AsyncClient | None = None

    async def _get_client(self) -> httpx.AsyncClient:
        """Get or create HTTP client."""
        if self._client is None:
            self._client = httpx.AsyncClient(
                base_url=self.base_url,
                timeout=self.timeout,
            )
        return self._client

    async def close(self) -> None:
        """Close the HTTP client."""
        if self._client:
            await self._client.aclose()
            self._client = None

    def _session_path(self, action: str) -> str:
        return f"/api/sessions/{self.session_id}/{action}"

    async def poll(self, last_poll: int | None = None) -> bool:
        """Short poll.

        Returns:
            True if the session should reload its data.
        """
        client = await self._get_client()
        response = await client.get(self._session_path("poll"))
        response.raise_for_status()
        return bool(response.json().get("changed"))

    async def long_poll(self, last_poll: int | None = None) -> LongPollResult:
        """Long poll: wait server-side for changes from other sessions.

        Returns:
            LongPollResult with new envelopes, or refresh=True when the
            server considers the session stale.
        """
        client = await self._get_client()
        response = await client.get(self._session_path("long-poll"))
        response.raise_for_status()

        data = response.json()
        incrementals = [
            ChangeEnvelope.from_dict(e) for e in data.get("incrementals") or []
        ]
        logger.debug(f"Long poll returned {len(incrementals)} updates")
        return LongPollResult(
            incrementals=incrementals,
            refresh=bool(data.get("refresh")),
        )

    async def cancel(self) -> None:
        """Stop the session's in-flight long poll at its next check."""
        client = await self._get_client()
        response = await client.post(self._session_path("cancel-poll"))
        response.raise_for_status()

    async def mark_synced(self) -> None:
        """Tell the server the session just loaded all data."""
        client = await self._get_client()
        response = await client.post(self._session_path("synced"))
        response.raise_for_status()

    async def record_changes(
        self, records: Iterable[RecordChange | Mapping[str, Any]]
    ) -> None:
        """Report records this session wrote."""
        payload = {
            "records": [
                {"model": r.model, "id": r.id, "record": r.record, "del": r.delete}
                if isinstance(r, RecordChange)
                else dict(r)
                for r in records
            ]
        }

        client = await self._get_client()
        response = await client.post(self._session_path("changes"), json=payload)
        response.raise_for_status()

    async def inspect(self) -> dict[str, Any]:
        """Fetch the server's raw change cache."""
        client = await self._get_client()
        response = await client.get("/api/inspect")
        response.raise_for_status()
        return response.json()

    def scheduler(
        self,
        on_changes: ChangesHandler,
        on_refresh: RefreshHandler | None = None,
        long: bool = True,
        interval: float = DEFAULT_INTERVAL_SECONDS,
        max_errors: int = 3,
    ) -> PollRequest:
        """Build a poll request that feeds server changes to callbacks.

        In long mode each poll delivers envelopes to on_changes; a stale
        session triggers on_refresh. In short mode a positive poll triggers
        on_refresh. Disconnecting cancels the server-side long poll.

        Args:
            on_changes: Called with new envelopes.
            on_refresh: Called when all data should be reloaded.
            long: Use long polling.
            interval: Seconds between short polls.
            max_errors: Consecutive failures before polling cancels.

        Returns:
            Unstarted PollRequest.
        """

        async def _deliver(handler: Callable[..., Any] | None, *args: Any) -> None:
            if handler is None:
                return
            result = handler(*args)
            if inspect.isawaitable(result):
                await result

        async def pollfn(last_poll: int | None) -> Any:
            if not long:
                changed = await self.poll(last_poll)
                if changed:
                    await _deliver(on_refresh)
                return changed

            result = await self.long_poll(last_poll)
            if result.refresh:
                await _deliver(on_refresh)
            elif result.incrementals:
                await _deliver(on_changes, result.incrementals)
            return result

        async def disconnect() -> None:
            try:
                await self.cancel()
            except httpx.HTTPError as e:
                logger.warning(f"Failed to cancel long poll for {self.session_id}: {e}")

        request = PollRequest(pollfn, interval=interval, long=long, max_errors=max_errors)
        if long:
            request.on_disconnect(disconnect)
        return request
