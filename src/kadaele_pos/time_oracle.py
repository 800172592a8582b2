"""Authoritative timestamps with a silent fallback to the local clock.

A remote time source keeps timestamps comparable across devices during sync.
It is a best-effort aid only: any failure falls back to the local UTC clock and
is never surfaced to the caller.
"""

from __future__ import annotations

from datetime import UTC, datetime
from typing import Any, Callable, Optional

import requests

from . import log
from .data_manager import DEFAULT_TIMEOUT_SECONDS, utc_now
from .network import NetworkStatus


class TimeOracle:
    """Resolve ``now()`` from a remote time endpoint when reachable.

    The endpoint must answer ``GET`` with a JSON object carrying an ISO-8601
    ``utc_datetime`` or ``datetime`` field (the worldtimeapi.org format).
    """

    def __init__(
        self,
        network: NetworkStatus,
        *,
        endpoint: Optional[str] = None,
        timeout: float = DEFAULT_TIMEOUT_SECONDS,
        session: Optional[requests.Session] = None,
        local_clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self.network = network
        self.endpoint = endpoint
        self.timeout = timeout
        self._session = session
        self._local_clock = local_clock

    def now(self) -> datetime:
        """Return the remote time when available, otherwise the local clock."""

        if not self.endpoint or not self.network.online:
            return self._local_clock()
        try:
            return self._fetch_remote()
        except (requests.RequestException, ValueError, KeyError, TypeError, AttributeError) as exc:
            log.warning("Could not get server time, using local time: %s", exc)
            return self._local_clock()

    def _fetch_remote(self) -> datetime:
        getter = self._session.get if self._session is not None else requests.get
        response = getter(self.endpoint, timeout=self.timeout)
        response.raise_for_status()
        body: Any = response.json()
        raw = body.get("utc_datetime") or body["datetime"]
        moment = datetime.fromisoformat(raw)
        if moment.tzinfo is None:
            raise ValueError(f"Remote time has no UTC offset: {raw}")
        return moment.astimezone(UTC)
