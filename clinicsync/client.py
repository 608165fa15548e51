"""Small HTTP client that starts jobs and polls them until they finish."""

from __future__ import annotations

import logging
import time
from typing import Any, Callable

import requests

from clinicsync.errors import ClientTimeout, ConflictError, JobNotFoundError


logger = logging.getLogger(__name__)

TERMINAL_STATUSES = {"completed", "error"}


class JobPoller:
    def __init__(
        self,
        base_url: str,
        interval_seconds: float = 5,
        max_attempts: int = 60,
        session: requests.Session | None = None,
        sleep: Callable[[float], None] = time.sleep,
        timeout_seconds: int = 30,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self.interval_seconds = interval_seconds
        self.max_attempts = max(1, int(max_attempts))
        self.session = session or requests.Session()
        self._sleep = sleep
        self.timeout_seconds = timeout_seconds

    def _headers(self, user_id: str | None, user_label: str | None) -> dict[str, str]:
        headers = {"Accept": "application/json"}
        if user_id:
            headers["X-User-Id"] = user_id
        if user_label:
            headers["X-User-Label"] = user_label
        return headers

    def start_sync(self, user_id: str | None = None, user_label: str | None = None) -> dict[str, Any]:
        response = self.session.post(
            f"{self.base_url}/sync",
            headers=self._headers(user_id, user_label),
            timeout=self.timeout_seconds,
        )
        if response.status_code == 409:
            raise ConflictError(str(response.json().get("detail", "sync already running")))
        response.raise_for_status()
        return response.json()

    def start_reclassify(self, force: bool = False) -> dict[str, Any]:
        path = "/reclassify-all" if force else "/reclassify"
        response = self.session.post(f"{self.base_url}{path}", timeout=self.timeout_seconds)
        response.raise_for_status()
        return response.json()

    def poll(self, job_id: str) -> dict[str, Any]:
        response = self.session.get(f"{self.base_url}/jobs/{job_id}", timeout=self.timeout_seconds)
        if response.status_code == 404:
            raise JobNotFoundError(f"job {job_id} not found")
        response.raise_for_status()
        return response.json()

    def wait(self, job_id: str, on_progress: Callable[[dict[str, Any]], None] | None = None) -> dict[str, Any]:
        """Poll until the job is terminal.

        Raises ``ClientTimeout`` after ``max_attempts`` polls; the job itself
        keeps running on the server.
        """
        for attempt in range(1, self.max_attempts + 1):
            snapshot = self.poll(job_id)
            if on_progress is not None:
                on_progress(snapshot)
            if snapshot.get("status") in TERMINAL_STATUSES:
                return snapshot
            if attempt < self.max_attempts:
                self._sleep(self.interval_seconds)
        logger.warning("Gave up waiting for job %s after %d polls", job_id, self.max_attempts)
        raise ClientTimeout(job_id, self.max_attempts)
