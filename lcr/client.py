"""Async LASSO backend client (REST over HTTP).

One client instance corresponds to one retrieval session: it authenticates once,
holds the bearer token, and then submits scripts, polls for completion, reads
report tables and fetches implementation bodies.

Usage:
    async with LassoClient(config.backend) as client:
        await client.authenticate()
        execution_id = await client.submit(script)
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Iterable
from typing import Any

import httpx

from .errors import (
    AuthFailure,
    ExecutionFailure,
    FetchFailure,
    ReportFailure,
    SubmissionFailure,
)
from .types import (
    BackendConfig,
    CandidateId,
    ExecutionHandle,
    Implementation,
    ReportBundle,
    ReportRow,
)

logger = logging.getLogger(__name__)


STATUS_SUCCESSFUL = "SUCCESSFUL"
STATUS_FAILED = "FAILED"


class LassoClient:
    """LASSO REST client bound to one bearer-token session."""

    def __init__(
        self,
        config: BackendConfig | None = None,
        *,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.config = config or BackendConfig()
        self._base_url = self.config.base_url.rstrip("/")
        self._api_url = self._base_url + "/" + self.config.api_prefix.strip("/")
        self._http = httpx.AsyncClient(
            timeout=httpx.Timeout(float(self.config.request_timeout_s), connect=10.0),
            transport=transport,
        )
        self._token: str | None = None

    async def __aenter__(self) -> LassoClient:
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.close()

    async def close(self) -> None:
        await self._http.aclose()

    @property
    def is_authenticated(self) -> bool:
        return bool(self._token)

    def _headers(self) -> dict[str, str]:
        if not self._token:
            raise AuthFailure("LASSO client is not authenticated")
        return {"Authorization": f"Bearer {self._token}", "Content-Type": "application/json"}

    @staticmethod
    def _json(response: httpx.Response) -> Any:
        try:
            return response.json()
        except ValueError:
            return None

    async def authenticate(self) -> None:
        url = self._base_url + "/" + self.config.auth_path.strip("/")
        payload = {"username": self.config.username, "password": self.config.password}
        try:
            response = await self._http.post(url, json=payload)
        except httpx.HTTPError as e:
            raise AuthFailure(f"Authentication failed: {e}") from e

        if response.status_code != 200:
            raise AuthFailure(f"Authentication failed: HTTP {response.status_code}")
        data = self._json(response)
        token = data.get("token") if isinstance(data, dict) else None
        if not isinstance(token, str) or not token:
            raise AuthFailure("Authentication failed: response carried no token")

        self._token = token
        logger.info("Authenticated against %s as %s", self._base_url, self.config.username)

    async def submit(self, script: str) -> ExecutionHandle:
        headers = self._headers()
        try:
            response = await self._http.post(
                f"{self._api_url}/execute", json={"script": script}, headers=headers
            )
        except httpx.HTTPError as e:
            raise SubmissionFailure(f"Script execution failed: {e}") from e

        if response.status_code != 200:
            raise SubmissionFailure(f"Script execution failed: HTTP {response.status_code}")
        data = self._json(response)
        execution_id = data.get("executionId") if isinstance(data, dict) else None
        if execution_id is None or execution_id == "":
            raise SubmissionFailure("Script execution failed: no executionId in response")
        return str(execution_id)

    async def get_status(self, handle: ExecutionHandle) -> str:
        headers = self._headers()
        try:
            response = await self._http.get(
                f"{self._api_url}/scripts/{handle}/status", headers=headers
            )
        except httpx.HTTPError as e:
            raise ExecutionFailure(f"Execution status unavailable: {e}") from e
        if response.status_code != 200:
            raise ExecutionFailure(f"Execution status unavailable: HTTP {response.status_code}")
        data = self._json(response)
        status = data.get("status") if isinstance(data, dict) else None
        return str(status or "").upper()

    async def _poll(self, handle: ExecutionHandle) -> None:
        interval = max(0.0, float(self.config.poll_interval_s))
        polls = 0
        while True:
            status = await self.get_status(handle)
            polls += 1
            if status == STATUS_SUCCESSFUL:
                logger.info("Execution %s completed after %d polls", handle, polls)
                return
            if status == STATUS_FAILED:
                raise ExecutionFailure(f"Execution {handle} failed")
            logger.debug("Execution %s status=%s; next poll in %.1fs", handle, status, interval)
            await asyncio.sleep(interval)

    async def await_completion(
        self, handle: ExecutionHandle, timeout_s: float | None = None
    ) -> None:
        """Poll until the execution reaches a terminal state.

        Without ``timeout_s`` this waits indefinitely; callers bound it with a
        timeout or by cancelling the surrounding task.
        """
        if timeout_s is None:
            await self._poll(handle)
            return
        try:
            await asyncio.wait_for(self._poll(handle), timeout=timeout_s)
        except TimeoutError as e:
            raise ExecutionFailure(
                f"Execution {handle} timed out after {timeout_s:.0f}s"
            ) from e

    async def list_reports(self, handle: ExecutionHandle) -> set[str]:
        headers = self._headers()
        try:
            response = await self._http.get(f"{self._api_url}/report/{handle}", headers=headers)
        except httpx.HTTPError as e:
            raise ReportFailure(f"Failed to retrieve available reports: {e}") from e
        if response.status_code != 200:
            raise ReportFailure(
                f"Failed to retrieve available reports: HTTP {response.status_code}"
            )
        data = self._json(response)
        if not isinstance(data, list):
            raise ReportFailure("Failed to retrieve available reports: unexpected response shape")
        return {str(name) for name in data if isinstance(name, str) and name}

    async def query_report(self, handle: ExecutionHandle, name: str) -> list[ReportRow]:
        headers = self._headers()
        try:
            response = await self._http.post(
                f"{self._api_url}/report/{handle}",
                json={"sql": f"SELECT * from {name}"},
                headers=headers,
            )
        except httpx.HTTPError as e:
            raise ReportFailure(f"Failed to query report {name}: {e}") from e
        if response.status_code != 200:
            raise ReportFailure(f"Failed to query report {name}: HTTP {response.status_code}")
        data = self._json(response)
        if not isinstance(data, list):
            raise ReportFailure(f"Failed to query report {name}: unexpected response shape")
        return [row for row in data if isinstance(row, dict)]

    async def fetch_report_bundle(self, handle: ExecutionHandle) -> ReportBundle:
        """Read every available report; a failing report is left out of the bundle."""
        names = await self.list_reports(handle)
        logger.info("Available reports for %s: %s", handle, sorted(names))

        bundle: ReportBundle = {}
        for name in sorted(names):
            try:
                bundle[name] = await self.query_report(handle, name)
            except ReportFailure as e:
                logger.warning("Skipping report %s: %s", name, e)
                continue
            logger.debug("Retrieved %d rows from %s", len(bundle[name]), name)
        return bundle

    @staticmethod
    def _implementation_from(key: Any, raw: Any) -> Implementation:
        if not isinstance(raw, dict):
            return Implementation(id=key, content=str(raw or ""))
        impl_id = raw.get("id", key)
        content = raw.get("content")
        meta = {k: v for k, v in raw.items() if k not in {"id", "content"}}
        return Implementation(
            id=impl_id,
            content=content if isinstance(content, str) else "",
            metadata=meta,
        )

    async def fetch_implementations(
        self, datasource: str, ids: Iterable[CandidateId]
    ) -> list[Implementation]:
        wanted = list(ids)
        headers = self._headers()
        try:
            response = await self._http.post(
                f"{self._api_url}/datasource/{datasource}/implementations",
                json={"ids": wanted},
                headers=headers,
            )
        except httpx.HTTPError as e:
            raise FetchFailure(f"Failed to retrieve implementations: {e}") from e
        if response.status_code != 200:
            raise FetchFailure(f"Failed to retrieve implementations: HTTP {response.status_code}")

        data = self._json(response)
        mapping = data.get("implementations") if isinstance(data, dict) else None
        if not isinstance(mapping, dict):
            raise FetchFailure("Failed to retrieve implementations: unexpected response shape")

        impls = [self._implementation_from(k, v) for k, v in mapping.items()]

        # Keep the caller's (ranked) order; the backend returns an unordered map.
        order = {str(cid): i for i, cid in enumerate(wanted)}
        impls.sort(key=lambda impl: order.get(str(impl.id), len(order)))
        return impls

    async def health_check(self) -> bool:
        try:
            await self._http.get(self._base_url)
            return True
        except httpx.HTTPError:
            return False


__all__ = ["LassoClient", "STATUS_FAILED", "STATUS_SUCCESSFUL"]
