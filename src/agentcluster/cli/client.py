"""Async HTTP client for a running agentcluster server."""

from __future__ import annotations

from types import TracebackType
from typing import Any

import httpx

from agentcluster.cluster.attach import AttachMessage
from agentcluster.cluster.models import SessionSummary


class ClientError(Exception):
    """The server rejected a request or could not be reached."""

    def __init__(self, message: str, status_code: int | None = None):
        self.status_code = status_code
        super().__init__(message)


class ClusterClient:
    """Thin wrapper over the REST and long-poll attach endpoints.

    Args:
        base_url: Server URL, e.g. ``http://127.0.0.1:8765``.
        timeout: Request timeout; long-poll requests add their wait to it.
        transport: Optional httpx transport, used by tests.
    """

    def __init__(
        self,
        base_url: str,
        timeout: float = 10.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self._client = httpx.AsyncClient(
            base_url=self.base_url, timeout=timeout, transport=transport
        )

    async def __aenter__(self) -> ClusterClient:
        return self

    async def __aexit__(
        self,
        exc_type: type[BaseException] | None,
        exc: BaseException | None,
        tb: TracebackType | None,
    ) -> None:
        await self.close()

    async def close(self) -> None:
        await self._client.aclose()

    async def _request(self, method: str, path: str, **kwargs: Any) -> httpx.Response:
        try:
            response = await self._client.request(method, path, **kwargs)
        except httpx.HTTPError as e:
            raise ClientError(f"Cannot reach {self.base_url}: {e}") from e
        if response.status_code >= 400:
            try:
                detail = response.json().get("detail", response.text)
            except ValueError:
                detail = response.text
            raise ClientError(str(detail), status_code=response.status_code)
        return response

    # Sessions

    async def list_sessions(
        self, run_id: str | None = None, states: list[str] | None = None
    ) -> list[SessionSummary]:
        params: dict[str, Any] = {}
        if run_id:
            params["run_id"] = run_id
        if states:
            params["state"] = states
        response = await self._request("GET", "/sessions", params=params)
        return [SessionSummary.model_validate(item) for item in response.json()]

    async def get_session(self, session_id: str) -> SessionSummary:
        response = await self._request("GET", f"/sessions/{session_id}")
        return SessionSummary.model_validate(response.json())

    async def get_output(self, session_id: str, tail: int | None = None) -> str:
        params = {"tail": tail} if tail else {}
        response = await self._request("GET", f"/sessions/{session_id}/output", params=params)
        return str(response.json()["output"])

    async def send_input(self, session_id: str, text: str, newline: bool = True) -> bool:
        response = await self._request(
            "POST", f"/sessions/{session_id}/input", json={"text": text, "newline": newline}
        )
        return bool(response.json()["changed"])

    async def kill(
        self, session_id: str, reason: str | None = None, force: bool = False
    ) -> dict[str, Any]:
        response = await self._request(
            "POST", f"/sessions/{session_id}/kill", json={"reason": reason, "force": force}
        )
        return response.json()  # type: ignore[no-any-return]

    async def recover(self, session_id: str) -> dict[str, Any]:
        response = await self._request("POST", f"/sessions/{session_id}/recover")
        return response.json()  # type: ignore[no-any-return]

    # Long-poll attach

    async def open_attach(
        self, session_id: str, observer_id: str, read_only: bool = False, force: bool = False
    ) -> dict[str, Any]:
        response = await self._request(
            "POST",
            f"/attach/{session_id}",
            json={
                "observer_id": observer_id,
                "mode": "read_only" if read_only else "exclusive",
                "force": force,
            },
        )
        return response.json()  # type: ignore[no-any-return]

    async def poll_output(self, handle_id: str, wait: float) -> tuple[list[AttachMessage], bool]:
        response = await self._request(
            "GET",
            f"/attach/handles/{handle_id}/output",
            params={"timeout": wait},
            timeout=self.timeout + wait,
        )
        body = response.json()
        messages = [AttachMessage.model_validate(m) for m in body["messages"]]
        return messages, bool(body["closed"])

    async def push_input(self, handle_id: str, data: str) -> None:
        await self._request("POST", f"/attach/handles/{handle_id}/input", json={"data": data})

    async def push_resize(self, handle_id: str, cols: int, rows: int) -> None:
        await self._request(
            "POST", f"/attach/handles/{handle_id}/resize", json={"cols": cols, "rows": rows}
        )

    async def close_attach(self, handle_id: str) -> None:
        await self._request("DELETE", f"/attach/handles/{handle_id}")
