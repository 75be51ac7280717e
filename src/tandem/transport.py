"""
Agent-to-agent transport.

Agents only ever reach each other through an ``AgentClient``. Messages
cross the boundary by value (serialized and re-parsed), so a callee can
never mutate the caller's objects, and a peer that does not answer in
time surfaces as ``DownstreamTimeout`` instead of blocking the caller.
"""

from __future__ import annotations

import copy
import logging
import time
from concurrent.futures import ThreadPoolExecutor
from concurrent.futures import TimeoutError as FutureTimeout
from typing import Any, Iterable, Optional, Protocol

import httpx

from .config import AP2_EXTENSION_URI, DEFAULT_TIMEOUT_SECONDS, AgentConfig
from .errors import DownstreamFailure, DownstreamTimeout, TandemError
from .message import Message
from .orchestrator import AgentResponse, TaskOrchestrator
from .task import Task


logger = logging.getLogger(__name__)

EXTENSIONS_HEADER = "X-A2A-Extensions"


def format_extensions_header(extensions: Iterable[str]) -> str:
    return ", ".join(sorted(set(extensions)))


def parse_extensions_header(value: Optional[str]) -> frozenset[str]:
    if not value:
        return frozenset()
    return frozenset(v.strip() for v in value.split(",") if v.strip())


class AgentClient(Protocol):
    name: str

    def send(
        self, message: Message, extensions: Iterable[str] = (AP2_EXTENSION_URI,)
    ) -> AgentResponse: ...


class LocalAgentClient:
    """Calls an in-process orchestrator on a worker thread with a deadline."""

    def __init__(
        self,
        orchestrator: TaskOrchestrator,
        timeout_seconds: float = DEFAULT_TIMEOUT_SECONDS,
        executor: Optional[ThreadPoolExecutor] = None,
    ):
        self.orchestrator = orchestrator
        self.name = orchestrator.name
        self.timeout_seconds = timeout_seconds
        self._executor = executor or ThreadPoolExecutor(
            max_workers=4, thread_name_prefix=f"tandem-{orchestrator.name}"
        )

    def send(
        self, message: Message, extensions: Iterable[str] = (AP2_EXTENSION_URI,)
    ) -> AgentResponse:
        wire = Message.from_dict(copy.deepcopy(message.to_dict()))
        future = self._executor.submit(self.orchestrator.handle, wire, tuple(extensions))
        try:
            response = future.result(timeout=self.timeout_seconds)
        except FutureTimeout as e:
            future.cancel()
            logger.warning("%s did not answer within %ss", self.name, self.timeout_seconds)
            raise DownstreamTimeout(self.name, self.timeout_seconds) from e
        return AgentResponse(
            Task.from_dict(copy.deepcopy(response.task.to_dict())), response.activated_extensions
        )

    def close(self) -> None:
        self._executor.shutdown(wait=False)


class HttpAgentClient:
    """Talks to a remote agent's JSON API over ``httpx``."""

    def __init__(
        self,
        name: str,
        base_url: str,
        timeout_seconds: float = DEFAULT_TIMEOUT_SECONDS,
        max_retries: int = 1,
        retry_delay: float = 0.5,
        http: Optional[httpx.Client] = None,
    ):
        self.name = name
        self.base_url = base_url.rstrip("/")
        self.timeout_seconds = timeout_seconds
        self.max_retries = max_retries
        self.retry_delay = retry_delay
        self._http = http or httpx.Client(timeout=timeout_seconds)

    def send(
        self, message: Message, extensions: Iterable[str] = (AP2_EXTENSION_URI,)
    ) -> AgentResponse:
        body = self._post("/tasks/send", message.to_dict(), extensions)
        try:
            task = Task.from_dict(body["task"])
        except (KeyError, TypeError, ValueError, TandemError) as e:
            raise DownstreamFailure(f"Malformed response from {self.name}: {e}") from e
        return AgentResponse(task, frozenset(body.get("activated_extensions") or ()))

    def get_task(self, task_id: str) -> Task:
        response = self._request("GET", f"/tasks/{task_id}")
        return Task.from_dict(response.json())

    def close(self) -> None:
        self._http.close()

    def _post(self, path: str, payload: dict[str, Any], extensions: Iterable[str]) -> dict[str, Any]:
        headers = {EXTENSIONS_HEADER: format_extensions_header(extensions)}
        response = self._request("POST", path, json=payload, headers=headers)
        try:
            return response.json()
        except ValueError as e:
            raise DownstreamFailure(f"{self.name} returned a non-JSON body") from e

    def _request(self, method: str, path: str, **kwargs: Any) -> httpx.Response:
        url = self.base_url + path
        last_error: Optional[Exception] = None
        for attempt in range(self.max_retries + 1):
            try:
                response = self._http.request(method, url, timeout=self.timeout_seconds, **kwargs)
            except httpx.TimeoutException as e:
                raise DownstreamTimeout(self.name, self.timeout_seconds) from e
            except httpx.ConnectError as e:
                last_error = e
                if attempt < self.max_retries:
                    logger.info(
                        "Connection to %s failed (attempt %d/%d): %s",
                        self.name, attempt + 1, self.max_retries + 1, e,
                    )
                    time.sleep(self.retry_delay * (attempt + 1))
                    continue
                break
            except httpx.HTTPError as e:
                raise DownstreamFailure(f"Request to {self.name} failed: {e}") from e

            if response.status_code >= 400:
                raise DownstreamFailure(
                    f"{self.name} answered {response.status_code}: {response.text[:200]}"
                )
            return response

        raise DownstreamFailure(f"Downstream unavailable: could not connect to {self.name}: {last_error}")


class PeerDirectory:
    """Resolves agent clients by role name or by advertised URL."""

    def __init__(self):
        self._by_role: dict[str, AgentClient] = {}
        self._by_url: dict[str, AgentClient] = {}

    def register(self, role: str, client: AgentClient, url: Optional[str] = None) -> None:
        self._by_role[role] = client
        if url:
            self._by_url[url.rstrip("/")] = client

    def for_role(self, role: str) -> AgentClient:
        client = self._by_role.get(role)
        if client is None:
            raise DownstreamFailure(f"No agent registered for role '{role}'")
        return client

    def for_url(self, url: str) -> Optional[AgentClient]:
        return self._by_url.get(url.rstrip("/"))

    def roles(self) -> list[str]:
        return sorted(self._by_role)

    @classmethod
    def from_config(cls, config: AgentConfig) -> PeerDirectory:
        directory = cls()
        for role, peer in config.peers.items():
            client = HttpAgentClient(role, peer.url, timeout_seconds=peer.timeout_seconds)
            directory.register(role, client, url=peer.url)
        return directory
