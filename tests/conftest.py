import copy
from typing import Any

import pytest
import requests

import flowrelay.persistence as persistence
from flowrelay.contracts import GraphDefinition
from flowrelay.persistence import InMemoryRepository
from flowrelay.utils import retry


class Responses:
    """Answers returned one after another; the last one repeats."""

    def __init__(self, *items: Any) -> None:
        self.items = list(items)

    def next(self) -> Any:
        return self.items.pop(0) if len(self.items) > 1 else self.items[0]


class FakeHttp:
    """Stand-in for ``HttpClient`` that records calls and serves canned answers.

    A route maps ``(METHOD, url)`` to a body, an exception to raise, a
    callable receiving the JSON body, or :class:`Responses`.
    """

    def __init__(self, routes: dict | None = None) -> None:
        self.routes = dict(routes or {})
        self.calls: list[dict] = []

    async def request(self, method, url, *, headers=None, params=None, json=None, data=None, timeout=None):
        method = method.upper()
        self.calls.append(
            {
                "method": method,
                "url": url,
                "headers": dict(headers or {}),
                "params": params,
                "json": json,
                "timeout": timeout,
            }
        )
        answer = self.routes.get((method, url))
        if answer is None:
            raise requests.HTTPError(f"404 Client Error: Not Found for url: {url}")
        if isinstance(answer, Responses):
            answer = answer.next()
        if isinstance(answer, BaseException):
            raise answer
        if callable(answer):
            return answer(json)
        return copy.deepcopy(answer)

    async def get(self, url, **kwargs):
        return await self.request("GET", url, **kwargs)

    async def post(self, url, **kwargs):
        return await self.request("POST", url, **kwargs)


@pytest.fixture
def repo():
    return InMemoryRepository()


@pytest.fixture
def fake_http():
    return FakeHttp()


@pytest.fixture
def responses():
    return Responses


@pytest.fixture
def sleeps(monkeypatch):
    """Record retry/poll sleeps instead of waiting."""
    delays: list[float] = []

    async def fake_sleep(delay: float) -> None:
        delays.append(delay)

    monkeypatch.setattr(retry, "schedule_retry", fake_sleep)
    return delays


@pytest.fixture(autouse=True)
def reset_repository_singleton(monkeypatch):
    monkeypatch.setattr(persistence, "_repository_instance", None)
    monkeypatch.delenv("FLOWRELAY_DATABASE_URL", raising=False)
    monkeypatch.delenv("DATABASE_URL", raising=False)
    monkeypatch.delenv("FLOWRELAY_CONFIG", raising=False)


@pytest.fixture
def make_graph():
    """Build a graph from ``(id, type, config)`` tuples and edge tuples."""

    def build(nodes, edges=(), **fields) -> GraphDefinition:
        node_dicts = []
        for node in nodes:
            node_id, node_type, *rest = node
            node_dicts.append(
                {
                    "id": node_id,
                    "type": node_type,
                    "label": node_id.upper(),
                    "config": rest[0] if rest else {},
                }
            )
        edge_dicts = []
        for edge in edges:
            source, target, *handle = edge
            edge_dicts.append(
                {"source": source, "target": target, "sourceHandle": handle[0] if handle else None}
            )
        return GraphDefinition(nodes=node_dicts, edges=edge_dicts, **fields)

    return build
