import json
import logging

from dataclasses import dataclass
from typing import Any, Dict, List, Optional

import pytest

from sonarr_api import SonarrClient


class FakeResponse:
    def __init__(self, status_code: int = 200, payload: Any = None, body: Optional[bytes] = None) -> None:
        self.status_code = status_code
        if body is None:
            body = b"" if payload is None else json.dumps(payload).encode("utf-8")
        self.content = body
        self.text = self.content.decode("utf-8")

    def json(self) -> Any:
        return json.loads(self.content)


@dataclass
class Call:
    method: str
    path: str
    params: Optional[Dict[str, Any]]
    body: Any
    headers: Dict[str, str]
    timeout: Any


class FakeSession:
    """
    Stands in for requests.Session. Routes map (method, path) to a
    FakeResponse, an exception to raise, a callable(params, body) or a list
    of those consumed one per call.
    """

    def __init__(self, routes: Optional[Dict[tuple, Any]] = None) -> None:
        self.routes = dict(routes or {})
        self.calls: List[Call] = []

    def request(self, method, url, params=None, json=None, headers=None, timeout=None):
        path = url.split("/api/v3", 1)[1]
        self.calls.append(Call(method, path, params, json, dict(headers or {}), timeout))
        handler = self.routes.get((method, path))
        if isinstance(handler, list):
            handler = handler.pop(0)
        if handler is None:
            return FakeResponse(404, {"message": "not found"})
        if isinstance(handler, BaseException):
            raise handler
        if callable(handler):
            return handler(params, json)
        return handler

    def calls_for(self, method: str, path: Optional[str] = None) -> List[Call]:
        return [c for c in self.calls if c.method == method and (path is None or c.path == path)]

    @property
    def mutating_calls(self) -> List[Call]:
        return [c for c in self.calls if c.method in {"POST", "PUT", "DELETE"}]


@pytest.fixture
def session():
    return FakeSession()


@pytest.fixture
def client(session):
    return SonarrClient("http://sonarr:8989/", "secret", timeout=5, session=session)


@pytest.fixture
def restore_logger():
    """Undo setup_logger side effects so caplog keeps working in later tests."""
    yield
    logger = logging.getLogger("SonarrAutoImport")
    for h in list(logger.handlers):
        logger.removeHandler(h)
        h.close()
    logger.propagate = True
    logger.setLevel(logging.NOTSET)
