import json
import logging
import sys
import types
from pathlib import Path
from urllib.parse import parse_qs, urlsplit

import pytest


REPO_ROOT = Path(__file__).resolve().parents[1]
sys.path.insert(0, str(REPO_ROOT / "API"))

import zeronorth  # noqa: E402

API_ROOT = "https://api.example.test/v1"


class Resp:
    def __init__(self, status_code=200, body=None, headers=None):
        self.status_code = status_code
        if isinstance(body, str):
            self.text = body
        else:
            self.text = "" if body is None else json.dumps(body)
        self.headers = headers or {}


class FakeApi:
    """
    Stand-in for `requests.Session`: routes `(METHOD, path)` to queued responses.

    A queue pops one entry per request until a single entry is left, which then answers every
    further request. Entries may be a `Resp`, a JSON-able body (HTTP 200), an exception to
    raise, or a callable taking the recorded call.
    """

    def __init__(self):
        self.routes = {}
        self.calls = []
        self.closed = False

    @staticmethod
    def listing(items, count=None):
        return [list(items), {"count": len(items) if count is None else count}]

    @staticmethod
    def respond(status_code=200, body=None, headers=None):
        return Resp(status_code, body, headers)

    def add(self, method, path, *responses):
        self.routes.setdefault((method.upper(), path), []).extend(responses)
        return self

    def request(self, method, url, headers=None, data=None, files=None, timeout=None):
        parts = urlsplit(url)
        path = parts.path[len(urlsplit(API_ROOT).path):].lstrip("/")
        call = types.SimpleNamespace(
            method=method,
            path=path,
            url=url,
            raw_query=parts.query,
            query={k: v[0] for k, v in parse_qs(parts.query).items()},
            headers=dict(headers or {}),
            json=json.loads(data) if data else None,
            files=files,
            timeout=timeout,
        )
        self.calls.append(call)

        queue = self.routes.get((method, path))
        if not queue:
            raise AssertionError(f"unexpected request: {method} {path}?{parts.query}")
        item = queue.pop(0) if len(queue) > 1 else queue[0]
        if callable(item) and not isinstance(item, Resp):
            item = item(call)
        if isinstance(item, BaseException):
            raise item
        if not isinstance(item, Resp):
            item = Resp(200, item)
        return item

    def calls_to(self, method, path):
        return [c for c in self.calls if c.method == method and c.path == path]

    def close(self):
        self.closed = True


@pytest.fixture(autouse=True)
def _reset_zeronorth_logging():
    # The stderr handler binds the stream current at install time; capsys swaps it per test.
    yield
    logger = logging.getLogger("zeronorth")
    for handler in [h for h in logger.handlers if getattr(h, "_zeronorth", False)]:
        logger.removeHandler(handler)


@pytest.fixture
def fake_api():
    return FakeApi()


@pytest.fixture
def client(fake_api):
    config = zeronorth.Config(token="test-token", api_root=API_ROOT, backoff_max_s=0)
    return zeronorth.Client(config, session=fake_api)
