import threading
from collections import Counter
from io import BytesIO
from typing import Dict, List, Union

import pytest
import requests
from requests.structures import CaseInsensitiveDict

from site_mirror import Fetcher, PlaceholderProvider, RequestConfig

Body = Union[str, bytes]


class FakeSession:
    """Stands in for requests.Session; routes are keyed by exact URL."""

    def __init__(self):
        self.routes: Dict[str, list] = {}
        self.calls: Counter = Counter()
        self.sent_headers: Dict[str, dict] = {}
        self._lock = threading.Lock()

    def add(self, url: str, body: Body = "", status: int = 200, content_type: str = "text/html; charset=utf-8"):
        self.routes.setdefault(url, []).append((status, {"Content-Type": content_type}, body))
        return self

    def add_error(self, url: str, exc: Exception):
        self.routes.setdefault(url, []).append(exc)
        return self

    def get(self, url, headers=None, timeout=None, allow_redirects=True):
        with self._lock:
            self.calls[url] += 1
            self.sent_headers[url] = dict(headers or {})
            queue = self.routes.get(url)
            if not queue:
                entry = (404, {"Content-Type": "text/plain"}, "not found")
            elif len(queue) > 1:
                entry = queue.pop(0)
            else:
                entry = queue[0]
        if isinstance(entry, Exception):
            raise entry
        status, hdrs, body = entry
        r = requests.Response()
        r.status_code = status
        r.url = url
        r.headers = CaseInsensitiveDict(hdrs)
        r._content = body.encode("utf-8") if isinstance(body, str) else body
        r.encoding = "utf-8" if isinstance(body, str) else None
        return r


class ActiveBrowser:
    """Stands in for an active BrowserSession; pages map URL to (html, status, content type)."""

    def __init__(self):
        self.pages: Dict[str, tuple] = {}
        self.fetched: List[str] = []
        self.closed = False

    def has_active_session(self) -> bool:
        return not self.closed

    def fetch_via_session(self, url: str):
        self.fetched.append(url)
        return self.pages.get(url, ("<html>not found</html>", 404, "text/html"))

    def close(self) -> None:
        self.closed = True


class SleepRecorder:
    def __init__(self):
        self.calls: List[float] = []

    def __call__(self, seconds: float) -> None:
        self.calls.append(seconds)


def _png_bytes(width: int, height: int) -> bytes:
    from PIL import Image

    buf = BytesIO()
    Image.new("RGB", (width, height), (200, 10, 10)).save(buf, format="PNG")
    return buf.getvalue()


@pytest.fixture
def png():
    return _png_bytes


@pytest.fixture
def session():
    return FakeSession()


@pytest.fixture
def sleeps():
    return SleepRecorder()


@pytest.fixture
def fetcher(session, sleeps):
    return Fetcher(RequestConfig(), max_in_flight=4, session=session, sleep=sleeps)


@pytest.fixture
def placeholders(fetcher):
    return PlaceholderProvider(fetcher, pillow=True)


@pytest.fixture
def browser():
    return ActiveBrowser()
