from types import SimpleNamespace


class FakeContent:
    def __init__(self, body: bytes, fail_after: int | None = None, error: Exception | None = None):
        self._body = body
        self._fail_after = fail_after
        self._error = error

    async def iter_chunked(self, size: int):
        sent = 0
        for start in range(0, len(self._body), size):
            if self._fail_after is not None and sent >= self._fail_after:
                raise self._error
            chunk = self._body[start : start + size]
            sent += len(chunk)
            yield chunk
        if self._fail_after is not None and sent >= self._fail_after:
            raise self._error


class FakeResponse:
    def __init__(self, status=200, json_data=None, text_data="", body=b"", headers=None, content=None):
        self.status = status
        self._json_data = json_data
        self._text_data = text_data
        self.headers = headers or {}
        self.content = content or FakeContent(body)
        self.request_info = SimpleNamespace(real_url="http://test.invalid")
        self.history = ()

    async def json(self, content_type="application/json"):
        if isinstance(self._json_data, Exception):
            raise self._json_data
        return self._json_data

    async def text(self):
        return self._text_data

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc, tb):
        return False


class FakeSession:
    """Hands out queued responses; queued exceptions are raised by ``get``."""

    def __init__(self, responses=None, routes=None):
        self._responses = list(responses or [])
        self._routes = {key: list(value) for key, value in (routes or {}).items()}
        self.calls: list[dict] = []

    def get(self, url, params=None, headers=None, timeout=None):
        self.calls.append({"url": url, "params": dict(params or {}), "headers": dict(headers or {})})
        queue = self._routes.get(url, self._responses)
        if not queue:
            raise AssertionError(f"No more fake responses configured for {url}")
        item = queue.pop(0)
        if isinstance(item, BaseException):
            raise item
        return item


class RecordingEventSink:
    def __init__(self):
        self.events = []

    async def write_event(self, event):
        self.events.append(event)
