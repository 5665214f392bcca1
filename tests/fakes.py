"""In-memory stand-ins for requests sessions and responses used across the tests."""

import json

from requests.structures import CaseInsensitiveDict

NDJSON = 'application/fhir+ndjson'


def ndjson_body(resources):
    return ''.join(json.dumps(r) + '\n' for r in resources).encode('utf-8')


class FakeResponse:
    def __init__(self, status_code=200, headers=None, body=b'', json_data=None, chunk_size=None):
        if json_data is not None:
            body = json.dumps(json_data)
        if isinstance(body, str):
            body = body.encode('utf-8')
        self.status_code = status_code
        self.headers = CaseInsensitiveDict(headers or {})
        self.content = body
        self.fixed_chunk_size = chunk_size
        self.closed = False

    @property
    def text(self):
        return self.content.decode('utf-8')

    def json(self):
        return json.loads(self.text)

    def iter_content(self, chunk_size=1):
        size = self.fixed_chunk_size or chunk_size
        for start in range(0, len(self.content), size):
            yield self.content[start:start + size]

    def close(self):
        self.closed = True


class FakeSession:
    """
    Routes requests by (method, url) to queued responses; the last queued
    response for a route is repeated once the queue is drained.
    """

    def __init__(self):
        self.routes = {}
        self.calls = []

    def add(self, method, url, *responses):
        self.routes.setdefault((method.upper(), url), []).extend(responses)
        return self

    def _next(self, method, url):
        queue = self.routes.get((method.upper(), url.split('?')[0])) or self.routes.get((method.upper(), url))
        if not queue:
            raise AssertionError(f"Unexpected request {method} {url}")
        return queue.pop(0) if len(queue) > 1 else queue[0]

    def request(self, method, url, headers=None, **kwargs):
        self.calls.append({'method': method.upper(), 'url': url, 'headers': dict(headers or {}), **kwargs})
        return self._next(method, url)

    def get(self, url, headers=None, **kwargs):
        return self.request('GET', url, headers=headers, **kwargs)

    def post(self, url, headers=None, **kwargs):
        return self.request('POST', url, headers=headers, **kwargs)

    def delete(self, url, headers=None, **kwargs):
        return self.request('DELETE', url, headers=headers, **kwargs)


class FakeClock:
    """Monotonic clock advanced only by the injected sleep."""

    def __init__(self):
        self.now = 0.0
        self.sleeps = []

    def __call__(self):
        return self.now

    def sleep(self, seconds):
        self.sleeps.append(seconds)
        self.now += seconds
