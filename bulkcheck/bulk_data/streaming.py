"""
Incremental NDJSON reader for bulk data output files.

Output files can be several gigabytes, so the body is never held in memory:
chunks are split into lines as they arrive and only the first
``max_recent_lines`` lines are retained for the activity log.
"""

import logging

logger = logging.getLogger(__name__)

MAX_RECENT_LINE_SIZE = 100
NDJSON_CONTENT_TYPE = 'application/fhir+ndjson'


def truncation_notice(max_lines):
    return f"NOTE: RESPONSE TRUNCATED\nONLY THE FIRST {max_lines} LINES ARE DISPLAYED\n\n"


def iter_ndjson_lines(chunks):
    """
    Yields each non-empty logical line from an iterable of byte (or str) chunks.

    Line boundaries may fall anywhere inside a chunk, including in the middle of
    a multi-byte character; the trailing fragment of every chunk is held back
    until the next chunk (or end of stream) completes it.
    """
    pending = b''
    for chunk in chunks:
        if not chunk:
            continue
        if isinstance(chunk, str):
            chunk = chunk.encode('utf-8')
        pending += chunk
        lines = pending.split(b'\n')
        pending = lines.pop()
        for raw in lines:
            line = raw.decode('utf-8').strip()
            # Blank lines are legal in NDJSON and carry no record
            if line:
                yield line
    if pending.strip():
        yield pending.decode('utf-8').strip()


def media_type(content_type):
    """'application/fhir+ndjson; charset=utf-8' -> 'application/fhir+ndjson'"""
    if not content_type:
        return ''
    return content_type.split(';', 1)[0].strip().lower()


class NDJSONStream:
    """
    Context manager over a streamed NDJSON download.

    Iterating yields raw line strings. On exit the bounded response log is
    recorded with the client, including when the loop body raised, so the
    lines seen before a failure stay visible; the exception still propagates.

        with NDJSONStream(client, url, headers) as stream:
            for line in stream:
                ...
    """

    def __init__(self, client, url, headers=None, chunk_size=8192, max_recent_lines=MAX_RECENT_LINE_SIZE):
        self.client = client
        self.url = url
        self.headers = dict(headers or {})
        self.chunk_size = chunk_size
        self.max_recent_lines = max_recent_lines
        self.response = None
        self.line_count = 0
        self.recent_lines = []
        self._recorded = False

    @property
    def status_code(self):
        return self.response.status_code if self.response is not None else None

    @property
    def content_type(self):
        if self.response is None:
            return ''
        return self.response.headers.get('Content-Type', '')

    @property
    def truncated(self):
        return self.line_count > self.max_recent_lines

    def __enter__(self):
        self.response = self.client.open_stream(self.url, self.headers)
        logger.debug(f"Streaming {self.url}: HTTP {self.response.status_code}, {self.content_type}")
        return self

    def __iter__(self):
        for line in iter_ndjson_lines(self.response.iter_content(chunk_size=self.chunk_size)):
            if self.line_count < self.max_recent_lines:
                self.recent_lines.append(line)
            self.line_count += 1
            yield line

    def logged_body(self):
        body = '\n'.join(self.recent_lines)
        if self.truncated:
            body = truncation_notice(self.max_recent_lines) + body
        return body

    def record(self):
        if self._recorded or self.response is None:
            return
        self._recorded = True
        self.client.record_response(
            {'method': 'GET', 'url': self.url, 'headers': self.headers},
            {'code': self.response.status_code, 'headers': self.response.headers, 'body': self.logged_body()},
        )

    def __exit__(self, exc_type, exc_value, traceback):
        if exc_type is not None:
            logger.error(f"Stream of {self.url} aborted after {self.line_count} line(s): {exc_value}")
        try:
            self.record()
        finally:
            if self.response is not None:
                self.response.close()
        return False
