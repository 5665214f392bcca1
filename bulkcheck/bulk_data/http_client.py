"""requests.Session wrapper that keeps an activity log of every exchange with the server under test."""

import logging
from datetime import datetime, timezone

import requests

logger = logging.getLogger(__name__)


def _header_dict(headers):
    return {str(k): str(v) for k, v in (headers or {}).items()}


class LoggedClient:
    """
    Issues GET/DELETE/POST requests and records each request/response pair.

    Non-2xx replies are returned, not raised; callers turn them into
    assertions. Only transport faults (requests.RequestException) propagate.
    """

    def __init__(self, session=None, timeout=60, verify=True, recorder=None):
        self.session = session or requests.Session()
        self.timeout = timeout
        self.verify = verify
        self.requests = []
        self._recorder = recorder

    def record_response(self, request, response):
        """Appends one exchange to the activity log (and forwards it to an optional sink)."""
        entry = {
            'timestamp': datetime.now(timezone.utc).isoformat(),
            'method': request.get('method'),
            'url': request.get('url'),
            'request_headers': _header_dict(request.get('headers')),
            'request_body': request.get('body'),
            'response_code': response.get('code'),
            'response_headers': _header_dict(response.get('headers')),
            'response_body': response.get('body'),
        }
        self.requests.append(entry)
        if self._recorder is not None:
            self._recorder(entry)
        return entry

    def _send(self, method, url, headers=None, **kwargs):
        headers = dict(headers or {})
        logger.debug(f"{method} {url}")
        request_for_log = {'method': method, 'url': url, 'headers': headers, 'body': kwargs.get('data')}
        try:
            response = self.session.request(method, url, headers=headers, timeout=self.timeout,
                                            verify=self.verify, **kwargs)
        except requests.RequestException as e:
            self.record_response(request_for_log, {'code': None, 'headers': {}, 'body': f"Request failed: {e}"})
            raise
        self.record_response(request_for_log, {
            'code': response.status_code,
            'headers': response.headers,
            'body': response.text,
        })
        logger.debug(f"{method} {url} -> {response.status_code}")
        return response

    def get(self, url, headers=None, params=None):
        return self._send('GET', url, headers=headers, params=params)

    def delete(self, url, headers=None):
        return self._send('DELETE', url, headers=headers)

    def post(self, url, headers=None, data=None):
        return self._send('POST', url, headers=headers, data=data)

    def open_stream(self, url, headers=None):
        """Opens a streaming GET; the caller owns logging and closing of the response.

        A transport fault is logged here, since no response reaches the caller.
        """
        headers = dict(headers or {})
        logger.debug(f"GET (stream) {url}")
        try:
            return self.session.get(url, headers=headers, stream=True, timeout=self.timeout, verify=self.verify)
        except requests.RequestException as e:
            self.record_response({'method': 'GET', 'url': url, 'headers': headers},
                                 {'code': None, 'headers': {}, 'body': f"Request failed: {e}"})
            raise
