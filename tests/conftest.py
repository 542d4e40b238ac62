import json

import pytest


class FakeResponse:
    def __init__(self, status_code=200, payload=None, text=None, content=None, headers=None):
        self.status_code = status_code
        self._payload = payload
        if content is not None:
            self.content = content
        elif payload is not None:
            self.content = json.dumps(payload).encode('utf-8')
        else:
            self.content = (text or '').encode('utf-8')
        self.text = text if text is not None else self.content.decode('utf-8', 'replace')
        self.headers = headers or {}

    def json(self):
        if self._payload is None:
            return json.loads(self.text)
        return self._payload


class FakeSession:
    """Records requests and replays queued responses in order."""

    def __init__(self, *responses):
        self.responses = list(responses)
        self.calls = []

    def queue(self, *responses):
        self.responses.extend(responses)

    def request(self, method, url, **kwargs):
        self.calls.append({'method': method, 'url': url, **kwargs})
        response = self.responses.pop(0)
        if isinstance(response, Exception):
            raise response
        return response


@pytest.fixture
def fake_session():
    return FakeSession()
