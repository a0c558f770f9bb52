import requests
import pytest

from bridge_exporter import BridgeMetrics


class FakeResponse:
    def __init__(self, payload=None, status_code=200, reason="OK", text=None):
        self._payload = payload
        self.status_code = status_code
        self.reason = reason
        self.text = text

    def json(self):
        if self.text is not None:
            raise ValueError(f"Expecting value: {self.text!r}")
        return self._payload


class FakeSession:
    """Returns queued results per RPC method and records every call."""

    def __init__(self, responses=None):
        self.responses = responses or {}
        self.calls = []

    def post(self, url, json=None, headers=None, timeout=None):
        self.calls.append({"url": url, "json": json, "headers": headers, "timeout": timeout})
        queue = self.responses.get(json["method"], [])
        if not queue:
            raise requests.ConnectionError("connection refused")
        result = queue.pop(0) if len(queue) > 1 else queue[0]
        if isinstance(result, Exception):
            raise result
        return result


def height_response(height):
    return FakeResponse({"jsonrpc": "2.0", "id": 1, "result": {"header": {"height": height}}})


@pytest.fixture
def metrics():
    return BridgeMetrics()
