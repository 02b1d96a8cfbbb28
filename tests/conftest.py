"""
Pytest fixtures for the RPC latency exporter.

`fake_node` serves eth_blockNumber from a scripted list of heights on a local
port. `FakeClient`/`ScriptedFactory` stand in for RpcClient.dial without I/O.
"""

from __future__ import annotations

import json
import threading
from http.server import BaseHTTPRequestHandler, ThreadingHTTPServer

import pytest

from rpc_latency_exporter import LatencyRecorder, RpcConnectionError, RpcQueryError


class FakeNode:
    """Answers JSON-RPC posts. Pops `responses` in order, repeating the last."""

    def __init__(self):
        self.responses = [{"result": "0x1"}]
        self.status = 200
        self.requests = []
        self._lock = threading.Lock()
        node = self

        class Handler(BaseHTTPRequestHandler):
            def do_POST(self):
                length = int(self.headers.get("Content-Length", 0))
                body = json.loads(self.rfile.read(length))
                with node._lock:
                    node.requests.append(body)
                    reply = node.responses.pop(0) if len(node.responses) > 1 else node.responses[0]
                if isinstance(reply, dict):
                    payload = json.dumps({"jsonrpc": "2.0", "id": body.get("id"), **reply})
                elif isinstance(reply, str):
                    payload = reply  # raw body, may be invalid JSON
                else:
                    payload = json.dumps(reply)
                self.send_response(node.status)
                self.send_header("Content-Type", "application/json")
                self.end_headers()
                self.wfile.write(payload.encode())

            def log_message(self, format, *args):
                return

        self.server = ThreadingHTTPServer(("127.0.0.1", 0), Handler)
        self.url = f"http://127.0.0.1:{self.server.server_port}"
        self.thread = threading.Thread(target=self.server.serve_forever, daemon=True)
        self.thread.start()

    def close(self):
        self.server.shutdown()
        self.server.server_close()


@pytest.fixture
def fake_node():
    node = FakeNode()
    yield node
    node.close()


@pytest.fixture
def recorder():
    """Fresh recorder with its own registry per test."""
    return LatencyRecorder()


class FakeClient:
    """Returns heights from a list; an Exception item is raised instead."""

    def __init__(self, heights, clock=None, cost=0.0):
        self.heights = list(heights)
        self.calls = 0
        self.clock = clock
        self.cost = cost

    def block_number(self):
        self.calls += 1
        if self.clock is not None:
            self.clock.advance(self.cost)
        item = self.heights.pop(0) if len(self.heights) > 1 else self.heights[0]
        if isinstance(item, Exception):
            raise item
        return item

    def close(self):
        self.closed = True


class ScriptedFactory:
    """client_factory stand-in: maps url -> FakeClient, or raises for `unreachable`."""

    def __init__(self, clients=None, unreachable=()):
        self.clients = clients or {}
        self.unreachable = set(unreachable)
        self.dialed = []
        self._lock = threading.Lock()

    def __call__(self, url, timeout=None):
        with self._lock:
            self.dialed.append(url)
        if url in self.unreachable:
            raise RpcConnectionError(f"cannot dial {url}")
        return self.clients.get(url) or FakeClient([1])


class FakeClock:
    def __init__(self, start=100.0):
        self.now = start
        self._lock = threading.Lock()

    def advance(self, seconds):
        with self._lock:
            self.now += seconds

    def __call__(self):
        with self._lock:
            return self.now


@pytest.fixture
def query_error():
    return RpcQueryError("boom")
