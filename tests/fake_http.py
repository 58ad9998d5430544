# tests/fake_http.py
"""Scriptable stand-in for requests.Session used by client tests."""
from __future__ import annotations
import threading
from types import SimpleNamespace
from urllib.parse import urlsplit


class FakeResponse:
    def __init__(self, status_code=200, body=None, content=b""):
        self.status_code = status_code
        self._body = body
        self.content = content

    def json(self):
        if self._body is None:
            raise ValueError("no json body")
        return self._body

    @property
    def text(self):
        return "" if self._body is None else str(self._body)


def ok(data=None, message="ok"):
    return FakeResponse(200, {"success": True, "message": message, "data": data})


def error(status_code, detail):
    return FakeResponse(status_code, {"detail": detail})


def task(task_id, status="处理中", added=0, existing=0, errors=0, file_name="f.csv"):
    return {
        "id": task_id,
        "fileName": file_name,
        "totalCount": added + existing + errors,
        "addedCount": added,
        "existingCount": existing,
        "errorCount": errors,
        "status": status,
    }


class FakeSession:
    """
    Routes are matched on (method, path); a path ending in '*' matches by prefix.
    A handler receives the recorded call and returns a FakeResponse or raises.
    """

    def __init__(self):
        self.routes = []
        self.calls = []
        self.lock = threading.Lock()

    def route(self, method, path, handler):
        self.routes.append((method.upper(), path, handler))
        return self

    def calls_to(self, method, path):
        return [c for c in self.calls if c.method == method.upper() and c.path == path]

    def request(self, method, url, params=None, json=None, data=None, files=None, headers=None, timeout=None):
        call = SimpleNamespace(
            method=method.upper(), path=urlsplit(url).path, params=params, json=json,
            data=data, files=files, headers=headers or {}, timeout=timeout
        )
        with self.lock:
            self.calls.append(call)
        for route_method, route_path, handler in self.routes:
            if route_method != call.method:
                continue
            if route_path == call.path or (route_path.endswith("*") and call.path.startswith(route_path[:-1])):
                return handler(call)
        return error(404, f"no route for {call.method} {call.path}")
