"""
Pytest configuration and fixtures.

The ``driver`` fixture stands in for the driver process: it records every
outbound call, answers the routine ones automatically, and pushes inbound
messages straight into ``Connection.dispatch`` so tests stay deterministic.
"""

import asyncio
import logging
import sys

import pytest
import pytest_asyncio

from playchannel import Connection


def pytest_configure(config):
    """Configure pytest with custom settings."""
    log_level = logging.DEBUG if config.getoption("--debug-playchannel") else logging.INFO

    logging.basicConfig(
        level=log_level,
        format="%(asctime)s - %(name)s - %(levelname)s - [%(filename)s:%(lineno)d] - %(message)s",
        handlers=[logging.StreamHandler(sys.stdout)],
        force=True,
    )

    logging.getLogger("playchannel").setLevel(log_level)
    logging.getLogger("asyncio").setLevel(log_level)

    custom_log_file = config.getoption("--playchannel-log-file")
    if custom_log_file:
        file_handler = logging.FileHandler(custom_log_file)
        file_handler.setLevel(log_level)
        file_handler.setFormatter(
            logging.Formatter(
                "%(asctime)s - %(name)s - %(levelname)s - [%(filename)s:%(lineno)d] - %(message)s"
            )
        )
        logging.getLogger().addHandler(file_handler)


def pytest_addoption(parser):
    """Add custom command line options."""
    parser.addoption(
        "--debug-playchannel",
        action="store_true",
        default=False,
        help="Enable debug logging for playchannel (shows every protocol message)",
    )
    parser.addoption(
        "--playchannel-log-file",
        action="store",
        default=None,
        help="Log playchannel debug output to specified file",
    )


AUTO_REPLY_METHODS = {
    "setNetworkInterceptionPatterns",
    "continue",
    "abort",
    "fulfill",
    "accept",
    "dismiss",
}


class RecordingTransport:
    """Transport that keeps outbound messages in memory."""

    def __init__(self):
        self.sent = []
        self.closed = False
        self.on_send = None

    def send(self, message):
        if self.closed:
            raise ConnectionError("Transport closed")
        self.sent.append(message)
        if self.on_send is not None:
            self.on_send(message)

    def recv(self):
        raise ConnectionError("RecordingTransport has no inbound stream")

    def close(self):
        self.closed = True


class FakeDriver:
    """Scripted driver side of a connection."""

    def __init__(self, connection, transport):
        self.connection = connection
        self.transport = transport
        self.auto_reply = set(AUTO_REPLY_METHODS)
        self.results = {}
        self._next_guid = 0
        transport.on_send = self._maybe_reply

    # -- outbound inspection ------------------------------------------------

    @property
    def sent(self):
        return self.transport.sent

    def calls(self, method=None, guid=None):
        return [
            m for m in self.transport.sent
            if (method is None or m["method"] == method) and (guid is None or m["guid"] == guid)
        ]

    async def wait_for_call(self, method, guid=None, count=1, timeout=1.0):
        loop = asyncio.get_running_loop()
        deadline = loop.time() + timeout
        while len(self.calls(method, guid)) < count:
            if loop.time() > deadline:
                raise AssertionError(f"driver never received {count} x {method!r}; got {self.sent}")
            await asyncio.sleep(0.001)
        return self.calls(method, guid)[count - 1]

    # -- inbound ------------------------------------------------------------

    def _maybe_reply(self, message):
        method = message["method"]
        if method in self.results:
            result = self.results[method]
            self.connection._loop.call_soon(self.connection.dispatch, {"id": message["id"], "result": result})
        elif method in self.auto_reply:
            self.connection._loop.call_soon(self.connection.dispatch, {"id": message["id"], "result": {}})

    def new_guid(self, prefix):
        self._next_guid += 1
        return f"{prefix}@{self._next_guid}"

    def create(self, parent_guid, type_name, initializer=None, guid=None):
        guid = guid or self.new_guid(type_name.lower())
        self.connection.dispatch({
            "guid": parent_guid,
            "method": "__create__",
            "params": {"type": type_name, "guid": guid, "initializer": initializer or {}},
        })
        return self.connection.get_object(guid)

    def event(self, guid, method, params=None):
        self.connection.dispatch({"guid": guid, "method": method, "params": params or {}})

    def dispose(self, guid):
        self.connection.dispatch({"guid": guid, "method": "__dispose__", "params": {}})

    def reply(self, call_id, result=None):
        self.connection.dispatch({"id": call_id, "result": result})

    def fail(self, call_id, message, name="Error"):
        self.connection.dispatch({"id": call_id, "error": {"error": {"name": name, "message": message}}})

    # -- scenes -------------------------------------------------------------

    def context(self, options=None):
        browser = self.create("", "Browser", {"name": "chromium"})
        request_context = self.create(browser._guid, "APIRequestContext")
        return self.create(
            browser._guid,
            "BrowserContext",
            {"requestContext": {"guid": request_context._guid}, "options": options or {}},
        )

    def page(self, context, opener=None, url="about:blank"):
        frame = self.create(context._guid, "Frame", {"url": url, "name": ""})
        initializer = {"mainFrame": {"guid": frame._guid}, "isClosed": False}
        if opener is not None:
            initializer["opener"] = {"guid": opener._guid}
        page = self.create(context._guid, "Page", initializer)
        self.event(context._guid, "page", {"page": {"guid": page._guid}})
        return page

    def request(
        self,
        scope,
        url,
        method="GET",
        headers=None,
        post_data=None,
        resource_type="document",
        is_navigation=True,
        redirected_from=None,
    ):
        initializer = {
            "url": url,
            "method": method,
            "headers": [{"name": k, "value": v} for k, v in (headers or {}).items()],
            "resourceType": resource_type,
            "isNavigationRequest": is_navigation,
        }
        if post_data is not None:
            initializer["postData"] = post_data
        if redirected_from is not None:
            initializer["redirectedFrom"] = {"guid": redirected_from._guid}
        return self.create(scope._guid, "Request", initializer)

    def intercept(self, scope, url, **request_options):
        """Create a Request plus its Route and deliver the route event to *scope*."""
        request = self.request(scope, url, **request_options)
        route = self.create(request._guid, "Route", {"request": {"guid": request._guid}})
        self.event(scope._guid, "route", {"route": {"guid": route._guid}})
        return route


@pytest_asyncio.fixture
async def driver():
    transport = RecordingTransport()
    connection = Connection(transport, {"default_timeout_ms": 1000})
    fake = FakeDriver(connection, transport)
    yield fake
    connection.close("test finished")


@pytest.fixture
def static_file(tmp_path):
    path = tmp_path / "style.css"
    path.write_bytes(b"body { color: red; }\n")
    return path
