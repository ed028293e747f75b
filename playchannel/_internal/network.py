"""
Network proxies & route interception.

This module contains:
- FallbackOverrides (per-request override accumulator)
- Request / Response proxies
- Route (terminal actions and fallback chaining)
- RouteHandler / RouteHandlerChain (ordered, last-registered-first handlers)
- APIRequestContext / APIResponse (driver-side fetch)
"""

from __future__ import annotations

import asyncio
import inspect
import logging
from collections.abc import Awaitable, Callable, Mapping
from types import MappingProxyType
from typing import TYPE_CHECKING, Any, Optional, Union

from typing_extensions import override

from ..errors import AlreadyHandled, ConnectionClosed, Error, InvalidArgument, TargetClosed
from ..interfaces import StrPath
from .channel_owner import ChannelOwner
from .messages import from_base64, parse_headers, post_data_bytes, serialize_headers, to_base64
from .object_factory import proxy_type
from .url_matching import URLMatch, URLMatcher

if TYPE_CHECKING:
    from .page import BrowserContext, Frame

logger = logging.getLogger(__name__)

RouteHandlerCallback = Union[
    Callable[["Route"], Optional[Awaitable[Any]]],
    Callable[["Route", "Request"], Optional[Awaitable[Any]]],
]

# ---------------------------------------------------------------------------
# Fallback overrides
# ---------------------------------------------------------------------------


class FallbackOverrides:
    """Overrides accumulated across a handler chain for one request.

    Each field keeps the value from the most recent call that supplied it. A
    field omitted from a call is left alone. Once a terminal action fires the
    accumulator is sealed and refuses further merges.
    """

    __slots__ = ("url", "method", "headers", "post_data", "_sealed")

    def __init__(self) -> None:
        self.url: str | None = None
        self.method: str | None = None
        self.headers: Mapping[str, str] | None = None
        self.post_data: bytes | None = None
        self._sealed = False

    @property
    def sealed(self) -> bool:
        return self._sealed

    def merge(
        self,
        url: str | None = None,
        method: str | None = None,
        headers: Mapping[str, str] | None = None,
        post_data: str | bytes | None = None,
    ) -> None:
        if self._sealed:
            raise AlreadyHandled("Route is already handled!")
        if headers is not None and not isinstance(headers, Mapping):
            raise InvalidArgument(f"headers must be a mapping, found: {type(headers).__name__}")
        body = post_data_bytes(post_data)
        if url is not None:
            self.url = url
        if method is not None:
            self.method = method
        if headers is not None:
            self.headers = MappingProxyType({str(k): str(v) for k, v in headers.items()})
        if body is not None:
            self.post_data = body

    def seal(self) -> None:
        self._sealed = True

    def to_params(self) -> dict[str, Any]:
        """Only the fields that were set; unset fields pass through unchanged."""
        params: dict[str, Any] = {}
        if self.url is not None:
            params["url"] = self.url
        if self.method is not None:
            params["method"] = self.method
        if self.headers is not None:
            params["headers"] = serialize_headers(self.headers)
        if self.post_data is not None:
            params["postData"] = to_base64(self.post_data)
        return params


# ---------------------------------------------------------------------------
# Request / Response
# ---------------------------------------------------------------------------


@proxy_type("Request")
class Request(ChannelOwner):
    def __init__(
        self, parent: ChannelOwner, type_name: str, guid: str, initializer: dict[str, Any]
    ) -> None:
        super().__init__(parent, type_name, guid, initializer)
        self._redirected_from: Request | None = initializer.get("redirectedFrom")
        self._redirected_to: Request | None = None
        if self._redirected_from is not None:
            self._redirected_from._redirected_to = self
        self._fallback_overrides = FallbackOverrides()
        self._failure_text: str | None = None

    def __repr__(self) -> str:
        return f"<Request url={self.url!r} method={self.method!r}>"

    @property
    def url(self) -> str:
        return self._fallback_overrides.url or self._initializer["url"]

    @property
    def method(self) -> str:
        return self._fallback_overrides.method or self._initializer["method"]

    @property
    def headers(self) -> dict[str, str]:
        """Request headers with lower-cased names, including fallback overrides."""
        override = self._fallback_overrides.headers
        if override is not None:
            return {name.lower(): value for name, value in override.items()}
        return parse_headers(self._initializer.get("headers"))

    @property
    def post_data_buffer(self) -> bytes | None:
        if self._fallback_overrides.post_data is not None:
            return self._fallback_overrides.post_data
        return from_base64(self._initializer.get("postData"))

    @property
    def post_data(self) -> str | None:
        data = self.post_data_buffer
        if data is None:
            return None
        return data.decode("utf-8", errors="replace")

    @property
    def resource_type(self) -> str:
        return self._initializer["resourceType"]

    @property
    def frame(self) -> Frame | None:
        return self._initializer.get("frame")

    def is_navigation_request(self) -> bool:
        return bool(self._initializer["isNavigationRequest"])

    @property
    def redirected_from(self) -> Request | None:
        return self._redirected_from

    @property
    def redirected_to(self) -> Request | None:
        return self._redirected_to

    @property
    def redirect_chain(self) -> list[Request]:
        """Every request of the redirect chain ending here, oldest first."""
        chain: list[Request] = []
        current: Request | None = self
        while current is not None:
            chain.append(current)
            current = current._redirected_from
        chain.reverse()
        return chain

    @property
    def failure(self) -> str | None:
        return self._failure_text

    async def response(self) -> Response | None:
        result = await self._send("response")
        return result.get("response") if result else None

    def _apply_fallback_overrides(self, **overrides: Any) -> None:
        self._fallback_overrides.merge(**overrides)


@proxy_type("Response")
class Response(ChannelOwner):
    def __repr__(self) -> str:
        return f"<Response url={self.url!r} status={self.status}>"

    @property
    def url(self) -> str:
        return self._initializer["url"]

    @property
    def status(self) -> int:
        return self._initializer["status"]

    @property
    def status_text(self) -> str:
        return self._initializer.get("statusText", "")

    @property
    def ok(self) -> bool:
        return self.status == 0 or 200 <= self.status <= 299

    @property
    def headers(self) -> dict[str, str]:
        return parse_headers(self._initializer.get("headers"))

    @property
    def request(self) -> Request:
        return self._initializer["request"]

    async def body(self) -> bytes:
        result = await self._send("body")
        return from_base64(result["binary"]) or b""

    async def text(self) -> str:
        return (await self.body()).decode("utf-8", errors="replace")


# ---------------------------------------------------------------------------
# APIRequestContext / APIResponse
# ---------------------------------------------------------------------------


@proxy_type("APIRequestContext")
class APIRequestContext(ChannelOwner):
    async def fetch(
        self,
        url: str,
        method: str | None = None,
        headers: Mapping[str, str] | None = None,
        post_data: str | bytes | None = None,
        max_redirects: int | None = None,
        timeout: float | None = None,
    ) -> APIResponse:
        params: dict[str, Any] = {"url": url}
        if method is not None:
            params["method"] = method
        if headers is not None:
            params["headers"] = serialize_headers(headers)
        body = post_data_bytes(post_data)
        if body is not None:
            params["postData"] = to_base64(body)
        if max_redirects is not None:
            params["maxRedirects"] = max_redirects
        params["timeout"] = self._connection.default_timeout_ms if timeout is None else timeout
        result = await self._send("fetch", params)
        return APIResponse(self, result["response"])


class APIResponse:
    """Response of a driver-side fetch, referenced by an opaque fetch uid."""

    def __init__(self, context: APIRequestContext, initializer: dict[str, Any]) -> None:
        self._request_context = context
        self._initializer = initializer
        self._headers = parse_headers(initializer.get("headers"))

    def __repr__(self) -> str:
        return f"<APIResponse url={self.url!r} status={self.status}>"

    @property
    def _fetch_uid(self) -> str:
        return self._initializer["fetchUid"]

    @property
    def url(self) -> str:
        return self._initializer["url"]

    @property
    def status(self) -> int:
        return self._initializer["status"]

    @property
    def status_text(self) -> str:
        return self._initializer.get("statusText", "")

    @property
    def ok(self) -> bool:
        return 200 <= self.status <= 299

    @property
    def headers(self) -> dict[str, str]:
        return dict(self._headers)

    async def body(self) -> bytes:
        result = await self._request_context._send("fetchResponseBody", {"fetchUid": self._fetch_uid})
        if not result or result.get("binary") is None:
            raise TargetClosed("Response has been disposed")
        return from_base64(result["binary"]) or b""

    async def text(self) -> str:
        return (await self.body()).decode("utf-8", errors="replace")

    async def dispose(self) -> None:
        await self._request_context._send("disposeAPIResponse", {"fetchUid": self._fetch_uid})


# ---------------------------------------------------------------------------
# Route
# ---------------------------------------------------------------------------


def log_unretrieved(api_name: str) -> Callable[[asyncio.Future[Any]], None]:
    def callback(future: asyncio.Future[Any]) -> None:
        if future.cancelled():
            return
        exc = future.exception()
        if exc is None:
            return
        if isinstance(exc, (TargetClosed, ConnectionClosed)):
            logger.debug("%s skipped, target went away: %s", api_name, exc)
        else:
            logger.warning("%s failed: %s", api_name, exc)

    return callback


@proxy_type("Route")
class Route(ChannelOwner):
    """Interception handle for one paused network request.

    ``abort``, ``resume`` and ``fulfill`` are terminal: the first one wins and
    any later terminal action or ``fallback`` raises :class:`AlreadyHandled`
    without sending anything. Terminal actions send immediately and return the
    call future; awaiting it is optional.
    """

    def __init__(
        self, parent: ChannelOwner, type_name: str, guid: str, initializer: dict[str, Any]
    ) -> None:
        super().__init__(parent, type_name, guid, initializer)
        self._handled = False
        self._handled_future: asyncio.Future[bool] | None = None
        self._context: BrowserContext | None = None

    def __repr__(self) -> str:
        return f"<Route url={self.request.url!r} handled={self._handled}>"

    @property
    def request(self) -> Request:
        return self._initializer["request"]

    @property
    def handled(self) -> bool:
        return self._handled

    def abort(self, error_code: str | None = None) -> asyncio.Future[Any]:
        self._check_not_handled()
        self._seal()
        return self._finish("Route.abort", "abort", {"errorCode": error_code or "failed"})

    def resume(
        self,
        url: str | None = None,
        method: str | None = None,
        headers: Mapping[str, str] | None = None,
        post_data: str | bytes | None = None,
    ) -> asyncio.Future[Any]:
        """Continue the request, explicit arguments winning over earlier fallbacks."""
        self._check_not_handled()
        self.request._apply_fallback_overrides(url=url, method=method, headers=headers, post_data=post_data)
        return self._resume_with_overrides(is_fallback=False)

    def fallback(
        self,
        url: str | None = None,
        method: str | None = None,
        headers: Mapping[str, str] | None = None,
        post_data: str | bytes | None = None,
    ) -> None:
        """Record overrides and hand the route to the next matching handler."""
        self._check_not_handled()
        self.request._apply_fallback_overrides(url=url, method=method, headers=headers, post_data=post_data)
        self._report_handled(False)

    def fulfill(
        self,
        status: int | None = None,
        headers: Mapping[str, str] | None = None,
        body: str | bytes | None = None,
        path: StrPath | None = None,
        content_type: str | None = None,
        response: APIResponse | Response | None = None,
    ) -> asyncio.Future[Any]:
        """Answer the request with a synthetic response.

        Body precedence is ``path``, then a str ``body``, then a bytes ``body``,
        then ``response``. A response fetched through this same connection is
        forwarded by its fetch uid instead of being re-encoded.
        """
        self._check_not_handled()
        if body is not None and not isinstance(body, (str, bytes)):
            raise InvalidArgument(f"body must be either str or bytes, found: {type(body).__name__}")
        if response is not None and not isinstance(response, (APIResponse, Response)):
            raise InvalidArgument(f"response must be an APIResponse or Response, found: {type(response).__name__}")
        if headers is not None and not isinstance(headers, Mapping):
            raise InvalidArgument(f"headers must be a mapping, found: {type(headers).__name__}")

        if status is None and response is not None:
            status = response.status
        if headers is None and response is not None:
            headers = response.headers

        payload: str | None = None
        is_base64 = False
        length = 0
        inferred_type: str | None = None
        fetch_uid: str | None = None
        remote_body: APIResponse | Response | None = None

        if path is not None:
            reader = self._connection.file_reader
            data = reader.read_bytes(path)
            payload, is_base64, length = to_base64(data), True, len(data)
            inferred_type = reader.mime_type(path)
        elif isinstance(body, str):
            payload, is_base64, length = body, False, len(body.encode("utf-8"))
        elif isinstance(body, bytes):
            payload, is_base64, length = to_base64(body), True, len(body)
        elif response is not None:
            if isinstance(response, APIResponse) and response._request_context._connection is self._connection:
                fetch_uid = response._fetch_uid
            else:
                remote_body = response

        self._seal()
        if remote_body is None:
            params = _fulfill_params(status, headers, content_type or inferred_type, payload, is_base64, length)
            if fetch_uid is not None:
                params["fetchResponseUid"] = fetch_uid
            return self._finish("Route.fulfill", "fulfill", params)

        async def fulfill_with_fetched_body() -> Any:
            data = await remote_body.body()
            params = _fulfill_params(status, headers, content_type, to_base64(data), True, len(data))
            return await self._send("fulfill", params)

        self._report_handled(True)
        return self._connection.create_task(fulfill_with_fetched_body(), "Route.fulfill")

    async def fetch(
        self,
        url: str | None = None,
        method: str | None = None,
        headers: Mapping[str, str] | None = None,
        post_data: str | bytes | None = None,
        max_redirects: int | None = None,
        timeout: float | None = None,
    ) -> APIResponse:
        """Perform the intercepted request through the driver and return its response."""
        if self._context is None:
            raise TargetClosed("Route is not attached to a browser context")
        request = self.request
        if post_data is None:
            post_data = request.post_data_buffer
        return await self._context.request.fetch(
            url or request.url,
            method=method or request.method,
            headers=headers if headers is not None else request.headers,
            post_data=post_data,
            max_redirects=max_redirects,
            timeout=timeout,
        )

    # -----------------------------------------------------------------------
    # Chain plumbing
    # -----------------------------------------------------------------------

    def _start_handling(self) -> asyncio.Future[bool]:
        self._handled_future = self._connection._loop.create_future()
        if self._handled or self._was_disposed:
            self._handled_future.set_result(True)
        return self._handled_future

    def _report_handled(self, done: bool) -> None:
        future = self._handled_future
        if future is not None and not future.done():
            future.set_result(done)

    def _check_not_handled(self) -> None:
        if self._handled:
            raise AlreadyHandled("Route is already handled!")

    def _seal(self) -> None:
        self._handled = True
        self.request._fallback_overrides.seal()

    def _finish(self, api_name: str, method: str, params: dict[str, Any]) -> asyncio.Future[Any]:
        future = self._send(method, params)
        future.add_done_callback(log_unretrieved(api_name))
        self._report_handled(True)
        return future

    def _resume_with_overrides(self, is_fallback: bool) -> asyncio.Future[Any]:
        self._seal()
        params = self.request._fallback_overrides.to_params()
        params["isFallback"] = is_fallback
        return self._finish("Route.continue", "continue", params)

    def _inner_continue(self) -> asyncio.Future[Any] | None:
        """Implicit resume once every matching handler has fallen back."""
        if self._handled:
            logger.debug("%s was handled while the chain was unwinding", self)
            return None
        if self._was_disposed:
            logger.debug("%s was disposed before the chain finished", self)
            return None
        return self._resume_with_overrides(is_fallback=True)

    @override
    def _on_dispose(self, reason: str) -> None:
        super()._on_dispose(reason)
        self._report_handled(True)


def _fulfill_params(
    status: int | None,
    headers: Mapping[str, str] | None,
    content_type: str | None,
    body: str | None,
    is_base64: bool,
    length: int,
) -> dict[str, Any]:
    merged: dict[str, str] = {}
    for name, value in (headers or {}).items():
        merged[name.lower()] = str(value)
    if content_type is not None:
        merged["content-type"] = content_type
    if length != 0 and "content-length" not in merged:
        merged["content-length"] = str(length)
    return {
        "status": 200 if status is None else status,
        "headers": serialize_headers(merged),
        "body": body,
        "isBase64": is_base64,
    }


# ---------------------------------------------------------------------------
# Handler chain
# ---------------------------------------------------------------------------


class RouteHandler:
    def __init__(self, matcher: URLMatcher, handler: RouteHandlerCallback, times: int | None = None) -> None:
        if times is not None and times <= 0:
            raise InvalidArgument(f"times must be a positive integer, got {times}")
        self.matcher = matcher
        self.handler = handler
        self._times = times
        self.handled_count = 0
        self._wants_request = _accepts_two_arguments(handler)

    def __repr__(self) -> str:
        return f"<RouteHandler {self.matcher.match!r} handled={self.handled_count}>"

    def matches(self, url: str) -> bool:
        return self.matcher.matches(url)

    @property
    def will_expire(self) -> bool:
        return self._times is not None and self.handled_count + 1 >= self._times

    async def handle(self, route: Route) -> bool:
        """Run the handler; True once the route is resolved, False on fallback."""
        handled = route._start_handling()
        self.handled_count += 1
        try:
            result = self.handler(route, route.request) if self._wants_request else self.handler(route)
            if inspect.isawaitable(result):
                await result
        except Error as exc:
            logger.error("Route handler for %s failed: %s", route.request.url, exc)
            route._report_handled(route.handled)
        except Exception:
            logger.exception("Route handler for %s failed", route.request.url)
            route._report_handled(route.handled)
        return await handled


def _accepts_two_arguments(handler: Callable[..., Any]) -> bool:
    try:
        parameters = inspect.signature(handler).parameters.values()
    except (TypeError, ValueError):
        return False
    positional = [
        p for p in parameters if p.kind in (inspect.Parameter.POSITIONAL_ONLY, inspect.Parameter.POSITIONAL_OR_KEYWORD)
    ]
    variadic = any(p.kind == inspect.Parameter.VAR_POSITIONAL for p in parameters)
    return variadic or len(positional) >= 2


class RouteHandlerChain:
    """Ordered handlers of one scope; the most recently registered runs first."""

    def __init__(self) -> None:
        self._handlers: list[RouteHandler] = []

    def __len__(self) -> int:
        return len(self._handlers)

    def add(self, url: URLMatch, handler: RouteHandlerCallback, times: int | None = None,
            base_url: str | None = None) -> RouteHandler:
        route_handler = RouteHandler(URLMatcher(url, base_url), handler, times)
        self._handlers.insert(0, route_handler)
        return route_handler

    def remove(self, url: URLMatch, handler: RouteHandlerCallback | None = None,
               base_url: str | None = None) -> int:
        matcher = URLMatcher(url, base_url)
        before = len(self._handlers)
        self._handlers = [
            h for h in self._handlers if not (h.matcher == matcher and (handler is None or h.handler == handler))
        ]
        return before - len(self._handlers)

    def clear(self) -> None:
        self._handlers.clear()

    def patterns(self) -> list[dict[str, Any]]:
        return [h.matcher.to_protocol() for h in self._handlers]

    async def handle(self, route: Route, on_expired: Callable[[], None]) -> bool:
        for route_handler in list(self._handlers):
            if route.handled:
                return True
            if not route_handler.matches(route.request.url):
                continue
            if route_handler not in self._handlers:
                continue
            if route_handler.will_expire:
                self._handlers.remove(route_handler)
                on_expired()
            if await route_handler.handle(route):
                return True
        return False
