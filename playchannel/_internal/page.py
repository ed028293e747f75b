"""
Routing scopes & page-level proxies.

This module contains:
- BrowserContext (page registry, context-wide routes, network events)
- Page (page routes, popups, dialogs)
- Frame
- Dialog
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable
from typing import Any

from typing_extensions import override

from ..errors import AlreadyHandled, TargetClosed
from .channel_owner import ChannelOwner
from .network import (
    APIRequestContext,
    Request,
    Response,
    Route,
    RouteHandlerCallback,
    RouteHandlerChain,
    log_unretrieved,
)
from .object_factory import proxy_type
from .url_matching import URLMatch, URLMatcher
from .waiter import wait_for_event

logger = logging.getLogger(__name__)


class _RoutingScope(ChannelOwner):
    """Shared route registration for pages and browser contexts."""

    def __init__(
        self, parent: ChannelOwner, type_name: str, guid: str, initializer: dict[str, Any]
    ) -> None:
        super().__init__(parent, type_name, guid, initializer)
        self._routes = RouteHandlerChain()
        self._on_channel_event("route", self._on_route_event)

    @property
    def _base_url(self) -> str | None:
        return None

    async def route(self, url: URLMatch, handler: RouteHandlerCallback, times: int | None = None) -> None:
        """Intercept requests whose URL matches *url*.

        Handlers run most-recently-registered first. *times* limits how many
        requests the handler sees before it is removed.
        """
        self._routes.add(url, handler, times, self._base_url)
        await self._update_interception_patterns()

    async def unroute(self, url: URLMatch, handler: RouteHandlerCallback | None = None) -> None:
        removed = self._routes.remove(url, handler, self._base_url)
        logger.debug("Removed %d route handler(s) for %r from %s", removed, url, self)
        await self._update_interception_patterns()

    async def unroute_all(self) -> None:
        self._routes.clear()
        await self._update_interception_patterns()

    async def _update_interception_patterns(self) -> None:
        await self._send("setNetworkInterceptionPatterns", {"patterns": self._routes.patterns()})

    def _schedule_pattern_update(self) -> None:
        self._connection.create_task(self._update_interception_patterns(), "setNetworkInterceptionPatterns")

    def _on_route_event(self, params: dict[str, Any]) -> None:
        route: Route = params["route"]
        self._connection.create_task(self._on_route(route), f"route {route.request.url}")

    async def _on_route(self, route: Route) -> None:
        if route._was_disposed:
            return
        if not await self._routes.handle(route, self._schedule_pattern_update):
            route._inner_continue()


@proxy_type("BrowserContext")
class BrowserContext(_RoutingScope):
    def __init__(
        self, parent: ChannelOwner, type_name: str, guid: str, initializer: dict[str, Any]
    ) -> None:
        super().__init__(parent, type_name, guid, initializer)
        self._pages: list[Page] = []
        self._closed = False
        self._options: dict[str, Any] = dict(initializer.get("options") or {})
        self._on_channel_event("page", lambda params: self._on_page(params["page"]))
        self._on_channel_event("close", lambda params: self._on_close())
        self._on_channel_event("request", self._on_request)
        self._on_channel_event("response", self._on_response)
        self._on_channel_event("requestFailed", self._on_request_failed)
        self._on_channel_event("requestFinished", self._on_request_finished)

    @property
    @override
    def _base_url(self) -> str | None:
        return self._options.get("baseURL")

    @property
    def pages(self) -> list[Page]:
        return list(self._pages)

    @property
    def request(self) -> APIRequestContext:
        return self._initializer["requestContext"]

    def is_closed(self) -> bool:
        return self._closed

    def wait_for_page(
        self, predicate: Callable[[Page], bool] | None = None, timeout: float | None = None
    ) -> asyncio.Future[Page]:
        """Future for the next page opened in this context."""
        return wait_for_event(self, "page", predicate, timeout)

    async def new_page(self) -> Page:
        result = await self._send("newPage")
        return result["page"]

    async def close(self) -> None:
        await self._send("close")

    @override
    async def _on_route(self, route: Route) -> None:
        route._context = self
        await super()._on_route(route)

    def _on_page(self, page: Page) -> None:
        page._browser_context = self
        self._pages.append(page)
        self.emit("page", page)
        opener = page.opener
        if opener is not None and not opener.is_closed():
            opener.emit("popup", page)

    def _on_close(self) -> None:
        if self._closed:
            return
        self._closed = True
        self._mark_closed("Browser context closed")
        self.emit("close", self)

    @override
    def _on_dispose(self, reason: str) -> None:
        self._closed = True
        super()._on_dispose(reason)

    def _emit_network(self, event: str, payload: Any, page: Page | None) -> None:
        self.emit(event, payload)
        if page is not None:
            page.emit(event, payload)

    def _on_request(self, params: dict[str, Any]) -> None:
        self._emit_network("request", params["request"], params.get("page"))

    def _on_response(self, params: dict[str, Any]) -> None:
        self._emit_network("response", params["response"], params.get("page"))

    def _on_request_failed(self, params: dict[str, Any]) -> None:
        request: Request = params["request"]
        request._failure_text = params.get("failureText")
        self._emit_network("requestfailed", request, params.get("page"))

    def _on_request_finished(self, params: dict[str, Any]) -> None:
        self._emit_network("requestfinished", params["request"], params.get("page"))


@proxy_type("Page")
class Page(_RoutingScope):
    def __init__(
        self, parent: ChannelOwner, type_name: str, guid: str, initializer: dict[str, Any]
    ) -> None:
        super().__init__(parent, type_name, guid, initializer)
        self._browser_context: BrowserContext | None = parent if isinstance(parent, BrowserContext) else None
        self._closed = bool(initializer.get("isClosed"))
        self._main_frame: Frame | None = initializer.get("mainFrame")
        if self._main_frame is not None:
            self._main_frame._page = self
        self._on_channel_event("close", lambda params: self._on_close())
        self._on_channel_event("dialog", lambda params: self._on_dialog(params["dialog"]))
        self._on_channel_event("crash", lambda params: self.emit("crash", self))

    @property
    @override
    def _base_url(self) -> str | None:
        return self._browser_context._base_url if self._browser_context is not None else None

    @property
    def context(self) -> BrowserContext | None:
        return self._browser_context

    @property
    def opener(self) -> Page | None:
        opener = self._initializer.get("opener")
        return opener if isinstance(opener, Page) else None

    @property
    def main_frame(self) -> Frame | None:
        return self._main_frame

    @property
    def url(self) -> str:
        return self._main_frame.url if self._main_frame is not None else ""

    def is_closed(self) -> bool:
        return self._closed

    def _wait_for(
        self, event: str, predicate: Callable[[Any], bool] | None, timeout: float | None
    ) -> asyncio.Future[Any]:
        return wait_for_event(
            self, event, predicate, timeout, close_event="crash", close_error=lambda: TargetClosed("Page crashed")
        )

    def wait_for_popup(
        self, predicate: Callable[[Page], bool] | None = None, timeout: float | None = None
    ) -> asyncio.Future[Page]:
        return self._wait_for("popup", predicate, timeout)

    def wait_for_dialog(
        self, predicate: Callable[[Dialog], bool] | None = None, timeout: float | None = None
    ) -> asyncio.Future[Dialog]:
        return self._wait_for("dialog", predicate, timeout)

    def wait_for_request(self, url: URLMatch, timeout: float | None = None) -> asyncio.Future[Request]:
        matcher = URLMatcher(url, self._base_url)
        return self._wait_for("request", lambda request: matcher.matches(request.url), timeout)

    def wait_for_response(self, url: URLMatch, timeout: float | None = None) -> asyncio.Future[Response]:
        matcher = URLMatcher(url, self._base_url)
        return self._wait_for("response", lambda response: matcher.matches(response.url), timeout)

    async def goto(self, url: str) -> Response | None:
        if self._main_frame is None:
            raise RuntimeError("Page has no main frame")
        return await self._main_frame.goto(url)

    async def close(self, run_before_unload: bool = False) -> None:
        await self._send("close", {"runBeforeUnload": run_before_unload})

    @override
    async def _on_route(self, route: Route) -> None:
        route._context = self._browser_context
        if route._was_disposed:
            return
        if await self._routes.handle(route, self._schedule_pattern_update):
            return
        if self._browser_context is not None:
            await self._browser_context._on_route(route)
        else:
            route._inner_continue()

    def _on_close(self) -> None:
        if self._closed:
            return
        self._closed = True
        if self._browser_context is not None and self in self._browser_context._pages:
            self._browser_context._pages.remove(self)
        self._mark_closed("Page closed")
        self.emit("close", self)

    @override
    def _on_dispose(self, reason: str) -> None:
        self._closed = True
        if self._browser_context is not None and self in self._browser_context._pages:
            self._browser_context._pages.remove(self)
        super()._on_dispose(reason)

    def _on_dialog(self, dialog: Dialog) -> None:
        if self.listener_count("dialog"):
            self.emit("dialog", dialog)
        else:
            logger.debug("No dialog listener on %s, dismissing %s", self, dialog)
            dialog.dismiss().add_done_callback(log_unretrieved("Dialog.dismiss"))


@proxy_type("Frame")
class Frame(ChannelOwner):
    def __init__(
        self, parent: ChannelOwner, type_name: str, guid: str, initializer: dict[str, Any]
    ) -> None:
        super().__init__(parent, type_name, guid, initializer)
        self._page: Page | None = None
        self._url: str = initializer.get("url", "")
        self._on_channel_event("navigated", self._on_navigated)

    @property
    def url(self) -> str:
        return self._url

    @property
    def name(self) -> str:
        return self._initializer.get("name", "")

    @property
    def parent_frame(self) -> Frame | None:
        return self._initializer.get("parentFrame")

    @property
    def page(self) -> Page | None:
        return self._page

    async def goto(self, url: str) -> Response | None:
        result = await self._send("goto", {"url": url})
        return result.get("response") if result else None

    def _on_navigated(self, params: dict[str, Any]) -> None:
        self._url = params["url"]
        if self._page is not None:
            self._page.emit("framenavigated", self)


@proxy_type("Dialog")
class Dialog(ChannelOwner):
    def __init__(
        self, parent: ChannelOwner, type_name: str, guid: str, initializer: dict[str, Any]
    ) -> None:
        super().__init__(parent, type_name, guid, initializer)
        self._handled = False

    def __repr__(self) -> str:
        return f"<Dialog type={self.type!r} message={self.message!r}>"

    @property
    def type(self) -> str:
        return self._initializer["type"]

    @property
    def message(self) -> str:
        return self._initializer["message"]

    @property
    def default_value(self) -> str:
        return self._initializer.get("defaultValue", "")

    @property
    def handled(self) -> bool:
        return self._handled

    def accept(self, prompt_text: str | None = None) -> asyncio.Future[Any]:
        self._start_handling()
        params = {} if prompt_text is None else {"promptText": prompt_text}
        return self._send("accept", params)

    def dismiss(self) -> asyncio.Future[Any]:
        self._start_handling()
        return self._send("dismiss")

    def _start_handling(self) -> None:
        if self._handled:
            raise AlreadyHandled("Dialog is already handled!")
        self._handled = True
