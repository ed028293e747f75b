"""Waiters: timeouts, predicates, closure and the page-level event helpers."""

import asyncio

import pytest

from playchannel import AlreadyHandled, Connection, QueueTransport, TargetClosed, TimeoutError


async def settle(rounds=10):
    for _ in range(rounds):
        await asyncio.sleep(0)


def open_dialog(driver, page, dialog_type="confirm", message="Are you sure?"):
    dialog = driver.create(page._guid, "Dialog", {"type": dialog_type, "message": message, "defaultValue": ""})
    driver.event(page._guid, "dialog", {"dialog": {"guid": dialog._guid}})
    return dialog


class TestWaitForEvent:
    @pytest.mark.asyncio
    async def test_resolves_with_next_page(self, driver):
        context = driver.context()
        waiting = context.wait_for_page()
        page = driver.page(context)
        assert await waiting is page
        assert context.pages == [page]

    @pytest.mark.asyncio
    async def test_does_not_see_earlier_events(self, driver):
        context = driver.context()
        driver.page(context)
        with pytest.raises(TimeoutError) as exc_info:
            await context.wait_for_page(timeout=50)
        assert 'Timeout 50ms exceeded while waiting for event "page"' in str(exc_info.value)

    @pytest.mark.asyncio
    async def test_timeout_removes_listener(self, driver):
        context = driver.context()
        with pytest.raises(TimeoutError):
            await context.wait_for_page(timeout=10)
        assert context.listener_count("page") == 0
        assert context._waiters == set()

    @pytest.mark.asyncio
    async def test_predicate_skips_non_matching_events(self, driver):
        context = driver.context()
        waiting = context.wait_for_page(lambda page: page.url.endswith("/two"))
        driver.page(context, url="https://example.com/one")
        assert not waiting.done()
        second = driver.page(context, url="https://example.com/two")
        assert await waiting is second

    @pytest.mark.asyncio
    async def test_predicate_error_rejects_waiter(self, driver):
        context = driver.context()

        def predicate(page):
            raise ValueError("bad predicate")

        waiting = context.wait_for_page(predicate)
        driver.page(context)
        with pytest.raises(ValueError, match="bad predicate"):
            await waiting
        assert context.listener_count("page") == 0

    @pytest.mark.asyncio
    async def test_connection_default_timeout_applies(self):
        connection = Connection(QueueTransport(), {"default_timeout_ms": 20})
        try:
            connection.dispatch({
                "guid": "",
                "method": "__create__",
                "params": {"type": "Widget", "guid": "widget@1", "initializer": {}},
            })
            widget = connection.get_object("widget@1")
            with pytest.raises(TimeoutError):
                await widget.wait_for_event("never")
        finally:
            connection.close()

    @pytest.mark.asyncio
    async def test_zero_timeout_waits_until_event(self, driver):
        obj = driver.create("", "Widget")
        waiting = obj.wait_for_event("late", timeout=0)
        await asyncio.sleep(0.05)
        assert not waiting.done()
        driver.event(obj._guid, "late", {"value": 1})
        assert await waiting == {"value": 1}


class TestClosure:
    @pytest.mark.asyncio
    async def test_page_close_rejects_page_waiters(self, driver):
        context = driver.context()
        page = driver.page(context)
        popup = page.wait_for_popup()
        dialog = page.wait_for_dialog()

        driver.event(page._guid, "close")

        for waiting in (popup, dialog):
            with pytest.raises(TargetClosed):
                await waiting
        assert page.is_closed()
        assert context.pages == []

    @pytest.mark.asyncio
    async def test_waiting_on_closed_page_fails_immediately(self, driver):
        context = driver.context()
        page = driver.page(context)
        driver.event(page._guid, "close")
        waiting = page.wait_for_popup()
        assert waiting.done()
        with pytest.raises(TargetClosed):
            await waiting

    @pytest.mark.asyncio
    async def test_context_close_rejects_context_waiters(self, driver):
        context = driver.context()
        waiting = context.wait_for_page()
        closed = []
        context.on("close", closed.append)

        driver.event(context._guid, "close")

        with pytest.raises(TargetClosed):
            await waiting
        assert context.is_closed()
        assert closed == [context]

    @pytest.mark.asyncio
    async def test_connection_close_rejects_waiters(self, driver):
        context = driver.context()
        page = driver.page(context)
        waiters = [context.wait_for_page(), page.wait_for_popup(), page.wait_for_dialog()]

        driver.connection.close("driver crashed")

        results = await asyncio.gather(*waiters, return_exceptions=True)
        assert [type(r) for r in results] == [TargetClosed] * 3
        assert page.is_closed()

    @pytest.mark.asyncio
    async def test_page_crash_rejects_page_waiters(self, driver):
        context = driver.context()
        page = driver.page(context)
        crashed = []
        page.on("crash", crashed.append)
        waiting = page.wait_for_popup()

        driver.event(page._guid, "crash")

        with pytest.raises(TargetClosed, match="Page crashed"):
            await waiting
        assert crashed == [page]


class TestPopups:
    @pytest.mark.asyncio
    async def test_popup_is_reported_to_opener(self, driver):
        context = driver.context()
        page = driver.page(context, url="https://example.com/")
        waiting = page.wait_for_popup()
        context_pages = []
        context.on("page", context_pages.append)

        popup = driver.page(context, opener=page, url="https://example.com/popup")

        assert await waiting is popup
        assert popup.opener is page
        assert popup.context is context
        assert context_pages == [popup]
        assert context.pages == [page, popup]

    @pytest.mark.asyncio
    async def test_page_without_opener_is_not_a_popup(self, driver):
        context = driver.context()
        page = driver.page(context)
        popups = []
        page.on("popup", popups.append)
        other = driver.page(context)
        assert other.opener is None
        assert popups == []


class TestDialogs:
    @pytest.mark.asyncio
    async def test_wait_for_dialog_and_accept(self, driver):
        context = driver.context()
        page = driver.page(context)
        waiting = page.wait_for_dialog()

        dialog = open_dialog(driver, page, "prompt", "Name?")

        assert await waiting is dialog
        assert dialog.type == "prompt"
        assert dialog.message == "Name?"
        await dialog.accept("Ada")
        assert driver.calls("accept", dialog._guid)[0]["params"] == {"promptText": "Ada"}

    @pytest.mark.asyncio
    async def test_dialog_can_only_be_handled_once(self, driver):
        context = driver.context()
        page = driver.page(context)
        page.on("dialog", lambda dialog: None)
        dialog = open_dialog(driver, page)

        await dialog.dismiss()
        with pytest.raises(AlreadyHandled, match="Dialog is already handled!"):
            dialog.accept()
        assert driver.calls("accept") == []
        assert dialog.handled

    @pytest.mark.asyncio
    async def test_dialog_without_listener_is_dismissed(self, driver):
        context = driver.context()
        page = driver.page(context)
        dialog = open_dialog(driver, page, "alert", "Hi")
        await driver.wait_for_call("dismiss", dialog._guid)
        assert dialog.handled

    @pytest.mark.asyncio
    async def test_dialog_listener_decides(self, driver):
        context = driver.context()
        page = driver.page(context)
        page.on("dialog", lambda dialog: dialog.accept())
        dialog = open_dialog(driver, page)
        await driver.wait_for_call("accept", dialog._guid)
        await settle()
        assert driver.calls("dismiss") == []


class TestNetworkWaiters:
    @pytest.mark.asyncio
    async def test_wait_for_request_matches_url(self, driver):
        context = driver.context()
        page = driver.page(context)
        waiting = page.wait_for_request("**/*.js")

        css = driver.request(context, "https://example.com/style.css", resource_type="stylesheet")
        driver.event(context._guid, "request", {"request": {"guid": css._guid}, "page": {"guid": page._guid}})
        assert not waiting.done()
        js = driver.request(context, "https://example.com/app.js", resource_type="script")
        driver.event(context._guid, "request", {"request": {"guid": js._guid}, "page": {"guid": page._guid}})

        assert await waiting is js

    @pytest.mark.asyncio
    async def test_wait_for_response_matches_url(self, driver):
        context = driver.context()
        page = driver.page(context)
        waiting = page.wait_for_response(lambda url: url.endswith("/api"))

        request = driver.request(context, "https://example.com/api")
        response = driver.create(
            request._guid,
            "Response",
            {"url": request.url, "status": 200, "headers": [], "request": {"guid": request._guid}},
        )
        driver.event(context._guid, "response", {"response": {"guid": response._guid}, "page": {"guid": page._guid}})

        assert await waiting is response
        assert response.request is request
