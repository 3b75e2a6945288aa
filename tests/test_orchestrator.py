import asyncio
import json
import threading

import pytest
from playwright.async_api import Error as PlaywrightError

from autofill_bridge.errors import ErrorCode
from autofill_bridge.extension.channel import ChannelResponse, InMemoryChannel, property_list_item
from autofill_bridge.extension.coordination import Coordinator
from autofill_bridge.extension.orchestrator import SCRIPT_MISSING_MESSAGE, AutofillBridge, FlowState
from autofill_bridge.extension.page_scripts import (
    AUTOSUBMIT_SCRIPT,
    COLLECT_FIELDS_SCRIPT,
    FAKE_TEST_SCRIPT,
    FILL_OPERATION_SCRIPT,
)
from autofill_bridge.models import PROTOCOL_VERSION


class FakePage:
    def __init__(self, url: str = "https://example.com/login", fail_collect: bool = False):
        self.url = url
        self.fail_collect = fail_collect
        self.values = {"__0": "", "__1": ""}
        self.calls: list[str] = []

    async def evaluate(self, script, arg=None):
        if script is COLLECT_FIELDS_SCRIPT:
            self.calls.append("collect")
            if self.fail_collect:
                raise PlaywrightError("Execution context was destroyed")
            return json.dumps(
                {
                    "documentUUID": arg["sessionId"],
                    "title": "Sign in",
                    "url": self.url,
                    "documentURL": self.url,
                    "forms": {"__form__0": {"opid": "__form__0"}},
                    "fields": [
                        {"opid": "__0", "elementNumber": 0, "type": "text", "htmlName": "username"},
                        {"opid": "__1", "elementNumber": 1, "type": "password", "htmlName": "password"},
                    ],
                    "collectedTimestamp": 1,
                }
            )
        if script is FAKE_TEST_SCRIPT:
            self.calls.append("fake_test")
            return {}
        if script is FILL_OPERATION_SCRIPT:
            self.calls.append("fill")
            if arg["operation"] == "fill_by_opid":
                opid, value = arg["parameters"]
                self.values[opid] = value
                return [opid]
            return []
        if script is AUTOSUBMIT_SCRIPT:
            self.calls.append("autosubmit")
            return {"submitted": True, "method": "form"}
        raise AssertionError("unexpected script")


LOGIN_FILL_SCRIPT = {
    "script": [["fill_by_opid", "__0", "alice"], ["fill_by_opid", "__1", "s3cret"]],
    "metadata": {"action": "fillLogin"},
    "properties": {"delay_between_operations": 0},
}


def _returning(result: dict):
    async def handler(item):
        await asyncio.sleep(0)
        return ChannelResponse(returned_items=[property_list_item(result)], completed=True)

    return handler


def _bridge(channel, **kwargs):
    kwargs.setdefault("layout", "compact")
    return AutofillBridge(channel, **kwargs)


def _sent_item(channel, index=0):
    return channel.sent_items[index].attachments[0]


# -- capability probe -------------------------------------------------------------------


def test_unavailable_extension_fails_without_round_trip():
    channel = InMemoryChannel(available=False)
    bridge = _bridge(channel)
    page = FakePage()

    async def run():
        return (
            await bridge.find_login("https://example.com"),
            await bridge.store_login("https://example.com", {"username": "alice"}),
            await bridge.fill_item(page),
        )

    find, store, fill = asyncio.run(run())

    assert find.error.code is ErrorCode.API_NOT_AVAILABLE
    assert store.error.code is ErrorCode.API_NOT_AVAILABLE
    assert fill.error.code is ErrorCode.API_NOT_AVAILABLE
    assert fill.success is False
    assert channel.sent_items == []
    assert page.calls == []
    assert bridge.last_flow.round_trips == 0


# -- login actions ------------------------------------------------------------------------


def test_find_login_returns_selected_login():
    channel = InMemoryChannel(handler=_returning({"username": "alice", "password": "s3cret", "totp": "123456"}))
    bridge = _bridge(channel)

    result = asyncio.run(bridge.find_login("https://example.com/login"))

    assert result.ok
    assert result.login == {"username": "alice", "password": "s3cret", "totp": "123456"}
    attachment = _sent_item(channel)
    assert attachment.type_identifier == "org.appextension.find-login-action"
    assert attachment.item == {"url_string": "https://example.com/login", "version_number": PROTOCOL_VERSION}
    assert bridge.last_flow.states == [FlowState.IDLE, FlowState.AWAITING_CHANNEL_RESPONSE, FlowState.DONE]
    assert bridge.last_flow.round_trips == 1


def test_find_login_requires_url():
    bridge = _bridge(InMemoryChannel())

    with pytest.raises(ValueError):
        asyncio.run(bridge.find_login(""))


def test_user_cancel_is_cancelled_by_user():
    bridge = _bridge(InMemoryChannel())

    result = asyncio.run(bridge.find_login("https://example.com"))

    assert result.login is None
    assert result.error.code is ErrorCode.CANCELLED_BY_USER


def test_transport_error_is_failed_to_contact_extension():
    transport_error = ConnectionError("bridge went away")

    async def handler(item):
        return ChannelResponse(activity_error=transport_error)

    result = asyncio.run(_bridge(InMemoryChannel(handler=handler)).find_login("https://example.com"))

    assert result.error.code is ErrorCode.FAILED_TO_CONTACT_EXTENSION
    assert result.error.underlying_error is transport_error


def test_channel_exception_is_failed_to_contact_extension():
    async def handler(item):
        raise OSError("socket closed")

    result = asyncio.run(_bridge(InMemoryChannel(handler=handler)).find_login("https://example.com"))

    assert result.error.code is ErrorCode.FAILED_TO_CONTACT_EXTENSION
    assert isinstance(result.error.underlying_error, OSError)


def test_store_login_sends_details_and_generator_options():
    channel = InMemoryChannel(handler=_returning({"username": "alice", "password": "generated-9f2"}))
    bridge = _bridge(channel)

    result = asyncio.run(
        bridge.store_login(
            "https://acme.example",
            {"username": "alice", "login_title": "ACME", "membership": "gold"},
            {"password_min_length": 16},
        )
    )

    assert result.login["password"] == "generated-9f2"
    attachment = _sent_item(channel)
    assert attachment.type_identifier == "org.appextension.save-login-action"
    assert attachment.item["membership"] == "gold"
    assert attachment.item["password_generator_options"] == {"password_min_length": 16}


def test_store_login_with_empty_url_is_unexpected_data():
    channel = InMemoryChannel()

    result = asyncio.run(_bridge(channel).store_login("", {"username": "alice"}))

    assert result.error.code is ErrorCode.UNEXPECTED_DATA
    assert channel.sent_items == []


def test_change_password_uses_change_action():
    channel = InMemoryChannel(handler=_returning({"password": "new", "old_password": "old"}))

    result = asyncio.run(
        _bridge(channel).change_password_for_login("https://example.com", {"username": "alice", "old_password": "old"})
    )

    assert result.login == {"password": "new", "old_password": "old"}
    assert _sent_item(channel).type_identifier == "org.appextension.change-password-action"


def test_wide_layout_requires_sender():
    bridge = _bridge(InMemoryChannel(), layout="wide")

    with pytest.raises(ValueError):
        asyncio.run(bridge.find_login("https://example.com"))
    with pytest.raises(ValueError):
        asyncio.run(bridge.fill_item(FakePage()))


# -- page filling -------------------------------------------------------------------------


def test_fill_item_collects_exchanges_and_fills():
    channel = InMemoryChannel(handler=_returning({"fillScript": json.dumps(LOGIN_FILL_SCRIPT)}))
    bridge = _bridge(channel)
    page = FakePage()

    outcome = asyncio.run(bridge.fill_item(page))

    assert outcome.success is True
    assert outcome.error is None
    assert outcome.fill_result.used_opids == ["__0", "__1"]
    assert page.values == {"__0": "alice", "__1": "s3cret"}
    assert page.calls == ["collect", "fake_test", "fill", "fill"]

    attachment = _sent_item(channel)
    assert attachment.type_identifier == "org.appextension.fill-webview-action"
    assert attachment.item["url_string"] == page.url
    assert attachment.item["version_number"] == PROTOCOL_VERSION
    assert [f["opid"] for f in attachment.item["pageDetails"]["fields"]] == ["__0", "__1"]
    assert bridge.last_flow.states == [
        FlowState.IDLE,
        FlowState.AWAITING_COLLECTION,
        FlowState.AWAITING_CHANNEL_RESPONSE,
        FlowState.AWAITING_FILL_EXECUTION,
        FlowState.DONE,
    ]


def test_fill_item_for_all_item_types_uses_browser_action():
    channel = InMemoryChannel(handler=_returning({"fillScript": LOGIN_FILL_SCRIPT}))

    outcome = asyncio.run(_bridge(channel).fill_item(FakePage(), show_only_logins=False))

    assert outcome.success is True
    assert _sent_item(channel).type_identifier == "org.appextension.fill-browser-action"


def test_fill_item_without_script_fails():
    channel = InMemoryChannel(handler=_returning({"username": "alice"}))
    page = FakePage()

    outcome = asyncio.run(_bridge(channel).fill_item(page))

    assert outcome.success is False
    assert outcome.error.code is ErrorCode.FILL_FIELDS_SCRIPT_FAILED
    assert outcome.error.message == SCRIPT_MISSING_MESSAGE
    assert "fill" not in page.calls


def test_fill_item_with_malformed_script_fails():
    channel = InMemoryChannel(handler=_returning({"fillScript": "{not json"}))

    outcome = asyncio.run(_bridge(channel).fill_item(FakePage()))

    assert outcome.error.code is ErrorCode.FILL_FIELDS_SCRIPT_FAILED
    assert outcome.error.underlying_error.code is ErrorCode.UNEXPECTED_DATA


def test_fill_item_without_page_url_fails():
    channel = InMemoryChannel(handler=_returning({"fillScript": LOGIN_FILL_SCRIPT}))

    outcome = asyncio.run(_bridge(channel).fill_item(FakePage(url="")))

    assert outcome.error.code is ErrorCode.FAILED_TO_OBTAIN_URL_STRING_FROM_WEB_VIEW
    assert channel.sent_items == []


def test_collection_failure_stops_before_channel():
    channel = InMemoryChannel(handler=_returning({"fillScript": LOGIN_FILL_SCRIPT}))

    outcome = asyncio.run(_bridge(channel).fill_item(FakePage(fail_collect=True)))

    assert outcome.error.code is ErrorCode.COLLECT_FIELDS_SCRIPT_FAILED
    assert channel.sent_items == []


def test_cancelled_fill_leaves_page_untouched():
    page = FakePage()

    outcome = asyncio.run(_bridge(InMemoryChannel()).fill_item(page))

    assert outcome.error.code is ErrorCode.CANCELLED_BY_USER
    assert page.values == {"__0": "", "__1": ""}


def test_fill_flows_on_one_page_do_not_interleave():
    channel = InMemoryChannel(handler=_returning({"fillScript": LOGIN_FILL_SCRIPT}))
    bridge = _bridge(channel)
    page = FakePage()

    async def run():
        return await asyncio.gather(bridge.fill_item(page), bridge.fill_item(page))

    first, second = asyncio.run(run())

    assert first.success and second.success
    assert page.calls == ["collect", "fake_test", "fill", "fill"] * 2


# -- custom channel UI support ---------------------------------------------------------------


def test_extension_item_for_page_then_fill_returned_items():
    bridge = _bridge(InMemoryChannel())
    page = FakePage()

    async def run():
        created = await bridge.create_extension_item_for_page(page)
        returned = [property_list_item({"fillScript": json.dumps(LOGIN_FILL_SCRIPT)})]
        filled = await bridge.fill_returned_items(returned, page)
        return created, filled

    created, filled = asyncio.run(run())

    assert created.error is None
    attachment = created.item.attachments[0]
    assert attachment.type_identifier == "org.appextension.fill-browser-action"
    assert attachment.item["pageDetails"]["url"] == page.url
    assert filled.success is True
    assert page.values["__1"] == "s3cret"
    assert filled.fill_result.document_uuid == attachment.item["pageDetails"]["documentUUID"]


def test_fill_returned_items_without_items_is_cancellation():
    outcome = asyncio.run(_bridge(InMemoryChannel()).fill_returned_items(None, FakePage()))

    assert outcome.error.code is ErrorCode.CANCELLED_BY_USER


def test_is_extension_activity_type():
    bridge = _bridge(InMemoryChannel())

    assert bridge.is_extension_activity_type("com.agilebits.onepassword-ios.extension")
    assert not bridge.is_extension_activity_type("com.example.share")


# -- coordination -------------------------------------------------------------------------------


def test_submit_delivers_completion_on_coordination_loop():
    seen = []
    channel = InMemoryChannel(handler=_returning({"username": "alice"}))

    async def main():
        bridge = _bridge(channel, coordinator=Coordinator())

        def from_worker():
            future = bridge.submit(
                bridge.find_login("https://example.com"),
                lambda result: seen.append((result.login, threading.get_ident())),
            )
            return future.result(timeout=5)

        result = await asyncio.get_running_loop().run_in_executor(None, from_worker)
        return result, threading.get_ident()

    result, loop_thread = asyncio.run(main())

    assert result.login == {"username": "alice"}
    assert seen == [({"username": "alice"}, loop_thread)]


def test_submit_from_worker_binds_loop_the_bridge_was_built_on():
    seen = []

    async def main():
        bridge = _bridge(InMemoryChannel(available=False))

        def from_worker():
            future = bridge.submit(
                bridge.find_login("https://example.com"),
                lambda result: seen.append((result.error.code, threading.get_ident())),
            )
            return future.result(timeout=5)

        result = await asyncio.get_running_loop().run_in_executor(None, from_worker)
        return result, threading.get_ident()

    result, loop_thread = asyncio.run(main())

    assert result.error.code is ErrorCode.API_NOT_AVAILABLE
    assert seen == [(ErrorCode.API_NOT_AVAILABLE, loop_thread)]


def test_submit_without_coordination_loop_is_rejected():
    bridge = _bridge(InMemoryChannel())

    with pytest.raises(RuntimeError, match="no coordination loop"):
        bridge.submit(bridge.find_login("https://example.com"), lambda result: None)
