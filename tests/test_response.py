import asyncio

from autofill_bridge.errors import ErrorCode
from autofill_bridge.extension.channel import ChannelResponse, property_list_item
from autofill_bridge.extension.response import process_channel_response, process_extension_item
from autofill_bridge.models import PROPERTY_LIST_TYPE, ExtensionItem, ItemProvider


def test_no_items_without_error_is_cancellation():
    result, error = asyncio.run(process_channel_response(ChannelResponse()))

    assert result is None
    assert error.code is ErrorCode.CANCELLED_BY_USER
    assert error.is_cancellation


def test_transport_error_wins_over_cancellation():
    transport_error = ConnectionError("bridge went away")

    result, error = asyncio.run(process_channel_response(ChannelResponse(activity_error=transport_error)))

    assert result is None
    assert error.code is ErrorCode.FAILED_TO_CONTACT_EXTENSION
    assert error.underlying_error is transport_error


def test_item_without_attachments_is_unexpected_data():
    result, error = asyncio.run(process_extension_item(ExtensionItem(attachments=[])))

    assert result is None
    assert error.code is ErrorCode.UNEXPECTED_DATA


def test_attachment_of_wrong_type_is_unexpected_data():
    item = ExtensionItem(attachments=[ItemProvider(type_identifier="public.plain-text", item={"a": 1})])

    result, error = asyncio.run(process_extension_item(item))

    assert result is None
    assert error.code is ErrorCode.UNEXPECTED_DATA


def test_loader_failure_is_wrapped():
    failure = RuntimeError("provider exploded")

    async def loader():
        raise failure

    item = ExtensionItem(attachments=[ItemProvider(type_identifier=PROPERTY_LIST_TYPE, loader=loader)])

    result, error = asyncio.run(process_extension_item(item))

    assert result is None
    assert error.code is ErrorCode.FAILED_TO_LOAD_ITEM_PROVIDER_DATA
    assert error.underlying_error is failure


def test_empty_payload_is_load_failure():
    result, error = asyncio.run(process_extension_item(property_list_item({})))

    assert result is None
    assert error.code is ErrorCode.FAILED_TO_LOAD_ITEM_PROVIDER_DATA
    assert error.underlying_error is None


def test_payload_passes_through_after_load_completes():
    loaded = []

    async def loader():
        await asyncio.sleep(0)
        loaded.append(True)
        return {"username": "alice", "password": "s3cret", "custom": {"nested": [1, 2]}}

    item = ExtensionItem(attachments=[ItemProvider(type_identifier=PROPERTY_LIST_TYPE, loader=loader)])

    result, error = asyncio.run(process_channel_response(ChannelResponse(returned_items=[item])))

    assert error is None
    assert loaded == [True]
    assert result == {"username": "alice", "password": "s3cret", "custom": {"nested": [1, 2]}}


def test_only_first_returned_item_is_used():
    first = property_list_item({"username": "first"})
    second = property_list_item({"username": "second"})

    result, error = asyncio.run(process_channel_response(ChannelResponse(returned_items=[first, second])))

    assert error is None
    assert result == {"username": "first"}
