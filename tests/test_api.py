import json

import pytest
from fastapi.testclient import TestClient

from autofill_bridge.extension.channel import ChannelResponse, InMemoryChannel, property_list_item
from autofill_bridge.extension.orchestrator import AutofillBridge
from autofill_bridge.extension.page_scripts import (
    COLLECT_FIELDS_SCRIPT,
    DOWNGRADE_CHECK_SCRIPT,
    FAKE_TEST_SCRIPT,
    FILL_OPERATION_SCRIPT,
)
from autofill_bridge.server.api import app, get_bridge, get_browser_factory


class FakePage:
    def __init__(self):
        self.url = ""
        self.values: dict[str, str] = {}

    async def evaluate(self, script, arg=None):
        if script is COLLECT_FIELDS_SCRIPT:
            return json.dumps(
                {
                    "documentUUID": arg["sessionId"],
                    "url": self.url,
                    "fields": [{"opid": "__0", "elementNumber": 0, "type": "password"}],
                }
            )
        if script is FAKE_TEST_SCRIPT:
            return {}
        if script is DOWNGRADE_CHECK_SCRIPT:
            return {"protocol": self.url.split("//")[0], "passwordFields": 1}
        if script is FILL_OPERATION_SCRIPT:
            opid, value = arg["parameters"]
            self.values[opid] = value
            return [opid]
        raise AssertionError("unexpected script")


class FakeBrowser:
    pages: list[FakePage] = []

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        return None

    async def goto(self, url):
        page = FakePage()
        page.url = url
        FakeBrowser.pages.append(page)
        return page


def _returning(result):
    async def handler(item):
        return ChannelResponse(returned_items=[property_list_item(result)], completed=True)

    return handler


@pytest.fixture
def channel():
    return InMemoryChannel()


@pytest.fixture
def client(channel):
    FakeBrowser.pages = []
    bridge = AutofillBridge(channel, layout="compact")
    app.dependency_overrides[get_bridge] = lambda: bridge
    app.dependency_overrides[get_browser_factory] = lambda: FakeBrowser
    yield TestClient(app)
    app.dependency_overrides.clear()


def test_status_reports_availability(client):
    resp = client.get("/api/status")

    assert resp.status_code == 200
    body = resp.json()
    assert body["available"] is True
    assert body["protocol_version"] == 185
    assert body["layout"] == "compact"


def test_find_login_returns_login(client, channel):
    channel.handler = _returning({"username": "alice", "password": "s3cret"})

    resp = client.post("/api/logins/find", json={"url_string": "https://example.com"})

    assert resp.status_code == 200
    assert resp.json() == {"login": {"username": "alice", "password": "s3cret"}}


def test_find_login_cancel_is_conflict(client):
    resp = client.post("/api/logins/find", json={"url_string": "https://example.com"})

    assert resp.status_code == 409
    assert resp.json()["error"]["code"] == 0
    assert resp.json()["error"]["domain"] == "AutofillBridge"


def test_find_login_without_url_is_bad_request(client):
    resp = client.post("/api/logins/find", json={"url_string": ""})

    assert resp.status_code == 400


def test_unavailable_extension_is_service_unavailable(client, channel):
    channel.available = False

    resp = client.post("/api/logins/find", json={"url_string": "https://example.com"})

    assert resp.status_code == 503
    assert resp.json()["error"]["code"] == 1


def test_transport_error_is_bad_gateway(client, channel):
    async def handler(item):
        return ChannelResponse(activity_error=ConnectionError("refused"))

    channel.handler = handler

    resp = client.post("/api/logins/find", json={"url_string": "https://example.com"})

    assert resp.status_code == 502
    assert resp.json()["error"]["code"] == 2
    assert resp.json()["error"]["underlying_error"] == "refused"


def test_save_login_forwards_details(client, channel):
    channel.handler = _returning({"username": "alice", "password": "generated"})

    resp = client.post(
        "/api/logins/save",
        json={
            "url_string": "https://acme.example",
            "login_details": {"username": "alice", "login_title": "ACME"},
            "password_generator_options": {"password_min_length": 20},
        },
    )

    assert resp.status_code == 200
    assert resp.json()["login"]["password"] == "generated"
    sent = channel.sent_items[0].attachments[0]
    assert sent.type_identifier == "org.appextension.save-login-action"
    assert sent.item["login_title"] == "ACME"
    assert sent.item["password_generator_options"] == {"password_min_length": 20}


def test_change_password(client, channel):
    channel.handler = _returning({"password": "new"})

    resp = client.post(
        "/api/logins/change-password",
        json={"url_string": "https://acme.example", "login_details": {"old_password": "old"}},
    )

    assert resp.status_code == 200
    assert channel.sent_items[0].attachments[0].type_identifier == "org.appextension.change-password-action"


def test_fill_page(client, channel):
    channel.handler = _returning(
        {"fillScript": {"script": [["fill_by_opid", "__0", "s3cret"]], "properties": {"delay_between_operations": 0}}}
    )

    resp = client.post("/api/fill", json={"url": "https://example.com/login"})

    assert resp.status_code == 200
    body = resp.json()
    assert body["success"] is True
    assert body["aborted"] is False
    assert body["used_opids"] == ["__0"]
    assert FakeBrowser.pages[0].values == {"__0": "s3cret"}
    assert channel.sent_items[0].attachments[0].type_identifier == "org.appextension.fill-webview-action"


INSECURE_FILL = {
    "fillScript": {
        "script": [["fill_by_opid", "__0", "s3cret"]],
        "savedURL": "https://example.com/login",
        "properties": {"delay_between_operations": 0},
    }
}


def test_fill_http_page_with_https_login_is_declined_by_default(client, channel):
    channel.handler = _returning(INSECURE_FILL)

    resp = client.post("/api/fill", json={"url": "http://example.com/login"})

    assert resp.status_code == 200
    body = resp.json()
    assert body["success"] is True
    assert body["aborted"] is True
    assert body["abort_reason"] == "insecure_page_declined"
    assert body["used_opids"] == []
    assert FakeBrowser.pages[0].values == {}


def test_fill_http_page_when_insecure_fill_allowed(client, channel):
    channel.handler = _returning(INSECURE_FILL)

    resp = client.post("/api/fill", json={"url": "http://example.com/login", "allow_insecure_fill": True})

    assert resp.status_code == 200
    body = resp.json()
    assert body["aborted"] is False
    assert body["abort_reason"] is None
    assert FakeBrowser.pages[0].values == {"__0": "s3cret"}


def test_fill_page_without_script_is_server_error(client, channel):
    channel.handler = _returning({"username": "alice"})

    resp = client.post("/api/fill", json={"url": "https://example.com/login", "show_only_logins": False})

    assert resp.status_code == 500
    assert resp.json()["error"]["code"] == 5
    assert channel.sent_items[0].attachments[0].type_identifier == "org.appextension.fill-browser-action"


def test_create_extension_item(client):
    resp = client.post("/api/extension-items", json={"url": "https://example.com/login"})

    assert resp.status_code == 200
    body = resp.json()
    assert body["type_identifier"] == "org.appextension.fill-browser-action"
    assert body["item"]["url_string"] == "https://example.com/login"
    assert body["item"]["version_number"] == 185
    assert body["item"]["pageDetails"]["fields"][0]["opid"] == "__0"
