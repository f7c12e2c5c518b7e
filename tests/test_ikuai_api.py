from __future__ import annotations

import base64
import hashlib
from typing import Any

import pytest

import ikuai_api
from bypass_config import DEFAULT_REQUEST_TIMEOUT, StreamIpPortSource
from bypass_sources import FetchError, fetch_stream_ipports
from fakes import FakeResponse
from ikuai_api import (
    COMMENT,
    IKuaiClient,
    IKuaiError,
    LoginError,
    check_api_response,
    encode_credentials,
)


class FakeSession:
    def __init__(self, responses: list[FakeResponse]) -> None:
        self.headers: dict[str, str] = {}
        self.responses = list(responses)
        self.posts: list[tuple[str, Any, int]] = []

    def post(self, url: str, json: Any = None, timeout: int = 30) -> FakeResponse:
        self.posts.append((url, json, timeout))
        return self.responses.pop(0)


def ok(data: Any = None) -> FakeResponse:
    return FakeResponse(payload={"Result": 30000, "ErrMsg": "Success", "Data": data})


def test_encode_credentials() -> None:
    payload = encode_credentials("admin", "secret")

    assert payload["username"] == "admin"
    assert payload["passwd"] == hashlib.md5(b"secret").hexdigest()
    assert base64.b64decode(payload["pass"]) == b"salt_11secret"
    assert payload["remember_password"] == ""


def test_check_api_response_rejects_http_error() -> None:
    with pytest.raises(IKuaiError, match="HTTP 502"):
        check_api_response(FakeResponse(502, "bad gateway"), "login", 10000)


def test_check_api_response_rejects_non_json() -> None:
    with pytest.raises(IKuaiError, match="non-JSON"):
        check_api_response(FakeResponse(200, "<html>"), "login", 10000)


def test_check_api_response_rejects_unexpected_result() -> None:
    response = FakeResponse(payload={"Result": 10001, "ErrMsg": "Wrong password"})

    with pytest.raises(IKuaiError, match="Wrong password"):
        check_api_response(response, "login", 10000)


def test_login_posts_to_login_action() -> None:
    session = FakeSession([FakeResponse(payload={"Result": 10000, "ErrMsg": "Success"})])
    client = IKuaiClient("http://192.168.9.1/", timeout=5, session=session)

    client.login("admin", "secret")

    url, payload, timeout = session.posts[0]
    assert url == "http://192.168.9.1/Action/login"
    assert payload["username"] == "admin"
    assert timeout == 5


def test_login_failure_raises_login_error() -> None:
    session = FakeSession([FakeResponse(payload={"Result": 10001, "ErrMsg": "Wrong password"})])
    client = IKuaiClient("http://192.168.9.1", session=session)

    with pytest.raises(LoginError):
        client.login("admin", "wrong")


def test_show_all_follows_pages(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setattr(ikuai_api, "PAGE_SIZE", 2)
    session = FakeSession([
        ok({"total": 3, "data": [{"id": 1}, {"id": 2}]}),
        ok({"total": 3, "data": [{"id": 3}]}),
    ])
    client = IKuaiClient("http://router", session=session)

    items = client.show_all("custom_isp")

    assert [i["id"] for i in items] == [1, 2, 3]
    assert [p[1]["param"]["limit"] for p in session.posts] == ["0,2", "2,2"]
    assert session.posts[0][1]["action"] == "show"


def test_delete_bypass_deletes_only_own_entries() -> None:
    session = FakeSession([
        ok({"total": 3, "data": [
            {"id": 1, "comment": COMMENT},
            {"id": 2, "comment": "manual"},
            {"id": 3, "comment": COMMENT},
        ]}),
        ok(),
    ])
    client = IKuaiClient("http://router", session=session)

    assert client.delete_bypass("stream_domain") == 2
    _, payload, _ = session.posts[1]
    assert payload == {"func_name": "stream_domain", "action": "del", "param": {"id": "1,3"}}


def test_delete_bypass_with_nothing_to_delete() -> None:
    session = FakeSession([ok({"total": 0, "data": []})])
    client = IKuaiClient("http://router", session=session)

    assert client.delete_bypass("ipgroup") == 0
    assert len(session.posts) == 1


def test_add_ip_group_tags_entry() -> None:
    session = FakeSession([ok()])
    client = IKuaiClient("http://router", session=session)

    client.add_ip_group("telegram_0", "91.108.4.0/22,149.154.160.0/20")

    _, payload, _ = session.posts[0]
    assert payload["func_name"] == "ipgroup"
    assert payload["action"] == "add"
    assert payload["param"]["group_name"] == "telegram_0"
    assert payload["param"]["addr_pool"] == "91.108.4.0/22,149.154.160.0/20"
    assert payload["param"]["comment"] == COMMENT


def test_add_failure_raises() -> None:
    session = FakeSession([FakeResponse(payload={"Result": 30001, "ErrMsg": "duplicate name"})])
    client = IKuaiClient("http://router", session=session)

    with pytest.raises(IKuaiError, match="duplicate name"):
        client.add_custom_isp("chnroute", "1.0.1.0/24")


def test_get_ip_group_names_orders_chunks() -> None:
    session = FakeSession([
        ok({"total": 6, "data": [
            {"id": 1, "group_name": "telegram_1", "comment": COMMENT},
            {"id": 2, "group_name": "telegram_0", "comment": COMMENT},
            {"id": 3, "group_name": "telegram2", "comment": COMMENT},
            {"id": 4, "group_name": "telegram_10", "comment": COMMENT},
            {"id": 5, "group_name": "telegram_2", "comment": "manual"},
            {"id": 6, "group_name": "telegram", "comment": COMMENT},
        ]}),
    ])
    client = IKuaiClient("http://router", session=session)

    names = client.get_ip_group_names("telegram")

    assert names == ["telegram", "telegram_0", "telegram_1", "telegram_10"]
    param = session.posts[0][1]["param"]
    assert param["FINDS"] == "group_name"
    assert param["KEYWORDS"] == "telegram"


@pytest.mark.parametrize(
    ("data", "message"),
    [
        ([{"id": 1}], "malformed Data"),
        ({"total": "n/a", "data": []}, "malformed total"),
        ({"total": 1, "data": {"id": 1}}, "malformed entry list"),
        ({"total": 2, "data": ["telegram_0", "telegram_1"]}, "malformed entry list"),
    ],
)
def test_show_all_rejects_malformed_reply(data: Any, message: str) -> None:
    session = FakeSession([ok(data)])
    client = IKuaiClient("http://router", session=session)

    with pytest.raises(IKuaiError, match=message):
        client.show_all("ipgroup")


def test_delete_bypass_rejects_entries_without_id() -> None:
    session = FakeSession([ok({"total": 1, "data": [{"comment": COMMENT}]})])
    client = IKuaiClient("http://router", session=session)

    with pytest.raises(IKuaiError, match="without an id"):
        client.delete_bypass("custom_isp")
    assert len(session.posts) == 1


def test_malformed_group_listing_aborts_port_rule_fetch() -> None:
    session = FakeSession([ok({"total": "n/a", "data": []})])
    client = IKuaiClient("http://router", session=session)
    source = StreamIpPortSource(type="0", interface="wan2", ip_group="telegram")

    with pytest.raises(FetchError) as excinfo:
        fetch_stream_ipports([source], client)

    assert excinfo.value.source == "telegram"
    assert "malformed total" in str(excinfo.value)


def test_client_default_timeout_matches_config_default() -> None:
    session = FakeSession([ok()])
    client = IKuaiClient("http://router", session=session)

    client.add_custom_isp("chnroute", "1.0.1.0/24")

    assert session.posts[0][2] == DEFAULT_REQUEST_TIMEOUT
