"""
Brief: Tests for the pinning web API and Host-header dispatch of the HTTP app.

Inputs:
  - None

Outputs:
  - None
"""

import time

import pytest
import yaml
from fastapi.testclient import TestClient

from dforever.config import settings as settings_mod
from dforever.config.store import CanonicalStore
from dforever.servers.webapi import SessionStore
from dforever.servers.webserver import AppContext, create_app

from conftest import KEY_A, KEY_B

API_CONFIG = """\
directory: {directory}
domain: foo.bar
httpMirror: true
webapi:
  username: robert
  password: hunter2
dpacks:
  - url: dweb://{key}/
    name: mysite
    otherDomains:
      - mysite.com
redirects:
  - from: old.com
    to: https://new.com
"""


@pytest.fixture
def api_setup(write_config, tmp_path):
    """
    Brief: Running app (lifespan entered) over a temporary config.

    Inputs:
      - write_config: fixture writing YAML files
      - tmp_path: temporary directory

    Outputs:
      - (TestClient, CanonicalStore, storage directory path)
    """
    directory = tmp_path / "store"
    path = write_config(API_CONFIG.format(directory=directory, key=KEY_A))
    store = CanonicalStore(path)
    app = create_app(AppContext(store))
    with TestClient(app, base_url="http://foo.bar") as client:
        yield client, store, directory


def _login(client):
    response = client.post("/v1/accounts/login", json={"username": "robert", "password": "hunter2"})
    assert response.status_code == 200
    return {"Authorization": "Bearer " + response.json()["sessionToken"]}


def _wait_for(predicate, attempts=100):
    for _ in range(attempts):
        if predicate():
            return True
        time.sleep(0.02)
    return False


def test_psa_document(api_setup):
    """
    Brief: The service description is public and links both APIs.

    Inputs:
      - api_setup: fixture

    Outputs:
      - None
    """
    client, _store, _dir = api_setup
    body = client.get("/.well-known/psa").json()
    assert body["PSA"] == 1
    assert body["title"] == "My dPack Forever Service"
    assert [link["href"] for link in body["links"]] == ["/v1/accounts", "/v1/dpacks"]


def test_login_and_logout(api_setup):
    """
    Brief: Wrong credentials are 403; a token works until logout.

    Inputs:
      - api_setup: fixture

    Outputs:
      - None
    """
    client, _store, _dir = api_setup
    bad = client.post("/v1/accounts/login", json={"username": "robert", "password": "nope"})
    assert bad.status_code == 403
    assert bad.json() == {"message": "Invalid username or password."}

    headers = _login(client)
    account = client.get("/v1/accounts/account", headers=headers)
    assert account.json() == {"username": "robert"}

    assert client.post("/v1/accounts/logout", headers=headers).status_code == 200
    after = client.get("/v1/accounts/account", headers=headers)
    assert after.status_code == 401
    assert after.json() == {"message": "You must sign in to access this resource."}


def test_requires_session(api_setup):
    """
    Brief: dPack routes answer 401 without a bearer token.

    Inputs:
      - api_setup: fixture

    Outputs:
      - None
    """
    client, _store, _dir = api_setup
    assert client.get("/v1/dpacks").status_code == 401
    assert client.get("/v1/dpacks", headers={"Authorization": "Bearer forged"}).status_code == 401


def test_list_dpacks(api_setup):
    """
    Brief: Listing returns the dweb URL, name and every additional URL.

    Inputs:
      - api_setup: fixture

    Outputs:
      - None
    """
    client, _store, _dir = api_setup
    items = client.get("/v1/dpacks", headers=_login(client)).json()["items"]
    assert items == [
        {
            "url": f"dweb://{KEY_A}/",
            "name": "mysite",
            "additionalUrls": [
                "dweb://mysite.foo.bar",
                "https://mysite.foo.bar",
                "dweb://mysite.com",
                "https://mysite.com",
            ],
        }
    ]


@pytest.mark.parametrize(
    "payload,message",
    [
        (
            {"name": "x"},
            "Invalid DPack url (None). Must provide the url of the DPack you wish to pin.",
        ),
        (
            {"url": "dweb://short/", "name": "x"},
            "Invalid DPack url (dweb://short/). Must provide the url of the DPack you wish to pin.",
        ),
        ({"url": KEY_B}, "Invalid name (None). Must provide a name for the DPack."),
        ({"url": KEY_B, "name": "x", "domains": ["bad domain!"]}, "Invalid domain (bad domain!)."),
    ],
)
def test_add_dpack_rejects_invalid_entries(api_setup, payload, message):
    """
    Brief: Invalid add requests are 422 with a field-specific message and no write.

    Inputs:
      - api_setup: fixture
      - payload: request body
      - message: expected error message

    Outputs:
      - None
    """
    client, store, _dir = api_setup
    response = client.post("/v1/dpacks/add", json=payload, headers=_login(client))
    assert response.status_code == 422
    assert response.json() == {"message": message}
    assert len(store.canonical["dpacks"]) == 1


def test_add_dpack_persists_and_starts_vhost(api_setup):
    """
    Brief: An added dPack is written to the file and becomes reachable by host.

    Inputs:
      - api_setup: fixture

    Outputs:
      - None
    """
    client, store, directory = api_setup
    headers = _login(client)
    response = client.post(
        "/v1/dpacks/add",
        json={"url": f"dweb://{KEY_B}/", "name": "othersite", "domains": "othersite.com"},
        headers=headers,
    )
    assert response.status_code == 200

    with open(store.config_path, encoding="utf-8") as f:
        written = yaml.safe_load(f)
    assert written["dpacks"][1] == {
        "url": f"dweb://{KEY_B}/",
        "name": "othersite",
        "otherDomains": ["othersite.com"],
    }
    assert "ports" not in written

    # Duplicate adds are accepted without a second entry.
    again = client.post("/v1/dpacks/add", json={"url": KEY_B, "name": "dup"}, headers=headers)
    assert again.status_code == 200
    assert len(store.canonical["dpacks"]) == 2

    assert _wait_for(lambda: (directory / KEY_B).is_dir())
    (directory / KEY_B / "index.html").write_text("<p>other</p>")
    served = client.get("/", headers={"host": "othersite.com"})
    assert served.status_code == 200
    assert served.text == "<p>other</p>"


def test_remove_dpack(api_setup):
    """
    Brief: Remove validates the url, then drops the entry and its vhost.

    Inputs:
      - api_setup: fixture

    Outputs:
      - None
    """
    client, store, _dir = api_setup
    headers = _login(client)
    bad = client.post("/v1/dpacks/remove", json={"url": "nope"}, headers=headers)
    assert bad.status_code == 422
    assert bad.json() == {
        "message": "Invalid DPack url (nope). Must provide the url of the DPack you wish to unpin."
    }

    response = client.post("/v1/dpacks/remove", json={"url": f"dweb://{KEY_A}/"}, headers=headers)
    assert response.status_code == 200
    assert store.canonical["dpacks"] == []
    assert _wait_for(lambda: client.get("/", headers={"host": "mysite.com"}).status_code == 404)


def test_get_and_update_item(api_setup):
    """
    Brief: Items are addressed by key; updates change name and domains only.

    Inputs:
      - api_setup: fixture

    Outputs:
      - None
    """
    client, store, _dir = api_setup
    headers = _login(client)
    missing = client.get(f"/v1/dpacks/item/{KEY_B}", headers=headers)
    assert missing.status_code == 404
    assert missing.json() == {"message": "DPack not found"}
    assert client.post(f"/v1/dpacks/item/{KEY_B}", json={"name": "x"}, headers=headers).status_code == 404

    invalid = client.post(f"/v1/dpacks/item/{KEY_A}", json={"domains": ["-bad-"]}, headers=headers)
    assert invalid.status_code == 422

    updated = client.post(
        f"/v1/dpacks/item/{KEY_A}",
        json={"name": "renamed", "domains": ["renamed.org"]},
        headers=headers,
    )
    assert updated.status_code == 200
    item = client.get(f"/v1/dpacks/item/{KEY_A}", headers=headers).json()
    assert item["name"] == "renamed"
    assert "dweb://renamed.org" in item["additionalUrls"]
    assert store.canonical["dpacks"][0]["url"] == f"dweb://{KEY_A}/"


def test_host_dispatch(api_setup):
    """
    Brief: Mirror and redirect hosts reach their sites; unknown hosts get 404.

    Inputs:
      - api_setup: fixture

    Outputs:
      - None
    """
    client, _store, directory = api_setup
    (directory / KEY_A / "hello.txt").write_text("hello")

    mirror = client.get("/hello.txt", headers={"host": "mysite.foo.bar"})
    assert mirror.status_code == 200
    assert mirror.text == "hello"

    redirect = client.get("/page?x=1", headers={"host": "old.com"}, follow_redirects=False)
    assert redirect.status_code == 301
    assert redirect.headers["location"] == "https://new.com/page?x=1"

    unknown = client.get("/", headers={"host": "nowhere.example"})
    assert unknown.status_code == 404
    assert unknown.text == "404 Unknown Host"


def test_api_host_requires_webapi_block(write_config, tmp_path):
    """
    Brief: Without a webapi block the domain host is not special.

    Inputs:
      - write_config: fixture writing YAML files
      - tmp_path: temporary directory

    Outputs:
      - None
    """
    store = CanonicalStore(write_config(f"directory: {tmp_path / 'store'}\ndomain: foo.bar\n"))
    context = AppContext(store, sessions=SessionStore())
    assert context.is_webapi_host("foo.bar") is False
    with TestClient(create_app(context), base_url="http://foo.bar") as client:
        response = client.get("/.well-known/psa")
    assert response.status_code == 404
    assert response.text == "404 Unknown Host"


def test_api_host_is_computed_per_store_change(write_config, tmp_path, monkeypatch):
    """
    Brief: The API hostname is derived on store events, not on every request.

    Inputs:
      - write_config: fixture writing YAML files
      - tmp_path: temporary directory
      - monkeypatch: pytest fixture

    Outputs:
      - None
    """
    calls = []

    def _hostname():
        calls.append(1)
        return "Box.Local"

    monkeypatch.setattr(settings_mod.socket, "gethostname", _hostname)
    path = write_config(f"directory: {tmp_path / 'store'}\nwebapi:\n  username: a\n  password: b\n")
    store = CanonicalStore(path, hostname_fallback=True)
    context = AppContext(store)
    after_init = len(calls)
    assert context.webapi_host == "box.local"

    for _ in range(5):
        assert context.is_webapi_host("box.local:8080")
    assert len(calls) == after_init

    write_config(f"directory: {tmp_path / 'store'}\ndomain: api.example\nwebapi:\n  username: a\n  password: b\n")
    store.load()
    assert context.is_webapi_host("api.example")
    assert not context.is_webapi_host("box.local")

    write_config(f"directory: {tmp_path / 'store'}\ndomain: api.example\n")
    store.load()
    assert context.webapi_host is None
