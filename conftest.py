"""
Shared pytest fixtures for the CHABS test suite.

The cloud backend runs in-process: FlaskTransport stands in for a
requests.Session and routes every call into the Flask test client, so the
remote provider and the sync coordinator are tested end to end without a
socket. Flip `transport.down = True` to simulate a lost network.
"""
import os
import http.client
from urllib.parse import urlsplit

import pytest
import requests

from chabs.core.config import load_settings
from chabs.storage.record_store import RecordStore
from chabs.storage.local import LocalProvider
from chabs.storage.remote import RemoteProvider

API_KEY = "test-api-key"
REMOTE_URL = "http://cloud.test"


# ── Temp data directory (per-test isolation) ──────────────────────────────────

@pytest.fixture(autouse=True)
def temp_data_dir(tmp_path, monkeypatch):
    """Point CHABS at an isolated tmp directory and clear CHABS_* env vars."""
    for key in list(os.environ):
        if key.startswith("CHABS_"):
            monkeypatch.delenv(key, raising=False)
    data = str(tmp_path / "data")
    os.makedirs(data, exist_ok=True)
    monkeypatch.setenv("CHABS_DATA_DIR", data)
    return data


@pytest.fixture
def settings(temp_data_dir):
    return load_settings({"CHABS_DATA_DIR": temp_data_dir})


@pytest.fixture
def store(temp_data_dir):
    return RecordStore(os.path.join(temp_data_dir, "client.db"))


@pytest.fixture
def local(store):
    return LocalProvider(store)


# ── Cloud backend ─────────────────────────────────────────────────────────────

@pytest.fixture
def backend_app(temp_data_dir):
    """Flask cloud backend with its own record store and an API key."""
    from app import create_app
    cloud_dir = os.path.join(temp_data_dir, "cloud")
    settings = load_settings({
        "CHABS_DATA_DIR": cloud_dir,
        "CHABS_SERVER_API_KEY": API_KEY,
    })
    app = create_app(settings, configure_logging=False)
    app.config["TESTING"] = True
    return app


@pytest.fixture
def backend(backend_app):
    return backend_app.extensions["chabs_backend"]


class AuthenticatedClient:
    """Wraps Flask test client to add the Bearer header to every request."""
    def __init__(self, client, headers):
        self._client = client
        self._headers = headers

    def _call(self, method, *args, **kwargs):
        kwargs.setdefault("headers", {}).update(self._headers)
        return getattr(self._client, method)(*args, **kwargs)

    def get(self, *args, **kwargs):
        return self._call("get", *args, **kwargs)

    def post(self, *args, **kwargs):
        return self._call("post", *args, **kwargs)

    def put(self, *args, **kwargs):
        return self._call("put", *args, **kwargs)

    def patch(self, *args, **kwargs):
        return self._call("patch", *args, **kwargs)

    def delete(self, *args, **kwargs):
        return self._call("delete", *args, **kwargs)


@pytest.fixture
def client(backend_app):
    """Test client that sends the API key on every request."""
    with backend_app.test_client() as c:
        yield AuthenticatedClient(c, {"Authorization": f"Bearer {API_KEY}"})


@pytest.fixture
def anon_client(backend_app):
    with backend_app.test_client() as c:
        yield c


# ── requests-compatible transport into the Flask app ─────────────────────────

class FlaskTransport:
    """Quacks like requests.Session.request(), answered by a Flask app."""

    def __init__(self, app):
        self._client = app.test_client()
        self.down = False
        self.calls = []

    def request(self, method, url, json=None, params=None, headers=None, timeout=None):
        self.calls.append((method, urlsplit(url).path))
        if self.down:
            raise requests.ConnectionError(f"network down: {method} {url}")
        resp = self._client.open(urlsplit(url).path, method=method, json=json,
                                 query_string=params or {}, headers=headers or {})
        out = requests.models.Response()
        out.status_code = resp.status_code
        out._content = resp.get_data()
        out.headers.update(dict(resp.headers))
        out.reason = http.client.responses.get(resp.status_code, "")
        out.url = url
        return out

    def close(self):
        pass


@pytest.fixture
def transport(backend_app):
    return FlaskTransport(backend_app)


@pytest.fixture
def remote(transport):
    provider = RemoteProvider(REMOTE_URL, api_key=API_KEY, timeout=2.0,
                              session=transport, poll_interval=3600)
    yield provider
    provider.close()


# ── Sample data factories ─────────────────────────────────────────────────────

@pytest.fixture
def widget():
    return {"name": "Widget", "sku": "W1", "cost_price": 2.5, "selling_price": 4.0,
            "stock": 10, "minimum_stock": 3}


@pytest.fixture
def customer(local):
    return local.create("customers", {"name": "Acme Ltd", "email": "buyer@acme.example",
                                      "company": "Acme"})


@pytest.fixture
def order_items():
    return [
        {"product_id": "prod_a", "quantity": 2, "unit_price": 10.0},
        {"product_id": "prod_b", "quantity": 1, "unit_price": 5.0, "discount": 10},
    ]
