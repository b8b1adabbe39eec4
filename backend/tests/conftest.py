"""
Pytest fixtures for possync tests.

Provides a per-test server database, two tenants with bearer tokens, the
Flask test client, and terminals (client-side sync stacks) whose HTTP calls
are bridged into the Flask app in-process.
"""

import asyncio

import httpx
import pytest

from possync import create_app
from possync.extensions import db
from possync.models import Store
from possync.services.auth_service import issue_token
from possync.client.config import ClientConfig
from possync.client.engine import SyncEngine, StrategyConfig
from possync.client.errors import ErrorStream
from possync.client.journal import MutationJournal
from possync.client.local_store import LocalStore
from possync.client.mutations import LocalWriter
from possync.client.transport import SyncApi


@pytest.fixture(scope='function')
def app(tmp_path):
    """Application bound to a fresh SQLite file."""
    app = create_app({
        'TESTING': True,
        'APP_ENV': 'testing',
        'JWT_SECRET': 'test-secret',
        'SQLALCHEMY_DATABASE_URI': f"sqlite:///{tmp_path / 'server.sqlite3'}",
        'PULL_PAGE_LIMIT': 500,
    })

    with app.app_context():
        db.create_all()
        yield app
        db.session.remove()
        db.drop_all()


@pytest.fixture(scope='function')
def client(app):
    """Create test client."""
    return app.test_client()


@pytest.fixture(scope='function')
def store_a(app):
    """Store A (first tenant)."""
    store = Store(name="Store A - Main Street", code="A1")
    db.session.add(store)
    db.session.commit()
    return store


@pytest.fixture(scope='function')
def store_b(app):
    """Store B (second tenant)."""
    store = Store(name="Store B - Harbour", code="B1")
    db.session.add(store)
    db.session.commit()
    return store


@pytest.fixture(scope='function')
def token_a(app, store_a):
    return issue_token("user-a", store_a.id)


@pytest.fixture(scope='function')
def token_b(app, store_b):
    return issue_token("user-b", store_b.id)


@pytest.fixture(scope='function')
def headers_a(token_a):
    return auth_headers(token_a)


@pytest.fixture(scope='function')
def headers_b(token_b):
    return auth_headers(token_b)


def auth_headers(token: str) -> dict:
    """Helper to create Authorization headers."""
    return {'Authorization': f'Bearer {token}'}


# =============================================================================
# CLIENT SIDE
# =============================================================================


class FlaskBridge:
    """
    httpx transport handler that forwards requests to the Flask test client.

    `fail_with` makes every request fail (an httpx exception to raise, or a
    status code to answer with) until cleared; `requests` records
    (method, path) pairs.
    """

    def __init__(self, app):
        self.client = app.test_client()
        self.requests = []
        self.fail_with = None
        self.on_request = None

    async def __call__(self, request: httpx.Request) -> httpx.Response:
        # Yield once so concurrent triggers interleave the way real I/O would
        await asyncio.sleep(0)
        self.requests.append((request.method, request.url.path))
        if self.on_request is not None:
            self.on_request(request)

        if isinstance(self.fail_with, int):
            return httpx.Response(self.fail_with, json={"error": "injected failure"})
        if self.fail_with is not None:
            raise self.fail_with("injected failure", request=request)

        headers = {
            k: v for k, v in request.headers.items()
            if k.lower() in ("authorization", "content-type")
        }
        resp = self.client.open(
            path=request.url.path,
            method=request.method,
            query_string=request.url.query.decode(),
            headers=headers,
            data=request.content,
        )
        return httpx.Response(
            resp.status_code,
            headers={"content-type": resp.content_type or "application/json"},
            content=resp.get_data(),
        )

    def count(self, method: str, prefix: str = "/api/") -> int:
        return sum(1 for m, p in self.requests if m == method and p.startswith(prefix))

    def reset(self):
        self.requests.clear()


class Terminal:
    """One POS terminal: local store, journal, writer, engine."""

    def __init__(self, app, db_path, store_id, token, *, strategies=None, page_limit=500):
        self.bridge = FlaskBridge(app)
        self.store_id = store_id
        self.errors = ErrorStream()
        self.store = LocalStore(str(db_path))
        self.journal = MutationJournal(self.store, errors=self.errors)
        self.writer = LocalWriter(self.store, self.journal, store_id)
        self.api = SyncApi("http://pos.test", token, transport=httpx.MockTransport(self.bridge))
        self.signed_out = False
        self.engine = SyncEngine(
            self.store, self.journal, self.api, store_id,
            config=ClientConfig(store_id=store_id, pull_page_limit=page_limit, backoff_jitter=0.0),
            strategies=strategies or StrategyConfig(),
            errors=self.errors,
            on_unauthenticated=self._signed_out,
        )

    def _signed_out(self):
        self.signed_out = True

    def sync(self, reason="test"):
        return asyncio.run(self.engine.sync(reason))

    def row(self, entity, local_id):
        return self.store.get(entity, local_id)

    def by_server_id(self, entity, server_id):
        return self.store.find_by_server_id(entity, self.store_id, server_id)

    def close(self):
        self.store.close()


@pytest.fixture(scope='function')
def terminal(app, tmp_path, store_a, token_a):
    """Factory for terminals of store A (or another store/token)."""
    made = []

    def _make(name="t1", store_id=None, token=None, **kwargs):
        t = Terminal(
            app,
            tmp_path / f"{name}.sqlite3",
            store_id or store_a.id,
            token or token_a,
            **kwargs,
        )
        made.append(t)
        return t

    yield _make
    for t in made:
        t.close()


@pytest.fixture(scope='function')
def bridge(app):
    """Bare HTTP bridge into the app, for sessions built from a ClientConfig."""
    return FlaskBridge(app)


@pytest.fixture(scope='function')
def local_store(tmp_path):
    store = LocalStore(str(tmp_path / "local.sqlite3"))
    yield store
    store.close()


@pytest.fixture(scope='function')
def journal(local_store):
    return MutationJournal(local_store, soft_cap=5, errors=ErrorStream())


@pytest.fixture(scope='function')
def writer(local_store, journal):
    return LocalWriter(local_store, journal, "store-a")
