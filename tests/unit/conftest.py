import asyncio
import threading

import pytest

import config.settings as settings
from broker.events import EventBus
from broker.router import TopicRouter
from gateway.context import AppContext
from gateway.web import close_app, create_app
from registry.devices import DeviceRegistry


@pytest.fixture(autouse=True)
def test_env(monkeypatch):
    # short timeouts so failing paths finish quickly
    monkeypatch.setattr(settings, "WRITE_TIMEOUT", 0.5)
    monkeypatch.setattr(settings, "PUBLISH_TIMEOUT", 2.0)
    monkeypatch.setattr(settings, "KEEPALIVE_TIMEOUT", 5.0)
    yield


@pytest.fixture
def background_loop():
    """An event loop on a daemon thread, standing in for the broker's loop."""
    loop = asyncio.new_event_loop()
    thr = threading.Thread(target=loop.run_forever, daemon=True)
    thr.start()
    yield loop
    loop.call_soon_threadsafe(loop.stop)
    thr.join(timeout=5)
    loop.close()


@pytest.fixture
def context(background_loop):
    return AppContext(registry=DeviceRegistry(),
                      router=TopicRouter(),
                      events=EventBus(),
                      loop=background_loop)


@pytest.fixture
def app(context):
    app = create_app(context)
    yield app
    close_app(app)


@pytest.fixture
def client(app):
    return app.test_client()
