import base64
import hashlib
import hmac
import json
import time
from io import BytesIO

import anyio
import httpx
import pytest
import stripe
from fastapi.testclient import TestClient
from PIL import Image

from mapmarked import interface
from mapmarked.mockup_storage import MockupStorage
from mapmarked.order_storage import MemoryOrderStorage
from mapmarked.payments import PaymentGateway
from mapmarked.printful import PrintfulClient
from mapmarked.rate_limit import limiter
from mapmarked.renderer import RendererClient
from mapmarked.server import app
from mapmarked.settings import Settings

WEBHOOK_SECRET = "whsec_test_secret"

SHIPPING_SESSION = {
    "id": "cs_test_1",
    "object": "checkout.session",
    "mode": "payment",
    "payment_status": "paid",
    "shipping_details": {
        "name": "Jane Doe",
        "address": {
            "line1": "100 Congress Ave",
            "line2": "Suite 200",
            "city": "Austin",
            "state": "TX",
            "country": "US",
            "postal_code": "78701",
        },
    },
    "customer_details": {"name": "Jane D.", "email": "jane@example.com"},
}


def make_settings(**overrides) -> Settings:
    values = dict(
        APP_ENV="development",
        STRIPE_SECRET_KEY="sk_test_123",
        STRIPE_WEBHOOK_SECRET=WEBHOOK_SECRET,
        PRINTFUL_API_KEY="pf_test_key",
        PRINTFUL_API_URL="https://printful.test",
        RENDER_SERVER_URL="https://render.test",
        RENDER_SECRET="render-secret",
        MAPBOX_TOKEN="pk.test-token",
        HOSTED_IMAGE_HOSTS="blob.test",
        CLOUDINARY_CLOUD_NAME="",
        CLOUDINARY_API_KEY="",
        CLOUDINARY_API_SECRET="",
        MOCKUP_POLL_INTERVAL_SECONDS=0,
        RENDER_POLL_INTERVAL_SECONDS=0,
        MOCKUP_MAX_ATTEMPTS=5,
        STANDALONE_MOCKUP_MAX_ATTEMPTS=5,
        FILE_READY_MAX_ATTEMPTS=5,
        RENDER_MAX_ATTEMPTS=5,
    )
    values.update(overrides)
    return Settings(**values)


# --- Fake Printful API ---

class FakePrintful:
    """In-process stand-in for the Printful REST API, served via httpx.MockTransport."""

    FILE_URL = "https://files.printful.test/101.jpg"

    def __init__(self):
        self.requests = []
        self.upload_status = 200
        self.upload_returns_url = True
        self.order_status = 200
        self.file_status = "ok"
        self.mockup_status = "completed"
        self.mockup_task_html = False  # create-task answers 200 with a non-JSON body
        self.mockup_extras = [
            {"title": "Front", "url": "https://mockups.test/front.jpg"},
            {"title": "Living Room Lifestyle", "url": "https://mockups.test/lifestyle.jpg"},
        ]
        self.next_order_id = 5550001

    def calls(self, method: str, path: str):
        return [r for r in self.requests if r.method == method and r.url.path == path]

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        path = request.url.path

        if request.method == "POST" and path == "/files":
            if self.upload_status != 200:
                return httpx.Response(self.upload_status, text="upload rejected")
            result = {"id": 101, "status": "waiting"}
            result["url"] = self.FILE_URL if self.upload_returns_url else None
            return httpx.Response(200, json={"code": 200, "result": result})

        if request.method == "GET" and path == "/files/101":
            return httpx.Response(200, json={"result": {"id": 101, "status": self.file_status, "url": self.FILE_URL}})

        if request.method == "POST" and path == "/orders":
            if self.order_status != 200:
                return httpx.Response(self.order_status, text="order rejected")
            order_id = self.next_order_id
            self.next_order_id += 1
            return httpx.Response(200, json={"code": 200, "result": {"id": order_id, "status": "draft"}})

        if request.method == "POST" and path == "/mockup-generator/create-task/3":
            if self.mockup_task_html:
                return httpx.Response(200, text="<html>bad gateway</html>")
            return httpx.Response(200, json={"result": {"task_key": "gt-1", "status": "pending"}})

        if request.method == "GET" and path == "/mockup-generator/task":
            if self.mockup_status == "completed":
                result = {
                    "task_key": "gt-1",
                    "status": "completed",
                    "mockups": [{
                        "placement": "default",
                        "mockup_url": "https://mockups.test/main.jpg",
                        "extra": self.mockup_extras,
                    }],
                }
            elif self.mockup_status == "failed":
                result = {"task_key": "gt-1", "status": "failed", "error": "bad file"}
            else:
                result = {"task_key": "gt-1", "status": "pending"}
            return httpx.Response(200, json={"result": result})

        return httpx.Response(404, json={"error": "not found"})

    def transport(self) -> httpx.MockTransport:
        return httpx.MockTransport(self.handler)


# --- Fake Stripe SDK calls ---

class FakeStripe:
    def __init__(self, monkeypatch):
        self.created = []
        self.sessions = {}
        self.subscriptions = {}
        self.retrieve_calls = 0
        self.error = None
        monkeypatch.setattr(stripe.checkout.Session, "create", self._create)
        monkeypatch.setattr(stripe.checkout.Session, "retrieve", self._retrieve)
        monkeypatch.setattr(stripe.Subscription, "retrieve", self._retrieve_subscription)

    def _create(self, **params):
        if self.error:
            raise self.error
        self.created.append(params)
        session_id = f"cs_test_{len(self.created)}"
        return {"id": session_id, "url": f"https://checkout.stripe.test/{session_id}"}

    def _retrieve(self, session_id, **kwargs):
        self.retrieve_calls += 1
        if self.error:
            raise self.error
        if session_id not in self.sessions:
            raise stripe.InvalidRequestError(f"No such checkout.session: {session_id}", "id")
        return self.sessions[session_id]

    def _retrieve_subscription(self, subscription_id, **kwargs):
        if self.error:
            raise self.error
        return self.subscriptions[subscription_id]


# --- Fixtures ---

@pytest.fixture
def anyio_backend():
    return "asyncio"


@pytest.fixture(autouse=True)
def reset_rate_limiter():
    limiter.reset()
    yield
    limiter.reset()


@pytest.fixture
def config() -> Settings:
    return make_settings()


@pytest.fixture
def storage() -> MemoryOrderStorage:
    return MemoryOrderStorage()


@pytest.fixture
def fake_printful() -> FakePrintful:
    return FakePrintful()


@pytest.fixture
def fake_stripe(monkeypatch) -> FakeStripe:
    return FakeStripe(monkeypatch)


@pytest.fixture
def image_data_url() -> str:
    buf = BytesIO()
    Image.new("RGB", (8, 8), color=(180, 90, 40)).save(buf, format="JPEG")
    return "data:image/jpeg;base64," + base64.b64encode(buf.getvalue()).decode("ascii")


@pytest.fixture
def run():
    """Drives a coroutine to completion from a sync test."""

    def _run(coro):
        async def _await():
            return await coro
        return anyio.run(_await)

    return _run


@pytest.fixture
def render_requests():
    return []


@pytest.fixture
def build_client(storage, fake_printful, fake_stripe, render_requests):
    """Returns a factory: build_client(config) -> TestClient wired to the fakes."""
    image_b64 = base64.b64encode(b"\xff\xd8\xff\xe0fake-jpeg").decode("ascii")

    def render_handler(request: httpx.Request) -> httpx.Response:
        render_requests.append(request)
        if request.method == "POST" and request.url.path == "/render":
            return httpx.Response(200, json={"jobId": "job-1"})
        return httpx.Response(200, json={"status": "completed", "imageBase64": image_b64})

    def _build(cfg: Settings) -> TestClient:
        gateway = PaymentGateway(cfg)
        printful = PrintfulClient(cfg, transport=fake_printful.transport())
        renderer = RendererClient(cfg, transport=httpx.MockTransport(render_handler))
        app.dependency_overrides[interface.get_order_storage] = lambda: storage
        app.dependency_overrides[interface.get_payment_gateway] = lambda: gateway
        app.dependency_overrides[interface.get_printful_client] = lambda: printful
        app.dependency_overrides[interface.get_renderer_client] = lambda: renderer
        app.dependency_overrides[interface.get_mockup_storage] = lambda: MockupStorage(cfg)
        app.dependency_overrides[interface.get_settings] = lambda: cfg
        return TestClient(app)

    yield _build
    app.dependency_overrides.clear()


@pytest.fixture
def client(build_client, config) -> TestClient:
    return build_client(config)


@pytest.fixture
def sign_event():
    """sign_event(event, secret) -> (raw_body, headers) using Stripe's v1 scheme."""

    def _sign(event: dict, secret: str = WEBHOOK_SECRET):
        payload = json.dumps(event).encode("utf-8")
        timestamp = int(time.time())
        signed = f"{timestamp}.{payload.decode('utf-8')}".encode("utf-8")
        signature = hmac.new(secret.encode("utf-8"), signed, hashlib.sha256).hexdigest()
        return payload, {"stripe-signature": f"t={timestamp},v1={signature}", "content-type": "application/json"}

    return _sign


def completed_event(session_id: str, event_type: str = "checkout.session.completed") -> dict:
    return {
        "id": f"evt_{session_id}",
        "object": "event",
        "type": event_type,
        "data": {"object": {"id": session_id, "object": "checkout.session"}},
    }


@pytest.fixture
def make_event():
    return completed_event


@pytest.fixture
def shipping_session():
    return json.loads(json.dumps(SHIPPING_SESSION))
