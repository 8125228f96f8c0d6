import base64
import json

import httpx
import pytest

from conftest import make_settings
from mapmarked.errors import RenderFailed, RenderTimedOut
from mapmarked.renderer import RendererClient, RenderParams

pytestmark = pytest.mark.anyio

PARAMS = RenderParams(
    lng=-97.7431,
    lat=30.2672,
    zoom=12,
    theme_id="copper",
    city="Austin",
    state="Texas",
    coordinates="30.2672° N / 97.7431° W",
    paid=True,
    focus_lat=30.27,
    focus_lng=-97.74,
)


def render_server(statuses):
    """Fake render server replaying `statuses` for GET /status/{jobId}."""
    requests = []
    queue = list(statuses)

    def handler(request: httpx.Request) -> httpx.Response:
        requests.append(request)
        if request.method == "POST" and request.url.path == "/render":
            return httpx.Response(200, json={"jobId": "job-42"})
        if request.url.path == "/status/job-42":
            item = queue.pop(0) if queue else {"status": "processing"}
            if isinstance(item, int):
                return httpx.Response(item, json={"error": "boom"})
            return httpx.Response(200, json=item)
        return httpx.Response(404)

    return httpx.MockTransport(handler), requests


async def test_render_returns_image_bytes():
    image = base64.b64encode(b"jpeg-bytes").decode()
    transport, requests = render_server([{"status": "queued"}, 503, {"status": "completed", "imageBase64": image}])
    client = RendererClient(make_settings(), transport=transport)

    assert await client.render(PARAMS) == b"jpeg-bytes"

    submit = requests[0]
    assert submit.headers["x-render-secret"] == "render-secret"
    body = json.loads(submit.content)
    assert body["width"] == 5400 and body["height"] == 7200
    assert body["paid"] is True
    assert body["themeId"] == "copper"
    assert (body["focusLat"], body["focusLng"]) == (30.27, -97.74)
    assert all(r.headers["x-render-secret"] == "render-secret" for r in requests)
    assert len(requests) == 4


async def test_render_job_failure():
    transport, _ = render_server([{"status": "failed", "error": "WebGL context lost"}])
    client = RendererClient(make_settings(), transport=transport)

    with pytest.raises(RenderFailed, match="WebGL context lost"):
        await client.render(PARAMS)


async def test_render_timeout():
    transport, requests = render_server([])
    client = RendererClient(make_settings(RENDER_MAX_ATTEMPTS=3), transport=transport)

    with pytest.raises(RenderTimedOut):
        await client.render(PARAMS)
    assert len(requests) == 1 + 3


async def test_render_submit_rejected():
    def handler(request):
        return httpx.Response(401, json={"error": "Unauthorized"})

    client = RendererClient(make_settings(), transport=httpx.MockTransport(handler))
    with pytest.raises(RenderFailed):
        await client.render(PARAMS)


async def test_render_requires_configuration():
    client = RendererClient(make_settings(RENDER_SERVER_URL="", RENDER_SECRET=""))
    assert client.configured is False
    with pytest.raises(RenderFailed):
        await client.render(PARAMS)


def test_payload_omits_focus_when_absent():
    params = RenderParams(lng=0, lat=0, zoom=3, theme_id="obsidian", city="X", state="Y", coordinates="")
    payload = params.as_payload()
    assert "focusLat" not in payload
    assert payload["paid"] is False
