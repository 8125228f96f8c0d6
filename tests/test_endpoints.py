import base64
import json

from conftest import make_settings

PRINT_BODY = {
    "center": [-97.7431, 30.2672],
    "zoom": 12,
    "themeId": "copper",
    "cityName": "Austin",
    "stateName": "Texas",
    "coordinates": "30.2672° N / 97.7431° W",
    "detailLineType": "coordinates",
}


# --- /generate-mockup ---

def test_generate_mockup(client, fake_printful, image_data_url):
    resp = client.post("/api/generate-mockup", json={"imageDataUrl": image_data_url, "filename": "preview.jpg"})

    assert resp.status_code == 200
    assert resp.json() == {"mockupUrl": "https://mockups.test/lifestyle.jpg"}
    upload = json.loads(fake_printful.calls("POST", "/files")[0].content)
    assert upload["filename"] == "preview.jpg"


def test_generate_mockup_timeout(client, fake_printful, image_data_url):
    fake_printful.mockup_status = "pending"

    resp = client.post("/api/generate-mockup", json={"imageDataUrl": image_data_url})

    assert resp.status_code == 500
    assert resp.json() == {"detail": "Mockup generation timed out"}
    assert len(fake_printful.calls("GET", "/mockup-generator/task")) == 5


def test_generate_mockup_failed(client, fake_printful, image_data_url):
    fake_printful.mockup_status = "failed"

    resp = client.post("/api/generate-mockup", json={"imageDataUrl": image_data_url})

    assert resp.status_code == 500
    assert resp.json() == {"detail": "Mockup generation failed"}


def test_generate_mockup_upload_failure_hides_provider_body(client, fake_printful, image_data_url):
    fake_printful.upload_status = 401

    resp = client.post("/api/generate-mockup", json={"imageDataUrl": image_data_url})

    assert resp.status_code == 500
    assert "upload rejected" not in resp.text


def test_generate_mockup_rejects_bad_input(client, fake_printful):
    assert client.post("/api/generate-mockup", json={}).status_code == 400
    assert client.post("/api/generate-mockup", json={"imageDataUrl": "https://x/y.jpg"}).status_code == 400
    assert fake_printful.requests == []


# --- /generate-print ---

def test_generate_print_unpaid(client, render_requests):
    resp = client.post("/api/generate-print", json=PRINT_BODY)

    assert resp.status_code == 200
    data_url = resp.json()["imageDataUrl"]
    assert data_url.startswith("data:image/jpeg;base64,")
    assert base64.b64decode(data_url.split(",", 1)[1]) == b"\xff\xd8\xff\xe0fake-jpeg"

    submitted = json.loads(render_requests[0].content)
    assert submitted["paid"] is False
    assert submitted["lng"] == -97.7431 and submitted["lat"] == 30.2672
    assert submitted["city"] == "Austin"


def test_generate_print_paid_session(client, fake_stripe, render_requests):
    fake_stripe.sessions["cs_paid"] = {"id": "cs_paid", "mode": "payment", "payment_status": "paid"}

    resp = client.post("/api/generate-print", json={**PRINT_BODY, "sessionId": "cs_paid",
                                                    "focusPoint": {"lat": 30.27, "lng": -97.74}})

    assert resp.status_code == 200
    submitted = json.loads(render_requests[0].content)
    assert submitted["paid"] is True
    assert submitted["focusLat"] == 30.27


def test_generate_print_unverified_session_gets_watermark(client, fake_stripe, render_requests):
    fake_stripe.sessions["cs_unpaid"] = {"id": "cs_unpaid", "mode": "payment", "payment_status": "unpaid"}

    client.post("/api/generate-print", json={**PRINT_BODY, "sessionId": "cs_unpaid"})

    assert json.loads(render_requests[0].content)["paid"] is False


def test_generate_print_validation(client, render_requests):
    bad_bodies = [
        {**PRINT_BODY, "center": [200, 0]},
        {**PRINT_BODY, "zoom": 40},
        {**PRINT_BODY, "themeId": "neon"},
        {**PRINT_BODY, "detailLineType": "street"},
        {**PRINT_BODY, "focusPoint": {"lat": "x", "lng": 0}},
        {key: value for key, value in PRINT_BODY.items() if key != "center"},
    ]
    for body in bad_bodies:
        assert client.post("/api/generate-print", json=body).status_code == 400
    assert render_requests == []


def test_generate_print_without_renderer(build_client, render_requests):
    client = build_client(make_settings(RENDER_SERVER_URL="", RENDER_SECRET=""))

    resp = client.post("/api/generate-print", json=PRINT_BODY)

    assert resp.status_code == 500
    assert render_requests == []


# --- small endpoints ---

def test_verify_payment_endpoint(client, fake_stripe):
    fake_stripe.sessions["cs_paid"] = {"id": "cs_paid", "mode": "payment", "payment_status": "paid"}

    assert client.get("/api/verify-payment", params={"session_id": "cs_paid"}).json() == {"paid": True}
    assert client.get("/api/verify-payment", params={"session_id": "cs_missing"}).json() == {"paid": False}
    assert client.get("/api/verify-payment").status_code == 400


def test_public_config_exposes_only_map_token(client):
    assert client.get("/api/public-config").json() == {"mapboxToken": "pk.test-token"}


def test_health(client):
    assert client.get("/api/health").json() == {"status": "ok"}


def test_malformed_json_is_400(client):
    resp = client.post("/api/checkout", content="{not json", headers={"content-type": "application/json"})
    assert resp.status_code == 400
