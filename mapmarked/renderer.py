# renderer.py
"""
Client for the external headless map renderer.

A render is a job: POST /render returns a jobId, then GET /status/{jobId}
is polled until the job reports `completed` with the JPEG as base64.
Both calls authenticate with the shared `x-render-secret` header.
"""

import base64
import binascii
import logging
import time
from dataclasses import dataclass
from typing import Any, Dict, Optional

import httpx

from mapmarked.errors import RenderFailed, RenderTimedOut
from mapmarked.polling import PollFailed, PollTimedOut, poll_until
from mapmarked.settings import Settings, settings as default_settings

log = logging.getLogger(__name__)

# 300 DPI for the 18" x 24" canvas
PRINT_WIDTH = 5400
PRINT_HEIGHT = 7200


@dataclass
class RenderParams:
    lng: float
    lat: float
    zoom: float
    theme_id: str
    city: str
    state: str
    coordinates: str
    detail_line_type: str = "coordinates"
    paid: bool = False
    focus_lat: Optional[float] = None
    focus_lng: Optional[float] = None
    focus_address: Optional[str] = None

    def as_payload(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {
            "lat": self.lat,
            "lng": self.lng,
            "zoom": self.zoom,
            "themeId": self.theme_id,
            "city": self.city,
            "state": self.state,
            "coordinates": self.coordinates,
            "detailLineType": self.detail_line_type,
            "paid": self.paid,
            "width": PRINT_WIDTH,
            "height": PRINT_HEIGHT,
        }
        if self.focus_lat is not None and self.focus_lng is not None:
            payload["focusLat"] = self.focus_lat
            payload["focusLng"] = self.focus_lng
            if self.focus_address:
                payload["focusAddress"] = self.focus_address
        return payload


class RendererClient:

    def __init__(
        self,
        config: Optional[Settings] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.config = config or default_settings
        self._transport = transport

    @property
    def configured(self) -> bool:
        return bool(self.config.RENDER_SERVER_URL and self.config.RENDER_SECRET)

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(
            base_url=self.config.RENDER_SERVER_URL.rstrip("/"),
            headers={"x-render-secret": self.config.RENDER_SECRET},
            timeout=self.config.RENDER_TIMEOUT,
            transport=self._transport,
        )

    async def render(self, params: RenderParams) -> bytes:
        """Submits a render job and waits for it. Returns the JPEG bytes."""
        if not self.configured:
            raise RenderFailed("RENDER_SERVER_URL and RENDER_SECRET must be set")

        # overall ceiling so a slow status endpoint cannot stretch the budget
        deadline = time.monotonic() + self.config.RENDER_POLL_INTERVAL_SECONDS * self.config.RENDER_MAX_ATTEMPTS + self.config.RENDER_TIMEOUT

        async with self._client() as client:
            try:
                resp = await client.post("/render", json=params.as_payload())
            except httpx.RequestError as e:
                raise RenderFailed(f"Network error submitting render job: {e}") from e

            if resp.status_code >= 400:
                log.error(f"Render server rejected job ({resp.status_code}): {resp.text[:200]}")
                raise RenderFailed(f"Render server error: {resp.status_code}")

            job_id = resp.json().get("jobId")
            if not job_id:
                raise RenderFailed("Render server did not return a jobId")
            log.info(f"Render job {job_id} submitted for {params.city}, {params.state} ({params.theme_id}, paid={params.paid})")

            async def fetch() -> Optional[Dict[str, Any]]:
                try:
                    status_resp = await client.get(f"/status/{job_id}")
                except httpx.RequestError as e:
                    log.warning(f"Network error polling render job {job_id}: {e}")
                    return None
                if status_resp.status_code != 200:
                    log.warning(f"Render status check failed ({status_resp.status_code}) for job {job_id}")
                    return None
                return status_resp.json()

            try:
                result = await poll_until(
                    fetch,
                    is_done=lambda r: r.get("status") == "completed" and bool(r.get("imageBase64")),
                    is_failed=lambda r: r.get("status") == "failed",
                    interval=self.config.RENDER_POLL_INTERVAL_SECONDS,
                    max_attempts=self.config.RENDER_MAX_ATTEMPTS,
                    delay_first=False,
                    deadline=deadline,
                    label=f"render job {job_id}",
                )
            except PollFailed as e:
                raise RenderFailed(e.payload.get("error") or "Render job failed") from e
            except PollTimedOut as e:
                raise RenderTimedOut(f"Render job {job_id} timed out after {e.attempts} attempts") from e

        try:
            return base64.b64decode(result["imageBase64"], validate=True)
        except (binascii.Error, ValueError) as e:
            raise RenderFailed(f"Render job {job_id} returned invalid base64") from e
