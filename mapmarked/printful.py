# printful.py
"""
Printful fulfillment adapter.

File upload, draft order creation, file-readiness polling and the
mockup-generator task API. Upstream failures raise the matching
ProviderError subclass with the status/body kept for the server log.
"""

import base64
import logging
import re
from dataclasses import dataclass
from typing import Any, Dict, List, Optional

import httpx

from mapmarked.errors import (
    FileProcessingFailed,
    MockupFailed,
    MockupTimedOut,
    OrderCreationFailed,
    UploadFailed,
)
from mapmarked.polling import PollFailed, PollTimedOut, poll_until
from mapmarked.products import CANVAS
from mapmarked.sanitize import decode_image_data_url
from mapmarked.settings import Settings, settings as default_settings

log = logging.getLogger(__name__)

LIFESTYLE_TITLE_RE = re.compile(r"room|lifestyle|wall|interior", re.IGNORECASE)


@dataclass
class UploadedFile:
    file_id: int
    file_url: str


@dataclass
class Recipient:
    name: str
    address1: str
    city: str
    state_code: str
    country_code: str
    zip: str
    address2: Optional[str] = None
    email: Optional[str] = None

    def as_payload(self) -> Dict[str, Any]:
        return {k: v for k, v in self.__dict__.items() if v is not None}


def select_mockup_url(mockup: Optional[Dict[str, Any]]) -> str:
    """
    Picks the preview to show the customer: a lifestyle/room/wall/interior
    extra if one exists, else the first extra, else the primary render.
    """
    if not mockup:
        return ""
    extras: List[Dict[str, Any]] = mockup.get("extra") or []
    if extras:
        for extra in extras:
            if LIFESTYLE_TITLE_RE.search(extra.get("title") or ""):
                log.info(f"Found lifestyle mockup: {extra.get('title')}")
                return extra.get("url") or ""
        log.info(f"Using first extra mockup: {extras[0].get('title')}")
        return extras[0].get("url") or ""
    log.info("No extra mockups, using main mockup_url.")
    return mockup.get("mockup_url") or ""


class PrintfulClient:

    def __init__(
        self,
        config: Optional[Settings] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.config = config or default_settings
        self._transport = transport

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(
            base_url=self.config.PRINTFUL_API_URL,
            headers={"Authorization": f"Bearer {self.config.PRINTFUL_API_KEY}"},
            timeout=self.config.PRINTFUL_TIMEOUT,
            transport=self._transport,
        )

    # --- files ---

    async def upload_file(self, image: str, filename: str, require_url: bool = True) -> UploadedFile:
        """
        Uploads the print file. `image` is a base64 data URI (sent inline)
        or an https URL Printful fetches itself.

        With `require_url` the durable file URL (needed for orders) is
        awaited if Printful has not produced it yet; mockups only need the id.
        """
        payload: Dict[str, Any] = {"type": "default", "filename": filename}
        if image.startswith("https://") or image.startswith("http://"):
            payload["url"] = image
        else:
            _mime, raw = decode_image_data_url(image)
            payload["data"] = base64.b64encode(raw).decode("ascii")
            log.info(f"Uploading {filename} to Printful (~{len(raw) / (1024 * 1024):.1f} MB)")

        try:
            async with self._client() as client:
                resp = await client.post("/files", json=payload)
        except httpx.RequestError as e:
            raise UploadFailed(f"Network error uploading {filename}: {e}") from e

        if resp.status_code >= 400:
            raise UploadFailed("Printful file upload failed", resp.status_code, resp.text)

        result = resp.json().get("result") or {}
        file_id = result.get("id")
        if not file_id:
            raise UploadFailed("Printful did not return a file ID", resp.status_code, resp.text)

        file_url = result.get("url") or ""
        if not file_url and require_url:
            # the durable URL is only filled in once Printful has processed the file
            ready = await self.wait_for_file_ready(file_id)
            file_url = ready.get("url") or ""
        if not file_url and require_url:
            raise UploadFailed(f"Printful file {file_id} has no URL")

        log.info(f"File uploaded to Printful, ID: {file_id} URL: {file_url}")
        return UploadedFile(file_id=file_id, file_url=file_url)

    async def wait_for_file_ready(self, file_id: int, max_attempts: Optional[int] = None) -> Dict[str, Any]:
        """Polls GET /files/{id} until status 'ok'. Returns the file record."""
        async with self._client() as client:

            async def fetch() -> Optional[Dict[str, Any]]:
                try:
                    resp = await client.get(f"/files/{file_id}")
                except httpx.RequestError as e:
                    log.warning(f"Network error polling Printful file {file_id}: {e}")
                    return None
                if resp.status_code != 200:
                    return None
                result = resp.json().get("result") or {}
                log.info(f"File {file_id} status: {result.get('status')}")
                return result

            try:
                return await poll_until(
                    fetch,
                    is_done=lambda r: r.get("status") == "ok",
                    is_failed=lambda r: r.get("status") == "failed",
                    interval=self.config.MOCKUP_POLL_INTERVAL_SECONDS,
                    max_attempts=max_attempts or self.config.FILE_READY_MAX_ATTEMPTS,
                    delay_first=False,
                    label=f"printful file {file_id}",
                )
            except PollFailed as e:
                raise FileProcessingFailed(f"File {file_id} processing failed on Printful") from e
            except PollTimedOut as e:
                raise FileProcessingFailed(f"File {file_id} processing timed out") from e

    # --- orders ---

    async def create_order(self, file_url: str, recipient: Recipient, external_id: str, product_label: str) -> int:
        """
        Creates a draft (unconfirmed) order; a human approves it in the
        Printful dashboard. `external_id` is the Stripe session id.
        """
        payload = {
            "external_id": external_id,
            "recipient": recipient.as_payload(),
            "items": [{
                "variant_id": CANVAS.printful_variant_id,
                "quantity": 1,
                "name": product_label,
                "files": [{"type": "default", "url": file_url}],
            }],
            "confirm": False,
        }
        try:
            async with self._client() as client:
                resp = await client.post("/orders", json=payload)
        except httpx.RequestError as e:
            raise OrderCreationFailed(f"Network error creating order {external_id}: {e}") from e

        if resp.status_code >= 400:
            raise OrderCreationFailed("Printful order creation failed", resp.status_code, resp.text)

        order_id = (resp.json().get("result") or {}).get("id")
        if not order_id:
            raise OrderCreationFailed("Printful did not return an order ID", resp.status_code, resp.text)

        log.info(f"Printful draft order {order_id} created for {external_id}")
        return order_id

    # --- mockups ---

    async def generate_mockup(self, file_id: int, max_attempts: Optional[int] = None) -> str:
        """
        Submits a mockup-generator task for the canvas and polls it.
        Returns the selected preview URL; raises MockupFailed / MockupTimedOut.
        """
        payload = {
            "variant_ids": [CANVAS.printful_variant_id],
            "format": "jpg",
            "files": [{
                "placement": "default",
                "file_id": file_id,
                "position": {
                    "area_width": CANVAS.print_area_width,
                    "area_height": CANVAS.print_area_height,
                    "width": CANVAS.print_area_width,
                    "height": CANVAS.print_area_height,
                    "top": 0,
                    "left": 0,
                },
            }],
        }

        async with self._client() as client:
            try:
                resp_create = await client.post(
                    f"/mockup-generator/create-task/{CANVAS.printful_product_id}", json=payload
                )
            except httpx.RequestError as e:
                raise MockupFailed(f"Network error creating mockup task: {e}") from e

            if resp_create.status_code >= 400:
                raise MockupFailed("Mockup task creation failed", resp_create.status_code, resp_create.text)

            task_key = (resp_create.json().get("result") or {}).get("task_key")
            if not task_key:
                raise MockupFailed("Printful mockup API did not return task_key", resp_create.status_code, resp_create.text)
            log.info(f"Printful mockup task created: {task_key}")

            async def fetch() -> Optional[Dict[str, Any]]:
                try:
                    resp = await client.get("/mockup-generator/task", params={"task_key": task_key})
                except httpx.RequestError as e:
                    log.warning(f"Network error polling mockup task {task_key}: {e}")
                    return None
                if resp.status_code != 200:
                    log.warning(f"Printful mockup poll status {resp.status_code}. Retrying.")
                    return None
                return resp.json().get("result") or {}

            try:
                result = await poll_until(
                    fetch,
                    is_done=lambda r: r.get("status") == "completed" and bool(r.get("mockups")),
                    is_failed=lambda r: r.get("status") == "failed",
                    interval=self.config.MOCKUP_POLL_INTERVAL_SECONDS,
                    max_attempts=max_attempts or self.config.MOCKUP_MAX_ATTEMPTS,
                    label=f"mockup task {task_key}",
                )
            except PollFailed as e:
                raise MockupFailed(f"Mockup task {task_key} failed: {e.payload.get('error')}") from e
            except PollTimedOut as e:
                raise MockupTimedOut(f"Mockup task {task_key} timed out after {e.attempts} attempts") from e

        mockup = result["mockups"][0]
        log.info(
            f"Mockup {task_key} completed: mockup_url={mockup.get('mockup_url')} "
            f"extras={[e.get('title') for e in mockup.get('extra') or []]}"
        )
        return select_mockup_url(mockup)
