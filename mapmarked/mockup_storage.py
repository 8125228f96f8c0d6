# mockup_storage.py
"""
Optional Cloudinary copy of mockup images.

Printful mockup URLs are temporary. When Cloudinary credentials are set the
chosen mockup is re-hosted there; otherwise (or on any upload error) the
original URL is returned unchanged.
"""

import asyncio
import logging
import uuid
from typing import Optional

import cloudinary
import cloudinary.uploader
import cloudinary.utils

from mapmarked.settings import Settings, settings as default_settings

log = logging.getLogger(__name__)

MOCKUP_FOLDER = "mapmarked/mockups"


class MockupStorage:

    def __init__(self, config: Optional[Settings] = None):
        self.config = config or default_settings
        self._configured = False

    @property
    def enabled(self) -> bool:
        return self.config.cloudinary_configured

    def _configure(self) -> None:
        if self._configured:
            return
        cloudinary.config(
            cloud_name=self.config.CLOUDINARY_CLOUD_NAME,
            api_key=self.config.CLOUDINARY_API_KEY,
            api_secret=self.config.CLOUDINARY_API_SECRET,
            secure=True,
        )
        self._configured = True

    async def persist(self, url: str, session_id: Optional[str] = None) -> str:
        """Returns a durable URL for `url`; falls back to `url` itself."""
        if not url or not self.enabled:
            return url

        self._configure()
        public_id = f"{session_id or 'mockup'}_{uuid.uuid4()}"

        def sync_upload():
            return cloudinary.uploader.upload(
                url,
                folder=MOCKUP_FOLDER,
                public_id=public_id,
                resource_type="image",
                overwrite=True,
                unique_filename=False,
            )

        try:
            result = await asyncio.to_thread(sync_upload)
        except Exception as e:
            log.warning(f"Cloudinary mockup upload failed, keeping Printful URL: {e}")
            return url

        secure_url = result.get("secure_url")
        if not secure_url and result.get("public_id"):
            secure_url = cloudinary.utils.cloudinary_url(
                result["public_id"],
                resource_type=result.get("resource_type", "image"),
                version=result.get("version"),
                secure=True,
            )[0]
        if not secure_url:
            log.warning(f"Cloudinary response had no URL, keeping Printful URL. Result: {result}")
            return url

        log.info(f"Mockup persisted to Cloudinary: {secure_url}")
        return secure_url
