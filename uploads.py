"""
Image host client.

Only URLs are ever stored. Inline `data:image/...` payloads are pushed to the
host's unsigned upload endpoint; plain URLs pass through unchanged.
"""
import logging
from typing import Iterable, List, Optional

import requests

import config

logger = logging.getLogger(__name__)

MAX_IMAGES = 3


class ImageStore:
    def __init__(self, upload_url: str = config.CLOUDINARY_UPLOAD_URL, preset: str = config.CLOUDINARY_UPLOAD_PRESET):
        self.upload_url = upload_url
        self.preset = preset

    def upload(self, data: str) -> str:
        if not self.upload_url:
            raise RuntimeError("Image upload is not configured")
        resp = requests.post(
            self.upload_url,
            data={"file": data, "upload_preset": self.preset},
            timeout=30,
        )
        resp.raise_for_status()
        return resp.json()["secure_url"]

    def resolve(self, images: Optional[Iterable[str]], limit: int = MAX_IMAGES) -> List[str]:
        """Turn a mix of URLs and inline images into URLs; failed uploads are skipped."""
        urls: List[str] = []
        for img in list(images or [])[:limit]:
            if not isinstance(img, str) or not img:
                continue
            if img.startswith("data:image"):
                try:
                    urls.append(self.upload(img))
                except (requests.RequestException, RuntimeError, KeyError):
                    logger.exception("Image upload failed")
            elif img not in urls:
                urls.append(img)
        return urls
