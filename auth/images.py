"""
auth/images.py -- Download provider avatars for new profiles.

Module-level requests.Session shared for connection pooling. max_redirects=3
replaces the requests default of 30 -- avatar CDNs redirect at most once or
twice, and a short chain limits SSRF via redirect hops.
"""

from __future__ import annotations

import logging

import requests

from auth.models import UserImage

logger = logging.getLogger("notekeeper.auth.images")

_MAX_IMAGE_BYTES = 3 * 1024 * 1024  # 3 MB
_TIMEOUT = 10

_session = requests.Session()
_session.max_redirects = 3


class ImageDownloadError(Exception):
    pass


def download_file(url: str) -> UserImage:
    """Fetch url and return it as a UserImage.

    Raises ImageDownloadError if the request fails, the response is not an
    image, or the body exceeds 3 MB.
    """
    try:
        resp = _session.get(url, timeout=_TIMEOUT)
        resp.raise_for_status()
    except requests.RequestException as exc:
        raise ImageDownloadError(f"Failed to download image from {url}") from exc

    content_type = resp.headers.get("Content-Type", "").split(";")[0].strip()
    if not content_type.startswith("image/"):
        raise ImageDownloadError(f"Unexpected content type {content_type!r} for {url}")
    if len(resp.content) > _MAX_IMAGE_BYTES:
        raise ImageDownloadError(f"Image at {url} is larger than {_MAX_IMAGE_BYTES} bytes")

    logger.debug("Downloaded %d byte avatar (%s)", len(resp.content), content_type)
    return UserImage(content_type=content_type, blob=resp.content)
