from __future__ import annotations

import logging
import os

import requests


logger = logging.getLogger(__name__)


class CdnUploadError(RuntimeError):
    pass


def _cdn_config() -> tuple[str, str, str]:
    upload_url = (os.getenv("CDN_BASE_UPLOAD_URL") or "").rstrip("/")
    access_url = (os.getenv("CDN_BASE_ACCESS_URL") or "").rstrip("/")
    api_key = os.getenv("CDN_API_KEY") or ""
    return upload_url, access_url, api_key


def upload_to_bunny_cdn(data: bytes, file_name: str) -> str:
    """
    PUT the whole buffer to the Bunny storage zone and return the public URL.

    Bunny answers 201 on a successful write; any other status is an error.
    """
    upload_url, access_url, api_key = _cdn_config()
    if not upload_url or not access_url:
        raise CdnUploadError("CDN_BASE_UPLOAD_URL / CDN_BASE_ACCESS_URL are not set")

    try:
        resp = requests.put(
            f"{upload_url}/{file_name}",
            data=data,
            headers={
                "AccessKey": api_key,
                "Content-Type": "application/octet-stream",
            },
            timeout=300,
        )
    except requests.RequestException as e:
        logger.error("Error uploading %s to Bunny CDN: %s", file_name, e)
        raise CdnUploadError(str(e)) from e

    if resp.status_code != 201:
        logger.error("Bunny CDN rejected %s (%s): %s", file_name, resp.status_code, resp.text)
        raise CdnUploadError(f"Failed to upload video to Bunny CDN. Status: {resp.status_code}")

    logger.info("Uploaded %s (%d bytes) to Bunny CDN", file_name, len(data))
    return f"{access_url}/{file_name}"

