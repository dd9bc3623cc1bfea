"""Save generated images to local files.

Files are named `generated-image-{index}.png` in result order. Transfers are
streamed with `requests`; a non-200 response or a transport failure raises
`DownloadError` and leaves no partial file behind. Empty output slots are
skipped but keep their index.
"""

import logging
import os

import requests

from studio.image.errors import DownloadError
from studio.image.provider_config import REQUEST_TIMEOUT_SECONDS


logger = logging.getLogger(__name__)

CHUNK_SIZE = 64 * 1024


def download_image(url: str, dest_path: str) -> str:
    """Fetch `url` into `dest_path` and return the path."""
    try:
        response = requests.get(url, stream=True, timeout=REQUEST_TIMEOUT_SECONDS)
    except requests.exceptions.RequestException as exc:
        raise DownloadError(f"Image download failed: {url}") from exc

    try:
        if response.status_code != 200:
            raise DownloadError(
                f"Image download failed with status {response.status_code}: {url}",
                status_code=response.status_code,
            )
        tmp_path = dest_path + ".part"
        try:
            with open(tmp_path, "wb") as f:
                for chunk in response.iter_content(chunk_size=CHUNK_SIZE):
                    if chunk:
                        f.write(chunk)
            os.replace(tmp_path, dest_path)
        except (requests.exceptions.RequestException, OSError) as exc:
            if os.path.exists(tmp_path):
                os.remove(tmp_path)
            raise DownloadError(f"Image download failed: {url}") from exc
    finally:
        response.close()

    logger.info("Saved %s", dest_path)
    return dest_path


def download_images(urls, dest_dir: str) -> list:
    """Download every URL in `urls` into `dest_dir`, creating it if needed."""
    os.makedirs(dest_dir, exist_ok=True)
    return [
        download_image(url, os.path.join(dest_dir, f"generated-image-{index}.png"))
        for index, url in enumerate(urls)
        if url
    ]
