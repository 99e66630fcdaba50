"""Download images attached to a run into local files."""

from __future__ import annotations

import logging
from pathlib import Path
import shutil
from typing import Sequence
import urllib.error
import urllib.parse
import urllib.request

from capsule.errors import TransientNetworkError, ValidationError

logger = logging.getLogger(__name__)

_REDIRECT_CODES = {301, 302, 303, 307, 308}
_IMAGE_SUFFIXES = {".png", ".jpg", ".jpeg", ".gif", ".webp"}


class _NoRedirect(urllib.request.HTTPRedirectHandler):
    def redirect_request(self, req, fp, code, msg, headers, newurl):  # type: ignore[override]
        return None


_opener = urllib.request.build_opener(_NoRedirect)


def download_image(
    url: str, dest_path: str, follow_redirect: bool = True, timeout_s: float = 30.0
) -> str:
    """Fetch ``url`` into ``dest_path`` and return the local path.

    One redirect is followed; a second redirect or any non-2xx status fails
    the download and leaves no partial file behind.
    """
    parsed = urllib.parse.urlparse(url)
    if parsed.scheme not in ("http", "https"):
        raise ValidationError(f"Unsupported image URL: {url}", field="imageUrls")
    target = Path(dest_path)
    target.parent.mkdir(parents=True, exist_ok=True)
    try:
        with _opener.open(url, timeout=timeout_s) as response:
            status = response.status
            if not 200 <= status < 300:
                raise ValidationError(f"Failed to download image: HTTP {status}")
            with target.open("wb") as handle:
                shutil.copyfileobj(response, handle)
    except urllib.error.HTTPError as exc:
        target.unlink(missing_ok=True)
        location = exc.headers.get("Location") if exc.headers else None
        if exc.code in _REDIRECT_CODES and location and follow_redirect:
            redirect_url = urllib.parse.urljoin(url, location)
            logger.info("Following image redirect %s -> %s", url, redirect_url)
            return download_image(
                redirect_url, dest_path, follow_redirect=False, timeout_s=timeout_s
            )
        if exc.code >= 500:
            raise TransientNetworkError(f"Failed to download image: HTTP {exc.code}") from exc
        raise ValidationError(f"Failed to download image: HTTP {exc.code}") from exc
    except urllib.error.URLError as exc:
        target.unlink(missing_ok=True)
        raise TransientNetworkError(f"Failed to download image {url}: {exc.reason}") from exc
    except ValidationError:
        target.unlink(missing_ok=True)
        raise
    logger.info("Downloaded image %s to %s", url, target)
    return str(target)


def download_images(urls: Sequence[str], images_dir: str, run_id: str) -> list[str]:
    paths: list[str] = []
    for index, url in enumerate(urls):
        suffix = Path(urllib.parse.urlparse(url).path).suffix.lower()
        if suffix not in _IMAGE_SUFFIXES:
            suffix = ".png"
        dest = Path(images_dir) / run_id / f"image-{index}{suffix}"
        paths.append(download_image(url, str(dest)))
    return paths
