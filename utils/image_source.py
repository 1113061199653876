"""
Image source normalization.

Every image the pipeline touches (frame versions, sketches, uploaded assets,
dossier reference images) is an ImageSource. load_image_bytes() is the only
place that turns one into bytes + mime type.
"""

import base64
import binascii
import hashlib
import io
import os
from typing import Callable, Dict, Optional, Tuple
from urllib.parse import quote

import requests
from PIL import Image, UnidentifiedImageError

from schemas import AspectRatio, ImageKind, ImagePayload, ImageSource
from utils.errors import ContextError
from utils.logger import get_logger

logger = get_logger("image_source")

FETCH_TIMEOUT_SEC = 30
# optional relay for hosts that refuse direct downloads; off unless configured
CORS_PROXY_URL = os.getenv("FRAMEFORGE_IMAGE_PROXY", "")

_PIL_FORMAT_TO_MIME = {
    "PNG": "image/png",
    "JPEG": "image/jpeg",
    "WEBP": "image/webp",
    "GIF": "image/gif",
    "BMP": "image/bmp",
}


def parse_data_url(url: str) -> Tuple[str, bytes]:
    """Split a data URL into (mime_type, bytes)."""
    try:
        header, encoded = url.split(",", 1)
    except ValueError:
        raise ContextError("Invalid data URL format")
    mime_type = "image/jpeg"
    if header.startswith("data:") and ";" in header:
        mime_type = header[5:].split(";", 1)[0] or mime_type
    try:
        return mime_type, base64.b64decode(encoded, validate=False)
    except (binascii.Error, ValueError) as e:
        raise ContextError(f"Invalid base64 payload in data URL: {e}", cause=e)


def sniff_mime_type(data: bytes, default: str = "image/png") -> str:
    """Detect the mime type from the bytes themselves."""
    try:
        with Image.open(io.BytesIO(data)) as img:
            return _PIL_FORMAT_TO_MIME.get(img.format or "", default)
    except (UnidentifiedImageError, OSError):
        return default


def fetch_image(url: str, timeout: float = FETCH_TIMEOUT_SEC) -> ImagePayload:
    """
    HTTP(S) 이미지 다운로드. 프록시가 설정된 경우에만 실패 시 프록시로 재시도.
    """
    try:
        resp = requests.get(url, timeout=timeout)
        resp.raise_for_status()
    except requests.RequestException as direct_err:
        if not CORS_PROXY_URL:
            raise ContextError(f"Failed to fetch image {url[:80]}: {direct_err}", cause=direct_err)
        logger.warning(f"Direct fetch for {url[:80]} failed ({direct_err}), retrying via proxy")
        try:
            resp = requests.get(f"{CORS_PROXY_URL}{quote(url, safe='')}", timeout=timeout)
            resp.raise_for_status()
        except requests.RequestException as proxy_err:
            raise ContextError(f"Failed to fetch image {url[:80]}: {proxy_err}", cause=proxy_err)

    mime_type = resp.headers.get("Content-Type", "").split(";")[0].strip()
    if not mime_type.startswith("image/"):
        mime_type = sniff_mime_type(resp.content)
    return ImagePayload(data=resp.content, mime_type=mime_type)


def _load_url(url: str) -> ImagePayload:
    if url.startswith("data:"):
        mime_type, data = parse_data_url(url)
        return ImagePayload(data=data, mime_type=mime_type)
    if url.startswith(("http://", "https://")):
        return fetch_image(url)
    # local paths are never opened; callers with files pass the bytes inline
    raise ContextError(f"Unsupported image location (expected data: or http(s) URL): {url[:80]}")


def _load_inline_or_url(source: ImageSource) -> ImagePayload:
    if source.data is not None:
        return ImagePayload(
            data=source.data,
            mime_type=source.mime_type or sniff_mime_type(source.data),
        )
    return _load_url(source.url)


def _load_url_only(source: ImageSource) -> ImagePayload:
    if not source.url:
        raise ContextError(f"{source.kind.value} image source has no url")
    return _load_url(source.url)


_LOADERS: Dict[ImageKind, Callable[[ImageSource], ImagePayload]] = {
    ImageKind.FRAME: _load_url_only,
    ImageKind.SKETCH: _load_inline_or_url,
    ImageKind.ASSET: _load_inline_or_url,
    ImageKind.RAW: _load_url_only,
}


def load_image_bytes(source: ImageSource) -> ImagePayload:
    """
    ImageSource -> ImagePayload.

    Raises:
        ContextError: the source cannot be resolved to image bytes
    """
    loader = _LOADERS.get(source.kind)
    if loader is None:
        raise ContextError(f"Unsupported image kind: {source.kind}")
    payload = loader(source)
    if not payload.data:
        raise ContextError(f"Empty image data for {source.kind.value} {source.id or ''}".strip())
    return payload


def compute_source_hash(data: bytes) -> str:
    """Content fingerprint used as the dossier key."""
    return hashlib.sha256(data).hexdigest()


def _parse_ratio(ratio: str) -> float:
    try:
        w, h = (float(x) for x in ratio.split(":"))
    except ValueError:
        raise ValueError(f"Invalid target ratio string: {ratio}")
    if h == 0:
        raise ValueError(f"Invalid target ratio string: {ratio}")
    return w / h


def letterbox_to_ratio(payload: ImagePayload, ratio: AspectRatio) -> ImagePayload:
    """
    Pad an image with black bars to the target aspect ratio.

    The black area is what the editing model is asked to outpaint.
    """
    target = _parse_ratio(ratio.value if isinstance(ratio, AspectRatio) else ratio)
    try:
        img = Image.open(io.BytesIO(payload.data))
        img.load()
    except (UnidentifiedImageError, OSError) as e:
        raise ContextError(f"Cannot decode image for letterboxing: {e}", cause=e)

    width, height = img.size
    if width / height > target:
        canvas_w, canvas_h = width, round(width / target)
    else:
        canvas_w, canvas_h = round(height * target), height
    dx = (canvas_w - width) // 2
    dy = (canvas_h - height) // 2

    canvas = Image.new("RGB", (canvas_w, canvas_h), (0, 0, 0))
    canvas.paste(img.convert("RGB"), (dx, dy))

    out = io.BytesIO()
    canvas.save(out, format="PNG")
    return ImagePayload(data=out.getvalue(), mime_type="image/png")
