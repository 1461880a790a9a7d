"""
Client for the vision-capable classification service (Anthropic Messages API,
called through the ``anthropic`` SDK).

Two call shapes are used by the resolvers:

  - classify_image(image_url, prompt): fetch the image, normalise it with
    Pillow (RGB JPEG, longest edge capped) and send it inline with the prompt.
  - classify_text(prompt): text-only classification, used for the batched
    place-candidate check.

Every failure mode (missing key, SDK API error, unexpected reply shape,
undecodable image) surfaces as ClassifierUnavailable so resolver
chains can fall through to their next strategy.
"""

import base64
import io
import logging
import os
import time
from typing import Optional, Tuple

import anthropic
import requests
from PIL import Image, UnidentifiedImageError

from ha_trace import get_trace

logger = logging.getLogger(__name__)

DEFAULT_MODEL = "claude-sonnet-4-20250514"

# Some CDNs refuse requests without a browser-like user agent.
IMAGE_HEADERS = {
    "User-Agent": (
        "Mozilla/5.0 (Macintosh; Intel Mac OS X 10_15_7) AppleWebKit/537.36 "
        "(KHTML, like Gecko) Chrome/124.0 Safari/537.36"
    ),
    "Accept": "image/avif,image/webp,image/png,image/jpeg,*/*;q=0.8",
}


class ClassifierUnavailable(Exception):
    """The classification service could not produce a usable reply."""


class VisionClassifier:
    """Thin wrapper around the Anthropic client with tracing and timeouts."""

    # Per-call timeout in seconds for the classification request.
    DEFAULT_TIMEOUT = 15
    # Image downloads are plain CDN fetches.
    IMAGE_TIMEOUT = 10
    # Longest edge sent to the model; larger images are downscaled.
    MAX_IMAGE_EDGE = 1568
    MAX_IMAGE_BYTES = 8 * 1024 * 1024

    def __init__(self, api_key: Optional[str], model: Optional[str] = None):
        self.api_key = api_key
        self.model = model or os.environ.get("VISION_MODEL", DEFAULT_MODEL)
        # Image downloads only; the Messages API goes through the SDK client.
        self.session = requests.Session()
        self.session.trust_env = False
        self.client = (
            anthropic.Anthropic(api_key=api_key, timeout=self.DEFAULT_TIMEOUT, max_retries=0)
            if api_key else None
        )

    @classmethod
    def from_env(cls) -> "VisionClassifier":
        return cls(os.environ.get("ANTHROPIC_API_KEY"))

    @property
    def configured(self) -> bool:
        return bool(self.api_key)

    def _traced_create(self, endpoint_name: str, content: list, max_tokens: int):
        """Call ``messages.create`` with automatic trace recording."""
        t0 = time.time()
        status_code = 200
        try:
            return self.client.messages.create(
                model=self.model,
                max_tokens=max_tokens,
                messages=[{"role": "user", "content": content}],
            )
        except anthropic.APIError as exc:
            status_code = getattr(exc, "status_code", 0)
            raise ClassifierUnavailable(f"{endpoint_name} request failed: {exc}") from exc
        finally:
            trace = get_trace()
            if trace:
                trace.record_api_call(
                    service="vision",
                    endpoint=endpoint_name,
                    elapsed_ms=int((time.time() - t0) * 1000),
                    status_code=status_code,
                )

    def fetch_image(self, image_url: str) -> Tuple[str, str]:
        """Download *image_url* and return (media_type, base64 data).

        The image is re-encoded as JPEG so PNG/WebP/GIF sources all arrive
        in one format the API accepts, with the longest edge capped.
        """
        t0 = time.time()
        try:
            response = self.session.get(
                image_url, headers=IMAGE_HEADERS, timeout=self.IMAGE_TIMEOUT,
            )
        except requests.RequestException as exc:
            raise ClassifierUnavailable(f"image fetch failed: {exc}") from exc
        elapsed_ms = int((time.time() - t0) * 1000)

        trace = get_trace()
        if trace:
            trace.record_api_call(
                service="listing",
                endpoint="image",
                elapsed_ms=elapsed_ms,
                status_code=response.status_code,
            )

        if response.status_code != 200:
            raise ClassifierUnavailable(f"image fetch returned HTTP {response.status_code}")
        if len(response.content) > self.MAX_IMAGE_BYTES:
            raise ClassifierUnavailable("image too large")

        try:
            img = Image.open(io.BytesIO(response.content))
            img = img.convert("RGB")
        except (UnidentifiedImageError, OSError) as exc:
            raise ClassifierUnavailable(f"unsupported image at {image_url}") from exc

        img.thumbnail((self.MAX_IMAGE_EDGE, self.MAX_IMAGE_EDGE))
        buf = io.BytesIO()
        img.save(buf, format="JPEG", quality=85)
        return "image/jpeg", base64.b64encode(buf.getvalue()).decode("ascii")

    def _complete(self, endpoint_name: str, content: list, max_tokens: int) -> str:
        if not self.configured:
            raise ClassifierUnavailable("ANTHROPIC_API_KEY is not configured")
        response = self._traced_create(endpoint_name, content, max_tokens)
        try:
            text = "".join(
                block.text
                for block in response.content
                if getattr(block, "type", None) == "text"
            )
        except (TypeError, AttributeError) as exc:
            raise ClassifierUnavailable(f"{endpoint_name} reply had no content") from exc
        if not text.strip():
            raise ClassifierUnavailable(f"{endpoint_name} reply was empty")
        return text.strip()

    def classify_image(self, image_url: str, prompt: str, max_tokens: int = 300) -> str:
        """Send *prompt* plus one inlined image; return the reply text."""
        if not self.configured:
            raise ClassifierUnavailable("ANTHROPIC_API_KEY is not configured")
        media_type, data = self.fetch_image(image_url)
        content = [
            {"type": "text", "text": prompt},
            {
                "type": "image",
                "source": {"type": "base64", "media_type": media_type, "data": data},
            },
        ]
        logger.debug("Vision call for %s", image_url)
        return self._complete("messages_vision", content, max_tokens)

    def classify_text(self, prompt: str, max_tokens: int = 300) -> str:
        """Text-only classification; return the reply text."""
        return self._complete("messages_text", [{"type": "text", "text": prompt}], max_tokens)
