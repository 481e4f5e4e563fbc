"""
TRASHURE Ledger: classifier adapter

The image model runs outside this service (on device, or behind an HTTP
model server). This module only:

  - normalizes a captured frame (Pillow) before it is sent anywhere
  - calls the model server and parses its ranked guesses
  - produces the "is this recyclable?" hint shown on the confirm screen
"""

from __future__ import annotations

import base64
import io
import logging
import os
from typing import Any, Dict, Iterable, List, Optional, Protocol

import requests
from PIL import Image, UnidentifiedImageError

from engine.errors import CaptureError, ClassificationError
from engine.models import Classification

logger = logging.getLogger("trashure.classifier")

CLASSIFIER_URL     = os.getenv("TRASHURE_CLASSIFIER_URL", "http://127.0.0.1:8501/v1/classify")
CLASSIFIER_TIMEOUT = float(os.getenv("TRASHURE_CLASSIFIER_TIMEOUT", "10"))
CLASSIFIER_TOP_K   = int(os.getenv("TRASHURE_CLASSIFIER_TOP_K", "3"))
FRAME_MAX_DIM      = int(os.getenv("TRASHURE_FRAME_MAX_DIM", "512"))

# Labels from an ImageNet-style model that usually mean packaging waste.
TRASH_KEYWORDS = (
    "bottle", "cup", "can", "packet", "carton", "paper", "plastic", "wrapper",
    "box", "container", "glass", "mug", "espresso", "coffee",
)


class Classifier(Protocol):
    def classify(self, image_bytes: bytes) -> List[Classification]:
        ...


def prepare_frame(image_bytes: Optional[bytes], max_dim: int = FRAME_MAX_DIM) -> bytes:
    """Decode, shrink to `max_dim` and re-encode as JPEG."""
    if not image_bytes:
        raise CaptureError("No image captured")
    try:
        img = Image.open(io.BytesIO(image_bytes))
        img = img.convert("RGB")
    except (UnidentifiedImageError, OSError) as e:
        raise CaptureError(f"Captured frame is not a readable image: {e}") from e

    img.thumbnail((max_dim, max_dim), Image.LANCZOS)
    buf = io.BytesIO()
    img.save(buf, format="JPEG", quality=85)
    logger.info(f"[FRAME] Prepared {img.width}x{img.height} frame, {buf.tell() / 1024:.0f}KB")
    return buf.getvalue()


def parse_predictions(items: Iterable[Dict[str, Any]], top_k: int = CLASSIFIER_TOP_K) -> List[Classification]:
    """
    Accepts `{label, confidence}` items or MobileNet-style
    `{className, probability}` items. Returns them ranked, best first.
    """
    results = []
    for item in items:
        label = item.get("label") or item.get("className")
        score = item.get("confidence", item.get("probability"))
        if not label or score is None:
            continue
        try:
            results.append(Classification(label=str(label), confidence=float(score)))
        except ValueError as e:
            logger.warning(f"[CLASSIFY] Skipping prediction {item!r}: {e}")
    results.sort(key=lambda c: c.confidence, reverse=True)
    return results[:top_k]


def looks_recyclable(label: str) -> bool:
    label = label.lower()
    return any(k in label for k in TRASH_KEYWORDS)


def feedback_message(results: List[Classification]) -> str:
    if not results:
        return "Could not identify the item. Try again."
    best = results[0].label
    if looks_recyclable(best):
        return f"Identified: {best}. Ready to recycle?"
    return f'Hmm, looks like "{best}". Is this recyclable?'


class RemoteClassifier:
    """HTTP model server client: POST {"image_base64", "top_k"} -> {"predictions": [...]}."""

    def __init__(
        self,
        endpoint: str = CLASSIFIER_URL,
        timeout:  float = CLASSIFIER_TIMEOUT,
        top_k:    int = CLASSIFIER_TOP_K,
        session:  Optional[requests.Session] = None,
    ):
        self.endpoint = endpoint
        self.timeout  = timeout
        self.top_k    = top_k
        self._session = session or requests.Session()

    def classify(self, image_bytes: bytes) -> List[Classification]:
        frame   = prepare_frame(image_bytes)
        payload = {"image_base64": base64.b64encode(frame).decode("ascii"), "top_k": self.top_k}
        try:
            response = self._session.post(self.endpoint, json=payload, timeout=self.timeout)
            response.raise_for_status()
            body = response.json()
        except requests.Timeout as e:
            raise ClassificationError(f"Classifier timed out after {self.timeout}s") from e
        except requests.RequestException as e:
            raise ClassificationError(f"Classifier unavailable: {e}") from e
        except ValueError as e:
            raise ClassificationError(f"Classifier returned invalid JSON: {e}") from e

        items   = body.get("predictions", []) if isinstance(body, dict) else body
        results = parse_predictions(items or [], self.top_k)
        if not results:
            raise ClassificationError("Classifier returned no predictions")
        logger.info(f"[CLASSIFY] top={results[0].label} ({results[0].confidence:.2%})")
        return results
