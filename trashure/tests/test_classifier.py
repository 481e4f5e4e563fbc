"""
TRASHURE: Classifier adapter Unit Tests

Coverage:
  - prepare_frame: resize, empty / undecodable input
  - parse_predictions: both payload shapes, ranking, top_k, bad items
  - RemoteClassifier: request payload, timeout / HTTP / JSON failures
  - recyclable hint
"""

import io
import os
import sys
from unittest.mock import MagicMock

import pytest
import requests
from PIL import Image

# ── Path setup ────────────────────────────────────────────────────────────────
sys.path.insert(0, os.path.join(os.path.dirname(__file__), ".."))

from engine.classifier import (
    RemoteClassifier,
    feedback_message,
    looks_recyclable,
    parse_predictions,
    prepare_frame,
)
from engine.errors import CaptureError, ClassificationError
from engine.models import Classification


def _make_png(width=1024, height=768) -> bytes:
    img = Image.new("RGB", (width, height), color=(20, 120, 60))
    buf = io.BytesIO()
    img.save(buf, format="PNG")
    return buf.getvalue()


def _session_returning(body=None, exc=None):
    session  = MagicMock(spec=requests.Session)
    response = MagicMock()
    if exc is not None:
        session.post.side_effect = exc
    else:
        response.json.return_value = body
        session.post.return_value  = response
    return session


class TestPrepareFrame:

    def test_resized_to_max_dim(self):
        out = Image.open(io.BytesIO(prepare_frame(_make_png(), max_dim=256)))
        assert max(out.size) == 256
        assert out.format == "JPEG"

    def test_empty_frame(self):
        with pytest.raises(CaptureError):
            prepare_frame(b"")

    def test_not_an_image(self):
        with pytest.raises(CaptureError):
            prepare_frame(b"definitely not a jpeg")


class TestParsePredictions:

    def test_label_confidence_shape(self):
        results = parse_predictions([
            {"label": "can", "confidence": 0.2},
            {"label": "water bottle", "confidence": 0.7},
        ])
        assert [r.label for r in results] == ["water bottle", "can"]

    def test_mobilenet_shape(self):
        results = parse_predictions([{"className": "coffee mug", "probability": 0.55}])
        assert results == [Classification("coffee mug", 0.55)]

    def test_top_k_and_bad_items(self):
        results = parse_predictions([
            {"label": "a", "confidence": 0.1},
            {"label": "b", "confidence": 0.4},
            {"label": "c", "confidence": 0.3},
            {"label": "", "confidence": 0.9},
            {"label": "d", "confidence": 7.0},
            {"confidence": 0.8},
        ], top_k=2)
        assert [r.label for r in results] == ["b", "c"]


class TestRemoteClassifier:

    def test_classify_posts_frame(self):
        session = _session_returning({"predictions": [{"label": "pop bottle", "confidence": 0.81}]})
        clf = RemoteClassifier(endpoint="http://model/classify", top_k=3, session=session)
        results = clf.classify(_make_png(200, 200))
        assert results[0].label == "pop bottle"
        _, kwargs = session.post.call_args
        assert kwargs["json"]["top_k"] == 3
        assert kwargs["json"]["image_base64"]
        assert kwargs["timeout"] == clf.timeout

    def test_plain_list_body(self):
        session = _session_returning([{"label": "carton", "confidence": 0.6}])
        results = RemoteClassifier(session=session).classify(_make_png(64, 64))
        assert results[0].label == "carton"

    def test_timeout(self):
        session = _session_returning(exc=requests.Timeout("slow"))
        with pytest.raises(ClassificationError, match="timed out"):
            RemoteClassifier(session=session).classify(_make_png(64, 64))

    def test_http_error(self):
        session = _session_returning(exc=requests.ConnectionError("refused"))
        with pytest.raises(ClassificationError, match="unavailable"):
            RemoteClassifier(session=session).classify(_make_png(64, 64))

    def test_invalid_json(self):
        session  = MagicMock(spec=requests.Session)
        response = MagicMock()
        response.json.side_effect = ValueError("no json")
        session.post.return_value = response
        with pytest.raises(ClassificationError, match="invalid JSON"):
            RemoteClassifier(session=session).classify(_make_png(64, 64))

    def test_empty_predictions(self):
        session = _session_returning({"predictions": []})
        with pytest.raises(ClassificationError):
            RemoteClassifier(session=session).classify(_make_png(64, 64))


class TestHints:

    def test_looks_recyclable(self):
        assert looks_recyclable("Water Bottle")
        assert not looks_recyclable("golden retriever")

    def test_feedback_message(self):
        assert feedback_message([]).startswith("Could not identify")
        assert "Ready to recycle" in feedback_message([Classification("tin can", 0.9)])
        assert "Is this recyclable" in feedback_message([Classification("tabby cat", 0.9)])
