from __future__ import annotations

from pathlib import Path

import cv2
import numpy as np
import pytest

pytest.importorskip("insightface")

from facegate.face.descriptor import InsightFaceConfig, InsightFaceProvider
from facegate.face.gallery import ReferenceSet
from facegate.face.matcher import EuclideanMatcher, MatcherConfig


def _first_photos(gallery_dir: Path, limit: int = 3):
    out = []
    for person_dir in sorted(p for p in gallery_dir.iterdir() if p.is_dir()):
        photos = sorted(p for p in person_dir.iterdir() if p.suffix.lower() in (".jpg", ".jpeg", ".png"))
        if photos:
            out.append((person_dir.name, photos[0]))
        if len(out) >= limit:
            break
    return out


def test_real_model_descriptor_matches_its_own_photo():
    repo_root = Path(__file__).resolve().parents[1]
    gallery_dir = repo_root / "data" / "id_photo"
    if not gallery_dir.exists():
        pytest.skip("data/id_photo (gallery) not found")

    photos = _first_photos(gallery_dir)
    if not photos:
        pytest.skip("no photos under data/id_photo")

    # Model download/initialization can fail on machines without network access.
    try:
        provider = InsightFaceProvider(InsightFaceConfig(device="cpu"))
    except Exception as e:
        pytest.skip(f"InsightFace model unavailable: {e}")

    pairs = []
    for name, path in photos:
        img = cv2.imread(str(path))
        assert img is not None
        face = provider.detect_and_describe(img)
        if face is None:
            continue
        assert provider.detect_existence(img)
        assert face.descriptor.shape == (512,)
        # normed_embedding 为单位向量
        assert abs(float(np.linalg.norm(face.descriptor)) - 1.0) < 1e-3
        pairs.append((name, face.descriptor))

    if not pairs:
        pytest.skip("no detectable face in gallery photos")

    matcher = EuclideanMatcher(ReferenceSet.from_pairs(pairs), MatcherConfig(device="cpu"))
    name, descriptor = pairs[0]
    r = matcher.match(descriptor)
    assert r.identity_id == name
    assert r.distance < 1e-3


def test_blank_image_has_no_face():
    try:
        provider = InsightFaceProvider(InsightFaceConfig(device="cpu"))
    except Exception as e:
        pytest.skip(f"InsightFace model unavailable: {e}")

    blank = np.zeros((480, 640, 3), dtype=np.uint8)
    assert provider.detect_existence(blank) is False
    assert provider.detect_and_describe(blank) is None
