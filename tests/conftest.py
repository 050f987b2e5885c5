"""Pytest configuration and shared fixtures for the LoRA prep tool.

Model-backed oracles are replaced by small stand-ins: a red-blob face detector
(so the multi-angle rotation path runs for real), a segmenter returning a
fixed mask, and a bicubic 2x upscaler.
"""
import sys
import tempfile
from pathlib import Path
from typing import List, Optional

import cv2
import numpy as np
import pytest
from PIL import Image

# Add the project root to Python path
PROJECT_ROOT = Path(__file__).parent.parent
sys.path.insert(0, str(PROJECT_ROOT))

from geometry import Rect
from segmentation import SegmentationResult
from super_resolution import UpscaleResult

BACKGROUND = (40, 90, 160)
FACE_RED = (255, 0, 0)


def red_blob_detector(image: np.ndarray) -> List[Rect]:
    """Bounding box of the strongly red pixels, as a face detector would."""
    r = image[:, :, 0].astype(int)
    g = image[:, :, 1].astype(int)
    b = image[:, :, 2].astype(int)
    a = image[:, :, 3].astype(int) if image.shape[2] == 4 else np.full_like(r, 255)
    hits = (r > 200) & (g < 60) & (b < 60) & (a > 200)
    ys, xs = np.nonzero(hits)
    if xs.size == 0:
        return []
    return [Rect.from_xyxy(xs.min(), ys.min(), xs.max() + 1, ys.max() + 1)]


def make_photo(width: int,
               height: int,
               face_center: Optional[tuple] = None,
               face_side: int = 0) -> np.ndarray:
    """Opaque RGBA photo with an optional red square 'face'."""
    img = np.zeros((height, width, 4), np.uint8)
    img[:, :, :3] = BACKGROUND
    img[:, :, 3] = 255
    if face_center is not None and face_side > 0:
        cx, cy = face_center
        x1 = int(round(cx - face_side / 2.0))
        y1 = int(round(cy - face_side / 2.0))
        img[y1:y1 + face_side, x1:x1 + face_side, :3] = FACE_RED
    return img


def save_photo(image: np.ndarray, path: Path) -> Path:
    Image.fromarray(image).convert("RGB").save(path)
    return path


def red_centroid(image: np.ndarray) -> tuple:
    hits = (image[:, :, 0] > 200) & (image[:, :, 1] < 60) & (image[:, :, 2] < 60)
    ys, xs = np.nonzero(hits)
    return float(xs.mean()), float(ys.mean())


class FixedMaskSegmenter:
    """Segmenter stand-in returning a left-half mask (or ``None``)."""

    def __init__(self, produce_mask: bool = True) -> None:
        self.produce_mask = produce_mask
        self.calls = 0

    def segment(self, image: np.ndarray) -> SegmentationResult:
        self.calls += 1
        if not self.produce_mask:
            return SegmentationResult()
        h, w = image.shape[:2]
        mask = np.zeros((h, w), np.float32)
        mask[:, : w // 2] = 1.0
        return SegmentationResult(mask=mask)


class DoublingUpscaler:
    def __init__(self) -> None:
        self.calls = 0

    def upscale(self, image: np.ndarray) -> UpscaleResult:
        self.calls += 1
        h, w = image.shape[:2]
        return UpscaleResult(image=cv2.resize(image, (w * 2, h * 2), interpolation=cv2.INTER_CUBIC))


class FailingUpscaler:
    def __init__(self) -> None:
        self.calls = 0

    def upscale(self, image: np.ndarray) -> UpscaleResult:
        self.calls += 1
        return UpscaleResult(error="model unavailable")


class StalledUpscaler:
    def __init__(self) -> None:
        self.calls = 0

    def upscale(self, image: np.ndarray) -> UpscaleResult:
        self.calls += 1
        return UpscaleResult(image=image.copy())


@pytest.fixture(scope="session")
def project_root():
    """Provide project root directory path."""
    return PROJECT_ROOT


@pytest.fixture
def temp_dir():
    """Provide a temporary directory for test files."""
    with tempfile.TemporaryDirectory() as tmpdir:
        yield Path(tmpdir)


@pytest.fixture
def detector():
    return red_blob_detector


@pytest.fixture
def face_photo():
    """1000x1000 photo, 387 px face centred left of centre at (350, 500)."""
    return make_photo(1000, 1000, face_center=(350, 500), face_side=387)


@pytest.fixture
def landscape_photo():
    """1200x600 photo without any face."""
    return make_photo(1200, 600)
