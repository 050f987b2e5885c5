"""Person segmentation engines and subject-mask composition.

Engines expose ``segment(image) -> SegmentationResult``.  A result carrying
neither a mask nor an error means the engine had nothing to say about the
image; callers treat that like a failure and keep the canvas opaque.
"""

from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path
from typing import List, Optional, Tuple, Union

import cv2
import numpy as np
from PIL import Image, ImageOps
from ultralytics import YOLO

from exceptions import ModelLoadError

SEGMENTATION_ENGINES = ("automatic", "yolo", "grabcut")
PERSON_CLASS_ID = 0

MATTE_SUFFIX = ".matte.png"
DEPTH_MAP_SUFFIX = ".depth.png"
DISPARITY_SUFFIX = ".disparity.png"
DEPTH_SUFFIXES = (DEPTH_MAP_SUFFIX, DISPARITY_SUFFIX)
SIDECAR_SUFFIXES = (MATTE_SUFFIX,) + DEPTH_SUFFIXES

DEPTH_CONTRAST = 1.5
GRABCUT_INSET_FRACTION = 0.05
GRABCUT_ITERATIONS = 5


@dataclass
class SegmentationResult:
    mask: Optional[np.ndarray] = None
    error: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.mask is not None


@dataclass
class AuxiliaryAssets:
    """Per-photo extra signals: portrait matte and depth, both in [0, 1].

    ``depth`` is held as disparity, so nearer surfaces are brighter.
    """

    portrait_matte: Optional[np.ndarray] = None
    depth: Optional[np.ndarray] = None

    @property
    def is_empty(self) -> bool:
        return self.portrait_matte is None and self.depth is None


def normalise_segmentation_engine(raw: Optional[str]) -> str:
    if not raw:
        return "automatic"
    value = raw.strip().lower()
    if value in {"yolo", "yolov8", "neural", "ml"}:
        return "yolo"
    if value in {"grabcut", "grab-cut", "grab_cut", "classic"}:
        return "grabcut"
    return "automatic"


# Sidecar assets ---------------------------------------------------------------
def is_sidecar(path: Union[str, Path]) -> bool:
    name = Path(path).name.lower()
    return any(name.endswith(suffix) for suffix in SIDECAR_SUFFIXES)


def _sidecar_path(photo: Path, suffix: str) -> Path:
    return photo.with_name(photo.stem + suffix)


def _read_grey_map(path: Path) -> np.ndarray:
    with Image.open(path) as im:
        grey = ImageOps.exif_transpose(im).convert("L")
        return np.asarray(grey, dtype=np.float32) / 255.0


def load_auxiliary_assets(photo_path: Union[str, Path]) -> Optional[AuxiliaryAssets]:
    """Read ``<stem>.matte.png`` and ``<stem>.depth.png`` next to a photo.

    ``<stem>.disparity.png`` is accepted when no depth map exists.  A depth
    map stores distance (near is dark) and is inverted to disparity on load.
    Returns ``None`` when the photo has no sidecars.
    """
    photo = Path(photo_path)
    assets = AuxiliaryAssets()

    matte = _sidecar_path(photo, MATTE_SUFFIX)
    if matte.is_file():
        assets.portrait_matte = _read_grey_map(matte)

    for suffix in DEPTH_SUFFIXES:
        depth = _sidecar_path(photo, suffix)
        if depth.is_file():
            values = _read_grey_map(depth)
            if suffix == DEPTH_MAP_SUFFIX:
                values = 1.0 - values
            assets.depth = values
            break

    return None if assets.is_empty else assets


# Mask composition -------------------------------------------------------------
def depth_pseudo_alpha(depth: np.ndarray) -> np.ndarray:
    """Clamp depth to [0, 1] and stretch its contrast around mid-grey."""
    d = np.clip(depth.astype(np.float32), 0.0, 1.0)
    d = (d - 0.5) * DEPTH_CONTRAST + 0.5
    return np.clip(d, 0.0, 1.0)


def _resize_mask(mask: np.ndarray, size: Tuple[int, int]) -> np.ndarray:
    w, h = size
    if mask.shape[1] == w and mask.shape[0] == h:
        return mask
    return cv2.resize(mask, (w, h), interpolation=cv2.INTER_LINEAR)


def composite_mask(primary: Optional[np.ndarray],
                   auxiliary: Optional[AuxiliaryAssets],
                   target_size: Tuple[int, int],
                   feather: float = 0.0,
                   erosion: float = 0.0) -> Optional[np.ndarray]:
    """Merge the subject signals into one mask sized ``target_size`` (W, H).

    Contributions are the primary mask, the portrait matte and the depth
    pseudo-alpha.  They are combined with a per-pixel maximum at the largest
    contributing resolution, resized to the target, eroded, then feathered.
    With no contributions ``primary`` is returned as is.
    """
    contributions: List[np.ndarray] = []
    if primary is not None:
        contributions.append(primary.astype(np.float32))
    if auxiliary is not None and auxiliary.portrait_matte is not None:
        contributions.append(auxiliary.portrait_matte.astype(np.float32))
    if auxiliary is not None and auxiliary.depth is not None:
        contributions.append(depth_pseudo_alpha(auxiliary.depth))

    if not contributions:
        return primary

    largest = max(contributions, key=lambda m: m.shape[0] * m.shape[1])
    base_size = (largest.shape[1], largest.shape[0])
    merged = _resize_mask(contributions[0], base_size)
    for extra in contributions[1:]:
        merged = np.maximum(merged, _resize_mask(extra, base_size))

    merged = _resize_mask(merged, (int(target_size[0]), int(target_size[1])))

    radius = int(round(erosion))
    if radius > 0:
        kernel = cv2.getStructuringElement(cv2.MORPH_ELLIPSE, (2 * radius + 1, 2 * radius + 1))
        merged = cv2.erode(merged, kernel)

    if feather > 0:
        merged = cv2.GaussianBlur(merged, (0, 0), sigmaX=float(feather), sigmaY=float(feather))

    return np.clip(merged, 0.0, 1.0).astype(np.float32)


def apply_mask(image: np.ndarray, mask: np.ndarray) -> np.ndarray:
    """Blend ``image`` over transparency using ``mask`` as coverage."""
    h, w = image.shape[:2]
    m = _resize_mask(mask.astype(np.float32), (w, h))
    out = image.copy()
    alpha = out[:, :, 3].astype(np.float32) * np.clip(m, 0.0, 1.0)
    out[:, :, 3] = np.round(alpha).astype(np.uint8)
    return out


# Engines ----------------------------------------------------------------------
class YoloSegmentationEngine:
    """Union of every person instance found by an ultralytics ``-seg`` model."""

    name = "yolo"

    def __init__(self, model_path: str = "./yolov8n-seg.pt", conf: float = 0.25) -> None:
        if not Path(model_path).exists():
            raise ModelLoadError(model_path, "file does not exist")
        try:
            self.model = YOLO(model_path)
        except Exception as exc:
            raise ModelLoadError(model_path, str(exc)) from exc
        self.conf = conf

    def segment(self, image: np.ndarray) -> SegmentationResult:
        h, w = image.shape[:2]
        bgr = cv2.cvtColor(image, cv2.COLOR_RGBA2BGR)
        try:
            result = self.model.predict(bgr, conf=self.conf, verbose=False)[0]
        except Exception as exc:
            return SegmentationResult(error=f"segmentation failed: {exc}")

        if result.masks is None or result.boxes is None:
            return SegmentationResult()

        classes = result.boxes.cls.detach().cpu().numpy().astype(int)
        mask = np.zeros((h, w), dtype=np.uint8)
        found = False
        for polygon, cls in zip(result.masks.xy, classes):
            if cls != PERSON_CLASS_ID or len(polygon) < 3:
                continue
            cv2.fillPoly(mask, [np.round(polygon).astype(np.int32)], 255)
            found = True
        if not found:
            return SegmentationResult()
        return SegmentationResult(mask=mask.astype(np.float32) / 255.0)


class GrabCutSegmentationEngine:
    """Classic OpenCV GrabCut seeded with an inset rectangle.

    Transparent pixels (padding added earlier in the pipeline) are pinned to
    background.
    """

    name = "grabcut"

    def __init__(self, iterations: int = GRABCUT_ITERATIONS) -> None:
        self.iterations = iterations

    def segment(self, image: np.ndarray) -> SegmentationResult:
        h, w = image.shape[:2]
        inset_x = max(1, int(round(w * GRABCUT_INSET_FRACTION)))
        inset_y = max(1, int(round(h * GRABCUT_INSET_FRACTION)))
        if w <= 2 * inset_x + 1 or h <= 2 * inset_y + 1:
            return SegmentationResult(error="image too small for GrabCut")

        mask = np.full((h, w), cv2.GC_BGD, np.uint8)
        mask[inset_y:h - inset_y, inset_x:w - inset_x] = cv2.GC_PR_FGD
        mask[image[:, :, 3] == 0] = cv2.GC_BGD

        if not np.any(mask == cv2.GC_PR_FGD):
            return SegmentationResult()

        bgr = cv2.cvtColor(image, cv2.COLOR_RGBA2BGR)
        bgd_model = np.zeros((1, 65), np.float64)
        fgd_model = np.zeros((1, 65), np.float64)
        try:
            cv2.grabCut(bgr, mask, None, bgd_model, fgd_model, self.iterations,
                        cv2.GC_INIT_WITH_MASK)
        except cv2.error as exc:
            return SegmentationResult(error=f"GrabCut failed: {exc}")

        fg = np.where((mask == cv2.GC_FGD) | (mask == cv2.GC_PR_FGD), 1.0, 0.0)
        return SegmentationResult(mask=fg.astype(np.float32))


def segmentation_engine_is_available(name: str, model_path: str = "./yolov8n-seg.pt") -> bool:
    engine = normalise_segmentation_engine(name)
    if engine == "yolo":
        return Path(model_path).is_file()
    return True


def resolve_segmentation_engine(name: str, model_path: str = "./yolov8n-seg.pt"):
    """Build the requested engine, falling back to ``automatic`` if unavailable.

    ``automatic`` picks the YOLO engine when its weights are present and
    GrabCut otherwise.
    """
    engine = normalise_segmentation_engine(name)
    if engine != "automatic" and not segmentation_engine_is_available(engine, model_path):
        print(f"[Mask] Engine '{engine}' unavailable; falling back to automatic.")
        engine = "automatic"

    if engine == "grabcut":
        return GrabCutSegmentationEngine()

    if segmentation_engine_is_available("yolo", model_path):
        try:
            return YoloSegmentationEngine(model_path)
        except ModelLoadError as exc:
            print(f"[Mask] {exc.message}; using GrabCut.")
    return GrabCutSegmentationEngine()
