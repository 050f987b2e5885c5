"""Multi-angle face localisation: detection, clustering and selection.

The face detector is any callable ``detector(image) -> List[Rect]`` working in
the pixel coordinates of the image it receives.  ``YoloFaceDetector`` wraps the
ultralytics face model; tests plug in simple stand-ins.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable, List, Optional, Sequence, Tuple

import cv2
import numpy as np
from ultralytics import YOLO

from exceptions import ModelLoadError
from geometry import (
    Rect,
    image_extent,
    intersection_over_union,
    rotated_image,
    transform_rect,
)

FaceDetector = Callable[[np.ndarray], List[Rect]]

DEFAULT_ANGLES: Tuple[float, ...] = (-15.0, 0.0, 15.0)
CLUSTER_IOU_THRESHOLD = 0.35
MIN_DETECTION_SIDE_PX = 2.0

MIN_AREA_FRACTION = 0.06
MAX_AREA_FRACTION = 0.60
EDGE_GUARD_FRACTION = 0.04


@dataclass(frozen=True)
class FaceCandidate:
    rect: Rect
    support: int = 1


@dataclass
class RectCluster:
    """Running average of every rect merged into the cluster."""

    sum_min_x: float = 0.0
    sum_min_y: float = 0.0
    sum_max_x: float = 0.0
    sum_max_y: float = 0.0
    count: int = 0

    def add(self, rect: Rect) -> None:
        self.sum_min_x += rect.min_x
        self.sum_min_y += rect.min_y
        self.sum_max_x += rect.max_x
        self.sum_max_y += rect.max_y
        self.count += 1

    @property
    def representative(self) -> Rect:
        n = float(max(1, self.count))
        x1 = self.sum_min_x / n
        y1 = self.sum_min_y / n
        x2 = self.sum_max_x / n
        y2 = self.sum_max_y / n
        return Rect(x1, y1, max(1.0, x2 - x1), max(1.0, y2 - y1))


@dataclass(frozen=True)
class FaceSelection:
    """Winning face rect plus the stage that chose it."""

    rect: Rect
    stage: str
    support: int = 1
    candidates: Tuple[FaceCandidate, ...] = field(default=(), compare=False)


def cluster_rects(detections: Sequence[Rect],
                  iou_threshold: float = CLUSTER_IOU_THRESHOLD) -> List[RectCluster]:
    """Greedy single-pass clustering in input order.

    Each detection joins the first cluster whose current representative
    overlaps it with IoU >= ``iou_threshold``; otherwise it opens a new one.
    """
    clusters: List[RectCluster] = []
    for rect in detections:
        for cluster in clusters:
            if intersection_over_union(cluster.representative, rect) >= iou_threshold:
                cluster.add(rect)
                break
        else:
            cluster = RectCluster()
            cluster.add(rect)
            clusters.append(cluster)
    return clusters


def _detections_at_angle(image: np.ndarray,
                         detector: FaceDetector,
                         degrees: float) -> List[Rect]:
    rotated, forward = rotated_image(image, degrees)
    inverse = np.linalg.inv(forward)
    extent = image_extent(image)

    mapped: List[Rect] = []
    for rect in detector(rotated) or []:
        back = transform_rect(rect, inverse).intersection(extent)
        if back is None:
            continue
        if back.width <= MIN_DETECTION_SIDE_PX or back.height <= MIN_DETECTION_SIDE_PX:
            continue
        mapped.append(back)
    return mapped


def detect_face_candidates(image: np.ndarray,
                           detector: FaceDetector,
                           angles: Sequence[float] = DEFAULT_ANGLES) -> List[FaceCandidate]:
    """Run ``detector`` at each angle and vote the results into candidates."""
    detections: List[Rect] = []
    for degrees in angles:
        detections.extend(_detections_at_angle(image, detector, degrees))

    extent = image_extent(image)
    candidates: List[FaceCandidate] = []
    for cluster in cluster_rects(detections):
        rect = cluster.representative.intersection(extent)
        if rect is None:
            continue
        candidates.append(FaceCandidate(rect=rect, support=cluster.count))
    return candidates


def passes_sanity_filters(rect: Rect, image_size: Tuple[float, float]) -> bool:
    """Area fraction in [0.06, 0.60] and centre strictly away from the edges."""
    img_w, img_h = float(image_size[0]), float(image_size[1])
    image_area = img_w * img_h
    if image_area <= 0:
        return False
    fraction = rect.area / image_area
    if fraction < MIN_AREA_FRACTION or fraction > MAX_AREA_FRACTION:
        return False
    cx = rect.mid_x / img_w
    cy = rect.mid_y / img_h
    lo, hi = EDGE_GUARD_FRACTION, 1.0 - EDGE_GUARD_FRACTION
    return lo < cx < hi and lo < cy < hi


def _largest(candidates: Sequence[FaceCandidate]) -> Optional[FaceCandidate]:
    if not candidates:
        return None
    return max(candidates, key=lambda c: c.rect.area)


def _prioritised(candidates: Sequence[FaceCandidate]) -> List[FaceCandidate]:
    return [c for c in candidates if c.support >= 2]


def _stage_supported_filtered(candidates, image_size):
    return _largest([c for c in _prioritised(candidates)
                     if passes_sanity_filters(c.rect, image_size)])


def _stage_all_filtered(candidates, image_size):
    return _largest([c for c in candidates if passes_sanity_filters(c.rect, image_size)])


def _stage_ranked(candidates, image_size):
    pool = _prioritised(candidates) or list(candidates)
    if not pool:
        return None
    return max(pool, key=lambda c: (c.support, c.rect.area))


SELECTION_STAGES: Tuple[Tuple[str, Callable], ...] = (
    ("supported_filtered", _stage_supported_filtered),
    ("all_filtered", _stage_all_filtered),
    ("ranked", _stage_ranked),
)


def select_face(candidates: Sequence[FaceCandidate],
                image_size: Tuple[float, float]) -> Optional[FaceSelection]:
    """Walk ``SELECTION_STAGES`` in order and return the first pick."""
    for name, stage in SELECTION_STAGES:
        chosen = stage(candidates, image_size)
        if chosen is not None:
            return FaceSelection(
                rect=chosen.rect,
                stage=name,
                support=chosen.support,
                candidates=tuple(candidates),
            )
    return None


def detect_largest_face(image: np.ndarray,
                        detector: FaceDetector,
                        angles: Sequence[float] = DEFAULT_ANGLES) -> Optional[FaceSelection]:
    """Locate the principal face of ``image`` or return ``None``.

    When no candidate survives the multi-angle vote, a single upright pass
    is tried and its largest box is used.
    """
    h, w = image.shape[:2]
    candidates = detect_face_candidates(image, detector, angles)
    if candidates:
        return select_face(candidates, (w, h))

    upright = [FaceCandidate(rect=r.standardized()) for r in detector(image) or []]
    best = _largest(upright)
    if best is None:
        return None
    return FaceSelection(rect=best.rect, stage="upright_fallback", support=1,
                         candidates=tuple(upright))


class YoloFaceDetector:
    """Face detector backed by an ultralytics YOLO face model."""

    def __init__(self, model_path: str = "./yolo-face.pt", conf: float = 0.25) -> None:
        if not Path(model_path).exists():
            raise ModelLoadError(model_path, "file does not exist")
        try:
            self.model = YOLO(model_path)
        except Exception as exc:
            raise ModelLoadError(model_path, str(exc)) from exc
        self.conf = conf

    def __call__(self, image: np.ndarray) -> List[Rect]:
        bgr = cv2.cvtColor(image, cv2.COLOR_RGBA2BGR) if image.shape[2] == 4 else image
        result = self.model.predict(bgr, conf=self.conf, verbose=False)[0]
        boxes_xyxy = (
            result.boxes.xyxy.detach().cpu().numpy()
            if result.boxes is not None
            else np.empty((0, 4))
        )
        return [Rect.from_xyxy(*box[:4]) for box in boxes_xyxy]
