"""Rect math and canvas operations shared by the LoRA prep pipeline.

Images are ``uint8`` RGBA arrays of shape ``(H, W, 4)`` with a top-left
origin.  Every helper returns a new array; callers may keep using their input.
"""

from __future__ import annotations

import math
from dataclasses import dataclass
from typing import Optional, Tuple

import cv2
import numpy as np

RGBA = Tuple[int, int, int, int]

TRANSPARENT: RGBA = (0, 0, 0, 0)
OPAQUE_BLACK: RGBA = (0, 0, 0, 255)


@dataclass(frozen=True)
class Rect:
    x: float
    y: float
    width: float
    height: float

    @classmethod
    def from_xyxy(cls, x1: float, y1: float, x2: float, y2: float) -> "Rect":
        return cls(float(x1), float(y1), float(x2) - float(x1), float(y2) - float(y1))

    @property
    def min_x(self) -> float:
        return min(self.x, self.x + self.width)

    @property
    def min_y(self) -> float:
        return min(self.y, self.y + self.height)

    @property
    def max_x(self) -> float:
        return max(self.x, self.x + self.width)

    @property
    def max_y(self) -> float:
        return max(self.y, self.y + self.height)

    @property
    def mid_x(self) -> float:
        return (self.min_x + self.max_x) / 2.0

    @property
    def mid_y(self) -> float:
        return (self.min_y + self.max_y) / 2.0

    @property
    def area(self) -> float:
        return abs(self.width) * abs(self.height)

    def standardized(self) -> "Rect":
        """Return the same rect with non-negative width and height."""
        return Rect(self.min_x, self.min_y, self.max_x - self.min_x, self.max_y - self.min_y)

    def intersection(self, other: "Rect") -> Optional["Rect"]:
        """Overlap of two rects, ``None`` when they do not touch."""
        x1 = max(self.min_x, other.min_x)
        y1 = max(self.min_y, other.min_y)
        x2 = min(self.max_x, other.max_x)
        y2 = min(self.max_y, other.max_y)
        if x2 < x1 or y2 < y1:
            return None
        return Rect(x1, y1, x2 - x1, y2 - y1)

    def offset(self, dx: float, dy: float) -> "Rect":
        return Rect(self.x + dx, self.y + dy, self.width, self.height)

    def as_xyxy(self) -> Tuple[float, float, float, float]:
        return (self.min_x, self.min_y, self.max_x, self.max_y)


def image_extent(image: np.ndarray) -> Rect:
    h, w = image.shape[:2]
    return Rect(0.0, 0.0, float(w), float(h))


def intersection_over_union(a: Rect, b: Rect) -> float:
    """Intersection over union of two axis-aligned rects.

    Returns 0 for disjoint, zero-area or degenerate inputs.
    """
    inter = a.standardized().intersection(b.standardized())
    if inter is None or inter.width <= 0 or inter.height <= 0:
        return 0.0
    inter_area = inter.width * inter.height
    union_area = a.area + b.area - inter_area
    if union_area <= 0:
        return 0.0
    return float(inter_area / union_area)


def _as_3x3(matrix: np.ndarray) -> np.ndarray:
    m = np.asarray(matrix, dtype=np.float64)
    if m.shape == (3, 3):
        return m
    if m.shape == (2, 3):
        return np.vstack([m, [0.0, 0.0, 1.0]])
    raise ValueError(f"expected a 2x3 or 3x3 affine matrix, got shape {m.shape}")


def transform_rect(rect: Rect, matrix: np.ndarray) -> Rect:
    """Map the four corners of ``rect`` through ``matrix`` and re-box them."""
    m = _as_3x3(matrix)
    corners = np.array(
        [
            [rect.min_x, rect.min_y, 1.0],
            [rect.max_x, rect.min_y, 1.0],
            [rect.min_x, rect.max_y, 1.0],
            [rect.max_x, rect.max_y, 1.0],
        ]
    )
    mapped = corners @ m.T
    xs = mapped[:, 0]
    ys = mapped[:, 1]
    return Rect.from_xyxy(xs.min(), ys.min(), xs.max(), ys.max())


def rotated_image(image: np.ndarray, degrees: float) -> Tuple[np.ndarray, np.ndarray]:
    """Rotate ``image`` about its centre and move the result back to (0, 0).

    Returns:
        (rotated, forward)
        rotated: RGBA array sized to the bounding box of the rotated corners;
            areas not covered by the source are transparent.
        forward: 3x3 matrix mapping source pixel coordinates into ``rotated``
            (rotation followed by the re-normalising translation).
    """
    if abs(degrees) < 1e-4:
        return image, np.eye(3)

    h, w = image.shape[:2]
    center = (w / 2.0, h / 2.0)
    rotation = _as_3x3(cv2.getRotationMatrix2D(center, float(degrees), 1.0))

    bounds = transform_rect(Rect(0.0, 0.0, float(w), float(h)), rotation)
    align = np.array(
        [
            [1.0, 0.0, -bounds.min_x],
            [0.0, 1.0, -bounds.min_y],
            [0.0, 0.0, 1.0],
        ]
    )
    forward = align @ rotation

    out_w = max(1, int(math.ceil(bounds.width - 1e-6)))
    out_h = max(1, int(math.ceil(bounds.height - 1e-6)))
    rotated = cv2.warpAffine(
        image,
        forward[:2],
        (out_w, out_h),
        flags=cv2.INTER_LINEAR,
        borderMode=cv2.BORDER_CONSTANT,
        borderValue=TRANSPARENT,
    )
    return rotated, forward


def clamp_square_around(subject: Rect,
                        image_size: Tuple[float, float],
                        margin_k: float) -> Rect:
    """Square around ``subject`` with a margin, kept inside the image.

    The side starts at ``max(w, h) * margin_k`` and is clamped into
    ``[min(W, H) / 2, max(W, H) * 1.10]``.  The square is centred on the
    subject and shifted to fit; the side only shrinks when shifting is not
    enough.

    Args:
        subject: subject rect in image coordinates.
        image_size: ``(W, H)``.
        margin_k: multiplier applied to the subject's longest side.

    Returns:
        Rect fully contained in ``(0, 0, W, H)``.
    """
    img_w, img_h = float(image_size[0]), float(image_size[1])
    face = subject.standardized()

    side = max(face.width, face.height) * float(margin_k)
    side = max(side, min(img_w, img_h) / 2.0)
    side = min(side, max(img_w, img_h) * 1.10)

    x = face.mid_x - side / 2.0
    y = face.mid_y - side / 2.0
    x = max(0.0, min(x, img_w - side))
    y = max(0.0, min(y, img_h - side))

    if x + side > img_w or y + side > img_h:
        side = min(img_w - x, img_h - y)
        x = max(0.0, min(x, img_w - side))
        y = max(0.0, min(y, img_h - side))

    return Rect(x, y, side, side)


def _resize_rgba(image: np.ndarray, new_w: int, new_h: int) -> np.ndarray:
    """Resize on premultiplied colour so transparent pixels do not bleed."""
    h, w = image.shape[:2]
    if (w, h) == (new_w, new_h):
        return image.copy()
    interp = cv2.INTER_AREA if new_w < w and new_h < h else cv2.INTER_CUBIC

    rgba = image.astype(np.float32) / 255.0
    alpha = rgba[:, :, 3:4]
    premul = np.concatenate([rgba[:, :, :3] * alpha, alpha], axis=2)
    resized = cv2.resize(premul, (new_w, new_h), interpolation=interp)
    resized = np.clip(resized, 0.0, 1.0)

    out_alpha = resized[:, :, 3:4]
    safe = np.where(out_alpha > 1e-6, out_alpha, 1.0)
    colour = np.where(out_alpha > 1e-6, resized[:, :, :3] / safe, 0.0)
    out = np.concatenate([np.clip(colour, 0.0, 1.0), out_alpha], axis=2)
    return np.round(out * 255.0).astype(np.uint8)


def scale_uniform(image: np.ndarray, scale: float) -> np.ndarray:
    h, w = image.shape[:2]
    new_w = max(1, int(round(w * scale)))
    new_h = max(1, int(round(h * scale)))
    return _resize_rgba(image, new_w, new_h)


def scale_long_side(image: np.ndarray, target: float) -> np.ndarray:
    """Scale so the longest side equals ``target``; never upscales."""
    h, w = image.shape[:2]
    long_side = max(w, h)
    if long_side <= target + 1e-4:
        return image
    scale = float(target) / long_side
    target_px = int(round(target))
    if w >= h:
        return _resize_rgba(image, target_px, max(1, int(round(h * scale))))
    return _resize_rgba(image, max(1, int(round(w * scale))), target_px)


def scale_short_side(image: np.ndarray, target: float) -> np.ndarray:
    """Scale (up or down) so the shortest side equals ``target``."""
    h, w = image.shape[:2]
    short_side = min(w, h)
    if abs(short_side - target) < 1e-3:
        return image
    scale = float(target) / short_side
    target_px = int(round(target))
    if w <= h:
        return _resize_rgba(image, target_px, max(1, int(round(h * scale))))
    return _resize_rgba(image, max(1, int(round(w * scale))), target_px)


def center_crop_square(image: np.ndarray, size: float) -> np.ndarray:
    h, w = image.shape[:2]
    side = int(round(size))
    x1 = int(math.floor((w - side) / 2.0))
    y1 = int(math.floor((h - side) / 2.0))
    crop = Rect(float(x1), float(y1), float(side), float(side)).intersection(image_extent(image))
    if crop is None:
        return image[0:0, 0:0].copy()
    cx1, cy1, cx2, cy2 = (int(v) for v in crop.as_xyxy())
    return image[cy1:cy2, cx1:cx2].copy()


def pad_to_square(image: np.ndarray, size: float, pad_color: RGBA) -> np.ndarray:
    """Centre ``image`` on a ``size x size`` canvas filled with ``pad_color``.

    Images larger than ``size`` in either dimension are returned unchanged.
    """
    h, w = image.shape[:2]
    if w > size + 1e-3 or h > size + 1e-3:
        return image
    side = int(round(size))
    pad_top = (side - h) // 2
    pad_bottom = side - h - pad_top
    pad_left = (side - w) // 2
    pad_right = side - w - pad_left
    if pad_top == pad_bottom == pad_left == pad_right == 0:
        return image
    return cv2.copyMakeBorder(
        image,
        pad_top,
        pad_bottom,
        pad_left,
        pad_right,
        cv2.BORDER_CONSTANT,
        value=tuple(int(c) for c in pad_color),
    )


def center_image_on_face(image: np.ndarray, face: Rect, pad_color: RGBA) -> np.ndarray:
    """Grow the canvas so the centre of ``face`` becomes the canvas centre.

    Each side receives ``max(0, opposite distance - own distance)`` pixels of
    padding; nothing is cropped.
    """
    h, w = image.shape[:2]
    fr = face.standardized()

    left = fr.mid_x
    right = w - fr.mid_x
    top = fr.mid_y
    bottom = h - fr.mid_y

    pad_left = int(round(max(0.0, right - left)))
    pad_right = int(round(max(0.0, left - right)))
    pad_top = int(round(max(0.0, bottom - top)))
    pad_bottom = int(round(max(0.0, top - bottom)))

    if pad_left == pad_right == pad_top == pad_bottom == 0:
        return image
    return cv2.copyMakeBorder(
        image,
        pad_top,
        pad_bottom,
        pad_left,
        pad_right,
        cv2.BORDER_CONSTANT,
        value=tuple(int(c) for c in pad_color),
    )


def crop_to_rect(image: np.ndarray, rect: Rect) -> np.ndarray:
    region = rect.intersection(image_extent(image))
    if region is None:
        return image[0:0, 0:0].copy()
    x1 = int(math.floor(region.min_x))
    y1 = int(math.floor(region.min_y))
    x2 = max(x1 + 1, int(math.ceil(region.max_x)))
    y2 = max(y1 + 1, int(math.ceil(region.max_y)))
    return image[y1:y2, x1:x2].copy()


def average_edge_color(image: np.ndarray, border_fraction: float = 0.04) -> Optional[RGBA]:
    """Mean colour of the four border bands, each band weighted equally.

    A wide image's top/bottom bands hold more pixels than its left/right
    bands, but every band mean counts once.
    """
    h, w = image.shape[:2]
    if w <= 0 or h <= 0:
        return None
    border = max(1, int(min(w, h) * border_fraction))
    bands = [
        image[0:border, :, :],
        image[h - border:h, :, :],
        image[:, 0:border, :],
        image[:, w - border:w, :],
    ]
    means = [band.reshape(-1, image.shape[2]).astype(np.float64).mean(axis=0)
             for band in bands if band.size > 0]
    if not means:
        return None
    mean = np.mean(means, axis=0)
    if mean.shape[0] == 3:
        mean = np.append(mean, 255.0)
    return tuple(int(round(float(c))) for c in mean[:4])
