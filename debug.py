# Debug visualisation helpers (BGR images, written with cv2.imwrite)
from typing import Optional, Sequence

import cv2
import numpy as np

from geometry import Rect


def to_bgr(rgba):
    """Flatten an RGBA canvas over mid-grey so transparency stays visible."""
    rgb = rgba[:, :, :3].astype(np.float32)
    alpha = rgba[:, :, 3:4].astype(np.float32) / 255.0
    grey = np.full_like(rgb, 128.0)
    flat = rgb * alpha + grey * (1.0 - alpha)
    return cv2.cvtColor(flat.round().astype(np.uint8), cv2.COLOR_RGB2BGR)


def overlay_mask(base, mask, alpha=0.5):
    """Overlay a white mask on base image; ``mask`` may be binary or [0, 1]."""
    base = base.copy()
    white = np.full_like(base, 255)
    sel = mask > 0.5 if mask.dtype.kind == "f" else mask > 0
    base[sel] = cv2.addWeighted(base[sel], 1 - alpha, white[sel], alpha, 0)
    return base


def put_caption(img, text):
    """Add a black bar caption at the top of an image."""
    img = img.copy()
    cv2.rectangle(img, (0, 0), (img.shape[1], 28), (0, 0, 0), -1)
    cv2.putText(img, text, (8, 20), cv2.FONT_HERSHEY_SIMPLEX, 0.6,
                (255, 255, 255), 1, cv2.LINE_AA)
    return img


def draw_candidates(img, candidates: Sequence, selected: Optional[Rect] = None):
    """Draw every face candidate with its support; the selection in green."""
    vis = img.copy()
    for cand in candidates:
        x1, y1, x2, y2 = (int(round(v)) for v in cand.rect.as_xyxy())
        cv2.rectangle(vis, (x1, y1), (x2, y2), (0, 165, 255), 2)
        cv2.putText(vis, f"x{cand.support}", (x1 + 4, max(14, y1 - 6)),
                    cv2.FONT_HERSHEY_SIMPLEX, 0.5, (0, 165, 255), 1, cv2.LINE_AA)
    if selected is not None:
        x1, y1, x2, y2 = (int(round(v)) for v in selected.as_xyxy())
        cv2.rectangle(vis, (x1, y1), (x2, y2), (0, 255, 0), 3)
    return vis
