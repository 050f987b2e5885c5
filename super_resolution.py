"""Super-resolution upscaling through an ONNX model run by ``cv2.dnn``.

The model is expected to take an NCHW float RGB tensor in [0, 1] and return
the upscaled image in the same layout.  Alpha is resized separately with
bicubic interpolation.
"""

from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path
from typing import Optional

import cv2
import numpy as np

from exceptions import ModelLoadError

MAX_UPSCALE_ITERATIONS = 4
MIN_USEFUL_GAIN = 1.01


@dataclass
class UpscaleResult:
    image: Optional[np.ndarray] = None
    error: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.image is not None


class SuperResolutionEngine:
    """One forward pass of the model per ``upscale`` call."""

    def __init__(self, model_path: str) -> None:
        if not Path(model_path).is_file():
            raise ModelLoadError(model_path, "file does not exist")
        try:
            self.net = cv2.dnn.readNet(str(model_path))
        except cv2.error as exc:
            raise ModelLoadError(model_path, str(exc)) from exc
        self.model_path = str(model_path)

    def upscale(self, image: np.ndarray) -> UpscaleResult:
        rgb = np.ascontiguousarray(image[:, :, :3])
        blob = cv2.dnn.blobFromImage(rgb, scalefactor=1.0 / 255.0, swapRB=False, crop=False)
        try:
            self.net.setInput(blob)
            output = self.net.forward()
        except cv2.error as exc:
            return UpscaleResult(error=f"super-resolution failed: {exc}")

        if output.ndim != 4 or output.shape[1] < 3:
            return UpscaleResult(error=f"unexpected model output shape {output.shape}")

        out_rgb = np.transpose(output[0, :3], (1, 2, 0))
        out_rgb = np.clip(out_rgb * 255.0, 0, 255).round().astype(np.uint8)
        out_h, out_w = out_rgb.shape[:2]
        alpha = cv2.resize(image[:, :, 3], (out_w, out_h), interpolation=cv2.INTER_CUBIC)
        return UpscaleResult(image=np.dstack([out_rgb, alpha]))


def upscale_to_target(image: np.ndarray,
                      upscaler,
                      target: float,
                      max_iterations: int = MAX_UPSCALE_ITERATIONS) -> np.ndarray:
    """Repeatedly upscale until the short side reaches ``target``.

    Stops after ``max_iterations`` passes, on the first failed pass, or when a
    pass grows neither side by more than 1%.  The last good image is returned.
    """
    working = image
    iterations = 0
    while min(working.shape[:2]) + 0.5 < target and iterations < max_iterations:
        h, w = working.shape[:2]
        result = upscaler.upscale(working)
        iterations += 1
        if not result.ok:
            print(f"[SuperRes] Pass {iterations} failed: {result.error or 'no image'}")
            break
        new_h, new_w = result.image.shape[:2]
        gain_w = new_w / float(w)
        gain_h = new_h / float(h)
        if gain_w <= MIN_USEFUL_GAIN and gain_h <= MIN_USEFUL_GAIN:
            print(f"[SuperRes] Pass {iterations} stalled at {new_w}x{new_h}")
            break
        working = result.image
        print(f"[SuperRes] Pass {iterations}: {w}x{h} -> {new_w}x{new_h}")
    return working
