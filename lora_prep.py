"""High-level interface for the LoRA dataset preparation pipeline.

This module exposes a reusable API that can be imported by the CLI or the
HTTP service alike.  ``LoRAPrepPipeline`` walks an input folder and writes one
square, metadata-free PNG per photo; ``CanvasComposer`` turns a single decoded
photo into that square canvas.  Model-backed collaborators (face detector,
segmenter, upscaler) travel in a ``ProcessingContext`` so callers and tests
can swap them out.
"""

from __future__ import annotations

import io
import math
import os
import re
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from pathlib import Path
from typing import Callable, List, Optional, Tuple, Union

import cv2
import numpy as np
from PIL import Image, ImageOps

from debug import draw_candidates, overlay_mask, put_caption, to_bgr
from exceptions import (
    ImageDecodeError,
    InputFolderNotFoundError,
    InvalidConfigurationError,
    LoRAPrepError,
    NoImagesFoundError,
    RenderError,
)
from face_detection import FaceDetector, FaceSelection, YoloFaceDetector, detect_largest_face
from geometry import (
    OPAQUE_BLACK,
    TRANSPARENT,
    RGBA,
    Rect,
    average_edge_color,
    center_crop_square,
    center_image_on_face,
    clamp_square_around,
    crop_to_rect,
    pad_to_square,
    scale_long_side,
    scale_short_side,
)
from segmentation import (
    AuxiliaryAssets,
    SegmentationResult,
    apply_mask,
    composite_mask,
    is_sidecar,
    load_auxiliary_assets,
    normalise_segmentation_engine,
    resolve_segmentation_engine,
)
from super_resolution import SuperResolutionEngine, upscale_to_target

PathLike = Union[str, Path]

DEFAULT_EXTENSIONS: Tuple[str, ...] = ("jpg", "jpeg", "png", "heic", "tif", "tiff", "webp")
FILL_MARGIN_K = 1.90


def norm_lora_name(raw: str) -> str:
    """Uppercase token safe for filenames: ``"my cat!"`` -> ``"MY_CAT"``."""
    token = (raw or "").upper()
    token = re.sub(r"[^A-Z0-9 _-]", "", token)
    token = re.sub(r"\s+", "_", token)
    return token.strip("_")


def clamp_radius(value: Optional[float]) -> float:
    """Non-negative finite radius; anything else becomes 0."""

    if value is None:
        return 0.0
    try:
        value_f = float(value)
    except (TypeError, ValueError):
        return 0.0
    if math.isnan(value_f) or math.isinf(value_f):
        return 0.0
    return max(0.0, value_f)


@dataclass(frozen=True)
class PipelineConfiguration:
    input_folder: Path
    lora_name: str
    size: int = 1024
    remove_background: bool = False
    super_res_model_path: Optional[str] = None
    pad_with_transparency: bool = True
    skip_face_detection: bool = False
    prefer_crop: bool = True
    maximize_subject_fill: bool = False
    segmentation_engine: str = "automatic"
    feather_radius: float = 0.0
    erosion_radius: float = 0.0
    face_model_path: str = "./yolo-face.pt"
    segmentation_model_path: str = "./yolov8n-seg.pt"
    file_extensions: Tuple[str, ...] = DEFAULT_EXTENSIONS
    output_root: Optional[Path] = None
    debug_dir: Optional[Path] = None

    def __post_init__(self) -> None:
        object.__setattr__(self, "input_folder", Path(self.input_folder))
        if self.output_root is not None:
            object.__setattr__(self, "output_root", Path(self.output_root))
        if self.debug_dir is not None:
            object.__setattr__(self, "debug_dir", Path(self.debug_dir))
        object.__setattr__(self, "segmentation_engine",
                           normalise_segmentation_engine(self.segmentation_engine))
        object.__setattr__(self, "feather_radius", clamp_radius(self.feather_radius))
        object.__setattr__(self, "erosion_radius", clamp_radius(self.erosion_radius))
        object.__setattr__(self, "file_extensions",
                           tuple(sorted({e.lower().lstrip(".") for e in self.file_extensions})))

    @property
    def name_token(self) -> str:
        return norm_lora_name(self.lora_name)

    def validate(self) -> None:
        if not self.name_token:
            raise InvalidConfigurationError(
                f"LoRA name '{self.lora_name}' is empty after normalisation"
            )
        if int(self.size) < 1:
            raise InvalidConfigurationError(f"Output size must be at least 1 px, got {self.size}")


# Results & progress -----------------------------------------------------------
@dataclass(frozen=True)
class ProcessedImagePair:
    original_path: Path
    processed_path: Path


@dataclass(frozen=True)
class ProcessingFailure:
    source_path: Path
    error: Exception

    @property
    def message(self) -> str:
        if isinstance(self.error, LoRAPrepError):
            return self.error.message
        detail = str(self.error) or type(self.error).__name__
        return f"{self.source_path.name}: {detail}"


@dataclass(frozen=True)
class FaceDetectionLog:
    image_size: Tuple[int, int]
    rect: Optional[Rect] = None

    @property
    def found(self) -> bool:
        return self.rect is not None

    def describe(self) -> str:
        w, h = (int(v) for v in self.image_size)
        if self.rect is None:
            return f"NO_FACE size=({w}x{h})"
        x1, y1, x2, y2 = (int(v) for v in self.rect.as_xyxy())
        return f"FACE_FOUND box=({x1},{y1},{x2},{y2}) size=({w}x{h})"


class ProgressKind(str, Enum):
    STARTED = "started"
    PROCESSING = "processing"
    FACE_DETECTION = "face_detection"
    FILE_WRITTEN = "file_written"
    FAILED = "failed"
    COMPLETED = "completed"


@dataclass(frozen=True)
class ProgressUpdate:
    kind: ProgressKind
    index: Optional[int] = None
    total: Optional[int] = None
    input_path: Optional[Path] = None
    output_path: Optional[Path] = None
    output_directory: Optional[Path] = None
    detection: Optional[FaceDetectionLog] = None
    error: Optional[Exception] = None


ProgressCallback = Callable[[ProgressUpdate], None]


@dataclass
class LoRAPrepResult:
    output_directory: Path
    images: List[ProcessedImagePair] = field(default_factory=list)
    failures: List[ProcessingFailure] = field(default_factory=list)

    @property
    def succeeded(self) -> int:
        return len(self.images)

    @property
    def failed(self) -> int:
        return len(self.failures)

    def summary(self) -> str:
        if not self.failures:
            return f"Processing complete: {self.succeeded} images ready."
        return f"Processing complete: {self.succeeded} succeeded, {self.failed} failed."


# Context ----------------------------------------------------------------------
@dataclass
class ProcessingContext:
    """Model-backed collaborators for one run.

    face_detector: callable returning face rects, ``None`` disables detection.
    segmenter: object with ``segment(image)``, ``None`` disables background removal.
    upscaler: object with ``upscale(image)``, ``None`` disables super-resolution.
    """

    face_detector: Optional[FaceDetector] = None
    segmenter: Optional[object] = None
    upscaler: Optional[object] = None

    @classmethod
    def from_configuration(cls, config: PipelineConfiguration) -> "ProcessingContext":
        detector = None
        if not config.skip_face_detection:
            detector = YoloFaceDetector(config.face_model_path)
        segmenter = None
        if config.remove_background:
            segmenter = resolve_segmentation_engine(
                config.segmentation_engine, config.segmentation_model_path
            )
        upscaler = None
        if config.super_res_model_path:
            upscaler = SuperResolutionEngine(config.super_res_model_path)
        return cls(face_detector=detector, segmenter=segmenter, upscaler=upscaler)


# Image IO ---------------------------------------------------------------------
def load_image(path: PathLike) -> np.ndarray:
    """Decode ``path`` as upright RGBA, honouring EXIF orientation."""
    try:
        with Image.open(path) as im:
            upright = ImageOps.exif_transpose(im)
            return np.array(upright.convert("RGBA"), dtype=np.uint8)
    except (OSError, ValueError, Image.DecompressionBombError) as exc:
        raise ImageDecodeError(path, str(exc)) from exc


def decode_image_bytes(data: bytes, name: str = "upload") -> np.ndarray:
    try:
        with Image.open(io.BytesIO(data)) as im:
            upright = ImageOps.exif_transpose(im)
            return np.array(upright.convert("RGBA"), dtype=np.uint8)
    except (OSError, ValueError, Image.DecompressionBombError) as exc:
        raise ImageDecodeError(name, str(exc)) from exc


def encode_png(canvas: np.ndarray) -> bytes:
    """PNG bytes with no ancillary metadata chunks."""
    buf = io.BytesIO()
    Image.fromarray(canvas).save(buf, format="PNG")
    return buf.getvalue()


def write_png(canvas: np.ndarray, path: PathLike) -> None:
    with open(path, "wb") as fh:
        fh.write(encode_png(canvas))


# Composition ------------------------------------------------------------------
@dataclass
class CompositionResult:
    canvas: np.ndarray
    detection: FaceDetectionLog
    selection: Optional[FaceSelection] = None
    mask: Optional[np.ndarray] = None


class CanvasComposer:
    """Turn one decoded photo into a ``size x size`` RGBA canvas."""

    def __init__(self, config: PipelineConfiguration, context: ProcessingContext) -> None:
        self.config = config
        self.context = context
        self.size = int(config.size)

    def _padding_color(self, image: np.ndarray) -> RGBA:
        if self.config.pad_with_transparency:
            return TRANSPARENT
        return average_edge_color(image) or OPAQUE_BLACK

    def compose(self,
                image: np.ndarray,
                *,
                auxiliary: Optional[AuxiliaryAssets] = None,
                progress: Optional[ProgressCallback] = None,
                debug_prefix: Optional[str] = None) -> CompositionResult:
        size = self.size
        h, w = image.shape[:2]

        # Detect ------------------------------------------------------------
        selection = None
        if self.config.skip_face_detection or self.context.face_detector is None:
            print("[Detect] Face detection bypassed.")
        else:
            selection = detect_largest_face(image, self.context.face_detector)
        face = selection.rect if selection is not None else None

        detection = FaceDetectionLog(image_size=(w, h), rect=face)
        if selection is not None:
            print(f"[Detect] {detection.describe()} via '{selection.stage}' (support {selection.support}).")
        else:
            print(f"[Detect] {detection.describe()}")
        if progress is not None:
            progress(ProgressUpdate(kind=ProgressKind.FACE_DETECTION, detection=detection))
        if self.config.debug_dir is not None and debug_prefix:
            self._save_detection_debug(image, selection, debug_prefix)

        working = image
        if face is not None and self.config.maximize_subject_fill:
            square = clamp_square_around(face, (w, h), FILL_MARGIN_K)
            working = crop_to_rect(working, square)
            face = face.offset(-math.floor(square.min_x), -math.floor(square.min_y))
            print(f"[Center] Subject fill crop -> {working.shape[1]}x{working.shape[0]}")

        # Center ------------------------------------------------------------
        if face is not None:
            working = center_image_on_face(working, face, self._padding_color(working))
            print(f"[Center] Canvas centred on face -> {working.shape[1]}x{working.shape[0]}")

        face_size = (face.width, face.height) if face is not None else None

        # Super-resolution --------------------------------------------------
        if self.context.upscaler is not None:
            before_w = working.shape[1]
            working = upscale_to_target(working, self.context.upscaler, size)
            if face_size is not None:
                gain = working.shape[1] / float(before_w)
                face_size = (face_size[0] * gain, face_size[1] * gain)

        # Fit ---------------------------------------------------------------
        working = self._fit(working, face_size)

        # Mask --------------------------------------------------------------
        mask = None
        if self.config.remove_background and self.context.segmenter is not None:
            mask = self._subject_mask(working, auxiliary)
            if mask is not None:
                working = apply_mask(working, mask)
                print(f"[Mask] Background removed (coverage {float(mask.mean()):.2f}).")
                if self.config.debug_dir is not None and debug_prefix:
                    self._save_mask_debug(working, mask, debug_prefix)
            else:
                print("[Mask] No subject mask; keeping opaque canvas.")

        canvas = working[:size, :size]
        if canvas.shape[0] != size or canvas.shape[1] != size:
            raise RenderError(
                f"Canvas is {canvas.shape[1]}x{canvas.shape[0]}, expected {size}x{size}"
            )
        return CompositionResult(
            canvas=np.ascontiguousarray(canvas),
            detection=detection,
            selection=selection,
            mask=mask,
        )

    def _crop_keeps_subject(self, scaled: np.ndarray,
                            face_size: Optional[Tuple[float, float]],
                            scale: float) -> bool:
        """True when a centre crop keeps the whole centred face box."""
        if face_size is None or not self.config.prefer_crop:
            return False
        sh, sw = scaled.shape[:2]
        if sw < self.size - 0.5 or sh < self.size - 0.5:
            return False
        return (face_size[0] * scale <= self.size + 0.5
                and face_size[1] * scale <= self.size + 0.5)

    def _fit(self, working: np.ndarray,
             face_size: Optional[Tuple[float, float]] = None) -> np.ndarray:
        """Scale and crop or pad ``working`` to exactly ``size x size``.

        ``face_size`` is the subject box size in ``working`` coordinates, the
        box being centred on the canvas.  Without a subject the whole frame is
        kept and padded.
        """
        size = self.size
        h, w = working.shape[:2]
        if min(w, h) + 0.5 >= size:
            scaled = scale_short_side(working, size)
            if self._crop_keeps_subject(scaled, face_size, scaled.shape[1] / float(w)):
                print(f"[Fit] {w}x{h} -> short side {size}, centre crop")
                return center_crop_square(scaled, size)
            print(f"[Fit] {w}x{h} -> long side {size}, pad to square")
            fitted = scale_long_side(working, size)
            return pad_to_square(fitted, size, self._padding_color(fitted))

        print(f"[Fit] {w}x{h} below {size}px; pad to square")
        fitted = scale_long_side(working, size)
        return pad_to_square(fitted, size, self._padding_color(fitted))

    def _subject_mask(self, working: np.ndarray,
                      auxiliary: Optional[AuxiliaryAssets]) -> Optional[np.ndarray]:
        h, w = working.shape[:2]
        try:
            result = self.context.segmenter.segment(working)
            if not isinstance(result, SegmentationResult):
                result = SegmentationResult()
            if result.error:
                print(f"[Mask] {result.error}")
            return composite_mask(
                result.mask,
                auxiliary,
                (w, h),
                feather=self.config.feather_radius,
                erosion=self.config.erosion_radius,
            )
        except Exception as exc:
            print(f"[Mask] Segmentation raised {type(exc).__name__}: {exc}")
            return None

    def _save_detection_debug(self, image: np.ndarray,
                              selection: Optional[FaceSelection], prefix: str) -> None:
        debug_dir = self.config.debug_dir
        os.makedirs(debug_dir, exist_ok=True)
        vis = draw_candidates(
            to_bgr(image),
            selection.candidates if selection is not None else (),
            selection.rect if selection is not None else None,
        )
        caption = f"stage: {selection.stage}" if selection is not None else "no face"
        path = os.path.join(debug_dir, f"{prefix}_detection.png")
        cv2.imwrite(path, put_caption(vis, caption))
        print(f"[Detect] Debug saved -> {path}")

    def _save_mask_debug(self, canvas: np.ndarray, mask: np.ndarray, prefix: str) -> None:
        debug_dir = self.config.debug_dir
        os.makedirs(debug_dir, exist_ok=True)
        vis = overlay_mask(to_bgr(canvas), mask)
        path = os.path.join(debug_dir, f"{prefix}_mask.png")
        cv2.imwrite(path, put_caption(vis, f"mask {mask.shape[1]}x{mask.shape[0]}"))
        print(f"[Mask] Debug saved -> {path}")


# Orchestration ----------------------------------------------------------------
def list_input_images(config: PipelineConfiguration) -> List[Path]:
    """Supported, visible, non-sidecar files of the input folder in name order."""
    folder = config.input_folder
    if not folder.is_dir():
        raise InputFolderNotFoundError(folder)
    items = [
        p for p in folder.iterdir()
        if p.is_file()
        and not p.name.startswith(".")
        and p.suffix.lower().lstrip(".") in config.file_extensions
        and not is_sidecar(p)
    ]
    return sorted(items, key=lambda p: (p.name.casefold(), p.name))


def _now_stamp(now: datetime) -> str:
    return now.strftime("%Y%m%d-%H%M%S")


class LoRAPrepPipeline:
    """Process every photo of ``config.input_folder`` into the output folder."""

    def __init__(self,
                 config: PipelineConfiguration,
                 context: Optional[ProcessingContext] = None,
                 clock: Callable[[], datetime] = datetime.now) -> None:
        config.validate()
        self.config = config
        self.context = context if context is not None else ProcessingContext.from_configuration(config)
        self.composer = CanvasComposer(config, self.context)
        self.clock = clock

    def output_directory(self) -> Path:
        root = self.config.output_root or self.config.input_folder
        return root / f"processed-{self.config.name_token}-{_now_stamp(self.clock())}"

    def run(self, progress: Optional[ProgressCallback] = None) -> LoRAPrepResult:
        def emit(update: ProgressUpdate) -> None:
            if progress is not None:
                progress(update)

        token = self.config.name_token
        items = list_input_images(self.config)
        if not items:
            raise NoImagesFoundError(self.config.input_folder)

        out_dir = self.output_directory()
        out_dir.mkdir(parents=True, exist_ok=True)
        total = len(items)
        print(f"[Run] {total} images -> {out_dir}")
        emit(ProgressUpdate(kind=ProgressKind.STARTED, total=total, output_directory=out_dir))

        result = LoRAPrepResult(output_directory=out_dir)
        for index, src in enumerate(items, start=1):
            number = result.succeeded + 1
            dst = out_dir / f"{number:02d}_{token}.png"
            emit(ProgressUpdate(kind=ProgressKind.PROCESSING, index=index, total=total,
                                input_path=src, output_path=dst))
            try:
                self._process_one(src, dst, f"{number:02d}", emit)
            except Exception as exc:
                if dst.exists():
                    dst.unlink()
                failure = ProcessingFailure(source_path=src, error=exc)
                print(f"[Write] {src.name} failed: {failure.message}")
                result.failures.append(failure)
                emit(ProgressUpdate(kind=ProgressKind.FAILED, index=index, total=total,
                                    input_path=src, error=exc))
                continue
            result.images.append(ProcessedImagePair(original_path=src, processed_path=dst))
            emit(ProgressUpdate(kind=ProgressKind.FILE_WRITTEN, index=index, total=total,
                                output_path=dst))

        print(f"[Run] {result.summary()}")
        emit(ProgressUpdate(kind=ProgressKind.COMPLETED, output_directory=out_dir))
        return result

    def _process_one(self, src: Path, dst: Path, prefix: str,
                     emit: ProgressCallback) -> None:
        image = load_image(src)
        auxiliary = None
        if self.config.remove_background:
            try:
                auxiliary = load_auxiliary_assets(src)
            except OSError as exc:
                print(f"[Mask] Ignoring unreadable sidecar for {src.name}: {exc}")
        composed = self.composer.compose(
            image, auxiliary=auxiliary, progress=emit, debug_prefix=prefix
        )
        write_png(composed.canvas, dst)
        print(f"[Write] {dst.name}")


def process_folder(config: PipelineConfiguration,
                   progress: Optional[ProgressCallback] = None,
                   context: Optional[ProcessingContext] = None) -> LoRAPrepResult:
    """Convenience helper: build a pipeline for ``config`` and run it."""

    return LoRAPrepPipeline(config, context=context).run(progress)
