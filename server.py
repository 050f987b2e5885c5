"""FastAPI application exposing the LoRA prep service."""

from __future__ import annotations

import io
import json
import os
import tempfile
import zipfile
from functools import lru_cache
from pathlib import Path
from typing import Iterable, List, Optional, Set, Tuple

from fastapi import Depends, FastAPI, File, Form, HTTPException, UploadFile
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import Response, StreamingResponse

from exceptions import LoRAPrepError
from face_detection import YoloFaceDetector
from lora_prep import (
    CanvasComposer,
    LoRAPrepPipeline,
    LoRAPrepResult,
    PipelineConfiguration,
    ProcessingContext,
    decode_image_bytes,
    encode_png,
)
from segmentation import resolve_segmentation_engine
from super_resolution import SuperResolutionEngine

FACE_MODEL_PATH = os.environ.get("LORA_PREP_FACE_MODEL", "./yolo-face.pt")
SEGMENTATION_ENGINE = os.environ.get("LORA_PREP_SEGMENTATION_ENGINE", "automatic")
SEGMENTATION_MODEL_PATH = os.environ.get("LORA_PREP_SEGMENTATION_MODEL", "./yolov8n-seg.pt")
SUPER_RES_MODEL_PATH = os.environ.get("LORA_PREP_SUPERRES_MODEL") or None

app = FastAPI(title="LoRA Prep Service", version="1.0.0")
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=False,
    allow_methods=["*"],
    allow_headers=["*"],
)


@lru_cache(maxsize=1)
def get_context() -> ProcessingContext:
    """Load the models once; every request shares them."""

    try:
        detector = YoloFaceDetector(FACE_MODEL_PATH)
        upscaler = SuperResolutionEngine(SUPER_RES_MODEL_PATH) if SUPER_RES_MODEL_PATH else None
    except LoRAPrepError as exc:
        raise HTTPException(status_code=503, detail=exc.message) from exc
    segmenter = resolve_segmentation_engine(SEGMENTATION_ENGINE, SEGMENTATION_MODEL_PATH)
    return ProcessingContext(face_detector=detector, segmenter=segmenter, upscaler=upscaler)


def _request_context(base: ProcessingContext, config: PipelineConfiguration) -> ProcessingContext:
    return ProcessingContext(
        face_detector=None if config.skip_face_detection else base.face_detector,
        segmenter=base.segmenter if config.remove_background else None,
        upscaler=base.upscaler,
    )


def _read_upload(upload: UploadFile) -> bytes:
    data = upload.file.read()
    if not data:
        raise HTTPException(status_code=400, detail="Uploaded file is empty")
    return data


def _unique_upload_name(name: str, taken: Set[str]) -> str:
    """``name``, or ``<stem>-<n><suffix>`` when an earlier upload already used it."""
    stem, suffix = Path(name).stem, Path(name).suffix
    candidate = name
    counter = 2
    while candidate.casefold() in taken:
        candidate = f"{stem}-{counter}{suffix}"
        counter += 1
    taken.add(candidate.casefold())
    return candidate


def _log_arguments(pairs: Iterable[Tuple[str, object]]) -> None:
    print("ARGS:")
    for key, value in pairs:
        print(f"  {key}: {value}")


def _build_configuration(
    *,
    input_folder: Path,
    lora_name: str,
    size: int,
    remove_background: bool,
    pad_with_transparency: bool,
    skip_face_detection: bool,
    prefer_crop: bool,
    maximize_subject_fill: bool,
    feather_radius: float,
    erosion_radius: float,
    output_root: Optional[Path] = None,
) -> PipelineConfiguration:
    config = PipelineConfiguration(
        input_folder=input_folder,
        lora_name=lora_name,
        size=int(size),
        remove_background=bool(remove_background),
        pad_with_transparency=bool(pad_with_transparency),
        skip_face_detection=bool(skip_face_detection),
        prefer_crop=bool(prefer_crop),
        maximize_subject_fill=bool(maximize_subject_fill),
        segmentation_engine=SEGMENTATION_ENGINE,
        feather_radius=feather_radius,
        erosion_radius=erosion_radius,
        output_root=output_root,
    )
    try:
        config.validate()
    except LoRAPrepError as exc:
        raise HTTPException(status_code=exc.status_code, detail=exc.message) from exc

    _log_arguments(
        [
            ("lora_name", config.name_token),
            ("size", config.size),
            ("remove_background", config.remove_background),
            ("pad_with_transparency", config.pad_with_transparency),
            ("skip_face_detection", config.skip_face_detection),
            ("prefer_crop", config.prefer_crop),
            ("maximize_subject_fill", config.maximize_subject_fill),
            ("segmentation_engine", config.segmentation_engine),
            ("feather_radius", config.feather_radius),
            ("erosion_radius", config.erosion_radius),
        ]
    )
    return config


def _build_archive(result: LoRAPrepResult) -> StreamingResponse:
    archive = io.BytesIO()
    metadata = {
        "summary": result.summary(),
        "images": [
            {"source": pair.original_path.name, "output": pair.processed_path.name}
            for pair in result.images
        ],
        "failures": [
            {"source": failure.source_path.name, "error": failure.message}
            for failure in result.failures
        ],
    }

    with zipfile.ZipFile(archive, mode="w", compression=zipfile.ZIP_DEFLATED) as zf:
        for pair in result.images:
            zf.write(pair.processed_path, arcname=pair.processed_path.name)
        zf.writestr("metadata.json", json.dumps(metadata, indent=2).encode("utf-8"))

    archive.seek(0)
    headers = {
        "Content-Disposition": f'attachment; filename="{result.output_directory.name}.zip"'
    }
    return StreamingResponse(archive, media_type="application/zip", headers=headers)


@app.post("/process", summary="Prepare a single photo", response_description="Square PNG image")
async def process_image(
    file: UploadFile = File(...),
    lora_name: str = Form("LORA"),
    size: int = Form(1024),
    remove_background: bool = Form(False),
    pad_with_transparency: bool = Form(True),
    skip_face_detection: bool = Form(False),
    prefer_crop: bool = Form(True),
    maximize_subject_fill: bool = Form(False),
    feather_radius: float = Form(0.0),
    erosion_radius: float = Form(0.0),
    context: ProcessingContext = Depends(get_context),
) -> Response:
    """Run the canvas composer on one uploaded photo and return the PNG."""
    config = _build_configuration(
        input_folder=Path(tempfile.gettempdir()),
        lora_name=lora_name,
        size=size,
        remove_background=remove_background,
        pad_with_transparency=pad_with_transparency,
        skip_face_detection=skip_face_detection,
        prefer_crop=prefer_crop,
        maximize_subject_fill=maximize_subject_fill,
        feather_radius=feather_radius,
        erosion_radius=erosion_radius,
    )

    data = _read_upload(file)
    try:
        image = decode_image_bytes(data, file.filename or "upload")
        composed = CanvasComposer(config, _request_context(context, config)).compose(image)
    except LoRAPrepError as exc:
        raise HTTPException(status_code=exc.status_code, detail=exc.message) from exc

    headers = {
        "X-Face-Detection": composed.detection.describe(),
        "Content-Disposition": f'inline; filename="01_{config.name_token}.png"',
    }
    return Response(content=encode_png(composed.canvas), media_type="image/png", headers=headers)


@app.post("/batch", summary="Prepare a set of photos", response_description="ZIP archive with PNGs and metadata")
async def process_batch(
    files: List[UploadFile] = File(...),
    lora_name: str = Form(...),
    size: int = Form(1024),
    remove_background: bool = Form(False),
    pad_with_transparency: bool = Form(True),
    skip_face_detection: bool = Form(False),
    prefer_crop: bool = Form(True),
    maximize_subject_fill: bool = Form(False),
    feather_radius: float = Form(0.0),
    erosion_radius: float = Form(0.0),
    context: ProcessingContext = Depends(get_context),
) -> StreamingResponse:
    """Run the full folder pipeline over the uploaded photos."""
    with tempfile.TemporaryDirectory(prefix="lora-prep-") as tmp:
        input_dir = Path(tmp) / "input"
        output_root = Path(tmp) / "output"
        input_dir.mkdir()
        output_root.mkdir()

        taken: Set[str] = set()
        for idx, upload in enumerate(files, start=1):
            name = _unique_upload_name(Path(upload.filename or "").name or f"upload{idx:02d}.png", taken)
            (input_dir / name).write_bytes(upload.file.read())

        config = _build_configuration(
            input_folder=input_dir,
            lora_name=lora_name,
            size=size,
            remove_background=remove_background,
            pad_with_transparency=pad_with_transparency,
            skip_face_detection=skip_face_detection,
            prefer_crop=prefer_crop,
            maximize_subject_fill=maximize_subject_fill,
            feather_radius=feather_radius,
            erosion_radius=erosion_radius,
            output_root=output_root,
        )
        try:
            result = LoRAPrepPipeline(config, context=_request_context(context, config)).run()
        except LoRAPrepError as exc:
            raise HTTPException(status_code=exc.status_code, detail=exc.message) from exc

        # Archive is built in memory before the temporary folder goes away.
        return _build_archive(result)


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(app, host=os.environ.get("LORA_PREP_HOST", "127.0.0.1"),
                port=int(os.environ.get("LORA_PREP_PORT", "8000")))
