import argparse
import math
import sys
from datetime import datetime
from typing import List, Optional

from exceptions import LoRAPrepError
from lora_prep import (
    DEFAULT_EXTENSIONS,
    LoRAPrepPipeline,
    PipelineConfiguration,
    ProgressKind,
    ProgressUpdate,
    clamp_radius,
)
from segmentation import SEGMENTATION_ENGINES, normalise_segmentation_engine


def _clamp_size(value: Optional[float]) -> int:
    """Round user-provided size to whole pixels; invalid input becomes 0."""

    if value is None:
        return 0
    try:
        value_f = float(value)
    except (TypeError, ValueError):
        return 0
    if math.isnan(value_f):
        return 0
    return int(round(value_f))


def parse_args(argv: Optional[List[str]] = None) -> argparse.Namespace:
    """Configure command-line options for the LoRA dataset prep tool."""

    parser = argparse.ArgumentParser(
        description="Prepare a folder of photos as a square LoRA training set",
        formatter_class=argparse.ArgumentDefaultsHelpFormatter,
        add_help=False,
    )
    parser.add_argument(
        "-h",
        "--help",
        "--h",
        action="help",
        help="Show this help message and exit.",
    )
    parser.add_argument(
        "-i",
        "--input",
        dest="input",
        type=str,
        required=True,
        help="Folder containing the source photos",
    )
    parser.add_argument(
        "-n",
        "--lora-name",
        dest="lora_name",
        type=str,
        required=True,
        help="Display name used to build the output filenames",
    )
    parser.add_argument(
        "-s",
        "--size",
        dest="size",
        type=float,
        default=1024,
        help="Target square output size in pixels",
    )
    parser.add_argument(
        "-b",
        "--remove-background",
        dest="remove_background",
        action="store_true",
        help="Remove the background using person segmentation",
    )
    parser.add_argument(
        "--superres-model",
        dest="superres_model",
        type=str,
        default=None,
        help="Optional ONNX super-resolution model used for low-resolution photos",
    )
    parser.add_argument(
        "--pad-transparent",
        dest="pad_with_transparency",
        action="store_true",
        default=True,
        help="Pad with transparent pixels",
    )
    parser.add_argument(
        "--pad-edge-color",
        dest="pad_with_transparency",
        action="store_false",
        help="Pad with the average edge colour (opaque)",
    )
    parser.add_argument(
        "--skip-face-detection",
        dest="skip_face_detection",
        action="store_true",
        help="Bypass face detection and centre crop/pad the whole frame",
    )
    parser.add_argument(
        "--prefer-pad",
        dest="prefer_crop",
        action="store_false",
        default=True,
        help="Pad instead of cropping when the photo exceeds the target size",
    )
    parser.add_argument(
        "--maximize-subject-fill",
        dest="maximize_subject_fill",
        action="store_true",
        help="Crop tightly around the detected face before framing",
    )
    parser.add_argument(
        "--segmentation-engine",
        dest="segmentation_engine",
        type=str,
        default="automatic",
        help=f"Segmentation engine ({', '.join(SEGMENTATION_ENGINES)})",
    )
    parser.add_argument(
        "--feather",
        dest="feather_radius",
        type=float,
        default=0.0,
        help="Mask feather radius in pixels",
    )
    parser.add_argument(
        "--erosion",
        dest="erosion_radius",
        type=float,
        default=0.0,
        help="Mask erosion radius in pixels",
    )
    parser.add_argument(
        "--face-model",
        dest="face_model",
        type=str,
        default="./yolo-face.pt",
        help="Path to the YOLO face detection weights",
    )
    parser.add_argument(
        "--segmentation-model",
        dest="segmentation_model",
        type=str,
        default="./yolov8n-seg.pt",
        help="Path to the YOLO segmentation weights",
    )
    parser.add_argument(
        "--output-root",
        dest="output_root",
        type=str,
        default=None,
        help="Where the processed-<NAME>-<timestamp> folder is created (defaults to the input folder)",
    )
    parser.add_argument(
        "--logdir",
        dest="logdir",
        type=str,
        default=None,
        help="Directory for per-photo debug images (disabled when omitted)",
    )
    return parser.parse_args(argv)


def _stamp() -> str:
    return datetime.now().strftime("%Y-%m-%d %H:%M:%S")


def report_progress(update: ProgressUpdate) -> None:
    kind = update.kind
    if kind is ProgressKind.STARTED:
        print(f"[{_stamp()}] Output: {update.output_directory} ({update.total} files)")
    elif kind is ProgressKind.PROCESSING:
        print(
            f"[{_stamp()}] Processing ({update.index}/{update.total}): "
            f"{update.input_path.name} -> {update.output_path.name}"
        )
    elif kind is ProgressKind.FACE_DETECTION:
        print(update.detection.describe())
    elif kind is ProgressKind.FILE_WRITTEN:
        print(f"WROTE {update.output_path.name}")
    elif kind is ProgressKind.FAILED:
        message = getattr(update.error, "message", None) or str(update.error)
        print(f"[ERROR] {update.input_path.name}: {message}", file=sys.stderr)
    elif kind is ProgressKind.COMPLETED:
        print(f"Completed. Output at {update.output_directory}")


def main(args: argparse.Namespace) -> int:
    config = PipelineConfiguration(
        input_folder=args.input,
        lora_name=args.lora_name,
        size=_clamp_size(args.size),
        remove_background=args.remove_background,
        super_res_model_path=args.superres_model,
        pad_with_transparency=args.pad_with_transparency,
        skip_face_detection=args.skip_face_detection,
        prefer_crop=args.prefer_crop,
        maximize_subject_fill=args.maximize_subject_fill,
        segmentation_engine=normalise_segmentation_engine(args.segmentation_engine),
        feather_radius=clamp_radius(args.feather_radius),
        erosion_radius=clamp_radius(args.erosion_radius),
        face_model_path=args.face_model,
        segmentation_model_path=args.segmentation_model,
        file_extensions=DEFAULT_EXTENSIONS,
        output_root=args.output_root,
        debug_dir=args.logdir,
    )

    print("=== LoRA Prep ===")
    print(f"Input folder: {config.input_folder}")
    print(
        f"Params | name {config.name_token or '-'} | size {config.size} | "
        f"remove bg {config.remove_background} | engine {config.segmentation_engine} | "
        f"feather {config.feather_radius:.1f} | erosion {config.erosion_radius:.1f} | "
        f"pad {'transparent' if config.pad_with_transparency else 'edge colour'} | "
        f"{'crop' if config.prefer_crop else 'pad'} preferred"
    )

    try:
        pipeline = LoRAPrepPipeline(config)
        result = pipeline.run(report_progress)
    except LoRAPrepError as exc:
        print(f"Fatal: {exc.message}", file=sys.stderr)
        return 2

    print(result.summary())
    if result.failures:
        print(f"Completed with {len(result.failures)} errors.", file=sys.stderr)
    return 0


def cli() -> None:
    sys.exit(main(parse_args()))


if __name__ == "__main__":
    cli()
