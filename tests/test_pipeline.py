"""Integration tests for the canvas composer and the folder pipeline."""
from datetime import datetime
from pathlib import Path

import numpy as np
import pytest
from PIL import Image

from exceptions import (
    ImageDecodeError,
    InputFolderNotFoundError,
    InvalidConfigurationError,
    NoImagesFoundError,
)
from lora_prep import (
    CanvasComposer,
    LoRAPrepPipeline,
    LoRAPrepResult,
    PipelineConfiguration,
    ProcessingContext,
    ProgressKind,
    clamp_radius,
    encode_png,
    list_input_images,
    load_image,
    norm_lora_name,
)
from segmentation import SegmentationResult
from conftest import (
    DoublingUpscaler,
    FixedMaskSegmenter,
    make_photo,
    red_blob_detector,
    red_centroid,
    save_photo,
)

FIXED_NOW = datetime(2024, 5, 6, 7, 8, 9)


def _pipeline(config, **context):
    return LoRAPrepPipeline(config, context=ProcessingContext(**context), clock=lambda: FIXED_NOW)


def _read_png(path):
    with Image.open(path) as im:
        return np.array(im.convert("RGBA"))


class TestNames:
    """Test suite for configuration helpers."""

    @pytest.mark.parametrize(
        "raw,expected",
        [
            ("my cat", "MY_CAT"),
            ("  Jane   Doe  ", "JANE_DOE"),
            ("émile-42!", "MILE-42"),
            ("__x__", "X"),
            ("!!!", ""),
        ],
    )
    def test_norm_lora_name(self, raw, expected):
        assert norm_lora_name(raw) == expected

    @pytest.mark.parametrize(
        "raw,expected",
        [(None, 0.0), ("abc", 0.0), (float("nan"), 0.0), (-2, 0.0), ("3.5", 3.5)],
    )
    def test_clamp_radius(self, raw, expected):
        assert clamp_radius(raw) == expected

    def test_configuration_is_frozen(self, temp_dir):
        config = PipelineConfiguration(input_folder=temp_dir, lora_name="x")
        with pytest.raises(Exception):
            config.size = 10

    def test_configuration_normalises_loose_input(self, temp_dir):
        config = PipelineConfiguration(
            input_folder=str(temp_dir),
            lora_name="x",
            segmentation_engine="GrabCut",
            feather_radius=-1,
            file_extensions=(".PNG", "jpg"),
        )
        assert config.input_folder == temp_dir
        assert config.segmentation_engine == "grabcut"
        assert config.feather_radius == 0.0
        assert config.file_extensions == ("jpg", "png")


class TestCanvasComposer:
    """Test suite for single-photo composition."""

    def test_face_recentred_and_cropped(self, temp_dir, face_photo):
        config = PipelineConfiguration(input_folder=temp_dir, lora_name="x", size=256)
        composer = CanvasComposer(config, ProcessingContext(face_detector=red_blob_detector))
        events = []
        result = composer.compose(face_photo, progress=events.append)

        assert result.canvas.shape == (256, 256, 4)
        assert result.detection.found
        cx, cy = red_centroid(result.canvas)
        assert cx == pytest.approx(128, abs=3)
        assert cy == pytest.approx(128, abs=3)
        assert [e.kind for e in events] == [ProgressKind.FACE_DETECTION]
        assert events[0].detection.describe().startswith("FACE_FOUND box=(")

    def test_edge_colour_padding_is_opaque(self, temp_dir, face_photo):
        config = PipelineConfiguration(
            input_folder=temp_dir, lora_name="x", size=256, pad_with_transparency=False
        )
        composer = CanvasComposer(config, ProcessingContext(face_detector=red_blob_detector))
        canvas = composer.compose(face_photo).canvas
        assert canvas[:, :, 3].min() == 255
        assert tuple(int(v) for v in canvas[0, 0, :3]) == pytest.approx((40, 90, 160), abs=2)

    def test_prefer_pad_keeps_whole_frame(self, temp_dir, face_photo):
        config = PipelineConfiguration(
            input_folder=temp_dir, lora_name="x", size=256, prefer_crop=False
        )
        composer = CanvasComposer(config, ProcessingContext(face_detector=red_blob_detector))
        canvas = composer.compose(face_photo).canvas
        assert canvas.shape == (256, 256, 4)
        # 1300x1000 centred canvas scaled to 256x197, padded top and bottom.
        assert canvas[0, 128, 3] == 0
        assert canvas[128, 128, 3] == 255

    def test_maximize_subject_fill_enlarges_face(self, temp_dir):
        photo = make_photo(1000, 1000, face_center=(500, 500), face_side=200)
        base = PipelineConfiguration(input_folder=temp_dir, lora_name="x", size=256)
        filled = PipelineConfiguration(
            input_folder=temp_dir, lora_name="x", size=256, maximize_subject_fill=True
        )
        context = ProcessingContext(face_detector=red_blob_detector)

        def red_area(canvas):
            return int(((canvas[:, :, 0] > 200) & (canvas[:, :, 1] < 60)).sum())

        plain = CanvasComposer(base, context).compose(photo).canvas
        tight = CanvasComposer(filled, context).compose(photo).canvas
        assert red_area(tight) > 3 * red_area(plain)
        cx, cy = red_centroid(tight)
        assert cx == pytest.approx(128, abs=4)
        assert cy == pytest.approx(128, abs=4)

    def test_skip_face_detection(self, temp_dir, face_photo):
        calls = []

        def detector(image):
            calls.append(1)
            return red_blob_detector(image)

        config = PipelineConfiguration(
            input_folder=temp_dir, lora_name="x", size=128, skip_face_detection=True
        )
        result = CanvasComposer(config, ProcessingContext(face_detector=detector)).compose(face_photo)
        assert calls == []
        assert not result.detection.found
        assert result.canvas.shape == (128, 128, 4)

    def test_low_resolution_without_upscaler_is_padded(self, temp_dir):
        config = PipelineConfiguration(input_folder=temp_dir, lora_name="x", size=256)
        canvas = CanvasComposer(config, ProcessingContext()).compose(make_photo(100, 50)).canvas
        assert canvas.shape == (256, 256, 4)
        assert canvas[128, 128, 3] == 255
        assert canvas[0, 0, 3] == 0

    def test_upscaler_used_for_low_resolution(self, temp_dir):
        config = PipelineConfiguration(input_folder=temp_dir, lora_name="x", size=256)
        upscaler = DoublingUpscaler()
        composer = CanvasComposer(config, ProcessingContext(upscaler=upscaler))
        canvas = composer.compose(make_photo(100, 100)).canvas
        assert upscaler.calls == 2
        assert canvas[:, :, 3].min() == 255

    def test_background_removed_with_mask(self, temp_dir, face_photo):
        config = PipelineConfiguration(
            input_folder=temp_dir,
            lora_name="x",
            size=128,
            remove_background=True,
            pad_with_transparency=False,
        )
        segmenter = FixedMaskSegmenter()
        composer = CanvasComposer(
            config, ProcessingContext(face_detector=red_blob_detector, segmenter=segmenter)
        )
        result = composer.compose(face_photo)
        assert segmenter.calls == 1
        assert result.canvas[:, :64, 3].min() == 255
        assert result.canvas[:, 64:, 3].max() == 0

    def test_segmenter_exception_is_not_fatal(self, temp_dir, face_photo):
        class Broken:
            def segment(self, image):
                raise RuntimeError("boom")

        config = PipelineConfiguration(
            input_folder=temp_dir, lora_name="x", size=64, remove_background=True,
            pad_with_transparency=False,
        )
        result = CanvasComposer(config, ProcessingContext(segmenter=Broken())).compose(face_photo)
        assert result.mask is None
        assert result.canvas[:, :, 3].min() == 255

    def test_segmenter_returning_none_is_not_fatal(self, temp_dir, face_photo):
        class Silent:
            def segment(self, image):
                return None

        config = PipelineConfiguration(
            input_folder=temp_dir, lora_name="x", size=64, remove_background=True,
            pad_with_transparency=False,
        )
        context = ProcessingContext(face_detector=red_blob_detector, segmenter=Silent())
        result = CanvasComposer(config, context).compose(face_photo)
        assert result.mask is None
        assert result.canvas.shape == (64, 64, 4)
        assert result.canvas[:, :, 3].min() == 255

    def test_unusable_mask_is_not_fatal(self, temp_dir, face_photo):
        class EmptyMask:
            def segment(self, image):
                return SegmentationResult(mask=np.zeros((0, 0), np.float32))

        config = PipelineConfiguration(
            input_folder=temp_dir, lora_name="x", size=64, remove_background=True,
            pad_with_transparency=False,
        )
        result = CanvasComposer(config, ProcessingContext(segmenter=EmptyMask())).compose(face_photo)
        assert result.mask is None
        assert result.canvas[:, :, 3].min() == 255

    def test_debug_images_written(self, temp_dir, face_photo):
        debug_dir = temp_dir / "debug"
        config = PipelineConfiguration(
            input_folder=temp_dir, lora_name="x", size=64, remove_background=True,
            debug_dir=debug_dir,
        )
        context = ProcessingContext(face_detector=red_blob_detector, segmenter=FixedMaskSegmenter())
        CanvasComposer(config, context).compose(face_photo, debug_prefix="01")
        assert (debug_dir / "01_detection.png").exists()
        assert (debug_dir / "01_mask.png").exists()


class TestImageIO:
    """Test suite for decoding and encoding."""

    def test_exif_orientation_applied(self, temp_dir):
        img = Image.new("RGB", (40, 20), (10, 20, 30))
        exif = Image.Exif()
        exif[0x0112] = 6  # rotate 90 CW on display
        path = temp_dir / "rotated.jpg"
        img.save(path, exif=exif)
        assert load_image(path).shape == (40, 20, 4)

    def test_corrupt_file(self, temp_dir):
        path = temp_dir / "broken.jpg"
        path.write_bytes(b"definitely not a jpeg")
        with pytest.raises(ImageDecodeError):
            load_image(path)

    def test_png_has_no_text_metadata(self):
        data = encode_png(make_photo(8, 8))
        assert data.startswith(b"\x89PNG")
        for chunk in (b"tEXt", b"iTXt", b"zTXt", b"eXIf", b"tIME"):
            assert chunk not in data


class TestInputListing:
    """Test suite for input enumeration."""

    def test_filters_and_sorts(self, temp_dir):
        for name in ["b.PNG", "A.jpg", "c.webp", ".hidden.jpg", "notes.txt",
                     "a.matte.png", "a.depth.png"]:
            (temp_dir / name).write_bytes(b"x")
        (temp_dir / "sub.jpg").mkdir()
        config = PipelineConfiguration(input_folder=temp_dir, lora_name="x")
        assert [p.name for p in list_input_images(config)] == ["A.jpg", "b.PNG", "c.webp"]


class TestPipelineScenarios:
    """End-to-end runs over synthetic folders."""

    def test_single_face_photo(self, temp_dir, face_photo):
        save_photo(face_photo, temp_dir / "portrait.png")
        config = PipelineConfiguration(input_folder=temp_dir, lora_name="My Subject", size=256)
        result = _pipeline(config, face_detector=red_blob_detector).run()

        expected_dir = temp_dir / "processed-MY_SUBJECT-20240506-070809"
        assert result.output_directory == expected_dir
        assert [p.processed_path.name for p in result.images] == ["01_MY_SUBJECT.png"]
        assert result.failures == []
        out = _read_png(expected_dir / "01_MY_SUBJECT.png")
        assert out.shape == (256, 256, 4)
        cx, cy = red_centroid(out)
        assert cx == pytest.approx(128, abs=3)
        assert cy == pytest.approx(128, abs=3)

    def test_landscape_without_face(self, temp_dir, landscape_photo):
        save_photo(landscape_photo, temp_dir / "landscape.png")
        config = PipelineConfiguration(input_folder=temp_dir, lora_name="x", size=256)
        events = []
        result = _pipeline(config, face_detector=red_blob_detector).run(events.append)

        out = _read_png(result.images[0].processed_path)
        assert out.shape == (256, 256, 4)
        assert out[:64, :, 3].max() == 0
        assert out[64:192, :, 3].min() == 255
        assert out[192:, :, 3].max() == 0
        detections = [e.detection for e in events if e.kind is ProgressKind.FACE_DETECTION]
        assert len(detections) == 1
        assert not detections[0].found
        assert detections[0].describe() == "NO_FACE size=(1200x600)"

    def test_segmentation_unavailable_is_not_an_error(self, temp_dir, face_photo):
        save_photo(face_photo, temp_dir / "portrait.png")
        config = PipelineConfiguration(
            input_folder=temp_dir,
            lora_name="x",
            size=256,
            remove_background=True,
            pad_with_transparency=False,
        )
        segmenter = FixedMaskSegmenter(produce_mask=False)
        result = _pipeline(config, face_detector=red_blob_detector, segmenter=segmenter).run()

        assert segmenter.calls == 1
        assert result.failures == []
        out = _read_png(result.images[0].processed_path)
        assert out[:, :, 3].min() == 255

    def test_corrupt_file_among_valid(self, temp_dir):
        for name in ["a.png", "b.png", "c.png", "d.png", "e.png"]:
            save_photo(make_photo(120, 90), temp_dir / name)
        (temp_dir / "c_broken.jpg").write_bytes(b"\xff\xd8 truncated garbage")
        config = PipelineConfiguration(input_folder=temp_dir, lora_name="set", size=64)
        events = []
        result = _pipeline(config, face_detector=red_blob_detector).run(events.append)

        assert result.succeeded == 5
        assert result.failed == 1
        assert result.failures[0].source_path.name == "c_broken.jpg"
        assert "c_broken.jpg" in result.failures[0].message
        produced = sorted(p.name for p in result.output_directory.iterdir())
        assert produced == [f"{i:02d}_SET.png" for i in range(1, 6)]
        assert result.summary() == "Processing complete: 5 succeeded, 1 failed."

        kinds = [e.kind for e in events]
        assert kinds[0] is ProgressKind.STARTED
        assert kinds[-1] is ProgressKind.COMPLETED
        assert kinds.count(ProgressKind.PROCESSING) == 6
        assert kinds.count(ProgressKind.FILE_WRITTEN) == 5
        assert kinds.count(ProgressKind.FAILED) == 1
        failed = next(e for e in events if e.kind is ProgressKind.FAILED)
        assert failed.index == 4 and failed.total == 6

    def test_unexpected_error_names_source_file(self, temp_dir):
        def broken_detector(image):
            raise RuntimeError("detector crashed")

        save_photo(make_photo(120, 90), temp_dir / "a.png")
        config = PipelineConfiguration(input_folder=temp_dir, lora_name="set", size=64)
        result = _pipeline(config, face_detector=broken_detector).run()

        assert result.succeeded == 0
        assert result.failures[0].message == "a.png: detector crashed"

    def test_processing_precedes_outcome(self, temp_dir):
        save_photo(make_photo(80, 80), temp_dir / "a.png")
        config = PipelineConfiguration(input_folder=temp_dir, lora_name="x", size=32)
        events = []
        _pipeline(config).run(events.append)
        kinds = [e.kind for e in events]
        assert kinds.index(ProgressKind.PROCESSING) < kinds.index(ProgressKind.FILE_WRITTEN)

    def test_summary_without_failures(self, temp_dir):
        result = LoRAPrepResult(output_directory=temp_dir)
        assert result.summary() == "Processing complete: 0 images ready."

    def test_output_root_override(self, temp_dir):
        inputs = temp_dir / "in"
        inputs.mkdir()
        save_photo(make_photo(50, 50), inputs / "a.png")
        config = PipelineConfiguration(
            input_folder=inputs, lora_name="x", size=32, output_root=temp_dir / "out"
        )
        result = _pipeline(config).run()
        assert result.output_directory.parent == temp_dir / "out"


class TestFatalErrors:
    """Fatal problems stop the run before anything is written."""

    def test_missing_folder(self, temp_dir):
        config = PipelineConfiguration(input_folder=temp_dir / "nope", lora_name="x")
        with pytest.raises(InputFolderNotFoundError):
            _pipeline(config).run()
        assert not (temp_dir / "nope").exists()

    def test_no_images(self, temp_dir):
        (temp_dir / "readme.txt").write_text("hello")
        config = PipelineConfiguration(input_folder=temp_dir, lora_name="x")
        with pytest.raises(NoImagesFoundError):
            _pipeline(config).run()
        assert [p.name for p in temp_dir.iterdir()] == ["readme.txt"]

    def test_empty_name(self, temp_dir):
        config = PipelineConfiguration(input_folder=temp_dir, lora_name="?!")
        with pytest.raises(InvalidConfigurationError):
            _pipeline(config)

    def test_invalid_size(self, temp_dir):
        config = PipelineConfiguration(input_folder=temp_dir, lora_name="x", size=0)
        with pytest.raises(InvalidConfigurationError):
            _pipeline(config)

    def test_error_codes(self, temp_dir):
        assert InputFolderNotFoundError(temp_dir).code == "INPUT_FOLDER_NOT_FOUND"
        assert NoImagesFoundError(Path("x")).to_dict()["code"] == "NO_IMAGES"
