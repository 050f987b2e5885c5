"""Tests for the command-line entry point."""
import pytest

import main
from conftest import make_photo, save_photo


class TestParseArgs:
    """Test suite for argument parsing."""

    def test_defaults(self):
        args = main.parse_args(["-i", "photos", "-n", "Ada"])
        assert args.input == "photos"
        assert args.lora_name == "Ada"
        assert args.size == 1024
        assert args.pad_with_transparency is True
        assert args.prefer_crop is True
        assert args.remove_background is False
        assert args.segmentation_engine == "automatic"

    def test_pad_edge_colour_and_prefer_pad(self):
        args = main.parse_args(
            ["--input", "p", "--lora-name", "x", "--pad-edge-color", "--prefer-pad", "-b", "-s", "512"]
        )
        assert args.pad_with_transparency is False
        assert args.prefer_crop is False
        assert args.remove_background is True
        assert args.size == 512

    def test_missing_required(self):
        with pytest.raises(SystemExit):
            main.parse_args(["--input", "p"])

    @pytest.mark.parametrize("raw,expected", [(None, 0), ("abc", 0), (float("nan"), 0), (511.6, 512)])
    def test_clamp_size(self, raw, expected):
        assert main._clamp_size(raw) == expected


class TestMain:
    """Test suite for end-to-end CLI runs without model weights."""

    def test_fatal_missing_folder(self, temp_dir, capsys):
        args = main.parse_args(["-i", str(temp_dir / "nope"), "-n", "x", "--skip-face-detection"])
        assert main.main(args) == 2
        assert "Fatal: Input folder not found" in capsys.readouterr().err

    def test_fatal_missing_face_model(self, temp_dir, capsys):
        args = main.parse_args(
            ["-i", str(temp_dir), "-n", "x", "--face-model", str(temp_dir / "missing.pt")]
        )
        assert main.main(args) == 2
        assert "Fatal: Unable to load model" in capsys.readouterr().err

    def test_run_reports_progress(self, temp_dir, capsys):
        save_photo(make_photo(80, 60), temp_dir / "a.png")
        (temp_dir / "b.jpg").write_bytes(b"garbage")
        args = main.parse_args(
            ["-i", str(temp_dir), "-n", "Ada", "-s", "32", "--skip-face-detection"]
        )
        assert main.main(args) == 0

        captured = capsys.readouterr()
        assert "Processing (1/2): a.png -> 01_ADA.png" in captured.out
        assert "NO_FACE size=(80x60)" in captured.out
        assert "WROTE 01_ADA.png" in captured.out
        assert "Completed. Output at" in captured.out
        assert "Processing complete: 1 succeeded, 1 failed." in captured.out
        assert "[ERROR] b.jpg:" in captured.err
        assert "Completed with 1 errors." in captured.err
