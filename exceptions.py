"""
Exception hierarchy for the LoRA prep pipeline.
Everything inherits from LoRAPrepError so callers can catch one type.
"""

from pathlib import Path
from typing import Any, Dict, Optional, Union


class LoRAPrepError(Exception):
    """
    Base exception for all pipeline errors.

    Attributes:
        message: Human-readable error message
        code: Machine-readable error code
        status_code: HTTP status code used by the server
    """

    def __init__(self, message: str, code: str = "ERROR", status_code: int = 400):
        self.message = message
        self.code = code
        self.status_code = status_code
        super().__init__(self.message)

    def to_dict(self) -> Dict[str, Any]:
        return {"code": self.code, "message": self.message}


# === Fatal input errors ===

class InputFolderNotFoundError(LoRAPrepError):
    def __init__(self, folder: Union[str, Path]):
        super().__init__(
            message=f"Input folder not found: {folder}",
            code="INPUT_FOLDER_NOT_FOUND",
            status_code=404,
        )


class NoImagesFoundError(LoRAPrepError):
    def __init__(self, folder: Union[str, Path]):
        super().__init__(
            message=f"No supported images found in {folder}",
            code="NO_IMAGES",
            status_code=422,
        )


class InvalidConfigurationError(LoRAPrepError):
    def __init__(self, message: str):
        super().__init__(message=message, code="INVALID_CONFIGURATION", status_code=422)


# === Per-photo errors ===

class ImageDecodeError(LoRAPrepError):
    def __init__(self, source: Union[str, Path], reason: Optional[str] = None):
        message = f"Unable to decode image: {Path(source).name}"
        if reason:
            message = f"{message} ({reason})"
        super().__init__(message=message, code="IMAGE_DECODE", status_code=400)


class RenderError(LoRAPrepError):
    def __init__(self, message: str):
        super().__init__(message=message, code="RENDER_FAILED", status_code=500)


# === Model errors ===

class ModelLoadError(LoRAPrepError):
    def __init__(self, model_path: Union[str, Path], reason: Optional[str] = None):
        message = f"Unable to load model at {model_path}"
        if reason:
            message = f"{message}: {reason}"
        super().__init__(message=message, code="MODEL_LOAD", status_code=500)
