"""
coder-openapi :: Errors

Typed failures raised by the engine. None of them are retried internally;
they travel unchanged up to the ModelManager boundary, where the API layer
maps them onto an HTTP status and an OpenAI-style error body.

  ManifestError     unknown model id, bad manifest / config file
  AssetError        hub fetch failure, missing file, malformed weights
  TokenizerError    missing / corrupt tokenizer, encode / decode failure
  NumericError      NaN/Inf, shape mismatch, invalid input ids or temperature
  InvalidParameter  out-of-range request parameter (names the field)
  ModelUnavailable  model requested but not downloaded / enabled
"""

from typing import Optional


class CoderError(Exception):
    """Base class for every engine failure."""

    error_type = "server_error"
    http_status = 500

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message

    def to_dict(self) -> dict:
        return {"message": self.message, "type": self.error_type}


class ManifestError(CoderError):
    error_type = "invalid_request_error"
    http_status = 404


class AssetError(CoderError):
    pass


class TokenizerError(CoderError):
    pass


class NumericError(CoderError):
    """Numeric validation failure, tagged with the stage and tensor that failed."""

    def __init__(self, message: str, stage: Optional[str] = None, tensor: Optional[str] = None):
        if stage is not None:
            where = f"{stage}/{tensor}" if tensor else stage
            message = f"[{where}] {message}"
        super().__init__(message)
        self.stage = stage
        self.tensor = tensor


class InvalidParameter(CoderError):
    error_type = "invalid_request_error"
    http_status = 400

    def __init__(self, field: str, message: str):
        super().__init__(f"{field}: {message}")
        self.field = field

    def to_dict(self) -> dict:
        body = super().to_dict()
        body["param"] = self.field
        return body


class ModelUnavailable(CoderError):
    error_type = "model_not_available"
    http_status = 404
