"""
Error taxonomy for background removal.

Every failure a caller can observe is a ``RemovalError`` subclass carrying a
stable ``code`` and a ``category`` so callers can tell transient network
problems from unsupported configurations and from process-level constraints
that only a restart clears:

 - ``transient``: retrying (possibly with downloads enabled) may succeed.
 - ``configuration``: the requested options cannot be satisfied as given.
 - ``fatal``: the loaded native runtime prevents it for this process lifetime.
 - ``input``: the request payload itself is bad.
"""

from __future__ import annotations

from typing import Any, Dict


class RemovalError(Exception):
    code = "removal_error"
    category = "transient"

    def __init__(self, message: str, **details: Any) -> None:
        super().__init__(message)
        self.message = message
        self.details = details

    @property
    def retryable(self) -> bool:
        return self.category == "transient"

    def to_dict(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {
            "code": self.code,
            "category": self.category,
            "message": self.message,
        }
        if self.details:
            payload["details"] = {k: str(v) for k, v in self.details.items()}
        return payload


class UnknownModel(RemovalError):
    code = "unknown_model"
    category = "configuration"


class InvalidOptions(RemovalError, ValueError):
    code = "invalid_options"
    category = "input"


class DownloadDisabled(RemovalError):
    code = "download_disabled"
    category = "configuration"


class DownloadTimeout(RemovalError):
    code = "download_timeout"
    category = "transient"


class DownloadFailed(RemovalError):
    code = "download_failed"
    category = "transient"


class IntegrityError(RemovalError):
    code = "integrity_error"
    category = "transient"


class ExtractionError(RemovalError):
    code = "extraction_error"
    category = "transient"


class BackendUnavailable(RemovalError):
    code = "backend_unavailable"
    category = "configuration"


class RuntimeAlreadyLoaded(RemovalError):
    code = "runtime_already_loaded"
    category = "fatal"


class BackendSwitchUnsupported(RemovalError):
    code = "backend_switch_unsupported"
    category = "fatal"


class RuntimeLoadFailed(RemovalError):
    code = "runtime_load_failed"
    category = "fatal"


class DecodeError(RemovalError):
    code = "decode_error"
    category = "input"


class InferenceError(RemovalError):
    code = "inference_error"
    category = "transient"


class EncodeError(RemovalError):
    code = "encode_error"
    category = "transient"
