"""
Typed request and manifest models, validated at the boundary.

``parse_request`` never raises: it returns a ``ParsedRequest`` carrying either the
validated model or a ``RequestValidationError`` with per-field details.
"""

from dataclasses import dataclass
from typing import Any, Dict, Generic, List, Literal, Optional, Type, TypeVar

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator, model_validator

from .errors import RequestValidationError
from .file_utils import UploadConfig

M = TypeVar("M", bound=BaseModel)

# snake_case keys accepted alongside the camelCase ones
_UPLOAD_ALIASES = {
    "api_token": "uploadToken",
    "upload_token": "uploadToken",
    "file_upload_url": "fileUploadUrl",
}


def _normalize_upload_keys(data: Any) -> Any:
    if not isinstance(data, dict):
        return data
    data = dict(data)
    for alias, field_name in _UPLOAD_ALIASES.items():
        if data.get(field_name) is None and data.get(alias) is not None:
            data[field_name] = data[alias]
    if isinstance(data.get("public"), str):
        data["public"] = data["public"].strip().lower() == "true"
    return data


class _UploadFields(BaseModel):
    model_config = ConfigDict(extra="ignore")

    uploadToken: Optional[str] = None
    fileUploadUrl: Optional[str] = None
    public: Optional[bool] = None

    @model_validator(mode="before")
    @classmethod
    def _aliases(cls, data: Any) -> Any:
        return _normalize_upload_keys(data)

    def upload_config(self) -> UploadConfig:
        return UploadConfig(
            file_upload_url=self.fileUploadUrl,
            upload_token=self.uploadToken,
            is_public=self.public,
        )


class ExecuteRequest(_UploadFields):
    code: str
    timeoutMs: Optional[int] = Field(default=None, gt=0)


class DeployRequest(BaseModel):
    model_config = ConfigDict(extra="ignore")

    metaUrl: str = Field(min_length=1)
    namespace: Optional[str] = None


class FileChange(BaseModel):
    type: Literal["add", "modify", "delete"]
    path: str = Field(min_length=1)
    url: Optional[str] = None


class PatchRequest(BaseModel):
    model_config = ConfigDict(extra="ignore")

    sandboxId: str = Field(min_length=1)
    changes: List[FileChange]
    reload: bool = False


class InvokeRequest(_UploadFields):
    data: Any = None


class ManifestFile(BaseModel):
    model_config = ConfigDict(extra="ignore")

    path: str
    url: Optional[str] = None


class ProjectManifest(BaseModel):
    """Remote ``meta.json`` describing a deployment."""
    model_config = ConfigDict(extra="ignore")

    entry: Optional[str] = None
    files: List[ManifestFile] = Field(default_factory=list)

    @field_validator("files", mode="before")
    @classmethod
    def _null_files(cls, value: Any) -> Any:
        # An entry-only manifest may send "files": null.
        return [] if value is None else value


@dataclass
class ParsedRequest(Generic[M]):
    value: Optional[M] = None
    error: Optional[RequestValidationError] = None

    @property
    def ok(self) -> bool:
        return self.error is None

    def unwrap(self) -> M:
        if self.error is not None:
            raise self.error
        return self.value


def _error_details(exc: ValidationError) -> List[Dict[str, Any]]:
    return [
        {"loc": [str(part) for part in err.get("loc", ())], "msg": err.get("msg", "")}
        for err in exc.errors()
    ]


def parse_request(model: Type[M], payload: Any) -> ParsedRequest[M]:
    if not isinstance(payload, dict):
        return ParsedRequest(error=RequestValidationError(
            "Invalid request",
            [{"loc": [], "msg": "Request body must be a JSON object"}],
        ))
    try:
        return ParsedRequest(value=model.model_validate(payload))
    except ValidationError as e:
        return ParsedRequest(error=RequestValidationError("Invalid request", _error_details(e)))
