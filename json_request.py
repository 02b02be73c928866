"""Validation of the JSON body accepted by the ``/json`` render endpoint."""

import json
import math
from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, List, Optional, Type

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator, model_validator
from pydantic_core import PydanticCustomError

EXPECTED_MIME_TYPE = "application/json"

JSON_FIELD_IMAGE_INDEX = "imageIndex"
JSON_FIELD_RESPONSE_FORMAT = "responseFormat"
JSON_FIELD_INPUT_FORMAT = "inputFormat"
JSON_FIELD_INPUT_DATA = "data"
JSON_FIELD_MAIN_FILE = "mainFile"
JSON_FIELD_ARCHIVE_TYPE = "archiveType"
ARCHIVE_ONLY_FIELDS = (JSON_FIELD_MAIN_FILE, JSON_FIELD_ARCHIVE_TYPE)


class IllegalRequestError(Exception):
    """Raised when the request (or the data it carries) cannot be processed as given."""


@dataclass(frozen=True)
class AlgorithmSelector:
    """Choice of codec for one layer of an archive: none, auto-detect, or a named algorithm."""

    kind: str
    name: Optional[str] = None

    @classmethod
    def named(cls, name: str) -> "AlgorithmSelector":
        return cls("named", name)

    @property
    def is_applicable(self) -> bool:
        return self.kind != "not_applicable"

    @property
    def is_auto(self) -> bool:
        return self.kind == "auto_detect"


NOT_APPLICABLE = AlgorithmSelector("not_applicable")
DETECT = AlgorithmSelector("auto_detect")

ARCHIVE_ZIP = "zip"
ARCHIVE_TAR = "tar"
COMPRESSION_GZIP = "gz"
COMPRESSION_BZIP2 = "bzip2"
COMPRESSION_XZ = "xz"
COMPRESSION_LZMA = "lzma"


class InputFormat(Enum):
    STRING = "STRING"  # the data is the diagram source itself
    SINGLE_FILE = "SINGLE_FILE"  # base64 encoded source file
    ARCHIVE = "ARCHIVE"  # base64 encoded archive; mainFile names the diagram to render


class ResponseFormat(Enum):
    PNG = ("-tpng", "image/png")
    SVG = ("-tsvg", "image/svg+xml")
    EPS = ("-teps", "application/postscript")
    EPS_TEXT = ("-teps:text", "application/postscript; charset=UTF-8")
    ATXT = ("-ttxt", "text/plain")
    UTXT = ("-tutxt", "text/plain; charset=UTF-8")
    PDF = ("-tpdf", "application/pdf")
    VDX = ("-tvdx", "application/vnd.visio.xml")
    SCXML = ("-tscxml", "application/scxml+xml")
    LATEX = ("-tlatex", "application/x-latex")
    LATEX_NO_PREAMBLE = ("-tlatex:nopreamble", "application/x-latex; charset=UTF-8")
    BRAILLE_PNG = ("-tbraille", "image/png")
    PREPROC = ("-preproc", "text/plain; charset=UTF-8")

    def __init__(self, option: str, media_type: str):
        self.option = option
        self.media_type = media_type


class ArchiveType(Enum):
    AUTO_DETECT = (DETECT, NOT_APPLICABLE)
    AUTO_DETECT_COMPRESSED = (DETECT, DETECT)
    ZIP = (AlgorithmSelector.named(ARCHIVE_ZIP), NOT_APPLICABLE)
    TAR = (AlgorithmSelector.named(ARCHIVE_TAR), NOT_APPLICABLE)
    TAR_GZ = (AlgorithmSelector.named(ARCHIVE_TAR), AlgorithmSelector.named(COMPRESSION_GZIP))

    def __init__(self, archiving: AlgorithmSelector, compression: AlgorithmSelector):
        self.archiving = archiving
        self.compression = compression


def _not_a(kind: str, key: str) -> PydanticCustomError:
    return PydanticCustomError(
        f"not_a_{kind}",
        'In the given json the value of "{key}" is not a {kind}.',
        {"key": key, "kind": kind},
    )


def _member_by_name(enum_cls: Type[Enum], value: str, message: str) -> Enum:
    try:
        return enum_cls[value]
    except KeyError:
        raise PydanticCustomError("unknown_member", message) from None


class RenderRequest(BaseModel):
    """A fully validated render job."""

    model_config = ConfigDict(frozen=True)

    image_index: int = Field(default=0, alias=JSON_FIELD_IMAGE_INDEX)
    response_format: ResponseFormat = Field(default=ResponseFormat.PNG, alias=JSON_FIELD_RESPONSE_FORMAT)
    input_format: InputFormat = Field(default=InputFormat.STRING, alias=JSON_FIELD_INPUT_FORMAT)
    input_data: str = Field(..., alias=JSON_FIELD_INPUT_DATA)
    main_file: Optional[str] = Field(default=None, alias=JSON_FIELD_MAIN_FILE)
    archive_type: Optional[ArchiveType] = Field(default=None, alias=JSON_FIELD_ARCHIVE_TYPE)

    @classmethod
    def _json_key(cls, info) -> str:
        return cls.model_fields[info.field_name].alias or info.field_name

    @model_validator(mode="before")
    @classmethod
    def _ignore_archive_fields(cls, data: Any) -> Any:
        # mainFile and archiveType only mean something for archives; elsewhere they are not read at all
        if not isinstance(data, dict):
            return data
        if data.get(JSON_FIELD_INPUT_FORMAT, InputFormat.STRING.value) == InputFormat.ARCHIVE.value:
            return data
        return {key: value for key, value in data.items() if key not in ARCHIVE_ONLY_FIELDS}

    @field_validator("image_index", mode="before")
    @classmethod
    def _require_number(cls, value, info):
        if isinstance(value, bool) or not isinstance(value, (int, float)):
            raise _not_a("number", cls._json_key(info))
        # 1e400 parses to inf, which has no integer value
        if isinstance(value, float) and not math.isfinite(value):
            raise _not_a("number", cls._json_key(info))
        return int(value)

    @field_validator("input_data", "main_file", mode="before")
    @classmethod
    def _require_string(cls, value, info):
        if not isinstance(value, str):
            raise _not_a("string", cls._json_key(info))
        return value

    @field_validator("response_format", mode="before")
    @classmethod
    def _parse_response_format(cls, value, info):
        if not isinstance(value, str):
            raise _not_a("string", cls._json_key(info))
        return _member_by_name(ResponseFormat, value, "Unknown response file format.")

    @field_validator("input_format", mode="before")
    @classmethod
    def _parse_input_format(cls, value, info):
        if not isinstance(value, str):
            raise _not_a("string", cls._json_key(info))
        return _member_by_name(InputFormat, value, "Unknown input format.")

    @field_validator("archive_type", mode="before")
    @classmethod
    def _parse_archive_type(cls, value, info):
        if not isinstance(value, str):
            raise _not_a("string", cls._json_key(info))
        return _member_by_name(ArchiveType, value, "Unknown archive type.")

    @model_validator(mode="after")
    def _require_archive_fields(self):
        if self.input_format is InputFormat.ARCHIVE:
            for field_name in ("main_file", "archive_type"):
                if getattr(self, field_name) is None:
                    raise PydanticCustomError(
                        "missing_key",
                        'In the given json the key "{key}" does not exist.',
                        {"key": type(self).model_fields[field_name].alias},
                    )
        return self


def _describe_errors(errors: List[Dict[str, Any]]) -> str:
    messages = []
    for error in errors:
        if error["type"] == "missing":
            messages.append(f'In the given json the key "{error["loc"][0]}" does not exist.')
        else:
            messages.append(error["msg"])
    return " ".join(messages)


def _reject_constant(name: str):
    raise ValueError(f"{name} is not valid json")


def parse_request(content_type: Optional[str], body: bytes) -> RenderRequest:
    """Turn a raw request into a :class:`RenderRequest`.

    Raises :class:`IllegalRequestError` when the content type is not exactly
    ``application/json``, the body is not a JSON object, or any field is missing,
    of the wrong kind, or names an unknown format.
    """
    if content_type != EXPECTED_MIME_TYPE:
        raise IllegalRequestError(f"Expected content type {EXPECTED_MIME_TYPE}. Was {content_type}")
    try:
        payload = json.loads(body, parse_constant=_reject_constant)
    except ValueError as exc:
        raise IllegalRequestError("Could not parse the given json.") from exc
    if not isinstance(payload, dict):
        raise IllegalRequestError("The given json is not an object.")
    try:
        return RenderRequest.model_validate(payload)
    except ValidationError as exc:
        raise IllegalRequestError(_describe_errors(exc.errors())) from exc
