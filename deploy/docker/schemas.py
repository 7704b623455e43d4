from typing import Dict, List, Optional
from urllib.parse import urlparse

from pydantic import BaseModel, Field, StrictBool, StrictInt, field_validator

from devices import DEFAULT_DEVICE


def _check_http_url(value: str) -> str:
    if value and urlparse(value).scheme not in ("http", "https"):
        raise ValueError("URL must be an absolute http(s) URL")
    return value


class ScreenshotRequest(BaseModel):
    """Request body for the /screenshot endpoint."""
    model_config = {"populate_by_name": True}
    url: str = Field(
        ...,
        min_length=1,
        description="Absolute http/https URL to capture as a full-page screenshot",
        examples=["https://example.com", "https://docs.python.org"]
    )
    filename: str = Field(
        ...,
        min_length=1,
        description="File name stem; any extension is replaced by .png",
        examples=["shot", "landing-page"]
    )
    device_name: str = Field(
        DEFAULT_DEVICE,
        alias="deviceName",
        description="Registered device profile to emulate (see GET /devices)",
        examples=["iPad Pro", "iPhone X", "Pixel 2"]
    )
    width: Optional[StrictInt] = Field(
        None,
        gt=0,
        description="Viewport width in CSS pixels; takes precedence over the device width",
        examples=[375, 1280, 1920]
    )

    @field_validator("url")
    @classmethod
    def url_must_be_http(cls, value: str) -> str:
        return _check_http_url(value)


class PDFRequest(BaseModel):
    """Request body for the /pdf and /pdf/stream endpoints."""
    model_config = {"populate_by_name": True}
    url: str = Field(
        ...,
        min_length=1,
        description="Absolute http/https URL to convert to PDF",
        examples=["https://example.com"]
    )
    filename: str = Field(
        ...,
        min_length=1,
        description="File name stem; any extension is replaced by .pdf",
        examples=["report"]
    )
    show_page_no: StrictBool = Field(
        True,
        alias="showPageNo",
        description="Print a pageNumber/totalPages footer on every page",
        examples=[True, False]
    )

    @field_validator("url")
    @classmethod
    def url_must_be_http(cls, value: str) -> str:
        return _check_http_url(value)


class ApiResponse(BaseModel):
    """Envelope shared by every JSON response."""
    model_config = {"populate_by_name": True}
    code: int
    message: str
    file_name: Optional[str] = Field(None, alias="fileName")
    success: bool
    timestamp: int
    request_id: Optional[str] = Field(None, alias="requestId")


class DeviceInfo(BaseModel):
    name: str
    user_agent: str = Field(..., alias="userAgent")
    width: int
    height: int
    device_scale_factor: float = Field(..., alias="deviceScaleFactor")
    is_mobile: bool = Field(..., alias="isMobile")


class DevicesResponse(BaseModel):
    default: str
    devices: List[DeviceInfo]


FIELD_MESSAGES: Dict[str, str] = {
    "url": "URL is required",
    "filename": "Filename is required",
    "width": "Width must be a positive integer",
    "deviceName": "deviceName must be a string",
    "showPageNo": "showPageNo must be a boolean value",
}


def describe_validation_error(errors: List[Dict]) -> str:
    """Collapse pydantic errors into the single message clients expect."""
    if not errors:
        return "Invalid request"
    err = errors[0]
    loc = err.get("loc") or ()
    field = loc[-1] if len(loc) > 1 else None
    if err.get("type") == "value_error" and "error" in err.get("ctx", {}):
        return str(err["ctx"]["error"])
    if field is None:
        return "Request body must be a JSON object"
    return FIELD_MESSAGES.get(str(field), err.get("msg", "Invalid request"))
