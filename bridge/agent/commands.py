"""Command payloads as fetched from the mailbox, one model per supported command type."""

import math
from typing import Annotated, Any, Dict, Literal, Optional, Union

from pydantic import AliasChoices, BaseModel, Field, TypeAdapter, field_validator, model_validator
from pydantic import ValidationError as PydanticValidationError

from bridge.core.exceptions import ExecutionError


def _text_or_none(value: Any) -> Optional[str]:
    if isinstance(value, str) and value.strip():
        return value
    return None


class ExecuteJavascript(BaseModel):
    type: Literal["execute_javascript"]
    script: str = ""

    @field_validator("script", mode="before")
    @classmethod
    def _script_text(cls, value: Any) -> str:
        return "" if value is None else str(value)


class MouseClickPosition(BaseModel):
    type: Literal["mouse_click_position"]
    pos_x: Optional[float] = None
    pos_y: Optional[float] = None
    button: str = "left"

    @field_validator("pos_x", "pos_y", mode="before")
    @classmethod
    def _coordinate(cls, value: Any) -> Optional[float]:
        # Form-posted commands carry coordinates as strings
        try:
            number = float(value)
        except (TypeError, ValueError):
            return None
        return None if math.isnan(number) else number

    @field_validator("button", mode="before")
    @classmethod
    def _button(cls, value: Any) -> str:
        return value if isinstance(value, str) and value else "left"


class ClickOnElement(BaseModel):
    type: Literal["click_on_element"]
    selector: Optional[str] = Field(
        default=None, validation_alias=AliasChoices("selector", "css_selector")
    )
    selector_function: Optional[str] = Field(
        default=None, validation_alias=AliasChoices("selector_function", "selectorFunction")
    )
    button: str = "left"

    @field_validator("selector", "selector_function", mode="before")
    @classmethod
    def _blank_as_missing(cls, value: Any) -> Optional[str]:
        return _text_or_none(value)

    @field_validator("button", mode="before")
    @classmethod
    def _button(cls, value: Any) -> str:
        return value if isinstance(value, str) and value else "left"


class TakeScreenshot(BaseModel):
    """Screenshot request; ``jpg``/``jpeg`` select JPEG and anything else PNG."""

    type: Literal["take_screenshot"]
    format: Literal["png", "jpeg"] = "png"
    quality: Optional[int] = None

    @field_validator("format", mode="before")
    @classmethod
    def _normalize_format(cls, value: Any) -> str:
        if isinstance(value, str) and value.lower() in ("jpg", "jpeg"):
            return "jpeg"
        return "png"

    @field_validator("quality", mode="before")
    @classmethod
    def _clamp_quality(cls, value: Any) -> Optional[int]:
        try:
            number = float(value)
        except (TypeError, ValueError):
            return None
        if math.isnan(number):
            return None
        return int(min(100, max(1, number)))

    @model_validator(mode="after")
    def _quality_only_for_jpeg(self) -> "TakeScreenshot":
        if self.format == "png":
            self.quality = None
        return self


class KeyboardInput(BaseModel):
    type: Literal["keyboard_input"]
    text: str = Field(default="", validation_alias=AliasChoices("text", "input"))

    @field_validator("text", mode="before")
    @classmethod
    def _text(cls, value: Any) -> str:
        return "" if value is None else str(value)


Command = Annotated[
    Union[ExecuteJavascript, MouseClickPosition, ClickOnElement, TakeScreenshot, KeyboardInput],
    Field(discriminator="type"),
]

COMMAND_TYPES = (
    "execute_javascript",
    "mouse_click_position",
    "click_on_element",
    "take_screenshot",
    "keyboard_input",
)

_command_adapter = TypeAdapter(Command)


def command_type_of(data: Any) -> str:
    if isinstance(data, dict) and isinstance(data.get("type"), str):
        return data["type"]
    return "unknown"


def parse_command(data: Dict[str, Any]) -> Command:
    """Validate a fetched command, rejecting unknown types as an ExecutionError."""
    command_type = command_type_of(data)
    if command_type not in COMMAND_TYPES:
        raise ExecutionError(f"Unsupported command type: {command_type}")
    try:
        return _command_adapter.validate_python(data)
    except PydanticValidationError as e:
        raise ExecutionError(f"Invalid {command_type} command: {e.errors()[0]['msg']}") from e
