"""JSON control protocol models for subprocess communication.

Control messages share stdout/stdin with ordinary stream messages and are
told apart by their ``type`` field (``control_request`` /
``control_response``). Requests carry a ``request_id`` that the matching
response echoes back.
"""

from __future__ import annotations

from typing import Annotated, Any, Literal

from pydantic import BaseModel, ConfigDict, Field

CONTROL_REQUEST = "control_request"
CONTROL_RESPONSE = "control_response"
CONTROL_CANCEL_REQUEST = "control_cancel_request"


class ProtocolModel(BaseModel):
    """Base for wire models; unknown fields from newer CLIs are kept."""

    model_config = ConfigDict(extra="allow", populate_by_name=True)


# =============================================================================
# Control Requests (SDK -> CLI)
# =============================================================================


class ControlRequestMessage(ProtocolModel):
    """Envelope for a control request in either direction."""

    type: Literal["control_request"] = "control_request"
    request_id: str
    request: dict[str, Any]


def interrupt_request() -> dict[str, Any]:
    return {"subtype": "interrupt"}


def set_permission_mode_request(mode: str) -> dict[str, Any]:
    return {"subtype": "set_permission_mode", "mode": mode}


def set_model_request(model: str | None) -> dict[str, Any]:
    return {"subtype": "set_model", "model": model}


# =============================================================================
# Control Responses (CLI -> SDK)
# =============================================================================


class ControlResponseSuccess(ProtocolModel):
    """Successful control response."""

    subtype: Literal["success"] = "success"
    request_id: str
    response: dict[str, Any] | None = None


class ControlResponseError(ProtocolModel):
    """Error control response."""

    subtype: Literal["error"] = "error"
    request_id: str
    error: str = "Unknown error"


ControlResponse = Annotated[
    ControlResponseSuccess | ControlResponseError,
    Field(discriminator="subtype"),
]


class ControlResponseMessage(ProtocolModel):
    """Control response wrapper."""

    type: Literal["control_response"] = "control_response"
    response: ControlResponse


# =============================================================================
# User input (SDK -> CLI)
# =============================================================================


class UserInputContent(ProtocolModel):
    role: Literal["user"] = "user"
    content: str | list[dict[str, Any]]


class UserInputMessage(ProtocolModel):
    """A user turn written to the CLI's stdin in stream-json input mode."""

    type: Literal["user"] = "user"
    message: UserInputContent
    parent_tool_use_id: str | None = None
    session_id: str = "default"


def user_message(prompt: str, session_id: str = "default") -> dict[str, Any]:
    """Build the stdin payload for a plain text prompt."""
    return model_to_dict(
        UserInputMessage(message=UserInputContent(content=prompt), session_id=session_id)
    )


def model_to_dict(model: BaseModel) -> dict[str, Any]:
    """Serialize a wire model the way the CLI expects it (nulls kept, aliases used)."""
    return model.model_dump(by_alias=True, mode="json")


__all__ = [
    "CONTROL_REQUEST",
    "CONTROL_RESPONSE",
    "CONTROL_CANCEL_REQUEST",
    "ControlRequestMessage",
    "ControlResponseSuccess",
    "ControlResponseError",
    "ControlResponse",
    "ControlResponseMessage",
    "UserInputContent",
    "UserInputMessage",
    "interrupt_request",
    "set_permission_mode_request",
    "set_model_request",
    "user_message",
    "model_to_dict",
]
