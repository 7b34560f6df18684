"""Pydantic models for the pairing protocol wire format."""

import json
from enum import Enum
from typing import Literal, Optional, Union

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, ValidationError
from pydantic.alias_generators import to_camel

from idesync.errors import ProtocolError


class SyncState(str, Enum):
    """States of the reconnect supervisor."""
    DISABLED = "disabled"
    DISCOVERING = "discovering"
    AWAITING_SESSION_CONNECT = "awaiting_session_connect"
    CONNECTED = "connected"
    ERROR_BACKOFF = "error_backoff"


class WireMessage(BaseModel):
    """Base for every JSON frame exchanged between paired editors."""
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    def to_wire(self) -> str:
        return json.dumps(self.model_dump(by_alias=True, exclude_none=True))


class HelloMessage(WireMessage):
    """Announces the sender's workspace path."""
    type: Literal["hello"] = "hello"
    path: str = Field(validation_alias=AliasChoices("path", "projectPath", "workspacePath"))


class PortAssignmentMessage(WireMessage):
    """Sent by the discovery host in reply to a hello."""
    type: Literal["port-assignment"] = "port-assignment"
    port: int = Field(gt=0, le=65535)
    workspace_path: str = ""


class FocusMessage(WireMessage):
    """Asks the receiver to raise its own window."""
    action: Literal["focus"] = "focus"


class EditorState(WireMessage):
    """Current file and caret of one editor."""
    file_path: str
    line: int = Field(ge=0)
    column: int = Field(ge=0)
    source: str
    is_active: bool = False
    action: Optional[Literal["switch"]] = None


Message = Union[HelloMessage, PortAssignmentMessage, FocusMessage, EditorState]


def parse_message(raw: Union[str, bytes]) -> Message:
    """Decode one frame into its message model.

    Raises ProtocolError for anything that is not a recognized JSON object.
    """
    try:
        payload = json.loads(raw)
    except (json.JSONDecodeError, UnicodeDecodeError) as e:
        raise ProtocolError(f"Invalid JSON: {e}") from e

    if not isinstance(payload, dict):
        raise ProtocolError(f"Expected a JSON object, got {type(payload).__name__}")

    kind = payload.get("type")
    try:
        if kind == "hello":
            return HelloMessage.model_validate(payload)
        if kind == "port-assignment":
            return PortAssignmentMessage.model_validate(payload)
        if kind is not None:
            raise ProtocolError(f"Unrecognized message type: {kind!r}")
        if payload.get("action") == "focus":
            return FocusMessage()
        return EditorState.model_validate(payload)
    except ValidationError as e:
        raise ProtocolError(f"Invalid {kind or 'state'} message: {e.error_count()} validation error(s)") from e
