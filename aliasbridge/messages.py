# aliasbridge/messages.py
"""
Wire shapes exchanged with browser observers.

Observer -> server commands are decoded exactly once, here, into one of four
pydantic models (a union discriminated on `type`). Anything that does not
decode raises CommandError; the hub logs it and keeps the connection.

Server -> observer messages are plain dicts built by the helpers below:
    {"type": "aliases-update", "data": {...}}
    {"type": "card-read", "uid": ..., "source": "card"|"scanner", "knownName": ...}
    {"type": "save-success"}
    {"type": "error", "message": ...}
"""

from __future__ import annotations

import json
import time
from dataclasses import dataclass, field
from typing import Any, Annotated, Dict, List, Literal, Optional, Union

from pydantic import BaseModel, Field, TypeAdapter, ValidationError, field_validator

SOURCE_CARD = "card"
SOURCE_SCANNER = "scanner"

Source = Literal["card", "scanner"]


class CommandError(ValueError):
    """An observer message that is not a well-formed command."""


# ------------------------------------------------------------
# Inbound commands
# ------------------------------------------------------------

def _clean_uids(v: List[str]) -> List[str]:
    if any(not u for u in v):
        raise ValueError("uids must not contain empty strings")
    return list(dict.fromkeys(v))


class SaveAlias(BaseModel):
    type: Literal["save-alias"]
    uid: str = Field(min_length=1)
    name: str


class SaveBatchAlias(BaseModel):
    type: Literal["save-batch-alias"]
    uids: List[str] = Field(min_length=1)
    name: str

    @field_validator("uids")
    @classmethod
    def check_uids(cls, v: List[str]) -> List[str]:
        return _clean_uids(v)


class DeleteAlias(BaseModel):
    type: Literal["delete-alias"]
    uid: str = Field(min_length=1)


class DeleteBatchAlias(BaseModel):
    type: Literal["delete-batch-alias"]
    uids: List[str] = Field(min_length=1)

    @field_validator("uids")
    @classmethod
    def check_uids(cls, v: List[str]) -> List[str]:
        return _clean_uids(v)


Command = Annotated[
    Union[SaveAlias, SaveBatchAlias, DeleteAlias, DeleteBatchAlias],
    Field(discriminator="type"),
]

COMMAND_TYPES = ("save-alias", "save-batch-alias", "delete-alias", "delete-batch-alias")

_command_adapter: TypeAdapter = TypeAdapter(Command)


def decode_command(raw: Union[str, bytes, Dict[str, Any]]) -> Command:
    """Parse one observer message into a command model, or raise CommandError."""
    if isinstance(raw, dict):
        data: Any = raw
    else:
        try:
            data = json.loads(raw)
        except ValueError as e:
            raise CommandError(f"unparsable message: {e}") from e

    if not isinstance(data, dict):
        raise CommandError(f"message must be a JSON object, not {type(data).__name__}")

    kind = data.get("type")
    if kind not in COMMAND_TYPES:
        raise CommandError(f"unrecognized command type: {kind!r}")

    try:
        return _command_adapter.validate_python(data)
    except ValidationError as e:
        problems = "; ".join(
            f"{'.'.join(str(p) for p in err['loc'][1:]) or err['loc'][0]}: {err['msg']}"
            for err in e.errors()
        )
        raise CommandError(f"invalid {kind} command: {problems}") from e


# ------------------------------------------------------------
# Outbound messages
# ------------------------------------------------------------

@dataclass(frozen=True)
class TokenObserved:
    """A card or barcode was presented. Never persisted."""
    identifier: str
    source: Source
    known_name: Optional[str] = None
    seen_at: float = field(default_factory=time.time)

    def to_message(self) -> Dict[str, Any]:
        return {
            "type": "card-read",
            "uid": self.identifier,
            "source": self.source,
            "knownName": self.known_name,
        }


def aliases_update(table: Dict[str, str]) -> Dict[str, Any]:
    return {"type": "aliases-update", "data": dict(table)}


def save_success() -> Dict[str, Any]:
    return {"type": "save-success"}


def error_message(message: str) -> Dict[str, Any]:
    return {"type": "error", "message": str(message)}
