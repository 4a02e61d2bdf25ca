"""
Worker message protocol.

Every message is a frozen pydantic model with a literal `kind`; `Command` and
`Status` are the closed unions a worker accepts and emits.
"""
from __future__ import annotations

from typing import Annotated, List, Literal, Optional, Tuple, Union

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from .config import SENSITIVITY_DEFAULT, SMOOTHNESS_DEFAULT


class _Message(BaseModel):
    model_config = ConfigDict(frozen=True)


# --- commands -----------------------------------------------------------------


class PreloadCommand(_Message):
    kind: Literal["preload"] = "preload"


class ProcessCommand(_Message):
    kind: Literal["process"] = "process"
    id: str
    image: bytes


class EncodeCommand(_Message):
    kind: Literal["encode"] = "encode"
    uuid: str
    image: bytes


class DecodeCommand(_Message):
    kind: Literal["decode"] = "decode"
    uuid: str
    points: List[Tuple[float, float]]
    labels: List[int]
    sensitivity: float = Field(default=SENSITIVITY_DEFAULT, ge=0.0, le=1.0)
    smoothness: float = Field(default=SMOOTHNESS_DEFAULT, ge=0.0, le=1.0)
    mask_index: Optional[int] = Field(default=None, ge=0)

    @field_validator("labels")
    @classmethod
    def _binary_labels(cls, v: List[int]) -> List[int]:
        bad = [x for x in v if x not in (0, 1)]
        if bad:
            raise ValueError(f"Labels must be 0 (remove) or 1 (keep), got {bad}")
        return v

    @model_validator(mode="after")
    def _paired(self) -> "DecodeCommand":
        if len(self.points) != len(self.labels):
            raise ValueError(f"Got {len(self.points)} points but {len(self.labels)} labels")
        return self


class ExtractCommand(_Message):
    kind: Literal["extract"] = "extract"
    uuid: str


Command = Annotated[
    Union[PreloadCommand, ProcessCommand, EncodeCommand, DecodeCommand, ExtractCommand],
    Field(discriminator="kind"),
]


# --- statuses -----------------------------------------------------------------


class LoadingStatus(_Message):
    kind: Literal["loading"] = "loading"
    message: str = ""


class ReadyStatus(_Message):
    kind: Literal["ready"] = "ready"
    device: str
    message: str = ""


class EncodedStatus(_Message):
    kind: Literal["encoded"] = "encoded"
    uuid: str


class DecodedStatus(_Message):
    """Display and raw masks from one decode call; always delivered together."""

    kind: Literal["decoded"] = "decoded"
    uuid: str
    display_mask: bytes
    raw_mask: bytes
    mask_index: int
    score: float


class ProcessingStatus(_Message):
    kind: Literal["processing"] = "processing"
    id: str


class CompleteStatus(_Message):
    kind: Literal["complete"] = "complete"
    id: str
    result: bytes


class ExtractedStatus(_Message):
    kind: Literal["extracted"] = "extracted"
    uuid: str
    result: bytes


class ErrorStatus(_Message):
    """`id` is None for worker-level (model initialization) failures."""

    kind: Literal["error"] = "error"
    id: Optional[str] = None
    message: str


Status = Annotated[
    Union[
        LoadingStatus,
        ReadyStatus,
        EncodedStatus,
        DecodedStatus,
        ProcessingStatus,
        CompleteStatus,
        ExtractedStatus,
        ErrorStatus,
    ],
    Field(discriminator="kind"),
]
