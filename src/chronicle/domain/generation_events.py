from __future__ import annotations

"""Events accepted by the generation state machine.

Each event is a small frozen dataclass whose class-level ``type`` matches
the name used in the transition table.
"""

from dataclasses import dataclass, field
from typing import ClassVar, Optional, Sequence, Tuple, Union

from .models import GenerationMode, GenerationRange


@dataclass(frozen=True)
class Generate:
    type: ClassVar[str] = "GENERATE"
    mode: GenerationMode = GenerationMode.CONTINUE


@dataclass(frozen=True)
class Stop:
    type: ClassVar[str] = "STOP"


@dataclass(frozen=True)
class Success:
    type: ClassVar[str] = "SUCCESS"
    candidates: Tuple[str, ...] = field(default_factory=tuple)
    range: Optional[GenerationRange] = None

    @classmethod
    def of(cls, candidates: Sequence[str], range: Optional[GenerationRange]) -> "Success":
        return cls(candidates=tuple(candidates), range=range)


@dataclass(frozen=True)
class Error:
    type: ClassVar[str] = "ERROR"
    message: str = ""


@dataclass(frozen=True)
class Retry:
    type: ClassVar[str] = "RETRY"


@dataclass(frozen=True)
class NextVariant:
    type: ClassVar[str] = "NEXT_VARIANT"


@dataclass(frozen=True)
class PrevVariant:
    type: ClassVar[str] = "PREV_VARIANT"


@dataclass(frozen=True)
class Accept:
    type: ClassVar[str] = "ACCEPT"


GenerationEvent = Union[Generate, Stop, Success, Error, Retry, NextVariant, PrevVariant, Accept]
