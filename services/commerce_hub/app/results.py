"""
Commerce Hub: コマンド結果

想定内の失敗 (存在しない、在庫不足、遷移不可) は例外ではなく失敗した
Result として返す。データベースに届かないなど、呼び出し元が対処できない
障害だけが例外として伝わる。
"""


from dataclasses import dataclass
from enum import Enum
from typing import Generic, TypeVar

T = TypeVar("T")


class ErrorKind(str, Enum):
    INVALID_ARGUMENT = "InvalidArgument"
    NOT_FOUND = "NotFound"
    INSUFFICIENT_STOCK = "InsufficientStock"
    CONFLICT = "Conflict"
    INTERNAL = "Internal"


@dataclass(frozen=True)
class Result(Generic[T]):
    value: T | None = None
    error: ErrorKind | None = None
    reason: str = ""

    @property
    def success(self) -> bool:
        return self.error is None

    @classmethod
    def ok(cls, value: T) -> "Result[T]":
        return cls(value=value)

    @classmethod
    def fail(cls, error: ErrorKind, reason: str) -> "Result[T]":
        return cls(error=error, reason=reason)
