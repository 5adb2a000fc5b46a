from dataclasses import dataclass


@dataclass(frozen=True)
class WriteFailure:
    label: str
    error: BaseException
    at: int
