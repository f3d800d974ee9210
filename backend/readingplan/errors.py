from __future__ import annotations
from dataclasses import dataclass
from enum import Enum
from typing import Optional


class ErrorCode(str, Enum):
	INVALID_ATTEMPT = "INVALID_ATTEMPT"
	INVALID_GRADE_LEVEL = "INVALID_GRADE_LEVEL"
	DAY_LOCKED = "DAY_LOCKED"
	GENERATION_FAILED = "GENERATION_FAILED"
	GENERATION_PENDING = "GENERATION_PENDING"
	STALE_WRITE = "STALE_WRITE"
	PLAN_NOT_READY = "PLAN_NOT_READY"
	NOT_FOUND = "NOT_FOUND"
	ALREADY_SCORED = "ALREADY_SCORED"
	INVALID_PROGRESS_KEY = "INVALID_PROGRESS_KEY"


# (HTTP status, message shown to the parent/student)
ERROR_RESPONSES = {
	ErrorCode.INVALID_ATTEMPT: (422, "Reading session too short, please try again."),
	ErrorCode.INVALID_GRADE_LEVEL: (422, "No reading benchmark exists for this grade level."),
	ErrorCode.DAY_LOCKED: (403, "This day is locked. Complete the previous days first."),
	ErrorCode.GENERATION_FAILED: (503, "Activity content could not be created right now. Please try again in a few minutes."),
	ErrorCode.GENERATION_PENDING: (202, "Activity content is still being prepared. Please check again shortly."),
	ErrorCode.STALE_WRITE: (409, "This activity was updated from another device. Reload and try again."),
	ErrorCode.PLAN_NOT_READY: (409, "The plan is still being prepared."),
	ErrorCode.NOT_FOUND: (404, "Not found."),
	ErrorCode.ALREADY_SCORED: (409, "This assessment has already been scored."),
	ErrorCode.INVALID_PROGRESS_KEY: (400, "Malformed activity key."),
}


class ReadingPlanError(Exception):
	code: ErrorCode = ErrorCode.NOT_FOUND

	def __init__(self, message: Optional[str] = None, *, code: Optional[ErrorCode] = None) -> None:
		if code is not None:
			self.code = code
		self.message = message or ERROR_RESPONSES[self.code][1]
		super().__init__(self.message)

	@property
	def status_code(self) -> int:
		return ERROR_RESPONSES[self.code][0]

	def to_dict(self) -> dict:
		return {"detail": self.message, "error": self.code.value}


class DayLocked(ReadingPlanError):
	code = ErrorCode.DAY_LOCKED


class GenerationFailed(ReadingPlanError):
	code = ErrorCode.GENERATION_FAILED


class GenerationPending(ReadingPlanError):
	code = ErrorCode.GENERATION_PENDING


class StaleWrite(ReadingPlanError):
	code = ErrorCode.STALE_WRITE


class PlanNotReady(ReadingPlanError):
	code = ErrorCode.PLAN_NOT_READY


class InvalidProgressKey(ReadingPlanError):
	code = ErrorCode.INVALID_PROGRESS_KEY


_RAISED_AS = {
	cls.code: cls
	for cls in (DayLocked, GenerationFailed, GenerationPending, StaleWrite, PlanNotReady, InvalidProgressKey)
}


@dataclass(frozen=True)
class DomainErrorResult:
	"""Typed error returned (not raised) by scoring and progression checks."""

	code: ErrorCode
	message: str

	@classmethod
	def of(cls, code: ErrorCode, message: Optional[str] = None) -> "DomainErrorResult":
		return cls(code=code, message=message or ERROR_RESPONSES[code][1])

	def to_exception(self) -> ReadingPlanError:
		return _RAISED_AS.get(self.code, ReadingPlanError)(self.message, code=self.code)
