"""
Error taxonomy shared by the core and the routers.

Normalizers never raise; these are reserved for writes that cannot be
honoured and lookups with no resolvable target.
"""
from __future__ import annotations


class LessonError(Exception):
	status_code = 500

	def __init__(self, detail: str) -> None:
		super().__init__(detail)
		self.detail = detail


class InvalidRequest(LessonError):
	status_code = 400


class Forbidden(LessonError):
	status_code = 403


class NotFound(LessonError):
	status_code = 404


class SessionFrozen(Forbidden):
	status_code = 423

	def __init__(self, detail: str = "Session is frozen") -> None:
		super().__init__(detail)


class Transient(LessonError):
	"""Storage unavailable. No retries happen here."""
	status_code = 503
