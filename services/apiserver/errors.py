"""Error kinds raised across the resolver, dialer and lookup pipeline."""


class ApiServerError(Exception):
	"""Base class for every error the service produces."""

	kind = "Internal"

	def __init__(self, message: str = "") -> None:
		super().__init__(message or self.kind)
		self.message = message or self.kind

	def __str__(self) -> str:
		return self.message


class ConfigInvalid(ApiServerError):
	kind = "ConfigInvalid"


class ResolveFailed(ApiServerError):
	kind = "ResolveFailed"


class InvalidAddress(ApiServerError):
	kind = "InvalidAddress"


class DialFailed(ApiServerError):
	kind = "DialFailed"


class HandshakeFailed(ApiServerError):
	kind = "HandshakeFailed"


class UpstreamHTTPError(ApiServerError):
	kind = "UpstreamHTTPError"

	def __init__(self, message: str = "", status_code: int | None = None) -> None:
		super().__init__(message)
		self.status_code = status_code


class RegexNoMatch(ApiServerError):
	kind = "RegexNoMatch"


class BadRequest(ApiServerError):
	kind = "BadRequest"


class DeadlineExceeded(ApiServerError):
	kind = "DeadlineExceeded"


class Canceled(ApiServerError):
	kind = "Canceled"


class InvariantViolation(ApiServerError):
	kind = "InvariantViolation"
