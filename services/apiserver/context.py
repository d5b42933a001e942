"""Deadline and cancellation carried through every blocking call.

A Context is created per inbound request and handed down to the resolver,
the dialer and the single-flight group. Children created with ``with_timeout``
inherit the parent's cancellation and never extend its deadline.
"""

import threading
import time

from apiserver.errors import Canceled, DeadlineExceeded


class Context:
	"""A deadline (``time.monotonic`` based) plus a cancellation flag."""

	def __init__(self, deadline: float | None = None, parent: "Context | None" = None) -> None:
		if parent is not None and parent.deadline is not None:
			if deadline is None or parent.deadline < deadline:
				deadline = parent.deadline
		self.deadline = deadline
		self._parent = parent
		self._cancelled = threading.Event()

	@classmethod
	def background(cls) -> "Context":
		return cls()

	@classmethod
	def with_seconds(cls, seconds: float | None) -> "Context":
		"""Root context that expires ``seconds`` from now (no deadline for None)."""
		if seconds is None:
			return cls()
		return cls(deadline=time.monotonic() + seconds)

	def with_timeout(self, seconds: float) -> "Context":
		"""Child context whose deadline is the earlier of ours and now+seconds."""
		deadline = None
		if seconds and seconds > 0:
			deadline = time.monotonic() + seconds
		return Context(deadline=deadline, parent=self)

	def cancel(self) -> None:
		self._cancelled.set()

	def cancelled(self) -> bool:
		if self._cancelled.is_set():
			return True
		return self._parent is not None and self._parent.cancelled()

	def expired(self) -> bool:
		return self.deadline is not None and time.monotonic() >= self.deadline

	def done(self) -> bool:
		return self.cancelled() or self.expired()

	def remaining(self) -> float | None:
		"""Seconds left before the deadline, or None when there is none."""
		if self.deadline is None:
			return None
		return max(0.0, self.deadline - time.monotonic())

	def err(self, what: str = "operation") -> Exception | None:
		if self.cancelled():
			return Canceled(f"{what} canceled")
		if self.expired():
			return DeadlineExceeded(f"{what} deadline exceeded")
		return None

	def check(self, what: str = "operation") -> None:
		"""Raise Canceled or DeadlineExceeded when the context is done."""
		err = self.err(what)
		if err is not None:
			raise err

	def wait(self, event: threading.Event, poll: float = 0.05) -> bool:
		"""Block on ``event`` until it is set or this context is done.

		Cancellation is observed by polling, so a cancel lands within ``poll``
		seconds.
		"""
		while not event.is_set():
			if self.done():
				return False
			timeout = poll
			remaining = self.remaining()
			if remaining is not None:
				timeout = min(timeout, remaining)
			event.wait(timeout)
		return True
