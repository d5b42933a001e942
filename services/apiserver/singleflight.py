"""Duplicate call suppression.

Concurrent callers of ``Group.do`` with the same key share one execution of
the supplied function and all observe the same value or exception.
"""

import logging
import threading
from typing import Any, Callable, Dict, Tuple

from apiserver.context import Context

logger = logging.getLogger(__name__)


class _Call:
	__slots__ = ("done", "value", "error", "dups")

	def __init__(self) -> None:
		self.done = threading.Event()
		self.value: Any = None
		self.error: BaseException | None = None
		self.dups = 0


class Group:
	def __init__(self) -> None:
		self._lock = threading.Lock()
		self._calls: Dict[str, _Call] = {}

	def do(self, key: str, fn: Callable[[], Any], ctx: Context | None = None) -> Tuple[Any, bool]:
		"""Run ``fn`` once per in-flight ``key``.

		Returns ``(value, shared)``. ``shared`` is False for the caller that
		actually ran ``fn`` and True for callers that received its result.
		An exception raised by ``fn`` is re-raised to every caller.

		A waiter whose ``ctx`` is done stops waiting with Canceled or
		DeadlineExceeded; the running call is not interrupted.
		"""
		with self._lock:
			call = self._calls.get(key)
			if call is not None:
				call.dups += 1
				leader = False
			else:
				call = _Call()
				self._calls[key] = call
				leader = True

		if not leader:
			if ctx is None:
				call.done.wait()
			elif not ctx.wait(call.done):
				ctx.check(f"singleflight {key!r}")
			if call.error is not None:
				raise call.error
			return call.value, True

		try:
			call.value = fn()
		except BaseException as e:
			call.error = e
		finally:
			with self._lock:
				# forget() may already have installed a newer call for this key
				if self._calls.get(key) is call:
					del self._calls[key]
			call.done.set()

		if call.dups:
			logger.debug("singleflight %r shared with %d waiters", key, call.dups)
		if call.error is not None:
			raise call.error
		return call.value, False

	def forget(self, key: str) -> None:
		"""Drop the in-flight record so the next ``do`` runs ``fn`` again."""
		with self._lock:
			self._calls.pop(key, None)

	def __len__(self) -> int:
		with self._lock:
			return len(self._calls)
