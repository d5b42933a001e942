import threading
import time
from collections import OrderedDict
from typing import Any, Callable, Hashable, Tuple


class LRUCache:
	"""Thread-safe, capacity-bounded mapping with per-entry expiry.

	Expired entries are not swept; they stay until overwritten or evicted
	and read as a miss in the meantime.
	"""

	def __init__(self, capacity: int, clock: Callable[[], float] = time.monotonic) -> None:
		if capacity <= 0:
			raise ValueError("capacity must be positive")
		self.capacity = capacity
		self.clock = clock
		self._lock = threading.Lock()
		self._entries: "OrderedDict[Hashable, Tuple[Any, float]]" = OrderedDict()

	def get_not_stale(self, key: Hashable) -> Tuple[Any, bool]:
		"""Return ``(value, True)`` for a fresh entry, ``(None, False)`` otherwise."""
		with self._lock:
			entry = self._entries.get(key)
			if entry is None:
				return None, False
			value, expires = entry
			if self.clock() >= expires:
				return None, False
			self._entries.move_to_end(key)
			return value, True

	def set(self, key: Hashable, value: Any, expires: float) -> None:
		"""Store ``value`` until the ``expires`` instant of ``self.clock``."""
		with self._lock:
			if key in self._entries:
				self._entries.move_to_end(key)
			self._entries[key] = (value, expires)
			while len(self._entries) > self.capacity:
				self._entries.popitem(last=False)

	def set_ttl(self, key: Hashable, value: Any, ttl: float) -> None:
		self.set(key, value, self.clock() + ttl)

	def delete(self, key: Hashable) -> bool:
		with self._lock:
			return self._entries.pop(key, None) is not None

	def __len__(self) -> int:
		with self._lock:
			return len(self._entries)

	def __contains__(self, key: Hashable) -> bool:
		return self.get_not_stale(key)[1]
