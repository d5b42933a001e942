import socket
import threading
from typing import List, Tuple

BUFSZ = 32 * 1024

ACCEPT_KEEPALIVE_PERIOD = 3 * 60


class BufferPool:
	"""Free list of fixed-size bytearrays shared by the whole process."""

	def __init__(self, size: int = BUFSZ, max_free: int = 256) -> None:
		self.size = size
		self.max_free = max_free
		self._lock = threading.Lock()
		self._free: List[bytearray] = []

	def get(self) -> bytearray:
		with self._lock:
			if self._free:
				return self._free.pop()
		return bytearray(self.size)

	def put(self, buf: bytearray) -> None:
		if len(buf) != self.size:
			return
		with self._lock:
			if len(self._free) < self.max_free:
				self._free.append(buf)


bufpool = BufferPool()


def copy_buffer(dst, src, check=None) -> int:
	"""Copy ``src`` (anything with readinto) to ``dst`` through a pooled buffer.

	``check`` is called before every read so callers can abort a long copy.
	Returns the number of bytes copied.
	"""
	buf = bufpool.get()
	view = memoryview(buf)
	total = 0
	try:
		while True:
			if check is not None:
				check()
			n = src.readinto(buf)
			if not n:
				break
			dst.write(view[:n])
			total += n
	finally:
		view.release()
		bufpool.put(buf)
	return total


def set_keepalive(sock: socket.socket, period: float) -> None:
	"""Enable TCP keepalive probing every ``period`` seconds where supported."""
	sock.setsockopt(socket.SOL_SOCKET, socket.SO_KEEPALIVE, 1)
	seconds = max(1, int(period))
	if hasattr(socket, "TCP_KEEPIDLE"):
		sock.setsockopt(socket.IPPROTO_TCP, socket.TCP_KEEPIDLE, seconds)
	elif hasattr(socket, "TCP_KEEPALIVE"):
		# macOS
		sock.setsockopt(socket.IPPROTO_TCP, socket.TCP_KEEPALIVE, seconds)
	if hasattr(socket, "TCP_KEEPINTVL"):
		sock.setsockopt(socket.IPPROTO_TCP, socket.TCP_KEEPINTVL, seconds)


def tune_accepted_socket(sock: socket.socket) -> None:
	"""Keepalive every 3 minutes and 32 KiB socket buffers for inbound connections."""
	set_keepalive(sock, ACCEPT_KEEPALIVE_PERIOD)
	sock.setsockopt(socket.SOL_SOCKET, socket.SO_RCVBUF, BUFSZ)
	sock.setsockopt(socket.SOL_SOCKET, socket.SO_SNDBUF, BUFSZ)


def split_host_port(address: str) -> Tuple[str, int]:
	"""Split ``host:port`` or ``[v6]:port``. Raises ValueError when malformed."""
	if address.startswith("["):
		end = address.find("]")
		if end < 0 or address[end + 1:end + 2] != ":":
			raise ValueError(f"missing port in address {address!r}")
		host, port = address[1:end], address[end + 2:]
	else:
		host, sep, port = address.rpartition(":")
		if not sep:
			raise ValueError(f"missing port in address {address!r}")
		if ":" in host:
			raise ValueError(f"too many colons in address {address!r}")
	if not port.isdigit() or not 0 <= int(port) <= 65535:
		raise ValueError(f"invalid port in address {address!r}")
	return host, int(port)


def join_host_port(host: str, port: int) -> str:
	if ":" in host:
		return f"[{host}]:{port}"
	return f"{host}:{port}"
