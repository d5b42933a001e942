"""TCP and TLS dialing on top of the Resolver.

``TCPDialer.dial`` resolves the host, orders the candidates toward the
preferred address family and then either walks them one by one (level 0/1)
or races up to ``level`` of them in worker threads and keeps the first
connection that completes its handshake.
"""

import errno
import ipaddress
import logging
import math
import os
import queue
import select
import socket
import ssl
import threading
from typing import List, Tuple

from apiserver.context import Context
from apiserver.errors import (
	ApiServerError,
	Canceled,
	DeadlineExceeded,
	DialFailed,
	HandshakeFailed,
	InvalidAddress,
	ResolveFailed,
)
from apiserver.helpers import join_host_port, set_keepalive, split_host_port
from apiserver.lrucache import LRUCache
from apiserver.reserved import is_reserved_ip
from apiserver.resolver import Resolver

logger = logging.getLogger(__name__)

NETWORK_FAMILIES = {
	"tcp": None,
	"tcp4": socket.AF_INET,
	"tcp6": socket.AF_INET6,
}

_POLL_INTERVAL = 0.05

_CONNECT_PENDING = {
	0,
	errno.EINPROGRESS,
	errno.EWOULDBLOCK,
	errno.EALREADY,
	getattr(errno, "WSAEWOULDBLOCK", errno.EWOULDBLOCK),
}


def ip_family(ip: str) -> int:
	if isinstance(ipaddress.ip_address(ip), ipaddress.IPv4Address):
		return socket.AF_INET
	return socket.AF_INET6


def order_candidates(ips: List[str], prefer_ipv6: bool = False) -> List[str]:
	"""Put an address of the preferred family at the front.

	Only the first and last entries are ever swapped; the rest keeps the
	resolver's order.
	"""
	ips = list(ips)
	if len(ips) < 2:
		return ips

	wanted = socket.AF_INET6 if prefer_ipv6 else socket.AF_INET
	if ip_family(ips[0]) != wanted and ip_family(ips[-1]) == wanted:
		ips[0], ips[-1] = ips[-1], ips[0]
	return ips


class TLSSessionCache:
	"""Client side TLS sessions keyed by server name, shared across dials."""

	def __init__(self, capacity: int = 2048) -> None:
		self._cache = LRUCache(capacity)

	def get(self, server_name: str, tls_context: ssl.SSLContext) -> ssl.SSLSession | None:
		entry, ok = self._cache.get_not_stale(server_name)
		if not ok:
			return None
		context, session = entry
		# a session can only be resumed through the context that created it
		if context is not tls_context:
			return None
		return session

	def put(self, server_name: str, tls_context: ssl.SSLContext, session: ssl.SSLSession) -> None:
		self._cache.set(server_name, (tls_context, session), math.inf)

	def __len__(self) -> int:
		return len(self._cache)


def _close_quietly(sock) -> None:
	try:
		sock.close()
	except OSError as e:
		logger.debug("close %r: %s", sock, e)


class TCPDialer:
	def __init__(
		self,
		resolver: Resolver,
		local_addr: str | None = None,
		keepalive: float = 0.0,
		timeout: float = 0.0,
		level: int = 1,
		reject_intranet: bool = False,
		prefer_ipv6: bool = False,
		tls_session_cache: TLSSessionCache | None = None,
		handshake_timeout: float = 10.0,
	) -> None:
		self.resolver = resolver
		self.local_addr = local_addr
		self.keepalive = keepalive
		self.timeout = timeout
		self.level = level
		self.reject_intranet = reject_intranet
		self.prefer_ipv6 = prefer_ipv6
		self.tls_session_cache = tls_session_cache
		self.handshake_timeout = handshake_timeout

	def dial(
		self,
		network: str,
		address: str,
		tls_context: ssl.SSLContext | None = None,
		ctx: Context | None = None,
	) -> socket.socket:
		"""Connect to ``address`` (``host:port``), wrapping in TLS when a context is given."""
		if network not in NETWORK_FAMILIES:
			raise InvalidAddress(f"unknown network {network!r}")
		try:
			host, port = split_host_port(address)
		except ValueError as e:
			raise InvalidAddress(str(e)) from e

		ctx = ctx or Context.background()

		try:
			ips = self.resolver.lookup_ip(host, ctx)
		except ApiServerError:
			raise
		except OSError as e:
			raise ResolveFailed(f"lookup {host}: {e}") from e

		family = NETWORK_FAMILIES[network]
		if family is not None:
			ips = [ip for ip in ips if ip_family(ip) == family]

		if not ips:
			raise InvalidAddress(f"invalid DNS record: {address}")

		ips = order_candidates(ips, self.prefer_ipv6)

		if self.reject_intranet and is_reserved_ip(ips[0]):
			raise InvalidAddress(f"intranet address is rejected: {ips[0]}")

		if self.timeout > 0:
			ctx = ctx.with_timeout(self.timeout)

		if self.level <= 1:
			return self._dial_serial(host, ips, port, tls_context, ctx)

		if len(ips) == 1:
			# two racers to one address retries a slow first SYN
			ips.append(ips[0])
		return self._dial_parallel(host, ips, port, tls_context, ctx)

	def _dial_serial(self, host, ips, port, tls_context, ctx) -> socket.socket:
		err: Exception | None = None
		for ip in ips:
			try:
				return self._dial_one(host, ip, port, tls_context, ctx)
			except (DialFailed, HandshakeFailed) as e:
				logger.debug("dial %s failed: %s", join_host_port(ip, port), e)
				err = e
		raise err

	def _dial_parallel(self, host, ips, port, tls_context, ctx) -> socket.socket:
		level = min(len(ips), self.level)
		ips = ips[:level]

		race = Context(parent=ctx)
		lane: "queue.Queue[Tuple[socket.socket | None, Exception | None]]" = queue.Queue(maxsize=level)

		def worker(ip: str) -> None:
			try:
				sock = self._dial_one(host, ip, port, tls_context, race)
			except Exception as e:
				lane.put((None, e))
				return
			lane.put((sock, None))

		for ip in ips:
			threading.Thread(target=worker, args=(ip,), name=f"dial-{ip}", daemon=True).start()

		err: Exception | None = None
		for j in range(level):
			try:
				sock, err_j = self._next_result(lane, ctx, host)
			except (Canceled, DeadlineExceeded):
				race.cancel()
				self._start_drainer(lane, level - j)
				raise
			if err_j is None:
				race.cancel()
				self._start_drainer(lane, level - 1 - j)
				return sock
			err = err_j

		raise err

	def _next_result(self, lane, ctx: Context, host: str):
		while True:
			timeout = _POLL_INTERVAL
			remaining = ctx.remaining()
			if remaining is not None:
				timeout = min(timeout, remaining)
			try:
				return lane.get(timeout=timeout)
			except queue.Empty:
				ctx.check(f"dial {host}")

	def _start_drainer(self, lane, count: int) -> None:
		if count <= 0:
			return

		def drain() -> None:
			for _ in range(count):
				sock, _err = lane.get()
				if sock is not None:
					logger.debug("closing losing connection %r", sock)
					_close_quietly(sock)

		threading.Thread(target=drain, name="dial-drainer", daemon=True).start()

	def _dial_one(self, host: str, ip: str, port: int, tls_context, ctx: Context) -> socket.socket:
		sock = self._connect(ip, port, ctx)

		if self.keepalive > 0:
			try:
				set_keepalive(sock, self.keepalive)
			except OSError as e:
				logger.debug("keepalive on %s: %s", join_host_port(ip, port), e)

		if tls_context is None:
			return sock
		return self._handshake(sock, host, ip, port, tls_context, ctx)

	def _connect(self, ip: str, port: int, ctx: Context) -> socket.socket:
		"""Non-blocking connect that gives up as soon as ``ctx`` is done."""
		addr = join_host_port(ip, port)
		family = ip_family(ip)
		sock = socket.socket(family, socket.SOCK_STREAM)
		try:
			if self.local_addr and ip_family(self.local_addr) == family:
				sock.bind((self.local_addr, 0))
			sock.setblocking(False)
			code = sock.connect_ex((ip, port))
			if code not in _CONNECT_PENDING:
				raise OSError(code, os.strerror(code))
			while code != 0:
				ctx.check(f"dial tcp {addr}")
				timeout = _POLL_INTERVAL
				remaining = ctx.remaining()
				if remaining is not None:
					timeout = min(timeout, remaining)
				_, writable, _ = select.select([], [sock], [], timeout)
				if writable:
					code = sock.getsockopt(socket.SOL_SOCKET, socket.SO_ERROR)
					if code:
						raise OSError(code, os.strerror(code))
					break
			sock.setblocking(True)
		except ApiServerError:
			_close_quietly(sock)
			raise
		except OSError as e:
			_close_quietly(sock)
			raise DialFailed(f"dial tcp {addr}: {e}") from e
		return sock

	def _handshake(self, sock, host, ip, port, tls_context, ctx: Context) -> ssl.SSLSocket:
		addr = join_host_port(ip, port)
		session = None
		if self.tls_session_cache is not None:
			session = self.tls_session_cache.get(host, tls_context)

		timeout = self.handshake_timeout or None
		remaining = ctx.remaining()
		if remaining is not None:
			timeout = remaining if timeout is None else min(timeout, remaining)

		tls_sock = None
		try:
			sock.settimeout(timeout)
			tls_sock = tls_context.wrap_socket(
				sock,
				server_hostname=host,
				do_handshake_on_connect=False,
				session=session,
			)
			tls_sock.do_handshake()
			tls_sock.settimeout(None)
		except TimeoutError as e:
			_close_quietly(tls_sock or sock)
			if ctx.expired():
				raise DeadlineExceeded(f"tls handshake with {addr}: timed out") from e
			# handshake_timeout ran out, not the caller's deadline
			raise HandshakeFailed(f"tls handshake with {addr}: timed out") from e
		except (ssl.SSLError, OSError, ValueError) as e:
			_close_quietly(tls_sock or sock)
			raise HandshakeFailed(f"tls handshake with {addr}: {e}") from e

		if self.tls_session_cache is not None and tls_sock.session is not None:
			self.tls_session_cache.put(host, tls_context, tls_sock.session)
		logger.debug("tls handshake with %s (%s) done, resumed=%s", addr, host, tls_sock.session_reused)
		return tls_sock


def new_tls_context() -> ssl.SSLContext:
	"""Client context that accepts whatever certificate the upstream presents."""
	context = ssl.create_default_context()
	context.check_hostname = False
	context.verify_mode = ssl.CERT_NONE
	context.set_alpn_protocols(["http/1.1"])
	return context
