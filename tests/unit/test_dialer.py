import socket
import ssl
import threading
import time
from unittest.mock import MagicMock, patch

import pytest

from apiserver.context import Context
from apiserver.dialer import TCPDialer, TLSSessionCache, new_tls_context, order_candidates
from apiserver.errors import Canceled, DeadlineExceeded, DialFailed, HandshakeFailed, InvalidAddress
from apiserver.resolver import Resolver


def _no_lookup(name):
	raise AssertionError(f"unexpected lookup of {name!r}")


@pytest.fixture
def resolver():
	res = Resolver(dns_cache=None, lookup=_no_lookup)
	res.add_static_record("intra.test", "10.0.0.1")
	res.add_static_record("dual.test", "2001:db8::1", "1.1.1.1")
	res.add_static_record("dual6.test", "1.1.1.1", "2001:db8::1")
	res.add_static_record("v6only.test", "2001:db8::1")
	res.add_static_record("race.test", "198.51.100.1", "198.51.100.2", "198.51.100.3")
	res.add_static_record("localhost.test", "127.0.0.1")
	res.add_static_record("upstream.test", "127.0.0.1")
	yield res
	res.close()


def _wait_until(predicate, timeout: float = 2.0) -> bool:
	deadline = time.monotonic() + timeout
	while time.monotonic() < deadline:
		if predicate():
			return True
		time.sleep(0.01)
	return predicate()


def test_order_candidates_swaps_only_front_and_back():
	assert order_candidates(["2001:db8::1", "2001:db8::2", "1.1.1.1"]) == ["1.1.1.1", "2001:db8::2", "2001:db8::1"]
	assert order_candidates(["1.1.1.1", "2001:db8::1"], prefer_ipv6=True) == ["2001:db8::1", "1.1.1.1"]
	assert order_candidates(["2001:db8::1", "1.1.1.1", "2001:db8::2"]) == ["2001:db8::1", "1.1.1.1", "2001:db8::2"]
	assert order_candidates(["1.1.1.1"]) == ["1.1.1.1"]


def test_intranet_address_is_rejected_before_connecting(resolver):
	dialer = TCPDialer(resolver, reject_intranet=True)
	with patch.object(TCPDialer, "_connect") as connect:
		with pytest.raises(InvalidAddress, match="intranet address is rejected: 10.0.0.1"):
			dialer.dial("tcp", "intra.test:80")
	connect.assert_not_called()


def test_intranet_address_allowed_when_guard_is_off(resolver):
	dialer = TCPDialer(resolver)
	sock = MagicMock()
	with patch.object(TCPDialer, "_connect", return_value=sock) as connect:
		assert dialer.dial("tcp", "intra.test:80") is sock
	connect.assert_called_once()
	assert connect.call_args.args[:2] == ("10.0.0.1", 80)


@pytest.mark.parametrize(
	"host, prefer_ipv6, first",
	[
		("dual.test", False, "1.1.1.1"),
		("dual6.test", True, "2001:db8::1"),
	],
)
def test_preferred_family_is_dialed_first(resolver, host, prefer_ipv6, first):
	dialer = TCPDialer(resolver, prefer_ipv6=prefer_ipv6)
	attempts = []

	def refuse(ip, port, ctx):
		attempts.append(ip)
		raise DialFailed(f"dial tcp {ip}: refused")

	with patch.object(TCPDialer, "_connect", side_effect=refuse):
		with pytest.raises(DialFailed):
			dialer.dial("tcp", f"{host}:443")

	assert attempts[0] == first
	assert len(attempts) == 2


def test_network_filters_family(resolver):
	dialer = TCPDialer(resolver)
	with pytest.raises(InvalidAddress, match="invalid DNS record"):
		dialer.dial("tcp4", "v6only.test:80")


@pytest.mark.parametrize("network, address", [("udp", "intra.test:53"), ("tcp", "intra.test"), ("tcp", "intra.test:port")])
def test_bad_network_or_address(resolver, network, address):
	with pytest.raises(InvalidAddress):
		TCPDialer(resolver).dial(network, address)


def test_serial_dial_raises_last_error(resolver):
	dialer = TCPDialer(resolver, level=1)
	errors = {
		"198.51.100.1": DialFailed("first"),
		"198.51.100.2": DialFailed("second"),
		"198.51.100.3": DialFailed("third"),
	}

	def connect(ip, port, ctx):
		raise errors[ip]

	with patch.object(TCPDialer, "_connect", side_effect=connect):
		with pytest.raises(DialFailed, match="third"):
			dialer.dial("tcp", "race.test:80")


def test_serial_dial_falls_through_to_working_address(resolver):
	dialer = TCPDialer(resolver, level=0)
	good = MagicMock()

	def connect(ip, port, ctx):
		if ip != "198.51.100.3":
			raise DialFailed(ip)
		return good

	with patch.object(TCPDialer, "_connect", side_effect=connect):
		assert dialer.dial("tcp", "race.test:80") is good


def test_race_returns_first_connection_and_closes_losers(resolver):
	dialer = TCPDialer(resolver, level=3)
	delays = {"198.51.100.1": 0.0, "198.51.100.2": 0.1, "198.51.100.3": 0.2}
	socks = {}

	def dial_one(host, ip, port, tls_context, ctx):
		time.sleep(delays[ip])
		sock = MagicMock(name=ip)
		socks[ip] = sock
		return sock

	with patch.object(TCPDialer, "_dial_one", side_effect=dial_one):
		sock = dialer.dial("tcp", "race.test:80")

	assert sock is socks["198.51.100.1"]
	assert _wait_until(lambda: len(socks) == 3)
	assert _wait_until(lambda: socks["198.51.100.2"].close.called and socks["198.51.100.3"].close.called)
	sock.close.assert_not_called()


def test_race_skips_failures(resolver):
	dialer = TCPDialer(resolver, level=3)
	good = MagicMock()

	def dial_one(host, ip, port, tls_context, ctx):
		if ip == "198.51.100.2":
			time.sleep(0.05)
			return good
		raise DialFailed(ip)

	with patch.object(TCPDialer, "_dial_one", side_effect=dial_one):
		assert dialer.dial("tcp", "race.test:80") is good


def test_race_raises_when_all_fail(resolver):
	dialer = TCPDialer(resolver, level=2)
	with patch.object(TCPDialer, "_dial_one", side_effect=DialFailed("refused")):
		with pytest.raises(DialFailed):
			dialer.dial("tcp", "race.test:80")


def test_single_address_is_raced_against_itself(resolver):
	dialer = TCPDialer(resolver, level=2)
	seen = []
	lock = threading.Lock()

	def dial_one(host, ip, port, tls_context, ctx):
		with lock:
			seen.append(ip)
		return MagicMock()

	with patch.object(TCPDialer, "_dial_one", side_effect=dial_one):
		dialer.dial("tcp", "localhost.test:80")

	assert _wait_until(lambda: len(seen) == 2)
	assert seen == ["127.0.0.1", "127.0.0.1"]


def test_cancel_stops_race_and_drains_late_connections(resolver):
	dialer = TCPDialer(resolver, level=2)
	socks = []

	def dial_one(host, ip, port, tls_context, ctx):
		time.sleep(0.3)
		sock = MagicMock()
		socks.append(sock)
		return sock

	ctx = Context()
	threading.Timer(0.05, ctx.cancel).start()
	start = time.monotonic()
	with patch.object(TCPDialer, "_dial_one", side_effect=dial_one):
		with pytest.raises(Canceled):
			dialer.dial("tcp", "race.test:80", ctx=ctx)
		assert time.monotonic() - start < 0.25
		assert _wait_until(lambda: len(socks) == 2 and all(s.close.called for s in socks))


def test_dial_timeout_bounds_connect(resolver):
	dialer = TCPDialer(resolver, timeout=0.1)

	def hang(ip, port, ctx):
		while True:
			ctx.check("dial")
			time.sleep(0.01)

	with patch.object(TCPDialer, "_connect", side_effect=hang):
		with pytest.raises(DeadlineExceeded):
			dialer.dial("tcp", "intra.test:80")


def test_caller_deadline_bounds_connect(resolver):
	dialer = TCPDialer(resolver, timeout=30)

	def hang(ip, port, ctx):
		while True:
			ctx.check("dial")
			time.sleep(0.01)

	start = time.monotonic()
	with patch.object(TCPDialer, "_connect", side_effect=hang):
		with pytest.raises(DeadlineExceeded):
			dialer.dial("tcp", "intra.test:80", ctx=Context.with_seconds(0.1))
	assert time.monotonic() - start < 2


def test_real_connect_sets_keepalive(resolver):
	listener = socket.create_server(("127.0.0.1", 0))
	port = listener.getsockname()[1]
	dialer = TCPDialer(resolver, keepalive=30, timeout=5)
	try:
		sock = dialer.dial("tcp", f"localhost.test:{port}")
		try:
			assert sock.getpeername() == ("127.0.0.1", port)
			assert sock.getsockopt(socket.SOL_SOCKET, socket.SO_KEEPALIVE) != 0
		finally:
			sock.close()
	finally:
		listener.close()


def test_refused_connect_is_dial_failed(resolver):
	probe = socket.create_server(("127.0.0.1", 0))
	port = probe.getsockname()[1]
	probe.close()

	with pytest.raises(DialFailed):
		TCPDialer(resolver, timeout=5).dial("tcp", f"localhost.test:{port}")


def test_tls_session_cache_is_bound_to_its_context():
	cache = TLSSessionCache(4)
	context = new_tls_context()
	session = MagicMock(spec=ssl.SSLSession)

	assert cache.get("example.com", context) is None
	cache.put("example.com", context, session)
	assert cache.get("example.com", context) is session
	assert cache.get("example.com", new_tls_context()) is None
	assert len(cache) == 1


def test_tls_dial_resumes_cached_session(resolver, tls_upstream):
	cache = TLSSessionCache(4)
	context = new_tls_context()
	dialer = TCPDialer(resolver, timeout=5, tls_session_cache=cache)
	address = f"upstream.test:{tls_upstream.port}"

	first = dialer.dial("tcp", address, tls_context=context)
	try:
		assert isinstance(first, ssl.SSLSocket)
		assert first.server_hostname == "upstream.test"
		assert not first.session_reused
	finally:
		first.close()
	assert len(cache) == 1

	second = dialer.dial("tcp", address, tls_context=context)
	try:
		assert second.session_reused
	finally:
		second.close()


def test_plain_tcp_peer_fails_handshake(resolver):
	listener = socket.create_server(("127.0.0.1", 0))
	port = listener.getsockname()[1]

	def answer_in_plain_http():
		conn, _ = listener.accept()
		with conn:
			conn.recv(4096)
			conn.sendall(b"HTTP/1.1 400 Bad Request\r\nContent-Length: 0\r\n\r\n")

	peer = threading.Thread(target=answer_in_plain_http, daemon=True)
	peer.start()
	try:
		with pytest.raises(HandshakeFailed):
			TCPDialer(resolver, timeout=5).dial("tcp", f"localhost.test:{port}", tls_context=new_tls_context())
	finally:
		peer.join(5)
		listener.close()


def test_handshake_timeout_moves_to_next_address(resolver, tls_upstream):
	# accepts TCP in the kernel backlog but never answers the ClientHello
	silent = socket.create_server(("127.0.0.1", 0))
	ports = {"198.51.100.1": silent.getsockname()[1], "198.51.100.2": tls_upstream.port}
	resolver.add_static_record("two.test", "198.51.100.1", "198.51.100.2")
	dialer = TCPDialer(resolver, timeout=10, handshake_timeout=0.3)
	real_connect = TCPDialer._connect
	attempts = []

	def connect(ip, port, ctx):
		attempts.append(ip)
		return real_connect(dialer, "127.0.0.1", ports[ip], ctx)

	try:
		with patch.object(TCPDialer, "_connect", side_effect=connect):
			sock = dialer.dial("tcp", "two.test:443", tls_context=new_tls_context(), ctx=Context.with_seconds(10))
		try:
			assert isinstance(sock, ssl.SSLSocket)
			assert sock.getpeername()[1] == tls_upstream.port
		finally:
			sock.close()
	finally:
		silent.close()
	assert attempts == ["198.51.100.1", "198.51.100.2"]


def test_handshake_past_caller_deadline_is_deadline_exceeded(resolver):
	silent = socket.create_server(("127.0.0.1", 0))
	port = silent.getsockname()[1]
	dialer = TCPDialer(resolver, timeout=10, handshake_timeout=10)
	try:
		with pytest.raises(DeadlineExceeded):
			dialer.dial("tcp", f"localhost.test:{port}", tls_context=new_tls_context(), ctx=Context.with_seconds(0.3))
	finally:
		silent.close()
