import ssl
import threading
import time
from http.server import BaseHTTPRequestHandler, ThreadingHTTPServer
from pathlib import Path

import pytest

from apiserver.app import create_app
from apiserver.config import Settings
from apiserver.lrucache import LRUCache
from apiserver.resolver import Resolver

DATA_DIR = Path(__file__).parent / "data"

UPSTREAM_HOST = "upstream.test"

SEARCH_REGEX = r'details\?id=([\w.]+)" title="([^"]+)"'
IPINFO_REGEX = r'"city":\s*"([^"]*)"[\s\S]*?"org":\s*"([^"]*)"'

WHATSAPP_PAGE = """<html><body>
<a href="/store/apps/details?id=com.whatsapp.w4b" title="WhatsApp Business">x</a>
<a href="/store/apps/details?id=com.whatsapp" title="WhatsApp Messenger">x</a>
<a href="/store/apps/details?id=com.fake.whatsapp" title="WhatsApp Messenger">x</a>
</body></html>"""


@pytest.fixture
def whatsapp_page():
	return WHATSAPP_PAGE


class _UpstreamHandler(BaseHTTPRequestHandler):
	protocol_version = "HTTP/1.1"

	def do_GET(self):
		upstream = self.server.upstream
		upstream.record(self.path, dict(self.headers))
		if upstream.delay:
			time.sleep(upstream.delay)

		status, body = upstream.pages.get(self.path, upstream.default)
		data = body.encode("utf-8")
		self.send_response(status)
		self.send_header("Content-Type", "text/html; charset=utf-8")
		self.send_header("Content-Length", str(len(data)))
		self.end_headers()
		self.wfile.write(data)

	def log_message(self, format, *args):
		pass


class FakeUpstream:
	"""Local HTTP server that records every GET it answers."""

	def __init__(self, server_context: ssl.SSLContext | None = None) -> None:
		self.pages = {}
		self.default = (404, "not found")
		self.delay = 0.0
		self.requests = []
		self._lock = threading.Lock()
		self.httpd = ThreadingHTTPServer(("127.0.0.1", 0), _UpstreamHandler)
		self.httpd.daemon_threads = True
		self.httpd.upstream = self
		if server_context is not None:
			# handshakes run in accept() on the serving thread
			self.httpd.socket = server_context.wrap_socket(self.httpd.socket, server_side=True)
		self.port = self.httpd.server_address[1]
		self._thread = threading.Thread(target=self.httpd.serve_forever, daemon=True)

	def start(self) -> "FakeUpstream":
		self._thread.start()
		return self

	def stop(self) -> None:
		self.httpd.shutdown()
		self.httpd.server_close()

	def set(self, path: str, body: str, status: int = 200) -> None:
		self.pages[path] = (status, body)

	def record(self, path: str, headers: dict) -> None:
		with self._lock:
			self.requests.append((path, headers))

	def count(self, prefix: str = "/") -> int:
		with self._lock:
			return sum(1 for path, _ in self.requests if path.startswith(prefix))

	def headers_for(self, prefix: str) -> dict:
		with self._lock:
			for path, headers in self.requests:
				if path.startswith(prefix):
					return headers
		raise KeyError(prefix)


@pytest.fixture
def upstream():
	server = FakeUpstream().start()
	yield server
	server.stop()


def server_tls_context() -> ssl.SSLContext:
	"""Server side context for upstream.test, capped at TLS 1.2 so sessions exist right after the handshake."""
	context = ssl.SSLContext(ssl.PROTOCOL_TLS_SERVER)
	context.maximum_version = ssl.TLSVersion.TLSv1_2
	context.load_cert_chain(DATA_DIR / "upstream.pem", DATA_DIR / "upstream.key")
	return context


@pytest.fixture
def tls_upstream():
	server = FakeUpstream(server_tls_context()).start()
	yield server
	server.stop()


def _no_system_lookup(name):
	raise AssertionError(f"system resolver consulted for {name!r}")


@pytest.fixture
def resolver():
	res = Resolver(dns_cache=LRUCache(64), dns_ttl=60, lookup=_no_system_lookup)
	res.add_static_record(UPSTREAM_HOST, "127.0.0.1")
	yield res
	res.close()


@pytest.fixture
def settings(upstream):
	base = f"http://{UPSTREAM_HOST}:{upstream.port}"
	return Settings(
		ipinfo_url=base + "/ip/%s",
		ipinfo_regex=IPINFO_REGEX,
		ipinfo_cache_ttl=60,
		googleplay_search_url=base + "/search?q=%s",
		googleplay_search_regex=SEARCH_REGEX,
		googleplay_search_ttl=60,
		dial_timeout=5.0,
		upstream_timeout=5.0,
		reject_intranet=False,
	)


@pytest.fixture
def app(settings, resolver):
	application = create_app(settings, resolver=resolver)
	application.config["TESTING"] = True
	yield application
	application.extensions["apiserver"]["session"].close()


@pytest.fixture
def client(app):
	return app.test_client()
