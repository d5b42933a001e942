"""requests transport whose connections are opened by a TCPDialer.

urllib3 normally creates sockets itself; here every pooled connection asks
the dialer instead, so upstream traffic goes through the resolver's static
hosts and DNS cache, the intranet guard and the racing connect logic. TLS is
completed by the dialer as well, so both schemes use plain urllib3
connection pools.
"""

import logging
import ssl

import requests
from requests.adapters import HTTPAdapter
from urllib3.connection import HTTPConnection
from urllib3.connectionpool import HTTPConnectionPool
from urllib3.exceptions import ConnectTimeoutError, NewConnectionError
from urllib3.poolmanager import SSL_KEYWORDS, PoolManager

from apiserver.context import Context
from apiserver.dialer import TCPDialer, new_tls_context
from apiserver.errors import ApiServerError, DeadlineExceeded
from apiserver.helpers import join_host_port

logger = logging.getLogger(__name__)


class DialerHTTPConnection(HTTPConnection):
	def __init__(self, *args, dialer: TCPDialer | None = None, tls_context: ssl.SSLContext | None = None, **kwargs):
		for key in SSL_KEYWORDS:
			kwargs.pop(key, None)
		super().__init__(*args, **kwargs)
		self.dialer = dialer
		self.tls_context = tls_context

	def _new_conn(self):
		timeout = self.timeout if isinstance(self.timeout, (int, float)) else None
		ctx = Context.with_seconds(timeout)
		address = join_host_port(self.host, self.port)
		try:
			return self.dialer.dial("tcp", address, tls_context=self.tls_context, ctx=ctx)
		except DeadlineExceeded as e:
			raise ConnectTimeoutError(self, f"Connection to {self.host} timed out. (connect timeout={timeout})") from e
		except ApiServerError as e:
			raise NewConnectionError(self, f"Failed to establish a new connection: {e}") from e


class DialerHTTPConnectionPool(HTTPConnectionPool):
	ConnectionCls = DialerHTTPConnection


class DialerHTTPSConnectionPool(HTTPConnectionPool):
	scheme = "https"
	ConnectionCls = DialerHTTPConnection


class DialerPoolManager(PoolManager):
	def __init__(self, dialer: TCPDialer, tls_context: ssl.SSLContext, num_pools: int = 10, headers=None, **connection_pool_kw):
		super().__init__(num_pools=num_pools, headers=headers, **connection_pool_kw)
		self.dialer = dialer
		self.tls_context = tls_context
		self.pool_classes_by_scheme = {
			"http": DialerHTTPConnectionPool,
			"https": DialerHTTPSConnectionPool,
		}

	def _new_pool(self, scheme, host, port, request_context=None):
		pool_cls = self.pool_classes_by_scheme[scheme]
		if request_context is None:
			request_context = self.connection_pool_kw.copy()

		kwargs = {
			key: value
			for key, value in request_context.items()
			if key not in ("scheme", "host", "port") and key not in SSL_KEYWORDS
		}
		kwargs["dialer"] = self.dialer
		kwargs["tls_context"] = self.tls_context if scheme == "https" else None
		logger.debug("new %s pool for %s", scheme, join_host_port(host, port))
		return pool_cls(host, port, **kwargs)


class DialerAdapter(HTTPAdapter):
	"""HTTPAdapter that mounts a DialerPoolManager."""

	def __init__(self, dialer: TCPDialer, tls_context: ssl.SSLContext | None = None, **kwargs):
		self.dialer = dialer
		self.tls_context = tls_context or new_tls_context()
		super().__init__(**kwargs)

	def init_poolmanager(self, connections, maxsize, block=False, **pool_kwargs):
		self._pool_connections = connections
		self._pool_maxsize = maxsize
		self._pool_block = block
		self.poolmanager = DialerPoolManager(
			self.dialer,
			self.tls_context,
			num_pools=connections,
			maxsize=maxsize,
			block=block,
			**pool_kwargs,
		)


def new_session(dialer: TCPDialer, pool_connections: int = 10, pool_maxsize: int = 100) -> requests.Session:
	"""Session shared by every handler; proxies from the environment are ignored."""
	session = requests.Session()
	session.trust_env = False
	adapter = DialerAdapter(dialer, pool_connections=pool_connections, pool_maxsize=pool_maxsize)
	session.mount("http://", adapter)
	session.mount("https://", adapter)
	return session
