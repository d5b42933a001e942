"""Threaded WSGI server with accept-time socket tuning and graceful shutdown."""

import logging
import signal
import threading
from abc import ABC, abstractmethod

from werkzeug.serving import ThreadedWSGIServer
from werkzeug.wsgi import ClosingIterator

from apiserver.helpers import tune_accepted_socket

logger = logging.getLogger(__name__)


class Quiescer(ABC):
	@abstractmethod
	def begin_quiescing(self) -> None:
		"""Stop accepting new inbound connections."""

	@abstractmethod
	def await_drain(self, timeout: float) -> bool:
		"""Wait for in-flight requests; False when ``timeout`` ran out first."""


class InFlightTracker:
	"""WSGI middleware counting requests whose responses are not closed yet."""

	def __init__(self, app) -> None:
		self.app = app
		self._cond = threading.Condition()
		self.active = 0

	def __call__(self, environ, start_response):
		with self._cond:
			self.active += 1
		try:
			return ClosingIterator(self.app(environ, start_response), [self._leave])
		except BaseException:
			self._leave()
			raise

	def _leave(self) -> None:
		with self._cond:
			self.active -= 1
			if self.active == 0:
				self._cond.notify_all()

	def wait_idle(self, timeout: float) -> bool:
		with self._cond:
			return self._cond.wait_for(lambda: self.active == 0, timeout=timeout)


class TunedWSGIServer(ThreadedWSGIServer):
	def get_request(self):
		conn, addr = super().get_request()
		try:
			tune_accepted_socket(conn)
		except OSError as e:
			logger.debug("tune accepted socket from %s: %s", addr, e)
		return conn, addr


class GracefulServer(Quiescer):
	def __init__(self, host: str, port: int, app) -> None:
		self.tracker = InFlightTracker(app)
		self.server = TunedWSGIServer(host, port, self.tracker)
		self._serving = threading.Event()

	@property
	def server_address(self):
		return self.server.server_address

	def serve_forever(self) -> None:
		self._serving.set()
		try:
			self.server.serve_forever()
		finally:
			self._serving.clear()

	def begin_quiescing(self) -> None:
		if self._serving.is_set():
			self.server.shutdown()
		self.server.server_close()

	def await_drain(self, timeout: float) -> bool:
		return self.tracker.wait_idle(timeout)


def serve(app, host: str, port: int, graceful_timeout: float) -> None:
	"""Serve until SIGTERM/SIGINT/SIGHUP, then drain for up to ``graceful_timeout`` seconds."""
	server = GracefulServer(host, port, app)
	stopping = threading.Event()

	def on_signal(signum, _frame):
		if stopping.is_set():
			return
		stopping.set()
		logger.warning("apiserver got %s, start graceful shutdown...", signal.Signals(signum).name)
		# shutdown() blocks until serve_forever returns, so not from this thread
		threading.Thread(target=server.begin_quiescing, name="quiesce", daemon=True).start()

	for name in ("SIGTERM", "SIGINT", "SIGHUP"):
		if hasattr(signal, name):
			signal.signal(getattr(signal, name), on_signal)

	logger.info("apiserver listening on %s:%s", *server.server_address[:2])
	server.serve_forever()

	if not server.await_drain(graceful_timeout):
		logger.warning("apiserver in-flight requests still running after %ss", graceful_timeout)
	logger.info("apiserver server shutdown.")
