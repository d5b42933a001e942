"""Cache, single-flight, fetch, extract, cache-fill.

Every handler owns a LookupPipeline. A lookup first consults the handler's
LRU cache; on a miss the first caller for a fetch key performs the upstream
GET while concurrent callers for the same key wait for its answer.
"""

import io
import logging
from dataclasses import dataclass
from typing import Any, Callable, Dict

import requests
import urllib3.exceptions

from apiserver.context import Context
from apiserver.errors import ApiServerError, DeadlineExceeded, UpstreamHTTPError
from apiserver.helpers import copy_buffer
from apiserver.lrucache import LRUCache
from apiserver.metrics import Metrics
from apiserver.singleflight import Group

logger = logging.getLogger(__name__)

# Upstream bodies larger than this are rejected.
MAX_BODY_SIZE = 8 * 1024 * 1024


@dataclass(frozen=True)
class UpstreamResponse:
	status_code: int
	body: bytes

	@property
	def text(self) -> str:
		return self.body.decode("utf-8", errors="replace")


def substitute(template: str, value: str) -> str:
	"""Replace the first ``%s`` of a URL template."""
	return template.replace("%s", value, 1)


def _find_api_error(exc: BaseException) -> ApiServerError | None:
	"""Dig the dialer/resolver error out of requests' and urllib3's wrappers."""
	seen = set()
	stack = [exc]
	while stack:
		current = stack.pop()
		if current is None or id(current) in seen:
			continue
		seen.add(id(current))
		if isinstance(current, ApiServerError):
			return current
		stack.append(current.__cause__)
		stack.append(current.__context__)
		stack.append(getattr(current, "reason", None))
		stack.extend(arg for arg in current.args if isinstance(arg, BaseException))
	return None


def translate_error(exc: BaseException, url: str) -> ApiServerError:
	cause = _find_api_error(exc)
	if cause is not None:
		return cause
	if isinstance(exc, (requests.Timeout, urllib3.exceptions.TimeoutError)):
		return DeadlineExceeded(f"GET {url}: {exc}")
	return UpstreamHTTPError(f"GET {url}: {exc}")


class _LimitedWriter:
	def __init__(self, limit: int) -> None:
		self.buf = io.BytesIO()
		self.limit = limit

	def write(self, data) -> int:
		if self.buf.tell() + len(data) > self.limit:
			raise UpstreamHTTPError(f"upstream body larger than {self.limit} bytes")
		return self.buf.write(data)


class LookupPipeline:
	def __init__(
		self,
		name: str,
		cache: LRUCache,
		group: Group,
		session: requests.Session,
		ttl: float,
		metrics: Metrics | None = None,
	) -> None:
		self.name = name
		self.cache = cache
		self.group = group
		self.session = session
		self.ttl = ttl
		self.metrics = metrics or Metrics()

	def lookup(
		self,
		cache_key: str,
		fetch_key: str,
		url: str,
		headers: Dict[str, str],
		parse: Callable[[UpstreamResponse], Any],
		ctx: Context | None = None,
	) -> Any:
		"""Return the parsed answer for ``cache_key``, fetching ``url`` at most once.

		``parse`` turns the upstream response into the value that gets cached.
		Errors, from the fetch or from ``parse``, are raised and never cached.
		"""
		ctx = ctx or Context.background()

		value, ok = self.cache.get_not_stale(cache_key)
		if ok:
			self.metrics.record_lookup(self.name, "cache_hit")
			return value
		self.metrics.record_lookup(self.name, "cache_miss")

		def fetch_once() -> UpstreamResponse:
			try:
				return self.fetch(url, headers, ctx)
			finally:
				self.group.forget(fetch_key)

		try:
			# the response is shared, each caller extracts its own answer
			response, shared = self.group.do(fetch_key, fetch_once, ctx)
			value = parse(response)
			self.cache.set(cache_key, value, self.cache.clock() + self.ttl)
		except ApiServerError as e:
			self.metrics.record_lookup(self.name, "error")
			logger.info("%s lookup %r failed: %s: %s", self.name, cache_key, e.kind, e)
			raise

		self.metrics.record_lookup(self.name, "shared" if shared else "fetch")
		return value

	def fetch(self, url: str, headers: Dict[str, str], ctx: Context) -> UpstreamResponse:
		"""GET ``url`` and read the whole body, honoring ``ctx``."""
		ctx.check(f"GET {url}")
		try:
			resp = self.session.get(url, headers=headers, timeout=ctx.remaining(), stream=True)
		except requests.RequestException as e:
			raise translate_error(e, url) from e

		try:
			if resp.status_code >= 400:
				raise UpstreamHTTPError(f"GET {url}: {resp.status_code} {resp.reason}", status_code=resp.status_code)

			resp.raw.decode_content = True
			body = _LimitedWriter(MAX_BODY_SIZE)
			copy_buffer(body, resp.raw, check=lambda: ctx.check(f"GET {url}"))
		except (requests.RequestException, urllib3.exceptions.HTTPError, OSError) as e:
			raise translate_error(e, url) from e
		finally:
			resp.close()

		logger.info("%s GET %s returned %d (%d bytes)", self.name, url, resp.status_code, body.buf.tell())
		return UpstreamResponse(resp.status_code, body.buf.getvalue())
