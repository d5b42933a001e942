import ipaddress
import logging
import socket
import time
from concurrent.futures import ThreadPoolExecutor
from concurrent.futures import TimeoutError as FutureTimeoutError
from dataclasses import dataclass
from typing import Callable, Dict, Iterable, List, Tuple

from apiserver.context import Context
from apiserver.errors import InvariantViolation, ResolveFailed
from apiserver.lrucache import LRUCache

logger = logging.getLogger(__name__)

# Longest CNAME chain followed through the DNS cache.
MAX_CNAME_HOPS = 8

_POLL_INTERVAL = 0.05


@dataclass(frozen=True)
class IPRecord:
	ips: Tuple[str, ...]


@dataclass(frozen=True)
class CNAMERecord:
	target: str


def system_lookup(name: str) -> Tuple[str, List[str]]:
	"""Resolve ``name`` with getaddrinfo, returning (canonical name, ips).

	Addresses keep the order the system resolver returned, duplicates removed.
	"""
	try:
		infos = socket.getaddrinfo(name, None, type=socket.SOCK_STREAM, flags=socket.AI_CANONNAME)
	except (socket.gaierror, UnicodeError) as e:
		raise ResolveFailed(f"lookup {name}: {e}") from e

	canonname = ""
	ips: List[str] = []
	for _family, _type, _proto, canon, sockaddr in infos:
		if canon and not canonname:
			canonname = canon
		ip = sockaddr[0].split("%", 1)[0]
		if ip not in ips:
			ips.append(ip)
	return canonname, ips


def _is_ip_literal(name: str) -> bool:
	try:
		ipaddress.ip_address(name)
	except ValueError:
		return False
	return True


class Resolver:
	"""Name to IP resolution with static overrides and a positive TTL cache.

	Lookup order: static hosts, fresh DNS cache entries (following CNAMEs),
	IP literals, then the system resolver.
	"""

	def __init__(
		self,
		dns_cache: LRUCache | None = None,
		dns_ttl: float = 600.0,
		lookup: Callable[[str], Tuple[str, List[str]]] = system_lookup,
		max_workers: int = 8,
	) -> None:
		self.dns_cache = dns_cache
		self.dns_ttl = dns_ttl
		self.lookup = lookup
		self._static: Dict[str, List[str]] = {}
		self._executor = ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix="resolver")

	def lookup_ip(self, name: str, ctx: Context | None = None) -> List[str]:
		"""Return the ordered addresses for ``name``.

		The returned list is a copy; callers may reorder it.
		"""
		ips = self._static.get(name.lower())
		if ips is not None:
			return list(ips)
		return self._lookup_ip(name, ctx or Context.background(), 0)

	def _lookup_ip(self, name: str, ctx: Context, hops: int) -> List[str]:
		if self.dns_cache is not None:
			record, ok = self.dns_cache.get_not_stale(name)
			if ok:
				if isinstance(record, IPRecord):
					return list(record.ips)
				if isinstance(record, CNAMERecord):
					if hops >= MAX_CNAME_HOPS:
						raise ResolveFailed(f"lookup {name}: CNAME chain longer than {MAX_CNAME_HOPS}")
					return self._lookup_ip(record.target, ctx, hops + 1)
				raise InvariantViolation(f"lookup {name}: cannot use cached {type(record).__name__} {record!r}")

		if _is_ip_literal(name):
			return [name]

		ctx.check(f"lookup {name}")
		future = self._executor.submit(self.lookup, name)
		while True:
			timeout = _POLL_INTERVAL
			remaining = ctx.remaining()
			if remaining is not None:
				timeout = min(timeout, remaining)
			try:
				canonname, ips = future.result(timeout=timeout)
				break
			except FutureTimeoutError:
				if ctx.done():
					future.cancel()
					raise ctx.err(f"lookup {name}")

		if not ips:
			raise ResolveFailed(f"lookup {name}: no addresses")

		if self.dns_ttl > 0 and self.dns_cache is not None:
			expires = self.dns_cache.clock() + self.dns_ttl
			canonname = canonname.rstrip(".")
			if canonname and canonname.lower() != name.lower():
				self.dns_cache.set(name, CNAMERecord(canonname), expires)
				self.dns_cache.set(canonname, IPRecord(tuple(ips)), expires)
			else:
				self.dns_cache.set(name, IPRecord(tuple(ips)), expires)

		logger.debug("lookup_ip(%r) return %s", name, ips)
		return ips

	def forget(self, name: str) -> None:
		if self.dns_cache is not None:
			self.dns_cache.delete(name)

	def add_static_hosts(self, reader: Iterable[str]) -> int:
		"""Load hosts(5)-style lines, skipping comments and malformed lines.

		Returns the number of names added.
		"""
		added = 0
		for line in reader:
			line = line.split("#", 1)[0].strip()
			if not line:
				continue

			words = line.split()
			if len(words) < 2:
				continue

			try:
				ip = str(ipaddress.ip_address(words[0]))
			except ValueError:
				continue

			for name in words[1:]:
				self._static[name.lower()] = [ip]
				added += 1

		logger.info("loaded %d static host names", added)
		return added

	def add_static_record(self, name: str, *ips: str) -> None:
		if not ips:
			raise ValueError(f"static record {name!r} needs at least one address")
		self._static[name.lower()] = [str(ipaddress.ip_address(ip)) for ip in ips]

	def is_static(self, name: str) -> bool:
		return name.lower() in self._static

	def close(self) -> None:
		self._executor.shutdown(wait=False)


def new_resolver(dns_ttl: float, cache_size: int = 8 * 1024) -> Resolver:
	return Resolver(dns_cache=LRUCache(cache_size, clock=time.monotonic), dns_ttl=dns_ttl)
