# config.py

import os
import re
from dataclasses import dataclass
from pathlib import Path

from apiserver.errors import ConfigInvalid
from apiserver.helpers import split_host_port


def _env_bool(name: str, default: bool = False) -> bool:
	"""Read a boolean value from environment variables."""
	raw = os.getenv(name)
	if raw is None:
		return default
	return raw.strip().lower() in ("1", "true", "yes", "on")


def _env_int(name: str, default: int) -> int:
	"""Read an integer value from environment variables."""
	raw = os.getenv(name)
	if raw is None:
		return default
	try:
		return int(raw)
	except ValueError:
		return default


def _env_float(name: str, default: float) -> float:
	raw = os.getenv(name)
	if raw is None:
		return default
	try:
		return float(raw)
	except ValueError:
		return default


def _env_path(name: str) -> Path | None:
	raw = os.getenv(name)
	if not raw:
		return None
	return Path(raw)


DEFAULT_IPINFO_URL = "https://ipinfo.io/%s"
DEFAULT_IPINFO_REGEX = r'"city":\s*"([^"]*)"[\s\S]*?"org":\s*"([^"]*)"'

DEFAULT_GOOGLEPLAY_SEARCH_URL = "https://play.google.com/store/search?q=%s&c=apps"
DEFAULT_GOOGLEPLAY_SEARCH_REGEX = r'href="/store/apps/details\?id=([A-Za-z0-9_.]+)"[^>]*?aria-label="([^"]+)"'


@dataclass(frozen=True)
class Settings:
	"""Central application settings loaded from environment variables."""

	# Listener
	listen_addr: str = os.getenv("APISERVER_LISTEN_ADDR", "0.0.0.0:8080")
	graceful_timeout: int = _env_int("APISERVER_GRACEFUL_TIMEOUT", 300)
	log_level: str = os.getenv("APISERVER_LOG_LEVEL", "INFO")
	hosts_file: Path | None = _env_path("APISERVER_HOSTS_FILE")

	# Ipinfo upstream
	ipinfo_url: str = os.getenv("APISERVER_IPINFO_URL", DEFAULT_IPINFO_URL)
	ipinfo_regex: str = os.getenv("APISERVER_IPINFO_REGEX", DEFAULT_IPINFO_REGEX)
	ipinfo_cache_ttl: int = _env_int("APISERVER_IPINFO_CACHE_TTL", 3600)

	# Google Play upstream
	googleplay_search_url: str = os.getenv("APISERVER_GOOGLEPLAY_SEARCH_URL", DEFAULT_GOOGLEPLAY_SEARCH_URL)
	googleplay_search_regex: str = os.getenv("APISERVER_GOOGLEPLAY_SEARCH_REGEX", DEFAULT_GOOGLEPLAY_SEARCH_REGEX)
	googleplay_search_ttl: int = _env_int("APISERVER_GOOGLEPLAY_SEARCH_TTL", 86400)

	# Resolver / dialer
	dns_ttl: float = _env_float("APISERVER_DNS_TTL", 600.0)
	dial_timeout: float = _env_float("APISERVER_DIAL_TIMEOUT", 30.0)
	dial_level: int = _env_int("APISERVER_DIAL_LEVEL", 1)
	dial_keepalive: float = _env_float("APISERVER_DIAL_KEEPALIVE", 30.0)
	reject_intranet: bool = _env_bool("APISERVER_REJECT_INTRANET", False)
	prefer_ipv6: bool = _env_bool("APISERVER_PREFER_IPV6", False)

	# Per-request budget for resolve + dial + fetch + read
	upstream_timeout: float = _env_float("APISERVER_UPSTREAM_TIMEOUT", 15.0)

	cache_size: int = _env_int("APISERVER_CACHE_SIZE", 10000)

	@property
	def listen_host_port(self) -> tuple[str, int]:
		return split_host_port(self.listen_addr)

	def validate(self) -> "Settings":
		"""Raise ConfigInvalid for settings the service cannot start with."""
		try:
			self.listen_host_port
		except ValueError as e:
			raise ConfigInvalid(f"listen_addr: {e}") from e

		for name in ("ipinfo_url", "googleplay_search_url"):
			if "%s" not in getattr(self, name):
				raise ConfigInvalid(f"{name}: template must contain %s")

		for name in ("ipinfo_regex", "googleplay_search_regex"):
			compile_regex(getattr(self, name), name)

		for name in ("ipinfo_cache_ttl", "googleplay_search_ttl", "cache_size", "upstream_timeout"):
			if getattr(self, name) <= 0:
				raise ConfigInvalid(f"{name}: must be positive")

		if self.dial_level < 0:
			raise ConfigInvalid("dial_level: must not be negative")

		return self


def compile_regex(pattern: str, name: str = "regex") -> re.Pattern:
	"""Compile an extraction regex; it must expose capture groups 1 and 2."""
	try:
		regex = re.compile(pattern)
	except re.error as e:
		raise ConfigInvalid(f"{name}: {e}") from e
	if regex.groups < 2:
		raise ConfigInvalid(f"{name}: needs at least 2 capture groups, got {regex.groups}")
	return regex


settings = Settings()
