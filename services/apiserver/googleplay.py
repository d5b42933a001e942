import json
import logging
import re
from dataclasses import dataclass
from typing import List
from urllib.parse import quote

from apiserver.context import Context
from apiserver.errors import BadRequest
from apiserver.pipeline import LookupPipeline, UpstreamResponse, substitute

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class SearchItem:
	package_name: str
	title: str


@dataclass(frozen=True)
class LookupRequest:
	pkg_name: str = ""
	title: str = ""
	geo: str = ""

	@classmethod
	def from_json(cls, data: bytes | str) -> "LookupRequest":
		"""Decode a request envelope. Raises BadRequest for anything but a JSON object."""
		try:
			payload = json.loads(data or b"")
		except ValueError as e:
			raise BadRequest(f"invalid json: {e}") from e
		if not isinstance(payload, dict):
			raise BadRequest("request body must be a json object")

		values = {}
		for field in ("pkg_name", "title", "geo"):
			value = payload.get(field, "")
			if value is None:
				value = ""
			if not isinstance(value, str):
				raise BadRequest(f"{field} must be a string")
			values[field] = value
		return cls(**values)


@dataclass
class LookupResponse:
	status: int
	error: str = ""
	pkg_name: str = ""
	title: str = ""
	geo: str = ""

	def to_dict(self) -> dict:
		data = {"status": self.status}
		for field in ("error", "pkg_name", "title", "geo"):
			value = getattr(self, field)
			if value:
				data[field] = value
		return data


def accept_language(geo: str) -> str:
	if not geo:
		return "en-US;q=0.8,en;q=0.7"
	return geo.lower() + ";q=0.9,en-US;q=0.8,en;q=0.7"


class GoogleplayHandler:
	"""Package name by title and title by package name, from a store search page.

	Each answer (an empty string for "no such app") is cached under the
	request key. Queries are percent-escaped before substitution.
	"""

	def __init__(self, search_url: str, search_regex: re.Pattern, pipeline: LookupPipeline) -> None:
		self.search_url = search_url
		self.search_regex = search_regex
		self.pipeline = pipeline

	def lookup_title(self, title: str, geo: str, ctx: Context | None = None) -> str:
		"""Return the package name whose title equals ``title`` exactly, or ''."""
		if not title:
			raise BadRequest("title is required")

		def pick(response: UpstreamResponse) -> str:
			for item in self.search(response):
				if item.title == title:
					return item.package_name
			return ""

		return self._lookup("title:" + title + ":" + geo, title, geo, pick, ctx)

	def lookup_package_name(self, pkg_name: str, geo: str, ctx: Context | None = None) -> str:
		"""Return the title of package ``pkg_name``, or ''."""
		if not pkg_name:
			raise BadRequest("pkg_name is required")

		def pick(response: UpstreamResponse) -> str:
			for item in self.search(response):
				if item.package_name == pkg_name:
					return item.title
			return ""

		return self._lookup("pkgname:" + pkg_name + ":" + geo, pkg_name, geo, pick, ctx)

	def _lookup(self, cache_key, query, geo, pick, ctx) -> str:
		url = substitute(self.search_url, quote(query, safe=""))
		return self.pipeline.lookup(
			cache_key=cache_key,
			# the same URL serves different localizations
			fetch_key=url + geo,
			url=url,
			headers={"Accept-Language": accept_language(geo)},
			parse=pick,
			ctx=ctx,
		)

	def search(self, response: UpstreamResponse) -> List[SearchItem]:
		items = [
			SearchItem(package_name=match.group(1), title=match.group(2))
			for match in self.search_regex.finditer(response.text)
		]
		logger.info("googleplay search return %d items", len(items))
		return items
