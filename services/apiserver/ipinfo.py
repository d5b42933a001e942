import ipaddress
import logging
import re
from dataclasses import dataclass

from apiserver.context import Context
from apiserver.errors import BadRequest, RegexNoMatch
from apiserver.pipeline import LookupPipeline, UpstreamResponse, substitute

logger = logging.getLogger(__name__)

USER_AGENT = "curl/7.56.0"


@dataclass(frozen=True)
class IpinfoItem:
	location: str
	isp: str


class IpinfoHandler:
	"""Location and ISP for an IP, scraped from the configured upstream."""

	def __init__(self, url: str, regex: re.Pattern, pipeline: LookupPipeline) -> None:
		self.url = url
		self.regex = regex
		self.pipeline = pipeline

	def lookup(self, ip: str, ctx: Context | None = None) -> IpinfoItem:
		try:
			ip = str(ipaddress.ip_address(ip.strip()))
		except ValueError:
			raise BadRequest(f"invalid ip address: {ip!r}")

		# a validated address has nothing to escape
		url = substitute(self.url, ip)
		return self.pipeline.lookup(
			cache_key="ipinfo:" + ip,
			fetch_key=url,
			url=url,
			headers={"User-Agent": USER_AGENT},
			parse=self.parse,
			ctx=ctx,
		)

	def parse(self, response: UpstreamResponse) -> IpinfoItem:
		match = self.regex.search(response.text)
		if match is None:
			raise RegexNoMatch("empty")

		item = IpinfoItem(location=match.group(1), isp=match.group(2))
		logger.info("ipinfo parse return %s", item)
		return item
