import logging
import sys
import time

from flask import Flask, Response, g, jsonify, request

from apiserver import __version__
from apiserver.config import Settings, compile_regex, settings as default_settings
from apiserver.context import Context
from apiserver.dialer import TCPDialer, TLSSessionCache
from apiserver.errors import ApiServerError, ConfigInvalid
from apiserver.googleplay import GoogleplayHandler, LookupRequest, LookupResponse
from apiserver.ipinfo import IpinfoHandler
from apiserver.logging_config import setup_logging
from apiserver.lrucache import LRUCache
from apiserver.metrics import Metrics
from apiserver.pipeline import LookupPipeline
from apiserver.prometheus_exporter import format_prometheus_metrics
from apiserver.resolver import Resolver, new_resolver
from apiserver.server import serve
from apiserver.singleflight import Group
from apiserver.transport import new_session

logger = logging.getLogger(__name__)

INDEX_TEMPLATE = """Ipinfo lookup:

Usage:
    curl -v http://{host}/ipinfo/127.0.0.1
    curl -v -d '{{"title": "WhatsApp Messenger", "geo": "IN"}}' http://{host}/lookup-title
    curl -v -d '{{"pkg_name": "com.whatsapp", "geo": "IN"}}' http://{host}/lookup-pkgname

"""


def create_app(
	settings: Settings | None = None,
	resolver: Resolver | None = None,
	session=None,
	metrics: Metrics | None = None,
) -> Flask:
	"""Build the process-wide collaborators and wire them into a Flask app."""
	settings = (settings or default_settings).validate()
	metrics = metrics or Metrics()

	if resolver is None:
		resolver = new_resolver(dns_ttl=settings.dns_ttl)
		if settings.hosts_file is not None:
			try:
				with settings.hosts_file.open("r", encoding="utf-8") as f:
					resolver.add_static_hosts(f)
			except OSError as e:
				resolver.close()
				raise ConfigInvalid(f"hosts_file: {e}") from e

	if session is None:
		dialer = TCPDialer(
			resolver=resolver,
			keepalive=settings.dial_keepalive,
			timeout=settings.dial_timeout,
			level=settings.dial_level,
			reject_intranet=settings.reject_intranet,
			prefer_ipv6=settings.prefer_ipv6,
			tls_session_cache=TLSSessionCache(2048),
		)
		session = new_session(dialer)

	ipinfo = IpinfoHandler(
		url=settings.ipinfo_url,
		regex=compile_regex(settings.ipinfo_regex, "ipinfo_regex"),
		pipeline=LookupPipeline(
			name="ipinfo",
			cache=LRUCache(settings.cache_size),
			group=Group(),
			session=session,
			ttl=settings.ipinfo_cache_ttl,
			metrics=metrics,
		),
	)
	googleplay = GoogleplayHandler(
		search_url=settings.googleplay_search_url,
		search_regex=compile_regex(settings.googleplay_search_regex, "googleplay_search_regex"),
		pipeline=LookupPipeline(
			name="googleplay",
			cache=LRUCache(settings.cache_size),
			group=Group(),
			session=session,
			ttl=settings.googleplay_search_ttl,
			metrics=metrics,
		),
	)

	app = Flask(__name__)
	app.extensions["apiserver"] = {
		"settings": settings,
		"resolver": resolver,
		"session": session,
		"metrics": metrics,
		"ipinfo": ipinfo,
		"googleplay": googleplay,
	}

	def request_context() -> Context:
		return Context.with_seconds(settings.upstream_timeout)

	@app.before_request
	def before_request():
		"""Store request start time for latency measurement."""
		g.request_start_time = time.perf_counter()

	@app.after_request
	def after_request(response):
		"""Log request details and record metrics after each response."""
		start = getattr(g, "request_start_time", None)
		duration_ms = (time.perf_counter() - start) * 1000.0 if start is not None else 0.0

		metrics.record_request(path=request.path, status_code=response.status_code, duration_ms=duration_ms)
		logger.info(
			"request_completed method=%s path=%s status=%s duration_ms=%.2f client_ip=%s user_agent=%r",
			request.method,
			request.path,
			response.status_code,
			duration_ms,
			request.remote_addr,
			request.user_agent.string,
		)
		return response

	@app.route("/")
	def index():
		"""Plain-text usage help."""
		return Response(INDEX_TEMPLATE.format(host=request.host), mimetype="text/plain")

	@app.route("/ipinfo/", defaults={"ip": ""})
	@app.route("/ipinfo/<ip>")
	def ipinfo_lookup(ip):
		"""Location and ISP for ``ip``; the caller's own address when empty."""
		if not ip:
			ip = request.remote_addr or ""

		try:
			item = ipinfo.lookup(ip, request_context())
		except ApiServerError as e:
			return jsonify({"error": str(e)})

		return jsonify({"location": item.location, "isp": item.isp})

	@app.route("/lookup-title", methods=["POST"])
	def lookup_title():
		try:
			req = LookupRequest.from_json(request.get_data())
			pkg_name = googleplay.lookup_title(req.title, req.geo, request_context())
		except ApiServerError as e:
			return jsonify(LookupResponse(status=204, error=str(e)).to_dict())

		if not pkg_name:
			return jsonify(LookupResponse(status=204).to_dict())
		return jsonify(LookupResponse(status=200, pkg_name=pkg_name).to_dict())

	@app.route("/lookup-pkgname", methods=["POST"])
	def lookup_pkgname():
		try:
			req = LookupRequest.from_json(request.get_data())
			title = googleplay.lookup_package_name(req.pkg_name, req.geo, request_context())
		except ApiServerError as e:
			return jsonify(LookupResponse(status=204, error=str(e)).to_dict())

		if not title:
			return jsonify(LookupResponse(status=204).to_dict())
		return jsonify(LookupResponse(status=200, title=title).to_dict())

	@app.route("/health")
	def health():
		"""Simple health check endpoint."""
		return jsonify({"status": "ok"}), 200

	@app.route("/metrics")
	def metrics_endpoint():
		"""Expose in-memory metrics in the Prometheus text format."""
		body = format_prometheus_metrics(metrics.snapshot())
		return Response(body, mimetype="text/plain; version=0.0.4")

	return app


def main() -> int:
	# Configure logging before creating the app
	setup_logging()

	if len(sys.argv) > 1 and sys.argv[1] == "-version":
		print(__version__)
		return 0

	try:
		app = create_app(default_settings)
		host, port = default_settings.listen_host_port
	except ConfigInvalid as e:
		logger.critical("invalid configuration: %s", e)
		return 1

	logger.info("apiserver %s starting", __version__)
	serve(app, host, port, default_settings.graceful_timeout)
	return 0


if __name__ == "__main__":
	sys.exit(main())
