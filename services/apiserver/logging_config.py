import logging
import sys

from apiserver.config import settings


def setup_logging(level_name: str | None = None) -> None:
	"""Configure root logger for the application."""
	level_name = level_name or getattr(settings, "log_level", "INFO")
	level = getattr(logging, level_name.upper(), logging.INFO)

	# Basic configuration for root logger
	logging.basicConfig(
		level=level,
		format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
		stream=sys.stdout,
	)

	logging.getLogger("urllib3").setLevel(logging.WARNING)
	logging.getLogger("requests").setLevel(logging.WARNING)
	logging.getLogger("werkzeug").setLevel(logging.WARNING)
