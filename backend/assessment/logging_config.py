"""Logging configuration for the assessment service."""
import logging
import logging.handlers
from pathlib import Path

from .settings import settings

LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"


def setup_logging() -> None:
	"""Set up console logging, plus a rotating file when LOG_FILE is set."""
	if settings.log_file:
		Path(settings.log_file).parent.mkdir(parents=True, exist_ok=True)

	root_logger = logging.getLogger()
	root_logger.setLevel(settings.log_level.upper())

	formatter = logging.Formatter(LOG_FORMAT)

	console_handler = logging.StreamHandler()
	console_handler.setFormatter(formatter)
	root_logger.addHandler(console_handler)

	if settings.log_file:
		file_handler = logging.handlers.RotatingFileHandler(
			settings.log_file,
			maxBytes=10 * 1024 * 1024,  # 10MB
			backupCount=5,
			encoding="utf-8",
		)
		file_handler.setFormatter(formatter)
		root_logger.addHandler(file_handler)

	# Request lines from httpx would log every Gemini call
	logging.getLogger("httpx").setLevel(logging.WARNING)
	logging.getLogger("httpcore").setLevel(logging.WARNING)

	logging.info("Logging configured successfully")
