from __future__ import annotations
import logging
from typing import Optional

import httpx

from .schemas import SubmissionRecord
from .settings import settings

logger = logging.getLogger(__name__)


class ResultSink:
	"""
	Posts finished results to a webhook (a Google Apps Script web app in production).

	Data is sent as application/x-www-form-urlencoded so the script sees it in
	``e.parameter``. Failures are logged and swallowed: the user is never shown
	them and they are never retried.
	"""

	def __init__(self, url: Optional[str] = None, *, transport: Optional[httpx.AsyncBaseTransport] = None) -> None:
		self.url = url if url is not None else settings.results_webhook_url
		self._transport = transport

	async def submit(self, record: SubmissionRecord) -> None:
		if not self.url:
			logger.warning("RESULTS_WEBHOOK_URL is not set; result for %s was not saved", record.name)
			return
		try:
			async with httpx.AsyncClient(timeout=30, transport=self._transport) as client:
				r = await client.post(self.url, data=record.form_fields())
				r.raise_for_status()
		except httpx.HTTPError as err:
			logger.error("Submitting result for %s failed: %s", record.name, err)
			return
		logger.info("Result for %s submitted", record.name)
