import logging
from typing import Optional

import requests
import statsd
from fastapi.concurrency import run_in_threadpool

logger = logging.getLogger(__name__)


class OcrClient:
    """Single-shot text extraction through the OCR.space parse API.

    Never raises: a missing key, a network failure, a non-2xx status, a
    provider processing error or an unreadable body all yield None.
    """

    def __init__(
        self,
        metrics: statsd.StatsClient,
        api_key: Optional[str],
        api_url: str = "https://api.ocr.space/parse/image",
        language: str = "eng",
        timeout: float = 30.0,
    ):
        self.metrics = metrics
        self.api_key = api_key
        self.api_url = api_url
        self.language = language
        self.timeout = timeout

    def extract_text_sync(self, image: bytes, filename: str = "image.jpg", media_type: str = "image/jpeg") -> Optional[str]:
        if not self.api_key:
            return None

        try:
            response = requests.post(
                self.api_url,
                files={"file": (filename, image, media_type)},
                data={
                    "apikey": self.api_key,
                    "language": self.language,
                    "isOverlayRequired": "false",
                },
                timeout=self.timeout,
            )
        except requests.exceptions.RequestException as exc:
            self.metrics.incr("errors.ocr")
            logger.warning("OCR request failed: %s", exc)
            return None

        if not response.ok:
            self.metrics.incr("errors.ocr")
            logger.warning("OCR provider returned %s: %s", response.status_code, response.text[:500])
            return None

        try:
            data = response.json()
        except ValueError:
            self.metrics.incr("errors.ocr")
            logger.warning("OCR provider returned a non-JSON body")
            return None

        if not isinstance(data, dict):
            self.metrics.incr("errors.ocr")
            return None
        if data.get("IsErroredOnProcessing"):
            self.metrics.incr("errors.ocr")
            logger.warning("OCR processing error: %s", data.get("ErrorMessage"))
            return None

        results = data.get("ParsedResults") or []
        if not results or not isinstance(results[0], dict):
            return None
        text = (results[0].get("ParsedText") or "").strip()

        self.metrics.incr("success.ocr")
        return text or None

    async def extract_text(self, image: bytes, filename: str = "image.jpg", media_type: str = "image/jpeg") -> Optional[str]:
        return await run_in_threadpool(self.extract_text_sync, image, filename, media_type)
