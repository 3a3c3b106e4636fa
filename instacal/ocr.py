"""
OCR adapters: download an image from a media URL and return its text.

Google Cloud Vision is the default engine; Tesseract is available for local
setups without Google credentials.
"""

import io
import logging
from typing import Optional

import requests

from instacal.errors import TransientIOError, ValidationError

logger = logging.getLogger(__name__)


def download_image(media_url: str, timeout: Optional[float] = None,
                   session: Optional[requests.Session] = None) -> bytes:
    """Fetch image bytes; Instagram media URLs expire, so this runs right away"""
    http = session or requests
    try:
        response = http.get(media_url, timeout=timeout)
    except requests.RequestException as e:
        raise TransientIOError(f"Failed to download image: {e}") from e

    if not response.ok:
        raise TransientIOError(f"Failed to download image: {response.status_code}")
    return response.content


class VisionOCR:
    """Text detection with Google Cloud Vision"""

    def __init__(self, client=None, timeout: Optional[float] = None, session: Optional[requests.Session] = None):
        self._client = client
        self.timeout = timeout
        self.session = session

    @property
    def client(self):
        if self._client is None:
            from google.auth.exceptions import DefaultCredentialsError
            from google.cloud import vision
            try:
                self._client = vision.ImageAnnotatorClient()
            except DefaultCredentialsError as e:
                raise TransientIOError(f"Google Vision client unavailable: {e}") from e
        return self._client

    def __call__(self, media_url: str) -> str:
        from google.api_core import exceptions as google_exceptions
        from google.cloud import vision

        logger.info(f"Performing OCR on: {media_url}")
        content = download_image(media_url, timeout=self.timeout, session=self.session)

        try:
            response = self.client.text_detection(image=vision.Image(content=content))
        except google_exceptions.GoogleAPICallError as e:
            raise TransientIOError(f"Google Vision API error: {e}") from e

        if response.error.message:
            raise TransientIOError(f"Google Vision API error: {response.error.message}")

        texts = response.text_annotations
        return texts[0].description if texts else ''


class TesseractOCR:
    """Text detection with a local Tesseract install"""

    def __init__(self, psm: int = 6, timeout: Optional[float] = None, session: Optional[requests.Session] = None):
        self.psm = psm
        self.timeout = timeout
        self.session = session

    def __call__(self, media_url: str) -> str:
        import pytesseract
        from PIL import Image, UnidentifiedImageError

        logger.info(f"Performing OCR on: {media_url}")
        content = download_image(media_url, timeout=self.timeout, session=self.session)

        try:
            image = Image.open(io.BytesIO(content))
        except UnidentifiedImageError as e:
            raise ValidationError(f"Media is not a readable image: {media_url}") from e

        try:
            return pytesseract.image_to_string(image, config=f'--psm {self.psm}')
        except (pytesseract.TesseractError, pytesseract.TesseractNotFoundError) as e:
            raise TransientIOError(f"Tesseract OCR failed: {e}") from e


def build_ocr(engine: str, timeout: Optional[float] = None):
    """Return the OCR callable for the configured engine"""
    if engine == 'google_vision':
        return VisionOCR(timeout=timeout)
    if engine == 'tesseract':
        return TesseractOCR(timeout=timeout)
    raise ValueError(f"Unknown OCR engine: {engine}")
