"""
StockLens - OCR Processing

PURPOSE: Turn a receipt photo into raw text
SCOPE: OCR.Space REST client (file upload, base64 retry) with a local
       Tesseract fallback; every failure degrades to empty text
DEPENDENCIES: httpx, aiofiles, pytesseract, cv2, PIL, numpy
"""

import asyncio
import base64
import io
import logging
from typing import Any, Dict, Optional

import aiofiles
import cv2
import httpx
import numpy as np
import pytesseract
from PIL import Image

from .config import config
from .exceptions import OCRServiceUnavailable
from .models import CapturedPhoto, OcrResult

logger = logging.getLogger(__name__)

TESSERACT_LANGUAGES = {'eng': 'eng', 'dut': 'nld', 'ger': 'deu', 'fre': 'fra'}


# Phone photos of thermal receipts are small, faded and unevenly lit
MIN_OCR_WIDTH = 1000
THRESHOLD_BLOCK_SIZE = 31
THRESHOLD_OFFSET = 15


class OCRProcessor:
    """Local Tesseract fallback tuned for receipt photos."""

    @staticmethod
    def preprocess_receipt(image_bytes: bytes) -> np.ndarray:
        """Grayscale, upscale narrow shots, drop speckle and binarize per region.

        A global threshold loses the faded lower half of a curled thermal
        receipt, so the threshold is computed over local neighbourhoods.
        """
        image = Image.open(io.BytesIO(image_bytes)).convert('RGB')
        gray = cv2.cvtColor(np.array(image), cv2.COLOR_RGB2GRAY)

        height, width = gray.shape
        if width < MIN_OCR_WIDTH:
            scale = MIN_OCR_WIDTH / width
            gray = cv2.resize(gray, (MIN_OCR_WIDTH, max(1, round(height * scale))),
                              interpolation=cv2.INTER_CUBIC)

        gray = cv2.medianBlur(gray, 3)
        return cv2.adaptiveThreshold(
            gray, 255, cv2.ADAPTIVE_THRESH_GAUSSIAN_C, cv2.THRESH_BINARY,
            THRESHOLD_BLOCK_SIZE, THRESHOLD_OFFSET
        )

    @classmethod
    async def process_image_with_ocr(cls, image_bytes: bytes, language: str = 'eng') -> str:
        """Text of a receipt photo, or an empty string when Tesseract fails."""
        # psm 4: a single column of variably sized lines, the usual receipt layout
        ocr_config = f"--oem 3 --psm 4 -l {TESSERACT_LANGUAGES.get(language, 'eng')}"

        def run() -> str:
            return pytesseract.image_to_string(cls.preprocess_receipt(image_bytes), config=ocr_config)

        try:
            loop = asyncio.get_running_loop()
            return await loop.run_in_executor(None, run)
        except Exception as e:
            logger.error(f"Local OCR processing error: {e}")
            return ""


class OCRSpaceClient:
    """Client for the OCR.Space parse/image endpoint."""

    def __init__(self, api_key: Optional[str] = None, url: Optional[str] = None,
                 language: Optional[str] = None, timeout: Optional[float] = None):
        self.api_key = api_key if api_key is not None else config.OCR_SPACE_API_KEY
        self.url = url or config.OCR_SPACE_URL
        self.language = language or config.OCR_LANGUAGE
        self.timeout = timeout or config.OCR_TIMEOUT_SECONDS

    @property
    def configured(self) -> bool:
        return bool(self.api_key)

    async def recognize_file(self, image_bytes: bytes, filename: str) -> OcrResult:
        """Upload the image as multipart form data."""
        extension = filename.rsplit('.', 1)[-1].lower() if '.' in filename else 'jpeg'
        files = {'file': (filename, image_bytes, f'image/{extension}')}
        return await self._post(files=files)

    async def recognize_base64(self, image_bytes: bytes) -> OcrResult:
        """Send the image as a base64 data URI."""
        payload = 'data:image/jpeg;base64,' + base64.b64encode(image_bytes).decode('ascii')
        return await self._post(data={'base64Image': payload})

    async def _post(self, files: Optional[Dict[str, Any]] = None,
                    data: Optional[Dict[str, str]] = None) -> OcrResult:
        if not self.api_key:
            raise OCRServiceUnavailable("OCR Space API key is required")

        form = {'language': self.language, 'isOverlayRequired': 'false'}
        form.update(data or {})

        try:
            async with httpx.AsyncClient(timeout=self.timeout) as client:
                response = await client.post(
                    self.url, headers={'apikey': self.api_key}, data=form, files=files
                )
        except httpx.RequestError as e:
            raise OCRServiceUnavailable(f"Failed to connect to OCR service: {e}") from e

        if response.status_code != 200:
            raise OCRServiceUnavailable(f"OCR.Space request failed: {response.status_code}")

        try:
            return self.parse_response(response.json())
        except ValueError as e:
            raise OCRServiceUnavailable(f"OCR.Space returned invalid JSON: {e}") from e

    @staticmethod
    def parse_response(payload: Dict[str, Any]) -> OcrResult:
        """Normalize an OCR.Space response into an OcrResult."""
        results = payload.get('ParsedResults') or [{}]
        parsed = results[0] or {}
        text = parsed.get('ParsedText') or ''

        if payload.get('IsErroredOnProcessing'):
            message = payload.get('ErrorMessage') or parsed.get('ErrorMessage') or 'OCR.Space reported an error'
            if isinstance(message, list):
                message = '; '.join(str(part) for part in message)
            return OcrResult(text='', success=False, error_message=str(message))

        if not text.strip():
            return OcrResult(text='', success=False, error_message='No text detected in image')

        return OcrResult(text=text, success=True)


class OCRProcessingService:
    """Main OCR entry point used by the capture workflow."""

    def __init__(self, remote: Optional[OCRSpaceClient] = None, use_local_fallback: bool = True):
        self.remote = remote or OCRSpaceClient()
        self.use_local_fallback = use_local_fallback

    async def recognize(self, photo: CapturedPhoto) -> OcrResult:
        """Run OCR with fallbacks. Never raises; failures produce an empty result."""
        try:
            image_bytes = await self._load_photo(photo)
        except OSError as e:
            logger.error(f"Could not read photo {photo.uri}: {e}")
            return OcrResult(error_message=str(e))

        last_error = None
        if self.remote.configured:
            for strategy in ('file', 'base64'):
                try:
                    if strategy == 'file':
                        result = await self.remote.recognize_file(image_bytes, photo.filename)
                    else:
                        result = await self.remote.recognize_base64(image_bytes)
                except OCRServiceUnavailable as e:
                    logger.warning(f"OCR.Space {strategy} upload failed: {e}")
                    last_error = e.message
                    continue

                if result.success:
                    return result
                logger.info(f"OCR.Space {strategy} upload returned no text: {result.error_message}")
                last_error = result.error_message

        if self.use_local_fallback:
            text = await OCRProcessor.process_image_with_ocr(image_bytes, self.remote.language)
            if text.strip():
                return OcrResult(text=text, success=True)
            last_error = last_error or 'No text detected in image'

        logger.warning(f"No text extracted from {photo.filename}")
        return OcrResult(text='', success=False, error_message=last_error)

    @staticmethod
    async def _load_photo(photo: CapturedPhoto) -> bytes:
        if photo.data is not None:
            return photo.data
        async with aiofiles.open(photo.local_path, mode='rb') as f:
            return await f.read()
