import asyncio
import logging
from dataclasses import dataclass
from typing import Optional

import requests
import google.generativeai as genai
from google.generativeai.types import HarmCategory, HarmBlockThreshold

from .config import Settings
from .errors import DownloadError, InferenceError
from .normalizer import normalize_extraction
from .schemas import BillExtractionResult, TokenUsage

logger = logging.getLogger(__name__)

EXTRACTION_PROMPT = """
You are an OCR + invoice parser.

TASK:
- Read the provided BILL / INVOICE image.
- Extract ALL line items in the bill.
- Avoid missing any items.
- Avoid double-counting any items.

OUTPUT:
Return ONLY valid JSON (no markdown, no comments) in exactly this format:

{
  "pagewise_line_items": [
    {
      "page_no": "string",
      "page_type": "Bill Detail | Final Bill | Pharmacy",
      "bill_items": [
        {
          "item_name": "string",
          "item_amount": 0.0,
          "item_rate": 0.0,
          "item_quantity": 0.0
        }
      ]
    }
  ],
  "total_item_count": 0
}

Rules:
- "item_amount" = net amount for that line item after discounts.
- "item_rate" = per-unit rate exactly as in the bill.
- "item_quantity" = quantity exactly as in the bill.
- Use numeric values (floats) for amount, rate, quantity.
- "page_no" should start from "1" as string.
- "page_type" must be one of: "Bill Detail", "Final Bill", "Pharmacy".
- Ensure total_item_count = sum of items across all pages.
- Do NOT wrap in markdown fences.
"""

# (hex prefix, mime type), checked in order
MAGIC_NUMBERS = (
    ("89504e47", "image/png"),
    ("ffd8ffe0", "image/jpeg"),
    ("ffd8ffe1", "image/jpeg"),
    ("52494646", "image/webp"),
)
DEFAULT_MIME = "image/jpeg"


def download_document(url: str) -> bytes:
    """Fetch the whole document body. Raises DownloadError on a non-2xx status."""
    response = requests.get(url)
    if not 200 <= response.status_code < 300:
        raise DownloadError(response.status_code, response.reason or "")
    return response.content


def sniff_mime(data: bytes) -> str:
    head = data[:4].hex()
    for prefix, mime_type in MAGIC_NUMBERS:
        if head.startswith(prefix):
            return mime_type
    return DEFAULT_MIME


def usage_from_metadata(usage) -> TokenUsage:
    if not usage:
        return TokenUsage()
    return TokenUsage(
        total_tokens=getattr(usage, "total_token_count", 0) or 0,
        input_tokens=getattr(usage, "prompt_token_count", 0) or 0,
        output_tokens=getattr(usage, "candidates_token_count", 0) or 0,
    )


@dataclass
class InferenceReply:
    text: str
    usage: TokenUsage


class GeminiClient:
    """Thin wrapper around the Gemini multimodal model."""

    def __init__(self, api_key: Optional[str], model_name: str):
        self.api_key = api_key
        self.model_name = model_name
        if api_key:
            genai.configure(api_key=api_key)
        self.model = genai.GenerativeModel(model_name)

        self.generation_config = genai.GenerationConfig(
            max_output_tokens=8192,
            response_mime_type="application/json",
        )
        self.safety_settings = {
            HarmCategory.HARM_CATEGORY_HARASSMENT: HarmBlockThreshold.BLOCK_NONE,
            HarmCategory.HARM_CATEGORY_HATE_SPEECH: HarmBlockThreshold.BLOCK_NONE,
            HarmCategory.HARM_CATEGORY_SEXUALLY_EXPLICIT: HarmBlockThreshold.BLOCK_NONE,
            HarmCategory.HARM_CATEGORY_DANGEROUS_CONTENT: HarmBlockThreshold.BLOCK_NONE,
        }

    async def generate(self, prompt: str, mime_type: str, data: bytes) -> InferenceReply:
        if not self.api_key:
            raise InferenceError("GEMINI_API_KEY not found in environment variables.")

        response = await self.model.generate_content_async(
            [prompt, {"mime_type": mime_type, "data": data}],
            generation_config=self.generation_config,
            safety_settings=self.safety_settings,
        )
        usage = usage_from_metadata(getattr(response, "usage_metadata", None))

        try:
            text = response.text
        except ValueError as e:
            # Raised by the SDK when the candidate was blocked or is empty
            raise InferenceError(f"Gemini returned no text: {e}") from e

        return InferenceReply(text=text, usage=usage)


class BillExtractor:
    """Runs one request through download -> sniff -> Gemini -> normalize."""

    def __init__(self, client, log: Optional[logging.Logger] = None):
        self.client = client
        self.log = log or logger

    @classmethod
    def from_settings(cls, settings: Settings) -> "BillExtractor":
        return cls(GeminiClient(settings.gemini_api_key, settings.gemini_model))

    async def extract(self, document_url: str) -> BillExtractionResult:
        self.log.info(f"Downloading document: {document_url}")
        loop = asyncio.get_running_loop()
        file_data = await loop.run_in_executor(None, download_document, document_url)

        mime_type = sniff_mime(file_data)
        self.log.info(f"Document downloaded. Mime: {mime_type}, size: {len(file_data)} bytes")

        self.log.info(f"Sending to {getattr(self.client, 'model_name', 'model')}...")
        reply = await self.client.generate(EXTRACTION_PROMPT, mime_type, file_data)
        self.log.debug("Raw model output: %s", reply.text)

        return normalize_extraction(reply.text, reply.usage, log=self.log)
