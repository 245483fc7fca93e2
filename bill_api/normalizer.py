"""
Normalization of the model's raw reply into the bill extraction schema.

The model output is untrusted: it may be wrapped in markdown fences, carry
wrong types, or miss fields entirely. Every anomaly degrades to a default;
only text that is not JSON at all produces a failed result.
"""
import re
import json
import math
import logging
from typing import Any, List, Optional

from .schemas import BillData, BillExtractionResult, BillItem, PageItems, TokenUsage

logger = logging.getLogger(__name__)

ALLOWED_PAGE_TYPES = ("Bill Detail", "Final Bill", "Pharmacy")
DEFAULT_PAGE_TYPE = "Bill Detail"
INVALID_JSON_ERROR = "Model returned invalid JSON"

# An optional language tag; the JSON literals true/false/null are payload, not tags
_OPENING_FENCE = re.compile(r"^```(?:json|(?!(?:true|false|null)\b)[a-z]+(?=\s|$))?", re.IGNORECASE)
_NUMERIC_PREFIX = re.compile(r"^[+-]?(?:\d+\.?\d*|\.\d+)(?:[eE][+-]?\d+)?")


def strip_code_fence(text: str) -> str:
    """Remove a surrounding ```json ... ``` block if the model added one."""
    text = text.strip()
    if text.startswith("```"):
        text = _OPENING_FENCE.sub("", text, count=1).strip()
        if text.endswith("```"):
            text = text[:-3].strip()
    return text


def _reject_constant(name):
    raise ValueError(f"Non-standard JSON constant: {name}")


def _is_truthy(value: Any) -> bool:
    # Empty containers still count as a value; NaN does not.
    if isinstance(value, (list, dict)):
        return True
    if isinstance(value, float) and math.isnan(value):
        return False
    return bool(value)


def _to_str(value: Any) -> str:
    if isinstance(value, str):
        return value
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, float) and value.is_integer():
        return str(int(value))
    if isinstance(value, list):
        # [] -> "", [1, 2] -> "1,2"
        return ",".join("" if v is None else _to_str(v) for v in value)
    if isinstance(value, dict):
        return json.dumps(value, separators=(",", ":"))
    return str(value)


def parse_float(value: Any) -> float:
    """Converts anything to float, falling back to 0.0.

    Strings are read up to the end of their leading number, so "7 pcs"
    gives 7.0. A real zero and an unreadable value both come back as 0.0.
    """
    if isinstance(value, bool) or value is None:
        return 0.0
    if isinstance(value, (int, float)):
        try:
            number = float(value)
        except OverflowError:
            return 0.0
    elif isinstance(value, str):
        match = _NUMERIC_PREFIX.match(value.strip())
        if not match:
            return 0.0
        number = float(match.group(0))
    else:
        return 0.0
    if math.isnan(number) or math.isinf(number):
        return 0.0
    return number


def normalize_item(raw: Any) -> BillItem:
    if not isinstance(raw, dict):
        raw = {}

    name = raw.get("item_name")
    return BillItem(
        item_name=_to_str(name) if _is_truthy(name) else "",
        item_amount=parse_float(raw.get("item_amount")),
        item_rate=parse_float(raw.get("item_rate")),
        item_quantity=parse_float(raw.get("item_quantity")),
    )


def normalize_page(raw: Any, idx: int) -> PageItems:
    if not isinstance(raw, dict):
        raw = {}

    page_no = raw.get("page_no")
    page_type = raw.get("page_type")
    if not isinstance(page_type, str) or page_type not in ALLOWED_PAGE_TYPES:
        page_type = DEFAULT_PAGE_TYPE

    raw_items = raw.get("bill_items")
    if not isinstance(raw_items, list):
        raw_items = []

    return PageItems(
        page_no=_to_str(page_no) if _is_truthy(page_no) else str(idx + 1),
        page_type=page_type,
        bill_items=[normalize_item(item) for item in raw_items],
    )


def _declared_count(value: Any) -> Optional[int]:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return None
    if isinstance(value, float):
        if math.isnan(value) or math.isinf(value):
            return None
        return int(value)
    return value


def normalize_data(parsed: Any) -> BillData:
    if not isinstance(parsed, dict):
        parsed = {}

    raw_pages = parsed.get("pagewise_line_items")
    if not isinstance(raw_pages, list):
        raw_pages = []

    pages: List[PageItems] = [normalize_page(page, idx) for idx, page in enumerate(raw_pages)]

    total = _declared_count(parsed.get("total_item_count"))
    if total is None:
        total = sum(len(page.bill_items) for page in pages)

    return BillData(pagewise_line_items=pages, total_item_count=total)


def normalize_extraction(raw_text: str, token_usage: Optional[TokenUsage] = None,
                         log: Optional[logging.Logger] = None) -> BillExtractionResult:
    """
    Turn the raw model reply into a BillExtractionResult.

    Returns is_success=False only when the cleaned text does not parse as
    JSON. Never raises for malformed model output.
    """
    log = log or logger
    token_usage = token_usage or TokenUsage()

    cleaned = strip_code_fence(raw_text or "")
    try:
        parsed = json.loads(cleaned, parse_constant=_reject_constant)
    except (ValueError, RecursionError) as e:
        log.error(f"JSON parse error: {e}")
        return BillExtractionResult(
            is_success=False,
            token_usage=token_usage,
            data=BillData(),
            error=INVALID_JSON_ERROR,
        )

    return BillExtractionResult(
        is_success=True,
        token_usage=token_usage,
        data=normalize_data(parsed),
    )
