from pydantic import BaseModel, Field
from typing import List, Literal, Optional

PageType = Literal["Bill Detail", "Final Bill", "Pharmacy"]


class BillItem(BaseModel):
    item_name: str = ""
    item_amount: float = 0.0
    item_rate: float = 0.0
    item_quantity: float = 0.0

class PageItems(BaseModel):
    page_no: str
    page_type: PageType = "Bill Detail"
    bill_items: List[BillItem] = Field(default_factory=list)

class BillData(BaseModel):
    pagewise_line_items: List[PageItems] = Field(default_factory=list)
    total_item_count: int = 0

class TokenUsage(BaseModel):
    total_tokens: int = Field(0, ge=0)
    input_tokens: int = Field(0, ge=0)
    output_tokens: int = Field(0, ge=0)

class BillExtractionResult(BaseModel):
    is_success: bool
    token_usage: TokenUsage = Field(default_factory=TokenUsage)
    data: BillData = Field(default_factory=BillData)
    error: Optional[str] = None

class ErrorResponse(BaseModel):
    """Body returned for 400/500 responses; data is always null."""
    is_success: bool = False
    token_usage: TokenUsage = Field(default_factory=TokenUsage)
    data: None = None
    error: str

class BillRequest(BaseModel):
    document: Optional[str] = None
