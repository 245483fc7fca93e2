from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse, PlainTextResponse
import json
import logging
from contextlib import asynccontextmanager
from typing import Optional

from .config import Settings
from .extractor import BillExtractor
from .schemas import BillRequest, ErrorResponse

logger = logging.getLogger(__name__)

MISSING_DOCUMENT_ERROR = "Missing 'document' URL in request body"
INVALID_BODY_ERROR = "Invalid request body"
INTERNAL_ERROR = "Internal server error"


class PrettyJSONResponse(JSONResponse):
    """JSON response rendered with a 2-space indent."""

    def render(self, content) -> bytes:
        return json.dumps(content, ensure_ascii=False, indent=2).encode("utf-8")


def error_response(status_code: int, message: str) -> PrettyJSONResponse:
    return PrettyJSONResponse(
        status_code=status_code,
        content=ErrorResponse(error=message).model_dump(),
    )


def create_app(settings: Optional[Settings] = None, extractor: Optional[BillExtractor] = None) -> FastAPI:
    settings = settings or Settings.from_env()
    extractor = extractor or BillExtractor.from_settings(settings)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        settings = app.state.settings
        if settings.gemini_api_key:
            logger.info(f"API key loaded, model: {settings.gemini_model}")
        else:
            logger.error("GEMINI_API_KEY not found!")
        yield

    app = FastAPI(
        title="Bill Extraction API",
        description="Extract line items from bill images using Gemini",
        default_response_class=PrettyJSONResponse,
        lifespan=lifespan,
    )
    app.state.settings = settings
    app.state.extractor = extractor

    @app.exception_handler(RequestValidationError)
    async def validation_exception_handler(request: Request, exc: RequestValidationError):
        logger.warning("Rejected request body: %s", exc.errors())
        return error_response(400, INVALID_BODY_ERROR)

    @app.exception_handler(Exception)
    async def universal_exception_handler(request: Request, exc: Exception):
        logger.error("Unhandled error: %s", exc, exc_info=exc)
        return error_response(500, INTERNAL_ERROR)

    @app.get("/", response_class=PlainTextResponse)
    async def read_index():
        return "Bill Extraction API is running"

    @app.get("/health")
    async def health():
        return {"status": "healthy"}

    @app.post("/extract-bill-data")
    async def extract_bill(request: Request, body: Optional[BillRequest] = None):
        if body is None or not body.document:
            return error_response(400, MISSING_DOCUMENT_ERROR)

        try:
            logger.info(f"Received request for document: {body.document}")
            result = await request.app.state.extractor.extract(body.document)
        except Exception as e:
            logger.exception(f"Error in /extract-bill-data for {body.document}: {e}")
            return error_response(500, INTERNAL_ERROR)

        if result.is_success:
            logger.info(f"SUCCESS: Extracted {result.data.total_item_count} items from document: {body.document}")
        else:
            logger.warning(f"Extraction reported failure for {body.document}: {result.error}")
        return PrettyJSONResponse(status_code=200, content=result.model_dump(exclude_none=True))

    return app

