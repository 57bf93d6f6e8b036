"""FastAPI server exposing RetroQ status and metrics"""

from __future__ import annotations

import os

from dotenv import load_dotenv
from fastapi import FastAPI, Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

# Load environment variables from .env file before config is read
load_dotenv()

from retroq.api.routes.health import router as health_router  # noqa: E402
from retroq.api.routes.llm import router as llm_router  # noqa: E402
from retroq.api.routes.llm import set_analyzer  # noqa: E402
from retroq.config import APP_VERSION  # noqa: E402
from retroq.llm.analyzer import LLMAnalyzer  # noqa: E402
from retroq.observability.logging import get_logger  # noqa: E402
from retroq.observability.telemetry import counter  # noqa: E402

logger = get_logger(__name__)

app = FastAPI(title="RetroQ API", version=APP_VERSION)


@app.exception_handler(RequestValidationError)
async def validation_exception_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    """
    Validation error handler that only exposes field names.

    Side Effects:
        - Logs detailed validation errors for debugging
        - Increments api.validation_errors counter
    """
    logger.warning("Validation error on %s: %s", request.url.path, exc.errors())
    counter("api.validation_errors")

    return JSONResponse(
        status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
        content={
            "detail": "Invalid request format. Please check your request and try again.",
            "error_count": len(exc.errors()),
            "invalid_fields": [str(err["loc"][-1]) for err in exc.errors()],
        },
    )


# Initialize services
analyzer = LLMAnalyzer.from_environment()
set_analyzer(analyzer)
logger.info(
    "LLM analyzer ready (enabled=%s, provider=%s)",
    analyzer.config.enabled,
    analyzer.config.provider,
)

app.include_router(health_router)
app.include_router(llm_router)


def main() -> None:
    """Run the API with uvicorn (console script: retroq-api)."""
    import uvicorn

    uvicorn.run(
        "retroq.api.app:app",
        host=os.getenv("RETROQ_HOST", "127.0.0.1"),
        port=int(os.getenv("PORT", "8000")),
        log_level=os.getenv("RETROQ_LOG_LEVEL", "info").lower(),
    )


if __name__ == "__main__":
    main()
