"""FastAPI backend for sheetsage.

Wraps the selector → engine → taxonomy pipeline in a small JSON API.
Run-level errors are mapped to HTTP status codes:

- StrategyError, DecodeError: 502 (the reasoner gave an unusable reply)
- ProviderError: 502, or 429 when the provider rate limited us
- QueryValidationError, QueryExecutionError: 422
"""

from typing import Any

import structlog
from fastapi import FastAPI, HTTPException, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from sheetsage import __version__
from sheetsage.config import AnalysisConfig
from sheetsage.contracts import (
    AnalysisMethod,
    AnalysisStrategy,
    CategorizationResult,
    ColumnDescriptor,
    TaxonomySnapshot,
    TaxonomyStatistics,
)
from sheetsage.errors import (
    DecodeError,
    ProviderError,
    QueryExecutionError,
    QueryValidationError,
    StrategyError,
)
from sheetsage.llm.reasoner import Reasoner
from sheetsage.llm.router import LLMReasoner
from sheetsage.logging_config import configure_logging
from sheetsage.orchestrator import AnalysisOrchestrator, AnalysisRun
from sheetsage.sql.store import RelationalStore
from sheetsage.taxonomy.manager import TaxonomyManager

logger = structlog.get_logger()


class AnalyzeRequest(BaseModel):
    """Request to answer a question."""
    question: str = Field(..., min_length=1, description="Natural language question")
    strategy: AnalysisMethod | None = Field(None, description="Skip selection and use this method")


class CategorizeRequest(BaseModel):
    """Request to categorize a list of items."""
    items: list[Any] = Field(..., description="Strings or row objects")
    predefined_categories: list[str] = Field(default_factory=list)
    context: str = ""
    naming_format: str | None = None


def _error_response(status_code: int, error: Exception) -> JSONResponse:
    logger.warning("Request failed", status_code=status_code, error_type=type(error).__name__, error=str(error))
    return JSONResponse(
        status_code=status_code,
        content={"error": type(error).__name__, "detail": str(error)[:500]},
    )


def create_app(
    store: RelationalStore,
    reasoner: Reasoner | None = None,
    taxonomy: TaxonomyManager | None = None,
    config: AnalysisConfig | None = None,
) -> FastAPI:
    """Build the API around one dataset store.

    Args:
        store: Relational store holding the dataset table
        reasoner: Reasoner for every LLM call (default: LLMReasoner from env)
        taxonomy: Shared taxonomy manager (default: a fresh one)
        config: Analysis configuration (default: from SS_* env vars)

    Returns:
        Configured FastAPI application
    """
    configure_logging()
    reasoner = reasoner or LLMReasoner()
    config = config or AnalysisConfig.from_env()
    orchestrator = AnalysisOrchestrator(
        reasoner,
        store,
        config,
        taxonomy=taxonomy or TaxonomyManager(reasoner),
    )

    app = FastAPI(title="sheetsage API", version=__version__)

    # CORS for local development
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["http://localhost:3000", "http://localhost:5173"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.exception_handler(StrategyError)
    @app.exception_handler(DecodeError)
    async def _bad_reply(request: Request, exc: Exception):
        return _error_response(502, exc)

    @app.exception_handler(ProviderError)
    async def _provider_failed(request: Request, exc: ProviderError):
        return _error_response(429 if exc.status_code == 429 else 502, exc)

    @app.exception_handler(QueryValidationError)
    @app.exception_handler(QueryExecutionError)
    async def _bad_query(request: Request, exc: Exception):
        return _error_response(422, exc)

    @app.get("/api/health")
    def health_check():
        """Health check endpoint."""
        return {"status": "ok", "version": __version__, "table": config.table_name}

    @app.get("/api/columns", response_model=list[ColumnDescriptor])
    def list_columns():
        """Profile the dataset table."""
        return orchestrator.describe_columns()

    @app.post("/api/analyze", response_model=AnalysisRun)
    def analyze(request: AnalyzeRequest):
        """Answer a question about the dataset."""
        question = request.question.strip()
        if not question:
            raise HTTPException(status_code=400, detail="Question cannot be empty")

        strategy = None
        if request.strategy is not None:
            strategy = AnalysisStrategy(method=request.strategy, reasoning="Chosen by the client")
        return orchestrator.analyze(question, strategy=strategy)

    @app.post("/api/categorize", response_model=CategorizationResult)
    def categorize(request: CategorizeRequest):
        """Categorize items into the shared taxonomy."""
        return orchestrator.categorize(
            request.items,
            predefined_categories=request.predefined_categories,
            context=request.context,
            naming_format=request.naming_format,
        )

    @app.get("/api/taxonomy/stats", response_model=TaxonomyStatistics)
    def taxonomy_stats():
        return orchestrator.get_taxonomy().get_statistics()

    @app.get("/api/taxonomy/export", response_model=TaxonomySnapshot)
    def taxonomy_export():
        return orchestrator.get_taxonomy().export_snapshot()

    @app.post("/api/taxonomy/import", response_model=TaxonomyStatistics)
    def taxonomy_import(snapshot: TaxonomySnapshot):
        """Replace the taxonomy with ``snapshot``."""
        manager = orchestrator.get_taxonomy()
        manager.import_snapshot(snapshot)
        return manager.get_statistics()

    @app.post("/api/taxonomy/reset", response_model=TaxonomyStatistics)
    def taxonomy_reset():
        manager = orchestrator.get_taxonomy()
        manager.reset()
        return manager.get_statistics()

    return app
