"""
OpsDesk Server

FastAPI server exposing the router and the harvester over HTTP.

Endpoints:
- GET /health: Health check
- GET /sources: Knowledge sources and their state
- GET /sources/{name}/groups: Item counts per group in one source
- POST /ask: Answer a question
- POST /ask/stream: Answer a question as server-sent events
- POST /classify: Show how a question would be routed
- POST /harvest/run: Run one harvest pass now
- GET /stats: Source, lookup and harvest statistics

State lives on ``app.state`` and is built in the lifespan handler unless
pre-built components are passed to create_app().
"""

import asyncio
import json
import logging
from contextlib import asynccontextmanager
from dataclasses import asdict
from datetime import datetime, timezone
from typing import AsyncIterator, Dict, List, Optional

from dotenv import load_dotenv
from fastapi import FastAPI, HTTPException, Request
from fastapi.responses import StreamingResponse
from pydantic import BaseModel, Field

from .common.config import OpsDeskConfig, ensure_directories, load_config
from .common.errors import PersistenceError
from .harvester import HarvestJob, JiraFactSource, ProcessedStore
from .retriever.context import KnowledgeContext, build_composer, build_context
from .retriever.router import AgentRouter
from .retriever.streaming import AnswerStream, StreamStatus

logger = logging.getLogger("opsdesk.server")


# =============================================================================
# Request/Response Models
# =============================================================================

class ChatTurn(BaseModel):
    """One previous message in the conversation"""
    role: str = Field(..., pattern="^(user|assistant)$")
    content: str


class AskRequest(BaseModel):
    """Question with optional conversation history"""
    question: str = Field(..., min_length=1)
    history: List[ChatTurn] = Field(default_factory=list)


class ClassifyRequest(BaseModel):
    question: str


# =============================================================================
# Component wiring
# =============================================================================

def build_harvest_job(config: OpsDeskConfig, context: KnowledgeContext) -> Optional[HarvestJob]:
    """Harvest job for the configured Jira site, or None if not configured"""
    hc = config.harvester
    if not hc.jira_base_url:
        logger.info("Harvester not configured (no Jira base URL)")
        return None

    connector = context.get_connector(hc.target_source)
    if connector is None:
        logger.warning("Harvest target source %s is not enabled", hc.target_source)
        return None

    source = JiraFactSource(
        base_url=hc.jira_base_url,
        username=hc.jira_username,
        api_token=hc.jira_api_token,
        project=hc.jira_project,
        jql=hc.jira_jql,
    )
    return HarvestJob(
        source=source,
        connector=connector,
        store=ProcessedStore(hc.state_dir, name=source.source_name),
        period_seconds=hc.period_seconds,
    )


def create_app(
    config: Optional[OpsDeskConfig] = None,
    context: Optional[KnowledgeContext] = None,
    router: Optional[AgentRouter] = None,
    harvest_job: Optional[HarvestJob] = None,
) -> FastAPI:
    """
    Create the FastAPI application.

    Components not passed in are built from configuration at startup.
    """

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """Initialize components on startup"""
        logger.info("Starting up...")
        cfg = config
        if cfg is None:
            ensure_directories()
            cfg = load_config()
            ensure_directories(cfg)

        ctx = context or (router and router.context) or build_context(cfg)
        status = await ctx.initialize()
        logger.info("Sources initialized: %s", status)

        app.state.config = cfg
        app.state.context = ctx
        app.state.router = router or AgentRouter(ctx, composer=build_composer(cfg))

        job = harvest_job
        if job is None and context is None and router is None:
            job = build_harvest_job(cfg, ctx)
        app.state.harvest_job = job
        if job is not None and cfg.harvester.enabled:
            job.start()

        logger.info("Ready to answer questions")

        yield

        # Cleanup
        logger.info("Shutting down...")
        if app.state.harvest_job is not None:
            await app.state.harvest_job.stop()

    app = FastAPI(
        title="OpsDesk",
        description="Knowledge retrieval and query routing for IT operations",
        version="0.1.0",
        lifespan=lifespan,
    )
    _register_routes(app)
    return app


def _sse(event: str, data: Dict) -> str:
    return f"event: {event}\ndata: {json.dumps(data, ensure_ascii=False)}\n\n"


async def _sse_events(stream: AnswerStream) -> AsyncIterator[str]:
    """Relay a stream as SSE, always ending with a done or error event"""
    try:
        async for fragment in stream:
            yield _sse("chunk", {"text": fragment})
    except (asyncio.CancelledError, GeneratorExit):
        # Client went away
        await stream.aclose()
        raise

    meta = {
        "status": stream.status.value,
        "route": stream.route.value if stream.route else None,
        "cited_sources": [asdict(c) for c in stream.cited_sources],
        "warnings": list(stream.warnings),
    }
    if stream.status == StreamStatus.COMPLETE:
        yield _sse("done", meta)
    else:
        yield _sse("error", {**meta, "error": stream.error or stream.status.value})


# =============================================================================
# Endpoints
# =============================================================================

def _register_routes(app: FastAPI) -> None:

    @app.get("/health")
    async def health(request: Request):
        """Health check endpoint"""
        ctx: KnowledgeContext = request.app.state.context
        return {
            "status": "healthy",
            "service": "opsdesk",
            "sources": list(ctx.connectors),
            "lookup_available": ctx.lookup.is_available,
            "harvester": request.app.state.harvest_job is not None,
        }

    @app.get("/sources")
    async def sources(request: Request):
        """List knowledge sources in priority order"""
        ctx: KnowledgeContext = request.app.state.context
        return {
            "priority": list(ctx.priority),
            "sources": [c.stats() for c in ctx.connectors.values()],
        }

    @app.get("/sources/{name}/groups")
    async def source_groups(name: str, request: Request):
        """Active item count per group in one source"""
        ctx: KnowledgeContext = request.app.state.context
        connector = ctx.get_connector(name)
        if connector is None:
            raise HTTPException(status_code=404, detail=f"Unknown source: {name}")
        return {"source": name, "groups": connector.group_counts()}

    @app.post("/ask")
    async def ask(body: AskRequest, request: Request):
        """Answer a question; failures come back as success=false"""
        router: AgentRouter = request.app.state.router
        history = [turn.model_dump() for turn in body.history]
        response = await router.ask(body.question, history)
        return response.to_dict()

    @app.post("/ask/stream")
    async def ask_stream(body: AskRequest, request: Request):
        """Answer a question as server-sent events"""
        router: AgentRouter = request.app.state.router
        history = [turn.model_dump() for turn in body.history]
        stream = router.ask_streaming(body.question, history)
        return StreamingResponse(_sse_events(stream), media_type="text/event-stream")

    @app.post("/classify")
    async def classify(body: ClassifyRequest, request: Request):
        """Classify a question without answering it"""
        router: AgentRouter = request.app.state.router
        result = router.classify(body.question)
        data = result.to_dict()
        if result.is_specialist:
            data["query_type"] = router.classifier.detect_query_type(body.question, result.codes).value
        return data

    @app.post("/harvest/run")
    async def harvest_run(request: Request):
        """Run one harvest pass now"""
        job: Optional[HarvestJob] = request.app.state.harvest_job
        if job is None:
            raise HTTPException(status_code=503, detail="Harvester not configured")
        try:
            report = await job.run_once()
        except PersistenceError as e:
            logger.error("Harvest failed: %s", e)
            raise HTTPException(status_code=500, detail=str(e))
        return report.to_dict()

    @app.get("/stats")
    async def get_stats(request: Request):
        """Get OpsDesk statistics"""
        ctx: KnowledgeContext = request.app.state.context
        stats = {
            "service": "opsdesk",
            "timestamp": datetime.now(timezone.utc).isoformat(),
            **ctx.stats(),
        }
        job: Optional[HarvestJob] = request.app.state.harvest_job
        if job is not None:
            stats["harvest"] = {
                "running": job.is_running,
                "scheduled": job.is_scheduled,
                "last_report": job.last_report.to_dict() if job.last_report else None,
            }
        return stats


app = create_app()


# =============================================================================
# CLI Entry Point
# =============================================================================

def run_server():
    """Run the OpsDesk server"""
    import uvicorn

    load_dotenv()
    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    config = load_config()
    logger.info("Starting server on %s:%d", config.server.host, config.server.port)
    uvicorn.run(
        "opsdesk.server:app",
        host=config.server.host,
        port=config.server.port,
        reload=False,
    )


if __name__ == "__main__":
    run_server()
