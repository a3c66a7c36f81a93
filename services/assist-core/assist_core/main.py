"""
Assist Core - AI conversation & escalation engine
"""
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from assist_core import __version__
from assist_core.core.config import settings
from assist_core.core.logging import configure_logging
from assist_core.api.v1 import assist, events, knowledge, webhooks

configure_logging()

app = FastAPI(
    title="Assist Core API",
    description="AI-assisted conversations, escalation and lifecycle events",
    version=__version__,
)

# CORS middleware
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.allowed_origins_list,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# API routes
app.include_router(assist.router, prefix="/v1/assist", tags=["assist"])
app.include_router(events.router, prefix="/v1/ai-events", tags=["ai-events"])
app.include_router(knowledge.router, prefix="/v1/knowledge-bases", tags=["knowledge-bases"])
app.include_router(webhooks.router, prefix="/v1/webhooks", tags=["webhooks"])


@app.get("/health")
async def health_check():
    return {"status": "healthy", "service": settings.APP_NAME}


@app.get("/")
async def root():
    return {
        "service": settings.APP_NAME,
        "version": __version__,
        "docs": "/docs"
    }
