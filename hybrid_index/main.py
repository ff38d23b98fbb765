from contextlib import asynccontextmanager

from fastapi import FastAPI

from hybrid_index.api.routers.knowledge_bases import router as knowledge_bases_router
from hybrid_index.core.logging_config import configure_logging
from hybrid_index.services.knowledge_base_service import KnowledgeBaseService


def create_app(service: KnowledgeBaseService | None = None) -> FastAPI:
    @asynccontextmanager
    async def lifespan(app: FastAPI):
        yield
        app.state.knowledge_bases.close()

    app = FastAPI(title="Vector DB (Hybrid LSH + K-means)", lifespan=lifespan)
    app.state.knowledge_bases = service or KnowledgeBaseService()
    app.include_router(knowledge_bases_router, prefix="/vector_db/knowledge_bases", tags=["knowledge_bases"])
    return app


configure_logging()
app = create_app()
