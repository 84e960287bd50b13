import logging
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Any, Dict

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from sqlalchemy.exc import SQLAlchemyError

from api import cleanup_router, exchange_router, graph_router
from config import env_int, first_env
from db import close_graph_client, get_graph_client

API_VERSION = "1.0.0"


def _utc_iso_now() -> str:
    return datetime.now(timezone.utc).isoformat().replace("+00:00", "Z")


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Initialize the graph store on startup, dispose it on shutdown."""
    print("Graph Memory API starting...")

    try:
        client = get_graph_client()
        await client.init_db()
        print("Graph database initialized.")
    except (SQLAlchemyError, RuntimeError, ValueError) as e:
        print(f"Failed to initialize graph database: {e}")
        raise RuntimeError("Failed to initialize graph database during startup") from e

    yield

    print("Closing database connections...")
    await close_graph_client()


app = FastAPI(
    title="Graph Memory API",
    description="Knowledge graph long-term memory for AI agents",
    version=API_VERSION,
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(graph_router)
app.include_router(exchange_router)
app.include_router(cleanup_router)


@app.get("/")
async def root():
    return {
        "message": "Graph Memory API",
        "version": API_VERSION,
        "docs": "/docs",
    }


@app.get("/health")
async def health():
    payload: Dict[str, Any] = {
        "status": "ok",
        "timestamp": _utc_iso_now(),
    }
    try:
        client = get_graph_client()
        payload["graph"] = await client.graph_stats()
        payload["vector_enabled"] = client.vector_enabled()
    except SQLAlchemyError as e:
        payload["status"] = "degraded"
        payload["graph"] = {"reason": str(e)}
    return payload


if __name__ == "__main__":
    import uvicorn

    logging.basicConfig(level=logging.INFO)
    uvicorn.run(
        app,
        host=first_env(["HOST"], "0.0.0.0"),
        port=env_int("PORT", 8000, minimum=1),
    )
