import os
import sys
from typing import Awaitable, Callable

import uvicorn
from starlette.requests import Request
from starlette.responses import JSONResponse
from starlette.types import ASGIApp

# Ensure we can import from backend dir
sys.path.append(os.path.dirname(os.path.abspath(__file__)))

from api.deps import MCP_API_KEY_HEADER, check_api_key
from config import env_int, first_env
from mcp_server import mcp


def apply_mcp_api_key_middleware(app: ASGIApp) -> ASGIApp:
    async def _auth_middleware(request: Request, call_next: Callable[[Request], Awaitable]):
        client = getattr(request, "client", None)
        reason = check_api_key(
            getattr(client, "host", None),
            request.headers.get(MCP_API_KEY_HEADER),
            request.headers.get("Authorization"),
        )
        if reason is not None:
            return JSONResponse(
                status_code=401,
                content={"error": "mcp_sse_auth_failed", "reason": reason},
                headers={"WWW-Authenticate": "Bearer"},
            )
        return await call_next(request)

    app.middleware("http")(_auth_middleware)
    return app


def create_sse_app() -> ASGIApp:
    app = mcp.sse_app("/sse")
    return apply_mcp_api_key_middleware(app)


def main():
    """
    Run the Graph Memory MCP server over SSE (Server-Sent Events) for clients
    that cannot speak stdio.
    """
    print("Initializing Graph Memory SSE Server...")

    app = create_sse_app()

    port = env_int("PORT", 8000, minimum=1)
    host = first_env(["HOST"], "0.0.0.0")

    print(f"Starting SSE Server on http://{host}:{port}")
    print(f"SSE Endpoint: http://{host}:{port}/sse")

    uvicorn.run(app, host=host, port=port)


if __name__ == "__main__":
    main()
