from .cleanup import router as cleanup_router
from .exchange import router as exchange_router
from .graph import router as graph_router

__all__ = ["cleanup_router", "exchange_router", "graph_router"]
