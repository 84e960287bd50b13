from .graph_client import GraphClient, get_graph_client, close_graph_client

__all__ = ["GraphClient", "get_graph_client", "close_graph_client"]
