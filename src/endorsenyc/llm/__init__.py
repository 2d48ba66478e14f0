from .client import web_search_completion

__all__ = ["web_search_completion"]
