"""Top SQL tags, storage, top-K aggregation, queries, WSGI service and topology controller."""

__version__ = "0.1.0"
__all__ = ["tag", "store", "models", "topk", "query", "service", "controller"]