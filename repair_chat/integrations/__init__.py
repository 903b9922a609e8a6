from .langfuse import LangfuseClient

__all__ = ["LangfuseClient"]
