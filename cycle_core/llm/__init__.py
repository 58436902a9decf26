"""
Language-model backend client for cycleCore.
"""

from .client import LLMClient, LLMClientError

__all__ = ["LLMClient", "LLMClientError"]
