"""
Text generation for the chatflow engine.
"""

from .ollama_client import OllamaClient, OllamaConnectionError, OllamaModelError
from .text_responder import (
    FALLBACK_RESPONSE,
    CannedTextResponder,
    GenerationOptions,
    OllamaTextResponder,
    TextResponder
)

__all__ = [
    'OllamaClient',
    'OllamaConnectionError',
    'OllamaModelError',
    'FALLBACK_RESPONSE',
    'CannedTextResponder',
    'GenerationOptions',
    'OllamaTextResponder',
    'TextResponder'
]
