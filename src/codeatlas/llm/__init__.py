"""Generative text backends and the generation gateway.

Supports Google Gemini (REST via httpx) and OpenAI or any
OpenAI-compatible server.
"""

from .backends import (  # noqa: F401
    DEFAULT_BACKEND,
    SUPPORTED_BACKENDS,
    default_model_for,
    get_backend,
)
from .gateway import (  # noqa: F401
    CredentialPool,
    GenerationGateway,
    extract_json,
    is_rate_limited,
)
