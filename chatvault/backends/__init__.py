"""
AI-completion backends for chatvault.
Anything speaking the OpenAI chat-completions API works through
OpenAICompatibleBackend.
"""
import logging

from chatvault.backends.base import BackendError, BackendResponse, BaseBackend
from chatvault.backends.openai_compat import OpenAICompatibleBackend

logger = logging.getLogger(__name__)


def create_backend(cfg: dict) -> BaseBackend | None:
    """Instantiate the configured backend from the `backend` config section."""
    backend_cfg = cfg.get("backend", {})
    url = backend_cfg.get("url", "")
    if not url:
        logger.warning("No backend url configured")
        return None

    return OpenAICompatibleBackend(
        name=backend_cfg.get("name", "default"),
        url=url,
        timeout=backend_cfg.get("timeout", 120),
        default_model=backend_cfg.get("default_model", ""),
        api_key=backend_cfg.get("api_key", ""),
    )


__all__ = [
    "BackendError",
    "BackendResponse",
    "BaseBackend",
    "OpenAICompatibleBackend",
    "create_backend",
]
