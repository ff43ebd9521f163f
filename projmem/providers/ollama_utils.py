"""
Shared Ollama utilities: server address and model availability check.
"""

import logging
import os

import requests

logger = logging.getLogger(__name__)

DEFAULT_OLLAMA_URL = "http://localhost:11434"


def ollama_base_url(base_url: str | None = None) -> str:
    """Resolve the Ollama server URL from the argument, OLLAMA_HOST, or default."""
    url = base_url or os.environ.get("OLLAMA_HOST") or DEFAULT_OLLAMA_URL
    if not url.startswith(("http://", "https://")):
        url = f"http://{url}"
    return url.rstrip("/")


def ollama_require_model(base_url: str, model: str) -> None:
    """Check that an Ollama model is installed locally.

    Unlike embedding models, generation models are large; projmem never
    pulls one implicitly. Raises RuntimeError with the pull command instead.
    """
    # Ollama lists models as "name:tag" and strips ":latest"
    bare = model.split(":")[0] if ":" in model else model

    try:
        resp = requests.get(f"{base_url}/api/tags", timeout=5)
        resp.raise_for_status()
    except requests.RequestException as e:
        raise RuntimeError(
            f"Cannot reach Ollama at {base_url}. "
            "Is Ollama running? Start it with: ollama serve"
        ) from e

    installed = {m["name"] for m in resp.json().get("models", [])}
    if model in installed or f"{model}:latest" in installed:
        return
    if bare in installed or f"{bare}:latest" in installed:
        return

    logger.info("Ollama model %s not installed at %s", model, base_url)
    raise RuntimeError(
        f"Ollama model '{model}' is not installed. Run: ollama pull {model}"
    )
