"""
Shared Ollama utilities: base URL resolution, model probe and auto-pull.
"""

import json
import logging
import os
import sys

import requests

logger = logging.getLogger(__name__)

DEFAULT_OLLAMA_URL = "http://localhost:11434"


def ollama_base_url(base_url: str | None = None) -> str:
    """Explicit URL, else OLLAMA_HOST, else localhost. No trailing slash."""
    url = base_url or os.environ.get("OLLAMA_HOST") or DEFAULT_OLLAMA_URL
    if not url.startswith(("http://", "https://")):
        # OLLAMA_HOST is often given as host:port
        url = f"http://{url}"
    return url.rstrip("/")


def _installed_models(base_url: str, timeout: float) -> set[str]:
    resp = requests.get(f"{base_url}/api/tags", timeout=timeout)
    resp.raise_for_status()
    return {m["name"] for m in resp.json().get("models", [])}


def _is_installed(model: str, installed: set[str]) -> bool:
    # Ollama lists models as "name:tag" and strips :latest on input
    bare = model.split(":")[0] if ":" in model else model
    return any(
        candidate in installed
        for candidate in (model, f"{model}:latest", bare, f"{bare}:latest")
    )


def ollama_model_available(base_url: str, model: str, timeout: float = 2.0) -> bool:
    """Probe whether Ollama is reachable and has the model installed. Never raises."""
    try:
        return _is_installed(model, _installed_models(base_url, timeout))
    except (requests.RequestException, ValueError, KeyError, TypeError) as e:
        logger.debug("Ollama probe failed at %s: %s", base_url, e)
        return False


def _pull_progress(resp: requests.Response, model: str) -> None:
    """Echo Ollama's streamed pull status lines to stderr."""
    previous = None
    for raw in resp.iter_lines():
        if not raw:
            continue
        try:
            event = json.loads(raw)
        except json.JSONDecodeError:
            continue

        if event.get("error"):
            sys.stderr.write("\n")
            raise RuntimeError(f"Ollama could not pull {model!r}: {event['error']}")

        status = event.get("status", "")
        done, total = event.get("completed", 0), event.get("total", 0)
        if total and done:
            sys.stderr.write(f"\r  {status}: {done * 100 // total}%")
        elif status != previous:
            sys.stderr.write(f"\n  {status}")
        else:
            continue
        sys.stderr.flush()
        previous = status

    sys.stderr.write(f"\n  {model} is ready.\n")


def ollama_ensure_model(base_url: str, model: str) -> None:
    """Pull `model` into the Ollama server unless it already has it.

    Progress goes to stderr. RuntimeError when Ollama is unreachable or
    the pull fails.
    """
    try:
        installed = _installed_models(base_url, timeout=5)
    except requests.RequestException as e:
        raise RuntimeError(f"Ollama is not reachable at {base_url} (try `ollama serve`)") from e

    if _is_installed(model, installed):
        return

    logger.info("Pulling Ollama model %s", model)
    sys.stderr.write(f"Pulling Ollama model {model!r}, first use only...")
    try:
        resp = requests.post(
            f"{base_url}/api/pull",
            json={"name": model, "stream": True},
            stream=True,
            timeout=600,
        )
        resp.raise_for_status()
    except requests.RequestException as e:
        raise RuntimeError(f"Ollama pull of {model!r} failed: {e}") from e

    with resp:
        _pull_progress(resp, model)
