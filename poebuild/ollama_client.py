"""
poebuild/ollama_client.py
-----------------------------------------------------------------------------
Thin synchronous wrapper around the Ollama HTTP API, used for the last-resort
build reconstruction.

When the import service cannot produce a share code, the cascade fetches the
character's raw item and passive-tree JSON from the official site and asks
an LLM to rewrite it as Path of Building XML.  The cascade treats this as an
opaque function: structured JSON in, text out.  The only contract checked
here is that the text starts with the document root marker.

Ollama /api/generate reference
-------------------------------
POST {host}/api/generate
{
    "model":   "<model-name>",
    "prompt":  "<user turn – the character JSON string>",
    "system":  "<system prompt text>",
    "options": {"temperature": <float>, "num_predict": <int>, "seed": <int>},
    "stream":  false
}

Response (non-streaming):
{
    "model": "...",
    "response": "<generated text>",
    "prompt_eval_count": <int>,
    "eval_count": <int>,
    ...
}

Prompts
-------
System prompts live in ``poebuild/prompts/`` as plain UTF-8 text files.
"""

from __future__ import annotations

import json
import logging
import re
from pathlib import Path
from typing import Any

import httpx

from poebuild.codec import DOCUMENT_ROOT_MARKER
from poebuild.errors import ReconstructionError

logger = logging.getLogger(__name__)

# -----------------------------------------------------------------------------
# Configuration
# -----------------------------------------------------------------------------

_HERE = Path(__file__).parent
PROMPTS_DIR = _HERE / "prompts"
RECONSTRUCTION_PROMPT = "reconstruction_v01"

# How long (seconds) to wait for Ollama to accept the connection.
_CONNECT_TIMEOUT: float = 10.0

# How long to wait for the *entire* response body.  A full build document
# is long, so this is generous.
_READ_TIMEOUT: float = 120.0

# A full Path of Building document easily runs to thousands of tokens.
_MAX_TOKENS: int = 8192

# Models sometimes wrap the XML in a markdown fence despite instructions.
_FENCE = re.compile(r"^```[a-zA-Z]*\s*\n(.*?)\n?```\s*$", re.DOTALL)


# -----------------------------------------------------------------------------
# Public API
# -----------------------------------------------------------------------------


def load_prompt(name: str) -> str:
    """
    Load a named prompt text file from ``poebuild/prompts/``.

    Raises
    ------
    FileNotFoundError : If the prompt does not exist (broken deployment).
    """
    path = PROMPTS_DIR / f"{name}.txt"
    if not path.exists():
        raise FileNotFoundError(f"Prompt '{name}' not found at {path}")
    return path.read_text(encoding="utf-8").strip()


def ollama_generate(
    *,
    model: str,
    system_prompt: str,
    user_json_str: str,
    temperature: float,
    max_tokens: int,
    seed: int,
    host: str,
    timeout: float | None = None,
) -> tuple[str, dict]:
    """
    Call the Ollama /api/generate endpoint and return the generated text.

    Parameters
    ----------
    model         : Ollama model identifier, e.g. "gemma2:9b".
    system_prompt : The system-role text that constrains LLM behaviour.
    user_json_str : The character data serialised as a JSON string.
    temperature   : Sampling temperature; lower = more deterministic.
    max_tokens    : Maximum tokens the model may generate.
    seed          : RNG seed forwarded to ``options.seed``.
    host          : Ollama base URL; a trailing slash is ignored.
    timeout       : Overall budget in seconds.  When given, the connect and
                    read timeouts are clipped to it.

    Returns
    -------
    A tuple of the stripped generated text and a usage dict with the keys
    "prompt_eval_count" and "eval_count" (values may be None).

    Raises
    ------
    httpx.HTTPStatusError  : If Ollama returns a non-2xx response.
    httpx.TimeoutException : If the request times out.
    ValueError             : If the response lacks the "response" key.
    """
    url = f"{host.rstrip('/')}/api/generate"

    body: dict = {
        "model": model,
        "prompt": user_json_str,
        "system": system_prompt,
        "options": {
            "temperature": temperature,
            "num_predict": max_tokens,
            "seed": seed,
        },
        "stream": False,
    }

    connect_timeout, read_timeout = _CONNECT_TIMEOUT, _READ_TIMEOUT
    if timeout is not None:
        connect_timeout = min(connect_timeout, timeout)
        read_timeout = min(read_timeout, timeout)
    client_timeout = httpx.Timeout(connect=connect_timeout, read=read_timeout, write=5.0, pool=5.0)

    with httpx.Client(timeout=client_timeout) as client:
        response = client.post(url, json=body)
        response.raise_for_status()

    data: dict = response.json()

    if "response" not in data:
        raise ValueError(
            f"Ollama response for model '{model}' is missing the 'response' key. "
            f"Got keys: {list(data.keys())}"
        )

    usage: dict = {
        "prompt_eval_count": data.get("prompt_eval_count"),
        "eval_count": data.get("eval_count"),
    }
    return data["response"].strip(), usage


def _strip_fence(text: str) -> str:
    match = _FENCE.match(text.strip())
    return match.group(1).strip() if match else text.strip()


def reconstruct_build_document(
    build_data: dict[str, Any],
    *,
    model: str,
    host: str,
    timeout: float | None = None,
) -> str:
    """
    Ask the LLM to turn raw character JSON into Path of Building XML.

    Parameters
    ----------
    build_data : ``{"items": [...], "character": {...}, "passiveSkills": {...}}``
                 as fetched from the official character-window endpoints.
    model      : Ollama model identifier.
    host       : Ollama base URL.
    timeout    : Seconds left in the request budget, or None for the defaults.

    Returns
    -------
    str : The document text, starting with ``<PathOfBuilding``.

    Raises
    ------
    ReconstructionError : On any transport failure, malformed Ollama reply,
                          or output that is not a build document.
    """
    system_prompt = load_prompt(RECONSTRUCTION_PROMPT)
    user_json_str = json.dumps(build_data, ensure_ascii=False, indent=2)

    try:
        text, usage = ollama_generate(
            model=model,
            system_prompt=system_prompt,
            user_json_str=user_json_str,
            temperature=0.0,
            max_tokens=_MAX_TOKENS,
            seed=0,
            host=host,
            timeout=timeout,
        )
    except httpx.HTTPStatusError as exc:
        raise ReconstructionError(
            f"Ollama returned HTTP {exc.response.status_code}"
        ) from exc
    except httpx.TimeoutException as exc:
        raise ReconstructionError("Ollama request timed out") from exc
    except httpx.TransportError as exc:
        raise ReconstructionError(f"Ollama unreachable: {type(exc).__name__}: {exc}") from exc
    except ValueError as exc:
        raise ReconstructionError(str(exc)) from exc

    document = _strip_fence(text)
    if not document.startswith(DOCUMENT_ROOT_MARKER):
        raise ReconstructionError(
            f"model output does not start with {DOCUMENT_ROOT_MARKER} "
            f"(got {len(document)} characters)"
        )
    logger.info(
        "Reconstructed build document with %s (%s output tokens)",
        model,
        usage.get("eval_count"),
    )
    return document
