"""
Tests for poebuild/ollama_client.py – Ollama HTTP wrapper and build
reconstruction (mocked).

``httpx.Client`` is patched so no Ollama server is needed.  Tests verify the
outgoing request body as well as how failures are mapped onto
``ReconstructionError``.
"""

from __future__ import annotations

import json
import logging
from unittest.mock import patch

import httpx
import pytest

from poebuild.errors import ReconstructionError
from poebuild.ollama_client import (
    RECONSTRUCTION_PROMPT,
    load_prompt,
    ollama_generate,
    reconstruct_build_document,
)

HOST = "http://ollama.test:11434"
BUILD_DATA = {
    "character": {"name": "Hettii_Witch", "class": "Occultist", "level": 92},
    "items": [{"id": "abc", "inventoryId": "Weapon"}],
    "passiveSkills": {"hashes": [1, 2, 3]},
}


def _mock_response(json_data: dict, status_code: int = 200) -> httpx.Response:
    return httpx.Response(
        status_code=status_code,
        json=json_data,
        request=httpx.Request("POST", f"{HOST}/api/generate"),
    )


def _wire(mock_client_cls, response=None, side_effect=None) -> None:
    mock_client_cls.return_value.__enter__ = lambda s: s
    mock_client_cls.return_value.__exit__ = lambda s, *a: None
    if side_effect is not None:
        mock_client_cls.return_value.post.side_effect = side_effect
    else:
        mock_client_cls.return_value.post.return_value = response


# ── ollama_generate ──────────────────────────────────────────────────────────


class TestOllamaGenerate:
    def test_successful_generation(self) -> None:
        """Happy path: valid Ollama response returns stripped text and usage."""
        mock_resp = _mock_response(
            {"response": "  <PathOfBuilding/>  ", "prompt_eval_count": 100, "eval_count": 25}
        )

        with patch("poebuild.ollama_client.httpx.Client") as mock_client_cls:
            _wire(mock_client_cls, mock_resp)
            text, usage = ollama_generate(
                model="gemma2:9b",
                system_prompt="You convert builds.",
                user_json_str="{}",
                temperature=0.0,
                max_tokens=512,
                seed=0,
                host=HOST,
            )

        assert text == "<PathOfBuilding/>"
        assert usage == {"prompt_eval_count": 100, "eval_count": 25}

    def test_request_body_and_url(self) -> None:
        with patch("poebuild.ollama_client.httpx.Client") as mock_client_cls:
            _wire(mock_client_cls, _mock_response({"response": "x"}))
            ollama_generate(
                model="gemma2:9b",
                system_prompt="sp",
                user_json_str='{"items": []}',
                temperature=0.3,
                max_tokens=100,
                seed=7,
                host=HOST + "/",
            )

            call_args = mock_client_cls.return_value.post.call_args

        assert call_args.args[0] == f"{HOST}/api/generate"
        body = call_args.kwargs["json"]
        assert body["model"] == "gemma2:9b"
        assert body["system"] == "sp"
        assert body["prompt"] == '{"items": []}'
        assert body["stream"] is False
        assert body["options"] == {"temperature": 0.3, "num_predict": 100, "seed": 7}

    def test_missing_response_key_raises(self) -> None:
        with patch("poebuild.ollama_client.httpx.Client") as mock_client_cls:
            _wire(mock_client_cls, _mock_response({"model": "test", "done": True}))
            with pytest.raises(ValueError, match="missing the 'response' key"):
                ollama_generate(
                    model="test",
                    system_prompt="sp",
                    user_json_str="{}",
                    temperature=0.1,
                    max_tokens=50,
                    seed=42,
                    host=HOST,
                )

    def test_http_error_propagates(self) -> None:
        mock_resp = httpx.Response(
            status_code=404,
            text="model not found",
            request=httpx.Request("POST", f"{HOST}/api/generate"),
        )
        with patch("poebuild.ollama_client.httpx.Client") as mock_client_cls:
            _wire(mock_client_cls, mock_resp)
            with pytest.raises(httpx.HTTPStatusError):
                ollama_generate(
                    model="missing",
                    system_prompt="sp",
                    user_json_str="{}",
                    temperature=0.1,
                    max_tokens=50,
                    seed=42,
                    host=HOST,
                )

    def test_default_timeouts(self) -> None:
        with patch("poebuild.ollama_client.httpx.Client") as mock_client_cls:
            _wire(mock_client_cls, _mock_response({"response": "x"}))
            ollama_generate(
                model="m",
                system_prompt="sp",
                user_json_str="{}",
                temperature=0.0,
                max_tokens=50,
                seed=0,
                host=HOST,
            )
            timeout = mock_client_cls.call_args.kwargs["timeout"]

        assert timeout.connect == 10.0
        assert timeout.read == 120.0

    def test_timeout_clipped_to_budget(self) -> None:
        with patch("poebuild.ollama_client.httpx.Client") as mock_client_cls:
            _wire(mock_client_cls, _mock_response({"response": "x"}))
            ollama_generate(
                model="m",
                system_prompt="sp",
                user_json_str="{}",
                temperature=0.0,
                max_tokens=50,
                seed=0,
                host=HOST,
                timeout=3.0,
            )
            timeout = mock_client_cls.call_args.kwargs["timeout"]

        assert timeout.connect == 3.0
        assert timeout.read == 3.0


# ── prompts ──────────────────────────────────────────────────────────────────


class TestLoadPrompt:
    def test_reconstruction_prompt_ships_with_package(self) -> None:
        prompt = load_prompt(RECONSTRUCTION_PROMPT)
        assert "<PathOfBuilding" in prompt

    def test_missing_prompt_raises(self) -> None:
        with pytest.raises(FileNotFoundError, match="not_a_prompt"):
            load_prompt("not_a_prompt")


# ── reconstruct_build_document ───────────────────────────────────────────────


class TestReconstructBuildDocument:
    def test_returns_document_and_sends_build_data(self) -> None:
        document = '<PathOfBuilding><Build level="92"/></PathOfBuilding>'
        with patch("poebuild.ollama_client.httpx.Client") as mock_client_cls:
            _wire(mock_client_cls, _mock_response({"response": document, "eval_count": 10}))
            result = reconstruct_build_document(BUILD_DATA, model="gemma2:9b", host=HOST)
            body = mock_client_cls.return_value.post.call_args.kwargs["json"]

        assert result == document
        assert json.loads(body["prompt"]) == BUILD_DATA
        assert body["options"]["temperature"] == 0.0
        assert body["system"] == load_prompt(RECONSTRUCTION_PROMPT)

    def test_markdown_fence_is_stripped(self) -> None:
        fenced = "```xml\n<PathOfBuilding><Build/></PathOfBuilding>\n```"
        with patch("poebuild.ollama_client.httpx.Client") as mock_client_cls:
            _wire(mock_client_cls, _mock_response({"response": fenced}))
            result = reconstruct_build_document(BUILD_DATA, model="m", host=HOST)

        assert result == "<PathOfBuilding><Build/></PathOfBuilding>"

    def test_non_document_output_raises(self) -> None:
        with patch("poebuild.ollama_client.httpx.Client") as mock_client_cls:
            _wire(mock_client_cls, _mock_response({"response": "Sure! Here's your build."}))
            with pytest.raises(ReconstructionError, match="does not start with <PathOfBuilding"):
                reconstruct_build_document(BUILD_DATA, model="m", host=HOST)

    def test_http_error_mapped(self) -> None:
        mock_resp = httpx.Response(
            status_code=500,
            text="boom",
            request=httpx.Request("POST", f"{HOST}/api/generate"),
        )
        with patch("poebuild.ollama_client.httpx.Client") as mock_client_cls:
            _wire(mock_client_cls, mock_resp)
            with pytest.raises(ReconstructionError, match="HTTP 500"):
                reconstruct_build_document(BUILD_DATA, model="m", host=HOST)

    def test_timeout_mapped(self) -> None:
        with patch("poebuild.ollama_client.httpx.Client") as mock_client_cls:
            _wire(mock_client_cls, side_effect=httpx.ReadTimeout("slow"))
            with pytest.raises(ReconstructionError, match="timed out"):
                reconstruct_build_document(BUILD_DATA, model="m", host=HOST)

    def test_connection_error_mapped(self) -> None:
        with patch("poebuild.ollama_client.httpx.Client") as mock_client_cls:
            _wire(mock_client_cls, side_effect=httpx.ConnectError("refused"))
            with pytest.raises(ReconstructionError, match="unreachable"):
                reconstruct_build_document(BUILD_DATA, model="m", host=HOST)

    def test_missing_response_key_mapped(self) -> None:
        with patch("poebuild.ollama_client.httpx.Client") as mock_client_cls:
            _wire(mock_client_cls, _mock_response({"done": True}))
            with pytest.raises(ReconstructionError, match="missing the 'response' key"):
                reconstruct_build_document(BUILD_DATA, model="m", host=HOST)

    def test_budget_bounds_the_request(self) -> None:
        with patch("poebuild.ollama_client.httpx.Client") as mock_client_cls:
            _wire(mock_client_cls, _mock_response({"response": "<PathOfBuilding/>"}))
            reconstruct_build_document(BUILD_DATA, model="m", host=HOST, timeout=7.5)
            timeout = mock_client_cls.call_args.kwargs["timeout"]

        assert timeout.read == 7.5
        assert timeout.connect == 7.5

    def test_success_is_logged(self, caplog: pytest.LogCaptureFixture) -> None:
        with patch("poebuild.ollama_client.httpx.Client") as mock_client_cls:
            _wire(mock_client_cls, _mock_response({"response": "<PathOfBuilding/>", "eval_count": 3}))
            with caplog.at_level(logging.INFO, logger="poebuild.ollama_client"):
                reconstruct_build_document(BUILD_DATA, model="gemma2:9b", host=HOST)

        assert "gemma2:9b" in caplog.text
