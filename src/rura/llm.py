from __future__ import annotations

from collections.abc import AsyncIterator
import json
import logging
from typing import Any, Protocol

import httpx

from rura.services.rag.types import GenerationRequest

logger = logging.getLogger(__name__)

PROMPT = (
    "You are a customer support agent, programmed to offer highly accurate and helpful "
    "assistance. Your responses should be strictly based on factual information, presented "
    "in a friendly yet concise manner. Utilize only the context information provided below, "
    "without drawing on any prior knowledge. Your goal is to address the query directly and "
    "efficiently, ensuring clarity and relevance in your answer.\n"
    "Context:\n"
    "{context}\n"
    "\n"
    "Question: {question}\n"
    "Helpful answer thats includes a heading derived from the question:"
)

PROMPT_SUMMARY = (
    "Your role as an advanced summarization agent involves distilling the provided context "
    "information into a concise and precise format. Emphasize extracting and synthesizing the "
    "main points and critical details, presenting them in a clear, compact form. In your output, "
    "seamlessly integrate these key elements without explicitly labeling the output as a summary "
    "or indicating the summarization process.\n"
    "Context:\n"
    "{context}\n"
)


class LLMClientError(RuntimeError):
    pass


class GenerationStreamError(RuntimeError):
    """The stream started but could not be read to its final frame."""

    def __init__(self, reason: str, partial: str = "") -> None:
        super().__init__(reason)
        self.reason = reason
        self.partial = partial


class LLMClient(Protocol):
    def stream(self, request: GenerationRequest) -> AsyncIterator[str]: ...

    async def generate(self, request: GenerationRequest) -> str: ...


def _parse_frame(line: str) -> dict[str, Any]:
    try:
        frame = json.loads(line)
    except ValueError as exc:
        raise ValueError(f"malformed stream frame: {line[:80]!r}") from exc
    if not isinstance(frame, dict):
        raise ValueError("malformed stream frame: expected an object")
    return frame


class OllamaGenerationClient:
    def __init__(
        self,
        *,
        base_url: str,
        timeout_seconds: float = 120.0,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        self._base_url = base_url.rstrip("/")
        self._timeout_seconds = timeout_seconds
        self._client = client or httpx.AsyncClient()
        self._owns_client = client is None

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()

    async def stream(self, request: GenerationRequest) -> AsyncIterator[str]:
        partial: list[str] = []
        opened = False
        try:
            async with self._client.stream(
                "POST",
                f"{self._base_url}/api/generate",
                json={"model": request.model, "prompt": request.prompt, "stream": True},
                timeout=self._timeout_seconds,
            ) as response:
                if response.status_code >= 400:
                    await response.aread()
                    raise LLMClientError(
                        f"generation request failed with HTTP {response.status_code}: "
                        f"{response.text.strip()[:200]}"
                    )
                opened = True

                async for line in response.aiter_lines():
                    if not line.strip():
                        continue
                    try:
                        frame = _parse_frame(line)
                    except ValueError as exc:
                        raise GenerationStreamError(str(exc), "".join(partial)) from exc

                    if "error" in frame:
                        raise GenerationStreamError(str(frame["error"]), "".join(partial))

                    token = frame.get("response")
                    if isinstance(token, str) and token:
                        partial.append(token)
                        yield token

                    if frame.get("done") is True:
                        return
        except httpx.TransportError as exc:
            if not opened:
                raise LLMClientError(f"generation service unreachable: {exc}") from exc
            raise GenerationStreamError(
                f"connection lost mid-stream: {exc}", "".join(partial)
            ) from exc
        except httpx.HTTPError as exc:
            if not opened:
                raise LLMClientError(f"generation request failed: {exc}") from exc
            raise GenerationStreamError(f"stream read failed: {exc}", "".join(partial)) from exc

        raise GenerationStreamError("stream ended before the final frame", "".join(partial))

    async def generate(self, request: GenerationRequest) -> str:
        try:
            response = await self._client.post(
                f"{self._base_url}/api/generate",
                json={"model": request.model, "prompt": request.prompt, "stream": False},
                timeout=self._timeout_seconds,
            )
            response.raise_for_status()
        except httpx.HTTPError as exc:
            raise LLMClientError(str(exc)) from exc

        try:
            payload = response.json()
        except ValueError as exc:
            raise LLMClientError("Invalid generation payload: not JSON") from exc

        if isinstance(payload, dict) and "error" in payload:
            raise LLMClientError(str(payload["error"]))
        answer = payload.get("response") if isinstance(payload, dict) else None
        if not isinstance(answer, str):
            raise LLMClientError("Invalid generation payload: missing response")
        return answer.strip()


async def summarize(client: LLMClient, text: str, *, model: str) -> str:
    logger.info("Summarizing %d characters with %s", len(text), model)
    prompt = PROMPT_SUMMARY.format(context=text)
    return await client.generate(GenerationRequest(prompt=prompt, model=model))
