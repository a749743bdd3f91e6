from __future__ import annotations

import asyncio
import json
import logging
import os
import re
import time
from abc import ABC, abstractmethod
from typing import Any, AsyncIterator, Callable, Dict, Iterator, List, Optional

import requests
from langchain_openai import ChatOpenAI
from requests.adapters import HTTPAdapter
from urllib3.util.retry import Retry

from ..domain.models import GenerationMode, SamplingParams, UserSettings
from ..errors import ServiceError
from .model_router import ModelRouter, ProviderSelection
from .streaming import iter_in_thread

logger = logging.getLogger(__name__)
LOG = logging.getLogger("chronicle.llm")


_HTTP_TIMEOUT = (
    int(os.getenv("CHRONICLE_LLM_CONNECT_TIMEOUT", "3")),
    int(os.getenv("CHRONICLE_LLM_READ_TIMEOUT", "60")),
)
CONTEXT_CHARS = int(os.getenv("CHRONICLE_CONTEXT_CHARS", "2000"))


class CircuitBreaker:
    """Stops calling a failing provider for a cool-down period.

    Opens after ``threshold`` consecutive failures; the first check after
    ``cooldown`` seconds closes it again and lets traffic through.
    """

    def __init__(self, threshold: int, cooldown: float, clock: Callable[[], float] = time.monotonic) -> None:
        self.threshold = threshold
        self.cooldown = cooldown
        self._clock = clock
        self.failures = 0
        self.opened_at: Optional[float] = None

    def is_open(self) -> bool:
        if self.opened_at is None:
            return False
        if self._clock() - self.opened_at < self.cooldown:
            return True
        self.reset()
        return False

    def record_failure(self) -> None:
        self.failures += 1
        if self.failures >= self.threshold and self.opened_at is None:
            self.opened_at = self._clock()
            LOG.warning("llm_breaker_opened", extra={"fails": self.failures, "cooldown_s": self.cooldown})

    def record_success(self) -> None:
        if self.failures or self.opened_at is not None:
            LOG.info("llm_breaker_closed")
        self.reset()

    def reset(self) -> None:
        self.failures = 0
        self.opened_at = None


BREAKER = CircuitBreaker(
    threshold=int(os.getenv("CHRONICLE_LLM_BREAKER_THRESHOLD", "2")),
    cooldown=float(os.getenv("CHRONICLE_LLM_BREAKER_COOLDOWN", "120.0")),
)


def _build_session() -> requests.Session:
    session = requests.Session()
    retry = Retry(
        total=2,
        backoff_factor=0.5,
        status_forcelist=(429, 500, 502, 503, 504),
        allowed_methods=frozenset(["POST", "GET"]),
    )
    adapter = HTTPAdapter(max_retries=retry, pool_connections=10, pool_maxsize=10)
    session.mount("http://", adapter)
    session.mount("https://", adapter)
    return session


# ----------------------------------------------------------------------
# Prompt construction
# ----------------------------------------------------------------------
TONE_INSTRUCTIONS = {
    "professional": "You are a professional editor. Use formal, concise, and business-appropriate language.",
    "creative": "You are a creative writer. Use evocative, descriptive, and engaging language.",
    "casual": "You are a friendly assistant. Use conversational, easy-to-understand language.",
    "academic": "You are an academic researcher. Use precise, scholarly, and objective language.",
}

LENGTH_INSTRUCTIONS = {
    "short": "Write about 1-2 sentences.",
    "medium": "Write about 3-5 sentences.",
    "long": "Write about 2-3 paragraphs.",
}


def system_instruction(settings: UserSettings) -> str:
    return f"{TONE_INSTRUCTIONS[settings.tone]} Do not repeat the last sentence of the input. Return ONLY the continuation text."


def length_instruction(length: str, mode: GenerationMode) -> str:
    if mode == GenerationMode.LINE:
        return "Write exactly one sentence."
    if mode == GenerationMode.PARAGRAPH:
        return "Write exactly one complete paragraph."
    return LENGTH_INSTRUCTIONS.get(length, "")


def build_prompt(text: str, settings: UserSettings, mode: GenerationMode) -> str:
    """Assemble the continuation prompt from the tail of the document."""
    tail = text[-CONTEXT_CHARS:] if CONTEXT_CHARS > 0 else text
    parts = [
        system_instruction(settings),
        length_instruction(settings.length, mode),
        "",
        "---",
        "Current Text:",
        tail,
        "---",
        "Continuation:",
    ]
    return "\n".join(parts).strip()


def _coerce_text(content: Any) -> str:
    if isinstance(content, str):
        return content
    if isinstance(content, list):
        pieces: List[str] = []
        for part in content:
            if isinstance(part, str):
                pieces.append(part)
            elif isinstance(part, dict) and isinstance(part.get("text"), str):
                pieces.append(part["text"])
        return "".join(pieces)
    return str(content or "")


def _describe_error(exc: BaseException) -> str:
    if isinstance(exc, requests.exceptions.HTTPError) and exc.response is not None:
        return f"Completion request failed ({exc.response.status_code})"
    if isinstance(exc, requests.exceptions.Timeout):
        return "Completion request timed out"
    if isinstance(exc, requests.exceptions.ConnectionError):
        return "Could not reach the completion service"
    return str(exc) or "Failed to generate text"


# ----------------------------------------------------------------------
# Clients
# ----------------------------------------------------------------------
class CompletionService(ABC):
    """Contract the fetch coordinator relies on.

    Both calls raise :class:`ServiceError` on transport or provider failure.
    """

    @abstractmethod
    def stream_completion(self, prompt: str, params: SamplingParams) -> AsyncIterator[str]:
        """Yield text chunks of one continuation as they arrive."""

    @abstractmethod
    async def complete_once(self, prompt: str, params: SamplingParams) -> str:
        """Return one full continuation."""


class LocalLLMClient:
    """Blocking client for a self-hosted OpenAI-compatible or Ollama endpoint."""

    def __init__(self, base_url: str, model: str) -> None:
        self.base_url = base_url.rstrip("/")
        self.model = model
        self._timeout = _HTTP_TIMEOUT
        self._session = _build_session()
        self.api_style = (os.getenv("CHRONICLE_LLM_LOCAL_API") or "auto").lower()

    def invoke(self, prompt: str, temperature: float) -> str:
        if self.api_style == "ollama":
            return self._invoke_ollama(prompt, temperature)
        if self.api_style == "openai":
            return self._invoke_openai(prompt, temperature)
        try:
            return self._invoke_openai(prompt, temperature)
        except requests.exceptions.RequestException as exc:
            LOG.warning(
                "local_llm_openai_failed_switching_to_ollama",
                extra={"base_url": self.base_url, "model": self.model, "err": str(exc)},
            )
            self.api_style = "ollama"
            return self._invoke_ollama(prompt, temperature)

    def stream(self, prompt: str, temperature: float) -> Iterator[str]:
        if self.api_style == "ollama":
            yield from self._stream_ollama(prompt, temperature)
            return
        if self.api_style == "openai":
            yield from self._stream_openai(prompt, temperature)
            return
        started = False
        try:
            for token in self._stream_openai(prompt, temperature):
                started = True
                yield token
        except requests.exceptions.RequestException as exc:
            # Tokens already handed out cannot be taken back.
            if started:
                raise
            LOG.warning(
                "local_llm_stream_openai_failed_switching_to_ollama",
                extra={"base_url": self.base_url, "model": self.model, "err": str(exc)},
            )
            self.api_style = "ollama"
            yield from self._stream_ollama(prompt, temperature)

    def _chat_payload(self, prompt: str, temperature: float, stream: bool) -> Dict[str, Any]:
        return {
            "model": self.model,
            "messages": [{"role": "user", "content": prompt}],
            "temperature": temperature,
            "stream": stream,
        }

    def _invoke_openai(self, prompt: str, temperature: float) -> str:
        LOG.debug("local_llm_invoke", extra={"model": self.model, "base_url": self.base_url})
        resp = self._session.post(
            f"{self.base_url}/v1/chat/completions",
            json=self._chat_payload(prompt, temperature, stream=False),
            timeout=self._timeout,
        )
        resp.raise_for_status()
        data = resp.json()
        choices = data.get("choices") or []
        if choices:
            message = choices[0].get("message") or {}
            content = message.get("content")
            if content:
                return content
        return data.get("response") or data.get("text") or ""

    def _stream_openai(self, prompt: str, temperature: float) -> Iterator[str]:
        LOG.debug("local_llm_stream", extra={"model": self.model, "base_url": self.base_url})
        with self._session.post(
            f"{self.base_url}/v1/chat/completions",
            json=self._chat_payload(prompt, temperature, stream=True),
            timeout=self._timeout,
            stream=True,
        ) as resp:
            resp.raise_for_status()
            for raw_line in resp.iter_lines():
                if not raw_line:
                    continue
                line = raw_line.decode("utf-8") if isinstance(raw_line, bytes) else raw_line
                if not line.startswith("data: "):
                    continue
                data = line[6:].strip()
                if data == "[DONE]":
                    break
                try:
                    parsed = json.loads(data)
                except json.JSONDecodeError:
                    continue
                delta = (parsed.get("choices") or [{}])[0].get("delta") or {}
                token = delta.get("content") or ""
                if token:
                    yield token

    def _invoke_ollama(self, prompt: str, temperature: float) -> str:
        resp = self._session.post(
            f"{self.base_url}/api/generate",
            json={"model": self.model, "prompt": prompt, "stream": False, "options": {"temperature": temperature}},
            timeout=self._timeout,
        )
        resp.raise_for_status()
        data = resp.json()
        return data.get("response") or data.get("text") or ""

    def _stream_ollama(self, prompt: str, temperature: float) -> Iterator[str]:
        LOG.debug("local_llm_stream_ollama", extra={"model": self.model, "base_url": self.base_url})
        with self._session.post(
            f"{self.base_url}/api/generate",
            json={"model": self.model, "prompt": prompt, "stream": True, "options": {"temperature": temperature}},
            timeout=self._timeout,
            stream=True,
        ) as resp:
            resp.raise_for_status()
            for raw_line in resp.iter_lines():
                if not raw_line:
                    continue
                try:
                    data = json.loads(raw_line.decode("utf-8") if isinstance(raw_line, bytes) else raw_line)
                except json.JSONDecodeError:
                    continue
                token = data.get("response") or ""
                if token:
                    yield token
                if data.get("done"):
                    break


def _get_llm(
    purpose: str,
    provider: Optional[str] = None,
    model_hint: Optional[str] = None,
    router: Optional[ModelRouter] = None,
) -> ProviderSelection:
    """Pick the provider for ``purpose`` (or the explicit override) and check it is usable."""
    router = router or ModelRouter()
    if provider:
        try:
            selection = router.resolve_provider(provider)
        except KeyError:
            raise ServiceError(f"Unknown provider override: {provider}")
    else:
        selection = router.maybe_select_provider(purpose)
        if selection is None:
            raise ServiceError("API key is missing.")

    if model_hint:
        selection = selection.with_model(model_hint)
    if selection.requires_api_key and not selection.api_key:
        raise ServiceError("API key is missing.")
    return selection


class LLMCompletionService(CompletionService):
    """Completion service backed by the routed provider.

    Hosted providers go through ``ChatOpenAI``; the local provider uses
    :class:`LocalLLMClient` on a worker thread.
    """

    def __init__(
        self,
        purpose: str = "completion",
        provider: Optional[str] = None,
        model: Optional[str] = None,
        router: Optional[ModelRouter] = None,
    ) -> None:
        self._purpose = purpose
        self._provider = provider
        self._model = model
        self._router = router
        self._selection: Optional[ProviderSelection] = None
        self._local: Optional[LocalLLMClient] = None

    def _resolve(self) -> ProviderSelection:
        if self._selection is None:
            selection = _get_llm(self._purpose, self._provider, self._model, self._router)
            logger.info(
                "Using LLM provider name=%s model=%s base_url=%s", selection.name, selection.model, selection.base_url
            )
            self._selection = selection
        return self._selection

    def _hosted(self, params: SamplingParams) -> ChatOpenAI:
        selection = self._resolve()
        return ChatOpenAI(
            api_key=selection.api_key,
            base_url=selection.base_url,
            model=params.model or selection.model,
            temperature=params.temperature,
        )

    def _local_client(self) -> Optional[LocalLLMClient]:
        selection = self._resolve()
        if selection.name != "local":
            return None
        if self._local is None:
            self._local = LocalLLMClient(base_url=selection.base_url, model=selection.model)
        return self._local

    async def stream_completion(self, prompt: str, params: SamplingParams) -> AsyncIterator[str]:
        if BREAKER.is_open():
            raise ServiceError("Completion service temporarily unavailable")
        local = self._local_client()
        try:
            if local is not None:
                async for token in iter_in_thread(lambda: local.stream(prompt, params.temperature)):
                    yield token
            else:
                async for chunk in self._hosted(params).astream(prompt):
                    text = _coerce_text(chunk.content)
                    if text:
                        yield text
        except ServiceError:
            BREAKER.record_failure()
            raise
        except Exception as exc:
            BREAKER.record_failure()
            LOG.warning("llm_stream_failed", extra={"err": str(exc)})
            raise ServiceError(_describe_error(exc)) from exc
        BREAKER.record_success()

    async def complete_once(self, prompt: str, params: SamplingParams) -> str:
        if BREAKER.is_open():
            raise ServiceError("Completion service temporarily unavailable")
        local = self._local_client()
        try:
            if local is not None:
                text = await asyncio.to_thread(local.invoke, prompt, params.temperature)
            else:
                result = await self._hosted(params).ainvoke(prompt)
                text = _coerce_text(result.content)
        except ServiceError:
            BREAKER.record_failure()
            raise
        except Exception as exc:
            BREAKER.record_failure()
            LOG.warning("llm_invoke_failed", extra={"err": str(exc)})
            raise ServiceError(_describe_error(exc)) from exc
        BREAKER.record_success()
        return text


# ----------------------------------------------------------------------
# Auxiliary requests
# ----------------------------------------------------------------------
_AUX_PARAMS = SamplingParams(temperature=0.2)


async def summarize_keywords(service: CompletionService, text: str, max_keywords: int = 5) -> List[str]:
    """Ask the model for a few search keywords describing ``text``."""
    prompt = (
        f"Summarize the following passage into at most {max_keywords} short search keywords "
        "for finding an illustrative stock photo. Reply with a comma-separated list only.\n\n"
        f"{text[-CONTEXT_CHARS:]}"
    )
    raw = await service.complete_once(prompt, _AUX_PARAMS)
    keywords: List[str] = []
    for piece in re.split(r"[,\n]", raw):
        word = piece.strip().strip("-*•\"'").strip()
        if word and word.lower() not in (k.lower() for k in keywords):
            keywords.append(word)
        if len(keywords) >= max_keywords:
            break
    return keywords


async def generate_title(service: CompletionService, text: str) -> str:
    prompt = (
        "Suggest a concise, engaging title (at most 8 words) for the following document. "
        "Reply with the title only, without quotes.\n\n"
        f"{text[-CONTEXT_CHARS:]}"
    )
    raw = await service.complete_once(prompt, _AUX_PARAMS)
    title = raw.strip().splitlines()[0] if raw.strip() else ""
    return title.strip().strip("\"'").strip()
