# territory/label_service.py
"""
Adapters for external topic-label generation.

A label service turns a prompt into a short label. Services are optional and
unreliable by nature (no key, local server down, slow network), so an adapter
never raises: it returns either

    LabelOk(label)            the raw model output
    LabelUnavailable(reason)  anything else

The Labeler (labeling.py) decides what to do with each case.

Adapters:
 - OpenAILabelService: OpenAI chat completions (OPENAI_API_KEY)
 - OllamaLabelService: local Ollama server over HTTP (OLLAMA_BASE_URL)
"""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass
from typing import Optional, Protocol, Union

import requests

logger = logging.getLogger(__name__)
logger.addHandler(logging.NullHandler())

LABEL_TEMPERATURE = 0.2
LABEL_MAX_TOKENS = 15
DEFAULT_TIMEOUT = 10.0

_OPENAI_MODEL = os.environ.get("TERRITORY_LABEL_MODEL", "gpt-4o-mini")
_OLLAMA_MODEL = os.environ.get("OLLAMA_MODEL", "llama3.2")


@dataclass(frozen=True)
class LabelOk:
    label: str


@dataclass(frozen=True)
class LabelUnavailable:
    reason: str


LabelResult = Union[LabelOk, LabelUnavailable]


class LabelService(Protocol):
    def generate_label(self, prompt: str) -> LabelResult:
        ...


class OpenAILabelService:
    """Chat-completions based labels. The client is created lazily."""

    def __init__(
        self,
        model: str = _OPENAI_MODEL,
        api_key: Optional[str] = None,
        timeout: float = DEFAULT_TIMEOUT,
    ):
        self.model = model
        self.api_key = api_key or os.environ.get("OPENAI_API_KEY")
        self.timeout = timeout
        self._client = None

    def _get_client(self):
        if self._client is None:
            from openai import OpenAI

            logger.info("Creating OpenAI client for labels (model=%s)", self.model)
            self._client = OpenAI(api_key=self.api_key, timeout=self.timeout, max_retries=1)
        return self._client

    def generate_label(self, prompt: str) -> LabelResult:
        if not self.api_key:
            return LabelUnavailable("OPENAI_API_KEY not set")
        try:
            resp = self._get_client().chat.completions.create(
                model=self.model,
                messages=[{"role": "user", "content": prompt}],
                temperature=LABEL_TEMPERATURE,
                max_tokens=LABEL_MAX_TOKENS,
            )
            content = resp.choices[0].message.content or ""
        except Exception as e:
            logger.warning("OpenAI label request failed: %s", e)
            return LabelUnavailable(f"openai error: {e}")
        return LabelOk(content)


class OllamaLabelService:
    """Local Ollama server, non-streaming /api/chat."""

    def __init__(
        self,
        base_url: Optional[str] = None,
        model: str = _OLLAMA_MODEL,
        timeout: float = DEFAULT_TIMEOUT,
    ):
        base_url = base_url or os.environ.get("OLLAMA_BASE_URL", "http://localhost:11434")
        self.base_url = base_url.rstrip("/")
        self.model = model
        self.timeout = timeout

    def generate_label(self, prompt: str) -> LabelResult:
        try:
            resp = requests.post(
                f"{self.base_url}/api/chat",
                json={
                    "model": self.model,
                    "messages": [{"role": "user", "content": prompt}],
                    "stream": False,
                    "options": {"temperature": LABEL_TEMPERATURE, "num_predict": LABEL_MAX_TOKENS},
                },
                timeout=self.timeout,
            )
            resp.raise_for_status()
            data = resp.json()
        except (requests.RequestException, ValueError) as e:
            logger.warning("Ollama label request failed: %s", e)
            return LabelUnavailable(f"ollama error: {e}")
        return LabelOk((data.get("message") or {}).get("content") or "")


def default_label_service(timeout: float = DEFAULT_TIMEOUT) -> Optional[LabelService]:
    """
    Pick a label service from the environment.

    Priority:
      1) OpenAI if OPENAI_API_KEY is set
      2) Ollama if OLLAMA_BASE_URL is set
      3) None -> labels come from the keyword fallback only
    """
    if os.environ.get("OPENAI_API_KEY"):
        return OpenAILabelService(timeout=timeout)
    if os.environ.get("OLLAMA_BASE_URL"):
        return OllamaLabelService(timeout=timeout)
    return None
