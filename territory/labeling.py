# territory/labeling.py
"""
Human-readable labels for clusters and sub-clusters.

Priority:
  1. Label cache hit (same content sample -> same label, no service call)
  2. External label service (label_service.py), if one is configured and
     its answer survives clean-up and the generic-term check
  3. Keyword fallback (fallback_label), which needs nothing but the text

Whatever path produced the label, it is cached under a key derived from
the first 5 contents (first 100 chars each). The cache is an explicit
LabelCache object owned by the caller; clear() it when the corpus changes
materially.
"""

from __future__ import annotations

import logging
import re
import threading
from concurrent.futures import ThreadPoolExecutor
from typing import Dict, List, Optional, Sequence, Tuple

from .label_service import LabelOk, LabelService

logger = logging.getLogger(__name__)
logger.addHandler(logging.NullHandler())

EMPTY_LABEL = "Empty"
MISC_LABEL = "Miscellaneous"
MAX_LABEL_LENGTH = 30

CACHE_SAMPLE_COUNT = 5
CACHE_SAMPLE_LENGTH = 100

# (samples, chars per sample)
CLUSTER_SAMPLING = (5, 200)
SUB_CLUSTER_SAMPLING = (3, 150)

GENERIC_LABELS = ("general", "various", "mixed", "miscellaneous", "other", "content", "text")

STOP_WORDS = frozenset(
    """
    this that with from have been were they their would could should about
    which there these those some other into just like make made when what
    will more very also than then being because even before after between
    such through during each where while only over still back really think
    know want need feel going doing getting today yesterday tomorrow time
    thing something anything maybe actually probably definitely basically
    literally
    """.split()
)

# keep ASCII word characters, whitespace and CJK ideographs
_NON_TOKEN_RE = re.compile(r"[^A-Za-z0-9_\s\u4e00-\u9fff]")
_DIGITS_RE = re.compile(r"^\d+$")
_QUOTES_RE = re.compile(r"^[\"']|[\"']$")
_PREFIX_RE = re.compile(r"^(Topic|Label|Theme):\s*", flags=re.IGNORECASE)

_PROMPT = """Analyze these text samples and generate a precise, descriptive English topic label.

Requirements:
- 2-4 words maximum
- Be specific, not generic (avoid "General", "Various", "Mixed")
- Capture the core theme or subject matter
- Use nouns or noun phrases

Samples:
{samples}

Topic label:"""


class LabelCache:
    """Thread-safe, append-only map of cache key -> label."""

    def __init__(self):
        self._labels: Dict[str, str] = {}
        self._lock = threading.Lock()

    def get(self, key: str) -> Optional[str]:
        with self._lock:
            return self._labels.get(key)

    def put_if_absent(self, key: str, label: str) -> str:
        """Store label unless the key is already present; return the stored value."""
        with self._lock:
            return self._labels.setdefault(key, label)

    def clear(self) -> None:
        with self._lock:
            self._labels.clear()

    def __len__(self) -> int:
        with self._lock:
            return len(self._labels)

    def __contains__(self, key: str) -> bool:
        with self._lock:
            return key in self._labels


def label_cache_key(contents: Sequence[str]) -> str:
    """
    Deterministic key from the first 5 contents (first 100 chars each).
    32-bit rolling hash (h*31 + code unit) over the UTF-16 code units.
    """
    sample = "|".join(c[:CACHE_SAMPLE_LENGTH] for c in contents[:CACHE_SAMPLE_COUNT])
    data = sample.encode("utf-16-le")
    h = 0
    for i in range(0, len(data), 2):
        h = (h * 31 + (data[i] | (data[i + 1] << 8))) & 0xFFFFFFFF
    if h >= 0x80000000:
        h -= 0x100000000
    return f"label_{h}"


def _tokenize(text: str) -> List[str]:
    words = _NON_TOKEN_RE.sub(" ", text).split()
    return [
        w
        for w in words
        if len(w) > 3 and w.lower() not in STOP_WORDS and not _DIGITS_RE.match(w)
    ]


def fallback_label(contents: Sequence[str]) -> str:
    """
    Keyword label from raw text, no external dependency.

    Tokens are scored by frequency, each occurrence weighted by
    1 + (total - index) / total so earlier words count more. The top two
    of the best three are joined with " & ", keeping the source
    capitalization when a token first appeared capitalized.

    Returns "Miscellaneous" when no token survives filtering.
    """
    words = _tokenize(" ".join(contents))
    if not words:
        return MISC_LABEL

    total = len(words)
    scores: Dict[str, float] = {}
    first_seen: Dict[str, str] = {}
    for idx, word in enumerate(words):
        lower = word.lower()
        scores[lower] = scores.get(lower, 0.0) + 1 + (total - idx) / total
        first_seen.setdefault(lower, word)

    ranked = sorted(scores.items(), key=lambda kv: kv[1], reverse=True)[:3]
    top_words = []
    for word, _ in ranked:
        original = first_seen[word]
        if original[0] == original[0].upper():
            top_words.append(original)
        else:
            top_words.append(word[0].upper() + word[1:])

    return " & ".join(top_words[:2])


def clean_label(raw: str) -> str:
    """Strip quotes, a 'Topic:'-style prefix and a trailing period; cap the length."""
    label = _QUOTES_RE.sub("", raw.strip())
    label = _PREFIX_RE.sub("", label)
    if label.endswith("."):
        label = label[:-1]
    return label[:MAX_LABEL_LENGTH]


def is_generic(label: str) -> bool:
    lower = label.lower()
    return any(g in lower for g in GENERIC_LABELS)


def build_prompt(contents: Sequence[str], is_sub_cluster: bool = False) -> str:
    count, length = SUB_CLUSTER_SAMPLING if is_sub_cluster else CLUSTER_SAMPLING
    samples = "\n---\n".join(c[:length] for c in contents[:count])
    return _PROMPT.format(samples=samples)


class Labeler:
    """
    Resolves cluster contents to a label string. Never raises on string
    input; service failures end in the keyword fallback.
    """

    def __init__(
        self,
        service: Optional[LabelService] = None,
        cache: Optional[LabelCache] = None,
        max_workers: int = 4,
    ):
        self.service = service
        self.cache = cache if cache is not None else LabelCache()
        self.max_workers = max(1, max_workers)

    def _from_service(self, contents: Sequence[str], is_sub_cluster: bool) -> Optional[str]:
        if self.service is None:
            return None
        try:
            result = self.service.generate_label(build_prompt(contents, is_sub_cluster))
        except Exception as e:
            # custom services may raise instead of returning LabelUnavailable
            logger.warning("Label service raised; using fallback: %s", e)
            return None

        if not isinstance(result, LabelOk):
            logger.debug("Label service unavailable (%s); using fallback", getattr(result, "reason", result))
            return None

        label = clean_label(result.label)
        if not label or is_generic(label):
            logger.debug("Rejected generic/empty service label %r", result.label)
            return None
        return label

    def label(self, contents: Sequence[str], is_sub_cluster: bool = False) -> str:
        contents = [c for c in contents if c]
        if not contents:
            return EMPTY_LABEL

        key = label_cache_key(contents)
        cached = self.cache.get(key)
        if cached is not None:
            return cached

        label = self._from_service(contents, is_sub_cluster)
        if label is None:
            label = fallback_label(contents)
        return self.cache.put_if_absent(key, label)

    def label_many(self, requests: Sequence[Tuple[Sequence[str], bool]]) -> List[str]:
        """
        Label several (contents, is_sub_cluster) requests. Service calls run on
        a thread pool; results come back in request order.
        """
        if self.service is None or len(requests) < 2:
            return [self.label(contents, sub) for contents, sub in requests]
        with ThreadPoolExecutor(max_workers=self.max_workers) as pool:
            futures = [pool.submit(self.label, contents, sub) for contents, sub in requests]
            return [f.result() for f in futures]
