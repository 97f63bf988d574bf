"""
HallucinationFilter: drops provider text that is almost certainly not speech.

Whisper-family models emit stock phrases (subtitle credits, "thanks for watching")
on near-silent or noisy audio. A candidate is rejected when:
- it is empty or only punctuation/whitespace,
- its normalized form is on the blocklist (bare closings such as "obrigado"
  only when FILTER_BLOCK_CLOSINGS is enabled),
- it is a single token shorter than 3 characters that is not a known short word.
Rejections are filtering decisions, not errors: logged at DEBUG and dropped.
"""
from __future__ import annotations

import logging
import re
import unicodedata
from typing import Iterable

from transcriber.config import get_settings

logger = logging.getLogger(__name__)

DEFAULT_BLOCKLIST = (
    "legendas pela comunidade amara.org",
    "legenda adriana zanotto",
    "legendas por",
    "obrigado por assistir",
    "obrigada por assistir",
    "obrigado por assistirem",
    "inscreva-se no canal",
    "se inscreva no canal",
    "não se esqueça de se inscrever no canal",
    "deixe seu like",
    "ative o sininho",
    "até o próximo vídeo",
    "thank you for watching",
    "thanks for watching",
    "please subscribe",
    "subtitles by the amara.org community",
    "transcribed by",
    "you",
)

# Blocked only when FILTER_BLOCK_CLOSINGS is set
CLOSING_PHRASES = ("tchau", "tchau tchau", "obrigado", "obrigada")

DEFAULT_SHORT_WHITELIST = ("ok", "tá", "ta", "é", "oi", "no", "eu", "não", "sim", "ah", "hm")

_PUNCT_RE = re.compile(r"[^\w\s]", re.UNICODE)
_SPACE_RE = re.compile(r"\s+")


def normalize_text(text: str) -> str:
    """Lowercase, NFC, punctuation removed, whitespace collapsed."""
    text = unicodedata.normalize("NFC", text or "").lower()
    text = _PUNCT_RE.sub(" ", text)
    return _SPACE_RE.sub(" ", text).strip()


class HallucinationFilter:
    """Pure text check; no state beyond the configured phrase lists."""

    def __init__(
        self,
        blocklist: Iterable[str] | None = None,
        short_whitelist: Iterable[str] | None = None,
        min_token_length: int = 3,
        block_closings: bool | None = None,
    ) -> None:
        if block_closings is None:
            block_closings = get_settings().FILTER_BLOCK_CLOSINGS
        phrases = list(DEFAULT_BLOCKLIST if blocklist is None else blocklist)
        if block_closings:
            phrases.extend(CLOSING_PHRASES)
        self._blocklist = {normalize_text(p) for p in phrases if normalize_text(p)}
        words = DEFAULT_SHORT_WHITELIST if short_whitelist is None else short_whitelist
        self._whitelist = {normalize_text(w) for w in words}
        self._min_token_length = min_token_length

    def rejection_reason(self, text: str) -> str | None:
        """Return why text is rejected, or None when it should be kept."""
        normalized = normalize_text(text)
        if not normalized:
            return "empty or punctuation only"
        if normalized in self._blocklist:
            return "blocklisted phrase"
        tokens = normalized.split()
        if len(tokens) == 1 and len(tokens[0]) < self._min_token_length and tokens[0] not in self._whitelist:
            return "single short token"
        return None

    def accepts(self, text: str) -> bool:
        reason = self.rejection_reason(text)
        if reason is not None:
            logger.debug("Rejected transcript %r: %s", text, reason)
            return False
        return True
