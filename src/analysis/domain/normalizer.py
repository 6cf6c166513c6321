"""
Response Normalizer
===================

Turns the agent's answer into a fixed set of analysis fields.

The agent is asked for JSON but does not always produce valid JSON. The
normalizer parses strictly first, then applies a fixed list of textual
repairs (written-out numbers, trailing commas) and parses once more. If
both attempts fail, a low-confidence ``DegradedResult`` built from the raw
text is returned, so a successful remote call always yields a result.
"""

import json
import re
from typing import Any, Dict, List, Optional, Pattern, Tuple

from src.config import VALID_SENTIMENTS, VALID_PRIORITY_SUGGESTIONS
from src.analysis.domain.value_objects import (
    RawResponse,
    StructuredJson,
    RawText,
    NormalizedResult,
    DegradedResult,
    AnalysisResult,
)
from src.shared.infrastructure.logging import get_logger

logger = get_logger(__name__)


DEGRADED_SUMMARY_LENGTH = 500
DEGRADED_CONFIDENCE = 0.5

# Applied in order, each once, before the single re-parse.
REPAIR_RULES: Tuple[Tuple[Pattern[str], str], ...] = (
    (re.compile(r":\s*Nine,"), ": 0.9,"),
    (re.compile(r":\s*Eight,"), ": 0.8,"),
    (re.compile(r":\s*Seven,"), ": 0.7,"),
    (re.compile(r":\s*Six,"), ": 0.6,"),
    (re.compile(r":\s*Five,"), ": 0.5,"),
    (re.compile(r":\s*[A-Z][a-z]+,"), ": 0.85,"),
    (re.compile(r",\s*}"), " }"),
    (re.compile(r",\s*\]"), " ]"),
)


def repair_json_text(text: str) -> str:
    """Apply every repair rule once, in order."""
    for pattern, replacement in REPAIR_RULES:
        text = pattern.sub(replacement, text)
    return text


def extract_retrieval(envelope: Optional[RawResponse]) -> List[Dict[str, Any]]:
    """
    Read retrieval provenance from a response envelope.

    Looks at ``retrieval.retrieved_data`` first, then ``retrieval_results``.
    A text envelope carries no provenance.
    """
    if isinstance(envelope, StructuredJson):
        payload = envelope.payload
        retrieval = payload.get("retrieval")
        items: Any = None
        if isinstance(retrieval, dict):
            items = retrieval.get("retrieved_data")
        if not items:
            items = payload.get("retrieval_results")
        if isinstance(items, list):
            return [item for item in items if isinstance(item, dict)]
        return []
    if isinstance(envelope, RawText) or envelope is None:
        return []
    raise TypeError(f"Unsupported response envelope: {type(envelope).__name__}")


def _filenames(items: List[Dict[str, Any]]) -> List[str]:
    return [item["filename"] for item in items if isinstance(item.get("filename"), str) and item["filename"]]


def _unique(values: List[str]) -> List[str]:
    seen: List[str] = []
    for value in values:
        if value not in seen:
            seen.append(value)
    return seen


def _string_list(value: Any) -> List[str]:
    if not isinstance(value, list):
        return []
    return [str(item) for item in value if item is not None]


def _optional_str(value: Any) -> Optional[str]:
    if value is None:
        return None
    return value if isinstance(value, str) else str(value)


def _confidence(value: Any) -> Optional[float]:
    """Cast to float without range checks."""
    if value is None or isinstance(value, bool):
        return None
    try:
        return float(value)
    except (TypeError, ValueError):
        return None


def _choice(value: Any, allowed: List[str]) -> Optional[str]:
    if isinstance(value, str) and value in allowed:
        return value
    return None


class ResponseNormalizer:
    """
    Best-effort extractor for remote analysis answers.

    Stateless; one instance can be shared by all workers.
    """

    def normalize(
        self,
        raw_text: str,
        retrieval_items: Optional[List[Dict[str, Any]]] = None
    ) -> AnalysisResult:
        """
        Parse ``raw_text`` into a ``NormalizedResult`` or a ``DegradedResult``.

        Args:
            raw_text: Assistant message text from the agent
            retrieval_items: Retrieval provenance of the same response

        Returns:
            NormalizedResult when the text is (repairable) JSON,
            DegradedResult otherwise
        """
        retrieval_files = _unique(_filenames(retrieval_items or []))
        text = (raw_text or "").strip()

        parsed = self._parse(text)
        if parsed is not None:
            return self._build(parsed, retrieval_files, repaired=False)

        repaired_text = repair_json_text(text)
        if repaired_text != text:
            logger.info("Applied JSON repairs to agent response", extra={"length": len(text)})
            parsed = self._parse(repaired_text)
            if parsed is not None:
                return self._build(parsed, retrieval_files, repaired=True)

        logger.warning(
            "Agent response is not parseable JSON, using degraded result",
            extra={"length": len(text)}
        )
        return DegradedResult(
            summary=(raw_text or "")[:DEGRADED_SUMMARY_LENGTH],
            confidence_score=DEGRADED_CONFIDENCE,
            source_files=retrieval_files,
        )

    def normalize_response(self, envelope: RawResponse, content: str) -> AnalysisResult:
        """Normalize ``content`` using the provenance found in ``envelope``."""
        return self.normalize(content, extract_retrieval(envelope))

    @staticmethod
    def _parse(text: str) -> Optional[Dict[str, Any]]:
        try:
            parsed = json.loads(text)
        except ValueError:
            return None
        return parsed if isinstance(parsed, dict) else None

    @staticmethod
    def _build(parsed: Dict[str, Any], retrieval_files: List[str], repaired: bool) -> NormalizedResult:
        json_files = [name for name in _string_list(parsed.get("source_files")) if name]
        return NormalizedResult(
            tags=_string_list(parsed.get("tags")),
            summary=_optional_str(parsed.get("summary")),
            sentiment=_choice(parsed.get("sentiment"), VALID_SENTIMENTS),
            priority_suggestion=_choice(parsed.get("priority_suggestion"), VALID_PRIORITY_SUGGESTIONS),
            suggested_response=_optional_str(parsed.get("suggested_response")),
            confidence_score=_confidence(parsed.get("confidence_score")),
            suggested_actions=_string_list(parsed.get("suggested_actions")),
            source_files=_unique(retrieval_files + json_files),
            repaired=repaired,
        )
