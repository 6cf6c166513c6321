import json

import pytest

from src.analysis.domain import (
    DegradedResult,
    NormalizedResult,
    RawText,
    ResponseNormalizer,
    StructuredJson,
    extract_retrieval,
    repair_json_text,
)


@pytest.fixture
def normalizer():
    return ResponseNormalizer()


def test_valid_json_is_parsed_without_repair(normalizer):
    text = json.dumps({
        "summary": "Charging fails",
        "confidence_score": 0.8,
        "tags": ["battery"],
        "sentiment": "negative",
        "priority_suggestion": "high",
        "suggested_actions": ["Replace cable"],
    })

    result = normalizer.normalize(text)

    assert isinstance(result, NormalizedResult)
    assert result.repaired is False
    assert result.summary == "Charging fails"
    assert result.confidence_score == 0.8
    assert result.sentiment == "negative"
    assert result.priority_suggestion == "high"
    assert result.suggested_actions == ["Replace cable"]
    assert result.is_degraded is False


def test_written_out_number_and_trailing_comma_are_repaired(normalizer):
    result = normalizer.normalize('{"confidence_score": Nine, "tags": ["a",]}')

    assert isinstance(result, NormalizedResult)
    assert result.repaired is True
    assert result.confidence_score == 0.9
    assert result.tags == ["a"]


def test_word_number_with_trailing_comma_before_brace(normalizer):
    result = normalizer.normalize('{"confidence_score": Nine, "tags": ["a"],}')

    assert isinstance(result, NormalizedResult)
    assert result.repaired is True
    assert result.confidence_score == 0.9
    assert result.tags == ["a"]


@pytest.mark.parametrize("word, expected", [
    ("Nine", 0.9),
    ("Eight", 0.8),
    ("Seven", 0.7),
    ("Six", 0.6),
    ("Five", 0.5),
])
def test_number_words_map_to_decimals(normalizer, word, expected):
    result = normalizer.normalize(f'{{"confidence_score": {word}, "tags": []}}')

    assert isinstance(result, NormalizedResult)
    assert result.confidence_score == expected


def test_unknown_capitalized_word_becomes_default_confidence():
    assert repair_json_text('{"confidence_score": Twelve, "x": 1}') == '{"confidence_score": 0.85, "x": 1}'


def test_trailing_comma_before_brace_is_removed():
    assert repair_json_text('{"a": 1,\n}') == '{"a": 1 }'


def test_unparseable_text_degrades(normalizer):
    text = "The customer seems upset. " * 40

    result = normalizer.normalize(text, [{"filename": "faq.md"}])

    assert isinstance(result, DegradedResult)
    assert result.is_degraded is True
    assert result.summary == text[:500]
    assert result.confidence_score == 0.5
    assert result.tags == []
    assert result.suggested_actions == []
    assert result.source_files == ["faq.md"]


def test_json_array_is_not_an_analysis(normalizer):
    assert isinstance(normalizer.normalize("[1, 2, 3]"), DegradedResult)


def test_out_of_range_confidence_is_passed_through(normalizer):
    result = normalizer.normalize('{"confidence_score": 1.7}')

    assert result.confidence_score == 1.7


def test_uncastable_confidence_becomes_none(normalizer):
    assert normalizer.normalize('{"confidence_score": "high"}').confidence_score is None
    assert normalizer.normalize('{"confidence_score": true}').confidence_score is None


def test_numeric_string_confidence_is_cast(normalizer):
    assert normalizer.normalize('{"confidence_score": "0.65"}').confidence_score == 0.65


def test_invalid_enum_values_become_none(normalizer):
    result = normalizer.normalize('{"sentiment": "ecstatic", "priority_suggestion": "critical"}')

    assert result.sentiment is None
    assert result.priority_suggestion is None


def test_source_files_union_keeps_first_seen_order(normalizer):
    text = json.dumps({"source_files": ["b.md", "c.md", "a.md"]})
    retrieval = [{"filename": "a.md"}, {"filename": "b.md"}, {"filename": "a.md"}, {"score": 0.3}]

    result = normalizer.normalize(text, retrieval)

    assert result.source_files == ["a.md", "b.md", "c.md"]


def test_missing_fields_get_defaults(normalizer):
    result = normalizer.normalize("{}")

    assert result.tags == []
    assert result.suggested_actions == []
    assert result.summary is None
    assert result.confidence_score is None
    assert result.suggested_response is None


def test_extract_retrieval_prefers_retrieved_data():
    envelope = StructuredJson({
        "retrieval": {"retrieved_data": [{"filename": "a.md"}]},
        "retrieval_results": [{"filename": "b.md"}],
    })

    assert extract_retrieval(envelope) == [{"filename": "a.md"}]


def test_extract_retrieval_falls_back_to_retrieval_results():
    envelope = StructuredJson({"retrieval": {"retrieved_data": []}, "retrieval_results": [{"filename": "b.md"}]})

    assert extract_retrieval(envelope) == [{"filename": "b.md"}]


def test_text_envelope_has_no_retrieval():
    assert extract_retrieval(RawText("plain")) == []


def test_normalize_response_reads_envelope(normalizer):
    envelope = StructuredJson({"retrieval": {"retrieved_data": [{"filename": "guide.md"}]}})

    result = normalizer.normalize_response(envelope, '{"summary": "ok"}')

    assert result.source_files == ["guide.md"]
