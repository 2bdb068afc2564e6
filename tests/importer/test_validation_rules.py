from __future__ import annotations

from hts_app.importer.pipeline.validation import DEFAULT_RULES, evaluate_payload
from hts_app.models.importer.schema import ValidationSeverity


def _payload(**overrides):
    payload = {
        "hts_number": "0101.21.00",
        "indent": 1,
        "chapter": "01",
        "heading": "0101",
        "subheading": "010121",
        "tariff_line": "01012100",
        "statistical_suffix": None,
        "parent_hts_number": "0101",
        "description": "Purebred breeding animals",
        "general_rate": "Free",
        "special_rate": None,
        "other_rate": "Free",
    }
    payload.update(overrides)
    return payload


def _codes(results):
    return {result.issue_code: result.severity for result in results}


def test_clean_payload_produces_no_issues():
    assert evaluate_payload(_payload()) == []


def test_missing_code_is_an_error():
    codes = _codes(evaluate_payload(_payload(hts_number="")))
    assert codes["MISSING_HTS_NUMBER"] == ValidationSeverity.ERROR


def test_blank_description_is_a_warning_only_when_supplied():
    codes = _codes(evaluate_payload(_payload(description="   ")))
    assert codes["MISSING_DESCRIPTION"] == ValidationSeverity.WARNING

    payload = _payload()
    payload.pop("description")
    assert "MISSING_DESCRIPTION" not in _codes(evaluate_payload(payload))


def test_invalid_chapter_and_mismatch():
    codes = _codes(evaluate_payload(_payload(chapter="1A")))
    assert codes["INVALID_CHAPTER"] == ValidationSeverity.ERROR

    codes = _codes(evaluate_payload(_payload(chapter="02")))
    assert codes["CHAPTER_MISMATCH"] == ValidationSeverity.WARNING


def test_minimal_entry_payloads():
    assert evaluate_payload({"hts_number": "0101.21.00", "chapter": "01", "general_rate": "Free"}) == []

    results = evaluate_payload({"hts_number": "01012100", "chapter": "99"})
    assert [(result.issue_code, result.severity) for result in results] == [
        ("CHAPTER_MISMATCH", ValidationSeverity.WARNING)
    ]
    assert results[0].details["expected"] == "01"

    results = evaluate_payload({"hts_number": None})
    assert [(result.issue_code, result.severity) for result in results] == [
        ("MISSING_HTS_NUMBER", ValidationSeverity.ERROR)
    ]


def test_code_charset_rule():
    codes = _codes(evaluate_payload(_payload(hts_number="0101.2X.00", subheading=None, tariff_line=None)))
    assert codes["INVALID_HTS_CHARACTERS"] == ValidationSeverity.ERROR


def test_hierarchy_mismatch_lists_fields():
    results = evaluate_payload(_payload(heading="0102", parent_hts_number="0202"))
    mismatch = next(result for result in results if result.issue_code == "HIERARCHY_MISMATCH")
    assert mismatch.severity == ValidationSeverity.WARNING
    assert set(mismatch.details["fields"]) == {"heading", "parent_hts_number"}


def test_unrecognised_rate_text_is_a_warning():
    results = evaluate_payload(_payload(general_rate="ask customs"))
    rate_issue = next(result for result in results if result.issue_code == "UNRECOGNIZED_RATE_FORMAT")
    assert rate_issue.severity == ValidationSeverity.WARNING
    assert rate_issue.details == {"field": "general_rate", "value": "ask customs"}


def test_ambiguous_rate_text_is_info():
    codes = _codes(evaluate_payload(_payload(general_rate="2.4¢/kg + 5%")))
    assert codes["AMBIGUOUS_RATE_FORMAT"] == ValidationSeverity.INFO


def test_negative_indent_is_an_error():
    codes = _codes(evaluate_payload(_payload(indent=-1)))
    assert codes["NEGATIVE_INDENT"] == ValidationSeverity.ERROR


def test_default_rules_have_unique_rate_columns():
    rate_rules = [rule for rule in DEFAULT_RULES if rule.code == "UNRECOGNIZED_RATE_FORMAT"]
    assert sorted(rule.column for rule in rate_rules) == ["general_rate", "other_rate", "special_rate"]
