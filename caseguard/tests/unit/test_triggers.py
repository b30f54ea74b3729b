from __future__ import annotations

import pytest

from caseguard.core.errors import EvaluatorError
from caseguard.services.guardian.triggers import (
    TriggerRegistry,
    check_consent,
    check_metadata,
    check_pii,
    check_safeguarding,
    default_registry,
)


def test_missing_metadata_lists_only_absent_fields() -> None:
    context = {"requiredMetadata": ["age", "consentForm"], "age": 5}
    assert check_metadata(context) == "Missing required metadata: consentForm."


def test_missing_metadata_keeps_declared_order() -> None:
    context = {"requiredMetadata": ["b", "a"]}
    assert check_metadata(context) == "Missing required metadata: b, a."


def test_metadata_falsy_values_count_as_present() -> None:
    context = {"requiredMetadata": ["age", "notes"], "age": 0, "notes": ""}
    assert check_metadata(context) is None


def test_metadata_without_required_list_is_not_a_violation() -> None:
    assert check_metadata({}) is None
    assert check_metadata({"requiredMetadata": "age"}) is None


def test_consent_missing_or_false_is_flagged() -> None:
    message = "Consent has not been obtained for this action."
    assert check_consent({}) == message
    assert check_consent({"consentObtained": False}) == message
    assert check_consent({"consentObtained": True}) is None


def test_pii_only_flags_public_documents() -> None:
    assert check_pii({"containsPII": True, "visibility": "public"}) == "Public document contains PII flags."
    assert check_pii({"containsPII": True, "visibility": "private"}) is None
    assert check_pii({"containsPII": "yes", "visibility": "public"}) is None


def test_safeguarding_is_case_insensitive() -> None:
    message = check_safeguarding({"text": "Child mentioned SUICIDE"})
    assert message == "Safeguarding keyword(s) detected: suicide. Immediate review required."


def test_safeguarding_lists_keywords_in_lexicon_order() -> None:
    message = check_safeguarding({"content": "There was a threat and signs of neglect and abuse"})
    assert message == "Safeguarding keyword(s) detected: abuse, neglect, threat. Immediate review required."


def test_safeguarding_ignores_non_text_and_clean_text() -> None:
    assert check_safeguarding({"text": 42}) is None
    assert check_safeguarding({"text": "Reading group went well"}) is None
    assert check_safeguarding({}) is None


def test_registry_treats_unknown_conditions_as_no_violation() -> None:
    assert default_registry.evaluate("does_not_exist", {"containsPII": True}) is None


def test_registry_treats_malformed_context_as_no_violation() -> None:
    assert default_registry.evaluate("pii_leak", None) is None
    assert default_registry.evaluate("pii_leak", ["not", "a", "mapping"]) is None


def test_registry_wraps_evaluator_failures() -> None:
    registry = TriggerRegistry()

    @registry.register("explodes")
    def _explodes(context):
        raise KeyError("boom")

    with pytest.raises(EvaluatorError) as excinfo:
        registry.evaluate("explodes", {})
    assert excinfo.value.condition_kind == "explodes"


def test_registry_copy_is_independent() -> None:
    clone = default_registry.copy()
    clone.add("custom", lambda context: "custom hit")
    assert "custom" in clone
    assert "custom" not in default_registry
    assert set(default_registry.kinds()) == {
        "missing_consent",
        "missing_metadata",
        "pii_leak",
        "safeguarding_recommended",
    }
