import pytest

from advisor.handoff import (
    HandoffContext,
    HandoffReason,
    build_handoff_summary,
    choose_offer,
    detect_handoff_trigger,
    extract_confidence_score,
    handoff_offer_for,
    should_trigger_low_confidence,
)


@pytest.mark.parametrize(
    "text, expected",
    [
        ("Can I talk to a human please?", HandoffReason.USER_REQUESTED),
        ("I'd rather speak with an agent", HandoffReason.USER_REQUESTED),
        ("Can we schedule visit this weekend?", HandoffReason.SITE_VISIT),
        ("I want to make an offer below asking", HandoffReason.NEGOTIATION),
        ("Is the title deed clear?", HandoffReason.LEGAL),
        ("What would the EMI be?", HandoffReason.FINANCING),
        ("Can I get loans for this?", HandoffReason.FINANCING),
        ("What mortgages are available?", HandoffReason.FINANCING),
        ("Review the contracts", HandoffReason.LEGAL),
        ("Is it legally clear?", HandoffReason.LEGAL),
        ("The price was negotiated already", HandoffReason.NEGOTIATION),
        ("How big is the balcony?", None),
        ("", None),
    ],
)
def test_detect_handoff_trigger(text, expected):
    assert detect_handoff_trigger(text) is expected


def test_explicit_request_wins_over_topic_keywords():
    assert detect_handoff_trigger("talk to a human about my home loan") is HandoffReason.USER_REQUESTED


def test_topic_groups_are_checked_in_order():
    assert detect_handoff_trigger("the loan agreement looks odd") is HandoffReason.LEGAL


@pytest.mark.parametrize("text", ["What premium does this tower charge?", "That's illegality-free", "the loaner car"])
def test_keywords_only_match_whole_words(text):
    assert detect_handoff_trigger(text) is None


@pytest.mark.parametrize(
    "text, expected",
    [
        ("• Confidence: 55%", 0.55),
        ("**Confidence**: 80%", 0.8),
        ("Confidence score = 72.5 %", 0.725),
        ("Confidence: 90%\n...\nConfidence: 40%", 0.4),
        ("no score here", None),
        ("Confidence: 250%", None),
    ],
)
def test_extract_confidence_score(text, expected):
    assert extract_confidence_score(text) == expected


def test_low_confidence_threshold():
    assert should_trigger_low_confidence(0.64)
    assert not should_trigger_low_confidence(0.65)
    assert not should_trigger_low_confidence(None)
    assert should_trigger_low_confidence("Rental yield ~3%. Confidence: 50%")
    assert not should_trigger_low_confidence("Rental yield ~3%.")
    assert should_trigger_low_confidence(0.7, threshold=0.8)


def test_user_intent_beats_low_confidence():
    assert choose_offer(HandoffReason.FINANCING, True) is HandoffReason.FINANCING
    assert choose_offer(None, True) is HandoffReason.LOW_CONFIDENCE
    assert choose_offer(None, False) is None


def test_offer_copy_falls_back_to_generic_request():
    assert handoff_offer_for("siteVisit")["title"] == "Schedule a Property Visit"
    assert handoff_offer_for("bogus")["trigger"] == "userRequested"


def test_summary_collects_intent_budget_and_risk_flags():
    context = HandoffContext(
        conversation_history=[
            {"role": "user", "content": "My budget: 2.5 crore, first time buyer"},
            {"role": "assistant", "content": "Noted. Confidence: 60%"},
            {"role": "user", "content": "Need a home loan asap"},
        ],
        property_title="Sea View 3BHK",
        property_location="Bandra, Mumbai",
        confidence_score=0.6,
    )
    summary = build_handoff_summary(context)
    assert "**Buyer Intent:** financing" in summary
    assert "**Property of Interest:** Sea View 3BHK in Bandra, Mumbai" in summary
    assert "**Budget Mentioned:** budget: 2.5 crore" in summary
    assert "**Financing Need:** Yes" in summary
    assert "**Risk Flags:** Urgent timeline, First-time buyer" in summary
    assert "**AI Confidence Score:** 60%" in summary
    assert summary.endswith("...")


def test_empty_summary_has_default_text():
    assert build_handoff_summary(HandoffContext()) == "User requested human assistance"
