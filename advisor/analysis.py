"""Pull the headline numbers out of an advisor answer that contains an investment analysis."""

from __future__ import annotations

import re
from typing import Any, Dict, Optional

ANALYSIS_MARKER = "Investment Score"
MAX_SUMMARY_CHARS = 1000

SCORE_RE = re.compile(r"Investment Score:\s*\**\s*(\d+)")
YIELD_RE = re.compile(r"Rental Yield:\s*\**\s*(\d+\.?\d*)%")
RISK_RE = re.compile(r"Risk Level:\s*\**\s*(Low|Medium|High)", re.IGNORECASE)

RISK_SCORES = {"low": 3, "medium": 5, "high": 8}


def contains_analysis(text: str) -> bool:
    return bool(text) and ANALYSIS_MARKER in text


def extract_property_analysis(
    text: str, *, property_id: Optional[str], user_id: Optional[str]
) -> Optional[Dict[str, Any]]:
    """
    Build a ``property_analyses`` row from a finished answer.

    Returns ``None`` unless the answer carries an analysis and both the
    subject property and the user are known. The 0-10 investment score is
    stored scaled to a percentage-like ROI estimate.
    """
    if not contains_analysis(text) or not property_id or not user_id:
        return None

    score = SCORE_RE.search(text)
    rental_yield = YIELD_RE.search(text)
    risk = RISK_RE.search(text)
    return {
        "property_id": property_id,
        "user_id": user_id,
        "roi_estimate": int(score.group(1)) * 10 if score else None,
        "rental_yield": float(rental_yield.group(1)) if rental_yield else None,
        "risk_score": RISK_SCORES[risk.group(1).lower()] if risk else None,
        "ai_summary": text[:MAX_SUMMARY_CHARS],
    }
