"""
Market Intel - Threat Scoring Tests
Tests for the five threat factors, the weighted score, level thresholds,
data sufficiency and recommendations.
"""
import pytest
import sys
import os

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from threat_scoring import (  # noqa: E402
    assess_threat,
    calculate_threat_factors,
    calculate_threat_score,
    extract_profile,
    has_insufficient_data,
    threat_level_for,
    FACTOR_WEIGHTS,
)
from tests.conftest import SAMPLE_ANALYSIS_JSON, SPARSE_ANALYSIS_JSON  # noqa: E402

pytestmark = pytest.mark.timeout(10)


class TestProfileExtraction:

    def test_nested_sections_are_flattened(self):
        profile = extract_profile(SAMPLE_ANALYSIS_JSON)
        assert profile["industry"] == "Software"
        assert profile["market_share_estimate"] == 12.0
        assert profile["revenue_estimate"] == 250_000_000.0
        assert profile["funding_stage"] == "Series D"
        assert profile["market_position"] == "leader"

    def test_flat_keys_are_accepted(self):
        profile = extract_profile({"revenue_estimate": "$5,000,000", "employee_count": "40"})
        assert profile["revenue_estimate"] == 5_000_000.0
        assert profile["employee_count"] == 40.0

    def test_non_numeric_values_become_none(self):
        profile = extract_profile({"financials": {"revenue_estimate": "unknown"}})
        assert profile["revenue_estimate"] is None


class TestFactors:

    def test_sample_competitor_factors(self):
        factors = calculate_threat_factors(extract_profile(SAMPLE_ANALYSIS_JSON))
        assert factors == {
            "marketShareOverlap": 100,     # 120 + 10, capped
            "competitiveAdvantages": 30,
            "growthTrajectory": 85,        # 50 + 20 employees + 15 Series D
            "financialStrength": 70,       # 30 + 30 revenue + 10 growth
            "strategicPositioning": 93.0,  # 40 + 21 brand + 12 innovation + 20 leader
        }

    def test_sparse_payload_uses_base_values(self):
        factors = calculate_threat_factors(extract_profile(SPARSE_ANALYSIS_JSON))
        assert factors["marketShareOverlap"] == 0
        assert factors["competitiveAdvantages"] == 0
        assert factors["growthTrajectory"] == 50
        assert factors["financialStrength"] == 30
        assert factors["strategicPositioning"] == 40

    def test_industry_match_adds_overlap(self):
        payload = {
            "company_overview": {"industry": "Software"},
            "market_position": {"market_share_estimate": 2, "target_markets": ["SMB", "Mid-market"]},
        }
        profile = extract_profile(payload)
        without = calculate_threat_factors(profile)["marketShareOverlap"]
        with_match = calculate_threat_factors(profile, {"industry": "software"})["marketShareOverlap"]
        assert without == 30
        assert with_match == 60

    def test_every_factor_is_capped_at_100(self):
        payload = {
            "market_position": {"market_share_estimate": 90, "market_position": "dominant leader",
                                "brand_strength_score": 100},
            "competitive_advantages": [f"adv {i}" for i in range(20)],
            "innovation_score": 100,
        }
        factors = calculate_threat_factors(extract_profile(payload))
        assert all(v <= 100 for v in factors.values())

    def test_weights_sum_to_one(self):
        assert sum(FACTOR_WEIGHTS.values()) == pytest.approx(1.0)


class TestScoreAndLevel:

    @pytest.mark.parametrize("score,level", [
        (100, "Critical"), (80, "Critical"), (79, "High"), (65, "High"),
        (64, "Medium"), (45, "Medium"), (44, "Low"), (25, "Low"), (24, "Minimal"), (0, "Minimal"),
    ])
    def test_level_thresholds(self, score, level):
        assert threat_level_for(score) == level

    def test_score_is_rounded_weighted_sum(self):
        factors = {
            "marketShareOverlap": 100, "competitiveAdvantages": 30, "growthTrajectory": 85,
            "financialStrength": 70, "strategicPositioning": 93,
        }
        assert calculate_threat_score(factors) == 76

    def test_half_point_rounds_up(self):
        factors = {
            "marketShareOverlap": 90, "competitiveAdvantages": 0, "growthTrajectory": 50,
            "financialStrength": 30, "strategicPositioning": 40,
        }
        assert calculate_threat_score(factors) == 45


class TestAssessment:

    def test_boundary_share_lands_in_medium(self):
        result = assess_threat({"market_share_estimate": 9})
        assert result["threatScore"] == 45
        assert result["threatLevel"] == "Medium"

    def test_sample_competitor_is_high_threat(self):
        result = assess_threat(SAMPLE_ANALYSIS_JSON)
        assert result["threatScore"] == 76
        assert result["threatLevel"] == "High"
        assert result["insufficientData"] is False
        assert result["recommendations"] == [
            "Monitor market positioning closely - high overlap detected"
        ]

    def test_sparse_competitor_flags_insufficient_data(self):
        result = assess_threat(SPARSE_ANALYSIS_JSON)
        assert result["threatScore"] == 22
        assert result["threatLevel"] == "Minimal"
        assert result["insufficientData"] is True
        assert "Gather more comprehensive data about this competitor" in result["recommendations"]

    def test_exactly_half_missing_is_sufficient(self):
        profile = {
            "revenue_estimate": 1.0, "employee_count": 10.0, "market_share_estimate": 5.0,
            "competitive_advantages": [], "market_position": None, "brand_strength_score": 0,
        }
        assert has_insufficient_data(profile) is False

    def test_none_payload_is_handled(self):
        assert assess_threat(None)["insufficientData"] is True
