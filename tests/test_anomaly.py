"""
Unit tests for anomaly detection.

Tests whole-period token and cost thresholds.
"""

import json

import pytest

from ai_cost_audit.core.anomaly import (
    AnomalySeverity,
    AnomalyType,
    AuditAnomaly,
    cost_discrepancy_percent,
    detect_anomalies,
    severity_for,
    token_discrepancy_percent,
)
from ai_cost_audit.core.token_counter import TokenCounts


class TestDiscrepancyPercent:
    """Test relative discrepancy calculation."""

    def test_uses_larger_value_as_base(self):
        """Verify the larger side is the denominator in both directions."""
        assert token_discrepancy_percent(1000, 900) == pytest.approx(10.0)
        assert token_discrepancy_percent(900, 1000) == pytest.approx(10.0)

    def test_two_zeros_are_zero_percent(self):
        """Verify the floor avoids division by zero."""
        assert token_discrepancy_percent(0, 0) == 0.0
        assert cost_discrepancy_percent(0.0, 0.0) == 0.0

    def test_one_sided_is_one_hundred_percent(self):
        """Verify a value against zero is a full discrepancy."""
        assert token_discrepancy_percent(500, 0) == 100.0
        assert cost_discrepancy_percent(0.0, 2.5) == 100.0

    def test_cost_floor_for_tiny_amounts(self):
        """Verify sub-floor costs are measured against the floor."""
        assert cost_discrepancy_percent(0.0005, 0.0) == pytest.approx(50.0)


class TestSeverity:
    """Test severity thresholds."""

    def test_within_tolerance(self):
        """Verify 1% or less is not an anomaly."""
        assert severity_for(0.0) is None
        assert severity_for(1.0) is None

    def test_warning_band(self):
        """Verify above 1% up to 5% is a warning."""
        assert severity_for(1.01) == AnomalySeverity.WARNING
        assert severity_for(5.0) == AnomalySeverity.WARNING

    def test_error_band(self):
        """Verify above 5% is an error."""
        assert severity_for(5.01) == AnomalySeverity.ERROR


class TestAnomalyDetection:
    """Test anomaly detection rules."""

    def create_tokens(self, total: int) -> TokenCounts:
        return TokenCounts(input_tokens=total // 2, output_tokens=total - total // 2)

    def test_no_anomalies_when_sources_agree(self):
        """Verify matching totals produce nothing."""
        tokens = self.create_tokens(10_000)
        assert detect_anomalies(tokens, tokens, 12.5, 12.5) == []

    def test_token_mismatch_warning(self):
        """Verify a 2% token gap yields a warning."""
        anomalies = detect_anomalies(self.create_tokens(10_000), self.create_tokens(9_800), 1.0, 1.0)
        assert len(anomalies) == 1
        assert anomalies[0].type == AnomalyType.TOKEN_MISMATCH
        assert anomalies[0].severity == AnomalySeverity.WARNING
        assert anomalies[0].details["difference"]["input_tokens"] == 100

    def test_cost_mismatch_error(self):
        """Verify a 20% cost gap yields an error."""
        tokens = self.create_tokens(10_000)
        anomalies = detect_anomalies(tokens, tokens, 10.0, 8.0)
        assert len(anomalies) == 1
        assert anomalies[0].type == AnomalyType.COST_MISMATCH
        assert anomalies[0].severity == AnomalySeverity.ERROR
        assert anomalies[0].details["difference"] == pytest.approx(2.0)

    def test_both_anomalies_reported(self):
        """Verify token and cost anomalies are independent."""
        anomalies = detect_anomalies(self.create_tokens(10_000), self.create_tokens(5_000), 10.0, 1.0)
        assert [a.type for a in anomalies] == [AnomalyType.TOKEN_MISMATCH, AnomalyType.COST_MISMATCH]

    def test_details_are_json_native(self):
        """Verify anomalies survive a JSON round trip."""
        anomalies = detect_anomalies(self.create_tokens(10_000), self.create_tokens(5_000), 10.0, 1.0)
        for anomaly in anomalies:
            restored = AuditAnomaly.from_dict(json.loads(json.dumps(anomaly.to_dict())))
            assert restored == anomaly
