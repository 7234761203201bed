"""Tests for loading matching profiles from YAML and environment."""

import logging
from decimal import Decimal

from finance_tracker.services import matching
from finance_tracker.services.matching import DEFAULT_PROFILES, load_matching_profiles


def test_bundled_config_matches_builtin_defaults():
    profiles = load_matching_profiles(force_reload=True)
    assert profiles == DEFAULT_PROFILES


def test_profiles_are_cached(monkeypatch, tmp_path):
    first = load_matching_profiles()
    monkeypatch.setattr(matching.settings, "reconciliation_config_path", str(tmp_path / "other.yaml"))
    assert load_matching_profiles() is first


def test_custom_file_overrides_selected_values(monkeypatch, tmp_path):
    config_file = tmp_path / "reconciliation.yaml"
    config_file.write_text(
        """
profiles:
  reconciliation:
    amount_percent: 0.03
    date_window_days: 20
    confidence:
      high:
        absolute: 2.50
"""
    )
    monkeypatch.setattr(matching.settings, "reconciliation_config_path", str(config_file))

    profiles = load_matching_profiles(force_reload=True)

    assert profiles.reconciliation.amount_percent == Decimal("0.03")
    assert profiles.reconciliation.date_window_days == 20
    assert profiles.reconciliation.amount_absolute == Decimal("20.00")
    assert profiles.reconciliation.high.absolute == Decimal("2.50")
    assert profiles.reconciliation.high.percent == Decimal("0.005")
    assert profiles.import_preview == DEFAULT_PROFILES.import_preview


def test_missing_file_uses_defaults(monkeypatch, tmp_path):
    monkeypatch.setattr(matching.settings, "reconciliation_config_path", str(tmp_path / "missing.yaml"))
    assert load_matching_profiles(force_reload=True) == DEFAULT_PROFILES


def test_malformed_file_falls_back_to_defaults(monkeypatch, tmp_path, caplog):
    config_file = tmp_path / "reconciliation.yaml"
    config_file.write_text("profiles:\n  import_preview:\n    amount_percent: [not, a, number\n")
    monkeypatch.setattr(matching.settings, "reconciliation_config_path", str(config_file))

    with caplog.at_level(logging.WARNING):
        profiles = load_matching_profiles(force_reload=True)

    assert profiles == DEFAULT_PROFILES
    assert "Failed to load matching profiles" in caplog.text


def test_invalid_number_falls_back_to_defaults(monkeypatch, tmp_path):
    config_file = tmp_path / "reconciliation.yaml"
    config_file.write_text("profiles:\n  import_preview:\n    amount_percent: lots\n")
    monkeypatch.setattr(matching.settings, "reconciliation_config_path", str(config_file))

    assert load_matching_profiles(force_reload=True) == DEFAULT_PROFILES


def test_environment_overrides_win_over_file(monkeypatch):
    monkeypatch.setenv("IMPORT_PREVIEW_AMOUNT_ABSOLUTE", "25.00")
    monkeypatch.setenv("RECONCILIATION_DATE_WINDOW_DAYS", "30")

    profiles = load_matching_profiles(force_reload=True)

    assert profiles.import_preview.amount_absolute == Decimal("25.00")
    assert profiles.import_preview.amount_percent == Decimal("0.01")
    assert profiles.reconciliation.date_window_days == 30
