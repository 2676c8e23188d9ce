import json

import pytest

from risk_engine import RuleSet, default_rules
from storage import (
    RULES_KEY,
    THEME_KEY,
    get_setting,
    load_rules,
    load_theme,
    put_setting,
    save_rules,
    save_theme,
)


def test_missing_rules_load_defaults(Session):
    assert load_rules(Session) == default_rules()


def test_saved_rules_are_restored(Session):
    rules = RuleSet(hr_high=115, spo2_critical=85, temp_critical=103.1)
    save_rules(Session, rules)

    assert json.loads(get_setting(Session, RULES_KEY))["hrHigh"] == 115
    assert load_rules(Session) == rules


def test_save_rules_overwrites(Session):
    save_rules(Session, RuleSet(hr_high=115))
    save_rules(Session, RuleSet(hr_high=125))
    assert load_rules(Session).hr_high == 125


@pytest.mark.parametrize("raw", ["{not json", "[1, 2, 3]", "42", '"text"', ""])
def test_corrupt_rules_fall_back_to_defaults(Session, raw):
    put_setting(Session, RULES_KEY, raw)
    assert load_rules(Session) == default_rules()


def test_non_finite_rules_fall_back_to_defaults(Session):
    put_setting(Session, RULES_KEY, '{"hrHigh": NaN, "spo2Low": Infinity, "tempHigh": 99.9}')
    rules = load_rules(Session)
    assert rules.hr_high == 120
    assert rules.spo2_low == 92
    assert rules.temp_high == 99.9


def test_partial_rules_fill_missing_keys(Session):
    put_setting(Session, RULES_KEY, json.dumps({"spo2Low": 94, "legacyField": "x", "hrCritical": None}))
    rules = load_rules(Session)
    assert rules.spo2_low == 94
    assert rules.hr_critical == 150
    assert rules.temp_high == 100.4


def test_theme_defaults_to_light(Session):
    assert load_theme(Session) == "light"


@pytest.mark.parametrize("stored, expected", [
    ("dark", "dark"),
    ("light", "light"),
    ("Dark", "light"),
    ("blue", "light"),
])
def test_theme_only_accepts_known_values(Session, stored, expected):
    put_setting(Session, THEME_KEY, stored)
    assert load_theme(Session) == expected


def test_save_theme(Session):
    assert save_theme(Session, "dark") == "dark"
    assert load_theme(Session) == "dark"


def test_save_theme_rejects_unknown(Session):
    with pytest.raises(ValueError):
        save_theme(Session, "sepia")
    assert get_setting(Session, THEME_KEY) is None
