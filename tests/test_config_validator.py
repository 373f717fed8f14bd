"""
Config schema and sanity check tests.
"""

import shutil
from pathlib import Path

import pytest
import yaml

from tools.config_validator import validate_all_configs, validate_app, validate_policy, validate_sanity_checks


CONFIG_DIR = Path(__file__).resolve().parent.parent / "config"


@pytest.fixture
def config_dir(tmp_path):
    target = tmp_path / "config"
    shutil.copytree(CONFIG_DIR, target)
    return target


def _edit(config_dir, filename, mutate):
    path = config_dir / filename
    data = yaml.safe_load(path.read_text())
    mutate(data)
    path.write_text(yaml.safe_dump(data))


def test_bundled_configs_are_valid():
    assert validate_all_configs(str(CONFIG_DIR)) == []


def test_weights_must_sum_to_one(config_dir):
    _edit(config_dir, "policy.yaml", lambda d: d["risk_scoring"]["weights"].update(market=0.5))

    errors = validate_policy(config_dir)

    assert len(errors) == 1
    assert "weights must sum to 1.0" in errors[0]


def test_strategy_bounds_are_ordered(config_dir):
    _edit(config_dir, "policy.yaml", lambda d: d["pipeline"].update(min_strategies=6, max_strategies=2))

    assert any("max_strategies (2) must be >= min_strategies (6)" in e for e in validate_policy(config_dir))


def test_unknown_state_store_rejected(config_dir):
    _edit(config_dir, "app.yaml", lambda d: d["state"].update(store="redis"))

    errors = validate_app(config_dir)

    assert errors
    assert errors[0].startswith("app.yaml: state -> store")


def test_static_feed_requires_path(config_dir):
    _edit(config_dir, "app.yaml", lambda d: d["feed"].pop("path"))

    assert any("static feed requires path" in e for e in validate_app(config_dir))


def test_malformed_yaml_reports_location(config_dir):
    (config_dir / "policy.yaml").write_text("risk_scoring: [unclosed\n")

    errors = validate_policy(config_dir)

    assert errors[0].startswith("policy.yaml: Invalid YAML")
    assert "line" in errors[0]


def test_missing_file_reported(config_dir):
    (config_dir / "app.yaml").unlink()

    assert validate_app(config_dir)[0].startswith("app.yaml: Config file not found")


def test_fallback_outside_whitelist_is_contradiction(config_dir):
    _edit(config_dir, "policy.yaml", lambda d: d["pipeline"]["fallback"].update(protocol="yearn"))

    errors = validate_sanity_checks(config_dir)

    assert len(errors) == 1
    assert "pipeline.fallback.protocol=yearn" in errors[0]


def test_fallback_on_unscanned_chain_is_contradiction(config_dir):
    _edit(config_dir, "policy.yaml", lambda d: d["pipeline"]["fallback"].update(chain="arbitrum"))

    errors = validate_sanity_checks(config_dir)

    assert len(errors) == 1
    assert "pipeline.fallback.chain=arbitrum" in errors[0]


def test_feed_protocol_map_must_map_strings(config_dir):
    _edit(config_dir, "app.yaml", lambda d: d["feed"].update(protocol_map={"morpho-blue": ["morpho"]}))

    errors = validate_app(config_dir)

    assert errors
    assert any("protocol_map" in e for e in errors)


def test_live_mode_with_mock_proposer_is_unsafe(config_dir):
    _edit(config_dir, "app.yaml", lambda d: d["app"].update(mode="live"))

    errors = validate_all_configs(str(config_dir))

    assert "UNSAFE: app.mode=LIVE with ai.provider=mock." in errors
    assert "UNSAFE: app.mode=LIVE with a static opportunity feed." in errors


def test_sanity_checks_skipped_when_schema_fails(config_dir):
    def mutate(d):
        d["safety"]["protocol_whitelist"] = []
        d["pipeline"]["fallback"]["protocol"] = "yearn"

    _edit(config_dir, "policy.yaml", mutate)

    errors = validate_all_configs(str(config_dir))

    assert errors
    assert not any(e.startswith("CONTRADICTION") for e in errors)
