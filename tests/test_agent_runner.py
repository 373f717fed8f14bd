"""
End-to-end runner tests against the bundled policy and opportunity snapshot.
"""

import json
import shutil
from pathlib import Path

import pytest
import yaml

from runner.agent_runner import AgentRunner, main


CONFIG_DIR = Path(__file__).resolve().parent.parent / "config"

USER = {
    "user_address": "0xrunner",
    "available_funds": 1000,
    "max_investment_per_opp": 500,
    "risk_tolerance": 5,
}


def _write_config(tmp_path, store):
    config_dir = tmp_path / "config"
    shutil.copytree(CONFIG_DIR, config_dir)
    app_path = config_dir / "app.yaml"
    app = yaml.safe_load(app_path.read_text())
    app["state"] = store
    app["logging"]["file"] = str(tmp_path / "logs" / "agent.log")
    app["audit"]["file"] = str(tmp_path / "logs" / "audit.jsonl")
    app["executor"]["shadow_log"] = str(tmp_path / "logs" / "shadow.jsonl")
    app["feed"]["path"] = str(CONFIG_DIR / "opportunities.yaml")
    app_path.write_text(yaml.safe_dump(app))
    return config_dir


@pytest.fixture
def config_dir(tmp_path):
    return _write_config(tmp_path, {"store": "memory"})


@pytest.fixture
def runner(config_dir):
    agent = AgentRunner(config_dir=str(config_dir))
    yield agent
    agent.close()


def test_dry_run_cycle_executes_whitelisted_strategy(runner):
    state = runner.run_pipeline(USER)

    assert runner.audit.determine_status(state) == "EXECUTED"
    assert state.selected_strategy.protocol == "aave"
    assert state.selected_strategy.amount == 500
    assert not state.execution_result.committed
    assert {o.protocol_name for o in state.opportunities} == {"aave", "compound", "moonfarm"}
    assert all(s.risk_score <= 5 for s in state.strategies)


def test_run_is_recorded_and_audited(runner):
    state = runner.run_pipeline(USER)

    [decision] = runner.history.recent_decisions("0xrunner")
    assert decision["strategy"]["protocol"] == state.selected_strategy.protocol
    assert [step["step"] for step in decision["reasoning"]][0] == "market_analysis"

    [entry] = runner.audit.get_recent(event_type="pipeline_run")
    assert entry["run_id"] == state.run_id
    assert entry["status"] == "EXECUTED"
    assert list(entry["stage_latencies"]) == ["analyze", "generate", "select", "plan", "execute"]
    assert runner.metrics.last_run_outcome() == "executed"
    assert runner.executor.get_stats()["executions"] == 1


def test_tripped_breaker_blocks_run(runner):
    runner.circuit_breaker.trip("manual pause")

    state = runner.run_pipeline(USER)

    assert state.circuit_breaker_triggered
    assert state.execution_result is None
    assert runner.audit.determine_status(state) == "BLOCKED"
    assert runner.breaker_status().reason == "manual pause"

    status = runner.reset_breaker("ops")
    assert not status.is_paused


def test_invalid_config_refuses_to_start(config_dir):
    policy_path = config_dir / "policy.yaml"
    policy = yaml.safe_load(policy_path.read_text())
    policy["risk_scoring"]["weights"]["protocol"] = 0.9
    policy_path.write_text(yaml.safe_dump(policy))

    with pytest.raises(ValueError, match="Invalid configuration"):
        AgentRunner(config_dir=str(config_dir))


def test_cli_run_and_status(tmp_path, capsys):
    config_dir = _write_config(tmp_path, {"store": "sqlite", "path": str(tmp_path / "state.db")})

    assert main([
        "--config-dir", str(config_dir), "run",
        "--user", "0xcli", "--funds", "1000", "--max-per-opp", "500", "--risk-tolerance", "5",
    ]) == 0
    run_output = json.loads(capsys.readouterr().out)
    assert run_output["execution"]["success"] is True
    assert run_output["violations"] == []

    assert main(["--config-dir", str(config_dir), "status"]) == 0
    assert json.loads(capsys.readouterr().out)["is_paused"] is False


def test_cli_reset_clears_persisted_trip(tmp_path, capsys):
    config_dir = _write_config(tmp_path, {"store": "sqlite", "path": str(tmp_path / "state.db")})
    agent = AgentRunner(config_dir=str(config_dir))
    agent.circuit_breaker.trip("feed outage")
    agent.close()

    assert main(["--config-dir", str(config_dir), "status"]) == 0
    assert json.loads(capsys.readouterr().out)["reason"] == "feed outage"

    assert main(["--config-dir", str(config_dir), "reset", "--by", "ops"]) == 0
    assert json.loads(capsys.readouterr().out)["is_paused"] is False
