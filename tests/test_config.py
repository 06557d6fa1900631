from __future__ import annotations

from pathlib import Path

import allure
import pytest

from reqflow.config import AgentCommandSettings, Settings

pytestmark = [
    allure.epic("Configuration"),
    allure.feature("Settings Loading & Validation"),
]


@pytest.fixture(autouse=True)
def _clean_env(monkeypatch) -> None:
    for name in (
        "REQFLOW_AGENTS_ROOT",
        "REQFLOW_CONFIG",
        "REQFLOW_REPO_ROOT",
        "REQFLOW_REQUIREMENTS_ROOT",
        "REQFLOW_DELIVERY_MODE",
        "REQFLOW_BUNDLE_MIN_SIZE",
        "REQFLOW_BUNDLE_MAX_SIZE",
        "REQFLOW_DELIVERY_POLL_SECONDS",
        "REQFLOW_PO_POLL_SECONDS",
        "REQFLOW_MAX_RETRIES",
        "REQFLOW_MAX_FIX_CYCLES",
        "REQFLOW_STRICT_GATE",
    ):
        monkeypatch.delenv(name, raising=False)


def test_defaults_match_runtime_contract() -> None:
    settings = Settings()

    assert settings.loops.bundle_min_size == 5
    assert settings.loops.bundle_max_size == 20
    assert settings.loops.delivery_poll_seconds == 20.0
    assert settings.loops.max_retries == 3
    assert settings.loops.force_underfilled_after_cycles == 3
    assert settings.delivery_quality.strict_gate is True
    assert settings.delivery_quality.max_fix_cycles == 3
    assert settings.dev.run_timeout_seconds == 900
    assert settings.dev.same_thread_retries == 1
    assert settings.dev.fresh_thread_retries == 1
    assert settings.intake.max_per_cycle == 3
    assert settings.intake.loop_cooldown_cycles == 3


def test_from_env_merges_defaults_local_file_and_env(tmp_path: Path, monkeypatch) -> None:
    (tmp_path / "config.defaults.toml").write_text(
        '[paths]\nrepo_root = "app"\n\n[loops]\nbundle_min_size = 4\nbundle_max_size = 8\n',
        encoding="utf-8",
    )
    (tmp_path / "config.local.toml").write_text(
        "[loops]\nbundle_max_size = 12\n\n[qa]\nmandatory_checks = [\"make lint\"]\n",
        encoding="utf-8",
    )
    monkeypatch.setenv("REQFLOW_MAX_RETRIES", "7")
    monkeypatch.setenv("REQFLOW_STRICT_GATE", "false")

    settings = Settings.from_env(agents_root=tmp_path)

    root = tmp_path.resolve()
    assert settings.paths.agents_root == root
    assert settings.paths.repo_root == root / "app"
    assert settings.paths.requirements_root == root / "requirements"
    assert settings.paths.gates_dir == root / ".runtime" / "qa-gates"
    assert settings.loops.bundle_min_size == 4
    assert settings.loops.bundle_max_size == 12
    assert settings.loops.max_retries == 7
    assert settings.qa.mandatory_checks == ("make lint",)
    assert settings.delivery_quality.strict_gate is False


def test_explicit_config_file_replaces_local_file(tmp_path: Path, monkeypatch) -> None:
    (tmp_path / "config.local.toml").write_text("[loops]\nmax_retries = 1\n", encoding="utf-8")
    explicit = tmp_path / "ci.toml"
    explicit.write_text("[loops]\nmax_retries = 0\n", encoding="utf-8")
    monkeypatch.setenv("REQFLOW_CONFIG", str(explicit))

    assert Settings.from_env(agents_root=tmp_path).loops.max_retries == 0


def test_arch_trigger_flags_are_configurable(tmp_path: Path) -> None:
    assert Settings().arch_routing.trigger_frontmatter_flags == ("arch_required", "needs_arch")
    (tmp_path / "config.local.toml").write_text(
        '[paths]\nrepo_root = "app"\n\n'
        '[arch_routing]\ntrigger_frontmatter_flags = ["needs_design"]\n',
        encoding="utf-8",
    )

    settings = Settings.from_env(agents_root=tmp_path)

    assert settings.arch_routing.trigger_frontmatter_flags == ("needs_design",)


def test_unknown_config_key_is_rejected(tmp_path: Path) -> None:
    (tmp_path / "config.local.toml").write_text("[loops]\nbundle_size = 3\n", encoding="utf-8")

    with pytest.raises(ValueError, match=r"Unknown key\(s\) in \[loops\]: bundle_size"):
        Settings.from_env(agents_root=tmp_path)


def test_invalid_env_value_is_reported(tmp_path: Path, monkeypatch) -> None:
    monkeypatch.setenv("REQFLOW_BUNDLE_MIN_SIZE", "many")

    with pytest.raises(ValueError, match="REQFLOW_BUNDLE_MIN_SIZE"):
        Settings.from_env(agents_root=tmp_path)


def test_validate_requires_repo_root() -> None:
    with pytest.raises(ValueError, match="repo_root is required"):
        Settings().validate()


@pytest.mark.parametrize(
    ("section", "key", "value", "message"),
    [
        ("arch_routing", "routing_mode", "sometimes", "arch_routing.routing_mode"),
        ("dev", "failure_route", "human", "dev.failure_route"),
        ("loops", "bundle_min_size", 0, "Bundle sizes"),
        ("intake", "loop_cooldown_cycles", 0, "intake.loop_cooldown_cycles"),
    ],
)
def test_validate_rejects_inconsistent_values(
    tmp_path: Path,
    section: str,
    key: str,
    value: object,
    message: str,
) -> None:
    settings = Settings.from_dict(
        {"paths": {"repo_root": "repo"}, section: {key: value}},
        base_dir=tmp_path,
    )

    with pytest.raises(ValueError, match=message):
        settings.validate()


def test_min_bundle_above_max_is_not_a_validation_error(tmp_path: Path) -> None:
    settings = Settings.from_dict(
        {"paths": {"repo_root": "repo"}, "loops": {"bundle_min_size": 9, "bundle_max_size": 3}},
        base_dir=tmp_path,
    )

    settings.validate()


def test_agent_command_for_splits_shell_words() -> None:
    agents = AgentCommandSettings(qa='node "qa dir/qa.js" --fast')

    assert agents.command_for("qa") == ["node", "qa dir/qa.js", "--fast"]
    assert agents.command_for("dev-fs") == ["node", "dev-fs/dev-fs.js"]
    with pytest.raises(ValueError, match="Unknown agent role"):
        agents.command_for("ops")
