"""Runtime configuration for the delivery and intake loops."""

from __future__ import annotations

import os
import shlex
import tomllib
from dataclasses import dataclass, field, fields
from pathlib import Path
from typing import Any

DEFAULTS_FILE_NAME = "config.defaults.toml"
LOCAL_FILE_NAME = "config.local.toml"

DELIVERY_MODES = ("full", "fast", "test")
ARCH_ROUTING_MODES = ("always", "never", "triggered")
DEV_ROUTING_MODES = ("fullstack_only", "split")
DEV_FAILURE_ROUTES = ("qa", "blocked")

DEFAULT_ARCH_TRIGGER_FLAGS: tuple[str, ...] = ("arch_required", "needs_arch")

DEFAULT_ARCH_TRIGGER_KEYWORDS: tuple[str, ...] = (
    "auth",
    "authorization",
    "permission",
    "security",
    "secret",
    "token",
    "login",
    "password",
    "encryption",
    "privacy",
    "compliance",
    "gdpr",
    "pii",
    "payment",
    "billing",
    "migration",
    "schema",
    "database",
    "prisma",
    "webhook",
    "oauth",
    "rbac",
    "acl",
    "sso",
    "destructive",
)


@dataclass(slots=True)
class PathsSettings:
    """Filesystem locations; relative values resolve against ``agents_root``."""

    agents_root: Path = Path(".")
    repo_root: Path | None = None
    requirements_root: Path = Path("requirements")
    runtime_root: Path = Path(".runtime")

    @property
    def logs_dir(self) -> Path:
        return self.runtime_root / "logs"

    @property
    def gates_dir(self) -> Path:
        return self.runtime_root / "qa-gates"

    @property
    def quality_dir(self) -> Path:
        return self.runtime_root / "delivery-quality"

    @property
    def decisions_dir(self) -> Path:
        return self.runtime_root / "decisions"


@dataclass(slots=True)
class LoopSettings:
    """Polling, retry, and bundle sizing knobs shared by both loops."""

    delivery_mode: str = "full"
    bundle_min_size: int = 5
    bundle_max_size: int = 20
    force_underfilled_after_cycles: int = 3
    delivery_poll_seconds: float = 20.0
    po_poll_seconds: float = 20.0
    idle_wait_seconds: float = 300.0
    max_retries: int = 3
    retry_delay_seconds: float = 2.0
    agent_timeout_seconds: int = 3_600
    graceful_shutdown_seconds: int | None = None


@dataclass(slots=True)
class DeliveryQualitySettings:
    """Strict vs advisory gate behavior."""

    strict_gate: bool = True
    require_qa_pass: bool = True
    require_uat_pass: bool = True
    route_to_dev_on_fail: bool = True
    max_fix_cycles: int = 3
    emit_followups_on_fail: bool = False


@dataclass(slots=True)
class ArchRoutingSettings:
    """When the architecture-review stage is required for an item."""

    routing_mode: str = "triggered"
    trigger_frontmatter_flags: tuple[str, ...] = DEFAULT_ARCH_TRIGGER_FLAGS
    require_for_scopes: tuple[str, ...] = ("fullstack",)
    require_for_review_risk: tuple[str, ...] = ("high",)
    require_for_review_scope: tuple[str, ...] = ("qa_sec", "full")
    trigger_keywords: tuple[str, ...] = DEFAULT_ARCH_TRIGGER_KEYWORDS
    max_retries: int = 0


@dataclass(slots=True)
class DevRoutingSettings:
    """Which implementation agent handles which scope."""

    mode: str = "fullstack_only"
    use_fe: bool = True
    use_be: bool = True
    use_fs: bool = True


@dataclass(slots=True)
class DevSettings:
    """Implementation-stage timeouts and recovery retries."""

    run_timeout_seconds: int = 900
    same_thread_retries: int = 1
    fresh_thread_retries: int = 1
    failure_route: str = "qa"
    routing: DevRoutingSettings = field(default_factory=DevRoutingSettings)


@dataclass(slots=True)
class QaSettings:
    """Mandatory shell checks run by the runner itself."""

    mandatory_checks: tuple[str, ...] = ()
    run_checks_in_runner: bool = True
    check_timeout_seconds: int = 1_800


@dataclass(slots=True)
class E2eSettings:
    """Deterministic end-to-end regression suite."""

    enabled: bool = False
    required_in_test_mode: bool = False
    run_on_full_completion: bool = False
    working_dir: Path | None = None
    timeout_seconds: int = 1_800
    setup_commands: tuple[str, ...] = ()
    healthcheck_commands: tuple[str, ...] = ()
    test_command: str = ""
    teardown_command: str = ""
    env: tuple[str, ...] = ()


@dataclass(slots=True)
class IntakeSettings:
    """Planning loop settings."""

    default_mode: str = "vision"
    max_per_cycle: int = 3
    loop_cooldown_cycles: int = 3
    idempotence_enabled: bool = True


@dataclass(slots=True)
class AgentCommandSettings:
    """Command prefix per agent role, split with shell rules."""

    arch: str = "node arch/arch.js"
    dev: str = "node dev/dev.js"
    dev_fs: str = "node dev-fs/dev-fs.js"
    dev_fe: str = "node dev-fe/dev-fe.js"
    dev_be: str = "node dev-be/dev-be.js"
    ux: str = "node ux/ux.js"
    sec: str = "node sec/sec.js"
    qa: str = "node qa/qa.js"
    uat: str = "node uat/uat.js"
    deploy: str = "node deploy/deploy.js"
    maint: str = "node maint/maint.js"
    po: str = "node po/po.js"

    def command_for(self, role: str) -> list[str]:
        attribute = role.replace("-", "_")
        try:
            raw = getattr(self, attribute)
        except AttributeError as error:
            raise ValueError(f"Unknown agent role: {role!r}") from error
        argv = shlex.split(raw)
        if not argv:
            raise ValueError(f"Agent command for role {role!r} is empty.")
        return argv


@dataclass(slots=True)
class Settings:
    """Application settings grouped by domain concerns."""

    paths: PathsSettings = field(default_factory=PathsSettings)
    loops: LoopSettings = field(default_factory=LoopSettings)
    delivery_quality: DeliveryQualitySettings = field(default_factory=DeliveryQualitySettings)
    arch_routing: ArchRoutingSettings = field(default_factory=ArchRoutingSettings)
    dev: DevSettings = field(default_factory=DevSettings)
    qa: QaSettings = field(default_factory=QaSettings)
    e2e: E2eSettings = field(default_factory=E2eSettings)
    intake: IntakeSettings = field(default_factory=IntakeSettings)
    agents: AgentCommandSettings = field(default_factory=AgentCommandSettings)

    @classmethod
    def from_dict(cls, data: dict[str, Any], *, base_dir: Path | None = None) -> Settings:
        """Build settings from a parsed TOML mapping; unknown keys are errors."""

        dev_data = dict(data.get("dev", {}))
        dev_routing = _section(DevRoutingSettings, data.get("dev_routing", {}), "dev_routing")
        dev_data.pop("routing", None)
        settings = cls(
            paths=_section(PathsSettings, data.get("paths", {}), "paths"),
            loops=_section(LoopSettings, data.get("loops", {}), "loops"),
            delivery_quality=_section(
                DeliveryQualitySettings,
                data.get("delivery_quality", {}),
                "delivery_quality",
            ),
            arch_routing=_section(
                ArchRoutingSettings,
                data.get("arch_routing", {}),
                "arch_routing",
            ),
            dev=_section(DevSettings, dev_data, "dev"),
            qa=_section(QaSettings, data.get("qa", {}), "qa"),
            e2e=_section(E2eSettings, data.get("e2e", {}), "e2e"),
            intake=_section(IntakeSettings, data.get("intake", {}), "intake"),
            agents=_section(AgentCommandSettings, data.get("agents", {}), "agents"),
        )
        settings.dev.routing = dev_routing
        if base_dir is not None:
            settings.resolve_paths(base_dir)
        return settings

    @classmethod
    def from_env(cls, agents_root: Path | None = None) -> Settings:
        """Load TOML defaults and local overrides, then apply ``REQFLOW_*`` env values."""

        root = (agents_root or Path(os.getenv("REQFLOW_AGENTS_ROOT", "."))).resolve()
        merged: dict[str, Any] = {}
        for path in _config_files(root):
            merged = _deep_merge(merged, _load_toml(path))

        merged.setdefault("paths", {})
        merged["paths"].setdefault("agents_root", str(root))
        _apply_env_overrides(merged)
        return cls.from_dict(merged, base_dir=root)

    def resolve_paths(self, base_dir: Path) -> None:
        paths = self.paths
        paths.agents_root = _resolve(base_dir, paths.agents_root)
        if paths.repo_root is not None:
            paths.repo_root = _resolve(paths.agents_root, paths.repo_root)
        paths.requirements_root = _resolve(paths.agents_root, paths.requirements_root)
        paths.runtime_root = _resolve(paths.agents_root, paths.runtime_root)
        if self.e2e.working_dir is not None:
            self.e2e.working_dir = _resolve(paths.agents_root, self.e2e.working_dir)

    def validate(self) -> None:
        """Raise configuration error for missing or inconsistent values."""

        if self.paths.repo_root is None:
            raise ValueError("paths.repo_root is required. Set it in config or REQFLOW_REPO_ROOT.")
        if self.loops.delivery_mode not in DELIVERY_MODES:
            raise ValueError(f"Unsupported delivery mode: {self.loops.delivery_mode!r}")
        if self.loops.bundle_min_size <= 0 or self.loops.bundle_max_size <= 0:
            raise ValueError("Bundle sizes must be positive integers.")
        if self.loops.force_underfilled_after_cycles < 0:
            raise ValueError("loops.force_underfilled_after_cycles must be >= 0.")
        if self.arch_routing.routing_mode not in ARCH_ROUTING_MODES:
            raise ValueError(
                f"Unsupported arch_routing.routing_mode: {self.arch_routing.routing_mode!r}",
            )
        if self.dev.routing.mode not in DEV_ROUTING_MODES:
            raise ValueError(f"Unsupported dev_routing.mode: {self.dev.routing.mode!r}")
        if self.dev.failure_route not in DEV_FAILURE_ROUTES:
            raise ValueError(f"Unsupported dev.failure_route: {self.dev.failure_route!r}")
        if self.delivery_quality.max_fix_cycles < 0:
            raise ValueError("delivery_quality.max_fix_cycles must be >= 0.")
        if self.intake.max_per_cycle <= 0:
            raise ValueError("intake.max_per_cycle must be a positive integer.")
        if self.intake.loop_cooldown_cycles < 1:
            raise ValueError("intake.loop_cooldown_cycles must be >= 1.")


def _section(cls: type, raw: object, name: str) -> Any:
    if not isinstance(raw, dict):
        raise ValueError(f"Config section [{name}] must be a table.")
    known = {item.name for item in fields(cls)}
    unknown = sorted(set(raw) - known)
    if unknown:
        raise ValueError(f"Unknown key(s) in [{name}]: {', '.join(unknown)}")
    values: dict[str, Any] = {}
    for key, value in raw.items():
        if isinstance(value, list):
            value = tuple(str(item) for item in value)  # noqa: PLW2901
        elif key.endswith(("_root", "_dir")) and isinstance(value, str):
            value = Path(value)  # noqa: PLW2901
        values[key] = value
    return cls(**values)


def _config_files(root: Path) -> list[Path]:
    files = [root / DEFAULTS_FILE_NAME]
    explicit = os.getenv("REQFLOW_CONFIG", "").strip()
    files.append(Path(explicit) if explicit else root / LOCAL_FILE_NAME)
    return [path for path in files if path.is_file()]


def _load_toml(path: Path) -> dict[str, Any]:
    try:
        return tomllib.loads(path.read_text(encoding="utf-8"))
    except (OSError, tomllib.TOMLDecodeError) as error:
        raise ValueError(f"Cannot read config file {path}: {error}") from error


def _deep_merge(base: dict[str, Any], override: dict[str, Any]) -> dict[str, Any]:
    merged = dict(base)
    for key, value in override.items():
        if isinstance(value, dict) and isinstance(merged.get(key), dict):
            merged[key] = _deep_merge(merged[key], value)
        else:
            merged[key] = value
    return merged


_ENV_OVERRIDES: tuple[tuple[str, str, str, type], ...] = (
    ("REQFLOW_REPO_ROOT", "paths", "repo_root", str),
    ("REQFLOW_REQUIREMENTS_ROOT", "paths", "requirements_root", str),
    ("REQFLOW_DELIVERY_MODE", "loops", "delivery_mode", str),
    ("REQFLOW_BUNDLE_MIN_SIZE", "loops", "bundle_min_size", int),
    ("REQFLOW_BUNDLE_MAX_SIZE", "loops", "bundle_max_size", int),
    ("REQFLOW_DELIVERY_POLL_SECONDS", "loops", "delivery_poll_seconds", float),
    ("REQFLOW_PO_POLL_SECONDS", "loops", "po_poll_seconds", float),
    ("REQFLOW_MAX_RETRIES", "loops", "max_retries", int),
    ("REQFLOW_MAX_FIX_CYCLES", "delivery_quality", "max_fix_cycles", int),
)


def _apply_env_overrides(merged: dict[str, Any]) -> None:
    for env_name, section, key, kind in _ENV_OVERRIDES:
        raw = os.getenv(env_name)
        if raw is None or not raw.strip():
            continue
        try:
            value = kind(raw.strip())
        except ValueError as error:
            raise ValueError(f"Invalid value for {env_name}: {raw!r}") from error
        merged.setdefault(section, {})[key] = value

    strict = _env_bool("REQFLOW_STRICT_GATE", default=None)
    if strict is not None:
        merged.setdefault("delivery_quality", {})["strict_gate"] = strict


def _resolve(base: Path, value: Path | str) -> Path:
    path = Path(value).expanduser()
    if not path.is_absolute():
        path = base / path
    return path.resolve()


def _env_bool(name: str, default: bool | None) -> bool | None:
    value = os.getenv(name)
    if value is None:
        return default
    normalized = value.strip().lower()
    if normalized in {"1", "true", "yes", "on"}:
        return True
    if normalized in {"0", "false", "no", "off"}:
        return False
    raise ValueError(f"Invalid boolean value for {name}: {value!r}")
