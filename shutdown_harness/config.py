"""
Case Configuration

Builds the ordered TestCase list either from a YAML cases file or from the
stock suite for an app server that announces "available at <url>".

Cases file layout:

    inter_case_delay: 2.0
    defaults:
      executable: ./bin/app          # relative paths resolve against the file
      cwd: ./test-app
      env: {LOG_LEVEL: info}
      startup_timeout: 5.0
      shutdown_timeout: 10.0
      kill_grace: 0.0                # extra seconds before the forced kill
    cases:
      - name: SIGTERM Shutdown
        description: readiness is the "available at" line of the server
        args: ["--mode=cloud"]
        ready: ["available at", "port"]      # or {pattern: 'port[:]\\s*\\d+'}
        signals:
          - {signal: TERM, delay: 1.0}
        check: {type: port, port: 8080}      # or {type: children, grace: 1.0}
        probe: "http://localhost:{port}/"
        config_override:
          path: app.config.json
          format: json
          content: {enableExtensions: true}
"""

import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, List, Mapping, Optional

import yaml

from shutdown_harness.errors import ConfigError
from shutdown_harness.models import (
    DEFAULT_PORT_PATTERNS,
    DEFAULT_READY_MARKERS,
    ChildProcessCheck,
    ConfigOverride,
    HttpProbe,
    PortCheck,
    ReadinessRule,
    ResourceCheck,
    SignalKind,
    SignalPlan,
    SignalStep,
    TargetSpec,
    TestCase,
)

DEFAULT_STARTUP_TIMEOUT = 5.0
DEFAULT_SHUTDOWN_TIMEOUT = 10.0


@dataclass
class Suite:
    cases: List[TestCase] = field(default_factory=list)
    inter_case_delay: Optional[float] = None


def load_cases(path: Path, binary: Optional[str] = None) -> Suite:
    """Load a YAML cases file. ``binary`` replaces the default executable."""
    path = Path(path)
    try:
        with open(path, "r", encoding="utf-8") as f:
            data = yaml.safe_load(f)
    except OSError as e:
        raise ConfigError(f"Could not read cases file {path}: {e}") from e
    except yaml.YAMLError as e:
        raise ConfigError(f"Invalid YAML in {path}: {e}") from e

    if not isinstance(data, Mapping):
        raise ConfigError(f"{path}: top level must be a mapping")
    return build_suite(data, path.parent.resolve(), binary)


def build_suite(data: Mapping[str, Any], base_dir: Path, binary: Optional[str] = None) -> Suite:
    defaults = data.get("defaults") or {}
    raw_cases = data.get("cases")
    if not isinstance(defaults, Mapping):
        raise ConfigError("'defaults' must be a mapping")
    if not isinstance(raw_cases, list) or not raw_cases:
        raise ConfigError("'cases' must be a non-empty list")

    cases = []
    for index, raw in enumerate(raw_cases):
        label = raw.get("name", f"#{index + 1}") if isinstance(raw, Mapping) else f"#{index + 1}"
        try:
            if not isinstance(raw, Mapping):
                raise ConfigError("case must be a mapping")
            cases.append(_build_case(raw, defaults, base_dir, binary))
        except (TypeError, ValueError) as e:
            raise ConfigError(f"case {label}: {e}") from e
        except ConfigError as e:
            raise ConfigError(f"case {label}: {e}") from e

    return Suite(cases, _inter_case_delay(data.get("inter_case_delay")))


def _inter_case_delay(raw: Any) -> Optional[float]:
    if raw is None:
        return None
    try:
        delay = float(raw)
    except (TypeError, ValueError) as e:
        raise ConfigError(f"invalid 'inter_case_delay': {raw!r}") from e
    if delay < 0:
        raise ConfigError(f"'inter_case_delay' must be >= 0, got {delay}")
    return delay


def _build_case(raw: Mapping[str, Any], defaults: Mapping[str, Any], base_dir: Path, binary: Optional[str]) -> TestCase:
    def setting(key: str, fallback: Any = None) -> Any:
        return raw.get(key, defaults.get(key, fallback))

    executable = raw.get("executable") or binary or defaults.get("executable")
    if not executable:
        raise ConfigError("no executable given (set defaults.executable or pass --binary)")

    env = dict(_mapping(defaults.get("env"), "defaults.env"))
    env.update(_mapping(raw.get("env"), "env"))

    args = setting("args", ())
    if not isinstance(args, (list, tuple)):
        raise ConfigError("'args' must be a list")

    cwd = setting("cwd")
    target = TargetSpec(
        executable=_resolve_executable(str(executable), base_dir),
        args=tuple(str(a) for a in args),
        cwd=str((base_dir / cwd).resolve()) if cwd else None,
        env={str(k): str(v) for k, v in env.items()},
        config_override=_config_override(raw.get("config_override")),
    )

    return TestCase(
        name=str(raw.get("name") or ""),
        description=str(raw.get("description") or ""),
        target=target,
        readiness=_readiness(setting("ready", list(DEFAULT_READY_MARKERS))),
        plan=_plan(raw.get("signals")),
        startup_timeout=float(setting("startup_timeout", DEFAULT_STARTUP_TIMEOUT)),
        shutdown_timeout=float(setting("shutdown_timeout", DEFAULT_SHUTDOWN_TIMEOUT)),
        kill_grace=float(setting("kill_grace", 0.0)),
        resource_check=_check(raw.get("check")),
        probe=_probe(raw.get("probe")),
    )


def _mapping(raw: Any, key: str) -> Mapping[str, Any]:
    if raw is None:
        return {}
    if not isinstance(raw, Mapping):
        raise ConfigError(f"'{key}' must be a mapping")
    return raw


def _resolve_executable(executable: str, base_dir: Path) -> str:
    # Bare names are looked up on PATH
    if os.sep in executable or "/" in executable:
        path = Path(executable)
        return str(path if path.is_absolute() else (base_dir / path).resolve())
    return executable


def _readiness(raw: Any) -> ReadinessRule:
    if isinstance(raw, str):
        return ReadinessRule(substrings=(raw,))
    if isinstance(raw, list):
        return ReadinessRule(substrings=tuple(str(s) for s in raw))
    if isinstance(raw, Mapping):
        return ReadinessRule(
            substrings=tuple(str(s) for s in raw.get("substrings") or ()),
            pattern=raw.get("pattern"),
        )
    raise ConfigError(f"invalid 'ready' value: {raw!r}")


def _plan(raw: Any) -> SignalPlan:
    if not isinstance(raw, list) or not raw:
        raise ConfigError("'signals' must be a non-empty list")
    steps = []
    for item in raw:
        if isinstance(item, str):
            steps.append(SignalStep(SignalKind.parse(item)))
        elif isinstance(item, Mapping) and "signal" in item:
            steps.append(SignalStep(SignalKind.parse(item["signal"]), float(item.get("delay", 0.0))))
        else:
            raise ConfigError(f"invalid signal step: {item!r}")
    return SignalPlan(tuple(steps))


def _check(raw: Any) -> Optional[ResourceCheck]:
    if raw is None:
        return None
    if not isinstance(raw, Mapping):
        raise ConfigError(f"invalid 'check' value: {raw!r}")
    kind = raw.get("type", "port")
    if kind == "port":
        port = raw.get("port")
        return PortCheck(
            port=int(port) if port is not None else None,
            patterns=tuple(raw.get("patterns") or DEFAULT_PORT_PATTERNS),
            host=str(raw.get("host", "0.0.0.0")),
        )
    if kind == "children":
        return ChildProcessCheck(grace=float(raw.get("grace", 1.0)))
    raise ConfigError(f"unknown check type: {kind!r}")


def _probe(raw: Any) -> Optional[HttpProbe]:
    if raw is None:
        return None
    if isinstance(raw, str):
        return HttpProbe(url=raw)
    if isinstance(raw, Mapping):
        return HttpProbe(url=str(raw.get("url", HttpProbe.url)), timeout=float(raw.get("timeout", 2.0)))
    raise ConfigError(f"invalid 'probe' value: {raw!r}")


def _config_override(raw: Any) -> Optional[ConfigOverride]:
    if raw is None:
        return None
    if not isinstance(raw, Mapping) or "path" not in raw:
        raise ConfigError("'config_override' needs a path")
    return ConfigOverride(
        path=str(raw["path"]),
        content=dict(raw.get("content") or {}),
        format=str(raw.get("format", "json")),
    )


def default_suite(binary: str, app_dir: Optional[str] = None) -> List[TestCase]:
    """
    Stock shutdown suite for an app server binary.

    Covers SIGTERM, SIGINT, window mode, extension child cleanup, rapid
    repeated signals and listening-port release.
    """
    cwd = str(app_dir) if app_dir else None
    server_ready = ReadinessRule(substrings=DEFAULT_READY_MARKERS)

    def target(*args: str, override: Optional[ConfigOverride] = None) -> TargetSpec:
        return TargetSpec(binary, tuple(args), cwd=cwd, config_override=override)

    extension_config = ConfigOverride(
        path="neutralino.config.json",
        content={
            "applicationId": "js.neutralino.sample",
            "version": "1.0.0",
            "defaultMode": "cloud",
            "port": 0,
            "enableServer": True,
            "enableExtensions": True,
            "extensions": [
                {
                    "id": "test-ext",
                    "command": "node -e \"setInterval(() => console.log('Extension running'), 1000)\"",
                }
            ],
            "modes": {"cloud": {"enableServer": True}},
        },
    )

    return [
        TestCase(
            name="SIGTERM Shutdown",
            description="Ready on the server 'available at'/'port' line",
            target=target("--mode=cloud"),
            readiness=server_ready,
            plan=SignalPlan.of((SignalKind.TERMINATE, 1.0)),
        ),
        TestCase(
            name="SIGINT Shutdown",
            description="Ctrl+C simulation; ready on the server 'available at'/'port' line",
            target=target("--mode=cloud"),
            readiness=server_ready,
            plan=SignalPlan.of((SignalKind.INTERRUPT, 1.0)),
        ),
        TestCase(
            name="Window Mode Shutdown",
            description="Ready once the window or WebView is reported",
            target=target("--mode=window"),
            readiness=ReadinessRule(substrings=("window", "WebView")),
            plan=SignalPlan.of((SignalKind.TERMINATE, 2.0)),
            startup_timeout=10.0,
            shutdown_timeout=10.0,
            kill_grace=5.0,
        ),
        TestCase(
            name="Extension Cleanup",
            description="Ready once the extension prints 'Extension running'; no extension may outlive the app",
            target=target("--mode=cloud", override=extension_config),
            readiness=ReadinessRule(substrings=("Extension running",)),
            plan=SignalPlan.of((SignalKind.TERMINATE, 1.0)),
            startup_timeout=10.0,
            shutdown_timeout=10.0,
            kill_grace=5.0,
            resource_check=ChildProcessCheck(),
        ),
        TestCase(
            name="Rapid Shutdown Signals",
            description="SIGTERM, SIGTERM and SIGINT 100ms apart; ready on the server line",
            target=target("--mode=cloud"),
            readiness=server_ready,
            plan=SignalPlan.of(
                (SignalKind.TERMINATE, 1.0),
                (SignalKind.TERMINATE, 0.1),
                (SignalKind.INTERRUPT, 0.1),
            ),
        ),
        TestCase(
            name="Server Cleanup",
            description="Ready once a port number is printed; the port must be free after exit",
            target=target("--mode=cloud", "--port=0"),
            readiness=ReadinessRule(pattern=r"(?i)port[:]\s*\d+|available at.*:\d+"),
            plan=SignalPlan.of((SignalKind.TERMINATE, 0.0)),
            resource_check=PortCheck(),
            probe=HttpProbe(),
        ),
    ]
