"""
Configuration management for loadrig.

This module handles loading, parsing, and validating run configurations
from YAML files and command-line arguments. A configuration either names a
single workload with top-level stages, which becomes the "default"
scenario, or a map of named scenarios:

    name: storefront-load
    base_url: http://localhost:8091
    scenarios:
      browse:
        workload: workloads/browse.py:run
        stages:
          - {duration: 2m, target: 50}
          - {duration: 5m, target: 50}
          - {duration: 2m, target: 0}
        think_time: [1, 3]
    thresholds:
      http_req_duration: ["p(95)<500", "p(99)<1000"]
      http_req_failed: ["rate<0.01"]
      checks: ["rate>0.95"]
"""

import copy
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Optional

import yaml
from jsonschema import Draft7Validator

from .models import Stage
from .pool import DEFAULT_GRACEFUL_RAMP_DOWN, normalize_think_time
from .scheduler import (
    INTERPOLATION_LINEAR,
    VALID_INTERPOLATIONS,
    RampingSchedule,
    parse_duration,
    round_half_up,
    validate_stages,
)
from .thresholds import ThresholdError, ThresholdSpec, parse_thresholds

DEFAULT_BASE_URL = "http://localhost:8091"
DEFAULT_HEADERS = {
    "Accept": "application/json",
    "Content-Type": "application/json",
}
DEFAULT_SCENARIO = "default"

_DURATION_SCHEMA = {
    "oneOf": [
        {"type": "string", "minLength": 1},
        {"type": "number", "minimum": 0},
    ]
}

_STAGES_SCHEMA = {
    "type": "array",
    "minItems": 1,
    "items": {
        "type": "object",
        "required": ["duration", "target"],
        "properties": {
            "duration": _DURATION_SCHEMA,
            "target": {"type": "integer", "minimum": 0},
        },
        "additionalProperties": False,
    },
}

_THRESHOLD_ITEM_SCHEMA = {
    "oneOf": [
        {"type": "string", "minLength": 1},
        {
            "type": "object",
            "required": ["threshold"],
            "properties": {
                "threshold": {"type": "string", "minLength": 1},
                "abort_on_fail": {"type": "boolean"},
                "delay_abort_eval": _DURATION_SCHEMA,
            },
            "additionalProperties": False,
        },
    ]
}

_SCENARIO_PROPERTIES = {
    "workload": {"type": "string", "minLength": 3},
    "stages": _STAGES_SCHEMA,
    "start_target": {"type": "integer", "minimum": 0},
    "interpolation": {"type": "string", "enum": VALID_INTERPOLATIONS},
    "think_time": {
        "oneOf": [
            _DURATION_SCHEMA,
            {"type": "array", "items": _DURATION_SCHEMA, "minItems": 2, "maxItems": 2},
        ]
    },
    "start_time": _DURATION_SCHEMA,
    "graceful_ramp_down": _DURATION_SCHEMA,
    "max_iterations": {"type": "integer", "minimum": 1},
    "tags": {"type": "object", "additionalProperties": {"type": "string"}},
}

# JSON Schema for configuration validation
CONFIG_SCHEMA = {
    "$schema": "http://json-schema.org/draft-07/schema#",
    "type": "object",
    "properties": {
        "name": {"type": "string", "minLength": 1},
        "base_url": {"type": "string"},
        "headers": {"type": "object", "additionalProperties": {"type": "string"}},
        "http": {
            "type": "object",
            "properties": {
                "timeout": _DURATION_SCHEMA,
                "max_connections": {"type": "integer", "minimum": 1},
            },
            "additionalProperties": False,
        },
        **_SCENARIO_PROPERTIES,
        "scenarios": {
            "type": "object",
            "minProperties": 1,
            "additionalProperties": {
                "type": "object",
                "required": ["workload", "stages"],
                "properties": _SCENARIO_PROPERTIES,
                "additionalProperties": False,
            },
        },
        "thresholds": {
            "type": "object",
            "additionalProperties": {
                "oneOf": [
                    _THRESHOLD_ITEM_SCHEMA,
                    {"type": "array", "items": _THRESHOLD_ITEM_SCHEMA},
                ]
            },
        },
        "options": {
            "type": "object",
            "properties": {
                "graceful_stop": _DURATION_SCHEMA,
                "evaluation_interval": _DURATION_SCHEMA,
                "tick_interval": _DURATION_SCHEMA,
            },
            "additionalProperties": False,
        },
    },
    "additionalProperties": False,
}


class ConfigValidationError(Exception):
    """Raised when configuration validation fails."""

    def __init__(self, message: str, errors: list[str] | None = None):
        super().__init__(message)
        self.errors = errors or []

    def __str__(self) -> str:
        if not self.errors:
            return super().__str__()
        return super().__str__() + "\n" + "\n".join(f"  - {error}" for error in self.errors)


def validate_config(data: dict[str, Any]) -> list[str]:
    """
    Validate configuration data against the schema.

    Args:
        data: Configuration dictionary to validate

    Returns:
        List of validation error messages (empty if valid)
    """
    validator = Draft7Validator(CONFIG_SCHEMA)
    errors = []
    for error in validator.iter_errors(data):
        path = ".".join(str(p) for p in error.path) if error.path else "root"
        errors.append(f"{path}: {error.message}")
    return errors


@dataclass
class HttpConfig:
    """HTTP client configuration."""

    timeout: float = 30.0
    max_connections: int = 100


@dataclass
class RunOptions:
    """
    Run-wide timing options.

    Attributes:
        graceful_stop: Seconds users get to finish after the last stage
        evaluation_interval: Seconds between interim threshold evaluations
        tick_interval: Seconds between scheduler ticks
    """

    graceful_stop: float = 30.0
    evaluation_interval: float = 5.0
    tick_interval: float = 0.1


@dataclass
class ScenarioConfig:
    """
    Configuration of one scenario.

    Attributes:
        name: Scenario name
        workload: Workload reference ("module:function" or "file.py:function")
        stages: Ordered ramp profile
        start_target: Concurrency at the start of the first stage
        interpolation: "linear" or "step"
        think_time: (min, max) seconds between iterations
        start_time: Seconds after run start the scenario begins
        graceful_ramp_down: Seconds a stopping user may take to finish
        max_iterations: Iterations after which a user retires
        tags: Free-form tags exposed to the workload
    """

    name: str
    workload: str
    stages: list[Stage] = field(default_factory=list)
    start_target: int = 0
    interpolation: str = INTERPOLATION_LINEAR
    think_time: tuple[float, float] = (0.0, 0.0)
    start_time: float = 0.0
    graceful_ramp_down: float = DEFAULT_GRACEFUL_RAMP_DOWN
    max_iterations: Optional[int] = None
    tags: dict[str, str] = field(default_factory=dict)

    def schedule(self) -> RampingSchedule:
        """Build the scenario's ramping schedule."""
        return RampingSchedule(self.stages, self.start_target, self.interpolation)

    @property
    def duration(self) -> float:
        return sum(stage.duration for stage in self.stages)

    @property
    def end_time(self) -> float:
        """Seconds after run start the scenario's last stage ends."""
        return self.start_time + self.duration

    @property
    def max_target(self) -> int:
        return max([self.start_target] + [stage.target for stage in self.stages])

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary representation."""
        data: dict[str, Any] = {
            "workload": self.workload,
            "stages": [stage.to_dict() for stage in self.stages],
            "start_target": self.start_target,
            "interpolation": self.interpolation,
            "think_time": list(self.think_time),
            "start_time": self.start_time,
            "graceful_ramp_down": self.graceful_ramp_down,
            "tags": dict(self.tags),
        }
        if self.max_iterations is not None:
            data["max_iterations"] = self.max_iterations
        return data


def _duration(value: Any, path: str, errors: list[str], default: float = 0.0) -> float:
    if value is None:
        return default
    try:
        seconds = parse_duration(value)
    except ValueError as e:
        errors.append(f"{path}: {e}")
        return default
    if seconds < 0:
        errors.append(f"{path}: must be non-negative, got {value!r}")
        return default
    return seconds


def _parse_scenario(name: str, data: dict[str, Any], errors: list[str]) -> ScenarioConfig:
    path = f"scenarios.{name}"

    stages = [
        Stage(
            duration=_duration(stage.get("duration"), f"{path}.stages[{index}].duration", errors),
            target=stage.get("target", 0),
        )
        for index, stage in enumerate(data.get("stages") or [])
    ]
    start_target = data.get("start_target", 0)
    interpolation = data.get("interpolation", INTERPOLATION_LINEAR)
    errors.extend(
        f"{path}: {error}" for error in validate_stages(stages, start_target, interpolation)
    )

    think_time = data.get("think_time")
    if isinstance(think_time, list):
        think_time = tuple(
            _duration(bound, f"{path}.think_time[{index}]", errors)
            for index, bound in enumerate(think_time)
        )
    elif think_time is not None:
        think_time = _duration(think_time, f"{path}.think_time", errors)
    try:
        think_time_range = normalize_think_time(think_time)
    except ValueError as e:
        errors.append(f"{path}: {e}")
        think_time_range = (0.0, 0.0)

    if not data.get("workload"):
        errors.append(f"{path}: workload is required")

    return ScenarioConfig(
        name=name,
        workload=data.get("workload", ""),
        stages=stages,
        start_target=start_target,
        interpolation=interpolation,
        think_time=think_time_range,
        start_time=_duration(data.get("start_time"), f"{path}.start_time", errors),
        graceful_ramp_down=_duration(
            data.get("graceful_ramp_down"),
            f"{path}.graceful_ramp_down",
            errors,
            default=DEFAULT_GRACEFUL_RAMP_DOWN,
        ),
        max_iterations=data.get("max_iterations"),
        tags=dict(data.get("tags") or {}),
    )


@dataclass
class RunConfig:
    """
    Main configuration class for a loadrig run.

    Attributes:
        name: Name of the run
        base_url: Base URL of the system under test
        headers: Default headers sent with every request
        http: HTTP client configuration
        scenarios: Scenarios keyed by name
        thresholds: Parsed thresholds
        options: Run-wide timing options
        source_dir: Directory the configuration was loaded from; relative
            workload file paths are resolved against it
    """

    name: str = "loadrig-run"
    base_url: str = DEFAULT_BASE_URL
    headers: dict[str, str] = field(default_factory=lambda: dict(DEFAULT_HEADERS))
    http: HttpConfig = field(default_factory=HttpConfig)
    scenarios: dict[str, ScenarioConfig] = field(default_factory=dict)
    thresholds: list[ThresholdSpec] = field(default_factory=list)
    options: RunOptions = field(default_factory=RunOptions)
    source_dir: Optional[Path] = None

    @classmethod
    def from_yaml(cls, path: Path | str, validate: bool = True) -> "RunConfig":
        """
        Load configuration from a YAML file.

        Args:
            path: Path to the YAML configuration file
            validate: Whether to validate the configuration against schema

        Returns:
            RunConfig instance with loaded values

        Raises:
            FileNotFoundError: If the config file doesn't exist
            yaml.YAMLError: If the YAML is invalid
            ConfigValidationError: If validation fails
        """
        path = Path(path)
        if not path.exists():
            raise FileNotFoundError(f"Configuration file not found: {path}")

        with open(path, "r", encoding="utf-8") as f:
            data = yaml.safe_load(f)

        if not isinstance(data, dict):
            raise ConfigValidationError(
                "Configuration validation failed with 1 error(s)",
                errors=["root: configuration must be a mapping"],
            )

        config = cls.from_dict(data, validate=validate)
        config.source_dir = path.resolve().parent
        return config

    @classmethod
    def from_dict(cls, data: dict[str, Any], validate: bool = True) -> "RunConfig":
        """
        Create configuration from a dictionary.

        Args:
            data: Dictionary containing configuration values
            validate: Whether to run schema validation first

        Returns:
            RunConfig instance with loaded values

        Raises:
            ConfigValidationError: If schema or semantic validation fails
        """
        if validate:
            errors = validate_config(data)
            if errors:
                raise ConfigValidationError(
                    f"Configuration validation failed with {len(errors)} error(s)",
                    errors=errors,
                )

        errors: list[str] = []

        http_data = data.get("http") or {}
        http = HttpConfig(
            timeout=_duration(http_data.get("timeout"), "http.timeout", errors, default=30.0),
            max_connections=http_data.get("max_connections", 100),
        )

        options_data = data.get("options") or {}
        options = RunOptions(
            graceful_stop=_duration(
                options_data.get("graceful_stop"), "options.graceful_stop", errors, default=30.0
            ),
            evaluation_interval=_duration(
                options_data.get("evaluation_interval"),
                "options.evaluation_interval",
                errors,
                default=5.0,
            ),
            tick_interval=_duration(
                options_data.get("tick_interval"), "options.tick_interval", errors, default=0.1
            ),
        )
        if options.tick_interval <= 0:
            errors.append("options.tick_interval: must be positive")
        if options.evaluation_interval <= 0:
            errors.append("options.evaluation_interval: must be positive")

        scenario_keys = [key for key in _SCENARIO_PROPERTIES if key in data]
        scenarios: dict[str, ScenarioConfig] = {}
        if "scenarios" in data:
            if scenario_keys:
                errors.append(
                    f"root: {', '.join(scenario_keys)} cannot be combined with 'scenarios'"
                )
            for name, scenario_data in data["scenarios"].items():
                scenarios[name] = _parse_scenario(name, scenario_data, errors)
        elif scenario_keys:
            scenarios[DEFAULT_SCENARIO] = _parse_scenario(DEFAULT_SCENARIO, data, errors)
        else:
            errors.append("root: either 'workload' and 'stages' or 'scenarios' is required")

        try:
            thresholds = parse_thresholds(data.get("thresholds") or {})
        except ThresholdError as e:
            errors.append(f"thresholds: {e}")
            thresholds = []

        if errors:
            raise ConfigValidationError(
                f"Configuration validation failed with {len(errors)} error(s)",
                errors=errors,
            )

        return cls(
            name=data.get("name", "loadrig-run"),
            base_url=data.get("base_url", DEFAULT_BASE_URL),
            headers={**DEFAULT_HEADERS, **(data.get("headers") or {})},
            http=http,
            scenarios=scenarios,
            thresholds=thresholds,
            options=options,
        )

    def to_dict(self) -> dict[str, Any]:
        """Convert configuration to dictionary."""
        thresholds: dict[str, list[Any]] = {}
        for spec in self.thresholds:
            entry: Any = spec.to_dict() if spec.abort_on_fail or spec.delay_abort_eval else spec.expression
            thresholds.setdefault(spec.metric, []).append(entry)

        return {
            "name": self.name,
            "base_url": self.base_url,
            "headers": dict(self.headers),
            "http": {
                "timeout": self.http.timeout,
                "max_connections": self.http.max_connections,
            },
            "scenarios": {name: scenario.to_dict() for name, scenario in self.scenarios.items()},
            "thresholds": thresholds,
            "options": {
                "graceful_stop": self.options.graceful_stop,
                "evaluation_interval": self.options.evaluation_interval,
                "tick_interval": self.options.tick_interval,
            },
        }

    @property
    def total_duration(self) -> float:
        """Seconds until the last scenario's last stage ends."""
        return max((scenario.end_time for scenario in self.scenarios.values()), default=0.0)

    @property
    def max_vus(self) -> int:
        """Upper bound of concurrent users across all scenarios."""
        return sum(scenario.max_target for scenario in self.scenarios.values())

    def merge_cli_args(
        self,
        base_url: Optional[str] = None,
        graceful_stop: Optional[str] = None,
        vus: Optional[int] = None,
    ) -> "RunConfig":
        """
        Merge command-line arguments into the configuration.

        CLI arguments take precedence over file configuration.

        Args:
            base_url: Base URL override
            graceful_stop: Graceful stop duration override
            vus: Scale every scenario so its peak concurrency is this value

        Returns:
            New RunConfig with merged values

        Raises:
            ConfigValidationError: If an override is invalid
        """
        new_config = copy.deepcopy(self)

        errors: list[str] = []
        if base_url:
            new_config.base_url = base_url
        if graceful_stop is not None:
            new_config.options.graceful_stop = _duration(
                graceful_stop, "graceful_stop", errors, default=self.options.graceful_stop
            )
        if vus is not None:
            if vus < 0:
                errors.append(f"vus: must be non-negative, got {vus}")
            else:
                for scenario in new_config.scenarios.values():
                    _scale_scenario(scenario, vus)

        if errors:
            raise ConfigValidationError(
                f"Invalid command-line override ({len(errors)} error(s))", errors=errors
            )
        return new_config


def _scale_scenario(scenario: ScenarioConfig, peak: int) -> None:
    current = scenario.max_target
    if current == 0:
        return
    factor = peak / current
    scenario.start_target = round_half_up(scenario.start_target * factor)
    scenario.stages = [
        Stage(duration=stage.duration, target=round_half_up(stage.target * factor))
        for stage in scenario.stages
    ]


def load_config(
    config_path: Optional[Path | str] = None,
    base_url: Optional[str] = None,
    graceful_stop: Optional[str] = None,
    vus: Optional[int] = None,
    validate: bool = True,
) -> RunConfig:
    """
    Load and merge configuration from file and CLI arguments.

    This is the main entry point for loading configuration.

    Args:
        config_path: Path to YAML configuration file (optional)
        base_url: Base URL override
        graceful_stop: Graceful stop duration override
        vus: Peak concurrency override
        validate: Whether to validate configuration

    Returns:
        RunConfig with merged values
    """
    if config_path:
        config = RunConfig.from_yaml(config_path, validate=validate)
    else:
        config = RunConfig()

    return config.merge_cli_args(base_url=base_url, graceful_stop=graceful_stop, vus=vus)
