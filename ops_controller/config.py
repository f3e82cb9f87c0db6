"""
Configuration for the ops controller.

Defaults come from environment variables (read once at import time) and can be
overridden per section from an optional YAML file:

    detection:
      max_concurrent_investigations: 5
    evolution:
      auto_approve: true
    development:
      phase_retries:
        BUILDING: 3

Unknown sections or keys are rejected so a typo never silently falls back to a
default.
"""

import logging
import os
from dataclasses import dataclass, field, fields, asdict
from pathlib import Path
from typing import Any, Dict, Optional

import yaml

from .errors import ValidationError

logger = logging.getLogger("config")

# -----------------------------------------------------------------------------
# Environment Defaults
# -----------------------------------------------------------------------------
LOG_LEVEL = os.getenv("OPS_LOG_LEVEL", "INFO")
CONFIG_FILE = os.getenv("OPS_CONFIG_FILE", "")

# Detection & cooldown (seconds)
DETECTION_COOLDOWN = float(os.getenv("DETECTION_COOLDOWN", "300"))
DETECTION_MAX_CONCURRENT = int(os.getenv("DETECTION_MAX_CONCURRENT", "3"))
DETECTION_FINGERPRINT_TTL = float(os.getenv("DETECTION_FINGERPRINT_TTL", "600"))
DETECTION_POST_INVESTIGATION_COOLDOWN = float(os.getenv("DETECTION_POST_INVESTIGATION_COOLDOWN", "300"))
DETECTION_SWEEP_INTERVAL = float(os.getenv("DETECTION_SWEEP_INTERVAL", "60"))
PENDING_EVOLUTION_EXPIRY = float(os.getenv("PENDING_EVOLUTION_EXPIRY", "1800"))

# Hybrid detector
DETECTOR_METRICS_INTERVAL = float(os.getenv("DETECTOR_METRICS_INTERVAL", "15"))
DETECTOR_VISION_INTERVAL = float(os.getenv("DETECTOR_VISION_INTERVAL", "30"))
DETECTOR_MODE = os.getenv("DETECTOR_MODE", "hybrid")
DETECTOR_MIN_SEVERITY = os.getenv("DETECTOR_MIN_SEVERITY", "medium")
DETECTOR_MIN_CONFIDENCE = float(os.getenv("DETECTOR_MIN_CONFIDENCE", "0.7"))
VISION_SERVICE_URL = os.getenv("VISION_SERVICE_URL", "http://localhost:4000")

# Metrics backend
PROMETHEUS_URL = os.getenv("PROMETHEUS_URL", "")
PROMETHEUS_IN_CLUSTER_URL = "http://prometheus.monitoring.svc.cluster.local:9090"
PROMETHEUS_LOCAL_URL = "http://localhost:30090"
PROMETHEUS_TIMEOUT = float(os.getenv("PROMETHEUS_TIMEOUT", "10"))

# Code evolution
EVOLUTION_MAX_PENDING = int(os.getenv("EVOLUTION_MAX_PENDING", "3"))
EVOLUTION_MAX_FILES = int(os.getenv("EVOLUTION_MAX_FILES", "10"))
EVOLUTION_AUTO_APPROVE = os.getenv("EVOLUTION_AUTO_APPROVE", "false").lower() == "true"
EVOLUTION_ANALYSIS_TIMEOUT = float(os.getenv("EVOLUTION_ANALYSIS_TIMEOUT", "120"))

# Investigation
INVESTIGATION_HEARTBEAT_INTERVAL = float(os.getenv("INVESTIGATION_HEARTBEAT_INTERVAL", "30"))
INVESTIGATION_STALE_THRESHOLD = float(os.getenv("INVESTIGATION_STALE_THRESHOLD", "60"))
INVESTIGATION_DRY_RUN = os.getenv("INVESTIGATION_DRY_RUN", "false").lower() == "true"

# Development
DEVELOPMENT_NAMESPACE = os.getenv("DEVELOPMENT_NAMESPACE", "development")
DEVELOPMENT_MAX_REPAIR_ATTEMPTS = 3

DEFAULT_PHASE_RETRIES: Dict[str, int] = {
    "ANALYZING": 3,
    "DESIGNING": 3,
    "CODING": 4,
    "TESTING": 2,
    "BUILDING": 2,
    "DEPLOYING": 2,
    "VERIFYING": 1,
}


def default_prometheus_url() -> str:
    """Resolve the metrics backend URL for the current environment."""
    if PROMETHEUS_URL:
        return PROMETHEUS_URL
    if os.getenv("KUBERNETES_SERVICE_HOST"):
        return PROMETHEUS_IN_CLUSTER_URL
    return PROMETHEUS_LOCAL_URL


# -----------------------------------------------------------------------------
# Config Sections
# -----------------------------------------------------------------------------

@dataclass
class DetectionStateConfig:
    """Deduplication and rate-limiting knobs (all durations in seconds)."""
    cooldown: float = DETECTION_COOLDOWN
    max_concurrent_investigations: int = DETECTION_MAX_CONCURRENT
    fingerprint_ttl: float = DETECTION_FINGERPRINT_TTL
    post_investigation_cooldown: float = DETECTION_POST_INVESTIGATION_COOLDOWN
    sweep_interval: float = DETECTION_SWEEP_INTERVAL
    pending_evolution_expiry: float = PENDING_EVOLUTION_EXPIRY
    description_length: int = 100


@dataclass
class DetectorConfig:
    """Hybrid anomaly detector settings."""
    metrics_interval: float = DETECTOR_METRICS_INTERVAL
    vision_interval: float = DETECTOR_VISION_INTERVAL
    mode: str = DETECTOR_MODE  # prometheus | vision | hybrid
    min_severity: str = DETECTOR_MIN_SEVERITY
    min_confidence: float = DETECTOR_MIN_CONFIDENCE
    max_consecutive_errors: int = 5
    vision_initial_delay: float = 5.0
    vision_url: str = VISION_SERVICE_URL
    vision_timeout: float = 10.0

    def __post_init__(self):
        if self.mode not in ("prometheus", "vision", "hybrid"):
            raise ValidationError(f"Invalid detector mode: {self.mode}")


@dataclass
class MetricsConfig:
    """Metrics query backend."""
    base_url: str = field(default_factory=default_prometheus_url)
    timeout: float = PROMETHEUS_TIMEOUT
    error_rate_threshold: float = 0.05
    latency_threshold: float = 2.0
    restart_threshold: int = 3
    memory_threshold: float = 0.9
    connection_log_interval: float = 30.0


@dataclass
class EvolutionConfig:
    """Code evolution limits and approval policy."""
    max_pending_evolutions: int = EVOLUTION_MAX_PENDING
    max_files_per_evolution: int = EVOLUTION_MAX_FILES
    require_confirmation_above_limit: bool = True
    auto_approve: bool = EVOLUTION_AUTO_APPROVE
    auto_revert_on_failure: bool = True
    analysis_timeout: float = EVOLUTION_ANALYSIS_TIMEOUT


@dataclass
class InvestigationConfig:
    """OODA loop bounds."""
    confidence_threshold: float = 0.7
    max_actions_per_incident: int = 5
    verification_wait: float = 10.0
    verification_retry_delay: float = 5.0
    max_verification_attempts: int = 3
    max_phase_retries: int = 2
    phase_retry_delay: float = 2.0
    action_cooldown: float = 60.0
    heartbeat_interval: float = INVESTIGATION_HEARTBEAT_INTERVAL
    stale_threshold: float = INVESTIGATION_STALE_THRESHOLD
    evolution_wait_timeout: float = 600.0
    evolution_poll_interval: float = 5.0
    max_evidence: int = 50
    dry_run: bool = INVESTIGATION_DRY_RUN


@dataclass
class DevelopmentConfig:
    """Development pipeline bounds."""
    phase_retries: Dict[str, int] = field(default_factory=lambda: dict(DEFAULT_PHASE_RETRIES))
    default_retries: int = 3
    max_repair_attempts: int = DEVELOPMENT_MAX_REPAIR_ATTEMPTS
    max_iterations: int = 5
    max_concurrent_cycles: int = 3
    namespace: str = DEVELOPMENT_NAMESPACE

    def max_retries_for(self, phase: str) -> int:
        return self.phase_retries.get(phase, self.default_retries)


@dataclass
class ControlPlaneConfig:
    """All sections together."""
    detection: DetectionStateConfig = field(default_factory=DetectionStateConfig)
    detector: DetectorConfig = field(default_factory=DetectorConfig)
    metrics: MetricsConfig = field(default_factory=MetricsConfig)
    evolution: EvolutionConfig = field(default_factory=EvolutionConfig)
    investigation: InvestigationConfig = field(default_factory=InvestigationConfig)
    development: DevelopmentConfig = field(default_factory=DevelopmentConfig)

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


# -----------------------------------------------------------------------------
# Loading
# -----------------------------------------------------------------------------

SECTION_TYPES = {
    "detection": DetectionStateConfig,
    "detector": DetectorConfig,
    "metrics": MetricsConfig,
    "evolution": EvolutionConfig,
    "investigation": InvestigationConfig,
    "development": DevelopmentConfig,
}


def _build_section(name: str, values: Dict[str, Any]):
    section_cls = SECTION_TYPES[name]
    known = {f.name for f in fields(section_cls)}
    unknown = set(values) - known
    if unknown:
        raise ValidationError(f"Unknown keys in '{name}' config: {sorted(unknown)}")

    if name == "development" and "phase_retries" in values:
        merged = dict(DEFAULT_PHASE_RETRIES)
        merged.update({k.upper(): int(v) for k, v in values["phase_retries"].items()})
        values = dict(values, phase_retries=merged)

    return section_cls(**values)


def config_from_dict(data: Optional[Dict[str, Any]]) -> ControlPlaneConfig:
    """Build a ControlPlaneConfig from a plain mapping."""
    data = data or {}
    if not isinstance(data, dict):
        raise ValidationError("Configuration root must be a mapping")

    unknown = set(data) - set(SECTION_TYPES)
    if unknown:
        raise ValidationError(f"Unknown config sections: {sorted(unknown)}")

    sections = {}
    for name, values in data.items():
        if values is None:
            continue
        if not isinstance(values, dict):
            raise ValidationError(f"Config section '{name}' must be a mapping")
        sections[name] = _build_section(name, values)

    return ControlPlaneConfig(**sections)


def load_config(path: Optional[Path] = None) -> ControlPlaneConfig:
    """
    Load configuration from a YAML file.

    Falls back to OPS_CONFIG_FILE, then to pure environment defaults when no
    file is given or the file does not exist.
    """
    if path is None and CONFIG_FILE:
        path = Path(CONFIG_FILE)

    if path is None or not Path(path).exists():
        return ControlPlaneConfig()

    with open(path, "r") as f:
        try:
            data = yaml.safe_load(f) or {}
        except yaml.YAMLError as e:
            raise ValidationError(f"Invalid YAML in {path}: {e}") from e

    config = config_from_dict(data)
    logger.info(f"Loaded configuration from {path}")
    return config
