"""
Ops controller entry point.

Assembles one control plane (registry, detector, orchestrator factories,
evolution engine, detection service), recovers interrupted work and runs
detection until interrupted.

Collaborator adapters are plugged in by import path:

    OPS_REASONING_ADAPTER=mypkg.gemini:GeminiReasoning
    OPS_PLATFORM_ADAPTER=mypkg.k8s:KubernetesExecutor
    OPS_BUILD_ADAPTER=mypkg.kaniko:KanikoBuilder

Each path names a zero-argument callable returning the adapter.
"""

import asyncio
import importlib
import logging
import os
import signal
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Optional

from .anomaly_detector import HybridAnomalyDetector
from .collaborators import BuildDeployExecutor, PlatformExecutor, ReasoningService, SourceControl
from .config import LOG_LEVEL, ControlPlaneConfig, load_config
from .detection_service import DetectionService
from .development import DevelopmentOrchestrator
from .errors import ValidationError
from .events import EventChannel
from .evolution_engine import CodeEvolutionEngine
from .investigation import (
    FrameCollector,
    HealthCollector,
    IncidentContextCollector,
    InvestigationOrchestrator,
    MetricsCollector,
)
from .prometheus_client import PrometheusClient
from .registry import ControlPlaneRegistry
from .repositories import Repositories
from .vision_fetcher import HttpFrameFetcher

logger = logging.getLogger("ops_controller")

STATE_DIR = os.getenv("OPS_STATE_DIR", "")


@dataclass
class ControlPlane:
    """Everything one running instance owns."""
    registry: ControlPlaneRegistry
    evolution_engine: CodeEvolutionEngine
    detector: HybridAnomalyDetector
    detection_service: DetectionService
    rebuilder: DevelopmentOrchestrator

    def new_investigation(self) -> InvestigationOrchestrator:
        return self.detection_service.investigation_factory()

    def new_development(self) -> DevelopmentOrchestrator:
        return self.detection_service.development_factory()


def build_control_plane(
    config: ControlPlaneConfig,
    reasoning: ReasoningService,
    executor: PlatformExecutor,
    builder: BuildDeployExecutor,
    source_control: Optional[SourceControl] = None,
    repositories: Optional[Repositories] = None,
    metrics_client: Optional[PrometheusClient] = None,
    frame_fetcher: Optional[HttpFrameFetcher] = None,
) -> ControlPlane:
    registry = ControlPlaneRegistry(config, repositories=repositories)
    metrics_client = metrics_client or PrometheusClient(config.metrics)
    frame_fetcher = frame_fetcher or HttpFrameFetcher(config.detector.vision_url, config.detector.vision_timeout)

    evolution_engine = CodeEvolutionEngine(
        registry.repositories,
        reasoning,
        registry.detection_state,
        config=config.evolution,
        source_control=source_control,
        event_sink=registry.event_sink,
    )
    rebuilder = DevelopmentOrchestrator(registry, reasoning, builder, config.development)
    evolution_engine.rebuilder = rebuilder

    def investigation_factory() -> InvestigationOrchestrator:
        return InvestigationOrchestrator(
            registry,
            reasoning,
            executor,
            evolution_engine=evolution_engine,
            collectors=[
                IncidentContextCollector(),
                HealthCollector(executor),
                MetricsCollector(metrics_client),
                FrameCollector(frame_fetcher, reasoning),
            ],
            config=config.investigation,
        )

    def development_factory() -> DevelopmentOrchestrator:
        return DevelopmentOrchestrator(registry, reasoning, builder, config.development)

    detector = HybridAnomalyDetector(
        registry.detection_state,
        registry.repositories.monitored_apps,
        config=config.detector,
        metrics_client=metrics_client,
        frame_fetcher=frame_fetcher,
        reasoning=reasoning,
        events=EventChannel("detector", registry.event_sink),
    )
    detection_service = DetectionService(
        registry,
        detector,
        investigation_factory,
        development_factory,
        namespace=config.development.namespace,
    )
    return ControlPlane(registry, evolution_engine, detector, detection_service, rebuilder)


def load_adapter(env_name: str) -> Any:
    """Instantiate the adapter named by an env var ("module:callable")."""
    path = os.getenv(env_name, "")
    if ":" not in path:
        raise ValidationError(f"{env_name} must be set to 'module:callable'")
    module_name, attr = path.split(":", 1)
    factory = getattr(importlib.import_module(module_name), attr)
    return factory()


async def run(control_plane: ControlPlane) -> None:
    """Recover, start detection and wait for SIGINT/SIGTERM."""
    stop = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, stop.set)
        except NotImplementedError:
            logger.warning(f"Signal handler for {sig.name} not supported on this platform")

    recovered = await control_plane.detection_service.recover_interrupted_work()
    logger.info(
        f"Recovered {len(recovered['cycles'])} cycles and {len(recovered['incidents'])} investigations"
    )
    await control_plane.detection_service.start()
    logger.info(f"Ops controller {control_plane.registry.instance_id} running")

    await stop.wait()

    logger.info("Ops controller shutting down...")
    await control_plane.detection_service.stop()
    await control_plane.registry.shutdown()


async def main() -> None:
    config = load_config()
    repositories = Repositories.durable(Path(STATE_DIR)) if STATE_DIR else None
    control_plane = build_control_plane(
        config,
        reasoning=load_adapter("OPS_REASONING_ADAPTER"),
        executor=load_adapter("OPS_PLATFORM_ADAPTER"),
        builder=load_adapter("OPS_BUILD_ADAPTER"),
        repositories=repositories,
    )
    await run(control_plane)


def cli() -> None:
    logging.basicConfig(
        level=getattr(logging, LOG_LEVEL.upper(), logging.INFO),
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s"
    )
    asyncio.run(main())


if __name__ == "__main__":
    cli()
