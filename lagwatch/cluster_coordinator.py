"""Coordinator that builds, starts and stops the configured cluster modules."""

from __future__ import annotations

from lagwatch.kafka_cluster import KafkaCluster
from lagwatch.protocol import (
    ApplicationContext,
    ConfigurationError,
    Module,
    start_modules,
    stop_modules,
)

_MODULE_CLASSES: dict[str, type[Module]] = {"kafka": KafkaCluster}


class ClusterCoordinator:
    """Manages every cluster module named under the ``cluster`` configuration key."""

    def __init__(self, app: ApplicationContext) -> None:
        self.app = app
        self.log = app.logger.getChild("coordinator.cluster")
        self.modules: dict[str, Module] = {}

    def configure(self) -> None:
        """Create and configure a module for each configured cluster."""
        self.log.info("configuring")
        self.modules = {}
        config = self.app.config
        for name in config.children("cluster"):
            config_root = f"cluster.{name}"
            class_name = config.get(f"{config_root}.class-name", "") or ""
            module_class = _MODULE_CLASSES.get(class_name)
            if module_class is None:
                raise ConfigurationError(f"Unknown cluster className provided: {class_name}")
            module = module_class(self.app)
            module.configure(name, config_root)
            self.modules[name] = module

    def start(self) -> None:
        """Start every module; the first failure stops the sequence and is raised."""
        self.log.info("starting")
        try:
            start_modules(self.modules)
        except Exception as exc:
            raise RuntimeError(f"Error starting cluster module: {exc}") from exc

    def stop(self) -> None:
        """Stop every module; failures are logged only."""
        self.log.info("stopping")
        stop_modules(self.modules)