"""Coordinator that builds, starts and stops the configured consumer modules."""

from __future__ import annotations

from lagwatch.kafka_client import KafkaClient
from lagwatch.kafka_zk_client import KafkaZkClient
from lagwatch.protocol import (
    ApplicationContext,
    ConfigurationError,
    Module,
    start_modules,
    stop_modules,
)

_MODULE_CLASSES: dict[str, type[Module]] = {
    "kafka": KafkaClient,
    "kafka_zk": KafkaZkClient,
}


class ConsumerCoordinator:
    """Manages every consumer module named under the ``consumer`` configuration key."""

    def __init__(self, app: ApplicationContext) -> None:
        self.app = app
        self.log = app.logger.getChild("coordinator.consumer")
        self.modules: dict[str, Module] = {}

    def configure(self) -> None:
        """Create and configure a module for each configured consumer."""
        self.log.info("configuring")
        self.modules = {}
        config = self.app.config
        for name in config.children("consumer"):
            config_root = f"consumer.{name}"
            cluster = config.get(f"{config_root}.cluster", "") or ""
            if not config.is_set(f"cluster.{cluster}"):
                raise ConfigurationError(
                    f"Consumer '{name}' references an unknown cluster '{cluster}'"
                )
            class_name = config.get(f"{config_root}.class-name", "") or ""
            module_class = _MODULE_CLASSES.get(class_name)
            if module_class is None:
                raise ConfigurationError(f"Unknown consumer className provided: {class_name}")
            module = module_class(self.app)
            module.configure(name, config_root)
            self.modules[name] = module

    def start(self) -> None:
        """Start every module, then mark the application ready; the first failure is raised."""
        self.log.info("starting")
        try:
            start_modules(self.modules)
        except Exception as exc:
            raise RuntimeError(f"Error starting consumer module: {exc}") from exc
        self.app.app_ready = True

    def stop(self) -> None:
        """Stop every module; failures are logged only."""
        self.log.info("stopping")
        stop_modules(self.modules)