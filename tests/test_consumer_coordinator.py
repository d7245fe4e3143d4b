import pytest

from lagwatch.consumer_coordinator import ConsumerCoordinator
from lagwatch.kafka_client import KafkaClient
from lagwatch.kafka_zk_client import KafkaZkClient
from lagwatch.protocol import ApplicationContext, Config, ConfigurationError, Module


def make_app(**extra):
    values = {
        "client-profile..client-id": "testid",
        "cluster.test.class-name": "kafka",
        "cluster.test.servers": ["broker1.example.com:1234"],
        "consumer.test.class-name": "kafka",
        "consumer.test.servers": ["broker1.example.com:1234"],
        "consumer.test.cluster": "test",
    }
    values.update(extra)
    return ApplicationContext(config=Config(values))


class RecordingModule(Module):
    def __init__(self, app, error=None):
        super().__init__(app)
        self.error = error
        self.calls = []

    def start(self):
        self.calls.append("start")
        if self.error is not None:
            raise self.error

    def stop(self):
        self.calls.append("stop")


def test_configure():
    coordinator = ConsumerCoordinator(make_app())
    coordinator.configure()
    assert list(coordinator.modules) == ["test"]
    assert isinstance(coordinator.modules["test"], KafkaClient)
    assert coordinator.modules["test"].cluster == "test"


def test_configure_bad_cluster():
    coordinator = ConsumerCoordinator(make_app(**{"consumer.test.cluster": "nocluster"}))
    with pytest.raises(ConfigurationError, match="unknown cluster 'nocluster'"):
        coordinator.configure()


def test_configure_two_modules():
    coordinator = ConsumerCoordinator(
        make_app(
            **{
                "consumer.anothertest.class-name": "kafka",
                "consumer.anothertest.servers": ["broker1.example.com:1234"],
                "consumer.anothertest.cluster": "test",
            }
        )
    )
    coordinator.configure()
    assert sorted(coordinator.modules) == ["anothertest", "test"]


def test_configure_zookeeper_module():
    coordinator = ConsumerCoordinator(
        make_app(
            **{
                "consumer.test.class-name": "kafka_zk",
                "consumer.test.servers": ["zk1.example.com:2181"],
            }
        )
    )
    coordinator.configure()
    module = coordinator.modules["test"]
    assert isinstance(module, KafkaZkClient)
    assert module.zookeeper_path == "/consumers"


def test_configure_unknown_class():
    coordinator = ConsumerCoordinator(make_app(**{"consumer.test.class-name": "nosuchclass"}))
    with pytest.raises(ConfigurationError, match="Unknown consumer className provided: nosuchclass"):
        coordinator.configure()


def test_start_stop():
    app = make_app()
    coordinator = ConsumerCoordinator(app)
    coordinator.configure()
    module = RecordingModule(app)
    coordinator.modules["test"] = module

    coordinator.start()
    assert module.calls == ["start"]
    assert app.app_ready is True

    coordinator.stop()
    assert module.calls == ["start", "stop"]


def test_start_failure():
    app = make_app()
    coordinator = ConsumerCoordinator(app)
    coordinator.configure()
    coordinator.modules["test"] = RecordingModule(app, error=RuntimeError("boom"))

    with pytest.raises(RuntimeError, match="Error starting consumer module: boom"):
        coordinator.start()
    assert app.app_ready is False