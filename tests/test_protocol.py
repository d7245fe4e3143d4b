import queue

import pytest

from lagwatch.protocol import (
    ApplicationContext,
    Config,
    Module,
    StorageRequest,
    StorageRequestType,
    send_storage_request,
    start_modules,
    stop_modules,
    validate_host_list,
    validate_zookeeper_path,
)


class _Recorder(Module):
    def __init__(self, app, events, fail_start=False, fail_stop=False):
        super().__init__(app)
        self.events = events
        self.fail_start = fail_start
        self.fail_stop = fail_stop

    def start(self):
        super().start()
        self.events.append(("start", self.name))
        if self.fail_start:
            raise RuntimeError("start failed")

    def stop(self):
        super().stop()
        self.events.append(("stop", self.name))
        if self.fail_stop:
            raise RuntimeError("stop failed")


def _recorders(events, **flags):
    app = ApplicationContext()
    modules = {}
    for name in ("a", "b", "c"):
        module = _Recorder(app, events, **flags.get(name, {}))
        module.configure(name, "cluster." + name)
        modules[name] = module
    return modules


def test_config_set_and_get_nested():
    config = Config()
    config.set("cluster.test.servers", ["broker1.example.com:1234"])
    assert config.get("cluster.test.servers") == ["broker1.example.com:1234"]
    assert config.get("cluster.test") == {"servers": ["broker1.example.com:1234"]}


def test_config_get_missing_returns_default():
    config = Config()
    assert config.get("cluster.none.class-name", "fallback") == "fallback"
    assert config.get("cluster.none.class-name") is None


def test_config_keys_are_case_insensitive():
    config = Config({"Cluster": {"Test": {"Class-Name": "kafka"}}})
    assert config.get("cluster.test.class-name") == "kafka"
    assert config.get("CLUSTER.TEST.CLASS-NAME") == "kafka"


def test_config_default_is_overridden_by_value():
    config = Config()
    config.set_default("cluster.test.offset-refresh", 10)
    assert config.get("cluster.test.offset-refresh") == 10
    config.set("cluster.test.offset-refresh", 5)
    assert config.get("cluster.test.offset-refresh") == 5


def test_config_is_set_covers_parents_and_defaults():
    config = Config()
    config.set("cluster.test.class-name", "kafka")
    config.set_default("consumer.zk.zookeeper-timeout", 30)
    assert config.is_set("cluster.test")
    assert config.is_set("cluster")
    assert config.is_set("consumer.zk.zookeeper-timeout")
    assert not config.is_set("cluster.nocluster")


def test_config_children_are_sorted_union():
    config = Config()
    config.set("cluster.test.class-name", "kafka")
    config.set("cluster.anothertest.class-name", "kafka")
    config.set_default("cluster.extra.topic-refresh", 60)
    assert config.children("cluster") == ["anothertest", "extra", "test"]
    assert config.children("consumer") == []
    assert config.children("cluster.test.class-name") == []


def test_config_empty_segment_key():
    config = Config()
    config.set("client-profile..client-id", "testid")
    assert config.get("client-profile..client-id") == "testid"
    assert config.children("client-profile") == [""]


def test_config_get_merges_defaults_into_mapping():
    config = Config()
    config.set("cluster.test.class-name", "kafka")
    config.set_default("cluster.test.topic-refresh", 60)
    assert config.get("cluster.test") == {"class-name": "kafka", "topic-refresh": 60}


def test_storage_request_defaults():
    request = StorageRequest(StorageRequestType.SET_DELETE_TOPIC, cluster="test", topic="topictodelete")
    assert request.request_type is StorageRequestType.SET_DELETE_TOPIC
    assert request.cluster == "test"
    assert request.topic == "topictodelete"
    assert request.partition == 0
    assert request.reply is None


def test_send_storage_request_delivers():
    channel = queue.Queue()
    request = StorageRequest(StorageRequestType.SET_DELETE_GROUP, cluster="test", group="group2")
    assert send_storage_request(channel, request, 1) is True
    assert channel.get_nowait() is request


def test_send_storage_request_times_out_on_full_channel():
    channel = queue.Queue(maxsize=1)
    first = StorageRequest(StorageRequestType.FETCH_CONSUMERS, cluster="test")
    second = StorageRequest(StorageRequestType.FETCH_CONSUMERS, cluster="test")
    assert send_storage_request(channel, first, 0.01) is True
    assert send_storage_request(channel, second, 0.01) is False
    assert channel.qsize() == 1


def test_module_configure_records_name():
    app = ApplicationContext()
    module = Module(app)
    module.configure("test", "cluster.test")
    assert module.name == "test"
    assert module.config_root == "cluster.test"
    assert module.app is app


def test_start_modules_in_order():
    events = []
    modules = _recorders(events)
    start_modules(modules)
    assert [module.name for module in modules.values()] == ["a", "b", "c"]
    assert events == [("start", module.name) for module in modules.values()]


def test_start_modules_stops_at_first_failure():
    events = []
    modules = _recorders(events, b={"fail_start": True})
    with pytest.raises(RuntimeError, match="start failed"):
        start_modules(modules)
    assert events == [("start", "a"), ("start", "b")]


def test_stop_modules_continues_past_failures():
    events = []
    modules = _recorders(events, a={"fail_stop": True})
    stop_modules(modules)
    assert [module.name for module in modules.values()] == ["a", "b", "c"]
    assert events == [("stop", module.name) for module in modules.values()]


@pytest.mark.parametrize(
    "hosts",
    [
        ["broker1.example.com:1234"],
        ["broker1.example.com:1234", "10.0.0.1:9092"],
        ["[::1]:2181"],
    ],
)
def test_validate_host_list_accepts(hosts):
    assert validate_host_list(hosts) is True


@pytest.mark.parametrize(
    "hosts",
    [
        ["broker1.example.com"],
        ["broker1.example.com:notaport"],
        ["broker1.example.com:0"],
        ["broker1.example.com:70000"],
        [":1234"],
        ["broker1.example.com:1234", "bad host:1234"],
    ],
)
def test_validate_host_list_rejects(hosts):
    assert validate_host_list(hosts) is False


@pytest.mark.parametrize("path", ["/consumers", "/", "/kafka/cluster-1/consumers"])
def test_validate_zookeeper_path_accepts(path):
    assert validate_zookeeper_path(path) is True


@pytest.mark.parametrize("path", ["consumers", "/a//b", "/consumers/", "/a/../b", ""])
def test_validate_zookeeper_path_rejects(path):
    assert validate_zookeeper_path(path) is False