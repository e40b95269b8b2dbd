from nodeservices.models import AgentConfig, AgentFile, MessageClient, Subject


def test_agent_file_from_dict():
    ref = "bafybeide7cspdmxqjcpa3qvrayvfpiix2it4v6mjejjc22q72zbq7rm4re"
    f = AgentFile.from_dict({"manifest": {"imageReference": ref}})
    assert f.image_reference == ref


def test_agent_file_missing_manifest():
    assert AgentFile.from_dict({}).image_reference == ""


def test_container_name_depends_on_id():
    a = AgentConfig(id="0x1", image="img-a")
    b = AgentConfig(id="0x1", image="img-b")
    c = AgentConfig(id="0x2")
    assert a.container_name() == b.container_name()
    assert a.container_name() != c.container_name()


def test_message_client_delivers_and_records():
    client = MessageClient()
    received = []
    client.subscribe(Subject.METRIC_AGENT, received.append)
    client.publish(Subject.METRIC_AGENT, {"x": 1})
    client.publish(Subject.SCANNER_BLOCK, {"y": 2})
    assert received == [{"x": 1}]
    assert client.published == [(Subject.METRIC_AGENT, {"x": 1}), (Subject.SCANNER_BLOCK, {"y": 2})]


def test_message_client_survives_failing_handler():
    client = MessageClient()
    received = []

    def bad(_):
        raise RuntimeError("boom")

    client.subscribe(Subject.SCANNER_ALERT, bad)
    client.subscribe(Subject.SCANNER_ALERT, received.append)
    client.publish(Subject.SCANNER_ALERT, 5)
    assert received == [5]