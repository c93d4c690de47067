import grpc
import pytest

from core.config import ChannelSettings, ChannelTlsSettings
from core.exceptions import ChannelBuildException, ConfigurationException
from grpc_app.server import create_runner
from grpc_client.channel import ChannelHandle
from grpc_client.factory import AddressChannelFactory, build_channel_options
from grpc_client.load_balancer import PickFirstPolicy, RoundRobinPolicy
from shared.codes import ErrorCode


def _keys(options):
    return [key for key, _ in options]


def test_keep_alive_disabled_adds_no_keepalive_options():
    options = build_channel_options(ChannelSettings(), RoundRobinPolicy())
    assert not [key for key in _keys(options) if key.startswith("grpc.keepalive")]
    assert ("grpc.lb_policy_name", "round_robin") in options


def test_keep_alive_zero_time_keeps_transport_default():
    properties = ChannelSettings(enable_keep_alive=True, keep_alive_time=0, keep_alive_without_calls=True)
    options = dict(build_channel_options(properties, RoundRobinPolicy()))

    assert "grpc.keepalive_time_ms" not in options
    assert options["grpc.keepalive_timeout_ms"] == 20_000
    assert options["grpc.keepalive_permit_without_calls"] == 1


def test_keep_alive_enabled_converts_seconds():
    properties = ChannelSettings(enable_keep_alive=True, keep_alive_time=30, keep_alive_timeout=5)
    options = dict(build_channel_options(properties, RoundRobinPolicy()))

    assert options["grpc.keepalive_time_ms"] == 30_000
    assert options["grpc.keepalive_timeout_ms"] == 5_000
    assert options["grpc.keepalive_permit_without_calls"] == 0


def test_max_inbound_message_size_zero_means_default():
    assert "grpc.max_receive_message_length" not in _keys(
        build_channel_options(ChannelSettings(), RoundRobinPolicy())
    )
    options = dict(build_channel_options(ChannelSettings(max_inbound_message_size=1024), RoundRobinPolicy()))
    assert options["grpc.max_receive_message_length"] == 1024


def test_full_stream_decompression_option():
    options = dict(build_channel_options(ChannelSettings(full_stream_decompression=True), PickFirstPolicy()))
    assert options["grpc.per_message_decompression"] == 1
    assert options["grpc.lb_policy_name"] == "pick_first"


@pytest.mark.asyncio
async def test_empty_name_is_rejected(channel_settings):
    factory = AddressChannelFactory(channel_settings)
    with pytest.raises(ChannelBuildException):
        factory.create_channel("  ")


@pytest.mark.asyncio
async def test_invalid_properties_report_every_error():
    properties = ChannelSettings.model_construct(
        keep_alive_time=-1,
        max_inbound_message_size=-5,
        addresses=["127.0.0.1:1"],
    )
    factory = AddressChannelFactory(properties)

    with pytest.raises(ConfigurationException) as ei:
        factory.create_channel("users")
    assert len(ei.value.errors) == 2
    assert any(err.startswith("keep_alive_time") for err in ei.value.errors)
    assert any(err.startswith("max_inbound_message_size") for err in ei.value.errors)


@pytest.mark.asyncio
async def test_each_call_builds_an_independent_channel(channel_settings):
    factory = AddressChannelFactory(channel_settings)
    first = factory.create_channel("users")
    second = factory.create_channel("users")
    try:
        assert isinstance(first, ChannelHandle)
        assert first is not second
        assert first.resolver is not second.resolver
        assert first.policy is not second.policy
        assert first.target == "ipv4:127.0.0.1:50051"
        assert first.addresses.addresses == ("127.0.0.1:50051",)
        assert first.secure is False
        assert first.drain_grace == channel_settings.drain_grace_seconds == 5.0
    finally:
        await first.close()
        await second.close()


@pytest.mark.asyncio
async def test_load_balancer_factory_is_used(channel_settings):
    factory = AddressChannelFactory(channel_settings, load_balancer_factory=PickFirstPolicy)
    handle = factory.create_channel("address://10.0.0.1:1,10.0.0.2:1")
    try:
        assert isinstance(handle.policy, PickFirstPolicy)
        assert ("grpc.lb_policy_name", "pick_first") in handle.options
        assert handle.target == "ipv4:10.0.0.1:1,10.0.0.2:1"
    finally:
        await handle.close()


@pytest.mark.asyncio
async def test_unknown_scheme_fails_the_build(channel_settings):
    factory = AddressChannelFactory(channel_settings)
    with pytest.raises(ConfigurationException) as ei:
        factory.create_channel("consul://users")
    assert ei.value.code == ErrorCode.UNKNOWN_SCHEME


@pytest.mark.asyncio
async def test_tls_cert_without_key_is_rejected():
    properties = ChannelSettings(
        negotiation_type="tls",
        addresses=["127.0.0.1:1"],
        tls=ChannelTlsSettings(cert="client.pem"),
    )
    with pytest.raises(ConfigurationException) as ei:
        AddressChannelFactory(properties).create_channel("users")
    assert ei.value.code == ErrorCode.TLS_MATERIAL_ERROR


@pytest.mark.asyncio
async def test_tls_missing_ca_file_is_rejected(tmp_path):
    properties = ChannelSettings(
        negotiation_type="TLS",
        addresses=["127.0.0.1:1"],
        tls=ChannelTlsSettings(ca=str(tmp_path / "missing-ca.pem")),
    )
    with pytest.raises(ConfigurationException) as ei:
        AddressChannelFactory(properties).create_channel("users")
    assert ei.value.code == ErrorCode.TLS_MATERIAL_ERROR


@pytest.mark.asyncio
async def test_tls_with_system_roots_and_authority():
    properties = ChannelSettings(
        negotiation_type="TLS",
        addresses=["127.0.0.1:1"],
        tls=ChannelTlsSettings(authority="users.internal"),
    )
    handle = AddressChannelFactory(properties).create_channel("users")
    try:
        assert handle.secure is True
        assert ("grpc.ssl_target_name_override", "users.internal") in handle.options
    finally:
        await handle.close()


@pytest.mark.asyncio
async def test_refresh_retargets_on_membership_change():
    properties = ChannelSettings(addresses=["10.0.0.1:1"])
    handle = AddressChannelFactory(properties).create_channel("users")
    try:
        assert await handle.refresh() is False

        properties.addresses = ["10.0.0.1:1", "10.0.0.2:1"]
        assert await handle.refresh() is True
        assert handle.target == "ipv4:10.0.0.1:1,10.0.0.2:1"
        assert handle.addresses.addresses == ("10.0.0.1:1", "10.0.0.2:1")
    finally:
        await handle.close()


@pytest.mark.asyncio
async def test_close_is_idempotent(channel_settings):
    handle = AddressChannelFactory(channel_settings).create_channel("users")
    await handle.close()
    await handle.close()

    assert handle.closed
    with pytest.raises(grpc.aio.UsageError):
        handle.unary_unary("/test.Echo/Say")


@pytest.fixture
async def echo_runners(server_settings, echo_service_cls):
    runners = [create_runner({"echo": echo_service_cls()}, server_settings) for _ in range(2)]
    for runner in runners:
        await runner.start()
    yield runners
    for runner in runners:
        await runner.close()


@pytest.mark.asyncio
async def test_stub_follows_retarget_after_refresh(echo_runners):
    first, second = echo_runners
    properties = ChannelSettings(addresses=[f"127.0.0.1:{first.port}"], drain_grace_millis=200)
    handle = AddressChannelFactory(properties).create_channel("echo")
    try:
        say = handle.unary_unary("/test.Echo/Say")
        assert await say(b"before") == b"before"

        properties.addresses = [f"127.0.0.1:{second.port}"]
        assert await handle.refresh() is True
        # The old backend goes away; the stub taken earlier must use the new transport
        await first.close()

        assert await say(b"after") == b"after"
        assert handle.target == f"ipv4:127.0.0.1:{second.port}"
    finally:
        await handle.close()


@pytest.mark.asyncio
async def test_several_localhost_entries_build_one_balanced_channel(echo_runners):
    first, second = echo_runners
    handle = AddressChannelFactory(ChannelSettings()).create_channel(
        f"address://localhost:{first.port},localhost:{second.port}"
    )
    try:
        assert handle.target == f"ipv4:127.0.0.1:{first.port},127.0.0.1:{second.port}"
        say = handle.unary_unary("/test.Echo/Say")
        for i in range(4):
            assert await say(b"%d" % i) == b"%d" % i
    finally:
        await handle.close()
