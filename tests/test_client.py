"""Tests for provider composition and operation resolution."""

import pytest

from chainabstraction.bitcoin.swap import SWAP_OPERATIONS
from chainabstraction.client import Client
from chainabstraction.errors import ConfigurationError, MethodNotImplementedError
from chainabstraction.providers.base import Provider, is_transient_rejection


class EchoProvider(Provider):
    OPERATIONS = ("echo", "describe")

    def __init__(self, tag: str):
        super().__init__()
        self.tag = tag

    async def echo(self, value):
        return f"{self.tag}:{value}"

    async def describe(self):
        # Wraps the echo of providers added before this one
        inner = await self.get_method("echo")("inner")
        return f"{self.tag}({inner})"


class BaseEcho(Provider):
    OPERATIONS = ("echo",)

    async def echo(self, value):
        return f"base:{value}"


class BrokenProvider(Provider):
    OPERATIONS = ("missing",)


class LayeredEcho(Provider):
    OPERATIONS = ("shout",)
    REQUIRES = ("echo",)

    async def shout(self, value):
        return (await self.get_method("echo")(value)).upper()


class TestResolution:
    """Tests for last-registered-wins dispatch."""

    @pytest.mark.asyncio
    async def test_last_registered_wins(self):
        client = Client([BaseEcho(), EchoProvider("top")])

        assert await client.echo("x") == "top:x"

    @pytest.mark.asyncio
    async def test_requestor_sees_only_earlier_providers(self):
        client = Client([BaseEcho(), EchoProvider("top")])

        assert await client.describe() == "top(base:inner)"

    @pytest.mark.asyncio
    async def test_requestor_never_resolves_to_itself(self):
        provider = EchoProvider("only")
        client = Client([provider])

        with pytest.raises(MethodNotImplementedError):
            await client.describe()

        assert client.resolve("echo") is provider

    def test_missing_operation(self):
        client = Client([BaseEcho()])

        with pytest.raises(MethodNotImplementedError) as exc_info:
            client.get_method("sign_message")

        assert exc_info.value.operation == "sign_message"
        assert not client.has_method("sign_message")

    def test_private_names_not_forwarded(self):
        client = Client([BaseEcho()])

        with pytest.raises(AttributeError):
            client._something

    def test_unregistered_requestor(self):
        client = Client([BaseEcho()])

        with pytest.raises(ConfigurationError):
            client.resolve("echo", requestor=EchoProvider("stranger"))


class TestLifecycle:
    """Tests for setup/build phases."""

    def test_add_after_build_rejected(self):
        client = Client([BaseEcho()])
        client.validate(["echo"])

        assert client.is_built
        with pytest.raises(ConfigurationError):
            client.add_provider(EchoProvider("late"))

    def test_add_after_first_resolution_rejected(self):
        client = Client([BaseEcho()])
        client.get_method("echo")

        with pytest.raises(ConfigurationError):
            client.add_provider(EchoProvider("late"))

    def test_duplicate_provider_rejected(self):
        provider = BaseEcho()
        client = Client([provider])

        with pytest.raises(ConfigurationError):
            client.add_provider(provider)

    def test_validate_reports_missing(self):
        client = Client([BaseEcho()])

        with pytest.raises(MethodNotImplementedError) as exc_info:
            client.validate(["echo", "broadcast_transaction"])

        assert exc_info.value.operation == "broadcast_transaction"

    def test_attribute_lookup_keeps_setup_open(self):
        client = Client()

        assert not hasattr(client, "get_balance")
        assert getattr(client, "echo", None) is None

        client.add_provider(BaseEcho())
        assert hasattr(client, "echo")
        assert not client.is_built

        client.add_provider(EchoProvider("top"))
        assert len(client.providers) == 2

    def test_missing_operation_is_attribute_error(self):
        client = Client([BaseEcho()])

        with pytest.raises(AttributeError):
            client.sign_message
        assert issubclass(MethodNotImplementedError, AttributeError)

    @pytest.mark.asyncio
    async def test_forwarder_resolves_at_call_time(self):
        client = Client([BaseEcho()])
        echo = client.echo
        client.add_provider(EchoProvider("top"))

        assert await echo("x") == "top:x"
        assert client.is_built

    @pytest.mark.asyncio
    async def test_required_operation_from_earlier_provider(self):
        client = Client([BaseEcho(), LayeredEcho()])
        client.validate(["shout"])

        assert await client.shout("x") == "BASE:X"

    def test_required_operation_registered_too_late(self):
        client = Client([LayeredEcho(), BaseEcho()])

        # every operation exists, but "echo" is not visible to LayeredEcho
        with pytest.raises(ConfigurationError):
            client.validate(["shout", "echo"])

        assert not client.is_built

    def test_required_operation_missing(self):
        client = Client([LayeredEcho()])

        with pytest.raises(ConfigurationError):
            client.build()

        assert not client.is_built

    def test_swap_registered_before_wallet(self, chain, ledger, swap_provider):
        client = Client([chain, swap_provider, ledger])

        with pytest.raises(ConfigurationError) as exc_info:
            client.validate(SWAP_OPERATIONS)

        assert "BitcoinSwapProvider" in str(exc_info.value)

    def test_undeclared_implementation_rejected(self):
        with pytest.raises(ConfigurationError):
            Client([BrokenProvider()])

    def test_detached_provider(self):
        with pytest.raises(ConfigurationError):
            EchoProvider("alone").get_method("echo")

    def test_handler_outside_operations(self):
        with pytest.raises(MethodNotImplementedError):
            BaseEcho().handler("describe")


class TestClientWrappers:
    """Tests for the wallet-level helpers on Client."""

    @pytest.mark.asyncio
    async def test_generate_secret_deterministic(self, client):
        first = await client.generate_secret("test")
        second = await client.generate_secret("test")

        assert first == second
        assert len(bytes.fromhex(first)) == 32
        assert await client.generate_secret("other") != first

    @pytest.mark.asyncio
    async def test_forwarding_to_query_provider(self, client, chain):
        assert await client.get_block_height() == chain.block_height

    @pytest.mark.asyncio
    async def test_close(self, client, ledger):
        await client.close()

        assert not ledger.session.busy


class TestRejectionClassification:
    """Tests for broadcast rejection classification."""

    @pytest.mark.parametrize("reason", ["min relay fee not met", "txn-mempool-conflict", "Mempool full"])
    def test_transient(self, reason):
        assert is_transient_rejection(reason)

    @pytest.mark.parametrize("reason", ["bad-txns-inputs-missingorspent", "TX decode failed"])
    def test_permanent(self, reason):
        assert not is_transient_rejection(reason)
