"""Tests for network adapters against mocked HTTP endpoints."""

import json
from decimal import Decimal

import httpx
import pytest
from bitcoinlib.transactions import Transaction
from web3 import Web3

from custody.adapters import (
    BitcoinAdapter,
    EVMAdapter,
    SimulatedAdapter,
    SolanaAdapter,
    TronAdapter,
    create_adapter,
)
from custody.adapters.evm import TRANSFER_TOPIC
from custody.errors import BroadcastError, FailedTransactionError, TransientAdapterError
from custody.networks import NetworkId, NetworkTier

SENDER = "0x" + "11" * 20
RECIPIENT = "0x" + "22" * 20
HOT_P2WPKH = "bc1qw508d6qejxtdg4y5r3zarvary0c5xw7kv8f3t4"


def padded(address: str) -> str:
    return "0x" + address[2:].lower().rjust(64, "0")


def rpc_client(results: dict) -> httpx.AsyncClient:
    """Client answering JSON-RPC calls from a method -> result table.

    Callable values receive the call params.
    """

    def handler(request: httpx.Request) -> httpx.Response:
        body = json.loads(request.content)
        result = results[body["method"]]
        if callable(result):
            result = result(body["params"])
        return httpx.Response(200, json={"jsonrpc": "2.0", "id": body["id"], "result": result})

    return httpx.AsyncClient(transport=httpx.MockTransport(handler))


def route_client(routes: dict, calls: list = None) -> httpx.AsyncClient:
    """Client answering REST calls from a path -> response table."""

    def handler(request: httpx.Request) -> httpx.Response:
        if calls is not None:
            calls.append(request)
        for path, response in routes.items():
            if request.url.path.endswith(path):
                return response(request) if callable(response) else response
        return httpx.Response(404, text="not found")

    return httpx.AsyncClient(transport=httpx.MockTransport(handler))


class TestEVMAdapter:
    """Tests for ERC-20 USDT over JSON-RPC."""

    def make(self, settings, client) -> EVMAdapter:
        return EVMAdapter(settings.get_network_config(NetworkId.ETHEREUM), client=client)

    @pytest.mark.asyncio
    async def test_incoming_transfers(self, settings):
        """Test Transfer logs become deposits with block-based confirmations."""
        log = {
            "transactionHash": "0xdeposit",
            "topics": [TRANSFER_TOPIC, padded(SENDER), padded(RECIPIENT)],
            "data": hex(80_000_000),
            "blockNumber": hex(90),
            "removed": False,
        }
        removed = {**log, "transactionHash": "0xorphan", "removed": True}
        captured = {}

        def get_logs(params):
            captured.update(params[0])
            return [log, removed]

        adapter = self.make(settings, rpc_client({"eth_blockNumber": hex(100), "eth_getLogs": get_logs}))

        transfers = await adapter.list_incoming_transfers(RECIPIENT)

        assert len(transfers) == 1
        transfer = transfers[0]
        assert transfer.tx_hash == "0xdeposit"
        assert transfer.amount == Decimal("80")
        assert transfer.token_symbol == "USDT"
        assert transfer.confirmations == 10
        assert transfer.from_address == Web3.to_checksum_address(SENDER)
        assert captured["topics"][2] == padded(RECIPIENT)
        assert captured["toBlock"] == hex(100)
        assert captured["fromBlock"] == hex(0)

    @pytest.mark.asyncio
    async def test_confirmations(self, settings):
        """Test receipts map to confirmation counts."""
        adapter = self.make(
            settings,
            rpc_client({
                "eth_blockNumber": hex(100),
                "eth_getTransactionReceipt": {"blockNumber": hex(90), "status": "0x1"},
            }),
        )
        assert await adapter.get_confirmations("0xabc") == 10

    @pytest.mark.asyncio
    async def test_pending_receipt(self, settings):
        """Test a missing receipt means zero confirmations."""
        adapter = self.make(settings, rpc_client({"eth_getTransactionReceipt": None}))
        assert await adapter.get_confirmations("0xabc") == 0

    @pytest.mark.asyncio
    async def test_reverted_receipt(self, settings):
        """Test status 0x0 reports a failed transaction."""
        adapter = self.make(
            settings,
            rpc_client({"eth_getTransactionReceipt": {"blockNumber": hex(90), "status": "0x0"}}),
        )
        with pytest.raises(FailedTransactionError):
            await adapter.get_confirmations("0xabc")

    @pytest.mark.asyncio
    async def test_balance(self, settings):
        """Test native and token balances are scaled by their decimals."""
        adapter = self.make(
            settings,
            rpc_client({"eth_getBalance": hex(10**18), "eth_call": hex(2_500_000)}),
        )
        balance = await adapter.get_balance(RECIPIENT)
        assert balance.native == Decimal("1")
        assert balance.token == Decimal("2.5")

    @pytest.mark.asyncio
    async def test_rpc_error_is_transient(self, settings):
        """Test a JSON-RPC error object is never read as an empty result."""

        def handler(request):
            body = json.loads(request.content)
            return httpx.Response(
                200, json={"jsonrpc": "2.0", "id": body["id"], "error": {"code": -32000, "message": "boom"}}
            )

        adapter = self.make(settings, httpx.AsyncClient(transport=httpx.MockTransport(handler)))
        with pytest.raises(TransientAdapterError):
            await adapter.list_incoming_transfers(RECIPIENT)

    @pytest.mark.asyncio
    async def test_http_error_is_transient(self, settings):
        """Test non-2xx answers raise TransientAdapterError."""
        client = httpx.AsyncClient(transport=httpx.MockTransport(lambda r: httpx.Response(500)))
        adapter = self.make(settings, client)
        with pytest.raises(TransientAdapterError):
            await adapter.get_balance(RECIPIENT)

    @pytest.mark.asyncio
    async def test_timeout_is_transient(self, settings):
        """Test timeouts raise TransientAdapterError."""

        def handler(request):
            raise httpx.ReadTimeout("timed out", request=request)

        adapter = self.make(settings, httpx.AsyncClient(transport=httpx.MockTransport(handler)))
        with pytest.raises(TransientAdapterError):
            await adapter.get_confirmations("0xabc")

    @pytest.mark.asyncio
    async def test_validate_address(self, settings):
        adapter = self.make(settings, rpc_client({}))
        assert await adapter.validate_address(RECIPIENT)
        assert not await adapter.validate_address("0x1234")
        assert not await adapter.validate_address("")


class TestTronAdapter:
    """Tests for TRC-20 USDT via TronGrid."""

    def make(self, settings, client) -> TronAdapter:
        return TronAdapter(settings.get_network_config(NetworkId.TRON), client=client)

    @pytest.mark.asyncio
    async def test_incoming_transfers(self, settings, deriver):
        """Test only USDT transfers to the address are returned."""
        address = deriver.derive_address(NetworkId.TRON, 7).address
        usdt = settings.get_network_config(NetworkId.TRON).usdt_contract
        history = {
            "success": True,
            "data": [
                {
                    "transaction_id": "abc123",
                    "from": "TSender",
                    "to": address,
                    "value": "50000000",
                    "token_info": {"address": usdt, "decimals": 6},
                },
                {
                    "transaction_id": "outgoing",
                    "from": address,
                    "to": "TOther",
                    "value": "1000000",
                    "token_info": {"address": usdt, "decimals": 6},
                },
                {
                    "transaction_id": "other_token",
                    "from": "TSender",
                    "to": address,
                    "value": "1000000",
                    "token_info": {"address": "TOtherToken", "decimals": 6},
                },
            ],
        }
        calls = []
        adapter = self.make(
            settings,
            route_client({"/transactions/trc20": httpx.Response(200, json=history)}, calls),
        )

        transfers = await adapter.list_incoming_transfers(address)

        assert [t.tx_hash for t in transfers] == ["abc123"]
        assert transfers[0].amount == Decimal("50")
        assert transfers[0].from_address == "TSender"
        assert calls[0].url.params["only_to"] == "true"
        assert calls[0].url.params["contract_address"] == usdt

    @pytest.mark.asyncio
    async def test_confirmations(self, settings):
        """Test confirmations are the distance to the current block."""
        adapter = self.make(
            settings,
            route_client({
                "/wallet/gettransactioninfobyid": httpx.Response(
                    200, json={"blockNumber": 1000, "receipt": {"result": "SUCCESS"}}
                ),
                "/wallet/getnowblock": httpx.Response(
                    200, json={"block_header": {"raw_data": {"number": 1020}}}
                ),
            }),
        )
        assert await adapter.get_confirmations("abc123") == 20

    @pytest.mark.asyncio
    async def test_unknown_transaction(self, settings):
        """Test a transaction without info has no confirmations."""
        adapter = self.make(
            settings, route_client({"/wallet/gettransactioninfobyid": httpx.Response(200, json={})})
        )
        assert await adapter.get_confirmations("abc123") == 0

    @pytest.mark.asyncio
    async def test_reverted_transaction(self, settings):
        """Test a reverted contract call reports failure."""
        adapter = self.make(
            settings,
            route_client({
                "/wallet/gettransactioninfobyid": httpx.Response(
                    200, json={"blockNumber": 1000, "result": "FAILED", "receipt": {"result": "REVERT"}}
                ),
            }),
        )
        with pytest.raises(FailedTransactionError):
            await adapter.get_confirmations("abc123")

    @pytest.mark.asyncio
    async def test_balance_of_inactive_account(self, settings, deriver):
        """Test accounts unknown to the node have a zero balance."""
        address = deriver.derive_address(NetworkId.TRON, 2).address
        adapter = self.make(settings, route_client({address: httpx.Response(200, json={"data": []})}))
        balance = await adapter.get_balance(address)
        assert balance.native == Decimal("0")
        assert balance.token == Decimal("0")

    @pytest.mark.asyncio
    async def test_validate_address(self, settings, deriver):
        """Test the base58 checksum is verified."""
        adapter = self.make(settings, route_client({}))
        address = deriver.derive_address(NetworkId.TRON, 7).address
        tampered = address[:-1] + ("1" if address[-1] != "1" else "2")

        assert await adapter.validate_address(address)
        assert not await adapter.validate_address(tampered)
        assert not await adapter.validate_address(RECIPIENT)


class TestBitcoinAdapter:
    """Tests for native BTC via Esplora."""

    def make(self, settings, client) -> BitcoinAdapter:
        return BitcoinAdapter(settings.get_network_config(NetworkId.BITCOIN), client=client)

    @pytest.mark.asyncio
    async def test_incoming_transfers(self, settings, deriver):
        """Test received outputs are summed and self-spends skipped."""
        address = deriver.derive_address(NetworkId.BITCOIN, 1).address
        txs = [
            {
                "txid": "confirmed_tx",
                "vin": [{"prevout": {"scriptpubkey_address": "bc1qsender"}}],
                "vout": [
                    {"scriptpubkey_address": address, "value": 100_000},
                    {"scriptpubkey_address": address, "value": 50_000},
                    {"scriptpubkey_address": "bc1qchange", "value": 7_000},
                ],
                "status": {"confirmed": True, "block_height": 800_000},
            },
            {
                "txid": "self_spend",
                "vin": [{"prevout": {"scriptpubkey_address": address}}],
                "vout": [{"scriptpubkey_address": address, "value": 10_000}],
                "status": {"confirmed": True, "block_height": 800_001},
            },
            {
                "txid": "mempool_tx",
                "vin": [{"prevout": {"scriptpubkey_address": "bc1qother"}}],
                "vout": [{"scriptpubkey_address": address, "value": 20_000}],
                "status": {"confirmed": False},
            },
        ]
        adapter = self.make(
            settings,
            route_client({
                "/txs": httpx.Response(200, json=txs),
                "/blocks/tip/height": httpx.Response(200, text="800005"),
            }),
        )

        transfers = {t.tx_hash: t for t in await adapter.list_incoming_transfers(address)}

        assert set(transfers) == {"confirmed_tx", "mempool_tx"}
        assert transfers["confirmed_tx"].amount == Decimal("0.0015")
        assert transfers["confirmed_tx"].confirmations == 6
        assert transfers["confirmed_tx"].from_address == "bc1qsender"
        assert transfers["confirmed_tx"].token_symbol == "BTC"
        assert transfers["mempool_tx"].confirmations == 0

    @pytest.mark.asyncio
    async def test_unknown_transaction(self, settings):
        """Test a 404 from Esplora means zero confirmations."""
        adapter = self.make(settings, route_client({}))
        assert await adapter.get_confirmations("missing") == 0

    @pytest.mark.asyncio
    async def test_balance_includes_mempool(self, settings):
        adapter = self.make(
            settings,
            route_client({
                "/address/bc1qaddr": httpx.Response(
                    200,
                    json={
                        "chain_stats": {"funded_txo_sum": 300_000, "spent_txo_sum": 100_000},
                        "mempool_stats": {"funded_txo_sum": 50_000, "spent_txo_sum": 0},
                    },
                ),
            }),
        )
        balance = await adapter.get_balance("bc1qaddr")
        assert balance.native == Decimal("0.0025")
        assert adapter.sweepable_amount(balance) == Decimal("0.0025")

    @pytest.mark.asyncio
    async def test_fee_rate_fallback(self, settings):
        """Test an unavailable fee API falls back to the configured rate."""
        adapter = self.make(
            settings, route_client({"/v1/fees/recommended": httpx.Response(503)})
        )
        assert await adapter.get_fee_rate() == adapter.fallback_fee_rate

    @pytest.mark.asyncio
    async def test_sweep_deducts_fee(self, settings, deriver):
        """Test sending the whole balance pays the fee out of the single output."""
        key = deriver.derive_private_key(NetworkId.BITCOIN, 1)
        hot_wallet = deriver.derive_address(NetworkId.BITCOIN, 0).address
        posted = []

        def push(request):
            posted.append(request.content.decode())
            return httpx.Response(200, text="sweep_txid")

        adapter = self.make(
            settings,
            route_client({
                "/utxo": httpx.Response(
                    200,
                    json=[
                        {"txid": "ab" * 32, "vout": 0, "value": 100_000, "status": {"confirmed": True}},
                        {"txid": "cd" * 32, "vout": 1, "value": 40_000, "status": {"confirmed": False}},
                    ],
                ),
                "/v1/fees/recommended": httpx.Response(200, json={"halfHourFee": 5}),
                "/tx": push,
            }),
        )

        tx_hash, sent = await adapter.sweep(key, hot_wallet, Decimal("0.0014"))

        assert tx_hash == "sweep_txid"
        # 100000 sat confirmed - 5 sat/vB * 110 vB; the mempool UTXO is not spent
        assert sent == Decimal("0.0009945")
        tx = Transaction.parse_hex(posted[0], network="bitcoin")
        assert len(tx.inputs) == 1
        assert [(o.address, o.value) for o in tx.outputs] == [(hot_wallet, 99_450)]

    @pytest.mark.asyncio
    async def test_payment_returns_change(self, settings, deriver):
        """Test a partial payment pays the fee on top and returns change to the sender."""
        key = deriver.derive_private_key(NetworkId.BITCOIN, 1)
        posted = []

        def push(request):
            posted.append(request.content.decode())
            return httpx.Response(200, text="payment_txid")

        adapter = self.make(
            settings,
            route_client({
                "/utxo": httpx.Response(
                    200, json=[{"txid": "ab" * 32, "vout": 0, "value": 100_000, "status": {"confirmed": True}}]
                ),
                "/v1/fees/recommended": httpx.Response(200, json={"halfHourFee": 5}),
                "/tx": push,
            }),
        )

        assert await adapter.broadcast_transfer(key, HOT_P2WPKH, Decimal("0.0005")) == "payment_txid"

        tx = Transaction.parse_hex(posted[0], network="bitcoin")
        # 5 sat/vB * 209 vB for one input and two outputs
        assert [(o.address, o.value) for o in tx.outputs] == [
            (HOT_P2WPKH, 50_000),
            (key.address, 48_955),
        ]

    @pytest.mark.asyncio
    async def test_address_checks(self, settings):
        """Test checksums and the tier's network prefix are enforced."""
        adapter = self.make(settings, route_client({}))
        testnet = settings.model_copy(update={"network_tier": NetworkTier.TESTNET})
        testnet_adapter = BitcoinAdapter(
            testnet.get_network_config(NetworkId.BITCOIN), tier=NetworkTier.TESTNET, client=route_client({})
        )

        assert await adapter.validate_address(HOT_P2WPKH)
        assert await adapter.validate_address("1BvBMSEYstWetqTFn5Au4m4GFg7xJaNVN2")
        assert not await adapter.validate_address(HOT_P2WPKH[:-1] + "5")
        assert not await testnet_adapter.validate_address(HOT_P2WPKH)
        assert not await testnet_adapter.validate_address("1BvBMSEYstWetqTFn5Au4m4GFg7xJaNVN2")

    @pytest.mark.asyncio
    async def test_mainnet_destination_refused_on_testnet(self, settings, deriver):
        """Test a testnet payout to a mainnet address fails before anything is fetched."""
        testnet = settings.model_copy(update={"network_tier": NetworkTier.TESTNET})
        calls = []
        adapter = BitcoinAdapter(
            testnet.get_network_config(NetworkId.BITCOIN),
            tier=NetworkTier.TESTNET,
            client=route_client({}, calls),
        )
        key = deriver.derive_private_key(NetworkId.BITCOIN, 1)

        with pytest.raises(BroadcastError):
            await adapter.broadcast_transfer(key, "1BvBMSEYstWetqTFn5Au4m4GFg7xJaNVN2", Decimal("0.001"))
        assert calls == []

    @pytest.mark.asyncio
    async def test_rejected_broadcast(self, settings, deriver):
        """Test a 400 from the node is a BroadcastError."""
        key = deriver.derive_private_key(NetworkId.BITCOIN, 1)
        adapter = self.make(
            settings,
            route_client({
                "/utxo": httpx.Response(
                    200, json=[{"txid": "ab" * 32, "vout": 0, "value": 100_000, "status": {"confirmed": True}}]
                ),
                "/v1/fees/recommended": httpx.Response(200, json={"halfHourFee": 5}),
                "/tx": httpx.Response(400, text="bad-txns-inputs-missingorspent"),
            }),
        )
        with pytest.raises(BroadcastError):
            await adapter.broadcast_transfer(key, HOT_P2WPKH, Decimal("0.0005"))

    @pytest.mark.asyncio
    async def test_insufficient_funds(self, settings, deriver):
        """Test a partial payment that cannot cover its fee is refused before signing."""
        key = deriver.derive_private_key(NetworkId.BITCOIN, 1)
        adapter = self.make(
            settings,
            route_client({
                "/utxo": httpx.Response(
                    200, json=[{"txid": "ab" * 32, "vout": 0, "value": 100_000, "status": {"confirmed": True}}]
                ),
                "/v1/fees/recommended": httpx.Response(200, json={"halfHourFee": 5}),
            }),
        )
        with pytest.raises(BroadcastError):
            await adapter.broadcast_transfer(key, HOT_P2WPKH, Decimal("0.000995"))


class TestSolanaAdapter:
    """Tests for SPL USDT and native SOL over JSON-RPC."""

    def make(self, settings, client) -> SolanaAdapter:
        return SolanaAdapter(settings.get_network_config(NetworkId.SOLANA), client=client)

    def transaction(self, settings, address, token_pre, token_post, lamports_pre, lamports_post):
        usdt = settings.get_network_config(NetworkId.SOLANA).usdt_contract

        def token_balance(amount):
            return [{"accountIndex": 2, "owner": address, "mint": usdt, "uiTokenAmount": {"amount": str(amount)}}]

        return {
            "slot": 10,
            "meta": {
                "err": None,
                "preBalances": [5_000_000_000, lamports_pre, 2_039_280],
                "postBalances": [3_999_995_000, lamports_post, 2_039_280],
                "preTokenBalances": token_balance(token_pre),
                "postTokenBalances": token_balance(token_post),
            },
            "transaction": {
                "message": {
                    "accountKeys": [{"pubkey": "SenderKey"}, {"pubkey": address}, {"pubkey": "TokenAccount"}]
                }
            },
        }

    @pytest.mark.asyncio
    async def test_usdt_takes_priority(self, settings, deriver):
        """Test a transaction moving USDT and SOL is one USDT deposit."""
        address = deriver.derive_address(NetworkId.SOLANA, 1).address
        adapter = self.make(
            settings,
            rpc_client({
                "getSignaturesForAddress": [
                    {"signature": "sig_ok", "slot": 10, "err": None},
                    {"signature": "sig_failed", "slot": 11, "err": {"InstructionError": [0, "Custom"]}},
                ],
                "getTransaction": self.transaction(settings, address, 0, 25_000_000, 0, 1_000_000_000),
            }),
        )

        transfers = await adapter.list_incoming_transfers(address)

        assert len(transfers) == 1
        assert transfers[0].tx_hash == "sig_ok"
        assert transfers[0].token_symbol == "USDT"
        assert transfers[0].amount == Decimal("25")
        assert transfers[0].from_address == "SenderKey"

    @pytest.mark.asyncio
    async def test_native_sol_deposit(self, settings, deriver):
        """Test a plain SOL transfer is reported in SOL."""
        address = deriver.derive_address(NetworkId.SOLANA, 1).address
        adapter = self.make(
            settings,
            rpc_client({
                "getSignaturesForAddress": [{"signature": "sig_sol", "slot": 10, "err": None}],
                "getTransaction": self.transaction(settings, address, 0, 0, 0, 1_500_000_000),
            }),
        )

        transfers = await adapter.list_incoming_transfers(address)

        assert transfers[0].token_symbol == "SOL"
        assert transfers[0].amount == Decimal("1.5")

    @pytest.mark.asyncio
    async def test_confirmations(self, settings):
        """Test signature statuses map to confirmation counts."""

        def statuses(value):
            return rpc_client({"getSignatureStatuses": {"context": {"slot": 1}, "value": [value]}})

        finalized = self.make(settings, statuses({"confirmations": None, "confirmationStatus": "finalized", "err": None}))
        assert await finalized.get_confirmations("sig") == 32

        confirming = self.make(settings, statuses({"confirmations": 5, "confirmationStatus": "confirmed", "err": None}))
        assert await confirming.get_confirmations("sig") == 5

        unknown = self.make(settings, statuses(None))
        assert await unknown.get_confirmations("sig") == 0

        failed = self.make(settings, statuses({"confirmations": 3, "err": {"InstructionError": [0, "Custom"]}}))
        with pytest.raises(FailedTransactionError):
            await failed.get_confirmations("sig")

    @pytest.mark.asyncio
    async def test_balance(self, settings, deriver):
        """Test SOL and token account balances are combined."""
        address = deriver.derive_address(NetworkId.SOLANA, 1).address
        token_account = {
            "account": {"data": {"parsed": {"info": {"tokenAmount": {"amount": "7500000"}}}}}
        }
        adapter = self.make(
            settings,
            rpc_client({
                "getBalance": {"context": {"slot": 1}, "value": 2_000_000_000},
                "getTokenAccountsByOwner": {"context": {"slot": 1}, "value": [token_account]},
            }),
        )
        balance = await adapter.get_balance(address)
        assert balance.native == Decimal("2")
        assert balance.token == Decimal("7.5")

    @pytest.mark.asyncio
    async def test_validate_address(self, settings, deriver):
        adapter = self.make(settings, rpc_client({}))
        assert await adapter.validate_address(deriver.derive_address(NetworkId.SOLANA, 1).address)
        assert not await adapter.validate_address("0OIl" * 10)
        assert not await adapter.validate_address(RECIPIENT)


class TestFactory:
    """Tests for adapter selection."""

    def test_dry_run_uses_simulation(self, settings):
        """Test dry runs never build chain adapters."""
        adapter = create_adapter(NetworkId.BITCOIN, settings)
        assert isinstance(adapter, SimulatedAdapter)
        assert adapter.sweep_native

    @pytest.mark.asyncio
    async def test_live_adapters(self, settings):
        """Test each network gets its chain adapter with the configured endpoint."""
        live = settings.model_copy(update={"dry_run": False, "eth_rpc_url": "https://rpc.example"})
        client = httpx.AsyncClient(transport=httpx.MockTransport(lambda r: httpx.Response(500)))
        expected = {
            NetworkId.ETHEREUM: EVMAdapter,
            NetworkId.BSC: EVMAdapter,
            NetworkId.POLYGON: EVMAdapter,
            NetworkId.TRON: TronAdapter,
            NetworkId.SOLANA: SolanaAdapter,
            NetworkId.BITCOIN: BitcoinAdapter,
        }
        for network, cls in expected.items():
            adapter = create_adapter(network, live, client=client)
            assert isinstance(adapter, cls)
            if network == NetworkId.ETHEREUM:
                assert adapter.base_url == "https://rpc.example"
        await client.aclose()
