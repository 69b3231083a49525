import pytest
from solders.keypair import Keypair

from fakes import FakeSolanaRPC
from presale_server import (
    AppConfig,
    MemoryPurchaseStore,
    PaymentVerifier,
    PresaleServer,
    PurchaseService,
    TokenDisburser,
)


@pytest.fixture
def presale_keypair():
    return Keypair()


@pytest.fixture
def token_mint():
    return str(Keypair().pubkey())


@pytest.fixture
def buyer():
    return str(Keypair().pubkey())


@pytest.fixture
def rpc():
    return FakeSolanaRPC()


@pytest.fixture
def cfg(tmp_path, token_mint):
    return AppConfig(
        rpc_url="http://localhost:8899",
        token_mint=token_mint,
        presale_wallet_private_key="",
        api_host="127.0.0.1",
        api_port=3000,
        cors_allow_origins=["*"],
        store_mode="memory",
        sqlite_path=str(tmp_path / "presale.db"),
        pending_ttl_sec=3600,
        sweep_interval_sec=60,
        progress_path=str(tmp_path / "progress.json"),
        rpc_timeout_sec=5,
        max_rpc_retries=1,
        confirm_timeout_sec=5,
        log_level="debug",
    )


@pytest.fixture
def store():
    return MemoryPurchaseStore()


@pytest.fixture
def disburser(rpc, presale_keypair, token_mint):
    return TokenDisburser(rpc, presale_keypair, token_mint, confirm_timeout_sec=1, poll_interval_sec=0)


@pytest.fixture
def service(rpc, store, disburser):
    return PurchaseService(store, PaymentVerifier(rpc), disburser, pending_ttl_sec=3600)


@pytest.fixture
def server(cfg, presale_keypair, rpc, store):
    return PresaleServer(cfg, presale_keypair, rpc=rpc, store=store)


@pytest.fixture
async def client(aiohttp_client, server):
    app = await server.create_api_app()
    return await aiohttp_client(app)


@pytest.fixture
def aiohttp_unused_port(unused_tcp_port_factory):
    return unused_tcp_port_factory
