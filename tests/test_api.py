import json

from fakes import stable_payment


async def initiate(client, **body):
    payload = {"buyerAddress": "B", "amount": 0.001, "currency": "STABLE"}
    payload.update(body)
    resp = await client.post("/api/initiate-purchase", json=payload)
    assert resp.status == 200
    return (await resp.json())["transactionId"]


async def test_initiate_returns_transaction_id(client, store):
    transaction_id = await initiate(client)
    assert store.get(transaction_id).status.value == "pending"


async def test_initiate_rejects_invalid_json(client):
    resp = await client.post("/api/initiate-purchase", data="{oops")
    assert resp.status == 400
    assert (await resp.json())["error"] == "invalid json body"


async def test_initiate_non_object_body_is_server_error(client):
    resp = await client.post("/api/initiate-purchase", json=[1, 2])
    assert resp.status == 500
    assert "error" in await resp.json()


async def test_confirm_unknown_transaction(client):
    resp = await client.post("/api/confirm-payment", json={"transactionId": "nope", "signature": "s"})
    assert resp.status == 404
    assert await resp.json() == {"error": "Transaction not found"}


async def test_confirm_invalid_payment(client, store):
    transaction_id = await initiate(client)
    resp = await client.post(
        "/api/confirm-payment", json={"transactionId": transaction_id, "signature": "bogus"}
    )
    assert resp.status == 400
    assert await resp.json() == {"error": "Invalid payment"}
    assert store.get(transaction_id).status.value == "pending"


async def test_confirm_success_then_repeat(client, rpc, buyer):
    rpc.transactions["validSig"] = stable_payment(1_000)
    transaction_id = await initiate(client, buyerAddress=buyer)

    resp = await client.post(
        "/api/confirm-payment", json={"transactionId": transaction_id, "signature": "validSig"}
    )
    assert resp.status == 200
    assert await resp.json() == {"success": True, "signature": "tokensig1"}

    resp = await client.post(
        "/api/confirm-payment", json={"transactionId": transaction_id, "signature": "validSig"}
    )
    assert resp.status == 409

    resp = await client.get(f"/api/purchases/{transaction_id}")
    body = await resp.json()
    assert body["status"] == "completed"
    assert body["tokenSignature"] == "tokensig1"
    assert body["paymentSignature"] == "validSig"


async def test_confirm_disbursement_fault_is_500_with_message(client, rpc):
    rpc.transactions["validSig"] = stable_payment(1_000)
    transaction_id = await initiate(client, buyerAddress="not-a-key")

    resp = await client.post(
        "/api/confirm-payment", json={"transactionId": transaction_id, "signature": "validSig"}
    )
    assert resp.status == 500
    assert "token transfer failed" in (await resp.json())["error"]


async def test_purchase_detail_not_found(client):
    resp = await client.get("/api/purchases/nope")
    assert resp.status == 404


async def test_save_progress_overwrites_file(client, cfg):
    resp = await client.post("/save-progress", json={"step": 1})
    assert resp.status == 200
    assert await resp.text() == "Progress saved"
    resp = await client.post("/save-progress", json={"step": 2, "done": True})
    assert resp.status == 200

    with open(cfg.progress_path, encoding="utf-8") as f:
        content = f.read()
    assert json.loads(content) == {"step": 2, "done": True}
    assert content == json.dumps({"step": 2, "done": True}, indent=2)


async def test_health(client, presale_keypair, cfg):
    await initiate(client)
    resp = await client.get("/health")
    body = await resp.json()
    assert body["ok"] is True
    assert body["presaleWallet"] == str(presale_keypair.pubkey())
    assert body["tokenMint"] == cfg.token_mint
    assert body["purchases"]["pending"] == 1


async def test_cors_preflight(client):
    resp = await client.options(
        "/api/confirm-payment",
        headers={"Origin": "https://shop.example", "Access-Control-Request-Method": "POST"},
    )
    assert resp.status == 204
    assert resp.headers["Access-Control-Allow-Origin"] == "*"
    assert "POST" in resp.headers["Access-Control-Allow-Methods"]
    assert resp.headers["Access-Control-Allow-Headers"] == "Content-Type"


async def test_cors_header_on_responses(client):
    resp = await client.get("/health", headers={"Origin": "https://shop.example"})
    assert resp.headers["Access-Control-Allow-Origin"] == "*"


async def test_cors_disabled_without_origins(aiohttp_client, cfg, presale_keypair, rpc, store):
    from presale_server import PresaleServer

    cfg.cors_allow_origins = []
    server = PresaleServer(cfg, presale_keypair, rpc=rpc, store=store)
    client = await aiohttp_client(await server.create_api_app())
    resp = await client.get("/health", headers={"Origin": "https://shop.example"})
    assert "Access-Control-Allow-Origin" not in resp.headers
