import asyncio

import pytest
from aiohttp import web

from traffic_chain import ChainClient, normalize_url
from traffic_errors import RpcError

ADDRESS = "0xf39Fd6e51aad88F6F4ce6aB8827279cffFb92266"


def make_node(responses, requests):
    """Fake JSON-RPC node; ``responses`` maps method -> result, error dict or callable."""

    async def handle(request):
        body = await request.json()
        requests.append(body)
        reply = responses.get(body["method"])
        if callable(reply):
            return await reply(request, body)
        if isinstance(reply, dict) and "error" in reply:
            return web.json_response({"jsonrpc": "2.0", "id": body["id"], "error": reply["error"]})
        return web.json_response({"jsonrpc": "2.0", "id": body["id"], "result": reply})

    app = web.Application()
    app.router.add_post("/", handle)
    return app


@pytest.fixture
def requests():
    return []


@pytest.fixture
async def node(aiohttp_server, requests):
    responses = {}
    server = await aiohttp_server(make_node(responses, requests))
    server.responses = responses
    return server


@pytest.fixture
async def client(node):
    async with ChainClient(str(node.make_url("/")), timeout=0.5) as chain:
        yield chain


def test_normalize_url():
    assert normalize_url("localhost:8545") == "http://localhost:8545"
    assert normalize_url("https://rpc.example.org/") == "https://rpc.example.org"


async def test_quantity_calls(node, client, requests):
    node.responses.update({
        "eth_getTransactionCount": "0x1a",
        "eth_chainId": "0x539",
        "eth_getBalance": "0xde0b6b3a7640000",
    })

    assert await client.pending_nonce(ADDRESS) == 26
    assert await client.chain_id() == 1337
    assert await client.balance(ADDRESS) == 10**18

    assert [r["method"] for r in requests] == ["eth_getTransactionCount", "eth_chainId", "eth_getBalance"]
    assert requests[0]["params"] == [ADDRESS, "pending"]
    assert requests[2]["params"] == [ADDRESS, "latest"]
    assert [r["id"] for r in requests] == [1, 2, 3]
    assert all(r["jsonrpc"] == "2.0" for r in requests)


async def test_send_raw_transaction(node, client, requests):
    node.responses["eth_sendRawTransaction"] = "0xabc"
    assert await client.send_raw_transaction(b"\x01\x02") == "0xabc"
    assert requests[0]["params"] == ["0x0102"]


async def test_rpc_error_object(node, client):
    node.responses["eth_sendRawTransaction"] = {"error": {"code": -32000, "message": "nonce too low"}}
    with pytest.raises(RpcError, match="nonce too low") as excinfo:
        await client.send_raw_transaction(b"\x01")
    assert excinfo.value.method == "eth_sendRawTransaction"


@pytest.mark.parametrize("bad", ["26", 26, None, "0xzz"])
async def test_malformed_quantity(node, client, bad):
    node.responses["eth_getTransactionCount"] = bad
    with pytest.raises(RpcError, match="malformed quantity"):
        await client.pending_nonce(ADDRESS)


async def test_http_error(node, client):
    async def fail(request, body):
        return web.Response(status=503, text="unavailable")

    node.responses["eth_chainId"] = fail
    with pytest.raises(RpcError, match="HTTP 503"):
        await client.chain_id()


async def test_timeout(node, client):
    async def slow(request, body):
        await asyncio.sleep(2)
        return web.json_response({"jsonrpc": "2.0", "id": body["id"], "result": "0x1"})

    node.responses["eth_getBalance"] = slow
    with pytest.raises(RpcError, match="timed out"):
        await client.balance(ADDRESS)


async def test_connection_refused(unused_tcp_port):
    async with ChainClient(f"127.0.0.1:{unused_tcp_port}", timeout=1) as chain:
        with pytest.raises(RpcError, match="eth_chainId"):
            await chain.chain_id()


async def test_concurrent_calls_share_one_session(node, client, requests):
    node.responses["eth_chainId"] = "0x1"
    results = await asyncio.gather(*(client.chain_id() for _ in range(20)))
    assert results == [1] * 20
    assert sorted(r["id"] for r in requests) == list(range(1, 21))
