"""HTTP API tests against the FastAPI app with container-provided services."""

import httpx
import pytest
from dependency_injector import providers

from conftest import make_node
from core.container import container


@pytest.fixture
async def client(settings):
    container.settings.override(providers.Object(settings))
    container.reset_singletons()

    # ASGITransport does not run the lifespan
    await container.database().startup()
    await container.cache().startup()

    import main
    transport = httpx.ASGITransport(app=main.app)
    async with httpx.AsyncClient(transport=transport, base_url="http://test") as client:
        yield client

    await container.cache().shutdown()
    await container.database().shutdown()
    container.settings.reset_override()
    container.reset_singletons()


async def save_workflow(client, workflow_id="wf-1", nodes=None):
    response = await client.post("/api/workflows", json={
        "workflow_id": workflow_id,
        "workspace_id": "ws-1",
        "name": "Orders",
        "nodes": nodes or [make_node("start", "trigger")],
        "edges": [],
    })
    assert response.status_code == 200
    return response.json()


async def test_save_and_get_workflow(client):
    saved = await save_workflow(client)
    assert saved["success"] is True

    response = await client.get("/api/workflows/wf-1")
    assert response.status_code == 200
    assert response.json()["workflow"]["name"] == "Orders"

    assert (await client.get("/api/workflows/missing")).status_code == 404


async def test_compile_inline_definition(client, example_nodes):
    response = await client.post("/api/workflows/wf-1/compile", json={"nodes": example_nodes})

    assert response.status_code == 200
    body = response.json()
    assert body["success"] is True
    assert body["cached"] is False
    assert body["executionOrder"] == ["A", "D", "E", "B", "C"]
    assert body["parallelGroups"] == [["A", "D", "E"]]

    again = await client.post("/api/workflows/wf-1/compile", json={"nodes": example_nodes})
    assert again.json()["cached"] is True


async def test_compile_accepts_camel_case_level(client, example_nodes):
    response = await client.post("/api/workflows/wf-1/compile", json={
        "nodes": example_nodes, "optimizationLevel": "aggressive",
    })

    body = response.json()
    assert body["metadata"]["optimizationLevel"] == "aggressive"
    assert sorted(body["compiledPlan"]["cacheableNodes"]) == ["B", "D", "E"]

    snake = await client.post("/api/workflows/wf-1/compile", json={
        "nodes": example_nodes, "optimization_level": "aggressive",
    })
    assert snake.json()["cached"] is True


async def test_compile_stored_workflow(client):
    await save_workflow(client)
    response = await client.post("/api/workflows/wf-1/compile", json={})
    assert response.json()["executionOrder"] == ["start"]

    assert (await client.post("/api/workflows/missing/compile", json={})).status_code == 404


async def test_cyclic_workflow_is_rejected(client):
    nodes = [
        make_node("A", dependencies=["C"]),
        make_node("B", dependencies=["A"]),
        make_node("C", dependencies=["B"]),
    ]
    response = await client.post("/api/workflows/wf-1/compile", json={"nodes": nodes})

    assert response.status_code == 400
    body = response.json()
    assert body["success"] is False
    assert body["cycles"] == [["A", "B", "C", "A"]]


async def test_invalidate_plans(client, example_nodes):
    await client.post("/api/workflows/wf-1/compile", json={"nodes": example_nodes})
    response = await client.delete("/api/workflows/wf-1/plans")
    assert response.json() == {"success": True, "removed": 1, "results_removed": 0}


async def test_enqueue_and_process(client):
    await save_workflow(client)
    response = await client.post("/api/queue/enqueue", json={
        "workflow_id": "wf-1",
        "workspace_id": "ws-1",
        "execution_data": {"execution_id": "exec-1"},
        "priority": "high",
    })
    item = response.json()["item"]
    assert item["status"] == "pending"
    assert item["priority"] == 2

    processed = (await client.post("/api/queue/process")).json()
    assert processed["processed"] == 1
    assert processed["results"][0]["status"] == "completed"

    stored = (await client.get(f"/api/queue/items/{item['id']}")).json()["item"]
    assert stored["status"] == "completed"

    listed = (await client.get("/api/queue/items", params={"status": "completed"})).json()
    assert [i["id"] for i in listed["items"]] == [item["id"]]

    events = (await client.get("/api/queue/events",
                               params={"name": "queue.item_completed"})).json()["events"]
    assert [e["data"]["queue_item_id"] for e in events] == [item["id"]]


async def test_enqueue_rejects_unknown_priority(client):
    response = await client.post("/api/queue/enqueue", json={
        "workflow_id": "wf-1", "workspace_id": "ws-1", "priority": "urgent",
    })
    assert response.status_code == 400


async def test_gate_status_routes(client, settings):
    breaker = await client.get(f"/api/queue/circuit-breakers/ws-1/{settings.circuit_integration_type}")
    assert breaker.json()["circuit_breaker"]["state"] == "closed"

    reset = await client.post(f"/api/queue/circuit-breakers/ws-1/{settings.circuit_integration_type}/reset")
    assert reset.json()["success"] is True

    limit = await client.get(f"/api/queue/rate-limits/ws-1/{settings.rate_limit_resource_type}")
    assert limit.json()["rate_limit"]["remaining"] == settings.rate_limit_requests

    processor = await client.get("/api/queue/processor")
    assert processor.json()["processor"]["running"] is False


async def test_dead_letter_lifecycle(client):
    # Missing workflow fails immediately and has no retries left
    await client.post("/api/queue/enqueue", json={
        "workflow_id": "wf-missing", "workspace_id": "ws-1", "max_retries": 0,
    })
    processed = (await client.post("/api/queue/process")).json()
    assert processed["results"][0]["status"] == "dead_letter"

    entries = (await client.get("/api/dlq", params={"unresolved_only": True})).json()["entries"]
    assert len(entries) == 1
    entry_id = entries[0]["id"]
    assert "Workflow not found" in entries[0]["last_error"]

    investigated = await client.post(f"/api/dlq/{entry_id}/investigate", json={"notes": "checking"})
    assert investigated.json()["entry"]["investigated"] is True

    replayed = await client.post(f"/api/dlq/{entry_id}/replay", json={})
    assert replayed.json()["item"]["status"] == "pending"

    entry = (await client.get(f"/api/dlq/{entry_id}")).json()["entry"]
    assert entry["resolved_by"] == "replay"
    assert (await client.get("/api/dlq", params={"unresolved_only": True})).json()["entries"] == []

    assert (await client.post("/api/dlq/missing/resolve", json={})).status_code == 404


async def test_heal_and_records(client):
    await save_workflow(client, nodes=[
        make_node("start", "trigger"),
        make_node("fetch", "action", dependencies=["start"]),
    ])
    response = await client.post("/api/healing/heal", json={
        "workflow_id": "wf-1",
        "execution_id": "exec-1",
        "error": "Node fetch timeout after 30s",
        "node_id": "fetch",
    })

    body = response.json()
    assert body["success"] is True
    assert body["failureType"] == "timeout"
    assert body["changedNodes"] == ["fetch"]

    logs = (await client.get("/api/healing/logs/wf-1")).json()["logs"]
    assert len(logs) == 1
    optimizations = (await client.get("/api/healing/optimizations/wf-1")).json()["optimizations"]
    assert len(optimizations) == 1


async def test_health(client):
    response = await client.get("/health")

    assert response.status_code == 200
    body = response.json()
    assert body["status"] == "healthy"
    assert body["checks"] == {"database": True, "cache": True}
    assert body["features"]["redis"] is False
    assert body["features"]["queue"] is False
