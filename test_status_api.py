"""Tests for the FastAPI status API."""

import asyncio
from datetime import timedelta

import pytest
from fastapi.testclient import TestClient

from convergence.app.main import create_app
from convergence.app.models.agent import AgentDescriptor, AgentState, StatusRecord
from convergence.app.models.cycle import CycleRecord, Decision, TestMetrics, utcnow
from convergence.app.models.handoff import HandoffArtifact
from convergence.orchestrator.integration_aggregator import IntegrationAggregator


@pytest.fixture
def descriptors():
    return [
        AgentDescriptor(name="schema", max_cycles=5, target_pass_rate=85),
        AgentDescriptor(
            name="api", dependencies=["schema"], max_cycles=3, target_pass_rate=90
        ),
    ]


@pytest.fixture
def client(store, descriptors):
    with TestClient(create_app(store, descriptors)) as client:
        yield client


def _finish_schema(store):
    now = utcnow()
    store.write_handoff(HandoffArtifact(
        agent="schema",
        start_time=now - timedelta(minutes=5),
        end_time=now,
        cycles_used=2,
        test_metrics=TestMetrics.from_counts(9, 1),
        final_state=AgentState.TERMINATED,
    ))
    store.write_status(StatusRecord(
        agent="schema", state=AgentState.TERMINATED, cycle=2, pass_rate=90.0
    ))


def test_health(client):
    assert client.get("/health").json() == {"status": "healthy"}
    assert client.get("/").json()["status"] == "running"


def test_agents_overview(client, store):
    store.write_status(StatusRecord(
        agent="schema", state=AgentState.EXECUTING, cycle=2, heartbeat=utcnow()
    ))

    rows = client.get("/agents").json()

    assert [row["agent"] for row in rows] == ["schema", "api"]
    assert rows[0]["state"] == "executing"
    assert rows[0]["health"] == "active"
    assert rows[1]["health"] == "not_started"


def test_agent_detail(client, store):
    now = utcnow()
    store.write_status(StatusRecord(agent="schema", state=AgentState.DECIDING, cycle=1))
    store.append_cycle(CycleRecord(
        agent="schema",
        cycle_index=1,
        start_time=now,
        end_time=now,
        test_metrics=TestMetrics.from_counts(4, 6),
        decision=Decision.RESTART,
    ))

    body = client.get("/agents/schema").json()

    assert body["status"]["state"] == "deciding"
    assert body["cycles"][0]["decision"] == "restart"
    assert body["cycles"][0]["test_metrics"]["pass_rate"] == 40.0
    assert client.get("/agents/api").status_code == 404


def test_malformed_status_is_server_error(client, store):
    store.status_path("schema").write_text("not json")
    assert client.get("/agents/schema").status_code == 500


def test_handoff(client, store):
    assert client.get("/agents/schema/handoff").status_code == 404
    _finish_schema(store)

    body = client.get("/agents/schema/handoff").json()

    assert body["final_state"] == "terminated"
    assert body["test_metrics"]["passing"] == 9


def test_cancel(client, store):
    response = client.post("/agents/api/cancel")

    assert response.status_code == 202
    assert store.cancel_requested("api")
    assert client.post("/agents/nobody/cancel").status_code == 404


def test_alerts(client, store):
    store.write_status(StatusRecord(
        agent="api", state=AgentState.ERROR, reason="dependency_timeout"
    ))

    alerts = client.get("/alerts").json()

    assert alerts == [{
        "level": "critical",
        "agent": "api",
        "message": "Agent has failed: dependency_timeout",
    }]


def test_integration_report(client, store, descriptors):
    assert client.get("/integration").status_code == 404

    _finish_schema(store)
    asyncio.run(IntegrationAggregator(store, descriptors[:1]).aggregate())

    body = client.get("/integration").json()
    assert body["overall_pass_rate"] == 90.0
    assert body["attribution"][0]["agent"] == "schema"
