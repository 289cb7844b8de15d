"""HTTP tests for the bridge agent protocol."""

from sqlalchemy import select

from kassa.models.pos import PosAgent, PosCommand
from kassa.services.pos.bridge import enqueue_command

API = "/api/v1/pos-agent/v1"


class TestRegister:
    def test_requires_admin(self, client):
        response = client.post(f"{API}/register", json={"name": "Till PC"})
        assert response.status_code == 401

    def test_returns_key_once(self, client, db_session, auth_headers):
        response = client.post(f"{API}/register", json={"name": "Till PC", "locationLabel": "Mitte"},
                               headers=auth_headers)

        assert response.status_code == 201
        body = response.json()
        assert body["ok"] is True
        assert body["name"] == "Till PC"
        assert body["agentKey"].startswith("pa_")
        agent = db_session.get(PosAgent, body["agentId"])
        assert agent.agent_key == body["agentKey"]
        assert agent.location_label == "Mitte"

    def test_name_required(self, client, auth_headers):
        response = client.post(f"{API}/register", json={"name": " "}, headers=auth_headers)
        assert response.status_code == 400
        assert response.json()["error"] == "name is required"


class TestHeartbeat:
    def test_with_key(self, client, agent_headers, test_agent):
        response = client.post(f"{API}/heartbeat", headers=agent_headers)
        assert response.json() == {"ok": True, "agentId": test_agent.id}

    def test_missing_key(self, client):
        response = client.post(f"{API}/heartbeat")
        assert response.status_code == 401
        assert response.json()["error"] == "missing_agent_key"

    def test_unknown_key(self, client):
        response = client.post(f"{API}/heartbeat", headers={"x-pos-agent-key": "pa_nope"})
        assert response.status_code == 401
        assert response.json()["error"] == "invalid_agent_key"


class TestCommands:
    def test_empty_queue_returns_no_content(self, client, agent_headers):
        response = client.get(f"{API}/commands/next", params={"wait": 0}, headers=agent_headers)
        assert response.status_code == 204

    def test_wait_above_limit_rejected(self, client, agent_headers):
        response = client.get(f"{API}/commands/next", params={"wait": 60}, headers=agent_headers)
        assert response.status_code == 400

    def test_claim_and_report(self, client, db_session, agent_headers, test_agent):
        command = enqueue_command(db_session, test_agent.id, "ping", {"terminalHost": "192.168.1.50"})

        claimed = client.get(f"{API}/commands/next", params={"wait": 0}, headers=agent_headers)

        assert claimed.status_code == 200
        assert claimed.json()["command"]["id"] == command.id
        assert claimed.json()["command"]["type"] == "ping"
        assert claimed.json()["command"]["payload"] == {"terminalHost": "192.168.1.50"}

        report = client.post(f"{API}/commands/report", json={
            "commandId": command.id, "ok": True, "result": {"status": "ready"},
        }, headers=agent_headers)

        assert report.json() == {"ok": True, "commandId": command.id, "status": "done"}
        stored = db_session.execute(
            select(PosCommand).where(PosCommand.id == command.id).execution_options(populate_existing=True)
        ).scalar_one()
        assert stored.payload["report"]["result"] == {"status": "ready"}

    def test_report_unknown_command(self, client, agent_headers):
        response = client.post(f"{API}/commands/report", json={"commandId": 999, "ok": False},
                               headers=agent_headers)
        assert response.status_code == 404
        assert response.json()["error"] == "command_not_found"
