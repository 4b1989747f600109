from datetime import datetime, timedelta, timezone

from fastapi.testclient import TestClient

from agentroom import agent_invoker, dispatcher
from agentroom.main import app
from helpers.room import ScriptedModel, unique_name


def _agent_body(name, **overrides):
    body = {
        "name": name,
        "description": "Checks numbers.",
        "system_instructions": "You check numbers carefully.",
    }
    body.update(overrides)
    return body


def _capture_jobs(monkeypatch) -> list:
    started: list = []
    monkeypatch.setattr(dispatcher, "start_jobs", lambda jobs: started.extend(jobs))
    return started


def _room(client, owner="alice"):
    channel = client.post("/api/channels", json={"name": unique_name("room"), "created_by": owner}).json()
    agent = client.post("/api/agents", json=_agent_body(unique_name("checker"))).json()
    resp = client.post(
        f"/api/channels/{channel['id']}/members",
        json={"member_type": "agent", "member_id": agent["id"], "invited_by": owner},
    )
    assert resp.status_code == 200
    return channel, agent


def test_seeded_agents_and_channel_exist():
    client = TestClient(app)
    names = {a["name"] for a in client.get("/api/agents").json()}
    assert {"assistant", "researcher"} <= names

    main = client.get("/api/channels/main").json()
    assert {m["name"] for m in main["members"] if m["member_type"] == "agent"} >= {"assistant", "researcher"}
    assert main["running"] == 0


def test_create_agent_validates_input():
    client = TestClient(app)
    name = unique_name("verifier")

    resp = client.post("/api/agents", json=_agent_body(name, capability="research"))
    assert resp.status_code == 200
    created = resp.json()
    assert created["name"] == name
    assert created["capability"] == "research"

    assert client.post("/api/agents", json=_agent_body(name.upper())).status_code == 400
    assert client.post("/api/agents", json=_agent_body("x")).status_code == 422
    assert client.post("/api/agents", json=_agent_body("has space")).status_code == 422
    assert client.post("/api/agents", json=_agent_body("code-reviewer")).status_code == 422
    assert client.post("/api/agents", json=_agent_body(unique_name("v"), description=" ")).status_code == 422
    assert client.post("/api/agents", json=_agent_body(unique_name("v"), capability="admin")).status_code == 422


def test_update_agent():
    client = TestClient(app)
    agent = client.post("/api/agents", json=_agent_body(unique_name("editor"))).json()

    resp = client.patch(f"/api/agents/{agent['id']}", json={"description": "  Edits prose.  "})
    assert resp.status_code == 200
    assert resp.json()["description"] == "Edits prose."

    assert client.patch(f"/api/agents/{agent['id']}", json={}).status_code == 400
    assert client.patch(f"/api/agents/{agent['id']}", json={"name": ""}).status_code == 422
    assert client.patch(f"/api/agents/{agent['id']}", json={"name": "code-reviewer"}).status_code == 422
    assert client.patch(f"/api/agents/{agent['id']}", json={"name": "assistant"}).status_code == 400
    assert client.patch("/api/agents/missing", json={"description": "x"}).status_code == 404


def test_channel_membership_and_invites():
    client = TestClient(app)
    channel, agent = _room(client, owner="alice")

    members = client.get(f"/api/channels/{channel['id']}/members").json()
    assert {(m["member_type"], m["member_id"]) for m in members} == {("user", "alice"), ("agent", agent["id"])}

    again = client.post(
        f"/api/channels/{channel['id']}/members",
        json={"member_type": "agent", "member_id": agent["id"], "invited_by": "alice"},
    )
    assert again.json()["added"] is False

    outsider = client.post(
        f"/api/channels/{channel['id']}/members",
        json={"member_type": "user", "member_id": "carol", "invited_by": "mallory"},
    )
    assert outsider.status_code == 403

    unknown = client.post(
        f"/api/channels/{channel['id']}/members",
        json={"member_type": "agent", "member_id": "no-such-agent", "invited_by": "alice"},
    )
    assert unknown.status_code == 404

    assert client.get("/api/channels/missing/members").status_code == 404


def test_posting_a_mention_creates_placeholders(monkeypatch):
    started = _capture_jobs(monkeypatch)
    client = TestClient(app)
    channel, agent = _room(client)

    resp = client.post(
        f"/api/channels/{channel['id']}/messages",
        json={"content": f"@{agent['name']} add these up, and ask @nobody", "author_id": "alice"},
    )
    assert resp.status_code == 200
    payload = resp.json()
    (placeholder,) = payload["placeholders"]
    assert placeholder["agent_id"] == agent["id"]
    assert [job.message_id for job in started] == [placeholder["message_id"]]
    assert started[0].depth == 0
    assert started[0].triggering_username == "alice"

    history = client.get(f"/api/channels/{channel['id']}/messages").json()
    assert [m["author_type"] for m in history] == ["user", "agent"]
    assert history[1]["content"] == "Thinking..."


def test_posting_validates_messages(monkeypatch):
    _capture_jobs(monkeypatch)
    client = TestClient(app)
    channel, _ = _room(client)
    url = f"/api/channels/{channel['id']}/messages"

    assert client.post(url, json={"content": "   ", "author_id": "alice"}).status_code == 422
    assert client.post("/api/channels/missing/messages", json={"content": "hi", "author_id": "alice"}).status_code == 404

    first = client.post(url, json={"content": "hi", "author_id": "alice", "id": unique_name("msg")})
    assert first.status_code == 200
    dup = client.post(url, json={"content": "hi", "author_id": "alice", "id": first.json()["message"]["id"]})
    assert dup.status_code == 409


def test_delegation_endpoint_runs_an_agent(monkeypatch):
    _capture_jobs(monkeypatch)
    model = ScriptedModel()
    monkeypatch.setattr(agent_invoker, "stream_agent", model)
    client = TestClient(app)
    channel, agent = _room(client)
    model.replies[agent["name"]] = "The total is 12."

    posted = client.post(
        f"/api/channels/{channel['id']}/messages",
        json={"content": f"@{agent['name']} 5 + 7?", "author_id": "alice"},
    ).json()
    placeholder_id = posted["placeholders"][0]["message_id"]

    resp = client.post("/api/delegations", json={
        "channel_id": channel["id"],
        "agent_id": agent["id"],
        "placeholder_message_id": placeholder_id,
        "triggering_text": f"@{agent['name']} 5 + 7?",
        "triggering_username": "alice",
    })
    assert resp.status_code == 200
    result = resp.json()
    assert result["success"] is True
    assert result["depth"] == 0
    assert client.get(f"/api/messages/{placeholder_id}").json()["content"].startswith("The total is 12.")

    missing = client.post("/api/delegations", json={
        "channel_id": channel["id"],
        "agent_id": agent["id"],
        "placeholder_message_id": "no-such-message",
        "triggering_text": "x",
    })
    assert missing.status_code == 404

    negative = client.post("/api/delegations", json={
        "channel_id": channel["id"],
        "agent_id": agent["id"],
        "placeholder_message_id": placeholder_id,
        "triggering_text": "x",
        "depth": -1,
    })
    assert negative.status_code == 422


def test_stop_with_nothing_running():
    client = TestClient(app)
    resp = client.post("/api/channels/main/stop")
    assert resp.status_code == 200
    assert resp.json()["stopped"] == 0


def test_websocket_posts_and_broadcasts(monkeypatch):
    _capture_jobs(monkeypatch)
    client = TestClient(app)
    channel, _ = _room(client)

    with client.websocket_connect(f"/ws/{channel['id']}") as ws:
        ws.send_text("not json")
        assert ws.receive_json() == {"error": "Invalid message format"}

        ws.send_json({"content": "hello room", "author_id": "alice"})
        event = ws.receive_json()
        assert event["type"] == "chat"
        assert event["message"]["content"] == "hello room"
        assert event["message"]["author_type"] == "user"


def test_posted_created_at_is_validated_and_keeps_placeholders_after(monkeypatch):
    started = _capture_jobs(monkeypatch)
    client = TestClient(app)
    channel, agent = _room(client)
    url = f"/api/channels/{channel['id']}/messages"
    mention = f"@{agent['name']} hi"

    assert client.post(url, json={"content": mention, "author_id": "alice", "created_at": "zzz"}).status_code == 422
    naive = {"content": mention, "author_id": "alice", "created_at": "2030-01-01T00:00:00"}
    assert client.post(url, json=naive).status_code == 422
    assert started == []

    ahead = datetime.now(timezone.utc) + timedelta(seconds=2)
    local = ahead.astimezone(timezone(timedelta(hours=2)))
    resp = client.post(url, json={"content": mention, "author_id": "alice", "created_at": local.isoformat()})
    assert resp.status_code == 200
    assert resp.json()["message"]["created_at"] == ahead.isoformat(timespec="microseconds")

    history = client.get(url).json()
    assert [m["author_type"] for m in history] == ["user", "agent"]
    assert history[1]["created_at"] > history[0]["created_at"]


def test_delete_channel_removes_its_messages(monkeypatch):
    _capture_jobs(monkeypatch)
    client = TestClient(app)
    channel, agent = _room(client)
    posted = client.post(
        f"/api/channels/{channel['id']}/messages",
        json={"content": f"@{agent['name']} hello", "author_id": "alice"},
    ).json()
    assert client.get(f"/api/channels/{channel['id']}").json()["subscribers"] == 0

    resp = client.delete(f"/api/channels/{channel['id']}")
    assert resp.status_code == 200
    assert resp.json()["stopped"] == 0

    assert client.get(f"/api/channels/{channel['id']}").status_code == 404
    assert client.get(f"/api/messages/{posted['message']['id']}").status_code == 404
    assert client.get(f"/api/messages/{posted['placeholders'][0]['message_id']}").status_code == 404
    assert agent["id"] in {a["id"] for a in client.get("/api/agents").json()}
    assert client.delete(f"/api/channels/{channel['id']}").status_code == 404
