"""AgentRoom REST API routes."""

import logging

from fastapi import APIRouter, HTTPException

from . import database as db
from . import dispatcher
from .models import (
    AgentIn,
    AgentOut,
    AgentUpdateIn,
    ChannelIn,
    DelegationIn,
    MemberInviteIn,
    MessageIn,
    MessageOut,
)
from .websocket import manager

logger = logging.getLogger("agentroom.api")

router = APIRouter(prefix="/api", tags=["api"])


async def _require_channel(channel_id: str) -> dict:
    channel = await db.get_channel(channel_id)
    if not channel:
        raise HTTPException(404, "Channel not found")
    return channel


async def post_user_message(channel_id: str, body: MessageIn) -> dict:
    """Store a user message and start every agent it mentions."""
    await db.ensure_user(body.author_id)
    if body.id and await db.get_message(body.id):
        raise HTTPException(409, "Message id already exists")
    saved = await db.insert_message(
        channel_id=channel_id,
        author_type="user",
        author_id=body.author_id,
        content=body.content,
        message_id=body.id,
        created_at=body.created_at,
    )
    await manager.broadcast(channel_id, {"type": "chat", "message": saved})
    logger.info("[#%s] %s: %s", channel_id, body.author_id, body.content[:80])

    jobs = await dispatcher.plan_mentions(channel_id, saved["id"], body.content, body.author_id)
    dispatcher.start_jobs(jobs)
    return {
        "message": saved,
        "placeholders": [
            {"agent_id": job.agent_id, "message_id": job.message_id} for job in jobs
        ],
    }


# ── Agents ─────────────────────────────────────────────────

@router.get("/agents", response_model=list[AgentOut])
async def list_agents():
    return await db.get_agents()


@router.post("/agents", response_model=AgentOut)
async def create_agent(body: AgentIn):
    if await db.get_agent_by_name(body.name):
        raise HTTPException(400, "Agent name already taken")
    return await db.create_agent(
        name=body.name,
        description=body.description,
        system_instructions=body.system_instructions,
        capability=body.capability,
        model=body.model,
    )


@router.get("/agents/{agent_id}", response_model=AgentOut)
async def get_agent(agent_id: str):
    agent = await db.get_agent(agent_id)
    if not agent:
        raise HTTPException(404, "Agent not found")
    return agent


@router.patch("/agents/{agent_id}", response_model=AgentOut)
async def update_agent(agent_id: str, body: AgentUpdateIn):
    updates = body.model_dump(exclude_unset=True)
    if not updates:
        raise HTTPException(400, "No updates provided")
    for key, value in list(updates.items()):
        if isinstance(value, str):
            updates[key] = value.strip()
    for required in ("name", "description", "system_instructions", "capability"):
        if required in updates and not updates[required]:
            raise HTTPException(400, f"{required} cannot be empty")
    if "name" in updates:
        existing = await db.get_agent_by_name(updates["name"])
        if existing and existing["id"] != agent_id:
            raise HTTPException(400, "Agent name already taken")

    updated = await db.update_agent(agent_id, updates)
    if not updated:
        raise HTTPException(404, "Agent not found")
    return updated


# ── Channels ───────────────────────────────────────────────

@router.get("/channels")
async def list_channels():
    return await db.get_channels()


@router.post("/channels")
async def create_channel(body: ChannelIn):
    if body.created_by:
        await db.ensure_user(body.created_by)
    return await db.create_channel(body.name, created_by=body.created_by)


@router.get("/channels/{channel_id}")
async def get_channel(channel_id: str):
    channel = await _require_channel(channel_id)
    return {
        **channel,
        "members": await db.get_channel_members(channel_id),
        "running": dispatcher.running_count(channel_id),
        "subscribers": manager.subscriber_count(channel_id),
    }


@router.delete("/channels/{channel_id}")
async def delete_channel(channel_id: str):
    await _require_channel(channel_id)
    stopped = await dispatcher.stop_channel(channel_id)
    await db.delete_channel(channel_id)
    await manager.broadcast(channel_id, {"type": "channel_deleted", "channel_id": channel_id})
    logger.info("Deleted channel #%s (stopped %d branch(es))", channel_id, stopped)
    return {"ok": True, "channel_id": channel_id, "stopped": stopped}


@router.get("/channels/{channel_id}/members")
async def list_members(channel_id: str):
    await _require_channel(channel_id)
    return await db.get_channel_members(channel_id)


@router.post("/channels/{channel_id}/members")
async def invite_member(channel_id: str, body: MemberInviteIn):
    await _require_channel(channel_id)
    if body.invited_by and not await db.is_channel_member(channel_id, "user", body.invited_by):
        raise HTTPException(403, "You must be a member of this channel to invite others")
    if body.member_type == "agent":
        if not await db.get_agent(body.member_id):
            raise HTTPException(404, "Agent not found")
    else:
        await db.ensure_user(body.member_id)
    added = await db.add_channel_member(channel_id, body.member_type, body.member_id)
    return {"ok": True, "added": added, "channel_id": channel_id,
            "member_type": body.member_type, "member_id": body.member_id}


@router.post("/channels/{channel_id}/stop")
async def stop_channel(channel_id: str):
    await _require_channel(channel_id)
    stopped = await dispatcher.stop_channel(channel_id)
    return {"ok": True, "channel_id": channel_id, "stopped": stopped}


# ── Messages ───────────────────────────────────────────────

@router.get("/channels/{channel_id}/messages", response_model=list[MessageOut])
async def list_messages(channel_id: str, limit: int = 50):
    await _require_channel(channel_id)
    return await db.get_history(channel_id, limit=max(1, min(limit, 500)))


@router.post("/channels/{channel_id}/messages")
async def post_message(channel_id: str, body: MessageIn):
    await _require_channel(channel_id)
    return await post_user_message(channel_id, body)


@router.get("/messages/{message_id}", response_model=MessageOut)
async def get_message(message_id: str):
    message = await db.get_message(message_id)
    if not message:
        raise HTTPException(404, "Message not found")
    return message


# ── Delegation ─────────────────────────────────────────────

@router.post("/delegations")
async def trigger_delegation(body: DelegationIn):
    await _require_channel(body.channel_id)
    if not await db.get_message(body.placeholder_message_id):
        raise HTTPException(404, "Placeholder message not found")
    if not await db.get_agent(body.agent_id):
        raise HTTPException(404, "Agent not found")
    return await dispatcher.trigger_delegation(
        channel_id=body.channel_id,
        agent_id=body.agent_id,
        placeholder_message_id=body.placeholder_message_id,
        triggering_text=body.triggering_text,
        triggering_username=body.triggering_username,
        depth=body.depth,
        trigger_message_id=body.trigger_message_id,
    )


@router.get("/health")
async def health():
    return {"ok": True}
