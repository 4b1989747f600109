"""AgentRoom — Delegation dispatcher.

An invocation streams one agent's reply into its placeholder message. When the
reply is complete, every other channel agent it @mentions gets its own
placeholder (in mention order) and its own invocation one hop deeper. Sibling
invocations run concurrently as separate tasks; a parent's turn ends once all
of its children have ended. Past MAX_DELEGATION_DEPTH hops nobody is invoked.
"""

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Optional

from . import agent_invoker
from . import context_builder
from . import database as db
from . import mentions
from . import tool_policy
from .accumulator import ResponseAccumulator, write_terminal
from .errors import DelegationError, StreamFailure
from .runtime_config import MAX_DELEGATION_DEPTH, PLACEHOLDER_TEXT
from .websocket import manager

logger = logging.getLogger("agentroom.dispatcher")

DEPTH_LIMIT_NOTICE = (
    f"Maximum collaboration depth reached ({MAX_DELEGATION_DEPTH} hops). "
    "This agent was not invoked. Mention it again directly to continue."
)
CANCELLED_MARKER = "[Cancelled]"

# channel id -> branch tasks still running there
_running: dict[str, set[asyncio.Task]] = {}
_background: set[asyncio.Task] = set()


@dataclass(frozen=True)
class DelegationJob:
    """Everything one branch needs. Passed by value; never mutated."""

    channel_id: str
    agent_id: str
    message_id: str
    triggering_text: str
    triggering_username: Optional[str] = None
    depth: int = 0
    trigger_message_id: Optional[str] = None

    def child(self, agent_id: str, message_id: str, text: str, username: str) -> "DelegationJob":
        return DelegationJob(
            channel_id=self.channel_id,
            agent_id=agent_id,
            message_id=message_id,
            triggering_text=text,
            triggering_username=username,
            depth=self.depth + 1,
            trigger_message_id=self.message_id,
        )


@dataclass
class DelegationResult:
    success: bool
    agent_id: str
    message_id: str
    depth: int
    error: Optional[str] = None
    duplicate: bool = False
    depth_limited: bool = False
    cancelled: bool = False
    children: list["DelegationResult"] = field(default_factory=list)

    def to_dict(self) -> dict:
        out = {
            "success": self.success,
            "agent_id": self.agent_id,
            "message_id": self.message_id,
            "depth": self.depth,
            "duplicate": self.duplicate,
            "depth_limited": self.depth_limited,
            "cancelled": self.cancelled,
            "children": [c.to_dict() for c in self.children],
        }
        if self.error:
            out["error"] = self.error
        return out


def _result(job: DelegationJob, success: bool, **kwargs) -> DelegationResult:
    return DelegationResult(
        success=success,
        agent_id=job.agent_id,
        message_id=job.message_id,
        depth=job.depth,
        **kwargs,
    )


# ── Task bookkeeping ───────────────────────────────────────

def _spawn(job: DelegationJob) -> asyncio.Task:
    task = asyncio.create_task(_run_branch(job), name=f"delegate:{job.agent_id}:{job.message_id}")
    tasks = _running.setdefault(job.channel_id, set())
    tasks.add(task)

    def _forget(done: asyncio.Task):
        tasks.discard(done)
        if not tasks and _running.get(job.channel_id) is tasks:
            _running.pop(job.channel_id, None)

    task.add_done_callback(_forget)
    return task


async def _join(jobs: list[DelegationJob], tasks: list[asyncio.Task]) -> list[DelegationResult]:
    outcomes = await asyncio.gather(*tasks, return_exceptions=True)
    results = []
    for job, outcome in zip(jobs, outcomes):
        if isinstance(outcome, DelegationResult):
            results.append(outcome)
        elif isinstance(outcome, asyncio.CancelledError):
            results.append(_result(job, False, error="cancelled", cancelled=True))
        else:
            logger.error("Branch %s crashed outside its boundary: %r", job.message_id, outcome)
            results.append(_result(job, False, error=str(outcome) or outcome.__class__.__name__))
    return results


def running_count(channel_id: str) -> int:
    return len(_running.get(channel_id, ()))


async def stop_channel(channel_id: str) -> int:
    """Cancel every running branch in a channel. Returns how many were cancelled."""
    tasks = [t for t in _running.get(channel_id, ()) if not t.done()]
    for task in tasks:
        task.cancel()
    if tasks:
        await asyncio.gather(*tasks, return_exceptions=True)
        logger.info("Stopped %d delegation branch(es) in #%s", len(tasks), channel_id)
    return len(tasks)


# ── Placeholders ───────────────────────────────────────────

async def create_placeholder(channel_id: str, agent_id: str) -> dict:
    saved = await db.insert_message(
        channel_id=channel_id,
        author_type="agent",
        author_id=agent_id,
        content=PLACEHOLDER_TEXT,
    )
    await manager.broadcast(channel_id, {"type": "chat", "message": saved})
    return saved


async def _record_failure(accumulator: ResponseAccumulator, annotation: str):
    try:
        await accumulator.annotate_failure(annotation)
    except DelegationError as exc:
        logger.error("Could not record failure on %s: %s", accumulator.message_id, exc)


# ── Branch ─────────────────────────────────────────────────

async def _run_branch(job: DelegationJob) -> DelegationResult:
    try:
        claimed = await db.claim_trigger(
            f"invocation:{job.message_id}", job.channel_id, job.agent_id, job.depth
        )
    except Exception as exc:
        logger.exception("Could not claim invocation %s", job.message_id)
        return _result(job, False, error=f"claim failed: {exc}")
    if not claimed:
        logger.info("Skipping duplicate invocation for message %s", job.message_id)
        return _result(job, True, duplicate=True)

    if job.depth >= MAX_DELEGATION_DEPTH:
        logger.info("Depth limit reached in #%s (depth %d); not invoking %s",
                    job.channel_id, job.depth, job.agent_id)
        try:
            await write_terminal(job.channel_id, job.message_id, DEPTH_LIMIT_NOTICE)
        except DelegationError as exc:
            logger.error("Could not write depth notice to %s: %s", job.message_id, exc)
            return _result(job, False, error=str(exc), depth_limited=True)
        return _result(job, True, depth_limited=True)

    logger.info("Invoking %s in #%s at depth %d", job.agent_id, job.channel_id, job.depth)
    accumulator = ResponseAccumulator(job.channel_id, job.message_id)
    try:
        ctx = await context_builder.build_context(
            job.channel_id,
            job.agent_id,
            job.depth,
            triggering_text=job.triggering_text,
            triggering_username=job.triggering_username,
            placeholder_id=job.message_id,
            trigger_message_id=job.trigger_message_id,
        )
        tools = tool_policy.tools_for_agent(ctx.agent)
        events = agent_invoker.stream_agent(
            ctx.instructions, list(ctx.history), tools, model=ctx.agent.get("model")
        )
        async for event in events:
            await accumulator.apply(event)
        completed = await accumulator.finish()
    except asyncio.CancelledError:
        logger.info("Invocation %s cancelled", job.message_id)
        await _record_failure(accumulator, CANCELLED_MARKER)
        raise
    except Exception as exc:
        if isinstance(exc, DelegationError):
            error = exc
            logger.warning("Invocation %s failed: %s", job.message_id, exc)
        else:
            error = DelegationError(str(exc) or exc.__class__.__name__)
            logger.exception("Invocation %s failed unexpectedly", job.message_id)
        # A stream error is already visible in the transcript.
        if not (isinstance(exc, StreamFailure) and accumulator.failed):
            await _record_failure(accumulator, error.annotation())
        return _result(job, False, error=str(error))

    children = await _fan_out(job, ctx, completed)
    return _result(job, True, children=children)


async def _fan_out(job: DelegationJob, ctx: context_builder.InvocationContext,
                   text: str) -> list[DelegationResult]:
    if not text:
        return []
    agent = ctx.agent
    targets = mentions.resolve_mentioned_agents(text, ctx.roster, exclude_name=agent["name"])
    if not targets:
        return []
    logger.info("%s delegates to %s (depth %d)",
                agent["name"], ", ".join(t["name"] for t in targets), job.depth + 1)

    # Placeholders go in one at a time so mention order fixes message order.
    children = []
    for target in targets:
        try:
            placeholder = await create_placeholder(job.channel_id, target["id"])
        except Exception:
            logger.exception("Could not create placeholder for %s", target["name"])
            continue
        children.append(job.child(target["id"], placeholder["id"], text, agent["name"]))

    return await _join(children, [_spawn(child) for child in children])


# ── Entry points ───────────────────────────────────────────

async def trigger_delegation(
    channel_id: str,
    agent_id: str,
    placeholder_message_id: str,
    triggering_text: str,
    triggering_username: Optional[str] = None,
    depth: int = 0,
    trigger_message_id: Optional[str] = None,
) -> dict:
    """Run one agent into an existing placeholder, plus everything it delegates."""
    job = DelegationJob(
        channel_id=channel_id,
        agent_id=agent_id,
        message_id=placeholder_message_id,
        triggering_text=triggering_text,
        triggering_username=triggering_username,
        depth=max(0, int(depth)),
        trigger_message_id=trigger_message_id,
    )
    results = await _join([job], [_spawn(job)])
    return results[0].to_dict()


async def plan_mentions(channel_id: str, message_id: str, text: str,
                        username: Optional[str] = None) -> list[DelegationJob]:
    """Create placeholders for every member agent a posted message mentions."""
    claimed = await db.claim_trigger(f"message:{message_id}", channel_id)
    if not claimed:
        logger.info("Message %s already processed", message_id)
        return []
    roster = await db.list_channel_agents(channel_id)
    jobs = []
    for target in mentions.resolve_mentioned_agents(text, roster):
        placeholder = await create_placeholder(channel_id, target["id"])
        jobs.append(DelegationJob(
            channel_id=channel_id,
            agent_id=target["id"],
            message_id=placeholder["id"],
            triggering_text=text,
            triggering_username=username,
            depth=0,
            trigger_message_id=message_id,
        ))
    return jobs


async def run_jobs(jobs: list[DelegationJob]) -> list[DelegationResult]:
    if not jobs:
        return []
    return await _join(jobs, [_spawn(job) for job in jobs])


def start_jobs(jobs: list[DelegationJob]) -> Optional[asyncio.Task]:
    """Run jobs in the background (request handlers return before agents finish)."""
    if not jobs:
        return None
    task = asyncio.create_task(run_jobs(jobs), name=f"mentions:{jobs[0].channel_id}")
    _background.add(task)
    task.add_done_callback(_background.discard)
    return task


async def process_posted_message(channel_id: str, message_id: str, text: str,
                                 username: Optional[str] = None) -> list[DelegationResult]:
    return await run_jobs(await plan_mentions(channel_id, message_id, text, username))
