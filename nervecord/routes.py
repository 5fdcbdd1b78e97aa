"""
Token-gated REST API.

Every route here runs `auth.authorize` first (router-level dependency), so an
unauthenticated request is rejected before its body is even read. Handlers
mutate state through `crud`, then write the snapshot through to storage.
"""
import json
import logging
from typing import Any, Optional, TypeVar

from fastapi import APIRouter, Depends, Query, Request
from pydantic import BaseModel, ConfigDict, Field
from pydantic import ValidationError as PydanticValidationError

from nervecord.auth import authorize, require_admin
from nervecord.db import crud
from nervecord.db.activity_log import ActivityLog
from nervecord.db.database import Durability
from nervecord.db.store import BrokerState
from nervecord.errors import ValidationError, NotFoundError

logger = logging.getLogger(__name__)

router = APIRouter(dependencies=[Depends(authorize)])

M = TypeVar("M", bound=BaseModel)


# ─────────────────────────────────────────────
# Injection helpers
# ─────────────────────────────────────────────

def get_state(request: Request) -> BrokerState:
    return request.app.state.broker


def get_durability(request: Request) -> Durability:
    return request.app.state.durability


def get_activity_log(request: Request) -> ActivityLog:
    return request.app.state.activity_log


def _client_ip(request: Request) -> Optional[str]:
    return request.client.host if request.client else None


async def read_body(request: Request, model: type[M]) -> M:
    """Read a JSON object body under the configured size ceiling and validate it."""
    limit = request.app.state.settings.max_body_bytes
    raw = bytearray()
    async for chunk in request.stream():
        raw.extend(chunk)
        if len(raw) > limit:
            raise ValidationError("request body too large")
    try:
        data = json.loads(raw)
    except ValueError:
        raise ValidationError("bad json")
    if not isinstance(data, dict):
        raise ValidationError("request body must be a JSON object")
    try:
        return model.model_validate(data)
    except PydanticValidationError as e:
        err = e.errors()[0]
        field = ".".join(str(p) for p in err["loc"])
        raise ValidationError(f"{field}: {err['msg']}" if field else err["msg"])


# ─────────────────────────────────────────────
# Request bodies
# ─────────────────────────────────────────────

class _Body(BaseModel):
    model_config = ConfigDict(populate_by_name=True)


class MessageSend(_Body):
    sender: Optional[str] = Field(None, alias="from")
    to: Optional[str] = None
    body: Optional[str] = None
    subject: Optional[str] = None
    priority: Optional[str] = None
    encrypted: Any = None            # must be literally true, checked in crud
    reply_to: Optional[str] = Field(None, alias="replyTo")


class MessageReply(_Body):
    sender: Optional[str] = Field(None, alias="from")
    body: Optional[str] = None
    encrypted: Any = None


class BotRegister(_Body):
    name: Optional[str] = None
    public_key: Optional[str] = Field(None, alias="publicKey")


class HeartbeatBody(_Body):
    name: Optional[str] = None
    version: Any = None            # free-form, numbers allowed
    skill_version: Any = Field(None, alias="skillVersion")
    status: Any = None             # only checked when a larva has this name
    task: Optional[str] = None


class LarvaRegister(_Body):
    name: Optional[str] = None
    task: Optional[str] = None
    status: Optional[str] = None


class LarvaUpdate(_Body):
    task: Optional[str] = None
    status: Optional[str] = None


class PriorityCreate(_Body):
    text: Optional[str] = None
    sender: Optional[str] = Field(None, alias="from")
    rank: Optional[int] = None


class PriorityUpdate(PriorityCreate):
    pass


class ProjectFields(_Body):
    name: Optional[str] = None
    status: Optional[str] = None
    repo: Optional[str] = None
    url: Optional[str] = None
    contract: Optional[str] = None
    chain: Optional[str] = None
    description: Optional[str] = None
    metadata: Optional[dict[str, Any]] = None
    next_steps: Optional[list[Any]] = Field(None, alias="nextSteps")
    sender: Optional[str] = Field(None, alias="from")


class SuggestionCreate(_Body):
    title: Optional[str] = None
    body: Optional[str] = None
    sender: Optional[str] = Field(None, alias="from")


class LogAppend(_Body):
    sender: Optional[str] = Field(None, alias="from")
    text: Optional[str] = None
    tags: Optional[list[str]] = None
    details: Any = None


# ─────────────────────────────────────────────
# Health
# ─────────────────────────────────────────────

@router.get("/health")
async def health(state: BrokerState = Depends(get_state)):
    return {
        "ok": True,
        "messages": len(state.messages),
        "bots": len(state.bots),
        "uptime": state.uptime(),
        "storage": dict(state.load_report),
    }


# ─────────────────────────────────────────────
# Bot registry
# ─────────────────────────────────────────────

@router.post("/bots", status_code=201)
async def api_bot_register(request: Request, state: BrokerState = Depends(get_state),
                           durability: Durability = Depends(get_durability)):
    body = await read_body(request, BotRegister)
    bot = crud.bot_register(state, body.name, body.public_key)
    await durability.save_all()
    return bot.to_dict()


@router.get("/bots")
async def api_bot_list(state: BrokerState = Depends(get_state)):
    return [b.to_dict() for b in crud.bot_list(state)]


@router.get("/bots/{name}")
async def api_bot_get(name: str, state: BrokerState = Depends(get_state)):
    return crud.bot_get(state, name).to_dict()


@router.delete("/bots/{name}")
async def api_bot_unregister(name: str, request: Request, state: BrokerState = Depends(get_state),
                             durability: Durability = Depends(get_durability)):
    require_admin(request)
    crud.bot_unregister(state, name)
    await durability.save_all()
    return {"deleted": name}


# ─────────────────────────────────────────────
# Messages
# ─────────────────────────────────────────────

@router.post("/messages", status_code=201)
async def api_msg_send(request: Request, state: BrokerState = Depends(get_state),
                       durability: Durability = Depends(get_durability)):
    body = await read_body(request, MessageSend)
    msg = crud.msg_send(
        state, sender=body.sender, to=body.to, body=body.body, encrypted=body.encrypted,
        subject=body.subject, priority=body.priority, reply_to=body.reply_to,
    )
    await durability.save_all()
    return msg.to_dict()


@router.get("/messages")
async def api_msg_list(
    to: Optional[str] = None,
    sender: Optional[str] = Query(None, alias="from"),
    status: Optional[str] = None,
    state: BrokerState = Depends(get_state),
):
    return [m.to_dict() for m in crud.msg_list(state, to=to, sender=sender, status=status)]


@router.get("/messages/{msg_id}")
async def api_msg_get(msg_id: str, state: BrokerState = Depends(get_state)):
    return crud.msg_get(state, msg_id).to_dict()


@router.post("/messages/{msg_id}/reply", status_code=201)
async def api_msg_reply(msg_id: str, request: Request, state: BrokerState = Depends(get_state),
                        durability: Durability = Depends(get_durability)):
    crud.msg_get(state, msg_id)  # unknown parent is a 404 even with a bad body
    body = await read_body(request, MessageReply)
    reply = crud.msg_reply(state, msg_id, sender=body.sender, body=body.body,
                           encrypted=body.encrypted)
    await durability.save_all()
    return reply.to_dict()


@router.post("/messages/{msg_id}/seen")
async def api_msg_seen(msg_id: str, state: BrokerState = Depends(get_state),
                       durability: Durability = Depends(get_durability)):
    msg = crud.msg_mark_seen(state, msg_id)
    await durability.save_all()
    return msg.to_dict()


@router.post("/messages/{msg_id}/burn")
async def api_msg_burn(msg_id: str, state: BrokerState = Depends(get_state),
                       durability: Durability = Depends(get_durability)):
    msg = crud.msg_burn(state, msg_id)
    await durability.save_all()
    return msg.to_dict()


@router.delete("/messages/{msg_id}")
async def api_msg_delete(msg_id: str, state: BrokerState = Depends(get_state),
                         durability: Durability = Depends(get_durability)):
    crud.msg_delete(state, msg_id)
    await durability.save_all()
    return {"deleted": True}


# ─────────────────────────────────────────────
# Heartbeats & larvae (live-only, never saved)
# ─────────────────────────────────────────────

@router.post("/heartbeat")
async def api_heartbeat(request: Request, state: BrokerState = Depends(get_state)):
    body = await read_body(request, HeartbeatBody)
    crud.heartbeat_record(
        state, body.name, ip=_client_ip(request), version=body.version,
        skill_version=body.skill_version, status=body.status, task=body.task,
    )
    return {"ok": True}


@router.post("/larvae", status_code=201)
async def api_larva_register(request: Request, state: BrokerState = Depends(get_state)):
    body = await read_body(request, LarvaRegister)
    larva = crud.larva_register(state, body.name, ip=_client_ip(request),
                                task=body.task, status=body.status)
    return larva.to_dict()


@router.get("/larvae")
async def api_larva_list(active: Optional[str] = None, state: BrokerState = Depends(get_state)):
    return [l.to_dict() for l in crud.larva_list(state, active_only=active == "true")]


@router.get("/larvae/{name}")
async def api_larva_get(name: str, state: BrokerState = Depends(get_state)):
    return crud.larva_get(state, name).to_dict()


@router.patch("/larvae/{name}")
async def api_larva_update(name: str, request: Request, state: BrokerState = Depends(get_state)):
    crud.larva_get(state, name)
    body = await read_body(request, LarvaUpdate)
    return crud.larva_update(state, name, task=body.task, status=body.status).to_dict()


@router.delete("/larvae/{name}")
async def api_larva_delete(name: str, state: BrokerState = Depends(get_state)):
    crud.larva_delete(state, name)
    return {"deleted": name}


# ─────────────────────────────────────────────
# Priorities
# ─────────────────────────────────────────────

@router.get("/priorities")
async def api_priority_list(state: BrokerState = Depends(get_state)):
    return [p.to_dict() for p in crud.priority_list(state)]


@router.post("/priorities", status_code=201)
async def api_priority_create(request: Request, state: BrokerState = Depends(get_state),
                              durability: Durability = Depends(get_durability)):
    body = await read_body(request, PriorityCreate)
    prio = crud.priority_create(state, body.text, set_by=body.sender, rank=body.rank)
    await durability.save_all()
    return prio.to_dict()


@router.post("/priorities/top")
async def api_priority_top(request: Request, state: BrokerState = Depends(get_state),
                           durability: Durability = Depends(get_durability)):
    body = await read_body(request, PriorityCreate)
    prios = crud.priority_top(state, body.text, set_by=body.sender)
    await durability.save_all()
    return [p.to_dict() for p in prios]


@router.post("/priorities/{prio_id}/done")
async def api_priority_done(prio_id: str, state: BrokerState = Depends(get_state),
                            durability: Durability = Depends(get_durability),
                            log: ActivityLog = Depends(get_activity_log)):
    completed, entry = crud.priority_done(state, log, prio_id)
    await durability.save_all()
    return {"completed": completed.to_dict(), "logged": entry.to_dict()}


@router.patch("/priorities/{prio_id}")
async def api_priority_update(prio_id: str, request: Request, state: BrokerState = Depends(get_state),
                              durability: Durability = Depends(get_durability)):
    crud.priority_get(state, prio_id)
    body = await read_body(request, PriorityUpdate)
    prio = crud.priority_update(state, prio_id, text=body.text, set_by=body.sender, rank=body.rank)
    await durability.save_all()
    return prio.to_dict()


@router.delete("/priorities/{ref}")
async def api_priority_delete(ref: str, state: BrokerState = Depends(get_state),
                              durability: Durability = Depends(get_durability)):
    """Delete by id (`prio_...`) or, for older clients, by 1-based rank."""
    if ref.isdigit():
        prios = crud.priority_delete_rank(state, int(ref))
    elif ref.startswith("prio_"):
        prios = crud.priority_delete(state, ref)
    else:
        raise NotFoundError("priority not found")
    await durability.save_all()
    return [p.to_dict() for p in prios]


# ─────────────────────────────────────────────
# Projects
# ─────────────────────────────────────────────

@router.get("/projects")
async def api_project_list(status: Optional[str] = None, state: BrokerState = Depends(get_state)):
    return [p.to_dict() for p in crud.project_list(state, status=status)]


@router.post("/projects", status_code=201)
async def api_project_create(request: Request, state: BrokerState = Depends(get_state),
                             durability: Durability = Depends(get_durability)):
    body = await read_body(request, ProjectFields)
    project = crud.project_create(
        state, body.name, created_by=body.sender, status=body.status, repo=body.repo,
        url=body.url, contract=body.contract, chain=body.chain, description=body.description,
        metadata=body.metadata, next_steps=body.next_steps,
    )
    await durability.save_all()
    return project.to_dict()


@router.get("/projects/{project_id}")
async def api_project_get(project_id: str, state: BrokerState = Depends(get_state)):
    return crud.project_get(state, project_id).to_dict()


@router.patch("/projects/{project_id}")
async def api_project_update(project_id: str, request: Request, state: BrokerState = Depends(get_state),
                             durability: Durability = Depends(get_durability)):
    crud.project_get(state, project_id)
    body = await read_body(request, ProjectFields)
    changes = body.model_dump(by_alias=True, exclude_unset=True)
    project = crud.project_update(state, project_id, changes)
    await durability.save_all()
    return project.to_dict()


@router.delete("/projects/{project_id}")
async def api_project_delete(project_id: str, state: BrokerState = Depends(get_state),
                             durability: Durability = Depends(get_durability)):
    removed = crud.project_delete(state, project_id)
    await durability.save_all()
    return {"deleted": removed.to_dict()}


# ─────────────────────────────────────────────
# Suggestions
# ─────────────────────────────────────────────

@router.get("/suggestions")
async def api_suggestion_list(state: BrokerState = Depends(get_state)):
    return [s.to_dict() for s in crud.suggestion_list(state)]


@router.post("/suggestions", status_code=201)
async def api_suggestion_create(request: Request, state: BrokerState = Depends(get_state),
                                durability: Durability = Depends(get_durability)):
    body = await read_body(request, SuggestionCreate)
    suggestion = crud.suggestion_create(state, body.title, body=body.body, sender=body.sender)
    await durability.save_all()
    return suggestion.to_dict()


@router.get("/suggestions/{suggestion_id}")
async def api_suggestion_get(suggestion_id: str, state: BrokerState = Depends(get_state)):
    return crud.suggestion_get(state, suggestion_id).to_dict()


@router.patch("/suggestions/{suggestion_id}")
async def api_suggestion_update(suggestion_id: str, request: Request,
                                state: BrokerState = Depends(get_state),
                                durability: Durability = Depends(get_durability)):
    crud.suggestion_get(state, suggestion_id)
    body = await read_body(request, SuggestionCreate)
    suggestion = crud.suggestion_update(state, suggestion_id, title=body.title, body=body.body)
    await durability.save_all()
    return suggestion.to_dict()


@router.delete("/suggestions/{suggestion_id}")
async def api_suggestion_delete(suggestion_id: str, state: BrokerState = Depends(get_state),
                                durability: Durability = Depends(get_durability)):
    removed = crud.suggestion_delete(state, suggestion_id)
    await durability.save_all()
    return {"deleted": removed.to_dict()}


# ─────────────────────────────────────────────
# Activity log
# ─────────────────────────────────────────────

@router.post("/log", status_code=201)
async def api_log_append(request: Request, log: ActivityLog = Depends(get_activity_log)):
    body = await read_body(request, LogAppend)
    entry = crud.log_append(log, body.sender, body.text, tags=body.tags, details=body.details)
    return entry.to_dict()


@router.get("/log")
async def api_log_query(
    date: Optional[str] = None,
    sender: Optional[str] = Query(None, alias="from"),
    tag: Optional[str] = None,
    limit: Optional[str] = None,
    log: ActivityLog = Depends(get_activity_log),
):
    # an unparseable limit means no limit
    try:
        count = int(limit or 0)
    except ValueError:
        count = 0
    return [e.to_dict() for e in log.query(date=date, sender=sender, tag=tag, limit=count)]


@router.delete("/log/{entry_id}")
async def api_log_delete(entry_id: str, log: ActivityLog = Depends(get_activity_log)):
    crud.log_delete(log, entry_id)
    return {"deleted": True}
