"""
CRUD operations for Nerve Cord.
All functions are synchronous and receive the BrokerState from the caller, so a
mutation always runs to completion on the event loop without interleaving.
"""
import logging
from datetime import timedelta
from typing import Any, Optional

from nervecord.db.activity_log import ActivityLog
from nervecord.db.models import (
    Message, Bot, Heartbeat, Larva, Priority, Project, Suggestion, LogEntry,
    LARVA_STATUSES, utc_now, format_ts, new_id,
)
from nervecord.db.store import BrokerState
from nervecord.errors import ValidationError, NotFoundError

logger = logging.getLogger(__name__)


def _require_encrypted(encrypted: Any) -> None:
    # Only the JSON literal `true` passes; 1, "true" and friends do not.
    if encrypted is not True:
        raise ValidationError("encrypted:true required — plaintext messages not allowed")


# ─────────────────────────────────────────────
# Messages
# ─────────────────────────────────────────────

def _live_message(state: BrokerState, msg_id: str) -> Optional[Message]:
    """Return the message if it exists and has not expired; expired ones are dropped."""
    msg = state.messages.get(msg_id)
    if msg is None:
        return None
    if msg.is_expired(utc_now()):
        state.messages.delete(msg_id)
        return None
    return msg


def _link_reply(state: BrokerState, reply: Message) -> None:
    parent = _live_message(state, reply.reply_to) if reply.reply_to else None
    if parent is None:
        # Dangling replyTo is stored as-is
        return
    parent.replies.append(reply.id)
    if parent.status != "replied":
        parent.status = "replied"


def msg_send(
    state: BrokerState,
    sender: Optional[str],
    to: Optional[str],
    body: Optional[str],
    encrypted: Any = None,
    subject: Optional[str] = None,
    priority: Optional[str] = None,
    reply_to: Optional[str] = None,
) -> Message:
    if not sender or not to or not body:
        raise ValidationError("from, to, body required")
    _require_encrypted(encrypted)
    msg = Message.new(
        sender=sender, to=to, body=body, subject=subject or "",
        priority=priority or "normal", reply_to=reply_to or None,
    )
    state.messages.put(msg)
    _link_reply(state, msg)
    logger.debug(f"Message {msg.id} {sender} -> {to} (replyTo={msg.reply_to})")
    return msg


def msg_get(state: BrokerState, msg_id: str) -> Message:
    msg = _live_message(state, msg_id)
    if msg is None:
        raise NotFoundError("not found")
    return msg


def msg_reply(
    state: BrokerState,
    parent_id: str,
    sender: Optional[str],
    body: Optional[str],
    encrypted: Any = None,
) -> Message:
    """Send a reply addressed back to the parent's sender, inheriting its subject and priority."""
    parent = msg_get(state, parent_id)
    if not sender or not body:
        raise ValidationError("from, body required")
    _require_encrypted(encrypted)
    reply = Message.new(
        sender=sender, to=parent.sender, body=body, subject=f"Re: {parent.subject}",
        priority=parent.priority, reply_to=parent.id,
    )
    state.messages.put(reply)
    _link_reply(state, reply)
    logger.debug(f"Reply {reply.id} to {parent.id} from {sender}")
    return reply


def msg_mark_seen(state: BrokerState, msg_id: str) -> Message:
    msg = msg_get(state, msg_id)
    # Status never regresses: seen/replied stay as they are
    if msg.status == "pending":
        msg.status = "seen"
    msg.seen_at = utc_now()
    return msg


def msg_burn(state: BrokerState, msg_id: str) -> Message:
    """Read-and-delete: the message is returned exactly once."""
    msg = msg_get(state, msg_id)
    state.messages.delete(msg_id)
    logger.debug(f"Message {msg_id} burned")
    return msg


def msg_delete(state: BrokerState, msg_id: str) -> None:
    if state.messages.delete(msg_id) is None:
        raise NotFoundError("not found")


def msg_expire_sweep(state: BrokerState) -> list[str]:
    """Remove every message past its expiry. Safe to run any number of times."""
    now = utc_now()
    expired = [m.id for m in state.messages.list(lambda m: m.is_expired(now))]
    for msg_id in expired:
        state.messages.delete(msg_id)
    if expired:
        logger.debug(f"Expired {len(expired)} messages")
    return expired


def msg_list(
    state: BrokerState,
    to: Optional[str] = None,
    sender: Optional[str] = None,
    status: Optional[str] = None,
) -> list[Message]:
    """Live messages matching the filters, newest first."""
    msg_expire_sweep(state)
    results = state.messages.list(
        lambda m: (not to or m.to == to)
        and (not sender or m.sender == sender)
        and (not status or m.status == status)
    )
    # reversed() first so that, for equal timestamps, the later-stored message leads
    return sorted(reversed(results), key=lambda m: m.created, reverse=True)


# ─────────────────────────────────────────────
# Bot registry
# ─────────────────────────────────────────────

def bot_register(state: BrokerState, name: Optional[str], public_key: Optional[str]) -> Bot:
    """Register a bot, replacing any previous registration under the same name."""
    if not name or not public_key:
        raise ValidationError("name, publicKey required")
    replaced = name in state.bots
    bot = state.bots.put(Bot(name=name, public_key=public_key, registered=utc_now()))
    logger.info(f"Bot {'re-registered' if replaced else 'registered'}: '{name}'")
    return bot


def bot_get(state: BrokerState, name: str) -> Bot:
    bot = state.bots.get(name)
    if bot is None:
        raise NotFoundError("bot not found")
    return bot


def bot_list(state: BrokerState) -> list[Bot]:
    return state.bots.list()


def bot_unregister(state: BrokerState, name: str) -> None:
    if state.bots.delete(name) is None:
        raise NotFoundError("bot not found")
    logger.info(f"Bot unregistered: '{name}'")


# ─────────────────────────────────────────────
# Heartbeats
# ─────────────────────────────────────────────

def heartbeat_record(
    state: BrokerState,
    name: Optional[str],
    ip: Optional[str],
    version: Any = None,
    skill_version: Any = None,
    status: Any = None,
    task: Optional[str] = None,
) -> Heartbeat:
    if not name:
        raise ValidationError("name required")
    # status and task only mean something for a registered larva
    larva = state.larvae.get(name)
    if larva is not None:
        _check_larva_status(status or None)
    now = utc_now()
    hb = state.heartbeats.put(Heartbeat(
        name=name, last_seen=now, ip=ip,
        version=version or None, skill_version=skill_version or None,
    ))
    # A heartbeat from a registered larva also keeps the larva alive
    if larva is not None:
        larva.last_seen = now
        larva.ip = ip
        if status:
            larva.status = status
        if task:
            larva.task = task
    return hb


def heartbeat_list(state: BrokerState) -> list[dict]:
    now = utc_now()
    return [
        {**hb.to_dict(), "online": hb.is_online(now), "ageMs": hb.age_ms(now)}
        for hb in state.heartbeats.list()
    ]


# ─────────────────────────────────────────────
# Larvae
# ─────────────────────────────────────────────

def _check_larva_status(status: Optional[str]) -> None:
    if status is not None and status not in LARVA_STATUSES:
        raise ValidationError(f"status must be one of {', '.join(LARVA_STATUSES)}")


def larva_purge(state: BrokerState) -> list[str]:
    """Drop larvae idle for longer than twice the activity window."""
    now = utc_now()
    purged = [l.name for l in state.larvae.list(lambda l: l.is_purgeable(now))]
    for name in purged:
        state.larvae.delete(name)
    if purged:
        logger.info(f"Purged {len(purged)} stale larvae: {', '.join(purged)}")
    return purged


def larva_register(
    state: BrokerState,
    name: Optional[str],
    ip: Optional[str],
    task: Optional[str] = None,
    status: Optional[str] = None,
) -> Larva:
    if not name:
        raise ValidationError("name required")
    _check_larva_status(status)
    now = utc_now()
    existing = state.larvae.get(name)
    larva = state.larvae.put(Larva(
        name=name,
        task=task or "",
        status=status or "starting",
        registered=existing.registered if existing else now,
        last_seen=now,
        ip=ip,
    ))
    logger.info(f"Larva registered: '{name}' ({larva.status})")
    return larva


def larva_list(state: BrokerState, active_only: bool = False) -> list[Larva]:
    larva_purge(state)
    if not active_only:
        return state.larvae.list()
    now = utc_now()
    return state.larvae.list(lambda l: l.is_active(now))


def larva_get(state: BrokerState, name: str) -> Larva:
    larva_purge(state)
    larva = state.larvae.get(name)
    if larva is None:
        raise NotFoundError("larva not found")
    return larva


def larva_update(
    state: BrokerState,
    name: str,
    task: Optional[str] = None,
    status: Optional[str] = None,
) -> Larva:
    larva = larva_get(state, name)
    _check_larva_status(status)
    if task is not None:
        larva.task = task
    if status is not None:
        larva.status = status
    larva.last_seen = utc_now()
    return larva


def larva_delete(state: BrokerState, name: str) -> None:
    if state.larvae.delete(name) is None:
        raise NotFoundError("larva not found")


# ─────────────────────────────────────────────
# Priorities
# ─────────────────────────────────────────────

def _rerank(state: BrokerState) -> None:
    for i, prio in enumerate(state.priorities.list(), start=1):
        prio.rank = i


def priority_assign_missing_ids(state: BrokerState) -> bool:
    """Give stable ids to priorities saved before ids existed. Returns True if any changed."""
    migrated = False
    for prio in state.priorities:
        if not prio.id:
            prio.id = new_id("prio")
            migrated = True
    _rerank(state)
    return migrated


def priority_list(state: BrokerState) -> list[Priority]:
    return state.priorities.list()


def priority_create(
    state: BrokerState,
    text: Optional[str],
    set_by: Optional[str] = None,
    rank: Optional[int] = None,
) -> Priority:
    if not text:
        raise ValidationError("text required")
    prio = Priority(id=new_id("prio"), text=text, set_by=set_by or "unknown", set_at=utc_now())
    # rank is 1-based; out-of-range values clamp to the ends of the list
    state.priorities.put(prio, position=rank - 1 if rank else None)
    _rerank(state)
    return prio


def priority_top(state: BrokerState, text: Optional[str], set_by: Optional[str] = None) -> list[Priority]:
    """Put `text` on top, dropping any existing entry with the same text."""
    if not text:
        raise ValidationError("text required")
    state.priorities.replace_all(state.priorities.list(lambda p: p.text != text))
    state.priorities.put(
        Priority(id=new_id("prio"), text=text, set_by=set_by or "unknown", set_at=utc_now()),
        position=0,
    )
    _rerank(state)
    return state.priorities.list()


def priority_get(state: BrokerState, prio_id: str) -> Priority:
    prio = state.priorities.get(prio_id)
    if prio is None:
        raise NotFoundError("priority not found")
    return prio


def priority_done(state: BrokerState, log: ActivityLog, prio_id: str) -> tuple[Priority, LogEntry]:
    """Remove a finished priority and record its completion in the activity log."""
    completed = priority_get(state, prio_id)
    entry = LogEntry(
        id=new_id("log"), sender=completed.set_by, text=f"Priority completed: {completed.text}",
        tags=["priority", "done"], details=None, created=utc_now(),
    )
    # Log first: if the shard write fails the priority stays in place
    log.append(entry)
    state.priorities.delete(prio_id)
    _rerank(state)
    return completed, entry


def priority_update(
    state: BrokerState,
    prio_id: str,
    text: Optional[str] = None,
    set_by: Optional[str] = None,
    rank: Optional[int] = None,
) -> Priority:
    prio = priority_get(state, prio_id)
    if text:
        prio.text = text
    if set_by:
        prio.set_by = set_by
    if rank and rank != prio.rank:
        state.priorities.delete(prio_id)
        state.priorities.put(prio, position=rank - 1)
        _rerank(state)
    return prio


def priority_delete(state: BrokerState, prio_id: str) -> list[Priority]:
    if state.priorities.delete(prio_id) is None:
        raise NotFoundError("priority not found")
    _rerank(state)
    return state.priorities.list()


def priority_delete_rank(state: BrokerState, rank: int) -> list[Priority]:
    if rank < 1 or rank > len(state.priorities):
        raise NotFoundError("rank out of range")
    state.priorities.pop_at(rank - 1)
    _rerank(state)
    return state.priorities.list()


# ─────────────────────────────────────────────
# Projects
# ─────────────────────────────────────────────

# wire name -> attribute, for fields a PATCH replaces wholesale
_PROJECT_FIELDS = {
    "name": "name",
    "status": "status",
    "repo": "repo",
    "url": "url",
    "contract": "contract",
    "chain": "chain",
    "description": "description",
    "nextSteps": "next_steps",
}


def project_list(state: BrokerState, status: Optional[str] = None) -> list[Project]:
    return state.projects.list(lambda p: not status or p.status == status)


def project_create(state: BrokerState, name: Optional[str], created_by: Optional[str] = None,
                   **fields: Any) -> Project:
    if not name:
        raise ValidationError("name required")
    now = utc_now()
    project = Project(
        id=new_id("proj"),
        name=name,
        status=fields.get("status") or "idea",
        created_by=created_by or "unknown",
        created=now,
        updated=now,
        repo=fields.get("repo") or None,
        url=fields.get("url") or None,
        contract=fields.get("contract") or None,
        chain=fields.get("chain") or None,
        description=fields.get("description") or "",
        metadata=dict(fields.get("metadata") or {}),
        next_steps=list(fields.get("next_steps") or []),
    )
    state.projects.put(project)
    logger.info(f"Project created: {project.id} '{name}'")
    return project


def project_get(state: BrokerState, project_id: str) -> Project:
    project = state.projects.get(project_id)
    if project is None:
        raise NotFoundError("project not found")
    return project


def project_update(state: BrokerState, project_id: str, changes: dict[str, Any]) -> Project:
    """Apply the wire-named fields present in `changes`; metadata is merged, not replaced."""
    project = project_get(state, project_id)
    for wire_name, attr in _PROJECT_FIELDS.items():
        if wire_name in changes:
            setattr(project, attr, changes[wire_name])
    if changes.get("metadata") is not None:
        project.metadata = {**project.metadata, **changes["metadata"]}
    project.updated = utc_now()
    return project


def project_delete(state: BrokerState, project_id: str) -> Project:
    project = state.projects.delete(project_id)
    if project is None:
        raise NotFoundError("project not found")
    return project


# ─────────────────────────────────────────────
# Suggestions
# ─────────────────────────────────────────────

def suggestion_list(state: BrokerState) -> list[Suggestion]:
    return state.suggestions.list()


def suggestion_create(state: BrokerState, title: Optional[str], body: Optional[str] = None,
                      sender: Optional[str] = None) -> Suggestion:
    if not title:
        raise ValidationError("title required")
    return state.suggestions.put(Suggestion(
        id=new_id("sug"), title=title, body=body or "",
        sender=sender or "anonymous", created=utc_now(),
    ))


def suggestion_get(state: BrokerState, suggestion_id: str) -> Suggestion:
    suggestion = state.suggestions.get(suggestion_id)
    if suggestion is None:
        raise NotFoundError("suggestion not found")
    return suggestion


def suggestion_update(state: BrokerState, suggestion_id: str, title: Optional[str] = None,
                      body: Optional[str] = None) -> Suggestion:
    suggestion = suggestion_get(state, suggestion_id)
    if title:
        suggestion.title = title
    if body is not None:
        suggestion.body = body
    return suggestion


def suggestion_delete(state: BrokerState, suggestion_id: str) -> Suggestion:
    suggestion = state.suggestions.delete(suggestion_id)
    if suggestion is None:
        raise NotFoundError("suggestion not found")
    return suggestion


# ─────────────────────────────────────────────
# Activity log
# ─────────────────────────────────────────────

def log_append(log: ActivityLog, sender: Optional[str], text: Optional[str],
               tags: Optional[list[str]] = None, details: Any = None) -> LogEntry:
    if not sender or not text:
        raise ValidationError("from, text required")
    return log.append(LogEntry(
        id=new_id("log"), sender=sender, text=text, tags=list(tags or []),
        details=None if details in (None, False, 0, "") else details, created=utc_now(),
    ))


def log_delete(log: ActivityLog, entry_id: str) -> None:
    if not log.delete(entry_id):
        raise NotFoundError("not found")


# ─────────────────────────────────────────────
# Aggregates & maintenance
# ─────────────────────────────────────────────

def format_uptime(seconds: float) -> str:
    s = int(seconds)
    d, h, m = s // 86400, (s % 86400) // 3600, (s % 3600) // 60
    parts = []
    if d:
        parts.append(f"{d}d")
    if h:
        parts.append(f"{h}h")
    parts.append(f"{m}m")
    return " ".join(parts)


def bus_stats(state: BrokerState) -> dict:
    msg_expire_sweep(state)
    now = utc_now()
    all_msgs = state.messages.list()

    bots = {}
    for bot in state.bots.list():
        sent = [m for m in all_msgs if m.sender == bot.name]
        received = [m for m in all_msgs if m.to == bot.name]
        last_sent = max(sent, key=lambda m: m.created, default=None)
        last_recv = max(received, key=lambda m: m.created, default=None)
        bots[bot.name] = {
            "registered": format_ts(bot.registered),
            "sent": len(sent),
            "received": len(received),
            "pending": sum(1 for m in received if m.status == "pending"),
            "lastSentAt": format_ts(last_sent.created) if last_sent else None,
            "lastReceivedAt": format_ts(last_recv.created) if last_recv else None,
        }

    status_counts: dict[str, int] = {}
    for m in all_msgs:
        status_counts[m.status] = status_counts.get(m.status, 0) + 1

    hour_ago = now - timedelta(hours=1)
    uptime = state.uptime()
    return {
        "uptime": int(uptime),
        "uptimeHuman": format_uptime(uptime),
        "totalMessages": len(all_msgs),
        "statusBreakdown": status_counts,
        "messagesLastHour": sum(1 for m in all_msgs if m.created > hour_ago),
        "bots": bots,
        "botCount": len(bots),
        "serverTime": format_ts(now),
    }


def sweep(state: BrokerState) -> tuple[list[str], list[str]]:
    """Periodic maintenance: expire messages and purge stale larvae."""
    return msg_expire_sweep(state), larva_purge(state)
