"""
Data models (dataclasses) for Nerve Cord.
These are plain Python objects shared by the store, durability and API layers.
`to_dict()` / `from_dict()` convert to and from the JSON wire/disk format.
"""
import secrets
import string
from dataclasses import dataclass, field
from datetime import datetime, timezone, timedelta
from typing import Optional, Any

from nervecord.config import MESSAGE_TTL, HEARTBEAT_TIMEOUT, LARVA_EXPIRY, LARVA_PURGE

MESSAGE_STATUSES = ("pending", "seen", "replied")
LARVA_STATUSES = ("starting", "working", "done", "error")

_ID_ALPHABET = string.ascii_letters + string.digits + "_-"


def utc_now() -> datetime:
    """Current UTC time truncated to milliseconds, so it survives a format/parse cycle."""
    now = datetime.now(timezone.utc)
    return now.replace(microsecond=now.microsecond // 1000 * 1000)


def format_ts(dt: Optional[datetime]) -> Optional[str]:
    if dt is None:
        return None
    return dt.astimezone(timezone.utc).isoformat(timespec="milliseconds").replace("+00:00", "Z")


def parse_ts(s: Optional[str]) -> Optional[datetime]:
    if not s:
        return None
    if s.endswith("Z"):
        s = s[:-1] + "+00:00"
    dt = datetime.fromisoformat(s)
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt


def required_ts(d: dict, key: str) -> datetime:
    """Parse a timestamp field that a stored record cannot do without."""
    dt = parse_ts(d.get(key))
    if dt is None:
        raise ValueError(f"record {d.get('id') or d.get('name')!r} has no '{key}' timestamp")
    return dt


def new_id(prefix: str, size: int = 12) -> str:
    return f"{prefix}_" + "".join(secrets.choice(_ID_ALPHABET) for _ in range(size))


@dataclass
class Message:
    id: str
    sender: str              # wire name: "from"
    to: str
    subject: str
    body: str                # opaque ciphertext, never inspected
    encrypted: bool
    priority: str
    status: str              # pending | seen | replied
    reply_to: Optional[str]  # weak reference, may dangle
    replies: list[str]
    created: datetime
    expires: datetime
    seen_at: Optional[datetime] = None

    @classmethod
    def new(cls, sender: str, to: str, body: str, subject: str = "", priority: str = "normal",
            reply_to: Optional[str] = None, now: Optional[datetime] = None) -> "Message":
        now = now or utc_now()
        return cls(
            id=new_id("msg"), sender=sender, to=to, subject=subject, body=body,
            encrypted=True, priority=priority, status="pending", reply_to=reply_to,
            replies=[], created=now, expires=now + timedelta(seconds=MESSAGE_TTL),
        )

    def is_expired(self, now: datetime) -> bool:
        return now > self.expires

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "from": self.sender,
            "to": self.to,
            "subject": self.subject,
            "body": self.body,
            "encrypted": self.encrypted,
            "priority": self.priority,
            "status": self.status,
            "replyTo": self.reply_to,
            "replies": list(self.replies),
            "created": format_ts(self.created),
            "expires": format_ts(self.expires),
            "seen_at": format_ts(self.seen_at),
        }

    @classmethod
    def from_dict(cls, d: dict) -> "Message":
        return cls(
            id=d["id"],
            sender=d["from"],
            to=d["to"],
            subject=d.get("subject") or "",
            body=d["body"],
            encrypted=bool(d.get("encrypted", False)),
            priority=d.get("priority") or "normal",
            status=d.get("status") or "pending",
            reply_to=d.get("replyTo"),
            replies=list(d.get("replies") or []),
            created=required_ts(d, "created"),
            expires=required_ts(d, "expires"),
            seen_at=parse_ts(d.get("seen_at")),
        )


@dataclass
class Bot:
    name: str
    public_key: str          # opaque, used client-side only
    registered: datetime

    def to_dict(self) -> dict:
        return {"name": self.name, "publicKey": self.public_key,
                "registered": format_ts(self.registered)}

    @classmethod
    def from_dict(cls, d: dict) -> "Bot":
        return cls(name=d["name"], public_key=d["publicKey"], registered=required_ts(d, "registered"))


@dataclass
class Heartbeat:
    """Live-only liveness record; never persisted."""
    name: str
    last_seen: datetime
    ip: Optional[str]
    version: Any = None
    skill_version: Any = None

    def age_ms(self, now: datetime) -> int:
        return int((now - self.last_seen).total_seconds() * 1000)

    def is_online(self, now: datetime) -> bool:
        return (now - self.last_seen).total_seconds() < HEARTBEAT_TIMEOUT

    def to_dict(self) -> dict:
        return {
            "name": self.name,
            "lastSeen": format_ts(self.last_seen),
            "ip": self.ip,
            "version": self.version,
            "skillVersion": self.skill_version,
        }


@dataclass
class Larva:
    """Ephemeral worker descriptor; never persisted."""
    name: str
    task: str
    status: str              # starting | working | done | error
    registered: datetime
    last_seen: datetime
    ip: Optional[str]

    def idle_seconds(self, now: datetime) -> float:
        return (now - self.last_seen).total_seconds()

    def is_active(self, now: datetime) -> bool:
        return self.idle_seconds(now) < LARVA_EXPIRY

    def is_purgeable(self, now: datetime) -> bool:
        return self.idle_seconds(now) > LARVA_PURGE

    def to_dict(self) -> dict:
        return {
            "name": self.name,
            "task": self.task,
            "status": self.status,
            "registered": format_ts(self.registered),
            "lastSeen": format_ts(self.last_seen),
            "ip": self.ip,
        }


@dataclass
class Priority:
    id: str
    text: str
    set_by: str
    set_at: datetime
    rank: int = 0            # 1-based, recomputed after every reorder

    def to_dict(self) -> dict:
        return {"id": self.id, "text": self.text, "setBy": self.set_by,
                "setAt": format_ts(self.set_at), "rank": self.rank}

    @classmethod
    def from_dict(cls, d: dict) -> "Priority":
        return cls(
            id=d.get("id") or "",
            text=d["text"],
            set_by=d.get("setBy") or "unknown",
            set_at=parse_ts(d.get("setAt")) or utc_now(),
            rank=int(d.get("rank") or 0),
        )


@dataclass
class Project:
    id: str
    name: str
    status: str
    created_by: str
    created: datetime
    updated: datetime
    repo: Optional[str] = None
    url: Optional[str] = None
    contract: Optional[str] = None
    chain: Optional[str] = None
    description: str = ""
    metadata: dict[str, Any] = field(default_factory=dict)
    next_steps: list[Any] = field(default_factory=list)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "name": self.name,
            "status": self.status,
            "repo": self.repo,
            "url": self.url,
            "contract": self.contract,
            "chain": self.chain,
            "description": self.description,
            "metadata": dict(self.metadata),
            "nextSteps": list(self.next_steps),
            "createdBy": self.created_by,
            "created": format_ts(self.created),
            "updated": format_ts(self.updated),
        }

    @classmethod
    def from_dict(cls, d: dict) -> "Project":
        return cls(
            id=d["id"],
            name=d["name"],
            status=d.get("status") or "idea",
            created_by=d.get("createdBy") or "unknown",
            created=required_ts(d, "created"),
            updated=parse_ts(d.get("updated")) or required_ts(d, "created"),
            repo=d.get("repo"),
            url=d.get("url"),
            contract=d.get("contract"),
            chain=d.get("chain"),
            description=d.get("description") or "",
            metadata=dict(d.get("metadata") or {}),
            next_steps=list(d.get("nextSteps") or []),
        )


@dataclass
class Suggestion:
    id: str
    title: str
    body: str
    sender: str              # wire name: "from"
    created: datetime

    def to_dict(self) -> dict:
        return {"id": self.id, "title": self.title, "body": self.body,
                "from": self.sender, "created": format_ts(self.created)}

    @classmethod
    def from_dict(cls, d: dict) -> "Suggestion":
        return cls(id=d["id"], title=d["title"], body=d.get("body") or "",
                   sender=d.get("from") or "anonymous", created=required_ts(d, "created"))


@dataclass
class LogEntry:
    id: str
    sender: str              # wire name: "from"
    text: str
    tags: list[str]
    details: Any
    created: datetime

    def to_dict(self) -> dict:
        return {"id": self.id, "from": self.sender, "text": self.text, "tags": list(self.tags),
                "details": self.details, "created": format_ts(self.created)}

    @classmethod
    def from_dict(cls, d: dict) -> "LogEntry":
        return cls(id=d["id"], sender=d["from"], text=d["text"], tags=list(d.get("tags") or []),
                   details=d.get("details"), created=required_ts(d, "created"))
