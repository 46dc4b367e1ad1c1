import os, json
import uuid
import logging
import redis
from dataclasses import dataclass, asdict, field
from datetime import datetime

logger = logging.getLogger("redis_service")

# ✅ Redis connection setup
r = redis.Redis(
    host=os.getenv("REDIS_HOST", "localhost"),
    port=int(os.getenv("REDIS_PORT", 6379)),
    db=0,
    decode_responses=True,
)

NOT_STARTED = "not-started"
ACTIVE = "active"
ENDED = "ended"

# Ended sessions are kept around for the dashboard/history for a day.
ENDED_TTL_SEC = 86400


# ===============================================================
# 📹  VIDEO SESSION (derived state, not stored in SQL)
# ===============================================================
@dataclass
class VideoSession:
    appointment_id: int
    state: str = NOT_STARTED
    id: str | None = None
    host_participant_id: str | None = None
    started_at: str | None = None
    ended_at: str | None = None
    participants: list[str] = field(default_factory=list)

    @classmethod
    def start(cls, appointment_id: int, host_participant_id: str, now: datetime) -> "VideoSession":
        return cls(
            appointment_id=appointment_id,
            state=ACTIVE,
            id=f"vs_{uuid.uuid4().hex[:16]}",
            host_participant_id=host_participant_id,
            started_at=now.isoformat(),
        )

    def to_dict(self):
        return {
            "id": self.id,
            "appointmentId": self.appointment_id,
            "state": self.state,
            "hostParticipantId": self.host_participant_id,
            "startedAt": self.started_at,
            "endedAt": self.ended_at,
            "participants": self.participants,
        }


# ✅ Helpers for redis key formatting
def _active_key(appointment_id: int) -> str:
    return f"video_session:{appointment_id}:active"

def _ended_key(appointment_id: int) -> str:
    return f"video_session:{appointment_id}:ended"

def _participants_key(appointment_id: int) -> str:
    return f"video_session:{appointment_id}:participants"


def _decode(raw: str | None) -> VideoSession | None:
    if not raw:
        return None
    try:
        data = json.loads(raw)
        data.pop("participants", None)
        return VideoSession(**data)
    except (ValueError, TypeError) as e:
        logger.warning(f"[redis_service] corrupted video session payload: {e}")
        return None


def _serialize(session: VideoSession) -> str:
    data = asdict(session)
    data.pop("participants", None)
    return json.dumps(data)


# ✅ Claim the active slot for a new session; False if one already exists
def claim_active_session(session: VideoSession, ttl_sec: int) -> bool:
    claimed = r.set(_active_key(session.appointment_id), _serialize(session), nx=True, ex=ttl_sec)
    if claimed:
        # Fresh session: drop participants left over from an earlier call.
        r.delete(_participants_key(session.appointment_id))
    return bool(claimed)


def load_active_session(appointment_id: int) -> VideoSession | None:
    session = _decode(r.get(_active_key(appointment_id)))
    if session:
        session.participants = sorted(r.smembers(_participants_key(appointment_id)))
    return session


def load_ended_session(appointment_id: int) -> VideoSession | None:
    return _decode(r.get(_ended_key(appointment_id)))


# ✅ Atomically take the active session out (only one caller gets it)
def pop_active_session(appointment_id: int) -> VideoSession | None:
    session = _decode(r.getdel(_active_key(appointment_id)))
    if session:
        session.participants = sorted(r.smembers(_participants_key(appointment_id)))
        r.delete(_participants_key(appointment_id))
    return session


def save_ended_session(session: VideoSession, ttl_sec: int = ENDED_TTL_SEC):
    r.setex(_ended_key(session.appointment_id), ttl_sec, _serialize(session))


# ✅ Participant set helpers (expire together with the session)
def add_participant(appointment_id: int, participant_id: str):
    key = _participants_key(appointment_id)
    r.sadd(key, participant_id)
    ttl = r.ttl(_active_key(appointment_id))
    if ttl and ttl > 0:
        r.expire(key, ttl)

def remove_participant(appointment_id: int, participant_id: str) -> bool:
    return bool(r.srem(_participants_key(appointment_id), participant_id))


def list_active_sessions() -> list[dict]:
    """All live sessions, newest first."""
    sessions = []
    for key in r.scan_iter("video_session:*:active"):
        session = _decode(r.get(key))
        if session:
            sessions.append(session.to_dict())
    sessions.sort(key=lambda s: s.get("startedAt") or "", reverse=True)
    return sessions
