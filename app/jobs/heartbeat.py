from sqlalchemy.ext.asyncio import async_sessionmaker

from app.domain.clock import utcnow
from app.domain.ops.db_models import JobHeartbeat

RUNNER_HEARTBEAT_NAME = "jobs-runner"


async def record_heartbeat(session_factory: async_sessionmaker, name: str = RUNNER_HEARTBEAT_NAME) -> None:
    now = utcnow()
    async with session_factory() as session:
        heartbeat = await session.get(JobHeartbeat, name)
        if heartbeat is None:
            session.add(JobHeartbeat(name=name, last_heartbeat=now, updated_at=now))
        else:
            heartbeat.last_heartbeat = now
        await session.commit()
