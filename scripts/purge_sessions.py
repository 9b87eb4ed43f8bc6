import asyncio

from src.core.database import async_session_maker
from src.domain.users.service import purge_expired_sessions


async def run_purge() -> None:
    async with async_session_maker() as session:
        removed = await purge_expired_sessions(session)
    print(f"Expired sessions removed: {removed}")


if __name__ == "__main__":
    asyncio.run(run_purge())
