import argparse
import asyncio

from src.core.database import async_session_maker, init_schema
from src.domain.users.permissions import seed_role_permissions


async def run_seed(overwrite: bool) -> None:
    await init_schema()
    async with async_session_maker() as session:
        touched = await seed_role_permissions(session, overwrite=overwrite)
    print(f"Permission records {'reset' if overwrite else 'inserted'}: {touched}")


if __name__ == "__main__":
    parser = argparse.ArgumentParser(description="Seed or repair the role permission records.")
    parser.add_argument("--overwrite", action="store_true", help="Reset existing records to the defaults")
    args = parser.parse_args()
    asyncio.run(run_seed(args.overwrite))
